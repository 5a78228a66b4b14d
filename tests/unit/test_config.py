"""Unit tests for settings validation."""

import pydantic
import pytest

from ringledger.config import Settings


@pytest.mark.unit
@pytest.mark.parametrize("environment", ["production", "staging"])
def test_unsigned_webhooks_refused_outside_development(environment):
    with pytest.raises(pydantic.ValidationError) as exc:
        Settings(
            _env_file=None,
            ENVIRONMENT=environment,
            RETELL_ALLOW_UNSIGNED_WEBHOOKS=True,
        )
    assert f"cannot be enabled in '{environment}'" in str(exc.value)


@pytest.mark.unit
def test_unsigned_webhooks_allowed_in_development():
    config = Settings(_env_file=None, ENVIRONMENT="development", RETELL_ALLOW_UNSIGNED_WEBHOOKS=True)
    assert config.RETELL_ALLOW_UNSIGNED_WEBHOOKS is True
    assert config.is_production is False


@pytest.mark.unit
def test_metering_enabled_follows_secret_key():
    assert Settings(_env_file=None, STRIPE_SECRET_KEY=None).metering_enabled is False
    assert Settings(_env_file=None, STRIPE_SECRET_KEY="sk_test_abc").metering_enabled is True


@pytest.mark.unit
def test_defaults():
    config = Settings(_env_file=None)
    assert config.FREE_TRIAL_MINUTES == 50
    assert config.TRIAL_DAYS == 4
    assert config.MAX_CALL_DURATION_SECONDS == 86400
