"""Plan entitlements and billable-minute rules.

Everything here is a static lookup or a pure function so it can be shared by
the call recorder, the usage accumulator and the metering reporter without a
database round trip.
"""

import math
from dataclasses import dataclass
from enum import Enum

from ringledger.config import settings


class PlanType(str, Enum):
    """Subscription plan tiers."""

    NONE = "NONE"
    TIER_1 = "TIER_1"  # Starter
    TIER_2 = "TIER_2"  # Pro
    TIER_3 = "TIER_3"  # Local Plus


class SubscriptionStatus(str, Enum):
    """Internal subscription status vocabulary."""

    NONE = "NONE"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


@dataclass(frozen=True)
class Entitlement:
    """Included minutes and feature flags granted by a plan."""

    plan_type: PlanType
    name: str
    included_minutes: int
    monthly_price_usd: int = 0
    industry_optimized_flows: bool = False
    appointment_capture: bool = False
    sms_to_callers: bool = False
    crm_forwarding: bool = False
    lead_tagging: bool = False
    urgency_flags: bool = False
    weekly_reports: bool = False
    branded_voice: bool = False
    priority_support: bool = False


_PRO_FEATURES = {
    "industry_optimized_flows": True,
    "appointment_capture": True,
    "sms_to_callers": True,
    "crm_forwarding": True,
    "lead_tagging": True,
    "urgency_flags": True,
}

ENTITLEMENTS: dict[PlanType, Entitlement] = {
    PlanType.NONE: Entitlement(plan_type=PlanType.NONE, name="No plan", included_minutes=0),
    PlanType.TIER_1: Entitlement(
        plan_type=PlanType.TIER_1,
        name="Starter",
        included_minutes=300,
        monthly_price_usd=99,
    ),
    PlanType.TIER_2: Entitlement(
        plan_type=PlanType.TIER_2,
        name="Pro",
        included_minutes=900,
        monthly_price_usd=229,
        **_PRO_FEATURES,
    ),
    PlanType.TIER_3: Entitlement(
        plan_type=PlanType.TIER_3,
        name="Local Plus",
        included_minutes=1800,
        monthly_price_usd=349,
        weekly_reports=True,
        branded_voice=True,
        priority_support=True,
        **_PRO_FEATURES,
    ),
}

def parse_plan_type(value: PlanType | str | None) -> PlanType:
    """Coerce a stored or provider-supplied plan identifier to a PlanType.

    Unknown and empty values resolve to ``PlanType.NONE``.
    """
    if isinstance(value, PlanType):
        return value
    if not value:
        return PlanType.NONE
    try:
        return PlanType(str(value).upper())
    except ValueError:
        return PlanType.NONE


def get_entitlement(plan: PlanType | str | None) -> Entitlement:
    """Resolve the entitlement for a plan identifier."""
    return ENTITLEMENTS[parse_plan_type(plan)]


def included_minutes(plan: PlanType | str | None) -> int:
    """Included call minutes per billing period for a plan."""
    return get_entitlement(plan).included_minutes


def overage_minutes(plan: PlanType | str | None, minutes_used: int) -> int:
    """Minutes used beyond the plan allowance (never negative)."""
    return max(0, minutes_used - included_minutes(plan))


def _clamp_seconds(duration_seconds: float, max_duration_seconds: int | None) -> float:
    ceiling = max_duration_seconds
    if ceiling is None:
        ceiling = settings.MAX_CALL_DURATION_SECONDS
    if isinstance(duration_seconds, float) and math.isnan(duration_seconds):
        return 0.0
    return float(max(0, min(ceiling, duration_seconds)))


def clamp_duration_seconds(duration_seconds: float, max_duration_seconds: int | None = None) -> int:
    """Clamp a raw call duration to whole seconds in ``[0, MAX_CALL_DURATION_SECONDS]``."""
    return int(_clamp_seconds(duration_seconds, max_duration_seconds))


def to_billable_minutes(duration_seconds: float, max_duration_seconds: int | None = None) -> int:
    """Convert a raw call duration to whole billable minutes.

    Durations are clamped to ``[0, MAX_CALL_DURATION_SECONDS]``, rounded up to
    the next whole minute and floored at one minute per call.
    """
    return max(1, math.ceil(_clamp_seconds(duration_seconds, max_duration_seconds) / 60))
