"""Unit tests for subscription lifecycle sync."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy import select

from ringledger.billing.plans import PlanType, SubscriptionStatus
from ringledger.database.models import Business, Subscription
from ringledger.exceptions import BillingProviderError
from ringledger.services.subscription_sync import (
    StripeBillingClient,
    SubscriptionSync,
    map_provider_status,
)
from ringledger.services.trial import get_trial_status

NOW = datetime(2026, 5, 10, 12, 0, tzinfo=UTC)


async def _reload(db, business_id):
    business = await db.get(Business, business_id, populate_existing=True)
    subscription = (
        await db.execute(
            select(Subscription)
            .where(Subscription.business_id == business_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    return business, subscription


@pytest.mark.unit
@pytest.mark.parametrize(
    ("provider_status", "expected"),
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.ACTIVE),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("unpaid", SubscriptionStatus.PAST_DUE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("paused", SubscriptionStatus.PAST_DUE),
        (None, SubscriptionStatus.PAST_DUE),
    ],
)
def test_map_provider_status(provider_status, expected):
    assert map_provider_status(provider_status) == expected


@pytest.mark.unit
@pytest.mark.asyncio
class TestCheckoutCompleted:
    async def test_activates_plan_and_clears_trial(self, db, make_business, subscription_sync, billing_client):
        business = await make_business(
            trial_started_at=NOW - timedelta(days=2),
            trial_ends_at=NOW + timedelta(days=2),
            trial_minutes_used=30,
        )

        subscription = await subscription_sync.checkout_completed(
            db, business.id, "tier_2", "sub_123", customer_id="cus_9", now=NOW
        )
        await db.commit()

        assert subscription is not None
        business, subscription = await _reload(db, business.id)
        assert business.plan_type == PlanType.TIER_2.value
        assert business.subscription_status == SubscriptionStatus.ACTIVE.value
        assert business.is_active is True
        assert business.trial_ends_at is None
        assert business.trial_minutes_used == 0
        assert business.billing_customer_id == "cus_9"
        assert subscription.external_subscription_id == "sub_123"
        assert subscription.metered_item_id == "si_sub_123"
        assert billing_client.attached == [("sub_123", "price_overage")]

        status = await get_trial_status(db, business.id, now=NOW)
        assert status.is_on_trial is False

    async def test_replay_converges(self, db, make_business, subscription_sync, billing_client):
        business = await make_business()

        for _ in range(2):
            await subscription_sync.checkout_completed(db, business.id, "TIER_1", "sub_123", now=NOW)
            await db.commit()

        subscriptions = (await db.execute(select(Subscription))).scalars().all()
        assert len(subscriptions) == 1
        assert len(billing_client.attached) == 1

    async def test_default_period_when_provider_omits_it(self, db, make_business, subscription_sync):
        business = await make_business()

        await subscription_sync.checkout_completed(db, business.id, "TIER_1", "sub_1", now=NOW)
        await db.commit()

        _, subscription = await _reload(db, business.id)
        start = subscription.current_period_start.replace(tzinfo=UTC)
        end = subscription.current_period_end.replace(tzinfo=UTC)
        assert end - start == timedelta(days=30)

    async def test_attach_failure_still_activates(self, db, make_business, billing_client):
        billing_client.fail = True
        sync = SubscriptionSync(billing_client, metered_price_id="price_overage")
        business = await make_business()

        await sync.checkout_completed(db, business.id, "TIER_1", "sub_1", now=NOW)
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert business.subscription_status == SubscriptionStatus.ACTIVE.value
        assert subscription.metered_item_id is None

    async def test_unknown_business_is_ignored(self, db, subscription_sync):
        assert await subscription_sync.checkout_completed(db, "missing", "TIER_1", "sub_1") is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestSubscriptionUpdates:
    async def test_updated_changes_status_period_and_plan(self, db, make_subscriber, subscription_sync):
        business = await make_subscriber()
        external_id = f"sub_{business.id[:8]}"
        period_end = NOW + timedelta(days=31)

        await subscription_sync.subscription_updated(
            db,
            external_id,
            "past_due",
            period_start=NOW,
            period_end=period_end,
            cancel_at_period_end=True,
            plan_type="TIER_3",
            now=NOW,
        )
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert subscription.status == SubscriptionStatus.PAST_DUE.value
        assert business.subscription_status == SubscriptionStatus.PAST_DUE.value
        assert business.plan_type == PlanType.TIER_3.value
        assert subscription.cancel_at_period_end is True
        assert subscription.current_period_end.replace(tzinfo=UTC) == period_end

    async def test_reactivation_attaches_missing_item(
        self, db, make_subscriber, subscription_sync, billing_client
    ):
        business = await make_subscriber(metered_item_id=None)
        external_id = f"sub_{business.id[:8]}"

        await subscription_sync.subscription_updated(db, external_id, "active", now=NOW)
        await db.commit()

        _, subscription = await _reload(db, business.id)
        assert subscription.metered_item_id == f"si_{external_id}"
        assert billing_client.attached == [(external_id, "price_overage")]

    async def test_deleted_cancels_and_suspends(self, db, make_subscriber, subscription_sync):
        business = await make_subscriber()

        await subscription_sync.subscription_deleted(db, f"sub_{business.id[:8]}", now=NOW)
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert subscription.canceled_at is not None
        assert business.subscription_status == SubscriptionStatus.CANCELED.value
        assert business.is_active is False

    async def test_payment_failed_suspends_without_touching_business_status(
        self, db, make_subscriber, subscription_sync
    ):
        business = await make_subscriber()

        await subscription_sync.invoice_payment_failed(db, f"sub_{business.id[:8]}")
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert subscription.status == SubscriptionStatus.PAST_DUE.value
        assert business.is_active is False
        assert business.subscription_status == SubscriptionStatus.ACTIVE.value

    async def test_unknown_subscription_is_ignored(self, db, subscription_sync):
        assert await subscription_sync.subscription_updated(db, "sub_nope", "active") is None
        assert await subscription_sync.subscription_deleted(db, "sub_nope") is None
        assert await subscription_sync.invoice_payment_failed(db, "sub_nope") is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestOutOfOrderDelivery:
    async def test_update_creates_subscription_from_metadata(
        self, db, make_business, subscription_sync, billing_client
    ):
        business = await make_business(trial_minutes_used=7, trial_ends_at=NOW + timedelta(days=1))
        period_end = NOW + timedelta(days=31)

        subscription = await subscription_sync.subscription_updated(
            db,
            "sub_new",
            "active",
            period_start=NOW,
            period_end=period_end,
            plan_type="TIER_3",
            business_id=business.id,
            customer_id="cus_new",
            now=NOW,
        )
        await db.commit()

        assert subscription is not None
        business, subscription = await _reload(db, business.id)
        assert subscription.external_subscription_id == "sub_new"
        assert subscription.external_customer_id == "cus_new"
        assert subscription.current_period_end.replace(tzinfo=UTC) == period_end
        assert subscription.metered_item_id == "si_sub_new"
        assert business.subscription_status == SubscriptionStatus.ACTIVE.value
        assert business.plan_type == PlanType.TIER_3.value
        assert business.trial_ends_at is None
        assert business.trial_minutes_used == 0
        assert business.billing_customer_id == "cus_new"

    async def test_checkout_after_update_keeps_real_period(self, db, make_business, subscription_sync):
        business = await make_business()
        period_start = NOW - timedelta(days=3)
        period_end = NOW + timedelta(days=28)
        await subscription_sync.subscription_updated(
            db,
            "sub_new",
            "active",
            period_start=period_start,
            period_end=period_end,
            business_id=business.id,
            now=NOW,
        )
        await db.commit()

        await subscription_sync.checkout_completed(db, business.id, "TIER_1", "sub_new", now=NOW)
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert subscription.current_period_start.replace(tzinfo=UTC) == period_start
        assert subscription.current_period_end.replace(tzinfo=UTC) == period_end
        assert business.plan_type == PlanType.TIER_1.value
        subscriptions = (await db.execute(select(Subscription))).scalars().all()
        assert len(subscriptions) == 1

    async def test_deleted_before_checkout_stays_canceled(self, db, make_business, subscription_sync):
        business = await make_business(trial_minutes_used=9)

        await subscription_sync.subscription_deleted(
            db, "sub_gone", business_id=business.id, now=NOW
        )
        await db.commit()
        await subscription_sync.checkout_completed(db, business.id, "TIER_1", "sub_gone", now=NOW)
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert business.subscription_status == SubscriptionStatus.CANCELED.value
        assert business.is_active is False
        assert business.trial_minutes_used == 0

    async def test_stale_update_after_delete_is_ignored(self, db, make_subscriber, subscription_sync):
        business = await make_subscriber()
        external_id = f"sub_{business.id[:8]}"
        await subscription_sync.subscription_deleted(db, external_id, now=NOW)
        await db.commit()

        await subscription_sync.subscription_updated(db, external_id, "active", now=NOW)
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert business.is_active is False

    async def test_event_for_replaced_subscription_is_ignored(
        self, db, make_subscriber, subscription_sync
    ):
        business = await make_subscriber()

        result = await subscription_sync.subscription_updated(
            db, "sub_old", "past_due", business_id=business.id, now=NOW
        )
        await db.commit()

        assert result is None
        business, subscription = await _reload(db, business.id)
        assert subscription.external_subscription_id == f"sub_{business.id[:8]}"
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    async def test_resubscribe_replaces_canceled_row(self, db, make_subscriber, subscription_sync):
        business = await make_subscriber(status=SubscriptionStatus.CANCELED, is_active=False)

        await subscription_sync.subscription_updated(
            db, "sub_again", "active", business_id=business.id, now=NOW
        )
        await db.commit()

        business, subscription = await _reload(db, business.id)
        assert subscription.external_subscription_id == "sub_again"
        assert subscription.metered_item_id == "si_sub_again"
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert business.is_active is True


@pytest.mark.unit
@pytest.mark.asyncio
class TestStripeBillingClient:
    async def test_attach_returns_item_id(self):
        client = StripeBillingClient(api_key="sk_test_x")
        with patch("ringledger.services.subscription_sync.stripe.SubscriptionItem.create") as create:
            create.return_value = {"id": "si_new"}
            item_id = await client.attach_metered_item("sub_1", "price_1")

        assert item_id == "si_new"
        assert create.call_args.kwargs["subscription"] == "sub_1"
        assert create.call_args.kwargs["price"] == "price_1"

    async def test_attach_wraps_provider_errors(self):
        client = StripeBillingClient(api_key="sk_test_x")
        with patch("ringledger.services.subscription_sync.stripe.SubscriptionItem.create") as create:
            create.side_effect = stripe.error.StripeError("down")
            with pytest.raises(BillingProviderError):
                await client.attach_metered_item("sub_1", "price_1")
