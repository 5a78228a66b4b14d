"""Mirror billing-provider subscription lifecycle onto businesses.

Handlers are upserts keyed on the provider's subscription id, falling back to
the business id carried in subscription metadata, so replayed and reordered
webhooks converge on the same state. They do not commit; the webhook route
commits together with the BillingEvent dedup row.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Protocol

import stripe
import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.billing.plans import PlanType, SubscriptionStatus, parse_plan_type
from ringledger.database.models import Business, Subscription, as_utc, utcnow
from ringledger.exceptions import BillingProviderError

logger = structlog.get_logger()

# Provisional period length until the first subscription.updated arrives
DEFAULT_PERIOD_DAYS = 30

PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(provider_status: str | None) -> SubscriptionStatus:
    """Map a provider subscription status; unknown statuses are treated as PAST_DUE."""
    return PROVIDER_STATUS_MAP.get((provider_status or "").lower(), SubscriptionStatus.PAST_DUE)


class BillingClient(Protocol):
    """Billing-provider operations other than usage reporting."""

    async def attach_metered_item(self, external_subscription_id: str, price_id: str) -> str:
        """Add the metered price to a subscription and return the item id."""
        ...


class StripeBillingClient:
    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    async def attach_metered_item(self, external_subscription_id: str, price_id: str) -> str:
        try:
            item = await asyncio.to_thread(
                stripe.SubscriptionItem.create,
                api_key=self.api_key,
                subscription=external_subscription_id,
                price=price_id,
            )
        except stripe.error.StripeError as e:
            raise BillingProviderError("attach_metered_item", str(e)) from e
        return item["id"]


class SubscriptionSync:
    """Applies checkout, subscription and invoice events to the ledger."""

    def __init__(
        self,
        billing_client: BillingClient | None = None,
        metered_price_id: str | None = None,
    ) -> None:
        self.billing_client = billing_client
        self.metered_price_id = metered_price_id

    async def _get_business(self, db: AsyncSession, business_id: str) -> Business | None:
        result = await db.execute(
            select(Business)
            .where(Business.id == business_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_subscription(
        self, db: AsyncSession, external_subscription_id: str
    ) -> Subscription | None:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _upsert_subscription(
        self,
        db: AsyncSession,
        business: Business,
        external_subscription_id: str,
        period_start: datetime | None,
        period_end: datetime | None,
        now: datetime,
    ) -> Subscription:
        """Find or create the business's single subscription row.

        Period bounds are only written on create or resubscribe; an existing
        row keeps the bounds it already has.
        """
        result = await db.execute(
            select(Subscription)
            .where(
                or_(
                    Subscription.external_subscription_id == external_subscription_id,
                    Subscription.business_id == business.id,
                )
            )
            .execution_options(populate_existing=True)
        )
        subscription = result.scalars().first()

        period_start = as_utc(period_start) or now
        period_end = as_utc(period_end) or period_start + timedelta(days=DEFAULT_PERIOD_DAYS)
        if subscription is None:
            subscription = Subscription(
                business_id=business.id,
                external_subscription_id=external_subscription_id,
                plan_type=business.plan_type,
                current_period_start=period_start,
                current_period_end=period_end,
            )
            db.add(subscription)
        elif subscription.external_subscription_id != external_subscription_id:
            # Resubscribed: the new provider subscription has no metered item yet
            subscription.external_subscription_id = external_subscription_id
            subscription.metered_item_id = None
            subscription.current_period_start = period_start
            subscription.current_period_end = period_end
            subscription.cancel_at_period_end = False
            subscription.canceled_at = None
        return subscription

    async def _resolve(
        self,
        db: AsyncSession,
        external_subscription_id: str,
        business_id: str | None,
        period_start: datetime | None,
        period_end: datetime | None,
        now: datetime,
    ) -> tuple[Subscription, Business] | None:
        """Load the subscription and its business, creating the row when only
        the business is known (events may arrive before checkout.completed).
        """
        subscription = await self._find_subscription(db, external_subscription_id)
        if subscription is not None:
            business = await self._get_business(db, subscription.business_id)
            return (subscription, business) if business is not None else None

        business = await self._get_business(db, business_id) if business_id else None
        if business is None:
            logger.warning(
                "Ignoring event for unknown subscription",
                external_subscription_id=external_subscription_id,
                business_id=business_id,
            )
            return None

        current = await db.execute(
            select(Subscription.external_subscription_id, Subscription.status).where(
                Subscription.business_id == business.id
            )
        )
        held = current.first()
        if held is not None and held.status != SubscriptionStatus.CANCELED.value:
            # Only a canceled row may be replaced by a different provider subscription
            logger.warning(
                "Ignoring event for a subscription the business does not hold",
                external_subscription_id=external_subscription_id,
                business_id=business.id,
                held_subscription_id=held.external_subscription_id,
            )
            return None

        subscription = await self._upsert_subscription(
            db, business, external_subscription_id, period_start, period_end, now
        )
        logger.info(
            "Subscription created ahead of checkout",
            business_id=business.id,
            external_subscription_id=external_subscription_id,
        )
        return subscription, business

    async def _ensure_metered_item(self, subscription: Subscription) -> None:
        """Attach the metered overage price once; failures are retried on the next sync."""
        if subscription.metered_item_id or not self.billing_client or not self.metered_price_id:
            return
        try:
            subscription.metered_item_id = await self.billing_client.attach_metered_item(
                subscription.external_subscription_id, self.metered_price_id
            )
            logger.info(
                "Attached metered item",
                business_id=subscription.business_id,
                metered_item_id=subscription.metered_item_id,
            )
        except BillingProviderError as e:
            logger.warning(
                "Failed to attach metered item",
                business_id=subscription.business_id,
                external_subscription_id=subscription.external_subscription_id,
                error=e.original_error,
            )

    def _apply_status(
        self,
        subscription: Subscription,
        business: Business,
        status: SubscriptionStatus,
        now: datetime,
    ) -> None:
        subscription.status = status.value
        business.subscription_status = status.value
        if status == SubscriptionStatus.ACTIVE:
            business.is_active = True
        elif status == SubscriptionStatus.CANCELED:
            business.is_active = False
            subscription.canceled_at = subscription.canceled_at or now

    def _mark_converted(self, business: Business, customer_id: str | None) -> None:
        # A business with a subscription row never returns to the trial
        business.trial_started_at = None
        business.trial_ends_at = None
        business.trial_minutes_used = 0
        if customer_id and not business.billing_customer_id:
            business.billing_customer_id = customer_id

    async def checkout_completed(
        self,
        db: AsyncSession,
        business_id: str,
        plan_type: PlanType | str | None,
        external_subscription_id: str,
        customer_id: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        now: datetime | None = None,
    ) -> Subscription | None:
        """Activate a paid plan after checkout.

        Clears the trial so the business is billed against its plan from now on.
        Returns None when the business does not exist.
        """
        now = as_utc(now) or utcnow()
        business = await self._get_business(db, business_id)
        if business is None:
            logger.warning("Checkout completed for unknown business", business_id=business_id)
            return None

        subscription = await self._upsert_subscription(
            db, business, external_subscription_id, period_start, period_end, now
        )
        if (
            subscription.status == SubscriptionStatus.CANCELED.value
            and subscription.canceled_at is not None
        ):
            # Deletion arrived first; a canceled provider subscription stays canceled
            logger.info(
                "Checkout completed for canceled subscription, keeping it canceled",
                business_id=business.id,
                external_subscription_id=external_subscription_id,
            )
            self._mark_converted(business, customer_id)
            await db.flush()
            return subscription

        plan = parse_plan_type(plan_type)
        subscription.external_customer_id = customer_id or subscription.external_customer_id
        subscription.plan_type = plan.value
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        self._apply_status(subscription, business, SubscriptionStatus.ACTIVE, now)
        await self._ensure_metered_item(subscription)

        business.plan_type = plan.value
        self._mark_converted(business, customer_id)

        await db.flush()
        logger.info(
            "Subscription activated",
            business_id=business.id,
            plan_type=plan.value,
            external_subscription_id=external_subscription_id,
        )
        return subscription

    async def subscription_updated(
        self,
        db: AsyncSession,
        external_subscription_id: str,
        provider_status: str | None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        cancel_at_period_end: bool = False,
        plan_type: PlanType | str | None = None,
        business_id: str | None = None,
        customer_id: str | None = None,
        now: datetime | None = None,
    ) -> Subscription | None:
        """Mirror a subscription update.

        An unknown subscription is created from ``business_id`` (the
        subscription's metadata). Returns None when neither resolves.
        """
        now = as_utc(now) or utcnow()
        resolved = await self._resolve(
            db, external_subscription_id, business_id, period_start, period_end, now
        )
        if resolved is None:
            return None
        subscription, business = resolved

        status = map_provider_status(provider_status)
        if (
            subscription.status == SubscriptionStatus.CANCELED.value
            and subscription.canceled_at is not None
            and status != SubscriptionStatus.CANCELED
        ):
            logger.info(
                "Ignoring stale update for canceled subscription",
                business_id=business.id,
                provider_status=provider_status,
            )
            return subscription

        if period_start is not None:
            subscription.current_period_start = as_utc(period_start)
        if period_end is not None:
            subscription.current_period_end = as_utc(period_end)
        subscription.cancel_at_period_end = cancel_at_period_end
        subscription.external_customer_id = customer_id or subscription.external_customer_id

        if plan_type is not None and parse_plan_type(plan_type) != PlanType.NONE:
            subscription.plan_type = parse_plan_type(plan_type).value
            business.plan_type = subscription.plan_type

        self._apply_status(subscription, business, status, now)
        self._mark_converted(business, customer_id)
        if status == SubscriptionStatus.ACTIVE:
            await self._ensure_metered_item(subscription)

        await db.flush()
        logger.info(
            "Subscription updated",
            business_id=business.id,
            provider_status=provider_status,
            status=status.value,
        )
        return subscription

    async def subscription_deleted(
        self,
        db: AsyncSession,
        external_subscription_id: str,
        business_id: str | None = None,
        customer_id: str | None = None,
        now: datetime | None = None,
    ) -> Subscription | None:
        now = as_utc(now) or utcnow()
        resolved = await self._resolve(db, external_subscription_id, business_id, None, None, now)
        if resolved is None:
            return None
        subscription, business = resolved

        subscription.external_customer_id = customer_id or subscription.external_customer_id
        self._apply_status(subscription, business, SubscriptionStatus.CANCELED, now)
        self._mark_converted(business, customer_id)
        await db.flush()
        logger.info("Subscription canceled", business_id=business.id)
        return subscription

    async def invoice_payment_failed(
        self,
        db: AsyncSession,
        external_subscription_id: str,
    ) -> Subscription | None:
        """Suspend call answering until payment succeeds.

        Only the subscription row goes PAST_DUE; the business keeps its
        subscription status and trial fields.
        """
        subscription = await self._find_subscription(db, external_subscription_id)
        if subscription is None:
            logger.warning(
                "Ignoring failed invoice for unknown subscription",
                external_subscription_id=external_subscription_id,
            )
            return None
        business = await self._get_business(db, subscription.business_id)
        if business is None:
            return None

        subscription.status = SubscriptionStatus.PAST_DUE.value
        business.is_active = False
        await db.flush()
        logger.warning("Invoice payment failed, business suspended", business_id=business.id)
        return subscription
