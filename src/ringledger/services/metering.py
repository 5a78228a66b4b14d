"""Incremental overage reporting to the metered-billing provider.

Accounting never depends on this module: usage is committed before a report
is attempted. Each range is written to ``inflight_to_units`` before it is sent
and is resent with the same identifier until the provider confirms it, so a
timed-out request that did land is deduplicated by the provider instead of
billed twice. ``reported_overage_units`` only advances on confirmation.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

import stripe
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.billing.plans import SubscriptionStatus, overage_minutes
from ringledger.database.models import (
    Business,
    MeteringReport,
    Subscription,
    UsagePeriod,
    as_utc,
    utcnow,
)
from ringledger.exceptions import MeteringServiceError, NoActiveSubscriptionItemError

logger = structlog.get_logger()


class MeteringClient(Protocol):
    """Outbound metered-usage API."""

    async def report_overage(
        self,
        customer_id: str | None,
        subscription_item_id: str,
        units: int,
        timestamp: datetime,
        identifier: str,
    ) -> None:
        """Submit ``units`` overage minutes. Raises MeteringServiceError on failure."""
        ...


class StripeMeteringClient:
    """Reports overage as Stripe billing meter events.

    The identifier is sent as the meter event identifier. Stripe drops a
    meter event whose identifier it has already seen in the last 24 hours,
    which is what makes resending an in-flight range safe.
    """

    def __init__(self, api_key: str, event_name: str) -> None:
        self.api_key = api_key
        self.event_name = event_name

    async def report_overage(
        self,
        customer_id: str | None,
        subscription_item_id: str,
        units: int,
        timestamp: datetime,
        identifier: str,
    ) -> None:
        if not customer_id:
            raise MeteringServiceError(
                f"no billing customer for subscription item {subscription_item_id}"
            )
        try:
            await asyncio.to_thread(
                stripe.billing.MeterEvent.create,
                api_key=self.api_key,
                event_name=self.event_name,
                identifier=identifier,
                timestamp=int(timestamp.timestamp()),
                payload={"stripe_customer_id": customer_id, "value": str(units)},
            )
        except stripe.error.StripeError as e:
            raise MeteringServiceError(str(e)) from e


class MeteringOutcomeStatus(str, Enum):
    DISABLED = "disabled"
    SKIPPED = "skipped"
    NOTHING_TO_REPORT = "nothing_to_report"
    REPORTED = "reported"
    FAILED = "failed"


@dataclass(frozen=True)
class MeteringOutcome:
    """Result of one reporting attempt for a usage period."""

    status: MeteringOutcomeStatus
    units: int = 0
    identifier: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class MeteredItem:
    """Where a business's overage is billed, read once per report."""

    business_id: str
    plan_type: str
    customer_id: str | None
    subscription_item_id: str


def report_identifier(usage_period_id: str, from_units: int, to_units: int) -> str:
    """Deterministic identifier for the overage range ``(from_units, to_units]``."""
    return f"{usage_period_id}:{from_units}-{to_units}"


class MeteringReporter:
    """Reports pending overage for a (business, billing period).

    Constructed with ``client=None`` when metering is not configured; every
    report is then an explicit ``DISABLED`` no-op.
    """

    def __init__(self, client: MeteringClient | None, timeout_seconds: float = 5.0) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def _get_metered_subscription(
        self, db: AsyncSession, business_id: str
    ) -> tuple[Subscription, Business]:
        result = await db.execute(
            select(Subscription, Business)
            .join(Business, Business.id == Subscription.business_id)
            .where(Subscription.business_id == business_id)
            .execution_options(populate_existing=True)
        )
        row = result.first()
        if row is None:
            raise NoActiveSubscriptionItemError(business_id)
        subscription, business = row
        if subscription.status != SubscriptionStatus.ACTIVE.value or not subscription.metered_item_id:
            raise NoActiveSubscriptionItemError(business_id)
        return subscription, business

    async def report_pending(
        self,
        db: AsyncSession,
        business_id: str,
        billing_period: str,
        now: datetime | None = None,
    ) -> MeteringOutcome:
        """Report all overage for the period not yet accepted by the provider.

        A range left in flight by an earlier failed or timed-out attempt is
        resent first with its original identifier, then anything newer is
        reported as a second range. Runs in its own transactions on ``db`` and
        never raises for provider failures; the outcome says what happened.
        """
        if self.client is None:
            return MeteringOutcome(MeteringOutcomeStatus.DISABLED)

        now = as_utc(now) or utcnow()
        try:
            subscription, business = await self._get_metered_subscription(db, business_id)
        except NoActiveSubscriptionItemError:
            await db.rollback()
            logger.debug(
                "Skipping overage report, no metered subscription item",
                business_id=business_id,
                billing_period=billing_period,
            )
            return MeteringOutcome(MeteringOutcomeStatus.SKIPPED)

        item = MeteredItem(
            business_id=business.id,
            plan_type=business.plan_type,
            customer_id=subscription.external_customer_id or business.billing_customer_id,
            subscription_item_id=subscription.metered_item_id,
        )
        reported_units = 0
        identifier = None
        while True:
            outcome = await self._report_range(db, item, billing_period, now)
            if outcome is None:
                # Lost the range to a concurrent reporter; move on to what is left
                continue
            if outcome.status != MeteringOutcomeStatus.REPORTED:
                break
            reported_units += outcome.units
            identifier = outcome.identifier

        if outcome.status == MeteringOutcomeStatus.FAILED or not reported_units:
            return outcome
        return MeteringOutcome(
            MeteringOutcomeStatus.REPORTED, units=reported_units, identifier=identifier
        )

    async def _report_range(
        self,
        db: AsyncSession,
        item: MeteredItem,
        billing_period: str,
        now: datetime,
    ) -> MeteringOutcome | None:
        """Send one overage range; None when another reporter confirmed it first."""
        business_id = item.business_id
        # Held only while the range is chosen, never across the provider call
        result = await db.execute(
            select(UsagePeriod)
            .where(UsagePeriod.business_id == business_id)
            .where(UsagePeriod.billing_period == billing_period)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        usage = result.scalar_one_or_none()
        if usage is None:
            await db.rollback()
            return MeteringOutcome(MeteringOutcomeStatus.NOTHING_TO_REPORT)

        usage_period_id = usage.id
        from_units = usage.reported_overage_units
        if usage.inflight_to_units is not None and usage.inflight_to_units > from_units:
            # The provider may already hold this range; resend it unchanged
            to_units = usage.inflight_to_units
            await db.rollback()
        else:
            to_units = overage_minutes(item.plan_type, usage.minutes_used_total)
            if to_units <= from_units:
                await db.rollback()
                return MeteringOutcome(MeteringOutcomeStatus.NOTHING_TO_REPORT)
            usage.inflight_to_units = to_units
            await db.commit()

        pending = to_units - from_units
        identifier = report_identifier(usage_period_id, from_units, to_units)
        try:
            await asyncio.wait_for(
                self.client.report_overage(
                    customer_id=item.customer_id,
                    subscription_item_id=item.subscription_item_id,
                    units=pending,
                    timestamp=now,
                    identifier=identifier,
                ),
                timeout=self.timeout_seconds,
            )
        except (MeteringServiceError, TimeoutError) as e:
            error = str(e) or type(e).__name__
            logger.warning(
                "Overage report failed, range stays in flight",
                business_id=business_id,
                billing_period=billing_period,
                units=pending,
                identifier=identifier,
                error=error,
            )
            return MeteringOutcome(
                MeteringOutcomeStatus.FAILED,
                units=pending,
                identifier=identifier,
                error=error,
            )

        advanced = await db.execute(
            update(UsagePeriod)
            .where(UsagePeriod.id == usage_period_id)
            .where(UsagePeriod.reported_overage_units == from_units)
            .values(reported_overage_units=to_units, inflight_to_units=None, last_reported_at=now)
            .returning(UsagePeriod.id)
        )
        if advanced.scalar_one_or_none() is None:
            # Another reporter confirmed this range first; the provider dropped
            # our copy by identifier, so do not record it again.
            await db.rollback()
            logger.info(
                "Overage range confirmed by a concurrent reporter",
                usage_period_id=usage_period_id,
                identifier=identifier,
            )
            return None

        db.add(
            MeteringReport(
                usage_period_id=usage_period_id,
                units=pending,
                from_units=from_units,
                to_units=to_units,
                identifier=identifier,
                reported_at=now,
            )
        )
        await db.commit()

        logger.info(
            "Overage reported",
            business_id=business_id,
            billing_period=billing_period,
            units=pending,
            reported_overage_units=to_units,
        )
        return MeteringOutcome(MeteringOutcomeStatus.REPORTED, units=pending, identifier=identifier)

    async def reconcile_period(
        self,
        db: AsyncSession,
        billing_period: str,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Catch up every usage row of a period whose overage is not fully reported.

        Returns counts per outcome status.
        """
        counts = {status.value: 0 for status in MeteringOutcomeStatus}
        if self.client is None:
            return counts

        result = await db.execute(
            select(UsagePeriod.business_id)
            .where(UsagePeriod.billing_period == billing_period)
            .where(UsagePeriod.minutes_used_total > 0)
            .order_by(UsagePeriod.business_id)
        )
        business_ids = list(result.scalars().all())
        await db.rollback()

        for business_id in business_ids:
            outcome = await self.report_pending(db, business_id, billing_period, now=now)
            counts[outcome.status.value] += 1

        logger.info("Metering reconciliation complete", billing_period=billing_period, **counts)
        return counts
