"""Per-period usage accumulation and incremental overage computation."""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.billing.plans import PlanType, overage_minutes
from ringledger.database.connection import insert_for
from ringledger.database.models import UsagePeriod, utcnow

logger = structlog.get_logger()


def billing_period(now: datetime | None = None) -> str:
    """Calendar-month billing period key (``YYYY-MM``) in UTC."""
    now = now or utcnow()
    if now.tzinfo is not None:
        now = now.astimezone(UTC)
    return f"{now.year:04d}-{now.month:02d}"


@dataclass(frozen=True)
class UsageDelta:
    """Result of adding minutes to a usage period."""

    business_id: str
    billing_period: str
    minutes_added: int
    previous_total: int
    new_total: int
    overage_before: int
    overage_after: int
    reported_overage_units: int

    @property
    def incremental_overage(self) -> int:
        """Overage caused by this addition alone (never negative)."""
        return self.overage_after - self.overage_before

    @property
    def pending_overage(self) -> int:
        """Overage not yet accepted by the metering provider, including past misses."""
        return max(0, self.overage_after - self.reported_overage_units)


class UsageAccumulator:
    """Maintains ``minutes_used_total`` per (business, billing period).

    The increment is a single ``UPDATE ... SET total = total + n RETURNING``
    so concurrent calls for the same business can never lose an update; the
    previous total is derived from the returned value rather than read
    beforehand.
    """

    async def _ensure_period(self, db: AsyncSession, business_id: str, period: str) -> None:
        insert = insert_for(db)
        stmt = (
            insert(UsagePeriod)
            .values(
                business_id=business_id,
                billing_period=period,
                minutes_used_total=0,
                reported_overage_units=0,
            )
            .on_conflict_do_nothing(index_elements=["business_id", "billing_period"])
        )
        await db.execute(stmt)

    async def add_minutes(
        self,
        db: AsyncSession,
        business_id: str,
        plan: PlanType | str | None,
        period: str,
        minutes: int,
    ) -> UsageDelta:
        """Atomically add billed minutes and compute the overage they caused.

        Does not commit; the caller commits together with the call record.
        """
        if minutes < 0:
            raise ValueError(f"Billed minutes must be non-negative: {minutes}")

        await self._ensure_period(db, business_id, period)

        result = await db.execute(
            update(UsagePeriod)
            .where(UsagePeriod.business_id == business_id)
            .where(UsagePeriod.billing_period == period)
            .values(minutes_used_total=UsagePeriod.minutes_used_total + minutes)
            .returning(UsagePeriod.minutes_used_total, UsagePeriod.reported_overage_units)
        )
        new_total, reported = result.one()
        previous_total = new_total - minutes

        delta = UsageDelta(
            business_id=business_id,
            billing_period=period,
            minutes_added=minutes,
            previous_total=previous_total,
            new_total=new_total,
            overage_before=overage_minutes(plan, previous_total),
            overage_after=overage_minutes(plan, new_total),
            reported_overage_units=reported,
        )
        logger.debug(
            "Usage accumulated",
            business_id=business_id,
            billing_period=period,
            minutes_added=minutes,
            new_total=new_total,
            incremental_overage=delta.incremental_overage,
        )
        return delta

    async def get_period_usage(self, db: AsyncSession, business_id: str, period: str) -> int:
        """Total billed minutes for a business in a period (0 if none yet)."""
        result = await db.execute(
            select(UsagePeriod.minutes_used_total)
            .where(UsagePeriod.business_id == business_id)
            .where(UsagePeriod.billing_period == period)
        )
        return result.scalar_one_or_none() or 0

    async def get_period(
        self, db: AsyncSession, business_id: str, period: str
    ) -> UsagePeriod | None:
        result = await db.execute(
            select(UsagePeriod)
            .where(UsagePeriod.business_id == business_id)
            .where(UsagePeriod.billing_period == period)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
