"""Idempotent recording of completed calls.

The unique ``external_call_id`` is the only serialization point: exactly one
delivery of a call wins the insert and does the accounting; every other
delivery, concurrent or late, only refreshes descriptive fields.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.billing.plans import clamp_duration_seconds, get_entitlement, to_billable_minutes
from ringledger.database.connection import insert_for
from ringledger.database.models import Business, CallRecord, as_utc, utcnow
from ringledger.exceptions import BusinessNotFoundError
from ringledger.services.call_events import CallEvent
from ringledger.services.metering import MeteringOutcome, MeteringReporter
from ringledger.services.trial import add_trial_minutes
from ringledger.services.usage import UsageAccumulator, UsageDelta, billing_period

logger = structlog.get_logger()

# Fields a redelivery may refresh; billing fields are fixed by the first delivery
DESCRIPTIVE_FIELDS = (
    "transcript",
    "summary",
    "caller_name",
    "caller_phone",
    "issue_description",
    "lead_tag",
    "intake",
    "extras",
)


class RecordOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class RecordResult:
    """What recording a call event did."""

    outcome: RecordOutcome
    call_record_id: str | None
    business_id: str
    billed_minutes: int
    billing_period: str
    usage: UsageDelta | None = None
    trial_minutes_used: int | None = None
    metering: MeteringOutcome | None = None


class CallRecorder:
    def __init__(
        self,
        accumulator: UsageAccumulator,
        reporter: MeteringReporter,
        max_duration_seconds: int | None = None,
    ) -> None:
        self.accumulator = accumulator
        self.reporter = reporter
        self.max_duration_seconds = max_duration_seconds

    async def resolve_business(self, db: AsyncSession, event: CallEvent) -> Business:
        """Find the business a call belongs to.

        Tries the business id from call metadata, then the voice agent id,
        then an active business whose line or forwarding number matches.

        Raises:
            BusinessNotFoundError: No business matches any reference.
        """
        if event.client_id:
            result = await db.execute(select(Business).where(Business.id == event.client_id))
            business = result.scalar_one_or_none()
            if business is not None:
                return business

        if event.agent_id:
            result = await db.execute(
                select(Business).where(Business.retell_agent_id == event.agent_id)
            )
            business = result.scalar_one_or_none()
            if business is not None:
                return business

        if event.forwarded_from_number:
            result = await db.execute(
                select(Business)
                .where(Business.is_active.is_(True))
                .where(
                    or_(
                        Business.business_line_phone == event.forwarded_from_number,
                        Business.primary_forwarding_number == event.forwarded_from_number,
                    )
                )
                .order_by(Business.created_at)
                .limit(1)
            )
            business = result.scalar_one_or_none()
            if business is not None:
                return business

        raise BusinessNotFoundError(event.business_reference)

    def _descriptive_values(self, event: CallEvent, business: Business) -> dict[str, Any]:
        intake = event.intake
        lead_tag = event.lead_tag.value if get_entitlement(business.plan_type).lead_tagging else None
        return {
            "transcript": event.transcript,
            "summary": intake.summary,
            "caller_name": intake.name,
            "caller_phone": intake.phone,
            "issue_description": intake.issue_description,
            "emergency_flag": intake.emergency,
            "lead_tag": lead_tag,
            "intake": intake.known_fields() or None,
            "extras": intake.extras or None,
        }

    async def record(
        self,
        db: AsyncSession,
        event: CallEvent,
        now: datetime | None = None,
    ) -> RecordResult:
        """Record a call event exactly once and account for its minutes.

        The accounting transaction is committed before overage is reported,
        so a metering failure can never undo or block it.

        Raises:
            BusinessNotFoundError: The call cannot be attributed to a business.
        """
        now = as_utc(now) or utcnow()
        business = await self.resolve_business(db, event)
        business_id = business.id
        duration_seconds = clamp_duration_seconds(event.duration_seconds, self.max_duration_seconds)
        billed_minutes = to_billable_minutes(duration_seconds, self.max_duration_seconds)
        period = billing_period(now)
        descriptive = self._descriptive_values(event, business)

        insert = insert_for(db)
        result = await db.execute(
            insert(CallRecord)
            .values(
                external_call_id=event.external_call_id,
                business_id=business_id,
                event_type=event.event_type,
                duration_seconds=duration_seconds,
                billed_minutes=billed_minutes,
                billing_period=period,
                missed_call_recovery=event.missed_call_recovery,
                **descriptive,
            )
            .on_conflict_do_nothing(index_elements=["external_call_id"])
            .returning(CallRecord.id)
        )
        call_record_id = result.scalar_one_or_none()

        if call_record_id is None:
            return await self._refresh_duplicate(db, event, duration_seconds, descriptive)

        delta = await self.accumulator.add_minutes(
            db, business_id, business.plan_type, period, billed_minutes
        )
        trial_minutes_used = await add_trial_minutes(db, business_id, billed_minutes)
        await db.commit()

        logger.info(
            "Call recorded",
            call_id=event.external_call_id,
            business_id=business_id,
            billed_minutes=billed_minutes,
            billing_period=period,
            period_total=delta.new_total,
            trial_minutes_used=trial_minutes_used,
        )

        metering = None
        if delta.pending_overage > 0:
            try:
                metering = await self.reporter.report_pending(db, business_id, period, now=now)
            except Exception as e:
                # Accounting is committed; the reconciliation job catches up
                await db.rollback()
                logger.warning(
                    "Overage reporting raised, left for reconciliation",
                    business_id=business_id,
                    billing_period=period,
                    error=str(e),
                )

        return RecordResult(
            outcome=RecordOutcome.CREATED,
            call_record_id=call_record_id,
            business_id=business_id,
            billed_minutes=billed_minutes,
            billing_period=period,
            usage=delta,
            trial_minutes_used=trial_minutes_used,
            metering=metering,
        )

    async def _refresh_duplicate(
        self,
        db: AsyncSession,
        event: CallEvent,
        duration_seconds: int,
        descriptive: dict[str, Any],
    ) -> RecordResult:
        result = await db.execute(
            select(CallRecord)
            .where(CallRecord.external_call_id == event.external_call_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one()

        if record.duration_seconds != duration_seconds:
            logger.info(
                "Redelivered call reports a different duration, keeping the first",
                call_id=event.external_call_id,
                recorded_seconds=record.duration_seconds,
                redelivered_seconds=duration_seconds,
            )

        for name in DESCRIPTIVE_FIELDS:
            value = descriptive[name]
            if value not in (None, "", {}):
                setattr(record, name, value)
        if descriptive["emergency_flag"]:
            record.emergency_flag = True
        if event.has_analysis:
            record.missed_call_recovery = False
        await db.commit()

        logger.info(
            "Duplicate call event",
            call_id=event.external_call_id,
            business_id=record.business_id,
            event_type=event.event_type,
        )
        return RecordResult(
            outcome=RecordOutcome.DUPLICATE,
            call_record_id=record.id,
            business_id=record.business_id,
            billed_minutes=record.billed_minutes,
            billing_period=record.billing_period,
        )
