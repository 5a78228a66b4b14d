"""Free-trial ledger.

Trial status is never stored. It is derived on every read from the
business's trial fields, whether it has ever subscribed, the current period's
usage and the clock. A business that has subscribed stays converted through
PAST_DUE and CANCELED; it never falls back onto the trial.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.billing.plans import SubscriptionStatus
from ringledger.config import settings
from ringledger.database.connection import insert_for
from ringledger.database.models import Business, Subscription, TrialClaim, as_utc, utcnow
from ringledger.exceptions import InvalidPhoneNumberError, PhoneAlreadyClaimedError
from ringledger.services.phone import normalize_e164
from ringledger.services.usage import UsageAccumulator, billing_period

logger = structlog.get_logger()

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class TrialStatus:
    """Trial view of a business, consumed by the dashboard and access gating.

    ``is_exhausted`` and ``is_expired`` are independent; ``is_on_trial=False``
    overrides both.
    """

    is_on_trial: bool
    minutes_used: int
    minutes_remaining: int
    is_exhausted: bool
    is_expired: bool
    trial_ends_at: datetime | None
    days_remaining: int


@dataclass(frozen=True)
class TrialEligibility:
    """Whether a business phone number may start a trial."""

    eligible: bool
    normalized_phone: str | None = None
    reason: str | None = None


def derive_trial_status(
    business: Business | None,
    current_period_usage: int = 0,
    now: datetime | None = None,
    trial_cap: int | None = None,
    converted: bool | None = None,
) -> TrialStatus:
    """Derive trial status from persisted facts.

    Args:
        business: The business, or None when it does not exist.
        current_period_usage: Billed minutes in the current billing period,
            used as ``minutes_used`` once the business is on a paid plan.
        now: Current time (defaults to UTC now).
        trial_cap: Free trial minutes (defaults to ``FREE_TRIAL_MINUTES``).
        converted: Whether the business has a subscription row. When omitted,
            only an ACTIVE subscription status counts as converted.
    """
    cap = settings.FREE_TRIAL_MINUTES if trial_cap is None else trial_cap
    now = as_utc(now) or utcnow()

    if business is None:
        return TrialStatus(
            is_on_trial=False,
            minutes_used=0,
            minutes_remaining=cap,
            is_exhausted=False,
            is_expired=False,
            trial_ends_at=None,
            days_remaining=0,
        )

    if converted is None:
        converted = business.subscription_status == SubscriptionStatus.ACTIVE.value
    is_on_trial = not converted
    trial_ends_at = as_utc(business.trial_ends_at)
    minutes_used = (business.trial_minutes_used or 0) if is_on_trial else current_period_usage
    minutes_remaining = max(0, cap - minutes_used)

    days_remaining = 0
    if is_on_trial and trial_ends_at is not None and now < trial_ends_at:
        days_remaining = math.ceil((trial_ends_at - now).total_seconds() / SECONDS_PER_DAY)

    return TrialStatus(
        is_on_trial=is_on_trial,
        minutes_used=minutes_used,
        minutes_remaining=minutes_remaining,
        is_exhausted=is_on_trial and minutes_remaining <= 0,
        is_expired=is_on_trial and trial_ends_at is not None and now > trial_ends_at,
        trial_ends_at=trial_ends_at,
        days_remaining=days_remaining,
    )


async def get_trial_status(
    db: AsyncSession,
    business_id: str,
    now: datetime | None = None,
) -> TrialStatus:
    """Load a business and its current-period usage and derive its trial status."""
    now = as_utc(now) or utcnow()
    result = await db.execute(
        select(Business)
        .where(Business.id == business_id)
        .execution_options(populate_existing=True)
    )
    business = result.scalar_one_or_none()
    if business is None:
        return derive_trial_status(None, now=now)

    usage = await UsageAccumulator().get_period_usage(db, business.id, billing_period(now))
    subscription_id = (
        await db.execute(select(Subscription.id).where(Subscription.business_id == business.id))
    ).scalar_one_or_none()
    converted = (
        business.subscription_status == SubscriptionStatus.ACTIVE.value
        or subscription_id is not None
    )
    return derive_trial_status(business, usage, now, converted=converted)


async def add_trial_minutes(db: AsyncSession, business_id: str, minutes: int) -> int | None:
    """Atomically add billed minutes to a business's trial counter.

    Applies only while the business has never converted: no active status
    and no subscription row, so a PAST_DUE or CANCELED subscriber is skipped.
    Returns the new counter, or None when the business is not on trial.
    Does not commit.
    """
    result = await db.execute(
        update(Business)
        .where(Business.id == business_id)
        .where(Business.subscription_status != SubscriptionStatus.ACTIVE.value)
        .where(~exists(select(Subscription.id).where(Subscription.business_id == Business.id)))
        .values(trial_minutes_used=Business.trial_minutes_used + minutes)
        .returning(Business.trial_minutes_used)
    )
    return result.scalar_one_or_none()


async def check_trial_eligibility(db: AsyncSession, business_phone: str | None) -> TrialEligibility:
    """One trial per normalized business phone number, across all businesses."""
    normalized = normalize_e164(business_phone)
    if normalized is None:
        return TrialEligibility(eligible=False, reason=InvalidPhoneNumberError.reason)

    result = await db.execute(select(TrialClaim.id).where(TrialClaim.phone_number == normalized))
    if result.scalar_one_or_none() is not None:
        return TrialEligibility(
            eligible=False,
            normalized_phone=normalized,
            reason=PhoneAlreadyClaimedError.reason,
        )
    return TrialEligibility(eligible=True, normalized_phone=normalized)


async def start_trial(
    db: AsyncSession,
    business_phone: str | None,
    name: str | None = None,
    billing_customer_id: str | None = None,
    now: datetime | None = None,
) -> Business:
    """Create a trial business and its TrialClaim in one transaction.

    The claim insert is ``ON CONFLICT DO NOTHING``; if another request won the
    same number in between, nothing is committed.

    Raises:
        InvalidPhoneNumberError: The phone number cannot be normalized.
        PhoneAlreadyClaimedError: The number was already used for a trial.
    """
    eligibility = await check_trial_eligibility(db, business_phone)
    if not eligibility.eligible:
        if eligibility.reason == PhoneAlreadyClaimedError.reason:
            raise PhoneAlreadyClaimedError(eligibility.normalized_phone or "")
        raise InvalidPhoneNumberError(business_phone or "")

    normalized = eligibility.normalized_phone
    now = as_utc(now) or utcnow()

    business = Business(
        name=name or "My Business",
        primary_forwarding_number=normalized,
        billing_customer_id=billing_customer_id,
        trial_started_at=now,
        trial_ends_at=now + timedelta(days=settings.TRIAL_DAYS),
        trial_minutes_used=0,
    )
    db.add(business)
    await db.flush()

    insert = insert_for(db)
    claim = await db.execute(
        insert(TrialClaim)
        .values(phone_number=normalized, business_id=business.id)
        .on_conflict_do_nothing(index_elements=["phone_number"])
        .returning(TrialClaim.id)
    )
    if claim.scalar_one_or_none() is None:
        await db.rollback()
        logger.info("Trial claim lost to concurrent request", phone=normalized)
        raise PhoneAlreadyClaimedError(normalized)

    await db.commit()
    logger.info(
        "Trial started",
        business_id=business.id,
        trial_ends_at=business.trial_ends_at.isoformat(),
    )
    return business


async def expire_trials(db: AsyncSession, now: datetime | None = None) -> int:
    """Suspend businesses whose trial window ended without a subscription.

    Returns the number of businesses suspended.
    """
    now = as_utc(now) or utcnow()
    has_subscription = exists(select(Subscription.id).where(Subscription.business_id == Business.id))
    result = await db.execute(
        select(Business.id)
        .where(Business.trial_ends_at.is_not(None))
        .where(Business.trial_ends_at < now)
        .where(Business.is_active.is_(True))
        .where(Business.subscription_status != SubscriptionStatus.ACTIVE.value)
        .where(~has_subscription)
    )
    business_ids = list(result.scalars().all())
    if not business_ids:
        return 0

    await db.execute(
        update(Business)
        .where(Business.id.in_(business_ids))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Expired trials", count=len(business_ids))
    return len(business_ids)
