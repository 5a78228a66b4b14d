"""Read-only ledger views for a business (trial status and period usage)."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ringledger.billing.plans import get_entitlement, overage_minutes
from ringledger.database.models import Business
from ringledger.routes.dependencies import DbSession
from ringledger.routes.schemas import TrialStatusResponse
from ringledger.services.trial import get_trial_status
from ringledger.services.usage import UsageAccumulator, billing_period

router = APIRouter(prefix="/businesses", tags=["businesses"])


class UsageResponse(BaseModel):
    business_id: str
    billing_period: str
    plan_type: str
    included_minutes: int
    minutes_used: int
    overage_minutes: int
    reported_overage_units: int
    last_reported_at: datetime | None = None


async def _get_business_or_404(db: AsyncSession, business_id: str) -> Business:
    result = await db.execute(select(Business).where(Business.id == business_id))
    business = result.scalar_one_or_none()
    if business is None:
        raise HTTPException(status_code=404, detail="Business not found")
    return business


@router.get("/{business_id}/trial", response_model=TrialStatusResponse)
async def business_trial_status(business_id: str, db: DbSession) -> TrialStatusResponse:
    await _get_business_or_404(db, business_id)
    status = await get_trial_status(db, business_id)
    return TrialStatusResponse.from_status(status)


@router.get("/{business_id}/usage", response_model=UsageResponse)
async def business_usage(
    business_id: str,
    db: DbSession,
    period: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
) -> UsageResponse:
    """Usage for a billing period (defaults to the current month)."""
    business = await _get_business_or_404(db, business_id)
    period = period or billing_period()
    usage = await UsageAccumulator().get_period(db, business_id, period)

    minutes_used = usage.minutes_used_total if usage else 0
    return UsageResponse(
        business_id=business_id,
        billing_period=period,
        plan_type=business.plan_type,
        included_minutes=get_entitlement(business.plan_type).included_minutes,
        minutes_used=minutes_used,
        overage_minutes=overage_minutes(business.plan_type, minutes_used),
        reported_overage_units=usage.reported_overage_units if usage else 0,
        last_reported_at=usage.last_reported_at if usage else None,
    )
