"""Trial eligibility and start routes."""

import structlog
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ringledger.exceptions import InvalidPhoneNumberError, PhoneAlreadyClaimedError
from ringledger.routes.dependencies import DbSession
from ringledger.routes.schemas import TrialStatusResponse
from ringledger.services.trial import check_trial_eligibility, get_trial_status, start_trial

logger = structlog.get_logger()

router = APIRouter(prefix="/trial", tags=["trial"])


class EligibilityRequest(BaseModel):
    business_phone: str = Field(..., max_length=32)


class EligibilityResponse(BaseModel):
    eligible: bool
    normalized_phone: str | None = None
    reason: str | None = None


class StartTrialRequest(BaseModel):
    business_phone: str = Field(..., max_length=32)
    name: str | None = Field(default=None, max_length=255)
    billing_customer_id: str | None = Field(default=None, max_length=255)


class StartTrialResponse(BaseModel):
    business_id: str
    trial: TrialStatusResponse


@router.post("/eligibility", response_model=EligibilityResponse)
async def trial_eligibility(data: EligibilityRequest, db: DbSession) -> EligibilityResponse:
    """Check whether a business phone number can still start a free trial."""
    eligibility = await check_trial_eligibility(db, data.business_phone)
    return EligibilityResponse(
        eligible=eligibility.eligible,
        normalized_phone=eligibility.normalized_phone,
        reason=eligibility.reason,
    )


@router.post("/start", response_model=StartTrialResponse, status_code=201)
async def trial_start(data: StartTrialRequest, db: DbSession) -> StartTrialResponse:
    try:
        business = await start_trial(
            db,
            data.business_phone,
            name=data.name,
            billing_customer_id=data.billing_customer_id,
        )
    except InvalidPhoneNumberError as e:
        raise HTTPException(
            status_code=400, detail={"reason": e.reason, "message": str(e)}
        ) from e
    except PhoneAlreadyClaimedError as e:
        raise HTTPException(
            status_code=409, detail={"reason": e.reason, "message": str(e)}
        ) from e

    status = await get_trial_status(db, business.id)
    return StartTrialResponse(
        business_id=business.id,
        trial=TrialStatusResponse.from_status(status),
    )
