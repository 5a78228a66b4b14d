"""Response models shared by several routers."""

from datetime import datetime

from pydantic import BaseModel

from ringledger.services.trial import TrialStatus


class TrialStatusResponse(BaseModel):
    is_on_trial: bool
    minutes_used: int
    minutes_remaining: int
    is_exhausted: bool
    is_expired: bool
    trial_ends_at: datetime | None = None
    days_remaining: int

    @classmethod
    def from_status(cls, status: TrialStatus) -> "TrialStatusResponse":
        return cls(
            is_on_trial=status.is_on_trial,
            minutes_used=status.minutes_used,
            minutes_remaining=status.minutes_remaining,
            is_exhausted=status.is_exhausted,
            is_expired=status.is_expired,
            trial_ends_at=status.trial_ends_at,
            days_remaining=status.days_remaining,
        )
