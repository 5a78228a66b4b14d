"""Database models."""

from .base import Base, as_utc, utcnow
from .billing import BillingEvent, MeteringReport, Subscription, UsagePeriod
from .core import Business, CallRecord, TrialClaim

__all__ = [
    "Base",
    "BillingEvent",
    "Business",
    "CallRecord",
    "MeteringReport",
    "Subscription",
    "TrialClaim",
    "UsagePeriod",
    "as_utc",
    "utcnow",
]
