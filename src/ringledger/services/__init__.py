"""Ledger services: call recording, usage, trials, metering and subscription sync."""

from ringledger.services.call_recorder import CallRecorder, RecordOutcome, RecordResult
from ringledger.services.metering import (
    MeteringClient,
    MeteringOutcome,
    MeteringOutcomeStatus,
    MeteringReporter,
    StripeMeteringClient,
)
from ringledger.services.subscription_sync import (
    BillingClient,
    StripeBillingClient,
    SubscriptionSync,
)
from ringledger.services.usage import UsageAccumulator, UsageDelta, billing_period

__all__ = [
    "BillingClient",
    "CallRecorder",
    "MeteringClient",
    "MeteringOutcome",
    "MeteringOutcomeStatus",
    "MeteringReporter",
    "RecordOutcome",
    "RecordResult",
    "StripeBillingClient",
    "StripeMeteringClient",
    "SubscriptionSync",
    "UsageAccumulator",
    "UsageDelta",
    "billing_period",
]
