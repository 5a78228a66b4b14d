"""Database module for the ledger service."""

from ringledger.database.connection import (
    async_session_factory,
    close_database,
    engine,
    get_db,
    init_database,
    insert_for,
)
from ringledger.database.models import (
    Base,
    BillingEvent,
    Business,
    CallRecord,
    MeteringReport,
    Subscription,
    TrialClaim,
    UsagePeriod,
)

__all__ = [
    "Base",
    "BillingEvent",
    "Business",
    "CallRecord",
    "MeteringReport",
    "Subscription",
    "TrialClaim",
    "UsagePeriod",
    "async_session_factory",
    "close_database",
    "engine",
    "get_db",
    "init_database",
    "insert_for",
]
