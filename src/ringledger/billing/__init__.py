"""Plan entitlements and billable-minute rules."""

from ringledger.billing.plans import (
    ENTITLEMENTS,
    Entitlement,
    PlanType,
    SubscriptionStatus,
    clamp_duration_seconds,
    get_entitlement,
    included_minutes,
    overage_minutes,
    parse_plan_type,
    to_billable_minutes,
)

__all__ = [
    "ENTITLEMENTS",
    "Entitlement",
    "PlanType",
    "SubscriptionStatus",
    "clamp_duration_seconds",
    "get_entitlement",
    "included_minutes",
    "overage_minutes",
    "parse_plan_type",
    "to_billable_minutes",
]
