"""Billing models: Subscription, UsagePeriod, MeteringReport, BillingEvent."""

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ringledger.billing.plans import PlanType, SubscriptionStatus

from .base import Base, _generate_uuid

if TYPE_CHECKING:
    from .core import Business


class Subscription(Base):
    """Paid subscription for a business (zero or one per business)."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    business_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    external_subscription_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    external_customer_id: Mapped[str | None] = mapped_column(String(255), index=True)
    # Metered line item that overage is reported against
    metered_item_id: Mapped[str | None] = mapped_column(String(255))

    plan_type: Mapped[str] = mapped_column(String(20), default=PlanType.NONE.value, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=SubscriptionStatus.ACTIVE.value,
        nullable=False,
        index=True,
    )

    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    business: Mapped["Business"] = relationship("Business", back_populates="subscription")


class UsagePeriod(Base):
    """Billed minutes for a business in one calendar-month billing period.

    Append-only: rows are created lazily on the first call of a period and
    never deleted.
    """

    __tablename__ = "usage_periods"
    __table_args__ = (
        UniqueConstraint("business_id", "billing_period", name="uq_usage_period_business_period"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    business_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False, index=True)  # YYYY-MM

    minutes_used_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Overage units already accepted by the metering provider
    reported_overage_units: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # Upper bound of a range sent but not confirmed; resent with the same identifier
    inflight_to_units: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class MeteringReport(Base):
    """A successful overage report, for audit."""

    __tablename__ = "metering_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    usage_period_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("usage_periods.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    from_units: Mapped[int] = mapped_column(Integer, nullable=False)
    to_units: Mapped[int] = mapped_column(Integer, nullable=False)
    # Sent to the provider for deduplication: "{usage_period_id}:{from}-{to}"
    identifier: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    reported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BillingEvent(Base):
    """Processed billing-provider webhook event (dedup key and audit log)."""

    __tablename__ = "billing_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    external_event_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    business_id: Mapped[str | None] = mapped_column(String(36), index=True)
    event_data: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
