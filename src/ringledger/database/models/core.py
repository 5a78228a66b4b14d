"""Core models: Business, TrialClaim, CallRecord."""

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ringledger.billing.plans import PlanType, SubscriptionStatus

from .base import Base, _generate_uuid

if TYPE_CHECKING:
    from .billing import Subscription


class Business(Base):
    """A customer business whose calls are answered and billed."""

    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), default="My Business", nullable=False)

    plan_type: Mapped[str] = mapped_column(
        String(20), default=PlanType.NONE.value, nullable=False
    )
    subscription_status: Mapped[str] = mapped_column(
        String(20),
        default=SubscriptionStatus.NONE.value,
        nullable=False,
        index=True,
    )
    # Call-answering entitlement; cleared on payment failure or trial expiry
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    # Trial
    trial_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    trial_minutes_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Billing provider customer
    billing_customer_id: Mapped[str | None] = mapped_column(String(255), index=True)

    # Telephony routing
    retell_agent_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)
    business_line_phone: Mapped[str | None] = mapped_column(String(20), index=True)
    primary_forwarding_number: Mapped[str | None] = mapped_column(String(20))

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

    subscription: Mapped["Subscription | None"] = relationship(
        "Subscription",
        back_populates="business",
        uselist=False,
    )


class TrialClaim(Base):
    """One free trial per normalized business phone number, forever.

    Deliberately not a foreign key: claims outlive the business that made
    them so a deleted and recreated business cannot start a second trial.
    """

    __tablename__ = "trial_claims"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    business_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class CallRecord(Base):
    """One record per external call id."""

    __tablename__ = "call_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)

    # Idempotency key: the telephony provider's call id
    external_call_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    business_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Billing fields, fixed by the first delivery
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    billed_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False, index=True)

    # Descriptive fields, refreshed by later deliveries
    transcript: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[str | None] = mapped_column(Text)
    caller_name: Mapped[str | None] = mapped_column(String(255))
    caller_phone: Mapped[str | None] = mapped_column(String(32))
    issue_description: Mapped[str | None] = mapped_column(Text)
    emergency_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Ended before analysis with a number to call back
    missed_call_recovery: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lead_tag: Mapped[str | None] = mapped_column(String(20))
    intake: Mapped[dict[str, Any] | None] = mapped_column()
    extras: Mapped[dict[str, Any] | None] = mapped_column()

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
