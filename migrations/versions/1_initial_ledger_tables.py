"""Create ledger tables.

Businesses, subscriptions, call records, usage periods, trial claims,
metering reports and billing events. Tables created earlier by create_all
in development are skipped.

Revision ID: 1
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "1"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def table_exists(table_name: str) -> bool:
    """Check if a table already exists."""
    bind = op.get_bind()
    return table_name in inspect(bind).get_table_names()


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    """Create all ledger tables."""
    if not table_exists("businesses"):
        op.create_table(
            "businesses",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("plan_type", sa.String(20), nullable=False),
            sa.Column("subscription_status", sa.String(20), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("trial_started_at", sa.DateTime(timezone=True)),
            sa.Column("trial_ends_at", sa.DateTime(timezone=True)),
            sa.Column("trial_minutes_used", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("billing_customer_id", sa.String(255)),
            sa.Column("retell_agent_id", sa.String(255)),
            sa.Column("business_line_phone", sa.String(20)),
            sa.Column("primary_forwarding_number", sa.String(20)),
            *_timestamps(),
        )
        op.create_index(
            "ix_businesses_subscription_status", "businesses", ["subscription_status"]
        )
        op.create_index("ix_businesses_is_active", "businesses", ["is_active"])
        op.create_index("ix_businesses_trial_ends_at", "businesses", ["trial_ends_at"])
        op.create_index(
            "ix_businesses_billing_customer_id", "businesses", ["billing_customer_id"]
        )
        op.create_index(
            "ix_businesses_retell_agent_id", "businesses", ["retell_agent_id"], unique=True
        )
        op.create_index(
            "ix_businesses_business_line_phone", "businesses", ["business_line_phone"]
        )

    if not table_exists("trial_claims"):
        op.create_table(
            "trial_claims",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("phone_number", sa.String(20), nullable=False, unique=True),
            # No foreign key: claims outlive their business
            sa.Column("business_id", sa.String(36), nullable=False),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                nullable=False,
            ),
        )
        op.create_index("ix_trial_claims_business_id", "trial_claims", ["business_id"])

    if not table_exists("subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "business_id",
                sa.String(36),
                sa.ForeignKey("businesses.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("external_subscription_id", sa.String(255), nullable=False),
            sa.Column("external_customer_id", sa.String(255)),
            sa.Column("metered_item_id", sa.String(255)),
            sa.Column("plan_type", sa.String(20), nullable=False),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
            sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
            sa.Column("canceled_at", sa.DateTime(timezone=True)),
            *_timestamps(),
        )
        op.create_index(
            "ix_subscriptions_business_id", "subscriptions", ["business_id"], unique=True
        )
        op.create_index(
            "ix_subscriptions_external_subscription_id",
            "subscriptions",
            ["external_subscription_id"],
            unique=True,
        )
        op.create_index(
            "ix_subscriptions_external_customer_id", "subscriptions", ["external_customer_id"]
        )
        op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    if not table_exists("call_records"):
        op.create_table(
            "call_records",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("external_call_id", sa.String(255), nullable=False),
            sa.Column(
                "business_id",
                sa.String(36),
                sa.ForeignKey("businesses.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("event_type", sa.String(50), nullable=False),
            sa.Column("duration_seconds", sa.Integer(), nullable=False),
            sa.Column("billed_minutes", sa.Integer(), nullable=False),
            sa.Column("billing_period", sa.String(7), nullable=False),
            sa.Column("transcript", sa.Text()),
            sa.Column("summary", sa.Text()),
            sa.Column("caller_name", sa.String(255)),
            sa.Column("caller_phone", sa.String(32)),
            sa.Column("issue_description", sa.Text()),
            sa.Column("emergency_flag", sa.Boolean(), nullable=False),
            sa.Column("lead_tag", sa.String(20)),
            sa.Column("intake", postgresql.JSONB()),
            sa.Column("extras", postgresql.JSONB()),
            *_timestamps(),
        )
        op.create_index(
            "ix_call_records_external_call_id",
            "call_records",
            ["external_call_id"],
            unique=True,
        )
        op.create_index("ix_call_records_business_id", "call_records", ["business_id"])
        op.create_index("ix_call_records_billing_period", "call_records", ["billing_period"])

    if not table_exists("usage_periods"):
        op.create_table(
            "usage_periods",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "business_id",
                sa.String(36),
                sa.ForeignKey("businesses.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("billing_period", sa.String(7), nullable=False),
            sa.Column("minutes_used_total", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reported_overage_units", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_reported_at", sa.DateTime(timezone=True)),
            *_timestamps(),
            sa.UniqueConstraint(
                "business_id", "billing_period", name="uq_usage_period_business_period"
            ),
        )
        op.create_index("ix_usage_periods_business_id", "usage_periods", ["business_id"])
        op.create_index("ix_usage_periods_billing_period", "usage_periods", ["billing_period"])

    if not table_exists("metering_reports"):
        op.create_table(
            "metering_reports",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "usage_period_id",
                sa.String(36),
                sa.ForeignKey("usage_periods.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("units", sa.Integer(), nullable=False),
            sa.Column("from_units", sa.Integer(), nullable=False),
            sa.Column("to_units", sa.Integer(), nullable=False),
            sa.Column("identifier", sa.String(255), nullable=False, unique=True),
            sa.Column("reported_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(
            "ix_metering_reports_usage_period_id", "metering_reports", ["usage_period_id"]
        )

    if not table_exists("billing_events"):
        op.create_table(
            "billing_events",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("external_event_id", sa.String(255), nullable=False),
            sa.Column("event_type", sa.String(100), nullable=False),
            sa.Column("business_id", sa.String(36)),
            sa.Column("event_data", postgresql.JSONB(), nullable=False),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                nullable=False,
            ),
        )
        op.create_index(
            "ix_billing_events_external_event_id",
            "billing_events",
            ["external_event_id"],
            unique=True,
        )
        op.create_index("ix_billing_events_event_type", "billing_events", ["event_type"])
        op.create_index("ix_billing_events_business_id", "billing_events", ["business_id"])


def downgrade() -> None:
    """Drop all ledger tables."""
    op.drop_table("billing_events")
    op.drop_table("metering_reports")
    op.drop_table("usage_periods")
    op.drop_table("call_records")
    op.drop_table("subscriptions")
    op.drop_table("trial_claims")
    op.drop_table("businesses")
