"""Add missed_call_recovery to call_records and inflight_to_units to usage_periods.

missed_call_recovery marks calls that ended before analysis with a number to
call back. inflight_to_units holds the upper bound of an overage range sent to
the metering provider but not yet confirmed, so the same range is resent with
the same identifier.

Revision ID: 2
Revises: 1
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = "2"
down_revision: str | None = "1"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def column_exists(table_name: str, column_name: str) -> bool:
    """Check if a column already exists in the table."""
    bind = op.get_bind()
    inspector = inspect(bind)
    columns = [col["name"] for col in inspector.get_columns(table_name)]
    return column_name in columns


def upgrade() -> None:
    """Add the recovery flag and the in-flight metering bound."""
    if not column_exists("call_records", "missed_call_recovery"):
        op.add_column(
            "call_records",
            sa.Column(
                "missed_call_recovery", sa.Boolean(), nullable=False, server_default=sa.false()
            ),
        )

    if not column_exists("usage_periods", "inflight_to_units"):
        op.add_column(
            "usage_periods",
            sa.Column("inflight_to_units", sa.Integer(), nullable=True),
        )


def downgrade() -> None:
    """Remove the recovery flag and the in-flight metering bound."""
    op.drop_column("usage_periods", "inflight_to_units")
    op.drop_column("call_records", "missed_call_recovery")
