"""Add the daily summary notification preference.

Revision ID: 002_daily_summary
Revises: 001_initial
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_daily_summary"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add accounts.notify_daily_summary, on for existing accounts."""
    op.add_column(
        "accounts",
        sa.Column(
            "notify_daily_summary",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
    )


def downgrade() -> None:
    """Drop accounts.notify_daily_summary."""
    op.drop_column("accounts", "notify_daily_summary")
