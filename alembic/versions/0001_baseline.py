"""Baseline: profiles and monthly search usage.

Revision ID: 0001
Revises: None
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, index=True),
        sa.Column("display_name", sa.String(100)),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("subscription_id", sa.String(255)),
        sa.Column("subscription_variant", sa.String(50)),
        sa.Column("subscription_ends_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "search_usage",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("profiles.id"), nullable=False, index=True),
        sa.Column("month_year", sa.String(7), nullable=False),
        sa.Column("search_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_search_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "month_year", name="uq_search_usage_user_month"),
    )


def downgrade() -> None:
    op.drop_table("search_usage")
    op.drop_table("profiles")
