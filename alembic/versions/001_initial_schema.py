"""Initial schema with jobs_queue table

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "jobs_queue",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("queue", sa.String(40), nullable=False, server_default="default"),
        sa.Column("kind", sa.String(120), nullable=False),
        sa.Column("payload", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("reserved_at", sa.DateTime, nullable=True),
        sa.Column("available_at", sa.DateTime, nullable=False),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )

    # Reservation scan: oldest pending row per queue past available_at
    op.create_index(
        "idx_queue_status_available",
        "jobs_queue",
        ["queue", "status", "available_at"],
    )

    # Stale lease scan
    op.create_index(
        "idx_status_reserved",
        "jobs_queue",
        ["status", "reserved_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_status_reserved", table_name="jobs_queue")
    op.drop_index("idx_queue_status_available", table_name="jobs_queue")
    op.drop_table("jobs_queue")
