"""Incremental watermarks per (tenant, route, entity type).

Revision ID: 002_sync_watermarks
Revises: 001_sync_schema
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "002_sync_watermarks"
down_revision: Union[str, None] = "001_sync_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SCHEMA = "sync"


def upgrade() -> None:
    op.create_table(
        "sync_watermarks",
        sa.Column("tenant_id", sa.String(100), primary_key=True),
        sa.Column("route", sa.String(100), primary_key=True),
        sa.Column("entity_type", sa.String(50), primary_key=True),
        sa.Column("scanned_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("run_id", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        schema=SCHEMA,
    )


def downgrade() -> None:
    op.drop_table("sync_watermarks", schema=SCHEMA)
