"""Sync state store: mappings, references, runs, conflicts, tokens, schedules, logs.

Revision ID: 001_sync_schema
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_sync_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SCHEMA = "sync"


def _tz() -> sa.DateTime:
    return sa.DateTime(timezone=True)


def upgrade() -> None:
    op.execute(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}")

    op.create_table(
        "field_mappings",
        sa.Column("mapping_id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False, index=True),
        sa.Column("source_platform", sa.String(50), nullable=False),
        sa.Column("target_platform", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("field_maps", JSONB(), server_default=sa.text("'[]'::jsonb")),
        sa.Column("transformations", JSONB(), server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), server_default=sa.text("1")),
        sa.Column("created_at", _tz(), server_default=sa.func.now()),
        sa.Column("updated_at", _tz(), nullable=True),
        schema=SCHEMA,
    )
    op.create_index(
        "uq_field_mapping_active",
        "field_mappings",
        ["tenant_id", "source_platform", "target_platform", "entity_type"],
        unique=True,
        schema=SCHEMA,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "cross_system_references",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("source_platform", sa.String(50), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("target_platform", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(255), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("last_synced_at", _tz(), nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "entity_type", "source_platform", "source_id", "target_platform",
            name="uq_reference_source",
        ),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_reference_target",
        "cross_system_references",
        ["tenant_id", "entity_type", "target_platform", "target_id"],
        schema=SCHEMA,
    )

    op.create_table(
        "entity_sync_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("source_of_truth", sa.String(20), nullable=False),
        sa.Column("conflict_strategy", sa.String(20), nullable=False),
        sa.Column("authoritative_clock", sa.String(20), nullable=True),
        sa.UniqueConstraint("tenant_id", "entity_type", name="uq_entity_config_tenant_type"),
        schema=SCHEMA,
    )

    op.create_table(
        "sync_conflicts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("route", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("local_version", JSONB()),
        sa.Column("remote_version", JSONB()),
        sa.Column("local_hash", sa.String(64)),
        sa.Column("local_updated_at", _tz(), nullable=True),
        sa.Column("remote_updated_at", _tz(), nullable=True),
        sa.Column("detected_at", _tz(), nullable=False),
        sa.Column("resolution", sa.String(20), nullable=False),
        sa.Column("winner", sa.String(20), nullable=True),
        sa.Column("resolved_at", _tz(), nullable=True),
        sa.Column("resolved_by", sa.String(200), nullable=True),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_conflict_entity",
        "sync_conflicts",
        ["tenant_id", "route", "entity_type", "source_id", "detected_at"],
        schema=SCHEMA,
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("route", sa.String(100), nullable=False),
        sa.Column("mode", sa.String(20), nullable=False),
        sa.Column("dry_run", sa.Boolean()),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("triggered_by", sa.String(20), nullable=False),
        sa.Column("entity_types", JSONB()),
        sa.Column("filters", JSONB()),
        sa.Column("counts", JSONB()),
        sa.Column("errors", JSONB()),
        sa.Column("checkpoint", JSONB()),
        sa.Column("cancel_requested", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("started_at", _tz(), nullable=True),
        sa.Column("finished_at", _tz(), nullable=True),
        sa.Column("created_at", _tz(), nullable=False),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_run_tenant_route_created", "sync_runs", ["tenant_id", "route", "created_at"], schema=SCHEMA,
    )

    op.create_table(
        "confirmation_tokens",
        sa.Column("token", sa.String(128), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False, index=True),
        sa.Column("operation_description", sa.Text(), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("destructive", sa.Boolean()),
        sa.Column("warnings", JSONB()),
        sa.Column("payload", JSONB()),
        sa.Column("requested_by", sa.String(200), nullable=True),
        sa.Column("issued_at", _tz(), nullable=False),
        sa.Column("expires_at", _tz(), nullable=False),
        sa.Column("consumed", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("consumed_at", _tz(), nullable=True),
        schema=SCHEMA,
    )

    op.create_table(
        "bulk_audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False, index=True),
        sa.Column("operation", sa.Text(), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("destructive", sa.Boolean(), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("token", sa.String(16), nullable=True),
        sa.Column("actor", sa.String(200), nullable=True),
        sa.Column("details", JSONB()),
        sa.Column("created_at", _tz(), nullable=False),
        schema=SCHEMA,
    )
    # The audit log is append-only.
    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION {SCHEMA}.reject_audit_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'bulk_audit_log is append-only';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        f"""
        CREATE TRIGGER bulk_audit_log_append_only
        BEFORE UPDATE OR DELETE ON {SCHEMA}.bulk_audit_log
        FOR EACH ROW EXECUTE FUNCTION {SCHEMA}.reject_audit_change()
        """
    )

    op.create_table(
        "sync_schedules",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False, index=True),
        sa.Column("route", sa.String(100), nullable=False),
        sa.Column("cron_expression", sa.String(100), nullable=False),
        sa.Column("mode", sa.String(20), nullable=False),
        sa.Column("entity_types", JSONB(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("last_run_at", _tz(), nullable=True),
        schema=SCHEMA,
    )

    op.create_table(
        "sync_log_entries",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("run_id", sa.String(64), nullable=True, index=True),
        sa.Column("route", sa.String(100), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=True),
        sa.Column("entity_id", sa.String(255), nullable=True),
        sa.Column("operation", sa.String(50), nullable=False),
        sa.Column("result", sa.String(20), nullable=False),
        sa.Column("level", sa.String(10)),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("metadata_json", JSONB()),
        sa.Column("created_at", _tz(), nullable=False),
        schema=SCHEMA,
    )
    op.create_index("ix_log_tenant_created", "sync_log_entries", ["tenant_id", "created_at"], schema=SCHEMA)
    op.create_index(
        "ix_log_tenant_entity", "sync_log_entries", ["tenant_id", "entity_type", "entity_id"], schema=SCHEMA,
    )


def downgrade() -> None:
    op.execute(f"DROP SCHEMA IF EXISTS {SCHEMA} CASCADE")
