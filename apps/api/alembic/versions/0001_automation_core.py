"""automation core tables

Revision ID: 0001_automation_core
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0001_automation_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

EMPTY_JSON = sa.text("'{}'::json")


def _base_columns(soft_delete: bool = False) -> list[sa.Column]:
    columns = [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if soft_delete:
        columns.append(sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    op.create_table(
        "orgs",
        sa.Column("name", sa.String(length=255), nullable=False),
        *_base_columns(soft_delete=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_orgs_name"),
    )
    op.create_index("ix_orgs_created_at", "orgs", ["created_at"])

    op.create_table(
        "users",
        sa.Column("external_auth_id", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        *_base_columns(soft_delete=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_auth_id", name="uq_users_external_auth_id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "memberships",
        sa.Column("org_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.Enum("OWNER", "ADMIN", "MEMBER", "AGENT", name="role_enum"), nullable=False),
        *_base_columns(soft_delete=True),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "user_id", name="uq_memberships_org_user"),
    )
    op.create_index("ix_memberships_org_id", "memberships", ["org_id"])
    op.create_index("ix_memberships_created_at", "memberships", ["created_at"])

    op.create_table(
        "integrations",
        sa.Column("org_id", sa.Uuid(), nullable=False),
        sa.Column("app", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="connected"),
        sa.Column("config_json", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        *_base_columns(soft_delete=True),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_integrations_org_id", "integrations", ["org_id"])
    op.create_index("ix_integrations_created_at", "integrations", ["created_at"])

    op.create_table(
        "sequences",
        sa.Column("org_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        *_base_columns(soft_delete=True),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sequences_org_id", "sequences", ["org_id"])
    op.create_index("ix_sequences_created_at", "sequences", ["created_at"])

    op.create_table(
        "triggers",
        sa.Column("sequence_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("trigger_kind", sa.Enum("integration", "webhook", name="trigger_kind_enum"), nullable=False),
        sa.Column("integration_id", sa.Uuid(), nullable=True),
        sa.Column("trigger_key", sa.String(length=120), nullable=True),
        sa.Column("webhook_uuid", sa.String(length=36), nullable=True),
        sa.Column("webhook_secret", sa.String(length=128), nullable=True),
        sa.Column("auth_config", sa.JSON(), nullable=True),
        sa.Column("configuration", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("conditions", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trigger_count", sa.Integer(), nullable=False, server_default="0"),
        *_base_columns(),
        sa.ForeignKeyConstraint(["sequence_id"], ["sequences.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["integration_id"], ["integrations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("webhook_uuid", name="uq_triggers_webhook_uuid"),
    )
    op.create_index("ix_triggers_sequence_id", "triggers", ["sequence_id"])
    op.create_index("ix_triggers_trigger_key", "triggers", ["trigger_key"])

    op.create_table(
        "actions",
        sa.Column("sequence_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False, server_default="app_action"),
        sa.Column("integration_id", sa.Uuid(), nullable=True),
        sa.Column("app", sa.String(length=100), nullable=False),
        sa.Column("action_key", sa.String(length=120), nullable=False),
        sa.Column("configuration", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        *_base_columns(),
        sa.ForeignKeyConstraint(["sequence_id"], ["sequences.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["integration_id"], ["integrations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_actions_sequence_sort", "actions", ["sequence_id", "sort_order"])

    op.create_table(
        "trigger_events",
        sa.Column("org_id", sa.Uuid(), nullable=False),
        sa.Column("trigger_id", sa.Uuid(), nullable=True),
        sa.Column("event_source", sa.Enum("webhook", "integration", name="event_source_enum"), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("metadata_json", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column(
            "status",
            sa.Enum("received", "processed", "ignored", "failed", name="trigger_event_status_enum"),
            nullable=False,
        ),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("workflow_run_id", sa.Uuid(), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.ForeignKeyConstraint(["trigger_id"], ["triggers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trigger_events_trigger_id", "trigger_events", ["trigger_id"])
    op.create_index("ix_trigger_events_org_id", "trigger_events", ["org_id"])
    op.create_index("ix_trigger_events_created_at", "trigger_events", ["created_at"])

    op.create_table(
        "workflow_runs",
        sa.Column("org_id", sa.Uuid(), nullable=False),
        sa.Column("sequence_id", sa.Uuid(), nullable=False),
        sa.Column("trigger_id", sa.Uuid(), nullable=True),
        sa.Column("trigger_event_id", sa.Uuid(), nullable=True),
        sa.Column("rerun_of_id", sa.Uuid(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("queued", "running", "succeeded", "failed", name="workflow_run_status_enum"),
            nullable=False,
        ),
        sa.Column("input_json", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("output_json", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("error_json", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.ForeignKeyConstraint(["trigger_event_id"], ["trigger_events.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_runs_org_id", "workflow_runs", ["org_id"])
    op.create_index("ix_workflow_runs_status_created_at", "workflow_runs", ["status", "created_at"])
    op.create_index("ix_workflow_runs_trigger_event_id", "workflow_runs", ["trigger_event_id"])

    op.create_table(
        "workflow_steps",
        sa.Column("workflow_run_id", sa.Uuid(), nullable=False),
        sa.Column("action_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.String(length=255), nullable=False),
        sa.Column("step_key", sa.String(length=255), nullable=False),
        sa.Column("app", sa.String(length=100), nullable=False),
        sa.Column("action_key", sa.String(length=120), nullable=False),
        sa.Column("integration_id", sa.Uuid(), nullable=True),
        sa.Column("configuration", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("input_data", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("output_data", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column("processed_output", sa.JSON(), nullable=False, server_default=EMPTY_JSON),
        sa.Column(
            "status",
            sa.Enum("pending", "running", "succeeded", "failed", "skipped", name="workflow_step_status_enum"),
            nullable=False,
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("claimed_by", sa.String(length=255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_base_columns(),
        sa.ForeignKeyConstraint(["workflow_run_id"], ["workflow_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workflow_run_id", "position", name="uq_workflow_steps_run_position"),
    )
    op.create_index("ix_workflow_steps_status_lease_expires_at", "workflow_steps", ["status", "lease_expires_at"])


def downgrade() -> None:
    op.drop_index("ix_workflow_steps_status_lease_expires_at", table_name="workflow_steps")
    op.drop_table("workflow_steps")
    op.drop_index("ix_workflow_runs_trigger_event_id", table_name="workflow_runs")
    op.drop_index("ix_workflow_runs_status_created_at", table_name="workflow_runs")
    op.drop_index("ix_workflow_runs_org_id", table_name="workflow_runs")
    op.drop_table("workflow_runs")
    op.drop_index("ix_trigger_events_created_at", table_name="trigger_events")
    op.drop_index("ix_trigger_events_org_id", table_name="trigger_events")
    op.drop_index("ix_trigger_events_trigger_id", table_name="trigger_events")
    op.drop_table("trigger_events")
    op.drop_index("ix_actions_sequence_sort", table_name="actions")
    op.drop_table("actions")
    op.drop_index("ix_triggers_trigger_key", table_name="triggers")
    op.drop_index("ix_triggers_sequence_id", table_name="triggers")
    op.drop_table("triggers")
    for table in ("sequences", "integrations", "memberships", "users", "orgs"):
        op.drop_table(table)
    for enum_name in (
        "workflow_step_status_enum",
        "workflow_run_status_enum",
        "trigger_event_status_enum",
        "event_source_enum",
        "trigger_kind_enum",
        "role_enum",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
