from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy import JSON as JsonType
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import Uuid

from packages.automation import EventSource, EventStatus, RunStatus, StepStatus, TriggerKind


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [str(member.value) for member in enum_cls]


class Role(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    AGENT = "agent"


class IdMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SoftDeleteMixin:
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Org(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "orgs"
    __table_args__ = (UniqueConstraint("name", name="uq_orgs_name"), Index("ix_orgs_created_at", "created_at"))

    name: Mapped[str] = mapped_column(String(255), nullable=False)


class User(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("external_auth_id", name="uq_users_external_auth_id"),
        UniqueConstraint("email", name="uq_users_email"),
        Index("ix_users_created_at", "created_at"),
    )

    external_auth_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Membership(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_memberships_org_user"),
        Index("ix_memberships_org_id", "org_id"),
        Index("ix_memberships_created_at", "created_at"),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orgs.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, name="role_enum"), nullable=False)


class Integration(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "integrations"
    __table_args__ = (
        Index("ix_integrations_org_id", "org_id"),
        Index("ix_integrations_created_at", "created_at"),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orgs.id"), nullable=False)
    app: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="connected")
    config_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)


class Sequence(Base, IdMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "sequences"
    __table_args__ = (
        Index("ix_sequences_org_id", "org_id"),
        Index("ix_sequences_created_at", "created_at"),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orgs.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    triggers: Mapped[list["Trigger"]] = relationship(cascade="all, delete-orphan", passive_deletes=True)
    actions: Mapped[list["Action"]] = relationship(
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Action.sort_order",
    )


class Trigger(Base, IdMixin, TimestampMixin):
    __tablename__ = "triggers"
    __table_args__ = (
        UniqueConstraint("webhook_uuid", name="uq_triggers_webhook_uuid"),
        Index("ix_triggers_sequence_id", "sequence_id"),
        Index("ix_triggers_trigger_key", "trigger_key"),
    )

    sequence_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    trigger_kind: Mapped[TriggerKind] = mapped_column(
        Enum(TriggerKind, name="trigger_kind_enum", values_callable=_enum_values), nullable=False
    )
    integration_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("integrations.id"), nullable=True)
    trigger_key: Mapped[str | None] = mapped_column(String(120), nullable=True)
    webhook_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(128), nullable=True)
    auth_config: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    configuration: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    conditions: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Action(Base, IdMixin, TimestampMixin):
    __tablename__ = "actions"
    __table_args__ = (Index("ix_actions_sequence_sort", "sequence_id", "sort_order"),)

    sequence_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="app_action")
    integration_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("integrations.id"), nullable=True)
    app: Mapped[str] = mapped_column(String(100), nullable=False)
    action_key: Mapped[str] = mapped_column(String(120), nullable=False)
    configuration: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)


class TriggerEvent(Base, IdMixin, TimestampMixin):
    __tablename__ = "trigger_events"
    __table_args__ = (
        Index("ix_trigger_events_trigger_id", "trigger_id"),
        Index("ix_trigger_events_org_id", "org_id"),
        Index("ix_trigger_events_created_at", "created_at"),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orgs.id"), nullable=False)
    trigger_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("triggers.id", ondelete="SET NULL"), nullable=True)
    event_source: Mapped[EventSource] = mapped_column(
        Enum(EventSource, name="event_source_enum", values_callable=_enum_values), nullable=False
    )
    event_data: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus, name="trigger_event_status_enum", values_callable=_enum_values),
        nullable=False,
        default=EventStatus.RECEIVED,
    )
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    workflow_run_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)


class WorkflowRun(Base, IdMixin, TimestampMixin):
    __tablename__ = "workflow_runs"
    __table_args__ = (
        Index("ix_workflow_runs_org_id", "org_id"),
        Index("ix_workflow_runs_status_created_at", "status", "created_at"),
        Index("ix_workflow_runs_trigger_event_id", "trigger_event_id"),
    )

    org_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orgs.id"), nullable=False)
    sequence_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    trigger_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    trigger_event_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("trigger_events.id"), nullable=True)
    rerun_of_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="workflow_run_status_enum", values_callable=_enum_values),
        nullable=False,
        default=RunStatus.QUEUED,
    )
    input_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    output_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    error_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WorkflowStep(Base, IdMixin, TimestampMixin):
    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_run_id", "position", name="uq_workflow_steps_run_position"),
        Index("ix_workflow_steps_status_lease_expires_at", "status", "lease_expires_at"),
    )

    workflow_run_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("workflow_runs.id"), nullable=False)
    action_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    step_key: Mapped[str] = mapped_column(String(255), nullable=False)
    app: Mapped[str] = mapped_column(String(100), nullable=False)
    action_key: Mapped[str] = mapped_column(String(120), nullable=False)
    integration_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    configuration: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    timeout_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    input_data: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    output_data: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    processed_output: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    status: Mapped[StepStatus] = mapped_column(
        Enum(StepStatus, name="workflow_step_status_enum", values_callable=_enum_values),
        nullable=False,
        default=StepStatus.PENDING,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
