from __future__ import annotations

import secrets
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from packages.automation import ActionConfig, SequenceConfig, TriggerConfig, TriggerKind, parse_conditions

from ..models import Action, Sequence, Trigger, TriggerEvent, WorkflowRun, WorkflowStep
from ..settings import settings


def _enum_text(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


def trigger_config(trigger: Trigger, org_id: uuid.UUID) -> TriggerConfig:
    return TriggerConfig(
        id=trigger.id,
        org_id=org_id,
        sequence_id=trigger.sequence_id,
        name=trigger.name,
        trigger_kind=trigger.trigger_kind,
        integration_id=trigger.integration_id,
        trigger_key=trigger.trigger_key,
        webhook_uuid=trigger.webhook_uuid,
        webhook_secret=trigger.webhook_secret,
        auth_config=trigger.auth_config or None,
        conditions=parse_conditions(trigger.conditions),
        is_active=trigger.is_active,
    )


def action_config(action: Action) -> ActionConfig:
    return ActionConfig(
        id=action.id,
        name=action.name,
        type=action.type,
        app=action.app,
        action_key=action.action_key,
        integration_id=action.integration_id,
        configuration=action.configuration or {},
        sort_order=action.sort_order,
        max_retries=action.max_retries,
        timeout_seconds=action.timeout_seconds,
        metadata=action.metadata_json or {},
    )


def sequence_config(db: Session, sequence: Sequence) -> SequenceConfig:
    actions = db.scalars(
        select(Action).where(Action.sequence_id == sequence.id).order_by(Action.sort_order.asc(), Action.created_at.asc())
    )
    return SequenceConfig(
        id=sequence.id,
        org_id=sequence.org_id,
        name=sequence.name,
        is_active=sequence.is_active,
        actions=[action_config(row) for row in actions],
    )


def load_sequence(db: Session, sequence_id: uuid.UUID, org_id: uuid.UUID | None = None) -> Sequence | None:
    stmt = select(Sequence).where(Sequence.id == sequence_id, Sequence.deleted_at.is_(None))
    if org_id is not None:
        stmt = stmt.where(Sequence.org_id == org_id)
    return db.scalar(stmt)


def load_webhook_trigger(db: Session, webhook_uuid: str) -> tuple[Trigger, Sequence] | None:
    row = db.execute(
        select(Trigger, Sequence)
        .join(Sequence, Sequence.id == Trigger.sequence_id)
        .where(
            Trigger.webhook_uuid == webhook_uuid,
            Trigger.trigger_kind == TriggerKind.WEBHOOK,
            Sequence.deleted_at.is_(None),
        )
    ).first()
    if row is None:
        return None
    return row[0], row[1]


def integration_triggers_for_key(
    db: Session,
    org_id: uuid.UUID,
    trigger_key: str,
    integration_id: uuid.UUID | None = None,
) -> list[Trigger]:
    stmt = (
        select(Trigger)
        .join(Sequence, Sequence.id == Trigger.sequence_id)
        .where(
            Sequence.org_id == org_id,
            Sequence.deleted_at.is_(None),
            Trigger.trigger_kind == TriggerKind.INTEGRATION,
            Trigger.trigger_key == trigger_key,
            Trigger.is_active.is_(True),
        )
        .order_by(Trigger.created_at.asc())
    )
    if integration_id is not None:
        stmt = stmt.where(Trigger.integration_id == integration_id)
    return list(db.scalars(stmt))


def create_sequence(db: Session, org_id: uuid.UUID, name: str, description: str | None = None, is_active: bool = True) -> Sequence:
    sequence = Sequence(org_id=org_id, name=name, description=description, is_active=is_active)
    db.add(sequence)
    db.flush()
    return sequence


def next_sort_order(db: Session, sequence_id: uuid.UUID) -> int:
    rows = db.scalars(select(Action.sort_order).where(Action.sequence_id == sequence_id))
    return max(rows, default=-1) + 1


def add_action(
    db: Session,
    sequence: Sequence,
    *,
    name: str,
    app: str,
    action_key: str,
    configuration: dict[str, Any] | None = None,
    integration_id: uuid.UUID | None = None,
    sort_order: int | None = None,
    max_retries: int | None = None,
    timeout_seconds: float | None = None,
) -> Action:
    action = Action(
        sequence_id=sequence.id,
        name=name,
        app=app,
        action_key=action_key,
        integration_id=integration_id,
        configuration=configuration or {},
        sort_order=sort_order if sort_order is not None else next_sort_order(db, sequence.id),
        max_retries=max_retries if max_retries is not None else settings.action_default_max_retries,
        timeout_seconds=timeout_seconds,
    )
    db.add(action)
    db.flush()
    return action


def create_webhook_trigger(
    db: Session,
    sequence: Sequence,
    *,
    name: str | None = None,
    auth_config: dict[str, Any] | None = None,
    conditions: dict[str, Any] | None = None,
    is_active: bool = True,
) -> Trigger:
    trigger = Trigger(
        sequence_id=sequence.id,
        name=name,
        trigger_kind=TriggerKind.WEBHOOK,
        webhook_uuid=str(uuid.uuid4()),
        webhook_secret=secrets.token_hex(32),
        auth_config=auth_config,
        conditions=conditions or {},
        is_active=is_active,
    )
    db.add(trigger)
    db.flush()
    return trigger


def create_integration_trigger(
    db: Session,
    sequence: Sequence,
    *,
    trigger_key: str,
    name: str | None = None,
    integration_id: uuid.UUID | None = None,
    conditions: dict[str, Any] | None = None,
    is_active: bool = True,
) -> Trigger:
    trigger = Trigger(
        sequence_id=sequence.id,
        name=name,
        trigger_kind=TriggerKind.INTEGRATION,
        integration_id=integration_id,
        trigger_key=trigger_key,
        conditions=conditions or {},
        is_active=is_active,
    )
    db.add(trigger)
    db.flush()
    return trigger


def webhook_url(trigger: Trigger) -> str | None:
    if not trigger.webhook_uuid:
        return None
    return f"{settings.webhook_base_url.rstrip('/')}/webhooks/{trigger.webhook_uuid}"


def serialize_sequence(sequence: Sequence) -> dict[str, Any]:
    return {
        "id": sequence.id,
        "org_id": sequence.org_id,
        "name": sequence.name,
        "description": sequence.description,
        "is_active": sequence.is_active,
        "run_count": sequence.run_count,
        "last_run_at": sequence.last_run_at,
        "created_at": sequence.created_at,
        "updated_at": sequence.updated_at,
    }


def serialize_action(action: Action) -> dict[str, Any]:
    return {
        "id": action.id,
        "sequence_id": action.sequence_id,
        "name": action.name,
        "type": action.type,
        "app": action.app,
        "action_key": action.action_key,
        "integration_id": action.integration_id,
        "configuration": action.configuration,
        "sort_order": action.sort_order,
        "max_retries": action.max_retries,
        "timeout_seconds": action.timeout_seconds,
    }


def serialize_trigger(trigger: Trigger, include_secret: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": trigger.id,
        "sequence_id": trigger.sequence_id,
        "name": trigger.name,
        "trigger_kind": _enum_text(trigger.trigger_kind),
        "integration_id": trigger.integration_id,
        "trigger_key": trigger.trigger_key,
        "webhook_uuid": trigger.webhook_uuid,
        "webhook_url": webhook_url(trigger),
        "auth_config": trigger.auth_config,
        "conditions": trigger.conditions,
        "is_active": trigger.is_active,
        "trigger_count": trigger.trigger_count,
        "last_triggered_at": trigger.last_triggered_at,
    }
    if include_secret:
        payload["webhook_secret"] = trigger.webhook_secret
    return payload


def serialize_trigger_event(event: TriggerEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "org_id": event.org_id,
        "trigger_id": event.trigger_id,
        "event_source": _enum_text(event.event_source),
        "status": _enum_text(event.status),
        "event_data": event.event_data,
        "metadata_json": event.metadata_json,
        "error_message": event.error_message,
        "processed_at": event.processed_at,
        "workflow_run_id": event.workflow_run_id,
        "created_at": event.created_at,
    }


def serialize_workflow_step(step: WorkflowStep) -> dict[str, Any]:
    return {
        "id": step.id,
        "action_id": step.action_id,
        "position": step.position,
        "step_name": step.step_name,
        "step_key": step.step_key,
        "app": step.app,
        "action_key": step.action_key,
        "status": _enum_text(step.status),
        "retry_count": step.retry_count,
        "max_retries": step.max_retries,
        "input_data": step.input_data,
        "output_data": step.output_data,
        "error_code": step.error_code,
        "error_message": step.error_message,
        "started_at": step.started_at,
        "completed_at": step.completed_at,
        "duration_ms": step.duration_ms,
    }


def serialize_workflow_run(run: WorkflowRun, steps: list[WorkflowStep] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": run.id,
        "org_id": run.org_id,
        "sequence_id": run.sequence_id,
        "trigger_id": run.trigger_id,
        "trigger_event_id": run.trigger_event_id,
        "rerun_of_id": run.rerun_of_id,
        "status": _enum_text(run.status),
        "input_json": run.input_json,
        "output_json": run.output_json,
        "error_json": run.error_json,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
    }
    if steps is not None:
        payload["steps"] = [serialize_workflow_step(step) for step in steps]
    return payload
