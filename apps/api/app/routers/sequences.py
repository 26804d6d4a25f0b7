from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from packages.automation import EventStatus

from ..db import get_db
from ..models import Action, Integration, Role, Sequence, Trigger
from ..schemas import (
    ActionCreateRequest,
    ActionResponse,
    ActionTestRequest,
    ActionTestResponse,
    SequenceCreateRequest,
    SequenceResponse,
    TriggerCreateRequest,
    TriggerEventResponse,
    TriggerResponse,
    TriggerTestRequest,
    TriggerTestResponse,
)
from ..services.integrations import IntegrationRegistry, default_registry
from ..services.previews import preview_action, preview_trigger
from ..services.sequences import (
    add_action,
    create_integration_trigger,
    create_sequence,
    create_webhook_trigger,
    load_sequence,
    serialize_action,
    serialize_sequence,
    serialize_trigger,
    serialize_trigger_event,
)
from ..services.trigger_events import TriggerEventStore
from ..tenancy import RequestContext, get_request_context, org_scoped, require_role

router = APIRouter(prefix="/sequences", tags=["sequences"])


def _get_sequence_or_404(db: Session, org_id: uuid.UUID, sequence_id: uuid.UUID) -> Sequence:
    row = load_sequence(db, sequence_id, org_id=org_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="sequence not found")
    return row


def _get_trigger_or_404(db: Session, sequence: Sequence, trigger_id: uuid.UUID) -> Trigger:
    trigger = db.scalar(select(Trigger).where(Trigger.id == trigger_id, Trigger.sequence_id == sequence.id))
    if trigger is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="trigger not found")
    return trigger


def _check_integration(db: Session, org_id: uuid.UUID, integration_id: uuid.UUID | None) -> None:
    if integration_id is None:
        return
    row = db.scalar(
        org_scoped(
            select(Integration).where(Integration.id == integration_id, Integration.deleted_at.is_(None)),
            org_id,
            Integration,
        )
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="integration not found")


@router.post("", response_model=SequenceResponse, status_code=status.HTTP_201_CREATED)
def post_sequence(
    payload: SequenceCreateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> SequenceResponse:
    require_role(context, Role.ADMIN)
    sequence = create_sequence(
        db,
        context.current_org_id,
        name=payload.name,
        description=payload.description,
        is_active=payload.is_active,
    )
    db.commit()
    db.refresh(sequence)
    return SequenceResponse.model_validate(serialize_sequence(sequence))


@router.post("/{sequence_id}/actions", response_model=ActionResponse, status_code=status.HTTP_201_CREATED)
def post_action(
    sequence_id: uuid.UUID,
    payload: ActionCreateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ActionResponse:
    require_role(context, Role.ADMIN)
    sequence = _get_sequence_or_404(db, context.current_org_id, sequence_id)
    _check_integration(db, context.current_org_id, payload.integration_id)
    action = add_action(
        db,
        sequence,
        name=payload.name,
        app=payload.app,
        action_key=payload.action_key,
        configuration=payload.configuration,
        integration_id=payload.integration_id,
        sort_order=payload.sort_order,
        max_retries=payload.max_retries,
        timeout_seconds=payload.timeout_seconds,
    )
    db.commit()
    db.refresh(action)
    return ActionResponse.model_validate(serialize_action(action))


@router.post("/{sequence_id}/triggers", response_model=TriggerResponse, status_code=status.HTTP_201_CREATED)
def post_trigger(
    sequence_id: uuid.UUID,
    payload: TriggerCreateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TriggerResponse:
    require_role(context, Role.ADMIN)
    sequence = _get_sequence_or_404(db, context.current_org_id, sequence_id)
    _check_integration(db, context.current_org_id, payload.integration_id)
    if payload.trigger_kind == "integration":
        if not payload.trigger_key:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="trigger_key is required")
        trigger = create_integration_trigger(
            db,
            sequence,
            trigger_key=payload.trigger_key,
            name=payload.name,
            integration_id=payload.integration_id,
            conditions=payload.conditions,
            is_active=payload.is_active,
        )
    else:
        trigger = create_webhook_trigger(
            db,
            sequence,
            name=payload.name,
            auth_config=payload.auth_config,
            conditions=payload.conditions,
            is_active=payload.is_active,
        )
    db.commit()
    db.refresh(trigger)
    return TriggerResponse.model_validate(serialize_trigger(trigger, include_secret=True))


@router.get("/{sequence_id}/triggers/{trigger_id}/events", response_model=list[TriggerEventResponse])
def list_trigger_events(
    sequence_id: uuid.UUID,
    trigger_id: uuid.UUID,
    status_filter: EventStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[TriggerEventResponse]:
    require_role(context, Role.MEMBER)
    sequence = _get_sequence_or_404(db, context.current_org_id, sequence_id)
    trigger = _get_trigger_or_404(db, sequence, trigger_id)
    rows = TriggerEventStore(db).list_for_trigger(trigger.id, status=status_filter, limit=limit, offset=offset)
    return [TriggerEventResponse.model_validate(serialize_trigger_event(row)) for row in rows]


@router.post("/{sequence_id}/triggers/{trigger_id}/test", response_model=TriggerTestResponse)
def post_trigger_test(
    sequence_id: uuid.UUID,
    trigger_id: uuid.UUID,
    payload: TriggerTestRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TriggerTestResponse:
    require_role(context, Role.MEMBER)
    sequence = _get_sequence_or_404(db, context.current_org_id, sequence_id)
    trigger = _get_trigger_or_404(db, sequence, trigger_id)
    return TriggerTestResponse.model_validate(preview_trigger(db, trigger, payload.payload))


@router.post("/{sequence_id}/actions/{action_id}/test", response_model=ActionTestResponse)
def post_action_test(
    sequence_id: uuid.UUID,
    action_id: uuid.UUID,
    payload: ActionTestRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
    registry: IntegrationRegistry = Depends(default_registry),
) -> ActionTestResponse:
    require_role(context, Role.ADMIN)
    sequence = _get_sequence_or_404(db, context.current_org_id, sequence_id)
    action = db.scalar(select(Action).where(Action.id == action_id, Action.sequence_id == sequence.id))
    if action is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="action not found")
    result = preview_action(
        db,
        action,
        context.current_org_id,
        registry,
        payload=payload.payload,
        configuration=payload.configuration,
    )
    return ActionTestResponse.model_validate(result)
