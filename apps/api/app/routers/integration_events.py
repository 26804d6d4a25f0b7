from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Role
from ..schemas import IntegrationEventRequest, IntegrationEventResponse
from ..services.intake import TriggerIntakeService
from ..tenancy import RequestContext, get_request_context, require_role

router = APIRouter(prefix="/integration-events", tags=["integration-events"])


@router.post("", response_model=IntegrationEventResponse, status_code=status.HTTP_202_ACCEPTED)
def post_integration_event(
    payload: IntegrationEventRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> IntegrationEventResponse:
    require_role(context, Role.AGENT)
    result = TriggerIntakeService(db).ingest_integration_event(
        org_id=context.current_org_id,
        trigger_key=payload.trigger_key,
        payload=payload.payload,
        integration_id=payload.integration_id,
        metadata={"actor_user_id": str(context.current_user_id)},
    )
    return IntegrationEventResponse(
        trigger_key=payload.trigger_key,
        matched=result.matched,
        trigger_event_ids=[row.trigger_event_id for row in result.outcomes if row.trigger_event_id is not None],
        workflow_run_ids=[row.workflow_run_id for row in result.outcomes if row.workflow_run_id is not None],
        errors=result.errors,
    )
