from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from packages.automation import DispatchError, RunStatus

from ..db import get_db
from ..models import Role, WorkflowRun, WorkflowStep
from ..schemas import WorkflowRunResponse
from ..services.dispatcher import WorkflowDispatcher
from ..services.sequences import serialize_workflow_run
from ..tenancy import RequestContext, get_org_owned, get_request_context, org_scoped, require_role

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.get("/runs", response_model=list[WorkflowRunResponse])
def list_workflow_runs(
    status_filter: RunStatus | None = Query(default=None, alias="status"),
    sequence_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[WorkflowRunResponse]:
    require_role(context, Role.MEMBER)
    stmt = org_scoped(
        select(WorkflowRun).order_by(desc(WorkflowRun.created_at)).limit(limit).offset(offset),
        context.current_org_id,
        WorkflowRun,
    )
    if status_filter is not None:
        stmt = stmt.where(WorkflowRun.status == status_filter)
    if sequence_id is not None:
        stmt = stmt.where(WorkflowRun.sequence_id == sequence_id)
    rows = db.scalars(stmt).all()
    return [WorkflowRunResponse.model_validate(serialize_workflow_run(row)) for row in rows]


@router.get("/runs/{run_id}", response_model=WorkflowRunResponse)
def get_workflow_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> WorkflowRunResponse:
    require_role(context, Role.MEMBER)
    run = get_org_owned(db, WorkflowRun, run_id, context, "workflow run")
    steps = db.scalars(
        select(WorkflowStep).where(WorkflowStep.workflow_run_id == run.id).order_by(WorkflowStep.position.asc())
    ).all()
    return WorkflowRunResponse.model_validate(serialize_workflow_run(run, steps=list(steps)))


def _restart(db: Session, run_id: uuid.UUID, context: RequestContext, *, force: bool) -> WorkflowRunResponse:
    require_role(context, Role.ADMIN)
    original = get_org_owned(db, WorkflowRun, run_id, context, "workflow run")
    dispatcher = WorkflowDispatcher(db)
    try:
        handle = dispatcher.force_rerun(original) if force else dispatcher.rerun(original)
    except DispatchError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    run = db.get(WorkflowRun, handle.run_id)
    return WorkflowRunResponse.model_validate(serialize_workflow_run(run))


@router.post("/runs/{run_id}/rerun", response_model=WorkflowRunResponse, status_code=status.HTTP_202_ACCEPTED)
def rerun_workflow_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> WorkflowRunResponse:
    return _restart(db, run_id, context, force=False)


@router.post("/runs/{run_id}/force-rerun", response_model=WorkflowRunResponse, status_code=status.HTTP_202_ACCEPTED)
def force_rerun_workflow_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> WorkflowRunResponse:
    return _restart(db, run_id, context, force=True)
