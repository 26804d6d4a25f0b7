from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from packages.automation import (
    DispatchError,
    RunHandle,
    RunStatus,
    SequenceConfig,
    StepStatus,
    TriggerConfig,
    step_sources_for,
)

from ..logging_config import get_logger
from ..models import Sequence, Trigger, TriggerEvent, WorkflowRun, WorkflowStep
from ..settings import settings
from .executor import skip_pending_steps, transition_run
from .sequences import load_sequence, sequence_config
from .task_queue import RUN_EXECUTE_TASK, CeleryTaskQueue, TaskQueue
from .trigger_events import TriggerEventStore

logger = get_logger(__name__)

RERUNNABLE_STATUSES = frozenset({RunStatus.FAILED})
FORCE_RERUNNABLE_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.RUNNING})
FORCE_FAILED_MESSAGE = "Workflow force-failed for rerun"


def build_envelope(trigger: TriggerConfig, payload: dict[str, Any], now: datetime) -> dict[str, Any]:
    return {
        "trigger_source": trigger.trigger_kind.value,
        "trigger_id": str(trigger.id),
        "trigger_name": trigger.name,
        "payload": payload,
        "timestamp": now.isoformat(),
    }


class WorkflowDispatcher:
    def __init__(self, db: Session, queue: TaskQueue | None = None, events: TriggerEventStore | None = None) -> None:
        self.db = db
        self.queue = queue or CeleryTaskQueue()
        self.events = events or TriggerEventStore(db)

    def _runnable_sequence(self, sequence_id: uuid.UUID) -> SequenceConfig:
        sequence_row = load_sequence(self.db, sequence_id)
        if sequence_row is None:
            raise DispatchError("Sequence not found")
        sequence = sequence_config(self.db, sequence_row)
        if not sequence.is_active:
            raise DispatchError("Sequence is inactive")
        if not sequence.actions:
            raise DispatchError("Sequence has no actions")
        return sequence

    def _create_run(
        self,
        sequence: SequenceConfig,
        *,
        trigger_id: uuid.UUID | None,
        trigger_event_id: uuid.UUID | None,
        input_json: dict[str, Any],
        now: datetime,
        rerun_of_id: uuid.UUID | None = None,
    ) -> RunHandle:
        run = WorkflowRun(
            org_id=sequence.org_id,
            sequence_id=sequence.id,
            trigger_id=trigger_id,
            trigger_event_id=trigger_event_id,
            rerun_of_id=rerun_of_id,
            status=RunStatus.QUEUED,
            input_json=input_json,
        )
        self.db.add(run)
        self.db.flush()

        for position, action in enumerate(sequence.actions):
            self.db.add(
                WorkflowStep(
                    workflow_run_id=run.id,
                    action_id=action.id,
                    position=position,
                    step_name=action.name,
                    step_key=action.step_key,
                    app=action.app,
                    action_key=action.action_key,
                    integration_id=action.integration_id,
                    configuration=action.configuration,
                    timeout_seconds=action.timeout_seconds,
                    max_retries=action.max_retries,
                    status=StepStatus.PENDING,
                )
            )

        self.db.execute(
            update(Sequence)
            .where(Sequence.id == sequence.id)
            .values(run_count=Sequence.run_count + 1, last_run_at=now)
            .execution_options(synchronize_session=False)
        )
        return RunHandle(run_id=run.id, step_count=len(sequence.actions))

    def dispatch(self, trigger: TriggerConfig, payload: dict[str, Any], event: TriggerEvent | None = None) -> RunHandle:
        """Persist a queued run for the trigger's sequence and hand it to the worker.

        The owning event is marked processed in the same transaction as the run
        rows, so a worker never observes a run whose event is still ``received``.
        """
        if not trigger.is_active:
            raise DispatchError("Trigger is inactive")
        sequence = self._runnable_sequence(trigger.sequence_id)

        now = datetime.now(UTC)
        handle = self._create_run(
            sequence,
            trigger_id=trigger.id,
            trigger_event_id=event.id if event is not None else None,
            input_json=build_envelope(trigger, payload, now),
            now=now,
        )
        self.db.execute(
            update(Trigger)
            .where(Trigger.id == trigger.id)
            .values(trigger_count=Trigger.trigger_count + 1, last_triggered_at=now)
            .execution_options(synchronize_session=False)
        )

        if event is not None:
            self.events.mark_processed(event, handle)
        self.db.commit()

        logger.info(
            "trigger.dispatched",
            trigger_id=str(trigger.id),
            sequence_id=str(sequence.id),
            workflow_run_id=str(handle.run_id),
            step_count=handle.step_count,
        )
        self.queue.enqueue(RUN_EXECUTE_TASK, str(handle.run_id))
        return handle

    def rerun(self, original: WorkflowRun) -> RunHandle:
        """Start a new run from a failed run's stored envelope.

        The owning trigger event keeps its status; the new run only links to it.
        """
        if original.status not in RERUNNABLE_STATUSES:
            raise DispatchError(
                f"Cannot rerun workflow in '{original.status.value}' status. Only failed workflows can be retried."
            )
        sequence = self._runnable_sequence(original.sequence_id)
        handle = self._create_run(
            sequence,
            trigger_id=original.trigger_id,
            trigger_event_id=original.trigger_event_id,
            input_json=dict(original.input_json),
            now=datetime.now(UTC),
            rerun_of_id=original.id,
        )
        self.db.commit()

        logger.info("run.rerun_dispatched", rerun_of_id=str(original.id), workflow_run_id=str(handle.run_id))
        self.queue.enqueue(RUN_EXECUTE_TASK, str(handle.run_id))
        return handle

    def force_rerun(self, original: WorkflowRun) -> RunHandle:
        """Fail a queued or stuck run, then rerun it.

        In-flight steps lose their claim, so a worker still holding one cannot
        write a result afterwards.
        """
        if original.status not in FORCE_RERUNNABLE_STATUSES:
            raise DispatchError(
                f"Cannot force rerun workflow in '{original.status.value}' status. "
                "Only queued or running workflows can be force retried."
            )
        now = datetime.now(UTC)
        if not transition_run(
            self.db,
            original,
            RunStatus.FAILED,
            finished_at=now,
            error_json={"message": FORCE_FAILED_MESSAGE},
        ):
            self.db.rollback()
            raise DispatchError("Workflow finished before it could be force-failed")
        self.db.execute(
            update(WorkflowStep)
            .where(
                WorkflowStep.workflow_run_id == original.id,
                WorkflowStep.status == StepStatus.RUNNING,
            )
            .values(
                status=StepStatus.FAILED,
                error_message=FORCE_FAILED_MESSAGE,
                claimed_by=None,
                lease_expires_at=None,
                completed_at=now,
                version=WorkflowStep.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        skip_pending_steps(self.db, original.id, now)
        self.db.refresh(original)
        logger.warning("run.force_failed", workflow_run_id=str(original.id))
        return self.rerun(original)


def recover_stale_work(db: Session, queue: TaskQueue | None = None, now: datetime | None = None) -> list[uuid.UUID]:
    """Reset expired step leases and re-enqueue runs the worker never picked up."""
    queue = queue or CeleryTaskQueue()
    now = now or datetime.now(UTC)
    enqueue_cutoff = now - timedelta(seconds=settings.run_enqueue_grace_seconds)

    run_ids: list[uuid.UUID] = list(
        db.scalars(
            select(WorkflowRun.id).where(
                WorkflowRun.status == RunStatus.QUEUED,
                WorkflowRun.created_at < enqueue_cutoff,
            )
        )
    )

    expired = list(
        db.scalars(
            select(WorkflowStep).where(
                WorkflowStep.status == StepStatus.RUNNING,
                WorkflowStep.lease_expires_at < now,
            )
        )
    )
    for step in expired:
        reset = db.execute(
            update(WorkflowStep)
            .where(
                WorkflowStep.id == step.id,
                WorkflowStep.version == step.version,
                WorkflowStep.status.in_(step_sources_for(StepStatus.PENDING)),
            )
            .values(
                status=StepStatus.PENDING,
                claimed_by=None,
                lease_expires_at=None,
                version=WorkflowStep.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if reset.rowcount != 1:
            continue
        logger.warning("step.lease_expired", step_id=str(step.id), workflow_run_id=str(step.workflow_run_id))
        if step.workflow_run_id not in run_ids:
            run_ids.append(step.workflow_run_id)
    db.commit()

    for run_id in run_ids:
        queue.enqueue(RUN_EXECUTE_TASK, str(run_id))
    return run_ids
