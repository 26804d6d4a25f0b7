from __future__ import annotations

import socket
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from packages.automation import (
    TERMINAL_RUN_STATUSES,
    ActionResult,
    EventStatus,
    RunStatus,
    StepErrorCode,
    StepExecutionError,
    StepStatus,
    build_context,
    process_output,
    resolve_value,
    run_sources_for,
    step_sources_for,
)
from packages.security import redact_secret_text

from ..logging_config import get_logger
from ..models import WorkflowRun, WorkflowStep
from ..settings import settings
from .integrations import ActionInvocation, IntegrationExecutor, IntegrationRegistry, default_registry
from .trigger_events import TriggerEventStore

logger = get_logger(__name__)


@dataclass
class StepResult:
    step_id: uuid.UUID
    status: StepStatus | None = None
    claimed: bool = True
    output: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    attempts: int = 0


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


def _as_action_result(raw: Any) -> ActionResult:
    if isinstance(raw, ActionResult):
        return raw
    if isinstance(raw, dict) and "success" in raw:
        return ActionResult.model_validate(raw)
    if isinstance(raw, dict):
        return ActionResult(success=True, data=raw)
    if raw is None:
        return ActionResult(success=True)
    return ActionResult(success=True, data={"result": raw})


class ActionExecutor:
    """Runs one workflow step: claim, resolve templates, invoke, retry, record."""

    def __init__(
        self,
        db: Session,
        registry: IntegrationRegistry | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: str | None = None,
        default_timeout_seconds: float | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        self.db = db
        self.registry = registry if registry is not None else default_registry()
        self.sleep = sleep
        self.worker_id = worker_id or _default_worker_id()
        self.default_timeout_seconds = default_timeout_seconds or settings.action_default_timeout_seconds
        self.backoff_seconds = settings.step_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.backoff_max_seconds = (
            settings.step_retry_backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )
        self.lease_seconds = settings.step_lease_seconds if lease_seconds is None else lease_seconds

    def backoff_delay(self, retry_count: int) -> float:
        return min(self.backoff_max_seconds, self.backoff_seconds * (2 ** max(0, retry_count - 1)))

    def timeout_for(self, step: WorkflowStep) -> float:
        return step.timeout_seconds or self.default_timeout_seconds

    def lease_until(self, step: WorkflowStep) -> datetime:
        """Deadline covering one attempt plus the longest backoff before the next."""
        window = self.timeout_for(step) + self.backoff_max_seconds + self.lease_seconds
        return datetime.now(UTC) + timedelta(seconds=window)

    def claim(self, step: WorkflowStep) -> bool:
        result = self.db.execute(
            update(WorkflowStep)
            .where(
                WorkflowStep.id == step.id,
                WorkflowStep.status.in_(step_sources_for(StepStatus.RUNNING)),
                WorkflowStep.version == step.version,
            )
            .values(
                status=StepStatus.RUNNING,
                claimed_by=self.worker_id,
                started_at=datetime.now(UTC),
                lease_expires_at=self.lease_until(step),
                version=WorkflowStep.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(step)
        return result.rowcount == 1

    def _write(self, step: WorkflowStep, **values: Any) -> bool:
        """Apply values only while this worker still holds the claim; every write renews the lease."""
        conditions = [
            WorkflowStep.id == step.id,
            WorkflowStep.version == step.version,
            WorkflowStep.claimed_by == self.worker_id,
        ]
        target = values.get("status")
        if target is not None:
            conditions.append(WorkflowStep.status.in_(step_sources_for(target)))
        lease = None if target in {StepStatus.SUCCEEDED, StepStatus.FAILED} else self.lease_until(step)
        result = self.db.execute(
            update(WorkflowStep)
            .where(*conditions)
            .values(version=WorkflowStep.version + 1, lease_expires_at=lease, **values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(step)
        return result.rowcount == 1

    def _invoke(self, executor: IntegrationExecutor, invocation: ActionInvocation) -> ActionResult:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="relayflow-action")
        try:
            future = pool.submit(executor, invocation)
            return _as_action_result(future.result(timeout=invocation.timeout_seconds))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def attempt(self, executor: IntegrationExecutor, invocation: ActionInvocation) -> ActionResult | StepExecutionError:
        try:
            result = self._invoke(executor, invocation)
        except StepExecutionError as exc:
            return exc
        except FutureTimeout:
            return StepExecutionError(
                f"Action timed out after {invocation.timeout_seconds:g}s",
                code=StepErrorCode.API_TIMEOUT,
            )
        except Exception as exc:
            logger.exception("step.executor_error", step_id=str(invocation.step_id), attempt=invocation.attempt)
            return StepExecutionError(str(exc) or exc.__class__.__name__)
        if result.success:
            return result
        return StepExecutionError(
            result.error or "Action reported failure",
            code=result.error_code or StepErrorCode.EXTERNAL_SERVICE,
        )

    def _lost(self, step: WorkflowStep, attempts: int) -> StepResult:
        logger.warning("step.claim_lost", step_id=str(step.id), worker_id=self.worker_id)
        return StepResult(step_id=step.id, claimed=False, attempts=attempts)

    def _fail(self, step: WorkflowStep, started: float, error: StepExecutionError, attempts: int, **values: Any) -> StepResult:
        message = redact_secret_text(str(error))
        written = self._write(
            step,
            status=StepStatus.FAILED,
            error_code=error.code.value,
            error_message=message,
            completed_at=datetime.now(UTC),
            duration_ms=int((time.monotonic() - started) * 1000),
            **values,
        )
        if not written:
            return self._lost(step, attempts)
        logger.warning(
            "step.failed",
            step_id=str(step.id),
            step_key=step.step_key,
            error_code=error.code.value,
            retry_count=step.retry_count,
        )
        return StepResult(
            step_id=step.id,
            status=StepStatus.FAILED,
            error_code=error.code.value,
            error_message=message,
            attempts=attempts,
        )

    def execute(self, step: WorkflowStep, context: dict[str, Any], org_id: uuid.UUID) -> StepResult:
        if not self.claim(step):
            return self._lost(step, 0)

        started = time.monotonic()
        arguments = resolve_value(step.configuration or {}, context)
        if not self._write(step, input_data=arguments):
            return self._lost(step, 0)

        executor = self.registry.resolve(step.app, step.action_key)
        if executor is None:
            error = StepExecutionError(
                f"No executor registered for {step.app}.{step.action_key}",
                code=StepErrorCode.INVALID_CONFIG,
                retryable=False,
            )
            return self._fail(step, started, error, 0)

        timeout = self.timeout_for(step)
        attempts = 0
        while True:
            attempts += 1
            invocation = ActionInvocation(
                org_id=org_id,
                run_id=step.workflow_run_id,
                step_id=step.id,
                app=step.app,
                action_key=step.action_key,
                integration_id=step.integration_id,
                arguments=arguments,
                timeout_seconds=timeout,
                attempt=step.retry_count + 1,
            )
            outcome = self.attempt(executor, invocation)
            if isinstance(outcome, ActionResult):
                written = self._write(
                    step,
                    status=StepStatus.SUCCEEDED,
                    output_data=outcome.data,
                    processed_output=process_output(outcome.data),
                    error_code=None,
                    error_message=None,
                    completed_at=datetime.now(UTC),
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                if not written:
                    return self._lost(step, attempts)
                logger.info("step.succeeded", step_id=str(step.id), step_key=step.step_key, attempts=attempts)
                return StepResult(step_id=step.id, status=StepStatus.SUCCEEDED, output=outcome.data, attempts=attempts)

            retry_count = step.retry_count + 1
            if not outcome.retryable or retry_count >= step.max_retries:
                return self._fail(step, started, outcome, attempts, retry_count=retry_count)

            delay = self.backoff_delay(retry_count)
            if not self._write(
                step,
                retry_count=retry_count,
                error_code=outcome.code.value,
                error_message=redact_secret_text(str(outcome)),
            ):
                return self._lost(step, attempts)
            logger.warning(
                "step.retry",
                step_id=str(step.id),
                step_key=step.step_key,
                retry_count=retry_count,
                max_retries=step.max_retries,
                error_code=outcome.code.value,
                delay_seconds=delay,
            )
            self.sleep(delay)


def _run_steps(db: Session, run_id: uuid.UUID) -> list[WorkflowStep]:
    return list(
        db.scalars(select(WorkflowStep).where(WorkflowStep.workflow_run_id == run_id).order_by(WorkflowStep.position.asc()))
    )


def transition_run(db: Session, run: WorkflowRun, target: RunStatus, **values: Any) -> bool:
    """Move a run to ``target`` only from an allowed source status; the caller commits."""
    result = db.execute(
        update(WorkflowRun)
        .where(WorkflowRun.id == run.id, WorkflowRun.status.in_(run_sources_for(target)))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def skip_pending_steps(db: Session, run_id: uuid.UUID, now: datetime) -> None:
    db.execute(
        update(WorkflowStep)
        .where(
            WorkflowStep.workflow_run_id == run_id,
            WorkflowStep.status.in_(step_sources_for(StepStatus.SKIPPED)),
        )
        .values(status=StepStatus.SKIPPED, completed_at=now, version=WorkflowStep.version + 1)
        .execution_options(synchronize_session=False)
    )


def _fail_run(db: Session, run: WorkflowRun, step: WorkflowStep) -> None:
    now = datetime.now(UTC)
    message = step.error_message or "Step failed"
    error_json = {
        "step_id": str(step.id),
        "step_key": step.step_key,
        "error_code": step.error_code,
        "message": message,
    }
    if not transition_run(db, run, RunStatus.FAILED, finished_at=now, error_json=error_json):
        db.rollback()
        db.refresh(run)
        logger.warning("run.transition_rejected", workflow_run_id=str(run.id), status=run.status.value, target="failed")
        return
    skip_pending_steps(db, run.id, now)
    if run.trigger_event_id is not None:
        events = TriggerEventStore(db)
        event = events.get(run.trigger_event_id)
        if event is not None and event.status == EventStatus.PROCESSED:
            events.escalate_run_failure(event.id, f"Step '{step.step_name}' failed: {message}")
    db.commit()
    db.refresh(run)
    logger.warning("run.failed", workflow_run_id=str(run.id), step_key=step.step_key, error_code=step.error_code)


def run_workflow(
    db: Session,
    run_id: uuid.UUID,
    *,
    registry: IntegrationRegistry | None = None,
    sleep: Callable[[float], None] = time.sleep,
    worker_id: str | None = None,
) -> WorkflowRun | None:
    """Drive a run's steps in order, resuming after the last succeeded step."""
    run = db.get(WorkflowRun, run_id)
    if run is None:
        logger.warning("run.missing", workflow_run_id=str(run_id))
        return None
    if run.status in TERMINAL_RUN_STATUSES:
        return run

    if not transition_run(db, run, RunStatus.RUNNING, started_at=run.started_at or datetime.now(UTC)):
        db.rollback()
        db.refresh(run)
        return run
    db.commit()
    db.refresh(run)

    executor = ActionExecutor(db, registry, sleep=sleep, worker_id=worker_id)
    trigger_payload = run.input_json.get("payload") if isinstance(run.input_json.get("payload"), dict) else {}
    outputs: list[tuple[tuple[str, str], dict[str, Any]]] = []
    last_output: dict[str, Any] = {}

    for step in _run_steps(db, run.id):
        if step.status == StepStatus.SUCCEEDED:
            outputs.append(((step.step_key, str(step.action_id)), step.processed_output or {}))
            last_output = step.output_data or {}
            continue
        if step.status in {StepStatus.FAILED, StepStatus.SKIPPED}:
            _fail_run(db, run, step)
            return run
        if step.status == StepStatus.RUNNING:
            logger.info("run.step_in_flight", workflow_run_id=str(run.id), step_id=str(step.id))
            return run

        context = build_context(trigger_payload, run.input_json, outputs)
        result = executor.execute(step, context, org_id=run.org_id)
        if not result.claimed:
            return run
        if result.status == StepStatus.FAILED:
            _fail_run(db, run, step)
            return run
        outputs.append(((step.step_key, str(step.action_id)), step.processed_output or {}))
        last_output = step.output_data or {}

    if not transition_run(db, run, RunStatus.SUCCEEDED, output_json=last_output, finished_at=datetime.now(UTC)):
        db.rollback()
        db.refresh(run)
        logger.warning("run.transition_rejected", workflow_run_id=str(run.id), status=run.status.value, target="succeeded")
        return run
    db.commit()
    db.refresh(run)
    logger.info("run.succeeded", workflow_run_id=str(run.id), step_count=len(outputs))
    return run
