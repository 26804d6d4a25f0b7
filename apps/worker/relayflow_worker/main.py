import os
import time
import uuid

from celery import Celery, Task

from app.db import SessionLocal
from app.logging_config import configure_logging, get_logger
from app.services.dispatcher import recover_stale_work
from app.services.executor import run_workflow
from app.services.integrations import IntegrationRegistry, default_registry
from app.services.intake import TriggerIntakeService
from app.settings import settings

broker_url = os.getenv("REDIS_URL", settings.redis_url)
app = Celery("relayflow-worker", broker=broker_url, backend=broker_url)
app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "recover-stale-workflow-runs": {
            "task": "worker.workflow.recover_stale_tick",
            "schedule": float(max(30, settings.run_enqueue_grace_seconds)),
        }
    },
)

configure_logging(level=settings.log_level, json_format=settings.resolved_log_format == "json", service="relayflow-worker")
logger = get_logger(__name__)

registry: IntegrationRegistry = default_registry()
_sleep = time.sleep


@app.task(name="worker.health.ping")
def ping() -> str:
    return "pong"


@app.task(name="worker.workflow.run.execute", bind=True, acks_late=True, max_retries=3, retry_backoff=True)
def execute_workflow_run(self: Task, workflow_run_id: str) -> str:
    with SessionLocal() as db:
        try:
            run = run_workflow(db, uuid.UUID(workflow_run_id), registry=registry, sleep=_sleep)
        except Exception as exc:
            db.rollback()
            logger.exception("worker.run_crashed", workflow_run_id=workflow_run_id)
            raise self.retry(exc=exc)
        if run is None:
            return "missing"
        return run.status.value


@app.task(name="worker.workflow.recover_stale_tick")
def recover_stale_tick() -> int:
    with SessionLocal() as db:
        run_ids = recover_stale_work(db)
    if run_ids:
        logger.info("worker.recovered_runs", count=len(run_ids))
    return len(run_ids)


@app.task(name="worker.integration.event")
def ingest_integration_event(org_id: str, trigger_key: str, payload: dict, integration_id: str | None = None) -> int:
    with SessionLocal() as db:
        result = TriggerIntakeService(db).ingest_integration_event(
            org_id=uuid.UUID(org_id),
            trigger_key=trigger_key,
            payload=payload,
            integration_id=uuid.UUID(integration_id) if integration_id else None,
            metadata={"source": "worker"},
        )
    return len(result.outcomes)
