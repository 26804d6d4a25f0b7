from __future__ import annotations

from typing import Protocol

from ..logging_config import get_logger

logger = get_logger(__name__)

RUN_EXECUTE_TASK = "worker.workflow.run.execute"


class TaskQueue(Protocol):
    def enqueue(self, task_name: str, *args: str) -> bool: ...


class CeleryTaskQueue:
    """Hands work to the Celery worker by task name; the broker is the only coupling."""

    def enqueue(self, task_name: str, *args: str) -> bool:
        try:
            from relayflow_worker.main import app as worker_app

            worker_app.send_task(task_name, args=list(args))
        except Exception:
            # Durable rows stay queued; the recovery tick re-enqueues them.
            logger.warning("task_queue.enqueue_failed", task_name=task_name, args=list(args), exc_info=True)
            return False
        return True
