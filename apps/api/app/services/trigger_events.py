from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from packages.automation import EventSource, EventStatus, InvalidEventTransition, RunHandle, TriggerConfig, event_sources_for
from packages.security import redact_secret_text

from ..logging_config import get_logger
from ..models import TriggerEvent

logger = get_logger(__name__)


class TriggerEventStore:
    """Durable record of every trigger firing and its terminal outcome.

    Status changes are applied with a conditional UPDATE so that a row only
    moves out of the statuses it is allowed to leave; a zero-row update means
    somebody already settled the event.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def record(
        self,
        trigger: TriggerConfig,
        source: EventSource,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> TriggerEvent:
        event = TriggerEvent(
            org_id=trigger.org_id,
            trigger_id=trigger.id,
            event_source=source,
            event_data=payload,
            metadata_json=metadata or {},
            status=EventStatus.RECEIVED,
        )
        self.db.add(event)
        self.db.flush()
        logger.info("trigger_event.recorded", trigger_event_id=str(event.id), trigger_id=str(trigger.id), source=source.value)
        return event

    def mark_processed(self, event: TriggerEvent, run: RunHandle) -> TriggerEvent:
        return self._transition(event.id, EventStatus.PROCESSED, workflow_run_id=run.run_id)

    def mark_ignored(self, event: TriggerEvent, reason: str) -> TriggerEvent:
        return self._transition(event.id, EventStatus.IGNORED, error_message=redact_secret_text(reason))

    def mark_failed(self, event: TriggerEvent, reason: str) -> TriggerEvent:
        return self._transition(event.id, EventStatus.FAILED, error_message=redact_secret_text(reason))

    def escalate_run_failure(self, event_id: uuid.UUID, reason: str) -> TriggerEvent:
        return self._transition(
            event_id,
            EventStatus.FAILED,
            escalation=True,
            error_message=redact_secret_text(reason),
        )

    def get(self, event_id: uuid.UUID, org_id: uuid.UUID | None = None) -> TriggerEvent | None:
        stmt = select(TriggerEvent).where(TriggerEvent.id == event_id)
        if org_id is not None:
            stmt = stmt.where(TriggerEvent.org_id == org_id)
        return self.db.scalar(stmt)

    def list_for_trigger(
        self,
        trigger_id: uuid.UUID,
        status: EventStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TriggerEvent]:
        stmt = select(TriggerEvent).where(TriggerEvent.trigger_id == trigger_id)
        if status is not None:
            stmt = stmt.where(TriggerEvent.status == status)
        stmt = stmt.order_by(TriggerEvent.created_at.desc(), TriggerEvent.id.desc()).limit(limit).offset(offset)
        return list(self.db.scalars(stmt))

    def _transition(
        self,
        event_id: uuid.UUID,
        target: EventStatus,
        *,
        escalation: bool = False,
        **values: Any,
    ) -> TriggerEvent:
        sources = event_sources_for(target, escalation=escalation)
        self.db.flush()
        result = self.db.execute(
            update(TriggerEvent)
            .where(TriggerEvent.id == event_id, TriggerEvent.status.in_(list(sources)))
            .values(status=target, processed_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        event = self.db.get(TriggerEvent, event_id)
        if event is not None:
            self.db.refresh(event)
        if result.rowcount == 0:
            current = event.status if event is not None else None
            raise InvalidEventTransition(current, target)
        logger.info("trigger_event.transitioned", trigger_event_id=str(event_id), status=target.value)
        return event
