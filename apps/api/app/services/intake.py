from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl

from sqlalchemy.orm import Session

from packages.automation import (
    AuthenticationError,
    DispatchError,
    EventSource,
    EventStatus,
    TriggerConfig,
    WebhookRequest,
    authenticate,
    matches,
)
from packages.security import mask_headers, redact_secret_text

from ..logging_config import get_logger
from ..settings import settings
from .dispatcher import WorkflowDispatcher
from .sequences import integration_triggers_for_key, trigger_config
from .task_queue import TaskQueue
from .trigger_events import TriggerEventStore

logger = get_logger(__name__)

CONDITIONS_NOT_MET = "Trigger conditions not met"


@dataclass(frozen=True)
class IntakeOutcome:
    status_code: int
    body: dict[str, Any]
    trigger_event_id: uuid.UUID | None = None
    workflow_run_id: uuid.UUID | None = None


@dataclass
class FanOutResult:
    matched: int = 0
    outcomes: list[IntakeOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class PayloadError(ValueError):
    pass


def parse_payload(body: bytes, content_type: str | None) -> dict[str, Any]:
    if not body.strip():
        return {}
    if content_type and "application/x-www-form-urlencoded" in content_type.lower():
        try:
            return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise PayloadError("form body is not valid utf-8") from exc
    try:
        parsed = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadError("body is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise PayloadError("JSON body must be an object")
    return parsed


def webhook_metadata(request: WebhookRequest) -> dict[str, Any]:
    return {
        "headers": mask_headers(request.headers),
        "ip": request.client_ip,
        "user_agent": request.user_agent,
        "method": request.method,
        "url": request.url,
    }


class TriggerIntakeService:
    def __init__(
        self,
        db: Session,
        queue: TaskQueue | None = None,
        events: TriggerEventStore | None = None,
        dispatcher: WorkflowDispatcher | None = None,
    ) -> None:
        self.db = db
        self.events = events or TriggerEventStore(db)
        self.dispatcher = dispatcher or WorkflowDispatcher(db, queue=queue, events=self.events)

    def handle_webhook(self, request: WebhookRequest, trigger: TriggerConfig) -> IntakeOutcome:
        fail_open = settings.webhook_auth_fail_open
        if trigger.auth_config is not None and not authenticate(request, trigger, fail_open=fail_open):
            error = AuthenticationError()
            logger.warning("webhook.auth_failed", trigger_id=str(trigger.id), client_ip=request.client_ip)
            return IntakeOutcome(status_code=401, body={"error": "Unauthorized", "message": str(error)})

        try:
            payload = parse_payload(request.body, request.header("content-type"))
        except PayloadError as exc:
            logger.info("webhook.invalid_payload", trigger_id=str(trigger.id), reason=str(exc))
            return IntakeOutcome(status_code=400, body={"error": "Invalid payload", "message": str(exc)})

        return self._process(trigger, EventSource.WEBHOOK, payload, webhook_metadata(request))

    def handle_integration_event(
        self,
        trigger: TriggerConfig,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> IntakeOutcome:
        return self._process(trigger, EventSource.INTEGRATION, payload, metadata or {})

    def ingest_integration_event(
        self,
        org_id: uuid.UUID,
        trigger_key: str,
        payload: dict[str, Any],
        integration_id: uuid.UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> FanOutResult:
        result = FanOutResult()
        triggers = integration_triggers_for_key(self.db, org_id, trigger_key, integration_id=integration_id)
        result.matched = len(triggers)
        for row in triggers:
            try:
                config = trigger_config(row, org_id)
                result.outcomes.append(self.handle_integration_event(config, payload, metadata))
            except Exception as exc:
                self.db.rollback()
                logger.exception("integration_event.trigger_failed", trigger_id=str(row.id), trigger_key=trigger_key)
                result.errors.append(f"{row.id}: {redact_secret_text(str(exc), limit=200)}")
        logger.info("integration_event.fanned_out", trigger_key=trigger_key, matched=result.matched, errors=len(result.errors))
        return result

    def _process(
        self,
        trigger: TriggerConfig,
        source: EventSource,
        payload: dict[str, Any],
        metadata: dict[str, Any],
    ) -> IntakeOutcome:
        event_id: uuid.UUID | None = None
        try:
            event = self.events.record(trigger, source, payload, metadata)
            event_id = event.id
            self.db.commit()

            if not matches(payload, trigger.conditions):
                self.events.mark_ignored(event, CONDITIONS_NOT_MET)
                self.db.commit()
                logger.info("trigger.conditions_not_met", trigger_id=str(trigger.id), trigger_event_id=str(event_id))
                return IntakeOutcome(
                    status_code=200,
                    body={
                        "success": True,
                        "message": "Webhook received but conditions not met",
                        "trigger_event_id": str(event_id),
                    },
                    trigger_event_id=event_id,
                )

            try:
                handle = self.dispatcher.dispatch(trigger, payload, event)
            except DispatchError as exc:
                self.db.rollback()
                self.events.mark_failed(event, str(exc))
                self.db.commit()
                logger.warning("trigger.dispatch_failed", trigger_id=str(trigger.id), reason=str(exc))
                return IntakeOutcome(
                    status_code=500,
                    body={"success": False, "message": f"Failed to process trigger: {exc}"},
                    trigger_event_id=event_id,
                )

            return IntakeOutcome(
                status_code=200,
                body={
                    "success": True,
                    "message": "Webhook processed successfully",
                    "trigger_event_id": str(event_id),
                    "workflow_run_id": str(handle.run_id),
                },
                trigger_event_id=event_id,
                workflow_run_id=handle.run_id,
            )
        except Exception:
            logger.exception("trigger.intake_error", trigger_id=str(trigger.id))
            self.db.rollback()
            if event_id is not None:
                self._fail_quietly(event_id)
            return IntakeOutcome(
                status_code=500,
                body={"error": "Internal server error"},
                trigger_event_id=event_id,
            )

    def _fail_quietly(self, event_id: uuid.UUID) -> None:
        current = self.events.get(event_id)
        if current is None or current.status != EventStatus.RECEIVED:
            return
        self.events.mark_failed(current, "Internal server error")
        self.db.commit()
