from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from packages.automation import (
    ActionResult,
    StepErrorCode,
    build_context,
    evaluate_condition,
    matches,
    parse_conditions,
    payload_lookup,
    resolve_value,
)
from packages.security import redact_secret_text

from ..logging_config import get_logger
from ..models import Action, Trigger
from .executor import ActionExecutor
from .integrations import ActionInvocation, IntegrationRegistry
from .trigger_events import TriggerEventStore

logger = get_logger(__name__)


def sample_payload(db: Session, trigger: Trigger, payload: dict[str, Any] | None) -> tuple[dict[str, Any], str]:
    if payload is not None:
        return payload, "request"
    latest = TriggerEventStore(db).list_for_trigger(trigger.id, limit=1)
    if latest:
        return dict(latest[0].event_data or {}), "latest_event"
    return {}, "empty"


def preview_trigger(db: Session, trigger: Trigger, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    """Evaluate a trigger's conditions against a sample payload without recording an event."""
    sample, source = sample_payload(db, trigger, payload)
    checks = [
        {
            "field": condition.field,
            "operator": str(condition.operator),
            "expected": condition.value,
            "actual": payload_lookup(sample, condition.field),
            "passed": evaluate_condition(sample, condition),
        }
        for condition in parse_conditions(trigger.conditions or {})
    ]
    matched = matches(sample, trigger.conditions or {})
    logger.info("trigger.previewed", trigger_id=str(trigger.id), matched=matched, source=source)
    return {"trigger_id": trigger.id, "source": source, "payload": sample, "matched": matched, "checks": checks}


def preview_action(
    db: Session,
    action: Action,
    org_id: uuid.UUID,
    registry: IntegrationRegistry,
    payload: dict[str, Any] | None = None,
    configuration: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Run one attempt of an action against sample data, outside any workflow run."""
    sample = payload or {}
    envelope = {"trigger_source": "test", "payload": sample, "timestamp": datetime.now(UTC).isoformat()}
    template = configuration if configuration is not None else action.configuration or {}
    arguments = resolve_value(template, build_context(sample, envelope))
    response: dict[str, Any] = {"action_id": action.id, "arguments": arguments, "success": False, "data": {}}

    executor = registry.resolve(action.app, action.action_key)
    if executor is None:
        response["error_code"] = StepErrorCode.INVALID_CONFIG.value
        response["error_message"] = f"No executor registered for {action.app}.{action.action_key}"
        return response

    runner = ActionExecutor(db, registry)
    outcome = runner.attempt(
        executor,
        ActionInvocation(
            org_id=org_id,
            run_id=None,
            step_id=None,
            app=action.app,
            action_key=action.action_key,
            integration_id=action.integration_id,
            arguments=arguments,
            timeout_seconds=action.timeout_seconds or runner.default_timeout_seconds,
            attempt=1,
        ),
    )
    if isinstance(outcome, ActionResult):
        response["success"] = True
        response["data"] = outcome.data
    else:
        response["error_code"] = outcome.code.value
        response["error_message"] = redact_secret_text(str(outcome))
    logger.info("action.previewed", action_id=str(action.id), success=response["success"])
    return response
