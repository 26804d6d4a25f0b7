from __future__ import annotations

import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from packages.automation import ActionResult, StepErrorCode, StepExecutionError

from ..logging_config import get_logger
from ..settings import settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class ActionInvocation:
    """Everything an integration executor gets for one attempt of one step."""

    org_id: uuid.UUID
    run_id: uuid.UUID | None
    step_id: uuid.UUID | None
    app: str
    action_key: str
    integration_id: uuid.UUID | None
    arguments: dict[str, Any]
    timeout_seconds: float
    attempt: int


class IntegrationExecutor(Protocol):
    def __call__(self, invocation: ActionInvocation) -> ActionResult | dict[str, Any]: ...


class IntegrationRegistry(Mapping[tuple[str, str], IntegrationExecutor]):
    """Executors keyed by ``(app, action_key)``; injected into the step executor."""

    def __init__(self, executors: Mapping[tuple[str, str], IntegrationExecutor] | None = None) -> None:
        self._executors: dict[tuple[str, str], IntegrationExecutor] = dict(executors or {})

    def register(self, app: str, action_key: str, executor: IntegrationExecutor) -> None:
        self._executors[(app, action_key)] = executor

    def resolve(self, app: str, action_key: str) -> IntegrationExecutor | None:
        return self._executors.get((app, action_key))

    def __getitem__(self, key: tuple[str, str]) -> IntegrationExecutor:
        return self._executors[key]

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)


def map_http_status(status_code: int, message: str) -> StepExecutionError:
    if status_code == 429:
        return StepExecutionError(message, code=StepErrorCode.API_RATE_LIMIT)
    if status_code in {401, 403}:
        return StepExecutionError(message, code=StepErrorCode.INVALID_CREDENTIALS, retryable=False)
    if 400 <= status_code < 500:
        return StepExecutionError(message, code=StepErrorCode.VALIDATION)
    return StepExecutionError(message, code=StepErrorCode.EXTERNAL_SERVICE)


def send_webhook(invocation: ActionInvocation) -> ActionResult:
    arguments = invocation.arguments
    url = str(arguments.get("url") or "").strip()
    if not url:
        raise StepExecutionError("webhook url is required", code=StepErrorCode.INVALID_CONFIG, retryable=False)
    method = str(arguments.get("method") or "POST").upper()
    headers = arguments.get("headers") if isinstance(arguments.get("headers"), dict) else {}
    body = arguments.get("body", arguments.get("payload"))

    try:
        with httpx.Client(timeout=invocation.timeout_seconds, follow_redirects=True) as client:
            if method in {"GET", "DELETE"}:
                response = client.request(method, url, headers=headers, params=body if isinstance(body, dict) else None)
            else:
                response = client.request(method, url, headers=headers, json=body)
    except httpx.TimeoutException as exc:
        raise StepExecutionError(f"webhook request timed out: {exc}", code=StepErrorCode.API_TIMEOUT) from exc
    except httpx.HTTPError as exc:
        raise StepExecutionError(f"webhook request failed: {exc}") from exc

    if response.status_code >= 300:
        raise map_http_status(response.status_code, f"webhook returned HTTP {response.status_code}")

    data: dict[str, Any] = {"status_code": response.status_code}
    try:
        data["response"] = response.json()
    except ValueError:
        data["response"] = response.text[:2000]
    return ActionResult(success=True, data=data)


def send_email(invocation: ActionInvocation) -> ActionResult:
    arguments = invocation.arguments
    recipient = str(arguments.get("to") or "").strip()
    if "@" not in recipient:
        raise StepExecutionError("email recipient is required", code=StepErrorCode.VALIDATION, retryable=False)
    if settings.connector_mode != "mock":
        raise StepExecutionError(
            "live email delivery is not configured",
            code=StepErrorCode.INVALID_CONFIG,
            retryable=False,
        )
    message_id = f"mock-email-{invocation.step_id or 'preview'}-{invocation.attempt}"
    logger.info(
        "integration.email.mock_sent",
        to=recipient,
        subject=arguments.get("subject"),
        message_id=message_id,
    )
    return ActionResult(success=True, data={"message_id": message_id, "to": recipient, "status": "sent"})


def echo(invocation: ActionInvocation) -> ActionResult:
    return ActionResult(success=True, data=dict(invocation.arguments))


def default_registry() -> IntegrationRegistry:
    return IntegrationRegistry(
        {
            ("webhook", "send"): send_webhook,
            ("email", "send"): send_email,
            ("core", "echo"): echo,
        }
    )
