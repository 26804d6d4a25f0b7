from __future__ import annotations

import json
import uuid

import httpx
import pytest

from app.services import integrations
from app.services.integrations import ActionInvocation, IntegrationRegistry, default_registry
from packages.automation import StepErrorCode, StepExecutionError


def _invocation(app: str, action_key: str, arguments: dict) -> ActionInvocation:
    return ActionInvocation(
        org_id=uuid.uuid4(),
        run_id=uuid.uuid4(),
        step_id=uuid.uuid4(),
        app=app,
        action_key=action_key,
        integration_id=None,
        arguments=arguments,
        timeout_seconds=5.0,
        attempt=1,
    )


def _mock_http(monkeypatch: pytest.MonkeyPatch, handler) -> list[httpx.Request]:  # noqa: ANN001
    seen: list[httpx.Request] = []
    real_client = httpx.Client

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    monkeypatch.setattr(
        integrations.httpx,
        "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(_handler), **kwargs),
    )
    return seen


def test_default_registry_keys() -> None:
    registry = default_registry()
    assert set(registry) == {("webhook", "send"), ("email", "send"), ("core", "echo")}
    assert registry.resolve("missing", "x") is None


def test_registry_register_overrides() -> None:
    registry = IntegrationRegistry()
    registry.register("core", "echo", integrations.echo)
    assert registry[("core", "echo")] is integrations.echo
    assert len(registry) == 1


def test_send_webhook_posts_json(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = _mock_http(monkeypatch, lambda request: httpx.Response(201, json={"id": "r-1"}))

    result = integrations.send_webhook(
        _invocation("webhook", "send", {"url": "https://example.test/hook", "body": {"a": 1}, "headers": {"X-Trace": "t"}})
    )

    assert result.success is True
    assert result.data == {"status_code": 201, "response": {"id": "r-1"}}
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"a": 1}
    assert seen[0].headers["X-Trace"] == "t"


@pytest.mark.parametrize(
    ("status_code", "code", "retryable"),
    [
        (429, StepErrorCode.API_RATE_LIMIT, True),
        (401, StepErrorCode.INVALID_CREDENTIALS, False),
        (403, StepErrorCode.INVALID_CREDENTIALS, False),
        (422, StepErrorCode.VALIDATION, True),
        (502, StepErrorCode.EXTERNAL_SERVICE, True),
    ],
)
def test_send_webhook_maps_http_errors(
    monkeypatch: pytest.MonkeyPatch, status_code: int, code: StepErrorCode, retryable: bool
) -> None:
    _mock_http(monkeypatch, lambda request: httpx.Response(status_code))

    with pytest.raises(StepExecutionError) as exc_info:
        integrations.send_webhook(_invocation("webhook", "send", {"url": "https://example.test/hook"}))

    assert exc_info.value.code == code
    assert exc_info.value.retryable is retryable


def test_send_webhook_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    _mock_http(monkeypatch, _timeout)

    with pytest.raises(StepExecutionError) as exc_info:
        integrations.send_webhook(_invocation("webhook", "send", {"url": "https://example.test/hook"}))

    assert exc_info.value.code == StepErrorCode.API_TIMEOUT


def test_send_webhook_requires_url() -> None:
    with pytest.raises(StepExecutionError) as exc_info:
        integrations.send_webhook(_invocation("webhook", "send", {}))
    assert exc_info.value.code == StepErrorCode.INVALID_CONFIG
    assert exc_info.value.retryable is False


def test_send_email_in_mock_mode() -> None:
    result = integrations.send_email(_invocation("email", "send", {"to": "ann@example.com", "subject": "Hi"}))
    assert result.success is True
    assert result.data["to"] == "ann@example.com"
    assert result.data["message_id"].startswith("mock-email-")

    with pytest.raises(StepExecutionError):
        integrations.send_email(_invocation("email", "send", {"to": "nobody"}))


def test_echo_returns_arguments() -> None:
    assert integrations.echo(_invocation("core", "echo", {"a": [1]})).data == {"a": [1]}
