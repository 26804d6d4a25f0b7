from __future__ import annotations

import json
import uuid
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app
from app.services.dispatcher import WorkflowDispatcher
from app.services.integrations import ActionInvocation, IntegrationRegistry
from packages.automation import ActionResult, StepErrorCode, StepExecutionError, compute_signature

RUN_TASK = "worker.workflow.run.execute"


async def _create_flow(
    client: AsyncClient,
    headers: dict[str, str],
    *,
    actions: list[dict[str, Any]] | None = None,
    trigger: dict[str, Any] | None = None,
    sequence_active: bool = True,
) -> tuple[str, dict[str, Any]]:
    created = await client.post("/sequences", headers=headers, json={"name": "IT flow", "is_active": sequence_active})
    assert created.status_code == 201
    sequence_id = created.json()["id"]
    for action in actions if actions is not None else [{"name": "Echo", "app": "core", "action_key": "echo"}]:
        added = await client.post(f"/sequences/{sequence_id}/actions", headers=headers, json=action)
        assert added.status_code == 201
    trigger_resp = await client.post(f"/sequences/{sequence_id}/triggers", headers=headers, json=trigger or {})
    assert trigger_resp.status_code == 201
    return sequence_id, trigger_resp.json()


async def _events(client: AsyncClient, headers: dict[str, str], sequence_id: str, trigger_id: str) -> list[dict[str, Any]]:
    response = await client.get(f"/sequences/{sequence_id}/triggers/{trigger_id}/events", headers=headers)
    assert response.status_code == 200
    return response.json()


def _drain(queued_tasks: list[tuple[str, list[str]]]) -> None:
    from relayflow_worker.main import app as worker_app

    while queued_tasks:
        name, args = queued_tasks.pop(0)
        worker_app.tasks[name].run(*args)


@pytest.mark.integration
async def test_open_webhook_dispatches_and_worker_completes_run(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(
            client,
            seeded_context,
            actions=[{"name": "Echo", "app": "core", "action_key": "echo", "configuration": {"x": "{{ trigger.x }}"}}],
        )
        assert trigger["webhook_url"].endswith(f"/webhooks/{trigger['webhook_uuid']}")

        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"x": 1})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Webhook processed successfully"
        assert body["trigger_event_id"]

        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert [row["status"] for row in events] == ["processed"]
        assert events[0]["id"] == body["trigger_event_id"]
        assert events[0]["workflow_run_id"] == body["workflow_run_id"]
        assert queued_tasks == [(RUN_TASK, [body["workflow_run_id"]])]

        _drain(queued_tasks)

        run_resp = await client.get(f"/workflows/runs/{body['workflow_run_id']}", headers=seeded_context)
        assert run_resp.status_code == 200
        run = run_resp.json()
        assert run["status"] == "succeeded"
        assert run["output_json"] == {"x": 1}
        assert [step["status"] for step in run["steps"]] == ["succeeded"]


@pytest.mark.integration
async def test_api_key_webhook_without_header_is_rejected_without_event(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(
            client,
            seeded_context,
            trigger={"auth_config": {"type": "api_key", "expected_key": "secret"}},
        )
        url = f"/webhooks/{trigger['webhook_uuid']}"

        rejected = await client.post(url, json={"x": 1})
        assert rejected.status_code == 401
        wrong = await client.post(url, json={"x": 1}, headers={"X-API-Key": "nope"})
        assert wrong.status_code == 401
        assert await _events(client, seeded_context, sequence_id, trigger["id"]) == []

        accepted = await client.post(url, json={"x": 1}, headers={"X-API-Key": "secret"})
        assert accepted.status_code == 200
        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert len(events) == 1
        assert events[0]["metadata_json"]["headers"]["x-api-key"] == "***MASKED***"


@pytest.mark.integration
async def test_condition_mismatch_is_ignored_without_run(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(
            client,
            seeded_context,
            trigger={"conditions": {"event_type": {"operator": "equals", "value": "order.created"}}},
        )

        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"event_type": "member.updated"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Webhook received but conditions not met"

        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert body["trigger_event_id"] == events[0]["id"]
        assert [row["status"] for row in events] == ["ignored"]
        assert events[0]["error_message"] == "Trigger conditions not met"
        runs = await client.get("/workflows/runs", headers=seeded_context)
        assert runs.json() == []
        assert queued_tasks == []


@pytest.mark.integration
async def test_failing_first_action_fails_run_and_event_without_invoking_second(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]], monkeypatch: pytest.MonkeyPatch
) -> None:
    from relayflow_worker import main as worker_main

    second_calls: list[ActionInvocation] = []

    def _failing(_invocation: ActionInvocation) -> ActionResult:
        raise StepExecutionError("CRM unavailable", code=StepErrorCode.EXTERNAL_SERVICE)

    def _second(invocation: ActionInvocation) -> ActionResult:
        second_calls.append(invocation)
        return ActionResult(success=True)

    monkeypatch.setattr(worker_main, "registry", IntegrationRegistry({("crm", "sync"): _failing, ("core", "echo"): _second}))
    monkeypatch.setattr(worker_main, "_sleep", lambda _seconds: None)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(
            client,
            seeded_context,
            actions=[
                {"name": "Sync CRM", "app": "crm", "action_key": "sync", "max_retries": 3},
                {"name": "Echo", "app": "core", "action_key": "echo"},
            ],
        )
        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"x": 1})
        assert response.status_code == 200
        run_id = response.json()["workflow_run_id"]

        _drain(queued_tasks)

        run = (await client.get(f"/workflows/runs/{run_id}", headers=seeded_context)).json()
        assert run["status"] == "failed"
        assert run["error_json"]["error_code"] == "external_service_error"
        assert [step["status"] for step in run["steps"]] == ["failed", "skipped"]
        assert run["steps"][0]["retry_count"] == 3
        assert second_calls == []

        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert events[0]["status"] == "failed"
        assert "CRM unavailable" in events[0]["error_message"]


@pytest.mark.integration
async def test_duplicate_delivery_creates_independent_events_and_runs(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(client, seeded_context)
        body = json.dumps({"order_id": "o-1"}).encode()
        url = f"/webhooks/{trigger['webhook_uuid']}"

        first = await client.post(url, content=body, headers={"Content-Type": "application/json"})
        second = await client.post(url, content=body, headers={"Content-Type": "application/json"})

        assert first.status_code == second.status_code == 200
        assert first.json()["trigger_event_id"] != second.json()["trigger_event_id"]
        assert first.json()["workflow_run_id"] != second.json()["workflow_run_id"]
        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert len(events) == 2
        assert len(queued_tasks) == 2

        _drain(queued_tasks)
        runs = (await client.get("/workflows/runs", headers=seeded_context)).json()
        assert sorted(row["status"] for row in runs) == ["succeeded", "succeeded"]


@pytest.mark.integration
async def test_signature_webhook_verifies_raw_body(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        _, trigger = await _create_flow(
            client,
            seeded_context,
            trigger={"auth_config": {"type": "signature", "header": "X-Hub-Signature-256"}},
        )
        body = b'{"ref":"refs/heads/main"}'
        digest = compute_signature(trigger["webhook_secret"], body)
        url = f"/webhooks/{trigger['webhook_uuid']}"

        ok = await client.post(url, content=body, headers={"X-Hub-Signature-256": f"sha256={digest}"})
        assert ok.status_code == 200
        tampered = await client.post(url, content=body + b" ", headers={"X-Hub-Signature-256": f"sha256={digest}"})
        assert tampered.status_code == 401


@pytest.mark.integration
async def test_webhook_boundary_errors(seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.post("/webhooks/00000000-0000-0000-0000-000000000000", json={})
        assert missing.status_code == 404

        sequence_id, trigger = await _create_flow(client, seeded_context)
        garbage = await client.post(
            f"/webhooks/{trigger['webhook_uuid']}", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert garbage.status_code == 400
        assert await _events(client, seeded_context, sequence_id, trigger["id"]) == []

        form = await client.post(f"/webhooks/{trigger['webhook_uuid']}", data={"email": "a@b.c"})
        assert form.status_code == 200
        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert events[0]["event_data"] == {"email": "a@b.c"}

        _, inactive_trigger = await _create_flow(client, seeded_context, trigger={"is_active": False})
        inactive = await client.post(f"/webhooks/{inactive_trigger['webhook_uuid']}", json={})
        assert inactive.status_code == 404


@pytest.mark.integration
async def test_inactive_sequence_fails_event_with_message(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(client, seeded_context, sequence_active=False)

        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"x": 1})

        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Failed to process trigger: Sequence is inactive"}
        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert events[0]["status"] == "failed"
        assert events[0]["error_message"] == "Sequence is inactive"
        assert queued_tasks == []


@pytest.mark.integration
async def test_unhandled_error_returns_generic_body_and_fails_event(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]], monkeypatch: pytest.MonkeyPatch
) -> None:
    def _boom(self, trigger, payload, event=None):  # noqa: ANN001
        raise RuntimeError("database exploded with token=abc")

    monkeypatch.setattr(WorkflowDispatcher, "dispatch", _boom)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(client, seeded_context)
        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"x": 1})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert events[0]["status"] == "failed"
        assert "abc" not in (events[0]["error_message"] or "")


@pytest.mark.integration
async def test_integration_event_fans_out_to_matching_triggers(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _create_flow(client, seeded_context, trigger={"trigger_kind": "integration", "trigger_key": "member.created"})
        await _create_flow(
            client,
            seeded_context,
            trigger={
                "trigger_kind": "integration",
                "trigger_key": "member.created",
                "conditions": {"plan": {"operator": "in", "value": ["pro", "team"]}},
            },
        )
        await _create_flow(client, seeded_context, trigger={"trigger_kind": "integration", "trigger_key": "member.deleted"})

        response = await client.post(
            "/integration-events",
            headers=seeded_context,
            json={"trigger_key": "member.created", "payload": {"plan": "free"}},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["matched"] == 2
        assert len(body["trigger_event_ids"]) == 2
        assert len(body["workflow_run_ids"]) == 1
        assert body["errors"] == []

        sequence = await client.post("/sequences", headers=seeded_context, json={"name": "No key"})
        missing_key = await client.post(
            f"/sequences/{sequence.json()['id']}/triggers",
            headers=seeded_context,
            json={"trigger_kind": "integration"},
        )
        assert missing_key.status_code == 422


@pytest.mark.integration
async def test_integration_event_for_inactive_sequence_is_recorded_as_failed(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(
            client,
            seeded_context,
            trigger={"trigger_kind": "integration", "trigger_key": "member.created"},
            sequence_active=False,
        )

        response = await client.post(
            "/integration-events",
            headers=seeded_context,
            json={"trigger_key": "member.created", "payload": {"plan": "pro"}},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["matched"] == 1
        assert body["workflow_run_ids"] == []
        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert len(events) == 1
        assert events[0]["id"] == body["trigger_event_ids"][0]
        assert events[0]["status"] == "failed"
        assert events[0]["error_message"] == "Sequence is inactive"
        assert queued_tasks == []


@pytest.mark.integration
async def test_failed_run_can_be_rerun_without_reopening_its_event(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]], monkeypatch: pytest.MonkeyPatch
) -> None:
    from relayflow_worker import main as worker_main

    def _failing(_invocation: ActionInvocation) -> ActionResult:
        raise StepExecutionError("CRM unavailable", code=StepErrorCode.INVALID_CREDENTIALS, retryable=False)

    monkeypatch.setattr(worker_main, "registry", IntegrationRegistry({("crm", "sync"): _failing}))
    monkeypatch.setattr(worker_main, "_sleep", lambda _seconds: None)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(
            client, seeded_context, actions=[{"name": "Sync CRM", "app": "crm", "action_key": "sync"}]
        )
        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"x": 1})
        run_id = response.json()["workflow_run_id"]
        _drain(queued_tasks)

        monkeypatch.setattr(
            worker_main, "registry", IntegrationRegistry({("crm", "sync"): lambda _invocation: ActionResult(success=True)})
        )
        rerun = await client.post(f"/workflows/runs/{run_id}/rerun", headers=seeded_context)
        assert rerun.status_code == 202
        body = rerun.json()
        assert body["id"] != run_id
        assert body["rerun_of_id"] == run_id
        assert body["status"] == "queued"
        assert body["trigger_event_id"] == response.json()["trigger_event_id"]
        assert queued_tasks == [(RUN_TASK, [body["id"]])]

        _drain(queued_tasks)
        finished = (await client.get(f"/workflows/runs/{body['id']}", headers=seeded_context)).json()
        assert finished["status"] == "succeeded"

        again = await client.post(f"/workflows/runs/{body['id']}/rerun", headers=seeded_context)
        assert again.status_code == 400
        assert "Only failed workflows can be retried" in again.json()["detail"]

        events = await _events(client, seeded_context, sequence_id, trigger["id"])
        assert [row["status"] for row in events] == ["failed"]


@pytest.mark.integration
async def test_force_rerun_replaces_a_queued_run(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        _sequence_id, trigger = await _create_flow(client, seeded_context)
        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"x": 1})
        run_id = response.json()["workflow_run_id"]

        plain = await client.post(f"/workflows/runs/{run_id}/rerun", headers=seeded_context)
        assert plain.status_code == 400

        forced = await client.post(f"/workflows/runs/{run_id}/force-rerun", headers=seeded_context)
        assert forced.status_code == 202
        new_run = forced.json()
        assert new_run["rerun_of_id"] == run_id

        original = (await client.get(f"/workflows/runs/{run_id}", headers=seeded_context)).json()
        assert original["status"] == "failed"
        assert [step["status"] for step in original["steps"]] == ["skipped"]

        _drain(queued_tasks)
        original = (await client.get(f"/workflows/runs/{run_id}", headers=seeded_context)).json()
        assert original["status"] == "failed"
        replacement = (await client.get(f"/workflows/runs/{new_run['id']}", headers=seeded_context)).json()
        assert replacement["status"] == "succeeded"

        finished = await client.post(f"/workflows/runs/{new_run['id']}/force-rerun", headers=seeded_context)
        assert finished.status_code == 400
        assert "Only queued or running workflows can be force retried" in finished.json()["detail"]


@pytest.mark.integration
async def test_trigger_test_endpoint_evaluates_conditions_without_recording(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sequence_id, trigger = await _create_flow(
            client, seeded_context, trigger={"conditions": {"plan": {"operator": "equals", "value": "pro"}}}
        )
        url = f"/sequences/{sequence_id}/triggers/{trigger['id']}/test"

        empty = await client.post(url, headers=seeded_context, json={})
        assert empty.status_code == 200
        assert empty.json()["source"] == "empty"
        assert empty.json()["matched"] is False

        supplied = await client.post(url, headers=seeded_context, json={"payload": {"plan": "free"}})
        body = supplied.json()
        assert body["source"] == "request"
        assert body["matched"] is False
        assert body["checks"] == [
            {"field": "plan", "operator": "equals", "expected": "pro", "actual": "free", "passed": False}
        ]
        assert await _events(client, seeded_context, sequence_id, trigger["id"]) == []

        delivered = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"plan": "pro"})
        assert delivered.status_code == 200
        latest = (await client.post(url, headers=seeded_context, json={})).json()
        assert latest["source"] == "latest_event"
        assert latest["payload"] == {"plan": "pro"}
        assert latest["matched"] is True
        assert len(await _events(client, seeded_context, sequence_id, trigger["id"])) == 1


@pytest.mark.integration
async def test_action_test_endpoint_runs_one_attempt_without_a_run(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]]
) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post("/sequences", headers=seeded_context, json={"name": "Action test"})
        sequence_id = created.json()["id"]
        echo = await client.post(
            f"/sequences/{sequence_id}/actions",
            headers=seeded_context,
            json={"name": "Echo", "app": "core", "action_key": "echo", "configuration": {"greeting": "hi {{ trigger.name }}"}},
        )
        unknown = await client.post(
            f"/sequences/{sequence_id}/actions",
            headers=seeded_context,
            json={"name": "CRM", "app": "crm", "action_key": "sync"},
        )

        response = await client.post(
            f"/sequences/{sequence_id}/actions/{echo.json()['id']}/test",
            headers=seeded_context,
            json={"payload": {"name": "Ann"}},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["arguments"] == {"greeting": "hi Ann"}
        assert body["data"] == {"greeting": "hi Ann"}

        override = await client.post(
            f"/sequences/{sequence_id}/actions/{echo.json()['id']}/test",
            headers=seeded_context,
            json={"payload": {"name": "Ann"}, "configuration": {"to": "{{ trigger.name }}"}},
        )
        assert override.json()["data"] == {"to": "Ann"}

        failed = await client.post(
            f"/sequences/{sequence_id}/actions/{unknown.json()['id']}/test", headers=seeded_context, json={}
        )
        assert failed.status_code == 200
        assert failed.json()["success"] is False
        assert failed.json()["error_code"] == "invalid_config"

        missing = await client.post(
            f"/sequences/{sequence_id}/actions/{uuid.uuid4()}/test", headers=seeded_context, json={}
        )
        assert missing.status_code == 404

        assert (await client.get("/workflows/runs", headers=seeded_context)).json() == []
        assert queued_tasks == []


@pytest.mark.integration
async def test_webhook_database_work_runs_off_the_event_loop(
    seeded_context: dict[str, str], queued_tasks: list[tuple[str, list[str]]], monkeypatch: pytest.MonkeyPatch
) -> None:
    import threading

    from app.routers import webhooks

    loop_thread = threading.get_ident()
    seen_threads: list[int] = []
    real_lookup = webhooks.load_webhook_trigger

    def _lookup(db, trigger_uuid):  # noqa: ANN001
        seen_threads.append(threading.get_ident())
        return real_lookup(db, trigger_uuid)

    monkeypatch.setattr(webhooks, "load_webhook_trigger", _lookup)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        _sequence_id, trigger = await _create_flow(client, seeded_context)
        response = await client.post(f"/webhooks/{trigger['webhook_uuid']}", json={"x": 1})
        missing = await client.post("/webhooks/00000000-0000-0000-0000-000000000000", json={})

    assert response.status_code == 200
    assert missing.status_code == 404
    assert len(seen_threads) == 2
    assert loop_thread not in seen_threads
