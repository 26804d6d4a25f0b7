from __future__ import annotations

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import Select, select

from app.main import app
from app.models import Sequence
from app.tenancy import org_scoped

OTHER_ORG_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")


def test_org_scoped_helper_filters_by_org_id() -> None:
    org_id = uuid.uuid4()
    stmt: Select[tuple[Sequence]] = select(Sequence)
    scoped_stmt = org_scoped(stmt, org_id, Sequence)
    compiled = str(scoped_stmt.compile(compile_kwargs={"literal_binds": True}))
    assert str(org_id).replace("-", "") in compiled
    assert "sequences.org_id" in compiled


@pytest.mark.integration
async def test_management_api_requires_context_headers(seeded_context: dict[str, str]) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/sequences", json={"name": "No headers"})
    assert response.status_code == 401


@pytest.mark.integration
async def test_management_api_requires_membership(seeded_context: dict[str, str]) -> None:
    headers = {**seeded_context, "X-Relayflow-Org-Id": str(OTHER_ORG_ID)}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/sequences", headers=headers, json={"name": "Not mine"})
    assert response.status_code == 403


@pytest.mark.integration
async def test_member_role_cannot_manage_sequences(seeded_context: dict[str, str]) -> None:
    headers = {**seeded_context, "X-Relayflow-Role": "member"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/sequences", headers=headers, json={"name": "Read only"})
    assert response.status_code == 403


@pytest.mark.integration
async def test_sequences_are_org_scoped(seeded_context: dict[str, str], db_session) -> None:  # noqa: ANN001
    foreign = Sequence(org_id=OTHER_ORG_ID, name="Foreign")
    db_session.add(foreign)
    db_session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            f"/sequences/{foreign.id}/actions",
            headers=seeded_context,
            json={"name": "Echo", "app": "core", "action_key": "echo"},
        )
    assert response.status_code == 404


@pytest.mark.integration
async def test_trigger_create_rejects_invalid_conditions(seeded_context: dict[str, str]) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post("/sequences", headers=seeded_context, json={"name": "Bad conditions"})
        response = await client.post(
            f"/sequences/{created.json()['id']}/triggers",
            headers=seeded_context,
            json={"conditions": {"status": "paid"}},
        )
    assert response.status_code == 422


@pytest.mark.integration
async def test_role_header_is_optional_and_defaults_to_membership(seeded_context: dict[str, str]) -> None:
    headers = {key: value for key, value in seeded_context.items() if key != "X-Relayflow-Role"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/sequences", headers=headers, json={"name": "Owner default"})
    assert response.status_code == 201


@pytest.mark.integration
async def test_workflow_runs_of_other_orgs_read_as_missing(seeded_context: dict[str, str]) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(f"/workflows/runs/{uuid.uuid4()}", headers=seeded_context)
    assert response.status_code == 404
    assert response.json()["detail"] == "workflow run not found"
