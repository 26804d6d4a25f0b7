from __future__ import annotations
# ruff: noqa: E402

import os
import sys
import uuid
from collections.abc import Generator
from pathlib import Path

import pytest

os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("CONNECTOR_MODE", "mock")

API_ROOT = Path(__file__).resolve().parents[1]
WORKER_ROOT = Path(__file__).resolve().parents[2] / "worker"
REPO_ROOT = Path(__file__).resolve().parents[3]
for root in (API_ROOT, WORKER_ROOT, REPO_ROOT):
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))

from sqlalchemy.orm import Session

from app.db import SessionLocal, engine
from app.models import Base, Membership, Org, Role, User

TEST_USER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
TEST_ORG_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
OTHER_ORG_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    with SessionLocal() as session:
        yield session
        session.rollback()


@pytest.fixture()
def seeded_context(db_session: Session) -> dict[str, str]:
    user = User(id=TEST_USER_ID, email="integration@relayflow.local")
    org = Org(id=TEST_ORG_ID, name="Integration Org")
    other_org = Org(id=OTHER_ORG_ID, name="Other Integration Org")
    db_session.add_all([user, org, other_org])
    db_session.flush()
    db_session.add(Membership(org_id=TEST_ORG_ID, user_id=TEST_USER_ID, role=Role.OWNER))
    db_session.commit()
    return {
        "X-Relayflow-User-Id": str(TEST_USER_ID),
        "X-Relayflow-Org-Id": str(TEST_ORG_ID),
        "X-Relayflow-Role": Role.OWNER.value,
    }


@pytest.fixture()
def queued_tasks(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, list[str]]]:
    from relayflow_worker.main import app as worker_app

    sent: list[tuple[str, list[str]]] = []

    def _send_task(name: str, args=None, kwargs=None, **_):
        # Keep dispatch deterministic in tests; execution is drained explicitly after commit.
        sent.append((name, list(args or [])))
        return {"args": args or [], "kwargs": kwargs or {}}

    monkeypatch.setattr(worker_app, "send_task", _send_task)
    return sent
