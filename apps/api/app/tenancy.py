from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, TypeVar

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .models import Membership, Role
from .settings import settings

OrgOwned = TypeVar("OrgOwned")

ROLE_RANK: dict[Role, int] = {
    Role.AGENT: 1,
    Role.MEMBER: 2,
    Role.ADMIN: 3,
    Role.OWNER: 4,
}


@dataclass(frozen=True)
class RequestContext:
    current_user_id: uuid.UUID
    current_org_id: uuid.UUID
    current_role: Role


def org_scoped(stmt: Any, org_id: uuid.UUID, model: Any) -> Any:
    return stmt.where(getattr(model, "org_id") == org_id)


def get_org_owned(db: Session, model: type[OrgOwned], object_id: uuid.UUID, context: RequestContext, label: str) -> OrgOwned:
    """Load a row owned by the caller's org; rows of other orgs read as missing."""
    row = db.scalar(org_scoped(select(model).where(getattr(model, "id") == object_id), context.current_org_id, model))
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return row


def require_role(context: RequestContext, minimum_role: Role) -> None:
    if ROLE_RANK[context.current_role] < ROLE_RANK[minimum_role]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient role")


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid auth context headers") from exc


def _parse_role(value: str) -> Role:
    try:
        return Role(value.strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid role header") from exc


def _effective_role(membership_role: Role, requested: Role | None) -> Role:
    # A caller may act with a narrower role than its membership grants, never a wider one.
    if requested is None or ROLE_RANK[requested] >= ROLE_RANK[membership_role]:
        return membership_role
    return requested


def get_request_context(
    db: Session = Depends(get_db),
    x_relayflow_user_id: str | None = Header(default=None),
    x_relayflow_org_id: str | None = Header(default=None),
    x_relayflow_role: str | None = Header(default=None),
) -> RequestContext:
    if settings.dev_auth_bypass:
        return RequestContext(
            current_user_id=uuid.UUID(settings.dev_user_id),
            current_org_id=uuid.UUID(settings.dev_org_id),
            current_role=_parse_role(settings.dev_role),
        )

    if not x_relayflow_user_id or not x_relayflow_org_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing auth context headers")

    user_id = _parse_uuid(x_relayflow_user_id)
    org_id = _parse_uuid(x_relayflow_org_id)
    requested_role = _parse_role(x_relayflow_role) if x_relayflow_role else None
    membership = db.scalar(
        select(Membership).where(
            Membership.org_id == org_id,
            Membership.user_id == user_id,
            Membership.deleted_at.is_(None),
        )
    )
    if membership is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="org membership required")

    return RequestContext(
        current_user_id=user_id,
        current_org_id=org_id,
        current_role=_effective_role(membership.role, requested_role),
    )
