from __future__ import annotations

from fastapi import APIRouter, HTTPException

from ..db import check_db_health
from ..logging_config import get_logger
from ..redis_client import ping_broker
from ..settings import settings

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


def _dependency_checks() -> dict[str, str]:
    checks = {"db": "ok", "broker": "ok"}
    try:
        check_db_health()
    except Exception:
        logger.warning("health.db_down", exc_info=True)
        checks["db"] = "down"
    try:
        ping_broker()
    except Exception:
        logger.warning("health.broker_down", exc_info=True)
        checks["broker"] = "down"
    return checks


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "relayflow-api"}


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready")
def ready() -> dict[str, object]:
    checks = _dependency_checks()
    if any(value != "ok" for value in checks.values()):
        raise HTTPException(status_code=503, detail={"status": "not_ready", "env": settings.app_env, "checks": checks})
    return {"status": "ready", "env": settings.app_env, "connector_mode": settings.connector_mode, "checks": checks}


@router.get("/healthz/db")
def healthz_db() -> dict[str, str]:
    try:
        check_db_health()
    except Exception as exc:
        raise HTTPException(status_code=503, detail="database unavailable") from exc
    return {"status": "ok"}
