from __future__ import annotations

from redis import Redis

from .settings import settings


def get_redis_client() -> Redis:
    return Redis.from_url(settings.redis_url, decode_responses=True, socket_connect_timeout=2)


def ping_broker() -> bool:
    """The Celery broker and result backend both live on ``redis_url``."""
    return bool(get_redis_client().ping())
