from __future__ import annotations

import re
from typing import Mapping

AUDIT_HEADER_ALLOWLIST: tuple[str, ...] = (
    "content-type",
    "content-length",
    "user-agent",
    "x-forwarded-for",
    "x-real-ip",
    "authorization",
    "x-api-key",
    "x-signature",
    "x-hub-signature",
    "x-hub-signature-256",
)

MASKED_HEADERS = frozenset({"authorization", "x-api-key"})
MASK = "***MASKED***"

_SECRET_RE = re.compile(r"(bearer\s+\S+|basic\s+\S+|(?:api[_-]?key|token|secret|password)\s*[=:]\s*\S+)", re.IGNORECASE)


def mask_headers(
    headers: Mapping[str, str],
    allowlist: tuple[str, ...] = AUDIT_HEADER_ALLOWLIST,
    masked: frozenset[str] = MASKED_HEADERS,
) -> dict[str, str]:
    lowered = {key.lower(): value for key, value in headers.items()}
    out: dict[str, str] = {}
    for name in allowlist:
        if name not in lowered:
            continue
        out[name] = MASK if name in masked else lowered[name]
    return out


def redact_secret_text(value: str, limit: int = 500) -> str:
    return _SECRET_RE.sub("[redacted-secret]", value)[:limit]
