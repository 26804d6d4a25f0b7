from __future__ import annotations

import base64
import binascii
import hashlib
import hmac

from .schema import (
    ApiKeyAuth,
    BasicAuth,
    SignatureAuth,
    TriggerConfig,
    UnrecognizedAuth,
    WebhookRequest,
)

SUPPORTED_SIGNATURE_ALGORITHMS = frozenset({"sha1", "sha256", "sha384", "sha512"})


def _constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def compute_signature(secret: str, body: bytes, algorithm: str = "sha256") -> str:
    return hmac.new(secret.encode("utf-8"), body, getattr(hashlib, algorithm)).hexdigest()


def _check_api_key(request: WebhookRequest, config: ApiKeyAuth) -> bool:
    if not config.expected_key:
        return True
    provided = request.header(config.header)
    if provided is None:
        return False
    return _constant_time_equals(provided, config.expected_key)


def _check_signature(request: WebhookRequest, config: SignatureAuth, secret: str | None) -> bool:
    provided = request.header(config.header)
    if not provided:
        return False
    algorithm = config.algorithm.strip().lower()
    if not secret or algorithm not in SUPPORTED_SIGNATURE_ALGORITHMS:
        return False
    expected = compute_signature(secret, request.body, algorithm)
    prefix = f"{algorithm}="
    if provided.startswith(prefix):
        expected = prefix + expected
    return _constant_time_equals(provided, expected)


def _decode_basic(header_value: str | None) -> tuple[str, str] | None:
    if not header_value or not header_value.startswith("Basic "):
        return None
    try:
        decoded = base64.b64decode(header_value[len("Basic ") :].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    username, password = decoded.split(":", 1)
    return username, password


def _check_basic(request: WebhookRequest, config: BasicAuth) -> bool:
    if config.username is None and config.password is None:
        return True
    credentials = _decode_basic(request.header("Authorization"))
    if credentials is None:
        return False
    username, password = credentials
    user_ok = _constant_time_equals(username, config.username or "")
    password_ok = _constant_time_equals(password, config.password or "")
    return user_ok and password_ok


def authenticate(request: WebhookRequest, trigger: TriggerConfig, *, fail_open: bool = True) -> bool:
    """Verify an inbound webhook against the trigger's auth config.

    ``fail_open`` decides the outcome for auth types this module does not know.
    """
    config = trigger.auth_config
    if config is None:
        return True
    match config:
        case ApiKeyAuth():
            return _check_api_key(request, config)
        case SignatureAuth():
            return _check_signature(request, config, trigger.webhook_secret)
        case BasicAuth():
            return _check_basic(request, config)
        case UnrecognizedAuth():
            return fail_open
    return fail_open
