from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class TriggerKind(StrEnum):
    INTEGRATION = "integration"
    WEBHOOK = "webhook"


class EventSource(StrEnum):
    WEBHOOK = "webhook"
    INTEGRATION = "integration"


class EventStatus(StrEnum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class RunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepErrorCode(StrEnum):
    API_TIMEOUT = "api_timeout"
    API_RATE_LIMIT = "api_rate_limit"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_CONFIG = "invalid_config"
    EXTERNAL_SERVICE = "external_service_error"
    VALIDATION = "validation_error"


class AuthType(StrEnum):
    API_KEY = "api_key"
    SIGNATURE = "signature"
    BASIC = "basic"


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    IN = "in"
    NOT_IN = "not_in"


class ApiKeyAuth(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["api_key"] = "api_key"
    header: str = "X-API-Key"
    expected_key: str | None = None


class SignatureAuth(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["signature"] = "signature"
    header: str = "X-Signature"
    algorithm: str = "sha256"


class BasicAuth(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["basic"] = "basic"
    username: str | None = None
    password: str | None = None


class UnrecognizedAuth(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    type: str | None = None


def _auth_discriminator(raw: Any) -> str:
    value = raw.get("type") if isinstance(raw, dict) else getattr(raw, "type", None)
    if value in {member.value for member in AuthType}:
        return str(value)
    return "unrecognized"


WebhookAuthConfig = Annotated[
    Union[
        Annotated[ApiKeyAuth, Tag(AuthType.API_KEY.value)],
        Annotated[SignatureAuth, Tag(AuthType.SIGNATURE.value)],
        Annotated[BasicAuth, Tag(AuthType.BASIC.value)],
        Annotated[UnrecognizedAuth, Tag("unrecognized")],
    ],
    Discriminator(_auth_discriminator),
]


class TriggerCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator | str = ConditionOperator.EQUALS
    value: Any | None = None


def parse_conditions(raw: Any) -> list[TriggerCondition]:
    """Turn the stored ``{field: {operator, value}}`` map into condition rows."""
    if not isinstance(raw, dict):
        return []
    rows: list[TriggerCondition] = []
    for field_path, rule in raw.items():
        if not isinstance(rule, dict):
            continue
        operator_raw = rule.get("operator") or ConditionOperator.EQUALS.value
        try:
            operator: ConditionOperator | str = ConditionOperator(str(operator_raw))
        except ValueError:
            operator = str(operator_raw)
        rows.append(TriggerCondition(field=str(field_path), operator=operator, value=rule.get("value")))
    return rows


class TriggerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    org_id: uuid.UUID
    sequence_id: uuid.UUID
    name: str | None = None
    trigger_kind: TriggerKind
    integration_id: uuid.UUID | None = None
    trigger_key: str | None = None
    webhook_uuid: str | None = None
    webhook_secret: str | None = None
    auth_config: WebhookAuthConfig | None = None
    conditions: list[TriggerCondition] = Field(default_factory=list)
    is_active: bool = True


class ActionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    name: str
    type: str = "app_action"
    app: str
    action_key: str
    integration_id: uuid.UUID | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    sort_order: int = 0
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: float | None = Field(default=None, gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def step_key(self) -> str:
        return step_key_for(self.name)


class SequenceConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    org_id: uuid.UUID
    name: str
    is_active: bool = True
    actions: list[ActionConfig] = Field(default_factory=list)


class ActionResult(BaseModel):
    success: bool
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_code: StepErrorCode | None = None


@dataclass(frozen=True)
class RunHandle:
    run_id: uuid.UUID
    step_count: int


@dataclass(frozen=True)
class WebhookRequest:
    method: str
    url: str
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    client_ip: str | None = None

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")


def step_key_for(name: str) -> str:
    out: list[str] = []
    for char in name.strip().lower():
        if char.isalnum():
            out.append(char)
        elif out and out[-1] != "_":
            out.append("_")
    return "".join(out).strip("_") or "step"
