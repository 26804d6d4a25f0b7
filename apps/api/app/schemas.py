from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from packages.automation import WebhookAuthConfig, parse_conditions


class SequenceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_active: bool = True


class SequenceResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    name: str
    description: str | None = None
    is_active: bool
    run_count: int
    last_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ActionCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    app: str = Field(min_length=1, max_length=100)
    action_key: str = Field(min_length=1, max_length=120)
    integration_id: uuid.UUID | None = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    sort_order: int | None = Field(default=None, ge=0)
    max_retries: int | None = Field(default=None, ge=1, le=10)
    timeout_seconds: float | None = Field(default=None, gt=0, le=300)


class ActionResponse(BaseModel):
    id: uuid.UUID
    sequence_id: uuid.UUID
    name: str
    type: str
    app: str
    action_key: str
    integration_id: uuid.UUID | None = None
    configuration: dict[str, Any]
    sort_order: int
    max_retries: int
    timeout_seconds: float | None = None


class TriggerCreateRequest(BaseModel):
    trigger_kind: str = Field(default="webhook", pattern="^(webhook|integration)$")
    name: str | None = Field(default=None, max_length=255)
    trigger_key: str | None = Field(default=None, max_length=120)
    integration_id: uuid.UUID | None = None
    auth_config: dict[str, Any] | None = None
    conditions: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True

    @field_validator("auth_config")
    @classmethod
    def _validate_auth_config(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        if value:
            TypeAdapter(WebhookAuthConfig).validate_python(value)
        return value

    @field_validator("conditions")
    @classmethod
    def _validate_conditions(cls, value: dict[str, Any]) -> dict[str, Any]:
        for field_path, rule in value.items():
            if not isinstance(rule, dict):
                raise ValueError(f"condition for {field_path} must be an object")
        parse_conditions(value)
        return value


class TriggerResponse(BaseModel):
    id: uuid.UUID
    sequence_id: uuid.UUID
    name: str | None = None
    trigger_kind: str
    integration_id: uuid.UUID | None = None
    trigger_key: str | None = None
    webhook_uuid: str | None = None
    webhook_url: str | None = None
    webhook_secret: str | None = None
    auth_config: dict[str, Any] | None = None
    conditions: dict[str, Any]
    is_active: bool
    trigger_count: int
    last_triggered_at: datetime | None = None


class TriggerEventResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    trigger_id: uuid.UUID | None = None
    event_source: str
    status: str
    event_data: dict[str, Any]
    metadata_json: dict[str, Any]
    error_message: str | None = None
    processed_at: datetime | None = None
    workflow_run_id: uuid.UUID | None = None
    created_at: datetime


class WorkflowStepResponse(BaseModel):
    id: uuid.UUID
    action_id: uuid.UUID
    position: int
    step_name: str
    step_key: str
    app: str
    action_key: str
    status: str
    retry_count: int
    max_retries: int
    input_data: dict[str, Any]
    output_data: dict[str, Any]
    error_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


class WorkflowRunResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    sequence_id: uuid.UUID
    trigger_id: uuid.UUID | None = None
    trigger_event_id: uuid.UUID | None = None
    rerun_of_id: uuid.UUID | None = None
    status: str
    input_json: dict[str, Any]
    output_json: dict[str, Any]
    error_json: dict[str, Any]
    started_at: datetime | None = None
    finished_at: datetime | None = None
    steps: list[WorkflowStepResponse] = Field(default_factory=list)


class IntegrationEventRequest(BaseModel):
    trigger_key: str = Field(min_length=1, max_length=120)
    integration_id: uuid.UUID | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class IntegrationEventResponse(BaseModel):
    trigger_key: str
    matched: int
    trigger_event_ids: list[uuid.UUID]
    workflow_run_ids: list[uuid.UUID]
    errors: list[str]


class TriggerTestRequest(BaseModel):
    payload: dict[str, Any] | None = None


class ConditionCheckResponse(BaseModel):
    field: str
    operator: str
    expected: Any = None
    actual: Any = None
    passed: bool


class TriggerTestResponse(BaseModel):
    trigger_id: uuid.UUID
    source: str
    payload: dict[str, Any]
    matched: bool
    checks: list[ConditionCheckResponse] = Field(default_factory=list)


class ActionTestRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    configuration: dict[str, Any] | None = None


class ActionTestResponse(BaseModel):
    action_id: uuid.UUID
    success: bool
    arguments: dict[str, Any]
    data: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
