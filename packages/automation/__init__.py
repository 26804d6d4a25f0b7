from packages.automation.auth import authenticate, compute_signature
from packages.automation.conditions import evaluate_condition, loose_equals, matches, payload_lookup
from packages.automation.errors import (
    AuthenticationError,
    AutomationError,
    DispatchError,
    InvalidEventTransition,
    StepExecutionError,
)
from packages.automation.lifecycle import TERMINAL_RUN_STATUSES, event_sources_for, run_sources_for, step_sources_for
from packages.automation.schema import (
    ActionConfig,
    ActionResult,
    ApiKeyAuth,
    AuthType,
    BasicAuth,
    ConditionOperator,
    EventSource,
    EventStatus,
    RunHandle,
    RunStatus,
    SequenceConfig,
    SignatureAuth,
    StepErrorCode,
    StepStatus,
    TriggerCondition,
    TriggerConfig,
    TriggerKind,
    UnrecognizedAuth,
    WebhookAuthConfig,
    WebhookRequest,
    parse_conditions,
    step_key_for,
)
from packages.automation.templates import build_context, process_output, resolve_value

__all__ = [
    "ActionConfig",
    "ActionResult",
    "ApiKeyAuth",
    "AuthType",
    "AuthenticationError",
    "AutomationError",
    "BasicAuth",
    "ConditionOperator",
    "DispatchError",
    "EventSource",
    "EventStatus",
    "InvalidEventTransition",
    "RunHandle",
    "RunStatus",
    "SequenceConfig",
    "SignatureAuth",
    "StepErrorCode",
    "StepExecutionError",
    "StepStatus",
    "TERMINAL_RUN_STATUSES",
    "TriggerCondition",
    "TriggerConfig",
    "TriggerKind",
    "UnrecognizedAuth",
    "WebhookAuthConfig",
    "WebhookRequest",
    "authenticate",
    "build_context",
    "compute_signature",
    "evaluate_condition",
    "event_sources_for",
    "loose_equals",
    "matches",
    "parse_conditions",
    "payload_lookup",
    "process_output",
    "resolve_value",
    "run_sources_for",
    "step_key_for",
    "step_sources_for",
]
