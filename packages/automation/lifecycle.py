from __future__ import annotations

from .schema import EventStatus, RunStatus, StepStatus

# Sources each target status may be entered from. Anything absent is terminal.
EVENT_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.PROCESSED: frozenset({EventStatus.RECEIVED}),
    EventStatus.IGNORED: frozenset({EventStatus.RECEIVED}),
    EventStatus.FAILED: frozenset({EventStatus.RECEIVED}),
}

# A dispatched event whose run later fails terminally.
EVENT_ESCALATIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.FAILED: frozenset({EventStatus.PROCESSED}),
}

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset({RunStatus.QUEUED, RunStatus.RUNNING}),
    RunStatus.SUCCEEDED: frozenset({RunStatus.RUNNING}),
    RunStatus.FAILED: frozenset({RunStatus.QUEUED, RunStatus.RUNNING}),
}

# PENDING from RUNNING is a lease reset; FAILED from PENDING is a forced stop.
STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.RUNNING: frozenset({StepStatus.PENDING}),
    StepStatus.SUCCEEDED: frozenset({StepStatus.RUNNING}),
    StepStatus.FAILED: frozenset({StepStatus.RUNNING, StepStatus.PENDING}),
    StepStatus.SKIPPED: frozenset({StepStatus.PENDING}),
    StepStatus.PENDING: frozenset({StepStatus.RUNNING}),
}

TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED})


def event_sources_for(target: EventStatus, *, escalation: bool = False) -> frozenset[EventStatus]:
    table = EVENT_ESCALATIONS if escalation else EVENT_TRANSITIONS
    return table.get(target, frozenset())


def run_sources_for(target: RunStatus) -> frozenset[RunStatus]:
    return RUN_TRANSITIONS.get(target, frozenset())


def step_sources_for(target: StepStatus) -> frozenset[StepStatus]:
    return STEP_TRANSITIONS.get(target, frozenset())
