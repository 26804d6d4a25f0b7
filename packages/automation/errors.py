from __future__ import annotations

from .schema import EventStatus, StepErrorCode


class AutomationError(Exception):
    pass


class AuthenticationError(AutomationError):
    def __init__(self, message: str = "webhook authentication failed") -> None:
        super().__init__(message)


class DispatchError(AutomationError):
    pass


class StepExecutionError(AutomationError):
    """Raised by integration executors; ``retryable`` is False for config problems."""

    def __init__(
        self,
        message: str,
        code: StepErrorCode = StepErrorCode.EXTERNAL_SERVICE,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class InvalidEventTransition(AutomationError):
    def __init__(self, current: EventStatus | str | None, target: EventStatus) -> None:
        super().__init__(f"trigger event cannot move from {current} to {target.value}")
        self.current = current
        self.target = target
