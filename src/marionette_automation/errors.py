from __future__ import annotations

from typing import Any, Optional


class MarionetteError(Exception):
    """Base class for every error raised by the execution core."""


class ValidationError(MarionetteError):
    """An argument was missing, malformed, or of the wrong type."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        self.message = message
        super().__init__(f"validation failed for field {field} (value: {value!r}): {message}")


class OperationError(MarionetteError):
    """Failure raised while an operation was running against a host."""

    def __init__(self, operation: str, host: str, message: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.host = host
        self.message = message
        self.cause = cause
        text = f"operation {operation} on host {host}: {message}"
        if cause is not None:
            text = f"{text}: {cause}"
        super().__init__(text)
        if cause is not None:
            self.__cause__ = cause


class TransportError(MarionetteError):
    """The connection could not reach the host or spawn the command."""

    def __init__(self, host: str, message: str, cause: Optional[BaseException] = None):
        self.host = host
        self.message = message
        self.cause = cause
        text = f"connection to {host}: {message}"
        if cause is not None:
            text = f"{text}: {cause}"
        super().__init__(text)
        if cause is not None:
            self.__cause__ = cause


class CapabilityMismatchError(MarionetteError):
    def __init__(self, operation: str, requested: str):
        self.operation = operation
        self.requested = requested
        super().__init__(f"operation {operation} does not support {requested}")


class ExecutionTimeout(MarionetteError, TimeoutError):
    def __init__(self, seconds: float, what: str = "operation"):
        self.seconds = seconds
        super().__init__(f"{what} timed out after {seconds:g}s")


class OperationNotFoundError(MarionetteError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"operation '{self.name}' is not registered"


class StreamClosedError(MarionetteError):
    """An event was emitted after the stream reached its terminal event."""


class StreamProtocolError(MarionetteError):
    """A stream ended without producing a terminal event."""


class StepStateError(MarionetteError):
    def __init__(self, step_id: str, current: Any, requested: Any):
        self.step_id = step_id
        self.current = current
        self.requested = requested
        super().__init__(f"step {step_id}: cannot move from {_label(current)} to {_label(requested)}")


def _label(status: Any) -> str:
    return str(getattr(status, "value", status))
