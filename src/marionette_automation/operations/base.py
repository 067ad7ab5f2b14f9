from __future__ import annotations

import asyncio
import difflib
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from ..connection import Connection
from ..errors import ExecutionTimeout, OperationError, ValidationError
from ..streaming import EventStream, collect_result
from ..types import (
    DiffResult,
    OperationCapability,
    OperationDoc,
    Reason,
    Result,
    RunMode,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRUTHY = {"true", "yes", "on", "1", "y", "t"}


# Typed argument access ----------------------------------------------------
def get_str_arg(args: Mapping[str, Any], key: str, default: str = "") -> str:
    if key not in args or args[key] is None:
        return default
    value = args[key]
    if isinstance(value, bytes):
        return value.decode()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def get_bool_arg(args: Mapping[str, Any], key: str, default: bool = False) -> bool:
    if key not in args:
        return default
    value = args[key]
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    if isinstance(value, (int, float)):
        return value != 0
    return False


def get_int_arg(args: Mapping[str, Any], key: str, default: int = 0) -> int:
    if key not in args or args[key] is None:
        return default
    value = args[key]
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise ValidationError(key, value, "expected an integer") from None
    raise ValidationError(key, value, f"cannot convert {type(value).__name__} to int")


def get_map_arg(
    args: Mapping[str, Any], key: str, default: Optional[dict[str, Any]] = None
) -> Optional[dict[str, Any]]:
    value = args.get(key)
    if isinstance(value, Mapping):
        return dict(value)
    return default


def get_list_arg(args: Mapping[str, Any], key: str, default: Optional[list[Any]] = None) -> Optional[list[Any]]:
    if key not in args or args[key] is None:
        return default
    value = args[key]
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def validate_required(args: Mapping[str, Any], required: Iterable[str]) -> None:
    for field in required:
        if field not in args:
            raise ValidationError(field, None, "required field is missing")


_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "str": lambda v: isinstance(v, str),
    "boolean": lambda v: isinstance(v, bool),
    "bool": lambda v: isinstance(v, bool),
    "integer": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "int": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "list": lambda v: isinstance(v, (list, tuple)),
    "dict": lambda v: isinstance(v, Mapping),
    "map": lambda v: isinstance(v, Mapping),
}


def validate_types(args: Mapping[str, Any], field_types: Mapping[str, str]) -> None:
    for field, expected in field_types.items():
        if field not in args:
            continue
        value = args[field]
        check = _TYPE_CHECKS.get(expected)
        if check is not None and not check(value):
            raise ValidationError(field, value, f"expected {expected}, got {type(value).__name__}")


def validate_choices(args: Mapping[str, Any], field: str, choices: Iterable[str]) -> None:
    if field not in args:
        return
    allowed = list(choices)
    if get_str_arg(args, field) not in allowed:
        raise ValidationError(field, args[field], f"value must be one of: {', '.join(allowed)}")


# Execution helpers --------------------------------------------------------
async def with_timeout(seconds: Optional[float], operation: Callable[[], Awaitable[T]]) -> T:
    """Await ``operation()`` under a deadline; ``None`` or ``<= 0`` means none."""
    if seconds is None or seconds <= 0:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=seconds)
    except ExecutionTimeout:
        raise
    except asyncio.TimeoutError:
        raise ExecutionTimeout(seconds) from None


async def retry(
    max_retries: int,
    backoff: float,
    operation: Callable[[], Awaitable[Optional[Result]]],
) -> Optional[Result]:
    """Call ``operation`` up to ``max_retries + 1`` times until it succeeds.

    Sleeps ``backoff`` seconds between attempts; cancelling the calling task
    interrupts the sleep immediately. ``ValidationError`` is never retried.
    When every attempt fails the last result is returned, or the last
    exception re-raised if the final attempt raised.
    """
    attempts = max(0, max_retries) + 1
    last_result: Optional[Result] = None
    last_error: Optional[Exception] = None
    for attempt in range(attempts):
        if attempt > 0 and backoff > 0:
            await asyncio.sleep(backoff)
        try:
            result = await operation()
        except ValidationError:
            raise
        except Exception as exc:  # noqa: BLE001
            last_result, last_error = None, exc
            logger.debug("retry attempt=%d/%d raised: %s", attempt + 1, attempts, exc)
            continue
        if result is not None and result.success:
            return result
        last_result, last_error = result, None
        logger.debug("retry attempt=%d/%d failed", attempt + 1, attempts)
    if last_error is not None:
        raise last_error
    return last_result


def generate_diff(before: str, after: str, *, path: str = "") -> Optional[DiffResult]:
    """Return a ``DiffResult`` for differing texts, ``None`` when identical."""
    if before == after:
        return None
    before_lines = before.splitlines()
    after_lines = after.splitlines()
    label = path or "content"
    unified = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"before: {label}",
        tofile=f"after: {label}",
    )
    return DiffResult(
        before=before,
        after=after,
        before_lines=before_lines,
        after_lines=after_lines,
        prepared=True,
        diff="".join(unified),
    )


class Operation(ABC):
    """Shared surface for runnable automation operations.

    Instances are stateless and shared across concurrent runs; per-call input
    arrives through ``args`` and ``mode``. ``parse`` is the single place where
    untyped arguments are checked and coerced.
    """

    name: str = ""
    capability: OperationCapability = OperationCapability()
    doc: Optional[OperationDoc] = None

    def capabilities(self) -> OperationCapability:
        return self.capability

    def documentation(self) -> OperationDoc:
        if self.doc is not None:
            return self.doc
        summary = (self.__doc__ or "").strip().splitlines()
        return OperationDoc(name=self.name, description=summary[0] if summary else "")

    def validate(self, args: Mapping[str, Any]) -> None:
        """Raise ``ValidationError`` when ``args`` cannot drive ``run``."""
        self.parse(args)

    def parse(self, args: Mapping[str, Any]) -> Any:
        """Check ``args`` against the documented parameters.

        Subclasses override this to return a typed, immutable argument object.
        """
        params = self.documentation().parameters
        validate_required(args, [name for name, param in params.items() if param.required])
        validate_types(args, {name: param.type for name, param in params.items()})
        for name, param in params.items():
            if param.choices:
                validate_choices(args, name, param.choices)
        return MappingProxyType(dict(args))

    @abstractmethod
    async def run(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> Result:
        """Perform the operation against ``conn``; must be idempotent."""

    # Result builders -----------------------------------------------------
    def success_result(
        self,
        host: str,
        changed: bool,
        message: str,
        data: Optional[dict[str, Any]] = None,
        *,
        reason: Optional[Reason] = None,
    ) -> Result:
        return Result(
            host=host,
            success=True,
            changed=changed,
            message=message,
            data=dict(data or {}),
            operation=self.name,
            reason=reason,
        )

    def failure_result(
        self,
        host: str,
        message: str,
        error: Optional[BaseException] = None,
        data: Optional[dict[str, Any]] = None,
        *,
        reason: Optional[Reason] = None,
    ) -> Result:
        return Result(
            host=host,
            success=False,
            message=message,
            data=dict(data or {}),
            error=error,
            operation=self.name,
            reason=reason,
        )

    def error_result(self, host: str, message: str, cause: Optional[BaseException] = None) -> Result:
        return self.failure_result(host, message, OperationError(self.name, host, message, cause))

    def check_mode_result(
        self,
        host: str,
        changed: bool,
        message: str,
        data: Optional[dict[str, Any]] = None,
        *,
        reason: Optional[Reason] = None,
    ) -> Result:
        payload = dict(data or {})
        payload["_check_mode"] = True
        return Result(
            host=host,
            success=True,
            changed=changed,
            message=message,
            data=payload,
            simulated=True,
            operation=self.name,
            reason=reason,
        )

    def outcome(
        self,
        host: str,
        changed: bool,
        message: str,
        mode: RunMode,
        data: Optional[dict[str, Any]] = None,
        *,
        diff: Optional[DiffResult] = None,
        reason: Optional[Reason] = None,
    ) -> Result:
        """Build the success result for ``mode``, attaching ``diff`` only when it applies."""
        if mode.check:
            result = self.check_mode_result(host, changed, message, data, reason=reason)
        else:
            result = self.success_result(host, changed, message, data, reason=reason)
        if mode.diff and changed and diff is not None:
            result.diff = diff
        return result

    async def execute_with_timing(self, operation: Callable[[], Awaitable[Result]]) -> Result:
        start = utcnow()
        result = await operation()
        if result is not None:
            result.stamp(start)
        return result


class StreamingOperation(Operation):
    """Operation whose work is reported as a live ``EventStream``.

    ``run`` consumes the stream and returns the terminal ``Result``; callers
    wanting live events use ``run_stream`` directly.
    """

    @abstractmethod
    async def run_stream(
        self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()
    ) -> EventStream:
        """Start the work and return its event stream."""

    async def run(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> Result:
        return await collect_result(await self.run_stream(conn, args, mode))
