from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from .errors import CapabilityMismatchError, StepStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reason(str, Enum):
    """Structured outcome codes so callers never parse ``Result.message``."""

    APPLIED = "applied"
    ALREADY_PRESENT = "already_present"
    ABSENT = "absent"
    GUARD_SKIPPED = "guard_skipped"
    NOT_FOUND = "not_found"
    COMMAND_FAILED = "command_failed"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


@dataclass
class DiffResult:
    before: str
    after: str
    before_lines: list[str] = field(default_factory=list)
    after_lines: list[str] = field(default_factory=list)
    prepared: bool = True
    diff: str = ""


@dataclass
class Result:
    """Outcome of one operation execution on one host."""

    host: str
    success: bool
    changed: bool = False
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    diff: Optional[DiffResult] = None
    simulated: bool = False
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration: timedelta = timedelta(0)
    operation: str = ""
    task_name: str = ""
    reason: Optional[Reason] = None

    def __post_init__(self) -> None:
        if self.changed and not (self.success or self.simulated):
            raise ValueError("a failed, non-simulated result cannot report changed=True")
        if self.diff is not None and self.diff.before == self.diff.after:
            raise ValueError("diff must not be attached when before and after are identical")
        if self.end_time is None:
            self.end_time = self.start_time

    @property
    def failed(self) -> bool:
        return not self.success

    def stamp(self, start: datetime, end: Optional[datetime] = None) -> "Result":
        end = end or utcnow()
        self.start_time = start
        self.end_time = end
        self.duration = end - start
        return self


OutputCallback = Callable[[str, bool], None]
ProgressCallback = Callable[["ProgressInfo"], None]


@dataclass(frozen=True)
class ExecuteOptions:
    """Per-call options for ``Connection.execute``; build a new one per call."""

    working_dir: Optional[str] = None
    timeout: Optional[float] = None
    sudo: bool = False
    user: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    stream_output: bool = False
    output_callback: Optional[OutputCallback] = None
    progress_callback: Optional[ProgressCallback] = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "env", MappingProxyType({str(k): str(v) for k, v in dict(self.env or {}).items()})
        )

    @property
    def deadline(self) -> Optional[float]:
        if self.timeout is None or self.timeout <= 0:
            return None
        return float(self.timeout)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


@dataclass
class StepInfo:
    """One unit of multi-step work.

    Transitions are ``pending -> running -> terminal``; a pending step may
    also be skipped or cancelled without running. Terminal steps are frozen.
    """

    id: str
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: timedelta = timedelta(0)
    metadata: dict[str, Any] = field(default_factory=dict)

    def start(self) -> None:
        if self.status is not StepStatus.PENDING:
            raise StepStateError(self.id, self.status, StepStatus.RUNNING)
        self.status = StepStatus.RUNNING
        self.start_time = utcnow()

    def finish(self, status: StepStatus) -> None:
        status = StepStatus(status)
        if not status.terminal:
            raise StepStateError(self.id, self.status, status)
        if self.status.terminal:
            raise StepStateError(self.id, self.status, status)
        if self.status is StepStatus.PENDING and status not in (StepStatus.SKIPPED, StepStatus.CANCELLED):
            raise StepStateError(self.id, self.status, status)
        self.status = status
        self.end_time = utcnow()
        if self.start_time is None:
            self.start_time = self.end_time
        self.duration = self.end_time - self.start_time

    def snapshot(self) -> "StepInfo":
        return replace(self, metadata=copy.deepcopy(self.metadata))


@dataclass
class ProgressInfo:
    stage: str
    percentage: float = 0.0
    message: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    bytes_total: int = 0
    bytes_done: int = 0
    current_step: Optional[StepInfo] = None
    completed_steps: list[StepInfo] = field(default_factory=list)
    total_steps: int = 0
    step_number: int = 0


class StreamEventType(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    PROGRESS = "progress"
    STEP_START = "step_start"
    STEP_UPDATE = "step_update"
    STEP_END = "step_end"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    type: StreamEventType
    data: str = ""
    progress: Optional[ProgressInfo] = None
    step: Optional[StepInfo] = None
    result: Optional[Result] = None
    error: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.DONE, StreamEventType.ERROR)

    @classmethod
    def stdout(cls, line: str) -> "StreamEvent":
        return cls(StreamEventType.STDOUT, data=line)

    @classmethod
    def stderr(cls, line: str) -> "StreamEvent":
        return cls(StreamEventType.STDERR, data=line)

    @classmethod
    def for_progress(cls, progress: ProgressInfo) -> "StreamEvent":
        return cls(StreamEventType.PROGRESS, progress=progress)

    @classmethod
    def for_step(
        cls, kind: StreamEventType, step: StepInfo, progress: Optional[ProgressInfo] = None
    ) -> "StreamEvent":
        if kind not in (StreamEventType.STEP_START, StreamEventType.STEP_UPDATE, StreamEventType.STEP_END):
            raise ValueError(f"{kind} is not a step event")
        return cls(kind, step=step.snapshot(), progress=progress)

    @classmethod
    def done(cls, result: Result) -> "StreamEvent":
        return cls(StreamEventType.DONE, result=result)

    @classmethod
    def failure(cls, error: BaseException) -> "StreamEvent":
        return cls(StreamEventType.ERROR, data=str(error), error=error)


@dataclass(frozen=True)
class RunMode:
    """Explicit execution modes passed to ``Operation.run``."""

    check: bool = False
    diff: bool = False
    asynchronous: bool = False

    RESERVED_KEYS = ("_check_mode", "_diff", "_async")

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> tuple["RunMode", dict[str, Any]]:
        """Split legacy reserved mode keys out of ``args``.

        Only real booleans enable a mode; ``"yes"`` or ``1`` mean disabled.
        """

        def flag(key: str) -> bool:
            value = args.get(key)
            return value if isinstance(value, bool) else False

        mode = cls(check=flag("_check_mode"), diff=flag("_diff"), asynchronous=flag("_async"))
        cleaned = {k: v for k, v in args.items() if k not in cls.RESERVED_KEYS}
        return mode, cleaned

    def with_args(self, args: Mapping[str, Any]) -> tuple["RunMode", dict[str, Any]]:
        """Fold reserved keys from ``args`` into this mode and strip them.

        Flags are only ever switched on, so ``_check_mode`` can never be
        overridden into a real run.
        """
        legacy, cleaned = RunMode.from_args(args)
        mode = RunMode(
            check=self.check or legacy.check,
            diff=self.diff or legacy.diff,
            asynchronous=self.asynchronous or legacy.asynchronous,
        )
        return mode, cleaned

    def describe(self) -> str:
        names = [name for name, on in (("check", self.check), ("diff", self.diff), ("async", self.asynchronous)) if on]
        return "+".join(names) if names else "normal"


@dataclass(frozen=True)
class OperationCapability:
    check_mode: bool = True
    diff_mode: bool = False
    async_mode: bool = False
    platform: str = "all"
    requires_root: bool = False

    def negotiate(
        self,
        mode: RunMode,
        *,
        operation: str,
        platform: Optional[str] = None,
        privileged: Optional[bool] = None,
    ) -> None:
        """Raise ``CapabilityMismatchError`` for any request this operation cannot honour."""
        if mode.check and not self.check_mode:
            raise CapabilityMismatchError(operation, "check mode")
        if mode.diff and not self.diff_mode:
            raise CapabilityMismatchError(operation, "diff mode")
        if mode.asynchronous and not self.async_mode:
            raise CapabilityMismatchError(operation, "async mode")
        if platform and self.platform not in ("all", platform):
            raise CapabilityMismatchError(operation, f"platform {platform} (requires {self.platform})")
        if self.requires_root and privileged is False:
            raise CapabilityMismatchError(operation, "unprivileged connection (requires root)")


@dataclass(frozen=True)
class ParamDoc:
    description: str
    type: str = "string"
    required: bool = False
    default: Any = None
    choices: tuple[str, ...] = ()


@dataclass(frozen=True)
class OperationDoc:
    name: str
    description: str
    parameters: Mapping[str, ParamDoc] = field(default_factory=dict)
    examples: tuple[str, ...] = ()
    returns: Mapping[str, str] = field(default_factory=dict)


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    platform: Optional[str] = None
    become: bool = False
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionSpec:
    operation: str
    args: dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None
    check_mode: bool = False
    diff_mode: bool = False
    async_mode: bool = False
    timeout: Optional[float] = None
    retries: Optional[int] = None
    delay: Optional[float] = None
    ignore_errors: bool = False
    depends_on: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.name or self.operation

    def run_mode(self) -> RunMode:
        return RunMode(check=self.check_mode, diff=self.diff_mode, asynchronous=self.async_mode)


@dataclass
class TaskSpec:
    name: str
    hosts: list[str]
    actions: list[ActionSpec]


@dataclass
class Plan:
    hosts: dict[str, HostConfig]
    tasks: list[TaskSpec]
