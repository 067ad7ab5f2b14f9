from dataclasses import FrozenInstanceError
from datetime import timedelta

import pytest

from marionette_automation.errors import CapabilityMismatchError, StepStateError
from marionette_automation.types import (
    DiffResult,
    ExecuteOptions,
    OperationCapability,
    Result,
    RunMode,
    StepInfo,
    StepStatus,
    StreamEvent,
    StreamEventType,
    utcnow,
)


def test_result_rejects_change_on_real_failure() -> None:
    with pytest.raises(ValueError):
        Result(host="web1", success=False, changed=True)


def test_simulated_result_may_report_change() -> None:
    result = Result(host="web1", success=True, changed=True, simulated=True)
    assert result.changed is True
    assert result.failed is False


def test_result_rejects_identical_diff() -> None:
    with pytest.raises(ValueError):
        Result(host="web1", success=True, changed=True, diff=DiffResult(before="same", after="same"))


def test_result_stamp_records_duration() -> None:
    start = utcnow()
    result = Result(host="web1", success=True).stamp(start, start + timedelta(seconds=2))
    assert result.duration == timedelta(seconds=2)
    assert result.end_time - result.start_time == timedelta(seconds=2)


def test_run_mode_only_honours_real_booleans() -> None:
    mode, cleaned = RunMode.from_args({"_check_mode": "yes", "_diff": 1, "path": "/tmp/x"})
    assert mode == RunMode()
    assert cleaned == {"path": "/tmp/x"}

    mode, cleaned = RunMode.from_args({"_check_mode": True, "_diff": True})
    assert mode.check is True
    assert mode.diff is True
    assert mode.asynchronous is False
    assert cleaned == {}
    assert mode.describe() == "check+diff"


def test_with_args_only_switches_modes_on() -> None:
    mode, cleaned = RunMode(diff=True).with_args({"_check_mode": True, "_diff": False, "dest": "/etc/motd"})
    assert mode == RunMode(check=True, diff=True)
    assert cleaned == {"dest": "/etc/motd"}

    mode, _ = RunMode(check=True).with_args({"_check_mode": False})
    assert mode.check is True


def test_execute_options_are_immutable() -> None:
    options = ExecuteOptions(env={"COUNT": 1}, timeout=5)
    assert dict(options.env) == {"COUNT": "1"}
    with pytest.raises(TypeError):
        options.env["OTHER"] = "x"  # type: ignore[index]
    with pytest.raises(FrozenInstanceError):
        options.timeout = 10  # type: ignore[misc]


def test_execute_options_non_positive_timeout_means_no_deadline() -> None:
    assert ExecuteOptions().deadline is None
    assert ExecuteOptions(timeout=0).deadline is None
    assert ExecuteOptions(timeout=-3).deadline is None
    assert ExecuteOptions(timeout=2.5).deadline == 2.5


def test_step_lifecycle_is_one_way() -> None:
    step = StepInfo(id="fetch", name="Fetch")
    step.start()
    assert step.status is StepStatus.RUNNING
    step.finish(StepStatus.COMPLETED)
    assert step.status is StepStatus.COMPLETED
    assert step.end_time >= step.start_time

    with pytest.raises(StepStateError):
        step.finish(StepStatus.FAILED)
    with pytest.raises(StepStateError):
        step.start()


def test_pending_step_can_only_be_skipped_or_cancelled() -> None:
    step = StepInfo(id="stop", name="Stop")
    with pytest.raises(StepStateError):
        step.finish(StepStatus.COMPLETED)
    step.finish(StepStatus.SKIPPED)
    assert step.status is StepStatus.SKIPPED
    assert step.duration == timedelta(0)


def test_capability_negotiation_refuses_unsupported_modes() -> None:
    OperationCapability().negotiate(RunMode(check=True), operation="copy")

    with pytest.raises(CapabilityMismatchError):
        OperationCapability(check_mode=False).negotiate(RunMode(check=True), operation="shell")
    with pytest.raises(CapabilityMismatchError):
        OperationCapability().negotiate(RunMode(diff=True), operation="copy")
    with pytest.raises(CapabilityMismatchError):
        OperationCapability().negotiate(RunMode(asynchronous=True), operation="copy")


def test_capability_negotiation_checks_platform_and_privilege() -> None:
    linux_only = OperationCapability(platform="linux")
    linux_only.negotiate(RunMode(), operation="sysctl", platform="linux")
    with pytest.raises(CapabilityMismatchError):
        linux_only.negotiate(RunMode(), operation="sysctl", platform="windows")

    root_only = OperationCapability(requires_root=True)
    root_only.negotiate(RunMode(), operation="mount", privileged=None)
    root_only.negotiate(RunMode(), operation="mount", privileged=True)
    with pytest.raises(CapabilityMismatchError):
        root_only.negotiate(RunMode(), operation="mount", privileged=False)


def test_step_event_carries_a_snapshot() -> None:
    step = StepInfo(id="switch", name="Switch", metadata={"attempt": 1})
    event = StreamEvent.for_step(StreamEventType.STEP_START, step)
    step.metadata["attempt"] = 2

    assert event.step.metadata == {"attempt": 1}
    assert event.is_terminal is False
    with pytest.raises(ValueError):
        StreamEvent.for_step(StreamEventType.DONE, step)


def test_terminal_events() -> None:
    assert StreamEvent.done(Result(host="web1", success=True)).is_terminal
    failure = StreamEvent.failure(RuntimeError("boom"))
    assert failure.is_terminal
    assert failure.data == "boom"
