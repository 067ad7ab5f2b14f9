import asyncio

import pytest

from marionette_automation.errors import StreamClosedError, StreamProtocolError
from marionette_automation.streaming import EventStream, ProgressTracker, StepTracker, collect_result
from marionette_automation.types import Result, StepInfo, StepStatus, StreamEventType


@pytest.mark.asyncio
async def test_returned_result_becomes_the_terminal_event() -> None:
    async def produce(stream: EventStream) -> Result:
        await stream.stdout("one")
        await stream.stderr("two")
        return Result(host="web1", success=True)

    stream = EventStream.spawn(produce)
    events = [event async for event in stream]

    assert [event.type for event in events] == [
        StreamEventType.STDOUT,
        StreamEventType.STDERR,
        StreamEventType.DONE,
    ]
    assert events[-1].result.success is True
    assert stream.finished is True


@pytest.mark.asyncio
async def test_emit_after_terminal_event_is_rejected() -> None:
    stream = EventStream()
    await stream.done(Result(host="web1", success=True))

    with pytest.raises(StreamClosedError):
        await stream.stdout("late")
    with pytest.raises(StreamClosedError):
        await stream.fail(RuntimeError("late"))

    events = [event async for event in stream]
    assert len(events) == 1
    assert events[0].type is StreamEventType.DONE


@pytest.mark.asyncio
async def test_producer_exception_becomes_error_event() -> None:
    async def produce(stream: EventStream) -> Result:
        await stream.stdout("starting")
        raise RuntimeError("boom")

    stream = EventStream.spawn(produce)
    events = [event async for event in stream]

    assert events[-1].type is StreamEventType.ERROR
    assert isinstance(events[-1].error, RuntimeError)
    assert sum(1 for event in events if event.is_terminal) == 1


@pytest.mark.asyncio
async def test_collect_result_raises_carried_error() -> None:
    async def produce(stream: EventStream) -> Result:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await collect_result(EventStream.spawn(produce))


@pytest.mark.asyncio
async def test_producer_without_result_is_a_protocol_error() -> None:
    async def produce(stream: EventStream) -> None:
        await stream.stdout("nothing else")

    with pytest.raises(StreamProtocolError):
        await collect_result(EventStream.spawn(produce))


@pytest.mark.asyncio
async def test_collect_result_ignores_non_terminal_events() -> None:
    seen: list[str] = []

    async def produce(stream: EventStream) -> Result:
        for line in ("a", "b", "c"):
            await stream.stdout(line)
        await stream.done(Result(host="web1", success=True, message="finished"))
        return None

    result = await collect_result(EventStream.spawn(produce), lambda event: seen.append(event.type.value))

    assert result.message == "finished"
    assert seen == ["stdout", "stdout", "stdout", "done"]


@pytest.mark.asyncio
async def test_slow_consumer_applies_backpressure() -> None:
    emitted: list[int] = []

    async def produce(stream: EventStream) -> Result:
        for i in range(5):
            await stream.stdout(str(i))
            emitted.append(i)
        return Result(host="web1", success=True)

    stream = EventStream.spawn(produce, maxsize=2)
    await asyncio.sleep(0.05)
    assert emitted == [0, 1]

    events = [event async for event in stream]
    assert [event.data for event in events[:-1]] == ["0", "1", "2", "3", "4"]
    assert events[-1].type is StreamEventType.DONE


@pytest.mark.asyncio
async def test_aclose_cancels_the_producer() -> None:
    started = asyncio.Event()

    async def produce(stream: EventStream) -> Result:
        started.set()
        await asyncio.sleep(10)
        return Result(host="web1", success=True)

    stream = EventStream.spawn(produce)
    await started.wait()
    await asyncio.wait_for(stream.aclose(), timeout=1)

    assert stream.finished is True
    assert stream.terminated is True


def test_progress_never_goes_backwards() -> None:
    reports = []
    tracker = ProgressTracker("copy", callback=reports.append)

    assert tracker.report(40).percentage == 40
    assert tracker.report(10).percentage == 40
    assert tracker.report(150).percentage == 100
    assert len(reports) == 3
    assert all(report.stage == "copy" for report in reports)


@pytest.mark.asyncio
async def test_step_tracker_emits_step_events() -> None:
    stream = EventStream()
    steps = [StepInfo(id="fetch", name="Fetch"), StepInfo(id="start", name="Start")]
    tracker = StepTracker(stream, steps, stage="deploying")

    await tracker.start(steps[0])
    await tracker.update(steps[0], "halfway", bytes=10)
    await tracker.end(steps[0], StepStatus.FAILED)
    await tracker.abandon()
    await stream.done(Result(host="web1", success=False))

    events = [event async for event in stream]
    assert [event.type for event in events] == [
        StreamEventType.STEP_START,
        StreamEventType.STEP_UPDATE,
        StreamEventType.STEP_END,
        StreamEventType.STEP_END,
        StreamEventType.DONE,
    ]
    assert events[1].step.metadata == {"bytes": 10}
    assert events[2].step.status is StepStatus.FAILED
    assert events[3].step.status is StepStatus.CANCELLED
    percentages = [event.progress.percentage for event in events[:-1]]
    assert percentages == sorted(percentages)
    assert percentages[-1] == 100
    assert events[2].progress.step_number == 1
    assert events[2].progress.total_steps == 2
    assert tracker.count(StepStatus.FAILED) == 1
