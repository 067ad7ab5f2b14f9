from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import StreamClosedError, StreamProtocolError
from .types import (
    ProgressCallback,
    ProgressInfo,
    Result,
    StepInfo,
    StepStatus,
    StreamEvent,
    StreamEventType,
)

logger = logging.getLogger(__name__)

Producer = Callable[["EventStream"], Awaitable[Optional[Result]]]
EventHook = Callable[[StreamEvent], None]


class EventStream:
    """Ordered, single-terminal sequence of ``StreamEvent`` objects.

    Producers ``emit`` events; consumers iterate with ``async for``. The
    first ``done`` or ``error`` event terminates the stream: it is always the
    last event delivered and any later ``emit`` raises ``StreamClosedError``.
    Non-terminal events are bounded by ``maxsize`` so a slow consumer
    applies backpressure to the producer.
    """

    def __init__(self, *, maxsize: int = 100):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._slots = asyncio.Semaphore(maxsize)
        self._terminated = False
        self._finished = False
        self._producer: Optional[asyncio.Task] = None

    @classmethod
    def spawn(cls, producer: Producer, *, maxsize: int = 100) -> "EventStream":
        """Run ``producer(stream)`` as a task feeding a new stream.

        An exception escaping the producer becomes the terminal ``error``
        event; a ``Result`` returned without a terminal event is emitted as
        ``done``.
        """
        stream = cls(maxsize=maxsize)
        stream._producer = asyncio.get_running_loop().create_task(stream._drive(producer))
        return stream

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def finished(self) -> bool:
        return self._finished

    # Producer side ------------------------------------------------------
    async def emit(self, event: StreamEvent) -> None:
        if self._terminated:
            raise StreamClosedError(f"cannot emit {event.type.value} after the terminal event")
        if event.is_terminal:
            self._terminated = True
            self._queue.put_nowait(event)
            return
        await self._slots.acquire()
        if self._terminated:
            self._slots.release()
            raise StreamClosedError(f"cannot emit {event.type.value} after the terminal event")
        self._queue.put_nowait(event)

    async def stdout(self, line: str) -> None:
        await self.emit(StreamEvent.stdout(line))

    async def stderr(self, line: str) -> None:
        await self.emit(StreamEvent.stderr(line))

    async def progress(self, info: ProgressInfo) -> None:
        await self.emit(StreamEvent.for_progress(info))

    async def step(self, kind: StreamEventType, step: StepInfo, progress: Optional[ProgressInfo] = None) -> None:
        await self.emit(StreamEvent.for_step(kind, step, progress))

    async def done(self, result: Result) -> None:
        await self.emit(StreamEvent.done(result))

    async def fail(self, error: BaseException) -> None:
        await self.emit(StreamEvent.failure(error))

    async def _drive(self, producer: Producer) -> None:
        try:
            result = await producer(self)
        except asyncio.CancelledError as exc:
            if not self._terminated:
                self._terminated = True
                self._queue.put_nowait(StreamEvent.failure(exc))
            raise
        except Exception as exc:  # noqa: BLE001
            if self._terminated:
                logger.warning("stream producer failed after termination: %s", exc)
                return
            await self.emit(StreamEvent.failure(exc))
            return
        if self._terminated:
            return
        if isinstance(result, Result):
            await self.emit(StreamEvent.done(result))
        else:
            await self.emit(StreamEvent.failure(StreamProtocolError("producer finished without a terminal event")))

    # Consumer side ------------------------------------------------------
    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.is_terminal:
            self._finished = True
        else:
            self._slots.release()
        return event

    async def result(self, on_event: Optional[EventHook] = None) -> Result:
        """Consume until the terminal event and return its ``Result``.

        Every event is handed to ``on_event`` first. An ``error`` event is
        raised instead of waiting for a ``done`` that cannot come.
        """
        async for event in self:
            if on_event is not None:
                on_event(event)
            if event.type is StreamEventType.DONE:
                if event.result is None:
                    raise StreamProtocolError("done event carried no result")
                return event.result
            if event.type is StreamEventType.ERROR:
                raise event.error or StreamProtocolError(event.data or "stream failed")
        raise StreamProtocolError("stream already consumed")

    async def aclose(self) -> None:
        """Stop consuming and cancel the producer if it is still running."""
        self._finished = True
        producer, self._producer = self._producer, None
        if producer is None or producer.done():
            return
        producer.cancel()
        try:
            await producer
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


async def collect_result(stream: EventStream, on_event: Optional[EventHook] = None) -> Result:
    """Drain ``stream`` to its final ``Result`` and close it."""
    async with stream:
        return await stream.result(on_event)


class ProgressTracker:
    """Builds ``ProgressInfo`` reports whose percentage never goes backwards."""

    def __init__(self, stage: str, *, total_steps: int = 0, callback: Optional[ProgressCallback] = None):
        self.stage = stage
        self.total_steps = total_steps
        self.callback = callback
        self.percentage = 0.0

    def report(self, percentage: float, message: str = "", **fields) -> ProgressInfo:
        stage = fields.pop("stage", None) or self.stage
        self.percentage = max(self.percentage, min(100.0, max(0.0, float(percentage))))
        fields.setdefault("total_steps", self.total_steps)
        info = ProgressInfo(stage=stage, percentage=self.percentage, message=message, **fields)
        if self.callback is not None:
            self.callback(info)
        return info


class StepTracker:
    """Drives ``StepInfo`` lifecycles and emits the matching step events."""

    def __init__(
        self,
        stream: EventStream,
        steps: list[StepInfo],
        *,
        stage: str = "running",
        callback: Optional[ProgressCallback] = None,
    ):
        self.stream = stream
        self.steps = list(steps)
        self.completed: list[StepInfo] = []
        self.progress = ProgressTracker(stage, total_steps=len(self.steps), callback=callback)

    def _number(self, step: StepInfo) -> int:
        return self.steps.index(step) + 1

    def _report(self, step: StepInfo, percentage: float, message: str) -> ProgressInfo:
        return self.progress.report(
            percentage,
            message,
            current_step=step.snapshot(),
            completed_steps=[s.snapshot() for s in self.completed],
            step_number=self._number(step),
        )

    async def start(self, step: StepInfo) -> None:
        step.start()
        number = self._number(step)
        total = len(self.steps)
        info = self._report(step, (number - 1) / total * 100, f"Starting step {number}/{total}: {step.name}")
        await self.stream.step(StreamEventType.STEP_START, step, info)

    async def update(self, step: StepInfo, message: str, **metadata) -> None:
        step.metadata.update(metadata)
        info = self._report(step, self.progress.percentage, message)
        await self.stream.step(StreamEventType.STEP_UPDATE, step, info)

    async def end(self, step: StepInfo, status: StepStatus) -> None:
        step.finish(status)
        self.completed.append(step)
        number = self._number(step)
        total = len(self.steps)
        info = self._report(step, number / total * 100, f"Finished step {number}/{total}: {step.name} ({step.status.value})")
        await self.stream.step(StreamEventType.STEP_END, step, info)

    async def abandon(self, status: StepStatus = StepStatus.CANCELLED) -> None:
        """Close out every step that never reached a terminal state."""
        for step in self.steps:
            if not step.status.terminal:
                if step.status is StepStatus.RUNNING and status is StepStatus.SKIPPED:
                    await self.end(step, StepStatus.CANCELLED)
                else:
                    await self.end(step, status)

    def count(self, status: StepStatus) -> int:
        return sum(1 for step in self.completed if step.status is status)
