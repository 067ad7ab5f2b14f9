from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .base import StreamingOperation, get_bool_arg, get_int_arg, get_str_arg
from ..connection import Connection, supports_streaming
from ..errors import CapabilityMismatchError, StreamProtocolError, ValidationError
from ..streaming import EventStream
from ..types import (
    ExecuteOptions,
    OperationCapability,
    OperationDoc,
    ParamDoc,
    Reason,
    Result,
    RunMode,
    StreamEventType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamingShellArgs:
    cmd: str
    stream_output: bool = True
    timeout: int = 300
    cwd: str = ""


class StreamingShellOperation(StreamingOperation):
    """Run a shell command and relay its output as it is produced.

    A shell command cannot be previewed, so check mode is not offered.
    A non-zero exit is reported through the ``done`` result, never as an
    ``error`` event; ``error`` means the command could not be run at all.
    """

    name = "streaming_shell"
    capability = OperationCapability(check_mode=False, diff_mode=False)
    doc = OperationDoc(
        name="streaming_shell",
        description="Execute shell commands with real-time output streaming",
        parameters={
            "cmd": ParamDoc("Shell command to execute", required=True),
            "stream_output": ParamDoc("Relay output while the command runs", type="boolean", default=True),
            "timeout": ParamDoc("Command timeout in seconds", type="integer", default=300),
            "cwd": ParamDoc("Working directory"),
        },
        examples=(
            "- name: Run long command with streaming\n  streaming_shell:\n    cmd: 'make install'",
            "- name: Build without streaming\n  streaming_shell:\n    cmd: 'npm run build'\n    stream_output: false",
        ),
        returns={
            "streaming_enabled": "Whether output was streamed",
            "stream_events_received": "Number of events relayed",
            "output_lines": "Number of stdout lines",
            "error_lines": "Number of stderr lines",
        },
    )

    def parse(self, args: Mapping[str, Any]) -> StreamingShellArgs:
        cmd = get_str_arg(args, "cmd")
        if not cmd:
            raise ValidationError("cmd", args.get("cmd"), "streaming_shell requires a cmd")
        timeout = get_int_arg(args, "timeout", 300)
        if timeout <= 0:
            raise ValidationError("timeout", timeout, "timeout must be positive")
        return StreamingShellArgs(
            cmd=cmd,
            stream_output=get_bool_arg(args, "stream_output", True),
            timeout=timeout,
            cwd=get_str_arg(args, "cwd"),
        )

    async def run_stream(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> EventStream:
        mode, args = mode.with_args(args)
        spec = self.parse(args)
        if mode.check:
            raise CapabilityMismatchError(self.name, "check mode")
        options = ExecuteOptions(working_dir=spec.cwd or None, timeout=spec.timeout, stream_output=spec.stream_output)
        if spec.stream_output and supports_streaming(conn):
            return EventStream.spawn(lambda stream: self._relay(conn, spec.cmd, options, stream))
        return EventStream.spawn(lambda stream: self._standard(conn, spec, options))

    async def _relay(self, conn: Connection, cmd: str, options: ExecuteOptions, stream: EventStream) -> Result:
        # opened by the producer so an early close also closes the command stream
        inner = await conn.execute_stream(cmd, options)
        counts = {"events": 0, "stdout": 0, "stderr": 0}
        async with inner:
            async for event in inner:
                counts["events"] += 1
                if event.type is StreamEventType.STDOUT:
                    counts["stdout"] += 1
                    await stream.stdout(event.data)
                elif event.type is StreamEventType.STDERR:
                    counts["stderr"] += 1
                    await stream.stderr(event.data)
                elif event.type is StreamEventType.PROGRESS and event.progress is not None:
                    await stream.progress(event.progress)
                elif event.type is StreamEventType.ERROR:
                    raise event.error or StreamProtocolError(event.data or "connection stream failed")
                elif event.type is StreamEventType.DONE:
                    return self._finish(
                        event.result,
                        streaming_enabled=True,
                        stream_events_received=counts["events"],
                        output_lines=counts["stdout"],
                        error_lines=counts["stderr"],
                    )
        raise StreamProtocolError("connection stream ended without a result")

    async def _standard(self, conn: Connection, spec: StreamingShellArgs, options: ExecuteOptions) -> Result:
        result = await conn.execute(spec.cmd, options)
        return self._finish(result, streaming_enabled=False, execution_mode="standard")

    def _finish(self, result: Result, **extra: Any) -> Result:
        data = dict(result.data)
        data.update(extra)
        if result.success:
            final = self.success_result(result.host, True, result.message, data, reason=Reason.APPLIED)
        else:
            final = self.failure_result(result.host, result.message, data=data, reason=Reason.COMMAND_FAILED)
        logger.debug("streaming_shell host=%s rc=%s", result.host, data.get("exit_code"))
        return final.stamp(result.start_time, result.end_time)
