"""Test doubles for operation authors.

``MockConnection`` answers commands from scripted expectations and keeps an
in-memory file table, so operations can be exercised without touching the
machine running the tests::

    conn = MockConnection()
    conn.expect("echo pong", stdout="pong\\n")
    result = await PingOperation().run(conn, {})
    conn.verify()
"""

from __future__ import annotations

import asyncio
import re
import stat
from dataclasses import dataclass
from typing import Optional, Union

from .connection import Connection, StreamingConnection
from .errors import ExecutionTimeout, TransportError
from .streaming import EventStream
from .types import ExecuteOptions, HostConfig, Reason, Result, utcnow


@dataclass
class CommandResponse:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: Optional[BaseException] = None
    delay: float = 0.0


@dataclass
class Expectation:
    command: Union[str, re.Pattern]
    response: CommandResponse
    times: Optional[int] = 1
    calls: int = 0

    def matches(self, command: str) -> bool:
        if isinstance(self.command, str):
            return self.command == command
        return self.command.search(command) is not None

    @property
    def exhausted(self) -> bool:
        return self.times is not None and self.calls >= self.times

    @property
    def satisfied(self) -> bool:
        return self.calls >= 1 if self.times is None else self.calls >= self.times


@dataclass
class Call:
    command: str
    options: ExecuteOptions
    streamed: bool = False


class MockConnection(Connection):
    """Scripted, non-streaming connection."""

    def __init__(self, host: Optional[HostConfig] = None, *, connected: bool = True):
        super().__init__(host or HostConfig(name="mock-host"))
        self._connected = connected
        self.expectations: list[Expectation] = []
        self.calls: list[Call] = []
        self.files: dict[str, bytes] = {}
        self.modes: dict[str, int] = {}
        self.default_response: Optional[CommandResponse] = None

    # Scripting -------------------------------------------------------------
    def expect(
        self,
        command: str,
        *,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        times: Optional[int] = 1,
    ) -> "MockConnection":
        """Answer ``command`` ``times`` times; ``times=None`` answers forever."""
        response = CommandResponse(stdout, stderr, exit_code, error, delay)
        self.expectations.append(Expectation(command, response, times))
        return self

    def expect_regex(self, pattern: str, *, times: Optional[int] = 1, **response) -> "MockConnection":
        self.expectations.append(Expectation(re.compile(pattern), CommandResponse(**response), times))
        return self

    def expect_failure(self, command: str, exit_code: int = 1, stderr: str = "", **kwargs) -> "MockConnection":
        return self.expect(command, exit_code=exit_code, stderr=stderr, **kwargs)

    def set_default(self, **response) -> "MockConnection":
        self.default_response = CommandResponse(**response)
        return self

    # Assertions ------------------------------------------------------------
    @property
    def commands(self) -> list[str]:
        return [call.command for call in self.calls]

    def call_count(self, command: str) -> int:
        return sum(1 for call in self.calls if call.command == command)

    def assert_called(self, command: str, times: Optional[int] = None) -> None:
        count = self.call_count(command)
        if times is None:
            assert count, f"command was never run: {command!r}; ran {self.commands!r}"
        else:
            assert count == times, f"command {command!r} ran {count} times, expected {times}"

    def assert_not_called(self, command: str) -> None:
        assert not self.call_count(command), f"command unexpectedly ran: {command!r}"

    def assert_order(self, *commands: str) -> None:
        position = 0
        ran = self.commands
        for command in commands:
            try:
                position = ran.index(command, position) + 1
            except ValueError:
                raise AssertionError(f"{command!r} did not run in order; ran {ran!r}") from None

    def verify(self) -> None:
        pending = [str(getattr(e.command, "pattern", e.command)) for e in self.expectations if not e.satisfied]
        assert not pending, f"expected commands never ran: {pending!r}"

    def reset(self) -> "MockConnection":
        self.expectations.clear()
        self.calls.clear()
        return self

    # Connection ------------------------------------------------------------
    async def execute(self, command: str, options: Optional[ExecuteOptions] = None) -> Result:
        options = options or ExecuteOptions()
        self._ensure_connected()
        start = utcnow()
        self.calls.append(Call(command, options))
        response = await self._respond(command, options)
        if options.output_callback is not None:
            for line in response.stdout.splitlines():
                options.output_callback(line, False)
            for line in response.stderr.splitlines():
                options.output_callback(line, True)
        return self._result(command, response).stamp(start)

    async def copy(self, content: Union[str, bytes], dest: str, *, mode: Optional[int] = None) -> None:
        self._ensure_connected()
        self.files[dest] = content.encode() if isinstance(content, str) else bytes(content)
        if mode is not None:
            self.modes[dest] = stat.S_IMODE(mode)
        else:
            self.modes.setdefault(dest, 0o644)

    async def fetch(self, path: str) -> Optional[bytes]:
        self._ensure_connected()
        return self.files.get(path)

    async def remove(self, path: str) -> bool:
        self._ensure_connected()
        self.modes.pop(path, None)
        return self.files.pop(path, None) is not None

    async def file_mode(self, path: str) -> Optional[int]:
        self._ensure_connected()
        if path not in self.files:
            return None
        return self.modes.get(path, 0o644)

    async def _respond(self, command: str, options: ExecuteOptions) -> CommandResponse:
        response = self._match(command)
        if response.delay:
            await _pause(response.delay, options, command)
        if response.error is not None:
            raise response.error
        return response

    def _match(self, command: str) -> CommandResponse:
        for expectation in self.expectations:
            if expectation.matches(command) and not expectation.exhausted:
                expectation.calls += 1
                return expectation.response
        if self.default_response is not None:
            return self.default_response
        raise TransportError(self.host.name, f"unexpected command: {command!r}")

    def _result(self, command: str, response: CommandResponse) -> Result:
        success = response.exit_code == 0
        return Result(
            host=self.host.name,
            success=success,
            message="command executed successfully" if success else f"command failed (rc={response.exit_code})",
            data={
                "stdout": response.stdout,
                "stderr": response.stderr,
                "exit_code": response.exit_code,
                "cmd": command,
            },
            operation="command",
            reason=None if success else Reason.COMMAND_FAILED,
        )


async def _pause(delay: float, options: ExecuteOptions, command: str) -> None:
    try:
        await asyncio.wait_for(asyncio.sleep(delay), timeout=options.deadline)
    except asyncio.TimeoutError:
        raise ExecutionTimeout(options.deadline or 0, f"command '{command}'") from None


class MockStreamingConnection(MockConnection, StreamingConnection):
    """``MockConnection`` that also streams scripted output line by line."""

    async def execute_stream(self, command: str, options: Optional[ExecuteOptions] = None) -> EventStream:
        options = options or ExecuteOptions()
        self._ensure_connected()
        start = utcnow()
        self.calls.append(Call(command, options, streamed=True))
        response = self._match(command)

        async def produce(stream: EventStream) -> Result:
            if response.delay:
                await _pause(response.delay, options, command)
            for line in response.stdout.splitlines():
                await stream.stdout(line)
            if response.error is not None:
                raise response.error
            for line in response.stderr.splitlines():
                await stream.stderr(line)
            return self._result(command, response).stamp(start)

        return EventStream.spawn(produce)
