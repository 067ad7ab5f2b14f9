from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import socket
import stat
import sys
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .errors import ExecutionTimeout, TransportError
from .streaming import EventStream, ProgressTracker
from .types import ExecuteOptions, HostConfig, Reason, Result, utcnow

logger = logging.getLogger(__name__)

_PLATFORMS = {"linux": "linux", "darwin": "darwin", "win32": "windows", "cygwin": "windows"}


class Connection(ABC):
    """Transport used by operations to reach one host.

    ``execute`` raises ``TransportError`` when the command could not be run
    at all. A command that ran and exited non-zero is reported through
    ``Result.success`` instead, so callers must check both.
    """

    def __init__(self, host: HostConfig):
        self.host = host
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def platform(self) -> Optional[str]:
        return self.host.platform

    @property
    def privileged(self) -> Optional[bool]:
        """Whether commands run with root rights; ``None`` when unknown."""
        return True if self.host.become else None

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def hostname(self) -> str:
        return self.host.address or self.host.name

    async def __aenter__(self) -> "Connection":
        if not self.is_connected:
            await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @abstractmethod
    async def execute(self, command: str, options: Optional[ExecuteOptions] = None) -> Result:
        """Run ``command`` to completion and report its outcome."""

    # File primitives -----------------------------------------------------
    async def copy(self, content: Union[str, bytes], dest: str, *, mode: Optional[int] = None) -> None:
        raise self._no_file_transfer()

    async def fetch(self, path: str) -> Optional[bytes]:
        raise self._no_file_transfer()

    async def remove(self, path: str) -> bool:
        raise self._no_file_transfer()

    async def file_mode(self, path: str) -> Optional[int]:
        raise self._no_file_transfer()

    def _no_file_transfer(self) -> TransportError:
        return TransportError(self.host.name, f"file transfer not supported by {type(self).__name__}")

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise TransportError(self.host.name, "not connected")


class StreamingConnection(Connection):
    """Connection that can also report command output as it happens."""

    @abstractmethod
    async def execute_stream(self, command: str, options: Optional[ExecuteOptions] = None) -> EventStream:
        """Start ``command`` and return its live event stream."""


def supports_streaming(conn: object) -> bool:
    return isinstance(conn, StreamingConnection)


class LocalConnection(StreamingConnection):
    """Connection that runs commands on the local host through ``sh -c``."""

    def __init__(self, host: Optional[HostConfig] = None):
        super().__init__(host or HostConfig(name="localhost"))

    @property
    def platform(self) -> Optional[str]:
        return self.host.platform or _PLATFORMS.get(sys.platform, sys.platform)

    @property
    def privileged(self) -> Optional[bool]:
        if self.host.become:
            return True
        geteuid = getattr(os, "geteuid", None)
        return geteuid() == 0 if geteuid else None

    async def hostname(self) -> str:
        return socket.gethostname()

    async def execute(self, command: str, options: Optional[ExecuteOptions] = None) -> Result:
        options = options or ExecuteOptions()
        self._ensure_connected()
        start = utcnow()
        proc = await self._spawn(command, options)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=options.deadline)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            raise ExecutionTimeout(options.deadline or 0, f"command '{command}'") from None
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")
        if options.output_callback is not None:
            for line in out.splitlines():
                options.output_callback(line, False)
            for line in err.splitlines():
                options.output_callback(line, True)
        return self._build_result(command, proc.returncode, out, err).stamp(start)

    async def execute_stream(self, command: str, options: Optional[ExecuteOptions] = None) -> EventStream:
        options = options or ExecuteOptions()
        self._ensure_connected()
        start = utcnow()

        async def produce(stream: EventStream) -> Result:
            # spawned by the producer so closing the stream always reaps it
            proc = await self._spawn(command, options)
            try:
                return await self._relay(proc, command, options, stream, start)
            finally:
                await self._terminate(proc)

        return EventStream.spawn(produce)

    async def _relay(
        self,
        proc: asyncio.subprocess.Process,
        command: str,
        options: ExecuteOptions,
        stream: EventStream,
        start: datetime,
    ) -> Result:
        tracker = ProgressTracker("executing", callback=options.progress_callback)
        await stream.progress(tracker.report(0, f"Starting command: {command}"))
        stdout: list[str] = []
        stderr: list[str] = []

        async def pump(reader: asyncio.StreamReader, sink: list[str], is_stderr: bool) -> None:
            async for raw in reader:
                line = raw.decode(errors="replace").rstrip("\n")
                sink.append(line)
                if options.output_callback is not None:
                    options.output_callback(line, is_stderr)
                if is_stderr:
                    await stream.stderr(line)
                else:
                    await stream.stdout(line)

        async def finish() -> int:
            await asyncio.gather(
                pump(proc.stdout, stdout, False),
                pump(proc.stderr, stderr, True),
            )
            return await proc.wait()

        try:
            returncode = await asyncio.wait_for(finish(), timeout=options.deadline)
        except asyncio.TimeoutError:
            raise ExecutionTimeout(options.deadline or 0, f"command '{command}'") from None

        await stream.progress(tracker.report(100, "Command completed", stage="completed"))
        out = "".join(f"{line}\n" for line in stdout)
        err = "".join(f"{line}\n" for line in stderr)
        return self._build_result(command, returncode, out, err).stamp(start)

    async def copy(self, content: Union[str, bytes], dest: str, *, mode: Optional[int] = None) -> None:
        payload = content.encode() if isinstance(content, str) else content
        await asyncio.to_thread(self._write_bytes, Path(dest), payload, mode)

    async def fetch(self, path: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read_bytes, Path(path))

    async def remove(self, path: str) -> bool:
        return await asyncio.to_thread(self._remove_path, Path(path))

    async def file_mode(self, path: str) -> Optional[int]:
        try:
            return stat.S_IMODE(Path(path).stat().st_mode)
        except FileNotFoundError:
            return None

    async def _spawn(self, command: str, options: ExecuteOptions) -> asyncio.subprocess.Process:
        argv = self._argv(command, options)
        exec_env = None
        if options.env:
            exec_env = os.environ.copy()
            exec_env.update(options.env)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("host=%s spawn=%s cwd=%s", self.host.name, " ".join(argv), options.working_dir)
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.working_dir,
                env=exec_env,
                start_new_session=True,
            )
        except OSError as exc:
            raise TransportError(self.host.name, f"failed to start command '{command}'", exc) from exc

    @staticmethod
    def _argv(command: str, options: ExecuteOptions) -> list[str]:
        if options.sudo and options.user:
            return ["sudo", "-u", options.user, "sh", "-c", command]
        if options.sudo:
            return ["sudo", "sh", "-c", command]
        if options.user:
            return ["su", "-c", command, options.user]
        return ["sh", "-c", command]

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        # the command runs as its own session leader; kill its children too
        killpg = getattr(os, "killpg", None)
        try:
            if killpg is None:
                proc.kill()
            else:
                try:
                    killpg(proc.pid, signal.SIGKILL)
                except PermissionError:
                    proc.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("host=%s pid=%s did not exit after kill", self.host.name, proc.pid)

    def _build_result(self, command: str, returncode: Optional[int], stdout: str, stderr: str) -> Result:
        success = returncode == 0
        message = "command executed successfully" if success else f"command failed (rc={returncode})"
        return Result(
            host=self.host.name,
            success=success,
            message=message,
            data={"stdout": stdout, "stderr": stderr, "exit_code": returncode, "cmd": command},
            operation="command",
            reason=None if success else Reason.COMMAND_FAILED,
        )

    @staticmethod
    def _write_bytes(path: Path, payload: bytes, mode: Optional[int]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        if mode is not None:
            os.chmod(path, mode)

    @staticmethod
    def _read_bytes(path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    @staticmethod
    def _remove_path(path: Path) -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
