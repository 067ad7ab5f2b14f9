from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from .base import Operation, validate_types
from ..connection import Connection
from ..errors import ValidationError
from ..types import ExecuteOptions, OperationCapability, OperationDoc, ParamDoc, Reason, Result, RunMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandArgs:
    command: str
    creates: Optional[str] = None
    removes: Optional[str] = None
    only_if: Optional[str] = None
    unless: Optional[str] = None
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    returns: tuple[int, ...] = (0,)
    timeout: Optional[float] = None
    sudo: bool = False
    user: Optional[str] = None


class CommandOperation(Operation):
    """Run a shell command behind optional idempotency guards."""

    name = "command"
    capability = OperationCapability(check_mode=True, diff_mode=False)
    doc = OperationDoc(
        name="command",
        description="Run a shell command, optionally guarded so repeated runs stay idempotent",
        parameters={
            "cmd": ParamDoc("Command to run; a list is shell-quoted", type="string", required=True),
            "creates": ParamDoc("Skip when this path already exists"),
            "removes": ParamDoc("Skip when this path does not exist"),
            "only_if": ParamDoc("Guard command that must succeed for the command to run"),
            "unless": ParamDoc("Guard command that must fail for the command to run"),
            "cwd": ParamDoc("Working directory"),
            "env": ParamDoc("Environment overrides, mapping or KEY=VALUE list"),
            "returns": ParamDoc("Exit codes treated as success", type="list", default=[0]),
            "timeout": ParamDoc("Timeout in seconds", type="integer"),
            "become": ParamDoc("Run through sudo", type="boolean", default=False),
            "become_user": ParamDoc("User to run as"),
        },
        examples=(
            "- name: Initialise database\n  command:\n    cmd: /opt/app/bin/init-db\n    creates: /var/lib/app/db",
            "- name: Reload firewall when rules changed\n  command:\n    cmd: firewall-cmd --reload\n    unless: firewall-cmd --check-config",
        ),
        returns={
            "stdout": "Standard output of the command",
            "stderr": "Standard error of the command",
            "exit_code": "Process exit status",
        },
    )

    def parse(self, args: Mapping[str, Any]) -> CommandArgs:
        raw_command = args.get("cmd", args.get("command"))
        if raw_command is None or raw_command == "" or raw_command == []:
            raise ValidationError("cmd", raw_command, "command operation requires a command")
        validate_types(args, {"become": "bool"})
        return CommandArgs(
            command=self._normalize_command("cmd", raw_command),
            creates=self._optional_str(args, "creates"),
            removes=self._optional_str(args, "removes"),
            only_if=self._guard(args, "only_if"),
            unless=self._guard(args, "unless"),
            cwd=self._optional_str(args, "cwd"),
            env=self._normalize_env(args.get("env", args.get("environment"))),
            returns=self._normalize_returns(args.get("returns", [0])),
            timeout=self._normalize_timeout(args.get("timeout")),
            sudo=bool(args.get("become", False)),
            user=self._optional_str(args, "become_user"),
        )

    async def run(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> Result:
        mode, args = mode.with_args(args)
        spec = self.parse(args)
        host = conn.host.name

        skipped = await self._check_guards(conn, spec)
        if skipped:
            return self.outcome(host, False, skipped, mode, reason=Reason.GUARD_SKIPPED)

        if mode.check:
            return self.outcome(host, True, f"would run: {spec.command}", mode, {"cmd": spec.command})

        result = await conn.execute(spec.command, self._options(spec))
        exit_code = result.data.get("exit_code")
        data = {
            "cmd": spec.command,
            "stdout": result.data.get("stdout", ""),
            "stderr": result.data.get("stderr", ""),
            "exit_code": exit_code,
        }
        if exit_code not in spec.returns:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("command failed host=%s rc=%s cmd=%s", host, exit_code, spec.command)
            failed = self.failure_result(host, self._error_detail(data), data=data, reason=Reason.COMMAND_FAILED)
            return failed.stamp(result.start_time, result.end_time)
        ran = self.success_result(host, True, f"ran (rc={exit_code})", data, reason=Reason.APPLIED)
        return ran.stamp(result.start_time, result.end_time)

    async def _check_guards(self, conn: Connection, spec: CommandArgs) -> Optional[str]:
        if spec.creates and await self._guard_holds(conn, spec, f"test -e {shlex.quote(spec.creates)}"):
            return f"skipped (creates {spec.creates})"
        if spec.removes and not await self._guard_holds(conn, spec, f"test -e {shlex.quote(spec.removes)}"):
            return f"skipped (removes {spec.removes})"
        if spec.only_if:
            guard = await conn.execute(spec.only_if, self._options(spec))
            if not guard.success:
                return f"skipped (only_if rc={guard.data.get('exit_code')})"
        if spec.unless:
            guard = await conn.execute(spec.unless, self._options(spec))
            if guard.success:
                return f"skipped (unless rc={guard.data.get('exit_code')})"
        return None

    async def _guard_holds(self, conn: Connection, spec: CommandArgs, test: str) -> bool:
        result = await conn.execute(test, ExecuteOptions(working_dir=spec.cwd, timeout=spec.timeout))
        return result.success

    @staticmethod
    def _options(spec: CommandArgs) -> ExecuteOptions:
        return ExecuteOptions(
            working_dir=spec.cwd,
            timeout=spec.timeout,
            env=spec.env,
            sudo=spec.sudo,
            user=spec.user,
        )

    @staticmethod
    def _optional_str(args: Mapping[str, Any], key: str) -> Optional[str]:
        value = args.get(key)
        return None if value in (None, "") else str(value)

    @classmethod
    def _guard(cls, args: Mapping[str, Any], key: str) -> Optional[str]:
        value = args.get(key)
        if value is None:
            return None
        return cls._normalize_command(key, value)

    @staticmethod
    def _normalize_command(key: str, value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, (list, tuple)):
            return shlex.join(str(v) for v in value)
        raise ValidationError(key, value, "command must be a string or list")

    @staticmethod
    def _normalize_env(value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, Mapping):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValidationError("env", item, "env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValidationError("env", value, "env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> tuple[int, ...]:
        if isinstance(value, bool):
            raise ValidationError("returns", value, "returns must be an int or list of ints")
        if isinstance(value, int):
            return (value,)
        try:
            return tuple(int(v) for v in value)
        except (TypeError, ValueError):
            raise ValidationError("returns", value, "returns must be an int or list of ints") from None

    @staticmethod
    def _normalize_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError("timeout", value, "timeout must be numeric") from None

    @staticmethod
    def _error_detail(data: dict[str, Any]) -> str:
        prefix = f"rc={data.get('exit_code')}"
        for text in (data.get("stderr"), data.get("stdout")):
            stripped = (text or "").strip()
            if not stripped:
                continue
            line = stripped.splitlines()[0]
            line = (line[:157] + "...") if len(line) > 160 else line
            return f"{prefix}: {line}"
        return prefix
