from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .base import Operation, generate_diff, get_str_arg, validate_choices
from ..connection import Connection
from ..errors import ValidationError
from ..types import OperationCapability, OperationDoc, ParamDoc, Reason, Result, RunMode


@dataclass(frozen=True)
class CopyArgs:
    dest: str
    content: str
    state: str = "present"
    mode: Optional[int] = None


class CopyOperation(Operation):
    """Manage the literal content and permission bits of one file."""

    name = "copy"
    capability = OperationCapability(check_mode=True, diff_mode=True)
    doc = OperationDoc(
        name="copy",
        description="Write literal content to a file, or remove it",
        parameters={
            "dest": ParamDoc("Absolute path of the managed file", required=True),
            "content": ParamDoc("File content", default=""),
            "state": ParamDoc("Whether the file should exist", default="present", choices=("present", "absent")),
            "mode": ParamDoc("Permission bits, e.g. 0644"),
        },
        examples=("- name: Write motd\n  copy:\n    dest: /etc/motd\n    content: 'managed host'\n    mode: '0644'",),
        returns={"dest": "Managed path", "reasons": "What was out of date"},
    )

    def parse(self, args: Mapping[str, Any]) -> CopyArgs:
        dest = get_str_arg(args, "dest") or get_str_arg(args, "path")
        if not dest:
            raise ValidationError("dest", args.get("dest"), "copy operation requires a dest")
        if not dest.startswith("/"):
            raise ValidationError("dest", dest, "dest must be an absolute path")
        validate_choices(args, "state", ("present", "absent"))
        return CopyArgs(
            dest=dest,
            content=get_str_arg(args, "content"),
            state=get_str_arg(args, "state", "present"),
            mode=self._parse_mode(args.get("mode")),
        )

    async def run(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> Result:
        mode, args = mode.with_args(args)
        spec = self.parse(args)
        return await self.execute_with_timing(lambda: self._apply(conn, spec, mode))

    async def _apply(self, conn: Connection, spec: CopyArgs, mode: RunMode) -> Result:
        host = conn.host.name
        raw = await conn.fetch(spec.dest)
        current = None if raw is None else raw.decode(errors="replace")

        if spec.state == "absent":
            if current is None:
                return self.outcome(host, False, "noop", mode, {"dest": spec.dest}, reason=Reason.ABSENT)
            if not mode.check:
                await conn.remove(spec.dest)
            diff = generate_diff(current, "", path=spec.dest)
            return self.outcome(host, True, "removed", mode, {"dest": spec.dest}, diff=diff, reason=Reason.APPLIED)

        reasons: list[str] = []
        if current != spec.content:
            reasons.append("content" if current is not None else "created")
        if spec.mode is not None:
            existing_mode = await conn.file_mode(spec.dest)
            if existing_mode != spec.mode:
                reasons.append(f"mode->{spec.mode:04o}")

        if not reasons:
            return self.outcome(host, False, "noop", mode, {"dest": spec.dest}, reason=Reason.ALREADY_PRESENT)

        if not mode.check:
            await conn.copy(spec.content, spec.dest, mode=spec.mode)
        diff = generate_diff(current or "", spec.content, path=spec.dest)
        data = {"dest": spec.dest, "reasons": reasons}
        return self.outcome(host, True, ", ".join(reasons), mode, data, diff=diff, reason=Reason.APPLIED)

    @staticmethod
    def _parse_mode(value: Optional[Any]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValidationError("mode", value, "mode must be an octal string or integer")
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return int(text, 8)
        except ValueError:
            raise ValidationError("mode", value, "mode must be an octal string or integer") from None
