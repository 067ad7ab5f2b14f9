from __future__ import annotations

from typing import Any, Mapping

from .base import Operation, get_str_arg
from ..connection import Connection
from ..types import OperationCapability, OperationDoc, ParamDoc, Result, RunMode


class NoopOperation(Operation):
    """Do nothing and report no change. Useful for wiring and tests."""

    name = "noop"
    capability = OperationCapability(check_mode=True, diff_mode=True, async_mode=True)
    doc = OperationDoc(
        name="noop",
        description="Report success without touching the host",
        parameters={"message": ParamDoc("Message to echo back in the result")},
        examples=("- name: Placeholder\n  noop:",),
    )

    async def run(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> Result:
        mode, args = mode.with_args(args)
        self.parse(args)
        message = get_str_arg(args, "message", "noop")
        return self.outcome(conn.host.name, False, message, mode)
