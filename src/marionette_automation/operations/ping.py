from __future__ import annotations

from typing import Any, Mapping

from .base import Operation
from ..connection import Connection
from ..errors import TransportError
from ..types import ExecuteOptions, OperationCapability, OperationDoc, Result, RunMode


class PingOperation(Operation):
    name = "ping"
    capability = OperationCapability(check_mode=True, diff_mode=True)
    doc = OperationDoc(
        name="ping",
        description="Test connectivity to hosts",
        examples=("- name: Test connectivity\n  ping:",),
        returns={"ping": "'pong' when the host answered"},
    )

    async def run(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> Result:
        mode, args = mode.with_args(args)
        host = conn.host.name
        try:
            reply = await conn.execute("echo pong", ExecuteOptions(timeout=10))
        except TransportError as exc:
            return self.error_result(host, "connection test failed", exc)
        if not reply.success or reply.data.get("stdout", "").strip() != "pong":
            return self.failure_result(host, "connection test failed", data={"exit_code": reply.data.get("exit_code")})
        return self.outcome(host, False, "pong", mode, {"ping": "pong"}).stamp(reply.start_time, reply.end_time)
