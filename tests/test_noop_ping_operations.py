import pytest

from marionette_automation.errors import OperationError, TransportError
from marionette_automation.operations import NoopOperation, PingOperation
from marionette_automation.registry import OperationRegistry
from marionette_automation.testing import MockConnection
from marionette_automation.types import RunMode


@pytest.mark.asyncio
async def test_noop_in_check_mode_changes_nothing() -> None:
    registry = OperationRegistry([NoopOperation()])
    registry.validate_args("noop", {})

    mode, args = RunMode.from_args({"_check_mode": True})
    conn = MockConnection()
    result = await registry.get("noop").run(conn, args, mode)

    assert result.simulated is True
    assert result.changed is False
    assert result.success is True
    assert conn.calls == []
    assert conn.files == {}


@pytest.mark.asyncio
async def test_noop_echoes_message() -> None:
    result = await NoopOperation().run(MockConnection(), {"message": "placeholder"})
    assert result.message == "placeholder"
    assert result.simulated is False


@pytest.mark.asyncio
async def test_ping_answers_pong() -> None:
    conn = MockConnection()
    conn.expect("echo pong", stdout="pong\n")

    result = await PingOperation().run(conn, {})

    assert result.success is True
    assert result.changed is False
    assert result.data["ping"] == "pong"
    conn.verify()


@pytest.mark.asyncio
async def test_ping_reports_failed_command() -> None:
    conn = MockConnection()
    conn.expect_failure("echo pong", exit_code=127)

    result = await PingOperation().run(conn, {})

    assert result.success is False
    assert result.data["exit_code"] == 127


@pytest.mark.asyncio
async def test_ping_wraps_transport_errors() -> None:
    conn = MockConnection()
    cause = TransportError("mock-host", "unreachable")
    conn.expect("echo pong", error=cause)

    result = await PingOperation().run(conn, {})

    assert result.success is False
    assert isinstance(result.error, OperationError)
    assert result.error.__cause__ is cause
