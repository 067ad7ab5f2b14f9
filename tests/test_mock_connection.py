import pytest

from marionette_automation.errors import ExecutionTimeout, TransportError
from marionette_automation.streaming import collect_result
from marionette_automation.testing import MockConnection, MockStreamingConnection
from marionette_automation.types import ExecuteOptions, Reason, StreamEventType


@pytest.mark.asyncio
async def test_scripted_responses_are_consumed_in_order() -> None:
    conn = MockConnection()
    conn.expect("systemctl is-active web", stdout="inactive\n", exit_code=3)
    conn.expect("systemctl is-active web", stdout="active\n")

    first = await conn.execute("systemctl is-active web")
    second = await conn.execute("systemctl is-active web")

    assert first.success is False
    assert first.reason is Reason.COMMAND_FAILED
    assert second.data["stdout"] == "active\n"
    conn.assert_called("systemctl is-active web", times=2)
    conn.verify()


@pytest.mark.asyncio
async def test_unexpected_command_raises_transport_error() -> None:
    conn = MockConnection()
    with pytest.raises(TransportError, match="unexpected command"):
        await conn.execute("rm -rf /")


@pytest.mark.asyncio
async def test_regex_and_default_responses() -> None:
    conn = MockConnection()
    conn.expect_regex(r"^yum install ", times=None, stdout="installed\n")
    conn.set_default(stdout="fallback\n")

    assert (await conn.execute("yum install -y nginx")).data["stdout"] == "installed\n"
    assert (await conn.execute("yum install -y git")).data["stdout"] == "installed\n"
    assert (await conn.execute("uptime")).data["stdout"] == "fallback\n"
    assert conn.commands == ["yum install -y nginx", "yum install -y git", "uptime"]


@pytest.mark.asyncio
async def test_delay_honours_timeout() -> None:
    conn = MockConnection()
    conn.expect("sleep 10", delay=1)
    with pytest.raises(ExecutionTimeout):
        await conn.execute("sleep 10", ExecuteOptions(timeout=0.05))


@pytest.mark.asyncio
async def test_output_callback_receives_lines() -> None:
    conn = MockConnection()
    conn.expect("make", stdout="a\nb\n", stderr="w\n")
    lines = []

    await conn.execute("make", ExecuteOptions(output_callback=lambda line, is_err: lines.append((line, is_err))))

    assert lines == [("a", False), ("b", False), ("w", True)]


@pytest.mark.asyncio
async def test_in_memory_files() -> None:
    conn = MockConnection()
    await conn.copy("hello\n", "/etc/motd", mode=0o600)

    assert await conn.fetch("/etc/motd") == b"hello\n"
    assert await conn.file_mode("/etc/motd") == 0o600
    assert await conn.remove("/etc/motd") is True
    assert await conn.remove("/etc/motd") is False
    assert await conn.fetch("/etc/motd") is None


@pytest.mark.asyncio
async def test_disconnected_mock_refuses_work() -> None:
    conn = MockConnection(connected=False)
    with pytest.raises(TransportError, match="not connected"):
        await conn.execute("true")


def test_verify_reports_missing_commands() -> None:
    conn = MockConnection()
    conn.expect("systemctl restart web")
    with pytest.raises(AssertionError, match="systemctl restart web"):
        conn.verify()


@pytest.mark.asyncio
async def test_streaming_mock_emits_lines_then_done() -> None:
    conn = MockStreamingConnection()
    conn.expect("tail build.log", stdout="one\ntwo\n", stderr="warn\n")
    seen = []

    stream = await conn.execute_stream("tail build.log")
    result = await collect_result(stream, lambda event: seen.append(event.type))

    assert seen == [StreamEventType.STDOUT, StreamEventType.STDOUT, StreamEventType.STDERR, StreamEventType.DONE]
    assert result.success is True
    assert conn.calls[0].streamed is True
