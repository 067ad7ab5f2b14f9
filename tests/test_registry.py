import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from marionette_automation.errors import CapabilityMismatchError, OperationNotFoundError, ValidationError
from marionette_automation.operations import NoopOperation
from marionette_automation.operations.base import Operation
from marionette_automation.registry import OperationRegistry, _ReadWriteLock, load_plugins
from marionette_automation.types import RunMode


PLUGIN_SOURCE = """
from marionette_automation.operations.base import Operation
from marionette_automation.types import RunMode

class {cls}(Operation):
    name = "{name}"

    async def run(self, conn, args, mode=RunMode()):
        return self.outcome(conn.host.name, False, "noop", mode)

def register_operations(registry):
    registry.register({cls}())
"""


class NamedOperation(Operation):
    def __init__(self, name: str):
        self.name = name

    async def run(self, conn, args, mode=RunMode()):
        return self.outcome(conn.host.name, False, self.name, mode)


def test_builtins_are_registered() -> None:
    registry = OperationRegistry.with_builtins()
    assert registry.names() == ["command", "copy", "deployment", "noop", "ping", "streaming_shell"]
    assert "noop" in registry
    assert len(registry) == 6


def test_each_registry_is_independent() -> None:
    first = OperationRegistry.with_builtins()
    second = OperationRegistry.with_builtins()
    first.unregister("noop")
    assert "noop" not in first
    assert "noop" in second


def test_unknown_operation() -> None:
    registry = OperationRegistry()
    with pytest.raises(OperationNotFoundError) as excinfo:
        registry.get("missing")
    assert isinstance(excinfo.value, KeyError)
    assert "missing" in str(excinfo.value)
    with pytest.raises(OperationNotFoundError):
        registry.unregister("missing")


def test_register_requires_a_name() -> None:
    registry = OperationRegistry()
    with pytest.raises(ValueError):
        registry.register(NamedOperation(""))
    with pytest.raises(ValueError):
        registry["other"] = NamedOperation("alias")


def test_register_overwrites() -> None:
    registry = OperationRegistry()
    first, second = NamedOperation("dup"), NamedOperation("dup")
    registry.register(first)
    registry.register(second)
    assert registry.get("dup") is second
    assert len(registry) == 1


def test_noop_validates_empty_arguments() -> None:
    registry = OperationRegistry([NoopOperation()])
    registry.validate_args("noop", {})
    assert registry.documentation("noop").name == "noop"


def test_prepare_validates_and_negotiates() -> None:
    registry = OperationRegistry.with_builtins()

    op = registry.prepare("copy", {"dest": "/etc/motd", "content": "hi"}, RunMode(check=True, diff=True))
    assert op.name == "copy"

    with pytest.raises(ValidationError):
        registry.prepare("command", {})
    with pytest.raises(CapabilityMismatchError):
        registry.prepare("streaming_shell", {"cmd": "make"}, RunMode(check=True))
    with pytest.raises(CapabilityMismatchError):
        registry.prepare("command", {"cmd": "true"}, RunMode(diff=True))


def test_concurrent_registration_and_lookup() -> None:
    registry = OperationRegistry.with_builtins()

    def worker(index: int) -> int:
        name = f"op{index % 10}"
        registry.register(NamedOperation(name))
        assert registry.get("noop").name == "noop"
        assert name in registry.names()
        return len(registry)

    with ThreadPoolExecutor(max_workers=8) as pool:
        sizes = list(pool.map(worker, range(200)))

    assert all(size >= 7 for size in sizes)
    assert len(registry) == 16


def test_waiting_writer_goes_before_new_readers() -> None:
    lock = _ReadWriteLock()
    order: list[str] = []

    def write() -> None:
        with lock.writing():
            order.append("writer")

    def read() -> None:
        with lock.reading():
            order.append("reader")

    def wait_for(predicate) -> None:
        deadline = time.monotonic() + 5
        while not predicate():
            assert time.monotonic() < deadline
            time.sleep(0.01)

    with lock.reading():
        writer = threading.Thread(target=write)
        writer.start()
        wait_for(lambda: lock._waiting_writers == 1)
        reader = threading.Thread(target=read)
        reader.start()
        time.sleep(0.1)
        assert order == []

    writer.join(timeout=5)
    reader.join(timeout=5)
    assert order == ["writer", "reader"]


def test_plugin_directory_registration(tmp_path: Path) -> None:
    plugin_dir = tmp_path / "mods"
    plugin_dir.mkdir()
    (plugin_dir / "custom_op.py").write_text(PLUGIN_SOURCE.format(cls="CustomOp", name="custom_op"))
    (plugin_dir / "no_hook.py").write_text("VALUE = 1\n")
    (plugin_dir / "_private.py").write_text("raise RuntimeError('must not be imported')\n")

    registry = OperationRegistry()
    loaded = load_plugins(registry, plugin_dirs=[plugin_dir])

    assert loaded == [str(plugin_dir / "custom_op.py")]
    assert "custom_op" in registry
    assert isinstance(registry.get("custom_op"), Operation)


def test_plugin_module_import(monkeypatch, tmp_path: Path) -> None:
    package = tmp_path / "myplugin"
    package.mkdir()
    (package / "__init__.py").write_text("")
    (package / "extra_ops.py").write_text(PLUGIN_SOURCE.format(cls="ExtraOp", name="extra_op"))
    monkeypatch.syspath_prepend(str(tmp_path))

    registry = OperationRegistry()
    loaded = load_plugins(registry, plugin_modules=["myplugin.extra_ops"])

    assert loaded == ["myplugin.extra_ops"]
    assert "extra_op" in registry


def test_missing_plugin_directory_is_skipped(tmp_path: Path) -> None:
    registry = OperationRegistry()
    assert load_plugins(registry, plugin_dirs=[tmp_path / "absent"]) == []
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_bundled_example_plugin() -> None:
    from marionette_automation.testing import MockConnection

    registry = OperationRegistry()
    load_plugins(registry, plugin_dirs=[Path(__file__).resolve().parents[1] / "examples" / "plugins"])

    result = await registry.get("say_hello").run(MockConnection(), {"message": "hi"}, RunMode(check=True))

    assert result.simulated is True
    assert result.data["greeting"] == "greeting: hi"
