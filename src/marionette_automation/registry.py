from __future__ import annotations

import importlib
import importlib.util
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional

from .errors import OperationNotFoundError
from .operations.base import Operation
from .types import OperationDoc, RunMode

logger = logging.getLogger(__name__)


class _ReadWriteLock:
    """Many concurrent readers or one writer.

    A waiting writer blocks new readers, so a steady stream of lookups
    cannot hold off registration forever.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._waiting_writers = 0

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def writing(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writing or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class OperationRegistry:
    """Thread-safe mapping of operation names to operation instances.

    Build one per orchestrator run and pass it explicitly.
    """

    def __init__(self, operations: Iterable[Operation] = ()):
        self._lock = _ReadWriteLock()
        self._operations: dict[str, Operation] = {}
        for operation in operations:
            self.register(operation)

    @classmethod
    def with_builtins(cls) -> "OperationRegistry":
        from .operations import builtin_operations

        return cls(builtin_operations())

    def register(self, operation: Operation) -> None:
        if operation is None:
            raise ValueError("operation cannot be None")
        name = operation.name
        if not name:
            raise ValueError("operation name cannot be empty")
        with self._lock.writing():
            replaced = name in self._operations
            self._operations[name] = operation
        logger.debug("registered operation=%s replaced=%s", name, replaced)

    def __setitem__(self, name: str, operation: Operation) -> None:
        if name != operation.name:
            raise ValueError(f"operation registered as '{name}' reports name '{operation.name}'")
        self.register(operation)

    def unregister(self, name: str) -> None:
        with self._lock.writing():
            if name not in self._operations:
                raise OperationNotFoundError(name)
            del self._operations[name]

    def get(self, name: str) -> Operation:
        with self._lock.reading():
            operation = self._operations.get(name)
        if operation is None:
            raise OperationNotFoundError(name)
        return operation

    __getitem__ = get

    def names(self) -> list[str]:
        with self._lock.reading():
            return sorted(self._operations)

    def __contains__(self, name: object) -> bool:
        with self._lock.reading():
            return name in self._operations

    def __len__(self) -> int:
        with self._lock.reading():
            return len(self._operations)

    def documentation(self, name: str) -> OperationDoc:
        return self.get(name).documentation()

    def validate_args(self, name: str, args: Mapping[str, Any]) -> None:
        self.get(name).validate(args)

    def prepare(
        self,
        name: str,
        args: Mapping[str, Any],
        mode: RunMode = RunMode(),
        *,
        platform: Optional[str] = None,
        privileged: Optional[bool] = None,
    ) -> Operation:
        """Look up ``name``, validate ``args`` and refuse unsupported modes."""
        operation = self.get(name)
        operation.validate(args)
        operation.capabilities().negotiate(mode, operation=name, platform=platform, privileged=privileged)
        return operation


def load_plugins(
    registry: OperationRegistry,
    plugin_dirs: Iterable[Path] = (),
    plugin_modules: Iterable[str] = (),
) -> list[str]:
    """Import plugin modules and let each call ``register_operations(registry)``.

    Returns the names of the modules that registered operations.
    """
    loaded: list[str] = []
    for directory in plugin_dirs:
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("plugin directory %s does not exist", directory)
            continue
        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            module_name = f"marionette_plugin_{path.stem}"
            spec = importlib.util.spec_from_file_location(module_name, path)
            if spec is None or spec.loader is None:
                logger.warning("cannot load plugin %s", path)
                continue
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            if _register_from(module, registry):
                loaded.append(str(path))
    for dotted in plugin_modules:
        module = importlib.import_module(dotted)
        if _register_from(module, registry):
            loaded.append(dotted)
    return loaded


def _register_from(module: Any, registry: OperationRegistry) -> bool:
    hook = getattr(module, "register_operations", None)
    if not callable(hook):
        logger.warning("plugin %s has no register_operations()", getattr(module, "__name__", module))
        return False
    hook(registry)
    logger.debug("plugin=%s registered", getattr(module, "__name__", module))
    return True
