from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence

from .config import MarionetteConfig
from .connection import Connection, LocalConnection
from .errors import (
    CapabilityMismatchError,
    ExecutionTimeout,
    MarionetteError,
    OperationError,
    OperationNotFoundError,
    ValidationError,
)
from .operations.base import Operation, StreamingOperation, retry, with_timeout
from .registry import OperationRegistry, load_plugins
from .streaming import collect_result
from .templating import host_context, looks_like_template, render_args
from .types import ActionSpec, HostConfig, Plan, Reason, Result, RunMode, StreamEvent, TaskSpec, utcnow

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[HostConfig], Connection]
HostEventHook = Callable[[str, StreamEvent], None]


def default_connection_factory(host: HostConfig) -> Connection:
    if host.connection == "local":
        return LocalConnection(host)
    raise ValueError(f"Unknown connection type '{host.connection}'")


class TaskRunner:
    """Runs actions across hosts concurrently and collects one ``Result`` per host."""

    def __init__(
        self,
        registry: OperationRegistry,
        *,
        connection_factory: ConnectionFactory = default_connection_factory,
        max_concurrency: int = 5,
        timeout: Optional[float] = None,
        retries: int = 0,
        retry_delay: float = 1.0,
        check_mode: bool = False,
        diff_mode: bool = False,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.registry = registry
        self.connection_factory = connection_factory
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.check_mode = check_mode
        self.diff_mode = diff_mode

    @classmethod
    def from_config(
        cls,
        config: MarionetteConfig,
        registry: Optional[OperationRegistry] = None,
        *,
        connection_factory: ConnectionFactory = default_connection_factory,
    ) -> "TaskRunner":
        registry = registry if registry is not None else OperationRegistry.with_builtins()
        if config.plugin_dirs or config.plugin_modules:
            load_plugins(registry, config.plugin_dirs, config.plugin_modules)
        return cls(
            registry,
            connection_factory=connection_factory,
            max_concurrency=config.max_concurrency,
            timeout=config.timeout,
            retries=config.retries,
            retry_delay=config.retry_delay,
            check_mode=config.check_mode,
            diff_mode=config.diff_mode,
        )

    def mode_for(self, action: ActionSpec) -> tuple[RunMode, dict[str, Any]]:
        mode, args = action.run_mode().with_args(action.args)
        if self.check_mode or self.diff_mode:
            mode = RunMode(
                check=mode.check or self.check_mode,
                diff=mode.diff or self.diff_mode,
                asynchronous=mode.asynchronous,
            )
        return mode, args

    async def run_action(
        self,
        action: ActionSpec,
        hosts: Sequence[HostConfig],
        *,
        on_event: Optional[HostEventHook] = None,
    ) -> list[Result]:
        """Run ``action`` on every host and return results in host order.

        Unknown operations, invalid arguments and unsupported modes raise
        before any host is contacted. Everything that goes wrong on a single
        host is reported through that host's failed ``Result``.
        """
        operation = self.registry.get(action.operation)
        mode, args = self.mode_for(action)
        templated = _has_template(args)
        if not templated:
            operation.validate(args)
        operation.capabilities().negotiate(mode, operation=operation.name)
        logger.debug("action=%s mode=%s hosts=%d", action.label, mode.describe(), len(hosts))

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(host: HostConfig) -> Result:
            async with semaphore:
                return await self._run_host(operation, action, host, args, mode, templated, on_event)

        return list(await asyncio.gather(*(bounded(host) for host in hosts)))

    async def run(self, plan: Plan, *, on_event: Optional[HostEventHook] = None) -> list[Result]:
        results: list[Result] = []
        for task in plan.tasks:
            results.extend(await self._run_task(plan, task, on_event))
        return results

    async def _run_task(self, plan: Plan, task: TaskSpec, on_event: Optional[HostEventHook]) -> list[Result]:
        results: list[Result] = []
        logger.debug("task=%s hosts=%s", task.name, ",".join(task.hosts))
        hosts: list[HostConfig] = []
        for host_name in task.hosts:
            host = plan.hosts.get(host_name)
            if not host:
                raise KeyError(f"Host '{host_name}' is not defined")
            hosts.append(host)

        failed_hosts: set[str] = set()
        for action in self._order_actions(task.actions):
            active = [host for host in hosts if host.name not in failed_hosts]
            if not active:
                logger.warning("task=%s no hosts left, stopping", task.name)
                break
            try:
                action_results = await self.run_action(action, active, on_event=on_event)
            except (OperationNotFoundError, ValidationError, CapabilityMismatchError) as exc:
                logger.warning("task=%s action=%s rejected: %s", task.name, action.label, exc)
                action_results = [self._rejected(action, host, exc) for host in active]
            for result in action_results:
                if result.failed and not action.ignore_errors:
                    failed_hosts.add(result.host)
            results.extend(action_results)
        return results

    async def _run_host(
        self,
        operation: Operation,
        action: ActionSpec,
        host: HostConfig,
        args: dict[str, Any],
        mode: RunMode,
        templated: bool,
        on_event: Optional[HostEventHook],
    ) -> Result:
        start = utcnow()
        timeout = action.timeout if action.timeout is not None else self.timeout
        retries = action.retries if action.retries is not None else self.retries
        delay = action.delay if action.delay is not None else self.retry_delay
        try:
            host_args = render_args(args, host_context(host)) if templated else args
            if templated:
                operation.validate(host_args)
            async with self.connection_factory(host) as conn:
                operation.capabilities().negotiate(
                    mode, operation=operation.name, platform=conn.platform, privileged=conn.privileged
                )

                async def attempt() -> Result:
                    return await self._invoke(operation, conn, host_args, mode, on_event)

                if mode.asynchronous:
                    # one deadline for the whole job, retries included
                    result = await with_timeout(timeout, lambda: retry(retries, delay, attempt))
                else:
                    result = await retry(retries, delay, lambda: with_timeout(timeout, attempt))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            result = self._host_failure(operation.name, host, exc)
        if result is None:
            result = self._host_failure(operation.name, host, OperationError(operation.name, host.name, "no result"))
        if not result.duration:
            result.stamp(start)
        return self._finalize(action, operation, host, result)

    async def _invoke(
        self,
        operation: Operation,
        conn: Connection,
        args: dict[str, Any],
        mode: RunMode,
        on_event: Optional[HostEventHook],
    ) -> Result:
        if on_event is not None and isinstance(operation, StreamingOperation):
            stream = await operation.run_stream(conn, args, mode)
            return await collect_result(stream, lambda event: on_event(conn.host.name, event))
        return await operation.run(conn, args, mode)

    def _host_failure(self, name: str, host: HostConfig, exc: Exception) -> Result:
        if isinstance(exc, CapabilityMismatchError):
            reason = Reason.UNSUPPORTED
        elif isinstance(exc, ExecutionTimeout):
            reason = Reason.TIMEOUT
        else:
            reason = None
        if isinstance(exc, MarionetteError):
            error: Exception = exc
            logger.warning("action=%s host=%s failed: %s", name, host.name, exc)
        else:
            error = OperationError(name, host.name, str(exc), exc)
            logger.error("action=%s host=%s failed: %s", name, host.name, exc, exc_info=True)
        return Result(
            host=host.name,
            success=False,
            message=str(exc),
            error=error,
            operation=name,
            reason=reason,
        )

    def _finalize(self, action: ActionSpec, operation: Operation, host: HostConfig, result: Result) -> Result:
        result.task_name = action.label
        if not result.operation:
            result.operation = operation.name
        if not result.changed:
            result.diff = None
        if result.failed and action.ignore_errors:
            result.data["ignored"] = True
        logger.debug(
            "action=%s host=%s changed=%s success=%s", action.label, host.name, result.changed, result.success
        )
        return result

    @staticmethod
    def _rejected(action: ActionSpec, host: HostConfig, exc: Exception) -> Result:
        if isinstance(exc, OperationNotFoundError):
            reason = Reason.NOT_FOUND
        elif isinstance(exc, CapabilityMismatchError):
            reason = Reason.UNSUPPORTED
        else:
            reason = None
        return Result(
            host=host.name,
            success=False,
            message=str(exc),
            error=exc,
            operation=action.operation,
            task_name=action.label,
            reason=reason,
            data={"ignored": True} if action.ignore_errors else {},
        )

    def _order_actions(self, actions: list[ActionSpec]) -> list[ActionSpec]:
        if not actions:
            return []
        ids: list[str] = []
        for idx, action in enumerate(actions, start=1):
            aid = self._action_id(action, idx)
            ids.append(aid if aid not in ids else f"{aid}.__{idx}")
        id_map = dict(zip(ids, actions))
        graph: dict[str, set[str]] = {}
        in_degree: dict[str, int] = {}

        for aid, action in zip(ids, actions):
            deps = {dep for dep in action.depends_on if dep in id_map and dep != aid}
            graph[aid] = deps
            in_degree[aid] = len(deps)

        queue = [aid for aid, deg in in_degree.items() if deg == 0]
        ordered_ids: list[str] = []
        while queue:
            current = queue.pop(0)
            ordered_ids.append(current)
            for node, deps in graph.items():
                if current in deps:
                    in_degree[node] -= 1
                    if in_degree[node] == 0:
                        queue.append(node)

        # cycles and unknown dependencies keep their declared order
        seen = set(ordered_ids)
        for aid in ids:
            if aid not in seen:
                ordered_ids.append(aid)

        return [id_map[aid] for aid in ordered_ids]

    @staticmethod
    def _action_id(action: ActionSpec, index: int) -> str:
        return action.name or f"{action.operation}.__{index}"


def _has_template(value: Any) -> bool:
    if isinstance(value, str):
        return looks_like_template(value)
    if isinstance(value, dict):
        return any(_has_template(v) for k, v in value.items() if not str(k).startswith("_"))
    if isinstance(value, list):
        return any(_has_template(v) for v in value)
    return False
