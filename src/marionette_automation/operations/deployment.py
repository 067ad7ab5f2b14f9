from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .base import StreamingOperation, generate_diff, get_bool_arg, get_int_arg, get_str_arg
from ..connection import Connection, supports_streaming
from ..errors import ExecutionTimeout, OperationError, StreamProtocolError, TransportError, ValidationError
from ..streaming import EventStream, StepTracker
from ..types import (
    ExecuteOptions,
    OperationCapability,
    OperationDoc,
    ParamDoc,
    Reason,
    Result,
    RunMode,
    StepInfo,
    StepStatus,
    StreamEventType,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentArgs:
    app_name: str
    version: str
    deploy_path: str
    fetch_cmd: str = ""
    stop_cmd: str = ""
    start_cmd: str = ""
    health_cmd: str = ""
    health_check: bool = True
    rollback_on_failure: bool = True
    step_timeout: int = 30

    @property
    def app_dir(self) -> str:
        return f"{self.deploy_path.rstrip('/')}/{self.app_name}"

    @property
    def release_dir(self) -> str:
        return f"{self.app_dir}/releases/{self.version}"

    @property
    def current_link(self) -> str:
        return f"{self.app_dir}/current"


@dataclass(frozen=True)
class _StepPlan:
    id: str
    name: str
    description: str
    critical: bool
    read_only: bool


class DeploymentOperation(StreamingOperation):
    """Roll out an application release behind a ``current`` symlink.

    Steps, in order: validate, inspect, fetch, stop, switch, start and the
    optional health_check. A failed critical step emits its ``step_end``
    with status ``failed``, cancels the steps that never ran, restores the
    previous release when ``rollback_on_failure`` is set and the symlink was
    already switched, then terminates the stream with an ``error`` event
    carrying an ``OperationError``. A failed non-critical step (inspect,
    stop) is recorded and the rollout continues.

    When ``current`` already points at the requested release every
    remaining step is skipped and the result reports no change. In check
    mode only validate and inspect run; every other step is skipped.
    """

    name = "deployment"
    capability = OperationCapability(check_mode=True, diff_mode=True, platform="all")
    doc = OperationDoc(
        name="deployment",
        description="Deploy applications with step tracking and rollback",
        parameters={
            "app_name": ParamDoc("Name of the application", required=True),
            "version": ParamDoc("Release to deploy", default="latest"),
            "deploy_path": ParamDoc("Base path for deployments", default="/opt/apps"),
            "fetch_cmd": ParamDoc("Command populating the release directory; runs inside it"),
            "stop_cmd": ParamDoc("Command stopping the running service"),
            "start_cmd": ParamDoc("Command starting the service"),
            "health_cmd": ParamDoc("Command that succeeds when the service is healthy"),
            "health_check": ParamDoc("Run the health check step", type="boolean", default=True),
            "rollback_on_failure": ParamDoc("Restore the previous release after a critical failure", type="boolean", default=True),
            "step_timeout": ParamDoc("Timeout in seconds for each step", type="integer", default=30),
        },
        examples=(
            "- name: Deploy web application\n  deployment:\n    app_name: webapp\n    version: v1.2.3\n    deploy_path: /var/www",
        ),
        returns={
            "previous": "Release the symlink pointed to before the run",
            "release": "Release directory now active",
            "total_steps": "Number of planned steps",
            "failed_steps": "Non-critical steps that failed",
            "steps": "Final state of every step",
        },
    )

    def parse(self, args: Mapping[str, Any]) -> DeploymentArgs:
        app_name = get_str_arg(args, "app_name")
        if not app_name:
            raise ValidationError("app_name", args.get("app_name"), "deployment requires an app_name")
        if "/" in app_name:
            raise ValidationError("app_name", app_name, "app_name must not contain '/'")
        version = get_str_arg(args, "version", "latest")
        if not version or "/" in version:
            raise ValidationError("version", version, "version must be a non-empty name without '/'")
        deploy_path = get_str_arg(args, "deploy_path", "/opt/apps")
        if not deploy_path.startswith("/"):
            raise ValidationError("deploy_path", deploy_path, "deploy_path must be an absolute path")
        step_timeout = get_int_arg(args, "step_timeout", 30)
        if step_timeout <= 0:
            raise ValidationError("step_timeout", step_timeout, "step_timeout must be positive")
        return DeploymentArgs(
            app_name=app_name,
            version=version,
            deploy_path=deploy_path,
            fetch_cmd=get_str_arg(args, "fetch_cmd"),
            stop_cmd=get_str_arg(args, "stop_cmd"),
            start_cmd=get_str_arg(args, "start_cmd"),
            health_cmd=get_str_arg(args, "health_cmd"),
            health_check=get_bool_arg(args, "health_check", True),
            rollback_on_failure=get_bool_arg(args, "rollback_on_failure", True),
            step_timeout=step_timeout,
        )

    def plan(self, spec: DeploymentArgs) -> list[_StepPlan]:
        steps = [
            _StepPlan("validate", "Validate Environment", f"Check {spec.deploy_path} is a writable directory", True, True),
            _StepPlan("inspect", "Inspect Current Release", f"Read {spec.current_link}", False, True),
            _StepPlan("fetch", "Fetch Release", f"Populate {spec.release_dir}", True, False),
            _StepPlan("stop", "Stop Service", f"Stop {spec.app_name}", False, False),
            _StepPlan("switch", "Switch Release", f"Point {spec.current_link} at {spec.version}", True, False),
            _StepPlan("start", "Start Service", f"Start {spec.app_name}", True, False),
        ]
        if spec.health_check:
            steps.append(_StepPlan("health_check", "Health Check", f"Verify {spec.app_name} is healthy", True, False))
        return steps

    async def run_stream(self, conn: Connection, args: Mapping[str, Any], mode: RunMode = RunMode()) -> EventStream:
        mode, args = mode.with_args(args)
        spec = self.parse(args)
        return EventStream.spawn(lambda stream: self._deploy(conn, spec, mode, stream))

    async def _deploy(self, conn: Connection, spec: DeploymentArgs, mode: RunMode, stream: EventStream) -> Result:
        host = conn.host.name
        start = utcnow()
        plans = self.plan(spec)
        steps = [
            StepInfo(id=p.id, name=p.name, description=p.description, metadata={"critical": p.critical})
            for p in plans
        ]
        tracker = StepTracker(stream, steps, stage="deploying")
        previous: Optional[str] = None
        switched = False
        failures: list[str] = []

        for plan, step in zip(plans, steps):
            if mode.check and not plan.read_only:
                await tracker.end(step, StepStatus.SKIPPED)
                continue
            await tracker.start(step)
            command = self._command(plan.id, spec)
            result, error = await self._run_step(conn, stream, command, spec)
            ok = error is None and result is not None and result.success

            if plan.id == "inspect" and ok:
                previous = result.data.get("stdout", "").strip() or None
                await tracker.update(step, f"current release: {previous or 'none'}", previous=previous)
            if plan.id == "switch" and ok:
                switched = True

            if ok:
                await tracker.end(step, StepStatus.COMPLETED)
            else:
                detail = str(error) if error is not None else self._detail(result)
                step.metadata["error"] = detail
                await tracker.end(step, StepStatus.FAILED)
                if plan.critical:
                    await tracker.abandon(StepStatus.CANCELLED)
                    rolled_back = False
                    if switched and spec.rollback_on_failure:
                        rolled_back = await self._rollback(conn, spec, previous)
                    logger.warning(
                        "deployment host=%s app=%s step=%s failed rolled_back=%s", host, spec.app_name, plan.id, rolled_back
                    )
                    message = f"critical step '{plan.name}' failed: {detail}"
                    if rolled_back:
                        message += f" (rolled back to {previous})"
                    raise OperationError(self.name, host, message, error)
                failures.append(plan.id)
                logger.info("deployment host=%s step=%s failed (non-critical): %s", host, plan.id, detail)

            if plan.id == "inspect" and previous == spec.release_dir:
                await tracker.abandon(StepStatus.SKIPPED)
                data = self._data(spec, previous, tracker, failures)
                return self.outcome(host, False, f"{spec.app_name} {spec.version} already deployed", mode, data, reason=Reason.ALREADY_PRESENT).stamp(start)

        data = self._data(spec, previous, tracker, failures)
        diff = generate_diff(f"{previous}\n" if previous else "", f"{spec.release_dir}\n", path=spec.current_link)
        verb = "would deploy" if mode.check else "deployed"
        result = self.outcome(host, True, f"{verb} {spec.app_name} {spec.version}", mode, data, diff=diff, reason=Reason.APPLIED)
        return result.stamp(start)

    def _command(self, step_id: str, spec: DeploymentArgs) -> str:
        q = shlex.quote
        if step_id == "validate":
            return f"test -d {q(spec.deploy_path)} && test -w {q(spec.deploy_path)}"
        if step_id == "inspect":
            return f"readlink {q(spec.current_link)} || true"
        if step_id == "fetch":
            command = f"mkdir -p {q(spec.release_dir)}"
            if spec.fetch_cmd:
                command += f" && cd {q(spec.release_dir)} && {spec.fetch_cmd}"
            return command
        if step_id == "stop":
            return spec.stop_cmd or f"echo 'stopping {spec.app_name}'"
        if step_id == "switch":
            return f"ln -sfn {q(spec.release_dir)} {q(spec.current_link)}"
        if step_id == "start":
            return spec.start_cmd or f"echo 'starting {spec.app_name}'"
        if step_id == "health_check":
            return spec.health_cmd or f"test -d {q(spec.current_link)}/"
        raise ValueError(f"unknown deployment step '{step_id}'")

    async def _run_step(
        self, conn: Connection, stream: EventStream, command: str, spec: DeploymentArgs
    ) -> tuple[Optional[Result], Optional[BaseException]]:
        options = ExecuteOptions(timeout=spec.step_timeout, stream_output=True)
        try:
            if not supports_streaming(conn):
                return await conn.execute(command, options), None
            inner = await conn.execute_stream(command, options)
            async with inner:
                async for event in inner:
                    if event.type is StreamEventType.STDOUT:
                        await stream.stdout(event.data)
                    elif event.type is StreamEventType.STDERR:
                        await stream.stderr(event.data)
                    elif event.type is StreamEventType.DONE:
                        return event.result, None
                    elif event.type is StreamEventType.ERROR:
                        return None, event.error or StreamProtocolError(event.data)
            return None, StreamProtocolError("step stream ended without a result")
        except (TransportError, ExecutionTimeout) as exc:
            return None, exc

    async def _rollback(self, conn: Connection, spec: DeploymentArgs, previous: Optional[str]) -> bool:
        if not previous:
            return False
        q = shlex.quote
        commands = [f"ln -sfn {q(previous)} {q(spec.current_link)}"]
        if spec.start_cmd:
            commands.append(spec.start_cmd)
        options = ExecuteOptions(timeout=spec.step_timeout)
        for command in commands:
            try:
                result = await conn.execute(command, options)
            except (TransportError, ExecutionTimeout) as exc:
                logger.error("deployment rollback host=%s cmd=%s failed: %s", conn.host.name, command, exc)
                return False
            if not result.success:
                logger.error("deployment rollback host=%s cmd=%s rc=%s", conn.host.name, command, result.data.get("exit_code"))
                return False
        return True

    @staticmethod
    def _detail(result: Optional[Result]) -> str:
        if result is None:
            return "no result"
        stderr = (result.data.get("stderr") or "").strip()
        return stderr.splitlines()[0] if stderr else result.message

    @staticmethod
    def _data(spec: DeploymentArgs, previous: Optional[str], tracker: StepTracker, failures: list[str]) -> dict[str, Any]:
        return {
            "app_name": spec.app_name,
            "app_version": spec.version,
            "deploy_path": spec.deploy_path,
            "release": spec.release_dir,
            "previous": previous,
            "total_steps": len(tracker.steps),
            "completed_steps": tracker.count(StepStatus.COMPLETED),
            "failed_steps": failures,
            "steps": [step.snapshot() for step in tracker.steps],
        }
