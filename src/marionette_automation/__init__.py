"""Marionette remote operations toolkit."""

from .config import MarionetteConfig, configure_logging, load_config
from .connection import Connection, LocalConnection, StreamingConnection, supports_streaming
from .registry import OperationRegistry, load_plugins
from .runner import TaskRunner
from .streaming import EventStream, collect_result
from .types import ActionSpec, ExecuteOptions, HostConfig, Plan, Reason, Result, RunMode, TaskSpec

__all__ = [
    "ActionSpec",
    "Connection",
    "EventStream",
    "ExecuteOptions",
    "HostConfig",
    "LocalConnection",
    "MarionetteConfig",
    "OperationRegistry",
    "Plan",
    "Reason",
    "Result",
    "RunMode",
    "StreamingConnection",
    "TaskRunner",
    "TaskSpec",
    "collect_result",
    "configure_logging",
    "load_config",
    "load_plugins",
    "supports_streaming",
]
