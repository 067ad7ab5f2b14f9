from .base import Operation, StreamingOperation
from .command import CommandOperation
from .copy import CopyOperation
from .deployment import DeploymentOperation
from .noop import NoopOperation
from .ping import PingOperation
from .streaming_shell import StreamingShellOperation

OPERATION_TYPES = {
    "ping": PingOperation,
    "noop": NoopOperation,
    "command": CommandOperation,
    "copy": CopyOperation,
    "streaming_shell": StreamingShellOperation,
    "deployment": DeploymentOperation,
}


def builtin_operations() -> list[Operation]:
    """Fresh instances of every operation shipped with the package."""
    return [operation_cls() for operation_cls in OPERATION_TYPES.values()]


__all__ = [
    "Operation",
    "StreamingOperation",
    "PingOperation",
    "NoopOperation",
    "CommandOperation",
    "CopyOperation",
    "StreamingShellOperation",
    "DeploymentOperation",
    "OPERATION_TYPES",
    "builtin_operations",
]
