"""
Example plugin module for Marionette.

Drop this file into a plugin directory (see plugin_dirs in main.toml) or make it
importable (plugin_modules) and it will register a new operation called
`say_hello` that reports a greeting without making system changes.
"""

from marionette_automation.operations.base import Operation, get_str_arg
from marionette_automation.types import OperationCapability, OperationDoc, ParamDoc, RunMode


class SayHelloOperation(Operation):
    name = "say_hello"
    capability = OperationCapability(check_mode=True, diff_mode=True)
    doc = OperationDoc(
        name="say_hello",
        description="Report a greeting",
        parameters={"message": ParamDoc("Greeting text", default="hello")},
    )

    async def run(self, conn, args, mode=RunMode()):
        mode, args = mode.with_args(args)
        self.parse(args)
        detail = f"greeting: {get_str_arg(args, 'message', 'hello')}"
        # no system changes, so changed=False
        return self.outcome(conn.host.name, False, detail, mode, {"greeting": detail})


def register_operations(registry) -> None:
    registry["say_hello"] = SayHelloOperation()
