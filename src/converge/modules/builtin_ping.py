"""
Converge ping module

A trivial test module that returns 'pong' once the host is reachable.
"""

from converge.engine.errors import ModuleFailure
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class PingModule(Module):
    """
    Verify that a host is reachable and can run commands.

    The engine opens the transport session before run(); an unreachable host
    never gets this far. ``data: crash`` raises, for exercising failure paths.
    """

    name = "ping"
    required_args = []
    optional_args = {
        "data": "pong",
    }
    requires_connection = True

    async def run(self) -> ModuleResult:
        data = self.get_arg("data", "pong")
        host = self.invocation.host.name
        if data == "crash":
            raise ModuleFailure(self.name, host, "ping raised as requested by data=crash")

        result = await self.connection.run("true")
        if not result.success:
            raise ModuleFailure(
                self.name,
                host,
                f"Remote shell returned {result.rc}",
                rc=result.rc,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return ModuleResult(msg=data, results={"ping": data})
