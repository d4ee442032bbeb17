"""
Converge fail module

Fail the host with a message.
"""

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class FailModule(Module):
    """Fail the current host, usually behind a ``when``."""

    name = "fail"
    required_args = []
    optional_args = {
        "msg": "Failed as requested from task",
    }

    async def run(self) -> ModuleResult:
        return ModuleResult(
            failed=True,
            msg=str(self.get_arg("msg", "Failed as requested from task")),
        )
