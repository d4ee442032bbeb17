"""
Converge meta module

Meta actions for playbook execution control.
"""

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class MetaModule(Module):
    """
    Execution-control actions.

    ``flush_handlers`` is carried out by the scheduler at the task's position
    in the plan; by the time this module runs there is nothing left to do.
    """

    name = "meta"
    required_args = []
    optional_args = {}

    SUPPORTED_ACTIONS = {
        "flush_handlers",
        "noop",
    }

    def action(self) -> str:
        return str(self.args.get("_raw_params") or self.args.get("free_form") or "").strip()

    def validate_args(self) -> str | None:
        action = self.action()
        if not action:
            return "No meta action specified"
        if action not in self.SUPPORTED_ACTIONS:
            return (
                f"Unknown meta action: {action}. "
                f"Supported: {', '.join(sorted(self.SUPPORTED_ACTIONS))}"
            )
        return None

    async def run(self) -> ModuleResult:
        action = self.action()
        return ModuleResult(msg=f"Meta action: {action}", results={"meta_action": action})
