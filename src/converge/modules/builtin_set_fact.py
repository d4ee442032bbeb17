"""
Converge set_fact module

Set host facts during playbook execution.
"""

from converge.modules.base import Module, ModuleResult, register_module


@register_module
class SetFactModule(Module):
    """
    Set host facts from task arguments.

    Facts land on the target host (not a delegate) and stay visible to later
    tasks and plays for the rest of the run.
    """

    name = "set_fact"
    required_args = []
    optional_args = {
        "cacheable": False,
    }

    def validate_args(self) -> str | None:
        if not any(k != "cacheable" for k in self.args):
            return "set_fact requires at least one fact"
        return None

    async def run(self) -> ModuleResult:
        facts = {k: v for k, v in self.args.items() if k != "cacheable"}
        return ModuleResult(
            msg=f"Set {len(facts)} fact(s)",
            results={"ansible_facts": facts},
            facts=facts,
        )
