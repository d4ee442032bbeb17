"""
Converge debug module

Print debug messages during playbook execution.
"""

import json

from converge.engine.errors import UndefinedVariable
from converge.engine.expressions import evaluate
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class DebugModule(Module):
    """
    Print debug messages.

    Useful for printing variable values and troubleshooting playbooks.
    ``var`` takes an expression (``result.stdout``) evaluated against the
    target host's variables.
    """

    name = "debug"
    required_args = []
    optional_args = {
        "msg": "Hello world!",
        "var": None,
        "verbosity": 0,
    }

    def validate_args(self) -> str | None:
        if "msg" in self.args and "var" in self.args:
            return "'msg' and 'var' are mutually exclusive"
        return None

    async def run(self) -> ModuleResult:
        """Print the debug message."""
        var = self.get_arg("var")

        if var:
            try:
                value = evaluate(str(var), self.context)
            except UndefinedVariable:
                value = "VARIABLE IS NOT DEFINED!"
            if isinstance(value, (dict, list)):
                output = f"{var}: {json.dumps(value, indent=2, default=str)}"
            else:
                output = f"{var}: {value}"
            return ModuleResult(msg=output, results={var: value, "msg": output})

        output = str(self.get_arg("msg"))
        return ModuleResult(msg=output, results={"msg": output})
