"""
Converge assert module

Assert conditions during playbook execution.
"""

from converge.engine.conditions import ConditionEvaluator
from converge.engine.errors import ExpressionError
from converge.modules.base import Module, ModuleResult, register_module


@register_module
class AssertModule(Module):
    """
    Assert conditions are true.

    ``that`` takes one condition or a list, evaluated like ``when``.
    """

    name = "assert"
    required_args = ["that"]
    optional_args = {
        "msg": None,
        "success_msg": None,
        "fail_msg": None,
        "quiet": False,
    }

    async def run(self) -> ModuleResult:
        """Evaluate assertions."""
        that = self.args["that"]
        conditions = [that] if isinstance(that, (str, bool)) else list(that)
        fail_msg = self.get_arg("fail_msg") or self.get_arg("msg")

        evaluator = ConditionEvaluator()
        for condition in conditions:
            try:
                passed = evaluator.evaluate(condition, self.context)
            except ExpressionError as e:
                return ModuleResult(
                    failed=True,
                    msg=f"Error evaluating '{condition}': {e.message}",
                    results={"assertion": condition, "evaluated_to": False},
                )
            if not passed:
                return ModuleResult(
                    failed=True,
                    msg=str(fail_msg or f"Assertion failed: {condition}"),
                    results={"assertion": condition, "evaluated_to": False},
                )

        success_msg = self.get_arg("success_msg") or "All assertions passed"
        return ModuleResult(msg="" if self.get_arg("quiet") else str(success_msg))
