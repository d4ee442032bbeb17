"""
Converge Condition Evaluation

``when`` / ``changed_when`` / ``failed_when`` evaluation against a host
context.
"""

from typing import Any, Iterable, Union

from converge.engine.expressions import evaluate, truthy


def _strip_braces(expr: str) -> str:
    text = expr.strip()
    if text.startswith('{{') and text.endswith('}}') and text.count('{{') == 1:
        text = text[2:-2].strip()
    return text


class ConditionEvaluator:
    """
    Evaluates boolean expressions.

    Conditions are bare expressions; a condition wrapped in ``{{ }}`` is
    accepted and unwrapped. Literal booleans (YAML ``true``/``false``) pass
    through the truthiness table.
    """

    def evaluate(self, expr: Union[str, bool, None], ctx: Any) -> bool:
        """
        Evaluate one condition.

        Raises:
            UndefinedVariable: the condition references an undefined name
            ExpressionError: the condition is not a valid expression
        """
        if expr is None:
            return True
        if not isinstance(expr, str):
            return truthy(expr)
        text = _strip_braces(expr)
        if not text:
            return True
        return truthy(evaluate(text, ctx))

    def evaluate_all(self, exprs: Iterable[Union[str, bool]], ctx: Any) -> bool:
        """AND-combine conditions, stopping at the first false one."""
        for expr in exprs:
            if not self.evaluate(expr, ctx):
                return False
        return True


_evaluator = ConditionEvaluator()


def evaluate_when(condition: Union[str, bool, None], variables: Any) -> bool:
    """Convenience function to evaluate a when condition."""
    return _evaluator.evaluate(condition, variables)
