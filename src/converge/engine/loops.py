"""
Converge Loop Expansion

Expands a looped task into bound per-item instances and folds the per-item
results back into one aggregate.
"""

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from converge.engine.errors import ExpressionError
from converge.engine.expressions import evaluate, is_template, render
from converge.engine.playbook import Task
from converge.engine.results import TaskResult
from converge.engine.variables import Context


@dataclass
class BoundTask:
    """One loop item bound to a task, with its own context frame."""

    task: Task
    item: Any
    index: Optional[int]
    context: Context

    @property
    def is_loop_item(self) -> bool:
        return self.index is not None


class LoopBinder:
    """Evaluates loop sources and binds items."""

    def source(self, task: Task, ctx: Context) -> List[Any]:
        """
        Evaluate the loop source once against the pre-loop context.

        Raises:
            UndefinedVariable: the source references an undefined name
            ExpressionError: the source is not a list or mapping
        """
        raw = task.loop
        if isinstance(raw, str):
            value = render(raw, ctx) if is_template(raw) else evaluate(raw, ctx)
        else:
            value = render(raw, ctx)

        if isinstance(value, Mapping):
            return [{"key": k, "value": v} for k, v in value.items()]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise ExpressionError(
            f"Invalid loop source: expected a list or mapping, got {type(value).__name__}",
            expression=raw if isinstance(raw, str) else None,
        )

    def expand(self, task: Task, ctx: Context) -> List[BoundTask]:
        """Bind every item of the task's loop; a task without loop is a singleton."""
        if not task.has_loop:
            return [BoundTask(task, None, None, ctx)]
        bound = []
        for index, item in enumerate(self.source(task, ctx)):
            bindings = {task.loop_var: item}
            if task.index_var:
                bindings[task.index_var] = index
            bound.append(BoundTask(task, item, index, ctx.child(bindings)))
        return bound

    @staticmethod
    def aggregate(task: Task, results: List[TaskResult]) -> TaskResult:
        """Fold per-item results into the task-level result."""
        if not results:
            return TaskResult(
                skipped=True,
                msg="No items in loop",
                skip_reason="empty_loop",
                results=[],
                task_name=task.name,
            )
        failed = any(r.failed for r in results)
        unreachable = any(r.unreachable for r in results)
        skipped = all(r.skipped for r in results)
        if failed:
            msg = "One or more items failed"
        elif skipped:
            msg = "All items skipped"
        else:
            msg = "All items completed"
        return TaskResult(
            changed=any(r.changed for r in results),
            failed=failed,
            skipped=skipped,
            unreachable=unreachable,
            msg=msg,
            results=list(results),
            skip_reason=results[0].skip_reason if skipped else None,
            task_name=task.name,
        )
