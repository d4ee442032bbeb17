"""
Converge Task Executor

Runs one task against one target host: conditionals, loop expansion,
delegation, argument interpolation, creates/removes guards, module
invocation, changed_when/failed_when, register, facts and notification.
"""

import asyncio
import logging
from typing import Any, List, Optional

from converge.connections.base import Connection, ConnectionPool
from converge.engine.conditions import ConditionEvaluator
from converge.engine.delegation import DelegationResolver
from converge.engine.errors import (
    ConvergeError,
    ExpressionError,
    ModuleFailure,
    UndefinedVariable,
    UnknownPattern,
    UnreachableError,
)
from converge.engine.expressions import render
from converge.engine.handlers import HandlerQueue
from converge.engine.inventory import Host
from converge.engine.loops import BoundTask, LoopBinder
from converge.engine.plan import PlanStep
from converge.engine.results import TaskResult
from converge.engine.variables import Context, VariableStore
from converge.modules.base import Invocation, ModuleResult


logger = logging.getLogger(__name__)

# Arguments the engine checks before invoking a module
GUARD_ARGS = ('creates', 'removes')


class TaskExecutor:
    """
    Executes plan steps for single hosts.

    The semaphore bounds concurrent module invocations across all hosts; it
    is held around the transport session, the guard check and the module
    run, never around condition evaluation or barriers.
    """

    def __init__(
        self,
        variables: VariableStore,
        delegation: DelegationResolver,
        connections: ConnectionPool,
        conditions: Optional[ConditionEvaluator] = None,
        loops: Optional[LoopBinder] = None,
        semaphore: Optional[asyncio.Semaphore] = None,
    ):
        self.variables = variables
        self.delegation = delegation
        self.connections = connections
        self.conditions = conditions or ConditionEvaluator()
        self.loops = loops or LoopBinder()
        self.semaphore = semaphore or asyncio.Semaphore(5)
        self.invocations = 0

    async def run(
        self,
        step: PlanStep,
        host: Host,
        ctx: Optional[Context] = None,
        handlers: Optional[HandlerQueue] = None,
        is_handler: bool = False,
    ) -> TaskResult:
        """
        Run ``step`` for target ``host`` and return its (aggregate) result.

        Registered results, facts and notifications are applied before
        returning.
        """
        task = step.task
        if ctx is None:
            ctx = self.variables.merge(host, task_vars=task.vars)

        result = await self._execute(step, host, ctx)
        result.host = host.name
        result.task_name = task.name
        result.is_handler = is_handler
        if result.failed and task.ignore_errors and not result.unreachable:
            result.ignored = True

        if task.register:
            self.variables.set_registered(host, task.register, result)

        if result.changed and task.notify and handlers is not None and not result.fatal:
            for name in task.notify:
                await handlers.notify(name, host)

        return result

    async def _execute(self, step: PlanStep, host: Host, ctx: Context) -> TaskResult:
        task = step.task

        if not task.has_loop:
            skipped = self._check_when(step, ctx)
            if skipped is not None:
                return skipped
            return await self._run_bound(step, BoundTask(task, None, None, ctx), host)

        try:
            bound_tasks = self.loops.expand(task, ctx)
        except UndefinedVariable as e:
            return TaskResult(
                skipped=True,
                msg=f"Loop source skipped: {e.message}",
                skip_reason="undefined",
            )
        except ExpressionError as e:
            return TaskResult(failed=True, msg=f"Invalid loop: {e.message}")

        results: List[TaskResult] = []
        for bound in bound_tasks:
            item_result = self._check_when(step, bound.context)
            if item_result is None:
                item_result = await self._run_bound(step, bound, host)
            item_result.item = bound.item
            item_result.loop_index = bound.index
            item_result.host = host.name
            item_result.task_name = task.name
            results.append(item_result)
            if item_result.unreachable:
                break
        return self.loops.aggregate(task, results)

    def _check_when(self, step: PlanStep, ctx: Context) -> Optional[TaskResult]:
        """None when the task should run, otherwise the skip (or failure) result."""
        if not step.task.when:
            return None
        try:
            if self.conditions.evaluate_all(step.task.when, ctx):
                return None
        except UndefinedVariable as e:
            return TaskResult(
                skipped=True,
                msg=f"Conditional check skipped: {e.message}",
                skip_reason="undefined",
            )
        except ExpressionError as e:
            return TaskResult(failed=True, msg=f"Conditional check failed: {e.message}")
        return TaskResult(skipped=True, msg="Conditional result was False", skip_reason="conditional")

    async def _run_bound(self, step: PlanStep, bound: BoundTask, target: Host) -> TaskResult:
        task = bound.task
        ctx = bound.context

        try:
            exec_host = self.delegation.resolve_execution_host(task, target, ctx)
        except (UnknownPattern, ExpressionError) as e:
            return TaskResult(failed=True, msg=f"Cannot delegate: {e.message}")
        delegated_to = exec_host.name if exec_host != target else None
        if delegated_to:
            ctx = ctx.child({"delegated_vars": self.variables.host_view(exec_host)})

        args, problem = self._render_args(step, ctx)
        if problem is not None:
            problem.delegated_to = delegated_to
            return problem

        invocation = Invocation(target=target, host=exec_host, context=ctx, task_name=task.name)
        module = step.module(args, invocation)
        error = module.validate_args()
        if error:
            return TaskResult(failed=True, msg=error, delegated_to=delegated_to)

        async with self.semaphore:
            try:
                connection = None
                if module.requires_connection or any(args.get(k) for k in GUARD_ARGS):
                    connection = await self.connections.get(exec_host)
                    module.connection = connection
                    invocation.connection = connection

                guarded = await self._check_guards(args, connection)
                if guarded is not None:
                    guarded.delegated_to = delegated_to
                    return guarded

                self.invocations += 1
                module_result = await module.run()
            except UnreachableError as e:
                return TaskResult(unreachable=True, msg=str(e), delegated_to=delegated_to)
            except ModuleFailure as e:
                module_result = ModuleResult(
                    failed=True, msg=e.reason, rc=e.rc, stdout=e.stdout, stderr=e.stderr,
                )
            except ConvergeError as e:
                module_result = ModuleResult(failed=True, msg=str(e))
            except Exception as e:
                logger.exception("Module '%s' raised on %s", task.module, exec_host.name)
                module_result = ModuleResult(failed=True, msg=f"{type(e).__name__}: {e}")

        result = module_result.to_task_result(target.name, task.name)
        result.delegated_to = delegated_to
        self._apply_overrides(task, result, ctx)

        if result.facts and not result.failed:
            self.variables.set_facts(target, result.facts)
        return result

    def _render_args(self, step: PlanStep, ctx: Context) -> "tuple[dict, Optional[TaskResult]]":
        """
        Interpolate arguments one by one.

        An undefined name in a required argument fails the instance; in any
        other argument it skips the instance.
        """
        required = set(step.module.required_args) | {'_raw_params'}
        args = {}
        for key, value in step.task.args.items():
            try:
                args[key] = render(value, ctx)
            except UndefinedVariable as e:
                if key in required:
                    return args, TaskResult(failed=True, msg=f"Argument '{key}': {e.message}")
                return args, TaskResult(
                    skipped=True,
                    msg=f"Argument '{key}': {e.message}",
                    skip_reason="undefined",
                )
            except ExpressionError as e:
                return args, TaskResult(failed=True, msg=f"Argument '{key}': {e.message}")
        return args, None

    @staticmethod
    async def _check_guards(args: dict, connection: Optional[Connection]) -> Optional[TaskResult]:
        """creates: skip if the path exists. removes: skip if it is missing."""
        creates = args.get('creates')
        if creates and await connection.exists(str(creates)):
            return TaskResult(
                skipped=True,
                msg=f"skipped, since {creates} exists",
                skip_reason="guard",
            )
        removes = args.get('removes')
        if removes and not await connection.exists(str(removes)):
            return TaskResult(
                skipped=True,
                msg=f"skipped, since {removes} does not exist",
                skip_reason="guard",
            )
        return None

    def _apply_overrides(self, task: Any, result: TaskResult, ctx: Context) -> None:
        """Apply changed_when / failed_when against the fresh result."""
        if result.unreachable or result.skipped:
            return
        if task.changed_when is None and task.failed_when is None:
            return

        bindings = {"result": result.to_dict()}
        if task.register:
            bindings[task.register] = bindings["result"]
        scope = ctx.child(bindings)

        try:
            if task.changed_when is not None:
                result.changed = self.conditions.evaluate_all(_as_list(task.changed_when), scope)
            if task.failed_when is not None:
                failed = self.conditions.evaluate_all(_as_list(task.failed_when), scope)
                result.failed = failed
                if failed and not result.msg:
                    result.msg = "failed_when condition was true"
        except ExpressionError as e:
            result.failed = True
            result.msg = f"Error in changed_when/failed_when: {e.message}"


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else [value]
