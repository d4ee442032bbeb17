"""
Converge Scheduler

Per-play orchestration: one coroutine per target host, strictly sequential
tasks within a host, synchronization points for delegated, run_once and
flush_handlers tasks, and the end-of-play handler flush.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from converge.engine.delegation import DelegationResolver
from converge.engine.executor import TaskExecutor
from converge.engine.handlers import HandlerQueue
from converge.engine.inventory import Host
from converge.engine.plan import Plan, PlanStep
from converge.engine.results import HostOutcome, PlayResult, TaskResult
from converge.engine.variables import VariableStore


logger = logging.getLogger(__name__)

ResultCallback = Callable[[TaskResult], None]


@dataclass(eq=False)
class HostState:
    """Runtime state of one target host during a play."""

    host: Host
    failed: bool = False
    unreachable: bool = False
    cancelled: bool = False
    finished: bool = False
    results: List[TaskResult] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.host.name

    @property
    def active(self) -> bool:
        """Still taking part in the play (and in sync points)."""
        return not (self.failed or self.unreachable or self.cancelled)

    @property
    def outcome(self) -> HostOutcome:
        if self.unreachable:
            return HostOutcome.UNREACHABLE
        if self.failed:
            return HostOutcome.FAILED
        if self.cancelled:
            return HostOutcome.CANCELLED
        return HostOutcome.OK


class PlayRunner:
    """
    Runs one Plan over its resolved hosts.

    Synchronized steps work as a barrier: every active host arrives, the
    participants are fixed in play order, the step runs (once on the first
    participant for run_once and flush points, on every participant
    otherwise), and nobody moves on until it has completed. Hosts that fail
    leave every later barrier.
    """

    def __init__(
        self,
        plan: Plan,
        hosts: List[Host],
        executor: TaskExecutor,
        variables: VariableStore,
        queue: Optional[HandlerQueue] = None,
        timeout: Optional[float] = None,
        force_handlers: Optional[bool] = None,
        callback: Optional[ResultCallback] = None,
    ):
        self.plan = plan
        self.hosts = list(hosts)
        self.executor = executor
        self.variables = variables
        self.queue = queue or HandlerQueue(plan)
        self.timeout = timeout
        self.force_handlers = plan.play.force_handlers if force_handlers is None else force_handlers
        self.callback = callback

        self.states: List[HostState] = [HostState(h) for h in self.hosts]
        self._by_name: Dict[str, HostState] = {s.name: s for s in self.states}
        self._cancel_event: Optional[asyncio.Event] = None
        self._cond: Optional[asyncio.Condition] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._arrived: Dict[int, Set[str]] = {}
        self._participants: Dict[int, List[HostState]] = {}
        self._done: Dict[int, Set[str]] = {}
        self._completed: Dict[int, Optional[TaskResult]] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def run(self) -> PlayResult:
        """Execute the play and return its result log."""
        self._loop = asyncio.get_running_loop()
        self._cancel_event = asyncio.Event()
        self._cond = asyncio.Condition()

        timer = None
        if self.timeout:
            timer = self._loop.call_later(self.timeout, self._on_timeout)

        try:
            await asyncio.gather(*(self._run_host(state) for state in self.states))
            if not self.cancelled:
                await self.queue.flush(self._run_handlers, self._handler_eligible)
        finally:
            if timer is not None:
                timer.cancel()

        if self.cancelled:
            for state in self.states:
                if not state.finished and state.active:
                    state.cancelled = True

        play_result = PlayResult(self.plan.play.name, [s.name for s in self.states])
        for state in self.states:
            for result in state.results:
                play_result.add_result(result)
            play_result.set_outcome(state.name, state.outcome)
        return play_result

    def cancel(self) -> None:
        """Stop scheduling tasks; running invocations finish."""
        if self._cancel_event is None or self._cancel_event.is_set():
            return
        logger.warning("Play '%s' cancelled", self.plan.play.name)
        self._cancel_event.set()
        self._loop.create_task(self._wake())

    def _on_timeout(self) -> None:
        logger.warning("Play '%s' timed out after %ss", self.plan.play.name, self.timeout)
        self.cancel()

    async def _wake(self) -> None:
        async with self._cond:
            self._cond.notify_all()

    # -------------------------------------------------------------------------
    # Per-host loop
    # -------------------------------------------------------------------------

    async def _run_host(self, state: HostState) -> None:
        try:
            for step in self.plan.steps:
                if self.cancelled:
                    state.cancelled = True
                    break
                if not state.active:
                    break
                if step.synchronized:
                    await self._run_synchronized(step, state)
                else:
                    await self._run_step(step, state)
            else:
                state.finished = True
        finally:
            await self._wake()

    async def _run_step(self, step: PlanStep, state: HostState) -> TaskResult:
        ctx = self.variables.merge(state.host, task_vars=step.task.vars)
        result = await self.executor.run(step, state.host, ctx, handlers=self.queue)
        self._record(state, result)
        return result

    def _record(self, state: HostState, result: TaskResult) -> None:
        state.results.append(result)
        if result.unreachable:
            state.unreachable = True
        elif result.fatal:
            state.failed = True
        if self.callback is not None:
            self.callback(result)

    # -------------------------------------------------------------------------
    # Synchronization points
    # -------------------------------------------------------------------------

    def _all_arrived(self, index: int) -> bool:
        arrived = self._arrived.get(index, set())
        return all(s.name in arrived or not s.active for s in self.states)

    async def _arrive(self, step: PlanStep, state: HostState) -> Optional[List[HostState]]:
        """Wait for every active host; None when the play was cancelled."""
        async with self._cond:
            self._arrived.setdefault(step.index, set()).add(state.name)
            self._cond.notify_all()
            await self._cond.wait_for(lambda: self.cancelled or self._all_arrived(step.index))
            if self.cancelled:
                return None
            if step.index not in self._participants:
                arrived = self._arrived[step.index]
                self._participants[step.index] = [
                    s for s in self.states if s.active and s.name in arrived
                ]
                logger.debug(
                    "Sync point '%s': %d participant(s)",
                    step.name, len(self._participants[step.index]),
                )
            return self._participants[step.index]

    async def _complete(self, index: int, result: Optional[TaskResult]) -> None:
        async with self._cond:
            self._completed[index] = result
            self._cond.notify_all()

    async def _wait_complete(self, index: int) -> bool:
        async with self._cond:
            await self._cond.wait_for(lambda: self.cancelled or index in self._completed)
            return index in self._completed

    async def _finish_part(self, index: int, state: HostState, participants: List[HostState]) -> bool:
        async with self._cond:
            self._done.setdefault(index, set()).add(state.name)
            self._cond.notify_all()
            await self._cond.wait_for(
                lambda: self.cancelled or all(p.name in self._done[index] for p in participants)
            )
            return not self.cancelled

    async def _run_synchronized(self, step: PlanStep, state: HostState) -> None:
        participants = await self._arrive(step, state)
        if participants is None:
            state.cancelled = True
            return

        task = step.task
        if not (task.run_once or step.is_flush_point):
            await self._run_step(step, state)
            if not await self._finish_part(step.index, state, participants) and state.active:
                state.cancelled = True
            return

        leader = DelegationResolver.select_representative(participants)
        if state is leader:
            result = None
            try:
                if step.is_flush_point:
                    logger.debug("Flushing handlers at '%s'", step.name)
                    await self.queue.flush(self._run_handlers, self._handler_eligible)
                else:
                    result = await self._run_step(step, state)
            finally:
                await self._complete(step.index, result)
            return

        if not await self._wait_complete(step.index):
            state.cancelled = True
            return
        if step.is_flush_point:
            return

        shared = self._completed[step.index]
        if task.register and shared is not None:
            self.variables.set_registered(state.host, task.register, shared)
        self._record(state, TaskResult(
            skipped=True,
            msg=f"run_once: executed on {leader.name}",
            skip_reason="run_once",
            host=state.name,
            task_name=task.name,
        ))

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _handler_eligible(self, host: Host) -> bool:
        state = self._by_name.get(host.name)
        if state is None or state.unreachable or state.cancelled:
            return False
        return self.force_handlers or not state.failed

    async def _run_handlers(self, step: PlanStep, hosts: List[Host]) -> List[TaskResult]:
        if self.cancelled:
            return []
        # Resolved order, not notification order
        notified = {h.name for h in hosts}
        states = [s for s in self.states if s.name in notified]

        async def run_one(state: HostState) -> TaskResult:
            ctx = self.variables.merge(state.host, task_vars=step.task.vars)
            result = await self.executor.run(
                step, state.host, ctx, handlers=self.queue, is_handler=True,
            )
            self._record(state, result)
            return result

        if step.task.run_once and states:
            leader, followers = states[0], states[1:]
            shared = await run_one(leader)
            results = [shared]
            for state in followers:
                if step.task.register:
                    self.variables.set_registered(state.host, step.task.register, shared)
                follower = TaskResult(
                    skipped=True,
                    msg=f"run_once: executed on {leader.name}",
                    skip_reason="run_once",
                    host=state.name,
                    task_name=step.task.name,
                    is_handler=True,
                )
                self._record(state, follower)
                results.append(follower)
            return results

        return list(await asyncio.gather(*(run_one(s) for s in states)))
