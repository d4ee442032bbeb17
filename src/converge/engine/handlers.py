"""
Converge Handler Queue

Accumulates handler notifications for one play and flushes them.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from converge.engine.errors import UnknownHandler
from converge.engine.inventory import Host
from converge.engine.plan import Plan, PlanStep
from converge.engine.results import TaskResult


logger = logging.getLogger(__name__)

HandlerRunner = Callable[[PlanStep, List[Host]], Awaitable[List[TaskResult]]]


class HandlerQueue:
    """
    Pending handlers in first-notified order, each with the ordered hosts
    that notified it.

    Notifying is idempotent per (handler, host). A flush runs every pending
    handler once for its notifying hosts; handlers notified during the flush
    join it unless they already ran in it, in which case they stay pending
    for the next flush.
    """

    def __init__(self, plan: Plan):
        self.plan = plan
        self._pending: Dict[str, List[Host]] = {}
        self._lock = asyncio.Lock()

    async def notify(self, name: str, host: Host) -> List[str]:
        """
        Queue the handlers behind ``name`` (handler name or listen topic).

        Returns the handler names it resolved to.
        """
        names = self.plan.handler_names_for(name)
        if not names:
            raise UnknownHandler(name)
        async with self._lock:
            for handler_name in names:
                hosts = self._pending.setdefault(handler_name, [])
                if host not in hosts:
                    hosts.append(host)
                    logger.debug("Handler '%s' notified by %s", handler_name, host.name)
        return names

    @property
    def pending(self) -> Dict[str, List[str]]:
        """Pending handler names mapped to notifying host names."""
        return {name: [h.name for h in hosts] for name, hosts in self._pending.items()}

    def __bool__(self) -> bool:
        return bool(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    async def flush(
        self,
        run_handler: HandlerRunner,
        eligible: Optional[Callable[[Host], bool]] = None,
    ) -> List[TaskResult]:
        """
        Run pending handlers.

        Args:
            run_handler: Runs one handler for a list of hosts
            eligible: Filters notifying hosts (failed hosts are dropped
                unless the play forces handlers)

        Returns:
            Results of every handler run, in execution order
        """
        results: List[TaskResult] = []
        ran: Set[str] = set()
        while True:
            async with self._lock:
                name = next((n for n in self._pending if n not in ran), None)
                if name is None:
                    break
                hosts = self._pending.pop(name)
            ran.add(name)

            if eligible is not None:
                skipped = [h.name for h in hosts if not eligible(h)]
                if skipped:
                    logger.info("Handler '%s' skipped for failed hosts: %s", name, ", ".join(skipped))
                hosts = [h for h in hosts if eligible(h)]
            if not hosts:
                continue

            logger.debug("Running handler '%s' on %d host(s)", name, len(hosts))
            results.extend(await run_handler(self.plan.handlers[name], hosts))
        return results

    def reset(self) -> None:
        self._pending.clear()

    def __repr__(self) -> str:
        return f"HandlerQueue(pending={list(self._pending)})"
