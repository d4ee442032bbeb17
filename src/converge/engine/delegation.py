"""
Converge Delegation

Execution-host resolution for ``delegate_to`` and representative selection
for ``run_once``.
"""

import logging
from typing import Any, List, Optional

from converge.engine.errors import UnknownPattern
from converge.engine.expressions import is_template, render
from converge.engine.inventory import Host, InventoryResolver
from converge.engine.playbook import Task


logger = logging.getLogger(__name__)


class DelegationResolver:
    """Decides where a task actually runs."""

    def __init__(self, resolver: InventoryResolver):
        self.resolver = resolver

    def resolve_execution_host(self, task: Task, target: Host, ctx: Any) -> Host:
        """
        Return the host that executes ``task`` for ``target``.

        Raises:
            UnknownPattern: the (rendered) delegate is not a known host
            UndefinedVariable: an interpolated delegate references an undefined name
        """
        if not task.delegate_to:
            return target
        name = str(render(task.delegate_to, ctx)).strip()
        host = self.resolver.get_host(name)
        if host is None:
            raise UnknownPattern(name)
        if host != target:
            logger.debug("Task '%s' for %s delegated to %s", task.name, target.name, host.name)
        return host

    def validate(self, task: Task) -> None:
        """Plan-time check of a literal ``delegate_to``."""
        if task.delegate_to and not is_template(task.delegate_to):
            if not self.resolver.is_resolvable(task.delegate_to):
                raise UnknownPattern(task.delegate_to)

    @staticmethod
    def select_representative(candidates: List[Host]) -> Optional[Host]:
        """``run_once`` runs on the first active host in resolved order."""
        return candidates[0] if candidates else None

    @staticmethod
    def is_synchronized(task: Task) -> bool:
        """Tasks every active host must reach before any of them runs it."""
        return bool(task.delegate_to or task.run_once or task.is_flush_point)
