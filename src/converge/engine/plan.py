"""
Converge Plan Builder

Turns a Play into an ordered, tag-filtered list of steps with every module
resolved and every notification validated up front.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Type

from converge.engine.delegation import DelegationResolver
from converge.engine.errors import UnknownHandler
from converge.engine.playbook import Play, Task
from converge.modules.base import Module, ModuleRegistry


logger = logging.getLogger(__name__)

ALWAYS = 'always'
NEVER = 'never'


def matches_tags(
    tags: Iterable[str],
    only: Iterable[str] = (),
    skip: Iterable[str] = (),
) -> bool:
    """
    Decide whether a task with ``tags`` runs under the given filters.

    Special names:
    - ``always``: runs regardless of either filter
    - ``never``: runs only when one of its tags is requested explicitly
    - ``all`` / ``tagged`` / ``untagged`` in either filter
    """
    tags = set(tags)
    only = set(only)
    skip = set(skip)

    if skip:
        shielded = ALWAYS in tags
        if not shielded and (
            tags & skip
            or 'all' in skip
            or ('tagged' in skip and tags)
            or ('untagged' in skip and not tags)
        ):
            return False

    if NEVER in tags:
        return bool(tags & only)
    if ALWAYS in tags or not only or 'all' in only:
        return True
    if 'tagged' in only and tags:
        return True
    if 'untagged' in only and not tags:
        return True
    return bool(tags & only)


@dataclass
class PlanStep:
    """A task at its position in the plan, with its module resolved."""

    index: int
    task: Task
    module: Type[Module]
    tags: FrozenSet[str] = frozenset()

    @property
    def name(self) -> str:
        return self.task.name

    @property
    def is_flush_point(self) -> bool:
        return self.task.is_flush_point

    @property
    def synchronized(self) -> bool:
        return DelegationResolver.is_synchronized(self.task)


@dataclass
class Plan:
    """Executable form of one play."""

    play: Play
    steps: List[PlanStep] = field(default_factory=list)
    handlers: Dict[str, PlanStep] = field(default_factory=dict)
    # listen topic -> handler names, in declaration order
    listeners: Dict[str, List[str]] = field(default_factory=dict)

    def handler_names_for(self, name: str) -> List[str]:
        """Handler names triggered by notifying ``name``."""
        names = []
        if name in self.handlers:
            names.append(name)
        for handler_name in self.listeners.get(name, []):
            if handler_name not in names:
                names.append(handler_name)
        return names

    def __len__(self) -> int:
        return len(self.steps)


class PlanBuilder:
    """
    Builds Plans.

    All configuration errors (unknown module, unknown handler, unknown
    literal delegate) are raised here, before any host is touched.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        delegation: Optional[DelegationResolver] = None,
    ):
        self.registry = registry
        self.delegation = delegation

    def build(
        self,
        play: Play,
        tags: Iterable[str] = (),
        skip_tags: Iterable[str] = (),
    ) -> Plan:
        tags = frozenset(tags)
        skip_tags = frozenset(skip_tags)
        plan = Plan(play=play)

        for index, handler in enumerate(play.handlers):
            module = self._resolve(handler)
            plan.handlers[handler.name] = PlanStep(index, handler, module, handler.tags | play.tags)
            for topic in handler.listen:
                plan.listeners.setdefault(topic, []).append(handler.name)

        for task in play.tasks:
            module = self._resolve(task)
            self._check_notify(plan, task)
            effective = task.tags | play.tags
            if not matches_tags(effective, tags, skip_tags):
                logger.debug("Task '%s' excluded by tag filter", task.name)
                continue
            plan.steps.append(PlanStep(len(plan.steps), task, module, effective))

        for step in plan.handlers.values():
            self._check_notify(plan, step.task)

        logger.debug(
            "Plan for play '%s': %d of %d tasks, %d handlers",
            play.name, len(plan.steps), len(play.tasks), len(plan.handlers),
        )
        return plan

    def _resolve(self, task: Task) -> Type[Module]:
        module = self.registry.resolve(task.module, task.name)
        if self.delegation is not None:
            self.delegation.validate(task)
        return module

    @staticmethod
    def _check_notify(plan: Plan, task: Task) -> None:
        for name in task.notify:
            if not plan.handler_names_for(name):
                raise UnknownHandler(name, task.name)
