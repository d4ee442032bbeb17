"""
Converge Variable Store

Scoped variable bags merged by precedence into a read-only Context.

Precedence, highest first:
    task-local (loop item, task bindings), registered results,
    host (inventory vars, facts on top), group (nearest first),
    play vars, engine defaults.
"""

import logging
from collections import ChainMap
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from converge.engine.inventory import Host, InventoryResolver
from converge.engine.results import TaskResult


logger = logging.getLogger(__name__)


class Context(Mapping):
    """
    Read-only view over an ordered chain of variable frames.

    ``child()`` pushes a new frame without copying the chain, which is how
    loop items and per-task bindings shadow outer scopes.
    """

    def __init__(self, frames: ChainMap, host: Optional[str] = None):
        self._frames = frames
        self.host = host

    def __getitem__(self, key: str) -> Any:
        return self._frames[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._frames)

    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, key: object) -> bool:
        return key in self._frames

    def lookup(self, name: str) -> Tuple[Any, bool]:
        if name in self._frames:
            return self._frames[name], True
        return None, False

    def child(self, bindings: Optional[Mapping[str, Any]] = None) -> 'Context':
        return Context(self._frames.new_child(dict(bindings or {})), host=self.host)

    def flatten(self) -> Dict[str, Any]:
        """Collapse the chain into a plain dict (highest precedence wins)."""
        return dict(self._frames)

    def __repr__(self) -> str:
        return f"Context(host={self.host!r}, frames={len(self._frames.maps)})"


class HostVars(Mapping):
    """Lazy ``hostvars`` mapping: host name -> that host's own view."""

    def __init__(self, store: 'VariableStore'):
        self._store = store

    def _names(self) -> List[str]:
        return list(self._store.resolver.inventory.hosts)

    def __getitem__(self, name: str) -> Dict[str, Any]:
        host = self._store.resolver.get_host(name)
        if host is None:
            raise KeyError(name)
        return self._store.host_view(host)

    def __iter__(self) -> Iterator[str]:
        return iter(self._names())

    def __len__(self) -> int:
        return len(self._names())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._store.resolver.get_host(name) is not None


class VariableStore:
    """Owns registered results and play vars for one play at a time."""

    def __init__(
        self,
        resolver: InventoryResolver,
        defaults: Optional[Dict[str, Any]] = None,
    ):
        self.resolver = resolver
        self.defaults: Dict[str, Any] = dict(defaults or {})
        self.play_vars: Dict[str, Any] = {}
        self._registered: Dict[str, Dict[str, Any]] = {}
        self._hostvars = HostVars(self)

    def reset(self, play_vars: Optional[Dict[str, Any]] = None) -> None:
        """Start a new play: registered results are dropped."""
        self._registered.clear()
        self.play_vars = dict(play_vars or {})

    def clear_facts(self) -> None:
        """Drop every host's fact cache (start of a run)."""
        for host in self.resolver.inventory.hosts.values():
            host.facts.clear()
        localhost = self.resolver.get_host("localhost")
        if localhost is not None:
            localhost.facts.clear()

    def merge(
        self,
        host: Host,
        play_vars: Optional[Dict[str, Any]] = None,
        task_vars: Optional[Dict[str, Any]] = None,
    ) -> Context:
        """Build the variable context for ``host``."""
        magic = {
            "hostvars": self._hostvars,
            "groups": self.resolver.group_members(),
        }
        frames = ChainMap(
            dict(task_vars or {}),
            self._registered.setdefault(host.name, {}),
            host.get_vars(),
            self.resolver.group_vars(host),
            dict(self.play_vars if play_vars is None else play_vars),
            self.defaults,
            magic,
        )
        return Context(frames, host=host.name)

    def host_view(self, host: Host) -> Dict[str, Any]:
        """A host's own variables: host, group and defaults, no play scope."""
        view = dict(self.defaults)
        view.update(self.resolver.group_vars(host))
        view.update(host.get_vars())
        return view

    def set_registered(self, host: Host, name: str, result: Any) -> None:
        if isinstance(result, TaskResult):
            result = result.to_dict()
        self._registered.setdefault(host.name, {})[name] = result
        logger.debug("Registered '%s' for %s", name, host.name)

    def set_facts(self, host: Host, facts: Mapping[str, Any]) -> None:
        if facts:
            host.facts.update(facts)
            logger.debug("Set facts for %s: %s", host.name, ", ".join(facts))

    @staticmethod
    def lookup(ctx: Context, name: str) -> Tuple[Any, bool]:
        return ctx.lookup(name)
