"""
Converge Inventory

Host/Group graph, host pattern resolution, and a YAML inventory source.

Group inheritance is a tree (cycles rejected when the inventory is
finalized). Each host gets a precomputed ancestor list, nearest group first,
so group variable merging never walks the graph at lookup time.
"""

import fnmatch
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import yaml

from converge.engine.errors import (
    InventoryCycleError,
    InventoryError,
    ParseError,
    UnknownPattern,
)


logger = logging.getLogger(__name__)

ALL_GROUP = "all"
LOCALHOST = "localhost"

# Pattern term separators: "web:&prod:!db" or "web,db"
_TERM_SPLIT = re.compile(r"[,:]")
_GLOB_CHARS = set("*?[")

# Inventory variables that describe how to reach a host, mapped to
# connection attribute names.
CONNECTION_VARS = {
    "ansible_host": "address",
    "ansible_port": "port",
    "ansible_user": "user",
    "ansible_connection": "transport",
    "ansible_password": "password",
    "ansible_ssh_private_key_file": "private_key",
    "ansible_ssh_timeout": "timeout",
    "ansible_ssh_host_key_checking": "host_key_checking",
}


class Host:
    """Represents a single host in the inventory."""

    def __init__(
        self,
        name: str,
        variables: Optional[Dict[str, Any]] = None,
        connection: Optional[Dict[str, Any]] = None,
    ):
        self._name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self.connection: Dict[str, Any] = dict(connection) if connection else {}
        # Filled by modules during a run (set_fact and friends)
        self.facts: Dict[str, Any] = {}
        self._groups: List[str] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def address(self) -> str:
        """The address to connect to (defaults to the host name)."""
        return str(self.connection.get("address", self._name))

    @property
    def port(self) -> int:
        return int(self.connection.get("port", 22))

    @property
    def user(self) -> Optional[str]:
        return self.connection.get("user")

    @property
    def transport(self) -> str:
        """Connection type (local, ssh)."""
        default = "local" if self._name in (LOCALHOST, "127.0.0.1") else "ssh"
        return str(self.connection.get("transport", default))

    @property
    def groups(self) -> List[str]:
        """Names of the groups this host is directly a member of."""
        return list(self._groups)

    def add_group(self, group_name: str) -> None:
        if group_name not in self._groups:
            self._groups.append(group_name)

    def get_vars(self) -> Dict[str, Any]:
        """Host-scope variables: inventory vars, facts on top, magic names."""
        result = dict(self.vars)
        result.update(self.facts)
        result["inventory_hostname"] = self._name
        result["inventory_hostname_short"] = self._name.split(".")[0]
        result["group_names"] = sorted(g for g in self._groups if g != ALL_GROUP)
        return result

    def __repr__(self) -> str:
        return f"Host({self._name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self._name == other._name

    def __hash__(self) -> int:
        return hash(self._name)


class Group:
    """Represents a group of hosts."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._hosts: List[str] = []
        self._children: List[str] = []
        self._parents: List[str] = []

    @property
    def hosts(self) -> List[str]:
        """Names of hosts directly in this group."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        return list(self._parents)

    def add_host(self, host_name: str) -> None:
        if host_name not in self._hosts:
            self._hosts.append(host_name)

    def add_child(self, group_name: str) -> None:
        if group_name not in self._children:
            self._children.append(group_name)

    def add_parent(self, group_name: str) -> None:
        if group_name not in self._parents:
            self._parents.append(group_name)

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class Inventory:
    """
    The Host/Group graph.

    Hosts and groups keep their declaration order, which is the order hosts
    are resolved in and the tie-breaker between groups at the same distance
    from a host.
    """

    def __init__(self) -> None:
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {ALL_GROUP: Group(ALL_GROUP)}
        self._ancestors: Dict[str, List[str]] = {}
        self._finalized = False

    def add_group(
        self,
        name: str,
        variables: Optional[Dict[str, Any]] = None,
        parent: Optional[str] = None,
    ) -> Group:
        """Create (or extend) a group, optionally as a child of ``parent``."""
        group = self.groups.get(name)
        if group is None:
            group = Group(name)
            self.groups[name] = group
        if variables:
            group.vars.update(variables)
        if parent:
            self.add_child(parent, name)
        self._finalized = False
        return group

    def add_child(self, parent: str, child: str) -> None:
        parent_group = self.add_group(parent)
        child_group = self.add_group(child)
        parent_group.add_child(child)
        child_group.add_parent(parent)
        self._finalized = False

    def add_host(
        self,
        name: str,
        groups: Iterable[str] = (),
        variables: Optional[Dict[str, Any]] = None,
        connection: Optional[Dict[str, Any]] = None,
    ) -> Host:
        """Create (or extend) a host and add it to ``groups``."""
        host = self.hosts.get(name)
        if host is None:
            host = Host(name)
            self.hosts[name] = host
        if variables:
            host.vars.update(variables)
        if connection:
            host.connection.update(connection)
        for group_name in groups:
            self.add_group(group_name).add_host(name)
            host.add_group(group_name)
        self.groups[ALL_GROUP].add_host(name)
        host.add_group(ALL_GROUP)
        self._finalized = False
        return host

    def finalize(self) -> 'Inventory':
        """Reject inheritance cycles and precompute host ancestor lists."""
        self._check_cycles()
        self._ancestors = {name: self._compute_ancestors(host) for name, host in self.hosts.items()}
        self._finalized = True
        logger.debug("Inventory finalized: %d hosts, %d groups", len(self.hosts), len(self.groups))
        return self

    @property
    def finalized(self) -> bool:
        return self._finalized

    def ancestors(self, host: Host) -> List[str]:
        """Group names for ``host``, nearest first, ``all`` last."""
        if not self._finalized:
            self.finalize()
        if host.name not in self._ancestors:
            return [ALL_GROUP]
        return list(self._ancestors[host.name])

    def group_hosts(self, group_name: str) -> List[Host]:
        """All hosts in a group and its descendants, in declaration order."""
        members: Set[str] = set()
        pending = [group_name]
        seen: Set[str] = set()
        while pending:
            name = pending.pop()
            if name in seen or name not in self.groups:
                continue
            seen.add(name)
            group = self.groups[name]
            members.update(group.hosts)
            pending.extend(group.children)
        return [host for name, host in self.hosts.items() if name in members]

    def _check_cycles(self) -> None:
        visiting: List[str] = []
        done: Set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                start = visiting.index(name)
                raise InventoryCycleError(visiting[start:] + [name])
            visiting.append(name)
            for child in self.groups[name].children:
                visit(child)
            visiting.pop()
            done.add(name)

        for name in self.groups:
            visit(name)

    def _compute_ancestors(self, host: Host) -> List[str]:
        order = {name: index for index, name in enumerate(self.groups)}
        result: List[str] = []
        seen: Set[str] = {ALL_GROUP}
        level = sorted((g for g in host.groups if g != ALL_GROUP), key=order.__getitem__)
        while level:
            next_level: List[str] = []
            for name in level:
                if name in seen:
                    continue
                seen.add(name)
                result.append(name)
                next_level.extend(self.groups[name].parents)
            level = sorted(
                {g for g in next_level if g not in seen},
                key=order.__getitem__,
            )
        result.append(ALL_GROUP)
        return result


class InventoryResolver:
    """
    Host pattern resolution and group lookups over a finalized Inventory.

    Supported pattern terms:
    - "all" / "*" - every host
    - "name" - a host or a group (including child groups)
    - "web*" - shell-style glob over host and group names
    - "a,b" / "a:b" - union
    - "a:&b" - intersection
    - "a:!b" - exclusion
    Terms are applied left to right.
    """

    def __init__(self, inventory: Inventory):
        self.inventory = inventory
        if not inventory.finalized:
            inventory.finalize()
        self._implicit_localhost: Optional[Host] = None

    def resolve(self, pattern: str) -> List[Host]:
        """Return the hosts matching ``pattern`` in resolution order."""
        terms = [t.strip() for t in _TERM_SPLIT.split(pattern or ALL_GROUP)]
        terms = [t for t in terms if t]
        if not terms:
            return []

        selected: List[Host] = []
        for position, term in enumerate(terms):
            if term.startswith("!"):
                if position == 0:
                    selected = list(self.inventory.hosts.values())
                excluded = set(self._resolve_term(pattern, term[1:]))
                selected = [h for h in selected if h not in excluded]
            elif term.startswith("&"):
                kept = set(self._resolve_term(pattern, term[1:]))
                selected = [h for h in selected if h in kept]
            else:
                for host in self._resolve_term(pattern, term):
                    if host not in selected:
                        selected.append(host)
        return selected

    def _resolve_term(self, pattern: str, term: str) -> List[Host]:
        term = term.strip()
        if term in (ALL_GROUP, "*"):
            return list(self.inventory.hosts.values())

        if _GLOB_CHARS & set(term):
            matched: List[Host] = []
            for group_name in self.inventory.groups:
                if fnmatch.fnmatchcase(group_name, term):
                    for host in self.inventory.group_hosts(group_name):
                        if host not in matched:
                            matched.append(host)
            for name, host in self.inventory.hosts.items():
                if fnmatch.fnmatchcase(name, term) and host not in matched:
                    matched.append(host)
            return matched

        if term in self.inventory.groups:
            return self.inventory.group_hosts(term)
        if term in self.inventory.hosts:
            return [self.inventory.hosts[term]]
        if term == LOCALHOST:
            return [self.get_host(LOCALHOST)]
        raise UnknownPattern(pattern, term)

    def get_host(self, name: str) -> Optional[Host]:
        """Look up a host by name; ``localhost`` always resolves."""
        host = self.inventory.hosts.get(name)
        if host is not None:
            return host
        if name == LOCALHOST:
            if self._implicit_localhost is None:
                self._implicit_localhost = Host(LOCALHOST, connection={"transport": "local"})
                self._implicit_localhost.add_group(ALL_GROUP)
            return self._implicit_localhost
        return None

    def is_resolvable(self, name: str) -> bool:
        return self.get_host(name) is not None

    def groups_of(self, host: Host) -> List[Group]:
        """Ancestor groups of ``host``, nearest first, ``all`` last."""
        return [self.inventory.groups[name] for name in self.inventory.ancestors(host)]

    def group_vars(self, host: Host) -> Dict[str, Any]:
        """Merged group variables; nearer groups override farther ones."""
        merged: Dict[str, Any] = {}
        for group in reversed(self.groups_of(host)):
            merged.update(group.vars)
        return merged

    def group_members(self) -> Dict[str, List[str]]:
        """Host names per group, used for the ``groups`` variable."""
        return {
            name: [h.name for h in self.inventory.group_hosts(name)]
            for name in self.inventory.groups
        }


class InventoryLoader:
    """
    Build an Inventory from YAML data in the Ansible layout::

        all:
          vars: {...}
          hosts:
            web1: {ansible_host: 10.0.0.1, env: staging}
          children:
            prod:
              hosts: {web1: }
              vars: {env: prod}
    """

    def load(self, source: Union[str, Path]) -> Inventory:
        path = Path(source)
        if not path.exists():
            raise InventoryError(f"Inventory path does not exist: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(path))
        try:
            return self.from_dict(data or {})
        except InventoryError as e:
            if e.file_path is None:
                e.file_path = str(path)
            raise

    def from_dict(self, data: Dict[str, Any]) -> Inventory:
        if not isinstance(data, dict):
            raise InventoryError(f"Inventory must be a mapping, got {type(data).__name__}")
        inventory = Inventory()
        for group_name, group_data in data.items():
            self._load_group(inventory, str(group_name), group_data or {}, parent=None)
        return inventory.finalize()

    def _load_group(
        self,
        inventory: Inventory,
        name: str,
        data: Dict[str, Any],
        parent: Optional[str],
    ) -> None:
        if not isinstance(data, dict):
            raise InventoryError(f"Group '{name}' must be a mapping")
        if parent and parent != name:
            inventory.add_child(parent, name)
        group = inventory.add_group(name, variables=data.get("vars") or {})

        hosts_data = data.get("hosts") or {}
        if not isinstance(hosts_data, dict):
            raise InventoryError(f"'hosts' of group '{name}' must be a mapping")
        for host_name, host_vars in hosts_data.items():
            variables, connection = self.split_connection_vars(host_vars or {})
            groups = [] if name == ALL_GROUP else [name]
            inventory.add_host(str(host_name), groups, variables, connection)

        children = data.get("children") or {}
        if not isinstance(children, dict):
            raise InventoryError(f"'children' of group '{name}' must be a mapping")
        for child_name, child_data in children.items():
            self._load_group(inventory, str(child_name), child_data or {}, parent=group.name)

    @staticmethod
    def split_connection_vars(host_vars: Dict[str, Any]) -> "tuple[Dict[str, Any], Dict[str, Any]]":
        """Separate connection attributes from ordinary host variables."""
        variables: Dict[str, Any] = {}
        connection: Dict[str, Any] = {}
        for key, value in host_vars.items():
            if key in CONNECTION_VARS:
                connection[CONNECTION_VARS[key]] = value
            else:
                variables[key] = value
        return variables, connection


def load_inventory(source: Union[str, Path, Dict[str, Any]]) -> Inventory:
    """Load an inventory from a YAML file path or an already-parsed mapping."""
    loader = InventoryLoader()
    if isinstance(source, dict):
        return loader.from_dict(source)
    return loader.load(source)
