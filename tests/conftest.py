"""
Shared fixtures: stub modules, mock connections and a sample inventory.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from converge.config import EngineConfig
from converge.connections.base import Connection, RunResult
from converge.engine.errors import UnreachableError
from converge.engine.inventory import Host, load_inventory
from converge.engine.playbook import PlaybookParser
from converge.engine.runner import Engine
from converge.modules.base import Module, ModuleRegistry, ModuleResult


SAMPLE_INVENTORY = {
    "all": {
        "vars": {"env": "dev", "region": "eu"},
        "hosts": {
            "lb1": {"ansible_host": "10.0.0.10", "role": "balancer"},
        },
        "children": {
            "webservers": {
                "vars": {"http_port": 80, "region": "us"},
                "children": {
                    "prod": {
                        "vars": {"env": "prod"},
                        "hosts": {
                            "web1": {"env": "staging"},
                            "web2": None,
                            "web3": None,
                        },
                    },
                    "canary": {
                        "hosts": {"web4": None, "web5": None},
                    },
                },
            },
            "dbservers": {
                "hosts": {
                    "db1": {"ansible_port": 2222, "ansible_user": "admin"},
                },
            },
        },
    },
}


class Call:
    """One recorded module invocation."""

    def __init__(self, module: str, target: str, host: str, args: Dict[str, Any]):
        self.module = module
        self.target = target
        self.host = host
        self.args = args

    def __repr__(self) -> str:
        return f"Call({self.module!r}, target={self.target!r}, host={self.host!r})"


class StubModule(Module):
    """
    Records every invocation.

    ``fail`` fails the invocation, ``changed`` reports a change, ``facts``
    is returned as facts.
    """

    name = "stub"
    optional_args = {"fail": False, "changed": False}
    calls: List[Call] = []

    async def run(self) -> ModuleResult:
        type(self).calls.append(Call(
            self.name, self.invocation.target.name, self.invocation.host.name, dict(self.args),
        ))
        if self.get_arg("fail"):
            return ModuleResult(failed=True, msg=f"stub failed on {self.args}")
        return ModuleResult(
            changed=bool(self.get_arg("changed")),
            msg="stub ok",
            results={"echo": dict(self.args)},
            facts=dict(self.args.get("facts") or {}),
        )


class EnsureModule(Module):
    """Reports changed only the first time a (task, args, host) key is seen."""

    name = "ensure"
    calls: List[Call] = []
    applied: set = set()

    async def run(self) -> ModuleResult:
        type(self).calls.append(Call(
            self.name, self.invocation.target.name, self.invocation.host.name, dict(self.args),
        ))
        key = (
            self.invocation.task_name,
            tuple(sorted((k, repr(v)) for k, v in self.args.items())),
            self.invocation.host.name,
        )
        if key in type(self).applied:
            return ModuleResult(msg="already in desired state")
        type(self).applied.add(key)
        return ModuleResult(changed=True, msg="applied")


class SleepModule(Module):
    """Sleeps while tracking how many invocations overlap."""

    name = "sleep"
    optional_args = {"seconds": 0.01}
    calls: List[Call] = []
    running = 0
    peak = 0

    async def run(self) -> ModuleResult:
        cls = type(self)
        cls.calls.append(Call(
            self.name, self.invocation.target.name, self.invocation.host.name, dict(self.args),
        ))
        cls.running += 1
        cls.peak = max(cls.peak, cls.running)
        try:
            await asyncio.sleep(float(self.get_arg("seconds")))
        finally:
            cls.running -= 1
        return ModuleResult(msg="slept")


class RemoteModule(Module):
    """Needs a transport session; runs ``cmd`` through it."""

    name = "remote"
    optional_args = {"cmd": "true"}
    requires_connection = True
    calls: List[Call] = []

    async def run(self) -> ModuleResult:
        type(self).calls.append(Call(
            self.name, self.invocation.target.name, self.invocation.host.name, dict(self.args),
        ))
        result = await self.connection.run(str(self.get_arg("cmd")))
        return ModuleResult(
            changed=True,
            rc=result.rc,
            stdout=result.stdout,
            failed=not result.success,
        )


STUB_MODULES = (StubModule, EnsureModule, SleepModule, RemoteModule)


class MockConnection(Connection):
    """In-memory session: canned command results and a set of existing paths."""

    def __init__(self, host: Host, files=(), responses: Optional[Dict[str, RunResult]] = None):
        super().__init__(host)
        self.files = set(files)
        self.responses = responses or {}
        self.commands: List[str] = []
        self.closed = False

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        self.closed = True

    async def run(self, command, shell=True, timeout=None, cwd=None, environment=None) -> RunResult:
        self.commands.append(command)
        return self.responses.get(command, RunResult(rc=0, stdout=f"ran {command}", stderr=""))

    async def stat(self, path: str) -> Optional[dict]:
        if path in self.files:
            return {'exists': True, 'isdir': False}
        return None


class MockConnectionFactory:
    """Connection factory for Engine/ConnectionPool; some hosts can be unreachable."""

    def __init__(self) -> None:
        self.unreachable: set = set()
        self.files: set = set()
        self.responses: Dict[str, RunResult] = {}
        self.connections: Dict[str, MockConnection] = {}
        self.attempts: List[str] = []

    async def __call__(self, host: Host) -> MockConnection:
        self.attempts.append(host.name)
        if host.name in self.unreachable:
            raise UnreachableError(host.name, "Connection refused", host.transport)
        conn = MockConnection(host, self.files, self.responses)
        self.connections[host.name] = conn
        return conn


@pytest.fixture(autouse=True)
def reset_stub_modules():
    """Stub modules keep class-level records; start every test clean."""
    for cls in STUB_MODULES:
        cls.calls = []
    EnsureModule.applied = set()
    SleepModule.running = 0
    SleepModule.peak = 0
    yield


@pytest.fixture
def registry() -> ModuleRegistry:
    """Builtin modules plus the stubs."""
    return ModuleRegistry.default().extend(STUB_MODULES)


@pytest.fixture
def connections() -> MockConnectionFactory:
    return MockConnectionFactory()


@pytest.fixture
def inventory_data() -> Dict[str, Any]:
    return SAMPLE_INVENTORY


@pytest.fixture
def inventory(inventory_data):
    return load_inventory(inventory_data)


@pytest.fixture
def parse_plays():
    """Build Play objects from playbook-shaped data."""
    def parse(data):
        return PlaybookParser().parse_data(data)
    return parse


@pytest.fixture
def make_engine(inventory, registry, connections):
    """Engine over the sample inventory with stub modules and mock transport."""
    def make(**config) -> Engine:
        return Engine(
            inventory,
            registry=registry,
            config=EngineConfig(**config),
            connection_factory=connections,
        )
    return make


@pytest.fixture
def run_plays(make_engine, parse_plays):
    """Parse and run plays; returns the RunReport."""
    async def run(data, tags=None, skip_tags=None, limit=None, **config):
        engine = make_engine(**config)
        return await engine.run_playbook(parse_plays(data), tags=tags, skip_tags=skip_tags, limit=limit)
    return run
