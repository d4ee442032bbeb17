"""
Tests for the builtin modules.
"""

from collections import ChainMap

import pytest

from converge.connections.base import RunResult
from converge.engine.errors import ModuleFailure, UnknownModule
from converge.engine.inventory import Host
from converge.engine.variables import Context
from converge.modules.base import Invocation, ModuleRegistry, normalize_module_name

from conftest import MockConnection


@pytest.fixture
def host():
    return Host("web1")


@pytest.fixture
def make_module(host):
    """Instantiate a builtin module against a small context."""
    registry = ModuleRegistry.default()

    def make(name, args, variables=None, connection=None):
        context = Context(ChainMap(dict(variables or {})), host=host.name)
        invocation = Invocation(target=host, host=host, context=context, connection=connection)
        return registry.resolve(name)(args, invocation)
    return make


class TestRegistry:
    """Test module lookup."""

    def test_builtins_registered(self):
        registry = ModuleRegistry.default()
        for name in ("assert", "command", "debug", "fail", "meta", "ping", "set_fact", "shell"):
            assert name in registry

    @pytest.mark.parametrize("name", ["debug", "ansible.builtin.debug", "converge.builtin.debug"])
    def test_fqcn(self, name):
        assert normalize_module_name(name) == "debug"
        assert name in ModuleRegistry.default()

    def test_unknown(self):
        with pytest.raises(UnknownModule):
            ModuleRegistry.default().resolve("copy", task="copy files")

    def test_registries_are_independent(self):
        first = ModuleRegistry.default()
        first.register(type(first.resolve("debug")), name="say")
        assert "say" in first
        assert "say" not in ModuleRegistry.default()


class TestDebug:
    """Test the debug module."""

    @pytest.mark.asyncio
    async def test_default_message(self, make_module):
        result = await make_module("debug", {}).run()
        assert result.msg == "Hello world!"
        assert not result.changed

    @pytest.mark.asyncio
    async def test_var(self, make_module):
        module = make_module("debug", {"var": "result.rc"}, {"result": {"rc": 3}})
        result = await module.run()
        assert result.msg == "result.rc: 3"
        assert result.results["result.rc"] == 3

    @pytest.mark.asyncio
    async def test_undefined_var(self, make_module):
        result = await make_module("debug", {"var": "missing"}).run()
        assert "NOT DEFINED" in result.msg
        assert not result.failed

    def test_msg_and_var_exclusive(self, make_module):
        assert make_module("debug", {"msg": "x", "var": "y"}).validate_args()


class TestAssert:
    """Test the assert module."""

    @pytest.mark.asyncio
    async def test_all_pass(self, make_module):
        module = make_module("assert", {"that": ["port == 80", "env != 'prod'"]}, {"port": 80, "env": "dev"})
        result = await module.run()
        assert not result.failed
        assert result.msg == "All assertions passed"

    @pytest.mark.asyncio
    async def test_first_failure_reported(self, make_module):
        module = make_module("assert", {"that": ["port == 80", "port > 100"], "fail_msg": "bad port"}, {"port": 80})
        result = await module.run()
        assert result.failed
        assert result.msg == "bad port"
        assert result.results["assertion"] == "port > 100"

    @pytest.mark.asyncio
    async def test_invalid_expression(self, make_module):
        result = await make_module("assert", {"that": "port ==="}, {"port": 80}).run()
        assert result.failed
        assert "Error evaluating" in result.msg

    def test_that_required(self, make_module):
        assert make_module("assert", {}).validate_args() == "Missing required argument: that"


class TestFacts:
    """Test set_fact and fail."""

    @pytest.mark.asyncio
    async def test_set_fact(self, make_module):
        result = await make_module("set_fact", {"version": "1.2", "cacheable": True}).run()
        assert result.facts == {"version": "1.2"}
        assert result.results["ansible_facts"] == {"version": "1.2"}

    def test_set_fact_needs_a_fact(self, make_module):
        assert make_module("set_fact", {"cacheable": True}).validate_args()

    @pytest.mark.asyncio
    async def test_fail(self, make_module):
        result = await make_module("fail", {"msg": "stop here"}).run()
        assert result.failed
        assert result.msg == "stop here"


class TestCommand:
    """Test command, shell and ping against a canned connection."""

    @pytest.mark.asyncio
    async def test_command(self, make_module, host):
        conn = MockConnection(host)
        result = await make_module("command", {"_raw_params": "uptime"}, connection=conn).run()
        assert conn.commands == ["uptime"]
        assert result.changed
        assert result.stdout == "ran uptime"
        assert result.rc == 0

    @pytest.mark.asyncio
    async def test_argv_is_quoted(self, make_module, host):
        conn = MockConnection(host)
        await make_module("command", {"argv": ["echo", "a b"]}, connection=conn).run()
        assert conn.commands == ["echo 'a b'"]

    @pytest.mark.asyncio
    async def test_nonzero_rc_fails(self, make_module, host):
        conn = MockConnection(host, responses={"false": RunResult(rc=1, stdout="", stderr="nope")})
        result = await make_module("shell", {"cmd": "false"}, connection=conn).run()
        assert result.failed
        assert result.rc == 1
        assert result.stderr == "nope"

    def test_command_required(self, make_module):
        assert make_module("command", {"chdir": "/tmp"}).validate_args()

    @pytest.mark.asyncio
    async def test_ping(self, make_module, host):
        conn = MockConnection(host)
        result = await make_module("ping", {}, connection=conn).run()
        assert result.msg == "pong"
        assert result.results == {"ping": "pong"}

    @pytest.mark.asyncio
    async def test_ping_crash_raises(self, make_module, host):
        with pytest.raises(ModuleFailure) as exc:
            await make_module("ping", {"data": "crash"}, connection=MockConnection(host)).run()
        assert exc.value.module == "ping"
        assert exc.value.host == "web1"


class TestMeta:
    """Test meta action validation."""

    def test_flush_handlers(self, make_module):
        assert make_module("meta", {"_raw_params": "flush_handlers"}).validate_args() is None

    def test_unknown_action(self, make_module):
        assert "Unknown meta action" in make_module("meta", {"_raw_params": "end_play"}).validate_args()
