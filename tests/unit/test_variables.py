"""
Tests for variable scopes and precedence.
"""

import pytest

from converge.engine.errors import UndefinedVariable
from converge.engine.expressions import evaluate
from converge.engine.inventory import InventoryResolver
from converge.engine.results import TaskResult
from converge.engine.variables import VariableStore


@pytest.fixture
def store(inventory):
    store = VariableStore(InventoryResolver(inventory), defaults={"env": "default", "timeout": 30})
    store.reset({"env": "play", "app": "shop"})
    return store


class TestPrecedence:
    """Nearer scopes always win."""

    def test_host_beats_group_and_play(self, store, inventory):
        ctx = store.merge(inventory.hosts["web1"])
        assert ctx["env"] == "staging"

    def test_group_beats_play(self, store, inventory):
        ctx = store.merge(inventory.hosts["web2"])
        assert ctx["env"] == "prod"

    def test_all_group_beats_play(self, store, inventory):
        ctx = store.merge(inventory.hosts["lb1"])
        assert ctx["env"] == "dev"

    def test_play_beats_defaults(self, store, inventory):
        ctx = store.merge(inventory.hosts["web2"])
        assert ctx["app"] == "shop"
        assert ctx["timeout"] == 30

    def test_task_vars_beat_everything(self, store, inventory):
        ctx = store.merge(inventory.hosts["web1"], task_vars={"env": "task"})
        assert ctx["env"] == "task"

    def test_registered_beats_host(self, store, inventory):
        web1 = inventory.hosts["web1"]
        store.set_registered(web1, "env", {"changed": False})
        assert store.merge(web1)["env"] == {"changed": False}

    def test_facts_beat_inventory_host_vars(self, store, inventory):
        web1 = inventory.hosts["web1"]
        store.set_facts(web1, {"env": "fact"})
        assert store.merge(web1)["env"] == "fact"


class TestContext:
    """Test Context lookups and child frames."""

    def test_lookup_and_undefined(self, store, inventory):
        ctx = store.merge(inventory.hosts["web1"])
        assert ctx.lookup("http_port") == (80, True)
        assert ctx.lookup("missing") == (None, False)
        with pytest.raises(UndefinedVariable):
            evaluate("missing", ctx)

    def test_child_shadows_without_mutating_parent(self, store, inventory):
        ctx = store.merge(inventory.hosts["web1"])
        child = ctx.child({"item": 443, "env": "loop"})
        assert child["item"] == 443
        assert child["env"] == "loop"
        assert "item" not in ctx
        assert ctx["env"] == "staging"

    def test_magic_variables(self, store, inventory):
        ctx = store.merge(inventory.hosts["web1"])
        assert ctx["inventory_hostname"] == "web1"
        assert ctx["groups"]["canary"] == ["web4", "web5"]
        assert ctx["hostvars"]["lb1"]["role"] == "balancer"
        assert ctx["hostvars"]["web2"]["env"] == "prod"

    def test_hostvars_excludes_play_scope(self, store, inventory):
        ctx = store.merge(inventory.hosts["web1"])
        assert "app" not in ctx["hostvars"]["web2"]


class TestRegistered:
    """Test registered results."""

    def test_task_result_is_stored_as_dict(self, store, inventory):
        web1 = inventory.hosts["web1"]
        store.set_registered(web1, "out", TaskResult(changed=True, rc=0, stdout="a\nb"))
        out = store.merge(web1)["out"]
        assert out["changed"] is True
        assert out["stdout_lines"] == ["a", "b"]

    def test_registered_is_per_host(self, store, inventory):
        store.set_registered(inventory.hosts["web1"], "out", {"rc": 0})
        assert "out" not in store.merge(inventory.hosts["web2"])

    def test_live_view_sees_later_registrations(self, store, inventory):
        web1 = inventory.hosts["web1"]
        ctx = store.merge(web1)
        store.set_registered(web1, "late", {"rc": 1})
        assert ctx["late"] == {"rc": 1}

    def test_reset_drops_registered_but_keeps_facts(self, store, inventory):
        web1 = inventory.hosts["web1"]
        store.set_registered(web1, "out", {"rc": 0})
        store.set_facts(web1, {"deployed": True})
        store.reset({})
        ctx = store.merge(web1)
        assert "out" not in ctx
        assert ctx["deployed"] is True

    def test_clear_facts(self, store, inventory):
        web1 = inventory.hosts["web1"]
        store.set_facts(web1, {"deployed": True})
        store.clear_facts()
        assert "deployed" not in store.merge(web1)
