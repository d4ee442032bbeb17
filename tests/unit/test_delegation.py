"""
Tests for delegate_to resolution and run_once representative selection.
"""

import pytest

from converge.engine.delegation import DelegationResolver
from converge.engine.errors import UndefinedVariable, UnknownPattern
from converge.engine.inventory import InventoryResolver
from converge.engine.playbook import Task


@pytest.fixture
def delegation(inventory):
    return DelegationResolver(InventoryResolver(inventory))


class TestResolveExecutionHost:
    """Where does a task run?"""

    def test_no_delegate_runs_on_target(self, delegation, inventory):
        web1 = inventory.hosts["web1"]
        task = Task(name="t", module="stub")
        assert delegation.resolve_execution_host(task, web1, {}) is web1

    def test_literal_delegate(self, delegation, inventory):
        task = Task(name="t", module="stub", delegate_to="lb1")
        host = delegation.resolve_execution_host(task, inventory.hosts["web1"], {})
        assert host is inventory.hosts["lb1"]

    def test_templated_delegate(self, delegation, inventory):
        task = Task(name="t", module="stub", delegate_to="{{ balancer }}")
        host = delegation.resolve_execution_host(task, inventory.hosts["web1"], {"balancer": "db1"})
        assert host.name == "db1"

    def test_localhost_is_always_resolvable(self, delegation, inventory):
        task = Task(name="t", module="stub", delegate_to="localhost")
        host = delegation.resolve_execution_host(task, inventory.hosts["web1"], {})
        assert host.name == "localhost"
        assert host.transport == "local"

    def test_unknown_delegate(self, delegation, inventory):
        task = Task(name="t", module="stub", delegate_to="{{ balancer }}")
        with pytest.raises(UnknownPattern):
            delegation.resolve_execution_host(task, inventory.hosts["web1"], {"balancer": "lb9"})

    def test_undefined_delegate(self, delegation, inventory):
        task = Task(name="t", module="stub", delegate_to="{{ balancer }}")
        with pytest.raises(UndefinedVariable):
            delegation.resolve_execution_host(task, inventory.hosts["web1"], {})


class TestRepresentative:
    """run_once picks the first active host."""

    def test_first_candidate(self, inventory):
        hosts = [inventory.hosts["web2"], inventory.hosts["web1"]]
        assert DelegationResolver.select_representative(hosts).name == "web2"

    def test_no_candidates(self):
        assert DelegationResolver.select_representative([]) is None

    def test_synchronized_tasks(self):
        assert DelegationResolver.is_synchronized(Task(name="t", module="stub", run_once=True))
        assert DelegationResolver.is_synchronized(Task(name="t", module="stub", delegate_to="lb1"))
        assert not DelegationResolver.is_synchronized(Task(name="t", module="stub"))
