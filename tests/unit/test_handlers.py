"""
Tests for the handler queue.
"""

import asyncio

import pytest

from converge.engine.errors import UnknownHandler
from converge.engine.handlers import HandlerQueue
from converge.engine.plan import PlanBuilder
from converge.engine.results import TaskResult


@pytest.fixture
def plan(registry, parse_plays):
    [play] = parse_plays([{"hosts": "all", "tasks": [], "handlers": [
        {"name": "restart nginx", "stub": None, "listen": "web changed"},
        {"name": "reload cache", "stub": None, "listen": "web changed"},
        {"name": "notify ops", "stub": None},
    ]}])
    return PlanBuilder(registry).build(play)


@pytest.fixture
def queue(plan):
    return HandlerQueue(plan)


class Recorder:
    """Fake handler runner recording (handler, hosts) pairs."""

    def __init__(self):
        self.runs = []

    async def __call__(self, step, hosts):
        self.runs.append((step.name, [h.name for h in hosts]))
        return [TaskResult(host=h.name, task_name=step.name, is_handler=True) for h in hosts]


class TestNotify:
    """Test accumulating notifications."""

    @pytest.mark.asyncio
    async def test_dedup_per_host(self, queue, inventory):
        web1 = inventory.hosts["web1"]
        for _ in range(5):
            await queue.notify("notify ops", web1)
        assert queue.pending == {"notify ops": ["web1"]}

    @pytest.mark.asyncio
    async def test_hosts_in_notification_order(self, queue, inventory):
        await queue.notify("notify ops", inventory.hosts["web2"])
        await queue.notify("notify ops", inventory.hosts["web1"])
        assert queue.pending["notify ops"] == ["web2", "web1"]

    @pytest.mark.asyncio
    async def test_listen_topic_fans_out(self, queue, inventory):
        names = await queue.notify("web changed", inventory.hosts["web1"])
        assert names == ["restart nginx", "reload cache"]
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_unknown_handler(self, queue, inventory):
        with pytest.raises(UnknownHandler):
            await queue.notify("ghost", inventory.hosts["web1"])

    @pytest.mark.asyncio
    async def test_concurrent_notify(self, queue, inventory):
        hosts = list(inventory.hosts.values())
        await asyncio.gather(*(queue.notify("notify ops", h) for h in hosts for _ in range(3)))
        assert sorted(queue.pending["notify ops"]) == sorted(h.name for h in hosts)


class TestFlush:
    """Test running pending handlers."""

    @pytest.mark.asyncio
    async def test_first_notified_order(self, queue, inventory):
        await queue.notify("notify ops", inventory.hosts["web1"])
        await queue.notify("web changed", inventory.hosts["web1"])
        runner = Recorder()
        results = await queue.flush(runner)
        assert [name for name, _ in runner.runs] == ["notify ops", "restart nginx", "reload cache"]
        assert len(results) == 3
        assert not queue

    @pytest.mark.asyncio
    async def test_runs_once_for_all_notifying_hosts(self, queue, inventory):
        await queue.notify("notify ops", inventory.hosts["web1"])
        await queue.notify("notify ops", inventory.hosts["web2"])
        runner = Recorder()
        await queue.flush(runner)
        assert runner.runs == [("notify ops", ["web1", "web2"])]

    @pytest.mark.asyncio
    async def test_ineligible_hosts_are_dropped(self, queue, inventory):
        await queue.notify("notify ops", inventory.hosts["web1"])
        await queue.notify("notify ops", inventory.hosts["web2"])
        runner = Recorder()
        await queue.flush(runner, eligible=lambda h: h.name != "web1")
        assert runner.runs == [("notify ops", ["web2"])]

    @pytest.mark.asyncio
    async def test_no_eligible_hosts_skips_handler(self, queue, inventory):
        await queue.notify("notify ops", inventory.hosts["web1"])
        runner = Recorder()
        assert await queue.flush(runner, eligible=lambda h: False) == []
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_notified_during_flush(self, queue, inventory):
        web1 = inventory.hosts["web1"]
        runs = []

        async def chain(step, hosts):
            runs.append(step.name)
            if step.name == "notify ops":
                await queue.notify("web changed", web1)
            if step.name == "restart nginx":
                # Already ran in this flush: stays pending for the next one
                await queue.notify("notify ops", web1)
            return []

        await queue.notify("notify ops", web1)
        await queue.flush(chain)
        assert runs == ["notify ops", "restart nginx", "reload cache"]
        assert queue.pending == {"notify ops": ["web1"]}

    @pytest.mark.asyncio
    async def test_empty_flush(self, queue):
        assert await queue.flush(Recorder()) == []
