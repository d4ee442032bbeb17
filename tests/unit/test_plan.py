"""
Tests for plan building and tag filtering.
"""

import pytest

from converge.engine.delegation import DelegationResolver
from converge.engine.errors import UnknownHandler, UnknownModule, UnknownPattern
from converge.engine.inventory import InventoryResolver
from converge.engine.plan import PlanBuilder, matches_tags


class TestMatchesTags:
    """Tag filter semantics."""

    def test_no_filters_runs_everything_but_never(self):
        assert matches_tags(set())
        assert matches_tags({"web"})
        assert matches_tags({"always"})
        assert not matches_tags({"never"})
        assert not matches_tags({"never", "debug"})

    def test_never_runs_only_when_its_tag_is_requested(self):
        assert matches_tags({"never", "debug"}, only={"debug"})
        assert not matches_tags({"never", "debug"}, only={"web"})
        assert not matches_tags({"never", "debug"}, only={"all"})

    def test_only(self):
        assert matches_tags({"web", "deploy"}, only={"deploy"})
        assert not matches_tags({"web"}, only={"deploy"})
        assert not matches_tags(set(), only={"deploy"})

    def test_always_ignores_only(self):
        assert matches_tags({"always"}, only={"deploy"})

    def test_skip(self):
        assert not matches_tags({"web"}, skip={"web"})
        assert matches_tags({"db"}, skip={"web"})

    def test_always_is_never_skipped(self):
        assert matches_tags({"always"}, skip={"web", "all"})
        assert matches_tags({"always"}, skip={"always"})
        assert matches_tags({"always", "web"}, skip={"web"})

    def test_tagged_and_untagged(self):
        assert matches_tags({"x"}, only={"tagged"})
        assert not matches_tags(set(), only={"tagged"})
        assert matches_tags(set(), only={"untagged"})
        assert not matches_tags(set(), skip={"untagged"})
        assert not matches_tags({"x"}, skip={"tagged"})


class TestPlanBuilder:
    """Test building plans from plays."""

    @pytest.fixture
    def builder(self, registry, inventory):
        return PlanBuilder(registry, DelegationResolver(InventoryResolver(inventory)))

    def test_steps_filtered_and_indexed(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"name": "a", "stub": None, "tags": "web"},
            {"name": "b", "stub": None, "tags": "db"},
            {"name": "c", "stub": None, "tags": ["debug", "never"]},
            {"name": "d", "stub": None, "tags": "always"},
        ]}])
        plan = builder.build(play, tags=["web"])
        assert [s.name for s in plan.steps] == ["a", "d"]
        assert [s.index for s in plan.steps] == [0, 1]

    def test_play_tags_are_inherited(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tags": "deploy", "tasks": [
            {"name": "a", "stub": None},
        ]}])
        plan = builder.build(play, tags=["deploy"])
        assert plan.steps[0].tags == frozenset({"deploy"})

    def test_fqcn_module_names_resolve(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"ansible.builtin.debug": {"msg": "hi"}},
        ]}])
        plan = builder.build(play)
        assert plan.steps[0].module.name == "debug"

    def test_unknown_module_even_when_filtered(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"name": "typo", "copyy": None, "tags": "never"},
        ]}])
        with pytest.raises(UnknownModule, match="copyy"):
            builder.build(play)

    def test_unknown_handler(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"name": "a", "stub": None, "notify": "restart nginx"},
        ], "handlers": [
            {"name": "restart apache", "stub": None},
        ]}])
        with pytest.raises(UnknownHandler) as exc:
            builder.build(play)
        assert exc.value.name == "restart nginx"

    def test_notify_by_listen_topic(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"name": "a", "stub": None, "notify": "web changed"},
        ], "handlers": [
            {"name": "restart nginx", "stub": None, "listen": "web changed"},
            {"name": "reload cache", "stub": None, "listen": ["web changed"]},
        ]}])
        plan = builder.build(play)
        assert plan.handler_names_for("web changed") == ["restart nginx", "reload cache"]
        assert plan.handler_names_for("restart nginx") == ["restart nginx"]

    def test_handler_notifying_unknown_handler(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [], "handlers": [
            {"name": "h", "stub": None, "notify": "ghost"},
        ]}])
        with pytest.raises(UnknownHandler):
            builder.build(play)

    def test_unknown_literal_delegate(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"name": "a", "stub": None, "delegate_to": "lb9"},
        ]}])
        with pytest.raises(UnknownPattern):
            builder.build(play)

    def test_templated_delegate_checked_at_runtime(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"name": "a", "stub": None, "delegate_to": "{{ balancer }}"},
        ]}])
        assert builder.build(play).steps[0].synchronized

    def test_synchronized_steps(self, builder, parse_plays):
        [play] = parse_plays([{"hosts": "all", "tasks": [
            {"name": "plain", "stub": None},
            {"name": "once", "stub": None, "run_once": True},
            {"name": "delegated", "stub": None, "delegate_to": "localhost"},
            {"meta": "flush_handlers"},
        ]}])
        plan = builder.build(play)
        assert [s.synchronized for s in plan.steps] == [False, True, True, True]
        assert plan.steps[3].is_flush_point
