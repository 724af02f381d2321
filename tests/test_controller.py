"""Tests for the view state controller: loading, toggles, selection, filters."""

import asyncio

import pytest

from ruleflow.controller import LoadStatus, ViewStateController
from ruleflow.errors import NotFound, TransportFailure
from ruleflow.models import ALL_GROUP_IDS, FilterName, Rule, RuleScript, ViewFilters


def _rule(rule_id, phase, order=100, **fields):
    return Rule(id=rule_id, name=f"Rule {rule_id}", phase=phase, order=order, **fields)


INCIDENT_RULES = [
    _rule("b1", "before", 100),
    _rule("b2", "before", 200, active=False),
    _rule("a1", "after", 100, inherited_from_ancestor="task"),
    _rule("d1", "display", 100),
]


class FakeSource:
    def __init__(self, rules=None, scripts=None, errors=None):
        self.rules = rules if rules is not None else {"incident": INCIDENT_RULES}
        self.scripts = scripts or {}
        self.errors = errors or {}
        self.calls: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}

    async def fetch_rules(self, subject):
        self.calls.append(subject)
        gate = self.gates.get(subject)
        if gate is not None:
            await gate.wait()
        if subject in self.errors:
            raise self.errors[subject]
        if subject not in self.rules:
            raise NotFound(f"Unknown subject: {subject}")
        return list(self.rules[subject])

    async def fetch_script(self, rule_id):
        if rule_id not in self.scripts:
            raise NotFound(f"Record not found: {rule_id}")
        return RuleScript(rule_id=rule_id, script_body=self.scripts[rule_id])


class FakePreferences:
    def __init__(self, fail=False):
        self.recent: list[str] = []
        self.fail = fail

    async def get_recent_subjects(self):
        return list(self.recent)

    async def save_subject_preference(self, name):
        if self.fail:
            raise RuntimeError("preference store down")
        self.recent = [name] + [s for s in self.recent if s != name]

    async def delete_subject_preference(self, name):
        self.recent = [s for s in self.recent if s != name]


def _loaded(source=None, preferences=None, subject="incident", **kwargs):
    controller = ViewStateController(source or FakeSource(), preferences, **kwargs)
    outcome = asyncio.run(controller.load_subject(subject))
    return controller, outcome


class TestLoadSubject:
    def test_success_collapses_all_groups(self):
        controller, outcome = _loaded()
        assert outcome.status == LoadStatus.LOADED
        assert outcome.rule_count == 4
        assert controller.state.subject == "incident"
        assert controller.state.collapsed_group_ids == ALL_GROUP_IDS
        assert controller.state.selected_rule_id is None
        assert all(g.collapsed for g in controller.diagram.groups)
        assert controller.diagram.rule_nodes == []

    def test_blank_name_does_not_fetch(self):
        source = FakeSource()
        controller = ViewStateController(source)
        outcome = asyncio.run(controller.load_subject("   "))
        assert outcome.status == LoadStatus.INPUT_MISSING
        assert controller.message
        assert source.calls == []
        assert controller.diagram is None

    def test_empty_result_keeps_diagram(self):
        source = FakeSource(rules={"incident": INCIDENT_RULES, "empty": []})
        controller, _ = _loaded(source)
        before = controller.diagram

        outcome = asyncio.run(controller.load_subject("empty"))
        assert outcome.status == LoadStatus.EMPTY
        assert "No rules found" in controller.message
        assert controller.diagram is before
        assert controller.state.subject == "incident"

    def test_not_found_keeps_diagram(self):
        controller, _ = _loaded()
        before = controller.diagram
        outcome = asyncio.run(controller.load_subject("nonexistent"))
        assert outcome.status == LoadStatus.FAILED
        assert controller.message.startswith("Failed to load rules")
        assert controller.diagram is before
        assert not controller.loading

    def test_transport_failure_is_reported(self):
        source = FakeSource(errors={"incident": TransportFailure("connection refused")})
        controller = ViewStateController(source)
        outcome = asyncio.run(controller.load_subject("incident"))
        assert outcome.status == LoadStatus.FAILED
        assert "connection refused" in outcome.message

    def test_dismiss_message(self):
        controller, _ = _loaded()
        asyncio.run(controller.load_subject("nonexistent"))
        controller.dismiss_message()
        assert controller.message is None

    def test_new_subject_resets_collapse_and_selection(self):
        source = FakeSource(rules={"incident": INCIDENT_RULES, "problem": [_rule("p1", "before")]})
        controller, _ = _loaded(source)
        controller.toggle_group("group-before")
        controller.select_rule("b1")

        asyncio.run(controller.load_subject("problem"))
        assert controller.state.subject == "problem"
        assert controller.state.collapsed_group_ids == ALL_GROUP_IDS
        assert controller.state.selected_rule_id is None

    def test_new_subject_resets_filters(self):
        source = FakeSource(rules={"incident": INCIDENT_RULES, "problem": [_rule("p1", "before", active=False)]})
        controller, _ = _loaded(source)
        controller.set_filter("hide_inactive", True)
        asyncio.run(controller.load_subject("problem"))
        assert controller.state.filters == ViewFilters()
        assert [r.id for r in controller.visible_rules()] == ["p1"]

    def test_failed_load_keeps_filters(self):
        controller, _ = _loaded()
        controller.set_filter("hide_inactive", True)
        asyncio.run(controller.load_subject("nonexistent"))
        assert controller.state.filters.hide_inactive


class TestStaleResponses:
    def test_slow_earlier_response_is_discarded(self):
        async def scenario():
            source = FakeSource(rules={
                "slow": [_rule("s1", "before")],
                "fast": [_rule("f1", "after")],
            })
            source.gates["slow"] = asyncio.Event()
            controller = ViewStateController(source)

            slow = asyncio.create_task(controller.load_subject("slow"))
            await asyncio.sleep(0)
            fast_outcome = await controller.load_subject("fast")
            source.gates["slow"].set()
            slow_outcome = await slow
            return controller, fast_outcome, slow_outcome

        controller, fast, slow = asyncio.run(scenario())
        assert fast.status == LoadStatus.LOADED
        assert slow.status == LoadStatus.STALE
        assert controller.state.subject == "fast"
        assert [r.id for r in controller.state.rules] == ["f1"]

    def test_stale_failure_does_not_overwrite_message(self):
        async def scenario():
            source = FakeSource(
                rules={"fast": [_rule("f1", "after")]},
                errors={"slow": TransportFailure("timeout")},
            )
            source.gates["slow"] = asyncio.Event()
            controller = ViewStateController(source)

            slow = asyncio.create_task(controller.load_subject("slow"))
            await asyncio.sleep(0)
            await controller.load_subject("fast")
            source.gates["slow"].set()
            return controller, await slow

        controller, slow = asyncio.run(scenario())
        assert slow.status == LoadStatus.STALE
        assert controller.message is None


class TestPreferences:
    def test_subject_saved_in_background(self):
        prefs = FakePreferences()

        async def scenario():
            controller = ViewStateController(FakeSource(), prefs)
            await controller.load_subject("incident")
            await controller.flush_background()
            return controller

        controller = asyncio.run(scenario())
        assert prefs.recent == ["incident"]
        assert controller.recent_subjects == ["incident"]

    def test_preference_failure_is_swallowed(self):
        prefs = FakePreferences(fail=True)

        async def scenario():
            controller = ViewStateController(FakeSource(), prefs)
            outcome = await controller.load_subject("incident")
            await controller.flush_background()
            return controller, outcome

        controller, outcome = asyncio.run(scenario())
        assert outcome.status == LoadStatus.LOADED
        assert controller.recent_subjects == []
        assert controller.message is None

    def test_store_detached_before_save_runs(self):
        prefs = FakePreferences()

        async def scenario():
            controller = ViewStateController(FakeSource(), prefs)
            await controller.load_subject("incident")
            controller.preferences = None
            await controller.flush_background()
            return controller

        controller = asyncio.run(scenario())
        assert prefs.recent == []
        assert controller.recent_subjects == []

    def test_forget_subject(self):
        prefs = FakePreferences()
        prefs.recent = ["incident", "problem"]
        controller = ViewStateController(FakeSource(), prefs)
        asyncio.run(controller.forget_subject("incident"))
        assert controller.recent_subjects == ["problem"]


class TestToggleGroup:
    def test_toggle_expands_and_collapses(self):
        controller, _ = _loaded()
        controller.toggle_group("group-before")
        assert "group-before" not in controller.state.collapsed_group_ids
        assert {n.rule.id for n in controller.diagram.rule_nodes} == {"b1", "b2"}

        controller.toggle_group("group-before")
        assert controller.diagram.rule_nodes == []

    def test_unknown_group_is_noop(self):
        controller, _ = _loaded()
        version = controller.state.version
        controller.toggle_group("group-nope")
        controller.toggle_group("group-async")  # no async rules, so no async group
        assert controller.state.version == version

    def test_toggle_before_load_is_noop(self):
        controller = ViewStateController(FakeSource())
        controller.toggle_group("group-before")
        assert controller.state.collapsed_group_ids == frozenset()

    def test_expand_all(self):
        controller, _ = _loaded()
        controller.expand_all()
        assert len(controller.diagram.rule_nodes) == 4


class TestSelectionAndFilters:
    def test_select_marks_rule_node(self):
        controller, _ = _loaded()
        controller.expand_all()
        controller.select_rule("b1")
        selected = [n.rule.id for n in controller.diagram.rule_nodes if n.selected]
        assert selected == ["b1"]
        assert controller.selected_rule.id == "b1"

    def test_enabling_filter_clears_hidden_selection(self):
        controller, _ = _loaded()
        controller.select_rule("b2")  # inactive
        controller.set_filter(FilterName.HIDE_INACTIVE, True)
        assert controller.state.selected_rule_id is None

    def test_filter_keeps_visible_selection(self):
        controller, _ = _loaded()
        controller.select_rule("b1")
        controller.set_filter("hide_inherited", True)
        assert controller.state.selected_rule_id == "b1"

    def test_hide_inherited(self):
        controller, _ = _loaded()
        controller.set_filter("hide_inherited", True)
        assert {r.id for r in controller.visible_rules()} == {"b1", "b2", "d1"}
        assert controller.diagram.node("group-after").rule_count == 0

    def test_hide_active_and_inactive_renders_empty(self):
        controller, _ = _loaded()
        controller.expand_all()
        controller.set_filter("hide_active", True)
        controller.set_filter("hide_inactive", True)
        assert controller.visible_rules() == []
        assert controller.diagram.rule_nodes == []
        assert all(g.rule_count == 0 for g in controller.diagram.groups)
        assert not controller.diagram.has_content

    def test_disabling_filter_restores_rules(self):
        controller, _ = _loaded()
        controller.set_filter("hide_active", True)
        controller.set_filter("hide_active", False)
        assert len(controller.visible_rules()) == 4

    def test_unknown_filter_rejected(self):
        controller, _ = _loaded()
        with pytest.raises(ValueError):
            controller.set_filter("hide_everything", True)


class TestRecompute:
    def test_on_render_called_for_each_change(self):
        rendered = []
        controller, _ = _loaded(on_render=rendered.append)
        controller.toggle_group("group-before")
        controller.select_rule("b1")
        assert len(rendered) == 3
        assert rendered[-1] is controller.diagram

    def test_version_increments(self):
        controller, _ = _loaded()
        v = controller.state.version
        controller.select_rule("b1")
        assert controller.state.version == v + 1

    def test_snapshot_is_immutable(self):
        controller, _ = _loaded()
        snapshot = controller.state
        controller.toggle_group("group-before")
        assert snapshot.collapsed_group_ids == ALL_GROUP_IDS


class TestOpenDetail:
    def test_fetches_script_lazily(self):
        source = FakeSource(scripts={"b1": "current.state = 2;"})
        controller, _ = _loaded(source)
        controller.select_rule("b1")
        detail = asyncio.run(controller.open_detail())
        assert detail.script_body == "current.state = 2;"
        assert detail.script_error is None

    def test_missing_script_reported(self):
        controller, _ = _loaded()
        controller.select_rule("b1")
        detail = asyncio.run(controller.open_detail())
        assert detail.script_body is None
        assert "b1" in detail.script_error

    def test_no_selection(self):
        controller, _ = _loaded()
        assert asyncio.run(controller.open_detail()) is None
