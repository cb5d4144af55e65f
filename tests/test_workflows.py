"""Tests for the event pipeline: workflow runs, recursion guard and previews."""

import os
import pytest

# Add src to path
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from recordflow.core.errors import CycleDetectedError, NotFoundError
from recordflow.core.models import (
    ActionKind,
    Event,
    EventType,
    ExecutionMode,
    RunStatus,
    TriggerType,
)
from recordflow.orchestrator.pipeline import AutomationEngine
from recordflow.rules.engine import RecursionGuard

from conftest import RecordingHandler, workflow


def _notify(tag: str) -> dict:
    return {"kind": "notify", "payload": {"tag": tag, "stage": "{{record.stage}}"}}


class TestWorkflowRuns:
    """Test matched workflows against lifecycle events."""

    @pytest.mark.asyncio
    async def test_runs_in_priority_order(self, state, engine_config):
        notify = RecordingHandler(ActionKind.NOTIFY)
        engine = AutomationEngine(state, engine_config, handlers=[notify])

        await engine.save_definition(workflow("third", priority=5, actions=[_notify("third")]))
        await engine.save_definition(workflow("first", priority=0, actions=[_notify("first")]))
        await engine.save_definition(workflow("second", priority=1, actions=[_notify("second")]))

        record = await state.create_record("deals", {"stage": "open"})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        assert [p["tag"] for p, _ in notify.calls] == ["first", "second", "third"]
        assert [r.definition_id for r in outcome.reports] == ["first", "second", "third"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_later_workflow_sees_earlier_changes(self, state, engine_config):
        notify = RecordingHandler(ActionKind.NOTIFY)
        engine = AutomationEngine(state, engine_config, handlers=[notify])

        await engine.save_definition(workflow(
            "qualify", priority=0,
            actions=[{"kind": "update_field", "payload": {"field": "stage", "value": "qualified"}}],
        ))
        await engine.save_definition(workflow("announce", priority=1, actions=[_notify("announce")]))

        record = await state.create_record("deals", {"stage": "open"})
        await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        payload, _ = notify.calls[0]
        assert payload["stage"] == "qualified"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_failed_workflow_stops_later_ones(self, state, engine_config):
        webhook = RecordingHandler(ActionKind.WEBHOOK, fail="fatal")
        notify = RecordingHandler(ActionKind.NOTIFY)
        engine = AutomationEngine(state, engine_config, handlers=[webhook, notify])

        await engine.save_definition(workflow(
            "broken", priority=0,
            actions=[{"kind": "webhook", "payload": {"url": "http://x"}}, _notify("after_webhook")],
        ))
        await engine.save_definition(workflow("later", priority=1, actions=[_notify("later")]))

        record = await state.create_record("deals", {})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        assert [r.status for r in outcome.reports] == [RunStatus.FAILED]
        assert notify.calls == []

        runs = await state.list_runs(definition_id="broken")
        assert runs[0]["status"] == "failed"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_recoverable_failure_keeps_chain(self, state, engine_config):
        webhook = RecordingHandler(ActionKind.WEBHOOK, fail="recoverable")
        notify = RecordingHandler(ActionKind.NOTIFY)
        engine = AutomationEngine(state, engine_config, handlers=[webhook, notify])

        await engine.save_definition(workflow(
            "flaky", priority=0,
            actions=[{"kind": "webhook", "payload": {"url": "http://x"}}],
        ))
        await engine.save_definition(workflow("later", priority=1, actions=[_notify("later")]))

        record = await state.create_record("deals", {})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        assert [r.status for r in outcome.reports] == [RunStatus.PARTIAL, RunStatus.SUCCESS]
        assert len(notify.calls) == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_derived_events_trigger_other_modules(self, engine, state):
        """A record created by an action fires that module's workflows."""
        await engine.save_definition(workflow(
            "spawn_task",
            actions=[{"kind": "create_record", "payload": {"module_id": "tasks", "fields": {"title": "Call"}}}],
        ))
        await engine.save_definition(workflow(
            "tag_task", module_id="tasks",
            actions=[{"kind": "add_tag", "payload": {"tag": "auto"}}],
        ))

        record = await state.create_record("deals", {})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        tasks = await state.list_records("tasks")
        assert len(tasks) == 1
        assert tasks[0]["tags"] == ["auto"]
        assert outcome.events_processed >= 2

    @pytest.mark.asyncio
    async def test_delete_event(self, state, engine_config):
        notify = RecordingHandler(ActionKind.NOTIFY)
        engine = AutomationEngine(state, engine_config, handlers=[notify])
        await engine.save_definition(workflow("on_delete", TriggerType.ON_DELETE, actions=[_notify("gone")]))

        snapshot = {"id": "deleted-1", "module_id": "deals", "stage": "lost", "data": {}}
        await engine.submit_event(Event(type=EventType.DELETE, module_id="deals", record=snapshot))

        payload, context = notify.calls[0]
        assert payload["stage"] == "lost"
        assert context.record_id == "deleted-1"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_no_match_runs_nothing(self, engine, state):
        await engine.save_definition(workflow(
            "big_only",
            conditions={"field": "amount", "operator": "gt", "value": 1000},
            actions=[{"kind": "add_tag", "payload": {"tag": "big"}}],
        ))

        record = await state.create_record("deals", {"amount": 10})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        assert outcome.reports == []
        assert (await state.get_record(record["id"]))["tags"] == []


class TestRecursionGuard:
    """Test cycle detection for self-triggering workflows."""

    def test_guard_depth(self):
        guard = RecursionGuard(max_depth=2)
        guard.check(Event(type=EventType.UPDATE, module_id="deals", record={"id": "r1"}, depth=0))
        guard.check(Event(type=EventType.UPDATE, module_id="deals", record={"id": "r1"}, depth=1))

        with pytest.raises(CycleDetectedError) as exc_info:
            guard.check(Event(type=EventType.UPDATE, module_id="deals", record={"id": "r1"}, depth=2))
        assert exc_info.value.context["record_id"] == "r1"

    def test_guard_keeps_no_per_record_state(self):
        guard = RecursionGuard(max_depth=3)
        for n in range(1000):
            guard.check(Event(type=EventType.UPDATE, module_id="deals", record={"id": f"r{n}"}, depth=1))
        assert vars(guard) == {"max_depth": 3}

    @pytest.mark.asyncio
    async def test_self_retriggering_field_change(self, state, engine_config):
        """A workflow rewriting its own watched field runs twice, then the chain is cut."""
        engine_config.recursion.max_depth = 2
        engine = AutomationEngine(state, engine_config)
        await engine.save_definition(workflow(
            "escalate",
            TriggerType.FIELD_CHANGE,
            trigger_config={"field": "priority"},
            actions=[{"kind": "update_field", "payload": {"field": "priority", "value": "urgent"}}],
        ))

        record = await state.create_record("deals", {"priority": "high"})
        with pytest.raises(CycleDetectedError) as exc_info:
            await engine.submit_event(Event(
                type=EventType.UPDATE,
                module_id="deals",
                record=record,
                changed_fields=["priority"],
            ))

        assert exc_info.value.context["depth"] == 2
        runs = await state.list_runs(definition_id="escalate")
        assert len(runs) == 2
        await engine.stop()

    @pytest.mark.asyncio
    async def test_self_calling_sub_workflow(self, engine, state):
        await engine.save_definition(workflow(
            "loop", TriggerType.MANUAL,
            actions=[{"kind": "run_sub_workflow", "payload": {"workflow_id": "loop"}}],
        ))
        record = await state.create_record("deals", {})

        with pytest.raises(CycleDetectedError):
            await engine.submit_event(Event(
                type=EventType.MANUAL, module_id="deals", record=record, definition_id="loop",
            ))


class TestSubWorkflows:
    """Test run_sub_workflow."""

    @pytest.mark.asyncio
    async def test_runs_child(self, engine, state):
        await engine.save_definition(workflow(
            "parent",
            actions=[{"kind": "run_sub_workflow", "payload": {"workflow_id": "child"}}],
        ))
        await engine.save_definition(workflow(
            "child", TriggerType.MANUAL,
            actions=[{"kind": "update_field", "payload": {"field": "stage", "value": "routed"}}],
        ))

        record = await state.create_record("deals", {"stage": "new"})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        assert (await state.get_record(record["id"]))["stage"] == "routed"
        assert outcome.reports[0].outputs["sub_workflow_status"] == "success"

    @pytest.mark.asyncio
    async def test_disabled_child_is_skipped(self, engine, state):
        await engine.save_definition(workflow(
            "parent",
            actions=[{"kind": "run_sub_workflow", "payload": {"workflow_id": "child"}}],
        ))
        await engine.save_definition(workflow(
            "child", TriggerType.MANUAL, is_enabled=False,
            actions=[{"kind": "update_field", "payload": {"field": "stage", "value": "routed"}}],
        ))

        record = await state.create_record("deals", {"stage": "new"})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        assert outcome.reports[0].status == RunStatus.SUCCESS
        assert outcome.reports[0].outputs["sub_workflow_status"] == "skipped"
        assert (await state.get_record(record["id"]))["stage"] == "new"

    @pytest.mark.asyncio
    async def test_missing_child_fails_parent(self, engine, state):
        await engine.save_definition(workflow(
            "parent",
            actions=[{"kind": "run_sub_workflow", "payload": {"workflow_id": "nope"}}],
        ))
        record = await state.create_record("deals", {})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))

        assert outcome.reports[0].status == RunStatus.FAILED


class TestPreview:
    """Test dry-run previews."""

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, engine, state, directory):
        await engine.save_definition(workflow(
            "close",
            TriggerType.MANUAL,
            actions=[
                {"kind": "update_field", "payload": {"field": "stage", "value": "won"}},
                {"kind": "create_record", "payload": {"module_id": "tasks", "fields": {"title": "Invoice"}}},
                {"kind": "send_email", "payload": {"to": "owner", "subject": "Won {{record.title}}"}},
                {"kind": "notify", "payload": {"recipients": "owner", "title": "Won"}},
            ],
        ))
        record = await state.create_record("deals", {"title": "Acme", "stage": "open", "owner_id": "agent_1"})

        counts_before = await state.table_counts()
        first = await engine.preview_workflow("close", record["id"])
        second = await engine.preview_workflow("close", record["id"])

        assert first.status == RunStatus.DRY_RUN
        assert first.mode == ExecutionMode.DRY_RUN
        assert first == second
        assert len(first.outcomes) == 4
        assert "Won Acme" in first.outcomes[2].description

        assert await state.table_counts() == counts_before
        assert await state.get_record(record["id"]) == record

    @pytest.mark.asyncio
    async def test_preview_conditions_not_met(self, engine, state):
        await engine.save_definition(workflow(
            "big_only", TriggerType.MANUAL,
            conditions={"field": "amount", "operator": "gt", "value": 1000},
            actions=[{"kind": "add_tag", "payload": {"tag": "big"}}],
        ))
        record = await state.create_record("deals", {"amount": 10})

        report = await engine.preview_workflow("big_only", record["id"])
        assert report.status == RunStatus.SKIPPED
        assert report.error == "conditions_not_met"
        assert report.outcomes == []

    @pytest.mark.asyncio
    async def test_preview_unknown_ids(self, engine, state):
        record = await state.create_record("deals", {})
        with pytest.raises(NotFoundError):
            await engine.preview_workflow("missing", record["id"])

        await engine.save_definition(workflow("wf", TriggerType.MANUAL))
        with pytest.raises(NotFoundError):
            await engine.preview_workflow("wf", "missing")
