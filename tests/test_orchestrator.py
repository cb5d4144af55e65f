"""Tests for background components: scheduler, worker pool and sweeper loop."""

import asyncio
import datetime
import os
import pytest

# Add src to path
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from recordflow.approvals.sweeper import ApprovalSweeper
from recordflow.core.errors import CycleDetectedError, ExecutionError
from recordflow.core.models import ApprovalStatus, Event, EventType, TriggerType
from recordflow.orchestrator.scheduler import ScheduleRunner, cron_matches
from recordflow.orchestrator.workers import WorkerPool

from conftest import approval_process, role_step, workflow


# 2024-01-01 was a Monday
MONDAY_9AM = datetime.datetime(2024, 1, 1, 9, 0)
SUNDAY_9AM = datetime.datetime(2024, 1, 7, 9, 0)


class TestCronMatching:
    """Test cron expressions."""

    def test_basic_fields(self):
        assert cron_matches("0 9 * * *", MONDAY_9AM)
        assert not cron_matches("30 9 * * *", MONDAY_9AM)
        assert cron_matches("*/15 * * * *", MONDAY_9AM.replace(minute=45))
        assert not cron_matches("*/15 * * * *", MONDAY_9AM.replace(minute=10))

    def test_ranges_and_lists(self):
        assert cron_matches("0 8-17 * * *", MONDAY_9AM)
        assert cron_matches("0 9 1,15 * *", MONDAY_9AM)
        assert not cron_matches("0 9 2,15 * *", MONDAY_9AM)
        assert cron_matches("0 0-23/3 * * *", MONDAY_9AM)

    def test_day_of_week(self):
        assert cron_matches("0 9 * * 1-5", MONDAY_9AM)
        assert not cron_matches("0 9 * * 1-5", SUNDAY_9AM)
        assert cron_matches("0 9 * * 0", SUNDAY_9AM)
        assert cron_matches("0 9 * * 7", SUNDAY_9AM)

    def test_invalid_expressions(self):
        assert not cron_matches("0 9 * *", MONDAY_9AM)
        assert not cron_matches("61 9 * * *", MONDAY_9AM)
        assert not cron_matches("a b c d e", MONDAY_9AM)
        assert not cron_matches("*/0 * * * *", MONDAY_9AM)


class TestScheduleRunner:
    """Test scheduled trigger firing."""

    @pytest.mark.asyncio
    async def test_fires_once_per_minute(self, state):
        submitted = []

        async def submit(event):
            submitted.append(event)

        await state.save_definition(workflow(
            "daily", TriggerType.SCHEDULED, trigger_config={"cron": "0 9 * * *"},
        ))
        await state.save_definition(workflow(
            "weekly", TriggerType.SCHEDULED, trigger_config={"schedule": "0 9 * * 0"},
        ))
        await state.create_record("deals", {"title": "a"})
        await state.create_record("deals", {"title": "b"})
        runner = ScheduleRunner(state, submit)

        assert await runner.tick(MONDAY_9AM) == ["daily"]
        assert await runner.tick(MONDAY_9AM.replace(second=30)) == []
        assert await runner.tick(MONDAY_9AM.replace(minute=1)) == []

        assert len(submitted) == 2
        assert {e.type for e in submitted} == {EventType.SCHEDULED}
        assert {e.definition_id for e in submitted} == {"daily"}

        assert await runner.tick(MONDAY_9AM + datetime.timedelta(days=1)) == ["daily"]

    @pytest.mark.asyncio
    async def test_disabled_definition_never_fires(self, state):
        async def submit(event):
            raise AssertionError("should not submit")

        await state.save_definition(workflow(
            "daily", TriggerType.SCHEDULED, trigger_config={"cron": "0 9 * * *"}, is_enabled=False,
        ))
        assert await ScheduleRunner(state, submit).tick(MONDAY_9AM) == []

    @pytest.mark.asyncio
    async def test_scheduled_workflow_runs_through_engine(self, engine, state):
        await engine.save_definition(workflow(
            "nightly_tag", TriggerType.SCHEDULED,
            trigger_config={"cron": "0 9 * * *"},
            actions=[{"kind": "add_tag", "payload": {"tag": "reviewed"}}],
        ))
        record = await state.create_record("deals", {})

        await engine.scheduler.tick(MONDAY_9AM)

        assert (await state.get_record(record["id"]))["tags"] == ["reviewed"]

    @pytest.mark.asyncio
    async def test_restart_within_minute_runs_once(self, engine, state):
        """A fresh runner in the same minute finds the earlier runs by key."""
        await engine.save_definition(workflow(
            "nightly_tag", TriggerType.SCHEDULED,
            trigger_config={"cron": "0 9 * * *"},
            actions=[{"kind": "add_tag", "payload": {"tag": "reviewed"}}],
        ))
        record = await state.create_record("deals", {})

        await engine.scheduler.tick(MONDAY_9AM)
        restarted = ScheduleRunner(state, engine.submit_event)
        assert await restarted.tick(MONDAY_9AM.replace(second=40)) == ["nightly_tag"]

        runs = await state.list_runs(definition_id="nightly_tag")
        assert len(runs) == 1
        assert runs[0]["idempotency_key"] == f"scheduled:nightly_tag:2024-01-01T09:00:{record['id']}"

        await restarted.tick(MONDAY_9AM + datetime.timedelta(days=1))
        assert len(await state.list_runs(definition_id="nightly_tag")) == 2

    @pytest.mark.asyncio
    async def test_failing_record_does_not_stop_the_rest(self, state):
        attempted = []

        async def submit(event):
            attempted.append(event.record_id)
            if len(attempted) == 1:
                raise CycleDetectedError("loop", record_id=event.record_id)

        await state.save_definition(workflow(
            "daily", TriggerType.SCHEDULED, trigger_config={"cron": "0 9 * * *"},
        ))
        first = await state.create_record("deals", {"title": "a"}, now=100)
        second = await state.create_record("deals", {"title": "b"}, now=200)
        runner = ScheduleRunner(state, submit)

        assert await runner.tick(MONDAY_9AM) == ["daily"]
        assert attempted == [first["id"], second["id"]]

        assert await runner.tick(MONDAY_9AM) == []


class TestWorkerPool:
    """Test the supervised worker pool."""

    @pytest.mark.asyncio
    async def test_runs_jobs(self):
        pool = WorkerPool(size=2)
        results = []

        async def job(n):
            await asyncio.sleep(0)
            results.append(n)

        for n in range(5):
            await pool.submit("job", job, n)
        await pool.join()

        assert sorted(results) == [0, 1, 2, 3, 4]
        assert pool.completed == 5
        await pool.stop()
        assert not pool.running

    @pytest.mark.asyncio
    async def test_failures_reach_error_channel(self):
        reported = []

        async def on_error(failure):
            reported.append(failure)

        pool = WorkerPool(size=1, on_error=on_error)
        done = []

        async def bad():
            raise ExecutionError("downstream unavailable", fatal=True)

        async def good():
            done.append(True)

        job_id = await pool.submit("bad", bad)
        await pool.submit("good", good)
        await pool.join()

        assert done == [True]
        assert [f.job_id for f in reported] == [job_id]
        assert reported[0].error_type == "ExecutionError"
        assert reported[0].details["code"] == "execution_failed"
        assert list(pool.failures) == reported
        await pool.stop()

    @pytest.mark.asyncio
    async def test_failure_history_is_bounded(self):
        pool = WorkerPool(size=1, failure_history=2)

        async def bad():
            raise ValueError("nope")

        job_ids = [await pool.submit(f"bad-{n}", bad) for n in range(5)]
        await pool.join()

        assert [f.job_id for f in pool.failures] == job_ids[-2:]
        await pool.stop()

    @pytest.mark.asyncio
    async def test_broken_error_handler_does_not_kill_worker(self):
        async def on_error(failure):
            raise RuntimeError("handler broke")

        pool = WorkerPool(size=1, on_error=on_error)
        done = []

        async def bad():
            raise ValueError("nope")

        async def good():
            done.append(True)

        await pool.submit("bad", bad)
        await pool.submit("good", good)
        await pool.join()

        assert done == [True]
        await pool.stop()


class TestSweeperLoop:
    """Test the background sweeper task."""

    @pytest.mark.asyncio
    async def test_loop_expires_requests(self, engine, state, directory, clock):
        await engine.save_definition(approval_process("p", [role_step("manager_role", timeout_hours=1)]))
        record = await state.create_record("deals", {"owner_id": "agent_1"})
        outcome = await engine.submit_event(Event(type=EventType.CREATE, module_id="deals", record=record))
        request = outcome.approval_requests[0]

        seen = []

        async def on_outcomes(outcomes):
            seen.extend(outcomes)

        sweeper = ApprovalSweeper(engine.approvals, interval_seconds=0.01, clock=clock, on_outcomes=on_outcomes)
        clock.advance(hours=2)
        await sweeper.start()
        for _ in range(100):
            if seen:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert [o.request.id for o in seen] == [request.id]
        assert (await state.get_approval_request(request.id)).status == ApprovalStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_engine_lifecycle(self, state, engine_config):
        from recordflow.orchestrator.pipeline import AutomationEngine

        engine_config.sweeper.enabled = True
        engine_config.schedule.enabled = True
        engine = AutomationEngine(state, engine_config)

        await engine.start()
        assert engine.workers.running
        await engine.stop()
        assert not engine.workers.running
