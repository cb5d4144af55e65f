"""Polling runner for scheduled triggers."""

import asyncio
import datetime
from typing import Awaitable, Callable, Optional

import structlog

from ..core.errors import EngineError
from ..core.models import DefinitionKind, Event, EventType, TriggerType
from ..core.state import StateManager


logger = structlog.get_logger()

EventSink = Callable[[Event], Awaitable[object]]

# (low, high) per cron field: minute, hour, day of month, month, day of week
CRON_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))


def _field_matches(expr: str, value: int, low: int, high: int) -> bool:
    for item in expr.split(","):
        step = 1
        if "/" in item:
            item, step_text = item.split("/", 1)
            step = int(step_text)
            if step < 1:
                raise ValueError(f"Invalid step: {step_text}")

        if item == "*":
            start, end = low, high
        elif "-" in item:
            start_text, end_text = item.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = int(item)
            end = high if step > 1 else start

        if not (low <= start <= high and low <= end <= high):
            raise ValueError(f"Value out of range: {item}")
        if start <= value <= end and (value - start) % step == 0:
            return True
    return False


def cron_matches(schedule: str, dt: datetime.datetime) -> bool:
    """Check a 5-field cron expression against a datetime.

    Supports ``*``, ``*/n``, ``a``, ``a-b``, ``a-b/n`` and comma lists.
    Day of week uses cron numbering (0 or 7 is Sunday). Invalid
    expressions never match.
    """
    parts = schedule.split()
    if len(parts) != 5:
        return False

    # Convert Python weekday (0=Monday) to cron (0=Sunday)
    cron_weekday = (dt.weekday() + 1) % 7
    values = (dt.minute, dt.hour, dt.day, dt.month, cron_weekday)

    try:
        for index, (expr, value, (low, high)) in enumerate(zip(parts, values, CRON_RANGES)):
            if index == 4:
                if not (_field_matches(expr, value, low, high)
                        or (value == 0 and _field_matches(expr, 7, low, high))):
                    return False
            elif not _field_matches(expr, value, low, high):
                return False
        return True
    except ValueError:
        return False


class ScheduleRunner:
    """
    Fires ``scheduled`` definitions whose cron expression matches the
    current minute, at most once per definition per minute.

    Each firing submits one scheduled event per record of the module. The
    events carry ``scheduled:<definition>:<minute>:<record>`` idempotency
    keys, so a runner restarted within the same minute does not run a
    definition twice for a record.
    """

    def __init__(
        self,
        state: StateManager,
        submit: EventSink,
        check_interval_seconds: float = 30.0,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ):
        self.state = state
        self.submit = submit
        self.check_interval_seconds = check_interval_seconds
        self.clock = clock
        self._last_fired: dict[str, str] = {}  # definition_id -> minute key
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def tick(self, now: Optional[datetime.datetime] = None) -> list[str]:
        """Run one check; returns the ids of definitions that fired."""
        now = now or self.clock()
        minute_key = now.strftime("%Y-%m-%dT%H:%M")
        fired = []

        definitions = (
            await self.state.list_definitions(None, DefinitionKind.WORKFLOW, enabled_only=True)
            + await self.state.list_definitions(None, DefinitionKind.APPROVAL_PROCESS, enabled_only=True)
        )
        for definition in definitions:
            if definition.trigger_type != TriggerType.SCHEDULED:
                continue
            schedule = definition.trigger_config.get("cron") or definition.trigger_config.get("schedule")
            if not schedule or not cron_matches(schedule, now):
                continue
            if self._last_fired.get(definition.id) == minute_key:
                continue

            records = await self.state.list_records(definition.module_id)
            logger.info(
                "scheduled_definition_triggered",
                definition_id=definition.id,
                schedule=schedule,
                records=len(records),
            )
            for record in records:
                event = Event(
                    type=EventType.SCHEDULED,
                    module_id=definition.module_id,
                    record=record,
                    definition_id=definition.id,
                    idempotency_key=f"scheduled:{definition.id}:{minute_key}:{record['id']}",
                )
                try:
                    await self.submit(event)
                except EngineError as e:
                    logger.error(
                        "scheduled_event_failed",
                        definition_id=definition.id,
                        record_id=record["id"],
                        error_code=e.code,
                        error=e.message,
                    )

            self._last_fired[definition.id] = minute_key
            fired.append(definition.id)

        return fired

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._schedule_runner_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _schedule_runner_loop(self) -> None:
        """Background task that checks and runs scheduled definitions."""
        logger.info("schedule_runner_started")

        while self._running:
            try:
                await asyncio.sleep(self.check_interval_seconds)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("schedule_runner_error")

        logger.info("schedule_runner_stopped")
