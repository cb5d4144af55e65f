"""Workflow runner and recursion guard."""

from typing import Optional, Sequence

import structlog

from ..core.errors import CycleDetectedError
from ..core.models import AutomationDefinition, Event, ExecutionMode
from ..core.state import StateManager
from .actions import ActionContext, ActionExecutor, ExecutionReport


logger = structlog.get_logger()


class RecursionGuard:
    """
    Bounds chains of action-driven events.

    Every event produced by an action carries its parent's depth plus one.
    Once a record/trigger chain reaches ``max_depth`` further events are
    refused with CycleDetectedError.
    """

    def __init__(self, max_depth: int = 5):
        self.max_depth = max_depth

    def check(self, event: Event) -> None:
        if event.depth >= self.max_depth:
            logger.error(
                "cycle_detected",
                record_id=event.record_id,
                event_type=event.type.value,
                depth=event.depth,
                max_depth=self.max_depth,
            )
            raise CycleDetectedError(
                f"Event chain on record {event.record_id} exceeded depth {self.max_depth}",
                record_id=event.record_id,
                trigger=event.type.value,
                depth=event.depth,
            )


class WorkflowRunner:
    """
    Runs matched workflows for one event.

    Workflows run one at a time in match order; each one sees the record as
    left by the previous one. A failed workflow stops the rest.
    """

    def __init__(self, executor: ActionExecutor, state: Optional[StateManager] = None):
        self.executor = executor
        self.state = state

    async def run(
        self,
        event: Event,
        matches: Sequence[AutomationDefinition],
        mode: ExecutionMode = ExecutionMode.LIVE,
    ) -> list[ExecutionReport]:
        reports = []
        for position, definition in enumerate(matches):
            report = await self.execute_definition(definition, event.record, event=event, mode=mode)
            reports.append(report)

            if report.failed:
                logger.warning(
                    "workflow_chain_stopped",
                    definition_id=definition.id,
                    event_id=event.event_id,
                    skipped=[d.id for d in matches[position + 1:]],
                )
                break
        return reports

    async def execute_definition(
        self,
        definition: AutomationDefinition,
        record: dict,
        event: Optional[Event] = None,
        mode: ExecutionMode = ExecutionMode.LIVE,
        source: str = "workflow",
        actor_id: Optional[str] = None,
    ) -> ExecutionReport:
        """Run one definition's action list against ``record``."""
        if self.state is not None and mode == ExecutionMode.LIVE and record.get("id"):
            record = await self.state.get_record(record["id"]) or record

        context = ActionContext(
            record=record,
            event=event,
            definition_id=definition.id,
            source=source,
            actor_id=actor_id or (event.actor_id if event else None),
            mode=mode,
            idempotency_key=event.run_key(definition.id) if event else None,
        )
        report = await self.executor.execute(definition.actions, context, mode)
        logger.info(
            "workflow_executed",
            definition_id=definition.id,
            record_id=report.record_id,
            status=report.status.value,
            mode=mode.value,
        )
        return report
