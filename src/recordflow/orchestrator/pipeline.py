"""
Event pipeline and public engine facade.

Flow for one external event:
1. Webform submissions: merge hidden fields, count, dedupe, then hand the
   resulting lifecycle events to the worker pool
2. Recursion guard on every event, external or derived
3. Trigger matching for workflows, then sequential workflow runs
4. Trigger matching for approval processes, then request creation
5. Events emitted by actions are queued and processed the same way
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

import httpx
import structlog

from ..approvals.engine import ApprovalOutcome, ApprovalProcessEngine, Clock
from ..approvals.resolver import ApproverResolver, DirectoryApproverResolver
from ..approvals.sweeper import ApprovalSweeper
from ..core.config import DefinitionSet, EngineConfig, validate_definition
from ..core.errors import (
    AuthorizationError,
    ConflictError,
    ExecutionError,
    NotFoundError,
    ValidationError,
)
from ..core.models import (
    Actor,
    ApprovalProcessDefinition,
    ApprovalRequest,
    ApprovalStepInstance,
    AutomationDefinition,
    Decision,
    DefinitionKind,
    Event,
    EventType,
    ExecutionMode,
    Result,
    RunStatus,
    WebformDefinition,
)
from ..core.state import StateManager
from ..rules.actions import ActionContext, ActionExecutor, ActionHandler, ExecutionReport
from ..rules.dedupe import DedupeResolver
from ..rules.engine import RecursionGuard, WorkflowRunner
from ..rules.evaluator import ConditionEvaluator
from ..rules.handlers import build_default_registry
from ..rules.macros import MacroExecutor
from ..rules.triggers import TriggerMatcher
from .scheduler import ScheduleRunner
from .workers import JobFailure, WorkerPool


logger = structlog.get_logger()

CALLER_ERRORS = (ValidationError, AuthorizationError, NotFoundError, ConflictError)


@dataclass
class EventOutcome:
    """What happened while processing one submitted event."""
    event_id: str
    reports: list[ExecutionReport] = field(default_factory=list)
    approval_requests: list[ApprovalRequest] = field(default_factory=list)
    record: Optional[dict[str, Any]] = None
    is_new: Optional[bool] = None
    deferred_job_id: Optional[str] = None
    events_processed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "reports": [r.to_dict() for r in self.reports],
            "approval_requests": [r.to_dict() for r in self.approval_requests],
            "record_id": self.record.get("id") if self.record else None,
            "is_new": self.is_new,
            "deferred_job_id": self.deferred_job_id,
            "events_processed": self.events_processed,
        }


class AutomationEngine:
    """
    Wires the matcher, runners, approval engine and background tasks
    around one StateManager.
    """

    def __init__(
        self,
        state: StateManager,
        config: Optional[EngineConfig] = None,
        resolver: Optional[ApproverResolver] = None,
        handlers: Iterable[ActionHandler] = (),
        clock: Clock = time.time,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or EngineConfig()
        self.state = state
        self.clock = clock

        self.evaluator = ConditionEvaluator()
        self.matcher = TriggerMatcher(self.evaluator)
        self.registry = build_default_registry(
            state,
            self._run_sub_workflow,
            http_transport,
            webhook_timeout=self.config.execution.webhook_timeout_seconds,
        )
        for handler in handlers:
            self.registry.register(handler)

        self.executor = ActionExecutor(
            self.registry,
            state,
            max_actions_per_run=self.config.execution.max_actions_per_run,
        )
        self.runner = WorkflowRunner(self.executor, state)
        self.guard = RecursionGuard(self.config.recursion.max_depth)
        self.approvals = ApprovalProcessEngine(
            state,
            resolver or DirectoryApproverResolver(state),
            self.executor,
            clock=clock,
        )
        self.macros = MacroExecutor(self.runner)
        self.dedupe = DedupeResolver(state)

        self.workers = WorkerPool(
            size=self.config.workers.size,
            queue_size=self.config.workers.queue_size,
            on_error=self._on_job_failure,
            failure_history=self.config.workers.failure_history,
        )
        self.sweeper = ApprovalSweeper(
            self.approvals,
            interval_seconds=self.config.sweeper.interval_seconds,
            clock=clock,
            on_outcomes=self._drain_outcomes,
        )
        self.scheduler = ScheduleRunner(
            state,
            self.submit_event,
            check_interval_seconds=self.config.schedule.check_interval_seconds,
        )

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        await self.workers.start()
        if self.config.sweeper.enabled:
            await self.sweeper.start()
        if self.config.schedule.enabled:
            await self.scheduler.start()
        logger.info("automation_engine_started", config_hash=self.config.config_hash())

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.sweeper.stop()
        await self.workers.stop()
        logger.info("automation_engine_stopped")

    # ==================== Definitions ====================

    async def save_definition(
        self,
        definition: Union[AutomationDefinition, ApprovalProcessDefinition],
    ) -> None:
        """Validate against the module schema, then store."""
        validate_definition(definition, await self.state.get_field_types(definition.module_id))
        await self.state.save_definition(definition)

    async def save_webform(self, webform: WebformDefinition) -> None:
        await self.state.save_webform(webform)

    async def load_definitions(self, definitions: DefinitionSet) -> None:
        """Install a loaded definition set into the store."""
        for module_id, field_types in definitions.modules.items():
            await self.state.set_field_types(module_id, field_types)
        for user in definitions.directory:
            await self.state.upsert_user(
                user["id"],
                role=user.get("role"),
                is_active=user.get("is_active", True),
                manager_id=user.get("manager_id"),
                email=user.get("email"),
                full_name=user.get("full_name"),
            )
        for definition in definitions.workflows + definitions.macros + definitions.approval_processes:
            await self.save_definition(definition)
        for webform in definitions.webforms:
            await self.save_webform(webform)

    # ==================== Events ====================

    async def submit_event(self, event: Event) -> EventOutcome:
        """
        Entry point for lifecycle events.

        Create/update/delete/scheduled/manual events are processed before
        returning. Webform submissions return once the record is resolved;
        their automation runs on the worker pool.
        """
        if event.type == EventType.WEBFORM:
            return await self._submit_webform(event)

        outcome = EventOutcome(event_id=event.event_id, record=event.record)
        await self._drain([event], outcome)
        return outcome

    async def _submit_webform(self, event: Event) -> EventOutcome:
        webform = await self.state.get_webform(event.webform_id) if event.webform_id else None
        if webform is None:
            raise NotFoundError("webform", event.webform_id)
        if not webform.is_enabled:
            raise ValidationError(f"Webform {webform.id} is disabled", code="definition_disabled")

        submission = dict(event.record)
        submission.update(webform.hidden_fields)
        submit_count = await self.state.increment_submit_count(webform.id)

        result = await self.dedupe.resolve(webform.module_id, submission, webform.dedupe, created_by=event.actor_id)
        outcome = EventOutcome(event_id=event.event_id, record=result.record, is_new=result.is_new)

        logger.info(
            "webform_submission_resolved",
            webform_id=webform.id,
            record_id=result.record["id"],
            is_new=result.is_new,
            strategy=result.strategy_applied.value if result.strategy_applied else None,
            submit_count=submit_count,
        )

        if result.event is None:
            return outcome

        events = [
            result.event,
            Event(
                type=EventType.WEBFORM,
                module_id=webform.module_id,
                record=result.record,
                webform_id=webform.id,
                actor_id=event.actor_id,
            ),
        ]
        outcome.deferred_job_id = await self.workers.submit(
            f"webform:{webform.id}",
            self._process_deferred,
            events,
        )
        return outcome

    async def _process_deferred(self, events: list[Event]) -> None:
        outcome = EventOutcome(event_id=events[0].event_id)
        await self._drain(events, outcome)

    async def _drain(self, events: Iterable[Event], outcome: EventOutcome) -> None:
        """Process events breadth-first until no action emits another."""
        queue = deque(events)
        while queue:
            current = queue.popleft()
            self.guard.check(current)
            queue.extend(await self._process(current, outcome))

    async def _process(self, event: Event, outcome: EventOutcome) -> list[Event]:
        field_types = await self.state.get_field_types(event.module_id)

        workflows = await self.state.list_definitions(event.module_id, DefinitionKind.WORKFLOW, enabled_only=True)
        matches = self.matcher.match(event, workflows, field_types)
        reports = await self.runner.run(event, matches)
        outcome.reports.extend(reports)

        processes = await self.state.list_definitions(
            event.module_id, DefinitionKind.APPROVAL_PROCESS, enabled_only=True,
        )
        process_matches = self.matcher.match(event, processes, field_types)
        requests = await self.approvals.start_requests(event, process_matches)
        outcome.approval_requests.extend(requests)
        outcome.events_processed += 1

        logger.info(
            "event_processed",
            event_id=event.event_id,
            event_type=event.type.value,
            record_id=event.record_id,
            depth=event.depth,
            workflows=[d.id for d in matches],
            approval_requests=[r.id for r in requests],
        )
        return [e for report in reports for e in report.emitted_events]

    async def _drain_outcomes(self, outcomes: list[ApprovalOutcome]) -> None:
        events = [e for o in outcomes for e in o.emitted_events]
        if events:
            await self._drain(events, EventOutcome(event_id=events[0].event_id))

    async def _on_job_failure(self, failure: JobFailure) -> None:
        """Error channel for deferred work: log and write to the audit log."""
        logger.error(
            "deferred_job_failed",
            job_id=failure.job_id,
            name=failure.name,
            error_type=failure.error_type,
            error=failure.message,
        )
        await self.state.record_run(
            run_id=failure.job_id,
            definition_id=None,
            source=failure.name,
            record_id=None,
            event_id=None,
            status=RunStatus.FAILED.value,
            outcomes=[failure.details] if failure.details else [],
            error=failure.message,
            started_at=failure.failed_at,
            duration_ms=0,
        )

    async def _run_sub_workflow(self, workflow_id: str, context: ActionContext) -> ExecutionReport:
        definition = await self.state.get_definition(workflow_id)
        if not isinstance(definition, AutomationDefinition):
            raise ExecutionError(f"Workflow not found: {workflow_id}", fatal=True, action_kind="run_sub_workflow")

        sub_event = Event(
            type=EventType.MANUAL,
            module_id=definition.module_id,
            record=context.record,
            definition_id=definition.id,
            actor_id=context.actor_id,
            depth=context.depth + 1,
        )
        self.guard.check(sub_event)

        field_types = await self.state.get_field_types(definition.module_id)
        if not definition.is_enabled or not self.evaluator.evaluate(context.record, definition.conditions, field_types):
            return ExecutionReport(
                definition_id=definition.id,
                source="sub_workflow",
                mode=context.mode,
                status=RunStatus.SKIPPED,
                record_id=context.record_id,
            )
        return await self.runner.execute_definition(
            definition,
            context.record,
            event=sub_event,
            mode=context.mode,
            source="sub_workflow",
            actor_id=context.actor_id,
        )

    # ==================== Approvals ====================

    async def decide_step(
        self,
        request_id: str,
        step_index: int,
        actor: Actor,
        decision: Union[Decision, str],
        comment: Optional[str] = None,
    ) -> Result:
        try:
            decision = Decision(decision)
        except ValueError:
            return Result.failure(ValidationError.code, f"Unknown decision: {decision}")
        try:
            outcome = await self.approvals.decide(request_id, step_index, actor, decision, comment)
        except CALLER_ERRORS as e:
            return Result.failure(e.code, e.message)

        await self._drain_outcomes([outcome])
        return Result.success(outcome.request)

    async def delegate_step(
        self,
        request_id: str,
        step_index: int,
        actor: Actor,
        delegate_to: str,
    ) -> Result:
        try:
            instance = await self.approvals.delegate(request_id, step_index, actor, delegate_to)
        except CALLER_ERRORS as e:
            return Result.failure(e.code, e.message)
        return Result.success(instance)

    async def list_pending_approvals(self, actor: Actor) -> list[ApprovalStepInstance]:
        return await self.approvals.list_pending(actor)

    async def get_approval_history(self, request_id: str) -> list[ApprovalStepInstance]:
        return await self.approvals.get_history(request_id)

    async def sweep_approvals(self) -> list[ApprovalOutcome]:
        """Run the timeout sweeper once."""
        return await self.sweeper.run_once()

    # ==================== Macros and previews ====================

    async def run_macro(self, macro_id: str, record_id: str, actor: Actor) -> Result:
        try:
            macro = await self.state.get_definition(macro_id)
            if not isinstance(macro, AutomationDefinition):
                raise NotFoundError("macro", macro_id)
            record = await self.state.get_record(record_id)
            if record is None:
                raise NotFoundError("record", record_id)
            report = await self.macros.run(macro, record, actor)
        except CALLER_ERRORS as e:
            return Result.failure(e.code, e.message)

        if report.emitted_events:
            await self._drain(report.emitted_events, EventOutcome(event_id=report.run_id))
        return Result.success(report)

    async def preview_workflow(self, definition_id: str, record_id: str) -> ExecutionReport:
        """
        Dry-run a definition against a stored record.

        Nothing is written. If the definition's conditions do not hold for
        the record the report is ``skipped`` with no outcomes.
        """
        definition = await self.state.get_definition(definition_id)
        if not isinstance(definition, AutomationDefinition):
            raise NotFoundError("workflow", definition_id)
        record = await self.state.get_record(record_id)
        if record is None:
            raise NotFoundError("record", record_id)

        field_types = await self.state.get_field_types(definition.module_id)
        if not self.evaluator.evaluate(record, definition.conditions, field_types):
            return ExecutionReport(
                definition_id=definition.id,
                source="preview",
                mode=ExecutionMode.DRY_RUN,
                status=RunStatus.SKIPPED,
                record_id=record_id,
                error="conditions_not_met",
            )

        return await self.runner.execute_definition(
            definition,
            record,
            mode=ExecutionMode.DRY_RUN,
            source="preview",
        )
