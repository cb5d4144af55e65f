"""Action registry and execution for the rule engine."""

import copy
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, TYPE_CHECKING

import aiosqlite
import structlog

from ..core.errors import CycleDetectedError, ExecutionError
from ..core.models import (
    ActionKind,
    ActionSpec,
    Event,
    EventType,
    ExecutionMode,
    RunStatus,
    new_id,
)

if TYPE_CHECKING:
    from ..core.state import StateManager


logger = structlog.get_logger()

PLACEHOLDER = re.compile(r'\{\{\s*([\w.]+)\s*\}\}')


@dataclass
class ActionResult:
    """Result of one handler call."""
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    fatal: bool = False
    events: list[Event] = field(default_factory=list)


@dataclass
class ActionContext:
    """
    What a handler sees while running.

    ``record`` is a private copy of the triggering record; ``scratch``
    accumulates the outputs of earlier actions in the same chain.
    """
    record: dict[str, Any]
    event: Optional[Event] = None
    definition_id: Optional[str] = None
    source: str = "workflow"
    actor_id: Optional[str] = None
    mode: ExecutionMode = ExecutionMode.LIVE
    scratch: dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None

    def __post_init__(self):
        self.record = copy.deepcopy(self.record)

    @property
    def depth(self) -> int:
        return self.event.depth if self.event else 0

    @property
    def record_id(self) -> Optional[str]:
        return self.record.get("id")

    @property
    def module_id(self) -> Optional[str]:
        if self.record.get("module_id"):
            return self.record["module_id"]
        return self.event.module_id if self.event else None

    def variables(self) -> dict[str, Any]:
        """Template variables: record fields, event metadata and scratch."""
        record_vars = dict(self.record.get("data") or {})
        record_vars.update({k: v for k, v in self.record.items() if k != "data"})
        record_vars["data"] = self.record.get("data") or {}
        variables = {
            "record": record_vars,
            "event": self.event.to_dict() if self.event else {},
            "actor_id": self.actor_id,
            "scratch": self.scratch,
        }
        variables.update(self.scratch)
        return variables

    def derive_event(
        self,
        event_type: EventType,
        record: dict[str, Any],
        changed_fields: Optional[list[str]] = None,
        previous: Optional[dict[str, Any]] = None,
    ) -> Event:
        """Build the follow-up event for a mutation made by an action."""
        return Event(
            type=event_type,
            module_id=record.get("module_id") or self.module_id,
            record=record,
            changed_fields=changed_fields,
            previous=previous,
            actor_id=self.actor_id,
            depth=self.depth + 1,
        )


class ActionHandler:
    """
    Base class for pluggable action handlers.

    ``apply`` performs the effect; ``preview`` describes it without
    touching anything.
    """

    kind: ActionKind

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        raise NotImplementedError

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        return f"{self.kind.value}: {payload}"


@dataclass
class ActionOutcome:
    index: int
    kind: str
    success: bool
    description: Optional[str] = None
    output: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    fatal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind,
            "success": self.success,
            "description": self.description,
            "output": self.output,
            "error": self.error,
            "fatal": self.fatal,
        }


@dataclass
class ExecutionReport:
    """Result of one executor call."""
    definition_id: Optional[str]
    source: str
    mode: ExecutionMode
    status: RunStatus
    record_id: Optional[str] = None
    outcomes: list[ActionOutcome] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    emitted_events: list[Event] = field(default_factory=list, compare=False)
    run_id: str = field(default_factory=new_id, compare=False)
    duration_ms: float = field(default=0, compare=False)

    @property
    def failed(self) -> bool:
        return self.status == RunStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "definition_id": self.definition_id,
            "source": self.source,
            "mode": self.mode.value,
            "status": self.status.value,
            "record_id": self.record_id,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "outputs": self.outputs,
            "error": self.error,
            "emitted_events": len(self.emitted_events),
            "duration_ms": self.duration_ms,
        }


class ActionRegistry:
    """Maps action kinds to handlers."""

    def __init__(self):
        self._handlers: dict[ActionKind, ActionHandler] = {}

    def register(self, handler: ActionHandler, kind: Optional[ActionKind] = None) -> None:
        """Register a handler under its own kind, or an explicit one."""
        self._handlers[kind or handler.kind] = handler

    def unregister(self, kind: ActionKind) -> None:
        self._handlers.pop(kind, None)

    def get_handler(self, kind: ActionKind) -> Optional[ActionHandler]:
        return self._handlers.get(kind)

    def list_actions(self) -> list[str]:
        return [kind.value for kind in self._handlers]

    def interpolate(self, params: Any, variables: dict[str, Any]) -> Any:
        """Interpolate {{variable}} references in params.

        A string that is exactly one placeholder takes the referenced
        value with its type; unresolved placeholders are left as-is.
        """

        def replace_vars(value: Any) -> Any:
            if isinstance(value, str):
                whole = PLACEHOLDER.fullmatch(value.strip())
                if whole:
                    resolved = self._get_nested_value(variables, whole.group(1).split("."))
                    return value if resolved is None else resolved

                def substitute(match: re.Match) -> str:
                    resolved = self._get_nested_value(variables, match.group(1).split("."))
                    return match.group(0) if resolved is None else str(resolved)

                return PLACEHOLDER.sub(substitute, value)
            elif isinstance(value, dict):
                return {k: replace_vars(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [replace_vars(v) for v in value]
            return value

        return replace_vars(params)

    def _get_nested_value(self, data: dict, path: list[str]) -> Any:
        """Get nested value from dict using path."""
        current = data
        for key in path:
            if isinstance(current, dict):
                current = current.get(key)
            else:
                return None
            if current is None:
                return None
        return current


class ActionExecutor:
    """
    Runs an action list in order.

    A fatal failure stops the chain and marks the run failed; effects
    already applied are kept. Recoverable failures are logged and the
    chain continues. Live runs are written to the audit log.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        state: Optional["StateManager"] = None,
        max_actions_per_run: int = 50,
    ):
        self.registry = registry
        self.state = state
        self.max_actions_per_run = max_actions_per_run

    async def execute(
        self,
        actions: Sequence[ActionSpec],
        context: ActionContext,
        mode: Optional[ExecutionMode] = None,
    ) -> ExecutionReport:
        mode = mode or context.mode
        context.mode = mode
        started_at = time.time()
        start = time.monotonic()

        key = context.idempotency_key
        if mode == ExecutionMode.LIVE and key and self.state is not None and await self.state.has_run(key):
            logger.info("duplicate_run_skipped", definition_id=context.definition_id, idempotency_key=key)
            return ExecutionReport(
                definition_id=context.definition_id,
                source=context.source,
                mode=mode,
                status=RunStatus.SKIPPED,
                record_id=context.record_id,
                error="duplicate_run",
            )

        if len(actions) > self.max_actions_per_run:
            logger.warning(
                "action_list_truncated",
                definition_id=context.definition_id,
                requested=len(actions),
                limit=self.max_actions_per_run,
            )
            actions = list(actions)[:self.max_actions_per_run]

        outcomes: list[ActionOutcome] = []
        emitted: list[Event] = []
        status = RunStatus.DRY_RUN if mode == ExecutionMode.DRY_RUN else RunStatus.SUCCESS
        error: Optional[str] = None

        for index, action in enumerate(actions):
            handler = self.registry.get_handler(action.kind)
            if handler is None:
                error = f"No handler registered for action kind: {action.kind.value}"
                outcomes.append(ActionOutcome(index, action.kind.value, False, error=error, fatal=True))
                status = RunStatus.FAILED
                logger.error("action_handler_missing", definition_id=context.definition_id, kind=action.kind.value)
                break

            payload = self.registry.interpolate(action.payload, context.variables())

            if mode == ExecutionMode.DRY_RUN:
                try:
                    description = await handler.preview(payload, context)
                except ExecutionError as e:
                    outcomes.append(ActionOutcome(index, action.kind.value, False, error=e.message, fatal=e.fatal))
                    continue
                outcomes.append(ActionOutcome(index, action.kind.value, True, description=description))
                continue

            result = await self._apply(handler, payload, context)
            outcomes.append(ActionOutcome(
                index,
                action.kind.value,
                result.success,
                output=result.output,
                error=result.error,
                fatal=result.fatal and not result.success,
            ))

            if result.success:
                context.scratch.update(result.output)
                emitted.extend(result.events)
                continue

            if result.fatal:
                status = RunStatus.FAILED
                error = result.error
                logger.error(
                    "action_failed_fatal",
                    definition_id=context.definition_id,
                    kind=action.kind.value,
                    index=index,
                    error=result.error,
                )
                break

            status = RunStatus.PARTIAL
            logger.warning(
                "action_failed",
                definition_id=context.definition_id,
                kind=action.kind.value,
                index=index,
                error=result.error,
            )

        report = ExecutionReport(
            definition_id=context.definition_id,
            source=context.source,
            mode=mode,
            status=status,
            record_id=context.record_id,
            outcomes=outcomes,
            outputs=dict(context.scratch),
            error=error,
            emitted_events=emitted,
            duration_ms=(time.monotonic() - start) * 1000,
        )

        if mode == ExecutionMode.LIVE and self.state is not None:
            await self.state.record_run(
                run_id=report.run_id,
                definition_id=report.definition_id,
                source=report.source,
                record_id=report.record_id,
                event_id=context.event.event_id if context.event else None,
                status=report.status.value,
                outcomes=[o.to_dict() for o in outcomes],
                error=report.error,
                started_at=started_at,
                duration_ms=report.duration_ms,
                idempotency_key=context.idempotency_key,
            )

        logger.info(
            "actions_executed",
            definition_id=context.definition_id,
            source=context.source,
            mode=mode.value,
            status=status.value,
            actions=len(outcomes),
        )
        return report

    async def _apply(
        self,
        handler: ActionHandler,
        payload: dict[str, Any],
        context: ActionContext,
    ) -> ActionResult:
        try:
            return await handler.apply(payload, context)
        except ExecutionError as e:
            return ActionResult(success=False, error=e.message, fatal=e.fatal)
        except (aiosqlite.Error, CycleDetectedError):
            raise
        except Exception as e:
            logger.exception(
                "action_handler_error",
                definition_id=context.definition_id,
                kind=handler.kind.value,
            )
            return ActionResult(success=False, error=str(e), fatal=True)
