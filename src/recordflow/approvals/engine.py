"""
Approval process state machine.

A request moves pending -> approved | rejected | expired. Exactly one step
instance is pending while the request is pending. Every transition goes
through ``StateManager.transition_step`` guarded on the exact instance the
caller loaded, so a decision racing another decision, a delegation or the
sweeper loses cleanly with a ConflictError.

A step that would advance into a step with no resolvable approvers stays
open and the decision fails with ``no_approvers``; the sweeper expires such
a request instead of auto-approving it.
"""

import copy
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import structlog

from ..core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..core.models import (
    ActionSpec,
    Actor,
    ApprovalProcessDefinition,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStepInstance,
    Decision,
    Event,
    StepStatus,
    new_id,
)
from ..core.state import StateManager
from ..rules.actions import ActionContext, ActionExecutor, ExecutionReport
from .resolver import ApproverResolver


logger = structlog.get_logger()

Clock = Callable[[], float]

SYSTEM_ACTOR = "system"
AUTO_APPROVE_COMMENT = "Auto-approved after timeout"
NEW_REQUEST_TITLE = "New Approval Request"


@dataclass
class ApprovalOutcome:
    """A request after a transition, plus the final actions' report if any fired."""
    request: ApprovalRequest
    report: Optional[ExecutionReport] = None

    @property
    def emitted_events(self) -> list[Event]:
        return list(self.report.emitted_events) if self.report else []


class ApprovalProcessEngine:
    """Creates approval requests and drives them to a terminal status."""

    def __init__(
        self,
        state: StateManager,
        resolver: ApproverResolver,
        executor: ActionExecutor,
        clock: Clock = time.time,
    ):
        self.state = state
        self.resolver = resolver
        self.executor = executor
        self.clock = clock

    # ==================== Creation ====================

    async def start_requests(
        self,
        event: Event,
        processes: Sequence[ApprovalProcessDefinition],
    ) -> list[ApprovalRequest]:
        """Open a request for each matched process that has none open yet."""
        requests = []
        for process in processes:
            try:
                requests.append(await self.start_request(process, event.record, requested_by=event.actor_id))
            except ConflictError:
                logger.info(
                    "approval_request_already_open",
                    process_id=process.id,
                    record_id=event.record_id,
                )
            except ValidationError as e:
                logger.warning(
                    "approval_request_not_started",
                    process_id=process.id,
                    record_id=event.record_id,
                    error=e.message,
                )
        return requests

    async def start_request(
        self,
        process: ApprovalProcessDefinition,
        record: dict[str, Any],
        requested_by: Optional[str] = None,
    ) -> ApprovalRequest:
        if not process.steps:
            raise ValidationError(f"Approval process {process.id} has no steps", code="no_steps")
        if await self.state.find_open_request(process.id, record["id"]):
            raise ConflictError(
                ConflictError.ALREADY_OPEN,
                f"Record {record['id']} already has an open request for {process.id}",
            )

        approvers = await self.resolver.resolve(process.steps[0], record)
        if not approvers:
            raise ValidationError(
                f"No approvers resolved for step 0 of {process.id}",
                code="no_approvers",
            )

        now = self.clock()
        request = ApprovalRequest(
            id=new_id(),
            process_id=process.id,
            record_id=record["id"],
            module_id=process.module_id,
            status=ApprovalStatus.PENDING,
            current_step_index=0,
            steps=copy.deepcopy(process.steps),
            on_approve_actions=copy.deepcopy(process.on_approve_actions),
            on_reject_actions=copy.deepcopy(process.on_reject_actions),
            auto_approve_after_hours=process.auto_approve_after_hours,
            requested_by=requested_by,
            created_at=now,
        )
        first = ApprovalStepInstance(
            id=new_id(),
            request_id=request.id,
            step_index=0,
            resolved_approver_ids=approvers,
            created_at=now,
        )
        await self.state.create_approval_request(request, first)

        logger.info(
            "approval_request_created",
            request_id=request.id,
            process_id=process.id,
            record_id=request.record_id,
            steps=len(request.steps),
            approvers=approvers,
        )
        await self._notify_approvers(request, approvers, record)
        return request

    # ==================== Decisions ====================

    async def _load_for_step(self, request_id: str, step_index: int) -> tuple[ApprovalRequest, ApprovalStepInstance]:
        """Load a request and its pending instance, checking the step is current."""
        request = await self.state.get_approval_request(request_id)
        if request is None:
            raise NotFoundError("approval request", request_id)
        if request.is_terminal:
            raise ConflictError(
                ConflictError.ALREADY_TERMINAL,
                f"Request {request_id} is already {request.status.value}",
                request_id=request_id,
            )
        if step_index < request.current_step_index:
            raise ConflictError(
                ConflictError.ALREADY_DECIDED,
                f"Step {step_index} of request {request_id} was already decided",
                request_id=request_id,
            )
        if step_index > request.current_step_index or step_index >= len(request.steps):
            raise NotFoundError("approval step", f"{request_id}/{step_index}")

        instance = await self.state.get_pending_step(request_id)
        if instance is None or instance.step_index != step_index:
            raise await self._conflict(request_id, step_index)
        return request, instance

    async def decide(
        self,
        request_id: str,
        step_index: int,
        actor: Actor,
        decision: Decision,
        comment: Optional[str] = None,
    ) -> ApprovalOutcome:
        request, instance = await self._load_for_step(request_id, step_index)

        if actor.id not in instance.resolved_approver_ids:
            logger.info("approval_decision_denied", request_id=request_id, step_index=step_index, actor_id=actor.id)
            raise AuthorizationError(
                f"{actor.id} is not an approver for step {step_index} of request {request_id}",
                actor_id=actor.id,
            )
        if request.steps[step_index].require_comment and not (comment and comment.strip()):
            raise ValidationError("A comment is required for this step", code="comment_required")

        return await self._apply_decision(request, instance, decision, actor.id, comment, self.clock())

    async def _apply_decision(
        self,
        request: ApprovalRequest,
        instance: ApprovalStepInstance,
        decision: Decision,
        actor_id: str,
        comment: Optional[str],
        now: float,
    ) -> ApprovalOutcome:
        step_index = instance.step_index
        final_actions: Optional[list[ActionSpec]] = None
        record = await self.state.get_record(request.record_id) or {"id": request.record_id}
        next_approvers: list[str] = []

        if decision == Decision.REJECT:
            won = await self.state.transition_step(
                request.id, step_index, StepStatus.PENDING, StepStatus.REJECTED,
                instance_id=instance.id,
                actor_id=actor_id, decided_at=now, comment=comment,
                request_status=ApprovalStatus.REJECTED,
            )
            final_actions = request.on_reject_actions
        elif request.is_last_step:
            won = await self.state.transition_step(
                request.id, step_index, StepStatus.PENDING, StepStatus.APPROVED,
                instance_id=instance.id,
                actor_id=actor_id, decided_at=now, comment=comment,
                request_status=ApprovalStatus.APPROVED,
            )
            final_actions = request.on_approve_actions
        else:
            next_index = step_index + 1
            next_approvers = await self.resolver.resolve(request.steps[next_index], record)
            if not next_approvers:
                logger.warning(
                    "approval_step_without_approvers",
                    request_id=request.id,
                    step_index=next_index,
                )
                raise ValidationError(
                    f"No approvers resolved for step {next_index} of request {request.id}",
                    code="no_approvers",
                )
            won = await self.state.transition_step(
                request.id, step_index, StepStatus.PENDING, StepStatus.APPROVED,
                instance_id=instance.id,
                actor_id=actor_id, decided_at=now, comment=comment,
                next_step_index=next_index,
                next_instance=ApprovalStepInstance(
                    id=new_id(),
                    request_id=request.id,
                    step_index=next_index,
                    resolved_approver_ids=next_approvers,
                    created_at=now,
                ),
            )

        if not won:
            raise await self._conflict(request.id, step_index)

        updated = await self.state.get_approval_request(request.id)
        logger.info(
            "approval_step_decided",
            request_id=request.id,
            step_index=step_index,
            decision=decision.value,
            actor_id=actor_id,
            request_status=updated.status.value,
        )

        report = None
        if final_actions is None:
            await self._notify_approvers(updated, next_approvers, record)
        else:
            await self._notify_requester(updated, comment)
            report = await self._fire(updated, final_actions, actor_id)
        return ApprovalOutcome(updated, report)

    async def _fire(
        self,
        request: ApprovalRequest,
        actions: list[ActionSpec],
        actor_id: Optional[str],
    ) -> Optional[ExecutionReport]:
        if not actions:
            return None
        record = await self.state.get_record(request.record_id) or {"id": request.record_id}
        context = ActionContext(
            record=record,
            definition_id=request.process_id,
            source=f"approval:{request.status.value}",
            actor_id=actor_id,
        )
        return await self.executor.execute(actions, context)

    async def _notify_approvers(
        self,
        request: ApprovalRequest,
        approver_ids: Sequence[str],
        record: dict[str, Any],
    ) -> None:
        title = record.get("title") or "A record"
        for user_id in approver_ids:
            await self.state.add_notification(
                user_id,
                NEW_REQUEST_TITLE,
                f"{title} requires your approval",
                record_id=request.record_id,
            )

    async def _notify_requester(self, request: ApprovalRequest, comment: Optional[str]) -> None:
        """Tell whoever triggered the request how it ended."""
        if not request.requested_by:
            return
        if request.status == ApprovalStatus.APPROVED:
            title, body = "Your request has been approved", f"{request.process_id} was approved"
        else:
            title = "Your request has been rejected"
            body = f"Your request was rejected: {comment}" if comment else f"{request.process_id} was rejected"
        await self.state.add_notification(request.requested_by, title, body, record_id=request.record_id)

    async def _conflict(self, request_id: str, step_index: int) -> ConflictError:
        """Classify a lost optimistic-concurrency race from fresh state."""
        current = await self.state.get_approval_request(request_id)
        if current is not None and current.is_terminal:
            return ConflictError(
                ConflictError.ALREADY_TERMINAL,
                f"Request {request_id} is already {current.status.value}",
                request_id=request_id,
            )
        return ConflictError(
            ConflictError.ALREADY_DECIDED,
            f"Step {step_index} of request {request_id} was already decided",
            request_id=request_id,
        )

    # ==================== Delegation ====================

    async def delegate(
        self,
        request_id: str,
        step_index: int,
        actor: Actor,
        delegate_to: str,
    ) -> ApprovalStepInstance:
        """Hand a pending step to another user; the old instance is kept as delegated."""
        request, instance = await self._load_for_step(request_id, step_index)

        if actor.id not in instance.resolved_approver_ids:
            raise AuthorizationError(
                f"{actor.id} is not an approver for step {step_index} of request {request_id}",
                actor_id=actor.id,
            )
        if not request.steps[step_index].can_delegate:
            raise ValidationError("This step cannot be delegated", code="delegation_not_allowed")
        if delegate_to == actor.id:
            raise ValidationError("Cannot delegate to yourself", code="invalid_delegate")
        delegate = await self.state.get_user(delegate_to)
        if delegate is None or not delegate["is_active"]:
            raise ValidationError(f"Unknown or inactive delegate: {delegate_to}", code="invalid_delegate")

        now = self.clock()
        replacement = ApprovalStepInstance(
            id=new_id(),
            request_id=request_id,
            step_index=step_index,
            resolved_approver_ids=[delegate_to],
            created_at=now,
        )
        won = await self.state.transition_step(
            request_id, step_index, StepStatus.PENDING, StepStatus.DELEGATED,
            instance_id=instance.id,
            actor_id=actor.id, decided_at=now, delegated_to=delegate_to,
            next_instance=replacement,
        )
        if not won:
            raise await self._conflict(request_id, step_index)

        logger.info(
            "approval_step_delegated",
            request_id=request_id,
            step_index=step_index,
            from_user=actor.id,
            to_user=delegate_to,
        )
        record = await self.state.get_record(request.record_id) or {"id": request.record_id}
        await self._notify_approvers(request, [delegate_to], record)
        return replacement

    # ==================== Timeouts ====================

    def deadline(self, request: ApprovalRequest, instance: ApprovalStepInstance) -> Optional[float]:
        """
        When a pending instance times out, or None.

        The step's own timeout wins; otherwise the process auto-approve
        window applies.
        """
        step = request.steps[instance.step_index]
        hours = step.timeout_hours if step.timeout_hours is not None else request.auto_approve_after_hours
        if hours is None:
            return None
        return instance.created_at + float(hours) * 3600

    async def sweep(self, now: Optional[float] = None) -> list[ApprovalOutcome]:
        """Expire or auto-approve every pending instance past its deadline."""
        now = now if now is not None else self.clock()
        outcomes = []

        for instance in await self.state.list_pending_step_instances():
            request = await self.state.get_approval_request(instance.request_id)
            if request is None or request.is_terminal:
                continue
            deadline = self.deadline(request, instance)
            if deadline is None or now < deadline:
                continue

            try:
                if request.auto_approve_after_hours is not None:
                    outcome = await self._auto_approve(request, instance, now)
                else:
                    outcome = await self._expire(request, instance, now)
            except ConflictError as e:
                logger.info("approval_sweep_lost_race", request_id=request.id, code=e.code)
                continue
            outcomes.append(outcome)

        return outcomes

    async def _auto_approve(
        self,
        request: ApprovalRequest,
        instance: ApprovalStepInstance,
        now: float,
    ) -> ApprovalOutcome:
        """Approve a timed-out step; a request that cannot advance expires instead."""
        approver = instance.resolved_approver_ids[0] if instance.resolved_approver_ids else SYSTEM_ACTOR
        try:
            outcome = await self._apply_decision(
                request, instance, Decision.APPROVE, approver, AUTO_APPROVE_COMMENT, now,
            )
        except ValidationError as e:
            logger.warning("approval_auto_approve_blocked", request_id=request.id, code=e.code)
            return await self._expire(request, instance, now)
        logger.info("approval_step_auto_approved", request_id=request.id, step_index=instance.step_index)
        return outcome

    async def _expire(
        self,
        request: ApprovalRequest,
        instance: ApprovalStepInstance,
        now: float,
    ) -> ApprovalOutcome:
        won = await self.state.transition_step(
            request.id, instance.step_index, StepStatus.PENDING, StepStatus.EXPIRED,
            instance_id=instance.id,
            actor_id=SYSTEM_ACTOR, decided_at=now,
            request_status=ApprovalStatus.EXPIRED,
        )
        if not won:
            raise await self._conflict(request.id, instance.step_index)
        logger.info("approval_request_expired", request_id=request.id, step_index=instance.step_index)
        return ApprovalOutcome(await self.state.get_approval_request(request.id))

    # ==================== Queries ====================

    async def list_pending(self, actor: Actor) -> list[ApprovalStepInstance]:
        return [
            instance for instance in await self.state.list_pending_step_instances()
            if actor.id in instance.resolved_approver_ids
        ]

    async def get_history(self, request_id: str) -> list[ApprovalStepInstance]:
        if await self.state.get_approval_request(request_id) is None:
            raise NotFoundError("approval request", request_id)
        return await self.state.list_step_instances(request_id)
