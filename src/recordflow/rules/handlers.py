"""Built-in action handlers backed by the state store."""

from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from ..core.errors import ExecutionError
from ..core.models import ActionKind, EventType
from ..core.state import StateManager
from .actions import ActionContext, ActionHandler, ActionRegistry, ActionResult, ExecutionReport


logger = structlog.get_logger()

SubWorkflowRunner = Callable[[str, ActionContext], Awaitable[ExecutionReport]]


class StoreHandler(ActionHandler):
    """Handler with access to the record store."""

    def __init__(self, state: StateManager):
        self.state = state

    async def _target(self, payload: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        record_id = payload.get("record_id") or context.record_id
        if not record_id:
            raise ExecutionError("No target record", fatal=True, action_kind=self.kind.value)
        record = await self.state.get_record(record_id)
        if record is None:
            raise ExecutionError(f"Record not found: {record_id}", fatal=True, action_kind=self.kind.value)
        return record

    def _resolve_user(self, recipient: str, record: dict[str, Any]) -> Optional[str]:
        if recipient == "owner":
            return record.get("owner_id")
        if recipient == "creator":
            return record.get("created_by")
        return recipient


class UpdateFieldHandler(StoreHandler):
    kind = ActionKind.UPDATE_FIELD

    @staticmethod
    def _changes(payload: dict[str, Any]) -> dict[str, Any]:
        if "fields" in payload:
            return dict(payload["fields"])
        if "field" in payload:
            return {payload["field"]: payload.get("value")}
        raise ExecutionError("update_field requires 'field' or 'fields'", fatal=True, action_kind="update_field")

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        changes = self._changes(payload)
        before = await self._target(payload, context)
        record, written = await self.state.update_record(before["id"], changes)
        return ActionResult(
            success=True,
            output={"updated_record_id": record["id"], "updated_fields": written},
            events=[context.derive_event(EventType.UPDATE, record, written, previous=before)],
        )

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        changes = ", ".join(f"{k} = {v!r}" for k, v in self._changes(payload).items())
        return f"Update {payload.get('record_id') or context.record_id}: {changes}"


class CreateRecordHandler(StoreHandler):
    kind = ActionKind.CREATE_RECORD

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        module_id = payload.get("module_id") or context.module_id
        if not module_id:
            raise ExecutionError("create_record requires a module", fatal=True, action_kind=self.kind.value)
        record = await self.state.create_record(
            module_id,
            dict(payload.get("fields") or {}),
            created_by=context.actor_id,
        )
        return ActionResult(
            success=True,
            output={"created_record_id": record["id"]},
            events=[context.derive_event(EventType.CREATE, record)],
        )

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        module_id = payload.get("module_id") or context.module_id
        return f"Create {module_id} record with {payload.get('fields') or {}}"


class AssignOwnerHandler(StoreHandler):
    kind = ActionKind.ASSIGN_OWNER

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        owner_id = payload.get("owner_id") or payload.get("user_id")
        user = await self.state.get_user(owner_id) if owner_id else None
        if not user or not user["is_active"]:
            return ActionResult(success=False, error=f"Unknown or inactive user: {owner_id}")

        before = await self._target(payload, context)
        record, written = await self.state.update_record(before["id"], {"owner_id": owner_id})
        return ActionResult(
            success=True,
            output={"owner_id": owner_id},
            events=[context.derive_event(EventType.UPDATE, record, written, previous=before)],
        )

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        owner_id = payload.get("owner_id") or payload.get("user_id")
        return f"Assign {payload.get('record_id') or context.record_id} to {owner_id}"


class TagHandler(StoreHandler):
    """add_tag / remove_tag."""

    def __init__(self, state: StateManager, kind: ActionKind):
        super().__init__(state)
        self.kind = kind

    @staticmethod
    def _tags(payload: dict[str, Any]) -> list[str]:
        tags = payload.get("tags", payload.get("tag"))
        if isinstance(tags, str):
            return [tags]
        return list(tags or [])

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        tags = self._tags(payload)
        if not tags:
            return ActionResult(success=False, error="No tag given")

        before = await self._target(payload, context)
        current = list(before.get("tags") or [])
        if self.kind == ActionKind.ADD_TAG:
            updated = current + [t for t in tags if t not in current]
        else:
            updated = [t for t in current if t not in tags]

        if updated == current:
            return ActionResult(success=True, output={"tags": current})

        record = await self.state.set_tags(before["id"], updated)
        return ActionResult(
            success=True,
            output={"tags": updated},
            events=[context.derive_event(EventType.UPDATE, record, ["tags"], previous=before)],
        )

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        verb = "Add" if self.kind == ActionKind.ADD_TAG else "Remove"
        return f"{verb} tags {self._tags(payload)} on {payload.get('record_id') or context.record_id}"


class NotifyHandler(StoreHandler):
    kind = ActionKind.NOTIFY

    @staticmethod
    def _recipients(payload: dict[str, Any]) -> list[str]:
        recipients = payload.get("recipients", payload.get("to", "owner"))
        if isinstance(recipients, str):
            return [recipients]
        return list(recipients)

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        user_ids = []
        for recipient in self._recipients(payload):
            user_id = self._resolve_user(recipient, context.record)
            if user_id and user_id not in user_ids:
                user_ids.append(user_id)
        if not user_ids:
            return ActionResult(success=False, error="Notification has no resolvable recipients")

        title = payload.get("title") or payload.get("message") or "Record update"
        for user_id in user_ids:
            await self.state.add_notification(
                user_id,
                title,
                payload.get("body", payload.get("message", "")),
                record_id=context.record_id,
            )
        return ActionResult(success=True, output={"notified": user_ids})

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        title = payload.get("title") or payload.get("message") or "Record update"
        return f"Notify {', '.join(self._recipients(payload))}: {title}"


class SendEmailHandler(StoreHandler):
    """Queues a message in the outbox for an external mailer."""

    kind = ActionKind.SEND_EMAIL

    async def _address(self, recipient: str, record: dict[str, Any]) -> Optional[str]:
        if recipient == "record":
            return record.get("email")
        if "@" in recipient:
            return recipient
        user_id = self._resolve_user(recipient, record)
        user = await self.state.get_user(user_id) if user_id else None
        return user.get("email") if user else None

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        recipient = str(payload.get("to", "record"))
        address = await self._address(recipient, context.record)
        if not address:
            return ActionResult(success=False, error=f"No email address for recipient: {recipient}")

        message_id = await self.state.enqueue_outbox(
            address,
            payload.get("subject", ""),
            payload.get("body", ""),
            record_id=context.record_id,
        )
        return ActionResult(success=True, output={"email_id": message_id, "email_to": address})

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        return f"Email {payload.get('to', 'record')}: {payload.get('subject', '')}"


class WebhookHandler(ActionHandler):
    """HTTP callout. Non-2xx responses and transport errors are recoverable."""

    kind = ActionKind.WEBHOOK

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 10.0):
        self.transport = transport
        self.timeout = timeout

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        url = payload.get("url")
        if not url:
            raise ExecutionError("webhook requires 'url'", fatal=True, action_kind=self.kind.value)

        method = str(payload.get("method", "POST")).upper()
        body = payload.get("body")
        if body is None:
            body = {"record": context.record, "definition_id": context.definition_id}

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=payload.get("timeout", self.timeout)) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=payload.get("headers") or {},
                    json=body if isinstance(body, (dict, list)) else None,
                    content=body if isinstance(body, str) else None,
                )
        except httpx.HTTPError as e:
            return ActionResult(success=False, error=f"Webhook request failed: {e}")

        output = {"status_code": response.status_code}
        if response.status_code >= 400:
            return ActionResult(success=False, output=output, error=f"Webhook returned {response.status_code}")
        return ActionResult(success=True, output=output)

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        return f"{str(payload.get('method', 'POST')).upper()} {payload.get('url')}"


class RunSubWorkflowHandler(ActionHandler):
    kind = ActionKind.RUN_SUB_WORKFLOW

    def __init__(self, runner: SubWorkflowRunner):
        self.runner = runner

    async def apply(self, payload: dict[str, Any], context: ActionContext) -> ActionResult:
        workflow_id = payload.get("workflow_id")
        if not workflow_id:
            raise ExecutionError("run_sub_workflow requires 'workflow_id'", fatal=True, action_kind=self.kind.value)

        report = await self.runner(workflow_id, context)
        return ActionResult(
            success=not report.failed,
            output={"sub_workflow_status": report.status.value},
            error=report.error,
            events=list(report.emitted_events),
        )

    async def preview(self, payload: dict[str, Any], context: ActionContext) -> str:
        return f"Run workflow {payload.get('workflow_id')}"


def build_default_registry(
    state: StateManager,
    sub_workflow_runner: Optional[SubWorkflowRunner] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    webhook_timeout: float = 10.0,
) -> ActionRegistry:
    """Registry with every built-in kind wired to ``state``."""
    registry = ActionRegistry()
    registry.register(UpdateFieldHandler(state))
    registry.register(CreateRecordHandler(state))
    registry.register(AssignOwnerHandler(state))
    registry.register(TagHandler(state, ActionKind.ADD_TAG))
    registry.register(TagHandler(state, ActionKind.REMOVE_TAG))
    registry.register(NotifyHandler(state))
    registry.register(SendEmailHandler(state))
    registry.register(WebhookHandler(http_transport, webhook_timeout))
    if sub_workflow_runner is not None:
        registry.register(RunSubWorkflowHandler(sub_workflow_runner))
    return registry
