"""Domain types shared by the matcher, executor and approval engine."""

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional, Union


class FieldType(Enum):
    """Declared type of a module field."""
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    CURRENCY = "currency"
    DATE = "date"
    DATETIME = "datetime"
    SELECT = "select"
    MULTISELECT = "multiselect"
    BOOLEAN = "boolean"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    LOOKUP = "lookup"
    USER = "user"


TEXT_LIKE_TYPES = frozenset({
    FieldType.TEXT,
    FieldType.TEXTAREA,
    FieldType.SELECT,
    FieldType.EMAIL,
    FieldType.PHONE,
    FieldType.URL,
})

NUMERIC_TYPES = frozenset({FieldType.NUMBER, FieldType.CURRENCY})
DATE_TYPES = frozenset({FieldType.DATE, FieldType.DATETIME})

# Columns stored directly on a record; everything else lives in ``data``.
SYSTEM_FIELDS = (
    "id", "module_id", "owner_id", "title", "status", "stage", "email",
    "phone", "tags", "created_by", "created_at", "updated_at",
)
WRITABLE_SYSTEM_FIELDS = ("owner_id", "title", "status", "stage", "email", "phone")


class Operator(Enum):
    """Closed set of condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


TEXT_OPERATORS = frozenset({Operator.CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH})
ORDERING_OPERATORS = frozenset({Operator.GT, Operator.GTE, Operator.LT, Operator.LTE})


class Logic(Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class Condition:
    """Leaf predicate: ``record[field] <operator> value``."""
    field: str
    operator: Operator
    value: Any = None


@dataclass(frozen=True)
class ConditionGroup:
    """Recursive AND/OR node."""
    logic: Logic = Logic.AND
    conditions: tuple[Union["Condition", "ConditionGroup"], ...] = ()


ConditionNode = Union[Condition, ConditionGroup]


class TriggerType(Enum):
    ON_CREATE = "on_create"
    RECORD_CREATE = "record_create"
    ON_UPDATE = "on_update"
    FIELD_CHANGE = "field_change"
    STAGE_TRANSITION = "stage_transition"
    ON_DELETE = "on_delete"
    SCHEDULED = "scheduled"
    WEBFORM = "webform"
    MANUAL = "manual"


class EventType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SCHEDULED = "scheduled"
    WEBFORM = "webform"
    MANUAL = "manual"


class ActionKind(Enum):
    SEND_EMAIL = "send_email"
    UPDATE_FIELD = "update_field"
    CREATE_RECORD = "create_record"
    ASSIGN_OWNER = "assign_owner"
    NOTIFY = "notify"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    RUN_SUB_WORKFLOW = "run_sub_workflow"
    WEBHOOK = "webhook"


class DefinitionKind(Enum):
    WORKFLOW = "workflow"
    MACRO = "macro"
    APPROVAL_PROCESS = "approval_process"


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class StepStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    EXPIRED = "expired"


class ApproverType(Enum):
    ROLE = "role"
    USER = "user"
    MANAGER = "manager"
    RECORD_OWNER = "record_owner"


class Decision(Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DedupeStrategy(Enum):
    SKIP = "skip"
    UPDATE = "update"
    CREATE_DUPLICATE = "create_duplicate"


class ExecutionMode(Enum):
    LIVE = "live"
    DRY_RUN = "dry_run"


class RunStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    DRY_RUN = "dry_run"
    SKIPPED = "skipped"


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ActionSpec:
    """One entry of an action list: a kind plus its payload."""
    kind: ActionKind
    payload: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionSpec":
        kind = data.get("kind") or data.get("type")
        payload = data.get("payload", data.get("params", data.get("config", {})))
        return cls(kind=ActionKind(kind), payload=dict(payload or {}), id=data.get("id"))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "payload": self.payload, "id": self.id}


@dataclass
class AutomationDefinition:
    """A workflow (event-triggered) or macro (manually invoked)."""
    id: str
    module_id: str
    name: str
    kind: DefinitionKind = DefinitionKind.WORKFLOW
    is_enabled: bool = True
    priority: int = 0
    trigger_type: Optional[TriggerType] = None
    trigger_config: dict[str, Any] = field(default_factory=dict)
    conditions: Any = None
    actions: list[ActionSpec] = field(default_factory=list)
    allowed_roles: list[str] = field(default_factory=list)
    description: str = ""
    created_by: Optional[str] = None
    created_at: float = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = time.time()

    @classmethod
    def from_dict(cls, data: dict[str, Any], kind: Optional[DefinitionKind] = None) -> "AutomationDefinition":
        kind = kind or DefinitionKind(data.get("kind", "workflow"))
        trigger = data.get("trigger_type")
        return cls(
            id=data["id"],
            module_id=data["module_id"],
            name=data.get("name", data["id"]),
            kind=kind,
            is_enabled=data.get("is_enabled", data.get("enabled", True)),
            priority=int(data.get("priority", 0)),
            trigger_type=TriggerType(trigger) if trigger else None,
            trigger_config=dict(data.get("trigger_config") or {}),
            conditions=data.get("conditions"),
            actions=[ActionSpec.from_dict(a) for a in data.get("actions", [])],
            allowed_roles=list(data.get("allowed_roles", [])),
            description=data.get("description", ""),
            created_by=data.get("created_by"),
            created_at=float(data.get("created_at", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "module_id": self.module_id,
            "name": self.name,
            "kind": self.kind.value,
            "is_enabled": self.is_enabled,
            "priority": self.priority,
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
            "trigger_config": self.trigger_config,
            "conditions": self.conditions,
            "actions": [a.to_dict() for a in self.actions],
            "allowed_roles": self.allowed_roles,
            "description": self.description,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }


@dataclass
class ApprovalStepDefinition:
    type: ApproverType
    value: Optional[str] = None
    require_comment: bool = False
    can_delegate: bool = False
    timeout_hours: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApprovalStepDefinition":
        return cls(
            type=ApproverType(data["type"]),
            value=data.get("value"),
            require_comment=bool(data.get("require_comment", False)),
            can_delegate=bool(data.get("can_delegate", False)),
            timeout_hours=data.get("timeout_hours"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "require_comment": self.require_comment,
            "can_delegate": self.can_delegate,
            "timeout_hours": self.timeout_hours,
        }


@dataclass
class ApprovalProcessDefinition:
    id: str
    module_id: str
    name: str
    is_enabled: bool = True
    priority: int = 0
    trigger_type: TriggerType = TriggerType.ON_CREATE
    trigger_config: dict[str, Any] = field(default_factory=dict)
    conditions: Any = None
    steps: list[ApprovalStepDefinition] = field(default_factory=list)
    on_approve_actions: list[ActionSpec] = field(default_factory=list)
    on_reject_actions: list[ActionSpec] = field(default_factory=list)
    auto_approve_after_hours: Optional[float] = None
    description: str = ""
    created_at: float = 0

    kind = DefinitionKind.APPROVAL_PROCESS

    def __post_init__(self):
        if not self.created_at:
            self.created_at = time.time()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApprovalProcessDefinition":
        return cls(
            id=data["id"],
            module_id=data["module_id"],
            name=data.get("name", data["id"]),
            is_enabled=data.get("is_enabled", data.get("enabled", True)),
            priority=int(data.get("priority", 0)),
            trigger_type=TriggerType(data.get("trigger_type", "on_create")),
            trigger_config=dict(data.get("trigger_config") or {}),
            conditions=data.get("conditions"),
            steps=[ApprovalStepDefinition.from_dict(s) for s in data.get("steps", [])],
            on_approve_actions=[ActionSpec.from_dict(a) for a in data.get("on_approve_actions", [])],
            on_reject_actions=[ActionSpec.from_dict(a) for a in data.get("on_reject_actions", [])],
            auto_approve_after_hours=data.get("auto_approve_after_hours"),
            description=data.get("description", ""),
            created_at=float(data.get("created_at", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "module_id": self.module_id,
            "name": self.name,
            "kind": self.kind.value,
            "is_enabled": self.is_enabled,
            "priority": self.priority,
            "trigger_type": self.trigger_type.value,
            "trigger_config": self.trigger_config,
            "conditions": self.conditions,
            "steps": [s.to_dict() for s in self.steps],
            "on_approve_actions": [a.to_dict() for a in self.on_approve_actions],
            "on_reject_actions": [a.to_dict() for a in self.on_reject_actions],
            "auto_approve_after_hours": self.auto_approve_after_hours,
            "description": self.description,
            "created_at": self.created_at,
        }


@dataclass
class ApprovalRequest:
    """Running instance of a process against one record.

    ``steps``, the final action lists and the auto-approve policy are copied
    from the definition at creation so later edits do not affect it.
    """
    id: str
    process_id: str
    record_id: str
    module_id: str
    status: ApprovalStatus
    current_step_index: int
    steps: list[ApprovalStepDefinition]
    on_approve_actions: list[ActionSpec] = field(default_factory=list)
    on_reject_actions: list[ActionSpec] = field(default_factory=list)
    auto_approve_after_hours: Optional[float] = None
    requested_by: Optional[str] = None
    created_at: float = 0
    resolved_at: Optional[float] = None
    resolved_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_last_step(self) -> bool:
        return self.current_step_index >= len(self.steps) - 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "process_id": self.process_id,
            "record_id": self.record_id,
            "module_id": self.module_id,
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "step_count": len(self.steps),
            "requested_by": self.requested_by,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
        }


@dataclass
class ApprovalStepInstance:
    id: str
    request_id: str
    step_index: int
    resolved_approver_ids: list[str]
    status: StepStatus = StepStatus.PENDING
    created_at: float = 0
    decided_by: Optional[str] = None
    decided_at: Optional[float] = None
    comment: Optional[str] = None
    delegated_to: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class DedupeConfig:
    enabled: bool = False
    fields: list[str] = field(default_factory=list)
    strategy: DedupeStrategy = DedupeStrategy.SKIP

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "DedupeConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            fields=list(data.get("fields", [])),
            strategy=DedupeStrategy(data.get("strategy", "skip")),
        )


@dataclass
class WebformDefinition:
    id: str
    module_id: str
    name: str
    is_enabled: bool = True
    dedupe: DedupeConfig = field(default_factory=DedupeConfig)
    hidden_fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebformDefinition":
        return cls(
            id=data["id"],
            module_id=data["module_id"],
            name=data.get("name", data["id"]),
            is_enabled=data.get("is_enabled", data.get("enabled", True)),
            dedupe=DedupeConfig.from_dict(data.get("dedupe") or data.get("dedupe_config")),
            hidden_fields=dict(data.get("hidden_fields") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "module_id": self.module_id,
            "name": self.name,
            "is_enabled": self.is_enabled,
            "dedupe": {
                "enabled": self.dedupe.enabled,
                "fields": self.dedupe.fields,
                "strategy": self.dedupe.strategy.value,
            },
            "hidden_fields": self.hidden_fields,
        }


@dataclass(frozen=True)
class Actor:
    """The caller of a decision, delegation or macro run."""
    id: str
    role: Optional[str] = None


@dataclass
class Event:
    """A single lifecycle occurrence fed into the pipeline.

    ``record`` is the post-mutation snapshot for create/update and the
    pre-deletion snapshot for delete. ``depth`` counts how many
    action-driven hops separate this event from an external one.
    """
    type: EventType
    module_id: str
    record: dict[str, Any] = field(default_factory=dict)
    changed_fields: Optional[list[str]] = None
    previous: Optional[dict[str, Any]] = None
    webform_id: Optional[str] = None
    definition_id: Optional[str] = None
    actor_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    depth: int = 0
    event_id: str = field(default_factory=new_id)
    timestamp: float = 0

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = time.time()

    @property
    def record_id(self) -> Optional[str]:
        return self.record.get("id")

    def run_key(self, definition_id: str) -> Optional[str]:
        """Idempotency key for running ``definition_id`` on this event.

        An event aimed at one definition uses its key as-is; otherwise the
        definition id is appended so each matched definition runs once.
        """
        if not self.idempotency_key:
            return None
        if self.definition_id == definition_id:
            return self.idempotency_key
        return f"{self.idempotency_key}:{definition_id}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            type=EventType(data["type"]),
            module_id=data.get("module_id") or data.get("moduleId"),
            record=dict(data.get("record") or {}),
            changed_fields=data.get("changed_fields", data.get("changedFields")),
            previous=data.get("previous"),
            webform_id=data.get("webform_id"),
            definition_id=data.get("definition_id"),
            actor_id=data.get("actor_id"),
            idempotency_key=data.get("idempotency_key", data.get("idempotencyKey")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "module_id": self.module_id,
            "record_id": self.record_id,
            "changed_fields": self.changed_fields,
            "webform_id": self.webform_id,
            "definition_id": self.definition_id,
            "actor_id": self.actor_id,
            "idempotency_key": self.idempotency_key,
            "depth": self.depth,
            "timestamp": self.timestamp,
        }


@dataclass
class Result:
    """Typed outcome of a decision, delegation or macro call."""
    ok: bool
    value: Any = None
    error_code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error_code: str, message: Optional[str] = None) -> "Result":
        return cls(ok=False, error_code=error_code, message=message)


def lookup_field(record: dict[str, Any], name: str) -> Any:
    """Resolve a field against system columns first, then the data blob."""
    if name in record and name != "data":
        return record[name]
    data = record.get("data")
    if isinstance(data, dict):
        return data.get(name)
    return None
