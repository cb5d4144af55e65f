"""Engine error definitions."""

import hashlib
from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Expected outcome, surfaced to the caller
    MEDIUM = "medium"     # Tenant data problem, logged
    HIGH = "high"         # Operator attention
    CRITICAL = "critical" # Aborts the event pipeline


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    VALIDATION = "validation"         # Malformed definition or input
    AUTHORIZATION = "authorization"   # Actor lacks permission
    NOT_FOUND = "not_found"           # Unknown id
    CONFLICT = "conflict"             # Optimistic-concurrency loss
    EXECUTION = "execution"           # Action handler failure
    SAFETY = "safety"                 # Recursion guard
    CONFIG = "config"                 # Configuration loading


class EngineError(Exception):
    """Base exception for all engine errors."""

    code = "engine_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.VALIDATION,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        components = [
            self.__class__.__name__,
            self.code,
            str(self.context.get("definition_id", "")),
            str(self.context.get("record_id", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(EngineError):
    """Configuration loading or validation error."""

    code = "config_error"

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CONFIG)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class ValidationError(EngineError):
    """Malformed condition tree, operator/field-type mismatch or bad step."""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)
        if field is not None:
            self.context["field"] = field


class AuthorizationError(EngineError):
    """Actor lacks the role or assignment required for an operation."""

    code = "not_authorized"

    def __init__(self, message: str, actor_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.AUTHORIZATION)
        super().__init__(message, **kwargs)
        self.context["actor_id"] = actor_id


class NotFoundError(EngineError):
    """Unknown request, step, record or definition id."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[str], **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        super().__init__(f"{entity} not found: {entity_id}", **kwargs)
        self.context["entity"] = entity
        self.context["entity_id"] = entity_id


class ConflictError(EngineError):
    """Optimistic-concurrency loss on an approval transition."""

    ALREADY_DECIDED = "already_decided"
    ALREADY_TERMINAL = "already_terminal"
    ALREADY_OPEN = "already_open"

    def __init__(self, code: str, message: Optional[str] = None, request_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.CONFLICT)
        super().__init__(message or code, code=code, **kwargs)
        self.context["request_id"] = request_id


class ExecutionError(EngineError):
    """Action handler failure. ``fatal`` aborts the remaining chain."""

    code = "execution_failed"

    def __init__(
        self,
        message: str,
        fatal: bool = False,
        action_kind: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH if fatal else ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("retryable", not fatal)
        super().__init__(message, **kwargs)
        self.fatal = fatal
        self.context["action_kind"] = action_kind


class CycleDetectedError(EngineError):
    """Recursion guard tripped for a record/trigger pair."""

    code = "cycle_detected"

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        trigger: Optional[str] = None,
        depth: int = 0,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.SAFETY)
        super().__init__(message, **kwargs)
        self.context["record_id"] = record_id
        self.context["trigger"] = trigger
        self.context["depth"] = depth
