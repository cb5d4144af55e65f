"""Core engine components."""

from .config import ConfigLoader, DefinitionSet, EngineConfig
from .state import StateManager
from .errors import (
    EngineError,
    ConfigError,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    ExecutionError,
    CycleDetectedError,
)

__all__ = [
    "ConfigLoader",
    "DefinitionSet",
    "EngineConfig",
    "StateManager",
    "EngineError",
    "ConfigError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ExecutionError",
    "CycleDetectedError",
]
