"""Configuration loading and validation."""

import json
import hashlib
from pathlib import Path
from typing import Any, Optional, Union
from dataclasses import dataclass, field

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
import jsonschema
import structlog

from .errors import ConfigError, ValidationError
from .models import (
    ApprovalProcessDefinition,
    ApproverType,
    AutomationDefinition,
    DefinitionKind,
    FieldType,
    WebformDefinition,
)


logger = structlog.get_logger()


class RecursionConfig(BaseModel):
    """Bound on chains of action-driven events."""
    max_depth: int = Field(default=5, ge=1, le=50)


class ExecutionConfig(BaseModel):
    """Action executor limits."""
    max_actions_per_run: int = Field(default=50, ge=1, le=500)
    webhook_timeout_seconds: float = Field(default=10.0, ge=0.5, le=120.0)


class SweeperConfig(BaseModel):
    """Approval timeout sweeper."""
    enabled: bool = Field(default=True)
    interval_seconds: float = Field(default=60.0, ge=1.0)


class WorkerPoolConfig(BaseModel):
    """Supervised pool for deferred event processing."""
    size: int = Field(default=3, ge=1, le=32)
    queue_size: int = Field(default=1000, ge=1)
    failure_history: int = Field(default=100, ge=1)


class ScheduleConfig(BaseModel):
    """Scheduled-trigger polling."""
    enabled: bool = Field(default=True)
    check_interval_seconds: float = Field(default=30.0, ge=1.0, le=60.0)


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)


class EngineConfig(BaseModel):
    """Main engine configuration."""
    name: str = Field(default="recordflow")
    version: str = Field(default="0.1.0")

    recursion: RecursionConfig = Field(default_factory=RecursionConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    workers: WorkerPoolConfig = Field(default_factory=WorkerPoolConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # Paths
    database_path: str = Field(default="./data/recordflow.db")
    definitions_directory: str = Field(default="./config/definitions")

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


_ACTION_SCHEMA = {
    "type": "object",
    "anyOf": [{"required": ["kind"]}, {"required": ["type"]}],
    "properties": {
        "kind": {"type": "string"},
        "type": {"type": "string"},
        "payload": {"type": "object"},
    },
}

_DEFINITION_BASE = {
    "id": {"type": "string", "minLength": 1},
    "module_id": {"type": "string", "minLength": 1},
    "name": {"type": "string"},
    "is_enabled": {"type": "boolean"},
    "priority": {"type": "integer"},
    "trigger_config": {"type": "object"},
    "conditions": {"type": ["object", "array", "null"]},
}

DEFINITIONS_SCHEMA = {
    "type": "object",
    "properties": {
        "modules": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "additionalProperties": {"enum": [t.value for t in FieldType]},
            },
        },
        "directory": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id"],
                "properties": {
                    "id": {"type": "string"},
                    "role": {"type": ["string", "null"]},
                    "manager_id": {"type": ["string", "null"]},
                    "is_active": {"type": "boolean"},
                },
            },
        },
        "workflows": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "module_id", "trigger_type"],
                "properties": {
                    **_DEFINITION_BASE,
                    "trigger_type": {"type": "string"},
                    "actions": {"type": "array", "items": _ACTION_SCHEMA},
                },
            },
        },
        "macros": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "module_id"],
                "properties": {
                    **_DEFINITION_BASE,
                    "allowed_roles": {"type": "array", "items": {"type": "string"}},
                    "actions": {"type": "array", "items": _ACTION_SCHEMA},
                },
            },
        },
        "approval_processes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "module_id", "steps"],
                "properties": {
                    **_DEFINITION_BASE,
                    "trigger_type": {"type": "string"},
                    "steps": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "required": ["type"],
                            "properties": {
                                "type": {"enum": [t.value for t in ApproverType]},
                                "value": {"type": ["string", "null"]},
                                "timeout_hours": {"type": ["number", "null"], "exclusiveMinimum": 0},
                            },
                        },
                    },
                    "on_approve_actions": {"type": "array", "items": _ACTION_SCHEMA},
                    "on_reject_actions": {"type": "array", "items": _ACTION_SCHEMA},
                    "auto_approve_after_hours": {"type": ["number", "null"], "exclusiveMinimum": 0},
                },
            },
        },
        "webforms": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "module_id"],
                "properties": {
                    "id": {"type": "string"},
                    "module_id": {"type": "string"},
                    "hidden_fields": {"type": "object"},
                    "dedupe": {
                        "type": "object",
                        "properties": {
                            "enabled": {"type": "boolean"},
                            "fields": {"type": "array", "items": {"type": "string"}},
                            "strategy": {"enum": ["skip", "update", "create_duplicate"]},
                        },
                    },
                },
            },
        },
    },
}


@dataclass
class DefinitionSet:
    """Everything declared by one or more definition files."""
    modules: dict[str, dict[str, FieldType]] = field(default_factory=dict)
    directory: list[dict[str, Any]] = field(default_factory=list)
    workflows: list[AutomationDefinition] = field(default_factory=list)
    macros: list[AutomationDefinition] = field(default_factory=list)
    approval_processes: list[ApprovalProcessDefinition] = field(default_factory=list)
    webforms: list[WebformDefinition] = field(default_factory=list)

    def merge(self, other: "DefinitionSet") -> None:
        for module_id, fields in other.modules.items():
            self.modules.setdefault(module_id, {}).update(fields)
        self.directory.extend(other.directory)
        self.workflows.extend(other.workflows)
        self.macros.extend(other.macros)
        self.approval_processes.extend(other.approval_processes)
        self.webforms.extend(other.webforms)


def validate_definition(
    definition: Union[AutomationDefinition, ApprovalProcessDefinition],
    field_types: Optional[dict[str, FieldType]] = None,
) -> None:
    """
    Save-time checks for a definition.

    Raises ValidationError for a malformed condition tree, an operator that
    does not fit a field's declared type, or an unresolvable approver step.
    """
    from ..rules.evaluator import ConditionEvaluator

    ConditionEvaluator().validate(definition.conditions, field_types)

    if isinstance(definition, ApprovalProcessDefinition):
        if not definition.steps:
            raise ValidationError(f"Approval process {definition.id} has no steps")
        for index, step in enumerate(definition.steps):
            if step.type in (ApproverType.ROLE, ApproverType.USER) and not step.value:
                raise ValidationError(
                    f"Step {index} of {definition.id} needs a {step.type.value} value",
                    field=f"steps[{index}].value",
                )
    elif definition.kind == DefinitionKind.WORKFLOW and definition.trigger_type is None:
        raise ValidationError(f"Workflow {definition.id} has no trigger_type")


class ConfigLoader:
    """Loads and validates YAML/JSON configurations."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load_engine_config(self, path: Optional[str] = None) -> EngineConfig:
        """Load main engine configuration."""
        if path is None:
            path = self.config_dir / "engine.yaml"
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return EngineConfig(**data)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid engine config: {e}", config_path=str(path))

    def load_definitions(self, directory: Optional[str] = None) -> DefinitionSet:
        """Load and validate every definition file in a directory."""
        if directory is None:
            directory = self.config_dir / "definitions"
        else:
            directory = Path(directory)

        result = DefinitionSet()
        if not directory.exists():
            return result

        paths = sorted(
            list(directory.glob("**/*.yaml"))
            + list(directory.glob("**/*.yml"))
            + list(directory.glob("**/*.json"))
        )
        for file_path in paths:
            result.merge(self._load_definitions_file(file_path))

        for definition in result.workflows + result.macros + result.approval_processes:
            try:
                validate_definition(definition, result.modules.get(definition.module_id))
            except ValidationError as e:
                raise ConfigError(f"Invalid definition {definition.id}: {e.message}")

        logger.info(
            "definitions_loaded",
            workflows=len(result.workflows),
            macros=len(result.macros),
            approval_processes=len(result.approval_processes),
            webforms=len(result.webforms),
        )
        return result

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()

            if path.suffix in (".yaml", ".yml"):
                return yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                return json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

    def _load_definitions_file(self, path: Path) -> DefinitionSet:
        data = self._load_file(path)
        try:
            jsonschema.validate(data, DEFINITIONS_SCHEMA)
        except jsonschema.ValidationError as e:
            location = "/".join(str(p) for p in e.absolute_path)
            raise ConfigError(f"Schema violation at {location or '<root>'}: {e.message}", config_path=str(path))

        try:
            return DefinitionSet(
                modules={
                    module_id: {name: FieldType(t) for name, t in fields.items()}
                    for module_id, fields in data.get("modules", {}).items()
                },
                directory=list(data.get("directory", [])),
                workflows=[
                    AutomationDefinition.from_dict(d, kind=DefinitionKind.WORKFLOW)
                    for d in data.get("workflows", [])
                ],
                macros=[
                    AutomationDefinition.from_dict(d, kind=DefinitionKind.MACRO)
                    for d in data.get("macros", [])
                ],
                approval_processes=[
                    ApprovalProcessDefinition.from_dict(d)
                    for d in data.get("approval_processes", [])
                ],
                webforms=[WebformDefinition.from_dict(d) for d in data.get("webforms", [])],
            )
        except (KeyError, ValueError) as e:
            raise ConfigError(f"Invalid definition in {path.name}: {e}", config_path=str(path))
