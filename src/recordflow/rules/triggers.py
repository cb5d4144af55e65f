"""Matching lifecycle events against workflow and approval definitions."""

from typing import Any, Optional, Sequence, Union

import structlog

from ..core.errors import ValidationError
from ..core.models import (
    ApprovalProcessDefinition,
    AutomationDefinition,
    Condition,
    Event,
    EventType,
    FieldType,
    Operator,
    TriggerType,
)
from .evaluator import ConditionEvaluator


logger = structlog.get_logger()

Definition = Union[AutomationDefinition, ApprovalProcessDefinition]

WILDCARD = "*"

EVENT_TRIGGERS: dict[EventType, frozenset[TriggerType]] = {
    EventType.CREATE: frozenset({TriggerType.ON_CREATE, TriggerType.RECORD_CREATE}),
    EventType.UPDATE: frozenset({
        TriggerType.ON_UPDATE,
        TriggerType.FIELD_CHANGE,
        TriggerType.STAGE_TRANSITION,
    }),
    EventType.DELETE: frozenset({TriggerType.ON_DELETE}),
    EventType.SCHEDULED: frozenset({TriggerType.SCHEDULED}),
    EventType.WEBFORM: frozenset({TriggerType.WEBFORM}),
    EventType.MANUAL: frozenset({TriggerType.MANUAL}),
}


def changed_field_set(event: Event) -> Optional[set[str]]:
    """Fields changed by an update event, or None when unknown."""
    if event.changed_fields is not None:
        return set(event.changed_fields)
    if event.previous is None:
        return None
    changed = set()
    for key in set(event.previous) | set(event.record):
        if key == "data":
            continue
        if event.previous.get(key) != event.record.get(key):
            changed.add(key)
    before = event.previous.get("data") or {}
    after = event.record.get("data") or {}
    for key in set(before) | set(after):
        if before.get(key) != after.get(key):
            changed.add(key)
    return changed


def definition_sort_key(definition: Definition) -> tuple[int, float, str]:
    """Priority ascending, then oldest first, then id."""
    return (definition.priority, definition.created_at, definition.id)


class TriggerMatcher:
    """
    Filters definitions down to those an event should fire, in run order.

    Side-effect free: the caller decides what to do with the matches.
    """

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or ConditionEvaluator()

    def match(
        self,
        event: Event,
        definitions: Sequence[Definition],
        field_types: Optional[dict[str, FieldType]] = None,
    ) -> list[Definition]:
        matches = []
        for definition in definitions:
            if not definition.is_enabled:
                continue
            if definition.module_id != event.module_id:
                continue
            if not self._matches_trigger(definition, event):
                continue
            if not self._conditions_met(definition, event, field_types):
                continue
            matches.append(definition)

        matches.sort(key=definition_sort_key)
        return matches

    def _matches_trigger(self, definition: Definition, event: Event) -> bool:
        """Check trigger type and its type-specific configuration."""
        trigger_type = definition.trigger_type
        if trigger_type is None or trigger_type not in EVENT_TRIGGERS[event.type]:
            return False

        config = definition.trigger_config or {}

        if trigger_type == TriggerType.ON_UPDATE:
            watched = _as_list(config.get("watch_fields"))
            if not watched:
                return True
            changed = changed_field_set(event)
            return bool(changed and changed.intersection(watched))

        if trigger_type == TriggerType.FIELD_CHANGE:
            return self._matches_field_change(config, event)

        if trigger_type == TriggerType.STAGE_TRANSITION:
            return self._matches_stage_transition(config, event)

        if trigger_type == TriggerType.WEBFORM:
            webform_id = config.get("webform_id")
            return webform_id is None or webform_id == event.webform_id

        if trigger_type in (TriggerType.SCHEDULED, TriggerType.MANUAL):
            return event.definition_id is None or event.definition_id == definition.id

        return True

    def _matches_field_change(self, config: dict[str, Any], event: Event) -> bool:
        changed = changed_field_set(event)
        if not changed:
            return False

        watched = _as_list(config.get("field", config.get("fields")))
        hits = changed.intersection(watched) if watched else changed
        if not hits:
            return False

        condition = config.get("condition")
        if not condition:
            return True
        try:
            op = Operator(condition.get("operator", "equals"))
        except ValueError:
            logger.warning("field_change_condition_invalid", operator=condition.get("operator"))
            return False
        return any(
            self.evaluator.evaluate(event.record, Condition(field, op, condition.get("value")))
            for field in sorted(hits)
        )

    def _matches_stage_transition(self, config: dict[str, Any], event: Event) -> bool:
        changed = changed_field_set(event)
        if changed is not None and "stage" not in changed:
            return False

        new_stage = event.record.get("stage")
        old_stage = event.previous.get("stage") if event.previous is not None else None
        if event.previous is not None and old_stage == new_stage:
            return False

        stage_from = config.get("stage_from")
        stage_to = config.get("stage_to")
        if stage_from not in (None, WILDCARD):
            if event.previous is None or old_stage != stage_from:
                return False
        if stage_to not in (None, WILDCARD) and new_stage != stage_to:
            return False
        return True

    def _conditions_met(
        self,
        definition: Definition,
        event: Event,
        field_types: Optional[dict[str, FieldType]],
    ) -> bool:
        try:
            tree = self.evaluator.validate(definition.conditions, field_types)
        except ValidationError as e:
            logger.warning(
                "definition_conditions_invalid",
                definition_id=definition.id,
                error=e.message,
            )
            return False
        return self.evaluator.evaluate(event.record, tree, field_types)


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)
