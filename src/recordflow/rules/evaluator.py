"""Condition evaluation for the rule engine."""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import structlog

from ..core.errors import ValidationError
from ..core.models import (
    Condition,
    ConditionGroup,
    ConditionNode,
    DATE_TYPES,
    FieldType,
    Logic,
    NUMERIC_TYPES,
    ORDERING_OPERATORS,
    Operator,
    TEXT_LIKE_TYPES,
    TEXT_OPERATORS,
    lookup_field,
)


logger = structlog.get_logger()


def parse_conditions(raw: Any) -> ConditionGroup:
    """
    Build a condition tree from its stored JSON form.

    A bare list is an implicit AND group; ``None`` or ``{}`` is an empty
    AND group, which matches everything. Raises ValidationError on a
    malformed node.
    """
    if raw is None or raw == {} or raw == []:
        return ConditionGroup(Logic.AND, ())
    if isinstance(raw, list):
        return ConditionGroup(Logic.AND, tuple(_parse_node(n) for n in raw))
    node = _parse_node(raw)
    if isinstance(node, Condition):
        return ConditionGroup(Logic.AND, (node,))
    return node


def _parse_node(raw: Any) -> ConditionNode:
    if isinstance(raw, (Condition, ConditionGroup)):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(f"Condition node must be an object, got {type(raw).__name__}")

    if "conditions" in raw or "logic" in raw:
        logic = str(raw.get("logic", "AND")).upper()
        try:
            logic_value = Logic(logic)
        except ValueError:
            raise ValidationError(f"Unknown group logic: {raw.get('logic')}")
        children = raw.get("conditions") or []
        if not isinstance(children, list):
            raise ValidationError("Group 'conditions' must be a list")
        return ConditionGroup(logic_value, tuple(_parse_node(c) for c in children))

    field = raw.get("field")
    if not field or not isinstance(field, str):
        raise ValidationError(f"Condition missing 'field': {raw}")
    try:
        op = Operator(raw.get("operator"))
    except ValueError:
        raise ValidationError(f"Unknown operator: {raw.get('operator')}", field=field)
    return Condition(field=field, operator=op, value=raw.get("value"))


class ConditionEvaluator:
    """
    Evaluates condition trees against records.

    ``evaluate`` never raises: unknown fields are null, non-comparable
    values make ordering operators false. Operator/field-type mismatches
    are rejected by ``validate`` instead.
    """

    def __init__(self):
        self._handlers: dict[Operator, Callable[[Any, Any, Optional[FieldType]], bool]] = {
            Operator.EQUALS: self._equals,
            Operator.NOT_EQUALS: lambda a, b, t: not self._equals(a, b, t),
            Operator.CONTAINS: lambda a, b, t: _text(b) in _text(a) if a is not None else False,
            Operator.STARTS_WITH: lambda a, b, t: _text(a).startswith(_text(b)) if a is not None else False,
            Operator.ENDS_WITH: lambda a, b, t: _text(a).endswith(_text(b)) if a is not None else False,
            Operator.GT: lambda a, b, t: self._order(a, b, t, lambda x, y: x > y),
            Operator.GTE: lambda a, b, t: self._order(a, b, t, lambda x, y: x >= y),
            Operator.LT: lambda a, b, t: self._order(a, b, t, lambda x, y: x < y),
            Operator.LTE: lambda a, b, t: self._order(a, b, t, lambda x, y: x <= y),
            Operator.IS_NULL: lambda a, b, t: _is_null(a),
            Operator.IS_NOT_NULL: lambda a, b, t: not _is_null(a),
        }

    def validate(
        self,
        node: Any,
        field_types: Optional[dict[str, FieldType]] = None,
    ) -> ConditionGroup:
        """
        Parse and check a condition tree for a module schema.

        Raises ValidationError when a text operator is used on a field
        declared as non-text. Fields missing from the schema are allowed.
        """
        tree = parse_conditions(node)
        self._check(tree, field_types or {})
        return tree

    def _check(self, node: ConditionNode, field_types: dict[str, FieldType]) -> None:
        if isinstance(node, ConditionGroup):
            for child in node.conditions:
                self._check(child, field_types)
            return

        declared = field_types.get(node.field)
        if declared is None:
            return
        if node.operator in TEXT_OPERATORS and declared not in TEXT_LIKE_TYPES:
            raise ValidationError(
                f"Operator '{node.operator.value}' is not valid for {declared.value} field '{node.field}'",
                field=node.field,
            )
        if node.operator in ORDERING_OPERATORS and declared in (FieldType.BOOLEAN, FieldType.MULTISELECT):
            raise ValidationError(
                f"Operator '{node.operator.value}' is not valid for {declared.value} field '{node.field}'",
                field=node.field,
            )

    def evaluate(
        self,
        record: dict[str, Any],
        node: Any,
        field_types: Optional[dict[str, FieldType]] = None,
    ) -> bool:
        """Evaluate a condition tree (or its raw JSON form) against a record.

        A malformed raw tree evaluates to False.
        """
        if not isinstance(node, (Condition, ConditionGroup)):
            try:
                node = parse_conditions(node)
            except ValidationError as e:
                logger.warning("condition_tree_invalid", error=e.message)
                return False
        return self._evaluate_node(record, node, field_types or {})

    def _evaluate_node(
        self,
        record: dict[str, Any],
        node: ConditionNode,
        field_types: dict[str, FieldType],
    ) -> bool:
        if isinstance(node, ConditionGroup):
            if node.logic == Logic.AND:
                for child in node.conditions:
                    if not self._evaluate_node(record, child, field_types):
                        return False
                return True
            # Empty OR is false
            for child in node.conditions:
                if self._evaluate_node(record, child, field_types):
                    return True
            return False

        value = lookup_field(record, node.field)
        try:
            return bool(self._handlers[node.operator](value, node.value, field_types.get(node.field)))
        except (TypeError, ValueError, ArithmeticError):
            return False

    # ==================== Comparison helpers ====================

    def _equals(self, actual: Any, expected: Any, field_type: Optional[FieldType]) -> bool:
        if _is_null(actual) or expected is None:
            return _is_null(actual) and expected is None

        if field_type in NUMERIC_TYPES or (field_type is None and _both_numeric(actual, expected)):
            left, right = _to_number(actual), _to_number(expected)
            return left is not None and left == right

        if field_type == FieldType.BOOLEAN or isinstance(actual, bool) or isinstance(expected, bool):
            left, right = _to_bool(actual), _to_bool(expected)
            return left is not None and left == right

        if field_type in DATE_TYPES:
            left, right = _to_datetime(actual), _to_datetime(expected)
            return left is not None and left == right

        if isinstance(actual, (list, tuple)):
            return list(actual) == (list(expected) if isinstance(expected, (list, tuple)) else [expected])

        return str(actual) == str(expected)

    def _order(
        self,
        actual: Any,
        expected: Any,
        field_type: Optional[FieldType],
        compare: Callable[[Any, Any], bool],
    ) -> bool:
        if _is_null(actual) or expected is None:
            return False
        if isinstance(actual, bool) or isinstance(expected, bool):
            return False

        if field_type not in DATE_TYPES:
            left, right = _to_number(actual), _to_number(expected)
            if left is not None and right is not None:
                return compare(left, right)

        left, right = _to_datetime(actual), _to_datetime(expected)
        if left is not None and right is not None:
            return compare(left, right)
        return False


def _text(value: Any) -> str:
    return "" if value is None else str(value).lower()


def _is_null(value: Any) -> bool:
    return value is None


def _both_numeric(a: Any, b: Any) -> bool:
    return (
        isinstance(a, (int, float, Decimal)) and not isinstance(a, bool)
    ) or (
        isinstance(b, (int, float, Decimal)) and not isinstance(b, bool)
    )


def _to_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return None
    return None


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text).replace(tzinfo=None)
        except ValueError:
            return None
    return None
