"""
Condition evaluation and field-path resolution.

Conditions compare a field of the evaluation context (a plain dict built by
the engine from process fields and instance variables) against a literal
or another field. Comparison is forgiving in the way the host system's data
needs: strings compare case-insensitively, numeric strings compare as
numbers, ``"yes"``/``"1"`` compare as booleans, and dates accept ISO text
or relative tokens (``@today``, ``@today+7``, ``@today-1``, ``@now``).

Field paths use dot notation with optional list indexing:
``process.department``, ``variables.laptops[0].serial``.
"""

import json
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog

from core.constants import ConditionLogic, ConditionOperator
from workflow.models import Condition, ConditionGroup

logger = structlog.get_logger(__name__)


class _Missing:
    """Marker for a path that does not resolve (distinct from a None value)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

_INDEXED_PART = re.compile(r"^(\w+)\[(\d+)\]$")
_TOKEN = re.compile(r"\{\{([^}]+)\}\}")
_RELATIVE_DAY = re.compile(r"^@today([+-])(\d+)$")
_TRUE_STRINGS = ("true", "yes", "1")


# ─── Path resolution ───────────────────────────────────────────────────


def resolve_path(path: str, context: Any, default: Any = None) -> Any:
    """Resolve a dot path like ``process.manager.email`` or ``items[2].name``.

    Returns ``default`` when any segment is missing.
    """
    value = _lookup(path, context)
    return default if value is MISSING else value


def _lookup(path: str, context: Any) -> Any:
    if not path:
        return MISSING

    value = context
    for part in path.strip().split("."):
        if value is None or value is MISSING:
            return MISSING

        indexed = _INDEXED_PART.match(part)
        if indexed:
            name, index = indexed.group(1), int(indexed.group(2))
            value = _get(value, name)
            if not isinstance(value, (list, tuple)) or index >= len(value):
                return MISSING
            value = value[index]
        else:
            value = _get(value, part)
    return value


def _get(container: Any, key: str) -> Any:
    if isinstance(container, dict):
        return container.get(key, MISSING)
    if isinstance(container, (list, tuple)) and key.isdigit():
        index = int(key)
        return container[index] if index < len(container) else MISSING
    return MISSING


def stringify(value: Any) -> str:
    """Render a resolved value for text templates."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


# ─── Coercion helpers ──────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        try:
            return float(text)
        except ValueError:
            return None
    return None


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if _is_number(value):
        return value != 0
    return bool(value)


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _relative_date(expression: str, now: datetime) -> Optional[datetime]:
    if expression == "@now":
        return now
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if expression == "@today":
        return midnight
    match = _RELATIVE_DAY.match(expression)
    if match:
        offset = int(match.group(2))
        return midnight + timedelta(days=offset if match.group(1) == "+" else -offset)
    return None


def to_datetime(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Coerce ISO strings, dates, epoch milliseconds and relative tokens to an aware datetime."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    now = now or datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return _utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("@"):
            return _relative_date(text, now)
        try:
            return _utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    if _is_number(value):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return None


# ─── Evaluator ─────────────────────────────────────────────────────────


class ConditionEvaluator:
    """Pure predicate evaluation over a context dict."""

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def evaluate_conditions(self, conditions: Iterable[Condition], context: Dict[str, Any]) -> bool:
        """All conditions must hold. An empty list holds."""
        return all(self.evaluate_condition(c, context) for c in conditions or [])

    def evaluate_condition_groups(self, groups: Iterable[ConditionGroup], context: Dict[str, Any]) -> bool:
        """Groups are ANDed together. An empty list holds."""
        return all(self.evaluate_condition_group(g, context) for g in groups or [])

    def evaluate_condition_group(self, group: ConditionGroup, context: Dict[str, Any]) -> bool:
        if not group.conditions:
            return True
        results = (self.evaluate_condition(c, context) for c in group.conditions)
        if group.logic == ConditionLogic.OR:
            return any(results)
        return all(results)

    def evaluate_condition(self, condition: Condition, context: Dict[str, Any]) -> bool:
        field_value = resolve_path(condition.field, context)
        compare_value = condition.value
        if condition.value_field:
            compare_value = resolve_path(condition.value_field, context)

        try:
            return self._compare(field_value, condition.operator, compare_value)
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning(
                "Condition evaluation failed",
                field=condition.field,
                operator=str(condition.operator),
                error=str(e),
            )
            return False

    def _compare(self, field_value: Any, operator: ConditionOperator, compare_value: Any) -> bool:
        op = ConditionOperator(operator)
        if op == ConditionOperator.EQUALS:
            return self._equals(field_value, compare_value)
        if op == ConditionOperator.NOT_EQUALS:
            return not self._equals(field_value, compare_value)
        if op == ConditionOperator.CONTAINS:
            if isinstance(field_value, str) and isinstance(compare_value, str):
                return compare_value.lower() in field_value.lower()
            if isinstance(field_value, (list, tuple)):
                return any(self._equals(item, compare_value) for item in field_value)
            return False
        if op == ConditionOperator.STARTS_WITH:
            return (
                isinstance(field_value, str)
                and isinstance(compare_value, str)
                and field_value.lower().startswith(compare_value.lower())
            )
        if op == ConditionOperator.ENDS_WITH:
            return (
                isinstance(field_value, str)
                and isinstance(compare_value, str)
                and field_value.lower().endswith(compare_value.lower())
            )
        if op == ConditionOperator.GREATER_THAN:
            return self._ordered(field_value, compare_value) > 0
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL:
            return self._ordered(field_value, compare_value) > 0 or self._equals(field_value, compare_value)
        if op == ConditionOperator.LESS_THAN:
            return self._ordered(field_value, compare_value) < 0
        if op == ConditionOperator.LESS_THAN_OR_EQUAL:
            return self._ordered(field_value, compare_value) < 0 or self._equals(field_value, compare_value)
        if op == ConditionOperator.IS_EMPTY:
            return self._is_empty(field_value)
        if op == ConditionOperator.IS_NOT_EMPTY:
            return not self._is_empty(field_value)
        if op == ConditionOperator.IN:
            return self._in(field_value, compare_value)
        if op == ConditionOperator.NOT_IN:
            return not self._in(field_value, compare_value)

        now = self._clock()
        left, right = to_datetime(field_value, now), to_datetime(compare_value, now)
        if left is None or right is None:
            return False
        if op == ConditionOperator.DATE_BEFORE:
            return left < right
        if op == ConditionOperator.DATE_AFTER:
            return left > right
        return left.date() == right.date()

    def _equals(self, left: Any, right: Any) -> bool:
        if left is right or (type(left) is type(right) and left == right):
            return True
        if isinstance(left, str) and isinstance(right, str):
            return left.lower() == right.lower()
        if _is_number(left) or _is_number(right):
            a, b = _to_number(left), _to_number(right)
            return a is not None and b is not None and a == b
        if isinstance(left, bool) or isinstance(right, bool):
            return to_bool(left) == to_bool(right)
        return False

    def _ordered(self, left: Any, right: Any) -> int:
        """-1/0/1 ordering by number, falling back to dates; 0 when not comparable."""
        a, b = _to_number(left), _to_number(right)
        if a is None or b is None:
            now = self._clock()
            da, db = to_datetime(left, now), to_datetime(right, now)
            if da is None or db is None:
                return 0
            return (da > db) - (da < db)
        return (a > b) - (a < b)

    @staticmethod
    def _is_empty(value: Any) -> bool:
        if value is None or value is MISSING:
            return True
        if isinstance(value, str):
            return value.strip() == ""
        if isinstance(value, (list, tuple, dict, set)):
            return len(value) == 0
        return False

    def _in(self, value: Any, candidates: Any) -> bool:
        items: Optional[List[Any]] = None
        if isinstance(candidates, (list, tuple, set)):
            items = list(candidates)
        elif isinstance(candidates, str):
            try:
                parsed = json.loads(candidates)
                items = parsed if isinstance(parsed, list) else None
            except ValueError:
                items = [part.strip() for part in candidates.split(",")]
        if items is None:
            return False
        return any(self._equals(value, item) for item in items)

    # ─── Expressions & templates ─────────────────────────────────────

    def evaluate_expression(self, expression: Optional[str], context: Dict[str, Any]) -> Any:
        """Field reference first, then a JSON literal, else the raw string."""
        if not expression:
            return None
        if re.match(r"^[a-zA-Z_]", expression):
            value = _lookup(expression, context)
            if value is not MISSING:
                return value
        try:
            return json.loads(expression)
        except ValueError:
            return expression

    def replace_tokens(self, template: Optional[str], context: Dict[str, Any]) -> str:
        """Substitute ``{{path}}`` tokens; unresolved tokens are left as written."""
        if not template:
            return ""

        def _sub(match: "re.Match") -> str:
            value = _lookup(match.group(1).strip(), context)
            return match.group(0) if value is MISSING or value is None else stringify(value)

        return _TOKEN.sub(_sub, template)
