"""
Condition evaluation and value resolution.

Conditions are ``{field, operator, value}`` dicts used by trigger blocks and
decision outcomes. Every failure mode evaluates to False; nothing here raises.
"""
import logging
import numbers
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Optional

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from pydantic import ValidationError

from flow_engine.conf import get_setting
from flow_engine.schemas import Condition
from flow_engine.services.accessors import RecordAccessor
from flow_engine.services.context import ExecutionContext

logger = logging.getLogger(__name__)


def resolve_value(value: Any, context: Optional[ExecutionContext]) -> Any:
    """
    Substitute a ``$name`` reference with ``context.variables[name]``.

    Unknown variables and non-references come back unchanged. Substitution is
    single level: a resolved value is never resolved again.
    """
    prefix = get_setting('VARIABLE_PREFIX')
    if not isinstance(value, str) or not value.startswith(prefix):
        return value

    name = value[len(prefix):]
    if context is not None and name in context.variables:
        return context.variables[name]
    return value


def _is_number(value) -> bool:
    return isinstance(value, numbers.Number) and not isinstance(value, bool)


def _to_text(value) -> str:
    return '' if value is None else str(value)


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _parse_temporal(value):
    if isinstance(value, (date, datetime)):
        return value
    if isinstance(value, str):
        parsed = parse_datetime(value) or parse_date(value)
        if parsed is not None:
            return parsed
    raise TypeError(f"Cannot compare a date with {value!r}")


def _align_temporal(left, right):
    """Bring a date/datetime pair to comparable types."""
    right = _parse_temporal(right)

    if isinstance(left, datetime):
        if not isinstance(right, datetime):
            right = datetime.combine(right, time.min)
        if timezone.is_aware(left) and timezone.is_naive(right):
            right = timezone.make_aware(right)
        elif timezone.is_naive(left) and timezone.is_aware(right):
            left = timezone.make_aware(left)
    elif isinstance(right, datetime):
        right = right.date()

    return left, right


def _cmp(left, right) -> int:
    return (left > right) - (left < right)


def compare_values(left: Any, right: Any) -> int:
    """
    Three-way comparison: numeric when both are numbers, temporal when the
    left operand is a date/datetime, otherwise on the string forms.
    """
    if _is_number(left) and _is_number(right):
        return _cmp(left, right)
    if isinstance(left, date):
        return _cmp(*_align_temporal(left, right))
    return _cmp(_to_text(left), _to_text(right))


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    'equals': lambda left, right: left == right,
    'not_equals': lambda left, right: left != right,
    'greater_than': lambda left, right: compare_values(left, right) > 0,
    'less_than': lambda left, right: compare_values(left, right) < 0,
    'greater_than_or_equal': lambda left, right: compare_values(left, right) >= 0,
    'less_than_or_equal': lambda left, right: compare_values(left, right) <= 0,
    'contains': lambda left, right: _to_text(right).lower() in _to_text(left).lower(),
    'not_contains': lambda left, right: _to_text(right).lower() not in _to_text(left).lower(),
    'starts_with': lambda left, right: _to_text(left).lower().startswith(_to_text(right).lower()),
    'ends_with': lambda left, right: _to_text(left).lower().endswith(_to_text(right).lower()),
    'is_empty': lambda left, right: _is_blank(left),
    'is_not_empty': lambda left, right: not _is_blank(left),
}


def get_field_value(
    field_api_name: str,
    context: Optional[ExecutionContext],
    record: Optional[RecordAccessor] = None
) -> Any:
    """Read a field from the bound record, or a variable when none is bound."""
    if record is None and context is not None:
        record = context.trigger_record

    if record is not None:
        return record.get_field(field_api_name)
    if context is not None:
        return context.variables.get(field_api_name)
    return None


def evaluate_condition(
    condition,
    context: Optional[ExecutionContext] = None,
    record: Optional[RecordAccessor] = None
) -> bool:
    """
    Evaluate one condition against ``record`` (default: the context's
    trigger record).

    Unknown operators, malformed conditions and values that cannot be
    compared all evaluate to False.
    """
    try:
        if not isinstance(condition, Condition):
            condition = Condition.model_validate(condition)
    except ValidationError:
        logger.debug(f"Malformed condition ignored: {condition!r}")
        return False

    if not condition.field or not condition.operator:
        return False

    operator = OPERATORS.get(condition.operator)
    if operator is None:
        logger.debug(f"Unknown condition operator '{condition.operator}'")
        return False

    left = get_field_value(condition.field, context, record)
    right = resolve_value(condition.value, context)

    try:
        return bool(operator(left, right))
    except (TypeError, ValueError, ArithmeticError) as e:
        logger.debug(
            f"Condition {condition.field} {condition.operator} {right!r} "
            f"could not be evaluated: {e}"
        )
        return False


def evaluate_all(conditions, context=None, record=None) -> bool:
    """AND of every condition; an empty list passes."""
    return all(evaluate_condition(c, context, record) for c in conditions)
