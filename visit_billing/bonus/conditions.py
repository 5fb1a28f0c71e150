"""Condition evaluation against a single visit.

Every condition kind has an evaluator registered in ``_EVALUATORS``.
Evaluation is pure: it reads only the condition and the visit context.
Missing or malformed operands never raise; they evaluate as not matched.
Monthly caps and monthly counts match here unconditionally because they
depend on persisted history, which the calculator checks separately.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from visit_billing.config import BILLING_TIMEZONE

from .models import (
    AllOfCondition,
    Condition,
    ConditionResult,
    FieldMatchCondition,
    FieldPresentCondition,
    FlagCondition,
    InvalidCondition,
    MatchMode,
    MonthlyCapCondition,
    MonthlyCountCondition,
    NumericCondition,
    NumericOperator,
    TimeWindowCondition,
    VisitContext,
)

logger = logging.getLogger(__name__)

# Text fields a condition may inspect
TEXT_FIELDS = frozenset(
    {
        "emergency_reason",
        "multi_staff_reason",
        "long_visit_reason",
        "facility_id",
    }
)

NUMERIC_METRICS: dict[str, Callable[[VisitContext], float | None]] = {
    "visit_duration_minutes": lambda ctx: ctx.duration_minutes,
    "patient_age": lambda ctx: ctx.patient_age,
    "daily_visit_ordinal": lambda ctx: ctx.daily_visit_ordinal,
    # a visit outside any shared building is the only one there
    "building_occupancy": lambda ctx: ctx.building_occupancy if ctx.building_id else 1,
}

_COMPARATORS: dict[NumericOperator, Callable[[float, float], bool]] = {
    NumericOperator.EQ: lambda value, threshold: value == threshold,
    NumericOperator.GE: lambda value, threshold: value >= threshold,
    NumericOperator.GT: lambda value, threshold: value > threshold,
    NumericOperator.LE: lambda value, threshold: value <= threshold,
    NumericOperator.LT: lambda value, threshold: value < threshold,
}


def _billing_zone() -> ZoneInfo | None:
    try:
        return ZoneInfo(BILLING_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown BILLING_TIMEZONE {BILLING_TIMEZONE!r}; using timestamps as-is")
        return None


_ZONE = _billing_zone()


def local_start_time(context: VisitContext) -> time | None:
    """Visit start as local wall-clock time in the billing timezone."""
    start = context.start_time
    if start is None:
        return None
    if start.tzinfo is not None and _ZONE is not None:
        start = start.astimezone(_ZONE)
    return start.time()


def _in_window(value: time, start: time, end: time) -> bool:
    if start <= end:
        return start <= value < end
    # wraps midnight, e.g. 22:00-06:00
    return value >= start or value < end


# ============================================================
# Per-kind evaluators
# ============================================================


def _evaluate_flag(condition: FlagCondition, context: VisitContext) -> ConditionResult:
    present = context.has_flag(condition.flag)
    matched = present == condition.expected
    state = "set" if present else "not set"
    return ConditionResult(matched, f"{condition.flag} {state}")


def _evaluate_field_present(
    condition: FieldPresentCondition, context: VisitContext
) -> ConditionResult:
    if condition.field not in TEXT_FIELDS:
        return ConditionResult(False, f"unknown field {condition.field}")
    value = getattr(context, condition.field)
    matched = value is not None and str(value).strip() != ""
    return ConditionResult(
        matched, f"{condition.field} recorded" if matched else f"{condition.field} empty"
    )


def _evaluate_field_match(
    condition: FieldMatchCondition, context: VisitContext
) -> ConditionResult:
    if condition.field not in TEXT_FIELDS:
        return ConditionResult(False, f"unknown field {condition.field}")
    value = getattr(context, condition.field)
    if value is None:
        return ConditionResult(False, f"{condition.field} empty")

    text = str(value)
    if condition.mode == MatchMode.EQUALS:
        matched = text == condition.value
    elif condition.mode == MatchMode.CONTAINS:
        matched = condition.value in text
    else:
        matched = re.search(condition.value, text) is not None

    verbs = {
        MatchMode.EQUALS: ("equals", "does not equal"),
        MatchMode.CONTAINS: ("contains", "does not contain"),
        MatchMode.REGEX: ("matches", "does not match"),
    }
    verb = verbs[condition.mode][0 if matched else 1]
    return ConditionResult(matched, f"{condition.field} {verb} {condition.value!r}")


def _evaluate_numeric(condition: NumericCondition, context: VisitContext) -> ConditionResult:
    getter = NUMERIC_METRICS.get(condition.metric)
    if getter is None:
        return ConditionResult(False, f"unknown metric {condition.metric}")
    value = getter(context)
    if value is None:
        return ConditionResult(False, f"{condition.metric} not available")

    comparator = _COMPARATORS[NumericOperator(condition.operator)]
    matched = comparator(float(value), float(condition.threshold))
    description = condition.describe()
    return ConditionResult(
        matched,
        f"{description} ({condition.metric}={value})"
        if matched
        else f"not {description} ({condition.metric}={value})",
    )


def _evaluate_time_window(
    condition: TimeWindowCondition, context: VisitContext
) -> ConditionResult:
    start = local_start_time(context)
    if start is None:
        return ConditionResult(False, "visit start time not recorded")
    matched = _in_window(start, condition.start, condition.end)
    return ConditionResult(
        matched,
        f"started {start:%H:%M}, {'within' if matched else 'outside'} {condition.describe()}",
    )


def _evaluate_monthly_cap(
    condition: MonthlyCapCondition, context: VisitContext
) -> ConditionResult:
    if condition.limit < 1:
        return ConditionResult(False, f"monthly limit {condition.limit} never allows billing")
    return ConditionResult(True, condition.describe())


def _evaluate_monthly_count(
    condition: MonthlyCountCondition, context: VisitContext
) -> ConditionResult:
    if condition.threshold < 0:
        return ConditionResult(False, f"negative monthly threshold {condition.threshold}")
    return ConditionResult(True, condition.describe())


def _evaluate_all_of(condition: AllOfCondition, context: VisitContext) -> ConditionResult:
    if not condition.conditions:
        return ConditionResult(False, "empty condition group")
    reasons: list[str] = []
    for nested in condition.conditions:
        result = evaluate_condition(nested, context)
        if not result.matched:
            return ConditionResult(False, result.reason)
        reasons.append(result.reason)
    return ConditionResult(True, "; ".join(reasons))


def _evaluate_invalid(condition: InvalidCondition, context: VisitContext) -> ConditionResult:
    return ConditionResult(False, f"malformed condition: {condition.error}")


_EVALUATORS: dict[type, Callable[[Condition, VisitContext], ConditionResult]] = {
    FlagCondition: _evaluate_flag,
    FieldPresentCondition: _evaluate_field_present,
    FieldMatchCondition: _evaluate_field_match,
    NumericCondition: _evaluate_numeric,
    TimeWindowCondition: _evaluate_time_window,
    MonthlyCapCondition: _evaluate_monthly_cap,
    MonthlyCountCondition: _evaluate_monthly_count,
    AllOfCondition: _evaluate_all_of,
    InvalidCondition: _evaluate_invalid,
}


def evaluate_condition(condition: Condition, context: VisitContext) -> ConditionResult:
    """Evaluate one condition against a visit.

    Total: unknown kinds and bad operands evaluate as not matched.
    """
    evaluator = _EVALUATORS.get(type(condition))
    if evaluator is None:
        return ConditionResult(False, f"unsupported condition type {type(condition).__name__}")
    try:
        return evaluator(condition, context)
    except (TypeError, ValueError, KeyError, AttributeError, re.error) as e:
        logger.warning(
            f"Condition {condition!r} could not be evaluated for visit "
            f"{context.visit_id}: {e}"
        )
        return ConditionResult(False, f"condition could not be evaluated: {e}")


def matches(condition: Condition, context: VisitContext) -> bool:
    return evaluate_condition(condition, context).matched


def compare(operator: NumericOperator | str, value: float, threshold: float) -> bool:
    return _COMPARATORS[NumericOperator(operator)](float(value), float(threshold))


def iter_aggregates(
    condition: Condition,
) -> Iterator[MonthlyCapCondition | MonthlyCountCondition]:
    """Yield every history-backed condition (caps and counts) in a condition."""
    if isinstance(condition, (MonthlyCapCondition, MonthlyCountCondition)):
        yield condition
    elif isinstance(condition, AllOfCondition):
        for nested in condition.conditions:
            yield from iter_aggregates(nested)


def parse_clock(value: str | time | datetime) -> time:
    """Parse 'HH:MM' (or 'H') into a time."""
    if isinstance(value, datetime):
        return value.time()
    if isinstance(value, time):
        return value
    text = str(value).strip()
    if ":" in text:
        hours, minutes = text.split(":", 1)
        return time(int(hours), int(minutes))
    return time(int(text))
