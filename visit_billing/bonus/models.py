"""Data models for the bonus engine."""
from __future__ import annotations

import calendar
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, ClassVar, Union


class InsuranceCategory(str, Enum):
    """Billing regimes; every rule belongs to exactly one."""

    MEDICAL = "medical"
    CARE = "care"  # long-term care insurance


class PointsMode(str, Enum):
    FIXED = "fixed"
    CONDITIONAL = "conditional"


class NumericOperator(str, Enum):
    EQ = "eq"
    GE = "ge"
    GT = "gt"
    LE = "le"
    LT = "lt"


class MatchMode(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    REGEX = "regex"


# ============================================================
# Conditions (one variant per kind)
# ============================================================


@dataclass(frozen=True)
class FlagCondition:
    """A capability or circumstance flag on the visit."""

    kind: ClassVar[str] = "flag"

    flag: str
    expected: bool = True

    def describe(self) -> str:
        return self.flag if self.expected else f"not {self.flag}"


@dataclass(frozen=True)
class FieldPresentCondition:
    """A free-text field (e.g. an emergency visit reason) is filled in."""

    kind: ClassVar[str] = "field_present"

    field: str

    def describe(self) -> str:
        return f"{self.field} recorded"


@dataclass(frozen=True)
class FieldMatchCondition:
    kind: ClassVar[str] = "field_match"

    field: str
    value: str
    mode: MatchMode = MatchMode.EQUALS

    def describe(self) -> str:
        return f"{self.field} {self.mode.value} {self.value!r}"


@dataclass(frozen=True)
class NumericCondition:
    """Compare a numeric visit metric against a threshold."""

    kind: ClassVar[str] = "numeric"

    metric: str
    operator: NumericOperator
    threshold: float

    def describe(self) -> str:
        symbols = {"eq": "==", "ge": ">=", "gt": ">", "le": "<=", "lt": "<"}
        threshold = int(self.threshold) if float(self.threshold).is_integer() else self.threshold
        return f"{self.metric} {symbols[self.operator.value]} {threshold}"


@dataclass(frozen=True)
class TimeWindowCondition:
    """Visit start falls in [start, end) local time; may wrap midnight."""

    kind: ClassVar[str] = "time_window"

    start: time
    end: time
    label: str | None = None

    def describe(self) -> str:
        window = f"{self.start:%H:%M}-{self.end:%H:%M}"
        return f"{self.label} ({window})" if self.label else f"start in {window}"


@dataclass(frozen=True)
class MonthlyCapCondition:
    """At most `limit` applications per patient per billing month."""

    kind: ClassVar[str] = "monthly_cap"

    limit: int = 1

    def describe(self) -> str:
        return f"at most {self.limit} per patient per month"


@dataclass(frozen=True)
class MonthlyCountCondition:
    """Compare the patient's earlier applications this month with a threshold.

    Backs tiered rules such as "first 14 emergency visits in the month".
    """

    kind: ClassVar[str] = "monthly_count"

    operator: NumericOperator
    threshold: int

    def describe(self) -> str:
        symbols = {"eq": "==", "ge": ">=", "gt": ">", "le": "<=", "lt": "<"}
        return f"earlier applications this month {symbols[self.operator.value]} {self.threshold}"


@dataclass(frozen=True)
class AllOfCondition:
    kind: ClassVar[str] = "all_of"

    conditions: tuple["Condition", ...]

    def describe(self) -> str:
        return " and ".join(c.describe() for c in self.conditions)


@dataclass(frozen=True)
class InvalidCondition:
    """Placeholder for a master-data entry that could not be parsed."""

    kind: ClassVar[str] = "invalid"

    raw: Any
    error: str

    def describe(self) -> str:
        return f"invalid condition ({self.error})"


Condition = Union[
    FlagCondition,
    FieldPresentCondition,
    FieldMatchCondition,
    NumericCondition,
    TimeWindowCondition,
    MonthlyCapCondition,
    MonthlyCountCondition,
    AllOfCondition,
    InvalidCondition,
]


@dataclass(frozen=True)
class ConditionBranch:
    """One points branch of a conditional rule."""

    condition: Condition
    points: int
    label: str | None = None

    @property
    def name(self) -> str:
        return self.label or self.condition.describe()


@dataclass(frozen=True)
class ConditionResult:
    matched: bool
    reason: str


# ============================================================
# Rule catalog
# ============================================================


@dataclass(frozen=True)
class RuleDefinition:
    """One version of a billing surcharge rule."""

    rule_code: str
    version: str
    display_name: str
    insurance_category: InsuranceCategory
    points_mode: PointsMode
    effective_from: date
    effective_to: date | None = None  # exclusive; None = open-ended
    fixed_points: int | None = None
    branches: tuple[ConditionBranch, ...] = ()
    requirements: tuple[Condition, ...] = ()
    active: bool = True
    display_order: int = 999
    can_combine_with: frozenset[str] = frozenset()
    cannot_combine_with: frozenset[str] = frozenset()

    def covers(self, as_of: date) -> bool:
        if as_of < self.effective_from:
            return False
        return self.effective_to is None or as_of < self.effective_to

    def overlaps(self, other: RuleDefinition) -> bool:
        self_end = self.effective_to or date.max
        other_end = other.effective_to or date.max
        return self.effective_from < other_end and other.effective_from < self_end

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_code": self.rule_code,
            "version": self.version,
            "display_name": self.display_name,
            "insurance_category": self.insurance_category.value,
            "points_mode": self.points_mode.value,
            "fixed_points": self.fixed_points,
            "branches": [
                {"condition": b.condition.describe(), "points": b.points, "label": b.label}
                for b in self.branches
            ],
            "requirements": [c.describe() for c in self.requirements],
            "effective_from": self.effective_from.isoformat(),
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "active": self.active,
            "display_order": self.display_order,
        }


# ============================================================
# Visits and billing periods
# ============================================================


@dataclass(frozen=True)
class VisitContext:
    """Inputs describing one clinical visit."""

    visit_id: str
    patient_id: str
    facility_id: str
    visit_date: date
    insurance_category: InsuranceCategory
    start_time: datetime | None = None
    end_time: datetime | None = None
    emergency_reason: str | None = None
    multi_staff_reason: str | None = None
    long_visit_reason: str | None = None
    patient_age: int | None = None
    daily_visit_ordinal: int = 1
    flags: frozenset[str] = frozenset()
    building_id: str | None = None
    # same-day visits by the facility to this building, including this one
    building_occupancy: int | None = None

    @property
    def duration_minutes(self) -> int | None:
        """Visit length floored to whole minutes, None when unknown."""
        if self.start_time is None or self.end_time is None:
            return None
        try:
            seconds = (self.end_time - self.start_time).total_seconds()
        except TypeError:
            # naive vs aware timestamps
            return None
        if seconds < 0:
            return None
        return math.floor(seconds / 60)

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags


@dataclass(frozen=True)
class BillingPeriod:
    """A calendar month; `end` is exclusive."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @classmethod
    def for_date(cls, value: date) -> BillingPeriod:
        return cls(value.year, value.month)

    @classmethod
    def parse(cls, value: str) -> BillingPeriod:
        """Parse 'YYYY-MM'."""
        year, _, month = value.partition("-")
        return cls(int(year), int(month))

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        last_day = calendar.monthrange(self.year, self.month)[1]
        return date(self.year, self.month, last_day) + timedelta(days=1)

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end


# ============================================================
# Results
# ============================================================


@dataclass(frozen=True)
class CalculatedBonus:
    """A surcharge that applies to a visit (not persisted by itself)."""

    rule_code: str
    version: str
    display_name: str
    points: int
    justification: str
    matched_condition: str
    conditions_passed: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_code": self.rule_code,
            "version": self.version,
            "display_name": self.display_name,
            "points": self.points,
            "justification": self.justification,
            "matched_condition": self.matched_condition,
            "conditions_passed": list(self.conditions_passed),
        }


@dataclass(frozen=True)
class BonusCalculationHistoryRecord:
    """Persisted decision: one rule applied to one visit."""

    visit_id: str
    rule_code: str
    version: str
    points: int
    calculated_at: str
    patient_id: str
    visit_date: date
    justification: str = ""

    @classmethod
    def from_bonus(
        cls, context: VisitContext, bonus: CalculatedBonus, calculated_at: str
    ) -> BonusCalculationHistoryRecord:
        return cls(
            visit_id=context.visit_id,
            rule_code=bonus.rule_code,
            version=bonus.version,
            points=bonus.points,
            calculated_at=calculated_at,
            patient_id=context.patient_id,
            visit_date=context.visit_date,
            justification=bonus.justification,
        )

    def decision_key(self) -> tuple[str, str, int]:
        """What must match for a persisted row to count as unchanged."""
        return (self.rule_code, self.version, self.points)

    def to_dict(self) -> dict[str, Any]:
        return {
            "visit_id": self.visit_id,
            "rule_code": self.rule_code,
            "version": self.version,
            "points": self.points,
            "calculated_at": self.calculated_at,
            "patient_id": self.patient_id,
            "visit_date": self.visit_date.isoformat(),
            "justification": self.justification,
        }


@dataclass(frozen=True)
class RuleIssue:
    """A rule skipped during calculation because of catalog problems."""

    rule_code: str
    kind: str  # "rule_not_found" | "ambiguous_version" | "invalid_rule"
    message: str
    visit_id: str | None = None


@dataclass
class CalculationReport:
    bonuses: list[CalculatedBonus] = field(default_factory=list)
    issues: list[RuleIssue] = field(default_factory=list)

    @property
    def rule_codes(self) -> list[str]:
        return [b.rule_code for b in self.bonuses]
