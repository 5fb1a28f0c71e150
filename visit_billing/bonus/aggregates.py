"""Cross-visit caps such as "once per patient per calendar month"."""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import date
from typing import Protocol

from .conditions import compare
from .models import BonusCalculationHistoryRecord, NumericOperator


class AggregateCounter(Protocol):
    """Source of committed history counts."""

    def count_applications(
        self,
        rule_code: str,
        patient_id: str,
        period_start: date,
        period_end: date,
        excluding_visit_id: str | None = None,
        pending_visit_ids: Collection[str] = (),
    ) -> int: ...


class MonthlyAggregateChecker:
    """Checks a rule's per-patient cap against committed history.

    Only committed decisions are visible through the counter, so the
    recalculation pass must commit each visit before evaluating the next.
    Rows of visits still pending in the pass are stale and never counted.
    """

    def __init__(self, counter: AggregateCounter) -> None:
        self.counter = counter

    def count(
        self,
        rule_code: str,
        patient_id: str,
        period_start: date,
        period_end: date,
        excluding_visit_id: str | None = None,
        pending_visit_ids: Collection[str] = (),
    ) -> int:
        return self.counter.count_applications(
            rule_code,
            patient_id,
            period_start,
            period_end,
            excluding_visit_id,
            pending_visit_ids,
        )

    def within_limit(
        self,
        rule_code: str,
        patient_id: str,
        period_start: date,
        period_end: date,
        excluding_visit_id: str | None = None,
        limit: int = 1,
        pending_visit_ids: Collection[str] = (),
    ) -> bool:
        """True when one more application keeps the patient within `limit`."""
        if limit < 1:
            return False
        existing = self.count(
            rule_code, patient_id, period_start, period_end, excluding_visit_id, pending_visit_ids
        )
        return existing < limit

    def count_satisfies(
        self,
        rule_code: str,
        patient_id: str,
        period_start: date,
        period_end: date,
        operator: NumericOperator,
        threshold: int,
        excluding_visit_id: str | None = None,
        pending_visit_ids: Collection[str] = (),
    ) -> bool:
        """Compare the earlier applications in the period with `threshold`."""
        existing = self.count(
            rule_code, patient_id, period_start, period_end, excluding_visit_id, pending_visit_ids
        )
        return compare(operator, existing, threshold)


class InMemoryAggregateCounter:
    """Counts over an in-memory list of history records."""

    def __init__(self, records: Iterable[BonusCalculationHistoryRecord] = ()) -> None:
        self.records: list[BonusCalculationHistoryRecord] = list(records)

    def add(self, record: BonusCalculationHistoryRecord) -> None:
        self.records.append(record)

    def count_applications(
        self,
        rule_code: str,
        patient_id: str,
        period_start: date,
        period_end: date,
        excluding_visit_id: str | None = None,
        pending_visit_ids: Collection[str] = (),
    ) -> int:
        return sum(
            1
            for r in self.records
            if r.rule_code == rule_code
            and r.patient_id == patient_id
            and period_start <= r.visit_date < period_end
            and r.visit_id != excluding_visit_id
            and r.visit_id not in pending_visit_ids
        )
