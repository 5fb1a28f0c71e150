"""Month-level recalculation of persisted bonus decisions.

Each visit of the period is recalculated in chronological order and its
desired decisions are diffed against the committed rows. Only the
difference is written, in one transaction per visit, and that visit is
committed before the next one is evaluated so monthly caps see it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections import defaultdict
from collections.abc import Callable, Collection, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .aggregates import MonthlyAggregateChecker
from .calculator import BonusCalculator
from .errors import (
    PersistenceConflictError,
    RecalculationHaltedError,
    VisitNotFoundError,
)
from .history import BonusHistoryStore, lock_key_for
from .models import (
    BillingPeriod,
    BonusCalculationHistoryRecord,
    RuleIssue,
    VisitContext,
)
from .versions import RuleCatalog
from .visits import VisitSource, visit_sort_key

logger = logging.getLogger(__name__)


@dataclass
class RecalculationSummary:
    """Outcome of a recalculation run.

    Attributes:
        visits_processed: Visits whose decisions were recalculated and committed
        rules_applied: History rows inserted
        rules_removed: History rows deleted, orphans included
        rules_unchanged: Rows left in place because the decision did not change
        orphans_removed: Rows deleted because their visit left the period
        aborted: The run was cancelled between visits
        next_visit_id: First unprocessed visit when aborted (pass as resume_from)
    """

    period: str
    patient_id: str | None = None
    visits_processed: int = 0
    rules_applied: int = 0
    rules_removed: int = 0
    rules_unchanged: int = 0
    orphans_removed: int = 0
    issues: list[RuleIssue] = field(default_factory=list)
    aborted: bool = False
    next_visit_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "patient_id": self.patient_id,
            "visits_processed": self.visits_processed,
            "rules_applied": self.rules_applied,
            "rules_removed": self.rules_removed,
            "rules_unchanged": self.rules_unchanged,
            "orphans_removed": self.orphans_removed,
            "issues": [
                {
                    "rule_code": i.rule_code,
                    "kind": i.kind,
                    "message": i.message,
                    "visit_id": i.visit_id,
                }
                for i in self.issues
            ],
            "aborted": self.aborted,
            "next_visit_id": self.next_visit_id,
        }


@dataclass(frozen=True)
class VisitDiff:
    """Minimal change turning a visit's persisted rows into the desired ones."""

    visit_id: str
    to_delete: tuple[str, ...] = ()
    to_insert: tuple[BonusCalculationHistoryRecord, ...] = ()
    unchanged: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_delete and not self.to_insert


def _same_decision(a: BonusCalculationHistoryRecord, b: BonusCalculationHistoryRecord) -> bool:
    return (
        a.decision_key() == b.decision_key()
        and a.patient_id == b.patient_id
        and a.visit_date == b.visit_date
    )


def diff_visit(
    visit_id: str,
    persisted: list[BonusCalculationHistoryRecord],
    desired: list[BonusCalculationHistoryRecord],
) -> VisitDiff:
    """Compare persisted and desired rows by rule code.

    A changed decision (version, points or denormalised visit data) is a
    delete plus an insert; rows are never updated in place.
    """
    current = {r.rule_code: r for r in persisted}
    wanted = {r.rule_code: r for r in desired}

    to_delete = []
    to_insert = []
    unchanged = []
    for rule_code in sorted(current.keys() | wanted.keys()):
        old = current.get(rule_code)
        new = wanted.get(rule_code)
        if old is not None and new is not None and _same_decision(old, new):
            unchanged.append(rule_code)
            continue
        if old is not None:
            to_delete.append(rule_code)
        if new is not None:
            to_insert.append(new)

    return VisitDiff(visit_id, tuple(to_delete), tuple(to_insert), tuple(unchanged))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecalculationOrchestrator:
    """Recalculates and persists bonus decisions for a billing period.

    Usage:
        orchestrator = RecalculationOrchestrator(catalog, visit_store, history_store)
        summary = orchestrator.recalculate(BillingPeriod(2025, 3))
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        visit_source: VisitSource,
        history_store: BonusHistoryStore,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], str] = _utc_now,
    ) -> None:
        self.visit_source = visit_source
        self.history_store = history_store
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self.calculator = BonusCalculator(catalog, MonthlyAggregateChecker(history_store))

    def cancel(self) -> None:
        """Stop the running pass before its next visit."""
        self.cancel_event.set()

    @contextmanager
    def _locked(self, patient_ids: set[str], period: BillingPeriod) -> Iterator[None]:
        # sorted acquisition order keeps concurrent runs from deadlocking
        with ExitStack() as stack:
            for patient_id in sorted(patient_ids):
                stack.enter_context(self.history_store.lock(lock_key_for(patient_id, period)))
            yield

    def recalculate(
        self,
        period: BillingPeriod,
        patient_id: str | None = None,
        resume_from: str | None = None,
    ) -> RecalculationSummary:
        """Recalculate every visit of the period, optionally for one patient.

        Args:
            period: Billing month to recalculate
            patient_id: Restrict the run to one patient
            resume_from: Visit id to restart from after a halted or aborted run

        Raises:
            RecalculationLockTimeout: Another run holds a patient+period lock
            RecalculationHaltedError: A visit failed; earlier visits stay committed
        """
        summary = RecalculationSummary(period=period.key, patient_id=patient_id)

        visits = sorted(self.visit_source.list_visits(period, patient_id), key=visit_sort_key)
        visit_ids = {v.visit_id for v in visits}
        persisted = self.history_store.list_for_period(period, patient_id)
        patient_ids = {v.patient_id for v in visits} | {r.patient_id for r in persisted}

        start = 0
        if resume_from is not None:
            positions = [idx for idx, v in enumerate(visits) if v.visit_id == resume_from]
            if not positions:
                raise VisitNotFoundError(resume_from)
            start = positions[0]

        logger.info(
            f"Recalculating {period.key}"
            + (f" for patient {patient_id}" if patient_id else "")
            + f": {len(visits) - start} visit(s)"
        )

        with self._locked(patient_ids, period):
            # re-read under the lock; another run may have just committed
            orphans = self.history_store.visit_ids_for_period(period, patient_id) - visit_ids
            if orphans:
                removed = self.history_store.delete_for_visits(orphans)
                summary.orphans_removed += removed
                summary.rules_removed += removed
                logger.info(f"Removed {removed} row(s) for {len(orphans)} visit(s) no longer in {period.key}")

            # rows of visits the pass has not reached yet are stale
            pending: dict[str, set[str]] = defaultdict(set)
            for visit in visits[start:]:
                pending[visit.patient_id].add(visit.visit_id)

            for position in range(start, len(visits)):
                visit = visits[position]
                if self.cancel_event.is_set():
                    summary.aborted = True
                    summary.next_visit_id = visit.visit_id
                    logger.warning(
                        f"Recalculation of {period.key} aborted before visit {visit.visit_id}"
                    )
                    break

                patient_pending = pending[visit.patient_id]
                patient_pending.discard(visit.visit_id)
                try:
                    self._process_visit(visit, summary, patient_pending)
                except (PersistenceConflictError, sqlite3.Error) as e:
                    logger.error(
                        f"Recalculation halted at visit {visit.visit_id} (position {position}): {e}",
                        exc_info=True,
                    )
                    raise RecalculationHaltedError(visit.visit_id, position, summary, e) from e

        logger.info(
            f"Recalculated {period.key}: {summary.visits_processed} visit(s), "
            f"{summary.rules_applied} applied, {summary.rules_removed} removed, "
            f"{summary.rules_unchanged} unchanged"
        )
        return summary

    def recalculate_visit(self, visit_id: str) -> RecalculationSummary:
        """Recalculate and persist a single visit.

        Raises:
            VisitNotFoundError: Unknown visit id
            RecalculationLockTimeout: Another run holds the patient+period lock
            RecalculationHaltedError: The visit's transaction failed
        """
        visit = self.visit_source.get_visit(visit_id)
        if visit is None:
            raise VisitNotFoundError(visit_id)

        period = BillingPeriod.for_date(visit.visit_date)
        summary = RecalculationSummary(period=period.key, patient_id=visit.patient_id)
        with self._locked({visit.patient_id}, period):
            try:
                self._process_visit(visit, summary)
            except (PersistenceConflictError, sqlite3.Error) as e:
                logger.error(f"Recalculation failed for visit {visit_id}: {e}", exc_info=True)
                raise RecalculationHaltedError(visit_id, 0, summary, e) from e
        return summary

    def _process_visit(
        self,
        visit: VisitContext,
        summary: RecalculationSummary,
        pending_visit_ids: Collection[str] = (),
    ) -> VisitDiff:
        report = self.calculator.calculate_with_report(visit, pending_visit_ids)
        calculated_at = self.clock()
        desired = [
            BonusCalculationHistoryRecord.from_bonus(visit, bonus, calculated_at)
            for bonus in report.bonuses
        ]
        persisted = self.history_store.list_for_visit(visit.visit_id)
        diff = diff_visit(visit.visit_id, persisted, desired)

        if not diff.is_empty:
            self.history_store.apply_diff(visit.visit_id, diff.to_delete, diff.to_insert)

        summary.visits_processed += 1
        summary.rules_applied += len(diff.to_insert)
        summary.rules_removed += len(diff.to_delete)
        summary.rules_unchanged += len(diff.unchanged)
        summary.issues.extend(report.issues)
        return diff
