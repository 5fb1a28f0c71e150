"""Tests for the bonus calculation history store."""

from __future__ import annotations

import sqlite3
import time
from datetime import date

import pytest

from visit_billing.bonus import (
    BillingPeriod,
    BonusCalculationHistoryRecord,
    BonusHistoryStore,
    PersistenceConflictError,
    RecalculationLockTimeout,
)
from visit_billing.bonus.history import lock_key_for

MARCH = BillingPeriod(2025, 3)


def _record(visit_id: str, rule_code: str, visit_date: date = date(2025, 3, 3), **kwargs):
    defaults = {
        "version": "2025.01",
        "points": 6800,
        "calculated_at": "2025-03-31T00:00:00+00:00",
        "patient_id": "P-001",
    }
    defaults.update(kwargs)
    return BonusCalculationHistoryRecord(
        visit_id=visit_id, rule_code=rule_code, visit_date=visit_date, **defaults
    )


class TestHistoryReads:
    def test_count_applications_within_period(self, history_store: BonusHistoryStore):
        history_store.apply_diff("V-001", [], [_record("V-001", "SUPPORT_24H")])
        history_store.apply_diff(
            "V-000", [], [_record("V-000", "SUPPORT_24H", visit_date=date(2025, 2, 28))]
        )
        history_store.apply_diff(
            "V-009", [], [_record("V-009", "SUPPORT_24H", patient_id="P-002")]
        )

        count = history_store.count_applications("SUPPORT_24H", "P-001", MARCH.start, MARCH.end)
        assert count == 1

    def test_count_excludes_the_visit_itself(self, history_store: BonusHistoryStore):
        history_store.apply_diff("V-001", [], [_record("V-001", "SUPPORT_24H")])
        count = history_store.count_applications(
            "SUPPORT_24H", "P-001", MARCH.start, MARCH.end, excluding_visit_id="V-001"
        )
        assert count == 0

    def test_count_skips_pending_visits(self, history_store: BonusHistoryStore):
        for visit_id in ("V-001", "V-002", "V-003"):
            history_store.apply_diff(visit_id, [], [_record(visit_id, "SUPPORT_24H")])
        count = history_store.count_applications(
            "SUPPORT_24H",
            "P-001",
            MARCH.start,
            MARCH.end,
            excluding_visit_id="V-001",
            pending_visit_ids={"V-002", "V-404"},
        )
        assert count == 1

    def test_period_end_is_exclusive(self, history_store: BonusHistoryStore):
        history_store.apply_diff(
            "V-010", [], [_record("V-010", "SUPPORT_24H", visit_date=date(2025, 4, 1))]
        )
        assert history_store.list_for_period(MARCH) == []
        assert history_store.visit_ids_for_period(BillingPeriod(2025, 4)) == {"V-010"}

    def test_list_for_visit_round_trips_fields(self, history_store: BonusHistoryStore):
        record = _record("V-001", "NIGHT_EARLY", points=2100, justification="night")
        history_store.apply_diff("V-001", [], [record])
        assert history_store.list_for_visit("V-001") == [record]


class TestApplyDiff:
    def test_delete_and_insert_in_one_call(self, history_store: BonusHistoryStore):
        history_store.apply_diff("V-001", [], [_record("V-001", "SUPPORT_24H", version="2024.06")])

        history_store.apply_diff(
            "V-001", ["SUPPORT_24H"], [_record("V-001", "SUPPORT_24H", version="2025.01")]
        )

        (row,) = history_store.list_for_visit("V-001")
        assert row.version == "2025.01"

    def test_duplicate_insert_raises_conflict_and_rolls_back(
        self, history_store: BonusHistoryStore
    ):
        history_store.apply_diff("V-001", [], [_record("V-001", "SUPPORT_24H")])

        with pytest.raises(PersistenceConflictError) as exc_info:
            history_store.apply_diff(
                "V-001",
                [],
                [_record("V-001", "NIGHT_EARLY"), _record("V-001", "SUPPORT_24H")],
            )

        assert exc_info.value.visit_id == "V-001"
        assert exc_info.value.rule_code == "SUPPORT_24H"
        # NIGHT_EARLY from the failed transaction is not visible
        assert [r.rule_code for r in history_store.list_for_visit("V-001")] == ["SUPPORT_24H"]

    def test_empty_diff_is_a_no_op(self, history_store: BonusHistoryStore):
        history_store.apply_diff("V-001", [], [])
        assert history_store.list_for_visit("V-001") == []

    def test_delete_for_visits_counts_rows(self, history_store: BonusHistoryStore):
        history_store.apply_diff(
            "V-001", [], [_record("V-001", "SUPPORT_24H"), _record("V-001", "NIGHT_EARLY")]
        )
        history_store.apply_diff("V-002", [], [_record("V-002", "NIGHT_EARLY")])

        assert history_store.delete_for_visits(["V-001", "V-001"]) == 2
        assert history_store.visit_ids_for_period(MARCH) == {"V-002"}
        assert history_store.delete_for_visits([]) == 0


class TestRecalculationLock:
    def test_lock_is_exclusive(self, history_store: BonusHistoryStore):
        key = lock_key_for("P-001", MARCH)
        assert key == "P-001:2025-03"

        with history_store.lock(key):
            with pytest.raises(RecalculationLockTimeout):
                with history_store.lock(key, timeout=0.1):
                    pass

        # released on exit
        with history_store.lock(key, timeout=0.1):
            pass

    def test_different_keys_do_not_block(self, history_store: BonusHistoryStore):
        with history_store.lock(lock_key_for("P-001", MARCH)):
            with history_store.lock(lock_key_for("P-002", MARCH), timeout=0.1):
                pass

    def test_stale_lock_is_evicted(self, db_path: str):
        store = BonusHistoryStore(db_path, lock_timeout=0.2, lock_stale_after=60)
        key = lock_key_for("P-001", MARCH)
        with sqlite3.connect(db_path) as conn:
            conn.execute(
                "INSERT INTO recalculation_locks (lock_key, owner, acquired_at) VALUES (?, ?, ?)",
                (key, "crashed-worker", time.time() - 3600),
            )
            conn.commit()

        with store.lock(key):
            pass

    def test_release_only_by_owner(self, history_store: BonusHistoryStore):
        key = lock_key_for("P-001", MARCH)
        assert history_store.try_acquire_lock(key, "owner-a")
        history_store.release_lock(key, "owner-b")
        assert not history_store.try_acquire_lock(key, "owner-c")
        history_store.release_lock(key, "owner-a")
        assert history_store.try_acquire_lock(key, "owner-c")
