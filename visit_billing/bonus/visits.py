"""Visit records consumed by the bonus engine."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections import defaultdict
from dataclasses import replace
from datetime import date, time
from typing import Protocol

from visit_billing.utils import parse_timestamp

from .conditions import local_start_time
from .models import BillingPeriod, InsuranceCategory, VisitContext

logger = logging.getLogger(__name__)


class VisitSource(Protocol):
    """Read access to finalized visit records."""

    def list_visits(
        self, period: BillingPeriod, patient_id: str | None = None
    ) -> list[VisitContext]: ...

    def get_visit(self, visit_id: str) -> VisitContext | None: ...


def visit_sort_key(visit: VisitContext) -> tuple[date, int, time, str]:
    """Chronological order: date, then start time (missing last), then id."""
    start = local_start_time(visit)
    return (visit.visit_date, 0 if start is not None else 1, start or time.min, visit.visit_id)


class VisitStore:
    """SQLite storage of visit records.

    The daily visit ordinal and building occupancy are derived on read from
    the other visits on the same day, so they never go stale when visits change.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_tables()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self) -> None:
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nursing_visits (
                    visit_id TEXT PRIMARY KEY,
                    patient_id TEXT NOT NULL,
                    facility_id TEXT NOT NULL,
                    visit_date TEXT NOT NULL,
                    insurance_category TEXT NOT NULL,
                    start_time TEXT,
                    end_time TEXT,
                    emergency_reason TEXT,
                    multi_staff_reason TEXT,
                    long_visit_reason TEXT,
                    patient_age INTEGER,
                    flags TEXT,
                    building_id TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_visits_patient_date
                ON nursing_visits(patient_id, visit_date)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_visits_building_date
                ON nursing_visits(building_id, visit_date)
            """)
            conn.commit()

    def save_visit(self, visit: VisitContext) -> None:
        """Insert or replace a visit record."""
        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO nursing_visits
                (visit_id, patient_id, facility_id, visit_date, insurance_category,
                 start_time, end_time, emergency_reason, multi_staff_reason,
                 long_visit_reason, patient_age, flags, building_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    visit.visit_id,
                    visit.patient_id,
                    visit.facility_id,
                    visit.visit_date.isoformat(),
                    visit.insurance_category.value,
                    visit.start_time.isoformat() if visit.start_time else None,
                    visit.end_time.isoformat() if visit.end_time else None,
                    visit.emergency_reason,
                    visit.multi_staff_reason,
                    visit.long_visit_reason,
                    visit.patient_age,
                    json.dumps(sorted(visit.flags)),
                    visit.building_id,
                ),
            )
            conn.commit()
        logger.debug(f"Saved visit {visit.visit_id}")

    def delete_visit(self, visit_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM nursing_visits WHERE visit_id = ?", (visit_id,))
            conn.commit()
            return cursor.rowcount > 0

    def get_visit(self, visit_id: str) -> VisitContext | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM nursing_visits WHERE visit_id = ?", (visit_id,)
            ).fetchone()
            if row is None:
                return None
            same_day = conn.execute(
                "SELECT * FROM nursing_visits WHERE patient_id = ? AND visit_date = ?",
                (row["patient_id"], row["visit_date"]),
            ).fetchall()
            visits = self._with_ordinals([self._row_to_visit(r) for r in same_day])
            visit = next(v for v in visits if v.visit_id == visit_id)
            return self._with_occupancy(conn, [visit])[0]

    def list_visits(
        self, period: BillingPeriod, patient_id: str | None = None
    ) -> list[VisitContext]:
        """Visits in the period, chronologically ordered."""
        query = "SELECT * FROM nursing_visits WHERE visit_date >= ? AND visit_date < ?"
        params = [period.start.isoformat(), period.end.isoformat()]
        if patient_id is not None:
            query += " AND patient_id = ?"
            params.append(patient_id)

        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
            visits = self._with_ordinals([self._row_to_visit(r) for r in rows])
            visits = self._with_occupancy(conn, visits)

        return sorted(visits, key=visit_sort_key)

    def _with_ordinals(self, visits: list[VisitContext]) -> list[VisitContext]:
        by_day: dict[tuple[str, date], list[VisitContext]] = defaultdict(list)
        for visit in visits:
            by_day[(visit.patient_id, visit.visit_date)].append(visit)

        result = []
        for day_visits in by_day.values():
            for ordinal, visit in enumerate(sorted(day_visits, key=visit_sort_key), start=1):
                result.append(_replace_ordinal(visit, ordinal))
        return result

    def _with_occupancy(
        self, conn: sqlite3.Connection, visits: list[VisitContext]
    ) -> list[VisitContext]:
        """Attach the facility's same-day visit count for each visit's building."""
        counts: dict[tuple[str, str, date], int] = {}
        result = []
        for visit in visits:
            if visit.building_id is None:
                result.append(visit)
                continue
            key = (visit.building_id, visit.facility_id, visit.visit_date)
            if key not in counts:
                counts[key] = conn.execute(
                    """
                    SELECT COUNT(*) FROM nursing_visits
                    WHERE building_id = ? AND facility_id = ? AND visit_date = ?
                    """,
                    (visit.building_id, visit.facility_id, visit.visit_date.isoformat()),
                ).fetchone()[0]
            result.append(replace(visit, building_occupancy=counts[key]))
        return result

    def _row_to_visit(self, row: sqlite3.Row) -> VisitContext:
        return VisitContext(
            visit_id=row["visit_id"],
            patient_id=row["patient_id"],
            facility_id=row["facility_id"],
            visit_date=date.fromisoformat(row["visit_date"]),
            insurance_category=InsuranceCategory(row["insurance_category"]),
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row["end_time"]),
            emergency_reason=row["emergency_reason"],
            multi_staff_reason=row["multi_staff_reason"],
            long_visit_reason=row["long_visit_reason"],
            patient_age=row["patient_age"],
            flags=frozenset(json.loads(row["flags"]) if row["flags"] else []),
            building_id=row["building_id"],
        )


def _replace_ordinal(visit: VisitContext, ordinal: int) -> VisitContext:
    return replace(visit, daily_visit_ordinal=ordinal)
