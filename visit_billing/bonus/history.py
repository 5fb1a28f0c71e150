"""Persistence for bonus calculation history.

Stores one row per (visit, rule) decision and serves the committed
counts the monthly aggregate checker needs. Also owns the advisory
lock that serialises recalculation runs per patient and billing month.

Usage:
    store = BonusHistoryStore(db_path)
    with store.lock(lock_key_for(patient_id, period)):
        store.apply_diff(visit_id, deletes, inserts)
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Collection, Iterable, Iterator
from contextlib import contextmanager
from datetime import date

from visit_billing.config import RECALC_LOCK_STALE_SECONDS, RECALC_LOCK_TIMEOUT_SECONDS

from .errors import PersistenceConflictError, RecalculationLockTimeout
from .models import BillingPeriod, BonusCalculationHistoryRecord

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.05


def lock_key_for(patient_id: str, period: BillingPeriod) -> str:
    return f"{patient_id}:{period.key}"


class BonusHistoryStore:
    """SQLite storage for committed bonus decisions.

    Rows are never updated in place; superseded decisions are deleted and
    re-inserted inside a single transaction per visit.

    Attributes:
        db_path: Path to the SQLite database
        lock_timeout: Seconds to wait for a recalculation lock
        lock_stale_after: Age in seconds after which a lock is considered abandoned
    """

    def __init__(
        self,
        db_path: str,
        lock_timeout: float = RECALC_LOCK_TIMEOUT_SECONDS,
        lock_stale_after: float = RECALC_LOCK_STALE_SECONDS,
    ) -> None:
        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self.lock_stale_after = lock_stale_after
        self._init_tables()

    def _get_conn(self) -> sqlite3.Connection:
        """Connection in autocommit mode; transactions are opened explicitly."""
        conn = sqlite3.connect(self.db_path, timeout=self.lock_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self) -> None:
        """Initialize database tables if they don't exist."""
        conn = self._get_conn()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bonus_calculation_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    visit_id TEXT NOT NULL,
                    rule_code TEXT NOT NULL,
                    version TEXT NOT NULL,
                    points INTEGER NOT NULL,
                    justification TEXT,
                    patient_id TEXT NOT NULL,
                    visit_date TEXT NOT NULL,
                    calculated_at TEXT NOT NULL,
                    UNIQUE (visit_id, rule_code)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_history_aggregate
                ON bonus_calculation_history(rule_code, patient_id, visit_date)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_history_patient_date
                ON bonus_calculation_history(patient_id, visit_date)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recalculation_locks (
                    lock_key TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at REAL NOT NULL
                )
            """)
        finally:
            conn.close()

    # ------------------------------------------------------------
    # Reads (committed state only)
    # ------------------------------------------------------------

    def count_applications(
        self,
        rule_code: str,
        patient_id: str,
        period_start: date,
        period_end: date,
        excluding_visit_id: str | None = None,
        pending_visit_ids: Collection[str] = (),
    ) -> int:
        """Committed applications of a rule to a patient within [start, end).

        Rows of `pending_visit_ids` (visits a running pass has not reached
        yet) are left out along with `excluding_visit_id`.
        """
        query = """
            SELECT COUNT(*) FROM bonus_calculation_history
            WHERE rule_code = ? AND patient_id = ?
              AND visit_date >= ? AND visit_date < ?
        """
        params: list[str] = [
            rule_code,
            patient_id,
            period_start.isoformat(),
            period_end.isoformat(),
        ]
        if excluding_visit_id is not None:
            query += " AND visit_id != ?"
            params.append(excluding_visit_id)
        pending = sorted(set(pending_visit_ids))
        if pending:
            placeholders = ",".join("?" for _ in pending)
            query += f" AND visit_id NOT IN ({placeholders})"
            params.extend(pending)

        conn = self._get_conn()
        try:
            return conn.execute(query, params).fetchone()[0]
        finally:
            conn.close()

    def list_for_visit(self, visit_id: str) -> list[BonusCalculationHistoryRecord]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT * FROM bonus_calculation_history
                WHERE visit_id = ?
                ORDER BY rule_code
                """,
                (visit_id,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def list_for_period(
        self, period: BillingPeriod, patient_id: str | None = None
    ) -> list[BonusCalculationHistoryRecord]:
        query = """
            SELECT * FROM bonus_calculation_history
            WHERE visit_date >= ? AND visit_date < ?
        """
        params = [period.start.isoformat(), period.end.isoformat()]
        if patient_id is not None:
            query += " AND patient_id = ?"
            params.append(patient_id)
        query += " ORDER BY visit_date, visit_id, rule_code"

        conn = self._get_conn()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def visit_ids_for_period(self, period: BillingPeriod, patient_id: str | None = None) -> set[str]:
        return {r.visit_id for r in self.list_for_period(period, patient_id)}

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------

    def apply_diff(
        self,
        visit_id: str,
        delete_rule_codes: Iterable[str],
        inserts: Iterable[BonusCalculationHistoryRecord],
    ) -> None:
        """Delete and insert one visit's rows in a single transaction.

        Raises:
            PersistenceConflictError: An insert hit UNIQUE(visit_id, rule_code)
        """
        delete_rule_codes = list(delete_rule_codes)
        inserts = list(inserts)
        if not delete_rule_codes and not inserts:
            return

        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            for rule_code in delete_rule_codes:
                conn.execute(
                    "DELETE FROM bonus_calculation_history WHERE visit_id = ? AND rule_code = ?",
                    (visit_id, rule_code),
                )
            current_rule = None
            try:
                for record in inserts:
                    current_rule = record.rule_code
                    self._insert(conn, record)
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise PersistenceConflictError(visit_id, current_rule) from e
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        logger.debug(
            f"Visit {visit_id}: removed {len(delete_rule_codes)}, inserted {len(inserts)} row(s)"
        )

    def delete_for_visits(self, visit_ids: Iterable[str]) -> int:
        """Remove every row belonging to the given visits; returns rows deleted."""
        visit_ids = sorted(set(visit_ids))
        if not visit_ids:
            return 0

        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            deleted = 0
            for visit_id in visit_ids:
                cursor = conn.execute(
                    "DELETE FROM bonus_calculation_history WHERE visit_id = ?", (visit_id,)
                )
                deleted += cursor.rowcount
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return deleted

    def _insert(self, conn: sqlite3.Connection, record: BonusCalculationHistoryRecord) -> None:
        conn.execute(
            """
            INSERT INTO bonus_calculation_history
            (visit_id, rule_code, version, points, justification,
             patient_id, visit_date, calculated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.visit_id,
                record.rule_code,
                record.version,
                record.points,
                record.justification,
                record.patient_id,
                record.visit_date.isoformat(),
                record.calculated_at,
            ),
        )

    def _row_to_record(self, row: sqlite3.Row) -> BonusCalculationHistoryRecord:
        return BonusCalculationHistoryRecord(
            visit_id=row["visit_id"],
            rule_code=row["rule_code"],
            version=row["version"],
            points=row["points"],
            calculated_at=row["calculated_at"],
            patient_id=row["patient_id"],
            visit_date=date.fromisoformat(row["visit_date"]),
            justification=row["justification"] or "",
        )

    # ------------------------------------------------------------
    # Advisory locking
    # ------------------------------------------------------------

    def try_acquire_lock(self, lock_key: str, owner: str) -> bool:
        """Single attempt to take a lock; stale holders are evicted first."""
        now = time.time()
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            stale = conn.execute(
                "DELETE FROM recalculation_locks WHERE lock_key = ? AND acquired_at < ?",
                (lock_key, now - self.lock_stale_after),
            )
            if stale.rowcount:
                logger.warning(f"Evicted stale recalculation lock {lock_key}")
            try:
                conn.execute(
                    "INSERT INTO recalculation_locks (lock_key, owner, acquired_at) VALUES (?, ?, ?)",
                    (lock_key, owner, now),
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                return False
            conn.execute("COMMIT")
            return True
        except sqlite3.OperationalError:
            # database busy; treat as not acquired and retry
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            return False
        finally:
            conn.close()

    def release_lock(self, lock_key: str, owner: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "DELETE FROM recalculation_locks WHERE lock_key = ? AND owner = ?",
                (lock_key, owner),
            )
        finally:
            conn.close()

    @contextmanager
    def lock(self, lock_key: str, timeout: float | None = None) -> Iterator[str]:
        """Hold the exclusive recalculation lock for `lock_key`.

        Raises:
            RecalculationLockTimeout: The lock was not acquired in time
        """
        timeout = self.lock_timeout if timeout is None else timeout
        owner = str(uuid.uuid4())
        deadline = time.monotonic() + timeout

        while not self.try_acquire_lock(lock_key, owner):
            if time.monotonic() >= deadline:
                raise RecalculationLockTimeout(lock_key, timeout)
            time.sleep(LOCK_POLL_INTERVAL)

        logger.debug(f"Acquired recalculation lock {lock_key}")
        try:
            yield owner
        finally:
            self.release_lock(lock_key, owner)
            logger.debug(f"Released recalculation lock {lock_key}")
