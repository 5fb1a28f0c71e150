"""Audit logging routes for billing calculations.

Every persisted calculation and every recalculation run leaves an audit
entry, so a claim's surcharges can be traced back to the run that wrote
them.

Provides endpoints for:
- Listing audit log entries
- Exporting audit logs (CSV or JSON)
- Listing the auditable action types
"""

from __future__ import annotations

import csv
import io
import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel

from visit_billing.config import AUDIT_MAX_EXPORT_ROWS, DB_PATH

router = APIRouter(prefix="/api/audit", tags=["audit"])

# Database files whose audit table is known to exist
_initialized_paths: set[str] = set()
_audit_table_lock = threading.Lock()

EXPORT_COLUMNS = [
    "ID",
    "Timestamp",
    "Action",
    "Actor",
    "Resource Type",
    "Resource ID",
    "Details",
    "Status",
    "Error Message",
]


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Calculation
    BONUS_CALCULATE = "bonus.calculate"
    BONUS_PERSIST = "bonus.persist"

    # Recalculation
    RECALCULATE_PERIOD = "recalculation.period"
    RECALCULATE_VISIT = "recalculation.visit"

    # Master data
    CATALOG_LOAD = "catalog.load"

    # System
    EXPORT_AUDIT = "audit.export"


class AuditLogEntry(BaseModel):
    """Single audit log entry."""

    id: str
    timestamp: str
    action: str
    actor: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    status: str = "success"
    error_message: str | None = None


class AuditLogListResponse(BaseModel):
    """Response for audit log listing."""

    entries: list[AuditLogEntry]
    total: int
    limit: int
    offset: int
    filters_applied: dict[str, Any]


def get_db() -> sqlite3.Connection:
    """Get database connection."""
    return sqlite3.connect(DB_PATH, check_same_thread=False)


def init_audit_table(conn: sqlite3.Connection, db_path: str | None = None) -> None:
    """Create the audit_logs table once per database file."""
    key = db_path or DB_PATH
    if key in _initialized_paths:
        return

    with _audit_table_lock:
        if key in _initialized_paths:
            return

        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                action TEXT NOT NULL,
                actor TEXT,
                resource_type TEXT,
                resource_id TEXT,
                details TEXT,
                status TEXT DEFAULT 'success',
                error_message TEXT
            )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_logs(timestamp)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_action_time ON audit_logs(action, timestamp)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_logs(resource_type, resource_id)"
        )
        conn.commit()
        _initialized_paths.add(key)


def log_audit_event(
    conn: sqlite3.Connection,
    action: str,
    actor: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    details: dict[str, Any] | None = None,
    status: str = "success",
    error_message: str | None = None,
) -> str:
    """Log an audit event to the database.

    Returns the audit log entry ID.
    """
    audit_id = str(uuid.uuid4())
    timestamp = datetime.now(timezone.utc).isoformat()

    conn.execute(
        """
        INSERT INTO audit_logs (
            id, timestamp, action, actor, resource_type,
            resource_id, details, status, error_message
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            audit_id,
            timestamp,
            action,
            actor,
            resource_type,
            resource_id,
            json.dumps(details) if details else None,
            status,
            error_message,
        ),
    )
    conn.commit()

    return audit_id


def record_audit_event(action: AuditAction, **kwargs: Any) -> str:
    """Open a connection, make sure the table exists, and log one event."""
    conn = get_db()
    try:
        init_audit_table(conn)
        return log_audit_event(conn, action.value, **kwargs)
    finally:
        conn.close()


def _row_to_entry(row: tuple) -> AuditLogEntry:
    details = None
    if row[6]:
        try:
            details = json.loads(row[6])
        except json.JSONDecodeError:
            details = {"raw": row[6]}
    return AuditLogEntry(
        id=row[0],
        timestamp=row[1],
        action=row[2],
        actor=row[3],
        resource_type=row[4],
        resource_id=row[5],
        details=details,
        status=row[7] or "success",
        error_message=row[8],
    )


def _build_filters(
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    status: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> tuple[str, list[Any]]:
    # Column names are fixed here; values are always bound parameters
    conditions = []
    params: list[Any] = []
    for column, value in (
        ("action", action),
        ("resource_type", resource_type),
        ("resource_id", resource_id),
        ("status", status),
    ):
        if value:
            conditions.append(f"{column} = ?")
            params.append(value)
    if start_date:
        conditions.append("timestamp >= ?")
        params.append(start_date)
    if end_date:
        conditions.append("timestamp <= ?")
        params.append(end_date)
    return (" AND ".join(conditions) if conditions else "1=1"), params


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    action: str | None = Query(default=None, description="Filter by action type"),
    resource_type: str | None = Query(default=None, description="Filter by resource type"),
    resource_id: str | None = Query(default=None, description="Filter by resource ID"),
    status: str | None = Query(default=None, description="Filter by status (success/error)"),
    start_date: str | None = Query(default=None, description="Start date (ISO format)"),
    end_date: str | None = Query(default=None, description="End date (ISO format)"),
) -> AuditLogListResponse:
    """List audit log entries with filtering and pagination."""
    conn = get_db()
    try:
        init_audit_table(conn)
        where_clause, params = _build_filters(
            action, resource_type, resource_id, status, start_date, end_date
        )
        total = conn.execute(
            f"SELECT COUNT(*) FROM audit_logs WHERE {where_clause}", params
        ).fetchone()[0]
        rows = conn.execute(
            f"""
            SELECT id, timestamp, action, actor, resource_type, resource_id,
                   details, status, error_message
            FROM audit_logs
            WHERE {where_clause}
            ORDER BY timestamp DESC
            LIMIT ? OFFSET ?
            """,
            params + [limit, offset],
        ).fetchall()
    finally:
        conn.close()

    return AuditLogListResponse(
        entries=[_row_to_entry(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
        filters_applied={
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "status": status,
            "start_date": start_date,
            "end_date": end_date,
        },
    )


@router.get("/export")
async def export_audit_logs(
    format: str = Query(default="csv", description="Export format: csv or json"),
    start_date: str | None = Query(default=None, description="Start date (ISO format)"),
    end_date: str | None = Query(default=None, description="End date (ISO format)"),
    action: str | None = Query(default=None, description="Filter by action type"),
    limit: int = Query(
        default=AUDIT_MAX_EXPORT_ROWS,
        ge=1,
        le=AUDIT_MAX_EXPORT_ROWS,
        description=f"Maximum rows to export (max {AUDIT_MAX_EXPORT_ROWS})",
    ),
) -> Response:
    """Export audit logs for review.

    Limited to AUDIT_MAX_EXPORT_ROWS rows; use date filters to batch
    larger exports.
    """
    conn = get_db()
    try:
        init_audit_table(conn)
        # The export itself is audited
        log_audit_event(
            conn,
            action=AuditAction.EXPORT_AUDIT.value,
            resource_type="audit_logs",
            details={
                "format": format,
                "start_date": start_date,
                "end_date": end_date,
                "action_filter": action,
            },
        )
        where_clause, params = _build_filters(
            action=action, start_date=start_date, end_date=end_date
        )
        rows = conn.execute(
            f"""
            SELECT id, timestamp, action, actor, resource_type, resource_id,
                   details, status, error_message
            FROM audit_logs
            WHERE {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            params + [limit],
        ).fetchall()
    finally:
        conn.close()

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")

    if format == "json":
        content = json.dumps(
            {
                "audit_logs": [_row_to_entry(row).model_dump() for row in rows],
                "exported_at": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        )
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f"attachment; filename=audit_export_{stamp}.json"},
        )

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for row in rows:
        writer.writerow(row)

    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=audit_export_{stamp}.csv"},
    )


@router.get("/actions")
async def list_audit_actions() -> dict[str, Any]:
    """List all available audit action types."""
    categories: dict[str, list[str]] = {}
    for action in AuditAction:
        categories.setdefault(action.value.split(".", 1)[0], []).append(action.value)
    return {
        "actions": [action.value for action in AuditAction],
        "categories": categories,
    }
