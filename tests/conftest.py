"""Pytest configuration and fixtures."""

from __future__ import annotations

import atexit
import os
import tempfile
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# Set test database path before importing the package
# Use a temp file instead of :memory: so every connection sees the same data
_temp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_temp_db_path = _temp_db.name
_temp_db.close()
os.environ["DB_PATH"] = _temp_db_path
os.environ.setdefault("BILLING_TIMEZONE", "Asia/Tokyo")
os.environ["RECALC_RATE_LIMIT"] = "1000/minute"
os.environ["RECALC_LOCK_TIMEOUT_SECONDS"] = "0.5"

from visit_billing.bonus import (  # noqa: E402
    BonusHistoryStore,
    InsuranceCategory,
    PointsMode,
    RuleCatalog,
    RuleDefinition,
    VisitContext,
    VisitStore,
)
from visit_billing.bonus.models import (  # noqa: E402
    ConditionBranch,
    FieldPresentCondition,
    FlagCondition,
    MonthlyCapCondition,
    NumericCondition,
    NumericOperator,
    TimeWindowCondition,
)

JST = timezone(timedelta(hours=9))


def _cleanup_test_db() -> None:
    """Clean up temporary test database file."""
    if os.path.exists(_temp_db_path):
        try:
            os.unlink(_temp_db_path)
        except OSError:
            pass  # File may already be deleted or locked


atexit.register(_cleanup_test_db)


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_db() -> None:
    """Pytest fixture to ensure test database cleanup after session."""
    yield
    _cleanup_test_db()


def jst(day: date, hour: int, minute: int = 0) -> datetime:
    """Timestamp in Japan local time."""
    return datetime.combine(day, time(hour, minute), tzinfo=JST)


@pytest.fixture
def make_visit() -> Callable[..., VisitContext]:
    """Factory for visits; start/end default to a 10:00-10:45 weekday visit."""

    def _make(
        visit_id: str = "V-001",
        patient_id: str = "P-001",
        visit_date: date = date(2025, 3, 10),
        start: tuple[int, int] | None = (10, 0),
        minutes: int | None = 45,
        **overrides: Any,
    ) -> VisitContext:
        start_time = jst(visit_date, *start) if start is not None else None
        end_time = (
            start_time + timedelta(minutes=minutes)
            if start_time is not None and minutes is not None
            else None
        )
        fields: dict[str, Any] = {
            "visit_id": visit_id,
            "patient_id": patient_id,
            "facility_id": "F-001",
            "visit_date": visit_date,
            "insurance_category": InsuranceCategory.MEDICAL,
            "start_time": start_time,
            "end_time": end_time,
        }
        fields.update(overrides)
        if "flags" in fields:
            fields["flags"] = frozenset(fields["flags"])
        return VisitContext(**fields)

    return _make


def _rule(**kwargs: Any) -> RuleDefinition:
    defaults: dict[str, Any] = {
        "version": "2024.06",
        "insurance_category": InsuranceCategory.MEDICAL,
        "effective_from": date(2024, 6, 1),
    }
    defaults.update(kwargs)
    defaults.setdefault("display_name", defaults["rule_code"])
    return RuleDefinition(**defaults)


@pytest.fixture
def sample_rules() -> list[RuleDefinition]:
    """Night, emergency, 24h support (versioned, monthly cap) and long-visit rules."""
    return [
        _rule(
            rule_code="NIGHT_EARLY",
            points_mode=PointsMode.CONDITIONAL,
            display_order=10,
            branches=(
                ConditionBranch(TimeWindowCondition(time(22), time(6), "late night"), 4200, "late_night"),
                ConditionBranch(TimeWindowCondition(time(18), time(22), "night"), 2100, "night"),
                ConditionBranch(TimeWindowCondition(time(6), time(8), "early morning"), 2100, "early_morning"),
            ),
        ),
        _rule(
            rule_code="EMERGENCY_VISIT",
            points_mode=PointsMode.FIXED,
            fixed_points=2650,
            display_order=20,
            requirements=(
                FieldPresentCondition("emergency_reason"),
                FlagCondition("has_24h_support_system"),
            ),
        ),
        _rule(
            rule_code="SUPPORT_24H",
            version="2024.06",
            points_mode=PointsMode.FIXED,
            fixed_points=6520,
            effective_to=date(2025, 1, 1),
            display_order=30,
            requirements=(FlagCondition("has_24h_support_system"), MonthlyCapCondition(1)),
        ),
        _rule(
            rule_code="SUPPORT_24H",
            version="2025.01",
            points_mode=PointsMode.FIXED,
            fixed_points=6800,
            effective_from=date(2025, 1, 1),
            display_order=30,
            requirements=(FlagCondition("has_24h_support_system"), MonthlyCapCondition(1)),
        ),
        _rule(
            rule_code="LONG_VISIT",
            points_mode=PointsMode.FIXED,
            fixed_points=5200,
            display_order=40,
            requirements=(
                NumericCondition("visit_duration_minutes", NumericOperator.GE, 90),
            ),
        ),
    ]


@pytest.fixture
def sample_catalog(sample_rules: list[RuleDefinition]) -> RuleCatalog:
    return RuleCatalog(sample_rules)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "billing.db")


@pytest.fixture
def history_store(db_path: str) -> BonusHistoryStore:
    return BonusHistoryStore(db_path, lock_timeout=0.5, lock_stale_after=600)


@pytest.fixture
def visit_store(db_path: str) -> VisitStore:
    return VisitStore(db_path)


@pytest.fixture
def catalog_yaml(tmp_path: Path) -> Path:
    """Small YAML catalog file mirroring the sample rules."""
    path = tmp_path / "catalog.yaml"
    path.write_text(
        """
rules:
  - rule_code: NIGHT_EARLY
    version: "2024.06"
    display_name: Night / early-morning visit surcharge
    insurance_category: medical
    effective_from: 2024-06-01
    display_order: 10
    conditional_pattern: time_based
    points_config:
      late_night: 4200
      night: 2100
      early_morning: 2100
  - rule_code: EMERGENCY_VISIT
    version: "2024.06"
    display_name: Emergency visit surcharge
    insurance_category: medical
    points_mode: fixed
    fixed_points: 2650
    effective_from: 2024-06-01
    display_order: 20
    requirements:
      - pattern: field_not_empty
        field: emergencyVisitReason
      - pattern: has_24h_support_system
  - rule_code: SUPPORT_24H
    version: "2025.01"
    display_name: 24-hour support system surcharge
    insurance_category: medical
    points_mode: fixed
    fixed_points: 6800
    effective_from: 2025-01-01
    display_order: 30
    requirements:
      - pattern: has_24h_support_system
      - pattern: monthly_visit_limit
        value: 1
""",
        encoding="utf-8",
    )
    return path
