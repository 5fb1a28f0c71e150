"""Tests for the bonus, recalculation and audit API endpoints.

Tests cover:
- /api/bonus/calculate - Dry-run and persisted calculation
- /api/bonus/history/{visit_id} - Committed decisions
- /api/bonus/catalog - Rule listing and reload
- /api/bonus/recalculate - Month recalculation
- /api/audit - Audit trail of the above
"""

from __future__ import annotations

import threading
import time
from datetime import date
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from visit_billing.bonus import BillingPeriod, BonusHistoryStore, VisitStore
from visit_billing.bonus.history import lock_key_for


def _payload(visit_id: str = "V-001", visit_date: str = "2025-03-10", **overrides):
    payload = {
        "visit_id": visit_id,
        "patient_id": "P-001",
        "facility_id": "F-001",
        "visit_date": visit_date,
        "insurance_category": "medical",
        "start_time": f"{visit_date}T19:00:00+09:00",
        "end_time": f"{visit_date}T19:45:00+09:00",
        "emergency_reason": "Sudden dyspnoea",
        "flags": ["has_24h_support_system"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def api_db(tmp_path: Path) -> str:
    return str(tmp_path / "api.db")


@pytest.fixture
def client(api_db: str, catalog_yaml: Path):
    """Test client with the database and catalog pointed at temp files."""
    with patch("visit_billing.routes.bonus.DB_PATH", api_db):
        with patch("visit_billing.routes.audit.DB_PATH", api_db):
            with patch("visit_billing.routes.bonus.BONUS_CATALOG_PATH", str(catalog_yaml)):
                from visit_billing.app import app

                with TestClient(app) as client:
                    yield client


class TestHealth:
    def test_reports_loaded_rules(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["rule_versions"] == 3


class TestCalculateEndpoint:
    """Tests for /api/bonus/calculate."""

    def test_dry_run(self, client: TestClient):
        response = client.post("/api/bonus/calculate", json=_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["persisted"] is False
        assert [b["rule_code"] for b in data["bonuses"]] == [
            "NIGHT_EARLY",
            "EMERGENCY_VISIT",
            "SUPPORT_24H",
        ]
        assert data["total_points"] == 2100 + 2650 + 6800
        assert data["issues"] == []

    def test_dry_run_writes_nothing(self, client: TestClient):
        client.post("/api/bonus/calculate", json=_payload())
        assert client.get("/api/bonus/history/V-001").status_code == 404

    def test_persist_then_cap_applies_to_next_visit(self, client: TestClient):
        first = client.post("/api/bonus/calculate?persist=true", json=_payload())
        assert first.status_code == 200
        assert first.json()["summary"]["rules_applied"] == 3

        second = client.post(
            "/api/bonus/calculate?persist=true",
            json=_payload(visit_id="V-002", visit_date="2025-03-20"),
        )
        codes = [b["rule_code"] for b in second.json()["bonuses"]]
        assert "SUPPORT_24H" not in codes

        history = client.get("/api/bonus/history/V-001").json()
        assert history["total_points"] == 2100 + 2650 + 6800

    def test_invalid_payload(self, client: TestClient):
        assert client.post(
            "/api/bonus/calculate", json=_payload(insurance_category="dental")
        ).status_code == 422
        assert client.post("/api/bonus/calculate", json=_payload(visit_id="  ")).status_code == 422

    def test_persist_conflicts_with_running_recalculation(self, client: TestClient, api_db: str):
        store = BonusHistoryStore(api_db, lock_timeout=0.1)
        with store.lock(lock_key_for("P-001", BillingPeriod(2025, 3))):
            response = client.post("/api/bonus/calculate?persist=true", json=_payload())
        assert response.status_code == 409

    def test_waiting_for_a_lock_does_not_block_other_requests(
        self, client: TestClient, api_db: str
    ):
        holder = BonusHistoryStore(api_db)
        patient_store = BonusHistoryStore(api_db, lock_timeout=3.0)
        responses = {}

        def persist() -> None:
            responses["persist"] = client.post("/api/bonus/calculate?persist=true", json=_payload())

        with patch("visit_billing.routes.bonus.get_history_store", return_value=patient_store):
            with holder.lock(lock_key_for("P-001", BillingPeriod(2025, 3))):
                worker = threading.Thread(target=persist)
                worker.start()
                time.sleep(0.3)  # the persist request is now polling for the lock

                started = time.monotonic()
                health = client.get("/health")
                elapsed = time.monotonic() - started
            worker.join(timeout=10)

        assert health.status_code == 200
        assert elapsed < 1.5
        assert responses["persist"].status_code == 200


class TestCatalogEndpoints:
    def test_resolved_as_of_date(self, client: TestClient):
        data = client.get("/api/bonus/catalog", params={"as_of": "2025-03-01"}).json()
        assert data["total"] == 3
        assert [r["rule_code"] for r in data["rules"]] == [
            "NIGHT_EARLY",
            "EMERGENCY_VISIT",
            "SUPPORT_24H",
        ]

        before = client.get("/api/bonus/catalog", params={"as_of": "2024-12-31"}).json()
        assert "SUPPORT_24H" not in [r["rule_code"] for r in before["rules"]]

    def test_category_filter(self, client: TestClient):
        data = client.get("/api/bonus/catalog", params={"insurance_category": "care"}).json()
        assert data["total"] == 0

    def test_reload_rejects_invalid_catalog(self, client: TestClient, catalog_yaml: Path):
        catalog_yaml.write_text("rules:\n  - rule_code: BROKEN\n", encoding="utf-8")

        response = client.post("/api/bonus/catalog/reload")

        assert response.status_code == 422
        assert response.json()["detail"]["errors"][0]["rule_code"] == "BROKEN"
        # the previous snapshot stays in service
        assert client.get("/health").json()["rule_versions"] == 3


class TestRecalculateEndpoint:
    """Tests for /api/bonus/recalculate."""

    def _seed(self, api_db: str, make_visit):
        visits = VisitStore(api_db)
        flags = {"has_24h_support_system"}
        visits.save_visit(make_visit(visit_id="V-002", visit_date=date(2025, 3, 10), flags=flags))
        visits.save_visit(make_visit(visit_id="V-001", visit_date=date(2025, 3, 3), flags=flags))

    def test_recalculates_period(self, client: TestClient, api_db: str, make_visit):
        self._seed(api_db, make_visit)

        response = client.post("/api/bonus/recalculate", json={"period": "2025-03"})

        assert response.status_code == 200
        data = response.json()
        assert data["visits_processed"] == 2
        assert data["rules_applied"] == 1
        assert [r.visit_id for r in BonusHistoryStore(api_db).list_for_period(BillingPeriod(2025, 3))] == [
            "V-001"
        ]

        again = client.post("/api/bonus/recalculate", json={"period": "2025-03"}).json()
        assert (again["rules_applied"], again["rules_removed"]) == (0, 0)

    def test_invalid_period(self, client: TestClient):
        response = client.post("/api/bonus/recalculate", json={"period": "2025-13"})
        assert response.status_code == 422

    def test_unknown_resume_point(self, client: TestClient, api_db: str, make_visit):
        self._seed(api_db, make_visit)
        response = client.post(
            "/api/bonus/recalculate", json={"period": "2025-03", "resume_from": "V-999"}
        )
        assert response.status_code == 404

    def test_single_visit(self, client: TestClient, api_db: str, make_visit):
        self._seed(api_db, make_visit)
        response = client.post("/api/bonus/recalculate/visit/V-001")
        assert response.status_code == 200
        assert response.json()["rules_applied"] == 1
        assert client.post("/api/bonus/recalculate/visit/V-404").status_code == 404


class TestAuditEndpoints:
    def test_calculations_are_audited(self, client: TestClient):
        client.post("/api/bonus/calculate?persist=true", json=_payload())
        client.post("/api/bonus/recalculate", json={"period": "2025-03"})

        data = client.get("/api/audit").json()
        actions = {e["action"] for e in data["entries"]}
        assert {"bonus.persist", "recalculation.period"} <= actions

        persisted = client.get("/api/audit", params={"action": "bonus.persist"}).json()
        assert persisted["total"] == 1
        assert persisted["entries"][0]["resource_id"] == "V-001"

    def test_export_csv(self, client: TestClient):
        client.post("/api/bonus/calculate", json=_payload())
        response = client.get("/api/audit/export")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[0].startswith("ID,Timestamp,Action")

    def test_list_actions(self, client: TestClient):
        data = client.get("/api/audit/actions").json()
        assert "recalculation.period" in data["actions"]
        assert data["categories"]["bonus"] == ["bonus.calculate", "bonus.persist"]
