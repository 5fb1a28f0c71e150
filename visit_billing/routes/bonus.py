"""Bonus calculation routes.

Dry-run calculation, persisted single-visit calculation, decision history
and the loaded rule catalog. Month recalculation is rate limited and
lives in app.py with the limiter.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from visit_billing.bonus import (
    AmbiguousVersionError,
    BonusCalculator,
    BonusHistoryStore,
    CatalogLoader,
    CatalogValidationError,
    InsuranceCategory,
    MonthlyAggregateChecker,
    RecalculationHaltedError,
    RecalculationLockTimeout,
    RecalculationOrchestrator,
    RuleCatalog,
    RuleNotFoundError,
    VisitContext,
    VisitNotFoundError,
    VisitStore,
)
from visit_billing.config import BONUS_CATALOG_PATH, DB_PATH

from .audit import AuditAction, record_audit_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bonus", tags=["bonus"])

# Catalog snapshot shared by all requests; replaced wholesale on reload
_catalog: RuleCatalog | None = None


def load_catalog() -> RuleCatalog:
    """Load the catalog from BONUS_CATALOG_PATH and make it current."""
    global _catalog
    try:
        catalog = CatalogLoader(BONUS_CATALOG_PATH).load_catalog()
    except FileNotFoundError:
        logger.warning(f"Bonus catalog not found at {BONUS_CATALOG_PATH}; no rules loaded")
        catalog = RuleCatalog()
    _catalog = catalog
    return catalog


def get_catalog() -> RuleCatalog:
    if _catalog is None:
        return load_catalog()
    return _catalog


def get_visit_store() -> VisitStore:
    return VisitStore(DB_PATH)


def get_history_store() -> BonusHistoryStore:
    return BonusHistoryStore(DB_PATH)


def get_orchestrator() -> RecalculationOrchestrator:
    return RecalculationOrchestrator(get_catalog(), get_visit_store(), get_history_store())


def halted_detail(e: RecalculationHaltedError) -> dict[str, Any]:
    return {
        "error": "recalculation_halted",
        "message": str(e),
        "resume_from_visit_id": e.resume_from_visit_id,
        "position": e.position,
        "summary": e.summary.to_dict() if hasattr(e.summary, "to_dict") else None,
    }


# ============================================================
# Request models
# ============================================================


class VisitPayload(BaseModel):
    """A finalized visit record submitted for calculation."""

    visit_id: str
    patient_id: str
    facility_id: str = ""
    visit_date: date
    insurance_category: InsuranceCategory
    start_time: datetime | None = None
    end_time: datetime | None = None
    emergency_reason: str | None = None
    multi_staff_reason: str | None = None
    long_visit_reason: str | None = None
    patient_age: int | None = Field(default=None, ge=0, le=150)
    daily_visit_ordinal: int = Field(default=1, ge=1)
    flags: list[str] = Field(default_factory=list)
    building_id: str | None = None
    # only used by dry runs; stored visits derive it from the day's visits
    building_occupancy: int | None = Field(default=None, ge=1)

    @field_validator("visit_id", "patient_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    def to_context(self) -> VisitContext:
        return VisitContext(
            visit_id=self.visit_id,
            patient_id=self.patient_id,
            facility_id=self.facility_id,
            visit_date=self.visit_date,
            insurance_category=self.insurance_category,
            start_time=self.start_time,
            end_time=self.end_time,
            emergency_reason=self.emergency_reason,
            multi_staff_reason=self.multi_staff_reason,
            long_visit_reason=self.long_visit_reason,
            patient_age=self.patient_age,
            daily_visit_ordinal=self.daily_visit_ordinal,
            flags=frozenset(self.flags),
            building_id=self.building_id,
            building_occupancy=self.building_occupancy,
        )


# ============================================================
# Endpoints
# ============================================================


@router.post("/calculate")
def calculate_bonuses(
    visit: VisitPayload,
    persist: bool = Query(default=False, description="Store the visit and its decisions"),
) -> dict[str, Any]:
    """Calculate the surcharges for one visit.

    By default this is a dry run against committed history. With
    persist=true the visit is stored and its decisions are written through
    the same diff-and-lock path as a month recalculation.
    """
    context = visit.to_context()

    if not persist:
        calculator = BonusCalculator(
            get_catalog(), MonthlyAggregateChecker(get_history_store())
        )
        report = calculator.calculate_with_report(context)
        record_audit_event(
            AuditAction.BONUS_CALCULATE,
            resource_type="visit",
            resource_id=context.visit_id,
            details={"rule_codes": report.rule_codes},
        )
        return {
            "visit_id": context.visit_id,
            "persisted": False,
            "bonuses": [b.to_dict() for b in report.bonuses],
            "total_points": sum(b.points for b in report.bonuses),
            "issues": [asdict(i) for i in report.issues],
        }

    visit_store = get_visit_store()
    visit_store.save_visit(context)
    try:
        summary = get_orchestrator().recalculate_visit(context.visit_id)
    except RecalculationLockTimeout as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RecalculationHaltedError as e:
        logger.error(f"Persisting visit {context.visit_id} failed: {e}", exc_info=True)
        record_audit_event(
            AuditAction.BONUS_PERSIST,
            resource_type="visit",
            resource_id=context.visit_id,
            status="error",
            error_message=str(e),
        )
        raise HTTPException(status_code=500, detail=halted_detail(e))

    records = get_history_store().list_for_visit(context.visit_id)
    record_audit_event(
        AuditAction.BONUS_PERSIST,
        resource_type="visit",
        resource_id=context.visit_id,
        details=summary.to_dict(),
    )
    return {
        "visit_id": context.visit_id,
        "persisted": True,
        "bonuses": [r.to_dict() for r in records],
        "total_points": sum(r.points for r in records),
        "summary": summary.to_dict(),
    }


@router.get("/history/{visit_id}")
async def get_visit_history(visit_id: str) -> dict[str, Any]:
    """Committed bonus decisions for a visit."""
    records = get_history_store().list_for_visit(visit_id)
    if not records and get_visit_store().get_visit(visit_id) is None:
        raise HTTPException(status_code=404, detail=f"Visit not found: {visit_id}")
    return {
        "visit_id": visit_id,
        "bonuses": [r.to_dict() for r in records],
        "total_points": sum(r.points for r in records),
    }


@router.get("/catalog")
async def get_rule_catalog(
    as_of: date | None = Query(default=None, description="Only versions effective on this date"),
    insurance_category: InsuranceCategory | None = Query(default=None),
) -> dict[str, Any]:
    """List rule definitions, optionally resolved as of a date."""
    catalog = get_catalog()

    if as_of is None:
        rules = [
            d
            for d in catalog.definitions()
            if insurance_category is None or d.insurance_category == insurance_category
        ]
    else:
        rules = []
        for rule_code in catalog.rule_codes(insurance_category):
            try:
                rules.append(catalog.resolve(rule_code, as_of))
            except RuleNotFoundError:
                continue
            except AmbiguousVersionError as e:
                logger.error(f"Catalog lookup failed for {rule_code}: {e}")
        rules.sort(key=lambda r: (r.display_order, r.rule_code))

    return {
        "as_of": as_of.isoformat() if as_of else None,
        "rules": [r.to_dict() for r in rules],
        "total": len(rules),
        "problems": catalog.validate(),
    }


@router.post("/catalog/reload")
async def reload_catalog() -> dict[str, Any]:
    """Re-read the catalog file and swap in the new snapshot."""
    try:
        catalog = load_catalog()
    except CatalogValidationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})

    record_audit_event(
        AuditAction.CATALOG_LOAD,
        resource_type="catalog",
        resource_id=BONUS_CATALOG_PATH,
        details={"rule_versions": len(catalog)},
    )
    return {"rule_versions": len(catalog), "problems": catalog.validate()}


@router.get("/visits/{visit_id}")
async def get_visit(visit_id: str) -> dict[str, Any]:
    """Stored visit record with its derived daily ordinal and building occupancy."""
    visit = get_visit_store().get_visit(visit_id)
    if visit is None:
        raise HTTPException(status_code=404, detail=str(VisitNotFoundError(visit_id)))
    return {
        "visit_id": visit.visit_id,
        "patient_id": visit.patient_id,
        "facility_id": visit.facility_id,
        "visit_date": visit.visit_date.isoformat(),
        "insurance_category": visit.insurance_category.value,
        "start_time": visit.start_time.isoformat() if visit.start_time else None,
        "end_time": visit.end_time.isoformat() if visit.end_time else None,
        "duration_minutes": visit.duration_minutes,
        "daily_visit_ordinal": visit.daily_visit_ordinal,
        "building_id": visit.building_id,
        "building_occupancy": visit.building_occupancy,
        "flags": sorted(visit.flags),
    }
