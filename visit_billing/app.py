"""FastAPI backend for visiting-nurse bonus calculation."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from visit_billing.bonus import (
    BillingPeriod,
    RecalculationHaltedError,
    RecalculationLockTimeout,
    VisitNotFoundError,
)
from visit_billing.config import RECALC_RATE_LIMIT
from visit_billing.routes import audit_router, bonus_router
from visit_billing.routes import audit as audit_routes
from visit_billing.routes import bonus as bonus_routes
from visit_billing.routes.audit import AuditAction, record_audit_event

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create the database file and every table the service uses."""
    Path(bonus_routes.DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    bonus_routes.get_visit_store()
    bonus_routes.get_history_store()
    conn = audit_routes.get_db()
    try:
        audit_routes.init_audit_table(conn)
    finally:
        conn.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize resources on startup."""
    init_db()
    catalog = bonus_routes.load_catalog()
    problems = catalog.validate()
    if problems:
        logger.error(f"Bonus catalog has {len(problems)} integrity problem(s)")
    yield


app = FastAPI(
    title="Visiting Nurse Billing",
    description="Bonus (billing surcharge) calculation and recalculation service",
    version="0.1.0",
    lifespan=lifespan,
)

# Recalculation rewrites a whole month of history; keep it rate limited
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routers
app.include_router(bonus_router)
app.include_router(audit_router)


class RecalculationRequest(BaseModel):
    period: str  # YYYY-MM
    patient_id: str | None = None
    resume_from: str | None = None

    @field_validator("period")
    @classmethod
    def valid_period(cls, v: str) -> str:
        try:
            return BillingPeriod.parse(v.strip()).key
        except ValueError as e:
            raise ValueError(f"period must be YYYY-MM: {e}") from e


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    catalog = bonus_routes.get_catalog()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "rule_versions": len(catalog),
    }


@app.post("/api/bonus/recalculate")
@limiter.limit(RECALC_RATE_LIMIT)
def recalculate_period(request: Request, recalc_request: RecalculationRequest) -> dict[str, Any]:
    """Recalculate and persist every visit of a billing month.

    Visits are processed chronologically, one committed transaction per
    visit. A failure returns 500 with the visit to resume from.
    """
    period = BillingPeriod.parse(recalc_request.period)
    orchestrator = bonus_routes.get_orchestrator()
    try:
        summary = orchestrator.recalculate(
            period,
            patient_id=recalc_request.patient_id,
            resume_from=recalc_request.resume_from,
        )
    except VisitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecalculationLockTimeout as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RecalculationHaltedError as e:
        logger.error(f"Recalculation of {period.key} halted: {e}", exc_info=True)
        record_audit_event(
            AuditAction.RECALCULATE_PERIOD,
            resource_type="billing_period",
            resource_id=period.key,
            details={"patient_id": recalc_request.patient_id, **e.summary.to_dict()},
            status="error",
            error_message=str(e),
        )
        raise HTTPException(status_code=500, detail=bonus_routes.halted_detail(e))

    record_audit_event(
        AuditAction.RECALCULATE_PERIOD,
        resource_type="billing_period",
        resource_id=period.key,
        details=summary.to_dict(),
    )
    return summary.to_dict()


@app.post("/api/bonus/recalculate/visit/{visit_id}")
@limiter.limit(RECALC_RATE_LIMIT)
def recalculate_visit(request: Request, visit_id: str) -> dict[str, Any]:
    """Recalculate and persist a single visit."""
    orchestrator = bonus_routes.get_orchestrator()
    try:
        summary = orchestrator.recalculate_visit(visit_id)
    except VisitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecalculationLockTimeout as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RecalculationHaltedError as e:
        logger.error(f"Recalculation of visit {visit_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=bonus_routes.halted_detail(e))

    record_audit_event(
        AuditAction.RECALCULATE_VISIT,
        resource_type="visit",
        resource_id=visit_id,
        details=summary.to_dict(),
    )
    return summary.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
