"""API route modules for the visiting-nurse billing service.

Routers:
- bonus: Surcharge calculation, decision history and rule catalog
- audit: Audit log of calculation and recalculation events
"""

from .audit import router as audit_router
from .bonus import router as bonus_router

__all__ = ["audit_router", "bonus_router"]
