"""Visiting-nurse billing backend package.

This package provides the bonus (billing surcharge) engine for
visiting-nurse records and the FastAPI service around it:

- Date-effective rule catalog loaded from YAML/JSON or the bonus_master table
- Per-visit surcharge calculation with monthly caps
- Month-level recalculation with minimal history diffs

Usage:
    # Development (from project root):
    uvicorn visit_billing.app:app --reload --port 8080

Modules:
    app: FastAPI application entry point
    bonus: Bonus calculation and recalculation engine
    routes: API routers
    config: Environment configuration
"""

__version__ = "0.1.0"
