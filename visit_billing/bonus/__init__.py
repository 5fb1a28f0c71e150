"""Bonus (billing surcharge) engine for visiting-nurse records."""

from .aggregates import InMemoryAggregateCounter, MonthlyAggregateChecker
from .calculator import BonusCalculator
from .catalog import CatalogLoader, CatalogValidationError, load_catalog_from_db, parse_condition
from .conditions import evaluate_condition, matches
from .errors import (
    AmbiguousVersionError,
    BonusEngineError,
    MalformedConditionError,
    PersistenceConflictError,
    RecalculationHaltedError,
    RecalculationLockTimeout,
    RuleNotFoundError,
    VisitNotFoundError,
)
from .history import BonusHistoryStore
from .models import (
    BillingPeriod,
    BonusCalculationHistoryRecord,
    CalculatedBonus,
    InsuranceCategory,
    PointsMode,
    RuleDefinition,
    VisitContext,
)
from .points import resolve_points
from .recalculation import RecalculationOrchestrator, RecalculationSummary
from .versions import RuleCatalog
from .visits import VisitSource, VisitStore

__all__ = [
    "AmbiguousVersionError",
    "BillingPeriod",
    "BonusCalculationHistoryRecord",
    "BonusCalculator",
    "BonusEngineError",
    "BonusHistoryStore",
    "CalculatedBonus",
    "CatalogLoader",
    "CatalogValidationError",
    "InMemoryAggregateCounter",
    "InsuranceCategory",
    "MalformedConditionError",
    "MonthlyAggregateChecker",
    "PersistenceConflictError",
    "PointsMode",
    "RecalculationHaltedError",
    "RecalculationLockTimeout",
    "RecalculationOrchestrator",
    "RecalculationSummary",
    "RuleCatalog",
    "RuleDefinition",
    "RuleNotFoundError",
    "VisitContext",
    "VisitNotFoundError",
    "VisitSource",
    "VisitStore",
    "evaluate_condition",
    "load_catalog_from_db",
    "matches",
    "parse_condition",
    "resolve_points",
]
