"""Exceptions raised by the bonus engine."""

from __future__ import annotations

from datetime import date
from typing import Any


class BonusEngineError(Exception):
    """Base exception for bonus engine errors."""

    def __init__(self, message: str, rule_code: str | None = None) -> None:
        super().__init__(message)
        self.rule_code = rule_code


class RuleNotFoundError(BonusEngineError):
    """No active version of a rule code covers the requested date."""

    def __init__(self, rule_code: str, as_of: date) -> None:
        super().__init__(
            f"No active version of {rule_code} is effective on {as_of.isoformat()}",
            rule_code=rule_code,
        )
        self.as_of = as_of


class AmbiguousVersionError(BonusEngineError):
    """More than one active version covers the date (master data defect)."""

    def __init__(self, rule_code: str, as_of: date, versions: list[str]) -> None:
        super().__init__(
            f"{len(versions)} active versions of {rule_code} are effective on "
            f"{as_of.isoformat()}: {', '.join(versions)}",
            rule_code=rule_code,
        )
        self.as_of = as_of
        self.versions = versions


class MalformedConditionError(BonusEngineError):
    """A master-data condition entry could not be parsed."""

    def __init__(self, message: str, raw: Any = None) -> None:
        super().__init__(message)
        self.raw = raw


class PersistenceConflictError(BonusEngineError):
    """A history insert hit the (visit_id, rule_code) uniqueness constraint."""

    def __init__(self, visit_id: str, rule_code: str | None = None) -> None:
        super().__init__(
            f"Concurrent write detected for visit {visit_id}"
            + (f" rule {rule_code}" if rule_code else ""),
            rule_code=rule_code,
        )
        self.visit_id = visit_id


class RecalculationLockTimeout(BonusEngineError):
    """Another recalculation run holds the patient + period lock."""

    def __init__(self, lock_key: str, timeout: float) -> None:
        super().__init__(
            f"Could not acquire recalculation lock {lock_key} within {timeout:.1f}s"
        )
        self.lock_key = lock_key
        self.timeout = timeout


class RecalculationHaltedError(BonusEngineError):
    """A visit's transaction failed; later visits were not processed.

    Attributes:
        resume_from_visit_id: First visit that must be reprocessed
        position: Zero-based index of that visit in the run's ordering
        summary: Counts for the visits committed before the failure
    """

    def __init__(
        self,
        resume_from_visit_id: str,
        position: int,
        summary: Any,
        cause: Exception,
    ) -> None:
        super().__init__(
            f"Recalculation halted at visit {resume_from_visit_id} "
            f"(position {position}): {cause}. Resume from visit {resume_from_visit_id}."
        )
        self.resume_from_visit_id = resume_from_visit_id
        self.position = position
        self.summary = summary
        self.cause = cause


class VisitNotFoundError(BonusEngineError):
    """The visit source has no record with the requested id."""

    def __init__(self, visit_id: str) -> None:
        super().__init__(f"Visit not found: {visit_id}")
        self.visit_id = visit_id
