"""Rule catalog snapshot and date-effective version selection."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import date

from .errors import AmbiguousVersionError, RuleNotFoundError
from .models import InsuranceCategory, RuleDefinition


class RuleCatalog:
    """Immutable snapshot of the master rule catalog.

    The engine only reads rule definitions; it never writes back to the
    master store. Build a new snapshot to pick up master-data changes.
    """

    def __init__(self, definitions: Iterable[RuleDefinition] = ()) -> None:
        versions: dict[str, list[RuleDefinition]] = defaultdict(list)
        for definition in definitions:
            versions[definition.rule_code].append(definition)
        self._versions: dict[str, tuple[RuleDefinition, ...]] = {
            code: tuple(sorted(defs, key=lambda d: (d.effective_from, d.version)))
            for code, defs in versions.items()
        }

    def __len__(self) -> int:
        return sum(len(defs) for defs in self._versions.values())

    def __contains__(self, rule_code: object) -> bool:
        return rule_code in self._versions

    def definitions(self) -> list[RuleDefinition]:
        return [d for code in sorted(self._versions) for d in self._versions[code]]

    def versions(self, rule_code: str) -> tuple[RuleDefinition, ...]:
        return self._versions.get(rule_code, ())

    def rule_codes(self, category: InsuranceCategory | None = None) -> list[str]:
        """Rule codes with at least one active version in the category."""
        codes = [
            code
            for code, defs in self._versions.items()
            if any(
                d.active and (category is None or d.insurance_category == category)
                for d in defs
            )
        ]
        return sorted(codes)

    def resolve(self, rule_code: str, as_of: date) -> RuleDefinition:
        """Return the single active version effective on `as_of`.

        Raises:
            RuleNotFoundError: No active version covers the date
            AmbiguousVersionError: More than one active version covers it
        """
        candidates = [d for d in self.versions(rule_code) if d.active and d.covers(as_of)]
        if not candidates:
            raise RuleNotFoundError(rule_code, as_of)
        if len(candidates) > 1:
            raise AmbiguousVersionError(rule_code, as_of, [d.version for d in candidates])
        return candidates[0]

    def validate(self) -> list[str]:
        """Report overlapping active versions of the same rule code."""
        problems: list[str] = []
        for code, defs in sorted(self._versions.items()):
            active = [d for d in defs if d.active]
            for idx, first in enumerate(active):
                for second in active[idx + 1 :]:
                    if first.overlaps(second):
                        problems.append(
                            f"{code}: versions {first.version} and {second.version} "
                            "have overlapping effective ranges"
                        )
        return problems
