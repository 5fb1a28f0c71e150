"""Core bonus calculation for a single visit."""
from __future__ import annotations

import logging
from collections.abc import Collection

from .aggregates import MonthlyAggregateChecker
from .conditions import evaluate_condition, iter_aggregates
from .errors import AmbiguousVersionError, RuleNotFoundError
from .models import (
    BillingPeriod,
    CalculatedBonus,
    CalculationReport,
    Condition,
    ConditionBranch,
    MonthlyCapCondition,
    PointsMode,
    RuleDefinition,
    RuleIssue,
    VisitContext,
)
from .points import resolve_points
from .versions import RuleCatalog

logger = logging.getLogger(__name__)


def check_combination(rule: RuleDefinition, applied_codes: list[str]) -> tuple[bool, str | None]:
    """Check a rule against the surcharges already applied to the visit."""
    if rule.can_combine_with:
        blocking = [code for code in applied_codes if code not in rule.can_combine_with]
        if blocking:
            return False, (
                f"{rule.rule_code} can only be combined with: "
                f"{', '.join(sorted(rule.can_combine_with))}"
            )
    if rule.cannot_combine_with:
        conflicting = [code for code in applied_codes if code in rule.cannot_combine_with]
        if conflicting:
            return False, f"{rule.rule_code} cannot be combined with: {', '.join(conflicting)}"
    return True, None


class BonusCalculator:
    """Determines the surcharges that apply to one visit.

    Both the catalog snapshot and the aggregate checker are explicit
    dependencies; the calculator itself never writes anything.
    """

    def __init__(self, catalog: RuleCatalog, aggregate_checker: MonthlyAggregateChecker) -> None:
        self.catalog = catalog
        self.aggregate_checker = aggregate_checker

    def calculate(
        self, context: VisitContext, pending_visit_ids: Collection[str] = ()
    ) -> list[CalculatedBonus]:
        """Return the applicable surcharges in evaluation order."""
        return self.calculate_with_report(context, pending_visit_ids).bonuses

    def calculate_with_report(
        self, context: VisitContext, pending_visit_ids: Collection[str] = ()
    ) -> CalculationReport:
        """Calculate one visit and collect per-rule issues.

        `pending_visit_ids` names visits whose history rows are stale because
        the running recalculation pass has not reached them; monthly caps
        and counts ignore those rows.
        """
        report = CalculationReport()
        period = BillingPeriod.for_date(context.visit_date)

        rules: list[RuleDefinition] = []
        for rule_code in self.catalog.rule_codes(context.insurance_category):
            try:
                rule = self.catalog.resolve(rule_code, context.visit_date)
            except RuleNotFoundError as e:
                logger.warning(f"Skipping {rule_code} for visit {context.visit_id}: {e}")
                report.issues.append(
                    RuleIssue(rule_code, "rule_not_found", str(e), context.visit_id)
                )
                continue
            except AmbiguousVersionError as e:
                logger.error(f"Master data integrity violation for visit {context.visit_id}: {e}")
                report.issues.append(
                    RuleIssue(rule_code, "ambiguous_version", str(e), context.visit_id)
                )
                continue
            if rule.insurance_category != context.insurance_category:
                continue
            rules.append(rule)

        rules.sort(key=lambda r: (r.display_order, r.rule_code))

        applied_codes: list[str] = []
        for rule in rules:
            allowed, reason = check_combination(rule, applied_codes)
            if not allowed:
                logger.debug(f"Visit {context.visit_id}: {reason}")
                continue

            try:
                bonus = self._evaluate_rule(rule, context, period, pending_visit_ids)
            except ValueError as e:
                logger.error(f"Rule {rule.rule_code} v{rule.version} is invalid: {e}")
                report.issues.append(
                    RuleIssue(rule.rule_code, "invalid_rule", str(e), context.visit_id)
                )
                continue

            if bonus is None or bonus.points <= 0:
                continue
            report.bonuses.append(bonus)
            applied_codes.append(rule.rule_code)

        return report

    def _aggregates_allow(
        self,
        rule: RuleDefinition,
        condition: Condition,
        context: VisitContext,
        period: BillingPeriod,
        pending_visit_ids: Collection[str],
    ) -> bool:
        for aggregate in iter_aggregates(condition):
            if isinstance(aggregate, MonthlyCapCondition):
                allowed = self.aggregate_checker.within_limit(
                    rule.rule_code,
                    context.patient_id,
                    period.start,
                    period.end,
                    excluding_visit_id=context.visit_id,
                    limit=aggregate.limit,
                    pending_visit_ids=pending_visit_ids,
                )
            else:
                allowed = self.aggregate_checker.count_satisfies(
                    rule.rule_code,
                    context.patient_id,
                    period.start,
                    period.end,
                    aggregate.operator,
                    aggregate.threshold,
                    excluding_visit_id=context.visit_id,
                    pending_visit_ids=pending_visit_ids,
                )
            if not allowed:
                logger.debug(
                    f"{rule.rule_code} for patient {context.patient_id} in {period.key}: "
                    f"not {aggregate.describe()}"
                )
                return False
        return True

    def _evaluate_rule(
        self,
        rule: RuleDefinition,
        context: VisitContext,
        period: BillingPeriod,
        pending_visit_ids: Collection[str] = (),
    ) -> CalculatedBonus | None:
        conditions_passed: list[str] = []

        for requirement in rule.requirements:
            result = evaluate_condition(requirement, context)
            if not result.matched:
                return None
            if not self._aggregates_allow(rule, requirement, context, period, pending_visit_ids):
                return None
            conditions_passed.append(result.reason)

        matched_branch: ConditionBranch | None = None
        if rule.points_mode == PointsMode.CONDITIONAL:
            # first match wins; a branch failing its monthly check falls through
            for branch in rule.branches:
                result = evaluate_condition(branch.condition, context)
                if not result.matched:
                    continue
                if not self._aggregates_allow(
                    rule, branch.condition, context, period, pending_visit_ids
                ):
                    continue
                matched_branch = branch
                conditions_passed.append(result.reason)
                break
            if matched_branch is None:
                return None

        points = resolve_points(rule, matched_branch, context)
        matched_condition = matched_branch.name if matched_branch else "fixed_points"
        details = "; ".join(conditions_passed) if conditions_passed else "no conditions"

        return CalculatedBonus(
            rule_code=rule.rule_code,
            version=rule.version,
            display_name=rule.display_name,
            points=points,
            justification=f"{rule.display_name} v{rule.version} [{matched_condition}]: {details}",
            matched_condition=matched_condition,
            conditions_passed=tuple(conditions_passed),
        )
