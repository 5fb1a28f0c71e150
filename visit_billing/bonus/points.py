"""Point value resolution for matched rules."""

from __future__ import annotations

from .models import ConditionBranch, PointsMode, RuleDefinition, VisitContext


def resolve_points(
    rule: RuleDefinition,
    matched_branch: ConditionBranch | None,
    context: VisitContext,
) -> int:
    """Return the points a matched rule is worth for this visit.

    Fixed rules return their configured value verbatim. Conditional rules
    return the points of the branch that matched; asking for points of a
    conditional rule without a matched branch is a caller error.
    """
    if rule.points_mode == PointsMode.FIXED:
        if rule.fixed_points is None:
            raise ValueError(f"{rule.rule_code} v{rule.version} is fixed but has no points")
        return int(rule.fixed_points)

    if matched_branch is None:
        raise ValueError(
            f"{rule.rule_code} v{rule.version} is conditional; a matched branch is "
            f"required (visit {context.visit_id})"
        )
    if matched_branch not in rule.branches:
        raise ValueError(f"Branch {matched_branch.name!r} does not belong to {rule.rule_code}")
    return int(matched_branch.points)
