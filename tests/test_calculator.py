"""Tests for the bonus calculator."""

from __future__ import annotations

from dataclasses import replace
from datetime import date

from visit_billing.bonus import (
    BonusCalculationHistoryRecord,
    BonusCalculator,
    InMemoryAggregateCounter,
    InsuranceCategory,
    MonthlyAggregateChecker,
    PointsMode,
    RuleCatalog,
    RuleDefinition,
)
from visit_billing.bonus.models import (
    ConditionBranch,
    FlagCondition,
    MonthlyCapCondition,
    MonthlyCountCondition,
    NumericCondition,
    NumericOperator,
)


def _calculator(catalog: RuleCatalog, records=()) -> BonusCalculator:
    return BonusCalculator(catalog, MonthlyAggregateChecker(InMemoryAggregateCounter(records)))


def _history(visit_id: str, visit_date: date, rule_code: str, patient_id: str = "P-001"):
    return BonusCalculationHistoryRecord(
        visit_id=visit_id,
        rule_code=rule_code,
        version="2025.01",
        points=6800,
        calculated_at="2025-03-03T12:00:00+00:00",
        patient_id=patient_id,
        visit_date=visit_date,
    )


class TestCalculateExamples:
    """End-to-end calculations for representative visits."""

    def test_evening_emergency_visit_gets_night_and_emergency(self, sample_rules, make_visit):
        catalog = RuleCatalog([r for r in sample_rules if r.rule_code != "SUPPORT_24H"])
        visit = make_visit(
            start=(19, 0),
            emergency_reason="Sudden dyspnoea, family called",
            flags={"has_24h_support_system"},
        )

        bonuses = _calculator(catalog).calculate(visit)

        assert [b.rule_code for b in bonuses] == ["NIGHT_EARLY", "EMERGENCY_VISIT"]
        assert [b.points for b in bonuses] == [2100, 2650]
        assert all(b.points > 0 for b in bonuses)
        assert bonuses[0].matched_condition == "night"
        assert "v2024.06" in bonuses[0].justification

    def test_second_visit_in_month_gets_no_capped_rule(self, sample_catalog, make_visit):
        first = _history("V-001", date(2025, 3, 3), "SUPPORT_24H")
        visit = make_visit(
            visit_id="V-002",
            visit_date=date(2025, 3, 10),
            flags={"has_24h_support_system"},
        )

        bonuses = _calculator(sample_catalog, [first]).calculate(visit)

        assert "SUPPORT_24H" not in [b.rule_code for b in bonuses]

    def test_first_visit_in_month_gets_capped_rule(self, sample_catalog, make_visit):
        visit = make_visit(visit_date=date(2025, 3, 3), flags={"has_24h_support_system"})
        bonuses = _calculator(sample_catalog).calculate(visit)
        assert [b.rule_code for b in bonuses] == ["SUPPORT_24H"]
        assert bonuses[0].points == 6800

    def test_recalculating_the_capped_visit_itself_keeps_it(self, sample_catalog, make_visit):
        own = _history("V-001", date(2025, 3, 3), "SUPPORT_24H")
        visit = make_visit(visit_date=date(2025, 3, 3), flags={"has_24h_support_system"})
        bonuses = _calculator(sample_catalog, [own]).calculate(visit)
        assert [b.rule_code for b in bonuses] == ["SUPPORT_24H"]

    def test_previous_month_does_not_count_toward_cap(self, sample_catalog, make_visit):
        february = _history("V-000", date(2025, 2, 27), "SUPPORT_24H")
        visit = make_visit(visit_date=date(2025, 3, 1), flags={"has_24h_support_system"})
        bonuses = _calculator(sample_catalog, [february]).calculate(visit)
        assert [b.rule_code for b in bonuses] == ["SUPPORT_24H"]

    def test_plain_daytime_visit_gets_nothing(self, sample_catalog, make_visit):
        assert _calculator(sample_catalog).calculate(make_visit()) == []


class TestVersionSelection:
    def test_points_follow_the_visit_date(self, sample_catalog, make_visit):
        calculator = _calculator(sample_catalog)
        december = make_visit(visit_date=date(2024, 12, 31), flags={"has_24h_support_system"})
        january = make_visit(visit_date=date(2025, 1, 1), flags={"has_24h_support_system"})

        (old,) = calculator.calculate(december)
        (new,) = calculator.calculate(january)

        assert (old.version, old.points) == ("2024.06", 6520)
        assert (new.version, new.points) == ("2025.01", 6800)

    def test_rule_not_yet_effective_is_skipped_with_issue(self, sample_catalog, make_visit):
        visit = make_visit(visit_date=date(2024, 5, 20), start=(19, 0))
        report = _calculator(sample_catalog).calculate_with_report(visit)

        assert report.bonuses == []
        assert {i.kind for i in report.issues} == {"rule_not_found"}

    def test_ambiguous_version_is_reported_and_other_rules_continue(self, sample_rules, make_visit):
        duplicate = replace(sample_rules[3], version="2025.01-dup")
        catalog = RuleCatalog(sample_rules + [duplicate])
        visit = make_visit(start=(19, 0), flags={"has_24h_support_system"})

        report = _calculator(catalog).calculate_with_report(visit)

        assert report.rule_codes == ["NIGHT_EARLY"]
        assert [(i.rule_code, i.kind) for i in report.issues] == [
            ("SUPPORT_24H", "ambiguous_version")
        ]


class TestCalculatorBehaviour:
    def test_deterministic(self, sample_catalog, make_visit):
        visit = make_visit(
            start=(23, 15),
            minutes=120,
            emergency_reason="fall",
            flags={"has_24h_support_system"},
        )
        calculator = _calculator(sample_catalog)
        assert calculator.calculate(visit) == calculator.calculate(visit)

    def test_no_duplicate_rule_codes(self, sample_catalog, make_visit):
        visit = make_visit(
            start=(23, 15),
            minutes=120,
            emergency_reason="fall",
            flags={"has_24h_support_system"},
        )
        codes = [b.rule_code for b in _calculator(sample_catalog).calculate(visit)]
        assert codes == ["NIGHT_EARLY", "EMERGENCY_VISIT", "SUPPORT_24H", "LONG_VISIT"]
        assert len(codes) == len(set(codes))

    def test_other_insurance_category_is_ignored(self, sample_catalog, make_visit):
        visit = make_visit(start=(19, 0), insurance_category=InsuranceCategory.CARE)
        assert _calculator(sample_catalog).calculate(visit) == []

    def test_zero_point_result_is_not_recorded(self, make_visit):
        rule = RuleDefinition(
            rule_code="DAYTIME",
            version="1",
            display_name="Daytime",
            insurance_category=InsuranceCategory.MEDICAL,
            points_mode=PointsMode.FIXED,
            effective_from=date(2024, 1, 1),
            fixed_points=0,
        )
        assert _calculator(RuleCatalog([rule])).calculate(make_visit()) == []

    def test_capped_branch_over_limit_falls_through(self, make_visit):
        rule = RuleDefinition(
            rule_code="VISIT_COUNT",
            version="1",
            display_name="Visit count",
            insurance_category=InsuranceCategory.MEDICAL,
            points_mode=PointsMode.CONDITIONAL,
            effective_from=date(2024, 1, 1),
            branches=(
                ConditionBranch(MonthlyCapCondition(1), 800, "first_in_month"),
                ConditionBranch(
                    NumericCondition("daily_visit_ordinal", NumericOperator.GE, 1), 300, "repeat"
                ),
            ),
        )
        earlier = _history("V-001", date(2025, 3, 3), "VISIT_COUNT")
        visit = make_visit(visit_id="V-002")

        (bonus,) = _calculator(RuleCatalog([rule]), [earlier]).calculate(visit)

        assert bonus.matched_condition == "repeat"
        assert bonus.points == 300

    def test_monthly_count_tiers(self, make_visit):
        rule = RuleDefinition(
            rule_code="EMERGENCY_VISIT",
            version="1",
            display_name="Emergency visit",
            insurance_category=InsuranceCategory.MEDICAL,
            points_mode=PointsMode.CONDITIONAL,
            effective_from=date(2024, 1, 1),
            branches=(
                ConditionBranch(MonthlyCountCondition(NumericOperator.LT, 2), 2650, "up_to_14_days"),
                ConditionBranch(MonthlyCountCondition(NumericOperator.GE, 2), 2000, "after_14_days"),
            ),
        )
        earlier = [
            _history("V-001", date(2025, 3, 1), "EMERGENCY_VISIT"),
            _history("V-002", date(2025, 3, 2), "EMERGENCY_VISIT"),
        ]
        calculator = _calculator(RuleCatalog([rule]), earlier)

        (second,) = calculator.calculate(make_visit(visit_id="V-002"))
        (third,) = calculator.calculate(make_visit(visit_id="V-003"))
        (pending,) = calculator.calculate(make_visit(visit_id="V-003"), pending_visit_ids={"V-002"})

        assert (second.matched_condition, second.points) == ("up_to_14_days", 2650)
        assert (third.matched_condition, third.points) == ("after_14_days", 2000)
        assert pending.points == 2650

    def test_pending_visits_do_not_use_up_the_cap(self, sample_catalog, make_visit):
        later = _history("V-LATE", date(2025, 3, 20), "SUPPORT_24H")
        calculator = _calculator(sample_catalog, [later])
        visit = make_visit(
            visit_id="V-EARLY", visit_date=date(2025, 3, 2), flags={"has_24h_support_system"}
        )

        assert "SUPPORT_24H" not in [b.rule_code for b in calculator.calculate(visit)]
        assert "SUPPORT_24H" in [
            b.rule_code for b in calculator.calculate(visit, pending_visit_ids={"V-LATE"})
        ]

    def test_cannot_combine_with_earlier_rule(self, sample_rules, make_visit):
        rules = [
            replace(r, cannot_combine_with=frozenset({"NIGHT_EARLY"}))
            if r.rule_code == "EMERGENCY_VISIT"
            else r
            for r in sample_rules
        ]
        visit = make_visit(start=(19, 0), emergency_reason="x", flags={"has_24h_support_system"})
        codes = [b.rule_code for b in _calculator(RuleCatalog(rules)).calculate(visit)]
        assert "EMERGENCY_VISIT" not in codes
        assert "NIGHT_EARLY" in codes

    def test_can_combine_with_whitelist(self, sample_rules, make_visit):
        rules = [
            replace(r, can_combine_with=frozenset({"NIGHT_EARLY"}))
            if r.rule_code == "SUPPORT_24H"
            else r
            for r in sample_rules
        ]
        visit = make_visit(start=(19, 0), emergency_reason="x", flags={"has_24h_support_system"})
        codes = [b.rule_code for b in _calculator(RuleCatalog(rules)).calculate(visit)]
        # EMERGENCY_VISIT is applied first and is not on the whitelist
        assert codes == ["NIGHT_EARLY", "EMERGENCY_VISIT"]

    def test_failed_requirement_blocks_fixed_rule(self, sample_catalog, make_visit):
        visit = make_visit(emergency_reason="x")  # no 24h support flag
        codes = [b.rule_code for b in _calculator(sample_catalog).calculate(visit)]
        assert "EMERGENCY_VISIT" not in codes

    def test_display_order_controls_result_order(self, make_visit):
        def fixed(code: str, order: int) -> RuleDefinition:
            return RuleDefinition(
                rule_code=code,
                version="1",
                display_name=code,
                insurance_category=InsuranceCategory.MEDICAL,
                points_mode=PointsMode.FIXED,
                effective_from=date(2024, 1, 1),
                fixed_points=100,
                requirements=(FlagCondition("f"),),
                display_order=order,
            )

        catalog = RuleCatalog([fixed("A", 30), fixed("B", 10), fixed("C", 10)])
        codes = [b.rule_code for b in _calculator(catalog).calculate(make_visit(flags={"f"}))]
        assert codes == ["B", "C", "A"]
