"""Unit tests for the billing rule engine."""

import pytest
from datetime import datetime
from decimal import Decimal
from common.enums import CareType, GlosaType, RuleScopeKind, ValidationSkip
from services.glosas.calculator import GlosaItem
from services.rules.definitions import (
    AcceptDateOutsideWindow,
    AdjustValue,
    Equals,
    HomologateService,
    IgnoreGlosa,
    LessThan,
    Rule,
    SkipAuthorizationCheck,
    parse_interpretation,
)
from services.rules.engine import (
    RuleContext,
    RuleEngine,
    collect_homologations,
    collect_validation_skips,
    derive_care_type,
)
from services.rules.store import InMemoryRuleStore

FIXED_NOW = datetime(2024, 3, 20, 12, 0, 0)


def make_rule(action, conditions=(), rule_id=1, name=None, priority=100, scope_kind=RuleScopeKind.GLOBAL, scope_value=None):
    return Rule(
        id=rule_id,
        name=name or f"rule-{rule_id}",
        priority=priority,
        scope_kind=scope_kind,
        scope_value=scope_value,
        conditions=tuple(conditions),
        action=action,
    )


def make_glosa(total, procedure_code="890281", glosa_type=GlosaType.TARIFF_DIFFERENCE):
    total = Decimal(str(total))
    return GlosaItem(
        glosa_type=glosa_type,
        reason_code="202",
        procedure_code=procedure_code,
        procedure_description="CONSULTA",
        billed_value=total,
        contracted_value=Decimal(0),
        difference=total,
        quantity=1,
        total=total,
        justification="test",
    )


@pytest.fixture
def engine():
    return RuleEngine(clock=lambda: FIXED_NOW)


class TestRuleEngine:
    """Test rule matching and actions."""

    def test_small_value_rule_removes_glosa(self, engine):
        """Test a 'valor menor 5000' ignore rule drops the pending glosa."""
        conditions, action, _ = parse_interpretation(
            {
                "conditions": [{"field": "valor", "operator": "menor", "value": 5000}],
                "action": {"type": "ignorar_glosa"},
            }
        )
        rule = make_rule(action, conditions)
        context = RuleContext(value=Decimal("4000"), procedure_code="890281")

        result = engine.evaluate(context, [rule], [make_glosa(4500)])

        assert result.filtered_glosas == []
        assert len(result.applied_rules) == 1
        assert result.applied_rules[0].glosas_removed == 1

    def test_ignore_glosa_also_forgives_small_unrelated_glosas(self, engine):
        rule = make_rule(IgnoreGlosa())
        context = RuleContext(value=Decimal("5000"), procedure_code="890281")
        glosas = [make_glosa(3000, procedure_code="902210"), make_glosa(9000, procedure_code="902210")]

        result = engine.evaluate(context, [rule], glosas)

        assert [g.total for g in result.filtered_glosas] == [Decimal("9000")]

    def test_ignore_glosa_on_empty_list_is_noop(self, engine):
        result = engine.evaluate(RuleContext(value=Decimal("100")), [make_rule(IgnoreGlosa())], [])

        assert result.filtered_glosas == []
        assert len(result.applied_rules) == 1
        assert result.applied_rules[0].glosas_removed == 0

    def test_no_rules_no_changes(self, engine):
        glosas = [make_glosa(1000)]

        result = engine.evaluate(RuleContext(value=Decimal("1000")), [], glosas)

        assert result.filtered_glosas == glosas
        assert result.applied_rules == []
        assert result.validation_skips == set()

    def test_all_conditions_must_hold(self, engine):
        rule = make_rule(
            IgnoreGlosa(),
            [LessThan("value", 5000), Equals("procedure_code", "902210")],
        )
        context = RuleContext(value=Decimal("4000"), procedure_code="890281")

        result = engine.evaluate(context, [rule], [make_glosa(4500)])

        assert result.applied_rules == []
        assert len(result.filtered_glosas) == 1

    def test_scope_filters_rules(self, engine):
        payer_rule = make_rule(
            SkipAuthorizationCheck(), rule_id=1, scope_kind=RuleScopeKind.PAYER, scope_value="SANITAS"
        )
        bucket_rule = make_rule(
            AcceptDateOutsideWindow(), rule_id=2, scope_kind=RuleScopeKind.VALUE_BUCKET, scope_value="1"
        )
        context = RuleContext(value=Decimal("4000"), payer="NUEVA EPS", value_bucket=1)

        result = engine.evaluate(context, [payer_rule, bucket_rule], [])

        assert [r.rule_id for r in result.applied_rules] == [2]
        assert result.validation_skips == {ValidationSkip.DATE_VALIDATION.value}

    def test_priority_order_with_id_tiebreak(self, engine):
        rules = [
            make_rule(AcceptDateOutsideWindow(), rule_id=5, priority=20),
            make_rule(AcceptDateOutsideWindow(), rule_id=3, priority=20),
            make_rule(AcceptDateOutsideWindow(), rule_id=9, priority=1),
        ]

        result = engine.evaluate(RuleContext(), rules, [])

        assert [r.rule_id for r in result.applied_rules] == [9, 3, 5]

    def test_evaluation_is_deterministic(self, engine):
        rules = [
            make_rule(IgnoreGlosa(), [LessThan("value", 5000)], rule_id=1),
            make_rule(SkipAuthorizationCheck(), rule_id=2, priority=50),
        ]
        context = RuleContext(value=Decimal("4000"), procedure_code="890281")
        glosas = [make_glosa(4500), make_glosa(100000, glosa_type=GlosaType.MISSING_AUTHORIZATION)]

        first = engine.evaluate(context, rules, glosas)
        second = engine.evaluate(context, list(reversed(rules)), glosas)

        assert first.filtered_glosas == second.filtered_glosas
        assert [r.rule_id for r in first.applied_rules] == [r.rule_id for r in second.applied_rules]

    def test_skip_authorization_removes_missing_authorization_glosa(self, engine):
        rule = make_rule(SkipAuthorizationCheck())
        glosas = [make_glosa(70000, glosa_type=GlosaType.MISSING_AUTHORIZATION), make_glosa(1000)]

        result = engine.evaluate(RuleContext(value=Decimal("70000")), [rule], glosas)

        assert ValidationSkip.AUTHORIZATION.value in result.validation_skips
        assert [g.glosa_type for g in result.filtered_glosas] == [GlosaType.TARIFF_DIFFERENCE]

    @pytest.mark.parametrize(
        "direction,billed,expected",
        [
            ("superior", "11000", Decimal("11000.0")),
            ("inferior", "11000", Decimal("9000.0")),
            ("ambos", "10500", Decimal("10500")),
            ("ambos", "12000", Decimal("10000")),
        ],
    )
    def test_adjust_value(self, engine, direction, billed, expected):
        rule = make_rule(AdjustValue(percent=Decimal(10), direction=direction))
        context = RuleContext(billed_value=Decimal(billed), contracted_value=Decimal("10000"))

        result = engine.evaluate(context, [rule], [])

        adjustment = result.value_adjustments[0]
        assert adjustment.original_value == Decimal("10000")
        assert adjustment.adjusted_value == expected
        # the caller's context is untouched
        assert context.contracted_value == Decimal("10000")

    def test_homologation_recorded(self, engine):
        rule = make_rule(HomologateService(target_code="890202", target_name="CONTROL"))
        context = RuleContext(procedure_code="890201")

        result = engine.evaluate(context, [rule], [])

        assert result.homologations[0].source_code == "890201"
        assert result.homologations[0].target_code == "890202"

    def test_statistics_recorded_per_application(self):
        store = InMemoryRuleStore()
        engine = RuleEngine(stats=store, clock=lambda: FIXED_NOW)
        rule = make_rule(IgnoreGlosa(), [LessThan("value", 5000)], rule_id=4)
        context = RuleContext(value=Decimal("4000"), procedure_code="890281")

        engine.evaluate(context, [rule], [make_glosa(4500)])
        engine.evaluate(context, [rule], [])

        stats = store.statistics[4]
        assert stats["times_applied"] == 2
        assert stats["total_value_affected"] == Decimal("8000")
        assert stats["glosas_avoided"] == 1
        assert stats["last_applied_at"] == FIXED_NOW

    def test_statistics_skipped_when_disabled(self):
        store = InMemoryRuleStore()
        engine = RuleEngine(stats=store)

        engine.evaluate(RuleContext(), [make_rule(AcceptDateOutsideWindow())], [], record_statistics=False)

        assert store.statistics == {}


class TestPrePass:
    """Skips and homologations needed before validation runs."""

    def test_collect_validation_skips(self):
        rules = [make_rule(SkipAuthorizationCheck(), rule_id=1), make_rule(AcceptDateOutsideWindow(), rule_id=2)]
        skips = collect_validation_skips(RuleContext(), rules)
        assert skips == {ValidationSkip.AUTHORIZATION.value, ValidationSkip.DATE_VALIDATION.value}

    def test_collect_homologations(self):
        rules = [make_rule(HomologateService(target_code="890202"), [Equals("procedure_code", "890201")])]
        assert collect_homologations(RuleContext(procedure_code="890201"), rules) == {"890201": "890202"}
        assert collect_homologations(RuleContext(procedure_code="890281"), rules) == {}


class TestCareType:
    @pytest.mark.parametrize(
        "name,care_type",
        [
            ("CONSULTA DE URGENCIAS MEDICINA GENERAL", CareType.EMERGENCY),
            ("Estancia hospitalizacion general", CareType.INPATIENT),
            ("Procedimiento quirurgico menor", CareType.SURGICAL),
            ("RADIOGRAFIA DE TORAX", CareType.OUTPATIENT),
            (None, CareType.OUTPATIENT),
        ],
    )
    def test_derive_care_type(self, name, care_type):
        assert derive_care_type(name) == care_type
