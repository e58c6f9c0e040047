"""Unit tests for rule parsing and conditions."""

import pytest
from decimal import Decimal
from common.enums import RuleScopeKind
from services.claims.models import BillingRule
from services.rules.definitions import (
    AdjustValue,
    Between,
    Contains,
    Equals,
    Exists,
    HomologateService,
    IgnoreGlosa,
    LessThan,
    NotExists,
    RuleInterpretationInvalid,
    SkipAuthorizationCheck,
    parse_condition,
    parse_interpretation,
    parse_rule,
    parse_scope,
    resolve_field,
    to_number,
)
from services.rules.engine import RuleContext


class TestParsing:
    """Stored interpretations in English and Spanish."""

    def test_spanish_condition(self):
        condition = parse_condition({"campo": "valor", "operador": "menor", "valor": 5000})
        assert condition == LessThan("value", 5000)

    def test_english_condition(self):
        condition = parse_condition({"field": "procedure_code", "operator": "eq", "value": "890281"})
        assert condition == Equals("procedure_code", "890281")

    def test_field_aliases_ignore_case_and_spaces(self):
        assert resolve_field("codigoCUPS") == "procedure_code"
        assert resolve_field("valor IPS") == "billed_value"
        assert resolve_field("tipoAtencion") == "care_type"

    def test_unknown_field(self):
        with pytest.raises(RuleInterpretationInvalid):
            resolve_field("color")

    def test_unknown_operator(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_condition({"field": "valor", "operator": "approximately", "value": 1})

    def test_between_with_list_value(self):
        condition = parse_condition({"field": "valor", "operator": "entre", "value": [100, 200]})
        assert condition == Between("value", 100, 200)

    def test_between_with_upper_key(self):
        condition = parse_condition({"field": "valor", "operator": "between", "value": 100, "valorMax": 200})
        assert condition == Between("value", 100, 200)

    def test_between_needs_both_bounds(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_condition({"field": "valor", "operator": "between", "value": 100})

    def test_interpretation_with_spanish_keys(self):
        conditions, action, params = parse_interpretation(
            {
                "condiciones": [{"campo": "codigoCUPS", "operador": "igual", "valor": "890201"}],
                "accion": {"tipo": "homologar_servicio", "parametros": {"codigoDestino": "890202"}},
            }
        )
        assert conditions == (Equals("procedure_code", "890201"),)
        assert action == HomologateService(target_code="890202")
        assert params == {"codigoDestino": "890202"}

    def test_adjust_value_parameters(self):
        _, action, _ = parse_interpretation(
            {
                "conditions": [],
                "action": {"type": "ajustar_valor", "parameters": {"porcentajePermitido": 10, "direccion": "ambos"}},
            }
        )
        assert action == AdjustValue(percent=Decimal("10"), direction="ambos")

    def test_adjust_value_needs_percent(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_interpretation({"conditions": [], "action": {"type": "adjust_value"}})

    def test_adjust_value_unknown_direction(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_interpretation(
                {"conditions": [], "action": {"type": "adjust_value", "parameters": {"percent": 5, "direction": "sideways"}}}
            )

    def test_homologation_needs_target(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_interpretation({"conditions": [], "action": {"type": "homologate_service"}})

    def test_missing_interpretation(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_interpretation(None)

    def test_unknown_action(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_interpretation({"conditions": [], "action": {"type": "pay_double"}})

    def test_scope_aliases(self):
        assert parse_scope("eps", "NUEVA EPS") == (RuleScopeKind.PAYER, "NUEVA EPS")
        assert parse_scope("rango_valor", 2) == (RuleScopeKind.VALUE_BUCKET, "2")
        assert parse_scope("global", "ignored") == (RuleScopeKind.GLOBAL, None)

    def test_scoped_rule_needs_value(self):
        with pytest.raises(RuleInterpretationInvalid):
            parse_scope("procedure", None)

    def test_parse_stored_rule(self):
        stored = BillingRule(
            id=7,
            name="Forgive small glosas",
            description="Si el valor es menor a 5000 ignorar la glosa",
            rule_type="glosa",
            priority=10,
            scope_kind="global",
            interpretation={
                "conditions": [{"field": "valor", "operator": "menor", "value": 5000}],
                "action": {"type": "ignorar_glosa"},
            },
            created_by="auditor",
        )

        rule = parse_rule(stored)

        assert rule.id == 7
        assert rule.priority == 10
        assert rule.action == IgnoreGlosa()
        assert rule.conditions == (LessThan("value", 5000),)


class TestConditions:
    """Evaluation of each operator against a context."""

    def test_numeric_coercion(self):
        assert to_number("$ 38.586") == Decimal("38.586")
        assert to_number("abc") == Decimal(0)
        assert to_number(None) == Decimal(0)

    def test_less_and_greater(self):
        context = RuleContext(value=Decimal("4000"))
        assert LessThan("value", 5000).holds(context)
        assert not LessThan("value", "4000").holds(context)

    def test_contains_is_case_insensitive_strings_only(self):
        context = RuleContext(procedure_name="Consulta de URGENCIAS", quantity=12)
        assert Contains("procedure_name", "urgencias").holds(context)
        assert not Contains("quantity", "1").holds(context)

    def test_between_is_inclusive(self):
        context = RuleContext(value=Decimal("100"))
        assert Between("value", 100, 200).holds(context)
        assert Between("value", 50, 100).holds(context)
        assert not Between("value", 101, 200).holds(context)

    def test_equals_numbers_by_value(self):
        assert Equals("value", 4000).holds(RuleContext(value=Decimal("4000.00")))

    def test_exists_and_not_exists(self):
        context = RuleContext(authorization_number="")
        assert NotExists("authorization_number").holds(context)
        assert not Exists("authorization_number").holds(context)
        assert Exists("payer").holds(RuleContext(payer="NUEVA EPS"))

    def test_actions_have_stable_names(self):
        assert IgnoreGlosa.name == "ignore_glosa"
        assert SkipAuthorizationCheck.name == "skip_authorization_check"
