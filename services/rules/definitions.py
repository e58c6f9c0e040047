"""Structured billing rules: conditions, actions and parsing of stored interpretations.

Stored interpretations are JSON documents of the form::

    {"conditions": [{"field": "valor", "operator": "menor", "value": 5000}],
     "action": {"type": "ignorar_glosa", "parameters": {}}}

Both English and Spanish tokens are accepted for operators, actions, scopes and
context field names.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple, Union
import re

from common.enums import RuleScopeKind
from services.claims.models import BillingRule


class RuleInterpretationInvalid(Exception):
    """Raised when a stored rule has no usable condition/action structure."""

    pass


# context field aliases -> RuleContext attribute
FIELD_ALIASES = {
    "valor": "value",
    "value": "value",
    "valortotal": "value",
    "valorips": "billed_value",
    "billed_value": "billed_value",
    "valorcontratado": "contracted_value",
    "contracted_value": "contracted_value",
    "codigocups": "procedure_code",
    "cups": "procedure_code",
    "procedure_code": "procedure_code",
    "nombreprocedimiento": "procedure_name",
    "procedure_name": "procedure_name",
    "autorizacion": "authorization_number",
    "numeroautorizacion": "authorization_number",
    "authorization_number": "authorization_number",
    "fechaservicio": "service_date",
    "service_date": "service_date",
    "fechaautorizacion": "authorization_date",
    "authorization_date": "authorization_date",
    "diagnostico": "diagnosis_code",
    "diagnosis_code": "diagnosis_code",
    "tipodocumentopaciente": "patient_document_type",
    "patient_document_type": "patient_document_type",
    "numerodocumentopaciente": "patient_document",
    "patient_document": "patient_document",
    "tipoatencion": "care_type",
    "care_type": "care_type",
    "rango": "value_bucket",
    "value_bucket": "value_bucket",
    "eps": "payer",
    "payer": "payer",
    "cantidad": "quantity",
    "quantity": "quantity",
}

OPERATOR_ALIASES = {
    "lt": "lt", "menor": "lt", "menor_que": "lt",
    "gt": "gt", "mayor": "gt", "mayor_que": "gt",
    "eq": "eq", "igual": "eq",
    "contains": "contains", "contiene": "contains",
    "between": "between", "entre": "between",
    "exists": "exists", "existe": "exists",
    "not_exists": "not_exists", "no_existe": "not_exists",
}

ACTION_ALIASES = {
    "ignore_glosa": "ignore_glosa", "ignorar_glosa": "ignore_glosa",
    "skip_authorization_check": "skip_authorization_check",
    "no_validar_autorizacion": "skip_authorization_check",
    "adjust_value": "adjust_value", "ajustar_valor": "adjust_value",
    "homologate_service": "homologate_service", "homologar_servicio": "homologate_service",
    "accept_date_outside_window": "accept_date_outside_window", "aceptar_fecha": "accept_date_outside_window",
}

SCOPE_ALIASES = {
    "global": RuleScopeKind.GLOBAL,
    "payer": RuleScopeKind.PAYER, "eps": RuleScopeKind.PAYER,
    "procedure": RuleScopeKind.PROCEDURE, "servicio": RuleScopeKind.PROCEDURE,
    "value_bucket": RuleScopeKind.VALUE_BUCKET, "rango_valor": RuleScopeKind.VALUE_BUCKET,
    "care_type": RuleScopeKind.CARE_TYPE, "tipo_atencion": RuleScopeKind.CARE_TYPE,
}

ADJUST_DIRECTIONS = ("superior", "inferior", "ambos")


def resolve_field(name: str) -> str:
    key = str(name or "").replace(" ", "").lower()
    if key not in FIELD_ALIASES:
        raise RuleInterpretationInvalid(f"Unknown context field: {name}")
    return FIELD_ALIASES[key]


def to_number(value: Any) -> Decimal:
    """Numeric coercion: keep digits, dot and minus; anything unparseable is 0."""
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    cleaned = re.sub(r"[^0-9.-]", "", str(value if value is not None else ""))
    try:
        return Decimal(cleaned) if cleaned else Decimal(0)
    except InvalidOperation:
        return Decimal(0)


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def values_equal(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (int, float, Decimal)) and not isinstance(actual, bool):
        if isinstance(expected, (int, float, Decimal)) and not isinstance(expected, bool):
            return Decimal(str(actual)) == Decimal(str(expected))
    return actual == expected


@dataclass(frozen=True)
class LessThan:
    field: str
    value: Any

    def holds(self, context) -> bool:
        return to_number(context.get(self.field)) < to_number(self.value)


@dataclass(frozen=True)
class GreaterThan:
    field: str
    value: Any

    def holds(self, context) -> bool:
        return to_number(context.get(self.field)) > to_number(self.value)


@dataclass(frozen=True)
class Equals:
    field: str
    value: Any

    def holds(self, context) -> bool:
        return values_equal(context.get(self.field), self.value)


@dataclass(frozen=True)
class Contains:
    field: str
    value: Any

    def holds(self, context) -> bool:
        actual = context.get(self.field)
        if not isinstance(actual, str) or not isinstance(self.value, str):
            return False
        return self.value.lower() in actual.lower()


@dataclass(frozen=True)
class Between:
    field: str
    lower: Any
    upper: Any

    def holds(self, context) -> bool:
        actual = to_number(context.get(self.field))
        return to_number(self.lower) <= actual <= to_number(self.upper)


@dataclass(frozen=True)
class Exists:
    field: str

    def holds(self, context) -> bool:
        return not is_blank(context.get(self.field))


@dataclass(frozen=True)
class NotExists:
    field: str

    def holds(self, context) -> bool:
        return is_blank(context.get(self.field))


Condition = Union[LessThan, GreaterThan, Equals, Contains, Between, Exists, NotExists]


@dataclass(frozen=True)
class IgnoreGlosa:
    name = "ignore_glosa"


@dataclass(frozen=True)
class SkipAuthorizationCheck:
    name = "skip_authorization_check"


@dataclass(frozen=True)
class AdjustValue:
    percent: Decimal
    direction: str = "superior"
    name = "adjust_value"


@dataclass(frozen=True)
class HomologateService:
    target_code: str
    target_name: Optional[str] = None
    name = "homologate_service"


@dataclass(frozen=True)
class AcceptDateOutsideWindow:
    name = "accept_date_outside_window"


Action = Union[IgnoreGlosa, SkipAuthorizationCheck, AdjustValue, HomologateService, AcceptDateOutsideWindow]


@dataclass(frozen=True)
class Rule:
    """Parsed, evaluable form of a BillingRule."""

    id: Optional[int]
    name: str
    priority: int
    scope_kind: RuleScopeKind
    scope_value: Optional[str]
    conditions: Tuple[Condition, ...]
    action: Action
    parameters: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def parse_condition(raw: Dict[str, Any]) -> Condition:
    if not isinstance(raw, dict):
        raise RuleInterpretationInvalid(f"Condition must be an object, got {raw!r}")

    raw_operator = raw.get("operator", raw.get("operador", ""))
    operator = OPERATOR_ALIASES.get(str(raw_operator).lower())
    if operator is None:
        raise RuleInterpretationInvalid(f"Unknown operator: {raw_operator}")
    field_name = resolve_field(raw.get("field", raw.get("campo")))
    value = raw.get("value", raw.get("valor"))

    if operator == "lt":
        return LessThan(field_name, value)
    if operator == "gt":
        return GreaterThan(field_name, value)
    if operator == "eq":
        return Equals(field_name, value)
    if operator == "contains":
        return Contains(field_name, value)
    if operator == "between":
        upper = raw.get("upper", raw.get("valorMax"))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            value, upper = value
        if value is None or upper is None:
            raise RuleInterpretationInvalid("between needs both bounds")
        return Between(field_name, value, upper)
    if operator == "exists":
        return Exists(field_name)
    return NotExists(field_name)


def parse_action(raw: Dict[str, Any]) -> Action:
    if not isinstance(raw, dict):
        raise RuleInterpretationInvalid("Rule has no action")

    action_type = ACTION_ALIASES.get(str(raw.get("type", raw.get("tipo", ""))).lower())
    if action_type is None:
        raise RuleInterpretationInvalid(f"Unknown action: {raw.get('type', raw.get('tipo'))}")
    params = raw.get("parameters") or raw.get("parametros") or {}

    if action_type == "ignore_glosa":
        return IgnoreGlosa()
    if action_type == "skip_authorization_check":
        return SkipAuthorizationCheck()
    if action_type == "accept_date_outside_window":
        return AcceptDateOutsideWindow()
    if action_type == "adjust_value":
        percent = params.get("percent", params.get("porcentajePermitido"))
        if percent is None:
            raise RuleInterpretationInvalid("adjust_value needs a percent")
        direction = str(params.get("direction", params.get("direccion", "superior"))).lower()
        if direction not in ADJUST_DIRECTIONS:
            raise RuleInterpretationInvalid(f"Unknown adjust direction: {direction}")
        return AdjustValue(percent=to_number(percent), direction=direction)

    target_code = params.get("targetCode", params.get("target_code", params.get("codigoDestino")))
    if not target_code:
        raise RuleInterpretationInvalid("homologate_service needs a targetCode")
    target_name = params.get("targetName", params.get("target_name", params.get("nombreDestino")))
    return HomologateService(target_code=str(target_code), target_name=target_name)


def parse_scope(kind: Any, value: Any) -> Tuple[RuleScopeKind, Optional[str]]:
    scope_kind = SCOPE_ALIASES.get(str(kind or "global").lower())
    if scope_kind is None:
        raise RuleInterpretationInvalid(f"Unknown scope: {kind}")
    if scope_kind != RuleScopeKind.GLOBAL and is_blank(value):
        raise RuleInterpretationInvalid(f"Scope {scope_kind.value} needs a value")
    return scope_kind, (None if scope_kind == RuleScopeKind.GLOBAL else str(value))


def parse_interpretation(interpretation: Any) -> Tuple[Tuple[Condition, ...], Action, Dict[str, Any]]:
    if not isinstance(interpretation, dict):
        raise RuleInterpretationInvalid("Rule has no structured interpretation")
    raw_conditions = interpretation.get("conditions", interpretation.get("condiciones"))
    if not isinstance(raw_conditions, list):
        raise RuleInterpretationInvalid("Rule conditions must be a list")
    raw_action = interpretation.get("action", interpretation.get("accion"))
    conditions = tuple(parse_condition(c) for c in raw_conditions)
    action = parse_action(raw_action)
    params = dict((raw_action or {}).get("parameters") or (raw_action or {}).get("parametros") or {})
    return conditions, action, params


def parse_rule(rule: BillingRule) -> Rule:
    """Turn a stored BillingRule into an evaluable Rule."""
    conditions, action, params = parse_interpretation(rule.interpretation)
    scope_kind, scope_value = parse_scope(rule.scope_kind, rule.scope_value)
    return Rule(
        id=rule.id,
        name=rule.name,
        priority=rule.priority if rule.priority is not None else 100,
        scope_kind=scope_kind,
        scope_value=scope_value,
        conditions=conditions,
        action=action,
        parameters=params,
    )
