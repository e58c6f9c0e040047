"""Billing rule engine.

Evaluates prioritized, scoped rules against a claim context and adjusts the
pending glosas and validation-skip set. The engine never talks to a language
model; it only consumes rules that were already interpreted into structure.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set

from common.enums import CareType, GlosaType, RuleScopeKind, ValidationSkip
from services.glosas.calculator import GlosaItem
from services.rules.definitions import (
    AcceptDateOutsideWindow,
    AdjustValue,
    HomologateService,
    IgnoreGlosa,
    Rule,
    SkipAuthorizationCheck,
    to_number,
)
import logging

logger = logging.getLogger(__name__)


def derive_care_type(procedure_name: Optional[str]) -> CareType:
    """Care setting inferred from the procedure name."""
    name = (procedure_name or "").lower()
    if "urgencia" in name:
        return CareType.EMERGENCY
    if "hospitalizacion" in name or "hospitalario" in name:
        return CareType.INPATIENT
    if "quirurgico" in name or "cirugia" in name:
        return CareType.SURGICAL
    return CareType.OUTPATIENT


@dataclass
class RuleContext:
    """Claim facts rules are evaluated against."""

    value: Decimal = Decimal(0)
    billed_value: Decimal = Decimal(0)
    contracted_value: Decimal = Decimal(0)
    procedure_code: Optional[str] = None
    procedure_name: Optional[str] = None
    authorization_number: Optional[str] = None
    service_date: Optional[str] = None
    authorization_date: Optional[str] = None
    diagnosis_code: Optional[str] = None
    patient_document_type: Optional[str] = None
    patient_document: Optional[str] = None
    care_type: Optional[str] = None
    value_bucket: int = 1
    payer: Optional[str] = None
    quantity: int = 1

    def get(self, name: str) -> Any:
        return getattr(self, name, None)


@dataclass
class AppliedRule:
    rule_id: Optional[int]
    rule_name: str
    action: str
    parameters: Dict[str, Any]
    affected_value: Decimal
    glosas_removed: int = 0


@dataclass
class ValueAdjustment:
    rule_id: Optional[int]
    original_value: Decimal
    adjusted_value: Decimal
    rationale: str


@dataclass
class Homologation:
    rule_id: Optional[int]
    source_code: Optional[str]
    target_code: str
    target_name: Optional[str] = None


@dataclass
class RuleEvaluation:
    """Everything a rule run produced."""

    applied_rules: List[AppliedRule] = field(default_factory=list)
    filtered_glosas: List[GlosaItem] = field(default_factory=list)
    validation_skips: Set[str] = field(default_factory=set)
    value_adjustments: List[ValueAdjustment] = field(default_factory=list)
    homologations: List[Homologation] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)


class RuleStatisticsSink(Protocol):
    def record_application(self, rule_id: int, affected_value: Decimal, glosas_avoided: int, applied_at: datetime) -> None:
        ...


def scope_matches(rule: Rule, context: RuleContext) -> bool:
    if rule.scope_kind == RuleScopeKind.GLOBAL:
        return True
    if rule.scope_kind == RuleScopeKind.PAYER:
        return context.payer == rule.scope_value
    if rule.scope_kind == RuleScopeKind.PROCEDURE:
        return context.procedure_code == rule.scope_value
    if rule.scope_kind == RuleScopeKind.VALUE_BUCKET:
        return str(context.value_bucket) == str(rule.scope_value).strip()
    if rule.scope_kind == RuleScopeKind.CARE_TYPE:
        return context.care_type == rule.scope_value
    return False


def rule_matches(rule: Rule, context: RuleContext) -> bool:
    return scope_matches(rule, context) and all(c.holds(context) for c in rule.conditions)


def sort_rules(rules: Sequence[Rule]) -> List[Rule]:
    """Ascending priority; id breaks ties so ordering is stable."""
    return sorted(rules, key=lambda r: (r.priority, r.id if r.id is not None else 0, r.name))


def collect_validation_skips(context: RuleContext, rules: Sequence[Rule]) -> Set[str]:
    """Skips the matching rules would add, without recording any application."""
    skips: Set[str] = set()
    for rule in sort_rules(rules):
        if not rule_matches(rule, context):
            continue
        if isinstance(rule.action, SkipAuthorizationCheck):
            skips.add(ValidationSkip.AUTHORIZATION.value)
        elif isinstance(rule.action, AcceptDateOutsideWindow):
            skips.add(ValidationSkip.DATE_VALIDATION.value)
    return skips


def collect_homologations(context: RuleContext, rules: Sequence[Rule]) -> Dict[str, str]:
    """source code -> target code for matching homologation rules."""
    mapping: Dict[str, str] = {}
    for rule in sort_rules(rules):
        if isinstance(rule.action, HomologateService) and rule_matches(rule, context):
            if context.procedure_code:
                mapping[context.procedure_code] = rule.action.target_code
    return mapping


class RuleEngine:
    """Applies matching rules in priority order."""

    def __init__(self, stats: Optional[RuleStatisticsSink] = None, clock: Callable[[], datetime] = datetime.utcnow):
        self.stats = stats
        self.clock = clock
        self._handlers = {
            IgnoreGlosa: self._ignore_glosa,
            SkipAuthorizationCheck: self._skip_authorization,
            AdjustValue: self._adjust_value,
            HomologateService: self._homologate,
            AcceptDateOutsideWindow: self._accept_date,
        }

    def evaluate(
        self,
        context: RuleContext,
        rules: Sequence[Rule],
        raw_glosas: Sequence[GlosaItem],
        record_statistics: bool = True,
    ) -> RuleEvaluation:
        # work on a copy so the caller's context stays untouched
        context = replace(context)
        result = RuleEvaluation(filtered_glosas=list(raw_glosas))

        for rule in sort_rules(rules):
            if not scope_matches(rule, context):
                continue
            if not all(c.holds(context) for c in rule.conditions):
                continue

            handler = self._handlers[type(rule.action)]
            removed = handler(rule, context, result)

            applied = AppliedRule(
                rule_id=rule.id,
                rule_name=rule.name,
                action=rule.action.name,
                parameters=dict(rule.parameters),
                affected_value=Decimal(str(context.value)),
                glosas_removed=removed,
            )
            result.applied_rules.append(applied)
            result.messages.append(f"Rule applied: '{rule.name}' ({rule.action.name})")
            logger.info(f"Rule '{rule.name}' applied ({rule.action.name})")

            if record_statistics and self.stats is not None and rule.id is not None:
                self.stats.record_application(rule.id, applied.affected_value, removed, self.clock())

        return result

    def _remove(self, result: RuleEvaluation, rule: Rule, predicate) -> int:
        kept = [g for g in result.filtered_glosas if not predicate(g)]
        removed = len(result.filtered_glosas) - len(kept)
        if removed:
            result.filtered_glosas = kept
            result.messages.append(f"{removed} glosa(s) ignored by rule '{rule.name}'")
        return removed

    def _ignore_glosa(self, rule: Rule, context: RuleContext, result: RuleEvaluation) -> int:
        # Removes same-code glosas and also any glosa whose total is <= the context value
        threshold = to_number(context.value)

        def forgiven(glosa: GlosaItem) -> bool:
            same_code = bool(context.procedure_code) and glosa.procedure_code == context.procedure_code
            return same_code or glosa.total <= threshold

        return self._remove(result, rule, forgiven)

    def _skip_authorization(self, rule: Rule, context: RuleContext, result: RuleEvaluation) -> int:
        result.validation_skips.add(ValidationSkip.AUTHORIZATION.value)
        result.messages.append("Authorization validation skipped by rule")
        return self._remove(
            result, rule, lambda g: g.glosa_type == GlosaType.MISSING_AUTHORIZATION
        )

    def _adjust_value(self, rule: Rule, context: RuleContext, result: RuleEvaluation) -> int:
        action: AdjustValue = rule.action
        original = to_number(context.contracted_value)
        factor = action.percent / Decimal(100)
        adjusted = original

        if action.direction == "superior":
            adjusted = original * (1 + factor)
        elif action.direction == "inferior":
            adjusted = original * (1 - factor)
        else:
            billed = to_number(context.billed_value)
            if original * (1 - factor) <= billed <= original * (1 + factor):
                adjusted = billed

        context.contracted_value = adjusted
        result.value_adjustments.append(
            ValueAdjustment(
                rule_id=rule.id,
                original_value=original,
                adjusted_value=adjusted,
                rationale=f"Rule '{rule.name}': {action.direction} {action.percent}% allowed",
            )
        )
        result.messages.append(f"Value adjusted: {original} -> {adjusted}")
        return 0

    def _homologate(self, rule: Rule, context: RuleContext, result: RuleEvaluation) -> int:
        action: HomologateService = rule.action
        result.homologations.append(
            Homologation(
                rule_id=rule.id,
                source_code=context.procedure_code,
                target_code=action.target_code,
                target_name=action.target_name,
            )
        )
        result.messages.append(
            f"Service homologated: {context.procedure_code} -> {action.target_code} "
            f"({action.target_name or 'N/A'})"
        )
        return 0

    def _accept_date(self, rule: Rule, context: RuleContext, result: RuleEvaluation) -> int:
        result.validation_skips.add(ValidationSkip.DATE_VALIDATION.value)
        result.messages.append("Date validation relaxed by rule")
        return 0
