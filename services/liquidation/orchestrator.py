"""Liquidation Orchestrator - runs the claim-liquidation pipeline.

The orchestrator:
- Takes a claim into IN_PROCESS with a compare-and-swap (one run per claim)
- Extracts and arbitrates the primary invoice
- Enriches from external registries, validates, computes glosas, applies rules
- Persists the results idempotently and commits the resulting state
- Hands off to the report generator (failures there never revert the state)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from common.config import Settings, get_settings
from common.enums import ClaimStatus, DocumentKind, EventType, ExternalSystem, ValidationOutcome
from services.claims.models import (
    AppliedRuleRecord,
    Claim,
    ClaimEvent,
    ExternalQuery,
    GlosaRecord,
    ValidationRecord,
    is_valid_claim_number,
)
from services.claims.state_machine import ClaimStateMachine, StateMachineError
from services.extraction.arbitrator import ArbitrationResult, ExtractionArbitrator
from services.extraction.scoring import parse_amount
from services.extraction.strategies import ExtractionStrategy, default_strategies, is_empty
from services.external.registry import ExternalRegistry, ExternalUnavailable, RegistryResponse, build_registry
from services.glosas.calculator import GlosaCalculator, GlosaItem
from services.glosas.tariffs import SqlTariffRepository, TariffRepository
from services.liquidation.errors import (
    ClaimConflictError,
    ClaimNotFoundError,
    InputError,
    LiquidationCancelled,
    ReportGenerationError,
)
from services.liquidation.reports import JsonReportGenerator, ReportGenerator
from services.rules.engine import (
    AppliedRule,
    RuleContext,
    RuleEngine,
    collect_homologations,
    collect_validation_skips,
    derive_care_type,
)
from services.rules.store import SqlRuleStore
from services.rules.validator import CheckResult, ClaimValidator
import logging

logger = logging.getLogger(__name__)


@dataclass
class LiquidationResult:
    """What a caller gets back from a pipeline run."""

    claim: Claim
    status: ClaimStatus
    validations: List[CheckResult] = field(default_factory=list)
    applied_rules: List[AppliedRule] = field(default_factory=list)
    glosas: List[GlosaItem] = field(default_factory=list)
    payable: Decimal = Decimal(0)
    total_glosa: Decimal = Decimal(0)
    messages: List[str] = field(default_factory=list)
    requires_review: bool = False
    arbitration: Optional[ArbitrationResult] = None
    report_reference: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim.id,
            "claim_number": self.claim.claim_number,
            "status": self.status.value,
            "payable": float(self.payable),
            "total_glosa": float(self.total_glosa),
            "requires_review": self.requires_review,
            "validations": [
                {"kind": v.kind.value, "outcome": v.outcome.value, "message": v.message, "details": v.details}
                for v in self.validations
            ],
            "applied_rules": [
                {
                    "rule_id": r.rule_id,
                    "rule_name": r.rule_name,
                    "action": r.action,
                    "affected_value": float(r.affected_value),
                }
                for r in self.applied_rules
            ],
            "glosas": [g.as_dict() for g in self.glosas],
            "messages": self.messages,
            "report_reference": self.report_reference,
        }


def as_quantity(value: Any) -> int:
    amount = parse_amount(value) if not is_empty(value) else None
    if amount is None or amount < 1:
        return 1
    return int(amount)


class LiquidationOrchestrator:
    """Sequences the pipeline for one claim at a time."""

    def __init__(
        self,
        db: Session,
        tariffs: TariffRepository,
        rule_store,
        registry: Optional[ExternalRegistry] = None,
        strategies: Optional[Sequence[ExtractionStrategy]] = None,
        report_generator: Optional[ReportGenerator] = None,
        settings: Optional[Settings] = None,
        arbitrator: Optional[ExtractionArbitrator] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.tariffs = tariffs
        self.rule_store = rule_store
        self.registry = registry
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.report_generator = report_generator
        self.arbitrator = arbitrator or ExtractionArbitrator()
        self.calculator = GlosaCalculator(tariffs, self.settings.default_discount_percent)
        self.validator = ClaimValidator(registry, self.settings, clock=clock)
        self.engine = RuleEngine(stats=rule_store, clock=clock)
        self.clock = clock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def run_liquidation(self, claim_id: int) -> LiquidationResult:
        """
        Run the full pipeline for a claim.

        Raises ClaimNotFoundError, ClaimConflictError (terminal or already
        running) and LiquidationCancelled. Any other failure ends with the claim
        REJECTED and a result describing why.
        """
        claim = self._get_claim(claim_id)
        current = ClaimStatus(claim.status)
        if ClaimStateMachine.is_terminal(current) or current == ClaimStatus.IN_PROCESS:
            raise ClaimConflictError(f"Claim {claim.claim_number} is {current.value} and cannot be liquidated")
        if claim.marked_for_deletion:
            raise ClaimConflictError(f"Claim {claim.claim_number} is marked for deletion")

        try:
            ClaimStateMachine.claim_for_processing(self.db, claim, reason="Liquidation run started")
        except StateMachineError as e:
            raise ClaimConflictError(str(e)) from e

        self._record_event(claim, EventType.LIQUIDATION_STARTED, "Liquidation run started")
        self.db.commit()
        logger.info(f"Liquidation started for claim {claim.claim_number}")

        messages: List[str] = []
        try:
            return self._run(claim, messages)
        except LiquidationCancelled:
            self.db.rollback()
            self._reject(claim, "Cancelled: claim marked for deletion", messages)
            raise
        except InputError as e:
            self.db.rollback()
            logger.warning(f"Claim {claim.claim_number} rejected: {e}")
            return self._reject(claim, str(e), messages)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Liquidation failed for claim {claim.claim_number}: {e}", exc_info=True)
            return self._reject(claim, f"Unexpected error during liquidation: {e}", messages)

    def finalize_liquidation(self, claim_id: int) -> Claim:
        """Freeze totals, make sure a report exists and move the claim to LIQUIDATED."""
        claim = self._get_claim(claim_id)
        current = ClaimStatus(claim.status)
        if current not in (ClaimStatus.VALIDATED, ClaimStatus.WITH_GLOSAS):
            raise ClaimConflictError(f"Claim {claim.claim_number} is {current.value}; only validated claims can be liquidated")

        if not claim.report_reference:
            summary = claim.liquidation_summary or {}
            claim.report_reference = self._render_report(claim, summary)

        frozen = dict(claim.liquidation_summary or {})
        frozen["frozen"] = True
        frozen["frozen_at"] = self.clock().isoformat()
        claim.liquidation_summary = frozen

        self._record_event(
            claim,
            EventType.CLAIM_LIQUIDATED,
            "Liquidation finalized",
            {"payable": frozen.get("payable"), "total_glosa": frozen.get("total_glosa")},
        )
        ClaimStateMachine.transition(self.db, claim, ClaimStatus.LIQUIDATED, reason="Liquidation finalized")
        logger.info(f"Claim {claim.claim_number} liquidated")
        return claim

    def request_deletion(self, claim_id: int) -> bool:
        """
        Delete a claim, or mark it for deletion while a run holds it.

        Returns True when the claim was deleted right away.
        """
        claim = self._get_claim(claim_id)
        if claim.status == ClaimStatus.IN_PROCESS.value:
            claim.marked_for_deletion = True
            self._record_event(claim, EventType.DELETION_REQUESTED, "Deletion requested during a liquidation run")
            self.db.commit()
            logger.info(f"Claim {claim.claim_number} marked for deletion")
            return False

        self.db.delete(claim)
        self.db.commit()
        logger.info(f"Claim {claim.claim_number} deleted")
        return True

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, claim: Claim, messages: List[str]) -> LiquidationResult:
        if not is_valid_claim_number(claim.claim_number):
            raise InputError(f"Malformed claim number: {claim.claim_number}")

        # extraction + arbitration
        arbitration = self._extract(claim)
        fields = self._merge_intake_data(claim, dict(arbitration.fields))
        if arbitration.overall_requires_review:
            messages.append(
                f"Extraction coincidence {arbitration.coincidence_rate}% requires review"
            )
        self._check_cancelled(claim)

        # external enrichment
        authorization_response = self._enrich(claim, fields, messages)
        self._apply_fields(claim, fields)
        self._check_cancelled(claim)

        billed = parse_amount(fields.get("billed_value")) or Decimal(0)
        quantity = as_quantity(fields.get("quantity"))
        billed_total = billed * quantity

        tariff = self.tariffs.lookup(claim.procedure_code) if claim.procedure_code else None
        contracted = tariff.unit_price if tariff else None
        claim.contracted_value = contracted

        rules = self.rule_store.active_rules_sorted_by_priority()
        context = self._build_context(claim, billed, contracted, quantity, fields)
        skips = collect_validation_skips(context, rules)
        homologations = collect_homologations(context, rules)

        validation = self.validator.validate(
            claim,
            fields,
            contracted_value=contracted,
            skips=skips,
            homologations=homologations,
            authorization_response=authorization_response,
        )
        self._record_event(
            claim,
            EventType.CLAIM_VALIDATED,
            validation.summary,
            {"overall": validation.overall.value, "requires_manual_review": validation.requires_manual_review},
        )

        # raw glosas, then rule filtering
        computation = self.calculator.compute(claim.procedure_code, billed, quantity, claim.procedure_name)
        raw_glosas = list(computation.glosas)
        authorization_glosa = self.calculator.validate_authorization(
            claim.procedure_code,
            claim.procedure_name,
            billed,
            quantity,
            fields.get("authorization_number"),
            required=billed_total > Decimal(str(self.settings.authorization_required_threshold)),
        )
        if authorization_glosa:
            raw_glosas.append(authorization_glosa)

        evaluation = self.engine.evaluate(context, rules, raw_glosas)
        messages.append(computation.note)
        messages.extend(evaluation.messages)
        if evaluation.applied_rules:
            self._record_event(
                claim,
                EventType.RULES_APPLIED,
                f"{len(evaluation.applied_rules)} rule(s) applied",
                {"rules": [r.rule_name for r in evaluation.applied_rules]},
            )

        final_glosas = evaluation.filtered_glosas
        total_glosa = sum((g.total for g in final_glosas), Decimal(0))
        payable = max(Decimal(0), billed_total - total_glosa)
        self._check_cancelled(claim)

        # persist, overwriting any previous run
        claim.validations = [
            ValidationRecord(kind=v.kind.value, outcome=v.outcome.value, message=v.message, details=v.details)
            for v in validation.results
        ]
        claim.glosas = [self._glosa_record(g) for g in final_glosas]
        claim.applied_rules = [
            AppliedRuleRecord(
                rule_id=r.rule_id,
                rule_name=r.rule_name,
                action=r.action,
                parameters=r.parameters,
                affected_value=r.affected_value,
            )
            for r in evaluation.applied_rules
        ]
        totals = GlosaCalculator.totals(final_glosas)
        claim.liquidation_summary = {
            "billed_value": float(billed),
            "quantity": quantity,
            "billed_total": float(billed_total),
            "contracted_value": float(contracted) if contracted is not None else None,
            "payable": float(payable),
            "total_glosa": float(total_glosa),
            "glosa_count": totals.count,
            "glosas_by_type": {k: float(v) for k, v in totals.by_type.items()},
            "validation_outcome": validation.overall.value,
            "validation_summary": validation.summary,
            "validation_skips": sorted(evaluation.validation_skips | skips),
            "value_adjustments": [
                {
                    "rule_id": a.rule_id,
                    "original_value": float(a.original_value),
                    "adjusted_value": float(a.adjusted_value),
                    "rationale": a.rationale,
                }
                for a in evaluation.value_adjustments
            ],
            "homologations": [
                {"rule_id": h.rule_id, "source_code": h.source_code, "target_code": h.target_code}
                for h in evaluation.homologations
            ],
            "tariff_note": computation.note,
        }
        claim.requires_review = bool(arbitration.overall_requires_review or validation.requires_manual_review)
        claim.failure_reason = None

        if validation.overall == ValidationOutcome.REJECTED:
            target = ClaimStatus.REJECTED
            claim.failure_reason = validation.summary
            self._record_event(claim, EventType.CLAIM_REJECTED, validation.summary)
        elif final_glosas:
            target = ClaimStatus.WITH_GLOSAS
        else:
            target = ClaimStatus.VALIDATED

        ClaimStateMachine.transition(
            self.db, claim, target, reason=f"Liquidation run: {validation.summary}"
        )
        logger.info(
            f"Claim {claim.claim_number} -> {target.value}: payable {payable}, glosa {total_glosa}"
        )

        result = LiquidationResult(
            claim=claim,
            status=target,
            validations=validation.results,
            applied_rules=evaluation.applied_rules,
            glosas=final_glosas,
            payable=payable,
            total_glosa=total_glosa,
            messages=messages,
            requires_review=claim.requires_review,
            arbitration=arbitration,
        )

        if target != ClaimStatus.REJECTED:
            result.report_reference = self._hand_off_report(claim, final_glosas, messages)
        return result

    def _extract(self, claim: Claim) -> ArbitrationResult:
        invoice = next((d for d in claim.documents if d.kind == DocumentKind.INVOICE.value), None)
        if invoice is None:
            raise InputError("No usable invoice: claim has no invoice document")

        results = []
        for strategy in self.strategies:
            result = strategy.extract(invoice)
            if result is not None and result.usable:
                results.append(result)
        if not results:
            raise InputError("No usable invoice: extraction produced no fields")

        arbitration = self.arbitrator.arbitrate(results)
        invoice.processed = True
        claim.arbitration_summary = arbitration.summary()
        self._record_event(
            claim,
            EventType.EXTRACTION_ARBITRATED,
            f"Extraction arbitrated from {', '.join(arbitration.methods)}",
            {
                "coincidence_rate": arbitration.coincidence_rate,
                "overall_confidence": arbitration.overall_confidence,
                "requires_review": arbitration.overall_requires_review,
            },
        )
        return arbitration

    def _merge_intake_data(self, claim: Claim, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Fill fields extraction left empty from what the claim was created with."""
        intake = {
            "invoice_number": claim.invoice_number,
            "invoice_date": claim.invoice_date,
            "procedure_code": claim.procedure_code,
            "procedure_name": claim.procedure_name,
            "diagnosis_code": claim.diagnosis_code,
            "billed_value": claim.billed_value,
            "quantity": claim.quantity,
            "authorization_number": (claim.authorization_info or {}).get("number"),
            "patient_document": (claim.patient_info or {}).get("document"),
            "patient_name": (claim.patient_info or {}).get("name"),
        }
        for name, value in intake.items():
            if is_empty(fields.get(name)) and not is_empty(value):
                fields[name] = value
        return fields

    def _enrich(self, claim: Claim, fields: Dict[str, Any], messages: List[str]) -> Optional[RegistryResponse]:
        if self.registry is None:
            return None

        if is_empty(fields.get("procedure_code")) or is_empty(fields.get("procedure_name")):
            response = self._query(
                claim,
                ExternalSystem.DOCUMENT_SEARCH,
                {
                    "claim_number": claim.claim_number,
                    "invoice_number": fields.get("invoice_number"),
                    "patient_document": fields.get("patient_document"),
                },
                messages,
            )
            if response.success and response.data:
                for name in ("procedure_code", "procedure_name"):
                    if is_empty(fields.get(name)) and not is_empty(response.data.get(name)):
                        fields[name] = response.data[name]

        authorization_response = None
        stored = claim.authorization_info or {}
        if not is_empty(fields.get("authorization_number")) and not stored.get("confirmed"):
            authorization_response = self._query(
                claim,
                ExternalSystem.AUTHORIZATION,
                {
                    "number": fields.get("authorization_number"),
                    "patient_document": fields.get("patient_document"),
                    "procedure_code": fields.get("procedure_code"),
                },
                messages,
            )
            if authorization_response.success:
                data = authorization_response.data or {}
                claim.authorization_info = {
                    **stored,
                    "number": fields.get("authorization_number"),
                    "date": data.get("date", stored.get("date")),
                    "procedure_code": data.get("procedure_code"),
                    "diagnosis_code": data.get("diagnosis_code"),
                    "confirmed": True,
                }
        elif stored.get("confirmed"):
            authorization_response = RegistryResponse(success=True, data=stored, attempts=0)

        return authorization_response

    def _query(self, claim: Claim, system: ExternalSystem, parameters: Dict[str, Any], messages: List[str]) -> RegistryResponse:
        try:
            response = self.registry.query(system, parameters)
        except ExternalUnavailable as e:
            logger.warning(f"{system.value} unavailable for claim {claim.claim_number} after {e.attempts} attempts")
            response = RegistryResponse(success=False, error=str(e), attempts=e.attempts)
        except Exception as e:
            logger.warning(f"{system.value} query failed for claim {claim.claim_number}: {e}")
            response = RegistryResponse(success=False, error=str(e))

        claim.external_queries.append(
            ExternalQuery(
                system=system.value,
                success=response.success,
                attempts=response.attempts,
                error=response.error,
                data=response.data,
                queried_at=self.clock(),
            )
        )
        self._record_event(
            claim,
            EventType.EXTERNAL_QUERY,
            f"{system.value} query {'succeeded' if response.success else 'failed'}",
            {"system": system.value, "success": response.success, "error": response.error},
        )
        if not response.success:
            messages.append(f"{system.value} lookup unavailable: {response.error}")
        return response

    def _apply_fields(self, claim: Claim, fields: Dict[str, Any]) -> None:
        claim.invoice_number = fields.get("invoice_number") or claim.invoice_number
        if fields.get("invoice_date"):
            claim.invoice_date = str(fields["invoice_date"])
        claim.procedure_code = str(fields["procedure_code"]).strip() if fields.get("procedure_code") else None
        claim.procedure_name = fields.get("procedure_name")
        claim.diagnosis_code = fields.get("diagnosis_code")

        billed = parse_amount(fields.get("billed_value")) if not is_empty(fields.get("billed_value")) else None
        claim.billed_value = billed
        claim.quantity = as_quantity(fields.get("quantity"))
        if claim.declared_total is None and billed is not None:
            claim.declared_total = billed * claim.quantity

        patient = dict(claim.patient_info or {})
        for source, target in (
            ("patient_name", "name"),
            ("patient_document", "document"),
            ("patient_document_type", "document_type"),
        ):
            if not is_empty(fields.get(source)):
                patient[target] = fields[source]
        claim.patient_info = patient

        if not claim.care_type:
            claim.care_type = derive_care_type(claim.procedure_name).value

    def _build_context(self, claim: Claim, billed: Decimal, contracted: Optional[Decimal], quantity: int, fields: Dict[str, Any]) -> RuleContext:
        return RuleContext(
            value=billed,
            billed_value=billed,
            contracted_value=contracted or Decimal(0),
            procedure_code=claim.procedure_code,
            procedure_name=claim.procedure_name,
            authorization_number=fields.get("authorization_number"),
            service_date=fields.get("service_date") or fields.get("invoice_date"),
            authorization_date=(claim.authorization_info or {}).get("date"),
            diagnosis_code=claim.diagnosis_code,
            patient_document_type=fields.get("patient_document_type"),
            patient_document=fields.get("patient_document"),
            care_type=claim.care_type,
            value_bucket=claim.value_bucket,
            payer=claim.payer_name,
            quantity=quantity,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_claim(self, claim_id: int) -> Claim:
        claim = self.db.query(Claim).filter(Claim.id == claim_id).first()
        if not claim:
            raise ClaimNotFoundError(f"Claim {claim_id} not found")
        return claim

    def _check_cancelled(self, claim: Claim) -> None:
        marked = self.db.query(Claim.marked_for_deletion).filter(Claim.id == claim.id).scalar()
        if marked:
            logger.warning(f"Claim {claim.claim_number} marked for deletion, aborting run")
            raise LiquidationCancelled(f"Claim {claim.claim_number} was marked for deletion")

    def _reject(self, claim: Claim, reason: str, messages: List[str]) -> LiquidationResult:
        self.db.refresh(claim)
        claim.validations = []
        claim.glosas = []
        claim.applied_rules = []
        claim.failure_reason = reason
        self._record_event(claim, EventType.CLAIM_REJECTED, reason)
        ClaimStateMachine.transition(self.db, claim, ClaimStatus.REJECTED, reason=reason)
        messages.append(reason)
        return LiquidationResult(claim=claim, status=ClaimStatus.REJECTED, messages=messages)

    def _hand_off_report(self, claim: Claim, glosas: List[GlosaItem], messages: List[str]) -> Optional[str]:
        if self.report_generator is None:
            return None
        try:
            reference = self._render_report(claim, claim.liquidation_summary or {}, glosas)
        except ReportGenerationError as e:
            logger.warning(f"Report generation failed for claim {claim.claim_number}: {e}")
            messages.append(f"Report generation failed: {e}")
            self._record_event(claim, EventType.REPORT_FAILED, str(e))
            self.db.commit()
            return None

        claim.report_reference = reference
        self._record_event(claim, EventType.REPORT_GENERATED, f"Report generated: {reference}")
        self.db.commit()
        return reference

    def _render_report(self, claim: Claim, summary: Dict[str, Any], glosas: Optional[List[GlosaItem]] = None) -> str:
        if self.report_generator is None:
            raise ReportGenerationError("No report generator configured")
        if glosas is None:
            glosa_dicts = [
                {
                    "glosa_type": g.glosa_type,
                    "reason_code": g.reason_code,
                    "procedure_code": g.procedure_code,
                    "total": float(g.total),
                    "justification": g.justification,
                }
                for g in claim.glosas
            ]
        else:
            glosa_dicts = [g.as_dict() for g in glosas]
        try:
            return self.report_generator.render(claim, glosa_dicts, summary)
        except ReportGenerationError:
            raise
        except Exception as e:
            raise ReportGenerationError(str(e)) from e

    def _glosa_record(self, glosa: GlosaItem) -> GlosaRecord:
        return GlosaRecord(
            glosa_type=glosa.glosa_type.value,
            reason_code=glosa.reason_code,
            procedure_code=glosa.procedure_code,
            procedure_description=glosa.procedure_description,
            billed_value=glosa.billed_value,
            contracted_value=glosa.contracted_value,
            difference=glosa.difference,
            quantity=glosa.quantity,
            total=glosa.total,
            justification=glosa.justification,
            automatic=glosa.automatic,
            default_policy=glosa.default_policy,
        )

    def _record_event(self, claim: Claim, event_type: EventType, description: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.db.add(
            ClaimEvent(claim_id=claim.id, event_type=event_type.value, event_data=data, description=description)
        )


def build_orchestrator(db: Session, settings: Optional[Settings] = None) -> LiquidationOrchestrator:
    """Wire the orchestrator with the SQL-backed collaborators."""
    settings = settings or get_settings()
    return LiquidationOrchestrator(
        db=db,
        tariffs=SqlTariffRepository(db),
        rule_store=SqlRuleStore(db),
        registry=build_registry(settings),
        strategies=default_strategies(),
        report_generator=JsonReportGenerator(settings.report_dir),
        settings=settings,
    )
