"""Structural claim validations."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Set

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from common.config import Settings, get_settings
from common.enums import DocumentKind, ExternalSystem, ValidationKind, ValidationOutcome, ValidationSkip
from services.claims.models import Claim
from services.external.registry import ExternalRegistry, ExternalUnavailable, RegistryResponse
from services.extraction.scoring import parse_amount
import logging

logger = logging.getLogger(__name__)

# first-visit and control consultations are interchangeable
HOMOLOGATED_CONSULTATIONS = {("890201", "890202"), ("890202", "890201")}


class CheckResult(NamedTuple):
    """Result of one validation."""

    kind: ValidationKind
    outcome: ValidationOutcome
    message: str
    details: Dict[str, Any]


class ValidationSummary(NamedTuple):
    """Aggregate of all validations for a run."""

    results: List[CheckResult]
    overall: ValidationOutcome
    requires_manual_review: bool
    summary: str


def parse_date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return date_parser.parse(str(value), dayfirst=True)
    except (ValueError, OverflowError):
        return None


def services_match(authorized: Optional[str], billed: Optional[str], homologations: Dict[str, str]) -> bool:
    if not authorized or not billed:
        return False
    if authorized == billed:
        return True
    if (authorized, billed) in HOMOLOGATED_CONSULTATIONS:
        logger.info("Service homologated: first visit <-> control consultation")
        return True
    return homologations.get(billed) == authorized or homologations.get(authorized) == billed


class ClaimValidator:
    """Runs the independent validations and aggregates their outcomes."""

    def __init__(
        self,
        registry: Optional[ExternalRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.registry = registry
        self.settings = settings or get_settings()
        self.clock = clock

    def validate(
        self,
        claim: Claim,
        fields: Dict[str, Any],
        contracted_value: Optional[Decimal] = None,
        skips: Optional[Set[str]] = None,
        homologations: Optional[Dict[str, str]] = None,
        authorization_response: Optional[RegistryResponse] = None,
    ) -> ValidationSummary:
        """
        Run every check; a failing check never stops the others.

        authorization_response, when given, is reused instead of querying the
        registry again.
        """
        skips = skips or set()
        homologations = homologations or {}
        logger.info(f"Running validations for claim {claim.claim_number}")

        checks = [
            (ValidationKind.INVOICE, lambda: self.check_invoice(claim, fields)),
            (ValidationKind.PATIENT, lambda: self.check_patient(claim, fields)),
            (
                ValidationKind.AUTHORIZATION,
                lambda: self.check_authorization(claim, fields, skips, homologations, authorization_response),
            ),
            (ValidationKind.VALUE, lambda: self.check_value(fields, contracted_value)),
            (ValidationKind.DATE, lambda: self.check_dates(claim, fields, skips)),
            (ValidationKind.COPAYMENT, lambda: self.check_copayment(claim, fields)),
        ]

        results = []
        for kind, check in checks:
            try:
                results.append(check())
            except Exception as e:
                logger.error(f"Validation {kind.value} failed for claim {claim.claim_number}: {e}", exc_info=True)
                results.append(
                    CheckResult(kind, ValidationOutcome.WARNING, f"Error during {kind.value.lower()} validation", {"error": str(e)})
                )

        return self.aggregate(results)

    def aggregate(self, results: List[CheckResult]) -> ValidationSummary:
        rejected = [r for r in results if r.outcome == ValidationOutcome.REJECTED]
        warnings = [r for r in results if r.outcome == ValidationOutcome.WARNING]

        if rejected:
            return ValidationSummary(
                results,
                ValidationOutcome.REJECTED,
                True,
                f"{len(rejected)} validation(s) rejected. Manual review required.",
            )
        if warnings:
            requires_review = len(warnings) > self.settings.max_warnings_without_review
            return ValidationSummary(
                results,
                ValidationOutcome.WARNING,
                requires_review,
                f"{len(warnings)} validation(s) with warnings."
                + (" Manual review required." if requires_review else " Proceed with caution."),
            )
        return ValidationSummary(results, ValidationOutcome.APPROVED, False, "All validations approved.")

    def check_invoice(self, claim: Claim, fields: Dict[str, Any]) -> CheckResult:
        errors = []
        if not str(fields.get("invoice_number") or "").strip():
            errors.append("Invoice number not found")
        if not fields.get("invoice_date"):
            errors.append("Invoice issue date not found")
        if to_decimal_safe(fields.get("net_value")) <= 0:
            errors.append("Invalid invoice net value")

        filed_at = parse_date(claim.created_at)
        if filed_at:
            elapsed = relativedelta(self.clock(), filed_at)
            months = elapsed.years * 12 + elapsed.months
            if months > self.settings.filing_window_months:
                errors.append(
                    f"Filing date exceeds {self.settings.filing_window_months} months ({months} months)"
                )

        if errors:
            return CheckResult(
                ValidationKind.INVOICE, ValidationOutcome.WARNING, "Invoice data incomplete or with warnings", {"errors": errors}
            )
        return CheckResult(
            ValidationKind.INVOICE,
            ValidationOutcome.APPROVED,
            "Invoice data valid",
            {"invoice_number": fields.get("invoice_number"), "net_value": str(fields.get("net_value"))},
        )

    def check_patient(self, claim: Claim, fields: Dict[str, Any]) -> CheckResult:
        errors = []
        patient = claim.patient_info or {}
        if not str(fields.get("patient_document") or patient.get("document") or "").strip():
            errors.append("Patient document number not found")

        if patient.get("temporary_permit"):
            if not patient.get("service_date") and not fields.get("service_date"):
                errors.append("Patient with temporary permit requires a service date")

        # the invoice date is never used as clinical evidence
        has_clinical_support = any(
            doc.kind == DocumentKind.CLINICAL_RECORD.value
            or (doc.kind == DocumentKind.SUPPORTING.value and doc.processed)
            for doc in claim.documents
        )
        if not has_clinical_support:
            errors.append("No valid clinical supports found (clinical record, progress notes)")

        if errors:
            return CheckResult(ValidationKind.PATIENT, ValidationOutcome.WARNING, "Patient validation with warnings", {"errors": errors})
        return CheckResult(
            ValidationKind.PATIENT,
            ValidationOutcome.APPROVED,
            "Patient data valid",
            {"document": fields.get("patient_document"), "temporary_permit": bool(patient.get("temporary_permit"))},
        )

    def check_authorization(
        self,
        claim: Claim,
        fields: Dict[str, Any],
        skips: Set[str],
        homologations: Dict[str, str],
        response: Optional[RegistryResponse] = None,
    ) -> CheckResult:
        if ValidationSkip.AUTHORIZATION.value in skips:
            return CheckResult(ValidationKind.AUTHORIZATION, ValidationOutcome.APPROVED, "Authorization check skipped by rule", {"skipped": True})

        stored = claim.authorization_info or {}
        number = fields.get("authorization_number") or stored.get("number")
        if not number:
            logger.warning(f"No authorization number for claim {claim.claim_number}")
            return CheckResult(
                ValidationKind.AUTHORIZATION,
                ValidationOutcome.WARNING,
                "No authorization number provided",
                {"required": True, "found": False},
            )

        if response is None:
            if self.registry is None:
                return CheckResult(
                    ValidationKind.AUTHORIZATION, ValidationOutcome.WARNING, "Authorization registry not available", {"number": number}
                )
            try:
                response = self.registry.query(
                    ExternalSystem.AUTHORIZATION,
                    {"number": number, "patient_document": fields.get("patient_document"), "procedure_code": fields.get("procedure_code")},
                )
            except ExternalUnavailable as e:
                response = RegistryResponse(success=False, error=str(e), attempts=e.attempts)

        if not response.success:
            return CheckResult(
                ValidationKind.AUTHORIZATION,
                ValidationOutcome.WARNING,
                "Authorization not found - may require a permit request",
                {"number": number, "error": response.error},
            )

        authorization = response.data or {}
        authorized_code = authorization.get("procedure_code")
        billed_code = fields.get("procedure_code")
        if not services_match(authorized_code, billed_code, homologations):
            return CheckResult(
                ValidationKind.AUTHORIZATION,
                ValidationOutcome.REJECTED,
                "Billed service does not match the authorized service",
                {"billed_service": billed_code, "authorized_service": authorized_code},
            )

        authorized_diagnosis = authorization.get("diagnosis_code")
        billed_diagnosis = fields.get("diagnosis_code")
        if authorized_diagnosis and billed_diagnosis and authorized_diagnosis != billed_diagnosis:
            logger.warning(
                f"Authorization diagnosis {authorized_diagnosis} differs from billed diagnosis {billed_diagnosis}"
            )

        return CheckResult(
            ValidationKind.AUTHORIZATION,
            ValidationOutcome.APPROVED,
            "Authorization valid and service matches",
            {"number": number, "authorized_service": authorized_code, "found": True},
        )

    def check_value(self, fields: Dict[str, Any], contracted_value: Optional[Decimal]) -> CheckResult:
        billed = to_decimal_safe(fields.get("billed_value"))
        contracted = to_decimal_safe(contracted_value)

        if contracted == 0:
            return CheckResult(
                ValidationKind.VALUE, ValidationOutcome.WARNING, "No contracted value defined for the service", {"billed_value": str(billed)}
            )
        if billed <= contracted:
            return CheckResult(
                ValidationKind.VALUE,
                ValidationOutcome.APPROVED,
                "Billed value is within the contracted value",
                {"billed_value": str(billed), "contracted_value": str(contracted), "difference": "0"},
            )

        # the excess is charged as a tariff-difference glosa
        difference = billed - contracted
        return CheckResult(
            ValidationKind.VALUE,
            ValidationOutcome.WARNING,
            f"Billed value ({billed}) exceeds the contracted value ({contracted})",
            {
                "billed_value": str(billed),
                "contracted_value": str(contracted),
                "difference": str(difference),
                "difference_percent": f"{(difference * 100 / contracted):.2f}%",
                "generates_glosa": True,
            },
        )

    def check_dates(self, claim: Claim, fields: Dict[str, Any], skips: Set[str]) -> CheckResult:
        if ValidationSkip.DATE_VALIDATION.value in skips:
            return CheckResult(ValidationKind.DATE, ValidationOutcome.APPROVED, "Date validation relaxed by rule", {"skipped": True})

        warnings = []
        service_date = parse_date(fields.get("service_date"))
        authorization_date = parse_date((claim.authorization_info or {}).get("date"))
        invoice_date = parse_date(fields.get("invoice_date"))

        if authorization_date and service_date:
            days = (service_date - authorization_date).days
            if days > self.settings.authorization_window_days:
                warnings.append(
                    f"Service date is {days} days after the authorization "
                    f"(recommended maximum {self.settings.authorization_window_days} days)"
                )
        if invoice_date and service_date and invoice_date < service_date:
            warnings.append("Invoice date is earlier than the service date")

        if warnings:
            return CheckResult(ValidationKind.DATE, ValidationOutcome.WARNING, "Date validation with warnings", {"warnings": warnings})
        return CheckResult(ValidationKind.DATE, ValidationOutcome.APPROVED, "Dates validated", {})

    def check_copayment(self, claim: Claim, fields: Dict[str, Any]) -> CheckResult:
        copayment_info = claim.copayment_info or {}
        amount = to_decimal_safe(fields.get("copayment") or copayment_info.get("value"))

        if amount == 0:
            return CheckResult(ValidationKind.COPAYMENT, ValidationOutcome.APPROVED, "No copayment applies", {"has_copayment": False})
        if copayment_info.get("has_discount"):
            return CheckResult(
                ValidationKind.COPAYMENT,
                ValidationOutcome.APPROVED,
                "Copayment with discount applied",
                {"has_copayment": True, "value": str(amount), "discount_detail": copayment_info.get("discount_detail")},
            )

        service_date = fields.get("service_date")
        invoice_date = fields.get("invoice_date")
        dates_match = bool(service_date and invoice_date and str(service_date) == str(invoice_date))
        return CheckResult(
            ValidationKind.COPAYMENT,
            ValidationOutcome.APPROVED if dates_match else ValidationOutcome.WARNING,
            "Copayment valid" if dates_match else "Check service and invoice dates for the copayment",
            {"has_copayment": True, "value": str(amount), "dates_match": dates_match},
        )


def to_decimal_safe(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    amount = parse_amount(value)
    return amount if amount is not None else Decimal(0)
