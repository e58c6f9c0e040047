"""Unit tests for claim validator."""

import pytest
from datetime import datetime
from decimal import Decimal
from common.config import Settings
from common.enums import DocumentKind, ExternalSystem, ValidationKind, ValidationOutcome, ValidationSkip
from services.claims.models import Claim, ClaimDocument
from services.external.registry import RegistryCallError, RegistryResponse, RetryingRegistry
from services.rules.validator import CheckResult, ClaimValidator, parse_date, services_match

NOW = datetime(2024, 3, 20, 12, 0, 0)


class StubRegistry:
    def __init__(self, response):
        self.response = response
        self.calls = 0

    def query(self, kind, parameters, timeout=None):
        self.calls += 1
        return self.response


class DownRegistry:
    def query(self, kind, parameters, timeout=None):
        raise RegistryCallError("connection refused")


def make_claim(documents=None, **overrides):
    values = dict(
        claim_number="RAD-2024-0001",
        provider_tax_id="900123456",
        payer_name="NUEVA EPS",
        patient_info={"document": "52123456"},
    )
    values.update(overrides)
    claim = Claim(**values)
    claim.documents = documents if documents is not None else [ClaimDocument(kind=DocumentKind.CLINICAL_RECORD.value, filename="hc.pdf")]
    return claim


def make_fields(**overrides):
    fields = {
        "invoice_number": "FE-10234",
        "invoice_date": "15/03/2024",
        "net_value": "38586",
        "billed_value": "38586",
        "patient_document": "52123456",
        "procedure_code": "890281",
        "diagnosis_code": "M545",
        "authorization_number": "AUT-1001",
        "service_date": "15/03/2024",
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def validator():
    return ClaimValidator(registry=None, settings=Settings(), clock=lambda: NOW)


class TestInvoiceCheck:
    def test_complete_invoice(self, validator):
        result = validator.check_invoice(make_claim(), make_fields())
        assert result.outcome == ValidationOutcome.APPROVED

    def test_missing_data_is_warning(self, validator):
        result = validator.check_invoice(make_claim(), make_fields(invoice_number="", net_value="0"))

        assert result.outcome == ValidationOutcome.WARNING
        assert "Invoice number not found" in result.details["errors"]
        assert "Invalid invoice net value" in result.details["errors"]

    def test_filing_window_exceeded(self, validator):
        claim = make_claim(created_at=datetime(2023, 4, 1))

        result = validator.check_invoice(claim, make_fields())

        assert result.outcome == ValidationOutcome.WARNING
        assert any("exceeds 9 months" in e for e in result.details["errors"])


class TestPatientCheck:
    def test_clinical_record_supports_claim(self, validator):
        assert validator.check_patient(make_claim(), make_fields()).outcome == ValidationOutcome.APPROVED

    def test_no_clinical_support(self, validator):
        claim = make_claim(documents=[ClaimDocument(kind=DocumentKind.INVOICE.value, filename="fe.pdf")])

        result = validator.check_patient(claim, make_fields())

        assert result.outcome == ValidationOutcome.WARNING

    def test_unprocessed_support_does_not_count(self, validator):
        claim = make_claim(
            documents=[ClaimDocument(kind=DocumentKind.SUPPORTING.value, filename="epicrisis.pdf", processed=False)]
        )
        assert validator.check_patient(claim, make_fields()).outcome == ValidationOutcome.WARNING

    def test_temporary_permit_needs_service_date(self, validator):
        claim = make_claim(patient_info={"document": "52123456", "temporary_permit": True})

        result = validator.check_patient(claim, make_fields(service_date=None))

        assert result.outcome == ValidationOutcome.WARNING
        assert any("temporary permit" in e for e in result.details["errors"])


class TestAuthorizationCheck:
    def test_skipped_by_rule(self, validator):
        result = validator.check_authorization(make_claim(), make_fields(), {ValidationSkip.AUTHORIZATION.value}, {})
        assert result.outcome == ValidationOutcome.APPROVED
        assert result.details["skipped"]

    def test_no_number_is_warning(self, validator):
        result = validator.check_authorization(make_claim(), make_fields(authorization_number=None), set(), {})
        assert result.outcome == ValidationOutcome.WARNING

    def test_matching_service(self):
        registry = StubRegistry(RegistryResponse(success=True, data={"procedure_code": "890281"}))
        validator = ClaimValidator(registry=registry, settings=Settings(), clock=lambda: NOW)

        result = validator.check_authorization(make_claim(), make_fields(), set(), {})

        assert result.outcome == ValidationOutcome.APPROVED
        assert registry.calls == 1

    def test_mismatched_service_rejects(self):
        registry = StubRegistry(RegistryResponse(success=True, data={"procedure_code": "871101"}))
        validator = ClaimValidator(registry=registry, settings=Settings(), clock=lambda: NOW)

        result = validator.check_authorization(make_claim(), make_fields(), set(), {})

        assert result.outcome == ValidationOutcome.REJECTED

    def test_consultation_homologation(self, validator):
        response = RegistryResponse(success=True, data={"procedure_code": "890202"})

        result = validator.check_authorization(
            make_claim(), make_fields(procedure_code="890201"), set(), {}, response
        )

        assert result.outcome == ValidationOutcome.APPROVED

    def test_rule_homologation(self, validator):
        response = RegistryResponse(success=True, data={"procedure_code": "871411"})

        result = validator.check_authorization(
            make_claim(), make_fields(procedure_code="873411"), set(), {"873411": "871411"}, response
        )

        assert result.outcome == ValidationOutcome.APPROVED

    def test_registry_exhausted_retries_is_warning(self):
        validator = ClaimValidator(
            registry=RetryingRegistry(DownRegistry(), max_attempts=2, sleep=lambda seconds: None),
            settings=Settings(),
            clock=lambda: NOW,
        )

        result = validator.check_authorization(make_claim(), make_fields(), set(), {})

        assert result.outcome == ValidationOutcome.WARNING
        assert "connection refused" in result.details["error"]

    def test_registry_failure_is_warning(self, validator):
        response = RegistryResponse(success=False, error="timeout", attempts=3)

        result = validator.check_authorization(make_claim(), make_fields(), set(), {}, response)

        assert result.outcome == ValidationOutcome.WARNING


class TestValueCheck:
    def test_within_contract(self, validator):
        result = validator.check_value(make_fields(billed_value="12510"), Decimal("12510"))
        assert result.outcome == ValidationOutcome.APPROVED

    def test_above_contract_generates_glosa(self, validator):
        result = validator.check_value(make_fields(), Decimal("12510"))

        assert result.outcome == ValidationOutcome.WARNING
        assert result.details["generates_glosa"]
        assert result.details["difference"] == "26076"

    def test_no_contracted_value(self, validator):
        assert validator.check_value(make_fields(), None).outcome == ValidationOutcome.WARNING


class TestDateCheck:
    def test_service_long_after_authorization(self, validator):
        claim = make_claim(authorization_info={"number": "AUT-1001", "date": "01/01/2024"})

        result = validator.check_dates(claim, make_fields(), set())

        assert result.outcome == ValidationOutcome.WARNING

    def test_window_relaxed_by_rule(self, validator):
        claim = make_claim(authorization_info={"number": "AUT-1001", "date": "01/01/2024"})

        result = validator.check_dates(claim, make_fields(), {ValidationSkip.DATE_VALIDATION.value})

        assert result.outcome == ValidationOutcome.APPROVED

    def test_invoice_before_service(self, validator):
        result = validator.check_dates(make_claim(), make_fields(invoice_date="10/03/2024"), set())
        assert result.outcome == ValidationOutcome.WARNING


class TestCopaymentCheck:
    def test_no_copayment(self, validator):
        assert validator.check_copayment(make_claim(), make_fields()).outcome == ValidationOutcome.APPROVED

    def test_copayment_with_discount(self, validator):
        claim = make_claim(copayment_info={"value": 4000, "has_discount": True})
        assert validator.check_copayment(claim, make_fields()).outcome == ValidationOutcome.APPROVED

    def test_copayment_dates_differ(self, validator):
        claim = make_claim(copayment_info={"value": 4000})
        result = validator.check_copayment(claim, make_fields(invoice_date="16/03/2024"))
        assert result.outcome == ValidationOutcome.WARNING


class TestAggregate:
    """Overall outcome and manual-review flag."""

    def result(self, outcome):
        return CheckResult(ValidationKind.INVOICE, outcome, "", {})

    def test_all_approved(self, validator):
        summary = validator.aggregate([self.result(ValidationOutcome.APPROVED)] * 6)
        assert summary.overall == ValidationOutcome.APPROVED
        assert not summary.requires_manual_review

    def test_two_warnings_no_review(self, validator):
        summary = validator.aggregate([self.result(ValidationOutcome.WARNING)] * 2)
        assert summary.overall == ValidationOutcome.WARNING
        assert not summary.requires_manual_review

    def test_three_warnings_need_review(self, validator):
        summary = validator.aggregate([self.result(ValidationOutcome.WARNING)] * 3)
        assert summary.requires_manual_review

    def test_any_rejection_wins(self, validator):
        summary = validator.aggregate(
            [self.result(ValidationOutcome.APPROVED), self.result(ValidationOutcome.REJECTED)]
        )
        assert summary.overall == ValidationOutcome.REJECTED
        assert summary.requires_manual_review

    def test_failing_check_becomes_warning(self, validator):
        """Test an exception inside one check never stops the others."""
        claim = make_claim()
        claim.patient_info = "not-a-dict"

        summary = validator.validate(claim, make_fields(), contracted_value=Decimal("12510"))

        assert len(summary.results) == 6
        patient = next(r for r in summary.results if r.kind == ValidationKind.PATIENT)
        assert patient.outcome == ValidationOutcome.WARNING
        assert "error" in patient.details


class TestHelpers:
    def test_parse_date_day_first(self):
        assert parse_date("02/03/2024") == datetime(2024, 3, 2)
        assert parse_date("garbage") is None
        assert parse_date(None) is None

    def test_services_match(self):
        assert services_match("890281", "890281", {})
        assert services_match("890202", "890201", {})
        assert not services_match("890281", "871101", {})
        assert not services_match(None, "871101", {})
