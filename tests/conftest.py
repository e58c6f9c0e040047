"""Shared pytest fixtures and configuration."""

import os

# must be set before common.db creates its engine
os.environ.setdefault("CLAIMS_AUDIT_DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from faker import Faker

from common.db import Base, get_db
from common.enums import ClaimStatus, DocumentKind
from main import app
from services.claims.models import Claim, ClaimDocument
from services.claims.routes import get_orchestrator
from services.external.registry import RegistryResponse
from services.glosas.tariffs import seed_tariffs, SqlTariffRepository
from services.liquidation.errors import ReportGenerationError
from services.liquidation.orchestrator import LiquidationOrchestrator
from services.rules.store import SqlRuleStore

fake = Faker()


@pytest.fixture(scope="function")
def db_session():
    """Create a test database session with in-memory SQLite."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    seed_tariffs(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class FakeReportGenerator:
    """Records render calls instead of writing files."""

    def __init__(self):
        self.rendered = []

    def render(self, claim, glosas, totals):
        self.rendered.append((claim.claim_number, glosas, totals))
        return f"memory://liquidation_{claim.claim_number}.json"


class FailingReportGenerator:
    def render(self, claim, glosas, totals):
        raise ReportGenerationError("disk full")


class FakeRegistry:
    """Answers registry queries from a canned dict keyed by system."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    def query(self, kind, parameters, timeout=None):
        self.calls.append((kind, dict(parameters)))
        response = self.responses.get(kind)
        if response is None:
            return RegistryResponse(success=False, error="Not found")
        return response


@pytest.fixture
def report_generator():
    return FakeReportGenerator()


@pytest.fixture
def failing_report_generator():
    return FailingReportGenerator()


@pytest.fixture
def registry_factory():
    """Build a FakeRegistry from {ExternalSystem: RegistryResponse}."""
    return FakeRegistry


@pytest.fixture
def make_orchestrator(db_session, report_generator):
    """Factory for orchestrators wired to the test session."""

    def factory(db=None, registry=None, report_generator=report_generator, strategies=None):
        db = db or db_session
        return LiquidationOrchestrator(
            db=db,
            tariffs=SqlTariffRepository(db),
            rule_store=SqlRuleStore(db),
            registry=registry,
            strategies=strategies,
            report_generator=report_generator,
        )

    return factory


@pytest.fixture(scope="function")
def client(db_session, make_orchestrator):
    """Create a test client with database and orchestrator overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: make_orchestrator()
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


def build_invoice_payload(
    procedure_code="890281",
    billed_value="38586",
    quantity="1",
    authorization_number=None,
    procedure_name="CONSULTA DE PRIMERA VEZ POR ESPECIALISTA EN ORTOPEDIA",
    vision_overrides=None,
):
    """Extraction payload with agreeing regex and vision results."""
    fields = {
        "invoice_number": "FE-10234",
        "invoice_date": "15/03/2024",
        "patient_name": "MARIA FERNANDA LOPEZ",
        "patient_document_type": "CC",
        "patient_document": "52123456",
        "procedure_code": procedure_code,
        "procedure_name": procedure_name,
        "diagnosis_code": "M545",
        "billed_value": billed_value,
        "net_value": billed_value,
        "quantity": quantity,
        "authorization_number": authorization_number,
        "service_date": "15/03/2024",
        "copayment": None,
    }
    vision_fields = dict(fields)
    vision_fields.update(vision_overrides or {})
    return {
        "results": [
            {"method": "regex", "confidence": 92, "fields": fields},
            {"method": "vision", "confidence": 88, "fields": vision_fields},
        ]
    }


@pytest.fixture
def invoice_payload():
    return build_invoice_payload


@pytest.fixture
def sample_claim_data():
    """Generate sample claim data for testing."""
    return {
        "claim_number": fake.bothify(text="RAD-####-????", letters="ABCDEFGHIJKLMNOPQRSTUVWXYZ"),
        "provider_tax_id": fake.numerify(text="900######"),
        "provider_name": fake.company(),
        "payer_name": "NUEVA EPS",
        "billed_value": 38586.0,
        "quantity": 1,
        "procedure_code": "890281",
        "patient_info": {"name": fake.name(), "document": fake.numerify(text="########")},
    }


@pytest.fixture
def claim_factory(db_session):
    """Insert a claim directly, bypassing the API."""

    def factory(claim_number=None, status=ClaimStatus.PENDING, **overrides):
        claim = Claim(
            claim_number=claim_number or fake.bothify(text="RAD-####-????", letters="ABCDEFGHIJKLMNOPQRSTUVWXYZ"),
            provider_tax_id=fake.numerify(text="900######"),
            payer_name=overrides.pop("payer_name", "NUEVA EPS"),
            status=status.value,
            **overrides,
        )
        db_session.add(claim)
        db_session.commit()
        db_session.refresh(claim)
        return claim

    return factory


@pytest.fixture
def attach_document(db_session):
    """Attach a document to a claim."""

    def attach(claim, kind=DocumentKind.INVOICE, payload=None, filename=None):
        document = ClaimDocument(
            claim_id=claim.id,
            kind=kind.value,
            filename=filename or f"{kind.value.lower()}.pdf",
            mime_type="application/pdf",
            extraction_payload=payload,
        )
        db_session.add(document)
        db_session.commit()
        db_session.refresh(claim)
        return document

    return attach


@pytest.fixture
def sample_claim(claim_factory):
    """Create a sample PENDING claim in the database."""
    return claim_factory()


@pytest.fixture
def ready_claim(claim_factory, attach_document, invoice_payload):
    """PENDING claim with an invoice and a clinical record attached."""
    claim = claim_factory()
    attach_document(claim, DocumentKind.INVOICE, invoice_payload())
    attach_document(claim, DocumentKind.CLINICAL_RECORD)
    return claim


@pytest.fixture
def mark_for_deletion(db_session):
    """Simulate a concurrent DELETE request committing its mark."""

    def mark(claim_id):
        db_session.execute(
            update(Claim).where(Claim.id == claim_id).values(marked_for_deletion=True)
        )
        db_session.commit()

    return mark
