"""SQLAlchemy models for claims (radicados), billing rules and tariffs."""

from decimal import Decimal
import re

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func

from common.db import Base
from common.enums import ClaimStatus, RuleScopeKind

# rango thresholds, in pesos
VALUE_BUCKET_LIMITS = (
    (Decimal("100000"), 1),
    (Decimal("500000"), 2),
    (Decimal("1000000"), 3),
)


def value_bucket_for(amount) -> int:
    """Map a total claim value to its rango (1-4)."""
    value = Decimal(str(amount or 0))
    for upper, bucket in VALUE_BUCKET_LIMITS:
        if value < upper:
            return bucket
    return 4


CLAIM_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{2,49}$")


def is_valid_claim_number(number) -> bool:
    return bool(number) and bool(CLAIM_NUMBER_PATTERN.match(str(number)))


# everything in a claim
class Claim(Base):
    """Medical billing claim under audit."""

    __tablename__ = "claims"

    id = Column(Integer, primary_key=True, index=True)
    claim_number = Column(String(50), unique=True, index=True, nullable=False)
    provider_tax_id = Column(String(20), nullable=False, index=True)
    provider_name = Column(String(200), nullable=True)
    payer_name = Column(String(100), nullable=False, index=True)

    status = Column(String(20), default=ClaimStatus.PENDING.value, nullable=False, index=True)

    # Invoice data, filled at intake or from arbitrated extraction
    invoice_number = Column(String(50), nullable=True)
    invoice_date = Column(String(20), nullable=True)
    declared_total = Column(Numeric(14, 2), nullable=True)
    billed_value = Column(Numeric(14, 2), nullable=True)  # Unit value billed by the provider
    quantity = Column(Integer, default=1, nullable=False)
    contracted_value = Column(Numeric(14, 2), nullable=True)
    procedure_code = Column(String(20), nullable=True)
    procedure_name = Column(String(300), nullable=True)
    diagnosis_code = Column(String(10), nullable=True)

    # Classification
    value_bucket = Column(Integer, default=1, nullable=False)  # rango
    care_type = Column(String(30), nullable=True)

    # Structured sub-documents
    patient_info = Column(JSON, nullable=True)
    authorization_info = Column(JSON, nullable=True)
    copayment_info = Column(JSON, nullable=True)
    liquidation_summary = Column(JSON, nullable=True)
    arbitration_summary = Column(JSON, nullable=True)

    requires_review = Column(Boolean, default=False, nullable=False)
    failure_reason = Column(Text, nullable=True)
    marked_for_deletion = Column(Boolean, default=False, nullable=False)
    report_reference = Column(String(500), nullable=True)

    processing_started_at = Column(DateTime, nullable=True)
    liquidated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relationships
    documents = relationship("ClaimDocument", back_populates="claim", cascade="all, delete-orphan", order_by="ClaimDocument.id")
    validations = relationship("ValidationRecord", back_populates="claim", cascade="all, delete-orphan", order_by="ValidationRecord.id")
    glosas = relationship("GlosaRecord", back_populates="claim", cascade="all, delete-orphan", order_by="GlosaRecord.id")
    applied_rules = relationship("AppliedRuleRecord", back_populates="claim", cascade="all, delete-orphan", order_by="AppliedRuleRecord.id")
    external_queries = relationship("ExternalQuery", back_populates="claim", cascade="all, delete-orphan", order_by="ExternalQuery.id")
    state_transitions = relationship("ClaimStateTransition", back_populates="claim", cascade="all, delete-orphan")
    events = relationship("ClaimEvent", back_populates="claim", cascade="all, delete-orphan", order_by="ClaimEvent.created_at")

    @validates("declared_total")
    def _rederive_value_bucket(self, key, value):
        self.value_bucket = value_bucket_for(value)
        return value


class ClaimDocument(Base):
    """Uploaded file reference owned by a claim."""

    __tablename__ = "claim_documents"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # DocumentKind enum value
    filename = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=True)
    processed = Column(Boolean, default=False, nullable=False)
    extraction_payload = Column(JSON, nullable=True)  # Raw per-strategy extraction results
    uploaded_at = Column(DateTime, server_default=func.now(), nullable=False)

    claim = relationship("Claim", back_populates="documents")


class ValidationRecord(Base):
    """Result of one structural validation in a pipeline run."""

    __tablename__ = "claim_validations"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # ValidationKind enum value
    outcome = Column(String(20), nullable=False)  # ValidationOutcome enum value
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    validated_at = Column(DateTime, server_default=func.now(), nullable=False)

    claim = relationship("Claim", back_populates="validations")


class GlosaRecord(Base):
    """Deduction applied against the billed value."""

    __tablename__ = "claim_glosas"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    glosa_type = Column(String(30), nullable=False)  # GlosaType enum value
    reason_code = Column(String(10), nullable=True)
    procedure_code = Column(String(20), nullable=True)
    procedure_description = Column(String(300), nullable=True)
    billed_value = Column(Numeric(14, 2), nullable=False)
    contracted_value = Column(Numeric(14, 2), nullable=False)
    difference = Column(Numeric(14, 2), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    total = Column(Numeric(14, 2), nullable=False)
    justification = Column(Text, nullable=True)
    automatic = Column(Boolean, default=True, nullable=False)
    default_policy = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    claim = relationship("Claim", back_populates="glosas")


class AppliedRuleRecord(Base):
    """Billing rule that fired during a pipeline run."""

    __tablename__ = "claim_applied_rules"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    rule_id = Column(Integer, ForeignKey("billing_rules.id"), nullable=True, index=True)
    rule_name = Column(String(200), nullable=False)
    action = Column(String(40), nullable=False)
    parameters = Column(JSON, nullable=True)
    affected_value = Column(Numeric(14, 2), nullable=True)
    applied_at = Column(DateTime, server_default=func.now(), nullable=False)

    claim = relationship("Claim", back_populates="applied_rules")


class ExternalQuery(Base):
    """Log of an external registry call made for a claim."""

    __tablename__ = "claim_external_queries"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    system = Column(String(30), nullable=False)  # ExternalSystem enum value
    success = Column(Boolean, nullable=False)
    attempts = Column(Integer, default=1, nullable=False)
    error = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    queried_at = Column(DateTime, nullable=False)

    claim = relationship("Claim", back_populates="external_queries")


# transitioning the claim states
class ClaimStateTransition(Base):
    """Audit trail for claim state changes."""

    __tablename__ = "claim_state_transitions"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    transition_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relationships
    claim = relationship("Claim", back_populates="state_transitions")


class ClaimEvent(Base):
    """Immutable event log for all claim-related events."""

    __tablename__ = "claim_events"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    event_type = Column(String(30), nullable=False, index=True)  # EventType enum value
    event_data = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)

    # Relationships
    claim = relationship("Claim", back_populates="events")


class BillingRule(Base):
    """Business rule authored in natural language plus its structured interpretation."""

    __tablename__ = "billing_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)  # Natural-language text of the rule
    rule_type = Column(String(20), nullable=False)  # RuleType enum value
    active = Column(Boolean, default=True, nullable=False, index=True)
    priority = Column(Integer, default=100, nullable=False, index=True)  # Lower runs first

    scope_kind = Column(String(20), default=RuleScopeKind.GLOBAL.value, nullable=False)
    scope_value = Column(String(100), nullable=True)

    # {"conditions": [...], "action": {"type": ..., "parameters": {...}}}
    interpretation = Column(JSON, nullable=True)
    interpretation_confidence = Column(Numeric(5, 2), nullable=True)
    interpreted_by = Column(String(30), nullable=True)
    interpreted_at = Column(DateTime, nullable=True)

    # Statistics, only ever incremented atomically
    times_applied = Column(Integer, default=0, nullable=False)
    last_applied_at = Column(DateTime, nullable=True)
    total_value_affected = Column(Numeric(16, 2), default=0, nullable=False)
    glosas_avoided = Column(Integer, default=0, nullable=False)

    created_by = Column(String(100), nullable=False)
    updated_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class TariffItem(Base):
    """Contracted unit price for a procedure code."""

    __tablename__ = "tariff_items"

    id = Column(Integer, primary_key=True, index=True)
    procedure_code = Column(String(20), unique=True, index=True, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)
    description = Column(String(300), nullable=True)
    payer_name = Column(String(100), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
