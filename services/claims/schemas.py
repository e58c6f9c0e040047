"""Pydantic schemas for claims API."""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Any, Dict, List, Optional
from common.enums import CareType, DocumentKind


class ClaimCreate(BaseModel):
    """Schema for creating a new claim (radicado)."""

    claim_number: str = Field(..., min_length=3, max_length=50)
    provider_tax_id: str = Field(..., min_length=1, max_length=20)
    provider_name: Optional[str] = None
    payer_name: str = Field(..., min_length=1, max_length=100)
    declared_total: Optional[float] = Field(None, ge=0)
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    billed_value: Optional[float] = Field(None, ge=0)
    quantity: int = Field(1, ge=1)
    procedure_code: Optional[str] = None
    procedure_name: Optional[str] = None
    diagnosis_code: Optional[str] = None
    care_type: Optional[CareType] = None
    patient_info: Optional[Dict[str, Any]] = None
    authorization_info: Optional[Dict[str, Any]] = None
    copayment_info: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class ClaimStateTransitionResponse(BaseModel):
    """Schema for state transition audit record."""

    id: int
    claim_id: int
    from_status: Optional[str]
    to_status: str
    transition_reason: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ClaimResponse(BaseModel):
    """Schema for claim response."""

    id: int
    claim_number: str
    provider_tax_id: str
    provider_name: Optional[str]
    payer_name: str
    status: str
    invoice_number: Optional[str]
    invoice_date: Optional[str]
    declared_total: Optional[float]
    billed_value: Optional[float]
    quantity: int
    contracted_value: Optional[float]
    procedure_code: Optional[str]
    procedure_name: Optional[str]
    diagnosis_code: Optional[str]
    value_bucket: int
    care_type: Optional[str]
    patient_info: Optional[dict]
    authorization_info: Optional[dict]
    copayment_info: Optional[dict]
    liquidation_summary: Optional[dict]
    requires_review: bool
    failure_reason: Optional[str]
    marked_for_deletion: bool
    report_reference: Optional[str]
    processing_started_at: Optional[datetime]
    liquidated_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DocumentCreate(BaseModel):
    """Schema for attaching a document to a claim."""

    kind: DocumentKind
    filename: str = Field(..., min_length=1, max_length=255)
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = Field(None, ge=0)
    # {"results": [{"method": "regex", "confidence": 95, "fields": {...}}, ...]}
    extraction_payload: Optional[Dict[str, Any]] = None


class DocumentResponse(BaseModel):
    id: int
    claim_id: int
    kind: str
    filename: str
    mime_type: Optional[str]
    size_bytes: Optional[int]
    processed: bool
    uploaded_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ValidationResponse(BaseModel):
    id: int
    kind: str
    outcome: str
    message: str
    details: Optional[dict]
    validated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GlosaResponse(BaseModel):
    id: int
    glosa_type: str
    reason_code: Optional[str]
    procedure_code: Optional[str]
    procedure_description: Optional[str]
    billed_value: float
    contracted_value: float
    difference: float
    quantity: int
    total: float
    justification: Optional[str]
    automatic: bool
    default_policy: bool

    model_config = ConfigDict(from_attributes=True)


class AppliedRuleResponse(BaseModel):
    id: int
    rule_id: Optional[int]
    rule_name: str
    action: str
    parameters: Optional[dict]
    affected_value: Optional[float]
    applied_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExternalQueryResponse(BaseModel):
    id: int
    system: str
    success: bool
    attempts: int
    error: Optional[str]
    queried_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ClaimDetailResponse(ClaimResponse):
    """Claim with everything the last pipeline run produced."""

    documents: List[DocumentResponse] = []
    validations: List[ValidationResponse] = []
    glosas: List[GlosaResponse] = []
    applied_rules: List[AppliedRuleResponse] = []
    external_queries: List[ExternalQueryResponse] = []
    arbitration_summary: Optional[dict] = None


class ClaimEventResponse(BaseModel):
    """Schema for claim event response."""

    id: int
    claim_id: int
    event_type: str
    event_data: Optional[dict]
    description: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LiquidationResponse(BaseModel):
    """Outcome of a synchronous liquidation run."""

    claim_id: int
    claim_number: str
    status: str
    payable: float
    total_glosa: float
    requires_review: bool
    validations: List[dict]
    applied_rules: List[dict]
    glosas: List[dict]
    messages: List[str]
    report_reference: Optional[str] = None


class LiquidationQueuedResponse(BaseModel):
    claim_id: int
    task_id: str
    status: str = "queued"


class ClaimStatisticsResponse(BaseModel):
    total_claims: int
    by_status: Dict[str, int]
    total_payable: float
    total_glosa: float
    requiring_review: int


class DeletionResponse(BaseModel):
    claim_id: int
    deleted: bool
    marked_for_deletion: bool
