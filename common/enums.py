"""Enumerations for claim audit states and types."""

from enum import Enum

# all the claim statuses
class ClaimStatus(str, Enum):
    """Claim (radicado) lifecycle states."""

    PENDING = "PENDING"
    IN_PROCESS = "IN_PROCESS"
    VALIDATED = "VALIDATED"
    WITH_GLOSAS = "WITH_GLOSAS"
    LIQUIDATED = "LIQUIDATED"
    FINALIZED = "FINALIZED"  # Administrative archive after liquidation
    REJECTED = "REJECTED"


class DocumentKind(str, Enum):
    """Kinds of documents attached to a claim."""

    INVOICE = "INVOICE"
    CLINICAL_RECORD = "CLINICAL_RECORD"
    AUTHORIZATION = "AUTHORIZATION"
    SUPPORTING = "SUPPORTING"
    OTHER = "OTHER"


class ValidationKind(str, Enum):
    """Structural validations run against a claim."""

    INVOICE = "INVOICE"
    PATIENT = "PATIENT"
    AUTHORIZATION = "AUTHORIZATION"
    VALUE = "VALUE"
    DATE = "DATE"
    COPAYMENT = "COPAYMENT"


class ValidationOutcome(str, Enum):
    """Outcome of a single validation or of the aggregate."""

    APPROVED = "APPROVED"
    WARNING = "WARNING"  # Allows liquidation but flags issue
    REJECTED = "REJECTED"  # Forces the claim into REJECTED


class ValidationSkip(str, Enum):
    """Validations a billing rule can switch off."""

    AUTHORIZATION = "authorization"
    DATE_VALIDATION = "date_validation"


class GlosaType(str, Enum):
    """Deduction reasons."""

    TARIFF_DIFFERENCE = "TARIFF_DIFFERENCE"
    MISSING_AUTHORIZATION = "MISSING_AUTHORIZATION"
    DUPLICATE = "DUPLICATE"
    PERTINENCE = "PERTINENCE"


class ExtractionMethod(str, Enum):
    """Families of extraction strategies."""

    PATTERN = "PATTERN"  # Regex / layout based
    VISION = "VISION"  # LLM or vision based, context aware


class CareType(str, Enum):
    """Care setting used for rule scoping."""

    EMERGENCY = "urgencias"
    OUTPATIENT = "consulta_externa"
    INPATIENT = "hospitalizacion"
    SURGICAL = "quirurgico"
    OTHER = "otro"


class RuleScopeKind(str, Enum):
    """Where a billing rule applies."""

    GLOBAL = "global"
    PAYER = "payer"
    PROCEDURE = "procedure"
    VALUE_BUCKET = "value_bucket"
    CARE_TYPE = "care_type"


class RuleType(str, Enum):
    """Business area a billing rule belongs to."""

    GLOSA = "glosa"
    AUTHORIZATION = "autorizacion"
    VALUE = "valor"
    DATE = "fecha"
    PATIENT = "paciente"
    SERVICE = "servicio"
    GENERAL = "general"


class ExternalSystem(str, Enum):
    """External registries queried during enrichment."""

    AUTHORIZATION = "authorization"
    DOCUMENT_SEARCH = "document_search"


class EventType(str, Enum):
    """Types of events in the event log."""

    CLAIM_CREATED = "CLAIM_CREATED"
    DOCUMENT_ATTACHED = "DOCUMENT_ATTACHED"
    LIQUIDATION_STARTED = "LIQUIDATION_STARTED"
    EXTRACTION_ARBITRATED = "EXTRACTION_ARBITRATED"
    EXTERNAL_QUERY = "EXTERNAL_QUERY"
    CLAIM_VALIDATED = "CLAIM_VALIDATED"
    RULES_APPLIED = "RULES_APPLIED"
    CLAIM_REJECTED = "CLAIM_REJECTED"
    REPORT_GENERATED = "REPORT_GENERATED"
    REPORT_FAILED = "REPORT_FAILED"
    CLAIM_LIQUIDATED = "CLAIM_LIQUIDATED"
    DELETION_REQUESTED = "DELETION_REQUESTED"
