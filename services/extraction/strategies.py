"""Extraction strategy interface and the result type they produce.

Raw text/vision extraction runs outside this service. Strategies here read the
per-strategy results that upstream extractors attached to a document.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from common.enums import ExtractionMethod
from services.claims.models import ClaimDocument
import logging

logger = logging.getLogger(__name__)

# Fields every strategy is asked for and the arbitrator reconciles
CRITICAL_FIELDS = (
    "invoice_number",
    "invoice_date",
    "patient_name",
    "patient_document_type",
    "patient_document",
    "procedure_code",
    "procedure_name",
    "diagnosis_code",
    "billed_value",
    "net_value",
    "quantity",
    "authorization_number",
    "service_date",
    "copayment",
)

PATTERN_TAGS = {"regex", "pattern", "ocr", "layout", "expert"}


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def method_kind_for(tag: str) -> ExtractionMethod:
    """Pattern-based tags map to PATTERN, everything else is treated as VISION."""
    return ExtractionMethod.PATTERN if tag.lower() in PATTERN_TAGS else ExtractionMethod.VISION


@dataclass
class ExtractionResult:
    """Output of one extraction strategy for one document."""

    method: str
    fields: Dict[str, Any]
    confidence: float  # 0-100 as reported by the strategy
    kind: Optional[ExtractionMethod] = None
    field_count: int = field(init=False, default=0)

    def __post_init__(self):
        if self.kind is None:
            self.kind = method_kind_for(self.method)
        self.confidence = max(0.0, min(100.0, float(self.confidence or 0)))
        self.field_count = len(CRITICAL_FIELDS)

    @property
    def populated_fields(self) -> int:
        return sum(1 for name in CRITICAL_FIELDS if not is_empty(self.fields.get(name)))

    @property
    def empty_fields(self) -> int:
        return self.field_count - self.populated_fields

    @property
    def usable(self) -> bool:
        return self.populated_fields > 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExtractionResult":
        kind = payload.get("kind")
        return cls(
            method=str(payload.get("method", "unknown")),
            fields=dict(payload.get("fields") or {}),
            confidence=payload.get("confidence", 0),
            kind=ExtractionMethod(kind) if kind else None,
        )


class ExtractionStrategy(Protocol):
    """Anything that can turn a document into an ExtractionResult."""

    method: str

    def extract(self, document: ClaimDocument) -> Optional[ExtractionResult]:
        ...


class StoredPayloadStrategy:
    """Reads the result a given upstream extractor stored on the document.

    The document payload looks like
    ``{"results": [{"method": "regex", "confidence": 95, "fields": {...}}, ...]}``.
    """

    def __init__(self, method: str):
        self.method = method

    def extract(self, document: ClaimDocument) -> Optional[ExtractionResult]:
        payload = document.extraction_payload or {}
        for entry in payload.get("results", []):
            if str(entry.get("method", "")).lower() == self.method.lower():
                return ExtractionResult.from_payload(entry)
        logger.info(f"Document {document.id} has no '{self.method}' extraction result")
        return None


def default_strategies():
    """Pattern-based extractor first, then the vision/LLM extractor."""
    return [StoredPayloadStrategy("regex"), StoredPayloadStrategy("vision")]
