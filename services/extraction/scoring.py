"""Per-field confidence heuristics for extraction strategies.

Each scorer takes a raw field value and returns a confidence in [0, 100].
Scorers are looked up by (field, strategy kind), so new fields only need a new
table entry.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Tuple
import re

from dateutil import parser as date_parser

from common.enums import ExtractionMethod
from services.extraction.strategies import is_empty

Scorer = Callable[[Any], float]

# CUPS codes are 6 digits starting with 8 or 9
CUPS_PATTERN = re.compile(r"^[89]\d{5}$")
# CIE-10: letter + 2-3 digits, optionally dotted
CIE10_PATTERN = re.compile(r"^[A-Z]\d{2}(\.?\d{1,2})?$")
DOCUMENT_NUMBER_PATTERN = re.compile(r"^\d{5,12}$")
INVOICE_NUMBER_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9-]{2,29}$")
AUTHORIZATION_PATTERN = re.compile(r"^[A-Z0-9-]{4,30}$")
DOCUMENT_TYPES = {"CC", "RC", "TI", "CE", "PA", "PT", "MS", "AS"}


def as_text(value: Any) -> str:
    return " ".join(str(value).split()).upper()


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a money-like value, stripping everything but digits, dot and minus."""
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    cleaned = re.sub(r"[^0-9.-]", "", str(value))
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parses_as_date(value: Any) -> bool:
    try:
        date_parser.parse(str(value), dayfirst=True)
        return True
    except (ValueError, OverflowError):
        return False


def pattern_scorer(pattern: re.Pattern, hit: float, miss: float) -> Scorer:
    def score(value: Any) -> float:
        return hit if pattern.match(as_text(value).replace(" ", "")) else miss
    return score


def procedure_code_vision(value: Any) -> float:
    return 85.0 if CUPS_PATTERN.match(as_text(value)) else 30.0


def diagnosis_score(hit: float) -> Scorer:
    def score(value: Any) -> float:
        text = as_text(value)
        # V0x codes are vehicle accident external causes, a frequent misread
        if text.startswith("V0"):
            return 20.0
        return hit if CIE10_PATTERN.match(text) else 35.0
    return score


def free_text_score(single_word: float, multi_word: float) -> Scorer:
    def score(value: Any) -> float:
        words = [w for w in as_text(value).split(" ") if w]
        if not words or any(ch.isdigit() for ch in "".join(words)):
            return 25.0
        return multi_word if len(words) >= 2 else single_word
    return score


def amount_score(hit: float) -> Scorer:
    def score(value: Any) -> float:
        amount = parse_amount(value)
        return hit if amount is not None and amount > 0 else 20.0
    return score


def quantity_score(value: Any) -> float:
    amount = parse_amount(value)
    if amount is None or amount != amount.to_integral_value():
        return 20.0
    return 85.0 if 1 <= amount <= 999 else 30.0


def date_score(hit: float) -> Scorer:
    def score(value: Any) -> float:
        return hit if parses_as_date(value) else 20.0
    return score


def document_type_score(value: Any) -> float:
    return 90.0 if as_text(value) in DOCUMENT_TYPES else 30.0


def default_score(kind: ExtractionMethod) -> Scorer:
    base = 60.0 if kind == ExtractionMethod.PATTERN else 70.0

    def score(value: Any) -> float:
        return base
    return score


PATTERN = ExtractionMethod.PATTERN
VISION = ExtractionMethod.VISION

DEFAULT_SCORERS: Dict[Tuple[str, ExtractionMethod], Scorer] = {
    ("procedure_code", PATTERN): pattern_scorer(CUPS_PATTERN, 95.0, 40.0),
    ("procedure_code", VISION): procedure_code_vision,
    ("diagnosis_code", PATTERN): diagnosis_score(90.0),
    ("diagnosis_code", VISION): diagnosis_score(85.0),
    ("patient_document", PATTERN): pattern_scorer(DOCUMENT_NUMBER_PATTERN, 95.0, 30.0),
    ("patient_document", VISION): pattern_scorer(DOCUMENT_NUMBER_PATTERN, 85.0, 30.0),
    ("patient_document_type", PATTERN): document_type_score,
    ("patient_document_type", VISION): document_type_score,
    ("invoice_number", PATTERN): pattern_scorer(INVOICE_NUMBER_PATTERN, 90.0, 50.0),
    ("invoice_number", VISION): pattern_scorer(INVOICE_NUMBER_PATTERN, 80.0, 50.0),
    ("authorization_number", PATTERN): pattern_scorer(AUTHORIZATION_PATTERN, 85.0, 40.0),
    ("authorization_number", VISION): pattern_scorer(AUTHORIZATION_PATTERN, 80.0, 40.0),
    ("patient_name", PATTERN): free_text_score(40.0, 60.0),
    ("patient_name", VISION): free_text_score(50.0, 90.0),
    ("procedure_name", PATTERN): free_text_score(45.0, 55.0),
    ("procedure_name", VISION): free_text_score(60.0, 85.0),
    ("billed_value", PATTERN): amount_score(90.0),
    ("billed_value", VISION): amount_score(80.0),
    ("net_value", PATTERN): amount_score(90.0),
    ("net_value", VISION): amount_score(80.0),
    ("copayment", PATTERN): amount_score(85.0),
    ("copayment", VISION): amount_score(80.0),
    ("quantity", PATTERN): quantity_score,
    ("quantity", VISION): quantity_score,
    ("invoice_date", PATTERN): date_score(90.0),
    ("invoice_date", VISION): date_score(80.0),
    ("service_date", PATTERN): date_score(90.0),
    ("service_date", VISION): date_score(80.0),
}


class ScoringTable:
    """Lookup of field scorers keyed by (field, strategy kind)."""

    def __init__(self, scorers: Optional[Dict[Tuple[str, ExtractionMethod], Scorer]] = None):
        self._scorers = dict(DEFAULT_SCORERS if scorers is None else scorers)

    def register(self, field_name: str, kind: ExtractionMethod, scorer: Scorer) -> None:
        self._scorers[(field_name, kind)] = scorer

    def score(self, field_name: str, kind: ExtractionMethod, value: Any) -> float:
        if is_empty(value):
            return 0.0
        scorer = self._scorers.get((field_name, kind)) or default_score(kind)
        return float(scorer(value))
