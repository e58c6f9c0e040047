"""Extraction arbitrator - reconciles field values from several extraction strategies.

The arbitrator:
- Normalizes and compares each critical field across strategies
- Scores disagreeing values with the per-field scoring table
- Prefers the vision/context-aware value on exact ties and flags it for review
- Computes a coincidence rate and an overall confidence

It is stateless: no DB access, no external calls.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from common.config import get_settings
from common.enums import ExtractionMethod
from services.extraction.scoring import ScoringTable
from services.extraction.strategies import CRITICAL_FIELDS, ExtractionResult, is_empty
import logging

logger = logging.getLogger(__name__)


def normalize(value: Any) -> str:
    """Trim, case-fold and collapse whitespace; empty values normalize to ''."""
    if value is None:
        return ""
    return " ".join(str(value).split()).casefold()


@dataclass
class ArbitratedField:
    """Reconciled value of one critical field."""

    name: str
    values: Dict[str, Any]  # method tag -> raw value
    confidences: Dict[str, float]  # method tag -> field confidence
    coincidence: bool
    final_value: Any
    chosen_method: Optional[str]
    confidence: float
    requires_review: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "values": self.values,
            "confidences": self.confidences,
            "coincidence": self.coincidence,
            "final_value": self.final_value,
            "chosen_method": self.chosen_method,
            "confidence": self.confidence,
            "requires_review": self.requires_review,
        }


@dataclass
class ArbitrationResult:
    """Reconciled claim data plus arbitration metadata."""

    fields: Dict[str, Any]
    arbitrated_fields: List[ArbitratedField] = field(default_factory=list)
    coincidence_rate: Optional[float] = None  # None when only one strategy ran
    overall_confidence: float = 0.0
    overall_requires_review: bool = False
    methods: List[str] = field(default_factory=list)

    @property
    def fields_requiring_review(self) -> List[str]:
        return [f.name for f in self.arbitrated_fields if f.requires_review]

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly summary stored on the claim."""
        return {
            "methods": self.methods,
            "coincidence_rate": self.coincidence_rate,
            "overall_confidence": self.overall_confidence,
            "overall_requires_review": self.overall_requires_review,
            "fields_requiring_review": self.fields_requiring_review,
            "fields": [f.as_dict() for f in self.arbitrated_fields],
        }


class ExtractionArbitrator:
    """Merges N >= 1 extraction results for the same document."""

    def __init__(
        self,
        scoring: Optional[ScoringTable] = None,
        review_threshold: Optional[float] = None,
        low_threshold: Optional[float] = None,
        low_confidence_cap: Optional[float] = None,
    ):
        settings = get_settings()
        self.scoring = scoring or ScoringTable()
        self.review_threshold = (
            settings.arbitration_review_threshold if review_threshold is None else review_threshold
        )
        self.low_threshold = (
            settings.arbitration_low_threshold if low_threshold is None else low_threshold
        )
        self.low_confidence_cap = (
            settings.arbitration_low_confidence_cap if low_confidence_cap is None else low_confidence_cap
        )

    def arbitrate(self, results: Sequence[ExtractionResult]) -> ArbitrationResult:
        if not results:
            raise ValueError("At least one extraction result is required")

        # Stable ordering makes the outcome independent of input order
        ordered = sorted(results, key=lambda r: (r.kind != ExtractionMethod.PATTERN, r.method))

        if len(ordered) == 1:
            return self._pass_through(ordered[0])

        arbitrated: List[ArbitratedField] = []
        final_fields: Dict[str, Any] = {}
        compared = 0
        coincidences = 0

        for name in CRITICAL_FIELDS:
            values = {r.method: r.fields.get(name) for r in ordered}
            if all(is_empty(v) for v in values.values()):
                final_fields[name] = None
                continue

            compared += 1
            normalized = {normalize(v) for v in values.values()}
            if len(normalized) == 1:
                coincidences += 1
                value = next(iter(values.values()))
                arbitrated.append(
                    ArbitratedField(
                        name=name,
                        values=values,
                        confidences={m: 100.0 for m in values},
                        coincidence=True,
                        final_value=value,
                        chosen_method=ordered[0].method,
                        confidence=100.0,
                    )
                )
                final_fields[name] = value
                continue

            chosen = self._resolve(name, ordered)
            arbitrated.append(chosen)
            final_fields[name] = chosen.final_value

        coincidence_rate = 100.0 if compared == 0 else round(coincidences * 100.0 / compared, 2)
        if arbitrated:
            overall_confidence = round(sum(f.confidence for f in arbitrated) / len(arbitrated), 2)
        else:
            overall_confidence = max(r.confidence for r in ordered)

        overall_requires_review = any(f.requires_review for f in arbitrated)
        if coincidence_rate < self.review_threshold:
            overall_requires_review = True
        if coincidence_rate < self.low_threshold:
            overall_confidence = min(overall_confidence, self.low_confidence_cap)

        if overall_requires_review:
            logger.warning(
                f"Arbitration needs review: coincidence {coincidence_rate}%, "
                f"fields {[f.name for f in arbitrated if f.requires_review]}"
            )
        else:
            logger.info(f"Arbitration coincidence {coincidence_rate}%, confidence {overall_confidence}")

        return ArbitrationResult(
            fields=final_fields,
            arbitrated_fields=arbitrated,
            coincidence_rate=coincidence_rate,
            overall_confidence=overall_confidence,
            overall_requires_review=overall_requires_review,
            methods=[r.method for r in ordered],
        )

    def _pass_through(self, result: ExtractionResult) -> ArbitrationResult:
        logger.info(f"Single extraction strategy '{result.method}', skipping comparison")
        return ArbitrationResult(
            fields={name: result.fields.get(name) for name in CRITICAL_FIELDS},
            coincidence_rate=None,
            overall_confidence=result.confidence,
            overall_requires_review=False,
            methods=[result.method],
        )

    def _resolve(self, name: str, results: Sequence[ExtractionResult]) -> ArbitratedField:
        """Pick the value with the strictly highest field confidence."""
        values = {r.method: r.fields.get(name) for r in results}
        confidences = {
            r.method: self.scoring.score(name, r.kind, r.fields.get(name)) for r in results
        }

        best = max(confidences.values())
        leaders = [r for r in results if confidences[r.method] == best]
        leader_values = {normalize(r.fields.get(name)) for r in leaders}

        requires_review = False
        if len(leaders) == 1:
            winner = leaders[0]
        else:
            # tie: vision wins by convention, lowest tag among several vision results
            vision = [r for r in leaders if r.kind == ExtractionMethod.VISION]
            winner = min(vision or leaders, key=lambda r: r.method)
            requires_review = len(leader_values) > 1

        return ArbitratedField(
            name=name,
            values=values,
            confidences=confidences,
            coincidence=False,
            final_value=winner.fields.get(name),
            chosen_method=winner.method,
            confidence=best,
            requires_review=requires_review,
        )
