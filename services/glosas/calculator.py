"""Glosa calculator - compares billed values against the contract tariff.

Stateless apart from the injected tariff repository.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, NamedTuple, Optional

from common.enums import GlosaType
from services.glosas.tariffs import TariffRepository
import logging

logger = logging.getLogger(__name__)

TARIFF_DIFFERENCE_CODE = "202"
MISSING_AUTHORIZATION_CODE = "203"


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    return Decimal(str(value))


def money(value: Decimal) -> Decimal:
    """Round to whole pesos, half up."""
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


@dataclass
class GlosaItem:
    """One deduction as it flows through the pipeline."""

    glosa_type: GlosaType
    reason_code: str
    procedure_code: Optional[str]
    procedure_description: Optional[str]
    billed_value: Decimal  # unit value billed
    contracted_value: Decimal
    difference: Decimal
    quantity: int
    total: Decimal
    justification: str
    automatic: bool = True
    default_policy: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "glosa_type": self.glosa_type.value,
            "reason_code": self.reason_code,
            "procedure_code": self.procedure_code,
            "procedure_description": self.procedure_description,
            "billed_value": float(self.billed_value),
            "contracted_value": float(self.contracted_value),
            "difference": float(self.difference),
            "quantity": self.quantity,
            "total": float(self.total),
            "justification": self.justification,
            "automatic": self.automatic,
            "default_policy": self.default_policy,
        }


class GlosaComputation(NamedTuple):
    """Outcome of a tariff comparison."""

    payable: Decimal
    total_glosa: Decimal
    glosas: List[GlosaItem]
    note: str


class GlosaTotals(NamedTuple):
    total: Decimal
    count: int
    by_type: Dict[str, Decimal]


class GlosaCalculator:
    """Computes tariff-difference and missing-authorization glosas."""

    def __init__(self, tariffs: TariffRepository, default_discount_percent: float = 30.0):
        self.tariffs = tariffs
        self.default_discount_percent = to_decimal(default_discount_percent)

    def compute(
        self,
        procedure_code: Optional[str],
        billed_value: Any,
        quantity: int = 1,
        procedure_name: Optional[str] = None,
    ) -> GlosaComputation:
        """
        Compare the billed unit value with the contracted tariff.

        payable and total_glosa cover the whole line (unit value times quantity).
        """
        billed = to_decimal(billed_value)
        quantity = max(int(quantity or 1), 1)
        billed_total = billed * quantity

        if billed_total <= 0:
            logger.warning(f"Billed value {billed} for procedure {procedure_code} is not positive, nothing to liquidate")
            return GlosaComputation(
                payable=Decimal(0),
                total_glosa=Decimal(0),
                glosas=[],
                note=f"Billed value {billed} is not positive; no charge to liquidate",
            )

        if not procedure_code:
            logger.warning("No procedure code on the invoice, tariff cannot be checked")
            return GlosaComputation(
                payable=billed_total,
                total_glosa=Decimal(0),
                glosas=[],
                note="No procedure code found to validate the tariff",
            )

        tariff = self.tariffs.lookup(procedure_code)
        if tariff is None:
            logger.warning(
                f"Procedure {procedure_code} not in tariff, applying "
                f"{self.default_discount_percent}% default discount"
            )
            unit_payable = money(billed * (Decimal(100) - self.default_discount_percent) / Decimal(100))
            difference = billed - unit_payable
            description = procedure_name or "Unspecified procedure"
            glosa = GlosaItem(
                glosa_type=GlosaType.TARIFF_DIFFERENCE,
                reason_code=TARIFF_DIFFERENCE_CODE,
                procedure_code=procedure_code,
                procedure_description=description,
                billed_value=billed,
                contracted_value=unit_payable,
                difference=difference,
                quantity=quantity,
                total=difference * quantity,
                justification=(
                    f"{TARIFF_DIFFERENCE_CODE} - {description} glosed for tariff difference "
                    f"(code not in tariff, default {self.default_discount_percent}% discount policy applied)"
                ),
                default_policy=True,
            )
            return GlosaComputation(
                payable=unit_payable * quantity,
                total_glosa=glosa.total,
                glosas=[glosa],
                note=f"Code {procedure_code} not found in tariff; default discount policy applied",
            )

        contracted = tariff.unit_price
        logger.info(f"Comparing tariff for {procedure_code}: billed {billed}, contracted {contracted}")

        if billed > contracted:
            difference = billed - contracted
            glosa = GlosaItem(
                glosa_type=GlosaType.TARIFF_DIFFERENCE,
                reason_code=TARIFF_DIFFERENCE_CODE,
                procedure_code=procedure_code,
                procedure_description=tariff.description,
                billed_value=billed,
                contracted_value=contracted,
                difference=difference,
                quantity=quantity,
                total=difference * quantity,
                justification=(
                    f"{TARIFF_DIFFERENCE_CODE} - {tariff.description} glosed for tariff difference. "
                    f"Billed {billed} but contract allows at most {contracted}"
                ),
            )
            return GlosaComputation(
                payable=contracted * quantity,
                total_glosa=glosa.total,
                glosas=[glosa],
                note=f"Tariff difference: billed {billed} vs contracted {contracted}",
            )

        return GlosaComputation(
            payable=billed_total,
            total_glosa=Decimal(0),
            glosas=[],
            note="Billed value within contract tariff",
        )

    def validate_authorization(
        self,
        procedure_code: Optional[str],
        procedure_name: Optional[str],
        billed_value: Any,
        quantity: int,
        authorization_number: Optional[str],
        required: bool = True,
    ) -> Optional[GlosaItem]:
        """Full-value glosa when authorization is required and absent."""
        if not required:
            return None
        if authorization_number and str(authorization_number).strip():
            return None

        billed = to_decimal(billed_value)
        quantity = max(int(quantity or 1), 1)
        return GlosaItem(
            glosa_type=GlosaType.MISSING_AUTHORIZATION,
            reason_code=MISSING_AUTHORIZATION_CODE,
            procedure_code=procedure_code,
            procedure_description=procedure_name,
            billed_value=billed,
            contracted_value=Decimal(0),
            difference=billed,
            quantity=quantity,
            total=billed * quantity,
            justification=(
                f"{MISSING_AUTHORIZATION_CODE} - {procedure_name or procedure_code} glosed for "
                f"missing payer authorization (automatic 100%)"
            ),
        )

    @staticmethod
    def totals(glosas: List[GlosaItem]) -> GlosaTotals:
        by_type: Dict[str, Decimal] = {}
        for glosa in glosas:
            key = glosa.glosa_type.value
            by_type[key] = by_type.get(key, Decimal(0)) + glosa.total
        return GlosaTotals(
            total=sum((g.total for g in glosas), Decimal(0)),
            count=len(glosas),
            by_type=by_type,
        )
