"""Liquidation report artifacts."""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Protocol
import json

from services.claims.models import Claim
from services.liquidation.errors import ReportGenerationError
import logging

logger = logging.getLogger(__name__)


class ReportGenerator(Protocol):
    def render(self, claim: Claim, glosas: List[Dict[str, Any]], totals: Dict[str, Any]) -> str:
        ...


class JsonReportGenerator:
    """Writes a JSON liquidation summary per claim and returns its path."""

    def __init__(self, report_dir: str = "reports"):
        self.report_dir = Path(report_dir)

    def render(self, claim: Claim, glosas: List[Dict[str, Any]], totals: Dict[str, Any]) -> str:
        report = {
            "claim_number": claim.claim_number,
            "provider_tax_id": claim.provider_tax_id,
            "payer_name": claim.payer_name,
            "status": claim.status,
            "value_bucket": claim.value_bucket,
            "care_type": claim.care_type,
            "procedure_code": claim.procedure_code,
            "procedure_name": claim.procedure_name,
            "glosas": glosas,
            "applied_rules": [
                {"rule_id": r.rule_id, "rule_name": r.rule_name, "action": r.action}
                for r in claim.applied_rules
            ],
            "totals": totals,
            "generated_at": datetime.utcnow().isoformat(),
        }

        path = self.report_dir / f"liquidation_{claim.claim_number}.json"
        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            # write to a temp file first so a failed write never leaves a partial report
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise ReportGenerationError(f"Could not write report for {claim.claim_number}: {e}") from e

        logger.info(f"Report generated for claim {claim.claim_number}: {path}")
        return str(path)
