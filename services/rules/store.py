"""Rule storage: active rule loading and atomic statistics updates."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional
import threading

from sqlalchemy import update
from sqlalchemy.orm import Session

from services.claims.models import BillingRule
from services.rules.definitions import Rule, RuleInterpretationInvalid, parse_rule
import logging

logger = logging.getLogger(__name__)


def parse_rules(stored: Iterable[BillingRule]) -> List[Rule]:
    """Parse stored rules, skipping (and logging) unusable ones."""
    rules = []
    for billing_rule in stored:
        try:
            rules.append(parse_rule(billing_rule))
        except RuleInterpretationInvalid as e:
            logger.warning(f"Skipping rule {billing_rule.id} '{billing_rule.name}': {e}")
    return rules


class SqlRuleStore:
    """Rules persisted in billing_rules."""

    def __init__(self, db: Session):
        self.db = db

    def active_rules_sorted_by_priority(self) -> List[Rule]:
        stored = (
            self.db.query(BillingRule)
            .filter(BillingRule.active.is_(True))
            .order_by(BillingRule.priority.asc(), BillingRule.id.asc())
            .all()
        )
        return parse_rules(stored)

    def record_application(
        self, rule_id: int, affected_value: Decimal, glosas_avoided: int, applied_at: datetime
    ) -> None:
        """Single UPDATE so concurrent runs never lose an increment."""
        self.db.execute(
            update(BillingRule)
            .where(BillingRule.id == rule_id)
            .values(
                times_applied=BillingRule.times_applied + 1,
                total_value_affected=BillingRule.total_value_affected + affected_value,
                glosas_avoided=BillingRule.glosas_avoided + glosas_avoided,
                last_applied_at=applied_at,
            )
            .execution_options(synchronize_session=False)
        )


class InMemoryRuleStore:
    """Lock-guarded in-process store for running the engine without a database."""

    def __init__(self, rules: Optional[Iterable[Rule]] = None):
        self._rules = list(rules or [])
        self._lock = threading.Lock()
        self.statistics: Dict[int, Dict] = {}

    def add(self, rule: Rule) -> None:
        with self._lock:
            self._rules.append(rule)

    def active_rules_sorted_by_priority(self) -> List[Rule]:
        with self._lock:
            return sorted(self._rules, key=lambda r: (r.priority, r.id if r.id is not None else 0))

    def record_application(
        self, rule_id: int, affected_value: Decimal, glosas_avoided: int, applied_at: datetime
    ) -> None:
        with self._lock:
            stats = self.statistics.setdefault(
                rule_id,
                {"times_applied": 0, "total_value_affected": Decimal(0), "glosas_avoided": 0, "last_applied_at": None},
            )
            stats["times_applied"] += 1
            stats["total_value_affected"] += Decimal(str(affected_value))
            stats["glosas_avoided"] += glosas_avoided
            stats["last_applied_at"] = applied_at
