"""FastAPI routes for billing rule management."""

from datetime import datetime
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
from common.db import get_db
from common.enums import GlosaType
from services.claims.models import AppliedRuleRecord, BillingRule, value_bucket_for
from services.glosas.calculator import GlosaItem
from services.rules import schemas
from services.rules.definitions import (
    Rule,
    RuleInterpretationInvalid,
    parse_interpretation,
    parse_scope,
    resolve_field,
    to_number,
)
from services.rules.engine import RuleContext, RuleEngine
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["rules"])


def get_rule_or_404(db: Session, rule_id: int) -> BillingRule:
    rule = db.query(BillingRule).filter(BillingRule.id == rule_id).first()
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return rule


def check_structure(scope_kind: str, scope_value: Optional[str], interpretation: Optional[dict]):
    """Reject rules the engine could never evaluate."""
    try:
        parse_scope(scope_kind, scope_value)
        if interpretation is not None:
            parse_interpretation(interpretation)
    except RuleInterpretationInvalid as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/", response_model=schemas.RuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule(rule: schemas.RuleCreate, db: Session = Depends(get_db)):
    """Create a billing rule."""
    interpretation = rule.interpretation.model_dump() if rule.interpretation else None
    check_structure(rule.scope_kind, rule.scope_value, interpretation)

    db_rule = BillingRule(
        name=rule.name,
        description=rule.description,
        rule_type=rule.rule_type.value,
        active=rule.active,
        priority=rule.priority,
        scope_kind=rule.scope_kind,
        scope_value=rule.scope_value,
        interpretation=interpretation,
        interpretation_confidence=rule.interpretation_confidence,
        interpreted_by=rule.interpreted_by,
        interpreted_at=datetime.utcnow() if interpretation else None,
        created_by=rule.created_by,
    )
    db.add(db_rule)
    db.commit()
    db.refresh(db_rule)
    logger.info(f"Rule {db_rule.id} '{db_rule.name}' created by {db_rule.created_by}")
    return db_rule


@router.get("/", response_model=List[schemas.RuleResponse])
def list_rules(active: Optional[bool] = None, db: Session = Depends(get_db)):
    """List rules in evaluation order."""
    query = db.query(BillingRule)
    if active is not None:
        query = query.filter(BillingRule.active.is_(active))
    return query.order_by(BillingRule.priority.asc(), BillingRule.id.asc()).all()


@router.post("/preview", response_model=schemas.RulePreviewResponse)
def preview_rule(request: schemas.RulePreviewRequest):
    """Evaluate a rule against a sample context. No statistics are recorded."""
    interpretation = request.interpretation.model_dump()
    try:
        conditions, action, params = parse_interpretation(interpretation)
        scope_kind, scope_value = parse_scope(request.scope_kind, request.scope_value)
        context_values = {resolve_field(k): v for k, v in request.context.items()}
    except RuleInterpretationInvalid as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    for name in ("value", "billed_value", "contracted_value"):
        if name in context_values:
            context_values[name] = to_number(context_values[name])
    if "value_bucket" not in context_values:
        context_values["value_bucket"] = value_bucket_for(to_number(context_values.get("value")))
    context = RuleContext(**context_values)

    rule = Rule(
        id=None,
        name=request.name,
        priority=request.priority,
        scope_kind=scope_kind,
        scope_value=scope_value,
        conditions=conditions,
        action=action,
        parameters=params,
    )
    glosas = [
        GlosaItem(
            glosa_type=GlosaType(g.glosa_type),
            reason_code="",
            procedure_code=g.procedure_code,
            procedure_description=None,
            billed_value=Decimal(str(g.total)),
            contracted_value=Decimal(0),
            difference=Decimal(str(g.total)),
            quantity=1,
            total=Decimal(str(g.total)),
            justification="preview",
        )
        for g in request.glosas
    ]

    evaluation = RuleEngine().evaluate(context, [rule], glosas, record_statistics=False)
    return schemas.RulePreviewResponse(
        applies=bool(evaluation.applied_rules),
        applied_rules=[
            {"rule_name": r.rule_name, "action": r.action, "affected_value": float(r.affected_value)}
            for r in evaluation.applied_rules
        ],
        remaining_glosas=[
            {"procedure_code": g.procedure_code, "total": float(g.total), "glosa_type": g.glosa_type.value}
            for g in evaluation.filtered_glosas
        ],
        validation_skips=sorted(evaluation.validation_skips),
        value_adjustments=[
            {
                "original_value": float(a.original_value),
                "adjusted_value": float(a.adjusted_value),
                "rationale": a.rationale,
            }
            for a in evaluation.value_adjustments
        ],
        messages=evaluation.messages,
    )


@router.get("/{rule_id}", response_model=schemas.RuleResponse)
def get_rule(rule_id: int, db: Session = Depends(get_db)):
    """Get a single rule by ID."""
    return get_rule_or_404(db, rule_id)


@router.patch("/{rule_id}", response_model=schemas.RuleResponse)
def update_rule(rule_id: int, rule_update: schemas.RuleUpdate, db: Session = Depends(get_db)):
    """Update rule definition fields."""
    rule = get_rule_or_404(db, rule_id)

    update_data = rule_update.model_dump(exclude_unset=True)
    if "interpretation" in update_data and update_data["interpretation"] is not None:
        update_data["interpretation"] = rule_update.interpretation.model_dump()
        update_data["interpreted_at"] = datetime.utcnow()

    check_structure(
        update_data.get("scope_kind", rule.scope_kind),
        update_data.get("scope_value", rule.scope_value),
        update_data.get("interpretation", rule.interpretation),
    )

    for field, value in update_data.items():
        if field == "rule_type" and value is not None:
            value = value.value
        setattr(rule, field, value)

    db.commit()
    db.refresh(rule)
    return rule


@router.patch("/{rule_id}/toggle", response_model=schemas.RuleResponse)
def toggle_rule(rule_id: int, db: Session = Depends(get_db)):
    """Flip a rule between active and inactive."""
    rule = get_rule_or_404(db, rule_id)
    rule.active = not rule.active
    db.commit()
    db.refresh(rule)
    logger.info(f"Rule {rule.id} {'activated' if rule.active else 'deactivated'}")
    return rule


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    """Delete a rule; past applications keep their name but lose the link."""
    rule = get_rule_or_404(db, rule_id)
    db.query(AppliedRuleRecord).filter(AppliedRuleRecord.rule_id == rule_id).update(
        {AppliedRuleRecord.rule_id: None}, synchronize_session=False
    )
    db.delete(rule)
    db.commit()
    logger.info(f"Rule {rule_id} deleted")
