"""Pydantic schemas for billing rules API."""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Any, Dict, List, Optional
from common.enums import RuleType


class RuleCondition(BaseModel):
    field: str = Field(..., min_length=1)
    operator: str = Field(..., min_length=1)
    value: Any = None
    upper: Any = None  # upper bound for between


class RuleAction(BaseModel):
    type: str = Field(..., min_length=1)
    parameters: Dict[str, Any] = {}


class RuleInterpretation(BaseModel):
    """Structured form of a natural-language rule."""

    conditions: List[RuleCondition]
    action: RuleAction


class RuleCreate(BaseModel):
    """Schema for creating a billing rule."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    rule_type: RuleType = RuleType.GENERAL
    priority: int = Field(100, ge=0)
    scope_kind: str = "global"
    scope_value: Optional[str] = None
    interpretation: Optional[RuleInterpretation] = None
    interpretation_confidence: Optional[float] = Field(None, ge=0, le=100)
    interpreted_by: Optional[str] = None
    active: bool = True
    created_by: str = Field(..., min_length=1)


class RuleUpdate(BaseModel):
    """Schema for updating a billing rule. Statistics are never updated here."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    rule_type: Optional[RuleType] = None
    priority: Optional[int] = Field(None, ge=0)
    scope_kind: Optional[str] = None
    scope_value: Optional[str] = None
    interpretation: Optional[RuleInterpretation] = None
    interpretation_confidence: Optional[float] = Field(None, ge=0, le=100)
    interpreted_by: Optional[str] = None
    active: Optional[bool] = None
    updated_by: str = Field(..., min_length=1)


class RuleResponse(BaseModel):
    id: int
    name: str
    description: str
    rule_type: str
    active: bool
    priority: int
    scope_kind: str
    scope_value: Optional[str]
    interpretation: Optional[dict]
    interpretation_confidence: Optional[float]
    interpreted_by: Optional[str]
    interpreted_at: Optional[datetime]
    times_applied: int
    last_applied_at: Optional[datetime]
    total_value_affected: float
    glosas_avoided: int
    created_by: str
    updated_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PreviewGlosa(BaseModel):
    procedure_code: Optional[str] = None
    total: float = Field(..., ge=0)
    glosa_type: str = "TARIFF_DIFFERENCE"


class RulePreviewRequest(BaseModel):
    """Evaluate one rule against a sample context without touching statistics."""

    name: str = "preview"
    priority: int = 100
    scope_kind: str = "global"
    scope_value: Optional[str] = None
    interpretation: RuleInterpretation
    context: Dict[str, Any] = {}
    glosas: List[PreviewGlosa] = []


class RulePreviewResponse(BaseModel):
    applies: bool
    applied_rules: List[dict]
    remaining_glosas: List[dict]
    validation_skips: List[str]
    value_adjustments: List[dict]
    messages: List[str]
