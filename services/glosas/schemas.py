"""Pydantic schemas for tariff API."""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Optional


class TariffUpsert(BaseModel):
    unit_price: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=300)
    payer_name: Optional[str] = Field(None, max_length=100)


class TariffResponse(BaseModel):
    id: int
    procedure_code: str
    unit_price: float
    description: Optional[str]
    payer_name: Optional[str]
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
