"""FastAPI routes for the contract tariff table."""

from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List
from common.db import get_db
from services.claims.models import TariffItem
from services.glosas import schemas
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tariffs", tags=["tariffs"])


@router.get("/", response_model=List[schemas.TariffResponse])
def list_tariffs(db: Session = Depends(get_db)):
    """List contracted prices ordered by procedure code."""
    return db.query(TariffItem).order_by(TariffItem.procedure_code).all()


@router.get("/{procedure_code}", response_model=schemas.TariffResponse)
def get_tariff(procedure_code: str, db: Session = Depends(get_db)):
    item = db.query(TariffItem).filter(TariffItem.procedure_code == procedure_code.strip()).first()
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tariff not found")
    return item


@router.put("/{procedure_code}", response_model=schemas.TariffResponse)
def upsert_tariff(procedure_code: str, tariff: schemas.TariffUpsert, db: Session = Depends(get_db)):
    """Create or replace the contracted price for a procedure code."""
    code = procedure_code.strip()
    item = db.query(TariffItem).filter(TariffItem.procedure_code == code).first()
    if item is None:
        item = TariffItem(procedure_code=code)
        db.add(item)

    item.unit_price = Decimal(str(tariff.unit_price))
    item.description = tariff.description
    item.payer_name = tariff.payer_name
    db.commit()
    db.refresh(item)
    logger.info(f"Tariff {code} set to {item.unit_price}")
    return item
