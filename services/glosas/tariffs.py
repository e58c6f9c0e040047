"""Tariff (tarifario) lookups by procedure code."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from services.claims.models import TariffItem
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TariffEntry:
    """Contracted unit price for one procedure code."""

    code: str
    unit_price: Decimal
    description: Optional[str] = None


class TariffRepository(Protocol):
    def lookup(self, procedure_code: str) -> Optional[TariffEntry]:
        ...


# Contract tariff used to seed an empty database
CONTRACT_TARIFF = (
    ("890201", "25000", "CONSULTA DE PRIMERA VEZ POR MEDICINA GENERAL"),
    ("890281", "12510", "CONSULTA DE PRIMERA VEZ POR ESPECIALISTA EN ORTOPEDIA"),
    ("890202", "38000", "CONSULTA DE PRIMERA VEZ POR MEDICINA ESPECIALIZADA"),
    ("890301", "20000", "CONSULTA DE CONTROL O SEGUIMIENTO MEDICINA GENERAL"),
    ("890381", "10000", "CONSULTA DE CONTROL O SEGUIMIENTO ESPECIALISTA"),
    ("891201", "45000", "CONSULTA DE URGENCIAS MEDICINA GENERAL"),
    ("871101", "85000", "RADIOGRAFIA DE TORAX"),
    ("871411", "120000", "RADIOGRAFIA DE CADERA"),
    ("873411", "95000", "RADIOGRAFIA DE CADERA O ARTICULACION COXO FEMORAL (AP LATERAL)"),
    ("873412", "110000", "RADIOGRAFIA DE CADERA COMPARATIVA"),
    ("902209", "15000", "TOMA DE MUESTRA DE LABORATORIO CLINICO"),
    ("902210", "8500", "HEMOGRAMA"),
    ("902211", "6500", "GLUCEMIA"),
    ("902212", "9500", "CREATININA"),
)


class InMemoryTariffRepository:
    """Dict-backed tariff table, mainly for tests and previews."""

    def __init__(self, entries: Optional[Iterable] = None):
        self._entries: Dict[str, TariffEntry] = {}
        for code, price, description in (CONTRACT_TARIFF if entries is None else entries):
            self._entries[str(code)] = TariffEntry(str(code), Decimal(str(price)), description)

    def lookup(self, procedure_code: str) -> Optional[TariffEntry]:
        return self._entries.get(str(procedure_code).strip())


class SqlTariffRepository:
    """Tariff table stored in tariff_items."""

    def __init__(self, db: Session):
        self.db = db

    def lookup(self, procedure_code: str) -> Optional[TariffEntry]:
        item = (
            self.db.query(TariffItem)
            .filter(TariffItem.procedure_code == str(procedure_code).strip())
            .first()
        )
        if not item:
            return None
        return TariffEntry(item.procedure_code, Decimal(str(item.unit_price)), item.description)


def seed_tariffs(db: Session, payer_name: str = "NUEVA EPS") -> int:
    """Insert the contract tariff when the table is empty. Returns rows added."""
    if db.query(TariffItem).first():
        return 0
    for code, price, description in CONTRACT_TARIFF:
        db.add(
            TariffItem(
                procedure_code=code,
                unit_price=Decimal(price),
                description=description,
                payer_name=payer_name,
            )
        )
    db.commit()
    logger.info(f"Seeded {len(CONTRACT_TARIFF)} tariff items for {payer_name}")
    return len(CONTRACT_TARIFF)
