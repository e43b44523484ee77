"""Ledger consistency checks.

check_raw_material_consistency() runs inside every raw-material write and
aborts the transaction when the aggregate drifts from its drums.

audit_ledger() is a read-only sweep that recomputes every counter from
the movement ledger and reports what disagrees.  It never repairs
anything; fixing a discrepancy is a human decision.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.config import settings
from stockledger.middleware.exceptions import LedgerIntegrityError
from stockledger.models.finished_good import FinishedGood
from stockledger.models.raw_material import Drum, RawMaterial
from stockledger.models.stock_movement import MovementType, StockMovement

logger = logging.getLogger(__name__)


async def check_raw_material_consistency(db: AsyncSession, material: RawMaterial) -> None:
    """Raise LedgerIntegrityError if Σ drum quantities != current_stock."""
    drum_total = (
        await db.execute(
            select(func.coalesce(func.sum(Drum.current_quantity), 0.0))
            .where(Drum.raw_material_id == material.id)
        )
    ).scalar_one()
    difference = abs(float(drum_total) - material.current_stock)
    if difference > settings.stock_tolerance:
        logger.error(
            "Drum total %g != stock %g for %s",
            drum_total, material.current_stock, material.code,
        )
        raise LedgerIntegrityError(
            f"Stock for {material.code} ({material.current_stock:g}) does not match "
            f"its drums ({float(drum_total):g})",
            details={
                "raw_material_id": material.id,
                "current_stock": material.current_stock,
                "drum_total": float(drum_total),
            },
        )


@dataclass
class Discrepancy:
    check: str          # ledger_sum | drum_sum | location_sum | negative
    entity_type: str    # raw_material | drum | finished_good | finished_good_stock
    entity_id: str
    label: str
    expected: float
    actual: float

    def to_dict(self) -> dict:
        return asdict(self)


def _signed(kind: MovementType, quantity: float) -> float:
    return -quantity if kind == MovementType.OUT else quantity


def _differs(a: float, b: float) -> bool:
    return abs(a - b) > settings.stock_tolerance


async def audit_ledger(db: AsyncSession) -> list[Discrepancy]:
    """Compare every counter with the ledger replay."""
    by_material: dict[str, float] = defaultdict(float)
    by_drum: dict[str, float] = defaultdict(float)
    by_good: dict[str, float] = defaultdict(float)
    by_location: dict[tuple[str, str], float] = defaultdict(float)

    rows = await db.execute(
        select(
            StockMovement.kind, StockMovement.quantity,
            StockMovement.raw_material_id, StockMovement.finished_good_id,
            StockMovement.drum_id, StockMovement.location_id,
        )
    )
    for kind, quantity, material_id, good_id, drum_id, location_id in rows:
        delta = _signed(kind, quantity)
        if material_id:
            by_material[material_id] += delta
            if drum_id:
                by_drum[drum_id] += delta
        else:
            by_good[good_id] += delta
            if location_id:
                by_location[(good_id, location_id)] += delta

    found: list[Discrepancy] = []

    materials = (await db.execute(
        select(RawMaterial).order_by(RawMaterial.code)
        .execution_options(populate_existing=True)
    )).scalars().all()
    for material in materials:
        ledger = by_material.get(material.id, 0.0)
        if _differs(ledger, material.current_stock):
            found.append(Discrepancy(
                "ledger_sum", "raw_material", material.id, material.code,
                ledger, material.current_stock,
            ))
        drum_total = 0.0
        for drum in material.drums:
            drum_total += drum.current_quantity
            drum_ledger = by_drum.get(drum.id, 0.0)
            if _differs(drum_ledger, drum.current_quantity):
                found.append(Discrepancy(
                    "ledger_sum", "drum", drum.id, f"{material.code} drum {drum.label}",
                    drum_ledger, drum.current_quantity,
                ))
            if drum.current_quantity < -settings.stock_tolerance:
                found.append(Discrepancy(
                    "negative", "drum", drum.id, f"{material.code} drum {drum.label}",
                    0.0, drum.current_quantity,
                ))
        if _differs(drum_total, material.current_stock):
            found.append(Discrepancy(
                "drum_sum", "raw_material", material.id, material.code,
                material.current_stock, drum_total,
            ))
        if material.current_stock < -settings.stock_tolerance:
            found.append(Discrepancy(
                "negative", "raw_material", material.id, material.code,
                0.0, material.current_stock,
            ))

    goods = (await db.execute(
        select(FinishedGood).order_by(FinishedGood.name)
        .execution_options(populate_existing=True)
    )).scalars().all()
    for good in goods:
        ledger = by_good.get(good.id, 0.0)
        if _differs(ledger, good.current_stock):
            found.append(Discrepancy(
                "ledger_sum", "finished_good", good.id, good.name,
                ledger, good.current_stock,
            ))
        located = 0.0
        for stock in good.location_stocks:
            located += stock.quantity
            location_ledger = by_location.get((good.id, stock.location_id), 0.0)
            label = f"{good.name} at {stock.location.name}"
            if _differs(location_ledger, stock.quantity):
                found.append(Discrepancy(
                    "ledger_sum", "finished_good_stock", stock.id, label,
                    location_ledger, stock.quantity,
                ))
            if stock.quantity < -settings.stock_tolerance:
                found.append(Discrepancy(
                    "negative", "finished_good_stock", stock.id, label, 0.0, stock.quantity,
                ))
        if located - good.current_stock > settings.stock_tolerance:
            found.append(Discrepancy(
                "location_sum", "finished_good", good.id, good.name,
                good.current_stock, located,
            ))
        if good.current_stock < -settings.stock_tolerance:
            found.append(Discrepancy(
                "negative", "finished_good", good.id, good.name, 0.0, good.current_stock,
            ))

    if found:
        logger.warning("Ledger audit found %d discrepancy(ies)", len(found))
    else:
        logger.info("Ledger audit clean: %d material(s), %d good(s)", len(materials), len(goods))
    return found
