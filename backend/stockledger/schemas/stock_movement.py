"""Pydantic schemas for stock movements."""

from datetime import date, datetime

from pydantic import BaseModel, Field

from stockledger.models.stock_movement import MovementType
from stockledger.services.item_ref import ItemType


# ── Apply ───────────────────────────────────────────────────

class MovementCreate(BaseModel):
    """IN / OUT with a positive quantity, ADJUSTMENT with a signed
    quantity or an absolute target_level."""
    kind: MovementType
    item_type: ItemType
    item_id: str
    movement_date: date
    quantity: float | None = None
    target_level: float | None = None
    drum_id: str | None = None
    location_id: str | None = None
    description: str | None = None


class MovementUpdate(BaseModel):
    quantity: float | None = None
    movement_date: date | None = None
    description: str | None = None
    location_id: str | None = None


# ── Day cell ────────────────────────────────────────────────

class DayTotalSet(BaseModel):
    item_type: ItemType
    item_id: str
    day: date
    kind: MovementType
    quantity: float = Field(..., ge=0)
    drum_id: str | None = None
    location_id: str | None = None
    description: str | None = None


# ── Drum stock-in ───────────────────────────────────────────

class DrumIntake(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    quantity: float = Field(..., gt=0)


class DrumStockInRequest(BaseModel):
    raw_material_id: str
    movement_date: date
    description: str | None = None
    drums: list[DrumIntake] = Field(..., min_length=1)


# ── Output ──────────────────────────────────────────────────

class StockMovementOut(BaseModel):
    id: str
    kind: MovementType
    quantity: float
    movement_date: datetime
    day: date | None = None  # calendar day in the report timezone
    description: str | None = None
    raw_material_id: str | None = None
    finished_good_id: str | None = None
    drum_id: str | None = None
    location_id: str | None = None
    batch_id: str | None = None
    created_by: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class MovementResultOut(BaseModel):
    movement: StockMovementOut | None = None
    item_stock: float
    sub_stock: float | None = None


class DayTotalClearOut(BaseModel):
    removed: int


class DiscrepancyOut(BaseModel):
    check: str
    entity_type: str
    entity_id: str
    label: str
    expected: float
    actual: float


class LedgerAuditOut(BaseModel):
    consistent: bool
    discrepancies: list[DiscrepancyOut]
