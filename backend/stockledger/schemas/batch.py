"""Pydantic schemas for production batches."""

from datetime import date, datetime

from pydantic import BaseModel, Field

from stockledger.schemas.stock_movement import StockMovementOut


# ── Create (phase A) ────────────────────────────────────────

class DrumDraw(BaseModel):
    drum_id: str
    quantity: float = Field(..., gt=0)


class ConsumptionLine(BaseModel):
    """Either explicit drums, or a quantity drawn oldest drum first."""
    raw_material_id: str
    drums: list[DrumDraw] | None = None
    quantity: float | None = Field(None, gt=0)


class BatchCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    batch_date: date
    description: str | None = None
    consumption: list[ConsumptionLine] = Field(..., min_length=1)


class BatchUpdate(BaseModel):
    """Omitted fields stay as they are; consumption, when sent, replaces
    every line and is drawn again."""
    code: str | None = Field(None, min_length=1, max_length=50)
    batch_date: date | None = None
    description: str | None = None
    consumption: list[ConsumptionLine] | None = Field(None, min_length=1)


# ── Attach finished goods (phase B) ─────────────────────────

class ProductionLine(BaseModel):
    finished_good_id: str
    quantity: float = Field(..., gt=0)
    location_id: str | None = None


class AttachFinishedGoods(BaseModel):
    lines: list[ProductionLine] = Field(..., min_length=1)


# ── Output ──────────────────────────────────────────────────

class BatchUsageOut(BaseModel):
    id: str
    raw_material_id: str
    drum_id: str
    quantity: float

    model_config = {"from_attributes": True}


class BatchFinishedGoodOut(BaseModel):
    id: str
    finished_good_id: str
    location_id: str | None = None
    quantity: float

    model_config = {"from_attributes": True}


class BatchSummary(BaseModel):
    id: str
    code: str
    batch_date: datetime
    description: str | None = None
    status: str
    created_by: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BatchOut(BatchSummary):
    usages: list[BatchUsageOut] = []
    finished_goods: list[BatchFinishedGoodOut] = []


class BatchDetail(BatchOut):
    movements: list[StockMovementOut] = []
