"""Pydantic schemas for raw materials, drums and finished goods."""

from datetime import datetime

from pydantic import BaseModel


class DrumOut(BaseModel):
    id: str
    label: str
    current_quantity: float
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class RawMaterialOut(BaseModel):
    id: str
    code: str
    name: str
    unit: str | None = None
    reorder_threshold: float
    current_stock: float
    below_reorder: bool = False
    drums: list[DrumOut] = []

    model_config = {"from_attributes": True}


class LocationStockOut(BaseModel):
    location_id: str
    location_name: str | None = None
    quantity: float


class FinishedGoodOut(BaseModel):
    id: str
    name: str
    unit: str | None = None
    current_stock: float
    unlocated_stock: float = 0
    locations: list[LocationStockOut] = []

    model_config = {"from_attributes": True}
