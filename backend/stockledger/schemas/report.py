"""Pydantic schemas for the daily stock report."""

import enum

from pydantic import BaseModel

from stockledger.services.item_ref import ItemType


class ReportMetric(str, enum.Enum):
    OPENING = "stok-awal"     # balance before the day
    IN = "stok-masuk"         # IN + positive adjustments
    OUT = "stok-keluar"       # OUT + |negative adjustments|
    CLOSING = "stok-sisa"     # balance after the day


class ReportCell(BaseModel):
    day: int
    value: float
    has_adjustment: bool = False


class ReportRow(BaseModel):
    item_id: str
    code: str | None = None
    name: str
    unit: str | None = None
    opening_stock: float
    days: list[ReportCell]


class ReportMeta(BaseModel):
    year: int
    month: int
    item_type: ItemType
    metric: ReportMetric
    location_id: str | None = None
    days_in_month: int
    current_day: int


class StockReport(BaseModel):
    meta: ReportMeta
    rows: list[ReportRow]


class AvailableYears(BaseModel):
    item_type: ItemType
    years: list[int]


class YearMonths(BaseModel):
    year: int
    months: list[int]


class AvailableDates(BaseModel):
    item_type: ItemType | None = None
    dates: list[YearMonths]
