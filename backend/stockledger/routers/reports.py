"""Stock report router.

Endpoints:
    GET /api/reports/stock              Daily table for one month
    GET /api/reports/available-years   Years that have movements
    GET /api/reports/available-dates   Months that have movements, by year
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.database import get_db
from stockledger.schemas.report import (
    AvailableDates,
    AvailableYears,
    ReportMetric,
    StockReport,
    YearMonths,
)
from stockledger.services.item_ref import ItemType
from stockledger.services.stock_report import (
    available_report_dates,
    available_report_years,
    reconstruct_report,
)

router = APIRouter()


@router.get("/stock", response_model=StockReport)
async def stock_report(
    year: int = Query(...),
    month: int = Query(...),
    item_type: ItemType = Query(..., alias="type"),
    metric: ReportMetric = Query(..., alias="dataType"),
    location_id: str | None = Query(None, alias="locationId"),
    db: AsyncSession = Depends(get_db),
):
    """Read-only; replays the ledger on every call."""
    return await reconstruct_report(
        db,
        year=year,
        month=month,
        item_type=item_type,
        metric=metric,
        location_id=location_id,
    )


@router.get("/available-years", response_model=AvailableYears)
async def report_years(
    item_type: ItemType = Query(..., alias="type"),
    db: AsyncSession = Depends(get_db),
):
    years = await available_report_years(db, item_type)
    return AvailableYears(item_type=item_type, years=years)


@router.get("/available-dates", response_model=AvailableDates)
async def report_dates(
    item_type: ItemType | None = Query(None, alias="type"),
    db: AsyncSession = Depends(get_db),
):
    """Months that have movements, grouped by year; all items when no type is given."""
    dates = await available_report_dates(db, item_type)
    return AvailableDates(
        item_type=item_type,
        dates=[YearMonths(year=year, months=months) for year, months in dates],
    )
