"""Finished good read endpoints.

Endpoints:
    GET /api/finished-goods/{id}             Stock per location + unlocated pool
    GET /api/finished-goods/{id}/movements   Paginated movement history
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.database import get_db
from stockledger.middleware.exceptions import ResourceNotFoundError
from stockledger.models.finished_good import FinishedGood
from stockledger.models.stock_movement import StockMovement
from stockledger.routers.stock_movements import movement_out
from stockledger.schemas.common import PaginatedResponse
from stockledger.schemas.inventory import FinishedGoodOut, LocationStockOut
from stockledger.schemas.stock_movement import StockMovementOut

router = APIRouter()


@router.get("/{finished_good_id}", response_model=FinishedGoodOut)
async def get_finished_good(finished_good_id: str, db: AsyncSession = Depends(get_db)):
    good = (
        await db.execute(
            select(FinishedGood)
            .where(FinishedGood.id == finished_good_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if good is None:
        raise ResourceNotFoundError("Finished good", finished_good_id)

    locations = [
        LocationStockOut(
            location_id=s.location_id,
            location_name=s.location.name if s.location else None,
            quantity=s.quantity,
        )
        for s in good.location_stocks
    ]
    return FinishedGoodOut(
        id=good.id,
        name=good.name,
        unit=good.unit,
        current_stock=good.current_stock,
        unlocated_stock=round(good.current_stock - sum(l.quantity for l in locations), 6),
        locations=locations,
    )


@router.get("/{finished_good_id}/movements", response_model=PaginatedResponse[StockMovementOut])
async def finished_good_movements(
    finished_good_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    if await db.get(FinishedGood, finished_good_id) is None:
        raise ResourceNotFoundError("Finished good", finished_good_id)

    where = StockMovement.finished_good_id == finished_good_id
    total = (await db.execute(select(func.count(StockMovement.id)).where(where))).scalar() or 0
    movements = (
        await db.execute(
            select(StockMovement)
            .where(where)
            .order_by(StockMovement.movement_date.desc(), StockMovement.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return PaginatedResponse[StockMovementOut](
        items=[movement_out(m) for m in movements],
        total=total,
        limit=limit,
        offset=offset,
    )
