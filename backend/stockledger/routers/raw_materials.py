"""Raw material read endpoints.

Raw materials are created and renamed elsewhere; this service only
reports their stock.

Endpoints:
    GET /api/raw-materials/{id}             Stock, drums, reorder flag
    GET /api/raw-materials/{id}/movements   Paginated movement history
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.database import get_db
from stockledger.middleware.exceptions import ResourceNotFoundError
from stockledger.models.raw_material import RawMaterial
from stockledger.models.stock_movement import StockMovement
from stockledger.routers.stock_movements import movement_out
from stockledger.schemas.common import PaginatedResponse
from stockledger.schemas.inventory import RawMaterialOut
from stockledger.schemas.stock_movement import StockMovementOut

router = APIRouter()


@router.get("/{raw_material_id}", response_model=RawMaterialOut)
async def get_raw_material(raw_material_id: str, db: AsyncSession = Depends(get_db)):
    material = (
        await db.execute(
            select(RawMaterial)
            .where(RawMaterial.id == raw_material_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if material is None:
        raise ResourceNotFoundError("Raw material", raw_material_id)

    out = RawMaterialOut.model_validate(material)
    out.below_reorder = material.current_stock <= material.reorder_threshold
    return out


@router.get("/{raw_material_id}/movements", response_model=PaginatedResponse[StockMovementOut])
async def raw_material_movements(
    raw_material_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    if await db.get(RawMaterial, raw_material_id) is None:
        raise ResourceNotFoundError("Raw material", raw_material_id)

    where = StockMovement.raw_material_id == raw_material_id
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
