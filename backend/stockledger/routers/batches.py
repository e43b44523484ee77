"""Production batch router.

Endpoints:
    POST   /api/batches                       Create batch, consume drums
    GET    /api/batches                       Paginated batch list
    GET    /api/batches/{id}                  Batch with usages, outputs, movements
    PATCH  /api/batches/{id}                  Edit code, date, description or consumption
    POST   /api/batches/{id}/finished-goods   Attach outputs (once)
    DELETE /api/batches/{id}                  Reverse and remove a batch
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.database import get_db
from stockledger.deps import get_actor
from stockledger.routers.stock_movements import movement_out
from stockledger.schemas.batch import (
    AttachFinishedGoods,
    BatchCreate,
    BatchDetail,
    BatchOut,
    BatchSummary,
    BatchUpdate,
)
from stockledger.schemas.common import PaginatedResponse
from stockledger.services import batch_production

router = APIRouter()


@router.post("", response_model=BatchOut, status_code=201)
async def create_batch(
    body: BatchCreate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    """Create a batch; every consumption line succeeds or none does."""
    return await batch_production.create_batch(db, body, actor=actor)


@router.get("", response_model=PaginatedResponse[BatchSummary])
async def list_batches(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    batches, total = await batch_production.list_batches(db, limit=limit, offset=offset)
    return PaginatedResponse[BatchSummary](
        items=[BatchSummary.model_validate(b) for b in batches],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{batch_id}", response_model=BatchDetail)
async def get_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    batch, movements = await batch_production.get_batch(db, batch_id)
    detail = BatchDetail.model_validate(batch)
    detail.movements = [movement_out(m) for m in movements]
    return detail


@router.patch("/{batch_id}", response_model=BatchOut)
async def update_batch(
    batch_id: str,
    body: BatchUpdate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    """New consumption or a new date re-plans the batch in one transaction."""
    return await batch_production.update_batch(db, batch_id, body, actor=actor)


@router.post("/{batch_id}/finished-goods", response_model=BatchOut)
async def attach_finished_goods(
    batch_id: str,
    body: AttachFinishedGoods,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return await batch_production.attach_finished_goods(db, batch_id, body, actor=actor)


@router.delete("/{batch_id}", status_code=204)
async def delete_batch(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    await batch_production.delete_batch(db, batch_id, actor=actor)
