"""Stock movement router.

Endpoints:
    PUT    /api/stock-movements/by-date      Set a day's IN or OUT total
    DELETE /api/stock-movements/by-date      Clear a day's IN or OUT total
    GET    /api/stock-movements/by-date      Movements of one item on one day
    POST   /api/stock-movements/drum-in      Receive stock into new drums
    GET    /api/stock-movements/audit        Read-only ledger audit
    GET    /api/stock-movements              Filtered, paginated ledger rows
    POST   /api/stock-movements              Apply IN / OUT / ADJUSTMENT
    PATCH  /api/stock-movements/{id}         Edit a direct movement
    DELETE /api/stock-movements/{id}         Reverse and remove a direct movement
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.database import get_db
from stockledger.deps import get_actor
from stockledger.models.stock_movement import MovementType, StockMovement
from stockledger.schemas.common import PaginatedResponse
from stockledger.schemas.stock_movement import (
    DayTotalClearOut,
    DayTotalSet,
    DiscrepancyOut,
    DrumStockInRequest,
    LedgerAuditOut,
    MovementCreate,
    MovementResultOut,
    MovementUpdate,
    StockMovementOut,
)
from stockledger.services import stock_ledger
from stockledger.services.consistency import audit_ledger
from stockledger.services.item_ref import ItemType, item_ref
from stockledger.utils.timezone import to_local_day

router = APIRouter()


# ── Helpers ──────────────────────────────────────────────────

def movement_out(movement: StockMovement) -> StockMovementOut:
    out = StockMovementOut.model_validate(movement)
    out.day = to_local_day(movement.movement_date)
    return out


def _result_out(result: stock_ledger.MovementResult) -> MovementResultOut:
    return MovementResultOut(
        movement=movement_out(result.movement) if result.movement else None,
        item_stock=result.item_stock,
        sub_stock=result.sub_stock,
    )


# ── Day cell ────────────────────────────────────────────────

@router.put("/by-date", response_model=MovementResultOut)
async def set_day_total(
    body: DayTotalSet,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    """Replace the direct IN or OUT total of one item on one day."""
    result = await stock_ledger.apply_movements_by_date(
        db,
        item=item_ref(body.item_type, body.item_id),
        day=body.day,
        kind=body.kind,
        quantity=body.quantity,
        drum_id=body.drum_id,
        location_id=body.location_id,
        description=body.description,
        actor=actor,
    )
    return _result_out(result)


@router.delete("/by-date", response_model=DayTotalClearOut)
async def clear_day_total(
    item_type: ItemType = Query(...),
    item_id: str = Query(...),
    day: date = Query(...),
    kind: MovementType = Query(...),
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    removed = await stock_ledger.delete_movements_by_date(
        db, item=item_ref(item_type, item_id), day=day, kind=kind, actor=actor,
    )
    return DayTotalClearOut(removed=removed)


@router.get("/by-date", response_model=list[StockMovementOut])
async def list_day_movements(
    item_type: ItemType = Query(...),
    item_id: str = Query(...),
    day: date = Query(...),
    kind: MovementType | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """All movements of one item on one day, batch-generated ones included."""
    movements = await stock_ledger.movements_on_day(
        db, item_ref(item_type, item_id), day, kind, include_batch=True,
    )
    return [movement_out(m) for m in movements]


# ── Drum stock-in ───────────────────────────────────────────

@router.post("/drum-in", response_model=list[StockMovementOut], status_code=201)
async def receive_drums(
    body: DrumStockInRequest,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    movements = await stock_ledger.drum_stock_in(
        db,
        raw_material_id=body.raw_material_id,
        movement_date=body.movement_date,
        drums=[(d.label, d.quantity) for d in body.drums],
        description=body.description,
        actor=actor,
    )
    return [movement_out(m) for m in movements]


# ── Audit ───────────────────────────────────────────────────

@router.get("/audit", response_model=LedgerAuditOut)
async def audit_stock(db: AsyncSession = Depends(get_db)):
    """Recompute every counter from the ledger; never writes."""
    found = await audit_ledger(db)
    return LedgerAuditOut(
        consistent=not found,
        discrepancies=[DiscrepancyOut(**d.to_dict()) for d in found],
    )


# ── Single movement ─────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[StockMovementOut])
async def list_movements(
    item_type: ItemType | None = Query(None),
    item_id: str | None = Query(None),
    kind: MovementType | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    batch_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Ledger rows, newest first; the date range is in local calendar days."""
    movements, total = await stock_ledger.list_movements(
        db,
        item_type=item_type,
        item_id=item_id,
        kind=kind,
        date_from=date_from,
        date_to=date_to,
        batch_id=batch_id,
        limit=limit,
        offset=offset,
    )
    return PaginatedResponse[StockMovementOut](
        items=[movement_out(m) for m in movements],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=MovementResultOut, status_code=201)
async def create_movement(
    body: MovementCreate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    result = await stock_ledger.apply_movement(
        db,
        kind=body.kind,
        item=item_ref(body.item_type, body.item_id),
        movement_date=body.movement_date,
        quantity=body.quantity,
        target_level=body.target_level,
        drum_id=body.drum_id,
        location_id=body.location_id,
        description=body.description,
        actor=actor,
    )
    return _result_out(result)


@router.patch("/{movement_id}", response_model=MovementResultOut)
async def edit_movement(
    movement_id: str,
    body: MovementUpdate,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    result = await stock_ledger.update_movement(
        db, movement_id, body.model_dump(exclude_unset=True), actor=actor,
    )
    return _result_out(result)


@router.delete("/{movement_id}", response_model=MovementResultOut)
async def remove_movement(
    movement_id: str,
    db: AsyncSession = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    result = await stock_ledger.delete_movement(db, movement_id, actor=actor)
    return _result_out(result)
