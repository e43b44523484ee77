"""Batch production transaction.

Phase A (create_batch) consumes raw material from drums: one BatchUsage
and one OUT movement per drum, every line checked before anything is
written.  Phase B (attach_finished_goods) credits the batch's outputs once,
as IN movements dated on the batch date, and completes the batch.
update_batch() edits a batch; a new date or new consumption replaces its
movements in one plan.  delete_batch() reverses every movement the batch
generated and removes it.

Each phase is one transaction owned by the caller.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.middleware.exceptions import (
    AlreadyAttachedError,
    DuplicateReferenceError,
    InsufficientStockError,
    ResourceNotFoundError,
    StockValidationError,
)
from stockledger.models.batch import (
    BATCH_COMPLETED,
    BATCH_IN_PROGRESS,
    Batch,
    BatchFinishedGood,
    BatchUsage,
)
from stockledger.models.raw_material import Drum, RawMaterial
from stockledger.models.stock_movement import MovementType, StockMovement
from stockledger.schemas.batch import (
    AttachFinishedGoods,
    BatchCreate,
    BatchUpdate,
    ConsumptionLine,
)
from stockledger.services.item_ref import FinishedGoodRef, RawMaterialRef, ref_of
from stockledger.services.stock_ledger import (
    EPSILON,
    MovementDraft,
    PostingPlan,
    movement_lock_keys,
    prepare_movements,
    reverse_movements,
)
from stockledger.utils.activity import log_activity
from stockledger.utils.locks import (
    LockKey,
    acquire_row_locks,
    batch_key,
    drum_key,
    raw_material_key,
    reread_for_update,
)
from stockledger.utils.timezone import normalize_movement_date, to_local_day

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────

async def _load_batch(db: AsyncSession, batch_id: str, *, for_update: bool = False) -> Batch:
    stmt = select(Batch).where(Batch.id == batch_id)
    if for_update:
        rows = await reread_for_update(db, stmt)
    else:
        rows = (
            await db.execute(stmt.execution_options(populate_existing=True))
        ).scalars().all()
    if not rows:
        raise ResourceNotFoundError("Batch", batch_id)
    return rows[0]


def _check_code(code: str | None) -> str:
    if not code or not code.strip():
        raise StockValidationError("Batch code is required")
    return code.strip()


def _check_lines(lines: list[ConsumptionLine]) -> None:
    if not lines:
        raise StockValidationError("A batch must consume at least one raw material")

    materials: set[str] = set()
    drums: set[str] = set()
    for line in lines:
        if line.raw_material_id in materials:
            raise DuplicateReferenceError("raw material", line.raw_material_id)
        materials.add(line.raw_material_id)

        if bool(line.drums) == (line.quantity is not None):
            raise StockValidationError(
                "Each consumption line needs either drums or a quantity",
                details={"raw_material_id": line.raw_material_id},
            )
        if line.quantity is not None and line.quantity <= 0:
            raise StockValidationError("Consumption quantity must be greater than zero")
        for draw in line.drums or []:
            if draw.drum_id in drums:
                raise DuplicateReferenceError("drum", draw.drum_id)
            drums.add(draw.drum_id)
            if draw.quantity <= 0:
                raise StockValidationError("Consumption quantity must be greater than zero")


async def _check_code_free(db: AsyncSession, code: str, *, batch_id: str | None = None) -> None:
    stmt = select(func.count(Batch.id)).where(Batch.code == code)
    if batch_id is not None:
        stmt = stmt.where(Batch.id != batch_id)
    if (await db.execute(stmt)).scalar():
        raise StockValidationError(f"Batch code already exists: {code}")


def _line_lock_keys(lines: list[ConsumptionLine]) -> list[LockKey]:
    keys = [raw_material_key(line.raw_material_id) for line in lines]
    keys += [drum_key(d.drum_id) for line in lines for d in line.drums or []]
    return keys


async def _fifo_draws(
    db: AsyncSession,
    raw_material_id: str,
    quantity: float,
    restored: dict[str, float] | None = None,
) -> list[tuple[str, float]]:
    """Split `quantity` across drums with stock, oldest first.

    `restored` maps drum ids to stock the same plan gives back, as when a
    batch is drawn again; those drums count even if they are empty now.
    The caller holds the raw material's lock, which guards its drums.
    """
    restored = restored or {}
    material = await db.get(RawMaterial, raw_material_id)
    if material is None:
        raise ResourceNotFoundError("Raw material", raw_material_id)

    drums = await reread_for_update(
        db,
        select(Drum)
        .where(
            Drum.raw_material_id == raw_material_id,
            or_(
                and_(Drum.is_active == True, Drum.current_quantity > 0),  # noqa: E712
                Drum.id.in_(list(restored)),
            ),
        )
        .order_by(Drum.created_at, Drum.label),
    )
    await acquire_row_locks(db, [drum_key(d.id) for d in drums])

    draws: list[tuple[str, float]] = []
    remaining = quantity
    available = 0.0
    for drum in drums:
        on_hand = drum.current_quantity + restored.get(drum.id, 0.0)
        available += on_hand
        if remaining <= EPSILON or on_hand <= EPSILON:
            continue
        take = min(remaining, on_hand)
        draws.append((drum.id, take))
        remaining -= take

    if remaining > EPSILON:
        raise InsufficientStockError(material.code, available, quantity)
    return draws


async def _draws_for(
    db: AsyncSession,
    lines: list[ConsumptionLine],
    restored: dict[str, float] | None = None,
) -> list[tuple[str, str, float]]:
    """(raw_material_id, drum_id, quantity) per drum drawn; locks held by the caller."""
    draws: list[tuple[str, str, float]] = []
    for line in lines:
        if line.drums:
            draws.extend((line.raw_material_id, d.drum_id, d.quantity) for d in line.drums)
        else:
            draws.extend(
                (line.raw_material_id, drum_id, quantity)
                for drum_id, quantity in await _fifo_draws(
                    db, line.raw_material_id, line.quantity, restored,
                )
            )
    return draws


def _consumption_drafts(
    draws: list[tuple[str, str, float]],
    *,
    batch_id: str,
    code: str,
    batch_date: datetime,
    actor: str | None,
) -> list[MovementDraft]:
    return [
        MovementDraft(
            kind=MovementType.OUT,
            item=RawMaterialRef(material_id),
            movement_date=batch_date,
            quantity=quantity,
            drum_id=drum_id,
            description=f"Batch production: {code}",
            batch_id=batch_id,
            created_by=actor,
        )
        for material_id, drum_id, quantity in draws
    ]


def _usages(plan: PostingPlan, batch_id: str) -> list[BatchUsage]:
    return [
        BatchUsage(
            batch_id=batch_id,
            raw_material_id=posting.counters.item.id,
            drum_id=posting.counters.drum.id,
            quantity=posting.movement.quantity,
        )
        for posting in plan.postings
        if posting.counters.drum is not None
    ]


async def _batch_movements(db: AsyncSession, batch_id: str) -> list[StockMovement]:
    return list(
        (
            await db.execute(select(StockMovement).where(StockMovement.batch_id == batch_id))
        ).scalars().all()
    )


# ── Phase A ──────────────────────────────────────────────────

async def create_batch(
    db: AsyncSession,
    body: BatchCreate,
    *,
    actor: str | None = None,
) -> Batch:
    """Create a batch and consume its raw materials in one transaction.

    Raises:
        DuplicateReferenceError, StockValidationError, ResourceNotFoundError,
        InsufficientStockError.  Nothing is written when any line fails.
    """
    code = _check_code(body.code)
    _check_lines(body.consumption)
    await _check_code_free(db, code)

    await acquire_row_locks(db, _line_lock_keys(body.consumption))

    batch_id = str(uuid.uuid4())
    batch_date = normalize_movement_date(body.batch_date)
    draws = await _draws_for(db, body.consumption)
    drafts = _consumption_drafts(
        draws, batch_id=batch_id, code=code, batch_date=batch_date, actor=actor,
    )
    plan = await prepare_movements(db, drafts)

    # ── Checks passed: write ─────────────────────────────────
    batch = Batch(
        id=batch_id,
        code=code,
        batch_date=batch_date,
        description=body.description,
        status=BATCH_IN_PROGRESS,
        created_by=actor,
    )
    db.add(batch)
    await db.flush()
    db.add_all(_usages(plan, batch_id))
    await plan.write()

    total = sum(quantity for _, _, quantity in draws)
    logger.info("Created batch %s consuming %g from %d drum(s)", code, total, len(draws))
    await log_activity(
        db,
        action="batch_created",
        entity_type="batch",
        entity_id=batch_id,
        entity_code=code,
        summary=f"Batch {code} consumed {total:g} from {len(draws)} drum(s)",
        details={
            "usages": [
                {"raw_material_id": m, "drum_id": d, "quantity": q} for m, d, q in draws
            ],
        },
        actor=actor,
    )
    return await _load_batch(db, batch_id)


# ── Phase B ──────────────────────────────────────────────────

async def attach_finished_goods(
    db: AsyncSession,
    batch_id: str,
    body: AttachFinishedGoods,
    *,
    actor: str | None = None,
) -> Batch:
    """Credit the batch's outputs and mark it completed.

    Raises:
        ResourceNotFoundError, AlreadyAttachedError, DuplicateReferenceError,
        StockValidationError.
    """
    if not body.lines:
        raise StockValidationError("At least one finished good is required")
    seen: set[str] = set()
    for line in body.lines:
        if line.finished_good_id in seen:
            raise DuplicateReferenceError("finished good", line.finished_good_id)
        seen.add(line.finished_good_id)

    await acquire_row_locks(db, [batch_key(batch_id)])
    batch = await _load_batch(db, batch_id, for_update=True)
    if batch.finished_goods:
        raise AlreadyAttachedError(batch.code)

    drafts = [
        MovementDraft(
            kind=MovementType.IN,
            item=FinishedGoodRef(line.finished_good_id),
            movement_date=batch.batch_date,
            quantity=line.quantity,
            location_id=line.location_id,
            description=f"Batch output: {batch.code}",
            batch_id=batch.id,
            created_by=actor,
        )
        for line in body.lines
    ]
    plan = await prepare_movements(db, drafts)

    for line in body.lines:
        db.add(BatchFinishedGood(
            batch_id=batch.id,
            finished_good_id=line.finished_good_id,
            location_id=line.location_id,
            quantity=line.quantity,
        ))
    batch.status = BATCH_COMPLETED
    await plan.write()

    total = sum(line.quantity for line in body.lines)
    logger.info("Attached %d finished good(s) to batch %s", len(body.lines), batch.code)
    await log_activity(
        db,
        action="finished_goods_attached",
        entity_type="batch",
        entity_id=batch.id,
        entity_code=batch.code,
        summary=f"Batch {batch.code} produced {total:g} across {len(body.lines)} good(s)",
        details={"lines": [line.model_dump() for line in body.lines]},
        actor=actor,
    )
    return await _load_batch(db, batch.id)


# ── Editing ──────────────────────────────────────────────────

async def update_batch(
    db: AsyncSession,
    batch_id: str,
    body: BatchUpdate,
    *,
    actor: str | None = None,
) -> Batch:
    """Edit a batch's code, date, description or consumption.

    A new consumption or date re-plans the batch: its old movements are
    reversed and the new ones posted in a single plan, so stock freed by
    the old usages is available to the new ones and nothing is written
    when a line fails.  Outputs keep their quantities and follow the date.

    Raises:
        ResourceNotFoundError, StockValidationError, DuplicateReferenceError,
        InsufficientStockError.
    """
    changes = body.model_fields_set
    if not changes:
        raise StockValidationError("Nothing to update")
    for field in ("code", "batch_date", "consumption"):
        if field in changes and getattr(body, field) is None:
            raise StockValidationError(f"{field} cannot be cleared")
    code = _check_code(body.code) if "code" in changes else None
    if body.consumption is not None:
        _check_lines(body.consumption)

    await acquire_row_locks(db, [batch_key(batch_id)])
    batch = await _load_batch(db, batch_id, for_update=True)
    if code is not None and code != batch.code:
        await _check_code_free(db, code, batch_id=batch.id)

    before = {
        "code": batch.code,
        "batch_date": to_local_day(batch.batch_date).isoformat(),
        "description": batch.description,
    }
    new_code = code or batch.code
    new_date = batch.batch_date
    if body.batch_date is not None:
        new_date = normalize_movement_date(body.batch_date)

    movements = await _batch_movements(db, batch.id)
    plan: PostingPlan | None = None
    if body.consumption is not None or new_date != batch.batch_date:
        consumed = [m for m in movements if m.raw_material_id]
        if body.consumption is not None:
            keys = _line_lock_keys(body.consumption)
            for movement in consumed:
                keys += movement_lock_keys(ref_of(movement), movement.drum_id, None)
            await acquire_row_locks(db, keys)
            restored: dict[str, float] = defaultdict(float)
            for movement in consumed:
                restored[movement.drum_id] += movement.quantity
            draws = await _draws_for(db, body.consumption, restored)
        else:
            draws = [(u.raw_material_id, u.drum_id, u.quantity) for u in batch.usages]

        drafts = _consumption_drafts(
            draws, batch_id=batch.id, code=new_code, batch_date=new_date, actor=actor,
        )
        drafts += [
            MovementDraft(
                kind=MovementType.IN,
                item=FinishedGoodRef(m.finished_good_id),
                movement_date=new_date,
                quantity=m.quantity,
                location_id=m.location_id,
                description=f"Batch output: {new_code}",
                batch_id=batch.id,
                created_by=m.created_by,
            )
            for m in movements
            if m.finished_good_id
        ]
        plan = await prepare_movements(db, drafts, reversing=movements)
    elif new_code != batch.code:
        for movement in movements:
            prefix = "Batch production" if movement.raw_material_id else "Batch output"
            if movement.description == f"{prefix}: {batch.code}":
                movement.description = f"{prefix}: {new_code}"

    # ── Checks passed: write ─────────────────────────────────
    batch.code = new_code
    batch.batch_date = new_date
    if "description" in changes:
        batch.description = body.description
    if plan is not None:
        batch.usages.clear()
        batch.usages.extend(_usages(plan, batch.id))
        await plan.write()
    else:
        await db.flush()

    after = {
        "code": batch.code,
        "batch_date": to_local_day(batch.batch_date).isoformat(),
        "description": batch.description,
    }
    logger.info("Updated batch %s (%s)", batch.code, "re-planned" if plan else "fields only")
    await log_activity(
        db,
        action="batch_updated",
        entity_type="batch",
        entity_id=batch.id,
        entity_code=batch.code,
        summary=f"Updated batch {batch.code}",
        details={
            "before": before,
            "after": after,
            "usages": [
                {"raw_material_id": u.raw_material_id, "drum_id": u.drum_id, "quantity": u.quantity}
                for u in batch.usages
            ],
        },
        actor=actor,
    )
    return await _load_batch(db, batch.id)


# ── Deletion ─────────────────────────────────────────────────

async def delete_batch(
    db: AsyncSession,
    batch_id: str,
    *,
    actor: str | None = None,
) -> None:
    """Reverse all of a batch's movements, then remove the batch.

    Raises NegativeStockError when its outputs were already consumed.
    """
    await acquire_row_locks(db, [batch_key(batch_id)])
    batch = await _load_batch(db, batch_id, for_update=True)
    code = batch.code

    movements = await _batch_movements(db, batch.id)
    if movements:
        await reverse_movements(db, movements)

    await db.delete(batch)
    await db.flush()

    logger.info("Deleted batch %s, reversed %d movement(s)", code, len(movements))
    await log_activity(
        db,
        action="batch_deleted",
        entity_type="batch",
        entity_id=batch_id,
        entity_code=code,
        summary=f"Deleted batch {code}",
        details={"reversed_movements": len(movements)},
        actor=actor,
    )


# ── Reads ────────────────────────────────────────────────────

async def get_batch(db: AsyncSession, batch_id: str) -> tuple[Batch, list[StockMovement]]:
    batch = await _load_batch(db, batch_id)
    movements = (
        await db.execute(
            select(StockMovement)
            .where(StockMovement.batch_id == batch.id)
            .order_by(StockMovement.kind, StockMovement.created_at)
        )
    ).scalars().all()
    return batch, list(movements)


async def list_batches(
    db: AsyncSession, *, limit: int = 50, offset: int = 0,
) -> tuple[list[Batch], int]:
    total = (await db.execute(select(func.count(Batch.id)))).scalar() or 0
    batches = (
        await db.execute(
            select(Batch)
            .order_by(Batch.batch_date.desc(), Batch.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return list(batches), total
