"""Movement application engine.

Every change to a stock counter goes through a PostingPlan:

  1. lock every counter row the operation touches (utils.locks)
  2. re-read those rows and accumulate the signed delta per counter
  3. verify nothing goes negative: current balances first, then (when
     settings.validate_backdated_stock is on) every historical day from
     the earliest affected date onward
  4. write the counters, append/delete ledger rows, flush
  5. check raw-material aggregates against their drums

Nothing is written before step 4, so a failed check leaves the session
untouched.  The caller owns the transaction: services only flush, and
get_db() commits or rolls back.

Counters per movement:
  raw material   → RawMaterial.current_stock + Drum.current_quantity
  finished good  → FinishedGood.current_stock + FinishedGoodStock.quantity
                   (located) or the unlocated pool (no location)
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.config import settings
from stockledger.middleware.exceptions import (
    BatchLinkedError,
    InsufficientStockError,
    NegativeStockError,
    ResourceNotFoundError,
    StockValidationError,
)
from stockledger.models.finished_good import FinishedGood, FinishedGoodStock, Location
from stockledger.models.raw_material import Drum, RawMaterial
from stockledger.models.stock_movement import MovementType, StockMovement
from stockledger.services.consistency import check_raw_material_consistency
from stockledger.services.item_ref import (
    FinishedGoodRef,
    ItemRef,
    ItemType,
    RawMaterialRef,
    ref_of,
)
from stockledger.utils.activity import log_activity
from stockledger.utils.locks import (
    LockKey,
    acquire_row_locks,
    drum_key,
    finished_good_key,
    location_stock_key,
    raw_material_key,
    reread_for_update,
)
from stockledger.utils.timezone import (
    day_bounds_utc,
    day_start_utc,
    normalize_movement_date,
    to_local_day,
)

logger = logging.getLogger(__name__)

EPSILON = 1e-9


def _q(value: float) -> float:
    return round(value, 6)


def signed_delta(kind: MovementType, quantity: float) -> float:
    return -quantity if kind == MovementType.OUT else quantity


# ── Data structures ────────────────────────────────────────────


@dataclass
class MovementDraft:
    """A movement not yet posted.  movement_date is already normalised."""
    kind: MovementType
    item: ItemRef
    movement_date: datetime
    quantity: float | None = None
    target_level: float | None = None
    drum_id: str | None = None
    location_id: str | None = None
    description: str | None = None
    batch_id: str | None = None
    created_by: str | None = None


@dataclass
class MovementResult:
    movement: StockMovement | None
    item_stock: float
    sub_stock: float | None = None


@dataclass
class _Counters:
    """The counter rows one movement touches."""
    item: RawMaterial | FinishedGood
    drum: Drum | None = None
    location: Location | None = None
    location_stock: FinishedGoodStock | None = None

    @property
    def label(self) -> str:
        if isinstance(self.item, RawMaterial):
            return self.item.code
        return self.item.name

    @property
    def sub_quantity(self) -> float | None:
        if self.drum is not None:
            return self.drum.current_quantity
        if self.location is not None:
            return self.location_stock.quantity if self.location_stock else 0.0
        return None


@dataclass
class _Change:
    label: str
    start: float
    rank: int
    delta: float = 0.0
    row: object = None
    attr: str | None = None
    counters: _Counters | None = None


@dataclass
class _Posting:
    counters: _Counters
    movement: StockMovement


# ── Validation ────────────────────────────────────────────────


def _check_quantity(kind: MovementType, quantity: float) -> None:
    if not math.isfinite(quantity):
        raise StockValidationError("Quantity must be a finite number")
    if kind == MovementType.ADJUSTMENT:
        if quantity == 0:
            raise StockValidationError("Adjustment quantity cannot be zero")
    elif quantity <= 0:
        raise StockValidationError(f"{kind.value} quantity must be greater than zero")


def validate_draft(draft: MovementDraft) -> None:
    """Shape checks that need no database access."""
    if draft.target_level is not None:
        if draft.kind != MovementType.ADJUSTMENT:
            raise StockValidationError("A target level is only allowed for adjustments")
        if draft.quantity is not None:
            raise StockValidationError("Give either a quantity or a target level, not both")
        if not math.isfinite(draft.target_level) or draft.target_level < 0:
            raise StockValidationError("Target level must be a non-negative number")
    else:
        if draft.quantity is None:
            raise StockValidationError("Quantity or target level is required")
        _check_quantity(draft.kind, draft.quantity)

    if isinstance(draft.item, RawMaterialRef):
        if not draft.drum_id:
            raise StockValidationError("Raw material movements require a drum")
        if draft.location_id:
            raise StockValidationError("Raw material movements cannot name a location")
    elif draft.drum_id:
        raise StockValidationError("Finished good movements cannot name a drum")


def _coerce_kind(kind: MovementType | str) -> MovementType:
    try:
        return MovementType(kind)
    except ValueError:
        raise StockValidationError(
            f"Unknown movement kind: {kind}",
            details={"allowed": [k.value for k in MovementType]},
        )


def movement_lock_keys(item: ItemRef, drum_id: str | None, location_id: str | None) -> list[LockKey]:
    if isinstance(item, RawMaterialRef):
        keys = [raw_material_key(item.id)]
        if drum_id:
            keys.append(drum_key(drum_id))
        return keys
    # The aggregate row guards the unlocated pool too
    keys = [finished_good_key(item.id)]
    if location_id:
        keys.append(location_stock_key(item.id, location_id))
    return keys


# ── Posting plan ──────────────────────────────────────────────


class PostingPlan:
    """Counter deltas and ledger rows for one atomic operation."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.postings: list[_Posting] = []
        self.deleted: list[StockMovement] = []
        self.reversed: list[_Counters] = []
        self._changes: dict[tuple[str, str], _Change] = {}
        self._history: dict[ItemRef, list[tuple[date, float]]] = defaultdict(list)
        self._labels: dict[ItemRef, str] = {}
        self._rows: dict[tuple[str, str], object] = {}
        self._pools: dict[str, float] = {}

    # ── Loading ──────────────────────────────────────────────

    async def _locked(self, model, row_id: str):
        cache_key = (model.__tablename__, row_id)
        if cache_key not in self._rows:
            rows = await reread_for_update(self.db, select(model).where(model.id == row_id))
            self._rows[cache_key] = rows[0] if rows else None
        return self._rows[cache_key]

    async def counters(
        self, item: ItemRef, drum_id: str | None, location_id: str | None,
    ) -> _Counters:
        """Re-read the counters of one movement; the caller holds the locks."""
        if isinstance(item, RawMaterialRef):
            material = await self._locked(RawMaterial, item.id)
            if material is None:
                raise ResourceNotFoundError("Raw material", item.id)
            if not drum_id:
                raise StockValidationError("Raw material movements require a drum")
            drum = await self._locked(Drum, drum_id)
            if drum is None:
                raise ResourceNotFoundError("Drum", drum_id)
            if drum.raw_material_id != material.id:
                raise StockValidationError(
                    f"Drum {drum.label} does not belong to raw material {material.code}",
                    details={"drum_id": drum.id, "raw_material_id": material.id},
                )
            return _Counters(item=material, drum=drum)

        good = await self._locked(FinishedGood, item.id)
        if good is None:
            raise ResourceNotFoundError("Finished good", item.id)
        if not location_id:
            return _Counters(item=good)

        location = await self.db.get(Location, location_id)
        if location is None:
            raise ResourceNotFoundError("Location", location_id)
        cache_key = ("finished_good_stocks", f"{good.id}:{location_id}")
        if cache_key not in self._rows:
            rows = await reread_for_update(
                self.db,
                select(FinishedGoodStock).where(
                    FinishedGoodStock.finished_good_id == good.id,
                    FinishedGoodStock.location_id == location_id,
                ),
            )
            self._rows[cache_key] = rows[0] if rows else None
        return _Counters(item=good, location=location, location_stock=self._rows[cache_key])

    async def _unlocated_pool(self, good: FinishedGood) -> float:
        if good.id not in self._pools:
            located = (
                await self.db.execute(
                    select(func.coalesce(func.sum(FinishedGoodStock.quantity), 0.0))
                    .where(FinishedGoodStock.finished_good_id == good.id)
                )
            ).scalar_one()
            self._pools[good.id] = _q(good.current_stock - float(located))
        return self._pools[good.id]

    # ── Accumulating ─────────────────────────────────────────

    def _change(self, key: tuple[str, str], **kwargs) -> _Change:
        change = self._changes.get(key)
        if change is None:
            change = self._changes[key] = _Change(**kwargs)
        return change

    async def add(self, counters: _Counters, delta: float, movement_date: datetime) -> None:
        """Accumulate `delta` on every counter of one movement."""
        item = counters.item
        if counters.drum is not None:
            drum = counters.drum
            self._change(
                ("drums", drum.id),
                label=f"{item.code} drum {drum.label}", start=drum.current_quantity,
                rank=0, row=drum, attr="current_quantity",
            ).delta += delta
        elif counters.location is not None:
            stock = counters.location_stock
            self._change(
                ("finished_good_stocks", f"{item.id}:{counters.location.id}"),
                label=f"{item.name} at {counters.location.name}",
                start=stock.quantity if stock else 0.0,
                rank=0, row=stock, attr="quantity", counters=counters,
            ).delta += delta
        elif isinstance(item, FinishedGood):
            self._change(
                ("unlocated", item.id),
                label=f"{item.name} (unlocated)", start=await self._unlocated_pool(item),
                rank=0,
            ).delta += delta

        table = "raw_materials" if isinstance(item, RawMaterial) else "finished_goods"
        self._change(
            (table, item.id),
            label=counters.label, start=item.current_stock,
            rank=1, row=item, attr="current_stock",
        ).delta += delta

        ref = RawMaterialRef(item.id) if isinstance(item, RawMaterial) else FinishedGoodRef(item.id)
        self._labels[ref] = counters.label
        self._history[ref].append((to_local_day(movement_date), delta))

    async def reverse(self, movements: list[StockMovement]) -> None:
        """Undo the counter effect of `movements` and queue their deletion."""
        for movement in movements:
            counters = await self.counters(ref_of(movement), movement.drum_id, movement.location_id)
            await self.add(counters, -signed_delta(movement.kind, movement.quantity), movement.movement_date)
            self.deleted.append(movement)
            self.reversed.append(counters)

    # ── Verifying ────────────────────────────────────────────

    def verify(self, error=InsufficientStockError) -> None:
        """Fail on the first counter that would end below zero."""
        for change in sorted(self._changes.values(), key=lambda c: c.rank):
            if change.delta >= 0:
                continue
            if _q(change.start + change.delta) < -EPSILON:
                raise error(change.label, _q(change.start), _q(-change.delta))

    async def verify_history(self, error=InsufficientStockError) -> None:
        """Fail if any day from the earliest affected date would end negative."""
        if not settings.validate_backdated_stock:
            return
        for ref, additions in self._history.items():
            if all(delta >= 0 for _, delta in additions):
                continue
            await self._verify_item_history(ref, additions, error)

    async def _verify_item_history(self, ref: ItemRef, additions, error) -> None:
        column = (
            StockMovement.raw_material_id if isinstance(ref, RawMaterialRef)
            else StockMovement.finished_good_id
        )
        rows = (
            await self.db.execute(
                select(StockMovement.movement_date, StockMovement.kind, StockMovement.quantity)
                .where(column == ref.id)
            )
        ).all()

        base: dict[date, float] = defaultdict(float)
        for movement_date, kind, quantity in rows:
            base[to_local_day(movement_date)] += signed_delta(kind, quantity)
        extra: dict[date, float] = defaultdict(float)
        for day, delta in additions:
            extra[day] += delta

        earliest = min(extra)
        running_base = running_extra = 0.0
        for day in sorted(set(base) | set(extra)):
            running_base += base.get(day, 0.0)
            running_extra += extra.get(day, 0.0)
            if day < earliest:
                continue
            if _q(running_base + running_extra) < -EPSILON:
                label = self._labels[ref]
                if error is InsufficientStockError:
                    raise InsufficientStockError(
                        label, _q(running_base), _q(-running_extra),
                        message=(
                            f"Insufficient stock for {label} on {day.isoformat()}: "
                            f"available {_q(running_base):g}, requested {_q(-running_extra):g}"
                        ),
                    )
                raise error(label, _q(running_base), _q(-running_extra))

    # ── Writing ──────────────────────────────────────────────

    async def write(self) -> list[StockMovement]:
        touched_materials: dict[str, RawMaterial] = {}
        for change in self._changes.values():
            if change.attr is None or change.delta == 0:
                continue
            value = _q(change.start + change.delta)
            row = change.row
            if row is None:
                # First stock at this location
                counters = change.counters
                row = FinishedGoodStock(
                    finished_good_id=counters.item.id,
                    location_id=counters.location.id,
                    quantity=0.0,
                )
                self.db.add(row)
                change.row = counters.location_stock = row
            setattr(row, change.attr, value)
            if isinstance(row, Drum):
                row.is_active = value > EPSILON
            if isinstance(row, RawMaterial):
                touched_materials[row.id] = row

        for posting in self.postings:
            self.db.add(posting.movement)
        for movement in self.deleted:
            await self.db.delete(movement)
        await self.db.flush()

        if settings.stock_consistency_check:
            for material in touched_materials.values():
                await check_raw_material_consistency(self.db, material)

        return [p.movement for p in self.postings]


# ── Engine primitives ─────────────────────────────────────────


async def prepare_movements(
    db: AsyncSession,
    drafts: list[MovementDraft],
    *,
    error=InsufficientStockError,
    reversing: list[StockMovement] = (),
) -> PostingPlan:
    """Lock, re-read and verify a set of new movements without writing.

    Target-level adjustments are converted to deltas here, from the value
    read under the lock.  Movements in `reversing` are undone in the same
    plan, so the checks see the net effect of replacing them.
    """
    for draft in drafts:
        validate_draft(draft)

    keys: list[LockKey] = []
    for draft in drafts:
        keys.extend(movement_lock_keys(draft.item, draft.drum_id, draft.location_id))
    for movement in reversing:
        keys.extend(movement_lock_keys(ref_of(movement), movement.drum_id, movement.location_id))
    await acquire_row_locks(db, keys)

    plan = PostingPlan(db)
    if reversing:
        await plan.reverse(await reread_movements(db, [m.id for m in reversing]))
    for draft in drafts:
        counters = await plan.counters(draft.item, draft.drum_id, draft.location_id)
        if draft.target_level is not None:
            current = counters.sub_quantity
            if current is None:
                current = counters.item.current_stock
            delta = _q(draft.target_level - current)
            if abs(delta) < EPSILON:
                raise StockValidationError(
                    f"{counters.label} is already at {draft.target_level:g}",
                    details={"current": current, "target_level": draft.target_level},
                )
            quantity = delta
        else:
            quantity = draft.quantity

        movement = StockMovement(
            kind=draft.kind,
            quantity=_q(quantity),
            movement_date=draft.movement_date,
            description=draft.description,
            raw_material_id=draft.item.id if isinstance(draft.item, RawMaterialRef) else None,
            finished_good_id=draft.item.id if isinstance(draft.item, FinishedGoodRef) else None,
            drum_id=draft.drum_id,
            location_id=draft.location_id,
            batch_id=draft.batch_id,
            created_by=draft.created_by,
        )
        await plan.add(counters, signed_delta(draft.kind, quantity), draft.movement_date)
        plan.postings.append(_Posting(counters=counters, movement=movement))

    plan.verify(error)
    await plan.verify_history(error)
    return plan


async def post_movements(db: AsyncSession, drafts: list[MovementDraft]) -> list[StockMovement]:
    plan = await prepare_movements(db, drafts)
    return await plan.write()


async def reverse_movements(
    db: AsyncSession,
    movements: list[StockMovement],
    *,
    error=NegativeStockError,
) -> PostingPlan:
    """Undo the counter effect of `movements` and delete them.

    The rows are read again once the locks are held; one that is already
    gone raises ResourceNotFoundError.
    """
    keys: list[LockKey] = []
    for movement in movements:
        keys.extend(movement_lock_keys(ref_of(movement), movement.drum_id, movement.location_id))
    await acquire_row_locks(db, keys)

    movements = await reread_movements(db, [m.id for m in movements])
    # An edit may have moved a row to another location while we waited
    keys = []
    for movement in movements:
        keys.extend(movement_lock_keys(ref_of(movement), movement.drum_id, movement.location_id))
    await acquire_row_locks(db, keys)

    plan = PostingPlan(db)
    await plan.reverse(movements)
    plan.verify(error)
    await plan.verify_history(error)
    await plan.write()
    return plan


async def get_movement(db: AsyncSession, movement_id: str) -> StockMovement:
    movement = await db.get(StockMovement, movement_id)
    if movement is None:
        raise ResourceNotFoundError("Stock movement", movement_id)
    return movement


async def reread_movements(db: AsyncSession, movement_ids: list[str]) -> list[StockMovement]:
    """Fresh copies of `movement_ids`, in that order; the caller holds the item locks."""
    if not movement_ids:
        return []
    rows = await reread_for_update(
        db, select(StockMovement).where(StockMovement.id.in_(movement_ids)),
    )
    by_id = {m.id: m for m in rows}
    for movement_id in movement_ids:
        if movement_id not in by_id:
            raise ResourceNotFoundError("Stock movement", movement_id)
    return [by_id[movement_id] for movement_id in movement_ids]


async def lock_direct_movement(db: AsyncSession, movement_id: str) -> StockMovement:
    """Lock the movement's item, then load the movement again under that lock.

    Every write to a ledger row happens while its item's aggregate key is
    held, so the row returned here cannot change until the transaction ends.
    """
    movement = await get_movement(db, movement_id)
    await acquire_row_locks(db, movement_lock_keys(ref_of(movement), None, None))
    [movement] = await reread_movements(db, [movement_id])
    if movement.batch_id:
        raise BatchLinkedError(movement.id, movement.batch_id)
    return movement


def _result(movement: StockMovement | None, counters: _Counters) -> MovementResult:
    return MovementResult(
        movement=movement,
        item_stock=counters.item.current_stock,
        sub_stock=counters.sub_quantity,
    )


# ── Public operations ─────────────────────────────────────────


async def apply_movement(
    db: AsyncSession,
    *,
    kind: MovementType | str,
    item: ItemRef,
    movement_date: date | datetime,
    quantity: float | None = None,
    target_level: float | None = None,
    drum_id: str | None = None,
    location_id: str | None = None,
    description: str | None = None,
    actor: str | None = None,
) -> MovementResult:
    """Post one IN, OUT or ADJUSTMENT and return the movement and new balances."""
    kind = _coerce_kind(kind)
    draft = MovementDraft(
        kind=kind,
        item=item,
        movement_date=normalize_movement_date(movement_date),
        quantity=quantity,
        target_level=target_level,
        drum_id=drum_id,
        location_id=location_id,
        description=description,
        created_by=actor,
    )
    plan = await prepare_movements(db, [draft])
    [movement] = await plan.write()
    counters = plan.postings[0].counters

    logger.info(
        "Posted %s %g for %s on %s (stock now %g)",
        kind.value, movement.quantity, counters.label,
        to_local_day(movement.movement_date), counters.item.current_stock,
    )
    await log_activity(
        db,
        action="stock_adjusted" if kind == MovementType.ADJUSTMENT else "movement_created",
        entity_type="stock_movement",
        entity_id=movement.id,
        entity_code=counters.label,
        summary=f"{kind.value} {movement.quantity:g} for {counters.label}",
        details={
            "item_type": item.item_type.value,
            "item_id": item.id,
            "drum_id": drum_id,
            "location_id": location_id,
            "target_level": target_level,
        },
        actor=actor,
    )
    return _result(movement, counters)


_UPDATABLE = {"quantity", "movement_date", "description", "location_id"}


async def update_movement(
    db: AsyncSession,
    movement_id: str,
    patch: dict,
    *,
    actor: str | None = None,
) -> MovementResult:
    """Edit quantity, date, description or location of a direct movement.

    The old delta is reversed and the new one applied in the same plan, so
    the insufficiency check sees the net effect.
    """
    unknown = set(patch) - _UPDATABLE
    if unknown:
        raise StockValidationError(
            f"Cannot update field(s): {', '.join(sorted(unknown))}",
            details={"allowed": sorted(_UPDATABLE)},
        )

    movement = await lock_direct_movement(db, movement_id)

    ref = ref_of(movement)
    new_quantity = patch.get("quantity", movement.quantity)
    if new_quantity is None:
        raise StockValidationError("Quantity cannot be cleared")
    _check_quantity(movement.kind, new_quantity)

    new_date = movement.movement_date
    if patch.get("movement_date") is not None:
        new_date = normalize_movement_date(patch["movement_date"])

    new_location = patch.get("location_id", movement.location_id)
    if isinstance(ref, RawMaterialRef) and new_location:
        raise StockValidationError("Raw material movements cannot name a location")

    before = {
        "quantity": movement.quantity,
        "movement_date": to_local_day(movement.movement_date).isoformat(),
        "location_id": movement.location_id,
        "description": movement.description,
    }

    keys = movement_lock_keys(ref, movement.drum_id, movement.location_id)
    keys += movement_lock_keys(ref, movement.drum_id, new_location)
    await acquire_row_locks(db, keys)

    plan = PostingPlan(db)
    old_counters = await plan.counters(ref, movement.drum_id, movement.location_id)
    new_counters = await plan.counters(ref, movement.drum_id, new_location)
    await plan.add(old_counters, -signed_delta(movement.kind, movement.quantity), movement.movement_date)
    await plan.add(new_counters, signed_delta(movement.kind, new_quantity), new_date)
    plan.verify(InsufficientStockError)
    await plan.verify_history(InsufficientStockError)

    movement.quantity = _q(new_quantity)
    movement.movement_date = new_date
    movement.location_id = new_location
    if "description" in patch:
        movement.description = patch["description"]
    await plan.write()

    logger.info(
        "Updated movement %s for %s: %g -> %g",
        movement.id, new_counters.label, before["quantity"], movement.quantity,
    )
    await log_activity(
        db,
        action="movement_updated",
        entity_type="stock_movement",
        entity_id=movement.id,
        entity_code=new_counters.label,
        summary=f"Updated {movement.kind.value} for {new_counters.label}",
        details={
            "before": before,
            "after": {
                "quantity": movement.quantity,
                "movement_date": to_local_day(movement.movement_date).isoformat(),
                "location_id": movement.location_id,
                "description": movement.description,
            },
        },
        actor=actor,
    )
    return _result(movement, new_counters)


async def delete_movement(
    db: AsyncSession,
    movement_id: str,
    *,
    actor: str | None = None,
) -> MovementResult:
    """Reverse a direct movement and remove it.

    Raises NegativeStockError when the stock it added has already been
    consumed.
    """
    movement = await lock_direct_movement(db, movement_id)

    summary = f"Deleted {movement.kind.value} {movement.quantity:g}"
    plan = await reverse_movements(db, [movement])
    counters = plan.reversed[0]

    logger.info("Deleted movement %s for %s", movement_id, counters.label)
    await log_activity(
        db,
        action="movement_deleted",
        entity_type="stock_movement",
        entity_id=movement_id,
        entity_code=counters.label,
        summary=f"{summary} for {counters.label}",
        actor=actor,
    )
    return _result(None, counters)


# ── Day-cell operations ───────────────────────────────────────


async def movements_on_day(
    db: AsyncSession,
    item: ItemRef,
    day: date,
    kind: MovementType | str | None = None,
    *,
    include_batch: bool = False,
    for_update: bool = False,
) -> list[StockMovement]:
    """Movements of one item on local `day`, oldest first.

    With for_update the rows are read as a locking read that refreshes
    the identity map; the caller must already hold the item's lock.
    """
    start, end = day_bounds_utc(day)
    column = (
        StockMovement.raw_material_id if isinstance(item, RawMaterialRef)
        else StockMovement.finished_good_id
    )
    stmt = (
        select(StockMovement)
        .where(
            column == item.id,
            StockMovement.movement_date >= start,
            StockMovement.movement_date < end,
        )
        .order_by(StockMovement.created_at, StockMovement.id)
    )
    if kind is not None:
        stmt = stmt.where(StockMovement.kind == _coerce_kind(kind))
    if not include_batch:
        stmt = stmt.where(StockMovement.batch_id.is_(None))
    if for_update:
        return await reread_for_update(db, stmt)
    return list((await db.execute(stmt)).scalars().all())


def _day_cell_kind(kind: MovementType | str) -> MovementType:
    kind = _coerce_kind(kind)
    if kind == MovementType.ADJUSTMENT:
        raise StockValidationError("Day totals can only be edited for IN or OUT")
    return kind


async def apply_movements_by_date(
    db: AsyncSession,
    *,
    item: ItemRef,
    day: date,
    kind: MovementType | str,
    quantity: float,
    drum_id: str | None = None,
    location_id: str | None = None,
    description: str | None = None,
    actor: str | None = None,
) -> MovementResult:
    """Set the total of direct IN or OUT movements for one item and day.

    Existing movements of that day/kind collapse into a single movement
    carrying the new total (all of them are removed when the total is
    zero).  Batch-generated movements are never touched.
    """
    kind = _day_cell_kind(kind)
    if not math.isfinite(quantity) or quantity < 0:
        raise StockValidationError("Day total must be zero or more")
    if isinstance(item, RawMaterialRef) and location_id:
        raise StockValidationError("Raw material movements cannot name a location")
    if isinstance(item, FinishedGoodRef) and drum_id:
        raise StockValidationError("Finished good movements cannot name a drum")

    # The day's rows and their total are only read under the item lock
    await acquire_row_locks(db, movement_lock_keys(item, None, None))
    existing = await movements_on_day(db, item, day, kind, for_update=True)
    subs = {(m.drum_id, m.location_id) for m in existing}
    if len(subs) > 1:
        raise StockValidationError(
            "Movements on this day span several drums or locations; edit them individually",
            details={"movement_ids": [m.id for m in existing]},
        )
    if subs:
        [(existing_drum, existing_location)] = subs
        if (drum_id and drum_id != existing_drum) or (location_id and location_id != existing_location):
            raise StockValidationError(
                "Day total must use the same drum or location as the existing movements",
                details={"drum_id": existing_drum, "location_id": existing_location},
            )
        drum_id, location_id = existing_drum, existing_location
    elif quantity == 0:
        raise ResourceNotFoundError("Stock movements", f"{item.id} on {day.isoformat()}")
    elif isinstance(item, RawMaterialRef) and not drum_id:
        raise StockValidationError("Raw material movements require a drum")

    movement_date = day_start_utc(day)
    keys = movement_lock_keys(item, drum_id, location_id)
    await acquire_row_locks(db, keys)

    plan = PostingPlan(db)
    counters = await plan.counters(item, drum_id, location_id)
    old_total = _q(sum(m.quantity for m in existing))
    await plan.add(counters, signed_delta(kind, quantity - old_total), movement_date)

    kept: StockMovement | None = None
    if quantity > 0:
        if existing:
            kept = existing[0]
        else:
            kept = StockMovement(
                kind=kind,
                quantity=0.0,
                movement_date=movement_date,
                raw_material_id=item.id if isinstance(item, RawMaterialRef) else None,
                finished_good_id=item.id if isinstance(item, FinishedGoodRef) else None,
                drum_id=drum_id,
                location_id=location_id,
                created_by=actor,
            )
            plan.postings.append(_Posting(counters=counters, movement=kept))
    plan.deleted.extend(m for m in existing if m is not kept)

    plan.verify(InsufficientStockError)
    await plan.verify_history(InsufficientStockError)

    if kept is not None:
        kept.quantity = _q(quantity)
        if description is not None:
            kept.description = description
    await plan.write()

    logger.info(
        "Set %s total for %s on %s: %g -> %g",
        kind.value, counters.label, day.isoformat(), old_total, quantity,
    )
    await log_activity(
        db,
        action="day_total_set" if quantity > 0 else "day_total_cleared",
        entity_type="raw_material" if isinstance(item, RawMaterialRef) else "finished_good",
        entity_id=item.id,
        entity_code=counters.label,
        summary=f"{kind.value} on {day.isoformat()}: {old_total:g} -> {quantity:g}",
        details={"kind": kind.value, "day": day.isoformat(), "before": old_total, "after": quantity},
        actor=actor,
    )
    return _result(kept, counters)


async def delete_movements_by_date(
    db: AsyncSession,
    *,
    item: ItemRef,
    day: date,
    kind: MovementType | str,
    actor: str | None = None,
) -> int:
    """Remove every direct IN or OUT movement of one item and day."""
    kind = _day_cell_kind(kind)
    await acquire_row_locks(db, movement_lock_keys(item, None, None))
    existing = await movements_on_day(db, item, day, kind, for_update=True)
    if not existing:
        raise ResourceNotFoundError("Stock movements", f"{item.id} on {day.isoformat()}")

    total = _q(sum(m.quantity for m in existing))
    plan = await reverse_movements(db, existing)
    label = plan.reversed[0].label

    logger.info("Cleared %s total %g for %s on %s", kind.value, total, label, day.isoformat())
    await log_activity(
        db,
        action="day_total_cleared",
        entity_type="raw_material" if isinstance(item, RawMaterialRef) else "finished_good",
        entity_id=item.id,
        entity_code=label,
        summary=f"Cleared {kind.value} {total:g} on {day.isoformat()}",
        details={"kind": kind.value, "day": day.isoformat(), "removed": len(existing)},
        actor=actor,
    )
    return len(existing)


# ── Drum stock-in ─────────────────────────────────────────────


async def drum_stock_in(
    db: AsyncSession,
    *,
    raw_material_id: str,
    movement_date: date | datetime,
    drums: list[tuple[str, float]],
    description: str | None = None,
    actor: str | None = None,
) -> list[StockMovement]:
    """Receive stock into new labelled drums, one IN movement per drum."""
    if not drums:
        raise StockValidationError("At least one drum is required")
    labels = [label.strip() for label, _ in drums]
    if any(not label for label in labels):
        raise StockValidationError("Drum label is required")
    seen: set[str] = set()
    for label in labels:
        if label in seen:
            raise StockValidationError(f"Drum label {label} appears twice in the request")
        seen.add(label)
    for _, quantity in drums:
        _check_quantity(MovementType.IN, quantity)

    material = await db.get(RawMaterial, raw_material_id)
    if material is None:
        raise ResourceNotFoundError("Raw material", raw_material_id)
    taken = (
        await db.execute(
            select(Drum.label).where(Drum.raw_material_id == material.id, Drum.label.in_(labels))
        )
    ).scalars().all()
    if taken:
        raise StockValidationError(
            f"Drum label already used for {material.code}: {', '.join(sorted(taken))}",
            details={"labels": sorted(taken)},
        )

    new_drums = [
        Drum(raw_material_id=material.id, label=label, current_quantity=0.0, is_active=False)
        for label in labels
    ]
    db.add_all(new_drums)
    await db.flush()

    normalized = normalize_movement_date(movement_date)
    drafts = [
        MovementDraft(
            kind=MovementType.IN,
            item=RawMaterialRef(material.id),
            movement_date=normalized,
            quantity=quantity,
            drum_id=drum.id,
            description=description or "Stock In (Drum)",
            created_by=actor,
        )
        for drum, (_, quantity) in zip(new_drums, drums)
    ]
    movements = await post_movements(db, drafts)

    logger.info("Received %d drum(s) of %s", len(new_drums), material.code)
    await log_activity(
        db,
        action="drum_stock_in",
        entity_type="raw_material",
        entity_id=material.id,
        entity_code=material.code,
        summary=f"Received {len(new_drums)} drum(s), {sum(q for _, q in drums):g} total",
        details={"drums": [
            {"label": label, "quantity": quantity}
            for label, (_, quantity) in zip(labels, drums)
        ]},
        actor=actor,
    )
    return movements


# ── Reads ─────────────────────────────────────────────────────


async def stock_at_date(
    db: AsyncSession,
    item: ItemRef,
    day: date,
    *,
    drum_id: str | None = None,
    location_id: str | None = None,
    exclude_movement_id: str | None = None,
) -> float:
    """Balance at the end of local `day`, replayed from the ledger."""
    _, end = day_bounds_utc(day)
    column = (
        StockMovement.raw_material_id if isinstance(item, RawMaterialRef)
        else StockMovement.finished_good_id
    )
    stmt = select(StockMovement.kind, StockMovement.quantity).where(
        column == item.id, StockMovement.movement_date < end,
    )
    if drum_id:
        stmt = stmt.where(StockMovement.drum_id == drum_id)
    if location_id:
        stmt = stmt.where(StockMovement.location_id == location_id)
    if exclude_movement_id:
        stmt = stmt.where(StockMovement.id != exclude_movement_id)
    rows = (await db.execute(stmt)).all()
    return _q(sum(signed_delta(kind, quantity) for kind, quantity in rows))


async def list_movements(
    db: AsyncSession,
    *,
    item_type: ItemType | None = None,
    item_id: str | None = None,
    kind: MovementType | str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    batch_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    """Ledger rows matching the filters, newest first, with the total count."""
    if item_id and item_type is None:
        raise StockValidationError("item_type is required when filtering by item_id")
    if date_from and date_to and date_from > date_to:
        raise StockValidationError(
            "date_from must not be after date_to",
            details={"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
        )

    conditions = []
    if item_type is not None:
        column = (
            StockMovement.raw_material_id if item_type == ItemType.RAW_MATERIALS
            else StockMovement.finished_good_id
        )
        conditions.append(column == item_id if item_id else column.is_not(None))
    if kind is not None:
        conditions.append(StockMovement.kind == _coerce_kind(kind))
    if date_from is not None:
        conditions.append(StockMovement.movement_date >= day_start_utc(date_from))
    if date_to is not None:
        conditions.append(StockMovement.movement_date < day_bounds_utc(date_to)[1])
    if batch_id is not None:
        conditions.append(StockMovement.batch_id == batch_id)

    total = (
        await db.execute(select(func.count(StockMovement.id)).where(*conditions))
    ).scalar_one()
    rows = (
        await db.execute(
            select(StockMovement)
            .where(*conditions)
            .order_by(StockMovement.movement_date.desc(), StockMovement.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return list(rows), total
