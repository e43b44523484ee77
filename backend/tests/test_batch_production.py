"""Batch production tests: consumption, outputs, reversal."""

from datetime import date

import pytest
from sqlalchemy import func, select

from stockledger.middleware.exceptions import (
    AlreadyAttachedError,
    BatchLinkedError,
    DuplicateReferenceError,
    InsufficientStockError,
    NegativeStockError,
    ResourceNotFoundError,
    StockValidationError,
)
from stockledger.models import Batch, BatchUsage, MovementType, StockMovement
from stockledger.models.batch import BATCH_COMPLETED, BATCH_IN_PROGRESS
from stockledger.schemas.batch import (
    AttachFinishedGoods,
    BatchCreate,
    BatchUpdate,
    ConsumptionLine,
    DrumDraw,
    ProductionLine,
)
from stockledger.services.batch_production import (
    attach_finished_goods,
    create_batch,
    delete_batch,
    get_batch,
    list_batches,
    update_batch,
)
from stockledger.services.item_ref import FinishedGoodRef, RawMaterialRef
from stockledger.services.stock_ledger import (
    apply_movement,
    apply_movements_by_date,
    delete_movement,
    movements_on_day,
    update_movement,
)
from stockledger.utils.timezone import to_local_day


async def _count(db, column) -> int:
    return (await db.execute(select(func.count(column)))).scalar()


async def _receive(db, material, drum, quantity, day=date(2024, 1, 5)):
    await apply_movement(
        db, kind=MovementType.IN, item=RawMaterialRef(material.id),
        movement_date=day, quantity=quantity, drum_id=drum.id,
    )


def _from_drum(stock, quantity, code="B1", day=date(2024, 1, 10)) -> BatchCreate:
    return BatchCreate(
        code=code,
        batch_date=day,
        consumption=[
            ConsumptionLine(
                raw_material_id=stock.material.id,
                drums=[DrumDraw(drum_id=stock.d1.id, quantity=quantity)],
            ),
        ],
    )


# ── Creating a batch ─────────────────────────────────────────────

@pytest.mark.asyncio
class TestCreateBatch:

    async def test_consumes_drum_stock(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 100)

        batch = await create_batch(db_session, _from_drum(stock, 30), actor="bob")

        assert stock.material.current_stock == 70
        assert stock.d1.current_quantity == 70
        assert batch.status == BATCH_IN_PROGRESS
        assert batch.created_by == "bob"
        assert [(u.drum_id, u.quantity) for u in batch.usages] == [(stock.d1.id, 30)]

        movements = (
            await db_session.execute(select(StockMovement).where(StockMovement.batch_id == batch.id))
        ).scalars().all()
        assert len(movements) == 1
        assert movements[0].kind == MovementType.OUT
        assert movements[0].description == "Batch production: B1"
        assert to_local_day(movements[0].movement_date) == date(2024, 1, 10)
        await assert_ledger_consistent()

    async def test_batch_movement_cannot_be_edited_directly(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))
        _, [movement] = await get_batch(db_session, batch.id)

        with pytest.raises(BatchLinkedError):
            await delete_movement(db_session, movement.id)
        with pytest.raises(BatchLinkedError):
            await update_movement(db_session, movement.id, {"quantity": 10})
        assert stock.material.current_stock == 70

    async def test_fifo_draws_oldest_drum_first(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 30)
        await _receive(db_session, stock.material, stock.d2, 50)

        batch = await create_batch(db_session, BatchCreate(
            code="B-FIFO",
            batch_date=date(2024, 1, 10),
            consumption=[ConsumptionLine(raw_material_id=stock.material.id, quantity=40)],
        ))

        draws = {u.drum_id: u.quantity for u in batch.usages}
        assert draws == {stock.d1.id: 30, stock.d2.id: 10}
        assert stock.d1.current_quantity == 0
        assert stock.d1.is_active is False
        assert stock.d2.current_quantity == 40
        assert stock.material.current_stock == 40
        await assert_ledger_consistent()

    async def test_fifo_short_of_stock_creates_nothing(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 30)
        await _receive(db_session, stock.material, stock.d2, 50)

        with pytest.raises(InsufficientStockError) as exc_info:
            await create_batch(db_session, BatchCreate(
                code="B-SHORT",
                batch_date=date(2024, 1, 10),
                consumption=[ConsumptionLine(raw_material_id=stock.material.id, quantity=100)],
            ))

        assert exc_info.value.available == 80
        assert await _count(db_session, Batch.id) == 0
        assert stock.material.current_stock == 80

    async def test_one_failing_line_fails_whole_batch(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 10)
        await _receive(db_session, stock.other, stock.other_drum, 20)

        with pytest.raises(InsufficientStockError):
            await create_batch(db_session, BatchCreate(
                code="B-MIXED",
                batch_date=date(2024, 1, 10),
                consumption=[
                    ConsumptionLine(
                        raw_material_id=stock.other.id,
                        drums=[DrumDraw(drum_id=stock.other_drum.id, quantity=5)],
                    ),
                    ConsumptionLine(
                        raw_material_id=stock.material.id,
                        drums=[DrumDraw(drum_id=stock.d1.id, quantity=11)],
                    ),
                ],
            ))

        assert await _count(db_session, Batch.id) == 0
        assert await _count(db_session, BatchUsage.id) == 0
        assert stock.other.current_stock == 20
        assert stock.other_drum.current_quantity == 20
        assert stock.material.current_stock == 10

    async def test_consumption_before_stock_arrived_rejected(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100, day=date(2024, 1, 20))

        with pytest.raises(InsufficientStockError):
            await create_batch(db_session, _from_drum(stock, 30, day=date(2024, 1, 10)))
        assert await _count(db_session, Batch.id) == 0

    async def test_same_raw_material_twice_rejected(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        body = BatchCreate(
            code="B-DUP",
            batch_date=date(2024, 1, 10),
            consumption=[
                ConsumptionLine(raw_material_id=stock.material.id, quantity=5),
                ConsumptionLine(raw_material_id=stock.material.id, quantity=5),
            ],
        )
        with pytest.raises(DuplicateReferenceError):
            await create_batch(db_session, body)

    async def test_same_drum_twice_rejected(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        body = BatchCreate(
            code="B-DUP",
            batch_date=date(2024, 1, 10),
            consumption=[
                ConsumptionLine(
                    raw_material_id=stock.material.id,
                    drums=[
                        DrumDraw(drum_id=stock.d1.id, quantity=5),
                        DrumDraw(drum_id=stock.d1.id, quantity=5),
                    ],
                ),
            ],
        )
        with pytest.raises(DuplicateReferenceError):
            await create_batch(db_session, body)
        assert stock.d1.current_quantity == 100

    async def test_line_needs_drums_or_quantity(self, db_session, stock):
        body = BatchCreate(
            code="B-BAD",
            batch_date=date(2024, 1, 10),
            consumption=[ConsumptionLine(raw_material_id=stock.material.id)],
        )
        with pytest.raises(StockValidationError):
            await create_batch(db_session, body)

    async def test_drum_of_another_material_rejected(self, db_session, stock):
        await _receive(db_session, stock.other, stock.other_drum, 20)
        body = BatchCreate(
            code="B-WRONG",
            batch_date=date(2024, 1, 10),
            consumption=[
                ConsumptionLine(
                    raw_material_id=stock.material.id,
                    drums=[DrumDraw(drum_id=stock.other_drum.id, quantity=5)],
                ),
            ],
        )
        with pytest.raises(StockValidationError):
            await create_batch(db_session, body)
        assert stock.other_drum.current_quantity == 20

    async def test_duplicate_code_rejected(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        await create_batch(db_session, _from_drum(stock, 10))

        with pytest.raises(StockValidationError):
            await create_batch(db_session, _from_drum(stock, 10))
        assert stock.material.current_stock == 90

    async def test_day_total_edits_skip_batch_movements(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        await create_batch(db_session, _from_drum(stock, 30))
        ref = RawMaterialRef(stock.material.id)

        await apply_movements_by_date(
            db_session, item=ref, day=date(2024, 1, 10), kind="OUT", quantity=10,
            drum_id=stock.d1.id,
        )

        direct = await movements_on_day(db_session, ref, date(2024, 1, 10), "OUT")
        every = await movements_on_day(db_session, ref, date(2024, 1, 10), "OUT", include_batch=True)
        assert [m.quantity for m in direct] == [10]
        assert len(every) == 2
        assert stock.material.current_stock == 60


# ── Attaching finished goods ─────────────────────────────────────

@pytest.mark.asyncio
class TestAttachFinishedGoods:

    async def _batch(self, db, stock):
        await _receive(db, stock.material, stock.d1, 100)
        return await create_batch(db, _from_drum(stock, 30))

    async def test_credits_outputs_and_completes(self, db_session, stock, assert_ledger_consistent):
        batch = await self._batch(db_session, stock)

        batch = await attach_finished_goods(db_session, batch.id, AttachFinishedGoods(lines=[
            ProductionLine(finished_good_id=stock.good.id, quantity=12, location_id=stock.warehouse.id),
            ProductionLine(finished_good_id=stock.good_b.id, quantity=5),
        ]))

        assert batch.status == BATCH_COMPLETED
        assert len(batch.finished_goods) == 2
        assert stock.good.current_stock == 12
        assert stock.good_b.current_stock == 5

        _, movements = await get_batch(db_session, batch.id)
        outputs = [m for m in movements if m.kind == MovementType.IN]
        assert len(outputs) == 2
        assert all(to_local_day(m.movement_date) == date(2024, 1, 10) for m in outputs)
        assert all(m.description == "Batch output: B1" for m in outputs)
        await assert_ledger_consistent()

    async def test_second_attachment_rejected(self, db_session, stock):
        batch = await self._batch(db_session, stock)
        lines = AttachFinishedGoods(lines=[ProductionLine(finished_good_id=stock.good.id, quantity=12)])
        await attach_finished_goods(db_session, batch.id, lines)

        with pytest.raises(AlreadyAttachedError):
            await attach_finished_goods(db_session, batch.id, lines)
        assert stock.good.current_stock == 12

    async def test_same_good_twice_rejected(self, db_session, stock):
        batch = await self._batch(db_session, stock)
        with pytest.raises(DuplicateReferenceError):
            await attach_finished_goods(db_session, batch.id, AttachFinishedGoods(lines=[
                ProductionLine(finished_good_id=stock.good.id, quantity=1),
                ProductionLine(finished_good_id=stock.good.id, quantity=2),
            ]))
        assert stock.good.current_stock == 0

    async def test_unknown_batch_and_good(self, db_session, stock):
        lines = AttachFinishedGoods(lines=[ProductionLine(finished_good_id=stock.good.id, quantity=1)])
        with pytest.raises(ResourceNotFoundError):
            await attach_finished_goods(db_session, "missing", lines)

        batch = await self._batch(db_session, stock)
        with pytest.raises(ResourceNotFoundError):
            await attach_finished_goods(db_session, batch.id, AttachFinishedGoods(lines=[
                ProductionLine(finished_good_id="missing", quantity=1),
            ]))


# ── Editing a batch ──────────────────────────────────────────────

async def _batch_movements(db, batch_id) -> list[StockMovement]:
    _, movements = await get_batch(db, batch_id)
    return movements


@pytest.mark.asyncio
class TestUpdateBatch:

    async def test_rename_keeps_stock(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))

        batch = await update_batch(
            db_session, batch.id, BatchUpdate(code="B1-R", description="Second run"), actor="carol",
        )

        assert batch.code == "B1-R"
        assert batch.description == "Second run"
        assert stock.material.current_stock == 70
        [movement] = await _batch_movements(db_session, batch.id)
        assert movement.description == "Batch production: B1-R"
        await assert_ledger_consistent()

    async def test_code_must_stay_unique(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        first = await create_batch(db_session, _from_drum(stock, 10, code="B1"))
        second = await create_batch(db_session, _from_drum(stock, 10, code="B2"))

        with pytest.raises(StockValidationError):
            await update_batch(db_session, second.id, BatchUpdate(code="B1"))

        kept = await update_batch(db_session, first.id, BatchUpdate(code="B1"))
        assert kept.code == "B1"

    async def test_new_consumption_replaces_usages(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))

        batch = await update_batch(db_session, batch.id, BatchUpdate(consumption=[
            ConsumptionLine(
                raw_material_id=stock.material.id,
                drums=[DrumDraw(drum_id=stock.d1.id, quantity=50)],
            ),
        ]))

        assert [(u.drum_id, u.quantity) for u in batch.usages] == [(stock.d1.id, 50)]
        assert stock.material.current_stock == 50
        assert stock.d1.current_quantity == 50
        assert [m.quantity for m in await _batch_movements(db_session, batch.id)] == [50]
        assert await _count(db_session, BatchUsage.id) == 1
        await assert_ledger_consistent()

    async def test_fifo_counts_stock_freed_by_old_usages(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 30)
        await _receive(db_session, stock.material, stock.d2, 50)
        batch = await create_batch(db_session, _from_drum(stock, 30))
        assert stock.d1.is_active is False

        batch = await update_batch(db_session, batch.id, BatchUpdate(consumption=[
            ConsumptionLine(raw_material_id=stock.material.id, quantity=40),
        ]))

        assert {u.drum_id: u.quantity for u in batch.usages} == {stock.d1.id: 30, stock.d2.id: 10}
        assert stock.d1.current_quantity == 0
        assert stock.d2.current_quantity == 40
        assert stock.material.current_stock == 40
        await assert_ledger_consistent()

    async def test_short_consumption_changes_nothing(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))

        with pytest.raises(InsufficientStockError):
            await update_batch(db_session, batch.id, BatchUpdate(
                code="B1-BIG",
                consumption=[ConsumptionLine(
                    raw_material_id=stock.material.id,
                    drums=[DrumDraw(drum_id=stock.d1.id, quantity=150)],
                )],
            ))

        assert stock.material.current_stock == 70
        assert stock.d1.current_quantity == 70
        reloaded, movements = await get_batch(db_session, batch.id)
        assert reloaded.code == "B1"
        assert [(u.drum_id, u.quantity) for u in reloaded.usages] == [(stock.d1.id, 30)]
        assert [m.quantity for m in movements] == [30]

    async def test_new_date_moves_every_movement(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))
        await attach_finished_goods(db_session, batch.id, AttachFinishedGoods(lines=[
            ProductionLine(finished_good_id=stock.good.id, quantity=12, location_id=stock.warehouse.id),
        ]))

        batch = await update_batch(db_session, batch.id, BatchUpdate(batch_date=date(2024, 1, 12)))

        assert to_local_day(batch.batch_date) == date(2024, 1, 12)
        assert batch.status == BATCH_COMPLETED
        movements = await _batch_movements(db_session, batch.id)
        assert len(movements) == 2
        assert all(to_local_day(m.movement_date) == date(2024, 1, 12) for m in movements)
        assert stock.material.current_stock == 70
        assert stock.good.current_stock == 12
        assert [(u.drum_id, u.quantity) for u in batch.usages] == [(stock.d1.id, 30)]
        await assert_ledger_consistent()

    async def test_later_date_after_outputs_were_shipped_rejected(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))
        await attach_finished_goods(db_session, batch.id, AttachFinishedGoods(lines=[
            ProductionLine(finished_good_id=stock.good.id, quantity=12),
        ]))
        await apply_movement(
            db_session, kind=MovementType.OUT, item=FinishedGoodRef(stock.good.id),
            movement_date=date(2024, 1, 11), quantity=10,
        )

        with pytest.raises(InsufficientStockError) as exc_info:
            await update_batch(db_session, batch.id, BatchUpdate(batch_date=date(2024, 1, 15)))

        assert "2024-01-11" in exc_info.value.message
        reloaded, _ = await get_batch(db_session, batch.id)
        assert to_local_day(reloaded.batch_date) == date(2024, 1, 10)
        assert stock.good.current_stock == 2

    async def test_empty_or_cleared_fields_rejected(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))

        with pytest.raises(StockValidationError):
            await update_batch(db_session, batch.id, BatchUpdate())
        with pytest.raises(StockValidationError):
            await update_batch(db_session, batch.id, BatchUpdate(code=None))
        with pytest.raises(DuplicateReferenceError):
            await update_batch(db_session, batch.id, BatchUpdate(consumption=[
                ConsumptionLine(raw_material_id=stock.material.id, quantity=5),
                ConsumptionLine(raw_material_id=stock.material.id, quantity=5),
            ]))

    async def test_unknown_batch(self, db_session, stock):
        with pytest.raises(ResourceNotFoundError):
            await update_batch(db_session, "missing", BatchUpdate(description="x"))


# ── Deleting a batch ─────────────────────────────────────────────

@pytest.mark.asyncio
class TestDeleteBatch:

    async def test_restores_consumed_stock(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))

        await delete_batch(db_session, batch.id)

        assert stock.material.current_stock == 100
        assert stock.d1.current_quantity == 100
        assert await _count(db_session, Batch.id) == 0
        assert await _count(db_session, BatchUsage.id) == 0
        assert await _count(db_session, StockMovement.batch_id) == 0
        await assert_ledger_consistent()

    async def test_reverses_outputs_too(self, db_session, stock, assert_ledger_consistent):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))
        await attach_finished_goods(db_session, batch.id, AttachFinishedGoods(lines=[
            ProductionLine(finished_good_id=stock.good.id, quantity=12, location_id=stock.warehouse.id),
        ]))

        await delete_batch(db_session, batch.id)

        assert stock.good.current_stock == 0
        assert stock.material.current_stock == 100
        await assert_ledger_consistent()

    async def test_shipped_outputs_block_deletion(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        batch = await create_batch(db_session, _from_drum(stock, 30))
        await attach_finished_goods(db_session, batch.id, AttachFinishedGoods(lines=[
            ProductionLine(finished_good_id=stock.good.id, quantity=12),
        ]))
        await apply_movement(
            db_session, kind=MovementType.OUT, item=FinishedGoodRef(stock.good.id),
            movement_date=date(2024, 1, 11), quantity=10,
        )

        with pytest.raises(NegativeStockError):
            await delete_batch(db_session, batch.id)

        assert await _count(db_session, Batch.id) == 1
        assert stock.good.current_stock == 2
        assert stock.material.current_stock == 70

    async def test_unknown_batch(self, db_session, stock):
        with pytest.raises(ResourceNotFoundError):
            await delete_batch(db_session, "missing")


# ── Reads ────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestBatchReads:

    async def test_list_newest_first(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        await create_batch(db_session, _from_drum(stock, 10, code="B1", day=date(2024, 1, 10)))
        await create_batch(db_session, _from_drum(stock, 10, code="B2", day=date(2024, 1, 12)))

        batches, total = await list_batches(db_session, limit=1)

        assert total == 2
        assert [b.code for b in batches] == ["B2"]

    async def test_get_includes_movements(self, db_session, stock):
        await _receive(db_session, stock.material, stock.d1, 100)
        created = await create_batch(db_session, _from_drum(stock, 10))

        batch, movements = await get_batch(db_session, created.id)

        assert batch.code == "B1"
        assert [m.quantity for m in movements] == [10]

    async def test_get_unknown(self, db_session, stock):
        with pytest.raises(ResourceNotFoundError):
            await get_batch(db_session, "missing")
