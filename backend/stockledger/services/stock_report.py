"""Daily stock report, replayed from the movement ledger.

Nothing is cached: every call loads the item list and its movements up
to the end of the requested month, then walks the days of that month in
the report timezone.

    opening  = Σ signed movements dated before the 1st
    day d    = IN-equivalent (IN + positive ADJUSTMENT)
               OUT-equivalent (OUT + |negative ADJUSTMENT|)
    metric   = stok-awal (balance before d) | stok-masuk (IN total)
               stok-keluar (OUT total) | stok-sisa (balance after d)

Day columns run to the last day of a past month, to today in the current
month, and are empty for a future month.
"""

from __future__ import annotations

import calendar
import logging
from collections import defaultdict
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.config import settings
from stockledger.middleware.exceptions import ResourceNotFoundError, StockValidationError
from stockledger.models.finished_good import FinishedGood, Location
from stockledger.models.raw_material import RawMaterial
from stockledger.models.stock_movement import MovementType, StockMovement
from stockledger.schemas.report import (
    ReportCell,
    ReportMeta,
    ReportMetric,
    ReportRow,
    StockReport,
)
from stockledger.services.item_ref import ItemType
from stockledger.utils.timezone import day_start_utc, local_today, to_local_day

logger = logging.getLogger(__name__)


def _q(value: float) -> float:
    return round(value, 6)


def _coerce(enum_cls, value, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise StockValidationError(
            f"Unknown {what}: {value}",
            details={"allowed": [v.value for v in enum_cls]},
        )


def visible_days(year: int, month: int, today: date) -> int:
    """Number of day columns for a month as of `today`."""
    days_in_month = calendar.monthrange(year, month)[1]
    if (year, month) == (today.year, today.month):
        return today.day
    if (year, month) > (today.year, today.month):
        return 0
    return days_in_month


def _split(kind: MovementType, quantity: float) -> tuple[float, float, bool]:
    """(in, out, is_adjustment) contribution of one movement."""
    if kind == MovementType.IN:
        return quantity, 0.0, False
    if kind == MovementType.OUT:
        return 0.0, quantity, False
    if quantity >= 0:
        return quantity, 0.0, True
    return 0.0, -quantity, True


async def reconstruct_report(
    db: AsyncSession,
    *,
    year: int,
    month: int,
    item_type: ItemType | str,
    metric: ReportMetric | str,
    location_id: str | None = None,
    today: date | None = None,
) -> StockReport:
    """Per-item, per-day table for one month.

    Items with no opening stock and no movement in the month are left
    out; every other item is kept even if all its values are zero.
    """
    # ── Validate selectors before any read ───────────────────
    if not 1 <= month <= 12:
        raise StockValidationError("Month must be between 1 and 12", details={"month": month})
    if not settings.report_min_year <= year <= settings.report_max_year:
        raise StockValidationError(
            f"Year must be between {settings.report_min_year} and {settings.report_max_year}",
            details={"year": year},
        )
    item_type = _coerce(ItemType, item_type, "item type")
    metric = _coerce(ReportMetric, metric, "report metric")
    if location_id and item_type is not ItemType.FINISHED_GOODS:
        raise StockValidationError("Location filter only applies to finished goods")

    today = today or local_today()
    days_in_month = calendar.monthrange(year, month)[1]
    current_day = visible_days(year, month, today)
    month_start = date(year, month, 1)
    month_end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)

    # ── Load items and their movements ───────────────────────
    if item_type is ItemType.RAW_MATERIALS:
        items = (
            await db.execute(select(RawMaterial).order_by(RawMaterial.code))
        ).scalars().all()
        item_column = StockMovement.raw_material_id
    else:
        if location_id and await db.get(Location, location_id) is None:
            raise ResourceNotFoundError("Location", location_id)
        items = (
            await db.execute(select(FinishedGood).order_by(FinishedGood.name))
        ).scalars().all()
        item_column = StockMovement.finished_good_id

    stmt = (
        select(item_column, StockMovement.movement_date, StockMovement.kind, StockMovement.quantity)
        .where(item_column.is_not(None), StockMovement.movement_date < day_start_utc(month_end))
        .order_by(StockMovement.movement_date, StockMovement.created_at, StockMovement.id)
    )
    if location_id:
        stmt = stmt.where(StockMovement.location_id == location_id)

    history: dict[str, list[tuple[date, MovementType, float]]] = defaultdict(list)
    for item_id, movement_date, kind, quantity in (await db.execute(stmt)).all():
        history[item_id].append((to_local_day(movement_date), kind, quantity))

    # ── Replay ───────────────────────────────────────────────
    rows: list[ReportRow] = []
    for item in items:
        opening = 0.0
        daily: dict[int, list[float]] = defaultdict(lambda: [0.0, 0.0, 0.0])
        moved_in_month = False
        for day, kind, quantity in history.get(item.id, []):
            if day < month_start:
                opening += -quantity if kind == MovementType.OUT else quantity
            elif day < month_end:
                moved_in_month = True
                in_qty, out_qty, adjusted = _split(kind, quantity)
                cell = daily[day.day]
                cell[0] += in_qty
                cell[1] += out_qty
                if adjusted:
                    cell[2] = 1.0

        opening = _q(opening)
        if abs(opening) < 1e-9 and not moved_in_month:
            continue

        running = opening
        cells: list[ReportCell] = []
        for day_number in range(1, current_day + 1):
            in_qty, out_qty, adjusted = daily.get(day_number, (0.0, 0.0, 0.0))
            before = running
            running = _q(running + in_qty - out_qty)
            if metric is ReportMetric.OPENING:
                value = before
            elif metric is ReportMetric.IN:
                value = _q(in_qty)
            elif metric is ReportMetric.OUT:
                value = _q(out_qty)
            else:
                value = running
            cells.append(ReportCell(day=day_number, value=value, has_adjustment=bool(adjusted)))

        rows.append(ReportRow(
            item_id=item.id,
            code=getattr(item, "code", None),
            name=item.name,
            unit=item.unit,
            opening_stock=opening,
            days=cells,
        ))

    logger.debug(
        "Report %s %s %04d-%02d: %d row(s), %d day(s)",
        item_type.value, metric.value, year, month, len(rows), current_day,
    )
    return StockReport(
        meta=ReportMeta(
            year=year,
            month=month,
            item_type=item_type,
            metric=metric,
            location_id=location_id,
            days_in_month=days_in_month,
            current_day=current_day,
        ),
        rows=rows,
    )


async def available_report_years(
    db: AsyncSession,
    item_type: ItemType | str,
    *,
    today: date | None = None,
) -> list[int]:
    """Calendar years with at least one movement, plus the current year."""
    item_type = _coerce(ItemType, item_type, "item type")
    column = (
        StockMovement.raw_material_id if item_type is ItemType.RAW_MATERIALS
        else StockMovement.finished_good_id
    )
    dates = (
        await db.execute(
            select(StockMovement.movement_date).where(column.is_not(None)).distinct()
        )
    ).scalars().all()
    years = {to_local_day(d).year for d in dates}
    years.add((today or local_today()).year)
    return sorted(years, reverse=True)


async def available_report_dates(
    db: AsyncSession,
    item_type: ItemType | str | None = None,
    *,
    today: date | None = None,
) -> list[tuple[int, list[int]]]:
    """(year, months) pairs that have movements, oldest year first.

    With no movements at all, the current month is the only entry.
    """
    stmt = select(StockMovement.movement_date).distinct()
    if item_type is not None:
        item_type = _coerce(ItemType, item_type, "item type")
        column = (
            StockMovement.raw_material_id if item_type is ItemType.RAW_MATERIALS
            else StockMovement.finished_good_id
        )
        stmt = stmt.where(column.is_not(None))
    dates = (await db.execute(stmt)).scalars().all()

    months: dict[int, set[int]] = defaultdict(set)
    for value in dates:
        day = to_local_day(value)
        months[day.year].add(day.month)
    if not months:
        current = today or local_today()
        months[current.year].add(current.month)
    return [(year, sorted(months[year])) for year in sorted(months)]
