"""Tagged item references.

A movement targets exactly one item.  Instead of passing a pair of
nullable ids around, services take an ItemRef, which is one of two frozen
types and so can never be "both" or "neither".
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from stockledger.middleware.exceptions import StockValidationError


class ItemType(str, enum.Enum):
    RAW_MATERIALS = "raw-materials"
    FINISHED_GOODS = "finished-goods"


@dataclass(frozen=True)
class RawMaterialRef:
    id: str

    item_type = ItemType.RAW_MATERIALS


@dataclass(frozen=True)
class FinishedGoodRef:
    id: str

    item_type = ItemType.FINISHED_GOODS


ItemRef = Union[RawMaterialRef, FinishedGoodRef]


def item_ref(item_type: ItemType | str, item_id: str) -> ItemRef:
    try:
        item_type = ItemType(item_type)
    except ValueError:
        raise StockValidationError(
            f"Unknown item type: {item_type}",
            details={"allowed": [t.value for t in ItemType]},
        )
    if not item_id:
        raise StockValidationError("Item id is required")
    if item_type is ItemType.RAW_MATERIALS:
        return RawMaterialRef(item_id)
    return FinishedGoodRef(item_id)


def ref_of(movement) -> ItemRef:
    """ItemRef of a stored movement row."""
    if movement.raw_material_id is not None:
        return RawMaterialRef(movement.raw_material_id)
    return FinishedGoodRef(movement.finished_good_id)
