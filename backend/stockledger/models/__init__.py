"""Aggregate model imports for Alembic auto-detection and create_all."""

# ── Items and sub-allocations ────────────────────────────────
from stockledger.models.raw_material import RawMaterial, Drum
from stockledger.models.finished_good import FinishedGood, FinishedGoodStock, Location

# ── Ledger ───────────────────────────────────────────────────
from stockledger.models.stock_movement import MovementType, StockMovement

# ── Production ───────────────────────────────────────────────
from stockledger.models.batch import Batch, BatchFinishedGood, BatchUsage

# ── Audit ────────────────────────────────────────────────────
from stockledger.models.activity_log import ActivityLog

__all__ = [
    "RawMaterial", "Drum",
    "FinishedGood", "FinishedGoodStock", "Location",
    "MovementType", "StockMovement",
    "Batch", "BatchUsage", "BatchFinishedGood",
    "ActivityLog",
]
