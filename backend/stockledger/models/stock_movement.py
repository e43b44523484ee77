"""StockMovement: the append-only ledger and source of truth.

IN and OUT quantities are positive magnitudes; the sign comes from the
kind.  ADJUSTMENT quantities are signed.  movement_date holds the local
calendar day (report timezone) as a naive UTC timestamp of its midnight.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint, DateTime, Enum as SAEnum, Float, ForeignKey, Index,
    String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.database import Base


class MovementType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUSTMENT = "ADJUSTMENT"


class StockMovement(Base):
    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint(
            "(raw_material_id IS NULL) <> (finished_good_id IS NULL)",
            name="ck_movement_one_item",
        ),
        Index("ix_stock_movements_rm_date", "raw_material_id", "movement_date"),
        Index("ix_stock_movements_fg_date", "finished_good_id", "movement_date"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    kind: Mapped[MovementType] = mapped_column(SAEnum(MovementType), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    movement_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text)

    # ── Item (exactly one) ───────────────────────────────────
    raw_material_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("raw_materials.id")
    )
    finished_good_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("finished_goods.id")
    )

    # ── Sub-allocation ───────────────────────────────────────
    drum_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("drums.id"), index=True
    )
    location_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("locations.id"), index=True
    )

    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("batches.id"), index=True
    )

    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    @property
    def signed_quantity(self) -> float:
        if self.kind == MovementType.OUT:
            return -self.quantity
        return self.quantity
