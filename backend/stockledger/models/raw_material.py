"""RawMaterial and Drum.

A RawMaterial's current_stock is a cached projection of the movement
ledger.  Raw materials are always drum-tracked: every unit of stock sits
in exactly one Drum, so current_stock equals the sum of its drums'
current_quantity.  A drum is retired (is_active = False) when it empties
and comes back to life if stock is returned to it.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, String, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.database import Base


class RawMaterial(Base):
    __tablename__ = "raw_materials"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(20))
    reorder_threshold: Mapped[float] = mapped_column(Float, default=0)

    # Maintained only by the movement engine
    current_stock: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    drums = relationship(
        "Drum", back_populates="raw_material", lazy="selectin",
        order_by="Drum.created_at",
    )


class Drum(Base):
    __tablename__ = "drums"
    __table_args__ = (
        UniqueConstraint("raw_material_id", "label", name="uq_drum_label_per_material"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    raw_material_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("raw_materials.id"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(String(100), nullable=False)

    current_quantity: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    raw_material = relationship("RawMaterial", back_populates="drums")
