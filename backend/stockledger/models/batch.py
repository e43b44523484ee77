"""Batch: one production run.

Creation consumes drum stock (one BatchUsage + one OUT movement per
drum); finished goods are attached once, later, as BatchFinishedGood rows
with matching IN movements.

Lifecycle:  in_progress → completed
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.database import Base

BATCH_IN_PROGRESS = "in_progress"
BATCH_COMPLETED = "completed"


class Batch(Base):
    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    batch_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text)

    # in_progress | completed
    status: Mapped[str] = mapped_column(String(20), default=BATCH_IN_PROGRESS, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    usages = relationship(
        "BatchUsage", lazy="selectin", cascade="all, delete-orphan",
    )
    finished_goods = relationship(
        "BatchFinishedGood", lazy="selectin", cascade="all, delete-orphan",
    )


class BatchUsage(Base):
    """Raw material drawn from one drum by a batch."""
    __tablename__ = "batch_usages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    raw_material_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("raw_materials.id"), nullable=False
    )
    drum_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("drums.id"), nullable=False
    )
    quantity: Mapped[float] = mapped_column(Float, nullable=False)


class BatchFinishedGood(Base):
    """Finished good produced by a batch."""
    __tablename__ = "batch_finished_goods"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=False, index=True
    )
    finished_good_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("finished_goods.id"), nullable=False
    )
    location_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("locations.id")
    )
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
