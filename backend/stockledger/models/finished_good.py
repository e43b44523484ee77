"""FinishedGood, Location and per-location stock.

FinishedGood.current_stock is the aggregate across every location plus
the unlocated pool (stock moved without naming a location).  The sum of
FinishedGoodStock.quantity for one good never exceeds its aggregate.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.database import Base


class FinishedGood(Base):
    __tablename__ = "finished_goods"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    unit: Mapped[str | None] = mapped_column(String(20))

    current_stock: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    location_stocks = relationship(
        "FinishedGoodStock", back_populates="finished_good", lazy="selectin",
    )


class Location(Base):
    __tablename__ = "locations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class FinishedGoodStock(Base):
    """Quantity of one finished good held at one location."""
    __tablename__ = "finished_good_stocks"
    __table_args__ = (
        UniqueConstraint("finished_good_id", "location_id", name="uq_finished_good_location"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    finished_good_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("finished_goods.id"), nullable=False, index=True
    )
    location_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("locations.id"), nullable=False, index=True
    )
    quantity: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    finished_good = relationship("FinishedGood", back_populates="location_stocks")
    location = relationship("Location", lazy="selectin")
