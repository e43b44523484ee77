"""ActivityLog: immutable audit trail for stock changes.

Written in the same transaction as the change it describes, so a rolled
back operation leaves no entry behind.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.database import Base


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Who ────────────────────────────────────────────────────
    # Supplied by the auth layer in front of the service; may be absent
    actor: Mapped[str | None] = mapped_column(String(100), index=True)

    # ── What ───────────────────────────────────────────────────
    # movement_created | movement_updated | movement_deleted |
    # stock_adjusted | day_total_set | day_total_cleared | drum_stock_in |
    # batch_created | finished_goods_attached | batch_deleted
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # ── Target ─────────────────────────────────────────────────
    # stock_movement | raw_material | finished_good | batch
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(36))
    entity_code: Mapped[str | None] = mapped_column(String(100))

    # ── Context ────────────────────────────────────────────────
    summary: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )
