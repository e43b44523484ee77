"""Audit-trail writer used by every stock-changing service.

Entries join the caller's session and commit or roll back with the stock
change they describe; nothing is flushed here.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from stockledger.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


async def log_activity(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    entity_code: str | None = None,
    summary: str | None = None,
    details: dict | None = None,
    actor: str | None = None,
) -> ActivityLog:
    """Queue one ActivityLog row, e.g.

        await log_activity(db, action="batch_created", entity_type="batch",
                           entity_id=batch.id, entity_code=batch.code, actor=actor)
    """
    entry = ActivityLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_code=entity_code,
        summary=summary,
        details=details,
    )
    db.add(entry)
    logger.debug("Activity %s on %s %s by %s", action, entity_type, entity_code or entity_id, actor or "-")
    return entry
