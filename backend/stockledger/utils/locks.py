"""Row locking for stock counters: lock, then re-read.

Two layers, both held until the enclosing transaction ends:

  - a process-local keyed asyncio.Lock per counter row, for stores
    without native row locks (SQLite) and to queue coroutines of this
    process before they reach the database
  - SELECT ... FOR UPDATE on the re-read, for stores that have them
    (PostgreSQL); dialects without FOR UPDATE compile it away

Keys are taken in one global order (table rank, then id) and a session
that already holds a key skips it, so nested engine calls inside a batch
do not deadlock on themselves.  A later acquire_row_locks() call in the
same transaction may only add keys of a higher rank, or drum keys whose
raw material it already holds.

Ledger rows have no key of their own: a movement is only edited or
deleted while its item's aggregate key is held, and is read again after
that key is taken.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, NamedTuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from stockledger.config import settings

logger = logging.getLogger(__name__)

# Batches first, then each aggregate before its sub-allocations
TABLE_RANK = {
    "batches": 0,
    "raw_materials": 1,
    "drums": 2,
    "finished_goods": 3,
    "finished_good_stocks": 4,
}

_SESSION_KEY = "row_locks"


class LockKey(NamedTuple):
    table: str
    row_id: str

    def sort_key(self) -> tuple[int, str]:
        return TABLE_RANK.get(self.table, len(TABLE_RANK)), self.row_id


@dataclass
class _Entry:
    lock: asyncio.Lock
    refs: int = 0


_registry: dict[LockKey, _Entry] = {}


def batch_key(batch_id: str) -> LockKey:
    return LockKey("batches", batch_id)


def raw_material_key(raw_material_id: str) -> LockKey:
    return LockKey("raw_materials", raw_material_id)


def drum_key(drum_id: str) -> LockKey:
    return LockKey("drums", drum_id)


def finished_good_key(finished_good_id: str) -> LockKey:
    return LockKey("finished_goods", finished_good_id)


def location_stock_key(finished_good_id: str, location_id: str) -> LockKey:
    return LockKey("finished_good_stocks", f"{finished_good_id}:{location_id}")


def held_keys(db: AsyncSession) -> set[LockKey]:
    return set(db.info.get(_SESSION_KEY, {}))


async def acquire_row_locks(db: AsyncSession, keys: Iterable[LockKey]) -> None:
    """Block until this session holds every key.

    Starts the session's transaction first so the release hook is
    guaranteed to fire.
    """
    await db.connection()
    if not settings.process_row_locks:
        return

    held: dict[LockKey, _Entry] = db.info.setdefault(_SESSION_KEY, {})
    for key in sorted(set(keys), key=LockKey.sort_key):
        if key in held:
            continue
        entry = _registry.get(key)
        if entry is None:
            entry = _registry[key] = _Entry(lock=asyncio.Lock())
        entry.refs += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            _drop_ref(key, entry)
            raise
        held[key] = entry


def _drop_ref(key: LockKey, entry: _Entry) -> None:
    entry.refs -= 1
    if entry.refs <= 0 and _registry.get(key) is entry:
        del _registry[key]


def release_row_locks(session: Session) -> None:
    held: dict[LockKey, _Entry] = session.info.pop(_SESSION_KEY, {})
    for key, entry in held.items():
        entry.lock.release()
        _drop_ref(key, entry)
    if held:
        logger.debug("Released %d row lock(s)", len(held))


@event.listens_for(Session, "after_transaction_end")
def _release_on_transaction_end(session, transaction):
    # Savepoints end inside the outer transaction; only the root releases
    if transaction.parent is None:
        release_row_locks(session)


async def reread_for_update(db: AsyncSession, stmt: Select) -> list:
    """Execute `stmt` as a locking read that refreshes identity-map rows."""
    result = await db.execute(
        stmt.with_for_update().execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
