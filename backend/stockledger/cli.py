"""Management CLI.

Usage:
    python -m stockledger.cli init-db       # Create all tables (dev / SQLite)
    python -m stockledger.cli audit-stock   # Read-only ledger audit, exit 1 on discrepancies
"""

import asyncio
import sys

from sqlalchemy import create_engine

from stockledger.config import settings
from stockledger.database import Base, async_session, engine
from stockledger.logging_config import setup_logging
import stockledger.models  # noqa: F401  (register tables)
from stockledger.services.consistency import audit_ledger


def init_db():
    """Create every table on the sync URL; use Alembic for real deployments."""
    sync_engine = create_engine(settings.database_url_sync)
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    print(f"  Created {len(Base.metadata.tables)} table(s)")


async def _audit() -> int:
    async with async_session() as session:
        found = await audit_ledger(session)
    await engine.dispose()

    for d in found:
        print(f"  {d.check:<13} {d.entity_type:<20} {d.label}: expected {d.expected:g}, actual {d.actual:g}")
    print(f"\n{len(found)} discrepancy(ies)")
    return 1 if found else 0


def audit_stock() -> int:
    return asyncio.run(_audit())


if __name__ == "__main__":
    setup_logging()
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "init-db":
        init_db()
    elif cmd == "audit-stock":
        sys.exit(audit_stock())
    else:
        print("Usage: python -m stockledger.cli [init-db|audit-stock]")
