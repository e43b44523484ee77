"""Pytest configuration and fixtures for stock ledger tests.

Every test gets its own SQLite database file (aiosqlite), so sessions
opened by the API client, by the concurrency tests and by the test body
all see the same committed state.
"""

from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import stockledger.models  # noqa: F401
from stockledger.database import Base, enable_sqlite_foreign_keys, get_db
from stockledger.main import app
from stockledger.models import Drum, FinishedGood, Location, RawMaterial
from stockledger.services.consistency import audit_ledger


# ── Database ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Fresh SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    enable_sqlite_foreign_keys(engine.sync_engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client whose requests commit to the per-test database."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def stock(db_session: AsyncSession) -> SimpleNamespace:
    """One raw material with two empty drums, two finished goods, two locations."""
    material = RawMaterial(code="RM-001", name="Sugar syrup", unit="kg", reorder_threshold=20)
    other = RawMaterial(code="RM-002", name="Citric acid", unit="kg")
    db_session.add_all([material, other])
    await db_session.flush()

    d1 = Drum(raw_material_id=material.id, label="D1")
    d2 = Drum(raw_material_id=material.id, label="D2")
    other_drum = Drum(raw_material_id=other.id, label="C1")
    good = FinishedGood(name="Lemon concentrate", unit="btl")
    good_b = FinishedGood(name="Orange concentrate", unit="btl")
    warehouse = Location(name="Main warehouse")
    shop = Location(name="Shop")
    db_session.add_all([d1, d2, other_drum, good, good_b, warehouse, shop])
    await db_session.commit()

    return SimpleNamespace(
        material=material, other=other,
        d1=d1, d2=d2, other_drum=other_drum,
        good=good, good_b=good_b,
        warehouse=warehouse, shop=shop,
    )


@pytest.fixture
def assert_ledger_consistent(db_session: AsyncSession):
    """Await after a scenario: every counter must equal its ledger replay."""

    async def _check(session: AsyncSession | None = None):
        found = await audit_ledger(session or db_session)
        assert found == [], [d.to_dict() for d in found]

    return _check


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
