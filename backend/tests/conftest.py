"""
Test Configuration — Fixtures for async DB, test client, and seed data.

Each test gets its own in-memory SQLite database (StaticPool keeps the one
connection alive for the engine's lifetime), so app code is free to commit.
Tests that need real concurrent sessions use ``file_sessionmaker`` instead.
"""

import itertools
import uuid
from datetime import date, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import alerts.engine
from api.deps import get_current_user, get_db
from api.main import app
from db.models import Batch, Product
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TODAY = date.today()


@pytest.fixture
async def test_engine():
    """A fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def file_sessionmaker(tmp_path):
    """Session factory over a file database; one connection per session."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def no_alert_publishing(monkeypatch):
    """Keep Redis out of tests; record what would have been published."""
    published = []

    async def _publish(alerts_to_send):
        published.extend(alerts_to_send)
        return 0

    monkeypatch.setattr(alerts.engine, "publish_alerts", _publish)
    monkeypatch.setattr("expiry.orchestrator.publish_alerts", _publish)
    return published


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "auth0|test-pharmacist",
        "email": "pharmacist@pharmatrack.test",
    }


@pytest.fixture
async def client(test_db, mock_user):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def product(test_db):
    product = Product(sku="AMOX-500", name="Amoxicillin 500mg", category="Antibiotics")
    test_db.add(product)
    await test_db.commit()
    return product


@pytest.fixture
async def second_product(test_db):
    product = Product(sku="PARA-1G", name="Paracetamol 1g", category="Analgesics")
    test_db.add(product)
    await test_db.commit()
    return product


@pytest.fixture
def make_batch(test_db):
    """
    Insert a batch directly, bypassing creation validation.

    Lets tests place batches with past expiry dates or non-ACTIVE status.
    """
    counter = itertools.count(1)

    async def _make(
        product: Product,
        *,
        batch_number: str | None = None,
        quantity: int = 100,
        expiry_date: date | None = None,
        manufacture_date: date | None = None,
        status: str = "ACTIVE",
        cost_per_unit: float | None = None,
        initial_quantity: int | None = None,
        db: AsyncSession | None = None,
    ) -> Batch:
        session = db or test_db
        seq = next(counter)
        result = await session.execute(select(Batch.creation_seq).where(Batch.product_id == product.product_id))
        existing = list(result.scalars().all())
        batch = Batch(
            batch_id=uuid.uuid4(),
            product_id=product.product_id,
            batch_number=batch_number or f"LOT-{seq:04d}",
            received_quantity=quantity,
            initial_quantity=initial_quantity if initial_quantity is not None else quantity,
            current_quantity=quantity,
            expiry_date=expiry_date or TODAY + timedelta(days=180),
            manufacture_date=manufacture_date,
            status=status,
            cost_per_unit=cost_per_unit,
            creation_seq=max(existing, default=0) + 1,
        )
        session.add(batch)
        await session.commit()
        return batch

    return _make
