"""
Test configuration and fixtures for Pipeline CRM
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["NATS_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"

from datetime import timedelta
from types import SimpleNamespace
from typing import AsyncGenerator
from uuid import uuid4

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from crm.app.main import app
from crm.app.core.clock import utcnow
from crm.app.core.database import Base, get_db, engine_options, configure_sqlite
from crm.app import models  # noqa: F401

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    """Fresh in-memory database per test, with foreign keys enforced."""
    test_engine = create_async_engine(TEST_DATABASE_URL, **engine_options(TEST_DATABASE_URL))
    configure_sqlite(test_engine)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for service-level tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the database overridden."""
    async def get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = get_test_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
async def pipeline_id(client: AsyncClient) -> str:
    """Id of the seeded default pipeline."""
    response = await client.post("/api/v1/pipelines/seed")
    assert response.status_code == 200
    return response.json()["data"]["pipeline_id"]


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def make_deal(now):
    """Deal-like object for the pure forecasting functions."""
    def _make_deal(**overrides):
        fields = {
            "id": uuid4(),
            "name": "Test Deal",
            "pipeline_id": None,
            "amount": 10000.0,
            "probability": 50.0,
            "status": "open",
            "expected_close_date": now + timedelta(days=20),
            "actual_close_date": None,
            "created_at": now - timedelta(days=1),
            "stage_changed_at": now - timedelta(days=1),
        }
        fields.update(overrides)
        return SimpleNamespace(**fields)

    return _make_deal


@pytest.fixture
def create_deal(client: AsyncClient, pipeline_id: str):
    """Create a deal through the API in the seeded pipeline."""
    async def _create_deal(**fields):
        payload = {"name": "Acme renewal", "pipeline_id": pipeline_id, "stage_id": "proposal"}
        payload.update(fields)

        response = await client.post("/api/v1/deals/", json=payload)
        assert response.status_code == 201, response.text
        return response.json()["data"]

    return _create_deal
