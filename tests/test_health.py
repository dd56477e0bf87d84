"""
Test health endpoints
"""

from httpx import AsyncClient


async def test_health_check(client: AsyncClient):
    """Test basic health check endpoint."""
    response = await client.get("/health/")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert "version" in data


async def test_readiness_check(client: AsyncClient):
    """Database is reachable and the event bus is switched off in tests."""
    response = await client.get("/health/ready")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ready"
    assert data["services"] == {"database": "healthy", "nats": "disabled"}


async def test_liveness_check(client: AsyncClient):
    """Test liveness endpoint."""
    response = await client.get("/health/live")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"


async def test_root(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "operational"


async def test_metrics_endpoint(client: AsyncClient):
    await client.get("/health/live")

    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text


def test_engine_options_per_backend():
    from sqlalchemy.pool import StaticPool
    from crm.app.core.database import engine_options

    memory = engine_options("sqlite+aiosqlite:///:memory:")
    assert memory["poolclass"] is StaticPool

    assert "poolclass" not in engine_options("sqlite+aiosqlite:///./crm.db")
    assert engine_options("postgresql+asyncpg://crm:crm@db:5432/crm") == {"pool_pre_ping": True, "pool_recycle": 300}
