"""Tests for the service shell endpoints."""

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.main import app


async def test_health_endpoint(test_client: AsyncClient):
    """Test health endpoint returns healthy status."""
    response = await test_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "cluster-manager"}


async def test_root_endpoint(test_client: AsyncClient):
    response = await test_client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "cluster-manager"


async def test_ready_endpoint(test_client: AsyncClient):
    """Test readiness with working database and Redis."""
    response = await test_client.get("/ready")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ready"
    assert body["checks"] == {"database": True, "redis": True}
    assert body["scheduler_running"] is False


async def test_ready_reports_redis_failure(test_client: AsyncClient, mock_redis):
    async def unavailable():
        raise ConnectionError("redis unavailable")

    mock_redis.health_check = unavailable

    body = (await test_client.get("/ready")).json()

    assert body["status"] == "not_ready"
    assert body["checks"]["redis"] is False
    assert body["checks"]["database"] is True


async def test_ready_reports_database_failure(test_client: AsyncClient, tmp_path):
    broken = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    app.state.session_factory = async_sessionmaker(broken, expire_on_commit=False)
    try:
        body = (await test_client.get("/ready")).json()
    finally:
        await broken.dispose()

    assert body["status"] == "not_ready"
    assert body["checks"]["database"] is False
