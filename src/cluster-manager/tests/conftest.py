"""Test fixtures for the cluster manager."""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# Set test environment before importing settings
os.environ["ENV"] = "development"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_FORMAT"] = "text"

from shared.config import BackupSettings, HealthSettings  # noqa: E402
from shared.database import Base  # noqa: E402
from shared.models import Cluster, ClusterCreate, ResourceLimits  # noqa: E402

from app.services.backup_service import BackupService  # noqa: E402
from app.services.cluster_service import ClusterService  # noqa: E402
from app.services.event_service import EventService  # noqa: E402
from app.services.health_service import HealthService  # noqa: E402
from app.services.locks import ClusterLocks  # noqa: E402

from fakes import FakeRuntimeGateway, ManualClock, MockRedisClient  # noqa: E402

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture
def mock_redis() -> MockRedisClient:
    return MockRedisClient()


@pytest.fixture
def event_service(mock_redis, clock) -> EventService:
    return EventService(mock_redis, clock)


@pytest.fixture
def gateway(clock) -> FakeRuntimeGateway:
    return FakeRuntimeGateway(clock=clock)


@pytest.fixture
def locks() -> ClusterLocks:
    return ClusterLocks()


@pytest.fixture
def health_settings() -> HealthSettings:
    return HealthSettings()


@pytest.fixture
def backup_settings(tmp_path: Path) -> BackupSettings:
    return BackupSettings(directory=tmp_path / "backups")


@pytest.fixture
def cluster_service(session_factory, gateway, event_service, locks, clock) -> ClusterService:
    return ClusterService(
        session_factory,
        gateway,
        event_service,
        default_limits=ResourceLimits(cpu_cores=1.5, memory_mb=512, disk_gb=5),
        locks=locks,
        clock=clock,
    )


@pytest.fixture
def health_service(session_factory, gateway, event_service, health_settings, locks, clock) -> HealthService:
    return HealthService(session_factory, gateway, event_service, health_settings, locks, clock)


@pytest.fixture
def backup_service(session_factory, gateway, event_service, backup_settings, locks, clock) -> BackupService:
    return BackupService(session_factory, gateway, event_service, backup_settings, locks, clock)


@pytest.fixture
def cluster_request(tmp_path: Path) -> ClusterCreate:
    return ClusterCreate(
        name="shop-01",
        owner="alice",
        port=8081,
        root_path=str(tmp_path / "clusters" / "shop-01"),
    )


@pytest_asyncio.fixture
async def cluster(cluster_service, cluster_request, gateway) -> AsyncGenerator[Cluster, None]:
    """A provisioned RUNNING cluster with a small data directory."""
    created = await cluster_service.create(cluster_request)
    data_dir = Path(created.root_path) / "src"
    (data_dir / "index.php").write_text("<?php echo 'hello';\n")
    (data_dir / "assets").mkdir()
    (data_dir / "assets" / "app.css").write_text("body { margin: 0; }\n")
    gateway.calls.clear()
    yield created


@pytest_asyncio.fixture
async def test_client(session_factory, test_engine, mock_redis) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    from app.main import app

    # Override app state
    app.state.db_engine = test_engine
    app.state.session_factory = session_factory
    app.state.redis = mock_redis
    app.state.scheduler = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
