"""ClusterForge cluster manager service.

Hosts the core engines behind a minimal FastAPI shell:
- Container runtime gateway (Compose rendering and docker CLI execution)
- Health monitoring and bounded recovery
- Backups with retention and integrity checks
- Background scheduler driving the periodic jobs
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from shared.config import ClusterForgeSettings
from shared.database import create_all, create_engine, create_session_factory
from shared.models import ResourceLimits
from shared.observability import get_logger, setup_logging
from shared.redis_client import RedisClient

from .api import health
from .clock import SystemClock
from .runtime import CommandRunner, RuntimeGateway
from .services.backup_service import BackupService
from .services.cluster_service import ClusterService
from .services.event_service import EventService
from .services.health_service import HealthService
from .services.locks import ClusterLocks
from .services.scheduler import Scheduler

settings = ClusterForgeSettings()
setup_logging(
    service_name="cluster-manager",
    log_level=settings.log_level,
    log_format=settings.log_format,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown of:
    - Database engine and tables
    - Redis connections
    - Runtime gateway and engines
    - Background scheduler
    """
    logger.info("Starting cluster manager", version=settings.app_version)

    engine = create_engine(settings.effective_database_url, echo=settings.debug)
    session_factory = create_session_factory(engine)
    await create_all(engine)
    app.state.db_engine = engine
    app.state.session_factory = session_factory
    logger.info("Database tables initialized")

    redis_client = RedisClient(settings.redis.url)
    await redis_client.connect()
    app.state.redis = redis_client

    clock = SystemClock()
    locks = ClusterLocks()
    gateway = RuntimeGateway(settings.runtime, CommandRunner(), clock)
    event_service = EventService(redis_client, clock)
    health_service = HealthService(
        session_factory, gateway, event_service, settings.health, locks, clock
    )
    backup_service = BackupService(
        session_factory, gateway, event_service, settings.backup, locks, clock
    )

    app.state.cluster_service = ClusterService(
        session_factory,
        gateway,
        event_service,
        default_limits=ResourceLimits(
            cpu_cores=settings.default_cpu_cores,
            memory_mb=settings.default_memory_mb,
            disk_gb=settings.default_disk_gb,
            network_mbps=settings.default_network_mbps,
        ),
        locks=locks,
        clock=clock,
        backup_service=backup_service,
    )
    app.state.health_service = health_service
    app.state.backup_service = backup_service

    scheduler = Scheduler(health_service, backup_service, settings.scheduler)
    app.state.scheduler = scheduler
    if settings.scheduler.enabled:
        await scheduler.start()

    logger.info("Cluster manager started successfully")

    yield

    logger.info("Shutting down cluster manager")
    await scheduler.stop()
    await redis_client.close()
    await engine.dispose()
    logger.info("Cluster manager shutdown complete")


app = FastAPI(
    title="ClusterForge Cluster Manager",
    description="Provisioning runtime, health recovery and backups for managed clusters",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["Health"])


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "cluster-manager",
        "version": settings.app_version,
        "docs": "/docs",
    }
