"""Pytest configuration and shared fixtures."""

import os
from datetime import datetime
from typing import Any
from uuid import uuid4

import pytest

# Set test environment before importing settings
os.environ["ENV"] = "development"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_FORMAT"] = "text"


@pytest.fixture
def sample_cluster_data() -> dict[str, Any]:
    """Sample cluster data for testing."""
    return {
        "id": str(uuid4()),
        "name": "shop-01",
        "owner": "alice",
        "port": 8081,
        "root_path": "/srv/clusters/shop-01",
        "limits": {"cpu_cores": 1.5, "memory_mb": 512, "disk_gb": 5},
        "status": "RUNNING",
        "container_id": "c0ffee" + "0" * 58,
        "backup_policy": {"retention_days": 7},
        "created_at": datetime(2026, 1, 1, 12, 0, 0),
    }


@pytest.fixture
def sample_backup_data() -> dict[str, Any]:
    """Sample backup data for testing."""
    return {
        "id": str(uuid4()),
        "cluster_id": str(uuid4()),
        "backup_type": "FULL",
        "status": "COMPLETED",
        "storage_path": "/var/lib/clusterforge/backups/shop-01.tar.gz",
        "size_bytes": 4096,
        "compression_ratio": 0.31,
        "checksum": "a" * 64,
        "created_at": datetime(2026, 1, 1, 12, 0, 0),
        "policy": {"retention_days": 30, "max_backups": 10},
    }


@pytest.fixture
def sample_event_data() -> dict[str, Any]:
    """Sample event data for testing."""
    return {
        "event_id": str(uuid4()),
        "event_type": "BACKUP_COMPLETED",
        "cluster_id": str(uuid4()),
        "timestamp": datetime(2026, 1, 1, 12, 0, 0),
        "payload": {"backup_id": str(uuid4())},
    }


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line(
        "markers", "integration: Integration tests (require external services)"
    )
    config.addinivalue_line("markers", "slow: Slow tests")
