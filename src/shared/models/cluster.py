"""Cluster domain models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import Field, field_validator

from .backup import BackupPolicy
from .base import ClusterForgeBaseModel


class ClusterLifecycleStatus(str, Enum):
    """Lifecycle status of a provisioned cluster."""

    CREATED = "CREATED"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class ResourceLimits(ClusterForgeBaseModel):
    """Resource limits enforced on the cluster container."""

    cpu_cores: float = Field(gt=0, le=64, description="Hard CPU core cap")
    memory_mb: int = Field(gt=0, description="Memory limit in megabytes")
    disk_gb: int = Field(gt=0, description="Writable layer quota in gigabytes")
    network_mbps: int | None = Field(default=None, gt=0, description="Network bandwidth limit")

    @property
    def memory_reservation_mb(self) -> int:
        return self.memory_mb // 2


class Cluster(ClusterForgeBaseModel):
    """A provisioned workload: one Compose-managed container."""

    id: UUID
    name: str = Field(
        min_length=3,
        max_length=63,
        pattern=r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$",
        description="DNS-compatible cluster name",
    )
    owner: str = Field(description="Owner reference")
    port: int = Field(ge=1, le=65535)
    root_path: str = Field(description="Filesystem root of the cluster")
    limits: ResourceLimits
    status: ClusterLifecycleStatus = ClusterLifecycleStatus.CREATED
    container_id: str | None = None
    backup_policy: BackupPolicy = Field(default_factory=BackupPolicy)
    created_at: datetime
    updated_at: datetime | None = None


class ClusterCreate(ClusterForgeBaseModel):
    """Request model for provisioning a cluster."""

    name: str = Field(min_length=3, max_length=63)
    owner: str
    port: int = Field(ge=1, le=65535)
    root_path: str
    limits: ResourceLimits | None = None
    backup_policy: BackupPolicy | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        import re

        if not re.match(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$", v):
            raise ValueError("Name must be DNS-compatible (lowercase alphanumeric with hyphens)")
        return v
