"""Docker Compose document rendering.

The rendered fields below are consumed by existing deployments and must keep
their exact textual form:

- deploy.resources.limits.cpus      '1.50'  (two fraction digits, quoted)
- deploy.resources.limits.memory    512m
- deploy.resources.reservations.memory  256m (limit // 2, no floor)
- environment CPU_LIMIT, MEMORY_LIMIT_MB, DISK_LIMIT_GB, NETWORK_LIMIT_MBPS
- cap_add [NET_ADMIN] with a network limit
- tmpfs scratch mounts
- storage_opt.size  "<disk>G"
"""

from __future__ import annotations

from typing import Any

import yaml

from shared.config import RuntimeSettings
from shared.models import Cluster, ResourceLimits

ComposeDocument = dict[str, Any]

TMPFS_MOUNTS = ("/tmp", "/var/tmp")


def format_cpus(cpu_cores: float) -> str:
    return f"{cpu_cores:.2f}"


def format_memory(memory_mb: int) -> str:
    return f"{memory_mb}m"


def tmpfs_size_mb(limits: ResourceLimits, settings: RuntimeSettings) -> int:
    """Size of each memory-backed scratch mount."""
    return min(limits.disk_gb * settings.tmpfs_mb_per_disk_gb, settings.tmpfs_max_mb)


def limit_environment(limits: ResourceLimits) -> list[str]:
    """Limits exposed inside the container so agents can self-throttle."""
    env = [
        f"CPU_LIMIT={format_cpus(limits.cpu_cores)}",
        f"MEMORY_LIMIT_MB={limits.memory_mb}",
        f"DISK_LIMIT_GB={limits.disk_gb}",
    ]
    if limits.network_mbps is not None:
        env.append(f"NETWORK_LIMIT_MBPS={limits.network_mbps}")
    return env


def container_name(cluster: Cluster, settings: RuntimeSettings) -> str:
    return f"{settings.container_name_prefix}-{cluster.name}"


def project_name(cluster: Cluster) -> str:
    """Compose project name, stable for the lifetime of the cluster."""
    return f"cf-{cluster.id.hex[:12]}"


def render_spec(cluster: Cluster, settings: RuntimeSettings) -> ComposeDocument:
    """Build the Compose document for a cluster.

    Args:
        cluster: Cluster whose limits and port are rendered
        settings: Image, mounts and naming configuration

    Returns:
        Compose document as a plain mapping, ready for YAML serialization
    """
    limits = cluster.limits
    scratch_mb = tmpfs_size_mb(limits, settings)

    service: dict[str, Any] = {
        "image": settings.image,
        "container_name": container_name(cluster, settings),
        "restart": "unless-stopped",
        "network_mode": "bridge",
        "ports": [f"{cluster.port}:{settings.internal_port}"],
    }
    if limits.network_mbps is not None:
        service["cap_add"] = ["NET_ADMIN"]
    service["tmpfs"] = [f"{mount}:size={scratch_mb}m,mode=1777" for mount in TMPFS_MOUNTS]
    service["environment"] = limit_environment(limits)
    service["deploy"] = {
        "resources": {
            "limits": {
                "cpus": format_cpus(limits.cpu_cores),
                "memory": format_memory(limits.memory_mb),
            },
            "reservations": {
                "memory": format_memory(limits.memory_reservation_mb),
            },
        }
    }
    service["storage_opt"] = {"size": f"{limits.disk_gb}G"}
    service["volumes"] = [f"./{settings.data_dir_name}:{settings.data_mount}"]
    service["labels"] = {
        "clusterforge.cluster_id": str(cluster.id),
        "clusterforge.owner": cluster.owner,
    }

    return {"services": {settings.service_name: service}}


def dump_spec(document: ComposeDocument) -> str:
    """Serialize a Compose document to YAML, preserving key order."""
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
