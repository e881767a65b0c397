"""Errors raised by the cluster manager.

Only caller misuse (unknown ids, invalid policy or limits) propagates out of
the engines; runtime failures are recorded on health and backup records.
"""

from __future__ import annotations

from uuid import UUID


class ClusterForgeError(Exception):
    """Base class for cluster manager errors."""

    pass


class ClusterNotFoundError(ClusterForgeError):
    """Raised when a cluster is not found."""

    def __init__(self, cluster_id: UUID):
        super().__init__(f"Cluster {cluster_id} not found")
        self.cluster_id = cluster_id


class BackupNotFoundError(ClusterForgeError):
    """Raised when a backup is not found."""

    def __init__(self, backup_id: UUID):
        super().__init__(f"Backup {backup_id} not found")
        self.backup_id = backup_id


class ClusterAlreadyExistsError(ClusterForgeError):
    """Raised when a cluster name, port or root path is already taken."""

    pass


class InvalidPolicyError(ClusterForgeError):
    """Raised when a recovery or backup policy value is out of range."""

    pass


class InvalidLimitsError(ClusterForgeError):
    """Raised when resource limits are invalid."""

    pass


class InvalidTransitionError(ClusterForgeError):
    """Raised when a health state transition is not allowed."""

    pass


class BackupImportError(ClusterForgeError):
    """Raised when an external archive cannot be imported."""

    pass


class BackupExportError(ClusterForgeError):
    """Raised when a backup archive cannot be exported."""

    pass


# =============================================================================
# Runtime gateway errors
# =============================================================================


class RuntimeGatewayError(ClusterForgeError):
    """Base class for container runtime failures."""

    pass


class ProvisionError(RuntimeGatewayError):
    """Raised when a cluster cannot be brought up.

    ``output_tail`` holds the last lines of runtime output for diagnostics.
    """

    def __init__(self, message: str, output_tail: list[str] | None = None):
        self.output_tail = output_tail or []
        detail = message
        if self.output_tail:
            detail = f"{message}: " + " | ".join(self.output_tail)
        super().__init__(detail)
        self.reason = message


class RuntimeCommandError(RuntimeGatewayError):
    """Raised when a runtime command exits non-zero."""

    def __init__(self, command: list[str], exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output.strip()
        summary = " ".join(command[:3])
        message = f"'{summary}' exited with {exit_code}"
        if self.output:
            message = f"{message}: {self.output.splitlines()[-1]}"
        super().__init__(message)


class ProbeError(ClusterForgeError):
    """Raised inside a probe; always absorbed into the health record."""

    pass
