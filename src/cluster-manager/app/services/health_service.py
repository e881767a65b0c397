"""Health monitoring and recovery engine.

Each cluster has one health record driven by the state machine in
``state_machine``. Probes never raise for runtime problems: every failure is
recorded on the health record. Recovery is bounded by the cluster's policy
(attempt limit and cooldown) and serialized with all other lifecycle work on
the same cluster through ``ClusterLocks``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar
from uuid import UUID, uuid4

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from shared.config import HealthSettings
from shared.database.models import ClusterModel, HealthStatusModel
from shared.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    Cluster,
    ClusterLifecycleStatus,
    ClusterMetrics,
    HealthEvent,
    HealthEventType,
    HealthMetricsPayload,
    HealthState,
    HealthStatus,
    RecoveryPolicy,
    ResourceSnapshot,
    SystemHealthStats,
)
from shared.observability import OperationContext, get_logger

from ..clock import Clock, SystemClock
from ..exceptions import ClusterNotFoundError, InvalidPolicyError, ProbeError, RuntimeGatewayError
from ..repositories.cluster_repository import ClusterRepository
from ..repositories.health_repository import HealthRepository
from ..runtime import ResourceUsage, RuntimeGateway, RuntimeStatus
from .converters import (
    to_alert,
    to_cluster,
    to_cluster_metrics,
    to_health_event,
    to_health_status,
)
from .event_service import EventService
from .locks import ClusterLocks
from .state_machine import HealthTrigger, can_attempt_recovery, next_state

logger = get_logger(__name__)

T = TypeVar("T")

MB = 1024 * 1024
GB = 1024 * MB

# Conflicting concurrent writers are retried this many times
STALE_RETRIES = 3

# Lifecycle statuses the periodic sweep probes and recovers
MONITORED_LIFECYCLE = (ClusterLifecycleStatus.RUNNING.value, ClusterLifecycleStatus.FAILED.value)


@dataclass
class Observation:
    """What a probe saw, before it is applied to the health record."""

    passed: bool
    container_status: str | None = None
    error: str | None = None
    runtime: RuntimeStatus | None = None
    usage: ResourceUsage | None = None
    response_time_ms: float | None = None


@dataclass
class StatusChange:
    """Side effects to publish once a health update is committed."""

    old_state: str
    new_state: str
    alert: Alert | None = None


class HealthService:
    """Probes clusters, tracks failures and drives bounded recovery."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: RuntimeGateway,
        event_service: EventService,
        settings: HealthSettings | None = None,
        locks: ClusterLocks | None = None,
        clock: Clock | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.event_service = event_service
        self.settings = settings or HealthSettings()
        self.locks = locks or ClusterLocks()
        self.clock = clock or SystemClock()
        self.http_client = http_client

    @property
    def default_policy(self) -> RecoveryPolicy:
        """Policy applied to health records created on first probe."""
        return RecoveryPolicy(
            max_recovery_attempts=self.settings.max_recovery_attempts,
            retry_interval_seconds=self.settings.retry_interval_seconds,
            cooldown_period_seconds=self.settings.cooldown_period_seconds,
            alert_threshold_failures=self.settings.alert_threshold_failures,
            monitoring_enabled=self.settings.monitoring_enabled,
        )

    # =========================================================================
    # Probing
    # =========================================================================

    async def probe(self, cluster_id: UUID) -> HealthStatus:
        """Probe one cluster and persist the result.

        Raises:
            ClusterNotFoundError: Unknown cluster id
        """
        async with self.locks.hold(cluster_id), OperationContext(str(cluster_id), "probe"):
            cluster, status = await self._load(cluster_id)

            if not status.monitoring_enabled:
                updated, change = await self._update_status(cluster_id, self._apply_unmonitored)
                await self._publish_change(cluster_id, change)
                return updated

            observation = await self._observe(cluster)
            now = self.clock.now()
            updated, change = await self._update_status(
                cluster_id,
                lambda s, repo, c: self._apply_probe(s, repo, c, observation, now),
            )

        await self._publish_change(cluster_id, change)
        await self.event_service.publish_metrics(self._metrics_payload(updated, now))
        return updated

    async def check_all_clusters(self) -> dict[str, str]:
        """Probe every running or failed cluster with bounded concurrency.

        Returns:
            Mapping of cluster id to resulting health state
        """
        async with self.session_factory() as session:
            clusters = await ClusterRepository(session).list_all()
        targets = [c.id for c in clusters if c.status in MONITORED_LIFECYCLE]

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_checks)
        results: dict[str, str] = {}

        async def check(cluster_id: UUID) -> None:
            if self.locks.is_locked(cluster_id):
                # Held by another lifecycle operation; the next sweep probes it
                logger.debug("Cluster busy, probe skipped", cluster_id=str(cluster_id))
                return
            async with semaphore:
                try:
                    status = await self.probe(cluster_id)
                    results[str(cluster_id)] = status.current_state
                except ClusterNotFoundError:
                    # Deleted while the sweep was running
                    logger.debug("Cluster vanished before probe", cluster_id=str(cluster_id))
                except Exception as e:
                    logger.error(
                        "Health probe raised",
                        cluster_id=str(cluster_id),
                        error=str(e),
                        exc_info=True,
                    )

        await asyncio.gather(*(check(cid) for cid in targets))
        logger.info("Health sweep completed", clusters=len(targets))
        return results

    async def _observe(self, cluster: Cluster) -> Observation:
        """Inspect the container and run application checks.

        Runtime and check failures are absorbed into the observation.
        """
        handle = self.gateway.handle_for(cluster)
        try:
            runtime = await self.gateway.inspect(handle)
        except RuntimeGatewayError as e:
            return Observation(passed=False, container_status="unknown", error=f"Inspect failed: {e}")

        if not runtime.exists:
            return Observation(
                passed=False,
                container_status="missing",
                runtime=runtime,
                error="Container not found",
            )
        if not runtime.running:
            return Observation(
                passed=False,
                container_status=runtime.status,
                runtime=runtime,
                error=f"Container is {runtime.status} (exit code {runtime.exit_code})",
            )
        # Docker reports Running=true for a frozen container
        if runtime.paused or runtime.status != "running":
            return Observation(
                passed=False,
                container_status=runtime.status,
                runtime=runtime,
                error="Container is paused" if runtime.paused else f"Container is {runtime.status}",
            )

        usage = await self.gateway.stats(handle)
        observation = Observation(
            passed=True, container_status=runtime.status, runtime=runtime, usage=usage
        )
        try:
            await self._run_probe_command(cluster)
            observation.response_time_ms = await self._check_http(cluster)
        except ProbeError as e:
            observation.passed = False
            observation.error = str(e)
        return observation

    async def _run_probe_command(self, cluster: Cluster) -> None:
        if not self.settings.probe_command:
            return
        result = await self.gateway.exec(
            self.gateway.handle_for(cluster), list(self.settings.probe_command)
        )
        if not result.success:
            detail = (result.stderr or result.stdout).strip().splitlines()
            raise ProbeError(
                f"Probe command exited with {result.exit_code}"
                + (f": {detail[-1]}" if detail else "")
            )

    async def _check_http(self, cluster: Cluster) -> float | None:
        """GET the application health endpoint; returns response time in ms."""
        if not self.settings.http_endpoint:
            return None

        url = f"http://{self.settings.http_host}:{cluster.port}{self.settings.http_endpoint}"
        start = time.monotonic()
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, timeout=self.settings.http_timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.settings.http_timeout_seconds) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            raise ProbeError(f"Health endpoint unreachable: {e.__class__.__name__}") from e

        elapsed_ms = (time.monotonic() - start) * 1000
        if response.status_code >= 400:
            raise ProbeError(f"Health endpoint returned HTTP {response.status_code}")
        if elapsed_ms > self.settings.slow_response_ms:
            raise ProbeError(f"Health endpoint too slow ({elapsed_ms:.0f} ms)")
        return elapsed_ms

    def _apply_unmonitored(
        self, status: HealthStatusModel, repo: HealthRepository, cluster: ClusterModel
    ) -> StatusChange:
        old_state = status.current_state
        status.current_state = next_state(old_state, HealthTrigger.MONITORING_DISABLED).value
        return StatusChange(old_state, status.current_state)

    def _apply_probe(
        self,
        status: HealthStatusModel,
        repo: HealthRepository,
        cluster: ClusterModel,
        observation: Observation,
        now: datetime,
    ) -> StatusChange:
        old_state = status.current_state
        previous_container_status = status.container_status
        previous_restart_count = status.restart_count

        status.last_check_time = now
        status.container_status = observation.container_status
        status.response_time_ms = observation.response_time_ms
        runtime = observation.runtime
        status.uptime_seconds = runtime.uptime_seconds if runtime else None
        if runtime and runtime.exists:
            status.restart_count = runtime.restart_count
        snapshot = self._snapshot(to_cluster(cluster), observation)
        for field, value in snapshot.model_dump().items():
            setattr(status, field, value)

        if observation.passed:
            new_state = next_state(old_state, HealthTrigger.PROBE_PASSED)
            status.consecutive_failures = 0
            status.last_successful_check = now
            status.error_message = None
            repo.add_event(
                status,
                HealthEventType.HEALTH_CHECK_PASSED.value,
                "Health check passed",
                now,
                {
                    "uptime_seconds": status.uptime_seconds,
                    "response_time_ms": observation.response_time_ms,
                },
            )
            if new_state == HealthState.HEALTHY and old_state != HealthState.HEALTHY:
                # Incident closed
                status.last_alert_time = None
                repo.resolve_alerts(now)
            if new_state == HealthState.HEALTHY:
                cluster.status = ClusterLifecycleStatus.RUNNING.value
        else:
            new_state = next_state(old_state, HealthTrigger.PROBE_FAILED)
            status.consecutive_failures += 1
            status.total_failures += 1
            status.error_message = observation.error
            repo.add_event(
                status,
                HealthEventType.HEALTH_CHECK_FAILED.value,
                observation.error or "Health check failed",
                now,
                {
                    "consecutive_failures": status.consecutive_failures,
                    "container_status": observation.container_status,
                },
            )
            if previous_container_status == "running" and observation.container_status != "running":
                repo.add_event(
                    status,
                    HealthEventType.CONTAINER_STOPPED.value,
                    f"Container is {observation.container_status}",
                    now,
                    {"exit_code": runtime.exit_code if runtime else None},
                )
            if new_state == HealthState.FAILED:
                cluster.status = ClusterLifecycleStatus.FAILED.value

        if (
            runtime
            and runtime.exists
            and previous_restart_count is not None
            and runtime.restart_count > previous_restart_count
        ):
            repo.add_event(
                status,
                HealthEventType.CONTAINER_RESTARTED.value,
                "Container restarted by the runtime",
                now,
                {"restart_count": runtime.restart_count, "previous": previous_restart_count},
            )

        self._check_resource_thresholds(status, repo, snapshot, now)
        status.current_state = new_state.value
        repo.add_metrics(status, now)

        alert = None
        if not observation.passed and self._alert_due(status, now):
            alert = self._raise_alert(status, repo, now)
        return StatusChange(old_state, status.current_state, alert)

    def _snapshot(self, cluster: Cluster, observation: Observation) -> ResourceSnapshot:
        usage = observation.usage
        runtime = observation.runtime
        snapshot = ResourceSnapshot()
        if usage is not None:
            memory_limit_bytes = cluster.limits.memory_mb * MB
            snapshot.cpu_percent = round(usage.cpu_percent, 2)
            snapshot.memory_used_mb = round(usage.memory_used_bytes / MB, 2)
            snapshot.memory_percent = round(usage.memory_used_bytes / memory_limit_bytes * 100, 2)
            snapshot.network_rx_mb = round(usage.network_rx_bytes / MB, 2)
            snapshot.network_tx_mb = round(usage.network_tx_bytes / MB, 2)
        if runtime is not None and runtime.disk_usage_bytes is not None:
            snapshot.disk_used_mb = round(runtime.disk_usage_bytes / MB, 2)
            snapshot.disk_percent = round(
                runtime.disk_usage_bytes / (cluster.limits.disk_gb * GB) * 100, 2
            )
        return snapshot

    def _check_resource_thresholds(
        self,
        status: HealthStatusModel,
        repo: HealthRepository,
        snapshot: ResourceSnapshot,
        now: datetime,
    ) -> None:
        """Record each metric above the threshold; never changes state."""
        threshold = self.settings.resource_threshold_percent
        for resource, value in (
            ("cpu", snapshot.cpu_percent),
            ("memory", snapshot.memory_percent),
            ("disk", snapshot.disk_percent),
        ):
            if value is None or value <= threshold:
                continue
            repo.add_event(
                status,
                HealthEventType.RESOURCE_LIMIT_EXCEEDED.value,
                f"{resource.capitalize()} usage {value:.1f}% exceeds {threshold:.0f}%",
                now,
                {"resource": resource, "usage_percent": value, "threshold_percent": threshold},
            )
            logger.warning(
                "Resource limit exceeded",
                cluster_id=str(status.cluster_id),
                resource=resource,
                usage_percent=value,
            )

    # =========================================================================
    # Alerting
    # =========================================================================

    def _alert_due(self, status: HealthStatusModel, now: datetime) -> bool:
        if status.consecutive_failures < status.alert_threshold_failures:
            return False
        if status.last_alert_time is None:
            return True
        debounce = timedelta(seconds=self.settings.alert_debounce_seconds)
        return now - status.last_alert_time >= debounce

    def _raise_alert(
        self, status: HealthStatusModel, repo: HealthRepository, now: datetime
    ) -> Alert:
        state = HealthState(status.current_state)
        severity = AlertSeverity.CRITICAL if state == HealthState.FAILED else AlertSeverity.WARNING
        alert = Alert(
            id=uuid4(),
            cluster_id=status.cluster_id,
            severity=severity,
            title=f"Cluster {state.value.lower()}",
            message=(
                f"{status.consecutive_failures} consecutive health check failures: "
                f"{status.error_message or 'no details'}"
            ),
            state=state,
            consecutive_failures=status.consecutive_failures,
            created_at=now,
        )
        repo.add_alert(alert)
        repo.add_event(
            status,
            HealthEventType.ALERT_TRIGGERED.value,
            alert.title,
            now,
            {"severity": severity.value, "consecutive_failures": status.consecutive_failures},
        )
        status.last_alert_time = now
        logger.warning(
            "Alert triggered",
            cluster_id=str(status.cluster_id),
            severity=severity.value,
            consecutive_failures=status.consecutive_failures,
        )
        return alert

    # =========================================================================
    # Recovery
    # =========================================================================

    async def recover(self, cluster_id: UUID) -> bool:
        """Attempt one bounded recovery of a FAILED cluster.

        Returns False without any runtime call when the cluster is not
        eligible (wrong state, monitoring disabled, attempts exhausted or
        cooldown active).

        Raises:
            ClusterNotFoundError: Unknown cluster id
        """
        async with self.locks.hold(cluster_id), OperationContext(str(cluster_id), "recover"):
            cluster, status = await self._load(cluster_id)
            now = self.clock.now()
            eligibility = can_attempt_recovery(
                status.current_state,
                status.monitoring_enabled,
                status.recovery_attempts,
                status.max_recovery_attempts,
                status.last_recovery_attempt,
                status.cooldown_period_seconds,
                now,
            )
            if not eligibility.eligible:
                logger.debug("Recovery skipped", reason=eligibility.reason)
                return False

            started, change = await self._update_status(
                cluster_id, lambda s, repo, c: self._apply_recovery_started(s, repo, now)
            )
            await self._publish_change(cluster_id, change)
            logger.info(
                "Recovery attempt started",
                attempt=started.recovery_attempts,
                max_attempts=started.max_recovery_attempts,
            )

            succeeded, container_id, error = await self._restart(cluster)

            finished_at = self.clock.now()
            updated, change = await self._update_status(
                cluster_id,
                lambda s, repo, c: self._apply_recovery_finished(
                    s, repo, c, succeeded, container_id, error, finished_at
                ),
            )

        await self._publish_change(cluster_id, change)
        await self.event_service.publish_recovery_completed(
            cluster_id, succeeded, started.recovery_attempts
        )

        if succeeded:
            logger.info("Cluster recovered", cluster_id=str(cluster_id))
        else:
            logger.warning(
                "Recovery failed",
                cluster_id=str(cluster_id),
                attempts=updated.recovery_attempts,
                error=error,
            )
        return succeeded

    async def _restart(self, cluster: Cluster) -> tuple[bool, str | None, str | None]:
        """stop -> remove -> apply -> inspect. Returns (running, container id, error)."""
        handle = self.gateway.handle_for(cluster)
        for step in (self.gateway.stop, self.gateway.remove):
            try:
                await step(handle)
            except RuntimeGatewayError as e:
                logger.warning("Tolerated runtime failure during recovery", step=step.__name__, error=str(e))

        try:
            new_handle = await self.gateway.apply(cluster)
            runtime = await self.gateway.inspect(new_handle)
        except RuntimeGatewayError as e:
            return False, None, str(e)

        if not runtime.running:
            return False, new_handle.container_id, f"Container is {runtime.status} after restart"
        return True, new_handle.container_id, None

    def _apply_recovery_started(
        self, status: HealthStatusModel, repo: HealthRepository, now: datetime
    ) -> StatusChange:
        old_state = status.current_state
        status.current_state = next_state(old_state, HealthTrigger.RECOVERY_STARTED).value
        status.recovery_attempts += 1
        status.last_recovery_attempt = now
        repo.add_event(
            status,
            HealthEventType.RECOVERY_ATTEMPTED.value,
            f"Recovery attempt {status.recovery_attempts}/{status.max_recovery_attempts}",
            now,
            {"attempt": status.recovery_attempts},
        )
        return StatusChange(old_state, status.current_state)

    def _apply_recovery_finished(
        self,
        status: HealthStatusModel,
        repo: HealthRepository,
        cluster: ClusterModel,
        succeeded: bool,
        container_id: str | None,
        error: str | None,
        now: datetime,
    ) -> StatusChange:
        old_state = status.current_state
        alert = None
        if succeeded:
            status.current_state = next_state(old_state, HealthTrigger.RECOVERY_SUCCEEDED).value
            attempts_used = status.recovery_attempts
            status.recovery_attempts = 0
            status.consecutive_failures = 0
            status.total_recoveries += 1
            status.last_successful_check = now
            status.error_message = None
            status.last_alert_time = None
            cluster.status = ClusterLifecycleStatus.RUNNING.value
            if container_id:
                cluster.container_id = container_id
            cluster.updated_at = now
            repo.add_event(
                status,
                HealthEventType.RECOVERY_SUCCEEDED.value,
                "Cluster recovered",
                now,
                {"attempts_used": attempts_used, "container_id": container_id},
            )
            repo.resolve_alerts(now)
            alert = Alert(
                id=uuid4(),
                cluster_id=status.cluster_id,
                severity=AlertSeverity.RECOVERY,
                title="Cluster recovered",
                message=f"Recovered after {attempts_used} attempt(s)",
                state=HealthState.HEALTHY,
                consecutive_failures=0,
                created_at=now,
                status=AlertStatus.RESOLVED,
                resolved_at=now,
            )
            repo.add_alert(alert)
            repo.add_event(
                status,
                HealthEventType.ALERT_TRIGGERED.value,
                alert.title,
                now,
                {"severity": AlertSeverity.RECOVERY.value},
            )
        else:
            status.current_state = next_state(old_state, HealthTrigger.RECOVERY_FAILED).value
            status.error_message = error
            cluster.status = ClusterLifecycleStatus.FAILED.value
            cluster.updated_at = now
            repo.add_event(
                status,
                HealthEventType.RECOVERY_FAILED.value,
                error or "Recovery failed",
                now,
                {"attempt": status.recovery_attempts},
            )
        return StatusChange(old_state, status.current_state, alert)

    async def recover_failed_clusters(self) -> int:
        """Attempt recovery of every FAILED or UNHEALTHY monitored cluster.

        Returns:
            Number of successful recoveries
        """
        async with self.session_factory() as session:
            candidates = await HealthRepository(session).list_by_states(
                [HealthState.FAILED.value, HealthState.UNHEALTHY.value]
            )
            clusters = {c.id: c for c in await ClusterRepository(session).list_all()}

        recovered = 0
        for status in candidates:
            cluster = clusters.get(status.cluster_id)
            if cluster is None or cluster.status == ClusterLifecycleStatus.STOPPED.value:
                continue
            try:
                if await self.recover(status.cluster_id):
                    recovered += 1
            except Exception as e:
                logger.error(
                    "Recovery raised",
                    cluster_id=str(status.cluster_id),
                    error=str(e),
                    exc_info=True,
                )

        if candidates:
            logger.info("Recovery sweep completed", candidates=len(candidates), recovered=recovered)
        return recovered

    # =========================================================================
    # Policy management
    # =========================================================================

    async def configure_recovery_policy(
        self,
        cluster_id: UUID,
        max_recovery_attempts: int | None = None,
        retry_interval_seconds: int | None = None,
        cooldown_period_seconds: int | None = None,
        alert_threshold_failures: int | None = None,
    ) -> HealthStatus:
        """Override the recovery policy of one cluster.

        Lowering the attempt limit clamps already consumed attempts so the
        attempt bound keeps holding.

        Raises:
            ClusterNotFoundError: Unknown cluster id
            InvalidPolicyError: Negative values or an alert threshold below 1
        """
        for name, value, minimum in (
            ("max_recovery_attempts", max_recovery_attempts, 0),
            ("retry_interval_seconds", retry_interval_seconds, 0),
            ("cooldown_period_seconds", cooldown_period_seconds, 0),
            ("alert_threshold_failures", alert_threshold_failures, 1),
        ):
            if value is not None and value < minimum:
                raise InvalidPolicyError(f"{name} must be >= {minimum}, got {value}")

        def apply(status: HealthStatusModel, repo: HealthRepository, cluster: ClusterModel) -> None:
            if max_recovery_attempts is not None:
                status.max_recovery_attempts = max_recovery_attempts
                status.recovery_attempts = min(status.recovery_attempts, max_recovery_attempts)
            if retry_interval_seconds is not None:
                status.retry_interval_seconds = retry_interval_seconds
            if cooldown_period_seconds is not None:
                status.cooldown_period_seconds = cooldown_period_seconds
            if alert_threshold_failures is not None:
                status.alert_threshold_failures = alert_threshold_failures

        async with self.locks.hold(cluster_id):
            updated, _ = await self._update_status(cluster_id, apply)
        logger.info("Recovery policy updated", cluster_id=str(cluster_id))
        return updated

    async def set_monitoring_enabled(self, cluster_id: UUID, enabled: bool) -> HealthStatus:
        """Enable or disable monitoring; disabling moves the cluster to UNKNOWN."""

        def apply(
            status: HealthStatusModel, repo: HealthRepository, cluster: ClusterModel
        ) -> StatusChange:
            old_state = status.current_state
            status.monitoring_enabled = enabled
            if not enabled:
                status.current_state = next_state(old_state, HealthTrigger.MONITORING_DISABLED).value
            return StatusChange(old_state, status.current_state)

        async with self.locks.hold(cluster_id):
            updated, change = await self._update_status(cluster_id, apply)
        await self._publish_change(cluster_id, change)
        logger.info("Monitoring toggled", cluster_id=str(cluster_id), enabled=enabled)
        return updated

    async def reset_recovery(self, cluster_id: UUID) -> HealthStatus:
        """Manually reset consumed recovery attempts."""

        def apply(status: HealthStatusModel, repo: HealthRepository, cluster: ClusterModel) -> None:
            status.recovery_attempts = 0
            status.last_recovery_attempt = None

        async with self.locks.hold(cluster_id):
            updated, _ = await self._update_status(cluster_id, apply)
        logger.info("Recovery attempts reset", cluster_id=str(cluster_id))
        return updated

    # =========================================================================
    # Read side
    # =========================================================================

    async def get_status(self, cluster_id: UUID) -> HealthStatus | None:
        """Persisted health record; None before the first probe."""
        async with self.session_factory() as session:
            if not await ClusterRepository(session).get_by_id(cluster_id):
                raise ClusterNotFoundError(cluster_id)
            status = await HealthRepository(session).get_by_cluster_id(cluster_id)
            return to_health_status(status) if status else None

    async def get_health_history(
        self,
        cluster_id: UUID,
        limit: int = 100,
        event_type: HealthEventType | None = None,
    ) -> list[HealthEvent]:
        """Health events of a cluster, newest first."""
        async with self.session_factory() as session:
            if not await ClusterRepository(session).get_by_id(cluster_id):
                raise ClusterNotFoundError(cluster_id)
            events = await HealthRepository(session).list_events(
                cluster_id, limit=limit, event_type=event_type.value if event_type else None
            )
            return [to_health_event(e) for e in events]

    async def get_metrics_history(
        self,
        cluster_id: UUID,
        limit: int = 100,
        since: datetime | None = None,
    ) -> list[ClusterMetrics]:
        """Stored health check samples of a cluster, newest first."""
        async with self.session_factory() as session:
            if not await ClusterRepository(session).get_by_id(cluster_id):
                raise ClusterNotFoundError(cluster_id)
            samples = await HealthRepository(session).list_metrics(cluster_id, limit=limit, since=since)
            return [to_cluster_metrics(s) for s in samples]

    async def list_alerts(
        self,
        cluster_id: UUID | None = None,
        status: AlertStatus | None = None,
        limit: int = 100,
    ) -> list[Alert]:
        """Stored alerts, newest first; all clusters when ``cluster_id`` is None."""
        async with self.session_factory() as session:
            if cluster_id is not None and not await ClusterRepository(session).get_by_id(cluster_id):
                raise ClusterNotFoundError(cluster_id)
            alerts = await HealthRepository(session).list_alerts(
                cluster_id, status=AlertStatus(status).value if status else None, limit=limit
            )
            return [to_alert(a) for a in alerts]

    async def prune_metrics(self) -> int:
        """Drop health check samples older than the retention window.

        Returns:
            Number of samples removed
        """
        cutoff = self.clock.now() - timedelta(days=self.settings.metrics_retention_days)
        async with self.session_factory() as session:
            removed = await HealthRepository(session).delete_metrics_before(cutoff)
        if removed:
            logger.info("Health metrics pruned", removed=removed)
        return removed

    async def get_metrics_payload(self, cluster_id: UUID) -> HealthMetricsPayload | None:
        status = await self.get_status(cluster_id)
        if status is None:
            return None
        return self._metrics_payload(status, status.last_check_time or self.clock.now())

    async def get_system_health_stats(self) -> SystemHealthStats:
        """Fleet-wide rollup; clusters never probed count as UNKNOWN."""
        async with self.session_factory() as session:
            clusters = await ClusterRepository(session).list_all()
            statuses = {s.cluster_id: s for s in await HealthRepository(session).list_all()}

        counts: dict[str, int] = {state.value: 0 for state in HealthState}
        stats = SystemHealthStats(total_clusters=len(clusters))
        for cluster in clusters:
            status = statuses.get(cluster.id)
            if status is None:
                counts[HealthState.UNKNOWN.value] += 1
                continue
            counts[status.current_state] += 1
            stats.total_failures += status.total_failures
            stats.total_recoveries += status.total_recoveries
            if not status.monitoring_enabled:
                stats.monitoring_disabled += 1

        stats.healthy = counts[HealthState.HEALTHY.value]
        stats.unhealthy = counts[HealthState.UNHEALTHY.value]
        stats.failed = counts[HealthState.FAILED.value]
        stats.recovering = counts[HealthState.RECOVERING.value]
        stats.unknown = counts[HealthState.UNKNOWN.value]
        if clusters:
            stats.health_percentage = round(stats.healthy / len(clusters) * 100, 2)
        return stats

    # =========================================================================
    # Internals
    # =========================================================================

    async def _load(self, cluster_id: UUID) -> tuple[Cluster, HealthStatus]:
        """Load the cluster and its health record, creating the record if needed."""
        async with self.session_factory() as session:
            cluster = await ClusterRepository(session).get_by_id(cluster_id)
            if cluster is None:
                raise ClusterNotFoundError(cluster_id)
            repo = HealthRepository(session)
            status = await repo.get_or_create(cluster_id, self.default_policy)
            await session.commit()
            return to_cluster(cluster), to_health_status(status)

    async def _update_status(
        self,
        cluster_id: UUID,
        mutate: Callable[[HealthStatusModel, HealthRepository, ClusterModel], T],
    ) -> tuple[HealthStatus, T]:
        """Run one read-modify-write cycle on a health record.

        The mutation runs against freshly loaded rows and is retried when a
        concurrent writer committed first.
        """
        for attempt in range(1, STALE_RETRIES + 1):
            async with self.session_factory() as session:
                try:
                    cluster = await ClusterRepository(session).get_by_id(cluster_id)
                    if cluster is None:
                        raise ClusterNotFoundError(cluster_id)
                    repo = HealthRepository(session)
                    status = await repo.get_or_create(cluster_id, self.default_policy)
                    await repo.load_active_alerts(cluster_id)
                    result = mutate(status, repo, cluster)
                    await repo.save(status)
                except (StaleDataError, IntegrityError) as e:
                    await session.rollback()
                    if attempt == STALE_RETRIES:
                        raise
                    logger.warning(
                        "Concurrent health update, retrying",
                        cluster_id=str(cluster_id),
                        attempt=attempt,
                        error=e.__class__.__name__,
                    )
                    continue
                return to_health_status(status), result
        raise AssertionError("unreachable")

    async def _publish_change(self, cluster_id: UUID, change: StatusChange) -> None:
        if change.old_state != change.new_state:
            logger.info(
                "Cluster health state changed",
                cluster_id=str(cluster_id),
                old_state=change.old_state,
                new_state=change.new_state,
            )
            await self.event_service.publish_cluster_status_changed(
                cluster_id, change.old_state, change.new_state
            )
        if change.alert is not None:
            await self.event_service.publish_alert(change.alert)

    def _metrics_payload(self, status: HealthStatus, timestamp: datetime) -> HealthMetricsPayload:
        return HealthMetricsPayload(
            cluster_id=status.cluster_id,
            state=status.current_state,
            cpu_usage_percent=status.resources.cpu_percent,
            memory_usage_percent=status.resources.memory_percent,
            disk_usage_percent=status.resources.disk_percent,
            uptime_seconds=status.uptime_seconds,
            error_message=status.error_message,
            timestamp=timestamp,
        )

