"""Health state machine.

    UNKNOWN -> HEALTHY <-> UNHEALTHY -> FAILED -> RECOVERING -> HEALTHY | FAILED

Pure functions only; the health service applies their results to records.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from shared.models import HealthState

from ..exceptions import InvalidTransitionError


class HealthTrigger(str, Enum):
    """Inputs of the state machine."""

    PROBE_PASSED = "PROBE_PASSED"
    PROBE_FAILED = "PROBE_FAILED"
    RECOVERY_STARTED = "RECOVERY_STARTED"
    RECOVERY_SUCCEEDED = "RECOVERY_SUCCEEDED"
    RECOVERY_FAILED = "RECOVERY_FAILED"
    MONITORING_DISABLED = "MONITORING_DISABLED"


_TRANSITIONS: dict[tuple[HealthState, HealthTrigger], HealthState] = {
    # A passing probe heals from any observed state
    (HealthState.UNKNOWN, HealthTrigger.PROBE_PASSED): HealthState.HEALTHY,
    (HealthState.HEALTHY, HealthTrigger.PROBE_PASSED): HealthState.HEALTHY,
    (HealthState.UNHEALTHY, HealthTrigger.PROBE_PASSED): HealthState.HEALTHY,
    (HealthState.FAILED, HealthTrigger.PROBE_PASSED): HealthState.HEALTHY,
    (HealthState.RECOVERING, HealthTrigger.PROBE_PASSED): HealthState.HEALTHY,
    # First failure degrades, a repeated failure fails
    (HealthState.UNKNOWN, HealthTrigger.PROBE_FAILED): HealthState.UNHEALTHY,
    (HealthState.HEALTHY, HealthTrigger.PROBE_FAILED): HealthState.UNHEALTHY,
    (HealthState.UNHEALTHY, HealthTrigger.PROBE_FAILED): HealthState.FAILED,
    (HealthState.FAILED, HealthTrigger.PROBE_FAILED): HealthState.FAILED,
    (HealthState.RECOVERING, HealthTrigger.PROBE_FAILED): HealthState.FAILED,
    # Recovery
    (HealthState.FAILED, HealthTrigger.RECOVERY_STARTED): HealthState.RECOVERING,
    (HealthState.RECOVERING, HealthTrigger.RECOVERY_SUCCEEDED): HealthState.HEALTHY,
    (HealthState.RECOVERING, HealthTrigger.RECOVERY_FAILED): HealthState.FAILED,
}


def next_state(state: HealthState | str, trigger: HealthTrigger) -> HealthState:
    """Return the state reached from ``state`` on ``trigger``.

    Raises:
        InvalidTransitionError: The trigger is not valid in ``state``
    """
    current = HealthState(state)
    if trigger == HealthTrigger.MONITORING_DISABLED:
        return HealthState.UNKNOWN
    try:
        return _TRANSITIONS[(current, trigger)]
    except KeyError:
        raise InvalidTransitionError(
            f"{trigger.value} is not valid in state {current.value}"
        ) from None


@dataclass(frozen=True)
class RecoveryEligibility:
    """Outcome of the recovery gate."""

    eligible: bool
    reason: str


def can_attempt_recovery(
    state: HealthState | str,
    monitoring_enabled: bool,
    recovery_attempts: int,
    max_recovery_attempts: int,
    last_recovery_attempt: datetime | None,
    cooldown_period_seconds: int,
    now: datetime,
) -> RecoveryEligibility:
    """Decide whether a recovery attempt may start now."""
    if HealthState(state) != HealthState.FAILED:
        return RecoveryEligibility(False, f"state is {HealthState(state).value}")
    if not monitoring_enabled:
        return RecoveryEligibility(False, "monitoring disabled")
    if recovery_attempts >= max_recovery_attempts:
        return RecoveryEligibility(
            False, f"recovery attempts exhausted ({recovery_attempts}/{max_recovery_attempts})"
        )
    if last_recovery_attempt is not None:
        ready_at = last_recovery_attempt + timedelta(seconds=cooldown_period_seconds)
        if now < ready_at:
            remaining = int((ready_at - now).total_seconds())
            return RecoveryEligibility(False, f"cooldown active ({remaining}s remaining)")
    return RecoveryEligibility(True, "eligible")
