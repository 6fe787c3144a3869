"""
Failover state machine.

STATE TRANSITION RULES:
- Normal -> Degraded: health below warning threshold for N consecutive
  evaluations, or replication lag above the hard ceiling
- Degraded -> Normal: health recovered
- Degraded -> FailoverInProgress: health stays critical, or explicit directive
- FailoverInProgress -> FailedOver: failover sequence completed
- FailoverInProgress -> Degraded: failover sequence failed
- FailedOver -> FailbackInProgress: explicit directive only
- FailbackInProgress -> Normal: traffic returned to the primary
- FailbackInProgress -> FailedOver: failback sequence failed

There is no terminal state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Set

from ..common.errors import InvalidTransitionError
from ..monitoring.health_monitor import HealthRecord


class FailoverStatus(Enum):
    """Persisted failover state"""
    NORMAL = "Normal"
    DEGRADED = "Degraded"
    FAILOVER_IN_PROGRESS = "FailoverInProgress"
    FAILED_OVER = "FailedOver"
    FAILBACK_IN_PROGRESS = "FailbackInProgress"


class Outcome(Enum):
    """Machine-readable result of one controller invocation"""
    TRANSITIONED = "transitioned"
    NO_OP = "no-op"
    REJECTED = "rejected"
    CONFLICT = "conflict"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[FailoverStatus, Set[FailoverStatus]] = {
    FailoverStatus.NORMAL: {FailoverStatus.DEGRADED},
    FailoverStatus.DEGRADED: {
        FailoverStatus.NORMAL,
        FailoverStatus.FAILOVER_IN_PROGRESS,
    },
    FailoverStatus.FAILOVER_IN_PROGRESS: {
        FailoverStatus.FAILED_OVER,
        FailoverStatus.DEGRADED,
    },
    FailoverStatus.FAILED_OVER: {FailoverStatus.FAILBACK_IN_PROGRESS},
    FailoverStatus.FAILBACK_IN_PROGRESS: {
        FailoverStatus.NORMAL,
        FailoverStatus.FAILED_OVER,
    },
}

IN_PROGRESS_STATES = {
    FailoverStatus.FAILOVER_IN_PROGRESS,
    FailoverStatus.FAILBACK_IN_PROGRESS,
}


def can_transition(current: FailoverStatus, target: FailoverStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def check_transition(current: FailoverStatus, target: FailoverStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Transition {current.value} -> {target.value} is not allowed"
        )


@dataclass
class HealthThresholds:
    """Thresholds applied to a HealthRecord by the controller"""
    warning: float = 0.5
    critical: float = 0.25
    lag_ceiling_seconds: float = 300.0
    consecutive_failures: int = 2

    @classmethod
    def from_config(cls, config) -> "HealthThresholds":
        return cls(
            warning=config.HEALTH_WARNING_THRESHOLD,
            critical=config.HEALTH_CRITICAL_THRESHOLD,
            lag_ceiling_seconds=config.LAG_HARD_CEILING_SECONDS,
            consecutive_failures=config.CONSECUTIVE_FAILURES,
        )

    def exceeds_ceiling(self, health: HealthRecord) -> bool:
        lag = health.replication_lag_seconds
        return lag is not None and lag > self.lag_ceiling_seconds

    def is_breach(self, health: HealthRecord) -> bool:
        return not health.store_reachable or health.health_score < self.warning

    def is_critical(self, health: HealthRecord) -> bool:
        return not health.store_reachable or health.health_score < self.critical

    def is_recovered(self, health: HealthRecord) -> bool:
        return (
            health.store_reachable
            and health.health_score >= self.warning
            and not self.exceeds_ceiling(health)
        )
