"""Health probes and metric emission for the DR control plane."""

from .metrics import MetricSample, MetricsEmitter
from .health_monitor import HealthMonitor, HealthRecord, compute_health_score

__all__ = [
    'MetricSample',
    'MetricsEmitter',
    'HealthMonitor',
    'HealthRecord',
    'compute_health_score',
]
