"""
Metrics Emitter

Records named, dimensioned, timestamped samples. Every sample is mirrored into a
Prometheus registry and buffered for publication to CloudWatch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge

logger = logging.getLogger(__name__)

# CloudWatch metric names consumed by the alarm definitions
DYNAMODB_HEALTH = "DynamoDBHealth"
S3_HEALTH = "S3Health"
REPLICATION_LAG = "ReplicationLag"
HEALTH_SCORE = "HealthScore"
DATA_REPLICATION_MATCH_PERCENTAGE = "DataReplicationMatchPercentage"
VALIDATION_MISMATCHES = "ValidationMismatches"
FAILOVER_EVENT = "FailoverEvent"
BACKUP_JOB_STATUS = "BackupJobStatus"
BACKUP_AGE_HOURS = "BackupAgeHours"

# name -> (prometheus name, label names, counter?)
METRIC_DEFINITIONS = {
    DYNAMODB_HEALTH: ('dr_dynamodb_health', ['region'], False),
    S3_HEALTH: ('dr_s3_health', ['region'], False),
    REPLICATION_LAG: ('dr_replication_lag_seconds', ['region'], False),
    HEALTH_SCORE: ('dr_health_score', ['region'], False),
    DATA_REPLICATION_MATCH_PERCENTAGE: (
        'dr_data_replication_match_percentage',
        ['tableName', 'sourceRegion', 'targetRegion'],
        False,
    ),
    VALIDATION_MISMATCHES: (
        'dr_validation_mismatches',
        ['tableName', 'sourceRegion', 'targetRegion'],
        False,
    ),
    FAILOVER_EVENT: ('dr_failover_events', ['action', 'targetRegion'], True),
    BACKUP_JOB_STATUS: ('dr_backup_job_status', ['tableName', 'backupType'], False),
    BACKUP_AGE_HOURS: ('dr_backup_age_hours', ['tableName'], False),
}

# PutMetricData accepts at most this many datums per request
CLOUDWATCH_BATCH_SIZE = 20


@dataclass
class MetricSample:
    """A single metric observation"""
    name: str
    value: float
    unit: str = "None"
    dimensions: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_datum(self) -> Dict:
        return {
            'MetricName': self.name,
            'Value': float(self.value),
            'Unit': self.unit,
            'Timestamp': self.timestamp,
            'Dimensions': [
                {'Name': key, 'Value': str(value)}
                for key, value in sorted(self.dimensions.items())
            ],
        }


class MetricsEmitter:
    """
    Metric sink shared by every component.

    Samples are kept in memory until flush() publishes them to CloudWatch.
    A missing CloudWatch client makes the emitter record-only.
    """

    def __init__(
        self,
        namespace: str = "DisasterRecovery",
        cloudwatch_client=None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.namespace = namespace
        self.cloudwatch = cloudwatch_client
        self.registry = registry or CollectorRegistry()
        self.samples: List[MetricSample] = []
        self._pending: List[MetricSample] = []
        self._collectors: Dict[str, object] = {}

    def _collector(self, name: str, dimensions: Dict[str, str]):
        if name in self._collectors:
            return self._collectors[name]

        prom_name, labels, is_counter = METRIC_DEFINITIONS.get(
            name, (f"dr_{name.lower()}", sorted(dimensions.keys()), False)
        )
        if is_counter:
            collector = Counter(prom_name, f"{name} events", labels, registry=self.registry)
        else:
            collector = Gauge(prom_name, f"{name} latest value", labels, registry=self.registry)
        self._collectors[name] = (collector, list(labels))
        return self._collectors[name]

    def record(
        self,
        name: str,
        value: float,
        unit: str = "None",
        dimensions: Optional[Dict[str, str]] = None,
    ) -> MetricSample:
        """Record a sample and mirror it into the Prometheus registry"""
        sample = MetricSample(name=name, value=float(value), unit=unit, dimensions=dict(dimensions or {}))
        self.samples.append(sample)
        self._pending.append(sample)

        collector, labels = self._collector(name, sample.dimensions)
        label_values = {label: str(sample.dimensions.get(label, "")) for label in labels}
        child = collector.labels(**label_values) if labels else collector
        if isinstance(collector, Counter):
            child.inc(sample.value)
        else:
            child.set(sample.value)

        logger.debug(f"Recorded metric {name}={sample.value} {sample.dimensions}")
        return sample

    def get_samples(self, name: Optional[str] = None) -> List[MetricSample]:
        if name:
            return [s for s in self.samples if s.name == name]
        return list(self.samples)

    def flush(self) -> bool:
        """
        Publish pending samples to CloudWatch.

        Returns:
            True if everything pending was published (or nothing to publish)
        """
        if not self._pending or self.cloudwatch is None:
            self._pending.clear()
            return True

        pending, self._pending = self._pending, []
        logger.info(f"Publishing {len(pending)} metrics to CloudWatch namespace {self.namespace}")

        ok = True
        for start in range(0, len(pending), CLOUDWATCH_BATCH_SIZE):
            batch = pending[start:start + CLOUDWATCH_BATCH_SIZE]
            try:
                self.cloudwatch.put_metric_data(
                    Namespace=self.namespace,
                    MetricData=[sample.to_datum() for sample in batch],
                )
            except Exception as e:
                # Metrics must never fail an invocation
                logger.error(f"Failed to publish metrics: {e}")
                ok = False
        return ok
