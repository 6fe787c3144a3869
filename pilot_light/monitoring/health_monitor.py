"""
Health Monitor

Probes a region's replicated store and derives a scalar health signal plus a
replication lag estimate. The lag estimate comes from writing a timestamped
sentinel row in the probed region and watching for it in the peer replica, so
it is approximate: the margin of error is roughly one poll interval plus the
clock skew between invocations.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..common.aws import ClientFactory, call_with_timeout, from_item, to_item
from ..common.config import Config
from ..common.errors import ConflictError, DRError
from ..common.logger import ComponentLoggerAdapter, get_logger
from . import metrics as metric_names
from .metrics import MetricsEmitter

logger = get_logger(__name__)

# Score for a reachable store whose replica could not be read
UNKNOWN_LAG_SCORE = 0.5


def compute_health_score(
    store_reachable: bool,
    replication_lag_seconds: Optional[float],
    lag_threshold_seconds: float = 60.0,
    lag_ceiling_seconds: float = 300.0,
) -> float:
    """
    Derive a 0.0-1.0 health score.

    Unreachable stores score 0.0. Lag at or below the threshold scores 1.0 and
    decays linearly to 0.0 at the hard ceiling.
    """
    if not store_reachable:
        return 0.0
    if replication_lag_seconds is None:
        return UNKNOWN_LAG_SCORE
    if replication_lag_seconds <= lag_threshold_seconds:
        return 1.0
    if replication_lag_seconds >= lag_ceiling_seconds:
        return 0.0
    span = lag_ceiling_seconds - lag_threshold_seconds
    return 1.0 - (replication_lag_seconds - lag_threshold_seconds) / span


@dataclass(frozen=True)
class HealthRecord:
    """Result of one health probe; never mutated after creation"""
    region: str
    timestamp: str
    store_reachable: bool
    replication_lag_seconds: Optional[float]
    health_score: float
    peer_region: Optional[str] = None
    object_store_reachable: Optional[bool] = None
    error: Optional[str] = None

    def status(self, warning_threshold: float = 0.5) -> str:
        if not self.store_reachable or self.object_store_reachable is False:
            return "unhealthy"
        if self.health_score < warning_threshold:
            return "degraded"
        return "healthy"

    def to_response(self, warning_threshold: float = 0.5) -> Dict:
        response = {
            "status": self.status(warning_threshold),
            "region": self.region,
            "timestamp": self.timestamp,
            "healthScore": self.health_score,
            "replicationLagSeconds": self.replication_lag_seconds,
            "storeReachable": self.store_reachable,
            "objectStoreReachable": self.object_store_reachable,
        }
        if self.error:
            response["error"] = self.error
        return response


class HealthMonitor:
    """
    Replicated store health probe

    check() always returns a HealthRecord; probe failures degrade the score
    instead of propagating.
    """

    def __init__(
        self,
        config: Config,
        metrics: Optional[MetricsEmitter] = None,
        clients: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.metrics = metrics or MetricsEmitter(namespace=config.METRICS_NAMESPACE)
        self.clients = clients or ClientFactory.from_config(config)
        self.clock = clock
        self.log = ComponentLoggerAdapter(logger, {'component': 'health_monitor'})

    def _dynamo(self, region: str):
        return self.clients.get('dynamodb', region)

    async def write_sentinel(self, region: str) -> float:
        """Write the probe's sentinel row; returns the written timestamp"""
        written_at = self.clock()
        item = to_item({
            'id': self.config.SENTINEL_PROBE_KEY,
            'timestamp': written_at,
            'sourceRegion': region,
        })
        try:
            await call_with_timeout(
                self._dynamo(region).put_item,
                self.config.PROBE_TIMEOUT_SECONDS,
                f"sentinel write in {region}",
                TableName=self.config.SENTINEL_TABLE,
                Item=item,
                ConditionExpression='attribute_not_exists(#ts) OR #ts < :ts',
                ExpressionAttributeNames={'#ts': 'timestamp'},
                ExpressionAttributeValues={':ts': item['timestamp']},
            )
        except ConflictError:
            # A concurrent probe already wrote a newer sentinel; the store answered
            self.log.info(f"Newer sentinel already present in {region}", extra={'region': region})
        return written_at

    async def read_sentinel(self, region: str) -> Optional[float]:
        """Read the sentinel timestamp visible in a region, None if absent"""
        response = await call_with_timeout(
            self._dynamo(region).get_item,
            self.config.PROBE_TIMEOUT_SECONDS,
            f"sentinel read in {region}",
            TableName=self.config.SENTINEL_TABLE,
            Key={'id': {'S': self.config.SENTINEL_PROBE_KEY}},
            ConsistentRead=True,
        )
        item = response.get('Item')
        if not item:
            return None
        value = from_item(item).get('timestamp')
        return float(value) if value is not None else None

    async def measure_replication_lag(self, written_at: float, peer_region: str) -> Optional[float]:
        """
        Estimate replication lag towards the peer region.

        Returns None when the peer replica cannot be read or has never seen a
        sentinel; unknown lag is never reported as zero. When the peer holds
        only an older sentinel, the time since our own write is returned as a
        lower bound.
        """
        attempts = max(1, self.config.SENTINEL_POLL_ATTEMPTS)
        peer_timestamp = None

        for attempt in range(attempts):
            try:
                peer_timestamp = await self.read_sentinel(peer_region)
            except DRError as e:
                self.log.warning(f"Standby sentinel read failed in {peer_region}: {e}",
                                 extra={'region': peer_region})
                return None

            if peer_timestamp is not None and peer_timestamp >= written_at:
                return max(0.0, self.clock() - written_at)

            if attempt < attempts - 1:
                await asyncio.sleep(self.config.SENTINEL_POLL_INTERVAL_SECONDS)

        if peer_timestamp is None:
            return None

        # An older sentinel belongs to a previous probe; only our own write bounds the lag
        return max(0.0, self.clock() - written_at)

    async def check_object_store(self, region: str) -> Optional[bool]:
        if not self.config.BACKUP_BUCKET:
            return None
        try:
            await call_with_timeout(
                self.clients.get('s3', region).list_objects_v2,
                self.config.PROBE_TIMEOUT_SECONDS,
                f"object store probe in {region}",
                Bucket=self.config.BACKUP_BUCKET,
                MaxKeys=1,
            )
            return True
        except DRError as e:
            self.log.warning(f"Object store probe failed in {region}: {e}", extra={'region': region})
            return False

    async def check(self, region: Optional[str] = None) -> HealthRecord:
        """Probe a region (the primary by default) and emit health metrics"""
        region = region or self.config.PRIMARY_REGION
        peer_region = self.config.peer_region(region)

        store_reachable = False
        lag = None
        error = None

        try:
            written_at = await self.write_sentinel(region)
            store_reachable = True
        except DRError as e:
            error = str(e)
            self.log.warning(f"Store probe failed in {region}: {e}", extra={'region': region})

        if store_reachable:
            lag = await self.measure_replication_lag(written_at, peer_region)

        object_store_reachable = await self.check_object_store(region)

        score = compute_health_score(
            store_reachable,
            lag,
            self.config.HEALTH_LAG_THRESHOLD_SECONDS,
            self.config.LAG_HARD_CEILING_SECONDS,
        )

        record = HealthRecord(
            region=region,
            timestamp=datetime.now(timezone.utc).isoformat(),
            store_reachable=store_reachable,
            replication_lag_seconds=lag,
            health_score=score,
            peer_region=peer_region,
            object_store_reachable=object_store_reachable,
            error=error,
        )

        lag_text = f"{lag:.2f}s" if lag is not None else "unknown"
        self.log.info(
            f"Region {region}: score={score:.2f}, reachable={store_reachable}, lag={lag_text}",
            extra={'region': region},
        )

        self._publish(record)
        return record

    def _publish(self, record: HealthRecord):
        dims = {'region': record.region}
        self.metrics.record(metric_names.DYNAMODB_HEALTH, 1.0 if record.store_reachable else 0.0,
                            dimensions=dims)
        self.metrics.record(metric_names.HEALTH_SCORE, record.health_score, dimensions=dims)
        if record.replication_lag_seconds is not None:
            self.metrics.record(metric_names.REPLICATION_LAG, record.replication_lag_seconds,
                                unit='Seconds', dimensions=dims)
        if record.object_store_reachable is not None:
            self.metrics.record(metric_names.S3_HEALTH, 1.0 if record.object_store_reachable else 0.0,
                                dimensions=dims)
        self.metrics.flush()
