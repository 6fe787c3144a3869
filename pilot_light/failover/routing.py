"""
Routing Intent

The control plane never edits DNS itself. It publishes a routing intent that
an external router (weighted DNS records, a global load balancer) converges
on. Failover shifts all traffic in one step; failback lists gradual weight
steps back to the primary.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..common.aws import ClientFactory, call_with_timeout
from ..common.config import Config
from ..common.errors import DRError
from ..common.logger import get_logger

logger = get_logger(__name__)

FAILBACK_WEIGHT_STEPS = [10, 25, 50, 100]


@dataclass
class RoutingIntent:
    """Desired traffic split between the two regions"""
    active_region: str
    mode: str  # failover, failback
    weights: Dict[str, int]
    steps: List[Dict[str, int]] = field(default_factory=list)
    reason: str = ""
    emitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    state_version: Optional[int] = None

    @classmethod
    def failover(cls, target: str, source: str, reason: str = "",
                 state_version: Optional[int] = None) -> "RoutingIntent":
        return cls(
            active_region=target,
            mode="failover",
            weights={target: 100, source: 0},
            reason=reason,
            state_version=state_version,
        )

    @classmethod
    def failback(cls, primary: str, standby: str, reason: str = "",
                 state_version: Optional[int] = None) -> "RoutingIntent":
        steps = [{primary: weight, standby: 100 - weight} for weight in FAILBACK_WEIGHT_STEPS]
        return cls(
            active_region=primary,
            mode="failback",
            weights=dict(steps[-1]),
            steps=steps,
            reason=reason,
            state_version=state_version,
        )

    def to_dict(self) -> Dict:
        return {
            'activeRegion': self.active_region,
            'mode': self.mode,
            'weights': dict(self.weights),
            'steps': [dict(step) for step in self.steps],
            'reason': self.reason,
            'emittedAt': self.emitted_at,
            'stateVersion': self.state_version,
        }


class RoutingIntentPublisher:
    """Writes the current routing intent to a well-known object store key"""

    def __init__(self, config: Config, clients: Optional[ClientFactory] = None):
        self.config = config
        self.clients = clients or ClientFactory.from_config(config)
        self.bucket = config.ROUTING_INTENT_BUCKET
        self.key = config.ROUTING_INTENT_KEY
        self.region = config.ROUTING_INTENT_REGION

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    async def publish(self, intent: RoutingIntent) -> str:
        """Overwrite the intent object; republishing the same intent is harmless"""
        body = json.dumps(intent.to_dict(), sort_keys=True, indent=2)
        await call_with_timeout(
            self.clients.get('s3', self.region).put_object,
            self.config.STORE_TIMEOUT_SECONDS,
            "routing intent publish",
            Bucket=self.bucket,
            Key=self.key,
            Body=body.encode('utf-8'),
            ContentType='application/json',
        )
        logger.info(
            f"Published routing intent: mode={intent.mode}, active={intent.active_region}, "
            f"weights={intent.weights} -> {self.location}",
            extra={'region': intent.active_region},
        )
        return self.location

    async def read(self) -> Optional[Dict]:
        """Return the last published intent, None if nothing was published"""
        s3 = self.clients.get('s3', self.region)
        try:
            response = await call_with_timeout(
                s3.get_object,
                self.config.STORE_TIMEOUT_SECONDS,
                "routing intent read",
                Bucket=self.bucket,
                Key=self.key,
            )
        except DRError as e:
            if 'NoSuchKey' in str(e):
                return None
            raise
        return json.loads(response['Body'].read())
