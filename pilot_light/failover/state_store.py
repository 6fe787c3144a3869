"""
Failover state persistence.

The failover state is a single row per deployment. Every mutation is a
conditional put on the row's version, so concurrent invocations never hold a
lock and a stale writer is detected instead of silently overwriting.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Optional

from ..common.aws import ClientFactory, call_with_timeout, from_item, to_item
from ..common.config import Config
from ..common.errors import ConflictError
from ..common.logger import get_logger
from .state_machine import FailoverStatus, check_transition

logger = get_logger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class FailoverState:
    """Snapshot of the persisted failover state row"""
    deployment_id: str
    current_state: FailoverStatus
    active_region: str
    last_transition_at: str
    version: int
    consecutive_breaches: int = 0
    last_action: Optional[str] = None
    last_error: Optional[str] = None
    last_stage: Optional[str] = None

    def to_record(self) -> Dict:
        return {
            'id': self.deployment_id,
            'currentState': self.current_state.value,
            'activeRegion': self.active_region,
            'lastTransitionAt': self.last_transition_at,
            'version': self.version,
            'consecutiveBreaches': self.consecutive_breaches,
            'lastAction': self.last_action,
            'lastError': self.last_error,
            'lastStage': self.last_stage,
        }

    @classmethod
    def from_record(cls, record: Dict) -> "FailoverState":
        return cls(
            deployment_id=record['id'],
            current_state=FailoverStatus(record['currentState']),
            active_region=record['activeRegion'],
            last_transition_at=record.get('lastTransitionAt', ''),
            version=int(record['version']),
            consecutive_breaches=int(record.get('consecutiveBreaches', 0)),
            last_action=record.get('lastAction'),
            last_error=record.get('lastError'),
            last_stage=record.get('lastStage'),
        )


class FailoverStateRepository:
    """DynamoDB-backed repository for the failover state singleton"""

    def __init__(self, config: Config, clients: Optional[ClientFactory] = None):
        self.config = config
        self.clients = clients or ClientFactory.from_config(config)
        self.table = config.FAILOVER_STATE_TABLE
        self.deployment_id = config.DEPLOYMENT_ID
        # CAS is only linearizable within one replica, so every invocation uses the same one
        self.region = config.CONTROL_REGION

    @property
    def _dynamo(self):
        return self.clients.get('dynamodb', self.region)

    async def load(self) -> Optional[FailoverState]:
        response = await call_with_timeout(
            self._dynamo.get_item,
            self.config.STORE_TIMEOUT_SECONDS,
            "failover state read",
            TableName=self.table,
            Key={'id': {'S': self.deployment_id}},
            ConsistentRead=True,
        )
        item = response.get('Item')
        if not item:
            return None
        return FailoverState.from_record(from_item(item))

    async def initialize(self, primary_region: str) -> FailoverState:
        """Create the initial Normal row unless one already exists"""
        state = FailoverState(
            deployment_id=self.deployment_id,
            current_state=FailoverStatus.NORMAL,
            active_region=primary_region,
            last_transition_at=_utc_now(),
            version=1,
        )
        try:
            await call_with_timeout(
                self._dynamo.put_item,
                self.config.STORE_TIMEOUT_SECONDS,
                "failover state initialize",
                TableName=self.table,
                Item=to_item(state.to_record()),
                ConditionExpression='attribute_not_exists(id)',
            )
            logger.info(f"Initialized failover state for deployment {self.deployment_id}")
            return state
        except ConflictError:
            existing = await self.load()
            if existing is None:
                raise
            return existing

    async def load_or_initialize(self, primary_region: str) -> FailoverState:
        state = await self.load()
        if state is None:
            state = await self.initialize(primary_region)
        return state

    async def compare_and_swap(self, current: FailoverState, **changes) -> FailoverState:
        """
        Persist a new version of the state if nobody else advanced it.

        Args:
            current: Snapshot the caller based its decision on
            **changes: Fields to change on the new snapshot

        Returns:
            The new snapshot with version + 1

        Raises:
            ConflictError: the stored version no longer matches current.version
            InvalidTransitionError: the state change is not an allowed edge
        """
        target = changes.get('current_state', current.current_state)
        if target != current.current_state:
            check_transition(current.current_state, target)
            changes.setdefault('last_transition_at', _utc_now())

        new_state = replace(current, version=current.version + 1, **changes)

        try:
            await call_with_timeout(
                self._dynamo.put_item,
                self.config.STORE_TIMEOUT_SECONDS,
                "failover state update",
                TableName=self.table,
                Item=to_item(new_state.to_record()),
                ConditionExpression='#version = :expected',
                ExpressionAttributeNames={'#version': 'version'},
                ExpressionAttributeValues={':expected': {'N': str(current.version)}},
            )
        except ConflictError:
            raise ConflictError(
                f"Failover state version {current.version} is stale for deployment {self.deployment_id}"
            )

        if target != current.current_state:
            logger.info(
                f"Failover state {current.current_state.value} -> {target.value} "
                f"(version {new_state.version}, active={new_state.active_region})",
                extra={'state': target.value, 'deployment_id': self.deployment_id},
            )
        return new_state
