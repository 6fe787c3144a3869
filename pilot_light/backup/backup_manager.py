"""
Backup Manager

Runs scheduled full and incremental exports of an application table into the
object store and keeps one metadata row per job. A job row is created as
running and finalized exactly once as succeeded or failed.
"""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..common.aws import ClientFactory, call_with_timeout, from_item, to_item
from ..common.config import Config
from ..common.errors import ConflictError, TransientError, ValidationError
from ..common.logger import ComponentLoggerAdapter, get_logger
from ..monitoring import metrics as metric_names
from ..monitoring.metrics import MetricsEmitter

logger = get_logger(__name__)


class BackupType(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class BackupJobStatus(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupMetadata:
    """Persisted record of one backup job"""
    backup_id: str
    table_name: str
    backup_type: BackupType
    started_at: str
    status: BackupJobStatus = BackupJobStatus.RUNNING
    completed_at: Optional[str] = None
    artifact_location: Optional[str] = None
    item_count: Optional[int] = None
    error_summary: Optional[str] = None
    since_timestamp: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            'backupId': self.backup_id,
            'tableName': self.table_name,
            'backupType': self.backup_type.value,
            'startedAt': self.started_at,
            'completedAt': self.completed_at,
            'status': self.status.value,
            'artifactLocation': self.artifact_location,
            'itemCount': self.item_count,
            'errorSummary': self.error_summary,
            'sinceTimestamp': self.since_timestamp,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "BackupMetadata":
        item_count = record.get('itemCount')
        return cls(
            backup_id=record['backupId'],
            table_name=record['tableName'],
            backup_type=BackupType(record['backupType']),
            started_at=record['startedAt'],
            status=BackupJobStatus(record['status']),
            completed_at=record.get('completedAt'),
            artifact_location=record.get('artifactLocation'),
            item_count=int(item_count) if item_count is not None else None,
            error_summary=record.get('errorSummary'),
            since_timestamp=record.get('sinceTimestamp'),
        )

    def to_response(self) -> Dict[str, Any]:
        response = {'backupId': self.backup_id, 'status': self.status.value}
        if self.artifact_location:
            response['artifactLocation'] = self.artifact_location
        if self.item_count is not None:
            response['itemCount'] = self.item_count
        if self.error_summary:
            response['error'] = self.error_summary
        return response


@dataclass
class BackupStatus:
    """Recency summary of the succeeded backups of a table (or of all tables)"""
    backup_count: int
    last_backup_age_hours: Optional[float]
    oldest_backup_days: Optional[float]
    stale: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backupCount': self.backup_count,
            'lastBackupAgeHours': self.last_backup_age_hours,
            'oldestBackupDays': self.oldest_backup_days,
            'stale': self.stale,
        }


class BackupManager:
    """Table export jobs with persisted job metadata"""

    def __init__(
        self,
        config: Config,
        metrics: Optional[MetricsEmitter] = None,
        clients: Optional[ClientFactory] = None,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.config = config
        self.metrics = metrics or MetricsEmitter(namespace=config.METRICS_NAMESPACE)
        self.clients = clients or ClientFactory.from_config(config)
        self.now = now
        self.metadata_table = config.BACKUP_METADATA_TABLE
        self.bucket = config.BACKUP_BUCKET
        self.log = ComponentLoggerAdapter(logger, {'component': 'backup_manager'})

    def _dynamo(self, region: str):
        return self.clients.get('dynamodb', region)

    @property
    def _metadata_dynamo(self):
        return self._dynamo(self.config.CONTROL_REGION)

    def artifact_key(self, table_name: str, backup_type: BackupType, backup_id: str,
                     started: datetime) -> str:
        return (
            f"{self.config.BACKUP_PREFIX}/{table_name}/{backup_type.value}/"
            f"{started:%Y}/{started:%m}/{started:%d}/{backup_id}.jsonl"
        )

    async def run_backup(self, table_name: str, backup_type: str = "full",
                         region: Optional[str] = None) -> BackupMetadata:
        """
        Export a table and record the job.

        Args:
            table_name: Application table to export
            backup_type: full or incremental
            region: Region to read from (defaults to the primary)

        Returns:
            Finalized BackupMetadata (succeeded or failed)

        Raises:
            ValidationError: malformed request, before any side effect
        """
        if not table_name or not isinstance(table_name, str):
            raise ValidationError("tableName is required")
        try:
            kind = BackupType(backup_type)
        except ValueError:
            raise ValidationError(f"backupType must be 'full' or 'incremental', got {backup_type!r}")

        region = region or self.config.PRIMARY_REGION
        started = self.now()
        backup_id = f"{table_name}-{kind.value}-{int(started.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"

        metadata = BackupMetadata(
            backup_id=backup_id,
            table_name=table_name,
            backup_type=kind,
            started_at=started.isoformat(),
        )
        await self._create_job(metadata)
        log_extra = {'backup_id': backup_id, 'region': region}
        self.log.info(f"Started {kind.value} backup of {table_name}", extra=log_extra)

        try:
            if kind == BackupType.INCREMENTAL:
                metadata.since_timestamp = await self.last_successful_start(table_name)
            items = await self._export_items(region, table_name, metadata.since_timestamp)
            key = self.artifact_key(table_name, kind, backup_id, started)
            await self._upload_artifact(region, key, items)

            metadata.status = BackupJobStatus.SUCCEEDED
            metadata.artifact_location = f"s3://{self.bucket}/{key}"
            metadata.item_count = len(items)
        except Exception as e:
            self.log.error(f"Backup {backup_id} failed: {e}", extra=log_extra)
            metadata.status = BackupJobStatus.FAILED
            metadata.error_summary = str(e) or e.__class__.__name__

        metadata.completed_at = self.now().isoformat()
        await self._finalize_job(metadata)

        self.metrics.record(
            metric_names.BACKUP_JOB_STATUS,
            1.0 if metadata.status == BackupJobStatus.SUCCEEDED else 0.0,
            dimensions={'tableName': table_name, 'backupType': kind.value},
        )
        self.metrics.flush()

        self.log.info(f"Backup {backup_id} {metadata.status.value} ({metadata.item_count or 0} items)",
                      extra=log_extra)
        return metadata

    async def _create_job(self, metadata: BackupMetadata):
        try:
            await call_with_timeout(
                self._metadata_dynamo.put_item,
                self.config.STORE_TIMEOUT_SECONDS,
                "backup job create",
                TableName=self.metadata_table,
                Item=to_item(metadata.to_record()),
                ConditionExpression='attribute_not_exists(backupId)',
            )
        except ConflictError:
            raise ConflictError(f"Backup job {metadata.backup_id} already exists")

    @retry(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _finalize_job(self, metadata: BackupMetadata):
        """Move the job out of running; the condition makes finalization one-shot"""
        names = {'#status': 'status', '#completedAt': 'completedAt'}
        values = {
            ':running': BackupJobStatus.RUNNING.value,
            ':status': metadata.status.value,
            ':completedAt': metadata.completed_at,
        }
        assignments = ['#status = :status', '#completedAt = :completedAt']

        optional = {
            'artifactLocation': metadata.artifact_location,
            'itemCount': metadata.item_count,
            'errorSummary': metadata.error_summary,
            'sinceTimestamp': metadata.since_timestamp,
        }
        for attribute, value in optional.items():
            if value is None:
                continue
            names[f'#{attribute}'] = attribute
            values[f':{attribute}'] = value
            assignments.append(f'#{attribute} = :{attribute}')

        await call_with_timeout(
            self._metadata_dynamo.update_item,
            self.config.STORE_TIMEOUT_SECONDS,
            "backup job finalize",
            TableName=self.metadata_table,
            Key={'backupId': {'S': metadata.backup_id}},
            UpdateExpression='SET ' + ', '.join(assignments),
            ConditionExpression='#status = :running',
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=to_item(values),
        )

    async def _export_items(self, region: str, table_name: str,
                            since: Optional[str]) -> List[Dict[str, Any]]:
        """Paginated scan, optionally restricted to items changed after `since`"""
        kwargs: Dict[str, Any] = {'TableName': table_name}
        if since:
            kwargs['FilterExpression'] = '#changed > :since'
            kwargs['ExpressionAttributeNames'] = {'#changed': self.config.INCREMENTAL_TIMESTAMP_ATTRIBUTE}
            kwargs['ExpressionAttributeValues'] = {':since': {'S': since}}

        items: List[Dict[str, Any]] = []
        while True:
            page = await call_with_timeout(
                self._dynamo(region).scan,
                self.config.STORE_TIMEOUT_SECONDS,
                f"scan {table_name}",
                **kwargs,
            )
            items.extend(from_item(item) for item in page.get('Items', []))
            last_key = page.get('LastEvaluatedKey')
            if not last_key:
                return items
            kwargs['ExclusiveStartKey'] = last_key

    @retry(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _upload_artifact(self, region: str, key: str, items: List[Dict[str, Any]]):
        body = "".join(json.dumps(item, sort_keys=True, default=str) + "\n" for item in items)
        await call_with_timeout(
            self.clients.get('s3', region).put_object,
            self.config.STORE_TIMEOUT_SECONDS,
            f"upload {key}",
            Bucket=self.bucket,
            Key=key,
            Body=body.encode('utf-8'),
            ContentType='application/x-ndjson',
        )

    async def list_backups(self, table_name: Optional[str] = None) -> List[BackupMetadata]:
        """All job rows, newest first"""
        kwargs: Dict[str, Any] = {'TableName': self.metadata_table}
        if table_name:
            kwargs['FilterExpression'] = '#table = :table'
            kwargs['ExpressionAttributeNames'] = {'#table': 'tableName'}
            kwargs['ExpressionAttributeValues'] = {':table': {'S': table_name}}

        backups: List[BackupMetadata] = []
        while True:
            page = await call_with_timeout(
                self._metadata_dynamo.scan,
                self.config.STORE_TIMEOUT_SECONDS,
                "backup job list",
                **kwargs,
            )
            backups.extend(BackupMetadata.from_record(from_item(item)) for item in page.get('Items', []))
            last_key = page.get('LastEvaluatedKey')
            if not last_key:
                break
            kwargs['ExclusiveStartKey'] = last_key

        backups.sort(key=lambda b: b.started_at, reverse=True)
        return backups

    async def last_successful_start(self, table_name: str) -> Optional[str]:
        for backup in await self.list_backups(table_name):
            if backup.status == BackupJobStatus.SUCCEEDED:
                return backup.started_at
        return None

    async def backup_status(self, table_name: Optional[str] = None) -> BackupStatus:
        """Summarize backup recency and flag stale backups"""
        succeeded = [
            b for b in await self.list_backups(table_name)
            if b.status == BackupJobStatus.SUCCEEDED
        ]
        now = self.now()

        if not succeeded:
            status = BackupStatus(backup_count=0, last_backup_age_hours=None,
                                  oldest_backup_days=None, stale=True)
        else:
            finished = [datetime.fromisoformat(b.completed_at or b.started_at) for b in succeeded]
            last_age_hours = (now - max(finished)).total_seconds() / 3600
            oldest_days = (now - min(finished)).total_seconds() / 86400
            status = BackupStatus(
                backup_count=len(succeeded),
                last_backup_age_hours=round(last_age_hours, 2),
                oldest_backup_days=round(oldest_days, 2),
                stale=last_age_hours > self.config.BACKUP_MAX_AGE_HOURS,
            )
            self.metrics.record(metric_names.BACKUP_AGE_HOURS, last_age_hours,
                                dimensions={'tableName': table_name or 'all'})
            self.metrics.flush()

        if status.stale:
            self.log.warning(f"Backups for {table_name or 'all tables'} are stale: {status.to_dict()}")
        return status
