"""
Data Validator

Compares application table items between the two regional replicas and
reports a match percentage. Incremental validation samples the first items of
each table; full validation walks the whole table. Optionally copies
mismatched items from the source replica into the target replica.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..common.aws import ClientFactory, call_with_timeout, from_item
from ..common.config import Config
from ..common.errors import DRError, ValidationError
from ..common.logger import ComponentLoggerAdapter, get_logger
from ..monitoring import metrics as metric_names
from ..monitoring.metrics import MetricsEmitter

logger = get_logger(__name__)

VALIDATION_TYPES = ("incremental", "full")
ACTIONS = ("validate", "sync")

# Above this many days the retention policy deserves a look
BACKUP_RETENTION_REVIEW_DAYS = 30.0
# Sample of mismatched keys kept per table in the report
MAX_REPORTED_MISMATCHES = 10


def match_percentage(sampled: int, mismatches: int) -> float:
    if sampled <= 0:
        return 100.0
    return (sampled - mismatches) / sampled * 100.0


@dataclass
class TableValidation:
    """Comparison result for a single table"""
    table_name: str
    sampled_count: int = 0
    mismatch_count: int = 0
    synced_count: int = 0
    source_item_count: Optional[int] = None
    target_item_count: Optional[int] = None
    sample_mismatches: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def match_percentage(self) -> float:
        return match_percentage(self.sampled_count, self.mismatch_count)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'tableName': self.table_name,
            'sampledCount': self.sampled_count,
            'mismatchCount': self.mismatch_count,
            'matchPercentage': round(self.match_percentage, 2),
            'syncedCount': self.synced_count,
            'sourceItemCount': self.source_item_count,
            'targetItemCount': self.target_item_count,
            'sampleMismatches': list(self.sample_mismatches),
        }
        if self.error:
            result['error'] = self.error
        return result


@dataclass
class ValidationReport:
    """Aggregated result of one validation run"""
    validation_type: str
    source_region: str
    target_region: str
    generated_at: str
    tables: List[TableValidation] = field(default_factory=list)
    status: str = "healthy"
    recommendations: List[str] = field(default_factory=list)
    backup_status: Optional[Dict[str, Any]] = None
    report_location: Optional[str] = None

    @property
    def sampled_count(self) -> int:
        return sum(t.sampled_count for t in self.tables)

    @property
    def mismatch_count(self) -> int:
        return sum(t.mismatch_count for t in self.tables)

    @property
    def synced_count(self) -> int:
        return sum(t.synced_count for t in self.tables)

    @property
    def match_percentage(self) -> float:
        return match_percentage(self.sampled_count, self.mismatch_count)

    @property
    def failed_tables(self) -> List[str]:
        return [t.table_name for t in self.tables if t.error]

    @property
    def complete(self) -> bool:
        """True when at least one table was requested and every table was compared"""
        return bool(self.tables) and not self.failed_tables

    def to_dict(self) -> Dict[str, Any]:
        report = {
            'validationType': self.validation_type,
            'sourceRegion': self.source_region,
            'targetRegion': self.target_region,
            'generatedAt': self.generated_at,
            'sampledCount': self.sampled_count,
            'mismatchCount': self.mismatch_count,
            'matchPercentage': round(self.match_percentage, 2),
            'syncedCount': self.synced_count,
            'status': self.status,
            'tables': [t.to_dict() for t in self.tables],
            'recommendations': list(self.recommendations),
        }
        if self.backup_status is not None:
            report['backupStatus'] = self.backup_status
        if self.report_location:
            report['reportLocation'] = self.report_location
        return report


class DataValidator:
    """Cross-region replica consistency checks"""

    def __init__(
        self,
        config: Config,
        metrics: Optional[MetricsEmitter] = None,
        clients: Optional[ClientFactory] = None,
        backup_manager=None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.metrics = metrics or MetricsEmitter(namespace=config.METRICS_NAMESPACE)
        self.clients = clients or ClientFactory.from_config(config)
        self.backup_manager = backup_manager
        self.now = now
        self.log = ComponentLoggerAdapter(logger, {'component': 'data_validator'})

    def _dynamo(self, region: str):
        return self.clients.get('dynamodb', region)

    async def validate(
        self,
        validation_type: str = "incremental",
        source_region: Optional[str] = None,
        target_region: Optional[str] = None,
        table_names: Optional[List[str]] = None,
        action: Optional[str] = None,
        persist: bool = False,
    ) -> ValidationReport:
        """
        Compare the configured tables between two replicas.

        Args:
            validation_type: incremental (sampled) or full
            source_region: Replica read as the reference (defaults to primary)
            target_region: Replica checked against it (defaults to standby)
            table_names: Tables to compare (defaults to APPLICATION_TABLES)
            action: validate (default) or sync
            persist: Also write the report to the object store

        Raises:
            ValidationError: unknown validation type, action or region
        """
        if validation_type not in VALIDATION_TYPES:
            raise ValidationError(f"validationType must be one of {', '.join(VALIDATION_TYPES)}")
        action = action or "validate"
        if action not in ACTIONS:
            raise ValidationError(f"action must be one of {', '.join(ACTIONS)}")

        source_region = source_region or self.config.PRIMARY_REGION
        target_region = target_region or self.config.peer_region(source_region)
        for region in (source_region, target_region):
            if region not in self.config.regions:
                raise ValidationError(f"Region {region} is not a configured region")
        if source_region == target_region:
            raise ValidationError("source and target regions must differ")

        tables = table_names if table_names is not None else self.config.APPLICATION_TABLES

        report = ValidationReport(
            validation_type=validation_type,
            source_region=source_region,
            target_region=target_region,
            generated_at=self.now().isoformat(),
        )

        for table_name in tables:
            try:
                result = await self.validate_table(
                    table_name, source_region, target_region,
                    full=(validation_type == "full"),
                    sync=(action == "sync"),
                )
            except DRError as e:
                self.log.error(f"Validation of {table_name} failed: {e}", extra={'region': source_region})
                result = TableValidation(table_name=table_name, error=str(e))
            report.tables.append(result)
            self._publish(result, source_region, target_region)

        self.metrics.flush()

        if self.backup_manager is not None:
            try:
                report.backup_status = (await self.backup_manager.backup_status()).to_dict()
            except DRError as e:
                self.log.warning(f"Backup status unavailable: {e}")

        in_sync = report.match_percentage >= self.config.VALIDATION_HEALTHY_PERCENT
        report.status = "healthy" if in_sync and report.complete else "degraded"
        report.recommendations = self.generate_recommendations(report)

        if persist and self.config.VALIDATION_REPORT_BUCKET:
            try:
                report.report_location = await self.persist_report(report)
            except DRError as e:
                self.log.error(f"Failed to save validation report: {e}")

        self.log.info(
            f"{validation_type} validation {source_region} -> {target_region}: "
            f"{report.match_percentage:.2f}% match, {report.mismatch_count} mismatches "
            f"over {report.sampled_count} items"
        )
        return report

    async def _key_attributes(self, region: str, table_name: str) -> Dict[str, Any]:
        description = await call_with_timeout(
            self._dynamo(region).describe_table,
            self.config.STORE_TIMEOUT_SECONDS,
            f"describe {table_name} in {region}",
            TableName=table_name,
        )
        table = description['Table']
        return {
            'keys': [k['AttributeName'] for k in table['KeySchema']],
            'item_count': table.get('ItemCount'),
        }

    async def _source_items(self, region: str, table_name: str, full: bool):
        kwargs: Dict[str, Any] = {'TableName': table_name}
        if not full:
            kwargs['Limit'] = self.config.VALIDATION_SAMPLE_SIZE

        while True:
            page = await call_with_timeout(
                self._dynamo(region).scan,
                self.config.STORE_TIMEOUT_SECONDS,
                f"scan {table_name} in {region}",
                **kwargs,
            )
            for item in page.get('Items', []):
                yield item
            last_key = page.get('LastEvaluatedKey')
            if not full or not last_key:
                return
            kwargs['ExclusiveStartKey'] = last_key

    async def validate_table(self, table_name: str, source_region: str, target_region: str,
                             full: bool = False, sync: bool = False) -> TableValidation:
        source = await self._key_attributes(source_region, table_name)
        target = await self._key_attributes(target_region, table_name)
        result = TableValidation(
            table_name=table_name,
            source_item_count=source['item_count'],
            target_item_count=target['item_count'],
        )

        async for raw_item in self._source_items(source_region, table_name, full):
            key = {name: raw_item[name] for name in source['keys']}
            response = await call_with_timeout(
                self._dynamo(target_region).get_item,
                self.config.STORE_TIMEOUT_SECONDS,
                f"read {table_name} in {target_region}",
                TableName=table_name,
                Key=key,
                ConsistentRead=True,
            )
            result.sampled_count += 1

            replica = response.get('Item')
            if replica is not None and from_item(replica) == from_item(raw_item):
                continue

            result.mismatch_count += 1
            if len(result.sample_mismatches) < MAX_REPORTED_MISMATCHES:
                reason = "missing" if replica is None else "differs"
                result.sample_mismatches.append(f"{json.dumps(from_item(key), default=str)} {reason}")

            if sync:
                await call_with_timeout(
                    self._dynamo(target_region).put_item,
                    self.config.STORE_TIMEOUT_SECONDS,
                    f"sync {table_name} to {target_region}",
                    TableName=table_name,
                    Item=raw_item,
                )
                result.synced_count += 1

        if result.mismatch_count:
            self.log.warning(
                f"{table_name}: {result.mismatch_count}/{result.sampled_count} items differ in {target_region}"
                + (f", {result.synced_count} synced" if sync else ""),
                extra={'region': target_region},
            )
        return result

    def _publish(self, result: TableValidation, source_region: str, target_region: str):
        if result.error:
            return
        dims = {'tableName': result.table_name, 'sourceRegion': source_region, 'targetRegion': target_region}
        self.metrics.record(metric_names.DATA_REPLICATION_MATCH_PERCENTAGE, result.match_percentage,
                            unit='Percent', dimensions=dims)
        self.metrics.record(metric_names.VALIDATION_MISMATCHES, result.mismatch_count,
                            unit='Count', dimensions=dims)

    def generate_recommendations(self, report: ValidationReport) -> List[str]:
        recommendations = []
        threshold = self.config.VALIDATION_HEALTHY_PERCENT

        if report.match_percentage < threshold:
            recommendations.append(
                f"Data consistency is below {threshold:.0f}% ({report.match_percentage:.1f}%). "
                f"Investigate mismatches immediately."
            )

        if not report.tables:
            recommendations.append("No tables configured for validation. Set APPLICATION_TABLES.")

        failed_tables = report.failed_tables
        if failed_tables:
            recommendations.append(f"Tables could not be validated: {', '.join(failed_tables)}.")

        backup = report.backup_status or {}
        age_hours = backup.get('lastBackupAgeHours')
        if backup and age_hours is None:
            recommendations.append("No successful backup found. Run a full backup.")
        elif age_hours is not None and age_hours > self.config.BACKUP_MAX_AGE_HOURS:
            recommendations.append(
                f"Last backup is {age_hours:.1f} hours old. Consider running a manual backup."
            )

        oldest_days = backup.get('oldestBackupDays')
        if oldest_days is not None and oldest_days > BACKUP_RETENTION_REVIEW_DAYS:
            recommendations.append(
                f"Oldest backup is {oldest_days:.0f} days old. Consider reviewing retention policy."
            )

        if not recommendations:
            recommendations.append("All validation checks passed. System is healthy.")
        return recommendations

    async def persist_report(self, report: ValidationReport) -> str:
        generated = datetime.fromisoformat(report.generated_at)
        key = (
            f"validation-reports/{generated:%Y}/{generated:%m}/{generated:%d}/"
            f"{report.validation_type}-{int(generated.timestamp())}.json"
        )
        bucket = self.config.VALIDATION_REPORT_BUCKET
        await call_with_timeout(
            self.clients.get('s3', report.source_region).put_object,
            self.config.STORE_TIMEOUT_SECONDS,
            "validation report upload",
            Bucket=bucket,
            Key=key,
            Body=json.dumps(report.to_dict(), indent=2, default=str).encode('utf-8'),
            ContentType='application/json',
        )
        location = f"s3://{bucket}/{key}"
        self.log.info(f"Validation report saved to {location}")
        return location
