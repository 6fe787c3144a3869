"""
Tests for the Data Validator
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import boto3
import pytest

from pilot_light.backup.backup_manager import BackupStatus
from pilot_light.common.errors import ValidationError
from pilot_light.monitoring import metrics as metric_names
from pilot_light.replication.data_validator import DataValidator, match_percentage

from conftest import PRIMARY, STANDBY

GENERATED_AT = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def validator(config, aws, metrics):
    return DataValidator(config, metrics=metrics, clients=aws, now=lambda: GENERATED_AT)


def replicate(put_order, order_id: str, **attributes):
    put_order(PRIMARY, order_id, **attributes)
    put_order(STANDBY, order_id, **attributes)


class TestMatchPercentage:

    def test_nothing_sampled_is_full_match(self):
        assert match_percentage(0, 0) == 100.0

    def test_ratio(self):
        assert match_percentage(8, 2) == 75.0


# ── validate ──────────────────────────────────────────────────────────────────

class TestValidate:

    @pytest.mark.asyncio
    async def test_empty_tables(self, validator):
        report = await validator.validate("incremental")

        assert report.sampled_count == 0
        assert report.match_percentage == 100.0
        assert report.status == "healthy"

    @pytest.mark.asyncio
    async def test_in_sync(self, validator, put_order, metrics):
        for i in range(5):
            replicate(put_order, f"o-{i}", total=i)

        report = await validator.validate("full")

        assert report.sampled_count == 5
        assert report.mismatch_count == 0
        assert report.match_percentage == 100.0
        assert report.recommendations == ["All validation checks passed. System is healthy."]

        dims = {"tableName": "orders", "sourceRegion": PRIMARY, "targetRegion": STANDBY}
        assert metrics.get_samples(metric_names.DATA_REPLICATION_MATCH_PERCENTAGE)[-1].dimensions == dims
        assert metrics.get_samples(metric_names.VALIDATION_MISMATCHES)[-1].value == 0

    @pytest.mark.asyncio
    async def test_missing_and_differing_items(self, validator, put_order):
        replicate(put_order, "same", total=1)
        put_order(PRIMARY, "missing", total=2)
        put_order(PRIMARY, "changed", total=3)
        put_order(STANDBY, "changed", total=4)

        report = await validator.validate("full")

        assert report.sampled_count == 3
        assert report.mismatch_count == 2
        assert report.match_percentage == pytest.approx(100 / 3)
        assert report.status == "degraded"
        assert report.recommendations[0].startswith("Data consistency is below 95%")
        table = report.tables[0]
        assert len(table.sample_mismatches) == 2
        assert any("missing" in entry for entry in table.sample_mismatches)

    @pytest.mark.asyncio
    async def test_incremental_samples(self, config, validator, put_order):
        config.VALIDATION_SAMPLE_SIZE = 3
        for i in range(6):
            replicate(put_order, f"o-{i}")

        report = await validator.validate("incremental")

        assert report.sampled_count == 3

    @pytest.mark.asyncio
    async def test_reverse_direction(self, validator, put_order):
        put_order(STANDBY, "written-after-failover")

        report = await validator.validate("full", source_region=STANDBY, target_region=PRIMARY)

        assert report.source_region == STANDBY
        assert report.mismatch_count == 1

    @pytest.mark.asyncio
    async def test_sync_copies_mismatches(self, validator, put_order):
        put_order(PRIMARY, "missing", total=2)
        put_order(PRIMARY, "changed", total=3)
        put_order(STANDBY, "changed", total=4)

        report = await validator.validate("full", action="sync")
        assert report.synced_count == 2

        standby_item = boto3.client('dynamodb', region_name=STANDBY).get_item(
            TableName='orders', Key={'id': {'S': 'changed'}})['Item']
        assert standby_item['total'] == {'N': '3'}

        again = await validator.validate("full")
        assert again.mismatch_count == 0

    @pytest.mark.asyncio
    async def test_table_error_is_skipped(self, validator, put_order):
        replicate(put_order, "o-1")

        report = await validator.validate("full", table_names=["no-such-table", "orders"])

        assert [t.table_name for t in report.tables] == ["no-such-table", "orders"]
        assert report.tables[0].error
        assert report.tables[1].sampled_count == 1
        assert report.match_percentage == 100.0
        assert report.failed_tables == ["no-such-table"]
        assert report.complete is False
        assert report.status == "degraded"
        assert any("no-such-table" in r for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_only_failing_tables_is_degraded(self, validator):
        report = await validator.validate("incremental", table_names=["no-such-table"])

        assert report.sampled_count == 0
        assert report.match_percentage == 100.0
        assert report.status == "degraded"

    @pytest.mark.asyncio
    async def test_no_tables_is_degraded(self, validator):
        report = await validator.validate("incremental", table_names=[])

        assert report.tables == []
        assert report.complete is False
        assert report.status == "degraded"
        assert report.recommendations[0].startswith("No tables configured for validation")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"validation_type": "partial"},
        {"validation_type": "full", "action": "delete"},
        {"validation_type": "full", "source_region": "eu-west-1"},
        {"validation_type": "full", "source_region": PRIMARY, "target_region": PRIMARY},
    ])
    async def test_invalid_requests(self, validator, kwargs):
        with pytest.raises(ValidationError):
            await validator.validate(**kwargs)

    @pytest.mark.asyncio
    async def test_response_payload(self, validator, put_order):
        replicate(put_order, "o-1")

        payload = (await validator.validate("incremental")).to_dict()

        assert payload["matchPercentage"] == 100.0
        assert payload["mismatchCount"] == 0
        assert payload["sampledCount"] == 1
        assert payload["validationType"] == "incremental"
        assert payload["generatedAt"] == GENERATED_AT.isoformat()
        assert payload["tables"][0]["tableName"] == "orders"


# ── Reports and backups ───────────────────────────────────────────────────────

class TestReporting:

    @pytest.mark.asyncio
    async def test_persisted_report(self, validator, config):
        report = await validator.validate("full", persist=True)

        expected_key = f"validation-reports/2026/03/14/full-{int(GENERATED_AT.timestamp())}.json"
        assert report.report_location == f"s3://{config.VALIDATION_REPORT_BUCKET}/{expected_key}"
        body = boto3.client('s3', region_name=PRIMARY).get_object(
            Bucket=config.VALIDATION_REPORT_BUCKET, Key=expected_key)['Body'].read()
        assert json.loads(body)["matchPercentage"] == 100.0

    @pytest.mark.asyncio
    async def test_backup_recommendations(self, config, aws, metrics):
        backup_manager = MagicMock()
        backup_manager.backup_status = AsyncMock(return_value=BackupStatus(
            backup_count=4, last_backup_age_hours=36.0, oldest_backup_days=45.0, stale=True))
        validator = DataValidator(config, metrics=metrics, clients=aws, backup_manager=backup_manager)

        report = await validator.validate("incremental")

        assert report.backup_status["stale"] is True
        assert "Last backup is 36.0 hours old. Consider running a manual backup." in report.recommendations
        assert "Oldest backup is 45 days old. Consider reviewing retention policy." in report.recommendations

    @pytest.mark.asyncio
    async def test_no_backups_recommendation(self, config, aws, metrics):
        backup_manager = MagicMock()
        backup_manager.backup_status = AsyncMock(return_value=BackupStatus(
            backup_count=0, last_backup_age_hours=None, oldest_backup_days=None, stale=True))
        validator = DataValidator(config, metrics=metrics, clients=aws, backup_manager=backup_manager)

        report = await validator.validate("incremental")

        assert "No successful backup found. Run a full backup." in report.recommendations
