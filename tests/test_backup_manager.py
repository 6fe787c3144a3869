"""
Tests for the Backup Manager
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import boto3
import pytest

from pilot_light.backup.backup_manager import (
    BackupJobStatus,
    BackupManager,
    BackupMetadata,
    BackupType,
)
from pilot_light.common.errors import ConflictError, TransientError, ValidationError
from pilot_light.monitoring import metrics as metric_names

from conftest import PRIMARY, STANDBY


class Clock:
    """Controllable UTC clock"""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def manager(config, aws, metrics, clock):
    return BackupManager(config, metrics=metrics, clients=aws, now=clock)


def metadata_row(config, backup_id: str) -> dict:
    item = boto3.client('dynamodb', region_name=STANDBY).get_item(
        TableName=config.BACKUP_METADATA_TABLE, Key={'backupId': {'S': backup_id}})
    return item.get('Item')


def artifact_lines(config, location: str) -> list:
    key = location.split(f"s3://{config.BACKUP_BUCKET}/", 1)[1]
    body = boto3.client('s3', region_name=PRIMARY).get_object(Bucket=config.BACKUP_BUCKET, Key=key)['Body']
    return [json.loads(line) for line in body.read().decode('utf-8').splitlines()]


# ── run_backup ────────────────────────────────────────────────────────────────

class TestRunBackup:

    @pytest.mark.asyncio
    async def test_full_backup(self, manager, config, put_order, metrics):
        put_order(PRIMARY, "o-1", total=10)
        put_order(PRIMARY, "o-2", total=25)

        metadata = await manager.run_backup("orders", "full")

        assert metadata.status == BackupJobStatus.SUCCEEDED
        assert metadata.item_count == 2
        assert metadata.artifact_location.startswith(
            f"s3://{config.BACKUP_BUCKET}/backups/orders/full/2026/03/14/orders-full-")
        assert metadata.artifact_location.endswith(".jsonl")
        assert sorted(row["id"] for row in artifact_lines(config, metadata.artifact_location)) == ["o-1", "o-2"]

        row = metadata_row(config, metadata.backup_id)
        assert row['status']['S'] == "succeeded"
        assert row['itemCount']['N'] == "2"
        assert 'completedAt' in row

        samples = metrics.get_samples(metric_names.BACKUP_JOB_STATUS)
        assert samples[-1].value == 1.0
        assert samples[-1].dimensions == {"tableName": "orders", "backupType": "full"}

    @pytest.mark.asyncio
    async def test_empty_table(self, manager, config):
        metadata = await manager.run_backup("orders", "full")

        assert metadata.status == BackupJobStatus.SUCCEEDED
        assert metadata.item_count == 0
        assert artifact_lines(config, metadata.artifact_location) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("table,backup_type", [
        ("", "full"),
        (None, "full"),
        ("orders", "differential"),
    ])
    async def test_invalid_request_has_no_side_effects(self, manager, config, table, backup_type):
        with pytest.raises(ValidationError):
            await manager.run_backup(table, backup_type)

        rows = boto3.client('dynamodb', region_name=STANDBY).scan(TableName=config.BACKUP_METADATA_TABLE)
        assert rows['Count'] == 0

    @pytest.mark.asyncio
    async def test_export_failure_is_finalized(self, manager, config, metrics):
        with patch.object(manager, "_export_items", AsyncMock(side_effect=RuntimeError("scan exploded"))):
            metadata = await manager.run_backup("orders", "full")

        assert metadata.status == BackupJobStatus.FAILED
        assert "scan exploded" in metadata.error_summary
        assert metadata.to_response()["error"] == "scan exploded"

        row = metadata_row(config, metadata.backup_id)
        assert row['status']['S'] == "failed"
        assert row['errorSummary']['S'] == "scan exploded"
        assert metrics.get_samples(metric_names.BACKUP_JOB_STATUS)[-1].value == 0.0

    @pytest.mark.asyncio
    async def test_missing_table_is_finalized(self, manager, config):
        metadata = await manager.run_backup("no-such-table", "full")

        assert metadata.status == BackupJobStatus.FAILED
        assert metadata_row(config, metadata.backup_id)['status']['S'] == "failed"

    @pytest.mark.asyncio
    async def test_upload_retries_transient_errors(self, manager, config, put_order):
        put_order(PRIMARY, "o-1")
        upload = manager.clients.get('s3', PRIMARY).put_object
        calls = {"count": 0}

        def flaky_put(**kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise TransientError("SlowDown")
            return upload(**kwargs)

        with patch.object(manager.clients.get('s3', PRIMARY), "put_object", side_effect=flaky_put), \
                patch("asyncio.sleep", new=AsyncMock()):
            metadata = await manager.run_backup("orders", "full")

        assert metadata.status == BackupJobStatus.SUCCEEDED
        assert calls["count"] == 2

    @pytest.mark.asyncio
    async def test_finalize_retries_transient_errors(self, manager, config):
        dynamo = manager._metadata_dynamo
        update = dynamo.update_item
        calls = {"count": 0}

        def throttled_once(**kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise TransientError("throttled")
            return update(**kwargs)

        with patch.object(dynamo, "update_item", side_effect=throttled_once), \
                patch("asyncio.sleep", new=AsyncMock()):
            metadata = await manager.run_backup("orders", "full")

        assert metadata.status == BackupJobStatus.SUCCEEDED
        assert calls["count"] == 2
        assert metadata_row(config, metadata.backup_id)['status']['S'] == "succeeded"

    @pytest.mark.asyncio
    async def test_finalized_job_cannot_change(self, manager, config):
        metadata = await manager.run_backup("orders", "full")
        metadata.status = BackupJobStatus.FAILED

        with pytest.raises(ConflictError):
            await manager._finalize_job(metadata)

        assert metadata_row(config, metadata.backup_id)['status']['S'] == "succeeded"

    @pytest.mark.asyncio
    async def test_same_table_jobs_are_independent(self, manager):
        first = await manager.run_backup("orders", "full")
        second = await manager.run_backup("orders", "full")

        assert first.backup_id != second.backup_id
        assert first.artifact_location != second.artifact_location

    @pytest.mark.asyncio
    async def test_incremental_exports_changes_since_last_success(self, manager, config, clock, put_order):
        put_order(PRIMARY, "old", updated_at="2026-03-14T08:00:00+00:00")
        full = await manager.run_backup("orders", "full")

        clock.advance(hours=2)
        put_order(PRIMARY, "new", updated_at="2026-03-14T10:00:00+00:00")
        incremental = await manager.run_backup("orders", "incremental")

        assert incremental.status == BackupJobStatus.SUCCEEDED
        assert incremental.since_timestamp == full.started_at
        assert [row["id"] for row in artifact_lines(config, incremental.artifact_location)] == ["new"]
        assert "/incremental/" in incremental.artifact_location

    @pytest.mark.asyncio
    async def test_incremental_without_prior_backup_exports_everything(self, manager, put_order):
        put_order(PRIMARY, "o-1", updated_at="2026-03-14T08:00:00+00:00")

        metadata = await manager.run_backup("orders", "incremental")

        assert metadata.since_timestamp is None
        assert metadata.item_count == 1


# ── Listing and status ────────────────────────────────────────────────────────

class TestBackupStatus:

    @pytest.mark.asyncio
    async def test_no_backups_is_stale(self, manager):
        status = await manager.backup_status("orders")

        assert status.backup_count == 0
        assert status.stale is True
        assert status.to_dict()["lastBackupAgeHours"] is None

    @pytest.mark.asyncio
    async def test_recent_backup(self, manager, clock, metrics):
        await manager.run_backup("orders", "full")
        clock.advance(hours=3)

        status = await manager.backup_status("orders")

        assert status.backup_count == 1
        assert status.last_backup_age_hours == pytest.approx(3.0)
        assert status.stale is False
        assert metrics.get_samples(metric_names.BACKUP_AGE_HOURS)[-1].value == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_old_backup_is_stale(self, manager, clock):
        await manager.run_backup("orders", "full")
        clock.advance(days=2)
        await manager.run_backup("orders", "full")
        clock.advance(hours=30)

        status = await manager.backup_status("orders")

        assert status.backup_count == 2
        assert status.stale is True
        assert status.oldest_backup_days == pytest.approx(3.25)

    @pytest.mark.asyncio
    async def test_failed_jobs_do_not_count(self, manager):
        with patch.object(manager, "_export_items", AsyncMock(side_effect=RuntimeError("boom"))):
            await manager.run_backup("orders", "full")

        status = await manager.backup_status("orders")

        assert status.backup_count == 0

    @pytest.mark.asyncio
    async def test_list_backups_newest_first(self, manager, clock):
        first = await manager.run_backup("orders", "full")
        clock.advance(minutes=5)
        second = await manager.run_backup("orders", "incremental")

        backups = await manager.list_backups("orders")

        assert [b.backup_id for b in backups] == [second.backup_id, first.backup_id]
        assert all(isinstance(b, BackupMetadata) for b in backups)
        assert backups[0].backup_type == BackupType.INCREMENTAL
