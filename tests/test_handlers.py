"""
Tests for the invocation handlers
"""

import json
from dataclasses import replace

import boto3
import pytest

from pilot_light.handlers import (
    backup_handler,
    failover_handler,
    health_check_handler,
    validation_handler,
)

from conftest import PRIMARY, STANDBY


@pytest.fixture
def invoke(config, aws):
    """Call a handler the way the scheduler would, inside the mocked account"""
    def _invoke(handler, event=None, **overrides):
        return handler(event, None, config=replace(config, **overrides) if overrides else config)
    return _invoke


class TestConfiguration:

    def test_missing_required_field(self, invoke):
        response = invoke(failover_handler, {}, BACKUP_BUCKET="")

        assert response["status"] == "error"
        assert response["errorType"] == "configuration"
        assert "BACKUP_BUCKET" in response["message"]

    def test_non_object_event(self, invoke):
        response = invoke(backup_handler, ["orders"])

        assert response["errorType"] == "validation"


# ── Health ────────────────────────────────────────────────────────────────────

class TestHealthCheckHandler:

    def test_primary_by_default(self, invoke):
        response = invoke(health_check_handler, {})

        assert response["region"] == PRIMARY
        assert response["storeReachable"] is True
        assert 0.0 <= response["healthScore"] <= 1.0

    def test_unknown_region(self, invoke):
        response = invoke(health_check_handler, {"region": "ap-south-1"})

        assert response["status"] == "error"
        assert response["errorType"] == "validation"


# ── Failover ──────────────────────────────────────────────────────────────────

class TestFailoverHandler:

    def test_periodic_evaluation_initializes_state(self, invoke):
        response = invoke(failover_handler)

        assert response["outcome"] == "no-op"
        assert response["currentState"] == "Normal"
        assert response["activeRegion"] == PRIMARY

    def test_invalid_directive(self, invoke):
        response = invoke(failover_handler, {"action": "failover", "targetRegion": PRIMARY})

        assert response["outcome"] == "rejected"
        assert response["errorType"] == "validation"

    def test_forced_failover(self, invoke, config):
        response = invoke(failover_handler, {"action": "failover", "targetRegion": STANDBY, "force": True})

        assert response["outcome"] == "transitioned"
        assert response["currentState"] == "FailedOver"
        assert response["activeRegion"] == STANDBY

        body = boto3.client('s3', region_name=STANDBY).get_object(
            Bucket=config.BACKUP_BUCKET, Key=config.ROUTING_INTENT_KEY)['Body'].read()
        assert json.loads(body)["activeRegion"] == STANDBY

        again = invoke(failover_handler, {"action": "failover", "targetRegion": STANDBY})
        assert again["outcome"] == "no-op"
        assert again["version"] == response["version"]


# ── Backup ────────────────────────────────────────────────────────────────────

class TestBackupHandler:

    def test_missing_table_name(self, invoke):
        response = invoke(backup_handler, {"backupType": "full"})

        assert response["status"] == "error"
        assert response["errorType"] == "validation"

    def test_backup_then_status(self, invoke, put_order):
        put_order(PRIMARY, "o-1")

        response = invoke(backup_handler, {"tableName": "orders", "backupType": "full"})

        assert response["status"] == "succeeded"
        assert response["itemCount"] == 1
        assert response["artifactLocation"].startswith("s3://dr-backups/backups/orders/full/")

        status = invoke(backup_handler, {"operation": "status", "tableName": "orders"})
        assert status["backupCount"] == 1
        assert status["stale"] is False


# ── Validation ────────────────────────────────────────────────────────────────

class TestValidationHandler:

    def test_defaults(self, invoke, put_order):
        put_order(PRIMARY, "o-1")

        response = invoke(validation_handler, {})

        assert response["validationType"] == "incremental"
        assert response["sourceRegion"] == PRIMARY
        assert response["targetRegion"] == STANDBY
        assert response["mismatchCount"] == 1
        assert "backupStatus" not in response

    def test_sync_with_backup_status(self, invoke, put_order):
        put_order(PRIMARY, "o-1")

        response = invoke(validation_handler, {
            "validationType": "full",
            "action": "sync",
            "includeBackupStatus": True,
            "persist": True,
        })

        assert response["syncedCount"] == 1
        assert response["backupStatus"]["backupCount"] == 0
        assert "No successful backup found. Run a full backup." in response["recommendations"]
        assert response["reportLocation"].startswith("s3://dr-validation-reports/validation-reports/")

    def test_invalid_type(self, invoke):
        response = invoke(validation_handler, {"validationType": "partial"})

        assert response["status"] == "error"
        assert response["errorType"] == "validation"
