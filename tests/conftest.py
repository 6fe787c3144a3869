"""Pytest configuration and fixtures."""

import pytest
import boto3
from moto import mock_aws

from pilot_light.common.aws import ClientFactory
from pilot_light.common.config import Config
from pilot_light.monitoring.metrics import MetricsEmitter

PRIMARY = "us-east-1"
STANDBY = "us-west-2"


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so nothing ever reaches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", PRIMARY)


@pytest.fixture
def config():
    return Config(
        DEPLOYMENT_ID="test-deployment",
        PRIMARY_REGION=PRIMARY,
        STANDBY_REGION=STANDBY,
        FAILOVER_STATE_TABLE="dr-failover-state",
        SENTINEL_TABLE="dr-sentinel",
        BACKUP_METADATA_TABLE="dr-backup-metadata",
        APPLICATION_TABLES=["orders"],
        BACKUP_BUCKET="dr-backups",
        VALIDATION_REPORT_BUCKET="dr-validation-reports",
        SENTINEL_POLL_ATTEMPTS=2,
        SENTINEL_POLL_INTERVAL_SECONDS=0.0,
        PROBE_TIMEOUT_SECONDS=5.0,
        STORE_TIMEOUT_SECONDS=5.0,
        LOG_LEVEL="DEBUG",
        STRUCTURED_LOGS=False,
    )


def _create_table(client, name: str, key: str):
    client.create_table(
        TableName=name,
        KeySchema=[{'AttributeName': key, 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': key, 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST',
    )


@pytest.fixture
def aws(aws_credentials, config):
    """
    Mocked AWS account with the control plane tables in both regions.

    Regional replicas are independent in the mock, which lets tests put the
    two regions out of sync on purpose.
    """
    with mock_aws():
        for region in (PRIMARY, STANDBY):
            dynamodb = boto3.client('dynamodb', region_name=region)
            _create_table(dynamodb, config.FAILOVER_STATE_TABLE, 'id')
            _create_table(dynamodb, config.SENTINEL_TABLE, 'id')
            _create_table(dynamodb, config.BACKUP_METADATA_TABLE, 'backupId')
            _create_table(dynamodb, 'orders', 'id')

        s3 = boto3.client('s3', region_name=PRIMARY)
        s3.create_bucket(Bucket=config.BACKUP_BUCKET)
        s3.create_bucket(Bucket=config.VALIDATION_REPORT_BUCKET)

        yield ClientFactory.from_config(config)


@pytest.fixture
def metrics():
    return MetricsEmitter(namespace="DisasterRecoveryTest")


@pytest.fixture
def put_order(aws):
    """Write an application item straight into one regional replica."""
    def _put(region: str, order_id: str, **attributes):
        item = {'id': {'S': order_id}}
        for name, value in attributes.items():
            item[name] = {'N': str(value)} if isinstance(value, (int, float)) else {'S': str(value)}
        boto3.client('dynamodb', region_name=region).put_item(TableName='orders', Item=item)
    return _put
