"""AWS client helpers shared by all components."""

import asyncio
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from .errors import TransientError, translate_client_error

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def make_client(service: str, region: str, timeout: float = 10.0,
                endpoint_url: Optional[str] = None, max_attempts: int = 3):
    """
    Create a boto3 client with bounded timeouts and client-level retries.

    Args:
        service: AWS service name (dynamodb, s3, cloudwatch)
        region: Region the client talks to
        timeout: Connect and read timeout in seconds
        endpoint_url: Optional override for local endpoints
        max_attempts: Total attempts including the first call
    """
    session = boto3.session.Session(region_name=region)
    boto_config = BotoConfig(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={'max_attempts': max_attempts, 'mode': 'standard'},
    )
    return session.client(service, endpoint_url=endpoint_url, config=boto_config)


class ClientFactory:
    """Caches one client per (service, region) for the lifetime of an invocation"""

    def __init__(self, timeout: float = 10.0, endpoint_url: Optional[str] = None, max_attempts: int = 3):
        self.timeout = timeout
        self.endpoint_url = endpoint_url
        self.max_attempts = max_attempts
        self._clients: Dict[Tuple[str, str], Any] = {}

    @classmethod
    def from_config(cls, config) -> "ClientFactory":
        return cls(
            timeout=config.STORE_TIMEOUT_SECONDS,
            endpoint_url=config.AWS_ENDPOINT_URL,
            max_attempts=config.CLIENT_MAX_ATTEMPTS,
        )

    def get(self, service: str, region: str):
        key = (service, region)
        if key not in self._clients:
            self._clients[key] = make_client(
                service,
                region,
                timeout=self.timeout,
                endpoint_url=self.endpoint_url,
                max_attempts=self.max_attempts,
            )
        return self._clients[key]


def _to_dynamo_value(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_dynamo_value(v) for v in value]
    return value


def _from_dynamo_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, (list, set)):
        return [_from_dynamo_value(v) for v in value]
    return value


def to_item(record: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a plain dict into DynamoDB attribute values, dropping None."""
    return {
        key: _serializer.serialize(_to_dynamo_value(value))
        for key, value in record.items()
        if value is not None
    }


def from_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize DynamoDB attribute values into plain Python values."""
    return {key: _from_dynamo_value(_deserializer.deserialize(value)) for key, value in item.items()}


async def call_with_timeout(fn: Callable, timeout: float, operation: str, **kwargs) -> Any:
    """
    Run a blocking boto3 call in a thread, bounded by a timeout.

    Raises:
        TransientError: on timeout or connectivity failure
        ConflictError: on a failed conditional write
        DRError: on any other service error
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, **kwargs), timeout=timeout)
    except asyncio.TimeoutError:
        raise TransientError(f"{operation} exceeded {timeout}s timeout")
    except Exception as e:
        raise translate_client_error(e, operation) from e
