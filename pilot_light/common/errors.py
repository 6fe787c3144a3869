"""
Error taxonomy for the DR control plane.

Every component converts collaborator failures into one of these types so that
callers see a structured outcome instead of a raw SDK exception.
"""

from typing import Optional

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "Throttling",
    "InternalServerError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
}


class DRError(Exception):
    """Base class for control plane errors"""

    error_type = "internal"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> dict:
        payload = {"errorType": self.error_type, "message": self.message}
        if self.stage:
            payload["stage"] = self.stage
        return payload


class TransientError(DRError):
    """Network, throttling or timeout error against a store collaborator"""

    error_type = "transient"


class ConflictError(DRError):
    """Optimistic concurrency version mismatch"""

    error_type = "conflict"


class ValidationError(DRError):
    """Malformed request payload"""

    error_type = "validation"


class ConfigurationError(DRError):
    """Missing or invalid configuration"""

    error_type = "configuration"


class InvalidTransitionError(DRError):
    """Requested edge is not part of the failover state graph"""

    error_type = "invalid_transition"


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


def translate_client_error(exc: Exception, operation: str) -> DRError:
    """
    Map a botocore exception onto the control plane taxonomy.

    Args:
        exc: Exception raised by a boto3 call
        operation: Short description used in the message

    Returns:
        DRError subclass instance (caller raises it)
    """
    if isinstance(exc, DRError):
        return exc

    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, TimeoutError)):
        return TransientError(f"{operation} timed out or could not connect: {exc}")

    if isinstance(exc, ClientError):
        code = error_code(exc)
        if code == "ConditionalCheckFailedException":
            return ConflictError(f"{operation} condition failed")
        if code in TRANSIENT_ERROR_CODES:
            return TransientError(f"{operation} failed with {code}")
        return DRError(f"{operation} failed with {code}: {exc}")

    return DRError(f"{operation} failed: {exc}")
