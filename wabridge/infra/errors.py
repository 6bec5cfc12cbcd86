"""Error taxonomy for the relay pipeline."""

from enum import Enum
from typing import Optional, Tuple

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError


class ErrorCategory(str, Enum):
    """Categories of errors, each with its own queue policy."""
    CONFIGURATION = "configuration"  # Missing scope/credentials, dropped
    TRANSIENT_NETWORK = "transient_network"  # Broker or remote unreachable
    PROTOCOL_SHAPE = "protocol_shape"  # CRM variant mismatch
    AUTHORIZATION_EXPIRED = "authorization_expired"  # Refresh once, then retry
    PERMANENT_REJECT = "permanent_reject"  # Remote rejected content, dead-lettered
    RATE_LIMITED = "rate_limited"  # Self-imposed, re-enqueued
    SESSION = "session"  # Account connection missing or not open
    QUEUE = "queue"  # Broker connectivity
    UNKNOWN = "unknown"


class GatewayError(Exception):
    """Base exception carrying a category and a retry decision."""
    def __init__(self, message: str, category: ErrorCategory, retryable: bool = True):
        self.message = message
        self.category = category
        self.retryable = retryable
        super().__init__(message)


class ConfigurationError(GatewayError):
    """Integration scope or credentials missing. Retrying can never succeed."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.CONFIGURATION, retryable=False)


class TransientNetworkError(GatewayError):
    """Remote endpoint unreachable or temporarily failing."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, ErrorCategory.TRANSIENT_NETWORK, retryable=True)


class ProtocolShapeError(GatewayError):
    """Every known request variant was rejected as the wrong shape."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.PROTOCOL_SHAPE, retryable=True)


class AuthorizationExpiredError(GatewayError):
    """Access credential rejected by the remote side."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.AUTHORIZATION_EXPIRED, retryable=True)


class PermanentRejectError(GatewayError):
    """Remote explicitly rejected the message."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, ErrorCategory.PERMANENT_REJECT, retryable=False)


class RateLimitedError(GatewayError):
    """Self-imposed send limit reached for the account."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.RATE_LIMITED, retryable=True)


class SessionError(GatewayError):
    """Account is unknown to the session manager or not connected."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.SESSION, retryable=True)


class QueueError(GatewayError):
    """Broker connection failed."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.QUEUE, retryable=True)


class WebhookValidationError(ValueError):
    """Webhook payload is missing required fields."""


def classify_error(error: Exception) -> Tuple[ErrorCategory, bool]:
    """
    Classify an error into a category and determine if it's retryable.

    Args:
        error: The exception to classify

    Returns:
        Tuple of (category, retryable)
    """
    if isinstance(error, GatewayError):
        return error.category, error.retryable

    if isinstance(error, (RedisConnectionError, RedisTimeoutError)):
        return ErrorCategory.QUEUE, True

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code in (401, 403):
            return ErrorCategory.AUTHORIZATION_EXPIRED, True
        if status_code == 429 or status_code >= 500:
            return ErrorCategory.TRANSIENT_NETWORK, True
        return ErrorCategory.PERMANENT_REJECT, False

    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, OSError)):
        return ErrorCategory.TRANSIENT_NETWORK, True

    # Unknown failures go through the normal retry budget
    return ErrorCategory.UNKNOWN, True


def error_from_status(status_code: int, detail: str) -> GatewayError:
    """
    Map an HTTP status from a remote API to a gateway error.

    Args:
        status_code: HTTP status code
        detail: Short description for the error message

    Returns:
        GatewayError subclass matching the status
    """
    if status_code in (401, 403):
        return AuthorizationExpiredError(f"{detail} ({status_code})")
    if status_code == 429 or status_code >= 500:
        return TransientNetworkError(f"{detail} ({status_code})", status_code=status_code)
    return PermanentRejectError(f"{detail} ({status_code})", status_code=status_code)
