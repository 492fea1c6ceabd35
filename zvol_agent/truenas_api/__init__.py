"""
TrueNAS Middleware API Integration Module

All appliance traffic goes through ApplianceClient, which adds:
- Token-bucket rate limiting and exponential backoff
- WebSocket JSON-RPC or REST transport selection
- Error classification into retryable and fatal classes
- Per-client call metrics
"""

from .client import ApplianceClient
from .errors import (
    AlreadyExistsError,
    ApplianceError,
    ApplianceErrorCodes,
    AuthenticationError,
    CapacityError,
    ConflictError,
    MissingDependencyError,
    NotFoundError,
    OperationInProgressError,
    RateLimitedError,
    RemoteCallError,
    ShrinkNotSupportedError,
    SnapshotProtectedError,
    StorageValidationError,
    TransientError,
    TransportError,
    UnsupportedOperationError,
    is_retryable,
    map_appliance_error,
)
from .metrics import CallMetrics, EventLog
from .throttler import RateLimiter, RetryPolicy
from .transports import RestTransport, Transport, WebSocketTransport

__all__ = [
    "AlreadyExistsError",
    "ApplianceClient",
    "ApplianceError",
    "ApplianceErrorCodes",
    "AuthenticationError",
    "CallMetrics",
    "CapacityError",
    "ConflictError",
    "EventLog",
    "MissingDependencyError",
    "NotFoundError",
    "OperationInProgressError",
    "RateLimitedError",
    "RateLimiter",
    "RemoteCallError",
    "RestTransport",
    "RetryPolicy",
    "ShrinkNotSupportedError",
    "SnapshotProtectedError",
    "StorageValidationError",
    "Transport",
    "TransientError",
    "TransportError",
    "UnsupportedOperationError",
    "WebSocketTransport",
    "is_retryable",
    "map_appliance_error",
]
