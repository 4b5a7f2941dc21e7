"""HTTP transport, rate limiters and API clients for the Source and Sink."""

from assignsync.connectors.backoff import (
    BackoffConfig,
    RetryPolicies,
    RetryPolicy,
    RetryStrategy,
    compute_backoff_delay,
)
from assignsync.connectors.errors import (
    ApiError,
    AuthError,
    ConflictError,
    ErrorKind,
    NotFoundError,
    ThrottledError,
    TransientServerError,
    TransportResult,
    UnknownError,
    ValidationError,
    classify_status,
    error_from_response,
)
from assignsync.connectors.headers import HeaderSource, MappingHeaders
from assignsync.connectors.http import HttpResponse, HttpTransport
from assignsync.connectors.leaky_bucket import LeakyBucketConfig, LeakyBucketLimiter
from assignsync.connectors.serial_queue import LimiterMetrics, SerialOperationQueue
from assignsync.connectors.sink_client import SinkClient
from assignsync.connectors.sliding_window import SlidingWindowConfig, SlidingWindowLimiter
from assignsync.connectors.source_client import SourceClient

__all__ = [
    "ApiError",
    "AuthError",
    "BackoffConfig",
    "ConflictError",
    "ErrorKind",
    "HeaderSource",
    "HttpResponse",
    "HttpTransport",
    "LeakyBucketConfig",
    "LeakyBucketLimiter",
    "LimiterMetrics",
    "MappingHeaders",
    "NotFoundError",
    "RetryPolicies",
    "RetryPolicy",
    "RetryStrategy",
    "SerialOperationQueue",
    "SinkClient",
    "SlidingWindowConfig",
    "SlidingWindowLimiter",
    "SourceClient",
    "ThrottledError",
    "TransientServerError",
    "TransportResult",
    "UnknownError",
    "ValidationError",
    "classify_status",
    "compute_backoff_delay",
    "error_from_response",
]
