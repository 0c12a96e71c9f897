"""Infrastructure modules for the Arkive sync engine.

This package provides the transport, session and persistence plumbing
that the sync adapters are built on.

Classes:
    RealtimeDatabaseClient: REST and streaming client for the Firebase Realtime Database
    SessionManager: Anonymous Firebase session with cached, refreshed tokens
    CircuitBreaker: Prevent cascading failures against the database

Exceptions:
    ArkiveError: Base exception for all engine errors
    ConfigurationError: Missing or invalid configuration
    AuthenticationError: Session failures
    APIError: Database request failures
    NetworkError: Network connectivity issues (transient)
    StorageError: Local persistence failures (fatal)
    IdentityError: Device identity unavailable (fatal)
    ValidationError: Rejected enqueue input
    SyncError: Synchronization failures
"""
from .auth import CachedSession, SessionManager
from .client import RealtimeDatabaseClient, StreamEvent, parse_event_stream
from .database import (
    check_database_health,
    close_pool,
    create_pool,
    database_connection,
    database_transaction,
)
from .exceptions import (
    APIError,
    ArkiveError,
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionError,
    ConnectionPoolError,
    ErrorCollector,
    IdentityError,
    InvalidCredentialsError,
    NetworkError,
    PartialSyncError,
    PermissionDeniedError,
    RateLimitError,
    ServerError,
    StorageError,
    SyncError,
    TimeoutError,
    TokenExpiredError,
    TokenFetchError,
    TransactionError,
    ValidationError,
)
from .resilience import CircuitBreaker, CircuitState, retry_async, with_timeout

__all__ = [
    # Client
    "RealtimeDatabaseClient",
    "StreamEvent",
    "parse_event_stream",
    # Session
    "CachedSession",
    "SessionManager",
    # Database
    "check_database_health",
    "close_pool",
    "create_pool",
    "database_connection",
    "database_transaction",
    # Exceptions
    "APIError",
    "ArkiveError",
    "AuthenticationError",
    "CircuitOpenError",
    "ConfigurationError",
    "ConnectionError",
    "ConnectionPoolError",
    "ErrorCollector",
    "IdentityError",
    "InvalidCredentialsError",
    "NetworkError",
    "PartialSyncError",
    "PermissionDeniedError",
    "RateLimitError",
    "ServerError",
    "StorageError",
    "SyncError",
    "TimeoutError",
    "TokenExpiredError",
    "TokenFetchError",
    "TransactionError",
    "ValidationError",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "retry_async",
    "with_timeout",
]
