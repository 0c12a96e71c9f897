#!/usr/bin/env python3
"""Exception Hierarchy for the Arkive sync engine.

This module provides a structured exception hierarchy for handling errors
across the engine: configuration, the remote database session, remote API
calls, network transport, local persistence and synchronization.

Design Principles:
    - All exceptions inherit from ArkiveError base class
    - Exceptions preserve context (original error, timestamps, details)
    - Exceptions are categorized by recoverability
    - Transient errors never escape the sync driver; fatal errors always do

Exception Hierarchy:
    ArkiveError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── AuthenticationError (may be recoverable - re-establish session)
    │   ├── TokenFetchError
    │   ├── TokenExpiredError
    │   └── InvalidCredentialsError
    ├── APIError (may be recoverable - retry)
    │   ├── RateLimitError
    │   ├── PermissionDeniedError
    │   └── ServerError
    ├── NetworkError (recoverable - retry)
    │   ├── ConnectionError
    │   └── TimeoutError
    ├── StorageError (fatal - local persistence unavailable)
    │   ├── ConnectionPoolError
    │   └── TransactionError
    ├── IdentityError (fatal - no stable device identity)
    ├── ValidationError (bad input from the caller)
    └── SyncError (operation failed)
        ├── PartialSyncError
        └── CircuitOpenError
"""
from datetime import UTC, datetime
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class ArkiveError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "TOKEN_EXPIRED")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(UTC)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(ArkiveError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Authentication Errors
# ============================================

class AuthenticationError(ArkiveError):
    """Base class for session/authentication errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class TokenFetchError(AuthenticationError):
    """Raised when a session token cannot be obtained from the identity service."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        attempts: int = 1,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        details["attempts"] = attempts
        super().__init__(
            message,
            code="TOKEN_FETCH_ERROR",
            details=details,
            **kwargs,
        )


class TokenExpiredError(AuthenticationError):
    """Raised when the remote database rejects the session token."""

    def __init__(self, message: str = "Session token has expired", **kwargs):
        super().__init__(message, code="TOKEN_EXPIRED", **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Raised when the API key is rejected by the identity service."""

    def __init__(
        self,
        message: str = "Invalid API key",
        **kwargs,
    ):
        super().__init__(
            message,
            code="INVALID_CREDENTIALS",
            recoverable=False,
            **kwargs,
        )


# ============================================
# API Errors
# ============================================

class APIError(ArkiveError):
    """Base class for remote database response errors.

    Attributes:
        status_code: HTTP status code
        path: Database path that was addressed
        response_body: Raw response body (may be truncated)
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        path: Optional[str] = None,
        response_body: Optional[str] = None,
        method: str = "GET",
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if path:
            details["path"] = path
        if method:
            details["method"] = method
        if response_body:
            details["response_body"] = response_body[:500]

        kwargs.setdefault("recoverable", status_code in (429, 500, 502, 503, 504))
        kwargs.setdefault("code", f"API_ERROR_{status_code}")

        super().__init__(
            message,
            details=details,
            **kwargs,
        )
        self.status_code = status_code
        self.path = path
        self.response_body = response_body
        self.method = method


class RateLimitError(APIError):
    """Raised when the remote database throttles requests (HTTP 429).

    Attributes:
        retry_after: Seconds to wait before retrying
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 429)
        details = kwargs.pop("details", {})
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            details=details,
            **kwargs,
        )
        self.retry_after = retry_after or 60


class PermissionDeniedError(APIError):
    """Raised when security rules reject the request (HTTP 403)."""

    def __init__(
        self,
        message: str = "Permission denied",
        **kwargs,
    ):
        kwargs.setdefault("status_code", 403)
        super().__init__(
            message,
            code="PERMISSION_DENIED",
            recoverable=False,
            **kwargs,
        )


class ServerError(APIError):
    """Raised when the remote database returns a 5xx error."""

    def __init__(
        self,
        message: str = "Server error",
        **kwargs,
    ):
        kwargs.setdefault("status_code", 500)
        super().__init__(
            message,
            code="SERVER_ERROR",
            recoverable=True,
            **kwargs,
        )


# ============================================
# Network Errors (Transient)
# ============================================

class NetworkError(ArkiveError):
    """Base class for network-related errors.

    These errors are transient: the sync driver converts them into
    retry decisions and they never reach the enqueue caller.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionError(NetworkError):
    """Raised when connection to the remote database fails."""

    def __init__(
        self,
        message: str = "Failed to connect to server",
        host: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details=details,
            **kwargs,
        )


class TimeoutError(NetworkError):
    """Raised when a remote call times out."""

    def __init__(
        self,
        message: str = "Request timed out",
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if timeout_seconds:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message,
            code="TIMEOUT_ERROR",
            details=details,
            **kwargs,
        )


# ============================================
# Local Persistence Errors (Fatal)
# ============================================

class StorageError(ArkiveError):
    """Raised when local persistence is unavailable.

    Synchronization cannot proceed without durable local state, so these
    errors are surfaced immediately instead of being retried.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", False)
        kwargs.setdefault("code", "STORAGE_ERROR")
        super().__init__(message, **kwargs)


class ConnectionPoolError(StorageError):
    """Raised when the local database pool is exhausted or unavailable."""

    def __init__(
        self,
        message: str = "Database connection pool error",
        **kwargs,
    ):
        super().__init__(message, code="CONNECTION_POOL_ERROR", **kwargs)


class TransactionError(StorageError):
    """Raised when a local database transaction fails."""

    def __init__(
        self,
        message: str = "Database transaction failed",
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        super().__init__(
            message,
            code="TRANSACTION_ERROR",
            details=details,
            **kwargs,
        )


class IdentityError(ArkiveError):
    """Raised when the device identity cannot be loaded or generated."""

    def __init__(self, message: str = "Device identity unavailable", **kwargs):
        super().__init__(
            message,
            code="IDENTITY_ERROR",
            recoverable=False,
            **kwargs,
        )


class ValidationError(ArkiveError):
    """Raised when an operation is rejected before it reaches the queue."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Sync Errors
# ============================================

class SyncError(ArkiveError):
    """Base class for synchronization errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)


class PartialSyncError(SyncError):
    """Raised when a sync completes with some failures.

    Attributes:
        succeeded: Number of items successfully synced
        failed: Number of items that failed
        errors: List of individual errors
    """

    def __init__(
        self,
        message: str,
        succeeded: int = 0,
        failed: int = 0,
        errors: Optional[list[Exception]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["succeeded"] = succeeded
        details["failed"] = failed
        if errors:
            details["error_count"] = len(errors)
            details["sample_errors"] = [str(e)[:100] for e in errors[:5]]

        super().__init__(
            message,
            code="PARTIAL_SYNC_ERROR",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.succeeded = succeeded
        self.failed = failed
        self.errors = errors or []


class CircuitOpenError(SyncError):
    """Raised when circuit breaker is open and requests are being rejected.

    Attributes:
        reset_at: When the circuit breaker will attempt to close
    """

    def __init__(
        self,
        message: str = "Circuit breaker is open, requests rejected",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reset_at:
            details["reset_at"] = reset_at.isoformat()
        details["failure_count"] = failure_count

        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.reset_at = reset_at
        self.failure_count = failure_count


# ============================================
# Error Aggregation
# ============================================

class ErrorCollector:
    """Collect multiple errors for batch operations.

    Used where processing continues past individual failures (one
    collection per step of a full sync, one path per step of a wipe)
    and all errors are reported at the end.

    Example:
        collector = ErrorCollector()
        for collection in collections:
            try:
                await pull(collection)
            except Exception as e:
                collector.add(e, context={"collection": collection})

        if collector.has_errors():
            raise collector.to_exception()
    """

    def __init__(self, max_errors: int = 100):
        self.errors: list[tuple[Exception, dict[str, Any]]] = []
        self.max_errors = max_errors

    def add(self, error: Exception, context: Optional[dict[str, Any]] = None):
        """Add an error with optional context."""
        if len(self.errors) < self.max_errors:
            self.errors.append((error, context or {}))

    def has_errors(self) -> bool:
        """Check if any errors were collected."""
        return len(self.errors) > 0

    def count(self) -> int:
        """Get number of errors collected."""
        return len(self.errors)

    def messages(self) -> list[str]:
        """Render collected errors as '<context>: <error>' strings."""
        rendered = []
        for error, context in self.errors:
            prefix = ", ".join(f"{k}={v}" for k, v in context.items())
            rendered.append(f"{prefix}: {error}" if prefix else str(error))
        return rendered

    def to_exception(self, succeeded: int = 0) -> PartialSyncError:
        """Convert collected errors to a PartialSyncError."""
        if not self.errors:
            raise ValueError("No errors to convert")

        return PartialSyncError(
            message=f"{len(self.errors)} error(s) occurred during operation",
            succeeded=succeeded,
            failed=len(self.errors),
            errors=[e for e, _ in self.errors],
        )

    def clear(self):
        """Clear all collected errors."""
        self.errors.clear()


# ============================================
# Exports
# ============================================

__all__ = [
    # Base
    "ArkiveError",
    # Configuration
    "ConfigurationError",
    # Authentication
    "AuthenticationError",
    "TokenFetchError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    # API
    "APIError",
    "RateLimitError",
    "PermissionDeniedError",
    "ServerError",
    # Network
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    # Local persistence
    "StorageError",
    "ConnectionPoolError",
    "TransactionError",
    "IdentityError",
    "ValidationError",
    # Sync
    "SyncError",
    "PartialSyncError",
    "CircuitOpenError",
    # Utilities
    "ErrorCollector",
]
