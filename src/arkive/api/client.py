#!/usr/bin/env python3
"""HTTP Client for the Firebase Realtime Database REST API.

This module provides the transport used by the remote store adapter:

    - Anonymous session tokens via SessionManager (``auth`` query parameter)
    - Token invalidation and a single retry on 401 responses
    - Circuit breaker for resilience against backend outages
    - Typed exceptions for every failure mode
    - Server-sent event streaming for live subscriptions

Design Philosophy:
    This client knows HOW to talk to the database, but not WHAT the engine
    stores there. It has no notion of collections, operations or devices;
    that knowledge belongs in FirebaseRemoteStore.

Usage:
    async with RealtimeDatabaseClient(url, sessions) as client:
        record = await client.get("clients/c1")
        await client.put("clients/c1", {"id": "c1", "name": "Acme"})
        await client.delete("clients/c1")

        async for event in client.stream("clients"):
            print(event.event, event.path, event.data)
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import aiohttp

from .auth import SessionManager
from .exceptions import (
    APIError,
    ConfigurationError,
    ConnectionError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
)
from .resilience import CircuitBreaker

logger = logging.getLogger(__name__)


# ============================================
# Streaming Events
# ============================================

@dataclass
class StreamEvent:
    """One server-sent event from a streaming GET.

    Attributes:
        event: put, patch, keep-alive, cancel or auth_revoked
        path: Path relative to the streamed location ("/" for the root)
        data: Value at path (put) or children to merge (patch)
    """
    event: str
    path: str = "/"
    data: Any = None


async def parse_event_stream(lines: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
    """Turn raw ``text/event-stream`` lines into StreamEvents.

    A blank line terminates an event. Multiple ``data:`` lines are joined
    with newlines before JSON decoding.
    """
    event_name: Optional[str] = None
    data_lines: list[str] = []

    async for raw in lines:
        line = raw.decode("utf-8").rstrip("\r\n")

        if not line:
            if event_name is not None:
                yield _build_event(event_name, "\n".join(data_lines))
            event_name = None
            data_lines = []
            continue

        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_name = value
        elif field == "data":
            data_lines.append(value)

    if event_name is not None:
        yield _build_event(event_name, "\n".join(data_lines))


def _build_event(name: str, raw_data: str) -> StreamEvent:
    if name not in ("put", "patch"):
        return StreamEvent(event=name, data=raw_data or None)
    payload = json.loads(raw_data) if raw_data else {}
    return StreamEvent(
        event=name,
        path=payload.get("path", "/"),
        data=payload.get("data"),
    )


# ============================================
# The Client
# ============================================

class RealtimeDatabaseClient:
    """Async REST client for one Firebase Realtime Database instance.

    Use as an async context manager so the underlying aiohttp session is
    always closed:

        async with RealtimeDatabaseClient(url, sessions) as client:
            data = await client.get("sync_metadata", shallow=True)

    Attributes:
        database_url: Root URL, e.g. "https://arkive-default-rtdb.firebaseio.com"
        session_manager: Optional SessionManager; None means unauthenticated
            access (emulator or open security rules)
    """

    def __init__(
        self,
        database_url: Optional[str],
        session_manager: Optional[SessionManager] = None,
        timeout_seconds: float = 30.0,
        enable_circuit_breaker: bool = True,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0,
    ):
        self.database_url = (database_url or "").rstrip("/")
        if not self.database_url:
            raise ConfigurationError(
                "Database URL is required. Set FIREBASE_DATABASE_URL.",
                missing_keys=["FIREBASE_DATABASE_URL"],
            )

        self.session_manager = session_manager
        self.timeout_seconds = timeout_seconds

        self._session: Optional[aiohttp.ClientSession] = None

        self._circuit_breaker: Optional[CircuitBreaker] = None
        if enable_circuit_breaker:
            self._circuit_breaker = CircuitBreaker(
                failure_threshold=circuit_failure_threshold,
                timeout=circuit_timeout,
                name="realtime_database",
            )

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "RealtimeDatabaseClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the HTTP session (idempotent)."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=10, limit_per_host=10),
                timeout=aiohttp.ClientTimeout(
                    total=self.timeout_seconds,
                    connect=min(10.0, self.timeout_seconds),
                ),
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    def _url(self, path: str) -> str:
        path = path.strip("/")
        return f"{self.database_url}/{path}.json" if path else f"{self.database_url}/.json"

    async def _auth_params(self) -> dict[str, str]:
        if self.session_manager is None:
            return {}
        return {"auth": await self.session_manager.get_token()}

    async def ensure_session(self) -> None:
        """Make sure a usable session token exists before a batch of calls."""
        await self._auth_params()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Any = None,
    ) -> Any:
        """Make a single HTTP request (no retry logic).

        Returns:
            Decoded JSON body; None for a missing location.

        Raises:
            APIError: If response status is not 2xx
            ConnectionError: If the server cannot be reached
            TimeoutError: If the request times out
        """
        if not self._session:
            raise RuntimeError(
                "RealtimeDatabaseClient must be opened first: "
                "async with RealtimeDatabaseClient(...) as client:"
            )

        query = dict(params or {})
        query.update(await self._auth_params())
        kwargs: dict[str, Any] = {"params": query}
        if method in ("PUT", "PATCH", "POST"):
            kwargs["data"] = json.dumps(json_body)
            kwargs["headers"] = {"Content-Type": "application/json"}

        try:
            async with self._session.request(method, self._url(path), **kwargs) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        path=path,
                        response_body=error_text,
                        retry_after=response.headers.get("Retry-After"),
                    )
                return await response.json(content_type=None)

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to {self.database_url}",
                host=self.database_url,
                cause=e,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"{method} {path} timed out",
                timeout_seconds=self.timeout_seconds,
                cause=e,
            )
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error during {method} {path}: {e}", cause=e)

    def _create_api_error(
        self,
        status: int,
        method: str,
        path: str,
        response_body: str,
        retry_after: Optional[str] = None,
    ) -> APIError | TokenExpiredError:
        """Create the exception matching a database error status."""
        if status == 401:
            return TokenExpiredError(
                "Session token expired or invalid",
                details={"path": path},
            )
        if status == 403:
            return PermissionDeniedError(
                f"Security rules denied {method} {path}",
                path=path,
                method=method,
                response_body=response_body,
            )
        if status == 429:
            return RateLimitError(
                f"Rate limit exceeded for {path}",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                path=path,
                method=method,
                response_body=response_body,
            )
        if status >= 500:
            return ServerError(
                f"Server error ({status}) for {method} {path}",
                status_code=status,
                path=path,
                method=method,
                response_body=response_body,
            )
        return APIError(
            f"{method} {path} failed",
            status_code=status,
            path=path,
            method=method,
            response_body=response_body,
        )

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Any = None,
    ) -> Any:
        """Make a request through the circuit breaker.

        A 401 invalidates the cached token and the request is replayed once
        with a fresh one. Other failures are raised to the caller; operation
        level retries are the sync driver's business.
        """
        try:
            return await self._call(method, path, params, json_body)
        except TokenExpiredError:
            if self.session_manager is None:
                raise
            logger.warning(f"Token rejected on {method} {path}, refreshing")
            self.session_manager.invalidate()
            return await self._call(method, path, params, json_body)

    async def _call(self, method, path, params, json_body) -> Any:
        if self._circuit_breaker:
            return await self._circuit_breaker.call(
                self._request, method, path, params, json_body
            )
        return await self._request(method, path, params, json_body)

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        if self._circuit_breaker:
            return self._circuit_breaker.get_status()
        return None

    # ----------------------------------------
    # High-Level Request Methods
    # ----------------------------------------

    async def get(self, path: str, shallow: bool = False) -> Any:
        """Read the value at path (None when nothing is stored there).

        Args:
            path: Database path, e.g. "clients/c1"
            shallow: Return only the keys of child objects (values become True)
        """
        params = {"shallow": "true"} if shallow else None
        return await self._request_with_retry("GET", path, params=params)

    async def put(self, path: str, value: Any) -> Any:
        """Overwrite the value at path."""
        return await self._request_with_retry("PUT", path, json_body=value)

    async def patch(self, path: str, children: dict[str, Any]) -> Any:
        """Update the named children of path, leaving others untouched."""
        return await self._request_with_retry("PATCH", path, json_body=children)

    async def delete(self, path: str) -> None:
        """Remove the value at path (succeeds when nothing is there)."""
        await self._request_with_retry("DELETE", path)

    # ----------------------------------------
    # Streaming
    # ----------------------------------------

    async def stream(self, path: str) -> AsyncIterator[StreamEvent]:
        """Yield live change events for path until the server ends the stream.

        The first event is a ``put`` at "/" carrying the full current value.
        keep-alive events are consumed here and never yielded.

        Raises:
            TokenExpiredError: The server revoked the session (auth_revoked)
            PermissionDeniedError: Security rules cancelled the stream
            ConnectionError / NetworkError: The connection dropped
        """
        if not self._session:
            raise RuntimeError("RealtimeDatabaseClient must be opened before streaming")

        params = await self._auth_params()
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_read=None,
            connect=min(10.0, self.timeout_seconds),
        )

        try:
            async with self._session.get(
                self._url(path),
                params=params,
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method="STREAM",
                        path=path,
                        response_body=error_text,
                    )

                logger.debug(f"Stream opened for {path}")
                async for event in parse_event_stream(response.content):
                    if event.event == "keep-alive":
                        continue
                    if event.event == "auth_revoked":
                        if self.session_manager:
                            self.session_manager.invalidate()
                        raise TokenExpiredError(
                            "Session revoked by server during stream",
                            details={"path": path},
                        )
                    if event.event == "cancel":
                        raise PermissionDeniedError(
                            f"Stream for {path} cancelled by security rules",
                            path=path,
                            method="STREAM",
                        )
                    yield event

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Stream connection to {path} lost",
                host=self.database_url,
                cause=e,
            )
        except aiohttp.ClientError as e:
            raise NetworkError(f"Stream error on {path}: {e}", cause=e)


__all__ = [
    "RealtimeDatabaseClient",
    "StreamEvent",
    "parse_event_stream",
]
