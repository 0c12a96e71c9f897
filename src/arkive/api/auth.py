#!/usr/bin/env python3
"""Anonymous Session Management for the Firebase Realtime Database.

Every device talks to the shared database under an anonymous Firebase
identity. This module obtains that identity through the Identity Toolkit
REST API and keeps its ID token fresh so that database requests can pass
it as the ``auth`` query parameter.

Features:
    - Lazy sign-in: no network traffic until the first token is needed
    - Token caching with a dynamic expiry buffer (10% of TTL, 30s..5min)
    - Refresh through the secure token endpoint, falling back to a new
      anonymous sign-in when the refresh token is rejected
    - Concurrent callers share one fetch (asyncio.Lock double-check)
    - Transient failures retried with exponential backoff (1s, 2s, 4s)

Security Notes:
    - Tokens live in memory only
    - Log lines identify a token by the first 8 chars of its SHA-256

Example:
    >>> manager = SessionManager(api_key="AIza...")
    >>> token = await manager.get_token()
    >>> # Subsequent calls return the cached token until it nears expiry
"""
import asyncio
import hashlib
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from .exceptions import (
    APIError,
    ConfigurationError,
    ConnectionError,
    InvalidCredentialsError,
    NetworkError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    TokenFetchError,
)
from .resilience import retry_async

logger = logging.getLogger(__name__)

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"
REFRESH_URL = "https://securetoken.googleapis.com/v1/token"

# Identity Toolkit error messages that mean the key itself is unusable
FATAL_SIGN_IN_ERRORS = (
    "API_KEY_INVALID",
    "ADMIN_ONLY_OPERATION",
    "OPERATION_NOT_ALLOWED",
    "PROJECT_NOT_FOUND",
)


@dataclass
class CachedSession:
    """An anonymous session as returned by the identity service.

    Attributes:
        id_token: Bearer token passed to the database as ``auth``.
        refresh_token: Long-lived token used to mint new ID tokens.
        uid: Firebase user id of the anonymous account.
        expires_at: Unix timestamp when id_token expires.
        expires_in: Original TTL in seconds.
    """
    id_token: str
    refresh_token: str
    uid: str
    expires_at: float
    expires_in: int = 3600

    MAX_BUFFER_SECONDS = 300
    MIN_BUFFER_SECONDS = 30

    @property
    def token_id(self) -> str:
        """Safe identifier for logging (SHA-256 hash, first 8 chars)."""
        return hashlib.sha256(self.id_token.encode()).hexdigest()[:8]

    @property
    def _buffer_seconds(self) -> float:
        base = self.expires_in * 0.1
        buffer = max(self.MIN_BUFFER_SECONDS, min(base, self.MAX_BUFFER_SECONDS))
        return buffer + buffer * random.uniform(-0.1, 0.1)

    @property
    def is_expired(self) -> bool:
        return time.time() >= (self.expires_at - self._buffer_seconds)

    @property
    def time_remaining(self) -> float:
        return max(0, self.expires_at - time.time())


class SessionManager:
    """Anonymous Firebase session with automatic refresh.

    Attributes:
        api_key: Web API key of the Firebase project.
        timeout_seconds: Per-request timeout for identity calls.
        max_attempts: Attempts per sign-in or refresh before giving up.
    """

    def __init__(
        self,
        api_key: Optional[str],
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        sign_up_url: str = SIGN_UP_URL,
        refresh_url: str = REFRESH_URL,
    ):
        if not api_key:
            raise ConfigurationError(
                "Firebase API key is required for anonymous sign-in",
                missing_keys=["FIREBASE_API_KEY"],
            )
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.sign_up_url = sign_up_url
        self.refresh_url = refresh_url

        self._session: Optional[CachedSession] = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        """Get a valid ID token, signing in or refreshing as needed.

        Raises:
            InvalidCredentialsError: The API key is rejected
            TokenFetchError: No token after all attempts
        """
        if self._session and not self._session.is_expired:
            return self._session.id_token

        async with self._lock:
            if self._session and not self._session.is_expired:
                return self._session.id_token

            self._session = await self._obtain(self._session)
            return self._session.id_token

    async def _obtain(self, previous: Optional[CachedSession]) -> CachedSession:
        if previous is not None:
            try:
                return await self._fetch(self._refresh, previous.refresh_token)
            except TokenExpiredError:
                logger.warning(
                    f"Refresh token for uid={previous.uid} rejected, signing in again"
                )
        return await self._fetch(self._sign_up)

    async def _fetch(self, step, *args) -> CachedSession:
        try:
            return await retry_async(
                step,
                *args,
                max_attempts=self.max_attempts,
                initial_delay=1.0,
                backoff_factor=2.0,
                jitter=False,
            )
        except (NetworkError, RateLimitError, ServerError) as e:
            raise TokenFetchError(
                f"Failed to obtain session after {self.max_attempts} attempts",
                attempts=self.max_attempts,
                cause=e,
            ) from e

    async def _sign_up(self) -> CachedSession:
        data = await self._post(
            self.sign_up_url,
            json_body={"returnSecureToken": True},
        )
        id_token = data.get("idToken")
        if not id_token:
            raise TokenFetchError(
                "Sign-in response missing idToken",
                status_code=200,
                details={"response_keys": list(data.keys())},
            )
        session = self._build_session(
            id_token, data.get("refreshToken", ""), data.get("localId", ""), data.get("expiresIn")
        )
        logger.info(
            f"Anonymous session started (uid={session.uid}, id={session.token_id}), "
            f"expires in {session.expires_in}s"
        )
        return session

    async def _refresh(self, refresh_token: str) -> CachedSession:
        data = await self._post(
            self.refresh_url,
            form={"grant_type": "refresh_token", "refresh_token": refresh_token},
            refreshing=True,
        )
        id_token = data.get("id_token")
        if not id_token:
            raise TokenFetchError(
                "Refresh response missing id_token",
                status_code=200,
                details={"response_keys": list(data.keys())},
            )
        session = self._build_session(
            id_token,
            data.get("refresh_token", refresh_token),
            data.get("user_id", ""),
            data.get("expires_in"),
        )
        logger.info(f"Session refreshed (id={session.token_id})")
        return session

    @staticmethod
    def _build_session(
        id_token: str, refresh_token: str, uid: str, expires_in: Any
    ) -> CachedSession:
        # The identity service sends expiresIn as a string of seconds
        ttl = int(expires_in) if expires_in else 3600
        return CachedSession(
            id_token=id_token,
            refresh_token=refresh_token,
            uid=uid,
            expires_at=time.time() + ttl,
            expires_in=ttl,
        )

    async def _post(
        self,
        url: str,
        json_body: Optional[dict] = None,
        form: Optional[dict] = None,
        refreshing: bool = False,
    ) -> dict[str, Any]:
        """POST to an identity endpoint and map failures to typed errors."""
        try:
            async with aiohttp.ClientSession() as http:
                async with http.post(
                    url,
                    params={"key": self.api_key},
                    json=json_body,
                    data=form,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response:
                    if response.status == 200:
                        return await response.json()
                    body = await response.text()
                    raise self._create_error(response.status, url, body, refreshing)

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to identity service: {e}",
                host=url,
                cause=e,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                "Identity request timed out",
                timeout_seconds=self.timeout_seconds,
                cause=e,
            )
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error contacting identity service: {e}", cause=e)

    @staticmethod
    def _create_error(
        status: int, url: str, body: str, refreshing: bool = False
    ) -> Exception:
        if status == 429:
            return RateLimitError(
                "Identity service rate limit exceeded",
                retry_after=5,
                path=url,
                response_body=body,
            )
        if status >= 500:
            return ServerError(
                f"Identity service error ({status})",
                status_code=status,
                path=url,
                response_body=body,
                method="POST",
            )
        if any(marker in body for marker in FATAL_SIGN_IN_ERRORS):
            return InvalidCredentialsError(
                "Firebase API key rejected or anonymous sign-in disabled",
                details={"response": body[:200]},
            )
        if refreshing:
            return TokenExpiredError(
                "Refresh token rejected",
                details={"status_code": status, "response": body[:200]},
            )
        return APIError(
            f"Identity request failed ({status})",
            status_code=status,
            path=url,
            response_body=body,
            method="POST",
        )

    async def force_refresh(self) -> str:
        """Obtain a new token regardless of the cached one."""
        async with self._lock:
            self._session = await self._obtain(self._session)
            return self._session.id_token

    def invalidate(self):
        """Mark the cached token unusable; the refresh token is kept."""
        if self._session:
            self._session.expires_at = 0

    @property
    def session_info(self) -> Optional[dict]:
        if not self._session:
            return None
        return {
            "uid": self._session.uid,
            "token_id": self._session.token_id,
            "is_expired": self._session.is_expired,
            "time_remaining_seconds": self._session.time_remaining,
        }
