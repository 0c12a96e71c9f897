#!/usr/bin/env python3
"""Unit tests for anonymous session management.

Tests cover:
    - Session caching and expiry detection
    - Anonymous sign-up and token refresh
    - Falling back to a new sign-up when the refresh token is rejected
    - Error mapping for identity service responses
    - Concurrent token requests sharing one fetch
"""
import asyncio
import hashlib
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.arkive.api.auth import CachedSession, SessionManager
from src.arkive.api.exceptions import (
    APIError,
    ConfigurationError,
    InvalidCredentialsError,
    RateLimitError,
    ServerError,
    TokenExpiredError,
    TokenFetchError,
)


def _session(id_token="cached_token", expires_in=3600, remaining=3600) -> CachedSession:
    return CachedSession(
        id_token=id_token,
        refresh_token="refresh_abc",
        uid="anon_uid",
        expires_at=time.time() + remaining,
        expires_in=expires_in,
    )


SIGN_UP_RESPONSE = {
    "idToken": "new_id_token",
    "refreshToken": "new_refresh_token",
    "localId": "anon_uid",
    "expiresIn": "3600",
}

REFRESH_RESPONSE = {
    "id_token": "refreshed_id_token",
    "refresh_token": "refreshed_refresh_token",
    "user_id": "anon_uid",
    "expires_in": "3600",
}


# ============================================
# CachedSession Tests
# ============================================

class TestCachedSession:
    """Test the CachedSession dataclass."""

    def test_not_expired_when_new(self):
        session = _session()
        assert not session.is_expired
        assert session.time_remaining > 3500

    def test_expired_when_past(self):
        session = _session(remaining=-100)
        assert session.is_expired
        assert session.time_remaining == 0

    def test_expired_within_buffer(self):
        """A one hour token is refreshed about six minutes early (capped at 5)."""
        session = _session(remaining=200)
        assert session.is_expired

    def test_minimum_buffer_for_short_ttl(self):
        """Short TTLs still keep at least ~30s of headroom."""
        session = _session(expires_in=60, remaining=20)
        assert session.is_expired

    def test_token_id_is_sha256_hash(self):
        session = _session(id_token="my_secret_token_value")
        expected = hashlib.sha256(b"my_secret_token_value").hexdigest()[:8]
        assert session.token_id == expected
        assert "my_secret" not in session.token_id


# ============================================
# SessionManager Tests
# ============================================

class TestSessionManager:
    """Test the SessionManager class."""

    def test_missing_api_key_raises(self):
        with pytest.raises(ConfigurationError) as exc:
            SessionManager(api_key=None)

        assert "FIREBASE_API_KEY" in exc.value.details["missing_keys"]

    @pytest.mark.asyncio
    async def test_first_token_signs_up_anonymously(self):
        manager = SessionManager(api_key="test_key")

        mock_response = MagicMock()
        mock_response.status = 200
        mock_response.json = AsyncMock(return_value=SIGN_UP_RESPONSE)
        mock_response.__aenter__ = AsyncMock(return_value=mock_response)
        mock_response.__aexit__ = AsyncMock(return_value=None)

        mock_session = MagicMock()
        mock_session.post = MagicMock(return_value=mock_response)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("aiohttp.ClientSession", return_value=mock_session):
            token = await manager.get_token()

        assert token == "new_id_token"
        args, kwargs = mock_session.post.call_args
        assert args[0] == manager.sign_up_url
        assert kwargs["params"] == {"key": "test_key"}
        assert kwargs["json"] == {"returnSecureToken": True}
        assert manager.session_info["uid"] == "anon_uid"

    @pytest.mark.asyncio
    async def test_cached_token_is_reused(self):
        manager = SessionManager(api_key="test_key")
        manager._session = _session()

        with patch("aiohttp.ClientSession") as mock_session_cls:
            token = await manager.get_token()
            mock_session_cls.assert_not_called()

        assert token == "cached_token"

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self):
        manager = SessionManager(api_key="test_key")
        manager._session = _session(remaining=-1)

        with patch.object(manager, "_post", AsyncMock(return_value=REFRESH_RESPONSE)) as post:
            token = await manager.get_token()

        assert token == "refreshed_id_token"
        _, kwargs = post.call_args
        assert kwargs["form"] == {"grant_type": "refresh_token", "refresh_token": "refresh_abc"}
        assert manager._session.refresh_token == "refreshed_refresh_token"

    @pytest.mark.asyncio
    async def test_rejected_refresh_falls_back_to_sign_up(self):
        manager = SessionManager(api_key="test_key")
        manager._session = _session(remaining=-1)

        post = AsyncMock(side_effect=[TokenExpiredError("Refresh token rejected"), SIGN_UP_RESPONSE])
        with patch.object(manager, "_post", post):
            token = await manager.get_token()

        assert token == "new_id_token"
        assert post.call_count == 2
        assert post.call_args_list[1].args[0] == manager.sign_up_url

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        manager = SessionManager(api_key="test_key")

        post = AsyncMock(side_effect=[ServerError("down", status_code=503), SIGN_UP_RESPONSE])
        with patch.object(manager, "_post", post), patch("asyncio.sleep", AsyncMock()):
            token = await manager.get_token()

        assert token == "new_id_token"
        assert post.call_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_token_fetch_error(self):
        manager = SessionManager(api_key="test_key", max_attempts=2)

        post = AsyncMock(side_effect=ServerError("down", status_code=503))
        with patch.object(manager, "_post", post), patch("asyncio.sleep", AsyncMock()):
            with pytest.raises(TokenFetchError) as exc:
                await manager.get_token()

        assert post.call_count == 2
        assert isinstance(exc.value.cause, ServerError)

    @pytest.mark.asyncio
    async def test_invalid_key_is_not_retried(self):
        manager = SessionManager(api_key="bad_key")

        post = AsyncMock(side_effect=InvalidCredentialsError("API_KEY_INVALID"))
        with patch.object(manager, "_post", post):
            with pytest.raises(InvalidCredentialsError):
                await manager.get_token()

        assert post.call_count == 1

    @pytest.mark.asyncio
    async def test_missing_id_token_in_response(self):
        manager = SessionManager(api_key="test_key")

        with patch.object(manager, "_post", AsyncMock(return_value={"kind": "identitytoolkit"})):
            with pytest.raises(TokenFetchError):
                await manager.get_token()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        manager = SessionManager(api_key="test_key")
        release = asyncio.Event()

        async def slow_post(*args, **kwargs):
            await release.wait()
            return SIGN_UP_RESPONSE

        post = AsyncMock(side_effect=slow_post)
        with patch.object(manager, "_post", post):
            tasks = [asyncio.create_task(manager.get_token()) for _ in range(5)]
            await asyncio.sleep(0)
            release.set()
            tokens = await asyncio.gather(*tasks)

        assert tokens == ["new_id_token"] * 5
        assert post.call_count == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh_but_keeps_refresh_token(self):
        manager = SessionManager(api_key="test_key")
        manager._session = _session()

        manager.invalidate()

        assert manager._session.is_expired
        assert manager._session.refresh_token == "refresh_abc"

    @pytest.mark.asyncio
    async def test_force_refresh(self):
        manager = SessionManager(api_key="test_key")
        manager._session = _session()

        with patch.object(manager, "_post", AsyncMock(return_value=REFRESH_RESPONSE)):
            assert await manager.force_refresh() == "refreshed_id_token"

    def test_session_info_hides_token(self):
        manager = SessionManager(api_key="test_key")
        assert manager.session_info is None

        manager._session = _session(id_token="a_very_long_secret_token")
        info = manager.session_info

        assert not info["is_expired"]
        assert info["token_id"] == hashlib.sha256(b"a_very_long_secret_token").hexdigest()[:8]
        assert "a_very_long" not in str(info)


class TestErrorMapping:
    """Test identity service status codes map to typed errors."""

    def test_rate_limit(self):
        assert isinstance(SessionManager._create_error(429, "u", ""), RateLimitError)

    def test_server_error(self):
        error = SessionManager._create_error(503, "u", "")
        assert isinstance(error, ServerError)
        assert error.status_code == 503

    def test_fatal_sign_in_error(self):
        body = '{"error": {"message": "ADMIN_ONLY_OPERATION"}}'
        assert isinstance(SessionManager._create_error(400, "u", body), InvalidCredentialsError)

    def test_rejected_refresh(self):
        body = '{"error": {"message": "INVALID_REFRESH_TOKEN"}}'
        assert isinstance(
            SessionManager._create_error(400, "u", body, refreshing=True),
            TokenExpiredError,
        )

    def test_other_client_error(self):
        error = SessionManager._create_error(400, "u", "bad request")
        assert type(error) is APIError
