"""
Test suite for authentication utilities.

Tests local access token verification, header parsing, request token
extraction and the cron secret guard.
"""

import time
import jwt
import pytest
from unittest.mock import MagicMock, patch

from fastapi import HTTPException

from funnel_portal.config import AppConfig
from funnel_portal.utils.auth import (
    ACCESS_TOKEN_COOKIE,
    SupabaseAuth,
    TokenValidationError,
    extract_request_token,
    require_authentication,
    verify_cron_secret,
)

SECRET = "test-jwt-secret-for-local-verification"


def make_token(secret: str = SECRET, **overrides) -> str:
    payload = {
        "sub": "user-1",
        "email": "jane@example.com",
        "role": "authenticated",
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
    }
    payload.update(overrides)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth():
    manager = SupabaseAuth()
    manager.config = AppConfig()
    manager.config.supabase.jwt_secret = SECRET
    return manager


def make_request(headers=None, cookies=None):
    request = MagicMock()
    request.headers = headers or {}
    request.cookies = cookies or {}
    return request


class TestVerifyAccessToken:
    """Test local JWT verification."""

    def test_valid_token(self, auth):
        user = auth.verify_access_token(make_token())
        assert user.id == "user-1"
        assert user.email == "jane@example.com"
        assert user.is_admin is False

    def test_expired(self, auth):
        with pytest.raises(TokenValidationError, match="expired"):
            auth.verify_access_token(make_token(exp=int(time.time()) - 60))

    def test_wrong_secret(self, auth):
        with pytest.raises(TokenValidationError):
            auth.verify_access_token(make_token(secret="another-jwt-secret-for-verification"))

    def test_wrong_audience(self, auth):
        with pytest.raises(TokenValidationError):
            auth.verify_access_token(make_token(aud="anon"))

    def test_missing_subject(self, auth):
        with pytest.raises(TokenValidationError, match="sub"):
            auth.verify_access_token(make_token(sub=""))

    def test_remote_when_no_secret(self, auth):
        auth.config.supabase.jwt_secret = None
        with patch.object(SupabaseAuth, "_verify_remote", return_value="remote-user") as remote:
            assert auth.verify_access_token("token") == "remote-user"
        remote.assert_called_once_with("token")


class TestExtractToken:
    """Test Authorization header parsing."""

    def test_bearer(self, auth):
        assert auth.extract_token_from_header("Bearer abc") == "abc"

    def test_missing(self, auth):
        with pytest.raises(TokenValidationError):
            auth.extract_token_from_header("")

    def test_wrong_scheme(self, auth):
        with pytest.raises(TokenValidationError):
            auth.extract_token_from_header("Basic abc")

    def test_request_prefers_header(self, auth):
        with patch("funnel_portal.utils.auth.get_auth_manager", return_value=auth):
            request = make_request({"authorization": "Bearer header-token"}, {ACCESS_TOKEN_COOKIE: "cookie-token"})
            assert extract_request_token(request) == "header-token"

    def test_request_falls_back_to_cookie(self):
        request = make_request(cookies={ACCESS_TOKEN_COOKIE: "cookie-token"})
        assert extract_request_token(request) == "cookie-token"

    def test_malformed_header_falls_back_to_cookie(self, auth):
        with patch("funnel_portal.utils.auth.get_auth_manager", return_value=auth):
            request = make_request({"authorization": "Basic dXNlcjpwYXNz"}, {ACCESS_TOKEN_COOKIE: "cookie-token"})
            assert extract_request_token(request) == "cookie-token"

    def test_malformed_header_without_cookie(self, auth):
        with patch("funnel_portal.utils.auth.get_auth_manager", return_value=auth):
            assert extract_request_token(make_request({"authorization": "Bearer"})) is None


class TestRequireAuthentication:
    """Test the authentication dependency."""

    @pytest.mark.asyncio
    async def test_anonymous_rejected(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_authentication(make_request())
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, auth):
        with patch("funnel_portal.utils.auth.get_auth_manager", return_value=auth):
            with pytest.raises(HTTPException):
                await require_authentication(make_request(cookies={ACCESS_TOKEN_COOKIE: "garbage"}))

    @pytest.mark.asyncio
    async def test_valid_cookie(self, auth):
        with patch("funnel_portal.utils.auth.get_auth_manager", return_value=auth):
            user = await require_authentication(make_request(cookies={ACCESS_TOKEN_COOKIE: make_token()}))
        assert user.id == "user-1"


class TestVerifyCronSecret:
    """Test the scheduled job guard."""

    @pytest.fixture
    def production_config(self):
        config = AppConfig()
        config.environment = "production"
        config.cron.secret = "cron-secret"
        return config

    @pytest.mark.asyncio
    async def test_open_outside_production(self):
        config = AppConfig()
        config.cron.secret = "cron-secret"
        with patch("funnel_portal.utils.auth.get_config", return_value=config):
            assert await verify_cron_secret(make_request()) is None

    @pytest.mark.asyncio
    async def test_rejects_wrong_secret(self, production_config):
        with patch("funnel_portal.utils.auth.get_config", return_value=production_config):
            with pytest.raises(HTTPException) as exc_info:
                await verify_cron_secret(make_request({"authorization": "Bearer nope"}))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_accepts_secret(self, production_config):
        with patch("funnel_portal.utils.auth.get_config", return_value=production_config):
            assert await verify_cron_secret(make_request({"authorization": "Bearer cron-secret"})) is None
