"""Tests for Supabase JWT authentication."""

import time
from unittest.mock import MagicMock, patch

import jwt as pyjwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

pytestmark = pytest.mark.unit

_SECRET = "unit-test-jwt-secret-0123456789abcdef"


def _sign_jwt(payload: dict, secret: str = _SECRET) -> str:
    return pyjwt.encode(payload, secret, algorithm="HS256")


def _mock_settings(secret: str = _SECRET):
    s = MagicMock()
    s.supabase_jwt_secret = secret
    s.supabase_jwt_audience = "authenticated"
    return s


def _claims(**overrides) -> dict:
    now = int(time.time())
    claims = {"sub": "8b1f0c64-5a3e-4c1e-9d7a-2f9e1d3c4b5a", "aud": "authenticated", "iat": now - 10, "exp": now + 300}
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


class TestAuthUser:
    def test_fields(self):
        from levelup.core.auth import AuthUser

        user = AuthUser(user_id="abc", claims={"sub": "abc", "email": "buyer@example.com"})
        assert user.user_id == "abc"
        assert user.email == "buyer@example.com"

    def test_email_optional(self):
        from levelup.core.auth import AuthUser

        assert AuthUser(user_id="abc", claims={"sub": "abc"}).email is None


class TestDecodeSupabaseJwt:
    def test_valid_token(self):
        from levelup.core.auth import decode_supabase_jwt

        token = _sign_jwt(_claims(email="buyer@example.com"))

        with patch("levelup.core.auth.get_settings", _mock_settings):
            user = decode_supabase_jwt(token)

        assert user.user_id == "8b1f0c64-5a3e-4c1e-9d7a-2f9e1d3c4b5a"
        assert user.email == "buyer@example.com"

    def test_expired_token_raises(self):
        from levelup.core.auth import decode_supabase_jwt

        now = int(time.time())
        token = _sign_jwt(_claims(iat=now - 600, exp=now - 300))

        with patch("levelup.core.auth.get_settings", _mock_settings):
            with pytest.raises(HTTPException) as exc_info:
                decode_supabase_jwt(token)
        assert exc_info.value.status_code == 401
        assert "expired" in exc_info.value.detail.lower()

    def test_wrong_audience_raises(self):
        from levelup.core.auth import decode_supabase_jwt

        token = _sign_jwt(_claims(aud="anon"))

        with patch("levelup.core.auth.get_settings", _mock_settings):
            with pytest.raises(HTTPException) as exc_info:
                decode_supabase_jwt(token)
        assert exc_info.value.status_code == 401
        assert "aud" in exc_info.value.detail.lower()

    def test_wrong_secret_raises(self):
        from levelup.core.auth import decode_supabase_jwt

        token = _sign_jwt(_claims(), secret="another-secret-0123456789abcdefghij")

        with patch("levelup.core.auth.get_settings", _mock_settings):
            with pytest.raises(HTTPException) as exc_info:
                decode_supabase_jwt(token)
        assert exc_info.value.status_code == 401

    def test_missing_sub_raises(self):
        from levelup.core.auth import decode_supabase_jwt

        token = _sign_jwt(_claims(sub=None))

        with patch("levelup.core.auth.get_settings", _mock_settings):
            with pytest.raises(HTTPException) as exc_info:
                decode_supabase_jwt(token)
        assert exc_info.value.status_code == 401
        assert "sub" in exc_info.value.detail.lower()

    def test_unconfigured_secret_is_server_error(self):
        from levelup.core.auth import decode_supabase_jwt

        with patch("levelup.core.auth.get_settings", lambda: _mock_settings(secret="")):
            with pytest.raises(HTTPException) as exc_info:
                decode_supabase_jwt(_sign_jwt(_claims()))
        assert exc_info.value.status_code == 500


class TestRequireAuth:
    async def test_valid_bearer_token(self):
        from levelup.core.auth import require_auth

        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials=_sign_jwt(_claims(sub="user_xyz")))
        mock_request = MagicMock()
        mock_request.state = MagicMock()

        with patch("levelup.core.auth.get_settings", _mock_settings):
            user = await require_auth(request=mock_request, credentials=creds)

        assert user.user_id == "user_xyz"
        assert mock_request.state.user_id == "user_xyz"

    async def test_missing_credentials_raises_401(self):
        from levelup.core.auth import require_auth

        mock_request = MagicMock()
        mock_request.state = MagicMock()

        with pytest.raises(HTTPException) as exc_info:
            await require_auth(request=mock_request, credentials=None)
        assert exc_info.value.status_code == 401

    async def test_invalid_token_raises_401(self):
        from levelup.core.auth import require_auth

        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials="garbage.token.here")
        mock_request = MagicMock()
        mock_request.state = MagicMock()

        with patch("levelup.core.auth.get_settings", _mock_settings):
            with pytest.raises(HTTPException) as exc_info:
                await require_auth(request=mock_request, credentials=creds)
        assert exc_info.value.status_code == 401
