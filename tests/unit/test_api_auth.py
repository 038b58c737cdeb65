"""Tests for caller authentication and authorization."""
from datetime import datetime, timedelta

import jwt
import pytest

from cgmsync.api.auth import (
    ServiceRole,
    UserIdentity,
    require_access,
    resolve_auth_context,
)
from cgmsync.config import Settings
from cgmsync.errors import AuthorizationError, CallerAuthError

SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"


@pytest.fixture
def settings():
    return Settings(service_role_key="svc-key", jwt_secret=SECRET)


def _token(claims, secret=SECRET):
    return jwt.encode(claims, secret, algorithm="HS256")


class TestResolveAuthContext:
    def test_service_role_key(self, settings):
        assert resolve_auth_context("Bearer svc-key", settings) == ServiceRole()

    def test_user_jwt(self, settings):
        auth = resolve_auth_context(f"Bearer {_token({'sub': 'user-123'})}", settings)
        assert auth == UserIdentity(user_id="user-123")

    def test_missing_header(self, settings):
        with pytest.raises(CallerAuthError):
            resolve_auth_context(None, settings)

    def test_non_bearer_scheme(self, settings):
        with pytest.raises(CallerAuthError):
            resolve_auth_context("Basic dXNlcjpwYXNz", settings)

    def test_wrong_signature(self, settings):
        token = _token({"sub": "user-123"}, secret="some-other-secret-that-is-also-long")
        with pytest.raises(CallerAuthError, match="Invalid token"):
            resolve_auth_context(f"Bearer {token}", settings)

    def test_expired_token(self, settings):
        token = _token({"sub": "user-123", "exp": datetime.utcnow() - timedelta(minutes=5)})
        with pytest.raises(CallerAuthError, match="expired"):
            resolve_auth_context(f"Bearer {token}", settings)

    def test_token_without_subject(self, settings):
        with pytest.raises(CallerAuthError, match="subject"):
            resolve_auth_context(f"Bearer {_token({'role': 'authenticated'})}", settings)

    def test_user_tokens_rejected_without_secret(self):
        settings = Settings(service_role_key="svc-key", jwt_secret="")
        with pytest.raises(CallerAuthError):
            resolve_auth_context(f"Bearer {_token({'sub': 'user-123'})}", settings)

    def test_empty_service_key_never_matches(self):
        settings = Settings(service_role_key="", jwt_secret=SECRET)
        with pytest.raises(CallerAuthError):
            resolve_auth_context("Bearer ", settings)


class TestRequireAccess:
    def test_service_role_any_user(self):
        require_access(ServiceRole(), "anyone")

    def test_user_self(self):
        require_access(UserIdentity("user-123"), "user-123")

    def test_user_other(self):
        with pytest.raises(AuthorizationError) as info:
            require_access(UserIdentity("user-123"), "user-456")
        assert info.value.status_code == 403
