"""
Caller authentication for the sync endpoints.

The Authorization header is resolved exactly once per request into an
AuthContext, which the routes pass down:

  ServiceRole             the internal service-role key (cron / scheduler);
                          trusted to sync any user
  UserIdentity(user_id)   a user JWT whose ``sub`` claim is the user id;
                          may only sync itself
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Union

import jwt
from fastapi import Depends, Header

from cgmsync.config import Settings, get_settings
from cgmsync.errors import AuthorizationError, CallerAuthError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceRole:
    pass


@dataclass(frozen=True)
class UserIdentity:
    user_id: str


AuthContext = Union[ServiceRole, UserIdentity]


def resolve_auth_context(authorization: Optional[str], settings: Settings) -> AuthContext:
    """Turn an Authorization header value into an AuthContext.

    Raises:
        CallerAuthError: header missing, malformed, or token invalid.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise CallerAuthError("Missing or invalid Authorization header")
    token = authorization.removeprefix("Bearer ").strip()

    if settings.service_role_key and hmac.compare_digest(
        token.encode(), settings.service_role_key.encode()
    ):
        return ServiceRole()

    if not settings.jwt_secret:
        raise CallerAuthError("User tokens are not accepted by this deployment")

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise CallerAuthError("Token expired")
    except jwt.InvalidTokenError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise CallerAuthError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise CallerAuthError("Token has no subject")
    return UserIdentity(user_id=str(user_id))


def require_access(auth: AuthContext, user_id: str) -> None:
    """Allow the service role for any user, a user only for itself.

    Raises:
        AuthorizationError: identity does not match ``user_id``.
    """
    if isinstance(auth, ServiceRole):
        return
    if auth.user_id != user_id:
        raise AuthorizationError("Forbidden: token does not belong to this user")


def get_auth_context(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    """FastAPI dependency wrapping resolve_auth_context."""
    return resolve_auth_context(authorization, settings)
