"""Authentication: bearer tokens and the request-scoped actor."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Optional

import jwt
from flask import current_app, g, request

from extensions import db
from models import User
from services.errors import AuthenticationRequiredError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller as seen by permission and tenant checks."""

    user_id: int
    email: str
    role: str
    company_id: Optional[int]

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role,
            company_id=user.company_id,
        )


def issue_token(user: User) -> str:
    auth_cfg = current_app.config["AUTH_CONFIG"]
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "company_id": user.company_id,
        "iat": now,
        "exp": now + datetime.timedelta(hours=auth_cfg.token_ttl_hours),
    }
    return jwt.encode(payload, auth_cfg.jwt_secret, algorithm=auth_cfg.jwt_algorithm)


def decode_token(token: str) -> dict:
    auth_cfg = current_app.config["AUTH_CONFIG"]
    return jwt.decode(token, auth_cfg.jwt_secret, algorithms=[auth_cfg.jwt_algorithm])


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def load_current_actor() -> None:
    """``before_request`` hook: resolve ``g.current_actor`` from the token.

    Role and company are taken from the user row, not from the token, so a
    role change takes effect without re-login.
    """
    g.current_actor = None
    token = _bearer_token()
    if not token:
        return
    try:
        claims = decode_token(token)
        user_id = int(claims["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        logger.warning("Rejected bearer token: %s", type(exc).__name__)
        return
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        logger.warning("Token for unknown or inactive user %s", user_id)
        return
    g.current_actor = Actor.from_user(user)


def get_current_actor() -> Optional[Actor]:
    return getattr(g, "current_actor", None)


def require_actor() -> Actor:
    actor = get_current_actor()
    if actor is None:
        raise AuthenticationRequiredError()
    return actor


def login_required(f):
    """Decorator that rejects anonymous requests with 401."""

    @wraps(f)
    def decorated(*args, **kwargs):
        require_actor()
        return f(*args, **kwargs)

    return decorated
