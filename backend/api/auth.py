"""Caller resolution from bearer tokens.

Tokens are HS256 JWTs signed with JWT_SECRET carrying a userId claim. The
user's role comes from the users table, not from the token.
"""

import os

import jwt
import structlog
from fastapi import HTTPException, Request

from backend.agent.orchestrator import AnonymousCaller, AuthenticatedCaller, Caller
from backend.core.database import get_user

logger = structlog.get_logger(__name__)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_token(token: str | None) -> str | None:
    """Return the userId claim of a valid token, or None."""
    secret = os.environ.get("JWT_SECRET")
    if not token or not secret:
        return None

    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.info("auth.invalid_token", error=str(e))
        return None

    user_id = claims.get("userId")
    return str(user_id) if user_id else None


def resolve_caller(token: str | None) -> Caller:
    """Authenticated caller for a valid token of an existing user, anonymous otherwise."""
    user_id = decode_token(token)
    if user_id is None:
        return AnonymousCaller()

    user = get_user(user_id)
    if user is None:
        logger.info("auth.unknown_user", user_id=user_id)
        return AnonymousCaller()

    return AuthenticatedCaller(user_id=user.id, role=user.role)


def optional_caller(request: Request) -> Caller:
    """FastAPI dependency: never rejects, falls back to an anonymous caller."""
    return resolve_caller(bearer_token(request.headers.get("Authorization")))


def require_caller(request: Request) -> AuthenticatedCaller:
    caller = optional_caller(request)
    if not isinstance(caller, AuthenticatedCaller):
        raise HTTPException(status_code=401, detail="Authentication required")
    return caller


def require_admin(request: Request) -> AuthenticatedCaller:
    caller = require_caller(request)
    if caller.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller
