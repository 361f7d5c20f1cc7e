from __future__ import annotations

import logging
import time
from typing import Optional

import jwt
from fastapi import Request, Response

from portal.config import (
    AUTH_COOKIE,
    COOKIE_SECURE,
    JWT_ALGORITHM,
    JWT_SECRET,
    SESSION_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


def issue_token(user_id: int, username: str, secret: str = JWT_SECRET) -> str:
    """Sign a session token valid for SESSION_TIMEOUT_SECONDS."""
    now = int(time.time())
    payload = {
        "id": user_id,
        "username": username,
        "loginTime": now * 1000,
        "iat": now,
        "exp": now + SESSION_TIMEOUT_SECONDS,
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def read_token(token: str | None, secret: str = JWT_SECRET) -> Optional[dict]:
    """Return the token's claims, or None if it is missing, expired or forged."""
    if not token:
        return None
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected session token: %s", exc)
        return None


def current_claims(request: Request, secret: str = JWT_SECRET) -> Optional[dict]:
    return read_token(request.cookies.get(AUTH_COOKIE), secret)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=SESSION_TIMEOUT_SECONDS,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(AUTH_COOKIE)


def start_session(response: Response, user_id: int, username: str, secret: str = JWT_SECRET) -> None:
    set_session_cookie(response, issue_token(user_id, username, secret))


def refresh_session(response: Response, claims: dict, secret: str = JWT_SECRET) -> None:
    """Re-issue the cookie so an active user's session slides forward."""
    start_session(response, claims["id"], claims.get("username") or "", secret)
