from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx

from portal.config import (
    GOOGLE_CALLBACK_URL,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    HTTP_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

STATE_COOKIE = "oauth_state"


class OAuthError(Exception):
    pass


@dataclass(slots=True)
class GoogleProfile:
    email: str
    display_name: str | None


def is_configured() -> bool:
    return bool(GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET)


def authorization_url(state: str) -> str:
    """URL of Google's consent screen for the profile and email scopes."""
    params = {
        "client_id": GOOGLE_CLIENT_ID,
        "redirect_uri": GOOGLE_CALLBACK_URL,
        "response_type": "code",
        "scope": "openid profile email",
        "state": state,
        "prompt": "select_account",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def fetch_profile(client: httpx.AsyncClient, code: str) -> GoogleProfile:
    """Exchange an authorization code and return the signed-in Google profile."""
    resp = await client.post(
        GOOGLE_TOKEN_URL,
        data={
            "code": code,
            "client_id": GOOGLE_CLIENT_ID,
            "client_secret": GOOGLE_CLIENT_SECRET,
            "redirect_uri": GOOGLE_CALLBACK_URL,
            "grant_type": "authorization_code",
        },
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    resp.raise_for_status()
    access_token = resp.json().get("access_token")
    if not access_token:
        raise OAuthError("token response has no access_token")

    resp = await client.get(
        GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    resp.raise_for_status()
    info = resp.json()
    email = info.get("email")
    if not email:
        raise OAuthError("userinfo response has no email")
    return GoogleProfile(email=email, display_name=info.get("name"))
