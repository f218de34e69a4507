"""Summary: OAuth token refresh for connected mail accounts.

Importance: Keeps access tokens valid without user interaction between fetch cycles.
Alternatives: Use provider SDKs for OAuth flows.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from maildirector.config import AppConfig


MICROSOFT_SCOPES = "offline_access https://graph.microsoft.com/Mail.Read"


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized OAuth token response data.

    Importance: Provides a consistent token representation for storage.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    refresh_token: str | None
    expires_at: str | None

    @staticmethod
    def from_response(payload: dict[str, Any]) -> "OAuthTokenResult":
        expires_in = payload.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)):
            expires_at = (datetime.now(timezone.utc) + timedelta(seconds=expires_in)).isoformat()
        return OAuthTokenResult(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )


def refresh_access_token(config: AppConfig, provider: str, refresh_token: str) -> OAuthTokenResult:
    """Summary: Exchange a refresh token for a new access token.

    Importance: Lets the fetch loop keep polling accounts with expired tokens.
    Alternatives: Ask users to reconnect accounts when tokens expire.
    """

    if provider == "gmail":
        _ensure_oauth_config(config.google_client_id, config.google_client_secret, provider)
        url = config.google_token_url
        payload = {
            "client_id": config.google_client_id,
            "client_secret": config.google_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
    elif provider == "outlook":
        _ensure_oauth_config(config.microsoft_client_id, config.microsoft_client_secret, provider)
        url = config.microsoft_token_url
        payload = {
            "client_id": config.microsoft_client_id,
            "client_secret": config.microsoft_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": MICROSOFT_SCOPES,
        }
    else:
        raise ValueError(f"Unknown OAuth provider: {provider}")
    return OAuthTokenResult.from_response(_post_form(url, payload))


def _ensure_oauth_config(client_id: str, client_secret: str, provider: str) -> None:
    if not client_id or not client_secret:
        raise ValueError(f"Missing OAuth client credentials for {provider}")


def _post_form(url: str, payload: dict[str, str]) -> dict[str, Any]:
    """Summary: Send a form-encoded POST request and parse JSON.

    Importance: Avoids new dependencies while supporting token refresh.
    Alternatives: Use requests or a provider SDK.
    """

    data = urllib.parse.urlencode(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8")
        raise RuntimeError(f"Token refresh failed: {error_body or exc.reason}") from exc
    return json.loads(raw)
