"""Summary: Mail provider interfaces and implementations.

Importance: Encapsulates read-only ingestion from connected mailboxes.
Alternatives: Rely solely on provider SDKs with vendor lock-in.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
import urllib.error
import urllib.parse
import urllib.request

from maildirector.config import AppConfig
from maildirector.errors import ValidationError
from maildirector.models import Account, EmailEnvelope, parse_timestamp
from maildirector.oauth import OAuthTokenResult, refresh_access_token


logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"
GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


@dataclass(frozen=True)
class TokenRefresh:
    """Summary: Outcome of an access-token check.

    Importance: Tells the fetch loop whether refreshed tokens must be persisted.
    Alternatives: Mutate the account record inside the provider.
    """

    updated: bool
    access_token: str = ""
    expiry: str = ""
    refresh_token: str | None = None
    error: str | None = None


class MailProvider(ABC):
    """Summary: Abstract interface for mail ingestion.

    Importance: Standardizes retrieval across Gmail, Outlook, and mocked providers.
    Alternatives: Use provider-specific classes directly in the fetch loop.
    """

    @abstractmethod
    async def fetch_unread(
        self, account: Account, max_results: int, unread_only: bool = True
    ) -> list[EmailEnvelope]:
        """Summary: Fetch messages for an account.

        Importance: Drives every ingestion cycle.
        Alternatives: Fetch messages by cursor or date range instead.
        """

    @abstractmethod
    async def ensure_valid_access_token(self, account: Account) -> TokenRefresh:
        """Summary: Make sure the account holds a usable access token.

        Importance: Lets expired tokens be refreshed before fetching.
        Alternatives: Retry fetches after an authorization failure.
        """


class MockMailProvider(MailProvider):
    """Summary: Loads envelopes from a local JSON fixture.

    Importance: Supports offline testing and demos.
    Alternatives: Generate synthetic messages on each call.
    """

    def __init__(self, fixture_path: Path) -> None:
        self._fixture_path = fixture_path

    async def fetch_unread(
        self, account: Account, max_results: int, unread_only: bool = True
    ) -> list[EmailEnvelope]:
        if not self._fixture_path.exists():
            return []
        raw = await asyncio.to_thread(self._fixture_path.read_text, encoding="utf-8")
        items = json.loads(raw)
        if unread_only:
            items = [item for item in items if item.get("unread", True)]
        return [EmailEnvelope.from_dict(item) for item in items[:max_results]]

    async def ensure_valid_access_token(self, account: Account) -> TokenRefresh:
        return TokenRefresh(
            updated=False,
            access_token=account.tokens.access_token,
            expiry=account.tokens.expiry,
        )


class OAuthMailProvider(MailProvider):
    """Summary: Shared token handling for OAuth-backed providers.

    Importance: Gmail and Outlook refresh tokens the same way.
    Alternatives: Duplicate refresh logic in each provider.
    """

    provider_name = ""

    def __init__(
        self,
        config: AppConfig,
        base_url: str,
        refresher: Callable[[AppConfig, str, str], OAuthTokenResult] = refresh_access_token,
    ) -> None:
        self._config = config
        self._base_url = base_url.rstrip("/")
        self._refresher = refresher

    async def ensure_valid_access_token(self, account: Account) -> TokenRefresh:
        tokens = account.tokens
        expiry = parse_timestamp(tokens.expiry)
        now = datetime.now(timezone.utc)
        if tokens.access_token and (expiry is None or expiry - TOKEN_EXPIRY_MARGIN > now):
            return TokenRefresh(updated=False, access_token=tokens.access_token, expiry=tokens.expiry)
        if not tokens.refresh_token:
            return TokenRefresh(updated=False, error="Access token expired and no refresh token is stored")
        try:
            result = await asyncio.to_thread(
                self._refresher, self._config, self.provider_name, tokens.refresh_token
            )
        except (RuntimeError, ValueError, KeyError) as exc:
            return TokenRefresh(updated=False, error=str(exc))
        return TokenRefresh(
            updated=True,
            access_token=result.access_token,
            expiry=result.expires_at or "",
            refresh_token=result.refresh_token,
        )


class GmailMailProvider(OAuthMailProvider):
    """Summary: Reads mail via the Gmail API using OAuth tokens.

    Importance: Enables OAuth-based ingestion without IMAP passwords.
    Alternatives: Use IMAP or the Google client library.
    """

    provider_name = "gmail"

    def __init__(self, config: AppConfig, base_url: str = GMAIL_API_BASE, **kwargs: Any) -> None:
        super().__init__(config, base_url, **kwargs)

    async def fetch_unread(
        self, account: Account, max_results: int, unread_only: bool = True
    ) -> list[EmailEnvelope]:
        return await asyncio.to_thread(self._fetch, account.tokens.access_token, max_results, unread_only)

    def _fetch(self, access_token: str, max_results: int, unread_only: bool) -> list[EmailEnvelope]:
        params = {"maxResults": str(max_results)}
        if unread_only:
            params["q"] = "is:unread"
        list_url = f"{self._base_url}/users/me/messages?{urllib.parse.urlencode(params)}"
        payload = _api_get(list_url, access_token, "Gmail API")
        envelopes: list[EmailEnvelope] = []
        for item in payload.get("messages", []):
            message_id = item.get("id")
            if not message_id:
                continue
            detail_url = f"{self._base_url}/users/me/messages/{message_id}?format=full"
            envelopes.append(parse_gmail_message(_api_get(detail_url, access_token, "Gmail API")))
        return envelopes


def parse_gmail_message(message: dict[str, Any]) -> EmailEnvelope:
    """Summary: Parse a Gmail message payload into an envelope.

    Importance: Normalizes Gmail payloads into the shared envelope model.
    Alternatives: Store raw Gmail payloads and parse later.
    """

    payload = message.get("payload") or {}
    headers = _parse_gmail_headers(payload.get("headers", []))
    plain_parts: list[str] = []
    html_parts: list[str] = []
    attachments: list[dict[str, Any]] = []
    for part in _walk_gmail_parts(payload):
        body = part.get("body") or {}
        if part.get("filename"):
            attachments.append(
                {
                    "filename": part["filename"],
                    "mime_type": part.get("mimeType"),
                    "size": body.get("size", 0),
                }
            )
            continue
        data = body.get("data")
        if not data:
            continue
        if part.get("mimeType") == "text/plain":
            plain_parts.append(_decode_base64url(data))
        elif part.get("mimeType") == "text/html":
            html_parts.append(_decode_base64url(data))
    return EmailEnvelope(
        id=message.get("id", ""),
        subject=headers.get("Subject", ""),
        sender=headers.get("From", ""),
        to=headers.get("To", ""),
        cc=headers.get("Cc", ""),
        bcc=headers.get("Bcc", ""),
        date=headers.get("Date", ""),
        snippet=message.get("snippet", ""),
        body_plain="\n".join(item.strip() for item in plain_parts if item.strip()),
        body_html="\n".join(item.strip() for item in html_parts if item.strip()),
        attachments=attachments,
    )


def _parse_gmail_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for header in headers:
        name = header.get("name")
        value = header.get("value")
        if name and value:
            normalized[name] = value
    return normalized


def _walk_gmail_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = [payload]
    for part in payload.get("parts", []) or []:
        parts.extend(_walk_gmail_parts(part))
    return parts


def _decode_base64url(data: str) -> str:
    """Decode base64url-encoded Gmail content."""

    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8", errors="ignore")


class OutlookMailProvider(OAuthMailProvider):
    """Summary: Reads mail via Microsoft Graph using OAuth tokens.

    Importance: Enables OAuth-based Outlook ingestion without IMAP passwords.
    Alternatives: Use IMAP or the Graph SDK.
    """

    provider_name = "outlook"

    def __init__(self, config: AppConfig, base_url: str = GRAPH_API_BASE, **kwargs: Any) -> None:
        super().__init__(config, base_url, **kwargs)

    async def fetch_unread(
        self, account: Account, max_results: int, unread_only: bool = True
    ) -> list[EmailEnvelope]:
        return await asyncio.to_thread(self._fetch, account.tokens.access_token, max_results, unread_only)

    def _fetch(self, access_token: str, max_results: int, unread_only: bool) -> list[EmailEnvelope]:
        params = {
            "$top": str(max_results),
            "$select": "id,subject,from,toRecipients,ccRecipients,bccRecipients,"
            "bodyPreview,body,receivedDateTime,hasAttachments",
        }
        if unread_only:
            params["$filter"] = "isRead eq false"
        list_url = f"{self._base_url}/me/messages?{urllib.parse.urlencode(params)}"
        payload = _api_get(list_url, access_token, "Microsoft Graph")
        return [parse_outlook_message(item) for item in payload.get("value", [])]


def parse_outlook_message(message: dict[str, Any]) -> EmailEnvelope:
    """Summary: Parse a Microsoft Graph message payload into an envelope.

    Importance: Normalizes Outlook payloads into the shared envelope model.
    Alternatives: Store raw Outlook payloads and parse later.
    """

    body_info = message.get("body") or {}
    content = body_info.get("content") or ""
    is_html = (body_info.get("contentType") or "").lower() == "html"
    return EmailEnvelope(
        id=message.get("id", ""),
        subject=message.get("subject", "") or "",
        sender=(message.get("from") or {}).get("emailAddress", {}).get("address", ""),
        to=_recipients(message.get("toRecipients")),
        cc=_recipients(message.get("ccRecipients")),
        bcc=_recipients(message.get("bccRecipients")),
        date=message.get("receivedDateTime", "") or "",
        snippet=message.get("bodyPreview", "") or "",
        body_plain="" if is_html else content,
        body_html=content if is_html else "",
    )


def _recipients(items: list[dict[str, Any]] | None) -> str:
    addresses = [item.get("emailAddress", {}).get("address", "") for item in items or []]
    return ", ".join(address.strip() for address in addresses if address.strip())


def _api_get(url: str, access_token: str, service: str) -> dict[str, Any]:
    """Summary: Fetch JSON from a mail API with a bearer token.

    Importance: Encapsulates API calls without new dependencies.
    Alternatives: Use a third-party HTTP client or SDK.
    """

    request = urllib.request.Request(
        url,
        headers={"Authorization": f"Bearer {access_token}"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8")
        raise RuntimeError(f"{service} request failed: {error_body or exc.reason}") from exc
    return json.loads(raw)


class MailProviders:
    """Summary: Resolves the mail provider for an account.

    Importance: Lets the fetch loop stay agnostic to concrete providers.
    Alternatives: Branch on the provider name inside the fetch loop.
    """

    def __init__(self, config: AppConfig, overrides: dict[str, MailProvider] | None = None) -> None:
        self._providers: dict[str, MailProvider] = {
            "gmail": GmailMailProvider(config),
            "outlook": OutlookMailProvider(config),
            "mock": MockMailProvider(Path(config.mock_mail_fixture)),
        }
        self._providers.update(overrides or {})

    def for_account(self, account: Account) -> MailProvider:
        provider = self._providers.get(account.provider)
        if provider is None:
            raise ValidationError(f"Unknown mail provider: {account.provider}", field="provider")
        return provider
