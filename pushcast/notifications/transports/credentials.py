"""
FCM credentials - where the bearer token on each HTTP v1 request comes from.

    ServiceAccountToken  Google service account key, refreshed through
                         google-auth shortly before each token expires
    StaticToken          pre-minted OAuth2 access token; never refreshed,
                         so it stops working when it expires (about 1h)

Service account keys are accepted the way deployments usually carry them:
a path to the JSON key file, the JSON itself, or the base64-encoded JSON
(the FIREBASE_SERVICE_ACCOUNT_BASE64 convention).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Mapping

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from pushcast.core.errors import ConfigError, TransportError

logger = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


class TokenSource(ABC):
    """Supplies OAuth2 access tokens to FCMTransport."""

    project_id: str | None = None

    @property
    def refreshable(self) -> bool:
        return False

    @abstractmethod
    async def token(self) -> str:
        """A currently valid access token."""
        ...

    def invalidate(self) -> None:
        """FCM rejected the last token; fetch a new one next time if possible."""
        return None


class StaticToken(TokenSource):
    def __init__(self, access_token: str, project_id: str | None = None) -> None:
        self._access_token = access_token.strip()
        self.project_id = project_id

    async def token(self) -> str:
        return self._access_token


class ServiceAccountToken(TokenSource):
    """
    Wraps google.oauth2 service account credentials.

    google-auth refreshes synchronously over `requests`, so the refresh
    runs in the default executor. One refresh at a time; concurrent
    batches wait on the lock and reuse the new token.

    Usage:
        source = ServiceAccountToken.from_info(load_service_account(value))
        bearer = await source.token()
    """

    def __init__(self, credentials: Any, request: Any = None) -> None:
        self._credentials = credentials
        self._request = request
        self._lock = asyncio.Lock()
        self._stale = False
        self.project_id = getattr(credentials, "project_id", None)

    @classmethod
    def from_info(cls, info: Mapping[str, Any]) -> "ServiceAccountToken":
        try:
            credentials = service_account.Credentials.from_service_account_info(
                dict(info), scopes=[FCM_SCOPE]
            )
        except (ValueError, KeyError) as e:
            raise ConfigError(f"Invalid service account key: {e}") from e
        return cls(credentials)

    @property
    def refreshable(self) -> bool:
        return True

    async def token(self) -> str:
        async with self._lock:
            if self._stale or not self._credentials.valid:
                await self._refresh()
            return self._credentials.token

    def invalidate(self) -> None:
        self._stale = True

    async def _refresh(self) -> None:
        if self._request is None:
            self._request = Request()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._credentials.refresh, self._request)
        except GoogleAuthError as e:
            raise TransportError(
                f"Failed to refresh FCM access token: {e}", provider="fcm"
            ) from e
        self._stale = False
        logger.debug(f"Refreshed FCM access token (expires {self._credentials.expiry})")


def load_service_account(value: str) -> dict[str, Any]:
    """Parse a service account key given as a file path, JSON, or base64 JSON."""
    text = value.strip()
    if text.startswith("{"):
        raw = text
    elif _is_file(text):
        raw = Path(text).expanduser().read_text(encoding="utf-8")
    else:
        try:
            raw = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigError(
                "service_account must be a key file path, JSON, or base64-encoded JSON"
            ) from e

    try:
        info = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"service_account is not valid JSON: {e}") from e
    if not isinstance(info, dict) or info.get("type") != "service_account":
        raise ConfigError("service_account is not a Google service account key")
    return info


def _is_file(text: str) -> bool:
    try:
        return Path(text).expanduser().is_file()
    except OSError:
        # base64 blobs can exceed the filesystem's name limit
        return False
