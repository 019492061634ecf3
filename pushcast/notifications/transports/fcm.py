"""
FCMTransport - delivers batches through the Firebase Cloud Messaging
HTTP v1 API.

Requires config:
    [transport]
    provider        = "fcm"
    service_account = "${FIREBASE_SERVICE_ACCOUNT_BASE64}"   # or a key file path
    project_id      = "my-firebase-project"   # optional, defaults to the key's

A bare `access_token` is still accepted for short jobs; it is never
refreshed.

HTTP v1 has no multicast endpoint, so a batch is sent as one request per
token over a shared connection pool, the same way the Admin SDKs
implement send-each-for-multicast.

Error mapping:
    UNREGISTERED, INVALID_ARGUMENT on the token  → PERMANENT (prune)
    401 / 403                                    → TransportError (whole batch)
    everything else, including timeouts          → TRANSIENT
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from pushcast.core.errors import TransportError
from pushcast.notifications.base import (
    BatchResult,
    ErrorClass,
    PushTransport,
    TokenOutcome,
)
from pushcast.notifications.payload import PlatformPayload
from pushcast.notifications.transports.credentials import StaticToken, TokenSource

logger = logging.getLogger(__name__)

_SEND_PATH = "/v1/projects/{project_id}/messages:send"
_FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"


class FCMTransport(PushTransport):
    """
    Sends each token's message with a bounded per-request timeout.

    Pass `client` to reuse an existing httpx.AsyncClient (tests use one
    built on httpx.MockTransport).
    """

    def __init__(
        self,
        project_id: str = "",
        access_token: str = "",
        credentials: TokenSource | None = None,
        endpoint: str = "https://fcm.googleapis.com",
        timeout: float = 10.0,
        max_connections: int = 100,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if credentials is None and access_token.strip():
            credentials = StaticToken(access_token)
        if credentials is None:
            raise TransportError(
                "FCM transport needs a service_account or an access_token",
                provider="fcm",
                retryable=False,
            )
        project_id = project_id or credentials.project_id or ""
        if not project_id:
            raise TransportError(
                "FCM transport needs a project_id", provider="fcm", retryable=False
            )
        self._url = endpoint.rstrip("/") + _SEND_PATH.format(project_id=project_id)
        self._credentials = credentials
        self._timeout = timeout
        self._max_connections = max_connections
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "fcm"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                limits=httpx.Limits(max_connections=self._max_connections),
            )
        return self._client

    async def send_batch(self, payload: PlatformPayload, tokens: list[str]) -> BatchResult:
        client = self._get_client()
        bearer = await self._credentials.token()
        results = await asyncio.gather(
            *(self._send_one(client, bearer, payload, token) for token in tokens),
            return_exceptions=True,
        )
        outcomes: list[TokenOutcome] = []
        for token, result in zip(tokens, results):
            if isinstance(result, TransportError):
                raise result
            if isinstance(result, BaseException):
                raise TransportError(
                    f"FCM send failed: {result!r}", provider="fcm"
                ) from result
            outcomes.append(result)
        return BatchResult(outcomes=tuple(outcomes))

    async def _send_one(
        self, client: httpx.AsyncClient, bearer: str, payload: PlatformPayload, token: str
    ) -> TokenOutcome:
        try:
            resp = await client.post(
                self._url,
                headers={"Authorization": f"Bearer {bearer}"},
                json={"message": payload.message_for(token)},
            )
        except httpx.HTTPError as e:
            return TokenOutcome(
                token=token,
                success=False,
                error_class=ErrorClass.TRANSIENT,
                error_code=type(e).__name__,
            )

        if resp.status_code == 200:
            return TokenOutcome(token=token, success=True)

        if resp.status_code in (401, 403):
            self._credentials.invalidate()
            raise TransportError(
                f"FCM rejected credentials (HTTP {resp.status_code})",
                provider="fcm",
                retryable=self._credentials.refreshable,
                details={"body": resp.text[:500]},
            )

        code, error_class = classify_error(resp.status_code, _json_or_empty(resp))
        return TokenOutcome(
            token=token, success=False, error_class=error_class, error_code=code
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def classify_error(status_code: int, body: dict[str, Any]) -> tuple[str, ErrorClass]:
    """Map an FCM v1 error response to (error code, ErrorClass)."""
    error = body.get("error") or {}
    status = error.get("status") or f"HTTP_{status_code}"
    message = str(error.get("message", "")).lower()

    code = status
    for detail in error.get("details") or []:
        if detail.get("@type") == _FCM_ERROR_TYPE and detail.get("errorCode"):
            code = detail["errorCode"]
            break

    if code == "UNREGISTERED":
        return code, ErrorClass.PERMANENT
    if code == "INVALID_ARGUMENT" and "registration token" in message:
        return code, ErrorClass.PERMANENT
    return code, ErrorClass.TRANSIENT


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
