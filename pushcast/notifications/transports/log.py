"""
LogTransport - dry-run backend that writes each batch to the log and
reports every token as delivered.

Default provider, so a fresh install can exercise scheduling end to end
without push credentials.
"""

from __future__ import annotations

import logging

from pushcast.notifications.base import BatchResult, PushTransport, TokenOutcome
from pushcast.notifications.payload import PlatformPayload

logger = logging.getLogger(__name__)


class LogTransport(PushTransport):
    """Logs instead of sending."""

    @property
    def name(self) -> str:
        return "log"

    async def send_batch(self, payload: PlatformPayload, tokens: list[str]) -> BatchResult:
        logger.info(
            f"[dry-run] {payload.delivery_id} "
            f"{payload.notification.get('title')!r} → {len(tokens)} device(s)"
        )
        return BatchResult(outcomes=tuple(TokenOutcome(token=t, success=True) for t in tokens))
