"""
MulticastDispatcher - fans one notification out to any number of tokens.

Algorithm:
    1. Split tokens into contiguous batches of at most `batch_size` (500).
    2. Build the payload once and submit every batch to the transport
       (up to `max_concurrent_batches` in flight).
    3. A batch whose submission raises counts entirely as failures.
    4. Per-token failures classified PERMANENT go on the prune list;
       anything else is a failure that keeps its token.
    5. After all batches, prune: look each value up in the registry and
       delete every match. One failed deletion never stops the rest.

Each batch returns an immutable _BatchTally and a single reduction sums
them, so concurrent batches never share a counter.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Sequence

from pushcast.core.config import MAX_BATCH_SIZE
from pushcast.core.errors import TransportError
from pushcast.notifications.base import ErrorClass, NotificationContent, PushTransport
from pushcast.notifications.payload import PlatformPayload, build_payload
from pushcast.registry.base import TokenRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchOutcome:
    """Aggregated counts for one dispatch call."""

    success_count: int = 0
    failure_count: int = 0
    total_devices: int = 0
    pruned_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_devices": self.total_devices,
            "pruned_count": self.pruned_count,
        }


@dataclass(frozen=True)
class _BatchTally:
    success: int
    failure: int
    prune: tuple[str, ...] = ()


def partition(tokens: Sequence[str], size: int = MAX_BATCH_SIZE) -> list[list[str]]:
    """Contiguous, order-preserving chunks of at most `size` tokens."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [list(tokens[i : i + size]) for i in range(0, len(tokens), size)]


class MulticastDispatcher:
    """
    Sends content to a token list through a PushTransport.

    Usage:
        dispatcher = MulticastDispatcher(transport, registry)
        outcome = await dispatcher.dispatch(tokens, content)
        print(outcome.success_count, outcome.failure_count)
    """

    def __init__(
        self,
        transport: PushTransport,
        registry: TokenRegistry,
        batch_size: int = MAX_BATCH_SIZE,
        max_concurrent_batches: int = 4,
    ) -> None:
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self._transport = transport
        self._registry = registry
        self._batch_size = batch_size
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_batches))

    async def dispatch(
        self, tokens: Sequence[str], content: NotificationContent
    ) -> DispatchOutcome:
        """
        Deliver `content` to every token. Duplicates are sent and counted
        independently. Never raises for partial failures.
        """
        if not tokens:
            return DispatchOutcome()

        payload = build_payload(content)
        batches = partition(tokens, self._batch_size)
        logger.info(
            f"Dispatching {payload.delivery_id} to {len(tokens)} devices "
            f"in {len(batches)} batch(es) via {self._transport.name}"
        )

        tallies = await asyncio.gather(
            *(self._send_batch(i, payload, batch) for i, batch in enumerate(batches))
        )

        success = sum(t.success for t in tallies)
        failure = sum(t.failure for t in tallies)
        prune = [token for t in tallies for token in t.prune]
        pruned = await self._prune(prune) if prune else 0

        outcome = DispatchOutcome(
            success_count=success,
            failure_count=failure,
            total_devices=len(tokens),
            pruned_count=pruned,
        )
        logger.info(
            f"Dispatch {payload.delivery_id} done: "
            f"{success}/{len(tokens)} delivered, {failure} failed, {pruned} pruned"
        )
        return outcome

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _send_batch(
        self, index: int, payload: PlatformPayload, batch: list[str]
    ) -> _BatchTally:
        async with self._semaphore:
            try:
                result = await self._transport.send_batch(payload, batch)
            except TransportError as e:
                logger.warning(f"Batch {index} ({len(batch)} tokens) failed: {e}")
                return _BatchTally(success=0, failure=len(batch))
            except Exception as e:
                logger.warning(
                    f"Batch {index} ({len(batch)} tokens) raised unexpectedly: {e!r}"
                )
                return _BatchTally(success=0, failure=len(batch))

        expected = Counter(batch)
        success = 0
        failure = 0
        prune: list[str] = []
        for outcome in result.outcomes:
            if expected[outcome.token] <= 0:
                logger.warning(
                    f"Batch {index}: ignoring outcome for unexpected token {outcome.token[:12]}…"
                )
                continue
            expected[outcome.token] -= 1
            if outcome.success:
                success += 1
                continue
            failure += 1
            logger.debug(
                f"Token {outcome.token[:12]}… failed: "
                f"{outcome.error_code} ({outcome.error_class})"
            )
            if outcome.error_class is ErrorClass.PERMANENT:
                prune.append(outcome.token)

        missing = sum(expected.values())
        if missing > 0:
            logger.warning(f"Batch {index}: transport omitted {missing} outcome(s)")
            failure += missing

        return _BatchTally(success=success, failure=failure, prune=tuple(prune))

    async def _prune(self, tokens: list[str]) -> int:
        """Delete every registry record for each token. Best-effort."""
        unique = list(dict.fromkeys(tokens))
        logger.info(f"Removing {len(unique)} invalid token(s)")
        results = await asyncio.gather(
            *(self._prune_one(t) for t in unique), return_exceptions=True
        )
        removed = 0
        for token, result in zip(unique, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to remove token {token[:12]}…: {result}")
            else:
                removed += result
        return removed

    async def _prune_one(self, token: str) -> int:
        records = await self._registry.find_by_token(token)
        removed = 0
        for record in records:
            try:
                if await self._registry.delete(record):
                    removed += 1
            except Exception as e:
                logger.warning(f"Failed to delete token record {record.id}: {e}")
        return removed
