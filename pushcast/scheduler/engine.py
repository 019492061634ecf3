"""
SchedulerEngine - the background asyncio task that fires due notifications.

Design:
- Polls the store every poll_interval seconds (default 60)
- Each tick runs as its own task so a slow dispatch never delays the
  next poll; overlapping ticks are kept apart by the store claim
  (pending → processing compare-and-swap) and an in-process in-flight set
- For each due record, strictly in order:
  fetch recipients → dispatch → record history → persist end state
- One record's failure never affects the others in the same tick
- Failed dispatch is fail-closed: the record goes to `failed` with
  scheduled_time untouched and is not retried until rescheduled
- If persisting the end state fails the claim is released, so the record
  is re-evaluated next tick (at-least-once over silent loss)
- A claim whose owner stops renewing it for claim_lease seconds is
  released at the start of a tick. The owner renews every claim_lease/3
  seconds while dispatching, and ids this engine has in flight are never
  released by its own ticks
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from pushcast.notifications.dispatcher import DispatchOutcome, MulticastDispatcher
from pushcast.registry.base import TokenRegistry
from pushcast.scheduler.notification import (
    DispatchHistoryRecord,
    NotificationStatus,
    ScheduledNotification,
    utcnow,
)
from pushcast.scheduler.recurrence import next_fire_time
from pushcast.scheduler.store import NotificationStore

logger = logging.getLogger(__name__)

POLL_INTERVAL = 60   # seconds between due checks
CLAIM_LEASE = 600    # seconds before an abandoned claim is released


@dataclass
class TickReport:
    """What one pass over the due records did."""

    sent: list[str] = field(default_factory=list)
    rescheduled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def processed(self) -> list[str]:
        return self.sent + self.rescheduled + self.failed


class SchedulerEngine:
    """
    Background scheduler.

    Usage:
        engine = SchedulerEngine(store, dispatcher, registry)
        await engine.start()
        ...
        await engine.stop()

    run_due() processes everything due right now and can be called
    directly (manual trigger, tests).
    """

    def __init__(
        self,
        store: NotificationStore,
        dispatcher: MulticastDispatcher,
        registry: TokenRegistry,
        poll_interval: float = POLL_INTERVAL,
        claim_lease: float = CLAIM_LEASE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._registry = registry
        self._poll_interval = poll_interval
        self._claim_lease = timedelta(seconds=claim_lease)
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self._running = False
        self._in_flight: set[str] = set()  # notification IDs currently dispatching

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background polling loop."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="pushcast-scheduler")
        logger.info(f"SchedulerEngine started (poll every {self._poll_interval}s)")

    async def stop(self) -> None:
        """Stop polling and wait for ticks already running to finish."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
        logger.info("SchedulerEngine stopped")

    # ── Internal loop ─────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self._running:
            tick = asyncio.create_task(self._tick())
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self._poll_interval)

    async def _tick(self) -> None:
        try:
            await self.run_due()
        except Exception as e:
            logger.warning(f"Scheduler tick error (non-fatal): {e}")

    # ── Tick ──────────────────────────────────────────────────────────────────

    async def run_due(self, now: datetime | None = None) -> TickReport:
        """Claim and process every notification due at `now`."""
        now = now or self._clock()
        report = TickReport()

        released = await self._store.release_stale(
            now, self._claim_lease, keep=frozenset(self._in_flight)
        )
        if released:
            logger.warning(f"Released {released} abandoned claim(s)")

        due = await self._store.query_due(now)
        if not due:
            return report

        logger.info(f"Processing {len(due)} scheduled notification(s)")
        results = await asyncio.gather(
            *(self._process(record.id, now) for record in due),
            return_exceptions=True,
        )
        for record, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.warning(f"Notification {record.id} processing error: {result}")
                report.skipped.append(record.id)
            elif result is None:
                report.skipped.append(record.id)
            elif result.status is NotificationStatus.SENT:
                report.sent.append(record.id)
            elif result.status is NotificationStatus.PENDING:
                report.rescheduled.append(record.id)
            else:
                report.failed.append(record.id)
        return report

    async def _process(
        self, notification_id: str, now: datetime
    ) -> ScheduledNotification | None:
        """Returns the persisted end state, or None if nothing was done."""
        if notification_id in self._in_flight:
            logger.debug(f"Notification {notification_id} still dispatching, skipping tick")
            return None
        self._in_flight.add(notification_id)
        try:
            claimed = await self._store.claim(notification_id, now)
            if claimed is None:
                logger.debug(f"Notification {notification_id} claimed elsewhere, skipping")
                return None

            heartbeat = asyncio.create_task(self._keep_claim(claimed))
            try:
                try:
                    tokens = await self._recipients(claimed)
                except Exception as e:
                    logger.warning(
                        f"Recipient lookup for {notification_id} failed, retrying next tick: {e}"
                    )
                    await self._store.release(notification_id, claimed.claim_token)
                    return None

                end_state = await self._dispatch(claimed, tokens)
            finally:
                heartbeat.cancel()
            return await self._persist(end_state)
        finally:
            self._in_flight.discard(notification_id)

    async def _keep_claim(self, record: ScheduledNotification) -> None:
        """Renew the claim lease until cancelled, so a slow dispatch keeps its record."""
        interval = self._claim_lease.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self._store.renew(record.id, record.claim_token, self._clock())
            except Exception as e:
                logger.warning(f"Failed to renew claim on {record.id}: {e}")
                continue
            if not held:
                logger.warning(f"Lost claim on {record.id} during dispatch")
                return

    async def _recipients(self, record: ScheduledNotification) -> list[str]:
        if record.target_user_id is None:
            devices = await self._registry.all_tokens()
        else:
            devices = await self._registry.tokens_for_owner(record.target_user_id)
        return [d.token for d in devices]

    async def _dispatch(
        self, record: ScheduledNotification, tokens: list[str]
    ) -> ScheduledNotification:
        if not tokens:
            logger.warning(f"Notification {record.id}: no devices for {record.target}")
            return record.failed(f"No devices registered for target '{record.target}'")

        outcome: DispatchOutcome | None = None
        try:
            outcome = await self._dispatcher.dispatch(tokens, record.content)
            sent_at = self._clock()
            await self._store.append_history(
                DispatchHistoryRecord.from_outcome(
                    record.content, record.target, outcome, sent_at, record.id
                )
            )
        except Exception as e:
            logger.warning(f"Notification {record.id} dispatch failed: {e}")
            return record.failed(str(e) or type(e).__name__, outcome)

        rule = record.recurrence
        if rule is None or not rule.enabled:
            return record.delivered(outcome, sent_at)

        next_time = next_fire_time(record.scheduled_time, rule)
        if next_time <= record.scheduled_time:
            return record.failed(
                f"Unsupported recurrence frequency '{rule.frequency}'", outcome
            )
        return record.rescheduled(outcome, sent_at, next_time)

    async def _persist(
        self, end_state: ScheduledNotification
    ) -> ScheduledNotification | None:
        try:
            written = await self._store.finish(end_state)
        except Exception as e:
            logger.error(f"Failed to persist notification {end_state.id}: {e}")
            try:
                await self._store.release(end_state.id, end_state.claim_token)
            except Exception as release_error:
                logger.error(
                    f"Failed to release claim on {end_state.id}, "
                    f"lease will expire: {release_error}"
                )
            return None

        if not written:
            logger.warning(
                f"Notification {end_state.id} was cancelled or re-claimed during dispatch; "
                f"end state {end_state.status.value} not written"
            )
            return None

        if end_state.status is NotificationStatus.PENDING:
            logger.info(
                f"Notification {end_state.id} sent; next at {end_state.scheduled_time.isoformat()}"
            )
        elif end_state.status is NotificationStatus.SENT:
            logger.info(f"Notification {end_state.id} sent")
        else:
            logger.info(f"Notification {end_state.id} failed: {end_state.last_error}")
        return end_state
