"""
NotificationService - the operations an outer surface (CLI, HTTP app)
calls: send now, schedule, list, cancel, history.

Immediate sends reuse the MulticastDispatcher directly and write a
history entry exactly like scheduled sends. They are not idempotent:
every call sends.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pushcast.core.errors import DispatchError, NoRecipientsError, ValidationError
from pushcast.notifications.base import NotificationContent, RecurrenceRule
from pushcast.notifications.dispatcher import DispatchOutcome, MulticastDispatcher
from pushcast.registry.base import DeviceToken, TokenRegistry
from pushcast.scheduler.notification import (
    DispatchHistoryRecord,
    ScheduledNotification,
    target_description,
    utcnow,
)
from pushcast.scheduler.store import NotificationStore

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Usage:
        service = NotificationService(dispatcher, registry, store)
        outcome = await service.send_to_all(NotificationContent("Hi", "there"))
        record = await service.schedule(content, when, RecurrenceRule("daily"))
    """

    def __init__(
        self,
        dispatcher: MulticastDispatcher,
        registry: TokenRegistry,
        store: NotificationStore,
    ) -> None:
        self._dispatcher = dispatcher
        self._registry = registry
        self._store = store

    # ── Immediate dispatch ───────────────────────────────────────────────────

    async def send_to_all(self, content: NotificationContent) -> DispatchOutcome:
        """Send to every registered device."""
        return await self._send(content, await self._registry.all_tokens(), None)

    async def send_to_user(
        self, user_id: str, content: NotificationContent
    ) -> DispatchOutcome:
        """Send to the devices owned by `user_id`."""
        devices = await self._registry.tokens_for_owner(user_id)
        return await self._send(content, devices, user_id)

    async def _send(
        self,
        content: NotificationContent,
        devices: list[DeviceToken],
        user_id: str | None,
    ) -> DispatchOutcome:
        content.validate()
        target = target_description(user_id)
        if not devices:
            raise NoRecipientsError(
                f"No devices registered for target '{target}'",
                outcome=DispatchOutcome(),
            )

        logger.info(f"Sending {content.title!r} to {len(devices)} device(s) ({target})")
        outcome = await self._dispatcher.dispatch([d.token for d in devices], content)

        try:
            await self._store.append_history(
                DispatchHistoryRecord.from_outcome(content, target, outcome, utcnow())
            )
        except Exception as e:
            raise DispatchError(
                f"Sent to {outcome.success_count}/{outcome.total_devices} devices "
                f"but failed to record history: {e}",
                outcome=outcome,
            ) from e
        return outcome

    # ── Scheduling ───────────────────────────────────────────────────────────

    async def schedule(
        self,
        content: NotificationContent,
        scheduled_time: datetime,
        recurrence: RecurrenceRule | None = None,
        target_user_id: str | None = None,
    ) -> ScheduledNotification:
        """Create a pending notification due at `scheduled_time`."""
        content.validate()
        if recurrence is not None:
            recurrence.validate()
        if scheduled_time.tzinfo is None:
            raise ValidationError("scheduled_time must be timezone-aware")

        record = ScheduledNotification(
            content=content,
            scheduled_time=scheduled_time.astimezone(timezone.utc),
            recurrence=recurrence,
            target_user_id=target_user_id,
        )
        await self._store.create(record)
        logger.info(
            f"Scheduled {record.id} for {record.scheduled_time.isoformat()}"
            + (f" ({recurrence.description})" if recurrence else "")
        )
        return record

    async def list_scheduled(self) -> list[ScheduledNotification]:
        return await self._store.list_pending()

    async def cancel(self, notification_id: str) -> bool:
        cancelled = await self._store.cancel(notification_id, utcnow())
        if cancelled:
            logger.info(f"Cancelled scheduled notification {notification_id}")
        return cancelled

    async def history(self, limit: int = 50) -> list[DispatchHistoryRecord]:
        return await self._store.list_history(limit)
