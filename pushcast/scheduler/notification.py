"""
Scheduled notification - the record the scheduler drives.

State machine (all transitions made by the SchedulerEngine except cancel):

    pending ──claim──▶ processing ──one-shot ok──▶ sent
                           │──────recurring ok──▶ pending (scheduled_time advanced)
                           │──────dispatch raised / no devices──▶ failed
    pending | processing ──cancel──▶ cancelled

`processing` is an internal claim marker; it never outlives one tick
unless the process dies, in which case the claim lease expires and the
record becomes claimable again. Transition helpers return new values;
records are never mutated in place.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pushcast.notifications.base import NotificationContent, RecurrenceRule
from pushcast.notifications.dispatcher import DispatchOutcome


class NotificationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            NotificationStatus.SENT,
            NotificationStatus.FAILED,
            NotificationStatus.CANCELLED,
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def target_description(target_user_id: str | None) -> str:
    return "all" if target_user_id is None else f"user:{target_user_id}"


@dataclass(frozen=True)
class ScheduledNotification:
    """A notification waiting for (or done with) its scheduled time."""

    content: NotificationContent
    scheduled_time: datetime
    status: NotificationStatus = NotificationStatus.PENDING
    recurrence: RecurrenceRule | None = None
    target_user_id: str | None = None  # None = every registered device

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    last_error: str | None = None
    success_count: int | None = None
    failure_count: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    sent_at: datetime | None = None
    cancelled_at: datetime | None = None
    claim_token: str | None = None  # set while a tick holds the record

    @property
    def recurring(self) -> bool:
        return self.recurrence is not None and self.recurrence.enabled

    @property
    def target(self) -> str:
        return target_description(self.target_user_id)

    # ── Transitions ───────────────────────────────────────────────────────────

    def delivered(self, outcome: DispatchOutcome, at: datetime) -> "ScheduledNotification":
        """One-shot dispatch finished."""
        return replace(
            self,
            status=NotificationStatus.SENT,
            last_error=None,
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
            sent_at=at,
        )

    def rescheduled(
        self, outcome: DispatchOutcome, at: datetime, next_time: datetime
    ) -> "ScheduledNotification":
        """Recurring dispatch finished; back to pending at `next_time`."""
        return replace(
            self,
            status=NotificationStatus.PENDING,
            scheduled_time=next_time,
            last_error=None,
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
            sent_at=at,
        )

    def failed(
        self, reason: str, outcome: DispatchOutcome | None = None
    ) -> "ScheduledNotification":
        """Dispatch could not complete. scheduled_time is left unchanged."""
        return replace(
            self,
            status=NotificationStatus.FAILED,
            last_error=reason,
            success_count=outcome.success_count if outcome else self.success_count,
            failure_count=outcome.failure_count if outcome else self.failure_count,
        )

    # ── Serialisation ─────────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content.to_dict(),
            "scheduled_time": self.scheduled_time.isoformat(),
            "status": self.status.value,
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "target": self.target,
            "last_error": self.last_error,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "created_at": self.created_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


@dataclass(frozen=True)
class DispatchHistoryRecord:
    """Append-only audit entry for one completed dispatch attempt."""

    content: NotificationContent
    target: str
    sent_at: datetime
    total_devices: int
    success_count: int
    failure_count: int
    source_notification_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_outcome(
        cls,
        content: NotificationContent,
        target: str,
        outcome: DispatchOutcome,
        sent_at: datetime,
        source_notification_id: str | None = None,
    ) -> "DispatchHistoryRecord":
        return cls(
            content=content,
            target=target,
            sent_at=sent_at,
            total_devices=outcome.total_devices,
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
            source_notification_id=source_notification_id,
        )
