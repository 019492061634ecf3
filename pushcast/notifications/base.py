"""
Notification primitives - content values, recurrence rules and the
PushTransport ABC.

Every delivery backend (FCM, dry-run log) implements PushTransport.
The MulticastDispatcher decides how tokens are batched and what happens
to the per-token outcomes.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

from pushcast.core.errors import ValidationError

if TYPE_CHECKING:
    from pushcast.notifications.payload import PlatformPayload

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class NotificationContent:
    """What the user sees. Never mutated after creation."""

    title: str
    body: str
    image_url: str | None = None
    click_action: str | None = None
    data: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze the caller's dict so later edits can't leak into batches.
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def validate(self) -> None:
        """Raise ValidationError unless this content can be sent."""
        if not self.title or not self.body:
            raise ValidationError("Title and body are required")
        for key, value in self.data.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValidationError(
                    "Data values must be strings", details={"key": key}
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "image_url": self.image_url,
            "click_action": self.click_action,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "NotificationContent":
        return cls(
            title=d["title"],
            body=d["body"],
            image_url=d.get("image_url"),
            click_action=d.get("click_action"),
            data=d.get("data") or {},
        )


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class RecurrenceRule:
    """
    How to re-derive the next scheduled time after a recurring dispatch.

    frequency is kept as a plain string so rows written by other tools
    with an unknown value still load; the calculator treats those as a
    no-op.
    """

    frequency: str
    time_of_day: str | None = None  # "HH:MM"
    enabled: bool = True

    def validate(self) -> None:
        if self.frequency not in {f.value for f in Frequency}:
            raise ValidationError(f"Unknown recurrence frequency {self.frequency!r}")
        if self.time_of_day is not None and not _TIME_OF_DAY.match(self.time_of_day):
            raise ValidationError(
                f"time_of_day must be HH:MM, got {self.time_of_day!r}"
            )

    @property
    def clock(self) -> tuple[int, int] | None:
        """(hour, minute) from time_of_day, or None."""
        if self.time_of_day is None:
            return None
        m = _TIME_OF_DAY.match(self.time_of_day)
        if not m:
            return None
        return int(m.group(1)), int(m.group(2))

    @property
    def description(self) -> str:
        if self.time_of_day:
            return f"{self.frequency} at {self.time_of_day}"
        return self.frequency

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "time_of_day": self.time_of_day,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RecurrenceRule":
        return cls(
            frequency=str(d["frequency"]),
            time_of_day=d.get("time_of_day"),
            enabled=bool(d.get("enabled", True)),
        )


# ━━━ Transport contract ━━━


class ErrorClass(str, Enum):
    """How a failed token should be treated."""

    PERMANENT = "permanent"  # unregistered / malformed: prune
    TRANSIENT = "transient"  # rate limit, quota, network: keep


@dataclass(frozen=True)
class TokenOutcome:
    """Result of delivering to a single device token."""

    token: str
    success: bool
    error_class: ErrorClass | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class BatchResult:
    """Structured response for one submitted batch."""

    outcomes: tuple[TokenOutcome, ...]

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failure_count(self) -> int:
        return len(self.outcomes) - self.success_count


class PushTransport(ABC):
    """
    Abstract push delivery backend.

    Implementations receive at most 500 tokens per call and return one
    TokenOutcome per token, in input order. A failure that affects the
    whole batch (connection refused, auth rejected) is raised as
    TransportError instead.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier, e.g. 'fcm', 'log'."""
        ...

    @abstractmethod
    async def send_batch(
        self, payload: "PlatformPayload", tokens: list[str]
    ) -> BatchResult:
        ...

    async def close(self) -> None:
        """Release any pooled connections."""
        return None
