"""
Pushcast - multicast push notifications with scheduling and recurrence.

Public API:
    from pushcast import NotificationContent, MulticastDispatcher, SchedulerEngine
"""

__version__ = "0.1.0"

# Core
from pushcast.core.config import PushcastConfig

# Notifications
from pushcast.notifications.base import (
    Frequency,
    NotificationContent,
    PushTransport,
    RecurrenceRule,
)
from pushcast.notifications.dispatcher import DispatchOutcome, MulticastDispatcher
from pushcast.notifications.payload import build_payload
from pushcast.notifications.service import NotificationService

# Scheduler
from pushcast.scheduler.engine import SchedulerEngine
from pushcast.scheduler.notification import NotificationStatus, ScheduledNotification
from pushcast.scheduler.recurrence import next_fire_time

__all__ = [
    # Core
    "PushcastConfig",
    # Notifications
    "Frequency",
    "NotificationContent",
    "PushTransport",
    "RecurrenceRule",
    "DispatchOutcome",
    "MulticastDispatcher",
    "build_payload",
    "NotificationService",
    # Scheduler
    "SchedulerEngine",
    "NotificationStatus",
    "ScheduledNotification",
    "next_fire_time",
]
