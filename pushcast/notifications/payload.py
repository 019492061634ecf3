"""
PayloadBuilder - turns NotificationContent into the per-platform message.

One content value yields three co-existing representations:

    notification  display pair (title/body, optional image)
    data          background mirror of title/body plus a delivery id and
                  ISO-8601 timestamp, so the client can rebuild the
                  notification when the OS suppresses the display channel
    android/apns/webpush
                  high priority and a 28-day TTL so a device that is
                  offline for up to 28 days still gets it on reconnect

Dropping the TTL or the priority flags changes what offline devices
receive. Treat any such change as a regression.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pushcast.notifications.base import NotificationContent

TTL_SECONDS = 28 * 24 * 60 * 60  # 2 419 200
TTL_MILLIS = TTL_SECONDS * 1000  # 2 419 200 000
DEFAULT_CLICK_ACTION = "/"
DEFAULT_SOUND = "default"


@dataclass(frozen=True)
class PlatformPayload:
    """Wire payload shared by every token in a batch."""

    delivery_id: str
    notification: dict[str, Any]
    data: dict[str, str]
    android: dict[str, Any]
    apns: dict[str, Any]
    webpush: dict[str, Any]

    def message_for(self, token: str) -> dict[str, Any]:
        """FCM HTTP v1 `message` object addressed to one token."""
        return {
            "token": token,
            "notification": self.notification,
            "data": self.data,
            "android": self.android,
            "apns": self.apns,
            "webpush": self.webpush,
        }


def build_payload(
    content: NotificationContent, now: datetime | None = None
) -> PlatformPayload:
    """
    Build the platform payload. Pure apart from the clock, which can be
    pinned through `now`; absent optional fields are simply omitted.
    """
    now = now or datetime.now(timezone.utc)
    delivery_id = f"notif_{int(now.timestamp() * 1000)}"
    click_action = content.click_action or DEFAULT_CLICK_ACTION

    notification: dict[str, Any] = {"title": content.title, "body": content.body}
    if content.image_url:
        notification["image"] = content.image_url

    data: dict[str, str] = {
        "title": content.title,
        "body": content.body,
        "timestamp": now.isoformat(),
        "notificationId": delivery_id,
    }
    if content.click_action:
        data["clickAction"] = content.click_action
    data.update(content.data)

    android = {
        "priority": "high",
        "ttl": f"{TTL_SECONDS}s",
        "notification": {
            "sound": DEFAULT_SOUND,
            "click_action": click_action,
            "channel_id": "default",
            "default_sound": True,
            "default_vibrate_timings": True,
        },
    }

    apns = {
        "headers": {
            "apns-priority": "10",
            "apns-expiration": str(int(now.timestamp()) + TTL_SECONDS),
        },
        "payload": {
            "aps": {
                "alert": {"title": content.title, "body": content.body},
                "sound": DEFAULT_SOUND,
                "badge": 1,
                "content-available": 1,
            },
        },
    }

    web_notification: dict[str, Any] = {
        "title": content.title,
        "body": content.body,
        "icon": "/favicon.ico",
        "badge": "/badge-icon.png",
        "requireInteraction": True,
        # Same tag → the browser replaces rather than stacks.
        "tag": delivery_id,
        "renotify": True,
        "vibrate": [200, 100, 200],
        "actions": [
            {"action": "open", "title": "Open"},
            {"action": "close", "title": "Close"},
        ],
    }
    if content.image_url:
        web_notification["image"] = content.image_url

    webpush = {
        "headers": {"TTL": str(TTL_SECONDS), "Urgency": "high"},
        "notification": web_notification,
        "fcm_options": {"link": click_action},
    }

    return PlatformPayload(
        delivery_id=delivery_id,
        notification=notification,
        data=data,
        android=android,
        apns=apns,
        webpush=webpush,
    )
