"""Push transports that ship with Pushcast."""

from pushcast.notifications.transports.credentials import (
    ServiceAccountToken,
    StaticToken,
    load_service_account,
)
from pushcast.notifications.transports.fcm import FCMTransport
from pushcast.notifications.transports.log import LogTransport

__all__ = [
    "FCMTransport",
    "LogTransport",
    "ServiceAccountToken",
    "StaticToken",
    "load_service_account",
]
