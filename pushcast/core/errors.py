"""
Pushcast exception hierarchy.

Every error in the system inherits from PushcastError.
Each subsystem has its own error class for targeted catching.

Usage:
    try:
        await service.send_to_all(content)
    except NoRecipientsError:
        # Nobody to send to
    except DispatchError as e:
        # e.outcome holds the counts computed before the failure
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pushcast.notifications.dispatcher import DispatchOutcome


class PushcastError(Exception):
    """Base exception for all Pushcast errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Core Errors ━━━


class ConfigError(PushcastError):
    """Configuration is invalid, missing, or malformed."""

    pass


class ValidationError(PushcastError):
    """Notification content or schedule request is malformed."""

    pass


class StorageError(PushcastError):
    """Storage backend failure - database errors, corruption, etc."""

    pass


# ━━━ Delivery Errors ━━━


class TransportError(PushcastError):
    """A whole batch could not be submitted to the push transport."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        retryable: bool = True,
        details: dict | None = None,
    ):
        self.provider = provider
        self.retryable = retryable
        super().__init__(message, details)


class DispatchError(PushcastError):
    """Immediate dispatch failed after (possibly) sending to some devices."""

    def __init__(
        self,
        message: str,
        outcome: "DispatchOutcome | None" = None,
        details: dict | None = None,
    ):
        self.outcome = outcome
        super().__init__(message, details)


class NoRecipientsError(DispatchError):
    """The target has no registered device tokens."""

    pass
