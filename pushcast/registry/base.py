"""
TokenRegistry interface.

The registry owns the device-token lifecycle. Tokens are created when a
device registers and deleted only when the push transport reports them
as permanently invalid.

Implementations:
    SQLiteTokenRegistry - file-based, default
    InMemoryTokenRegistry - for testing
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class DeviceToken:
    """One registered device + app installation."""

    token: str
    owner_id: str | None = None  # None for broadcast-only devices
    platform: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: int = field(default_factory=lambda: int(time.time()))


class TokenRegistry(ABC):
    """
    Abstract store of device tokens.

    The same token value may be registered more than once (e.g. a device
    re-registering under a new owner); every record is returned and
    every record is counted on dispatch.
    """

    @abstractmethod
    async def register(
        self, token: str, owner_id: str | None = None, platform: str | None = None
    ) -> DeviceToken:
        ...

    @abstractmethod
    async def all_tokens(self) -> list[DeviceToken]:
        """Every registered token, oldest first."""
        ...

    @abstractmethod
    async def tokens_for_owner(self, owner_id: str) -> list[DeviceToken]:
        ...

    @abstractmethod
    async def find_by_token(self, token: str) -> list[DeviceToken]:
        """Every record whose value equals `token`."""
        ...

    @abstractmethod
    async def delete(self, record: DeviceToken) -> bool:
        """Delete one record. Returns True if it existed."""
        ...

    async def close(self) -> None:
        return None
