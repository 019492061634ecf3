"""
In-memory token registry - for testing.

Data lost when process exits.
"""

from __future__ import annotations

from pushcast.registry.base import DeviceToken, TokenRegistry


class InMemoryTokenRegistry(TokenRegistry):
    """
    Dict-backed registry.

    Usage:
        registry = InMemoryTokenRegistry()
        await registry.register("fcm-token", owner_id="u1")
        assert [t.token for t in await registry.all_tokens()] == ["fcm-token"]
    """

    def __init__(self) -> None:
        self._records: dict[str, DeviceToken] = {}

    async def register(
        self, token: str, owner_id: str | None = None, platform: str | None = None
    ) -> DeviceToken:
        record = DeviceToken(token=token, owner_id=owner_id, platform=platform)
        self._records[record.id] = record
        return record

    async def all_tokens(self) -> list[DeviceToken]:
        return list(self._records.values())

    async def tokens_for_owner(self, owner_id: str) -> list[DeviceToken]:
        return [r for r in self._records.values() if r.owner_id == owner_id]

    async def find_by_token(self, token: str) -> list[DeviceToken]:
        return [r for r in self._records.values() if r.token == token]

    async def delete(self, record: DeviceToken) -> bool:
        return self._records.pop(record.id, None) is not None

    async def close(self) -> None:
        self._records.clear()
