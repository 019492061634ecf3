"""Tests for token registry backends."""

import pytest

from pushcast.registry.memory import InMemoryTokenRegistry
from pushcast.registry.sqlite import SQLiteTokenRegistry


@pytest.fixture(params=["memory", "sqlite"])
def any_registry(request, tmp_path):
    if request.param == "memory":
        return InMemoryTokenRegistry()
    return SQLiteTokenRegistry(tmp_path / "tokens.db")


@pytest.mark.asyncio
class TestTokenRegistry:
    async def test_register_and_list(self, any_registry):
        await any_registry.register("a")
        await any_registry.register("b", owner_id="u1", platform="web")
        tokens = await any_registry.all_tokens()
        assert sorted(t.token for t in tokens) == ["a", "b"]
        await any_registry.close()

    async def test_tokens_for_owner(self, any_registry):
        await any_registry.register("a", owner_id="u1")
        await any_registry.register("b", owner_id="u2")
        await any_registry.register("c")
        owned = await any_registry.tokens_for_owner("u1")
        assert [t.token for t in owned] == ["a"]
        await any_registry.close()

    async def test_find_by_token_returns_all_matches(self, any_registry):
        await any_registry.register("dup", owner_id="u1")
        await any_registry.register("dup", owner_id="u2")
        await any_registry.register("other")
        matches = await any_registry.find_by_token("dup")
        assert sorted(m.owner_id for m in matches) == ["u1", "u2"]
        await any_registry.close()

    async def test_delete(self, any_registry):
        record = await any_registry.register("gone")
        assert await any_registry.delete(record) is True
        assert await any_registry.find_by_token("gone") == []
        assert await any_registry.delete(record) is False
        await any_registry.close()


@pytest.mark.asyncio
async def test_sqlite_registry_persists_across_connections(tmp_path):
    path = tmp_path / "tokens.db"
    first = SQLiteTokenRegistry(path)
    await first.initialize()
    await first.register("keep", owner_id="u1", platform="android")
    await first.close()

    second = SQLiteTokenRegistry(path)
    tokens = await second.all_tokens()
    assert [(t.token, t.owner_id, t.platform) for t in tokens] == [("keep", "u1", "android")]
    await second.close()
