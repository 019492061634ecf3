"""Tests for pushcast/notifications/dispatcher.py"""
from __future__ import annotations

import math

import pytest

from pushcast.core.errors import TransportError
from pushcast.notifications.base import ErrorClass
from pushcast.notifications.dispatcher import DispatchOutcome, MulticastDispatcher, partition
from pushcast.registry.memory import InMemoryTokenRegistry

from tests.fakes import ChattyTransport, ExplodingTransport, FakeTransport, ForgetfulTransport


# ── partition ────────────────────────────────────────────────────────────────

class TestPartition:
    @pytest.mark.parametrize("n", [0, 1, 499, 500, 501, 1200, 1500])
    def test_batches_cover_input_exactly(self, n):
        tokens = [f"t{i}" for i in range(n)]
        batches = partition(tokens, 500)
        assert len(batches) == math.ceil(n / 500)
        assert all(len(b) <= 500 for b in batches)
        assert [t for b in batches for t in b] == tokens

    def test_invalid_size_raises(self):
        with pytest.raises(ValueError):
            partition(["a"], 0)


def test_batch_size_above_limit_rejected(transport, registry):
    with pytest.raises(ValueError):
        MulticastDispatcher(transport, registry, batch_size=501)


# ── dispatch ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDispatch:
    async def test_empty_list_does_not_touch_transport(self, dispatcher, transport, content):
        outcome = await dispatcher.dispatch([], content)
        assert outcome == DispatchOutcome(0, 0, 0)
        assert transport.calls == []

    async def test_1200_tokens_all_succeed_in_three_batches(self, dispatcher, transport, content):
        tokens = [f"t{i}" for i in range(1200)]
        outcome = await dispatcher.dispatch(tokens, content)
        assert outcome.success_count == 1200
        assert outcome.failure_count == 0
        assert outcome.total_devices == 1200
        assert sorted(len(c) for c in transport.calls) == [200, 500, 500]

    async def test_payload_built_once_for_all_batches(self, dispatcher, transport, content):
        await dispatcher.dispatch([f"t{i}" for i in range(1001)], content)
        assert len(transport.payloads) == 3
        assert len({id(p) for p in transport.payloads}) == 1

    async def test_permanent_failure_is_pruned(self, content):
        registry = InMemoryTokenRegistry()
        for token in ("good-1", "bad", "good-2"):
            await registry.register(token)
        transport = FakeTransport(failures={"bad": ErrorClass.PERMANENT})
        dispatcher = MulticastDispatcher(transport, registry)

        outcome = await dispatcher.dispatch(["good-1", "bad", "good-2"], content)

        assert (outcome.success_count, outcome.failure_count, outcome.total_devices) == (2, 1, 3)
        assert outcome.pruned_count == 1
        assert await registry.find_by_token("bad") == []
        assert len(await registry.find_by_token("good-1")) == 1

    async def test_transient_failure_is_kept(self, content):
        registry = InMemoryTokenRegistry()
        await registry.register("slow")
        transport = FakeTransport(failures={"slow": ErrorClass.TRANSIENT})
        dispatcher = MulticastDispatcher(transport, registry)

        outcome = await dispatcher.dispatch(["slow"], content)

        assert outcome.failure_count == 1
        assert outcome.pruned_count == 0
        assert len(await registry.find_by_token("slow")) == 1

    async def test_prune_removes_every_matching_record(self, content):
        registry = InMemoryTokenRegistry()
        await registry.register("dup", owner_id="a")
        await registry.register("dup", owner_id="b")
        transport = FakeTransport(failures={"dup": ErrorClass.PERMANENT})
        dispatcher = MulticastDispatcher(transport, registry)

        outcome = await dispatcher.dispatch(["dup"], content)

        assert outcome.pruned_count == 2
        assert await registry.find_by_token("dup") == []

    async def test_batch_exception_counts_whole_batch_as_failed(self, registry, content):
        transport = FakeTransport(raise_on={1: TransportError("boom")})
        dispatcher = MulticastDispatcher(transport, registry, batch_size=2, max_concurrent_batches=1)

        outcome = await dispatcher.dispatch(["a", "b", "c", "d", "e"], content)

        assert outcome.total_devices == 5
        assert outcome.success_count == 3
        assert outcome.failure_count == 2
        assert outcome.pruned_count == 0

    async def test_all_batches_failing_never_raises(self, registry, content):
        await registry.register("a")
        dispatcher = MulticastDispatcher(ExplodingTransport(), registry)
        outcome = await dispatcher.dispatch(["a"], content)
        assert outcome == DispatchOutcome(success_count=0, failure_count=1, total_devices=1)
        assert len(await registry.find_by_token("a")) == 1

    async def test_duplicates_counted_independently(self, dispatcher, content):
        outcome = await dispatcher.dispatch(["x", "x", "x"], content)
        assert outcome.success_count == 3
        assert outcome.total_devices == 3

    async def test_outcomes_beyond_the_batch_are_ignored(self, registry, content):
        await registry.register("stranger")
        dispatcher = MulticastDispatcher(ChattyTransport(), registry, batch_size=2)

        outcome = await dispatcher.dispatch(["a", "b", "c"], content)

        assert outcome.total_devices == 3
        assert outcome.success_count == 3
        assert outcome.failure_count == 0
        assert outcome.pruned_count == 0
        assert len(await registry.find_by_token("stranger")) == 1

    async def test_missing_outcomes_count_as_failures(self, registry, content):
        dispatcher = MulticastDispatcher(ForgetfulTransport(), registry, batch_size=2)

        outcome = await dispatcher.dispatch(["a", "b", "c"], content)

        assert outcome.success_count == 1
        assert outcome.failure_count == 2
        assert outcome.success_count + outcome.failure_count == outcome.total_devices

    async def test_prune_failure_does_not_stop_others(self, content):
        class FlakyRegistry(InMemoryTokenRegistry):
            async def find_by_token(self, token):
                if token == "cursed":
                    raise RuntimeError("registry down")
                return await super().find_by_token(token)

        registry = FlakyRegistry()
        await registry.register("cursed")
        await registry.register("bad")
        transport = FakeTransport(
            failures={"cursed": ErrorClass.PERMANENT, "bad": ErrorClass.PERMANENT}
        )
        dispatcher = MulticastDispatcher(transport, registry)

        outcome = await dispatcher.dispatch(["cursed", "bad"], content)

        assert outcome.failure_count == 2
        assert outcome.pruned_count == 1
        assert await registry.find_by_token("bad") == []
