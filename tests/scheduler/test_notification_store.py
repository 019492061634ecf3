"""Tests for pushcast/scheduler/store.py"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pushcast.notifications.base import NotificationContent, RecurrenceRule
from pushcast.notifications.dispatcher import DispatchOutcome
from pushcast.scheduler.notification import (
    DispatchHistoryRecord,
    NotificationStatus,
    ScheduledNotification,
)
from pushcast.scheduler.store import InMemoryNotificationStore, SQLiteNotificationStore

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _record(minutes: int = -1, **kwargs) -> ScheduledNotification:
    return ScheduledNotification(
        content=NotificationContent("Hi", "There", data={"k": "v"}),
        scheduled_time=NOW + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryNotificationStore()
    return SQLiteNotificationStore(db_path=tmp_path / "pushcast.db")


@pytest.mark.asyncio
class TestNotificationStore:
    async def test_create_and_get_round_trip(self, any_store):
        await any_store.initialize()
        record = _record(recurrence=RecurrenceRule("daily", "09:00"), target_user_id="u1")
        await any_store.create(record)
        loaded = await any_store.get(record.id)
        assert loaded == record
        await any_store.close()

    async def test_query_due_only_returns_due_pending(self, any_store):
        await any_store.initialize()
        due = _record(-5)
        future = _record(+5)
        exactly_now = _record(0)
        await any_store.create(due)
        await any_store.create(future)
        await any_store.create(exactly_now)
        ids = {r.id for r in await any_store.query_due(NOW)}
        assert ids == {due.id, exactly_now.id}
        await any_store.close()

    async def test_claim_is_exclusive(self, any_store):
        await any_store.initialize()
        record = _record()
        await any_store.create(record)

        first = await any_store.claim(record.id, NOW)
        second = await any_store.claim(record.id, NOW)

        assert first is not None and first.status is NotificationStatus.PROCESSING
        assert second is None
        assert await any_store.query_due(NOW) == []
        await any_store.close()

    async def test_claim_refuses_future_record(self, any_store):
        await any_store.initialize()
        record = _record(+10)
        await any_store.create(record)
        assert await any_store.claim(record.id, NOW) is None
        await any_store.close()

    async def test_finish_writes_end_state(self, any_store):
        await any_store.initialize()
        record = _record()
        await any_store.create(record)
        claimed = await any_store.claim(record.id, NOW)

        done = claimed.delivered(DispatchOutcome(3, 1, 4), NOW)
        assert await any_store.finish(done) is True

        loaded = await any_store.get(record.id)
        assert loaded.status is NotificationStatus.SENT
        assert (loaded.success_count, loaded.failure_count) == (3, 1)
        assert loaded.sent_at == NOW
        await any_store.close()

    async def test_finish_without_claim_is_refused(self, any_store):
        await any_store.initialize()
        record = _record()
        await any_store.create(record)
        assert await any_store.finish(record.delivered(DispatchOutcome(), NOW)) is False
        assert (await any_store.get(record.id)).status is NotificationStatus.PENDING
        await any_store.close()

    async def test_cancel_during_processing_wins(self, any_store):
        await any_store.initialize()
        record = _record()
        await any_store.create(record)
        claimed = await any_store.claim(record.id, NOW)

        assert await any_store.cancel(record.id, NOW) is True
        assert await any_store.finish(claimed.delivered(DispatchOutcome(1, 0, 1), NOW)) is False
        assert (await any_store.get(record.id)).status is NotificationStatus.CANCELLED
        await any_store.close()

    async def test_release_returns_to_pending(self, any_store):
        await any_store.initialize()
        record = _record()
        await any_store.create(record)
        await any_store.claim(record.id, NOW)
        assert await any_store.release(record.id) is True
        assert [r.id for r in await any_store.query_due(NOW)] == [record.id]
        await any_store.close()

    async def test_release_stale_claims(self, any_store):
        await any_store.initialize()
        record = _record(-60)
        await any_store.create(record)
        await any_store.claim(record.id, NOW - timedelta(minutes=30))

        assert await any_store.release_stale(NOW, timedelta(hours=1)) == 0
        assert await any_store.release_stale(NOW, timedelta(minutes=10)) == 1
        assert (await any_store.get(record.id)).status is NotificationStatus.PENDING
        await any_store.close()

    async def test_release_stale_skips_kept_ids(self, any_store):
        await any_store.initialize()
        record = _record(-60)
        await any_store.create(record)
        await any_store.claim(record.id, NOW - timedelta(minutes=30))

        released = await any_store.release_stale(NOW, timedelta(minutes=10), keep={record.id})

        assert released == 0
        assert (await any_store.get(record.id)).status is NotificationStatus.PROCESSING
        await any_store.close()

    async def test_renew_keeps_claim_alive(self, any_store):
        await any_store.initialize()
        record = _record(-60)
        await any_store.create(record)
        claimed = await any_store.claim(record.id, NOW - timedelta(minutes=30))

        assert await any_store.renew(record.id, claimed.claim_token, NOW - timedelta(minutes=1))
        assert await any_store.release_stale(NOW, timedelta(minutes=10)) == 0
        assert await any_store.renew(record.id, "someone-else", NOW) is False
        await any_store.close()

    async def test_lapsed_claimer_cannot_overwrite_new_claim(self, any_store):
        await any_store.initialize()
        record = _record(-60)
        await any_store.create(record)
        stale = await any_store.claim(record.id, NOW - timedelta(minutes=30))
        assert await any_store.release_stale(NOW, timedelta(minutes=10)) == 1
        fresh = await any_store.claim(record.id, NOW)
        assert fresh.claim_token != stale.claim_token

        late = stale.rescheduled(DispatchOutcome(1, 0, 1), NOW, NOW + timedelta(days=1))
        assert await any_store.finish(late) is False
        assert await any_store.release(record.id, stale.claim_token) is False
        assert (await any_store.get(record.id)).status is NotificationStatus.PROCESSING

        done = fresh.delivered(DispatchOutcome(1, 0, 1), NOW)
        assert await any_store.finish(done) is True
        loaded = await any_store.get(record.id)
        assert loaded.status is NotificationStatus.SENT
        assert loaded.claim_token is None
        await any_store.close()

    async def test_list_pending_sorted(self, any_store):
        await any_store.initialize()
        later = _record(+30)
        sooner = _record(+10)
        await any_store.create(later)
        await any_store.create(sooner)
        assert [r.id for r in await any_store.list_pending()] == [sooner.id, later.id]
        await any_store.close()

    async def test_history_newest_first(self, any_store):
        await any_store.initialize()
        content = NotificationContent("Hi", "There")
        old = DispatchHistoryRecord.from_outcome(content, "all", DispatchOutcome(1, 0, 1), NOW)
        new = DispatchHistoryRecord.from_outcome(
            content, "user:u1", DispatchOutcome(0, 1, 1), NOW + timedelta(hours=1), "abc"
        )
        await any_store.append_history(old)
        await any_store.append_history(new)

        history = await any_store.list_history()
        assert [h.id for h in history] == [new.id, old.id]
        assert history[0].source_notification_id == "abc"
        assert len(await any_store.list_history(limit=1)) == 1
        await any_store.close()
