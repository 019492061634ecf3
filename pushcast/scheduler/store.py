"""
NotificationStore - persistence for scheduled notifications and the
dispatch history.

Two collections:
    scheduled_notifications  keyed by id, indexed by (status, scheduled_time)
    dispatch_history         append-only, indexed by sent_at DESC

Claim discipline: `claim()` is a compare-and-swap from a due `pending`
row to `processing` that hands out a fresh claim token. `renew()`,
`finish()` and `release()` only act while that token still holds the
row. Overlapping ticks therefore can't both dispatch the same due
instant, and a cancel issued mid-dispatch is not overwritten. A claimer
whose lease lapsed can't clobber a row someone else re-claimed.

Implementations:
    SQLiteNotificationStore - file-based, default
    InMemoryNotificationStore - for testing
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Collection

from pushcast.core.errors import StorageError
from pushcast.notifications.base import NotificationContent, RecurrenceRule
from pushcast.scheduler.notification import (
    DispatchHistoryRecord,
    NotificationStatus,
    ScheduledNotification,
)

logger = logging.getLogger(__name__)

_PENDING = NotificationStatus.PENDING
_PROCESSING = NotificationStatus.PROCESSING


class NotificationStore(ABC):
    """Abstract store. Every method is an I/O boundary."""

    async def initialize(self) -> None:
        return None

    @abstractmethod
    async def create(self, record: ScheduledNotification) -> None:
        ...

    @abstractmethod
    async def get(self, notification_id: str) -> ScheduledNotification | None:
        ...

    @abstractmethod
    async def query_due(self, now: datetime) -> list[ScheduledNotification]:
        """Pending records with scheduled_time <= now."""
        ...

    @abstractmethod
    async def claim(
        self, notification_id: str, now: datetime
    ) -> ScheduledNotification | None:
        """
        Move a due pending record to processing. None if someone else won.

        The returned record carries a fresh claim_token; finish, renew and
        release only act while that token still holds the record.
        """
        ...

    @abstractmethod
    async def renew(self, notification_id: str, claim_token: str, now: datetime) -> bool:
        """Push the claim's lease forward. False if the claim was lost."""
        ...

    @abstractmethod
    async def finish(self, record: ScheduledNotification) -> bool:
        """Persist the end state of a claimed record. False if no longer claimed."""
        ...

    @abstractmethod
    async def release(self, notification_id: str, claim_token: str | None = None) -> bool:
        """Return a claimed record to pending, untouched."""
        ...

    @abstractmethod
    async def release_stale(
        self, now: datetime, lease: timedelta, keep: Collection[str] = ()
    ) -> int:
        """
        Release claims not renewed within `lease` (the claimer died
        mid-dispatch). Ids in `keep` are still being worked on by the
        caller and are never released.
        """
        ...

    @abstractmethod
    async def cancel(self, notification_id: str, at: datetime) -> bool:
        ...

    @abstractmethod
    async def list_pending(self) -> list[ScheduledNotification]:
        """Pending records, soonest first."""
        ...

    @abstractmethod
    async def append_history(self, record: DispatchHistoryRecord) -> None:
        ...

    @abstractmethod
    async def list_history(self, limit: int = 50) -> list[DispatchHistoryRecord]:
        """Most recent first."""
        ...

    async def close(self) -> None:
        return None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# In-memory
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class InMemoryNotificationStore(NotificationStore):
    """
    Dict-backed store for tests. A single asyncio.Lock serialises every
    read-modify-write, which is enough for one event loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, ScheduledNotification] = {}
        self._claimed_at: dict[str, datetime] = {}
        self._history: list[DispatchHistoryRecord] = []
        self._lock = asyncio.Lock()

    async def create(self, record: ScheduledNotification) -> None:
        self._records[record.id] = record

    async def get(self, notification_id: str) -> ScheduledNotification | None:
        return self._records.get(notification_id)

    async def query_due(self, now: datetime) -> list[ScheduledNotification]:
        return [
            r
            for r in self._records.values()
            if r.status is _PENDING and r.scheduled_time <= now
        ]

    async def claim(
        self, notification_id: str, now: datetime
    ) -> ScheduledNotification | None:
        async with self._lock:
            record = self._records.get(notification_id)
            if record is None or record.status is not _PENDING or record.scheduled_time > now:
                return None
            claimed = replace(record, status=_PROCESSING, claim_token=uuid.uuid4().hex)
            self._records[notification_id] = claimed
            self._claimed_at[notification_id] = now
            return claimed

    async def renew(self, notification_id: str, claim_token: str, now: datetime) -> bool:
        async with self._lock:
            if not self._holds(notification_id, claim_token):
                return False
            self._claimed_at[notification_id] = now
            return True

    async def finish(self, record: ScheduledNotification) -> bool:
        async with self._lock:
            if not self._holds(record.id, record.claim_token):
                return False
            self._records[record.id] = replace(record, claim_token=None)
            self._claimed_at.pop(record.id, None)
            return True

    async def release(self, notification_id: str, claim_token: str | None = None) -> bool:
        async with self._lock:
            current = self._records.get(notification_id)
            if current is None or current.status is not _PROCESSING:
                return False
            if claim_token is not None and current.claim_token != claim_token:
                return False
            self._records[notification_id] = replace(
                current, status=_PENDING, claim_token=None
            )
            self._claimed_at.pop(notification_id, None)
            return True

    async def release_stale(
        self, now: datetime, lease: timedelta, keep: Collection[str] = ()
    ) -> int:
        released = 0
        async with self._lock:
            for notification_id, at in list(self._claimed_at.items()):
                if at > now - lease or notification_id in keep:
                    continue
                current = self._records[notification_id]
                self._records[notification_id] = replace(
                    current, status=_PENDING, claim_token=None
                )
                del self._claimed_at[notification_id]
                released += 1
        return released

    async def cancel(self, notification_id: str, at: datetime) -> bool:
        async with self._lock:
            current = self._records.get(notification_id)
            if current is None or current.status not in (_PENDING, _PROCESSING):
                return False
            self._records[notification_id] = replace(
                current,
                status=NotificationStatus.CANCELLED,
                cancelled_at=at,
                claim_token=None,
            )
            self._claimed_at.pop(notification_id, None)
            return True

    def _holds(self, notification_id: str, claim_token: str | None) -> bool:
        current = self._records.get(notification_id)
        return (
            current is not None
            and current.status is _PROCESSING
            and claim_token is not None
            and current.claim_token == claim_token
        )

    async def list_pending(self) -> list[ScheduledNotification]:
        pending = [r for r in self._records.values() if r.status is _PENDING]
        return sorted(pending, key=lambda r: r.scheduled_time)

    async def append_history(self, record: DispatchHistoryRecord) -> None:
        self._history.append(record)

    async def list_history(self, limit: int = 50) -> list[DispatchHistoryRecord]:
        return sorted(self._history, key=lambda h: h.sent_at, reverse=True)[:limit]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SQLite
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_us(moment: datetime | None) -> int | None:
    """Exact integer microseconds since the epoch (no float rounding)."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(microseconds=1)


def _from_us(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _EPOCH + timedelta(microseconds=value)


class SQLiteNotificationStore(NotificationStore):
    """
    Thread-safe SQLite store. All blocking ops run in the default executor
    behind one lock, so every read-modify-write is single-writer.

    Usage:
        store = SQLiteNotificationStore()
        await store.initialize()

        await store.create(record)
        due = await store.query_due(now)
        claimed = await store.claim(due[0].id, now)
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = (db_path or (Path.home() / ".pushcast" / "pushcast.db")).expanduser()
        self._db: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._locked, fn, *args)
        except StorageError:
            raise
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"SQLite operation {fn.__name__} failed: {e}") from e

    def _locked(self, fn, *args):
        with self._lock:
            return fn(*args)

    async def initialize(self) -> None:
        await self._run(self._init_sync)

    def _init_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = self._get_db()
        db.execute("PRAGMA journal_mode=WAL")
        db.executescript("""
            CREATE TABLE IF NOT EXISTS scheduled_notifications (
                id              TEXT PRIMARY KEY,
                content         TEXT NOT NULL,
                scheduled_time  INTEGER NOT NULL,
                status          TEXT NOT NULL,
                recurrence      TEXT,
                target_user_id  TEXT,
                last_error      TEXT,
                success_count   INTEGER,
                failure_count   INTEGER,
                created_at      INTEGER NOT NULL,
                sent_at         INTEGER,
                cancelled_at    INTEGER,
                claim_token     TEXT,
                claimed_at      INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_scheduled_status_time
                ON scheduled_notifications(status, scheduled_time);

            CREATE TABLE IF NOT EXISTS dispatch_history (
                id                      TEXT PRIMARY KEY,
                content                 TEXT NOT NULL,
                target                  TEXT NOT NULL,
                sent_at                 INTEGER NOT NULL,
                total_devices           INTEGER NOT NULL,
                success_count           INTEGER NOT NULL,
                failure_count           INTEGER NOT NULL,
                source_notification_id  TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_history_sent_at
                ON dispatch_history(sent_at DESC);
        """)
        db.commit()
        logger.debug(f"NotificationStore initialised at {self._db_path}")

    def _get_db(self) -> sqlite3.Connection:
        if self._db is None:
            db = sqlite3.connect(str(self._db_path), check_same_thread=False)
            db.row_factory = sqlite3.Row
            self._db = db
        return self._db

    # ── Scheduled notifications ──────────────────────────────────────────────

    async def create(self, record: ScheduledNotification) -> None:
        await self._run(self._create_sync, record)

    def _create_sync(self, record: ScheduledNotification) -> None:
        db = self._get_db()
        db.execute(
            """
            INSERT INTO scheduled_notifications (
                id, content, scheduled_time, status, recurrence, target_user_id,
                last_error, success_count, failure_count, created_at, sent_at, cancelled_at
            ) VALUES (
                :id, :content, :scheduled_time, :status, :recurrence, :target_user_id,
                :last_error, :success_count, :failure_count, :created_at, :sent_at, :cancelled_at
            )
            """,
            self._record_params(record),
        )
        db.commit()

    async def get(self, notification_id: str) -> ScheduledNotification | None:
        return await self._run(self._get_sync, notification_id)

    def _get_sync(self, notification_id: str) -> ScheduledNotification | None:
        row = self._get_db().execute(
            "SELECT * FROM scheduled_notifications WHERE id=?", (notification_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    async def query_due(self, now: datetime) -> list[ScheduledNotification]:
        return await self._run(self._query_due_sync, _to_us(now))

    def _query_due_sync(self, now: int) -> list[ScheduledNotification]:
        rows = self._get_db().execute(
            """
            SELECT * FROM scheduled_notifications
            WHERE status=? AND scheduled_time <= ?
            ORDER BY scheduled_time ASC
            """,
            (_PENDING.value, now),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    async def claim(
        self, notification_id: str, now: datetime
    ) -> ScheduledNotification | None:
        return await self._run(
            self._claim_sync, notification_id, uuid.uuid4().hex, _to_us(now)
        )

    def _claim_sync(
        self, notification_id: str, token: str, now: int
    ) -> ScheduledNotification | None:
        db = self._get_db()
        cur = db.execute(
            """
            UPDATE scheduled_notifications SET status=?, claim_token=?, claimed_at=?
            WHERE id=? AND status=? AND scheduled_time <= ?
            """,
            (_PROCESSING.value, token, now, notification_id, _PENDING.value, now),
        )
        db.commit()
        if cur.rowcount != 1:
            return None
        return self._get_sync(notification_id)

    async def renew(self, notification_id: str, claim_token: str, now: datetime) -> bool:
        return await self._run(self._renew_sync, notification_id, claim_token, _to_us(now))

    def _renew_sync(self, notification_id: str, token: str, now: int) -> bool:
        db = self._get_db()
        cur = db.execute(
            """
            UPDATE scheduled_notifications SET claimed_at=?
            WHERE id=? AND status=? AND claim_token=?
            """,
            (now, notification_id, _PROCESSING.value, token),
        )
        db.commit()
        return cur.rowcount == 1

    async def finish(self, record: ScheduledNotification) -> bool:
        if record.claim_token is None:
            return False
        return await self._run(self._finish_sync, record)

    def _finish_sync(self, record: ScheduledNotification) -> bool:
        db = self._get_db()
        params = self._record_params(record)
        params["processing"] = _PROCESSING.value
        params["claim_token"] = record.claim_token
        cur = db.execute(
            """
            UPDATE scheduled_notifications SET
                status=:status, scheduled_time=:scheduled_time, last_error=:last_error,
                success_count=:success_count, failure_count=:failure_count,
                sent_at=:sent_at, claim_token=NULL, claimed_at=NULL
            WHERE id=:id AND status=:processing AND claim_token=:claim_token
            """,
            params,
        )
        db.commit()
        return cur.rowcount == 1

    async def release(self, notification_id: str, claim_token: str | None = None) -> bool:
        return await self._run(self._release_sync, notification_id, claim_token)

    def _release_sync(self, notification_id: str, token: str | None) -> bool:
        db = self._get_db()
        cur = db.execute(
            """
            UPDATE scheduled_notifications SET status=?, claim_token=NULL, claimed_at=NULL
            WHERE id=? AND status=? AND (? IS NULL OR claim_token=?)
            """,
            (_PENDING.value, notification_id, _PROCESSING.value, token, token),
        )
        db.commit()
        return cur.rowcount == 1

    async def release_stale(
        self, now: datetime, lease: timedelta, keep: Collection[str] = ()
    ) -> int:
        return await self._run(self._release_stale_sync, _to_us(now - lease), list(keep))

    def _release_stale_sync(self, cutoff: int, keep: list[str]) -> int:
        db = self._get_db()
        exclude = ""
        if keep:
            exclude = f"AND id NOT IN ({', '.join('?' * len(keep))})"
        cur = db.execute(
            f"""
            UPDATE scheduled_notifications SET status=?, claim_token=NULL, claimed_at=NULL
            WHERE status=? AND claimed_at <= ? {exclude}
            """,
            (_PENDING.value, _PROCESSING.value, cutoff, *keep),
        )
        db.commit()
        return cur.rowcount

    async def cancel(self, notification_id: str, at: datetime) -> bool:
        return await self._run(self._cancel_sync, notification_id, _to_us(at))

    def _cancel_sync(self, notification_id: str, at: int) -> bool:
        db = self._get_db()
        cur = db.execute(
            """
            UPDATE scheduled_notifications
            SET status=?, cancelled_at=?, claim_token=NULL, claimed_at=NULL
            WHERE id=? AND status IN (?, ?)
            """,
            (
                NotificationStatus.CANCELLED.value,
                at,
                notification_id,
                _PENDING.value,
                _PROCESSING.value,
            ),
        )
        db.commit()
        return cur.rowcount == 1

    async def list_pending(self) -> list[ScheduledNotification]:
        return await self._run(self._list_pending_sync)

    def _list_pending_sync(self) -> list[ScheduledNotification]:
        rows = self._get_db().execute(
            "SELECT * FROM scheduled_notifications WHERE status=? ORDER BY scheduled_time ASC",
            (_PENDING.value,),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    # ── History ──────────────────────────────────────────────────────────────

    async def append_history(self, record: DispatchHistoryRecord) -> None:
        await self._run(self._append_history_sync, record)

    def _append_history_sync(self, record: DispatchHistoryRecord) -> None:
        db = self._get_db()
        db.execute(
            """
            INSERT INTO dispatch_history (
                id, content, target, sent_at, total_devices,
                success_count, failure_count, source_notification_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                json.dumps(record.content.to_dict()),
                record.target,
                _to_us(record.sent_at),
                record.total_devices,
                record.success_count,
                record.failure_count,
                record.source_notification_id,
            ),
        )
        db.commit()

    async def list_history(self, limit: int = 50) -> list[DispatchHistoryRecord]:
        return await self._run(self._list_history_sync, limit)

    def _list_history_sync(self, limit: int) -> list[DispatchHistoryRecord]:
        rows = self._get_db().execute(
            "SELECT * FROM dispatch_history ORDER BY sent_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [
            DispatchHistoryRecord(
                id=r["id"],
                content=NotificationContent.from_dict(json.loads(r["content"])),
                target=r["target"],
                sent_at=_from_us(r["sent_at"]),
                total_devices=r["total_devices"],
                success_count=r["success_count"],
                failure_count=r["failure_count"],
                source_notification_id=r["source_notification_id"],
            )
            for r in rows
        ]

    async def close(self) -> None:
        if self._db:
            await self._run(self._db.close)
            self._db = None

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _record_params(record: ScheduledNotification) -> dict[str, Any]:
        return {
            "id": record.id,
            "content": json.dumps(record.content.to_dict()),
            "scheduled_time": _to_us(record.scheduled_time),
            "status": record.status.value,
            "recurrence": json.dumps(record.recurrence.to_dict()) if record.recurrence else None,
            "target_user_id": record.target_user_id,
            "last_error": record.last_error,
            "success_count": record.success_count,
            "failure_count": record.failure_count,
            "created_at": _to_us(record.created_at),
            "sent_at": _to_us(record.sent_at),
            "cancelled_at": _to_us(record.cancelled_at),
        }

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ScheduledNotification:
        return ScheduledNotification(
            id=row["id"],
            content=NotificationContent.from_dict(json.loads(row["content"])),
            scheduled_time=_from_us(row["scheduled_time"]),
            status=NotificationStatus(row["status"]),
            recurrence=(
                RecurrenceRule.from_dict(json.loads(row["recurrence"]))
                if row["recurrence"]
                else None
            ),
            target_user_id=row["target_user_id"],
            last_error=row["last_error"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            created_at=_from_us(row["created_at"]),
            sent_at=_from_us(row["sent_at"]),
            cancelled_at=_from_us(row["cancelled_at"]),
            claim_token=row["claim_token"],
        )
