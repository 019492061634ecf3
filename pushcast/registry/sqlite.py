"""
SQLite token registry.

Uses aiosqlite for async SQLite access.
WAL mode enabled for concurrent read support.

Table: device_tokens
    id         TEXT  PK
    token      TEXT  (indexed, not unique)
    owner_id   TEXT  NULL (indexed)
    platform   TEXT  NULL
    created_at INT
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from pushcast.core.errors import StorageError
from pushcast.registry.base import DeviceToken, TokenRegistry

logger = logging.getLogger(__name__)

_COLUMNS = "id, token, owner_id, platform, created_at"


class SQLiteTokenRegistry(TokenRegistry):
    """
    SQLite-backed registry.

    Usage:
        registry = SQLiteTokenRegistry("~/.pushcast/tokens.db")
        await registry.initialize()

        await registry.register("fcm-token", owner_id="u1")
        tokens = await registry.tokens_for_owner("u1")
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Initialize the database and create tables."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self._db_path))
            self._db.row_factory = aiosqlite.Row

            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")

            await self._db.execute(
                """
                CREATE TABLE IF NOT EXISTS device_tokens (
                    id         TEXT PRIMARY KEY,
                    token      TEXT NOT NULL,
                    owner_id   TEXT,
                    platform   TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_tokens_token ON device_tokens(token)"
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_tokens_owner ON device_tokens(owner_id)"
            )

            await self._db.commit()
            logger.debug(f"Token registry initialized at {self._db_path}")

        except Exception as e:
            raise StorageError(f"Failed to initialize SQLite at {self._db_path}: {e}")

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    async def register(
        self, token: str, owner_id: str | None = None, platform: str | None = None
    ) -> DeviceToken:
        db = await self._ensure_db()
        record = DeviceToken(token=token, owner_id=owner_id, platform=platform)
        try:
            await db.execute(
                f"INSERT INTO device_tokens ({_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                (record.id, record.token, record.owner_id, record.platform, record.created_at),
            )
            await db.commit()
        except Exception as e:
            raise StorageError(f"Failed to register token: {e}")
        return record

    async def all_tokens(self) -> list[DeviceToken]:
        return await self._select("", ())

    async def tokens_for_owner(self, owner_id: str) -> list[DeviceToken]:
        return await self._select("WHERE owner_id = ?", (owner_id,))

    async def find_by_token(self, token: str) -> list[DeviceToken]:
        return await self._select("WHERE token = ?", (token,))

    async def delete(self, record: DeviceToken) -> bool:
        db = await self._ensure_db()
        try:
            cursor = await db.execute("DELETE FROM device_tokens WHERE id = ?", (record.id,))
            await db.commit()
            return cursor.rowcount > 0
        except Exception as e:
            raise StorageError(f"Failed to delete token record '{record.id}': {e}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _select(self, where: str, params: tuple) -> list[DeviceToken]:
        db = await self._ensure_db()
        try:
            async with db.execute(
                f"SELECT {_COLUMNS} FROM device_tokens {where} ORDER BY created_at, rowid",
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            raise StorageError(f"Failed to query device tokens: {e}")
        return [DeviceToken(**dict(row)) for row in rows]
