"""Async Data Access Layer for the KV_STORE table.

The widget keeps a handful of small string values on the client: the
resumable session record per (company, agent) and composer drafts per
(session, kind). `KeyValueDAL` is the persistent storage those features
read and write.
"""

from __future__ import annotations

from typing import List, Optional

from utils.database_init import AsyncDatabaseInitializer


class KeyValueDAL:
    """Data access layer for string values keyed by string.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def get(self, key: str) -> Optional[str]:
        """Return the stored value for `key`, or None if missing."""
        async with self._db.connection() as conn:
            cur = await conn.execute("SELECT value FROM KV_STORE WHERE key = ?", (key,))
            row = await cur.fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        """Insert or overwrite `key`."""
        async with self._db.connection() as conn:
            await conn.execute(
                "INSERT INTO KV_STORE (key, value, updated_at) VALUES (?, ?, datetime('now')) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, value),
            )
            await conn.commit()

    async def delete(self, key: str) -> bool:
        """Delete `key`. Returns True if a row was deleted."""
        async with self._db.connection() as conn:
            await conn.execute("DELETE FROM KV_STORE WHERE key = ?", (key,))
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return bool(changed and changed[0] > 0)

    async def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with `prefix`, sorted."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT key FROM KV_STORE WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (f"{escaped}%",),
            )
            rows = await cur.fetchall()
            return [row[0] for row in rows]
