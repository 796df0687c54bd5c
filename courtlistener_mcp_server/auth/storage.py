"""
Key-value storage for authorization codes and tokens.

The authorization server only talks to the ``StorageBackend`` protocol, so the
process-local ``InMemoryStorage`` (single instance deployments) can be swapped
for ``SQLiteStorage`` or a networked store without touching grant logic.

Values are opaque strings (JSON documents). Every backend must implement
``take`` as an atomic get-and-delete: when two tasks take the same key
concurrently exactly one of them receives the value. Single-use codes and
refresh-token rotation rely on this.
"""

import logging
import os
import time
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import aiosqlite
import anyio
from anyio.abc import TaskStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class StorageBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    async def take(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def cleanup_expired(self) -> int: ...


class InMemoryStorage:
    """Dict-backed storage with per-key TTL.

    Expired entries are dropped when read and by ``cleanup_expired``.
    """

    def __init__(self):
        # key -> (value, expires_at or None)
        self._entries: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.time() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = time.time() + ttl if ttl is not None else None
        self._entries[key] = (value, expires_at)

    async def take(self, key: str) -> Optional[str]:
        # No await between lookup and removal, so this cannot interleave
        value = self._live(key)
        if value is not None:
            del self._entries[key]
        return value

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def cleanup_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = time.time()
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteStorage:
    """Persistent storage in a single SQLite table.

    Tokens are stored under hashed keys and the values hold no raw secrets,
    so the database does not need encryption at rest.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False

    async def initialize(self) -> None:
        """Create the schema on first use."""
        if self._initialized:
            return

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_auth_kv_expires ON auth_kv(expires_at)"
            )
            await db.commit()

        if Path(self.db_path).exists():
            os.chmod(self.db_path, 0o600)

        self._initialized = True
        logger.info(f"Initialized auth storage at {self.db_path}")

    async def get(self, key: str) -> Optional[str]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT value FROM auth_kv WHERE key = ? "
                "AND (expires_at IS NULL OR expires_at > ?)",
                (key, time.time()),
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        await self.initialize()
        expires_at = time.time() + ttl if ttl is not None else None
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO auth_kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, expires_at),
            )
            await db.commit()

    async def take(self, key: str) -> Optional[str]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            # A single DELETE ... RETURNING is atomic across connections
            async with db.execute(
                "DELETE FROM auth_kv WHERE key = ? RETURNING value, expires_at",
                (key,),
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()

        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and expires_at <= time.time():
            return None
        return value

    async def delete(self, key: str) -> None:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM auth_kv WHERE key = ?", (key,))
            await db.commit()

    async def cleanup_expired(self) -> int:
        """Remove expired rows.

        Returns:
            Number of rows removed
        """
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM auth_kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (time.time(),),
            )
            await db.commit()
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired auth storage entries")
        return deleted


def create_storage(db_path: Optional[str] = None) -> StorageBackend:
    """Build the configured backend: SQLite when a path is given, memory otherwise."""
    if db_path:
        logger.info(f"Using SQLite auth storage: {db_path}")
        return SQLiteStorage(db_path)
    logger.info("Using in-memory auth storage (single-process only)")
    return InMemoryStorage()


async def cleanup_task(
    storage: StorageBackend,
    shutdown_event: anyio.Event,
    interval: float,
    *,
    task_status: TaskStatus = anyio.TASK_STATUS_IGNORED,
) -> None:
    """
    Periodically remove expired codes and tokens until shutdown.

    Unredeemed codes and rotated refresh tokens are otherwise only dropped
    when the same key is read again.

    Args:
        storage: Backend to sweep
        shutdown_event: Event signaling shutdown
        interval: Seconds between sweeps
        task_status: Status object for signaling task readiness
    """
    logger.info(f"Token cleanup task started (interval: {interval}s)")
    task_status.started()

    while not shutdown_event.is_set():
        with anyio.move_on_after(interval):
            await shutdown_event.wait()
        if shutdown_event.is_set():
            break

        try:
            removed = await storage.cleanup_expired()
        except Exception as e:
            logger.error(f"Token cleanup failed: {e}", exc_info=True)
            continue
        logger.debug(f"Token cleanup removed {removed} expired entries")

    logger.info("Token cleanup task stopped")
