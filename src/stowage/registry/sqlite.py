"""SQLite-backed registry store for Stowage.

Implements the RegistryStore protocol using aiosqlite for async access.
All tables use CREATE TABLE IF NOT EXISTS for schema idempotency.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1


def _now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _bucket_row(row: aiosqlite.Row) -> dict[str, Any]:
    result = dict(row)
    result["is_private"] = bool(result["is_private"])
    return result


class SQLiteRegistryStore:
    """Registry store backed by a local SQLite database.

    Attributes:
        db_path: Path to the SQLite database file.
        _db: The aiosqlite connection, set after init_db().
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the SQLite registry store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Use ':memory:' for an in-memory database (useful in tests).
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def init_db(self) -> None:
        """Open the database and create tables if they do not exist.

        Sets WAL journal mode, NORMAL synchronous, enables foreign keys,
        and sets a 5-second busy timeout. Idempotent.
        """
        if self._db is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row

            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute("PRAGMA synchronous = NORMAL")
            await self._db.execute("PRAGMA foreign_keys = ON")
            await self._db.execute("PRAGMA busy_timeout = 5000")

        await self._create_tables()

    async def _create_tables(self) -> None:
        """Create all tables and indexes if they do not already exist."""
        assert self._db is not None

        async with self._db.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='schema_version'"
        ) as cursor:
            if await cursor.fetchone() is not None:
                return

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS buckets (
                id                    INTEGER PRIMARY KEY AUTOINCREMENT,
                name                  TEXT NOT NULL,
                provider              TEXT NOT NULL,
                region                TEXT NOT NULL,
                endpoint              TEXT NOT NULL,
                access_key_encrypted  TEXT NOT NULL,
                secret_key_encrypted  TEXT NOT NULL,
                total_capacity_gb     REAL,
                storage_used_bytes    INTEGER NOT NULL DEFAULT 0,
                is_private            INTEGER NOT NULL DEFAULT 0,
                cdn_url               TEXT,
                created_at            TEXT NOT NULL,
                updated_at            TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS files (
                file_id       TEXT PRIMARY KEY,
                bucket_id     INTEGER NOT NULL,
                key           TEXT NOT NULL,
                file_name     TEXT NOT NULL,
                content_type  TEXT NOT NULL DEFAULT 'application/octet-stream',
                size_bytes    INTEGER,
                upload_id     TEXT,
                status        TEXT NOT NULL DEFAULT 'pending',
                final_url     TEXT NOT NULL DEFAULT '',
                created_at    TEXT NOT NULL,
                completed_at  TEXT,

                FOREIGN KEY (bucket_id) REFERENCES buckets(id)
            );

            CREATE INDEX IF NOT EXISTS idx_files_bucket
                ON files(bucket_id);

            CREATE TABLE IF NOT EXISTS schema_version (
                version    INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );
        """)

        await self._db.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (_SCHEMA_VERSION, _now_iso()),
        )
        await self._db.commit()
        logger.debug("Registry schema created at %s", self.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def ping(self) -> None:
        if self._db is None:
            raise RuntimeError("database connection closed")
        async with self._db.execute("SELECT 1") as cursor:
            await cursor.fetchone()

    # -- Bucket operations -----------------------------------------------------

    async def insert_bucket(
        self,
        name: str,
        provider: str,
        region: str,
        endpoint: str,
        access_key_encrypted: str,
        secret_key_encrypted: str,
        total_capacity_gb: float | None = None,
        is_private: bool = False,
        cdn_url: str | None = None,
    ) -> dict[str, Any]:
        assert self._db is not None
        now = _now_iso()
        cursor = await self._db.execute(
            """INSERT INTO buckets (name, provider, region, endpoint,
                   access_key_encrypted, secret_key_encrypted, total_capacity_gb,
                   storage_used_bytes, is_private, cdn_url, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
            (
                name,
                provider,
                region,
                endpoint,
                access_key_encrypted,
                secret_key_encrypted,
                total_capacity_gb,
                1 if is_private else 0,
                cdn_url,
                now,
                now,
            ),
        )
        bucket_id = cursor.lastrowid
        await cursor.close()
        await self._db.commit()
        row = await self.get_bucket(bucket_id)
        assert row is not None
        return row

    async def get_bucket(self, bucket_id: int) -> dict[str, Any] | None:
        assert self._db is not None
        async with self._db.execute("SELECT * FROM buckets WHERE id = ?", (bucket_id,)) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return _bucket_row(row)

    async def list_buckets(self) -> list[dict[str, Any]]:
        assert self._db is not None
        async with self._db.execute("SELECT * FROM buckets ORDER BY id") as cursor:
            rows = await cursor.fetchall()
            return [_bucket_row(row) for row in rows]

    async def update_bucket_secrets(
        self, bucket_id: int, access_key_encrypted: str, secret_key_encrypted: str
    ) -> bool:
        assert self._db is not None
        cursor = await self._db.execute(
            """UPDATE buckets
               SET access_key_encrypted = ?, secret_key_encrypted = ?, updated_at = ?
               WHERE id = ?""",
            (access_key_encrypted, secret_key_encrypted, _now_iso(), bucket_id),
        )
        updated = cursor.rowcount > 0
        await cursor.close()
        await self._db.commit()
        return updated

    async def update_bucket_usage(self, bucket_id: int, storage_used_bytes: int) -> bool:
        assert self._db is not None
        cursor = await self._db.execute(
            "UPDATE buckets SET storage_used_bytes = ?, updated_at = ? WHERE id = ?",
            (storage_used_bytes, _now_iso(), bucket_id),
        )
        updated = cursor.rowcount > 0
        await cursor.close()
        await self._db.commit()
        return updated

    # -- File catalog ------------------------------------------------------------

    async def create_file(
        self,
        file_id: str,
        bucket_id: int,
        key: str,
        file_name: str,
        content_type: str,
        final_url: str,
        upload_id: str | None = None,
    ) -> dict[str, Any]:
        assert self._db is not None
        await self._db.execute(
            """INSERT INTO files (file_id, bucket_id, key, file_name, content_type,
                   upload_id, status, final_url, created_at)
               VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
            (file_id, bucket_id, key, file_name, content_type, upload_id, final_url, _now_iso()),
        )
        await self._db.commit()
        row = await self.get_file(file_id)
        assert row is not None
        return row

    async def get_file(self, file_id: str) -> dict[str, Any] | None:
        assert self._db is not None
        async with self._db.execute("SELECT * FROM files WHERE file_id = ?", (file_id,)) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row is not None else None

    async def complete_file(
        self,
        file_id: str,
        size_bytes: int,
        content_type: str,
        final_url: str,
    ) -> dict[str, Any] | None:
        assert self._db is not None
        await self._db.execute(
            """UPDATE files
               SET status = 'complete', size_bytes = ?, content_type = ?,
                   final_url = ?, completed_at = ?
               WHERE file_id = ? AND status = 'pending'""",
            (size_bytes, content_type, final_url, _now_iso(), file_id),
        )
        await self._db.commit()
        return await self.get_file(file_id)
