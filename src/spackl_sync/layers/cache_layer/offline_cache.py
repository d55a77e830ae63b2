"""
オフラインキャッシュ - 最後に成功した同期結果の月別スナップショット
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

import aiosqlite

from ...core.errors import TransportError
from ...core.models import Event, month_bucket, parse_datetime, to_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CacheSnapshot:
    """キャッシュされたスナップショット"""
    user_id: str
    bucket: str
    events: List[Event]
    cached_at: datetime


class OfflineCache:
    """ユーザー×月バケット単位のスナップショットストア"""

    def __init__(self, database_path: Union[str, Path] = "data/offline_cache.db"):
        self.database_path = Path(database_path)
        self._initialized = False

    async def initialize(self) -> bool:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        snapshots_table_sql = """
        CREATE TABLE IF NOT EXISTS snapshots (
            user_id TEXT NOT NULL,
            bucket TEXT NOT NULL,
            events TEXT NOT NULL,
            event_count INTEGER NOT NULL,
            cached_at TEXT NOT NULL,
            PRIMARY KEY (user_id, bucket)
        )
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(snapshots_table_sql)
                await db.commit()
        except sqlite3.Error as e:
            raise TransportError(f"Failed to initialize offline cache: {e}", operation="cache_init") from e

        self._initialized = True
        logger.info(f"Offline cache initialized: {self.database_path}")
        return True

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    async def store_snapshot(self, user_id: str, events: List[Event],
                             bucket: Optional[str] = None,
                             cached_at: Optional[datetime] = None) -> str:
        """スナップショットを保存（同じバケットは置き換え）"""
        await self._ensure_initialized()
        cached_at = cached_at or utcnow()
        bucket = bucket or month_bucket(cached_at)

        payload = json.dumps([e.to_document() for e in events], ensure_ascii=False)
        sql = """
        INSERT INTO snapshots (user_id, bucket, events, event_count, cached_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(user_id, bucket) DO UPDATE SET
            events = excluded.events,
            event_count = excluded.event_count,
            cached_at = excluded.cached_at
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (user_id, bucket, payload, len(events), to_iso(cached_at)))
                await db.commit()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="cache_store") from e

        logger.debug(f"Cached {len(events)} events for {user_id} in bucket {bucket}")
        return bucket

    async def load_snapshot(self, user_id: str, bucket: Optional[str] = None) -> Optional[CacheSnapshot]:
        """スナップショット取得（バケット未指定時は最新）"""
        await self._ensure_initialized()
        if bucket:
            sql = "SELECT * FROM snapshots WHERE user_id = ? AND bucket = ?"
            params = (user_id, bucket)
        else:
            sql = "SELECT * FROM snapshots WHERE user_id = ? ORDER BY cached_at DESC LIMIT 1"
            params = (user_id,)

        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="cache_load") from e

        if row is None:
            return None

        return CacheSnapshot(
            user_id=row['user_id'],
            bucket=row['bucket'],
            events=[Event.from_document(d) for d in json.loads(row['events'])],
            cached_at=parse_datetime(row['cached_at']),
        )

    async def list_buckets(self, user_id: str) -> List[str]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(
                    "SELECT bucket FROM snapshots WHERE user_id = ? ORDER BY bucket DESC",
                    (user_id,)
                )
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="cache_list") from e

        return [row[0] for row in rows]

    async def cleanup(self, retention_buckets: int) -> int:
        """ユーザーごとに新しい順で retention_buckets 個だけ残して削除"""
        await self._ensure_initialized()
        sql = """
        DELETE FROM snapshots WHERE rowid IN (
            SELECT rowid FROM (
                SELECT rowid, ROW_NUMBER() OVER (
                    PARTITION BY user_id ORDER BY bucket DESC
                ) AS rn
                FROM snapshots
            ) WHERE rn > ?
        )
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(sql, (max(retention_buckets, 0),))
                await db.commit()
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="cache_cleanup") from e

        logger.info(f"Offline cache cleanup removed {deleted} snapshots")
        return deleted
