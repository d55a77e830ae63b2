"""
保留書き込みキュー - リモート書き込みに失敗したイベントを次回の同期で再送する
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

import aiosqlite

from ...core.errors import TransportError
from ...core.models import Event, parse_datetime, to_iso, utcnow

logger = logging.getLogger(__name__)


class PendingOperation(Enum):
    """保留された操作"""
    SAVE = "save"
    UPDATE = "update"


@dataclass
class PendingWrite:
    """保留中のリモート書き込み"""
    id: int
    user_id: str
    event: Event
    operation: PendingOperation
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    updated_at: datetime


class PendingWriteQueue:
    """保留書き込みキュー（ユーザー×イベントごとに1件へ集約）"""

    def __init__(self, database_path: Union[str, Path] = "data/offline_cache.db"):
        self.database_path = Path(database_path)
        self._initialized = False

    async def initialize(self) -> bool:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        pending_table_sql = """
        CREATE TABLE IF NOT EXISTS pending_writes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            operation TEXT NOT NULL,
            payload TEXT NOT NULL,
            attempts INTEGER DEFAULT 0,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, event_id)
        )
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(pending_table_sql)
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_pending_writes_user ON pending_writes(user_id)"
                )
                await db.commit()
        except sqlite3.Error as e:
            raise TransportError(f"Failed to initialize pending queue: {e}", operation="queue_init") from e

        self._initialized = True
        return True

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    async def enqueue(self, user_id: str, event: Event, operation: PendingOperation) -> None:
        """書き込みをキューに追加（同じイベントの既存エントリは最新の内容で置き換え）"""
        await self._ensure_initialized()
        now = to_iso(utcnow())
        sql = """
        INSERT INTO pending_writes (user_id, event_id, operation, payload, attempts, created_at, updated_at)
        VALUES (?, ?, ?, ?, 0, ?, ?)
        ON CONFLICT(user_id, event_id) DO UPDATE SET
            payload = excluded.payload,
            updated_at = excluded.updated_at
        """
        # SAVE のまま UPDATE が重なっても操作種別は最初のものを維持する
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (
                    user_id, event.id, operation.value,
                    json.dumps(event.to_document(), ensure_ascii=False),
                    now, now
                ))
                await db.commit()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="queue_enqueue") from e

        logger.info(f"Queued {operation.value} of event {event.id} for next sync")

    async def list_pending(self, user_id: str) -> List[PendingWrite]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM pending_writes WHERE user_id = ? ORDER BY id ASC",
                    (user_id,)
                )
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="queue_list") from e

        return [
            PendingWrite(
                id=row['id'],
                user_id=row['user_id'],
                event=Event.from_document(json.loads(row['payload'])),
                operation=PendingOperation(row['operation']),
                attempts=row['attempts'],
                last_error=row['last_error'],
                created_at=parse_datetime(row['created_at']),
                updated_at=parse_datetime(row['updated_at']),
            )
            for row in rows
        ]

    async def find(self, user_id: str, event_id: str) -> Optional[PendingWrite]:
        """保留中の書き込みを取得"""
        for pending in await self.list_pending(user_id):
            if pending.event.id == event_id:
                return pending
        return None

    async def discard(self, user_id: str, event_id: str) -> None:
        await self._execute(
            "DELETE FROM pending_writes WHERE user_id = ? AND event_id = ?",
            (user_id, event_id),
            "queue_discard"
        )

    async def mark_done(self, pending_id: int) -> None:
        await self._execute("DELETE FROM pending_writes WHERE id = ?", (pending_id,), "queue_done")

    async def mark_failed(self, pending_id: int, error: str) -> None:
        await self._execute(
            "UPDATE pending_writes SET attempts = attempts + 1, last_error = ?, updated_at = ? WHERE id = ?",
            (error, to_iso(utcnow()), pending_id),
            "queue_failed"
        )

    async def count(self, user_id: Optional[str] = None) -> int:
        await self._ensure_initialized()
        if user_id:
            sql, params = "SELECT COUNT(*) FROM pending_writes WHERE user_id = ?", (user_id,)
        else:
            sql, params = "SELECT COUNT(*) FROM pending_writes", ()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(sql, params)
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="queue_count") from e
        return row[0]

    async def _execute(self, sql: str, params: tuple, operation: str):
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, params)
                await db.commit()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation=operation) from e
