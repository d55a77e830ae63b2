"""
リモートドキュメントストア - コレクション/ドキュメント形式の共有ストア
SQLite（aiosqlite）によるJSONドキュメント永続化アダプター
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite

from ...core.errors import NotFound, TransportError
from ...core.models import to_iso, utcnow

logger = logging.getLogger(__name__)


class Collections:
    """リモートコレクション名"""
    EVENTS = "events"
    INVITATIONS = "invitations"
    SHARED_CALENDARS = "sharedCalendars"
    USER_PHONES = "userPhones"
    USERS = "users"


class RemoteStore(ABC):
    """リモートストア抽象基底クラス

    結果整合・トランザクションなしを前提とする。通信障害は TransportError。
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """ドキュメントを丸ごと置き換え（なければ作成）"""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """既存ドキュメントにフィールドをマージ（なければ NotFound）"""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """削除できた場合 True"""

    @abstractmethod
    async def query_events(self, owner_id: str,
                           start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """所有者の開始・終了がともに期間内のイベント"""

    @abstractmethod
    async def list_documents(self, collection: str) -> List[Dict[str, Any]]:
        pass


class SQLiteDocumentStore(RemoteStore):
    """SQLiteによるドキュメントストア"""

    def __init__(self, database_path: Union[str, Path] = "data/remote.db"):
        self.database_path = Path(database_path)
        self._initialized = False

    async def initialize(self) -> bool:
        """データベース初期化"""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        documents_table_sql = """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            doc_id TEXT NOT NULL,
            data TEXT NOT NULL,
            owner_id TEXT,
            start_time TEXT,
            end_time TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (collection, doc_id)
        )
        """
        indexes_sql = [
            "CREATE INDEX IF NOT EXISTS idx_documents_owner_start "
            "ON documents(collection, owner_id, start_time)",
        ]

        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(documents_table_sql)
                for index_sql in indexes_sql:
                    await db.execute(index_sql)
                await db.commit()
        except sqlite3.Error as e:
            raise TransportError(f"Failed to initialize remote store: {e}", operation="remote_init") from e

        self._initialized = True
        logger.info(f"Remote document store initialized: {self.database_path}")
        return True

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id)
                )
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation=f"remote_get {collection}/{doc_id}") from e

        return json.loads(row['data']) if row else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self._ensure_initialized()
        sql = """
        INSERT INTO documents (collection, doc_id, data, owner_id, start_time, end_time, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(collection, doc_id) DO UPDATE SET
            data = excluded.data,
            owner_id = excluded.owner_id,
            start_time = excluded.start_time,
            end_time = excluded.end_time,
            updated_at = excluded.updated_at
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                await db.execute(sql, (
                    collection, doc_id,
                    json.dumps(data, ensure_ascii=False, default=str),
                    data.get('ownerId'),
                    data.get('startTime'),
                    data.get('endTime'),
                    to_iso(utcnow()),
                ))
                await db.commit()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation=f"remote_set {collection}/{doc_id}") from e

        logger.debug(f"Document stored: {collection}/{doc_id}")

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        existing = await self.get(collection, doc_id)
        if existing is None:
            raise NotFound(f"Document {collection}/{doc_id} not found", operation="remote_update")
        await self.set(collection, doc_id, {**existing, **fields})

    async def delete(self, collection: str, doc_id: str) -> bool:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                cursor = await db.execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id)
                )
                await db.commit()
                deleted = cursor.rowcount > 0
        except sqlite3.Error as e:
            raise TransportError(str(e), operation=f"remote_delete {collection}/{doc_id}") from e

        logger.debug(f"Document deleted: {collection}/{doc_id} ({deleted})")
        return deleted

    async def query_events(self, owner_id: str,
                           start: datetime, end: datetime) -> List[Dict[str, Any]]:
        await self._ensure_initialized()
        sql = """
        SELECT data FROM documents
        WHERE collection = ? AND owner_id = ? AND start_time >= ? AND end_time <= ?
        ORDER BY start_time ASC
        """
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, (Collections.EVENTS, owner_id, to_iso(start), to_iso(end)))
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation="remote_query_events") from e

        logger.debug(f"Retrieved {len(rows)} remote events for {owner_id}")
        return [json.loads(row['data']) for row in rows]

    async def list_documents(self, collection: str) -> List[Dict[str, Any]]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.database_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT data FROM documents WHERE collection = ? ORDER BY doc_id",
                    (collection,)
                )
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise TransportError(str(e), operation=f"remote_list {collection}") from e

        return [json.loads(row['data']) for row in rows]
