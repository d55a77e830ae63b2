"""登録ユーザーの電話番号ディレクトリ"""

import logging
from typing import Any, Dict, Optional

from ...core.models import to_iso, utcnow
from ...core.normalize import normalize_phone
from ...utils.concurrency import bounded_call
from ..providers.remote_store import Collections, RemoteStore

logger = logging.getLogger(__name__)


class UserDirectory:
    """userPhones コレクション（正規化電話番号 → ユーザー）"""

    def __init__(self, remote: RemoteStore, call_timeout: float = 15.0):
        self.remote = remote
        self.call_timeout = call_timeout

    async def lookup(self, phone: str) -> Optional[Dict[str, Any]]:
        key = normalize_phone(phone)
        return await bounded_call(
            self.remote.get(Collections.USER_PHONES, key),
            self.call_timeout, "directory_lookup"
        )

    async def is_registered(self, phone: str) -> bool:
        return await self.lookup(phone) is not None

    async def register(self, user_id: str, phone: str, display_name: Optional[str] = None) -> str:
        """ユーザーの電話番号を登録し、正規化キーを返す"""
        key = normalize_phone(phone)
        await bounded_call(
            self.remote.set(Collections.USER_PHONES, key, {
                'phoneNumber': key,
                'userId': user_id,
                'displayName': display_name,
                'registeredAt': to_iso(utcnow()),
            }),
            self.call_timeout, "directory_register"
        )
        logger.info(f"Registered phone {key} for user {user_id}")
        return key
