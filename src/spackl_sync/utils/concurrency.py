"""
並行制御ユーティリティ - タイムアウト付き呼び出し・キー単位ロック・レート制限
"""

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Awaitable, Dict, Hashable, TypeVar

from ..core.errors import TransportError

T = TypeVar("T")


async def bounded_call(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """外部呼び出しをタイムアウトで囲み、超過時はTransportErrorにする"""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransportError(f"Timed out after {timeout:.1f}s", operation=operation) from e


class KeyedLock:
    """キー単位のアドバイザリロック（プロセス内のみ有効）"""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()

        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # 待機者がいなくなったロックは破棄
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class RateLimiter:
    """レート制限管理"""

    def __init__(self, max_requests: int, time_window: int):
        self.max_requests = max_requests
        self.time_window = time_window  # seconds
        self.requests = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        """レート制限チェック・許可取得"""
        async with self._lock:
            now = time.time()

            self.requests = [req_time for req_time in self.requests
                             if now - req_time < self.time_window]

            if len(self.requests) >= self.max_requests:
                return False

            self.requests.append(now)
            return True

    def wait_time(self) -> float:
        """次に利用可能になるまでの待機時間"""
        if not self.requests:
            return 0.0

        oldest_request = min(self.requests)
        return max(0.0, self.time_window - (time.time() - oldest_request))
