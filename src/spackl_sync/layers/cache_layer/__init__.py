"""
キャッシュ層 - オフラインスナップショットと保留書き込み
"""

from .offline_cache import OfflineCache, CacheSnapshot
from .pending_queue import PendingWriteQueue, PendingWrite, PendingOperation

__all__ = [
    'OfflineCache', 'CacheSnapshot',
    'PendingWriteQueue', 'PendingWrite', 'PendingOperation'
]
