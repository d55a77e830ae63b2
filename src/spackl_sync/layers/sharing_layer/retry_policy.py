"""
共有ステータス確認のリトライ予算
"""

from dataclasses import dataclass
from typing import Dict, Hashable


@dataclass
class RetryPolicy:
    """リトライポリシー（固定間隔）"""
    max_attempts: int = 3
    delay_seconds: float = 2.0


class RetryTracker:
    """キーごとの連続失敗回数"""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self._failures: Dict[Hashable, int] = {}

    def attempts(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    def is_exhausted(self, key: Hashable) -> bool:
        return self.attempts(key) >= self.policy.max_attempts

    def record_failure(self, key: Hashable) -> int:
        self._failures[key] = self.attempts(key) + 1
        return self._failures[key]

    def reset(self, key: Hashable):
        self._failures.pop(key, None)
