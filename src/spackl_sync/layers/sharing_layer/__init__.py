"""
共有層 - カレンダー共有グラント・ユーザーディレクトリ・リトライ予算
"""

from .registry import (
    SharingRegistry, ShareResult, AcceptResult, ShareCheckResult, ShareCheckStatus
)
from .retry_policy import RetryPolicy, RetryTracker
from .user_directory import UserDirectory

__all__ = [
    'SharingRegistry', 'ShareResult', 'AcceptResult', 'ShareCheckResult', 'ShareCheckStatus',
    'RetryPolicy', 'RetryTracker', 'UserDirectory'
]
