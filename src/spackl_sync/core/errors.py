"""
エラー分類 - 同期・招待・共有の各層で共通に使う例外体系
"""

import asyncio
import sqlite3
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """エラー種別"""
    VALIDATION = "validation"
    PERMISSION_DENIED = "permission_denied"
    TRANSPORT = "transport"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class SyncError(Exception):
    """同期コア例外の基底クラス"""
    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class ValidationError(SyncError):
    """入力不正（自動リトライしない）"""
    kind = ErrorKind.VALIDATION


class PermissionDenied(SyncError):
    """ローカルカレンダーへのアクセス拒否"""
    kind = ErrorKind.PERMISSION_DENIED


class TransportError(SyncError):
    """リモートストア・メッセージゲートウェイ到達不能"""
    kind = ErrorKind.TRANSPORT


class NotFound(SyncError):
    """参照先のイベント・招待・共有が存在しない"""
    kind = ErrorKind.NOT_FOUND


def classify_error(error: BaseException) -> ErrorKind:
    """例外をErrorKindに分類"""
    if isinstance(error, SyncError):
        return error.kind

    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION_DENIED

    if isinstance(error, (asyncio.TimeoutError, ConnectionError, sqlite3.Error)):
        return ErrorKind.TRANSPORT

    if isinstance(error, (KeyError, LookupError)):
        return ErrorKind.NOT_FOUND

    error_message = str(error).lower()

    # メッセージからの推定
    if any(keyword in error_message for keyword in ['connection', 'timeout', 'network', 'unreachable']):
        return ErrorKind.TRANSPORT

    if any(keyword in error_message for keyword in ['permission', 'denied', 'unauthorized', '401', '403']):
        return ErrorKind.PERMISSION_DENIED

    if 'not found' in error_message or '404' in error_message:
        return ErrorKind.NOT_FOUND

    return ErrorKind.UNKNOWN
