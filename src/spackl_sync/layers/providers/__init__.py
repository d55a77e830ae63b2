"""
プロバイダー層 - ローカルカレンダー・リモートストア・メッセージング
"""

from .local_calendar import (
    LocalCalendarProvider, InMemoryCalendarProvider, IcsDirectoryCalendarProvider,
    LocalCalendar, LocalEvent, LocalEventFields, PermissionStatus
)
from .remote_store import RemoteStore, SQLiteDocumentStore, Collections
from .messaging import (
    MessagingGateway, WebhookSmsGateway, LoggingGateway,
    MessageSendResult, MessageStatus
)

__all__ = [
    'LocalCalendarProvider', 'InMemoryCalendarProvider', 'IcsDirectoryCalendarProvider',
    'LocalCalendar', 'LocalEvent', 'LocalEventFields', 'PermissionStatus',
    'RemoteStore', 'SQLiteDocumentStore', 'Collections',
    'MessagingGateway', 'WebhookSmsGateway', 'LoggingGateway',
    'MessageSendResult', 'MessageStatus'
]
