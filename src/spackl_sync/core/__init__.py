"""
コア - データモデル・エラー体系・正規化
"""

from .context import SessionContext
from .errors import (
    ErrorKind, SyncError, ValidationError, PermissionDenied,
    TransportError, NotFound, classify_error
)
from .models import (
    Attendee, AttendeeStatus, Event, EventDetails, EventSummary,
    InvitationRecord, SharingGrant, GrantStatus, SyncReport, SyncStatus,
    SideEffectFailure, EventWriteResult, EventListing, merge_event
)
from .normalize import normalize_phone, normalize_email, recipient_key

__all__ = [
    'SessionContext',
    'ErrorKind', 'SyncError', 'ValidationError', 'PermissionDenied',
    'TransportError', 'NotFound', 'classify_error',
    'Attendee', 'AttendeeStatus', 'Event', 'EventDetails', 'EventSummary',
    'InvitationRecord', 'SharingGrant', 'GrantStatus', 'SyncReport', 'SyncStatus',
    'SideEffectFailure', 'EventWriteResult', 'EventListing', 'merge_event',
    'normalize_phone', 'normalize_email', 'recipient_key'
]
