"""データモデル定義"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ErrorKind, ValidationError, classify_error
from .normalize import normalize_phone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """naiveなdatetimeはUTCとして扱う"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """ISO文字列またはdatetimeをUTCのdatetimeに変換"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str):
        try:
            return ensure_aware(datetime.fromisoformat(value.replace('Z', '+00:00')))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    raise ValidationError(f"Unsupported timestamp type: {type(value).__name__}")


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_aware(value).isoformat() if value else None


def month_bucket(value: datetime) -> str:
    """オフラインキャッシュの月バケット（YYYY-MM）"""
    return ensure_aware(value).strftime('%Y-%m')


def sync_window(now: Optional[datetime] = None,
                past_days: int = 30,
                future_days: int = 365) -> Tuple[datetime, datetime]:
    """同期ウィンドウ [now - past_days, now + future_days]"""
    now = ensure_aware(now) if now else utcnow()
    return now - timedelta(days=past_days), now + timedelta(days=future_days)


class AttendeeStatus(Enum):
    """出欠ステータス"""
    PENDING = "pending"
    GOING = "going"
    INTERESTED = "interested"
    NOT_INTERESTED = "not_interested"

    @classmethod
    def parse(cls, value: Union[str, "AttendeeStatus", None]) -> "AttendeeStatus":
        if isinstance(value, AttendeeStatus):
            return value
        if not value:
            return cls.PENDING

        aliases = {
            "accepted": cls.GOING,
            "declined": cls.NOT_INTERESTED,
        }
        normalized = str(value).strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError as e:
            raise ValidationError(f"Unknown attendee status: {value!r}") from e


class GrantStatus(Enum):
    """共有ステータス"""
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class SyncStatus(Enum):
    """同期パス結果ステータス"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class Attendee:
    """参加者"""
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    status: AttendeeStatus = AttendeeStatus.PENDING

    @property
    def recipient_key(self) -> Optional[str]:
        """招待の宛先キー（電話番号がなければNone）"""
        if not self.phone_number:
            return None
        try:
            return normalize_phone(self.phone_number)
        except ValidationError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'email': self.email,
            'phoneNumber': self.phone_number,
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Union[Dict[str, Any], "Attendee"]) -> "Attendee":
        if isinstance(data, Attendee):
            return data
        return cls(
            name=data.get('name'),
            email=data.get('email'),
            phone_number=data.get('phoneNumber', data.get('phone_number', data.get('phone'))),
            status=AttendeeStatus.parse(data.get('status')),
        )


@dataclass
class EventDetails:
    """EventStore.saveへの入力"""
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    notes: Optional[str] = None
    attendees: List[Attendee] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventDetails":
        return cls(
            title=data.get('title', ''),
            start_time=parse_datetime(data.get('start_time', data.get('startTime'))),
            end_time=parse_datetime(data.get('end_time', data.get('endTime'))),
            location=data.get('location'),
            notes=data.get('notes'),
            attendees=[Attendee.from_dict(a) for a in data.get('attendees') or []],
        )


@dataclass
class EventSummary:
    """共有スナップショット・招待用のイベント要約"""
    id: str
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'startTime': to_iso(self.start_time),
            'endTime': to_iso(self.end_time),
            'location': self.location,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventSummary":
        return cls(
            id=data['id'],
            title=data.get('title', ''),
            start_time=parse_datetime(data.get('startTime')),
            end_time=parse_datetime(data.get('endTime')),
            location=data.get('location'),
        )


@dataclass
class Event:
    """正規イベント"""
    id: str
    owner_id: str
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    notes: Optional[str] = None
    attendees: List[Attendee] = field(default_factory=list)
    local_ref: Optional[str] = None
    local_calendar_id: Optional[str] = None
    last_modified: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def summary(self) -> EventSummary:
        return EventSummary(
            id=self.id,
            title=self.title,
            start_time=self.start_time,
            end_time=self.end_time,
            location=self.location,
        )

    def phone_attendees(self) -> List[Attendee]:
        """宛先キーを持つ参加者のみ"""
        return [a for a in self.attendees if a.recipient_key]

    def to_document(self) -> Dict[str, Any]:
        """リモートストア用ドキュメントに変換"""
        return {
            'id': self.id,
            'ownerId': self.owner_id,
            'title': self.title,
            'startTime': to_iso(self.start_time),
            'endTime': to_iso(self.end_time),
            'location': self.location,
            'notes': self.notes,
            'attendees': [a.to_dict() for a in self.attendees],
            'localRef': self.local_ref,
            'localCalendarId': self.local_calendar_id,
            'lastModified': to_iso(self.last_modified),
            'createdAt': to_iso(self.created_at),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            id=data['id'],
            owner_id=data.get('ownerId', ''),
            title=data.get('title', ''),
            start_time=parse_datetime(data.get('startTime')),
            end_time=parse_datetime(data.get('endTime')),
            location=data.get('location'),
            notes=data.get('notes'),
            attendees=[Attendee.from_dict(a) for a in data.get('attendees') or []],
            local_ref=data.get('localRef'),
            local_calendar_id=data.get('localCalendarId'),
            last_modified=parse_datetime(data.get('lastModified')) or utcnow(),
            created_at=parse_datetime(data.get('createdAt')) or utcnow(),
        )


# 部分更新でマージ可能なフィールド
MERGEABLE_FIELDS = ('title', 'start_time', 'end_time', 'location', 'notes', 'attendees')
# 作成後に変更できないフィールド
IMMUTABLE_FIELDS = ('id', 'owner_id', 'created_at')


def merge_event(existing: Event, partial: Dict[str, Any]) -> Event:
    """既存イベントに部分更新をマージした新しいEventを返す

    local_ref / local_calendar_id / last_modified は同期処理が管理するため
    部分更新では受け付けない。
    """
    changes: Dict[str, Any] = {}

    for key, value in partial.items():
        if key in IMMUTABLE_FIELDS:
            raise ValidationError(f"Field '{key}' cannot be changed after creation")
        if key not in MERGEABLE_FIELDS:
            raise ValidationError(f"Field '{key}' is not updatable")

        if key in ('start_time', 'end_time'):
            changes[key] = parse_datetime(value)
        elif key == 'attendees':
            changes[key] = [Attendee.from_dict(a) for a in value or []]
        else:
            changes[key] = value

    return dataclasses.replace(existing, **changes)


@dataclass
class InvitationRecord:
    """受信者キー単位で保存される招待レコード"""
    id: str
    event_id: str
    recipient_key: str
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[str]
    organizer_name: Optional[str]
    organizer_id: Optional[str]
    status: AttendeeStatus
    created_at: datetime
    updated_at: datetime

    def refresh_snapshot(self, event: Event, organizer_name: Optional[str], now: datetime):
        """イベントの表示用フィールドを置き換える（ステータスは維持）"""
        self.title = event.title
        self.start_time = event.start_time
        self.end_time = event.end_time
        self.location = event.location
        if organizer_name:
            self.organizer_name = organizer_name
        self.updated_at = now

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'eventId': self.event_id,
            'recipientKey': self.recipient_key,
            'title': self.title,
            'startTime': to_iso(self.start_time),
            'endTime': to_iso(self.end_time),
            'location': self.location,
            'organizerName': self.organizer_name,
            'organizerId': self.organizer_id,
            'status': self.status.value,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "InvitationRecord":
        return cls(
            id=data['id'],
            event_id=data['eventId'],
            recipient_key=data.get('recipientKey', ''),
            title=data.get('title', ''),
            start_time=parse_datetime(data.get('startTime')),
            end_time=parse_datetime(data.get('endTime')),
            location=data.get('location'),
            organizer_name=data.get('organizerName'),
            organizer_id=data.get('organizerId'),
            status=AttendeeStatus.parse(data.get('status')),
            created_at=parse_datetime(data.get('createdAt')) or utcnow(),
            updated_at=parse_datetime(data.get('updatedAt')) or utcnow(),
        )


@dataclass
class SharingGrant:
    """共有グラント（受信者キー × 共有者ID）"""
    sharer_id: str
    recipient_key: str
    status: GrantStatus
    shared_at: datetime
    last_updated: datetime
    events_snapshot: List[EventSummary] = field(default_factory=list)
    device_info: Dict[str, Any] = field(default_factory=dict)
    sharer_name: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            'sharerId': self.sharer_id,
            'recipientKey': self.recipient_key,
            'status': self.status.value,
            'sharedAt': to_iso(self.shared_at),
            'lastUpdated': to_iso(self.last_updated),
            'eventsSnapshot': [e.to_dict() for e in self.events_snapshot],
            'deviceInfo': dict(self.device_info),
            'sharerName': self.sharer_name,
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "SharingGrant":
        return cls(
            sharer_id=data['sharerId'],
            recipient_key=data.get('recipientKey', ''),
            status=GrantStatus(data.get('status', 'active')),
            shared_at=parse_datetime(data.get('sharedAt')) or utcnow(),
            last_updated=parse_datetime(data.get('lastUpdated')) or utcnow(),
            events_snapshot=[EventSummary.from_dict(e) for e in data.get('eventsSnapshot') or []],
            device_info=data.get('deviceInfo') or {},
            sharer_name=data.get('sharerName'),
        )


@dataclass
class SideEffectFailure:
    """主操作を失敗させない副作用の失敗"""
    operation: str
    kind: ErrorKind
    message: str
    target: Optional[str] = None

    @classmethod
    def from_exception(cls, operation: str, error: BaseException,
                       target: Optional[str] = None) -> "SideEffectFailure":
        return cls(operation=operation, kind=classify_error(error), message=str(error), target=target)

    def __str__(self) -> str:
        where = f" [{self.target}]" if self.target else ""
        return f"{self.operation}{where}: {self.kind.value}: {self.message}"


@dataclass
class EventWriteResult:
    """EventStoreの書き込み結果"""
    event: Optional[Event]
    remote_synced: bool = True
    warnings: List[SideEffectFailure] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


@dataclass
class EventListing:
    """イベント一覧（キャッシュからの場合はfrom_cache=True）"""
    events: List[Event]
    from_cache: bool = False
    cached_at: Optional[datetime] = None
    bucket: Optional[str] = None


@dataclass
class SyncReport:
    """リコンシリエーション1回分の結果"""
    added: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)
    last_sync_timestamp: datetime = field(default_factory=utcnow)
    status: SyncStatus = SyncStatus.SUCCESS
    local_created: int = 0
    remote_created: int = 0
    flushed: int = 0

    def finalize(self) -> "SyncReport":
        """エラー有無から最終ステータスを決定"""
        if not self.errors:
            self.status = SyncStatus.SUCCESS
        elif self.added + self.updated + self.flushed > 0:
            self.status = SyncStatus.PARTIAL
        else:
            self.status = SyncStatus.FAILED
        return self

    def is_successful(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def summary(self) -> str:
        return (f"Sync {self.status.value}: "
                f"{self.added} added ({self.local_created} local, {self.remote_created} remote), "
                f"{self.updated} updated, "
                f"{self.flushed} flushed, "
                f"{len(self.errors)} errors")
