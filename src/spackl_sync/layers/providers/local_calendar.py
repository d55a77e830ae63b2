"""
ローカルカレンダープロバイダー - 端末カレンダーへのCRUD抽象とアダプター
"""

import asyncio
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from icalendar import Calendar as ICalendar
from icalendar import Event as ICalEvent

from ...core.errors import NotFound, PermissionDenied, ValidationError
from ...core.models import Event, EventSummary, ensure_aware, utcnow

logger = logging.getLogger(__name__)


class PermissionStatus(Enum):
    """カレンダー権限"""
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class LocalCalendar:
    """端末上のカレンダー"""
    id: str
    title: str
    is_primary: bool = False
    is_writable: bool = True


@dataclass
class LocalEventFields:
    """ローカルに書き込むフィールド"""
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_event(cls, event: Union[Event, EventSummary]) -> "LocalEventFields":
        return cls(
            title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            location=event.location,
            notes=getattr(event, 'notes', None),
        )


@dataclass
class LocalEvent:
    """ローカルカレンダー上のイベント"""
    ref: str
    calendar_id: str
    title: str
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    notes: Optional[str] = None
    last_modified: Optional[datetime] = None

    def fields(self) -> LocalEventFields:
        return LocalEventFields(
            title=self.title,
            start_time=self.start_time,
            end_time=self.end_time,
            location=self.location,
            notes=self.notes,
        )


def in_window(start_time: datetime, end_time: datetime,
              window_start: datetime, window_end: datetime) -> bool:
    """開始・終了がともにウィンドウ内にあるか"""
    return (ensure_aware(start_time) >= ensure_aware(window_start)
            and ensure_aware(end_time) <= ensure_aware(window_end))


class LocalCalendarProvider(ABC):
    """ローカルカレンダープロバイダー抽象基底クラス

    権限がない場合は PermissionDenied、存在しない参照は NotFound を送出する。
    """

    @abstractmethod
    async def request_permission(self) -> PermissionStatus:
        """PermissionStatus.GRANTED / DENIED を返す"""

    @abstractmethod
    async def list_calendars(self) -> List[LocalCalendar]:
        pass

    @abstractmethod
    async def list_events(self, calendar_ids: Sequence[str],
                          start: datetime, end: datetime) -> List[LocalEvent]:
        pass

    @abstractmethod
    async def create_event(self, calendar_id: str, fields: LocalEventFields) -> str:
        """作成したイベントの参照（local_ref）を返す"""

    @abstractmethod
    async def update_event(self, local_ref: str, fields: LocalEventFields) -> None:
        pass

    @abstractmethod
    async def delete_event(self, local_ref: str) -> None:
        pass


class InMemoryCalendarProvider(LocalCalendarProvider):
    """メモリ上のカレンダー（開発・テスト用）"""

    def __init__(self,
                 calendars: Optional[List[LocalCalendar]] = None,
                 permission: PermissionStatus = PermissionStatus.GRANTED):
        self.calendars = calendars if calendars is not None else [
            LocalCalendar(id="default", title="Calendar", is_primary=True, is_writable=True)
        ]
        self.permission = permission
        self.events: Dict[str, LocalEvent] = {}
        self._ref_counter = itertools.count(1)

    def _check_permission(self):
        if self.permission != PermissionStatus.GRANTED:
            raise PermissionDenied("Calendar access denied", operation="local_calendar")

    async def request_permission(self) -> PermissionStatus:
        return self.permission

    async def list_calendars(self) -> List[LocalCalendar]:
        self._check_permission()
        return list(self.calendars)

    async def list_events(self, calendar_ids: Sequence[str],
                          start: datetime, end: datetime) -> List[LocalEvent]:
        self._check_permission()
        wanted = set(calendar_ids)
        return [
            e for e in self.events.values()
            if e.calendar_id in wanted and in_window(e.start_time, e.end_time, start, end)
        ]

    async def create_event(self, calendar_id: str, fields: LocalEventFields) -> str:
        self._check_permission()
        calendar = next((c for c in self.calendars if c.id == calendar_id), None)
        if calendar is None:
            raise NotFound(f"Calendar {calendar_id} not found", operation="local_create")
        if not calendar.is_writable:
            raise PermissionDenied(f"Calendar {calendar_id} is read-only", operation="local_create")

        ref = f"local-{next(self._ref_counter)}"
        self.events[ref] = LocalEvent(
            ref=ref,
            calendar_id=calendar_id,
            title=fields.title,
            start_time=ensure_aware(fields.start_time),
            end_time=ensure_aware(fields.end_time),
            location=fields.location,
            notes=fields.notes,
            last_modified=utcnow(),
        )
        return ref

    async def update_event(self, local_ref: str, fields: LocalEventFields) -> None:
        self._check_permission()
        existing = self.events.get(local_ref)
        if existing is None:
            raise NotFound(f"Local event {local_ref} not found", operation="local_update")

        existing.title = fields.title
        existing.start_time = ensure_aware(fields.start_time)
        existing.end_time = ensure_aware(fields.end_time)
        existing.location = fields.location
        existing.notes = fields.notes
        existing.last_modified = utcnow()

    async def delete_event(self, local_ref: str) -> None:
        self._check_permission()
        if self.events.pop(local_ref, None) is None:
            raise NotFound(f"Local event {local_ref} not found", operation="local_delete")

    def set_last_modified(self, local_ref: str, when: datetime):
        """ローカルの最終更新時刻を直接設定"""
        self.events[local_ref].last_modified = ensure_aware(when)


class IcsDirectoryCalendarProvider(LocalCalendarProvider):
    """ディレクトリ内の .ics ファイルをカレンダーとして扱うプロバイダー

    1ファイル = 1カレンダー（ファイル名の stem がカレンダーID）。
    VEVENT の UID がローカル参照、LAST-MODIFIED がローカル側の更新時刻。
    """

    PRODID = "-//Spackl//spackl-sync//EN"
    PRIMARY_PROP = "X-SPACKL-PRIMARY"
    READONLY_PROP = "X-SPACKL-READONLY"

    def __init__(self, directory: Union[str, Path], default_calendar: str = "default"):
        self.directory = Path(directory)
        self.default_calendar = default_calendar
        self._lock = asyncio.Lock()

    async def request_permission(self) -> PermissionStatus:
        def check():
            self.directory.mkdir(parents=True, exist_ok=True)
            probe = self.directory / ".permission_probe"
            try:
                probe.write_text("ok", encoding="utf-8")
                probe.unlink()
                return PermissionStatus.GRANTED
            except OSError:
                return PermissionStatus.DENIED

        return await asyncio.to_thread(check)

    async def list_calendars(self) -> List[LocalCalendar]:
        async with self._lock:
            return await asyncio.to_thread(self._list_calendars_sync)

    async def list_events(self, calendar_ids: Sequence[str],
                          start: datetime, end: datetime) -> List[LocalEvent]:
        async with self._lock:
            return await asyncio.to_thread(self._list_events_sync, list(calendar_ids), start, end)

    async def create_event(self, calendar_id: str, fields: LocalEventFields) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._create_event_sync, calendar_id, fields)

    async def update_event(self, local_ref: str, fields: LocalEventFields) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update_event_sync, local_ref, fields)

    async def delete_event(self, local_ref: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete_event_sync, local_ref)

    # --- 同期I/O（to_thread内で実行） ---

    def _calendar_path(self, calendar_id: str) -> Path:
        return self.directory / f"{calendar_id}.ics"

    def _read(self, path: Path) -> ICalendar:
        try:
            return ICalendar.from_ical(path.read_bytes())
        except PermissionError as e:
            raise PermissionDenied(f"Cannot read {path.name}", operation="local_calendar") from e
        except ValueError as e:
            raise ValidationError(f"Malformed calendar file {path.name}: {e}") from e

    def _write(self, path: Path, calendar: ICalendar):
        try:
            path.write_bytes(calendar.to_ical())
        except PermissionError as e:
            raise PermissionDenied(f"Cannot write {path.name}", operation="local_calendar") from e

    def _new_calendar(self, name: str, primary: bool) -> ICalendar:
        calendar = ICalendar()
        calendar.add('prodid', self.PRODID)
        calendar.add('version', '2.0')
        calendar.add('x-wr-calname', name)
        if primary:
            calendar.add(self.PRIMARY_PROP, 'TRUE')
        return calendar

    def _list_calendars_sync(self) -> List[LocalCalendar]:
        self.directory.mkdir(parents=True, exist_ok=True)
        paths = sorted(self.directory.glob("*.ics"))

        if not paths:
            path = self._calendar_path(self.default_calendar)
            self._write(path, self._new_calendar(self.default_calendar, primary=True))
            logger.info(f"Created default local calendar: {path}")
            paths = [path]

        calendars = []
        for path in paths:
            ical = self._read(path)
            calendars.append(LocalCalendar(
                id=path.stem,
                title=str(ical.get('X-WR-CALNAME', path.stem)),
                is_primary=str(ical.get(self.PRIMARY_PROP, '')).upper() == 'TRUE',
                is_writable=str(ical.get(self.READONLY_PROP, '')).upper() != 'TRUE',
            ))
        return calendars

    def _list_events_sync(self, calendar_ids: List[str],
                          start: datetime, end: datetime) -> List[LocalEvent]:
        events = []
        for calendar_id in calendar_ids:
            path = self._calendar_path(calendar_id)
            if not path.exists():
                continue
            for component in self._read(path).walk('VEVENT'):
                try:
                    local_event = self._component_to_event(calendar_id, component)
                except (KeyError, ValueError, ValidationError) as e:
                    logger.warning(f"Skipping malformed event {component.get('UID')} in {path.name}: {e}")
                    continue
                if in_window(local_event.start_time, local_event.end_time, start, end):
                    events.append(local_event)
        return events

    def _create_event_sync(self, calendar_id: str, fields: LocalEventFields) -> str:
        path = self._calendar_path(calendar_id)
        if not path.exists():
            raise NotFound(f"Calendar {calendar_id} not found", operation="local_create")

        ical = self._read(path)
        if str(ical.get(self.READONLY_PROP, '')).upper() == 'TRUE':
            raise PermissionDenied(f"Calendar {calendar_id} is read-only", operation="local_create")

        uid = f"{uuid.uuid4().hex}@spackl"
        component = ICalEvent()
        component.add('uid', uid)
        self._apply_fields(component, fields)
        ical.add_component(component)
        self._write(path, ical)
        return uid

    def _update_event_sync(self, local_ref: str, fields: LocalEventFields):
        path, ical, component = self._find(local_ref, operation="local_update")
        for key in ('summary', 'dtstart', 'dtend', 'location', 'description', 'last-modified', 'dtstamp'):
            if key in component:
                del component[key]
        self._apply_fields(component, fields)
        self._write(path, ical)

    def _delete_event_sync(self, local_ref: str):
        path, ical, component = self._find(local_ref, operation="local_delete")
        ical.subcomponents.remove(component)
        self._write(path, ical)

    def _find(self, local_ref: str, operation: str):
        for path in sorted(self.directory.glob("*.ics")):
            ical = self._read(path)
            for component in ical.walk('VEVENT'):
                if str(component.get('UID')) == local_ref:
                    return path, ical, component
        raise NotFound(f"Local event {local_ref} not found", operation=operation)

    def _apply_fields(self, component: ICalEvent, fields: LocalEventFields):
        now = utcnow().replace(microsecond=0)
        component.add('summary', fields.title)
        component.add('dtstart', ensure_aware(fields.start_time))
        component.add('dtend', ensure_aware(fields.end_time))
        if fields.location:
            component.add('location', fields.location)
        if fields.notes:
            component.add('description', fields.notes)
        component.add('dtstamp', now)
        component.add('last-modified', now)

    def _component_to_event(self, calendar_id: str, component) -> LocalEvent:
        start_time = _to_datetime(component.decoded('DTSTART'))
        end_time = _to_datetime(component.decoded('DTEND')) if 'DTEND' in component else start_time
        last_modified = (
            _to_datetime(component.decoded('LAST-MODIFIED'))
            if 'LAST-MODIFIED' in component else None
        )
        location = component.get('LOCATION')
        notes = component.get('DESCRIPTION')
        return LocalEvent(
            ref=str(component.get('UID')),
            calendar_id=calendar_id,
            title=str(component.get('SUMMARY', '')),
            start_time=start_time,
            end_time=end_time,
            location=str(location) if location is not None else None,
            notes=str(notes) if notes is not None else None,
            last_modified=last_modified,
        )


def _to_datetime(value) -> datetime:
    """ICSの日付/日時をUTCのdatetimeに変換（終日イベントは0時UTC）"""
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise ValidationError(f"Unsupported ICS date value: {value!r}")
