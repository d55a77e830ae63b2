"""
イベントストア - 単一イベントの検証・永続化
ローカルカレンダーとリモートストアの仲介、招待の副作用の起動
"""

import dataclasses
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ...core.context import SessionContext
from ...core.errors import NotFound, PermissionDenied, SyncError, TransportError
from ...core.models import (
    Event, EventDetails, EventListing, EventWriteResult, SideEffectFailure,
    ensure_aware, merge_event, sync_window, utcnow
)
from ...core.validation import validate_event
from ...utils.concurrency import KeyedLock, bounded_call
from ..cache_layer.offline_cache import OfflineCache
from ..cache_layer.pending_queue import PendingOperation, PendingWriteQueue
from ..invitation_layer.router import InvitationRouter
from ..providers.local_calendar import (
    LocalCalendar, LocalCalendarProvider, LocalEventFields, PermissionStatus
)
from ..providers.remote_store import Collections, RemoteStore

logger = logging.getLogger(__name__)


async def pick_calendar(local: LocalCalendarProvider, timeout: float) -> LocalCalendar:
    """書き込み先カレンダーの選択（プライマリ優先、なければ最初の書き込み可能カレンダー）"""
    calendars = await bounded_call(local.list_calendars(), timeout, "local_list_calendars")
    writable = [c for c in calendars if c.is_writable]
    if not writable:
        raise NotFound("No writable calendar available", operation="pick_calendar")
    return next((c for c in writable if c.is_primary), writable[0])


class EventStore:
    """イベントストア"""

    def __init__(self,
                 local: LocalCalendarProvider,
                 remote: RemoteStore,
                 router: InvitationRouter,
                 pending: Optional[PendingWriteQueue] = None,
                 cache: Optional[OfflineCache] = None,
                 call_timeout: float = 15.0,
                 locks: Optional[KeyedLock] = None,
                 window_past_days: int = 30,
                 window_future_days: int = 365):
        self.local = local
        self.remote = remote
        self.router = router
        self.pending = pending
        self.cache = cache
        self.call_timeout = call_timeout
        self.locks = locks or KeyedLock()
        self.window_past_days = window_past_days
        self.window_future_days = window_future_days

    async def save(self, ctx: SessionContext,
                   details: Union[EventDetails, Dict[str, Any]]) -> EventWriteResult:
        """イベント作成（ローカル → リモート → 招待）"""
        if isinstance(details, dict):
            details = EventDetails.from_dict(details)

        # 検証失敗時はどこにも書き込まない
        validate_event(details)

        await self._require_permission()
        calendar = await pick_calendar(self.local, self.call_timeout)

        now = utcnow()
        event = Event(
            id=uuid.uuid4().hex,
            owner_id=ctx.user_id,
            title=details.title.strip(),
            start_time=ensure_aware(details.start_time),
            end_time=ensure_aware(details.end_time),
            location=details.location,
            notes=details.notes,
            attendees=list(details.attendees),
            local_calendar_id=calendar.id,
            last_modified=now,
            created_at=now,
        )
        warnings: List[SideEffectFailure] = []

        async with self.locks.hold(event.id):
            event.local_ref = await bounded_call(
                self.local.create_event(calendar.id, LocalEventFields.from_event(event)),
                self.call_timeout, "local_create"
            )

            # リモート失敗時もローカルは巻き戻さない
            remote_synced = await self._write_remote(ctx, event, PendingOperation.SAVE, warnings)

        if event.phone_attendees():
            invitations = await self.router.fan_out(event, ctx.display_name)
            warnings.extend(invitations.failures)

        logger.info(f"Event saved: {event.id} (local_ref={event.local_ref}, remote_synced={remote_synced})")
        return EventWriteResult(event=event, remote_synced=remote_synced, warnings=warnings)

    async def update(self, ctx: SessionContext, event_id: str,
                     partial: Dict[str, Any]) -> EventWriteResult:
        """部分更新（マージ → 再検証 → ローカル → リモート → 招待の更新）"""
        warnings: List[SideEffectFailure] = []

        async with self.locks.hold(event_id):
            existing = await self._load_owned(ctx, event_id)

            merged = merge_event(existing, partial)
            validate_event(merged)
            merged = dataclasses.replace(merged, last_modified=utcnow())

            fields = LocalEventFields.from_event(merged)
            if merged.local_ref:
                try:
                    await bounded_call(
                        self.local.update_event(merged.local_ref, fields),
                        self.call_timeout, "local_update"
                    )
                except NotFound as e:
                    # 端末側で削除済みなら作り直す
                    logger.warning(f"Local entry for {event_id} missing, recreating: {e}")
                    warnings.append(SideEffectFailure.from_exception("local_update", e, merged.local_ref))
                    merged = await self._recreate_local(merged, fields)
            else:
                merged = await self._recreate_local(merged, fields)

            remote_synced = await self._write_remote(ctx, merged, PendingOperation.UPDATE, warnings)

        invitations = await self.router.propagate_update(
            merged, ctx.display_name, previous_attendees=existing.attendees
        )
        warnings.extend(invitations.failures)

        logger.info(f"Event updated: {event_id} (remote_synced={remote_synced})")
        return EventWriteResult(event=merged, remote_synced=remote_synced, warnings=warnings)

    async def delete(self, ctx: SessionContext, event_id: str) -> EventWriteResult:
        """削除（ローカルはベストエフォート、リモートは必須、招待は撤回）"""
        warnings: List[SideEffectFailure] = []

        async with self.locks.hold(event_id):
            existing = await self._load_owned(ctx, event_id)

            if existing.local_ref:
                try:
                    await bounded_call(
                        self.local.delete_event(existing.local_ref),
                        self.call_timeout, "local_delete"
                    )
                except SyncError as e:
                    logger.warning(f"Local delete failed for {event_id} (continuing): {e}")
                    warnings.append(SideEffectFailure.from_exception("local_delete", e, existing.local_ref))

            await bounded_call(
                self.remote.delete(Collections.EVENTS, event_id),
                self.call_timeout, "remote_delete"
            )

            if self.pending:
                try:
                    await self.pending.discard(ctx.user_id, event_id)
                except TransportError as e:
                    logger.warning(f"Failed to discard queued write for {event_id}: {e}")
                    warnings.append(SideEffectFailure.from_exception("queue_discard", e, event_id))

        if existing.attendees:
            invitations = await self.router.retract(event_id, existing.attendees)
            warnings.extend(invitations.failures)

        logger.info(f"Event deleted: {event_id}")
        return EventWriteResult(event=existing, remote_synced=True, warnings=warnings)

    async def get(self, ctx: SessionContext, event_id: str) -> Event:
        return await self._load_owned(ctx, event_id)

    async def list_events(self, ctx: SessionContext,
                          start: Optional[datetime] = None,
                          end: Optional[datetime] = None) -> EventListing:
        """リモートから一覧取得（到達不能ならオフラインキャッシュにフォールバック）"""
        default_start, default_end = sync_window(
            past_days=self.window_past_days, future_days=self.window_future_days
        )
        start = ensure_aware(start) if start else default_start
        end = ensure_aware(end) if end else default_end

        try:
            documents = await bounded_call(
                self.remote.query_events(ctx.user_id, start, end),
                self.call_timeout, "remote_query_events"
            )
            return EventListing(events=[Event.from_document(d) for d in documents])

        except TransportError as e:
            if self.cache is None:
                raise

            snapshot = await self.cache.load_snapshot(ctx.user_id)
            if snapshot is None:
                raise

            logger.warning(f"Remote unreachable, showing cached data from {snapshot.bucket}: {e}")
            events = [
                ev for ev in snapshot.events
                if ev.start_time >= start and ev.end_time <= end
            ]
            return EventListing(
                events=events,
                from_cache=True,
                cached_at=snapshot.cached_at,
                bucket=snapshot.bucket,
            )

    async def _require_permission(self):
        status = await bounded_call(self.local.request_permission(), self.call_timeout, "local_permission")
        if status != PermissionStatus.GRANTED:
            raise PermissionDenied("Calendar permission not granted", operation="local_permission")

    async def _load_owned(self, ctx: SessionContext, event_id: str) -> Event:
        """所有者のイベントを取得（リモート未反映の保留分も含む）"""
        document = await bounded_call(
            self.remote.get(Collections.EVENTS, event_id),
            self.call_timeout, "remote_get"
        )
        if document is not None:
            if document.get('ownerId') != ctx.user_id:
                raise NotFound(f"Event {event_id} not found", operation="load_event")
            return Event.from_document(document)

        if self.pending:
            queued = await self.pending.find(ctx.user_id, event_id)
            if queued:
                return queued.event

        raise NotFound(f"Event {event_id} not found", operation="load_event")

    async def _recreate_local(self, event: Event, fields: LocalEventFields) -> Event:
        calendar = await pick_calendar(self.local, self.call_timeout)
        local_ref = await bounded_call(
            self.local.create_event(calendar.id, fields),
            self.call_timeout, "local_create"
        )
        return dataclasses.replace(event, local_ref=local_ref, local_calendar_id=calendar.id)

    async def _write_remote(self, ctx: SessionContext, event: Event,
                            operation: PendingOperation,
                            warnings: List[SideEffectFailure]) -> bool:
        """リモート書き込み。通信失敗時は保留キューに積んで False"""
        try:
            await bounded_call(
                self.remote.set(Collections.EVENTS, event.id, event.to_document()),
                self.call_timeout, f"remote_{operation.value}"
            )
            return True
        except TransportError as e:
            logger.warning(f"Remote {operation.value} failed for {event.id}, queued for next sync: {e}")
            warnings.append(SideEffectFailure.from_exception(f"remote_{operation.value}", e, event.id))

        if self.pending is None:
            return False

        try:
            await self.pending.enqueue(ctx.user_id, event, operation)
        except TransportError as e:
            logger.error(f"Failed to queue {operation.value} of {event.id}: {e}")
            warnings.append(SideEffectFailure.from_exception("queue_enqueue", e, event.id))
        return False
