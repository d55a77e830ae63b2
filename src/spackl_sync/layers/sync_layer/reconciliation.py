"""
リコンシリエーションエンジン - ローカルカレンダーとリモートストアの双方向同期パス

1回のパスの流れ:
1. ローカル権限の確認（拒否ならエラー1件で即終了）
2. 保留書き込みキューの再送
3. ウィンドウ内のリモートイベント取得
4. 書き込み可能な全ローカルカレンダーのイベント取得
5. 対応付け（ペア / リモートのみ / ローカルのみ）
6. ペアは last_modified で競合解決、リモートのみはローカルに作成、ローカルのみはリモートに作成
7. 最終同期時刻の記録とオフラインキャッシュへの保存
"""

import dataclasses
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ...core.context import SessionContext
from ...core.errors import PermissionDenied, SyncError
from ...core.models import (
    Event, SyncReport, SyncStatus, ensure_aware, month_bucket, sync_window, to_iso, utcnow
)
from ...core.validation import validate_event
from ...utils.concurrency import KeyedLock, bounded_call
from ...utils.enhanced_logger import get_logger
from ..cache_layer.offline_cache import OfflineCache
from ..cache_layer.pending_queue import PendingOperation, PendingWriteQueue
from ..invitation_layer.router import InvitationRouter
from ..providers.local_calendar import (
    LocalCalendar, LocalCalendarProvider, LocalEvent, LocalEventFields, PermissionStatus
)
from ..providers.remote_store import Collections, RemoteStore
from .conflict_resolver import ConflictResolver, Resolution

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MESSAGE = "Calendar permission denied"


class ReconciliationEngine:
    """リコンシリエーションエンジン"""

    def __init__(self,
                 local: LocalCalendarProvider,
                 remote: RemoteStore,
                 cache: Optional[OfflineCache] = None,
                 pending: Optional[PendingWriteQueue] = None,
                 router: Optional[InvitationRouter] = None,
                 resolver: Optional[ConflictResolver] = None,
                 call_timeout: float = 15.0,
                 locks: Optional[KeyedLock] = None,
                 window_past_days: int = 30,
                 window_future_days: int = 365):
        self.local = local
        self.remote = remote
        self.cache = cache
        self.pending = pending
        self.router = router
        self.resolver = resolver or ConflictResolver()
        self.call_timeout = call_timeout
        self.locks = locks or KeyedLock()
        self.window_past_days = window_past_days
        self.window_future_days = window_future_days

        # ユーザーごとに同時に1パスのみ
        self._user_locks = KeyedLock()

    async def run(self, ctx: SessionContext,
                  window: Optional[Tuple[datetime, datetime]] = None) -> SyncReport:
        """同期パスを1回実行"""
        async with self._user_locks.hold(ctx.user_id):
            enhanced = get_logger()
            op_context = enhanced.log_operation_start("reconciliation", user_id=ctx.user_id)

            report = await self._run_pass(ctx, window)

            enhanced.log_operation_end(
                op_context,
                success=report.status != SyncStatus.FAILED,
                added=report.added,
                updated=report.updated,
                flushed=report.flushed,
                error_count=len(report.errors),
            )
            logger.info(report.summary())
            return report

    async def _run_pass(self, ctx: SessionContext,
                        window: Optional[Tuple[datetime, datetime]]) -> SyncReport:
        report = SyncReport()
        now = utcnow()
        start, end = window or sync_window(now, self.window_past_days, self.window_future_days)
        start, end = ensure_aware(start), ensure_aware(end)

        # 1. 権限
        try:
            granted = await self._has_permission()
        except SyncError as e:
            report.errors.append(f"Failed to check calendar permission: {e}")
            report.status = SyncStatus.FAILED
            return report

        if not granted:
            report.errors.append(PERMISSION_DENIED_MESSAGE)
            report.status = SyncStatus.FAILED
            return report

        # 2. 保留書き込みの再送
        if self.pending:
            await self._flush_pending(ctx, report)

        # 3. リモート取得
        try:
            documents = await bounded_call(
                self.remote.query_events(ctx.user_id, start, end),
                self.call_timeout, "remote_query_events"
            )
        except SyncError as e:
            report.errors.append(f"Failed to fetch remote events: {e}")
            report.status = SyncStatus.FAILED
            return report

        remote_events: List[Event] = []
        for document in documents:
            try:
                remote_events.append(Event.from_document(document))
            except (KeyError, SyncError) as e:
                report.errors.append(f"Failed to process event {document.get('id')}: {e}")

        # 4. ローカル取得
        try:
            calendars = await bounded_call(self.local.list_calendars(), self.call_timeout,
                                           "local_list_calendars")
            writable = [c for c in calendars if c.is_writable]
            local_events = await bounded_call(
                self.local.list_events([c.id for c in writable], start, end),
                self.call_timeout, "local_list_events"
            ) if writable else []
        except PermissionDenied:
            report.errors = [PERMISSION_DENIED_MESSAGE]
            report.added = report.updated = 0
            report.status = SyncStatus.FAILED
            return report
        except SyncError as e:
            report.errors.append(f"Failed to fetch local events: {e}")
            report.status = SyncStatus.FAILED
            return report

        # 5. 対応付け
        paired, remote_only, local_only = self._correlate(remote_events, local_events)
        logger.info(
            f"Correlated {len(paired)} pairs, {len(remote_only)} remote-only, "
            f"{len(local_only)} local-only events"
        )

        reconciled: List[Event] = []
        target = next((c for c in writable if c.is_primary), writable[0] if writable else None)

        # 6. ペアの競合解決
        for remote_event, local_event in paired:
            try:
                reconciled.append(await self._reconcile_pair(remote_event, local_event, report))
            except Exception as e:
                logger.error(f"Failed to reconcile event {remote_event.id}: {e}")
                report.errors.append(f"Failed to process event {remote_event.id}: {e}")
                reconciled.append(remote_event)

        # 7. リモートのみ → ローカルに作成
        for remote_event in remote_only:
            try:
                reconciled.append(await self._import_remote(remote_event, target, report))
            except Exception as e:
                logger.error(f"Failed to import remote event {remote_event.id}: {e}")
                report.errors.append(f"Failed to process event {remote_event.id}: {e}")
                reconciled.append(remote_event)

        # 8. ローカルのみ → リモートに作成
        for local_event in local_only:
            try:
                reconciled.append(await self._export_local(ctx, local_event, report))
            except Exception as e:
                logger.error(f"Failed to export local event {local_event.ref}: {e}")
                report.errors.append(f"Failed to process event {local_event.ref}: {e}")

        report.last_sync_timestamp = now
        report.finalize()

        await self._record_last_sync(ctx, report)
        await self._store_snapshot(ctx, reconciled, now)
        return report

    async def _has_permission(self) -> bool:
        try:
            status = await bounded_call(self.local.request_permission(), self.call_timeout,
                                        "local_permission")
        except PermissionDenied:
            return False
        return status == PermissionStatus.GRANTED

    @staticmethod
    def _correlate(remote_events: List[Event], local_events: List[LocalEvent]):
        """ペア / リモートのみ / ローカルのみ に分類"""
        local_by_ref: Dict[str, LocalEvent] = {e.ref: e for e in local_events}
        referenced = {e.local_ref for e in remote_events if e.local_ref}

        paired = []
        remote_only = []
        for remote_event in remote_events:
            local_event = local_by_ref.get(remote_event.local_ref) if remote_event.local_ref else None
            if local_event is not None:
                paired.append((remote_event, local_event))
            else:
                remote_only.append(remote_event)

        local_only = [e for e in local_events if e.ref not in referenced]
        return paired, remote_only, local_only

    async def _reconcile_pair(self, remote_event: Event, local_event: LocalEvent,
                              report: SyncReport) -> Event:
        async with self.locks.hold(remote_event.id):
            conflict = self.resolver.evaluate(remote_event, local_event)

            if conflict.resolution == Resolution.REMOTE_WINS:
                if conflict.has_differences:
                    await bounded_call(
                        self.local.update_event(local_event.ref, LocalEventFields.from_event(remote_event)),
                        self.call_timeout, "local_update"
                    )
                    report.updated += 1
                return remote_event

            # ローカルを残す。キャッシュには端末上の値を載せる
            return dataclasses.replace(
                remote_event,
                title=local_event.title,
                start_time=local_event.start_time,
                end_time=local_event.end_time,
                location=local_event.location,
                notes=local_event.notes,
                last_modified=local_event.last_modified or remote_event.last_modified,
            )

    async def _import_remote(self, remote_event: Event, target: Optional[LocalCalendar],
                             report: SyncReport) -> Event:
        if target is None:
            raise SyncError("No writable local calendar", operation="local_create")

        async with self.locks.hold(remote_event.id):
            local_ref = await bounded_call(
                self.local.create_event(target.id, LocalEventFields.from_event(remote_event)),
                self.call_timeout, "local_create"
            )

            # 対応付けの書き戻しは last_modified を更新しない
            try:
                await bounded_call(
                    self.remote.update(Collections.EVENTS, remote_event.id, {
                        'localRef': local_ref,
                        'localCalendarId': target.id,
                    }),
                    self.call_timeout, "remote_write_back"
                )
            except SyncError:
                # 書き戻しに失敗したらローカルの作成を取り消す
                try:
                    await bounded_call(self.local.delete_event(local_ref), self.call_timeout, "local_delete")
                except SyncError as cleanup_error:
                    logger.warning(f"Failed to roll back local entry {local_ref}: {cleanup_error}")
                raise

        report.added += 1
        report.local_created += 1
        return dataclasses.replace(remote_event, local_ref=local_ref, local_calendar_id=target.id)

    async def _export_local(self, ctx: SessionContext, local_event: LocalEvent,
                            report: SyncReport) -> Event:
        now = utcnow()
        event = Event(
            id=uuid.uuid4().hex,
            owner_id=ctx.user_id,
            title=local_event.title,
            start_time=local_event.start_time,
            end_time=local_event.end_time,
            location=local_event.location,
            notes=local_event.notes,
            local_ref=local_event.ref,
            local_calendar_id=local_event.calendar_id,
            last_modified=local_event.last_modified or now,
            created_at=now,
        )
        validate_event(event)

        async with self.locks.hold(event.id):
            await bounded_call(
                self.remote.set(Collections.EVENTS, event.id, event.to_document()),
                self.call_timeout, "remote_create"
            )

        report.added += 1
        report.remote_created += 1
        return event

    async def _flush_pending(self, ctx: SessionContext, report: SyncReport):
        """保留書き込みの再送（リモートにより新しい記録があれば破棄）"""
        try:
            queued = await self.pending.list_pending(ctx.user_id)
        except SyncError as e:
            report.errors.append(f"Failed to read pending writes: {e}")
            return

        for pending in queued:
            event = pending.event
            try:
                async with self.locks.hold(event.id):
                    document = await bounded_call(
                        self.remote.get(Collections.EVENTS, event.id),
                        self.call_timeout, "remote_get"
                    )
                    current = Event.from_document(document) if document else None

                    if current and current.last_modified > event.last_modified:
                        logger.info(f"Dropping stale queued write for {event.id}")
                    else:
                        await bounded_call(
                            self.remote.set(Collections.EVENTS, event.id, event.to_document()),
                            self.call_timeout, "remote_replay"
                        )
                        report.flushed += 1

                    await self.pending.mark_done(pending.id)

            except SyncError as e:
                report.errors.append(f"Failed to replay queued write for event {event.id}: {e}")
                try:
                    await self.pending.mark_failed(pending.id, str(e))
                except SyncError as mark_error:
                    logger.warning(f"Failed to record replay failure for {event.id}: {mark_error}")
                continue

            if self.router and event.phone_attendees():
                if pending.operation == PendingOperation.SAVE:
                    invitations = await self.router.fan_out(event, ctx.display_name)
                else:
                    invitations = await self.router.propagate_update(event, ctx.display_name)
                report.errors.extend(str(f) for f in invitations.failures)

    async def _record_last_sync(self, ctx: SessionContext, report: SyncReport):
        """users/{userId} に最終同期時刻を記録（失敗しても同期結果は変えない）"""
        try:
            existing = await bounded_call(
                self.remote.get(Collections.USERS, ctx.user_id),
                self.call_timeout, "remote_get_user"
            ) or {}
            await bounded_call(
                self.remote.set(Collections.USERS, ctx.user_id, {
                    **existing,
                    'userId': ctx.user_id,
                    'lastSyncTimestamp': to_iso(report.last_sync_timestamp),
                    'lastSyncStatus': report.status.value,
                }),
                self.call_timeout, "remote_set_user"
            )
        except SyncError as e:
            logger.warning(f"Failed to record last sync timestamp for {ctx.user_id}: {e}")

    async def _store_snapshot(self, ctx: SessionContext, events: List[Event], now: datetime):
        if self.cache is None:
            return
        try:
            await self.cache.store_snapshot(ctx.user_id, events, bucket=month_bucket(now), cached_at=now)
        except SyncError as e:
            logger.warning(f"Failed to update offline cache for {ctx.user_id}: {e}")
