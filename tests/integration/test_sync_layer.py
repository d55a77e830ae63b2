"""
同期層 統合テスト
イベントストア・競合解決・リコンシリエーションの統合動作確認
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from spackl_sync.core.errors import NotFound, TransportError, ValidationError
from spackl_sync.core.models import Event, EventDetails, SyncStatus, to_iso, utcnow
from spackl_sync.layers.cache_layer import PendingOperation
from spackl_sync.layers.providers import (
    Collections, InMemoryCalendarProvider, LocalEventFields, PermissionStatus
)
from spackl_sync.layers.providers.local_calendar import LocalEvent
from spackl_sync.layers.sync_layer import ConflictResolver, Resolution, TiePolicy, TIE_POLICY
from spackl_sync.layers.sync_layer.reconciliation import ReconciliationEngine


def remote_event(event_id, base_time, title="Remote title", **kwargs) -> Event:
    values = dict(
        id=event_id,
        owner_id="user-1",
        title=title,
        start_time=base_time,
        end_time=base_time + timedelta(hours=1),
        last_modified=base_time - timedelta(days=2),
        created_at=base_time - timedelta(days=3),
    )
    values.update(kwargs)
    return Event(**values)


async def put_remote(remote, event: Event):
    await remote.set(Collections.EVENTS, event.id, event.to_document())


class TestConflictResolver:
    """競合解決のテスト"""

    def _pair(self, base_time, remote_modified, local_modified):
        remote = remote_event("ev-1", base_time, last_modified=remote_modified, local_ref="local-1")
        local = LocalEvent(
            ref="local-1", calendar_id="default", title="Local title",
            start_time=base_time, end_time=base_time + timedelta(hours=1),
            last_modified=local_modified,
        )
        return remote, local

    def test_tie_keeps_local(self):
        assert TIE_POLICY == TiePolicy.LOCAL_WINS

    def test_remote_strictly_newer_wins(self, base_time):
        remote, local = self._pair(base_time, base_time, base_time - timedelta(seconds=1))
        assert ConflictResolver().decide(remote, local) == Resolution.REMOTE_WINS

    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(seconds=1)])
    def test_local_not_older_wins(self, base_time, offset):
        remote, local = self._pair(base_time, base_time, base_time + offset)
        assert ConflictResolver().decide(remote, local) == Resolution.LOCAL_WINS

    def test_missing_local_timestamp_takes_remote(self, base_time):
        remote, local = self._pair(base_time, base_time, None)
        assert ConflictResolver().decide(remote, local) == Resolution.REMOTE_WINS

    def test_evaluate_lists_differences(self, base_time):
        resolver = ConflictResolver()
        remote, local = self._pair(base_time, base_time, base_time)
        conflict = resolver.evaluate(remote, local)
        assert [c.field_name for c in conflict.conflicts] == ["title"]
        assert resolver.get_statistics()["ties"] == 1


class TestEventStore:
    """イベントストアのテスト"""

    @pytest.mark.asyncio
    async def test_save_writes_local_and_remote(self, services, ctx, base_time):
        result = await services.store.save(ctx, {
            "title": "Dinner",
            "start_time": base_time,
            "end_time": base_time + timedelta(hours=2),
            "location": "Cafe",
        })

        event = result.event
        assert result.remote_synced and not result.has_warnings
        assert event.owner_id == "user-1"
        assert event.local_ref in services.local.events
        document = await services.remote.get(Collections.EVENTS, event.id)
        assert document["localRef"] == event.local_ref
        assert document["title"] == "Dinner"

    @pytest.mark.asyncio
    async def test_save_mixed_naive_and_aware_times(self, services, ctx, base_time):
        result = await services.store.save(ctx, EventDetails(
            title="Standup",
            start_time=base_time.replace(tzinfo=None),
            end_time=base_time + timedelta(minutes=30),
        ))

        assert result.event.start_time == base_time, "naiveな時刻はUTCとして扱うべき"
        assert result.event.start_time.tzinfo is not None

    @pytest.mark.asyncio
    async def test_invalid_event_writes_nothing(self, services, ctx, base_time):
        with pytest.raises(ValidationError, match="Event title is required"):
            await services.store.save(ctx, {"title": "", "start_time": base_time, "end_time": base_time})

        assert services.local.events == {}, "検証失敗時はローカルに書き込まないべき"
        assert await services.remote.list_documents(Collections.EVENTS) == []

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_local_and_queues(self, services, ctx, base_time):
        services.remote.set = AsyncMock(side_effect=TransportError("Remote unreachable"))

        result = await services.store.save(ctx, {
            "title": "Offline", "start_time": base_time, "end_time": base_time + timedelta(hours=1),
        })

        assert not result.remote_synced
        assert result.warnings[0].operation == "remote_save"
        assert result.event.local_ref in services.local.events, "ローカルは巻き戻さないべき"
        pending = await services.pending.list_pending("user-1")
        assert [p.operation for p in pending] == [PendingOperation.SAVE]

    @pytest.mark.asyncio
    async def test_update_merges_and_bumps_last_modified(self, services, ctx, base_time):
        saved = (await services.store.save(ctx, {
            "title": "Gym", "start_time": base_time, "end_time": base_time + timedelta(hours=1),
            "notes": "bring shoes",
        })).event

        result = await services.store.update(ctx, saved.id, {"title": "Gym session"})

        assert result.event.title == "Gym session"
        assert result.event.notes == "bring shoes"
        assert result.event.last_modified >= saved.last_modified
        assert services.local.events[saved.local_ref].title == "Gym session"

    @pytest.mark.asyncio
    async def test_update_recreates_missing_local_entry(self, services, ctx, base_time):
        saved = (await services.store.save(ctx, {
            "title": "Gym", "start_time": base_time, "end_time": base_time + timedelta(hours=1),
        })).event
        await services.local.delete_event(saved.local_ref)

        result = await services.store.update(ctx, saved.id, {"location": "Park"})

        assert result.event.local_ref != saved.local_ref
        assert result.event.local_ref in services.local.events
        assert [w.operation for w in result.warnings] == ["local_update"]

    @pytest.mark.asyncio
    async def test_update_rejects_invalid_merge(self, services, ctx, base_time):
        saved = (await services.store.save(ctx, {
            "title": "Gym", "start_time": base_time, "end_time": base_time + timedelta(hours=1),
        })).event

        with pytest.raises(ValidationError, match="End date cannot be before start date"):
            await services.store.update(ctx, saved.id, {"end_time": base_time - timedelta(hours=1)})

    @pytest.mark.asyncio
    async def test_delete_removes_remote_even_if_local_gone(self, services, ctx, base_time):
        saved = (await services.store.save(ctx, {
            "title": "Gym", "start_time": base_time, "end_time": base_time + timedelta(hours=1),
        })).event
        await services.local.delete_event(saved.local_ref)

        result = await services.store.delete(ctx, saved.id)

        assert [w.operation for w in result.warnings] == ["local_delete"]
        assert await services.remote.get(Collections.EVENTS, saved.id) is None
        with pytest.raises(NotFound):
            await services.store.get(ctx, saved.id)

    @pytest.mark.asyncio
    async def test_other_users_event_is_not_found(self, services, ctx, base_time, remote):
        await put_remote(remote, remote_event("ev-other", base_time, owner_id="user-2"))
        with pytest.raises(NotFound):
            await services.store.get(ctx, "ev-other")


class TestReconciliation:
    """リコンシリエーションのテスト"""

    @pytest.mark.asyncio
    async def test_remote_newer_overwrites_local(self, services, ctx, base_time, local, remote):
        ref = await local.create_event("default", LocalEventFields(
            title="Local title", start_time=base_time, end_time=base_time + timedelta(hours=1)))
        local.set_last_modified(ref, base_time - timedelta(days=5))
        await put_remote(remote, remote_event(
            "ev-1", base_time, local_ref=ref, local_calendar_id="default",
            last_modified=base_time - timedelta(days=4)))

        report = await services.engine.run(ctx)

        assert report.status == SyncStatus.SUCCESS
        assert report.updated == 1
        assert local.events[ref].title == "Remote title"

    @pytest.mark.asyncio
    async def test_local_newer_or_equal_is_kept(self, services, ctx, base_time, local, remote):
        modified = base_time - timedelta(days=4)
        ref = await local.create_event("default", LocalEventFields(
            title="Local title", start_time=base_time, end_time=base_time + timedelta(hours=1)))
        local.set_last_modified(ref, modified)
        await put_remote(remote, remote_event(
            "ev-1", base_time, local_ref=ref, local_calendar_id="default", last_modified=modified))

        report = await services.engine.run(ctx)

        assert report.updated == 0
        assert local.events[ref].title == "Local title", "同時刻ならローカルを残すべき"
        document = await remote.get(Collections.EVENTS, "ev-1")
        assert document["title"] == "Remote title", "ローカル勝ちでもリモートには書き込まないべき"

    @pytest.mark.asyncio
    async def test_remote_only_imported_without_touching_last_modified(
            self, services, ctx, base_time, local, remote):
        original = remote_event("ev-1", base_time)
        await put_remote(remote, original)

        report = await services.engine.run(ctx)

        assert report.added == 1 and report.local_created == 1
        document = await remote.get(Collections.EVENTS, "ev-1")
        assert document["localRef"] in local.events
        assert document["localCalendarId"] == "default"
        assert document["lastModified"] == to_iso(original.last_modified), "書き戻しで更新時刻を変えないべき"

        second = await services.engine.run(ctx)
        assert second.added == 0 and second.updated == 0, "2回目のパスは変更なしになるべき"
        assert len(local.events) == 1

    @pytest.mark.asyncio
    async def test_local_only_exported(self, services, ctx, base_time, local, remote):
        ref = await local.create_event("default", LocalEventFields(
            title="Dentist", start_time=base_time, end_time=base_time + timedelta(hours=1)))

        report = await services.engine.run(ctx)

        assert report.added == 1 and report.remote_created == 1
        documents = await remote.query_events("user-1", base_time - timedelta(days=1),
                                              base_time + timedelta(days=1))
        assert [(d["title"], d["localRef"]) for d in documents] == [("Dentist", ref)]

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_going(self, services, ctx, base_time, local, remote):
        for index, title in enumerate(["A", "B", "C"]):
            await put_remote(remote, remote_event(f"ev-{index}", base_time + timedelta(hours=index), title=title))

        original_create = local.create_event

        async def flaky_create(calendar_id, fields):
            if fields.title == "B":
                raise TransportError("Calendar store busy")
            return await original_create(calendar_id, fields)

        local.create_event = flaky_create

        report = await services.engine.run(ctx)

        assert report.added == 2
        assert len(report.errors) == 1
        assert report.errors[0].startswith("Failed to process event ev-1")
        assert report.status == SyncStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_failed_write_back_rolls_back_local_entry(self, services, ctx, base_time, local, remote):
        await put_remote(remote, remote_event("ev-1", base_time))
        remote.update = AsyncMock(side_effect=TransportError("Remote unreachable"))

        report = await services.engine.run(ctx)

        assert report.added == 0
        assert local.events == {}, "書き戻し失敗時はローカルの作成を取り消すべき"
        assert report.status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_permission_denied(self, remote, ctx, base_time):
        denied = InMemoryCalendarProvider(permission=PermissionStatus.DENIED)
        await put_remote(remote, remote_event("ev-1", base_time))
        engine = ReconciliationEngine(denied, remote)

        report = await engine.run(ctx)

        assert report.errors == ["Calendar permission denied"]
        assert report.status == SyncStatus.FAILED
        assert report.added == 0 and report.updated == 0

    @pytest.mark.asyncio
    async def test_remote_unreachable_fails_pass(self, services, ctx, remote):
        remote.query_events = AsyncMock(side_effect=TransportError("Remote unreachable"))

        report = await services.engine.run(ctx)

        assert report.status == SyncStatus.FAILED
        assert report.errors[0].startswith("Failed to fetch remote events")

    @pytest.mark.asyncio
    async def test_queued_write_replayed(self, services, ctx, base_time, remote):
        original_set = remote.set
        remote.set = AsyncMock(side_effect=TransportError("Remote unreachable"))
        saved = (await services.store.save(ctx, {
            "title": "Offline", "start_time": base_time, "end_time": base_time + timedelta(hours=1),
        })).event
        remote.set = original_set

        report = await services.engine.run(ctx)

        assert report.flushed == 1
        assert report.status == SyncStatus.SUCCESS
        document = await remote.get(Collections.EVENTS, saved.id)
        assert document["title"] == "Offline"
        assert await services.pending.count("user-1") == 0
        assert report.added == 0, "再送したイベントは既存ローカルと対応付けられるべき"

    @pytest.mark.asyncio
    async def test_stale_queued_write_dropped(self, services, ctx, base_time, remote):
        queued = remote_event("ev-1", base_time, title="Old", last_modified=utcnow() - timedelta(hours=2))
        await services.pending.enqueue("user-1", queued, PendingOperation.UPDATE)
        await put_remote(remote, remote_event("ev-1", base_time, title="Newer", last_modified=utcnow()))

        report = await services.engine.run(ctx)

        assert report.flushed == 0
        assert (await remote.get(Collections.EVENTS, "ev-1"))["title"] == "Newer"
        assert await services.pending.count("user-1") == 0

    @pytest.mark.asyncio
    async def test_records_last_sync_and_snapshot(self, services, ctx, base_time, remote):
        await put_remote(remote, remote_event("ev-1", base_time))

        report = await services.engine.run(ctx)

        user = await remote.get(Collections.USERS, "user-1")
        assert user["lastSyncTimestamp"] == to_iso(report.last_sync_timestamp)
        snapshot = await services.cache.load_snapshot("user-1")
        assert [e.id for e in snapshot.events] == ["ev-1"]
        assert snapshot.events[0].local_ref is not None

    @pytest.mark.asyncio
    async def test_naive_window_treated_as_utc(self, services, ctx, base_time, local, remote):
        await put_remote(remote, remote_event("ev-1", base_time))
        await local.create_event("default", LocalEventFields(
            title="Dentist", start_time=base_time, end_time=base_time + timedelta(hours=1)))
        naive = base_time.replace(tzinfo=None)

        report = await services.engine.run(ctx, (naive - timedelta(days=1), naive + timedelta(days=10)))

        assert report.status == SyncStatus.SUCCESS, report.errors
        assert report.local_created == 1 and report.remote_created == 1
