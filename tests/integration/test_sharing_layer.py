"""
共有層 統合テスト
共有グラントのupsert・招待SMS・ステータス確認のリトライ予算
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from spackl_sync.core.errors import NotFound, TransportError
from spackl_sync.core.models import Event, EventSummary, GrantStatus
from spackl_sync.layers.providers import (
    Collections, InMemoryCalendarProvider, LocalCalendar, LoggingGateway, RemoteStore
)
from spackl_sync.layers.sharing_layer import (
    RetryPolicy, SharingRegistry, ShareCheckStatus, UserDirectory
)


@pytest.fixture
def snapshot(base_time):
    return [
        EventSummary(id="ev-1", title="Yoga", start_time=base_time, end_time=base_time + timedelta(hours=1)),
        EventSummary(id="ev-2", title="Dentist", start_time=base_time + timedelta(days=1),
                     end_time=base_time + timedelta(days=1, hours=1), location="Clinic"),
    ]


@pytest.fixture
def registry(remote, gateway, local):
    return SharingRegistry(remote, gateway, local=local, retry_policy=RetryPolicy(max_attempts=3, delay_seconds=0))


class TestShare:
    """共有のテスト"""

    @pytest.mark.asyncio
    async def test_share_twice_is_single_grant(self, registry, remote, snapshot):
        first = await registry.share("user-1", "555-0100", snapshot, sharer_name="Alex")
        second = await registry.share("user-1", "(555) 0100", snapshot[:1])

        assert first.created and not second.created
        grants = await registry.list_grants("5550100")
        assert len(grants) == 1, "同じ組み合わせは1件のグラントにまとめるべき"
        assert grants[0].shared_at == first.grant.shared_at
        assert [e.id for e in grants[0].events_snapshot] == ["ev-1"]
        assert grants[0].sharer_name == "Alex"

    @pytest.mark.asyncio
    async def test_reshare_keeps_accepted_status(self, registry, snapshot):
        await registry.share("user-1", "555-0100", snapshot)
        await registry.accept("555-0100", "user-1")

        result = await registry.share("user-1", "555-0100", snapshot)

        assert result.grant.status == GrantStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_phone_formats_reach_same_container(self, registry, snapshot):
        await registry.share("user-1", "+1 (818) 481-0612", snapshot)
        await registry.share("user-2", "818-481-0612", snapshot)

        grants = await registry.list_grants("8184810612")
        assert sorted(g.sharer_id for g in grants) == ["user-1", "user-2"]

    @pytest.mark.asyncio
    async def test_snapshot_accepts_events(self, registry, base_time):
        event = Event(id="ev-9", owner_id="user-1", title="Run",
                      start_time=base_time, end_time=base_time + timedelta(hours=1), notes="private")
        result = await registry.share("user-1", "555-0100", [event])
        assert result.grant.events_snapshot[0].title == "Run"


class TestInviteMessage:
    """未登録受信者への招待SMSのテスト"""

    @pytest.mark.asyncio
    async def test_invite_sent_when_unregistered(self, registry, gateway, snapshot):
        result = await registry.share("user-1", "555-0100", snapshot, recipient_name="Sam")

        assert result.invite_sent
        assert gateway.messages == [{
            "phone_number": "555-0100",
            "text": "Hey Sam! I'd like to share my Spackl calendar with you. Click here to accept: [App Link]",
        }]

        await registry.share("user-1", "555-0100", snapshot)
        assert len(gateway.messages) == 1, "再共有では招待を再送しないべき"

    @pytest.mark.asyncio
    async def test_invite_keeps_country_code(self, registry, gateway, snapshot):
        result = await registry.share("user-1", " +1 (818) 481-0612 ", snapshot)

        assert result.grant.recipient_key == "8184810612"
        assert gateway.messages[0]["phone_number"] == "+1 (818) 481-0612", "SMSの宛先は入力された番号のまま送るべき"

    @pytest.mark.asyncio
    async def test_no_invite_for_registered_recipient(self, registry, remote, gateway, snapshot):
        await UserDirectory(remote).register("user-2", "+1 818 481 0612", "Bo")

        result = await registry.share("user-1", "818-481-0612", snapshot)

        assert not result.invite_sent
        assert gateway.messages == []

    @pytest.mark.asyncio
    async def test_invite_defaults_name(self, registry, gateway, snapshot):
        await registry.share("user-1", "555-0100", snapshot)
        assert gateway.messages[0]["text"].startswith("Hey there!")

    @pytest.mark.asyncio
    async def test_invite_failure_is_warning(self, remote, snapshot):
        failing = LoggingGateway()
        failing.send = AsyncMock(side_effect=TransportError("SMS gateway down"))
        registry = SharingRegistry(remote, failing)

        result = await registry.share("user-1", "555-0100", snapshot)

        assert result.created and not result.invite_sent
        assert [w.operation for w in result.warnings] == ["share_invite"]
        assert len(await registry.list_grants("555-0100")) == 1


class TestAcceptReject:
    """承認・拒否のテスト"""

    @pytest.mark.asyncio
    async def test_accept_imports_snapshot(self, registry, local, snapshot):
        await registry.share("user-1", "555-0100", snapshot)

        result = await registry.accept("555-0100", "user-1")

        assert result.grant.status == GrantStatus.ACCEPTED
        assert result.imported == 2
        assert sorted(e.title for e in local.events.values()) == ["Dentist", "Yoga"]

    @pytest.mark.asyncio
    async def test_import_failure_keeps_acceptance(self, remote, gateway, snapshot):
        read_only = InMemoryCalendarProvider(calendars=[
            LocalCalendar(id="holidays", title="Holidays", is_primary=True, is_writable=False)
        ])
        registry = SharingRegistry(remote, gateway, local=read_only)
        await registry.share("user-1", "555-0100", snapshot)

        result = await registry.accept("555-0100", "user-1")

        assert result.grant.status == GrantStatus.ACCEPTED, "取り込み失敗でも承認は維持されるべき"
        assert result.imported == 0
        assert len(result.import_errors) == 1

    @pytest.mark.asyncio
    async def test_reject_and_missing_grant(self, registry, snapshot):
        await registry.share("user-1", "555-0100", snapshot)

        grant = await registry.reject("555-0100", "user-1")
        assert grant.status == GrantStatus.REJECTED

        with pytest.raises(NotFound):
            await registry.accept("555-0100", "user-9")


class TestUnshare:
    """共有解除のテスト"""

    @pytest.mark.asyncio
    async def test_last_grant_removes_container(self, registry, remote, snapshot):
        await registry.share("user-1", "555-0100", snapshot)
        await registry.share("user-2", "555-0100", snapshot)

        await registry.unshare("user-1", "555-0100")
        assert [g.sharer_id for g in await registry.list_grants("555-0100")] == ["user-2"]

        await registry.unshare("user-2", "555-0100")
        assert await remote.get(Collections.SHARED_CALENDARS, "5550100") is None

    @pytest.mark.asyncio
    async def test_unshare_missing_grant(self, registry):
        with pytest.raises(NotFound):
            await registry.unshare("user-1", "555-0100")


class TestStatusCheck:
    """共有ステータス確認とリトライ予算のテスト"""

    @pytest.fixture
    def down_remote(self):
        remote = AsyncMock(spec=RemoteStore)
        remote.get.side_effect = TransportError("Remote unreachable")
        return remote

    @pytest.mark.asyncio
    async def test_shared_and_not_shared(self, registry, snapshot):
        await registry.share("user-1", "555-0100", snapshot)

        shared = await registry.check_status("555-0100", "user-1")
        assert shared.status == ShareCheckStatus.SHARED
        assert shared.grant.sharer_id == "user-1"

        other = await registry.check_status("555-0100", "user-2")
        assert other.status == ShareCheckStatus.NOT_SHARED

    @pytest.mark.asyncio
    async def test_retry_budget_stops_calling_transport(self, down_remote, gateway):
        registry = SharingRegistry(down_remote, gateway, retry_policy=RetryPolicy(max_attempts=3))

        results = [await registry.check_status("555-0100", "user-1") for _ in range(3)]
        assert [r.status for r in results] == [ShareCheckStatus.ERROR] * 3
        assert [r.attempts for r in results] == [1, 2, 3]
        assert results[0].can_retry

        fourth = await registry.check_status("555-0100", "user-1")
        assert fourth.status == ShareCheckStatus.MAX_RETRIES_REACHED
        assert down_remote.get.await_count == 3, "予算切れ後は通信しないべき"

        registry.reset_status_retries("555-0100", "user-1")
        again = await registry.check_status("555-0100", "user-1")
        assert again.status == ShareCheckStatus.ERROR
        assert down_remote.get.await_count == 4

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, remote, gateway, snapshot):
        registry = SharingRegistry(remote, gateway, retry_policy=RetryPolicy(max_attempts=3))
        await registry.share("user-1", "555-0100", snapshot)
        original_get = remote.get
        remote.get = AsyncMock(side_effect=TransportError("Remote unreachable"))
        await registry.check_status("555-0100", "user-1")
        await registry.check_status("555-0100", "user-1")
        remote.get = original_get

        assert (await registry.check_status("555-0100", "user-1")).status == ShareCheckStatus.SHARED
        assert registry.retries.attempts(("user-1", "5550100")) == 0

    @pytest.mark.asyncio
    async def test_until_settled_stops_at_budget(self, down_remote, gateway):
        registry = SharingRegistry(down_remote, gateway, retry_policy=RetryPolicy(max_attempts=3, delay_seconds=0))

        result = await registry.check_status_until_settled("555-0100", "user-1")

        assert result.status == ShareCheckStatus.MAX_RETRIES_REACHED
        assert down_remote.get.await_count == 3

    @pytest.mark.asyncio
    async def test_refresh_statuses_per_contact(self, registry, snapshot):
        await registry.share("user-1", "555-0100", snapshot)

        statuses = await registry.refresh_statuses("user-1", ["555-0100", "818-481-0612", "n/a"])

        assert statuses["555-0100"].status == ShareCheckStatus.SHARED
        assert statuses["818-481-0612"].status == ShareCheckStatus.NOT_SHARED
        assert statuses["n/a"].status == ShareCheckStatus.ERROR, "不正な番号はエラー結果になるべき"
