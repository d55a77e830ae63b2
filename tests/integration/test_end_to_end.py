"""
エンドツーエンドテスト - 設定からの組み立て・オフライン表示・CLI
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from spackl_sync.app import build_local_provider, build_messaging, build_services
from spackl_sync.cli import main
from spackl_sync.config.settings import AppConfig, ConfigManager, MessagingConfig, StorageConfig
from spackl_sync.core.errors import TransportError, ValidationError
from spackl_sync.core.models import Event, SyncStatus
from spackl_sync.layers.providers import (
    Collections, IcsDirectoryCalendarProvider, LoggingGateway, WebhookSmsGateway
)


class TestOfflineListing:
    """オフライン時の一覧表示"""

    @pytest.mark.asyncio
    async def test_falls_back_to_last_snapshot(self, services, ctx, base_time, remote):
        event = Event(id="ev-1", owner_id="user-1", title="Yoga",
                      start_time=base_time, end_time=base_time + timedelta(hours=1))
        await remote.set(Collections.EVENTS, event.id, event.to_document())
        report = await services.engine.run(ctx)
        assert report.status == SyncStatus.SUCCESS

        online = await services.store.list_events(ctx)
        assert not online.from_cache
        assert [e.id for e in online.events] == ["ev-1"]

        remote.query_events = AsyncMock(side_effect=TransportError("Remote unreachable"))
        offline = await services.store.list_events(ctx)

        assert offline.from_cache, "到達不能時はキャッシュから返すべき"
        assert [e.title for e in offline.events] == ["Yoga"]
        assert offline.cached_at == report.last_sync_timestamp

    @pytest.mark.asyncio
    async def test_no_snapshot_raises(self, services, ctx, remote):
        remote.query_events = AsyncMock(side_effect=TransportError("Remote unreachable"))
        with pytest.raises(TransportError):
            await services.store.list_events(ctx)


class TestBuildServices:
    """設定からの組み立て"""

    def test_provider_selection(self, tmp_path):
        config = AppConfig(storage=StorageConfig(local_calendar_dir=str(tmp_path)))
        assert isinstance(build_local_provider(config), IcsDirectoryCalendarProvider)

        config.storage.local_provider = "exchange"
        with pytest.raises(ValidationError):
            build_local_provider(config)

    def test_messaging_selection(self):
        disabled = AppConfig()
        assert isinstance(build_messaging(disabled, {}), LoggingGateway)

        enabled = AppConfig(messaging=MessagingConfig(enabled=True, webhook_url="https://sms.example.com/send"))
        gateway = build_messaging(enabled, {"SPACKL_SMS_API_TOKEN": "token"})
        assert isinstance(gateway, WebhookSmsGateway)
        assert gateway.api_token == "token"

    @pytest.mark.asyncio
    async def test_shared_event_locks(self, app_config):
        built = build_services(app_config)
        assert built.store.locks is built.engine.locks, "イベント単位ロックは共有されるべき"
        await built.initialize()


class TestCli:
    """CLIのテスト"""

    @pytest.fixture(autouse=True)
    def env(self, tmp_path, monkeypatch):
        for key in list(ConfigManager.ENV_OVERRIDES) + ConfigManager.SECRET_KEYS:
            monkeypatch.delenv(key, raising=False)
        monkeypatch.setenv("SPACKL_LOCAL_PROVIDER", "ics")
        monkeypatch.setenv("SPACKL_CALENDAR_DIR", str(tmp_path / "calendars"))
        monkeypatch.setenv("SPACKL_REMOTE_DB", str(tmp_path / "remote.db"))
        monkeypatch.setenv("SPACKL_CACHE_DB", str(tmp_path / "cache.db"))

    def test_init_config(self, tmp_path):
        assert main(["--config-dir", str(tmp_path / "config"), "--init-config"]) == 0
        assert (tmp_path / "config" / "sync.yaml").exists()

    def test_sync_share_and_status(self, tmp_path, capsys):
        config_dir = str(tmp_path / "config")

        assert main(["--config-dir", config_dir, "sync", "--user", "user-1"]) == 0
        assert "Sync success" in capsys.readouterr().out

        assert main(["--config-dir", config_dir, "share", "--from", "user-1", "--to", "555-0100"]) == 0
        assert "5550100" in capsys.readouterr().out

        assert main(["--config-dir", config_dir, "status", "--to", "555-0100", "--from", "user-1"]) == 0
        assert "5550100: shared" in capsys.readouterr().out

        assert main(["--config-dir", config_dir, "unshare", "--from", "user-1", "--to", "555-0100"]) == 0
        assert main(["--config-dir", config_dir, "unshare", "--from", "user-1", "--to", "555-0100"]) == 1

    def test_cache_requires_user(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["--config-dir", str(tmp_path), "cache"])
