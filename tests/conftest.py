"""
テスト共通フィクスチャ
"""

from datetime import timedelta

import pytest

from spackl_sync.app import build_services
from spackl_sync.config.settings import AppConfig, StorageConfig, SyncConfig
from spackl_sync.core.context import SessionContext
from spackl_sync.core.models import utcnow
from spackl_sync.layers.providers import InMemoryCalendarProvider, LoggingGateway, SQLiteDocumentStore


@pytest.fixture
def app_config(tmp_path):
    """一時ディレクトリを使う設定"""
    return AppConfig(
        sync=SyncConfig(call_timeout_seconds=5.0),
        storage=StorageConfig(
            remote_db_path=str(tmp_path / "remote.db"),
            cache_db_path=str(tmp_path / "offline_cache.db"),
            local_provider="memory",
            local_calendar_dir=str(tmp_path / "calendars"),
        ),
    )


@pytest.fixture
async def remote(tmp_path):
    store = SQLiteDocumentStore(tmp_path / "remote.db")
    await store.initialize()
    return store


@pytest.fixture
def local():
    return InMemoryCalendarProvider()


@pytest.fixture
def gateway():
    return LoggingGateway()


@pytest.fixture
async def services(app_config, local, remote, gateway):
    """インメモリのローカルカレンダーとSQLiteリモートで組み立てたサービス一式"""
    built = build_services(app_config, {}, local=local, remote=remote, messaging=gateway)
    await built.initialize()
    return built


@pytest.fixture
def ctx():
    return SessionContext(user_id="user-1", display_name="Alex", phone_number="555-0199")


@pytest.fixture
def base_time():
    """同期ウィンドウ内の基準時刻（明日の正時）"""
    return utcnow().replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
