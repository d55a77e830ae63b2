"""
サービス組み立て - 設定から各コンポーネントを生成して配線する
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .config.settings import AppConfig
from .core.errors import ValidationError
from .layers.cache_layer import OfflineCache, PendingWriteQueue
from .layers.invitation_layer import InvitationRouter
from .layers.providers import (
    IcsDirectoryCalendarProvider, InMemoryCalendarProvider, LocalCalendarProvider,
    LoggingGateway, MessagingGateway, RemoteStore, SQLiteDocumentStore, WebhookSmsGateway
)
from .layers.sharing_layer import RetryPolicy, SharingRegistry, UserDirectory
from .layers.sync_layer import ConflictResolver, EventStore, ReconciliationEngine
from .utils.concurrency import KeyedLock

logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    """配線済みサービス一式"""
    config: AppConfig
    local: LocalCalendarProvider
    remote: RemoteStore
    messaging: MessagingGateway
    cache: OfflineCache
    pending: PendingWriteQueue
    router: InvitationRouter
    store: EventStore
    engine: ReconciliationEngine
    directory: UserDirectory
    registry: SharingRegistry

    async def initialize(self):
        """ストレージのテーブル作成"""
        if isinstance(self.remote, SQLiteDocumentStore):
            await self.remote.initialize()
        await self.cache.initialize()
        await self.pending.initialize()


def build_local_provider(config: AppConfig) -> LocalCalendarProvider:
    provider = config.storage.local_provider
    if provider == "ics":
        return IcsDirectoryCalendarProvider(Path(config.storage.local_calendar_dir))
    if provider == "memory":
        return InMemoryCalendarProvider()
    raise ValidationError(f"Unknown local provider: {provider}")


def build_messaging(config: AppConfig, secrets: Dict[str, Any]) -> MessagingGateway:
    messaging = config.messaging
    if messaging.enabled and messaging.webhook_url:
        return WebhookSmsGateway(
            webhook_url=messaging.webhook_url,
            api_token=secrets.get('SPACKL_SMS_API_TOKEN'),
            sender=secrets.get('SPACKL_SMS_SENDER'),
            rate_limit_per_minute=messaging.rate_limit_per_minute,
            timeout_seconds=messaging.timeout_seconds,
        )

    if messaging.enabled:
        logger.warning("Messaging enabled but no webhook_url configured, falling back to log output")
    return LoggingGateway()


def build_services(config: AppConfig,
                   secrets: Optional[Dict[str, Any]] = None,
                   local: Optional[LocalCalendarProvider] = None,
                   remote: Optional[RemoteStore] = None,
                   messaging: Optional[MessagingGateway] = None) -> SyncServices:
    """設定からサービスを組み立てる（各プロバイダーは差し替え可能）"""
    secrets = secrets or {}
    timeout = config.sync.call_timeout_seconds

    local = local or build_local_provider(config)
    remote = remote or SQLiteDocumentStore(config.storage.remote_db_path)
    messaging = messaging or build_messaging(config, secrets)

    cache = OfflineCache(config.storage.cache_db_path)
    pending = PendingWriteQueue(config.storage.cache_db_path)

    # EventStore とリコンシリエーションで同じイベント単位ロックを共有する
    event_locks = KeyedLock()

    router = InvitationRouter(remote, call_timeout=timeout)
    store = EventStore(
        local, remote, router,
        pending=pending,
        cache=cache,
        call_timeout=timeout,
        locks=event_locks,
        window_past_days=config.sync.window_past_days,
        window_future_days=config.sync.window_future_days,
    )
    engine = ReconciliationEngine(
        local, remote,
        cache=cache,
        pending=pending,
        router=router,
        resolver=ConflictResolver(),
        call_timeout=timeout,
        locks=event_locks,
        window_past_days=config.sync.window_past_days,
        window_future_days=config.sync.window_future_days,
    )
    directory = UserDirectory(remote, call_timeout=timeout)
    registry = SharingRegistry(
        remote, messaging,
        directory=directory,
        local=local,
        retry_policy=RetryPolicy(
            max_attempts=config.sharing.max_status_attempts,
            delay_seconds=config.sharing.status_retry_delay_seconds,
        ),
        call_timeout=timeout,
        invite_template=config.sharing.invite_template,
        app_link=config.sharing.app_link,
    )

    logger.info(f"Services built (local={type(local).__name__}, messaging={type(messaging).__name__})")
    return SyncServices(
        config=config,
        local=local,
        remote=remote,
        messaging=messaging,
        cache=cache,
        pending=pending,
        router=router,
        store=store,
        engine=engine,
        directory=directory,
        registry=registry,
    )
