"""
共有レジストリ - ユーザー間のカレンダー共有グラント管理
受信者キー（正規化電話番号）ごとのコンテナに共有者IDごとのグラントを保持する
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from ...core.errors import ErrorKind, NotFound, SyncError, TransportError
from ...core.models import (
    Event, EventSummary, GrantStatus, SharingGrant, SideEffectFailure, to_iso, utcnow
)
from ...core.normalize import normalize_phone
from ...utils.concurrency import KeyedLock, bounded_call
from ..providers.local_calendar import LocalCalendarProvider, LocalEventFields
from ..providers.messaging import MessagingGateway
from ..providers.remote_store import Collections, RemoteStore
from ..sync_layer.event_store import pick_calendar
from .retry_policy import RetryPolicy, RetryTracker
from .user_directory import UserDirectory

logger = logging.getLogger(__name__)

DEFAULT_INVITE_TEMPLATE = (
    "Hey {name}! I'd like to share my Spackl calendar with you. "
    "Click here to accept: {link}"
)

SnapshotItem = Union[EventSummary, Event, Dict[str, Any]]


class ShareCheckStatus(Enum):
    """共有ステータス確認の結果"""
    SHARED = "shared"
    NOT_SHARED = "not_shared"
    ERROR = "error"                              # 通信障害（再試行可能）
    MAX_RETRIES_REACHED = "max_retries_reached"  # リトライ予算切れ


@dataclass
class ShareCheckResult:
    """ステータス確認結果"""
    status: ShareCheckStatus
    recipient_key: str
    sharer_id: Optional[str] = None
    grants: List[SharingGrant] = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None

    @property
    def grant(self) -> Optional[SharingGrant]:
        return self.grants[0] if self.grants else None

    @property
    def can_retry(self) -> bool:
        return self.status == ShareCheckStatus.ERROR


@dataclass
class ShareResult:
    """共有結果"""
    grant: SharingGrant
    created: bool
    invite_sent: bool = False
    warnings: List[SideEffectFailure] = field(default_factory=list)


@dataclass
class AcceptResult:
    """承認結果（インポート失敗は承認を取り消さない）"""
    grant: SharingGrant
    imported: int = 0
    import_errors: List[SideEffectFailure] = field(default_factory=list)


def _to_summary(item: SnapshotItem) -> EventSummary:
    if isinstance(item, EventSummary):
        return item
    if isinstance(item, Event):
        return item.summary()
    return EventSummary.from_dict(item)


class SharingRegistry:
    """共有レジストリ"""

    def __init__(self,
                 remote: RemoteStore,
                 messaging: MessagingGateway,
                 directory: Optional[UserDirectory] = None,
                 local: Optional[LocalCalendarProvider] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 call_timeout: float = 15.0,
                 invite_template: str = DEFAULT_INVITE_TEMPLATE,
                 app_link: str = "[App Link]",
                 locks: Optional[KeyedLock] = None):
        self.remote = remote
        self.messaging = messaging
        self.directory = directory or UserDirectory(remote, call_timeout)
        self.local = local
        self.retry_policy = retry_policy or RetryPolicy()
        self.retries = RetryTracker(self.retry_policy)
        self.call_timeout = call_timeout
        self.invite_template = invite_template
        self.app_link = app_link
        self.locks = locks or KeyedLock()

    async def share(self,
                    sharer_id: str,
                    recipient_phone: str,
                    events_snapshot: Sequence[SnapshotItem],
                    device_info: Optional[Dict[str, Any]] = None,
                    sharer_name: Optional[str] = None,
                    recipient_name: Optional[str] = None) -> ShareResult:
        """共有（同じ組み合わせはupsert、status と shared_at は維持）"""
        key = normalize_phone(recipient_phone)
        snapshot = [_to_summary(item) for item in events_snapshot]

        async with self.locks.hold((Collections.SHARED_CALENDARS, key)):
            grants = await self._get_grants(key)
            now = utcnow()

            existing = grants.get(sharer_id)
            if existing:
                existing.events_snapshot = snapshot
                existing.last_updated = now
                if device_info is not None:
                    existing.device_info = dict(device_info)
                if sharer_name:
                    existing.sharer_name = sharer_name
                grant = existing
            else:
                grant = SharingGrant(
                    sharer_id=sharer_id,
                    recipient_key=key,
                    status=GrantStatus.ACTIVE,
                    shared_at=now,
                    last_updated=now,
                    events_snapshot=snapshot,
                    device_info=dict(device_info or {}),
                    sharer_name=sharer_name,
                )
                grants[sharer_id] = grant

            await self._put_grants(key, grants)

        result = ShareResult(grant=grant, created=existing is None)
        logger.info(
            f"Calendar {'shared' if result.created else 'share refreshed'}: "
            f"{sharer_id} -> {key} ({len(snapshot)} events)"
        )

        if result.created:
            await self._send_invite_if_unregistered(key, recipient_phone.strip(), recipient_name, result)

        return result

    async def accept(self, recipient_key: str, sharer_id: str) -> AcceptResult:
        """承認し、スナップショットをローカルカレンダーへ取り込む（ベストエフォート）"""
        grant = await self._transition(recipient_key, sharer_id, GrantStatus.ACCEPTED)
        result = AcceptResult(grant=grant)

        if self.local is None or not grant.events_snapshot:
            return result

        try:
            calendar = await pick_calendar(self.local, self.call_timeout)
        except SyncError as e:
            logger.warning(f"Cannot import shared events from {sharer_id}: {e}")
            result.import_errors.append(SideEffectFailure.from_exception("share_import", e))
            return result

        for summary in grant.events_snapshot:
            try:
                await bounded_call(
                    self.local.create_event(calendar.id, LocalEventFields.from_event(summary)),
                    self.call_timeout, "share_import"
                )
                result.imported += 1
            except SyncError as e:
                logger.warning(f"Failed to import shared event {summary.id}: {e}")
                result.import_errors.append(SideEffectFailure.from_exception("share_import", e, summary.id))

        logger.info(f"Imported {result.imported}/{len(grant.events_snapshot)} shared events from {sharer_id}")
        return result

    async def reject(self, recipient_key: str, sharer_id: str) -> SharingGrant:
        return await self._transition(recipient_key, sharer_id, GrantStatus.REJECTED)

    async def unshare(self, sharer_id: str, recipient_phone: str) -> None:
        """グラントを削除（最後の1件ならコンテナごと削除）"""
        key = normalize_phone(recipient_phone)

        async with self.locks.hold((Collections.SHARED_CALENDARS, key)):
            grants = await self._get_grants(key)
            if sharer_id not in grants:
                raise NotFound(f"No grant from {sharer_id} to {key}", operation="unshare")

            del grants[sharer_id]
            if grants:
                await self._put_grants(key, grants)
            else:
                await bounded_call(
                    self.remote.delete(Collections.SHARED_CALENDARS, key),
                    self.call_timeout, "share_delete_container"
                )

        self.retries.reset((sharer_id, key))
        logger.info(f"Calendar unshared: {sharer_id} -> {key}")

    async def list_grants(self, recipient_phone: str) -> List[SharingGrant]:
        key = normalize_phone(recipient_phone)
        return list((await self._get_grants(key)).values())

    async def check_status(self, recipient_phone: str,
                           sharer_id: Optional[str] = None) -> ShareCheckResult:
        """共有状態の確認（連続失敗がリトライ予算に達したら通信せずに終端状態を返す）"""
        key = normalize_phone(recipient_phone)
        retry_key = (sharer_id, key)

        if self.retries.is_exhausted(retry_key):
            return ShareCheckResult(
                status=ShareCheckStatus.MAX_RETRIES_REACHED,
                recipient_key=key,
                sharer_id=sharer_id,
                attempts=self.retries.attempts(retry_key),
                error="Maximum retry attempts reached",
            )

        try:
            grants = await self._get_grants(key)
        except TransportError as e:
            attempts = self.retries.record_failure(retry_key)
            logger.warning(f"Share status check failed for {key} (attempt {attempts}): {e}")
            return ShareCheckResult(
                status=ShareCheckStatus.ERROR,
                recipient_key=key,
                sharer_id=sharer_id,
                attempts=attempts,
                error=str(e),
            )

        self.retries.reset(retry_key)

        if sharer_id is not None:
            found = [grants[sharer_id]] if sharer_id in grants else []
        else:
            found = list(grants.values())

        return ShareCheckResult(
            status=ShareCheckStatus.SHARED if found else ShareCheckStatus.NOT_SHARED,
            recipient_key=key,
            sharer_id=sharer_id,
            grants=found,
        )

    async def check_status_until_settled(self, recipient_phone: str,
                                         sharer_id: Optional[str] = None) -> ShareCheckResult:
        """固定間隔で再試行し、成功またはリトライ予算切れで返す"""
        while True:
            result = await self.check_status(recipient_phone, sharer_id)
            if result.status != ShareCheckStatus.ERROR:
                return result
            await asyncio.sleep(self.retry_policy.delay_seconds)

    def reset_status_retries(self, recipient_phone: str, sharer_id: Optional[str] = None):
        """手動リトライ用にリトライ予算をリセット"""
        self.retries.reset((sharer_id, normalize_phone(recipient_phone)))

    async def refresh_statuses(self, sharer_id: str,
                               phones: Sequence[str]) -> Dict[str, ShareCheckResult]:
        """連絡先ごとのステータス確認を並行実行"""
        results = await asyncio.gather(
            *(self.check_status(phone, sharer_id) for phone in phones),
            return_exceptions=True
        )

        statuses: Dict[str, ShareCheckResult] = {}
        for phone, result in zip(phones, results):
            if isinstance(result, SyncError):
                statuses[phone] = ShareCheckResult(
                    status=ShareCheckStatus.ERROR,
                    recipient_key="",
                    sharer_id=sharer_id,
                    error=str(result),
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                statuses[phone] = result
        return statuses

    async def _transition(self, recipient: str, sharer_id: str, status: GrantStatus) -> SharingGrant:
        key = normalize_phone(recipient)

        async with self.locks.hold((Collections.SHARED_CALENDARS, key)):
            grants = await self._get_grants(key)
            grant = grants.get(sharer_id)
            if grant is None:
                raise NotFound(f"No grant from {sharer_id} to {key}", operation=f"share_{status.value}")

            grant.status = status
            grant.last_updated = utcnow()
            await self._put_grants(key, grants)

        logger.info(f"Share {status.value}: {sharer_id} -> {key}")
        return grant

    async def _send_invite_if_unregistered(self, key: str, phone: str,
                                           recipient_name: Optional[str], result: ShareResult):
        """未登録の共有先にのみ招待SMSを送信（宛先は入力された番号のまま）"""
        try:
            registered = await self.directory.is_registered(key)
        except SyncError as e:
            logger.warning(f"Could not check registration of {key}, invite not sent: {e}")
            result.warnings.append(SideEffectFailure.from_exception("share_invite", e, key))
            return

        if registered:
            return

        text = self.invite_template.format(name=recipient_name or "there", link=self.app_link)
        try:
            sent = await bounded_call(self.messaging.send(phone, text), self.call_timeout, "share_invite")
        except SyncError as e:
            logger.warning(f"Invite message to {key} failed: {e}")
            result.warnings.append(SideEffectFailure.from_exception("share_invite", e, key))
            return

        if sent.is_successful():
            result.invite_sent = True
        else:
            logger.warning(f"Invite message to {key} failed: {sent.error_message}")
            result.warnings.append(SideEffectFailure(
                operation="share_invite",
                kind=ErrorKind.TRANSPORT,
                message=sent.error_message or "send failed",
                target=key,
            ))

    async def _get_grants(self, key: str) -> Dict[str, SharingGrant]:
        container = await bounded_call(
            self.remote.get(Collections.SHARED_CALENDARS, key),
            self.call_timeout, "share_get"
        )
        if not container:
            return {}
        return {
            sharer_id: SharingGrant.from_document(data)
            for sharer_id, data in (container.get('grants') or {}).items()
        }

    async def _put_grants(self, key: str, grants: Dict[str, SharingGrant]):
        await bounded_call(
            self.remote.set(Collections.SHARED_CALENDARS, key, {
                'recipientKey': key,
                'grants': {sharer_id: g.to_document() for sharer_id, g in grants.items()},
                'updatedAt': to_iso(utcnow()),
            }),
            self.call_timeout, "share_put"
        )
