"""
招待ルーター - イベントの参加者ごとに受信者キー単位の招待レコードを展開・更新・撤回する
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from ...core.errors import NotFound, SyncError
from ...core.models import (
    Attendee, AttendeeStatus, Event, InvitationRecord, SideEffectFailure,
    to_iso, utcnow
)
from ...core.normalize import recipient_key as make_recipient_key
from ...utils.concurrency import KeyedLock, bounded_call
from ..providers.remote_store import Collections, RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class InvitationResult:
    """招待操作の結果"""
    recipients: List[str] = field(default_factory=list)
    skipped: int = 0
    failures: List[SideEffectFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: "InvitationResult") -> "InvitationResult":
        self.recipients.extend(r for r in other.recipients if r not in self.recipients)
        self.skipped += other.skipped
        self.failures.extend(other.failures)
        return self


def _addressable(attendees: Iterable[Attendee]) -> Dict[str, Attendee]:
    """受信者キー → 参加者（同じキーは1件にまとめる）"""
    keyed: Dict[str, Attendee] = {}
    for attendee in attendees:
        key = attendee.recipient_key
        if key and key not in keyed:
            keyed[key] = attendee
    return keyed


class InvitationRouter:
    """招待ルーター"""

    def __init__(self, remote: RemoteStore, call_timeout: float = 15.0,
                 locks: Optional[KeyedLock] = None):
        self.remote = remote
        self.call_timeout = call_timeout
        self.locks = locks or KeyedLock()

    async def fan_out(self, event: Event, organizer_name: Optional[str] = None) -> InvitationResult:
        """電話番号を持つ参加者ごとに招待レコードをupsert"""
        result = InvitationResult()
        keyed = _addressable(event.attendees)
        result.skipped = sum(1 for a in event.attendees if not a.recipient_key)

        for key in keyed:
            try:
                await self._upsert(key, event, organizer_name)
                result.recipients.append(key)
            except SyncError as e:
                logger.warning(f"Failed to create invitation for {key}: {e}")
                result.failures.append(SideEffectFailure.from_exception("invitation_fan_out", e, key))

        if result.skipped:
            logger.info(f"Skipped {result.skipped} attendees without phone number for event {event.id}")
        logger.info(f"Invitations fanned out for event {event.id}: {len(result.recipients)} recipients")
        return result

    async def propagate_update(self, event: Event, organizer_name: Optional[str] = None,
                               previous_attendees: Optional[List[Attendee]] = None) -> InvitationResult:
        """既存の招待の表示フィールドを更新（新しい参加者には作成、外れた参加者からは撤回）"""
        result = await self.fan_out(event, organizer_name)

        if previous_attendees:
            current = set(_addressable(event.attendees))
            dropped = [a for k, a in _addressable(previous_attendees).items() if k not in current]
            if dropped:
                result.merge(await self.retract(event.id, dropped))

        return result

    async def retract(self, event_id: str, attendees: List[Attendee]) -> InvitationResult:
        """参加者の招待リストからイベントの招待を削除"""
        result = InvitationResult()
        keyed = _addressable(attendees)
        result.skipped = sum(1 for a in attendees if not a.recipient_key)

        for key in keyed:
            try:
                if await self._remove(key, event_id):
                    result.recipients.append(key)
            except SyncError as e:
                logger.warning(f"Failed to retract invitation for {key}: {e}")
                result.failures.append(SideEffectFailure.from_exception("invitation_retract", e, key))

        logger.info(f"Invitations retracted for event {event_id}: {len(result.recipients)} recipients")
        return result

    async def update_status(self, recipient_key: str, event_id: str,
                            status: Union[str, AttendeeStatus]) -> InvitationRecord:
        """受信者によるRSVP（どの状態からどの状態へも遷移可能）"""
        key = make_recipient_key(recipient_key)
        new_status = AttendeeStatus.parse(status)

        async with self.locks.hold((Collections.INVITATIONS, key)):
            container = await self._get_container(key)
            records = self._records(container)

            record = next((r for r in records if r.event_id == event_id), None)
            if record is None:
                raise NotFound(f"No invitation for event {event_id} under {key}", operation="update_status")

            record.status = new_status
            record.updated_at = utcnow()
            await self._put_container(key, records)

        logger.info(f"Invitation status updated: {key}/{event_id} -> {new_status.value}")
        return record

    async def list_invitations(self, identifier: str) -> List[InvitationRecord]:
        """電話番号またはメールアドレス宛ての招待一覧"""
        key = make_recipient_key(identifier)
        container = await self._get_container(key)
        return sorted(self._records(container), key=lambda r: r.start_time)

    async def _upsert(self, key: str, event: Event, organizer_name: Optional[str]):
        async with self.locks.hold((Collections.INVITATIONS, key)):
            container = await self._get_container(key)
            records = self._records(container)
            now = utcnow()

            existing = next((r for r in records if r.event_id == event.id), None)
            if existing:
                existing.refresh_snapshot(event, organizer_name, now)
            else:
                records.append(InvitationRecord(
                    id=uuid.uuid4().hex,
                    event_id=event.id,
                    recipient_key=key,
                    title=event.title,
                    start_time=event.start_time,
                    end_time=event.end_time,
                    location=event.location,
                    organizer_name=organizer_name,
                    organizer_id=event.owner_id,
                    status=AttendeeStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                ))

            await self._put_container(key, records)

    async def _remove(self, key: str, event_id: str) -> bool:
        async with self.locks.hold((Collections.INVITATIONS, key)):
            container = await self._get_container(key)
            if container is None:
                return False

            records = self._records(container)
            remaining = [r for r in records if r.event_id != event_id]
            if len(remaining) == len(records):
                return False

            if remaining:
                await self._put_container(key, remaining)
            else:
                # 空のコンテナは残さない
                await bounded_call(
                    self.remote.delete(Collections.INVITATIONS, key),
                    self.call_timeout, "invitation_delete_container"
                )
            return True

    async def _get_container(self, key: str) -> Optional[dict]:
        return await bounded_call(
            self.remote.get(Collections.INVITATIONS, key),
            self.call_timeout, "invitation_get"
        )

    async def _put_container(self, key: str, records: List[InvitationRecord]):
        await bounded_call(
            self.remote.set(Collections.INVITATIONS, key, {
                'recipientKey': key,
                'invitations': [r.to_document() for r in records],
                'updatedAt': to_iso(utcnow()),
            }),
            self.call_timeout, "invitation_put"
        )

    @staticmethod
    def _records(container: Optional[dict]) -> List[InvitationRecord]:
        if not container:
            return []
        return [InvitationRecord.from_document(d) for d in container.get('invitations') or []]
