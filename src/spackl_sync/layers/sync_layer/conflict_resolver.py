"""
競合解決システム - リモート記録とローカルカレンダーの対応イベント間の競合を解決
判定に使うのは last_modified のみ
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ...core.models import Event, ensure_aware
from ..providers.local_calendar import LocalEvent

logger = logging.getLogger(__name__)


class TiePolicy(Enum):
    """last_modified が同一の場合の勝者"""
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"


# last_modified が同一ならローカルを残す
TIE_POLICY = TiePolicy.LOCAL_WINS


class Resolution(Enum):
    """解決結果"""
    REMOTE_WINS = "remote_wins"    # ローカルをリモートの値で上書き
    LOCAL_WINS = "local_wins"      # ローカルをそのまま残す


class ConflictType(Enum):
    """競合タイプ"""
    TITLE_CONFLICT = "title_conflict"
    TIME_CONFLICT = "time_conflict"
    LOCATION_CONFLICT = "location_conflict"
    NOTES_CONFLICT = "notes_conflict"


@dataclass
class ConflictItem:
    """競合項目"""
    field_name: str
    local_value: Any
    remote_value: Any
    conflict_type: ConflictType

    def __str__(self) -> str:
        return f"{self.field_name}: local='{self.local_value}' vs remote='{self.remote_value}'"


@dataclass
class EventConflict:
    """対応イベント1組の比較結果"""
    event_id: str
    local_ref: str
    resolution: Resolution
    remote_modified: datetime
    local_modified: Optional[datetime]
    conflicts: List[ConflictItem] = field(default_factory=list)

    @property
    def has_differences(self) -> bool:
        return bool(self.conflicts)

    def summary(self) -> str:
        return (f"Event {self.event_id}: {self.resolution.value} "
                f"({len(self.conflicts)} differing fields)")


class ConflictResolver:
    """競合解決エンジン"""

    def __init__(self, tie_policy: TiePolicy = TIE_POLICY):
        self.tie_policy = tie_policy

        # 統計情報
        self.pairs_evaluated = 0
        self.remote_wins = 0
        self.local_wins = 0
        self.ties = 0

    def decide(self, remote: Event, local: LocalEvent) -> Resolution:
        """リモートが厳密に新しい場合のみリモートの勝ち"""
        remote_modified = ensure_aware(remote.last_modified)

        # ローカル側の更新時刻が取れない場合はリモートを採用
        if local.last_modified is None:
            return Resolution.REMOTE_WINS

        local_modified = ensure_aware(local.last_modified)

        if remote_modified > local_modified:
            return Resolution.REMOTE_WINS
        if remote_modified < local_modified:
            return Resolution.LOCAL_WINS

        self.ties += 1
        if self.tie_policy == TiePolicy.REMOTE_WINS:
            return Resolution.REMOTE_WINS
        return Resolution.LOCAL_WINS

    def evaluate(self, remote: Event, local: LocalEvent) -> EventConflict:
        """判定と差分フィールドの検出"""
        resolution = self.decide(remote, local)
        conflict = EventConflict(
            event_id=remote.id,
            local_ref=local.ref,
            resolution=resolution,
            remote_modified=remote.last_modified,
            local_modified=local.last_modified,
            conflicts=self.compare(remote, local),
        )

        self.pairs_evaluated += 1
        if resolution == Resolution.REMOTE_WINS:
            self.remote_wins += 1
        else:
            self.local_wins += 1

        if conflict.has_differences:
            logger.debug(conflict.summary())
        return conflict

    def compare(self, remote: Event, local: LocalEvent) -> List[ConflictItem]:
        """表示フィールドの差分"""
        items = []

        if (remote.title or '').strip() != (local.title or '').strip():
            items.append(ConflictItem("title", local.title, remote.title, ConflictType.TITLE_CONFLICT))

        for name in ('start_time', 'end_time'):
            remote_value = ensure_aware(getattr(remote, name))
            local_value = ensure_aware(getattr(local, name))
            if remote_value != local_value:
                items.append(ConflictItem(name, local_value, remote_value, ConflictType.TIME_CONFLICT))

        if (remote.location or '') != (local.location or ''):
            items.append(ConflictItem("location", local.location, remote.location,
                                      ConflictType.LOCATION_CONFLICT))

        if (remote.notes or '') != (local.notes or ''):
            items.append(ConflictItem("notes", local.notes, remote.notes, ConflictType.NOTES_CONFLICT))

        return items

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        return {
            "pairs_evaluated": self.pairs_evaluated,
            "remote_wins": self.remote_wins,
            "local_wins": self.local_wins,
            "ties": self.ties,
            "tie_policy": self.tie_policy.value,
        }
