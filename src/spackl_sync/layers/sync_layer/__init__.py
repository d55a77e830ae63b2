"""
同期層 - イベントストア・競合解決・リコンシリエーション
"""

from .conflict_resolver import ConflictResolver, Resolution, TiePolicy, TIE_POLICY
from .event_store import EventStore
from .reconciliation import ReconciliationEngine

__all__ = [
    'ConflictResolver', 'Resolution', 'TiePolicy', 'TIE_POLICY',
    'EventStore', 'ReconciliationEngine'
]
