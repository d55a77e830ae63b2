"""
招待層 - 参加者ごとの招待レコード管理
"""

from .router import InvitationRouter, InvitationResult

__all__ = ['InvitationRouter', 'InvitationResult']
