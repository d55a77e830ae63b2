"""
spackl-sync - 端末カレンダーと共有リモートストアの双方向同期
招待の展開とカレンダー共有を含む
"""

__version__ = "1.0.0"
