"""セッションコンテキスト"""

from dataclasses import dataclass
from typing import Optional

from .errors import ValidationError


@dataclass(frozen=True)
class SessionContext:
    """操作ごとに明示的に渡す認証済みユーザー情報"""
    user_id: str
    display_name: Optional[str] = None
    phone_number: Optional[str] = None

    def __post_init__(self):
        if not self.user_id:
            raise ValidationError("User ID is required")
