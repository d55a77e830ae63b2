"""受信者キーの正規化"""

import re
from typing import Optional

from .errors import ValidationError

_NON_DIGITS = re.compile(r"\D")
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_phone(phone: Optional[str]) -> str:
    """電話番号を数字のみのキーに変換

    11桁で先頭が1（北米の国番号）の場合は国番号を落とす。
    "+1 (818) 481-0612" / "818-481-0612" / "8184810612" はすべて "8184810612"。
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if not digits:
        raise ValidationError(f"Invalid phone number: {phone!r}")
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits


def normalize_email(email: Optional[str]) -> str:
    """メールアドレスを小文字キーに変換"""
    value = (email or "").strip().lower()
    if not is_valid_email(value):
        raise ValidationError(f"Invalid email: {email!r}")
    return value


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(_EMAIL_PATTERN.match(email))


def recipient_key(identifier: str) -> str:
    """電話番号またはメールアドレスから受信者キーを生成"""
    if "@" in (identifier or ""):
        return normalize_email(identifier)
    return normalize_phone(identifier)
