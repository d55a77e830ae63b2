"""イベント入力の検証"""

from datetime import datetime
from typing import Iterable, Optional, Union

from .errors import ValidationError
from .models import Attendee, Event, EventDetails, ensure_aware
from .normalize import is_valid_email

MAX_TITLE_LENGTH = 100
MAX_NOTES_LENGTH = 1000


def validate_event(event: Union[Event, EventDetails]) -> None:
    """保存前の検証。不正な場合はValidationErrorを送出"""
    _validate_fields(
        title=event.title,
        start_time=event.start_time,
        end_time=event.end_time,
        notes=event.notes,
        attendees=event.attendees,
    )


def _validate_fields(title: Optional[str],
                     start_time: Optional[datetime],
                     end_time: Optional[datetime],
                     notes: Optional[str],
                     attendees: Iterable[Attendee]) -> None:
    if not title or not title.strip():
        raise ValidationError("Event title is required")

    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Event title cannot exceed {MAX_TITLE_LENGTH} characters")

    if not isinstance(start_time, datetime):
        raise ValidationError("Valid start date is required")

    if not isinstance(end_time, datetime):
        raise ValidationError("Valid end date is required")

    if ensure_aware(end_time) < ensure_aware(start_time):
        raise ValidationError("End date cannot be before start date")

    if notes and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")

    for index, attendee in enumerate(attendees or [], start=1):
        if attendee.email and not is_valid_email(attendee.email.strip()):
            raise ValidationError(f"Invalid email for attendee {index}")
