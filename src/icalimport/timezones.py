"""Timezone normalization for incoming events and double-offset repair."""

import logging
from datetime import datetime, timedelta
from typing import Optional

import pytz

from .models import ParsedEvent, StoredEvent, ensure_utc

logger = logging.getLogger(__name__)


def get_timezone(name: Optional[str]):
    """Return the pytz zone for ``name``; None when it is empty or unknown."""
    if not name:
        return None
    try:
        return pytz.timezone(name)
    except pytz.exceptions.UnknownTimeZoneError:
        return None


def normalize_incoming(event: ParsedEvent, target_timezone: str, enabled: bool = True) -> ParsedEvent:
    """Convert start/end of ``event`` into ``target_timezone``.

    All-day events keep their calendar date and are returned unchanged, as
    are events missing either bound or when conversion is disabled.

    Args:
        event: Parsed feed event
        target_timezone: IANA zone name to convert into
        enabled: The convert-timezone flag of the import

    Returns:
        A converted copy, or ``event`` itself when nothing applies
    """
    if not enabled or event.all_day or event.start is None or event.end is None:
        return event
    tz = get_timezone(target_timezone)
    if tz is None:
        logger.warning(f"Unknown target timezone '{target_timezone}', leaving event {event.uid} as is")
        return event
    return event.model_copy(update={
        'start': event.start.astimezone(tz),
        'end': event.end.astimezone(tz),
        'source_timezone': tz.zone,
    })


def double_offset(stored: StoredEvent) -> Optional[timedelta]:
    """Offset that was applied twice to ``stored``, or None if it looks sound."""
    if stored.all_day or stored.original_start is None:
        return None
    tz = get_timezone(stored.timezone)
    if tz is None or tz.zone == 'UTC':
        return None

    start = ensure_utc(stored.start)
    offset = start.astimezone(tz).utcoffset()
    if not offset:
        return None
    if start == ensure_utc(stored.original_start) + offset:
        return offset
    return None


def detect_and_fix_double_offset(stored: StoredEvent) -> StoredEvent:
    """Subtract a doubly applied timezone offset once.

    Running this on an already repaired event returns it unchanged since
    the start no longer equals ``original_start + offset``.
    """
    offset = double_offset(stored)
    if offset is None:
        return stored
    logger.debug(f"Event {stored.id}: removing doubled offset {offset}")
    return stored.model_copy(update={
        'start': ensure_utc(stored.start) - offset,
        'end': ensure_utc(stored.end) - offset,
    })


def to_local(dt: datetime, timezone_name: str) -> datetime:
    tz = get_timezone(timezone_name) or pytz.UTC
    return ensure_utc(dt).astimezone(tz)
