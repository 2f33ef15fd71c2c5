"""iCalendar feed parser producing ParsedEvent records."""

import logging
import re
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple, Union

import pytz
from icalendar.parser import Contentline, Contentlines, unescape_backslash

from .models import ParsedEvent, RawFeedDocument

logger = logging.getLogger(__name__)

LINE_BREAK_RE = re.compile(r'\r\n|\r')
DATE_TIME_RE = re.compile(r'(\d{8})T(\d{6})(Z?)')
DATE_CHARS_RE = re.compile(r'[^0-9TZ]')

TEXT_PROPERTIES = {'SUMMARY': 'summary', 'DESCRIPTION': 'description', 'LOCATION': 'location'}


def unfold_lines(text: str) -> List[Contentline]:
    """Split on any line terminator and join RFC 5545 continuation lines."""
    # icalendar only splits on CRLF and LF
    return [line for line in Contentlines.from_ical(LINE_BREAK_RE.sub('\n', text)) if line]


def unescape_text(value: str) -> str:
    r"""Undo TEXT escaping (\n, \N, \, \; and \\) and trim."""
    return unescape_backslash(value).strip()


def split_property(line: str) -> Optional[Tuple[str, Dict[str, str], str]]:
    """Split a content line into (NAME, params, raw value); None if it cannot be parsed."""
    if ':' not in line:
        return None
    try:
        name, params, value = Contentline(line).raw_parts()
    except ValueError:
        return None
    flat = {}
    for key, param_value in params.items():
        if isinstance(param_value, list):
            param_value = ','.join(param_value)
        flat[key.upper()] = param_value
    return name.upper(), flat, value


def resolve_timezone(tzid: Optional[str]):
    """Map a TZID parameter to a pytz timezone, UTC when unknown."""
    if not tzid:
        return pytz.UTC
    try:
        return pytz.timezone(tzid)
    except pytz.exceptions.UnknownTimeZoneError:
        # e.g. "/mozilla.org/20070129_1/Europe/Berlin"
        for start in range(1, tzid.count('/') + 1):
            candidate = tzid.split('/', start)[-1]
            try:
                return pytz.timezone(candidate)
            except pytz.exceptions.UnknownTimeZoneError:
                continue
    logger.debug(f"Unknown TZID '{tzid}', assuming UTC")
    return pytz.UTC


def parse_ical_date(value: str, params: Optional[Dict[str, str]] = None,
                    default_timezone: str = 'UTC') -> Tuple[Optional[datetime], bool, str]:
    """Decode a DTSTART/DTEND style value.

    Args:
        value: Raw property value
        params: Property parameters (TZID is honoured)
        default_timezone: Zone used for all-day dates

    Returns:
        Tuple of (aware datetime or None, all-day flag, timezone name)
    """
    params = params or {}
    cleaned = DATE_CHARS_RE.sub('', value)

    if len(cleaned) == 8 and cleaned.isdigit():
        tz = resolve_timezone(default_timezone)
        try:
            naive = datetime.strptime(cleaned, '%Y%m%d')
        except ValueError:
            return None, True, tz.zone
        return tz.localize(naive), True, tz.zone

    match = DATE_TIME_RE.search(cleaned)
    if not match:
        return None, False, 'UTC'
    try:
        naive = datetime.strptime(match.group(1) + match.group(2), '%Y%m%d%H%M%S')
    except ValueError:
        return None, False, 'UTC'

    if match.group(3) == 'Z':
        return pytz.UTC.localize(naive), False, 'UTC'
    tz = resolve_timezone(params.get('TZID'))
    return tz.localize(naive), False, tz.zone


class ICSParser:
    """VEVENT reader on top of icalendar content lines.

    Only the properties the importer needs are read; everything else,
    including nested components such as VALARM, is ignored.
    """

    def __init__(self, default_timezone: str = 'UTC'):
        self.default_timezone = default_timezone
        self.logger = logger
        self.dropped = 0

    def parse(self, document: Union[RawFeedDocument, str]) -> List[ParsedEvent]:
        """Parse a feed into events, in feed order."""
        return list(self.iter_events(document))

    def iter_events(self, document: Union[RawFeedDocument, str]) -> Iterator[ParsedEvent]:
        text = document.text() if isinstance(document, RawFeedDocument) else document
        self.dropped = 0

        record: Optional[Dict] = None
        nested = 0
        for line in unfold_lines(text):
            if not line.strip():
                continue
            upper = line.strip().upper()

            if upper == 'BEGIN:VEVENT':
                if record is not None:
                    self.logger.debug("Unterminated VEVENT discarded")
                    self.dropped += 1
                record = {}
                nested = 0
                continue
            if record is None:
                continue
            if upper == 'END:VEVENT':
                event = self._build(record)
                if event is not None:
                    yield event
                record = None
                continue
            if upper.startswith('BEGIN:'):
                nested += 1
                continue
            if upper.startswith('END:'):
                nested = max(0, nested - 1)
                continue
            if nested:
                continue

            parsed = split_property(line)
            if parsed is None:
                continue
            self._apply(record, *parsed)

        if record is not None:
            self.logger.debug("Feed ended inside a VEVENT, record discarded")
            self.dropped += 1

    def _apply(self, record: Dict, name: str, params: Dict[str, str], value: str) -> None:
        if name == 'UID':
            record['uid'] = value.strip()
        elif name in TEXT_PROPERTIES:
            record[TEXT_PROPERTIES[name]] = unescape_text(value)
        elif name == 'DTSTART':
            start, all_day, tz_name = parse_ical_date(value, params, self.default_timezone)
            record['start'] = start
            record['all_day'] = all_day
            record['source_timezone'] = tz_name
        elif name == 'DTEND':
            end, _, _ = parse_ical_date(value, params, self.default_timezone)
            record['end'] = end
        elif name == 'LAST-MODIFIED':
            modified, _, _ = parse_ical_date(value, params, 'UTC')
            if modified is not None:
                record['last_modified'] = modified.astimezone(pytz.UTC)

    def _build(self, record: Dict) -> Optional[ParsedEvent]:
        if not record.get('uid') or record.get('start') is None:
            self.logger.debug(
                f"Dropping VEVENT without UID or start (uid={record.get('uid', '')!r})"
            )
            self.dropped += 1
            return None
        return ParsedEvent(**record)


def parse_feed(document: Union[RawFeedDocument, str], default_timezone: str = 'UTC') -> List[ParsedEvent]:
    """Parse a feed document with a fresh parser."""
    return ICSParser(default_timezone).parse(document)
