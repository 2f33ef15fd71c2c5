"""Tests for timezone normalization and double-offset repair."""

from datetime import datetime, timedelta

import pytz

from icalimport.models import ParsedEvent, StoredEvent
from icalimport.timezones import detect_and_fix_double_offset, double_offset, normalize_incoming

BERLIN = pytz.timezone('Europe/Berlin')
NEW_YORK = pytz.timezone('America/New_York')


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


def stored_event(start, original_start, timezone='Europe/Berlin', all_day=False):
    return StoredEvent(
        id=1,
        subject='Match',
        start=start,
        end=start + timedelta(hours=2),
        all_day=all_day,
        timezone=timezone,
        original_start=original_start,
    )


class TestNormalizeIncoming:
    """Tests for converting incoming events into the target timezone."""

    def test_converts_between_zones(self):
        start = BERLIN.localize(datetime(2026, 1, 20, 19, 0))
        event = ParsedEvent(uid='a', start=start, end=start + timedelta(hours=2),
                            source_timezone='Europe/Berlin')

        converted = normalize_incoming(event, 'America/New_York')

        assert converted.start.tzinfo.zone == 'America/New_York'
        assert (converted.start.hour, converted.start.minute) == (13, 0)
        assert converted.start == start
        assert converted.end == start + timedelta(hours=2)
        assert converted.source_timezone == 'America/New_York'

    def test_dst_aware(self):
        summer = pytz.UTC.localize(datetime(2026, 7, 20, 17, 0))
        winter = pytz.UTC.localize(datetime(2026, 1, 20, 17, 0))
        for start, hour in ((summer, 19), (winter, 18)):
            event = ParsedEvent(uid='a', start=start, end=start + timedelta(hours=1))
            assert normalize_incoming(event, 'Europe/Berlin').start.hour == hour

    def test_disabled_conversion(self):
        start = utc(2026, 1, 20, 19, 0)
        event = ParsedEvent(uid='a', start=start, end=start + timedelta(hours=1))
        assert normalize_incoming(event, 'Europe/Berlin', enabled=False) is event

    def test_all_day_is_left_alone(self):
        start = utc(2026, 1, 20)
        event = ParsedEvent(uid='a', start=start, end=start + timedelta(days=1), all_day=True)
        assert normalize_incoming(event, 'America/New_York') is event

    def test_requires_both_bounds(self):
        event = ParsedEvent(uid='a', start=utc(2026, 1, 20, 19, 0))
        assert normalize_incoming(event, 'Europe/Berlin') is event

    def test_unknown_target(self):
        start = utc(2026, 1, 20, 19, 0)
        event = ParsedEvent(uid='a', start=start, end=start + timedelta(hours=1))
        assert normalize_incoming(event, 'Not/AZone') is event


class TestDoubleOffsetRepair:
    """Tests for detecting and repairing doubly applied offsets."""

    def test_winter_offset_is_removed(self):
        event = stored_event(start=utc(2026, 1, 20, 19, 0), original_start=utc(2026, 1, 20, 18, 0))

        fixed = detect_and_fix_double_offset(event)

        assert fixed is not event
        assert fixed.start == utc(2026, 1, 20, 18, 0)
        assert fixed.end == utc(2026, 1, 20, 20, 0)

    def test_summer_offset_is_removed(self):
        event = stored_event(start=utc(2026, 7, 20, 19, 0), original_start=utc(2026, 7, 20, 17, 0))
        assert double_offset(event) == timedelta(hours=2)
        assert detect_and_fix_double_offset(event).start == utc(2026, 7, 20, 17, 0)

    def test_negative_offset(self):
        event = stored_event(start=utc(2026, 1, 20, 13, 0), original_start=utc(2026, 1, 20, 18, 0),
                             timezone='America/New_York')
        assert detect_and_fix_double_offset(event).start == utc(2026, 1, 20, 18, 0)

    def test_repair_is_idempotent(self):
        event = stored_event(start=utc(2026, 1, 20, 19, 0), original_start=utc(2026, 1, 20, 18, 0))
        once = detect_and_fix_double_offset(event)
        twice = detect_and_fix_double_offset(once)
        assert twice is once
        assert twice.start == once.start

    def test_correct_event_is_unchanged(self):
        event = stored_event(start=utc(2026, 1, 20, 18, 0), original_start=utc(2026, 1, 20, 18, 0))
        assert detect_and_fix_double_offset(event) is event

    def test_all_day_is_exempt(self):
        event = stored_event(start=utc(2026, 1, 20, 1, 0), original_start=utc(2026, 1, 20, 0, 0),
                             all_day=True)
        assert detect_and_fix_double_offset(event) is event

    def test_utc_events_are_skipped(self):
        event = stored_event(start=utc(2026, 1, 20, 19, 0), original_start=utc(2026, 1, 20, 18, 0),
                             timezone='UTC')
        assert detect_and_fix_double_offset(event) is event

    def test_zero_offset_zone_is_skipped(self):
        event = stored_event(start=utc(2026, 1, 20, 18, 0), original_start=utc(2026, 1, 20, 18, 0),
                             timezone='Europe/London')
        assert double_offset(event) is None

    def test_missing_original_start(self):
        event = stored_event(start=utc(2026, 1, 20, 19, 0), original_start=None)
        assert detect_and_fix_double_offset(event) is event
