from datetime import datetime, timedelta

import pytest
import pytz
from icalendar import Alarm, Calendar, Event
from pydantic_settings import SettingsConfigDict

from icalimport.config import Settings
from icalimport.database import DatabaseManager
from icalimport.models import FetchFailure, ImportConfiguration, RawFeedDocument
from icalimport.services.base import BaseDiscussionSink, BaseReadStatusSink, SideEffectResult


NOW = datetime(2026, 1, 10, 12, 0, 0, tzinfo=pytz.UTC)
FEED_URL = 'https://example.com/club.ics'


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **import_config):
    return TestSettings(
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        fetch_retry_attempts=1,
        import_config=ImportConfiguration(**import_config),
    )


def build_feed(*events):
    """Serialize event dicts into an ICS document with icalendar."""
    cal = Calendar()
    cal.add('prodid', '-//icalimport tests//EN')
    cal.add('version', '2.0')
    for data in events:
        event = Event()
        if data.get('uid'):
            event.add('uid', data['uid'])
        event.add('summary', data.get('summary', 'Event'))
        if data.get('start') is not None:
            event.add('dtstart', data['start'])
        if data.get('end') is not None:
            event.add('dtend', data['end'])
        if data.get('location'):
            event.add('location', data['location'])
        if data.get('description'):
            event.add('description', data['description'])
        if data.get('last_modified'):
            event.add('last-modified', data['last_modified'])
        if data.get('alarm'):
            alarm = Alarm()
            alarm.add('action', 'DISPLAY')
            alarm.add('description', data['alarm'])
            alarm.add('trigger', timedelta(minutes=-15))
            event.add_component(alarm)
        cal.add_component(event)
    return cal.to_ical()


class StaticFetcher:
    """Fetcher returning a fixed payload."""

    def __init__(self, payload):
        self.payload = payload
        self.calls = []

    async def fetch(self, url, timeout_seconds=None):
        self.calls.append(url)
        if isinstance(self.payload, FetchFailure):
            return self.payload
        return RawFeedDocument(content=self.payload, url=url)


class RecordingReadSink(BaseReadStatusSink):
    def __init__(self, fail=False):
        self.fail = fail
        self.read = []
        self.unread = []

    def mark_read_for_all(self, event_id):
        if self.fail:
            return SideEffectResult.failure('read status store offline')
        self.read.append(event_id)
        return SideEffectResult.success(1)

    def mark_unread_for_all(self, event_id):
        if self.fail:
            return SideEffectResult.failure('read status store offline')
        self.unread.append(event_id)
        return SideEffectResult.success(1)


class RecordingDiscussionSink(BaseDiscussionSink):
    def __init__(self, fail=False):
        self.fail = fail
        self.threads = []

    def create_thread(self, board_id, title, body, event_id=None):
        if self.fail:
            return SideEffectResult.failure('board locked')
        self.threads.append((board_id, title, body, event_id))
        return SideEffectResult.success(100 + len(self.threads))


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    yield manager
    manager.engine.dispose()
