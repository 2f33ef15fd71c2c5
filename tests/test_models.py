"""Tests for data models and settings."""

import pytest
from datetime import datetime, timedelta
from uuid import UUID

import pytz
from pydantic import ValidationError

from icalimport.config import create_example_config
from icalimport.models import (
    EventFields, FetchErrorKind, FetchFailure, ImportConfiguration, ImportLogLevel,
    ImportOperation, ImportResult, ParsedEvent, RawFeedDocument, RunSummary, StoredEvent
)

from conftest import make_settings


class TestImportConfiguration:
    """Tests for the typed import configuration."""

    def test_defaults(self):
        config = ImportConfiguration()

        assert config.convert_timezone
        assert not config.create_threads
        assert config.auto_mark_past_read
        assert config.mark_updated_unread
        assert config.max_events_per_run == 100
        assert config.log_level == ImportLogLevel.INFO
        assert config.match_window_minutes == 30
        assert config.title_similarity_threshold == 0.7

    def test_log_level_is_case_insensitive(self):
        assert ImportConfiguration(log_level='DEBUG').log_level == ImportLogLevel.DEBUG

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            ImportConfiguration(target_timezone='Mars/Olympus_Mons')
        with pytest.raises(ValidationError):
            ImportConfiguration(log_level='verbose')
        with pytest.raises(ValidationError):
            ImportConfiguration(max_events_per_run=0)

    def test_threads_need_a_board(self):
        assert not ImportConfiguration(create_threads=True, board_id=0).threads_enabled
        assert not ImportConfiguration(create_threads=False, board_id=5).threads_enabled
        assert ImportConfiguration(create_threads=True, board_id=5).threads_enabled


class TestImportLogLevel:
    """Tests for log level ordering."""

    def test_allows(self):
        assert ImportLogLevel.INFO.allows(ImportLogLevel.ERROR)
        assert ImportLogLevel.INFO.allows(ImportLogLevel.INFO)
        assert not ImportLogLevel.INFO.allows(ImportLogLevel.DEBUG)
        assert ImportLogLevel.DEBUG.allows(ImportLogLevel.DEBUG)
        assert not ImportLogLevel.ERROR.allows(ImportLogLevel.WARNING)


class TestEventModels:
    """Tests for event models."""

    def test_parsed_event_is_immutable(self):
        event = ParsedEvent(uid='a', start=datetime(2026, 1, 20, tzinfo=pytz.UTC))
        with pytest.raises(ValidationError):
            event.summary = 'changed'

    def test_parsed_event_validity(self):
        assert ParsedEvent(uid='a', start=datetime(2026, 1, 20, tzinfo=pytz.UTC)).is_valid
        assert not ParsedEvent(uid='', start=datetime(2026, 1, 20, tzinfo=pytz.UTC)).is_valid
        assert not ParsedEvent(uid='a').is_valid

    def test_stored_event_times_are_utc(self):
        """Naive store values are read as UTC."""
        event = StoredEvent(id=1, start=datetime(2026, 1, 20, 18, 0), end=datetime(2026, 1, 20, 20, 0))
        assert event.start.tzinfo == pytz.UTC
        assert event.end == datetime(2026, 1, 20, 20, 0, tzinfo=pytz.UTC)

    def test_fields_differ(self):
        start = datetime(2026, 1, 20, 18, 0, tzinfo=pytz.UTC)
        stored = StoredEvent(id=1, subject='Match', location='Arena', start=start,
                             end=start + timedelta(hours=2))
        same = EventFields(subject='Match', location='Arena', start=start, end=start + timedelta(hours=2),
                           calendar_id=4)

        assert not same.differs_from(stored)
        assert same.model_copy(update={'subject': 'Match!'}).differs_from(stored)
        assert same.model_copy(update={'start': start + timedelta(minutes=1)}).differs_from(stored)
        berlin = start.astimezone(pytz.timezone('Europe/Berlin'))
        assert not same.model_copy(update={'start': berlin}).differs_from(stored)


class TestFeedModels:
    """Tests for fetch results."""

    def test_document_text(self):
        document = RawFeedDocument(content='\ufeffBEGIN:VCALENDAR'.encode('utf-8'))
        assert document.text() == 'BEGIN:VCALENDAR'

    def test_unknown_encoding_falls_back(self):
        document = RawFeedDocument(content=b'BEGIN:VCALENDAR', encoding='x-unknown')
        assert document.text() == 'BEGIN:VCALENDAR'

    def test_failure_str(self):
        failure = FetchFailure(FetchErrorKind.TIMEOUT, 'timed out after 30s')
        assert str(failure) == 'timeout: timed out after 30s'


class TestRunSummary:
    """Tests for RunSummary."""

    def test_counts(self):
        summary = RunSummary(imported=2, updated=1, skipped=3)
        summary.results.append(ImportResult(operation=ImportOperation.CREATE, event_uid='a', success=True))

        assert isinstance(summary.run_id, UUID)
        assert summary.total_processed == 6
        assert summary.succeeded
        assert summary.to_dict()['imported'] == 2

    def test_errors_mark_failure(self):
        summary = RunSummary(errors=['Fetch failed: empty_body: empty response body'])
        assert not summary.succeeded


class TestSettings:
    """Tests for application settings."""

    def test_default_database_url(self, tmp_path):
        settings = make_settings(tmp_path)
        assert settings.database_url == f'sqlite:///{tmp_path}/test.db'

    def test_database_url_derived_from_data_dir(self, tmp_path):
        settings = type(make_settings(tmp_path))(data_dir=str(tmp_path))
        assert settings.database_url == f'sqlite:///{tmp_path}/icalimport.db'

    def test_log_level_validation(self, tmp_path):
        settings = type(make_settings(tmp_path))(data_dir=str(tmp_path), log_level='debug')
        assert settings.log_level == 'DEBUG'
        with pytest.raises(ValidationError):
            type(make_settings(tmp_path))(data_dir=str(tmp_path), log_level='LOUD')

    def test_tls_opt_out_is_reported(self, tmp_path):
        settings = make_settings(tmp_path)
        assert settings.validate_required_settings() == []
        settings.verify_ssl = False
        assert settings.validate_required_settings()

    def test_example_config_loads(self, tmp_path, monkeypatch):
        path = tmp_path / 'example.env'
        create_example_config(path)
        monkeypatch.setenv('DATA_DIR', str(tmp_path))

        from icalimport.config import Settings
        settings = Settings(_env_file=str(path))

        assert settings.import_config.feed_url == 'https://example.com/calendar.ics'
        assert settings.import_config.target_timezone == 'Europe/Berlin'
        assert settings.import_config.max_events_per_run == 100
        assert settings.request_timeout_seconds == 30
