"""Tests for the command-line interface."""

from datetime import datetime

import pytest
import pytz
from click.testing import CliRunner

from icalimport import sync_engine
from icalimport.cli import RUN_LOCK_NAME, cli
from icalimport.config import load_settings
from icalimport.database import DatabaseManager, EventDB, UidMappingDB
from icalimport.models import FetchErrorKind, FetchFailure

from conftest import FEED_URL, StaticFetcher, build_feed


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'test.env'
    path.write_text(
        f"DATA_DIR={tmp_path}\n"
        f"DATABASE_URL=sqlite:///{tmp_path}/cli.db\n"
        "FETCH_RETRY_ATTEMPTS=1\n"
        "IMPORT_CONFIG__TARGET_TIMEZONE=Europe/Berlin\n"
    )
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_manager(config_file):
    manager = DatabaseManager(load_settings(config_file))
    manager.init_db()
    return manager


@pytest.fixture
def fake_fetcher(monkeypatch):
    fetcher = StaticFetcher(build_feed({
        'uid': 'cli-1',
        'summary': 'Jahreshauptversammlung',
        'start': datetime(2030, 3, 14, 18, 0, tzinfo=pytz.UTC),
        'end': datetime(2030, 3, 14, 20, 0, tzinfo=pytz.UTC),
        'location': 'Clubhaus',
    }))
    monkeypatch.setattr(sync_engine, 'FeedFetcher', lambda settings: fetcher)
    return fetcher


class TestImportsCommands:
    """Tests for the imports group."""

    def test_add_list_disable(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'imports', 'add', FEED_URL,
                                     '--title', 'Club', '--calendar-id', '3'])
        assert result.exit_code == 0, result.output
        assert 'Added import 1' in result.output

        result = runner.invoke(cli, ['--config', config_file, 'imports', 'list'])
        assert result.exit_code == 0, result.output
        assert 'Club' in result.output

        result = runner.invoke(cli, ['--config', config_file, 'imports', 'disable', '1'])
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli, ['--config', config_file, 'imports', 'list'])
        assert 'No imports configured' in result.output

    def test_disable_unknown_import(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'imports', 'disable', '42'])
        assert result.exit_code == 1
        assert 'not found' in result.output


class TestRunCommand:
    """Tests for the run command."""

    def test_run_url(self, runner, config_file, db_manager, fake_fetcher):
        result = runner.invoke(cli, ['--config', config_file, 'run', '--url', FEED_URL])

        assert result.exit_code == 0, result.output
        assert fake_fetcher.calls == [FEED_URL]
        with db_manager.get_session() as session:
            assert session.query(EventDB).count() == 1
            assert session.query(UidMappingDB).one().ical_uid == 'cli-1'

        result = runner.invoke(cli, ['--config', config_file, 'run'])
        assert result.exit_code == 0, result.output
        with db_manager.get_session() as session:
            assert session.query(EventDB).count() == 1

    def test_fetch_failure_exits_non_zero(self, runner, config_file, fake_fetcher):
        fake_fetcher.payload = FetchFailure(FetchErrorKind.UNREACHABLE, 'HTTP 404')

        result = runner.invoke(cli, ['--config', config_file, 'run', '--url', FEED_URL])

        assert result.exit_code == 1
        assert 'HTTP 404' in result.output

    def test_nothing_to_import(self, runner, config_file, fake_fetcher):
        result = runner.invoke(cli, ['--config', config_file, 'run'])

        assert result.exit_code == 0, result.output
        assert 'Nothing to import' in result.output
        assert fake_fetcher.calls == []

    def test_held_lock_blocks_run(self, runner, config_file, db_manager, fake_fetcher):
        with db_manager.get_session() as session:
            assert db_manager.acquire_run_lock(session, RUN_LOCK_NAME, 600)

        result = runner.invoke(cli, ['--config', config_file, 'run', '--url', FEED_URL])

        assert result.exit_code == 1
        assert 'Another import run is in progress' in result.output
        assert fake_fetcher.calls == []

        result = runner.invoke(cli, ['--config', config_file, 'run', '--url', FEED_URL, '--no-lock'])
        assert result.exit_code == 0, result.output

    def test_conflicting_options(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'run', '--url', FEED_URL, '--import-id', '1'])
        assert result.exit_code == 2


class TestMaintenanceCommands:
    """Tests for status and repair commands."""

    def test_status(self, runner, config_file, fake_fetcher):
        runner.invoke(cli, ['--config', config_file, 'run', '--url', FEED_URL])

        result = runner.invoke(cli, ['--config', config_file, 'status'])

        assert result.exit_code == 0, result.output
        assert 'Database Health' in result.output
        assert 'No mapping defects found' in result.output

    def test_fix_timezones_dry_run(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'fix-timezones', '--dry-run'])

        assert result.exit_code == 0, result.output
        assert '0 of 0 events would be corrected' in result.output

    def test_mark_past_read(self, runner, config_file):
        result = runner.invoke(cli, ['--config', config_file, 'mark-past-read'])

        assert result.exit_code == 0, result.output
        assert '0 past events marked read' in result.output


class TestConfigCommands:
    """Tests for configuration commands."""

    def test_create_and_validate(self, runner, tmp_path, monkeypatch):
        monkeypatch.setenv('DATA_DIR', str(tmp_path))
        path = tmp_path / 'example.env'

        result = runner.invoke(cli, ['config', 'create', '--path', str(path)])
        assert result.exit_code == 0, result.output
        assert path.exists()

        result = runner.invoke(cli, ['config', 'create', '--path', str(path), '--force'])
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli, ['--config', str(path), 'config', 'validate'])
        assert result.exit_code == 0, result.output
        assert 'Configuration is valid' in result.output
        assert 'Europe/Berlin' in result.output

    def test_validate_reports_tls_opt_out(self, runner, tmp_path):
        path = tmp_path / 'insecure.env'
        path.write_text(f"DATA_DIR={tmp_path}\nVERIFY_SSL=false\n")

        result = runner.invoke(cli, ['--config', str(path), 'config', 'validate'])

        assert result.exit_code == 1
        assert 'VERIFY_SSL' in result.output
