"""Reconciliation engine: fetch, parse, resolve and apply feed events."""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set

import pytz

from .config import Settings
from .database import DatabaseManager, to_import_source
from .fetcher import FeedFetcher, normalize_feed_url
from .models import (
    EventFields, FetchFailure, ImportConfiguration, ImportLogLevel, ImportOperation,
    ImportResult, ImportSource, LogEntry, ParsedEvent, RunSummary, ensure_utc
)
from .parser import ICSParser
from .resolver import IdentityResolver, Resolution, deduplicate_within_run
from .services.base import (
    BaseDiscussionSink, BaseEventStore, BaseReadStatusSink, PersistenceError, StoreError
)
from .services.sql import SqlDiscussionSink, SqlEventStore, SqlReadStatusSink
from .timezones import normalize_incoming

logger = logging.getLogger(__name__)

_STDLIB_LEVELS = {
    ImportLogLevel.ERROR: logging.ERROR,
    ImportLogLevel.WARNING: logging.WARNING,
    ImportLogLevel.INFO: logging.INFO,
    ImportLogLevel.DEBUG: logging.DEBUG,
}


def participation_deadline(start: datetime, hours_before: Optional[int], now: datetime) -> datetime:
    """Registration deadline of an event.

    ``hours_before`` in 1..168 moves the deadline before the start; a
    deadline already in the past is clamped to now, never past the start.
    """
    if hours_before is None or not 1 <= hours_before <= 168:
        return start
    deadline = start - timedelta(hours=hours_before)
    if deadline < now:
        deadline = min(now, start)
    return deadline


class RunContext:
    """State of one reconciliation run."""

    def __init__(self, config: ImportConfiguration, summary: RunSummary):
        self.config = config
        self.summary = summary
        self.processed_uids_in_run: Set[str] = set()
        self.logger = logger.getChild('run')

    def log(
        self,
        level: ImportLogLevel,
        message: str,
        event_uid: Optional[str] = None,
        event_id: Optional[int] = None,
        action: str = 'import'
    ) -> None:
        """Emit to the application log and keep the entry if the import's level allows it."""
        self.logger.log(_STDLIB_LEVELS[level], message)
        if self.config.log_level.allows(level):
            self.summary.log.append(LogEntry(
                level=level,
                message=message,
                event_uid=event_uid,
                event_id=event_id,
                action=action,
            ))

    def record(self, result: ImportResult) -> None:
        if result.operation == ImportOperation.CREATE:
            self.summary.imported += 1
        elif result.operation == ImportOperation.UPDATE:
            self.summary.updated += 1
        else:
            self.summary.skipped += 1
        self.summary.results.append(result)


class SyncEngine:
    """Periodic batch importer for iCalendar feeds."""

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        fetcher: Optional[FeedFetcher] = None,
        read_sink: Optional[BaseReadStatusSink] = None,
        discussion_sink: Optional[BaseDiscussionSink] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager (created from settings if omitted)
            fetcher: Feed fetcher (created from settings if omitted)
            read_sink: Read-status collaborator
            discussion_sink: Thread collaborator
            clock: Returns the current aware time
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.fetcher = fetcher or FeedFetcher(settings)
        self.read_sink = read_sink or SqlReadStatusSink(self.db_manager)
        self.discussion_sink = discussion_sink or SqlDiscussionSink(self.db_manager)
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('sync_engine')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Initialize the sync engine."""
        self.db_manager.init_db()
        self.logger.info("Sync engine initialized successfully")

    async def cleanup(self) -> None:
        """Clean up resources."""
        self.db_manager.engine.dispose()
        self.logger.info("Sync engine cleaned up")

    def config_for(self, source: ImportSource) -> ImportConfiguration:
        """Import settings with the targets of ``source`` applied."""
        return self.settings.import_config.model_copy(update={
            'feed_url': source.feed_url,
            'calendar_id': source.calendar_id,
            'board_id': source.board_id,
        })

    async def run(self, source: ImportSource) -> RunSummary:
        """Run one configured import against its feed."""
        config = self.config_for(source)
        with self.db_manager.get_session() as session:
            store = SqlEventStore(self.db_manager, session)
            return await self.execute(source.feed_url, config, store, import_source_id=source.id)

    async def run_all(self) -> List[RunSummary]:
        """Run every active import, one after the other."""
        with self.db_manager.get_session() as session:
            sources = [to_import_source(row) for row in self.db_manager.get_import_sources(session)]

        if not sources:
            self.logger.warning("No active imports configured")
        summaries = []
        for source in sources:
            summaries.append(await self.run(source))
        return summaries

    async def run_feed(self, feed_url: str) -> RunSummary:
        """Run an ad-hoc feed, registering it as an import on first use."""
        feed_url = normalize_feed_url(feed_url)
        config = self.settings.import_config
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_import_source_by_url(session, feed_url)
            if row is None:
                row = self.db_manager.create_import_source(
                    session,
                    feed_url=feed_url,
                    calendar_id=config.calendar_id,
                    board_id=config.board_id,
                )
                self.logger.info(f"Registered import {row.id} for {feed_url}")
            source = to_import_source(row)
        return await self.run(source)

    async def execute(
        self,
        feed_url: str,
        config: ImportConfiguration,
        store: BaseEventStore,
        import_source_id: Optional[int] = None
    ) -> RunSummary:
        """Fetch a feed and reconcile it against ``store``.

        Args:
            feed_url: Feed to import
            config: Import settings for this run
            store: Event store receiving the changes
            import_source_id: Import the events and last run belong to

        Returns:
            Run summary; only a failed fetch populates ``errors``
        """
        summary = RunSummary(import_source_id=import_source_id, feed_url=feed_url,
                             started_at=self.clock())
        ctx = RunContext(config, summary)
        ctx.log(ImportLogLevel.INFO, f"Starting import of {feed_url}", action='run')

        outcome = await self.fetcher.fetch(feed_url, self.settings.request_timeout_seconds)
        if isinstance(outcome, FetchFailure):
            summary.errors.append(f"Fetch failed: {outcome}")
            ctx.log(ImportLogLevel.ERROR, f"Fetching {feed_url} failed: {outcome}", action='fetch')
            self._finalize(ctx, store, status='failed', error_message=str(outcome))
            return summary

        parser = ICSParser(default_timezone=config.target_timezone)
        events = parser.parse(outcome)
        summary.events_in_feed = len(events)
        if parser.dropped:
            ctx.log(ImportLogLevel.DEBUG, f"Dropped {parser.dropped} VEVENTs without UID or start",
                    action='parse')

        unique = deduplicate_within_run(events)
        summary.duplicates_removed = len(events) - len(unique)
        if summary.duplicates_removed:
            ctx.log(ImportLogLevel.INFO, f"Removed {summary.duplicates_removed} duplicate UIDs from feed",
                    action='parse')

        if len(unique) > config.max_events_per_run:
            ctx.log(ImportLogLevel.WARNING,
                    f"Feed has {len(unique)} events, processing the first {config.max_events_per_run}",
                    action='parse')
            unique = unique[:config.max_events_per_run]

        resolver = IdentityResolver(config)
        for event in unique:
            try:
                result = self._process_event(event, ctx, store, resolver, import_source_id)
            except Exception as e:
                store.rollback()
                detail = str(e) if isinstance(e, StoreError) else f"{type(e).__name__}: {e}"
                ctx.log(ImportLogLevel.ERROR, f"Failed to import {event.uid or '<no uid>'}: {detail}",
                        event_uid=event.uid)
                result = ImportResult(
                    operation=ImportOperation.SKIP,
                    event_uid=event.uid,
                    success=False,
                    event_summary=event.summary,
                    error_message=str(e),
                )
            ctx.record(result)

        self._finalize(ctx, store, status='completed')
        return summary

    def _process_event(
        self,
        event: ParsedEvent,
        ctx: RunContext,
        store: BaseEventStore,
        resolver: IdentityResolver,
        import_source_id: Optional[int]
    ) -> ImportResult:
        uid = event.uid
        if uid:
            if uid in ctx.processed_uids_in_run:
                ctx.log(ImportLogLevel.DEBUG, f"UID {uid} already handled in this run", event_uid=uid)
                return ImportResult(operation=ImportOperation.SKIP, event_uid=uid, success=True,
                                    event_summary=event.summary)
            ctx.processed_uids_in_run.add(uid)

        event = normalize_incoming(self._with_default_end(event), ctx.config.target_timezone,
                                   ctx.config.convert_timezone)
        fields = self._build_fields(event, ctx.config, import_source_id)

        resolution = resolver.resolve(event, store) if uid else None
        if resolution is None:
            return self._create(event, fields, ctx, store, import_source_id)
        return self._update(event, fields, resolution, ctx, store)

    def _create(self, event: ParsedEvent, fields: EventFields, ctx: RunContext,
                store: BaseEventStore, import_source_id: Optional[int]) -> ImportResult:
        event_id = store.create_event(fields)
        if event.uid:
            store.create_uid_mapping(event_id, event.uid, import_source_id)
        store.commit()
        ctx.log(ImportLogLevel.INFO, f"Created event {event_id} '{event.summary}'",
                event_uid=event.uid, event_id=event_id)

        if ctx.config.auto_mark_past_read and ensure_utc(fields.start) < self.clock():
            result = self.read_sink.mark_read_for_all(event_id)
            if not result.ok:
                ctx.log(ImportLogLevel.WARNING, f"Could not mark past event {event_id} read: {result.error}",
                        event_uid=event.uid, event_id=event_id, action='read_status')

        if ctx.config.threads_enabled:
            self._create_thread(event, event_id, ctx, store)
        elif ctx.config.create_threads:
            ctx.log(ImportLogLevel.DEBUG, f"No valid board configured, no thread for event {event_id}",
                    event_uid=event.uid, event_id=event_id, action='thread')

        return ImportResult(operation=ImportOperation.CREATE, event_uid=event.uid, success=True,
                            event_id=event_id, event_summary=event.summary)

    def _update(self, event: ParsedEvent, fields: EventFields, resolution: Resolution,
                ctx: RunContext, store: BaseEventStore) -> ImportResult:
        event_id = resolution.event_id
        skipped = ImportResult(operation=ImportOperation.SKIP, event_uid=event.uid, success=True,
                               event_id=event_id, event_summary=event.summary,
                               matched_by=resolution.matched_by)

        rebind = not resolution.by_uid and self._may_rebind(event, event_id, ctx, store)

        if resolution.by_uid and event.last_modified is not None:
            mapping = store.get_uid_mapping(event.uid)
            if mapping is not None and mapping.last_updated is not None \
                    and mapping.last_updated >= ensure_utc(event.last_modified):
                ctx.log(ImportLogLevel.DEBUG, f"Event {event_id} unchanged since last import",
                        event_uid=event.uid, event_id=event_id)
                return skipped

        stored = resolution.stored or store.get_event(event_id)
        if not fields.differs_from(stored):
            if rebind:
                store.rebind_uid_mapping(event_id, event.uid)
                store.commit()
                ctx.log(ImportLogLevel.INFO, f"Event {event_id} now tracked under UID {event.uid}",
                        event_uid=event.uid, event_id=event_id)
            else:
                ctx.log(ImportLogLevel.DEBUG, f"Event {event_id} already up to date",
                        event_uid=event.uid, event_id=event_id)
            return skipped

        store.update_event(event_id, fields)
        if resolution.by_uid:
            store.touch_uid_mapping(event_id)
        elif rebind:
            store.rebind_uid_mapping(event_id, event.uid)
        store.commit()
        ctx.log(ImportLogLevel.INFO,
                f"Updated event {event_id} '{event.summary}' (matched by {resolution.matched_by})",
                event_uid=event.uid, event_id=event_id)

        if ctx.config.mark_updated_unread:
            result = self.read_sink.mark_unread_for_all(event_id)
            if not result.ok:
                ctx.log(ImportLogLevel.WARNING, f"Could not mark event {event_id} unread: {result.error}",
                        event_uid=event.uid, event_id=event_id, action='read_status')

        return ImportResult(operation=ImportOperation.UPDATE, event_uid=event.uid, success=True,
                            event_id=event_id, event_summary=event.summary,
                            matched_by=resolution.matched_by)

    def _may_rebind(self, event: ParsedEvent, event_id: int, ctx: RunContext,
                    store: BaseEventStore) -> bool:
        """Whether a fallback match may take over the mapping of ``event_id``."""
        mapping = store.get_mapping_for_event(event_id)
        if mapping is not None and mapping.ical_uid in ctx.processed_uids_in_run:
            ctx.log(ImportLogLevel.WARNING,
                    f"Event {event_id} already imported under UID {mapping.ical_uid} in this run, "
                    f"not rebinding to {event.uid}",
                    event_uid=event.uid, event_id=event_id)
            return False
        return True

    def _create_thread(self, event: ParsedEvent, event_id: int, ctx: RunContext,
                       store: BaseEventStore) -> None:
        title = f"{ctx.config.thread_title_prefix}{event.summary}"
        result = self.discussion_sink.create_thread(ctx.config.board_id, title, event.description,
                                                    event_id=event_id)
        if not result.ok:
            ctx.log(ImportLogLevel.WARNING, f"Could not create thread for event {event_id}: {result.error}",
                    event_uid=event.uid, event_id=event_id, action='thread')
            return
        try:
            store.attach_thread(event_id, result.value)
        except PersistenceError as e:
            ctx.log(ImportLogLevel.WARNING, f"Thread {result.value} created but not linked: {e}",
                    event_uid=event.uid, event_id=event_id, action='thread')
            return
        ctx.log(ImportLogLevel.DEBUG, f"Created thread {result.value} for event {event_id}",
                event_uid=event.uid, event_id=event_id, action='thread')

    def _finalize(self, ctx: RunContext, store: BaseEventStore, status: str,
                  error_message: Optional[str] = None) -> None:
        summary = ctx.summary
        summary.completed_at = self.clock()
        ctx.log(
            ImportLogLevel.ERROR if summary.errors else ImportLogLevel.INFO,
            f"Import finished: {summary.imported} imported, {summary.updated} updated, "
            f"{summary.skipped} skipped, {len(summary.errors)} errors",
            action='run'
        )
        try:
            if summary.import_source_id is not None:
                store.record_last_run(summary.import_source_id, summary.completed_at, status, error_message)
            store.write_log_entries(summary.log, summary.import_source_id, str(summary.run_id))
        except PersistenceError as e:
            self.logger.error(f"Could not persist run bookkeeping: {e}")

    @staticmethod
    def _with_default_end(event: ParsedEvent) -> ParsedEvent:
        if event.start is None or event.end is not None:
            return event
        length = timedelta(days=1) if event.all_day else timedelta(hours=1)
        return event.model_copy(update={'end': event.start + length})

    def _build_fields(self, event: ParsedEvent, config: ImportConfiguration,
                      import_source_id: Optional[int]) -> EventFields:
        start = ensure_utc(event.start)
        return EventFields(
            subject=event.summary,
            body=event.description,
            location=event.location,
            start=start,
            end=ensure_utc(event.end),
            all_day=event.all_day,
            timezone=event.source_timezone,
            original_start=start,
            participation_end=participation_deadline(start, config.participation_hours_before,
                                                     self.clock()),
            calendar_id=config.calendar_id,
            import_source_id=import_source_id,
        )
