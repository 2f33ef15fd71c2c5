"""SQLAlchemy-backed event store and side-effect sinks."""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import (
    DatabaseManager, ReadStatusDB, ThreadDB, UserDB, to_db_time, to_stored_event, to_uid_mapping,
    utcnow
)
from ..models import EventFields, LogEntry, StoredEvent, UidMapping
from .base import (
    BaseDiscussionSink, BaseEventStore, BaseReadStatusSink, EventNotFoundError,
    PersistenceError, SideEffectResult
)

logger = logging.getLogger(__name__)


class SqlEventStore(BaseEventStore):
    """Event store on top of a single SQLAlchemy session."""

    def __init__(self, db_manager: DatabaseManager, session: Session):
        """Initialize the store.

        Args:
            db_manager: Database manager
            session: Session owning the unit of work
        """
        self.db = db_manager
        self.session = session
        self.logger = logger.getChild('store')

    def get_uid_mapping(self, ical_uid: str) -> Optional[UidMapping]:
        try:
            row = self.db.get_uid_mapping(self.session, ical_uid)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to look up UID {ical_uid}: {e}") from e
        return to_uid_mapping(row) if row else None

    def get_mapping_for_event(self, event_id: int) -> Optional[UidMapping]:
        try:
            row = self.db.get_uid_mapping_for_event(self.session, event_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to look up mapping of event {event_id}: {e}") from e
        return to_uid_mapping(row) if row else None

    def find_events_near(self, start: datetime, window: timedelta) -> List[StoredEvent]:
        try:
            rows = self.db.find_events_near(self.session, start, window)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to search events near {start}: {e}") from e
        return [to_stored_event(row) for row in rows]

    def get_event(self, event_id: int) -> StoredEvent:
        try:
            row = self.db.get_event(self.session, event_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load event {event_id}: {e}") from e
        if row is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return to_stored_event(row)

    def create_event(self, fields: EventFields) -> int:
        try:
            row = self.db.create_event(self.session, **fields.model_dump())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create event: {e}") from e
        return row.id

    def update_event(self, event_id: int, fields: EventFields) -> None:
        try:
            row = self.db.get_event(self.session, event_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load event {event_id}: {e}") from e
        if row is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        # Ownership of an existing event does not move between imports
        values = fields.model_dump(exclude={'calendar_id', 'import_source_id'})
        try:
            self.db.update_event(self.session, row, **values)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update event {event_id}: {e}") from e

    def create_uid_mapping(self, event_id: int, ical_uid: str,
                           import_source_id: Optional[int] = None) -> None:
        try:
            self.db.create_uid_mapping(self.session, event_id, ical_uid, import_source_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to map UID {ical_uid} to event {event_id}: {e}") from e

    def touch_uid_mapping(self, event_id: int) -> None:
        try:
            self.db.touch_uid_mapping(self.session, event_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to touch mapping of event {event_id}: {e}") from e

    def rebind_uid_mapping(self, event_id: int, ical_uid: str) -> None:
        try:
            mapping = self.db.get_uid_mapping_for_event(self.session, event_id)
            if mapping is None:
                self.db.create_uid_mapping(self.session, event_id, ical_uid)
            else:
                self.db.rebind_uid_mapping(self.session, mapping, ical_uid)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to rebind event {event_id} to UID {ical_uid}: {e}") from e

    def attach_thread(self, event_id: int, thread_id: int) -> None:
        try:
            self.db.attach_thread(self.session, event_id, thread_id)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Failed to attach thread {thread_id} to event {event_id}: {e}") from e

    def record_last_run(self, import_source_id: int, run_time: datetime,
                        status: str, error_message: Optional[str] = None) -> None:
        try:
            self.db.update_last_run(self.session, import_source_id, run_time, status, error_message)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Failed to record last run of import {import_source_id}: {e}") from e

    def write_log_entries(self, entries: Iterable[LogEntry],
                          import_source_id: Optional[int] = None,
                          run_id: Optional[str] = None) -> None:
        try:
            self.db.write_import_log(self.session, entries, import_source_id, run_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Failed to write import log: {e}") from e

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Commit failed: {e}") from e

    def rollback(self) -> None:
        self.session.rollback()


class SqlReadStatusSink(BaseReadStatusSink):
    """Read status stored in ``event_read_status``; each call is its own transaction."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self.logger = logger.getChild('read_status')

    def mark_read_for_all(self, event_id: int) -> SideEffectResult:
        now = to_db_time(utcnow())
        with self.db.get_session() as session:
            try:
                users = session.query(UserDB).filter(
                    UserDB.banned == False,
                    UserDB.activated == True
                ).all()
                for user in users:
                    status = session.get(ReadStatusDB, (event_id, user.id))
                    if status is None:
                        session.add(ReadStatusDB(
                            event_id=event_id,
                            user_id=user.id,
                            is_read=True,
                            read_time=now,
                            marked_automatically=True,
                        ))
                    elif not status.is_read:
                        status.is_read = True
                        status.read_time = now
                        status.marked_automatically = True
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                self.logger.warning(f"Could not mark event {event_id} read: {e}")
                return SideEffectResult.failure(str(e))
        return SideEffectResult.success(len(users))

    def mark_unread_for_all(self, event_id: int) -> SideEffectResult:
        with self.db.get_session() as session:
            try:
                changed = session.query(ReadStatusDB).filter(
                    ReadStatusDB.event_id == event_id,
                    ReadStatusDB.is_read == True
                ).update({'is_read': False}, synchronize_session=False)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                self.logger.warning(f"Could not mark event {event_id} unread: {e}")
                return SideEffectResult.failure(str(e))
        return SideEffectResult.success(changed)


class SqlDiscussionSink(BaseDiscussionSink):
    """Threads stored in the ``threads`` table."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self.logger = logger.getChild('threads')

    def create_thread(self, board_id: int, title: str, body: str,
                      event_id: Optional[int] = None) -> SideEffectResult:
        if board_id <= 0:
            return SideEffectResult.failure(f"invalid board id {board_id}")
        with self.db.get_session() as session:
            try:
                thread = ThreadDB(board_id=board_id, topic=title[:255], message=body, event_id=event_id)
                session.add(thread)
                session.commit()
                thread_id = thread.id
            except SQLAlchemyError as e:
                session.rollback()
                self.logger.warning(f"Could not create thread '{title}': {e}")
                return SideEffectResult.failure(str(e))
        self.logger.debug(f"Created thread {thread_id} on board {board_id}")
        return SideEffectResult.success(thread_id)
