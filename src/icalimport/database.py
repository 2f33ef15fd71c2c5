"""Database models and operations for the imported event store."""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import (
    create_engine, func, Column, String, DateTime, Boolean, Text, Integer, ForeignKey, Index,
    UniqueConstraint
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
import pytz

from .config import Settings
from .models import ImportSource, LogEntry, StoredEvent, UidMapping, ensure_utc

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def to_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC column value."""
    if dt is None:
        return None
    return ensure_utc(dt).replace(tzinfo=None)


def _db_now() -> datetime:
    return to_db_time(utcnow())


class ImportSourceDB(Base):
    """Database model for a configured feed import."""

    __tablename__ = 'import_sources'

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False, default='')
    feed_url = Column(String(1000), nullable=False)
    calendar_id = Column(Integer, nullable=False, default=0)
    board_id = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    last_run = Column(DateTime, nullable=True)
    last_status = Column(String(20), nullable=True)  # 'completed', 'failed'
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_db_now)

    events = relationship("EventDB", back_populates="import_source")

    __table_args__ = (
        Index('idx_import_source_active', 'is_active'),
        Index('idx_import_source_url', 'feed_url'),
    )


class EventDB(Base):
    """Database model for a stored calendar event."""

    __tablename__ = 'events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_source_id = Column(Integer, ForeignKey('import_sources.id'), nullable=True)
    calendar_id = Column(Integer, nullable=False, default=0)

    subject = Column(String(255), nullable=False, default='')
    body = Column(Text, nullable=False, default='')
    location = Column(String(255), nullable=False, default='')

    # Naive UTC
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_all_day = Column(Boolean, nullable=False, default=False)
    timezone = Column(String(64), nullable=False, default='UTC')
    original_start_time = Column(DateTime, nullable=True)
    participation_end_time = Column(DateTime, nullable=True)

    thread_id = Column(Integer, nullable=True)
    disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=_db_now)
    last_modified = Column(DateTime, nullable=False, default=_db_now)

    import_source = relationship("ImportSourceDB", back_populates="events")
    uid_mapping = relationship("UidMappingDB", back_populates="event", uselist=False)

    __table_args__ = (
        Index('idx_event_start', 'start_time'),
        Index('idx_event_disabled_start', 'disabled', 'start_time'),
        Index('idx_event_import_source', 'import_source_id'),
    )


class UidMappingDB(Base):
    """Database model for the iCalendar UID to event mapping."""

    __tablename__ = 'ical_uid_map'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey('events.id'), nullable=False)
    ical_uid = Column(String(255), nullable=False)
    import_source_id = Column(Integer, nullable=True)
    last_updated = Column(DateTime, nullable=False, default=_db_now)

    event = relationship("EventDB", back_populates="uid_mapping")

    # One UID per event and one event per UID
    __table_args__ = (
        UniqueConstraint('ical_uid', name='uq_uid_map_ical_uid'),
        UniqueConstraint('event_id', name='uq_uid_map_event_id'),
        Index('idx_uid_map_import_source', 'import_source_id'),
    )


class ImportLogDB(Base):
    """Database model for persisted import log entries."""

    __tablename__ = 'import_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_source_id = Column(Integer, nullable=True)
    run_id = Column(String(36), nullable=True)
    event_uid = Column(String(255), nullable=False, default='')
    event_id = Column(Integer, nullable=True)
    action = Column(String(50), nullable=False, default='import')
    log_level = Column(String(20), nullable=False, default='info')
    message = Column(Text, nullable=True)
    import_time = Column(DateTime, nullable=False, default=_db_now)

    __table_args__ = (
        Index('idx_import_log_uid', 'event_uid'),
        Index('idx_import_log_time', 'import_time'),
        Index('idx_import_log_level', 'log_level'),
    )


class UserDB(Base):
    """Database model for members whose read status is tracked."""

    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True)
    banned = Column(Boolean, nullable=False, default=False)
    activated = Column(Boolean, nullable=False, default=True)


class ReadStatusDB(Base):
    """Database model for per-user event read status."""

    __tablename__ = 'event_read_status'

    event_id = Column(Integer, ForeignKey('events.id'), primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), primary_key=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_time = Column(DateTime, nullable=True)
    marked_automatically = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index('idx_read_status_user', 'user_id'),
        Index('idx_read_status_read', 'is_read'),
    )


class ThreadDB(Base):
    """Database model for discussion threads opened for events."""

    __tablename__ = 'threads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    board_id = Column(Integer, nullable=False)
    topic = Column(String(255), nullable=False)
    message = Column(Text, nullable=False, default='')
    event_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_db_now)


class RunLockDB(Base):
    """Database model for expiring named run locks."""

    __tablename__ = 'run_locks'

    name = Column(String(100), primary_key=True)
    token = Column(String(36), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=_db_now)
    expires_at = Column(DateTime, nullable=False)


def to_stored_event(row: EventDB) -> StoredEvent:
    """Map an event row to the StoredEvent model."""
    return StoredEvent(
        id=row.id,
        subject=row.subject or '',
        body=row.body or '',
        location=row.location or '',
        start=row.start_time,
        end=row.end_time,
        all_day=bool(row.is_all_day),
        timezone=row.timezone or 'UTC',
        original_start=row.original_start_time,
        participation_end=row.participation_end_time,
        last_modified=row.last_modified,
        disabled=bool(row.disabled),
        thread_id=row.thread_id,
        import_source_id=row.import_source_id,
    )


def to_uid_mapping(row: UidMappingDB) -> UidMapping:
    return UidMapping(
        event_id=row.event_id,
        ical_uid=row.ical_uid,
        import_source_id=row.import_source_id,
        last_updated=row.last_updated,
    )


def to_import_source(row: ImportSourceDB) -> ImportSource:
    return ImportSource(
        id=row.id,
        title=row.title or '',
        feed_url=row.feed_url,
        calendar_id=row.calendar_id or 0,
        board_id=row.board_id or 0,
        is_active=bool(row.is_active),
        last_run=ensure_utc(row.last_run),
        last_status=row.last_status,
    )


class DatabaseManager:
    """Database manager for import operations.

    Event and mapping writes only flush; the caller owns the transaction
    (see ``services.sql.SqlEventStore``). Bookkeeping writes (import
    sources, logs, locks) commit immediately.
    """

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # Import sources

    def create_import_source(
        self,
        session: Session,
        feed_url: str,
        title: str = '',
        calendar_id: int = 0,
        board_id: int = 0,
        is_active: bool = True
    ) -> ImportSourceDB:
        """Create a feed import configuration."""
        source = ImportSourceDB(
            feed_url=feed_url,
            title=title or feed_url,
            calendar_id=calendar_id,
            board_id=board_id,
            is_active=is_active,
        )
        session.add(source)
        session.commit()
        return source

    def get_import_source(self, session: Session, import_source_id: int) -> Optional[ImportSourceDB]:
        return session.get(ImportSourceDB, import_source_id)

    def get_import_source_by_url(self, session: Session, feed_url: str) -> Optional[ImportSourceDB]:
        return session.query(ImportSourceDB).filter(
            ImportSourceDB.feed_url == feed_url
        ).order_by(ImportSourceDB.id).first()

    def get_import_sources(self, session: Session, active_only: bool = True) -> List[ImportSourceDB]:
        """List import configurations ordered by id."""
        query = session.query(ImportSourceDB)
        if active_only:
            query = query.filter(ImportSourceDB.is_active == True)
        return query.order_by(ImportSourceDB.id).all()

    def set_import_source_active(self, session: Session, import_source_id: int, active: bool) -> bool:
        source = self.get_import_source(session, import_source_id)
        if source is None:
            return False
        source.is_active = active
        session.commit()
        return True

    def update_last_run(
        self,
        session: Session,
        import_source_id: int,
        run_time: datetime,
        status: str = 'completed',
        error_message: Optional[str] = None
    ) -> None:
        """Record the last run of an import, successful or not."""
        source = self.get_import_source(session, import_source_id)
        if source is None:
            return
        source.last_run = to_db_time(run_time)
        source.last_status = status
        source.last_error = error_message
        session.commit()

    # Events

    def get_event(self, session: Session, event_id: int) -> Optional[EventDB]:
        return session.get(EventDB, event_id)

    def find_events_near(
        self,
        session: Session,
        start: datetime,
        window: timedelta
    ) -> List[EventDB]:
        """Enabled events whose start lies within ``start`` +/- ``window``.

        Rows come back in storage (id) order.
        """
        lower = to_db_time(start - window)
        upper = to_db_time(start + window)
        return session.query(EventDB).filter(
            EventDB.disabled == False,
            EventDB.start_time >= lower,
            EventDB.start_time <= upper
        ).order_by(EventDB.id).all()

    def create_event(self, session: Session, **fields: Any) -> EventDB:
        """Add an event row and flush to obtain its id."""
        event = EventDB(**self._event_columns(fields))
        session.add(event)
        session.flush()
        return event

    def update_event(self, session: Session, event: EventDB, **fields: Any) -> EventDB:
        """Apply mutable fields to an event row and flush."""
        for column, value in self._event_columns(fields).items():
            setattr(event, column, value)
        event.last_modified = _db_now()
        session.flush()
        return event

    def set_event_times(
        self,
        session: Session,
        event: EventDB,
        start: datetime,
        end: datetime
    ) -> EventDB:
        event.start_time = to_db_time(start)
        event.end_time = to_db_time(end)
        event.last_modified = _db_now()
        session.flush()
        return event

    def attach_thread(self, session: Session, event_id: int, thread_id: int) -> None:
        event = self.get_event(session, event_id)
        if event is not None:
            event.thread_id = thread_id
            session.flush()

    def get_events_for_timezone_repair(
        self,
        session: Session,
        starting_after: Optional[datetime] = None
    ) -> List[EventDB]:
        """Timed, non-UTC events that recorded their original start."""
        query = session.query(EventDB).filter(
            EventDB.is_all_day == False,
            EventDB.timezone != 'UTC',
            EventDB.original_start_time.isnot(None)
        )
        if starting_after is not None:
            query = query.filter(EventDB.start_time > to_db_time(starting_after))
        return query.order_by(EventDB.start_time).all()

    def get_events_starting_between(
        self,
        session: Session,
        start: datetime,
        end: datetime
    ) -> List[EventDB]:
        return session.query(EventDB).filter(
            EventDB.start_time > to_db_time(start),
            EventDB.start_time < to_db_time(end)
        ).order_by(EventDB.start_time.desc()).all()

    @staticmethod
    def _event_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
        names = {
            'subject': 'subject',
            'body': 'body',
            'location': 'location',
            'start': 'start_time',
            'end': 'end_time',
            'all_day': 'is_all_day',
            'timezone': 'timezone',
            'original_start': 'original_start_time',
            'participation_end': 'participation_end_time',
            'calendar_id': 'calendar_id',
            'import_source_id': 'import_source_id',
            'disabled': 'disabled',
        }
        columns = {}
        for key, value in fields.items():
            if key not in names:
                raise KeyError(f"Unknown event field: {key}")
            if isinstance(value, datetime):
                value = to_db_time(value)
            columns[names[key]] = value
        return columns

    # UID mappings

    def get_uid_mapping(self, session: Session, ical_uid: str) -> Optional[UidMappingDB]:
        """Get the mapping row for an iCalendar UID."""
        return session.query(UidMappingDB).filter(
            UidMappingDB.ical_uid == ical_uid
        ).first()

    def get_uid_mapping_for_event(self, session: Session, event_id: int) -> Optional[UidMappingDB]:
        return session.query(UidMappingDB).filter(
            UidMappingDB.event_id == event_id
        ).first()

    def create_uid_mapping(
        self,
        session: Session,
        event_id: int,
        ical_uid: str,
        import_source_id: Optional[int] = None
    ) -> UidMappingDB:
        """Add a mapping row and flush (unique constraints fire here)."""
        mapping = UidMappingDB(
            event_id=event_id,
            ical_uid=ical_uid,
            import_source_id=import_source_id,
            last_updated=_db_now(),
        )
        session.add(mapping)
        session.flush()
        return mapping

    def rebind_uid_mapping(self, session: Session, mapping: UidMappingDB, ical_uid: str) -> UidMappingDB:
        """Point an existing mapping at a new UID."""
        mapping.ical_uid = ical_uid
        mapping.last_updated = _db_now()
        session.flush()
        return mapping

    def touch_uid_mapping(self, session: Session, event_id: int) -> bool:
        mapping = self.get_uid_mapping_for_event(session, event_id)
        if mapping is None:
            return False
        mapping.last_updated = _db_now()
        session.flush()
        return True

    # Import log

    def write_import_log(
        self,
        session: Session,
        entries: Iterable[LogEntry],
        import_source_id: Optional[int] = None,
        run_id: Optional[str] = None
    ) -> int:
        """Persist log entries of a run."""
        count = 0
        for entry in entries:
            session.add(ImportLogDB(
                import_source_id=import_source_id,
                run_id=run_id,
                event_uid=entry.event_uid or '',
                event_id=entry.event_id,
                action=entry.action,
                log_level=entry.level.value,
                message=entry.message,
                import_time=to_db_time(entry.timestamp),
            ))
            count += 1
        session.commit()
        return count

    def get_recent_import_logs(self, session: Session, limit: int = 20) -> List[ImportLogDB]:
        return session.query(ImportLogDB).order_by(
            ImportLogDB.import_time.desc(), ImportLogDB.id.desc()
        ).limit(limit).all()

    # Run locks

    def acquire_run_lock(self, session: Session, name: str, ttl_seconds: int) -> Optional[str]:
        """Take the named lock; returns a release token or None if held."""
        now = _db_now()
        lock = session.get(RunLockDB, name)
        if lock is not None:
            if lock.expires_at > now:
                return None
            session.delete(lock)
            session.flush()

        token = uuid4().hex
        session.add(RunLockDB(
            name=name,
            token=token,
            acquired_at=now,
            expires_at=now + timedelta(seconds=max(1, ttl_seconds)),
        ))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return None
        return token

    def release_run_lock(self, session: Session, name: str, token: Optional[str]) -> bool:
        if token is None:
            return False
        deleted = session.query(RunLockDB).filter(
            RunLockDB.name == name,
            RunLockDB.token == token
        ).delete(synchronize_session=False)
        session.commit()
        return deleted == 1

    # Health

    def validate_database_integrity(self, session: Session) -> Dict[str, Any]:
        """Validate mapping integrity and return a health report."""
        issues = []

        duplicate_events = session.query(UidMappingDB.event_id).group_by(
            UidMappingDB.event_id
        ).having(func.count(UidMappingDB.id) > 1).count()
        if duplicate_events > 0:
            issues.append(f"{duplicate_events} events mapped by more than one UID")

        dangling = session.query(UidMappingDB).outerjoin(
            EventDB, UidMappingDB.event_id == EventDB.id
        ).filter(EventDB.id.is_(None)).count()
        if dangling > 0:
            issues.append(f"{dangling} UID mappings point at missing events")

        unmapped = session.query(EventDB).outerjoin(
            UidMappingDB, UidMappingDB.event_id == EventDB.id
        ).filter(
            EventDB.import_source_id.isnot(None),
            UidMappingDB.id.is_(None)
        ).count()
        if unmapped > 0:
            issues.append(f"{unmapped} imported events without UID mapping")

        return {
            'healthy': len(issues) == 0,
            'issues': issues,
            'total_events': session.query(EventDB).count(),
            'total_uid_mappings': session.query(UidMappingDB).count(),
            'active_imports': session.query(ImportSourceDB).filter(
                ImportSourceDB.is_active == True
            ).count(),
        }
