"""Base interfaces for the event store and import side effects."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional
import logging

from ..models import EventFields, LogEntry, StoredEvent, UidMapping

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for event store errors."""
    pass


class PersistenceError(StoreError):
    """A write to the event store failed; the unit of work must be rolled back."""
    pass


class EventNotFoundError(StoreError):
    """Event not found errors."""
    pass


@dataclass
class SideEffectResult:
    """Outcome of a side effect; failures never undo the committed event."""

    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "SideEffectResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "SideEffectResult":
        return cls(ok=False, error=error)


class BaseEventStore(ABC):
    """Abstract event store used by the sync engine.

    Writes are staged until ``commit``; ``rollback`` discards everything
    staged since the last commit.
    """

    @abstractmethod
    def get_uid_mapping(self, ical_uid: str) -> Optional[UidMapping]:
        """Get the mapping for an iCalendar UID.

        Args:
            ical_uid: UID as read from the feed

        Returns:
            Mapping or None when the UID is unknown
        """
        pass

    @abstractmethod
    def get_mapping_for_event(self, event_id: int) -> Optional[UidMapping]:
        """Get the mapping pointing at ``event_id``, if any."""
        pass

    @abstractmethod
    def find_events_near(self, start: datetime, window: timedelta) -> List[StoredEvent]:
        """Enabled events starting within ``start`` +/- ``window``.

        Args:
            start: Reference instant
            window: Half width of the search window

        Returns:
            Candidate events in storage order
        """
        pass

    @abstractmethod
    def get_event(self, event_id: int) -> StoredEvent:
        """Get a stored event.

        Raises:
            EventNotFoundError: If no such event exists
        """
        pass

    @abstractmethod
    def create_event(self, fields: EventFields) -> int:
        """Stage a new event and return its identifier.

        Raises:
            PersistenceError: If the event cannot be written
        """
        pass

    @abstractmethod
    def update_event(self, event_id: int, fields: EventFields) -> None:
        """Stage changed fields of an existing event.

        Raises:
            EventNotFoundError: If the event does not exist
            PersistenceError: If the event cannot be written
        """
        pass

    @abstractmethod
    def create_uid_mapping(self, event_id: int, ical_uid: str,
                           import_source_id: Optional[int] = None) -> None:
        """Stage a UID mapping.

        Raises:
            PersistenceError: If the UID or the event is already mapped
        """
        pass

    @abstractmethod
    def touch_uid_mapping(self, event_id: int) -> None:
        """Bump ``last_updated`` of the mapping of ``event_id``."""
        pass

    @abstractmethod
    def rebind_uid_mapping(self, event_id: int, ical_uid: str) -> None:
        """Point the mapping of ``event_id`` at a new UID."""
        pass

    @abstractmethod
    def attach_thread(self, event_id: int, thread_id: int) -> None:
        """Record the discussion thread opened for an event."""
        pass

    @abstractmethod
    def record_last_run(self, import_source_id: int, run_time: datetime,
                        status: str, error_message: Optional[str] = None) -> None:
        """Persist the last run time of an import."""
        pass

    @abstractmethod
    def write_log_entries(self, entries: Iterable[LogEntry],
                          import_source_id: Optional[int] = None,
                          run_id: Optional[str] = None) -> None:
        """Persist the log entries of a run."""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit staged writes.

        Raises:
            PersistenceError: If the commit fails
        """
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard staged writes."""
        pass


class BaseReadStatusSink(ABC):
    """Per-user read tracking for events."""

    @abstractmethod
    def mark_read_for_all(self, event_id: int) -> SideEffectResult:
        """Mark an event read for every active user."""
        pass

    @abstractmethod
    def mark_unread_for_all(self, event_id: int) -> SideEffectResult:
        """Reset the read flag of an event for every user."""
        pass


class BaseDiscussionSink(ABC):
    """Discussion boards that can host a thread per event."""

    @abstractmethod
    def create_thread(self, board_id: int, title: str, body: str,
                      event_id: Optional[int] = None) -> SideEffectResult:
        """Open a thread; on success ``value`` holds the thread id."""
        pass


class NullReadStatusSink(BaseReadStatusSink):
    """Read status sink that does nothing."""

    def mark_read_for_all(self, event_id: int) -> SideEffectResult:
        return SideEffectResult.success(0)

    def mark_unread_for_all(self, event_id: int) -> SideEffectResult:
        return SideEffectResult.success(0)


class NullDiscussionSink(BaseDiscussionSink):
    """Discussion sink that never opens threads."""

    def create_thread(self, board_id: int, title: str, body: str,
                      event_id: Optional[int] = None) -> SideEffectResult:
        logger.debug(f"Thread creation disabled, not opening '{title}'")
        return SideEffectResult.failure("thread creation not available")
