"""Identity resolution: intra-feed deduplication, UID lookup and fallback matching."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Tuple

from .models import ImportConfiguration, ParsedEvent, StoredEvent, ensure_utc
from .services.base import BaseEventStore

logger = logging.getLogger(__name__)

MATCHED_BY_UID = 'uid'
MATCHED_BY_LOCATION = 'location'
MATCHED_BY_TITLE = 'title'


def deduplicate_within_run(events: Iterable[ParsedEvent]) -> List[ParsedEvent]:
    """Keep the first event per non-empty UID, preserving feed order.

    Events with an empty UID are all kept.
    """
    seen = set()
    unique = []
    for event in events:
        if event.uid:
            if event.uid in seen:
                logger.debug(f"Dropping duplicate UID {event.uid} from feed")
                continue
            seen.add(event.uid)
        unique.append(event)
    return unique


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Character overlap ratio of two titles, case-insensitive and trimmed.

    Two empty titles are identical; one empty title matches nothing.
    """
    a = (a or '').strip().lower()
    b = (b or '').strip().lower()
    if not a or not b:
        return 1.0 if a == b else 0.0
    return SequenceMatcher(None, a, b, autojunk=False).ratio()


@dataclass
class Resolution:
    """Existing event an incoming event resolved to."""

    event_id: int
    matched_by: str
    stored: Optional[StoredEvent] = None

    @property
    def by_uid(self) -> bool:
        return self.matched_by == MATCHED_BY_UID


class IdentityResolver:
    """Map incoming events onto stored events."""

    def __init__(self, config: ImportConfiguration):
        self.window = timedelta(minutes=config.match_window_minutes)
        self.threshold = config.title_similarity_threshold
        self.logger = logger

    def resolve(self, event: ParsedEvent, store: BaseEventStore) -> Optional[Resolution]:
        """Find the stored event ``event`` refers to.

        Args:
            event: Incoming event, already timezone-normalized
            store: Event store to search

        Returns:
            Resolution, or None when the event is new
        """
        if event.uid:
            mapping = store.get_uid_mapping(event.uid)
            if mapping is not None:
                return Resolution(event_id=mapping.event_id, matched_by=MATCHED_BY_UID)

        if event.start is None:
            return None

        match = self.match_properties(event, store.find_events_near(event.start, self.window))
        if match is None:
            return None
        stored, matched_by = match
        self.logger.debug(
            f"Fallback match for {event.uid or '<no uid>'} -> event {stored.id} by {matched_by}"
        )
        return Resolution(event_id=stored.id, matched_by=matched_by, stored=stored)

    def match_properties(self, event: ParsedEvent,
                         candidates: Iterable[StoredEvent]) -> Optional[Tuple[StoredEvent, str]]:
        """First candidate within the time window sharing location or title."""
        start = ensure_utc(event.start)
        location = (event.location or '').strip()
        title = (event.summary or '').strip()
        for stored in candidates:
            if stored.disabled:
                continue
            if abs(ensure_utc(stored.start) - start) > self.window:
                continue
            if location and (stored.location or '').strip() == location:
                return stored, MATCHED_BY_LOCATION
            if title and title_similarity(title, stored.subject) >= self.threshold:
                return stored, MATCHED_BY_TITLE
        return None
