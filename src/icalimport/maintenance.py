"""Batch maintenance jobs run outside of feed imports."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

import pytz

from .database import DatabaseManager, to_stored_event
from .models import ImportConfiguration
from .services.base import BaseReadStatusSink
from .timezones import detect_and_fix_double_offset

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    """Counts of a maintenance job."""

    checked: int = 0
    changed: int = 0
    failed: int = 0
    event_ids: List[int] = field(default_factory=list)


def fix_double_offsets(
    db_manager: DatabaseManager,
    only_future: bool = True,
    now: Optional[datetime] = None,
    dry_run: bool = False
) -> MaintenanceResult:
    """Repair stored events whose timezone offset was applied twice.

    Args:
        db_manager: Database manager
        only_future: Restrict the repair to events that have not started yet
        now: Reference time for ``only_future``
        dry_run: Report affected events without writing

    Returns:
        MaintenanceResult listing the repaired event ids
    """
    now = now or datetime.now(pytz.UTC)
    result = MaintenanceResult()

    with db_manager.get_session() as session:
        rows = db_manager.get_events_for_timezone_repair(
            session, starting_after=now if only_future else None
        )
        for row in rows:
            result.checked += 1
            stored = to_stored_event(row)
            fixed = detect_and_fix_double_offset(stored)
            if fixed is stored:
                continue
            logger.info(
                f"Event {stored.id} ({stored.timezone}): start {stored.start.isoformat()} "
                f"-> {fixed.start.isoformat()}"
            )
            result.event_ids.append(stored.id)
            result.changed += 1
            if not dry_run:
                db_manager.set_event_times(session, row, fixed.start, fixed.end)
        if not dry_run:
            session.commit()

    logger.info(f"Timezone repair: {result.changed} of {result.checked} events corrected")
    return result


def mark_past_events_read(
    db_manager: DatabaseManager,
    read_sink: BaseReadStatusSink,
    config: ImportConfiguration,
    now: Optional[datetime] = None
) -> MaintenanceResult:
    """Mark events that started within the lookback period read for all users."""
    result = MaintenanceResult()
    if not config.auto_mark_past_read:
        logger.info("Marking past events read is disabled")
        return result

    now = now or datetime.now(pytz.UTC)
    since = now - timedelta(days=config.past_read_lookback_days)
    with db_manager.get_session() as session:
        event_ids = [row.id for row in db_manager.get_events_starting_between(session, since, now)]

    for event_id in event_ids:
        result.checked += 1
        outcome = read_sink.mark_read_for_all(event_id)
        if outcome.ok:
            result.changed += 1
            result.event_ids.append(event_id)
        else:
            result.failed += 1
            logger.warning(f"Could not mark event {event_id} read: {outcome.error}")

    logger.info(f"Marked {result.changed} past events read ({result.failed} failed)")
    return result
