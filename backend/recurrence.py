"""
Recurring event expansion.

A recurring event is stored as a parent row carrying the recurrence rule plus
one child row per occurrence. Children copy the parent's fields, keep its
duration, have no rule of their own and point back through parent_event_id.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

import models
from config import RECURRENCE_MAX_INSTANCES
from time_utils import ensure_utc, shift

logger = logging.getLogger(__name__)

# Fields copied from a series parent onto each occurrence
OCCURRENCE_FIELDS = (
    "title", "description", "all_day", "location", "color", "event_type",
    "attendees", "reminders", "owner_id", "team_id", "task_id",
)


def occurrence_starts(
    start: datetime,
    frequency: str,
    interval: int = 1,
    end_date: Optional[datetime] = None,
    max_instances: Optional[int] = None,
) -> List[datetime]:
    """
    Compute occurrence start times for a recurrence rule.

    The first occurrence is the anchor itself. Each later occurrence is
    computed from the anchor (anchor + n * interval units), so month-end
    clamping never accumulates: Jan 31 monthly gives Feb 28, Mar 31, Apr 30.

    Args:
        start: Anchor start time
        frequency: daily, weekly, monthly or yearly
        interval: Units between occurrences (>= 1)
        end_date: Inclusive upper bound for occurrence starts
        max_instances: Cap on the number of occurrences (defaults to
            RECURRENCE_MAX_INSTANCES)

    Returns:
        Occurrence start times in ascending order
    """
    if interval < 1:
        raise ValueError("Recurrence interval must be at least 1")

    cap = max_instances or RECURRENCE_MAX_INSTANCES
    start = ensure_utc(start)
    end_date = ensure_utc(end_date)

    starts = []
    step = 0
    while len(starts) < cap:
        current = shift(start, frequency, step * interval)
        if end_date is not None and current > end_date:
            break
        starts.append(current)
        step += 1
    return starts


def build_occurrence(parent: models.Event, start: datetime) -> models.Event:
    duration = ensure_utc(parent.end) - ensure_utc(parent.start)
    occurrence = models.Event(
        start=start,
        end=start + duration,
        recurrence=None,
        parent_event_id=parent.id,
        is_exception=False,
    )
    for field in OCCURRENCE_FIELDS:
        setattr(occurrence, field, getattr(parent, field))
    return occurrence


def expand_series(db: Session, parent: models.Event) -> List[models.Event]:
    """
    Create occurrence rows for a parent event that carries a recurrence rule.

    The parent must already be flushed so it has an id. Occurrences are added
    to the session but not committed.
    """
    rule = parent.recurrence
    if not rule:
        return []

    starts = occurrence_starts(
        parent.start,
        rule["frequency"],
        interval=rule.get("interval") or 1,
        end_date=datetime.fromisoformat(rule["end_date"]) if rule.get("end_date") else None,
        max_instances=rule.get("max_instances"),
    )

    occurrences = [build_occurrence(parent, start) for start in starts]
    db.add_all(occurrences)
    db.flush()

    logger.info(f"Expanded event {parent.id} into {len(occurrences)} occurrences ({rule['frequency']})")
    return occurrences
