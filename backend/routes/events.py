"""
Calendar events.

A recurring event is a parent row with a recurrence rule plus one row per
occurrence (see recurrence.py). Updates and deletes accept a scope:
- update_recurring="this": store an exception row instead of editing the series
- update_recurring="all": edit the parent and every future occurrence
- delete_recurring="all": remove the whole series
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from database import get_db
import models
import schemas
from activity import record_activity
from auth.dependencies import get_current_user
from auth.permissions import Action, require_event, require_task, require_team
from recurrence import OCCURRENCE_FIELDS, expand_series
from schemas import ActivityAction
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

# Fields that move an occurrence in time; never propagated across a series
TIMING_FIELDS = {"start", "end"}


def _check_times(start: datetime, end: datetime) -> None:
    if ensure_utc(end) <= ensure_utc(start):
        raise HTTPException(status_code=400, detail="End date must be after start date")


def _series_root(event: models.Event) -> models.Event:
    return event.parent_event if event.parent_event_id else event


def _first_occurrence(db: Session, root: models.Event) -> Optional[models.Event]:
    """The generated occurrence that shares the series root's start, if still present."""
    children = (
        db.query(models.Event)
        .filter(models.Event.parent_event_id == root.id, models.Event.is_exception.is_(False))
        .all()
    )
    root_start = ensure_utc(root.start)
    return next((c for c in children if ensure_utc(c.start) == root_start), None)


@router.post("/api/events", response_model=schemas.EventSeries, status_code=201)
def create_event(
    event: schemas.EventCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create an event; a recurrence rule expands it into occurrences."""
    logger.debug(f"User {current_user.id} creating event: {event.title}")

    _check_times(event.start, event.end)
    if event.team_id is not None:
        require_team(db, event.team_id, current_user)
    if event.task_id is not None:
        require_task(db, event.task_id, current_user)

    db_event = models.Event(
        **event.model_dump(exclude={"recurrence"}),
        recurrence=event.recurrence.model_dump(mode="json") if event.recurrence else None,
        owner_id=current_user.id,
    )
    db.add(db_event)
    db.flush()

    occurrences = expand_series(db, db_event)
    db.commit()
    db.refresh(db_event)

    record_activity(db, current_user.id, ActivityAction.event_created,
                    {"event_id": db_event.id, "title": db_event.title, "occurrences": len(occurrences)},
                    team_id=db_event.team_id)

    logger.info(f"Event created: {db_event.id} with {len(occurrences)} occurrences by user {current_user.id}")
    result = schemas.EventSeries.model_validate(db_event)
    result.occurrence_count = len(occurrences)
    return result


@router.get("/api/events", response_model=List[schemas.Event])
def list_events(
    team_id: Optional[int] = Query(None),
    user_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None, description="Only events ending after this time"),
    end: Optional[datetime] = Query(None, description="Only events starting before this time"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List events the user owns or that belong to one of the user's teams."""
    team_ids = [
        row.team_id for row in
        db.query(models.TeamMember.team_id).filter(models.TeamMember.user_id == current_user.id).all()
    ]

    query = db.query(models.Event).filter(
        or_(models.Event.owner_id == current_user.id, models.Event.team_id.in_(team_ids))
    )
    if team_id is not None:
        query = query.filter(models.Event.team_id == team_id)
    if user_id is not None:
        query = query.filter(models.Event.owner_id == user_id)
    if event_type is not None:
        query = query.filter(models.Event.event_type == event_type)
    if start is not None and end is not None:
        _check_times(start, end)
    if start is not None:
        query = query.filter(models.Event.end > ensure_utc(start))
    if end is not None:
        query = query.filter(models.Event.start < ensure_utc(end))

    events = query.order_by(models.Event.start.asc(), models.Event.id.asc()).all()
    logger.debug(f"User {current_user.id} retrieved {len(events)} events")
    return events


@router.get("/api/events/{event_id}", response_model=schemas.Event)
def get_event(
    event_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return require_event(db, event_id, current_user)


@router.get("/api/events/{event_id}/occurrences", response_model=List[schemas.Event])
def list_occurrences(
    event_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """All occurrence rows of a series, exceptions included."""
    event = require_event(db, event_id, current_user)
    root = _series_root(event)
    return (
        db.query(models.Event)
        .filter(models.Event.parent_event_id == root.id)
        .order_by(models.Event.start.asc(), models.Event.id.asc())
        .all()
    )


@router.put("/api/events/{event_id}", response_model=schemas.Event)
def update_event(
    event_id: int,
    event_update: schemas.EventUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update an event, a single occurrence, or a whole series (owner only)."""
    db_event = require_event(db, event_id, current_user, Action.update)

    update_data = event_update.model_dump(exclude_unset=True)
    scope = update_data.pop("update_recurring", None)
    for field in ("title", "start", "end", "all_day", "event_type"):
        if field in update_data and update_data[field] is None:
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")

    new_start = update_data.get("start", db_event.start)
    new_end = update_data.get("end", db_event.end)
    _check_times(new_start, new_end)

    in_series = db_event.recurrence is not None or db_event.parent_event_id is not None

    if scope == "this" and in_series:
        root = _series_root(db_event)
        exception = models.Event(
            start=new_start,
            end=new_end,
            recurrence=None,
            parent_event_id=root.id,
            is_exception=True,
        )
        for field in OCCURRENCE_FIELDS:
            setattr(exception, field, update_data.get(field, getattr(db_event, field)))
        db.add(exception)

        # The exception takes the place of the occurrence it was made from
        replaced = db_event if db_event.parent_event_id is not None else _first_occurrence(db, root)
        if replaced is not None:
            db.delete(replaced)

        db.commit()
        db.refresh(exception)
        result = exception
        logger.info(f"Exception {exception.id} created for series {root.id} by user {current_user.id}")

    elif scope == "all" and in_series:
        root = _series_root(db_event)
        series_fields = {k: v for k, v in update_data.items() if k not in TIMING_FIELDS}

        # Timing changes only move the targeted row
        for key, value in update_data.items():
            if key in TIMING_FIELDS:
                setattr(db_event, key, value)
        for key, value in series_fields.items():
            setattr(root, key, value)

        future = (
            db.query(models.Event)
            .filter(
                models.Event.parent_event_id == root.id,
                models.Event.is_exception.is_(False),
                models.Event.start >= utc_now(),
            )
            .all()
        )
        for occurrence in future:
            for key, value in series_fields.items():
                setattr(occurrence, key, value)

        db.commit()
        db.refresh(db_event)
        result = db_event
        logger.info(f"Series {root.id} updated ({len(future)} future occurrences) by user {current_user.id}")

    else:
        for key, value in update_data.items():
            setattr(db_event, key, value)
        db.commit()
        db.refresh(db_event)
        result = db_event
        logger.info(f"Event {event_id} updated by user {current_user.id}")

    record_activity(db, current_user.id, ActivityAction.event_updated,
                    {"event_id": result.id, "title": result.title, "scope": scope if in_series else None},
                    team_id=result.team_id)
    return result


@router.delete("/api/events/{event_id}")
def delete_event(
    event_id: int,
    delete_recurring: Optional[str] = Query(None, pattern="^(this|all)$"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete an event, or its whole series with delete_recurring=all (owner only)."""
    db_event = require_event(db, event_id, current_user, Action.delete)
    team_id, title = db_event.team_id, db_event.title

    removed = 1
    if delete_recurring == "all" and (db_event.recurrence is not None or db_event.parent_event_id is not None):
        root = _series_root(db_event)
        removed = (
            db.query(models.Event)
            .filter(models.Event.parent_event_id == root.id)
            .delete(synchronize_session=False)
        )
        db.expire(root)
        db.delete(root)
        removed += 1
        event_id = root.id
    else:
        if db_event.recurrence is not None:
            # Remaining occurrences become standalone events
            db.query(models.Event).filter(models.Event.parent_event_id == db_event.id).update(
                {models.Event.parent_event_id: None}, synchronize_session=False
            )
            db.expire(db_event)
        db.delete(db_event)

    db.commit()

    record_activity(db, current_user.id, ActivityAction.event_deleted,
                    {"event_id": event_id, "title": title, "occurrences": removed,
                     "scope": delete_recurring if removed > 1 else None},
                    team_id=team_id)

    logger.info(f"Deleted {removed} event rows (event {event_id}) by user {current_user.id}")
    return {"message": "Event deleted", "deleted": removed}
