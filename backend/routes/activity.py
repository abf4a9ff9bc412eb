"""
Activity log endpoints.

Entries are append-only. Listing endpoints are scoped by the pure
authorization rules: a user sees their own log, team members see the team's
log, and global admins see everything.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.orm import Query as OrmQuery, Session, joinedload

from database import get_db
import models
import schemas
from activity import add_activity, build_details
from auth.dependencies import get_current_user
from auth.permissions import ActivityScope, actor_for, authorize, enforce, team_role_of
from time_utils import ensure_utc, truncate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/activity", tags=["activity"])


def _scope(db: Session, user: models.User, user_id: Optional[str] = None,
           team_id: Optional[int] = None) -> None:
    scope = ActivityScope(
        user_id=user_id,
        team_id=team_id,
        actor_team_role=team_role_of(db, team_id, user.id) if team_id is not None else None,
    )
    enforce(authorize(actor_for(user), scope))


def _filtered(query: OrmQuery, action: Optional[str], start_date: Optional[datetime],
              end_date: Optional[datetime]) -> OrmQuery:
    if start_date and end_date and ensure_utc(end_date) < ensure_utc(start_date):
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    if action:
        query = query.filter(models.ActivityLog.action == action)
    if start_date:
        query = query.filter(models.ActivityLog.created_at >= ensure_utc(start_date))
    if end_date:
        query = query.filter(models.ActivityLog.created_at <= ensure_utc(end_date))
    return query


def _page(query: OrmQuery, limit: int, offset: int) -> dict:
    total = query.count()
    logs = (
        query.options(joinedload(models.ActivityLog.actor))
        .order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {"logs": logs, "pagination": {"total": total, "limit": limit, "offset": offset}}


@router.post("", response_model=schemas.ActivityLog, status_code=201)
def create_activity(
    entry: schemas.ActivityCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Record an activity entry for the caller."""
    if entry.team_id is not None:
        _scope(db, current_user, team_id=entry.team_id)

    try:
        details = build_details(entry.action, entry.details)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid details for action '{entry.action}': {e.errors()[0]['msg']}",
        )

    log = add_activity(db, current_user.id, entry.action, details, team_id=entry.team_id)
    logger.info(f"Activity {log.id} ({entry.action}) recorded by user {current_user.id}")
    return log


@router.get("/user/{user_id}", response_model=schemas.ActivityLogList)
def get_user_activity(
    user_id: str,
    action: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Activity performed by a user (self or global admin)."""
    _scope(db, current_user, user_id=user_id)

    query = db.query(models.ActivityLog).filter(models.ActivityLog.actor_id == user_id)
    return _page(_filtered(query, action, start_date, end_date), limit, offset)


@router.get("/team/{team_id}", response_model=schemas.ActivityLogList)
def get_team_activity(
    team_id: int,
    action: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Activity recorded against a team (members or global admin)."""
    if not db.query(models.Team).filter(models.Team.id == team_id).first():
        raise HTTPException(status_code=404, detail="Team not found")
    _scope(db, current_user, team_id=team_id)

    query = db.query(models.ActivityLog).filter(models.ActivityLog.team_id == team_id)
    return _page(_filtered(query, action, start_date, end_date), limit, offset)


@router.get("/stats", response_model=schemas.ActivityStats)
def get_activity_stats(
    group_by: Literal["hour", "day", "week", "month"] = Query("day"),
    team_id: Optional[int] = Query(None),
    user_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Activity counts bucketed by time.

    Defaults to the caller's own activity when neither team_id nor user_id is
    given. Buckets are ordered oldest first.
    """
    if team_id is None and user_id is None:
        user_id = current_user.id
    _scope(db, current_user, user_id=user_id, team_id=team_id)

    query = db.query(models.ActivityLog)
    if team_id is not None:
        query = query.filter(models.ActivityLog.team_id == team_id)
    if user_id is not None:
        query = query.filter(models.ActivityLog.actor_id == user_id)
    logs: List[models.ActivityLog] = _filtered(query, None, start_date, end_date).all()

    buckets = {}
    by_action = Counter()
    by_kind = Counter()
    for log in logs:
        period = truncate(log.created_at, group_by)
        bucket = buckets.setdefault(period, Counter())
        bucket[log.action] += 1
        by_action[log.action] += 1
        by_kind[(log.details or {}).get("kind", "unknown")] += 1

    ordered = [
        {"period": period, "count": sum(counts.values()), "by_action": dict(counts)}
        for period, counts in sorted(buckets.items())
    ]
    most_common = by_action.most_common(1)

    logger.debug(f"Activity stats for user={user_id} team={team_id}: {len(logs)} entries, {len(ordered)} buckets")
    return {
        "group_by": group_by,
        "buckets": ordered,
        "by_action": dict(by_action),
        "by_kind": dict(by_kind),
        "trends": {
            "total_actions": len(logs),
            "most_common_action": most_common[0][0] if most_common else None,
            "average_per_bucket": round(len(logs) / len(ordered), 2) if ordered else 0.0,
        },
    }
