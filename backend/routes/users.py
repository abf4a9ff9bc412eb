import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from database import get_db
import models
import schemas
from auth.dependencies import get_current_admin, get_current_user
from realtime import RoomHub, get_hub, user_room

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


def _assigned_task_query(db: Session, user_id: str):
    return (
        db.query(models.Task)
        .join(models.TaskAssignee, models.TaskAssignee.task_id == models.Task.id)
        .filter(models.TaskAssignee.user_id == user_id)
    )


# ============== Current user ==============

@router.put("/api/user/me", response_model=schemas.User)
def update_profile(
    profile: schemas.UserUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update name and avatar; preferences are merged into the stored ones."""
    logger.debug(f"User {current_user.id} updating profile")

    update_data = profile.model_dump(exclude_unset=True)
    preferences = update_data.pop("preferences", None)
    for key, value in update_data.items():
        if value is None:
            raise HTTPException(status_code=400, detail=f"{key} cannot be null")
        setattr(current_user, key, value)

    if preferences is not None:
        merged = dict(current_user.preferences or models.default_preferences())
        merged.update(preferences)
        current_user.preferences = merged

    db.commit()
    db.refresh(current_user)

    logger.info(f"Profile updated for user {current_user.id}")
    return current_user


@router.patch("/api/user/me/status", response_model=schemas.User)
def update_my_status(
    status_update: schemas.UserStatusUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Set the current user's presence status (active or inactive)."""
    current_user.status = status_update.status
    db.commit()
    db.refresh(current_user)

    hub.emit(user_room(current_user.id), "user:status", {"user_id": current_user.id, "status": status_update.status})
    logger.info(f"User {current_user.id} status set to {status_update.status}")
    return current_user


@router.post("/api/user/check-email", response_model=schemas.EmailCheckResponse)
def check_email(
    request: schemas.EmailCheckRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Check whether a user with this e-mail exists (used before inviting)."""
    user = db.query(models.User).filter(func.lower(models.User.email) == request.email.lower()).first()
    return {"exists": user is not None, "user": user}


@router.get("/api/user/me/stats", response_model=schemas.UserStats)
def get_my_stats(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Counts of teams and tasks for the current user."""
    teams = db.query(models.TeamMember).filter(models.TeamMember.user_id == current_user.id).count()

    created = db.query(models.Task).filter(models.Task.creator_id == current_user.id)
    assigned = _assigned_task_query(db, current_user.id)

    # Tasks the user created or is assigned to, counted once
    involved = {task.id: task for task in created.all()}
    for task in assigned.all():
        involved.setdefault(task.id, task)

    by_status = {s.value: 0 for s in models.TaskStatus}
    by_priority = {p.value: 0 for p in models.TaskPriority}
    for task in involved.values():
        by_status[models.TaskStatus(task.status).value] += 1
        by_priority[models.TaskPriority(task.priority).value] += 1

    return {
        "teams": teams,
        "tasks_created": created.count(),
        "tasks_assigned": assigned.count(),
        "tasks_completed": by_status[models.TaskStatus.done.value],
        "by_status": by_status,
        "by_priority": by_priority,
    }


@router.get("/api/user/me/activity", response_model=schemas.UserActivity)
def get_my_activity(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Tasks created, tasks assigned and teams joined, optionally within a date range."""
    created = db.query(models.Task).filter(models.Task.creator_id == current_user.id)
    assigned = _assigned_task_query(db, current_user.id)
    memberships = db.query(models.TeamMember).filter(models.TeamMember.user_id == current_user.id)

    if start_date:
        created = created.filter(models.Task.created_at >= start_date)
        assigned = assigned.filter(models.TaskAssignee.assigned_at >= start_date)
        memberships = memberships.filter(models.TeamMember.joined_at >= start_date)
    if end_date:
        created = created.filter(models.Task.created_at <= end_date)
        assigned = assigned.filter(models.TaskAssignee.assigned_at <= end_date)
        memberships = memberships.filter(models.TeamMember.joined_at <= end_date)

    return {
        "created_tasks": created.order_by(models.Task.id.desc()).all(),
        "assigned_tasks": assigned.order_by(models.Task.id.desc()).all(),
        "teams": [membership.team for membership in memberships.all()],
    }


# ============== Directory ==============

@router.get("/api/users/search", response_model=List[schemas.UserBrief])
def search_users(
    query: str = Query("", max_length=255),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Find users by name or e-mail substring (at most 10 results)."""
    query = query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Search query is required")

    pattern = f"%{query.lower()}%"
    users = (
        db.query(models.User)
        .filter(
            or_(func.lower(models.User.name).like(pattern), func.lower(models.User.email).like(pattern)),
            models.User.status != models.UserStatus.blocked,
        )
        .order_by(models.User.name)
        .limit(10)
        .all()
    )

    logger.debug(f"User search '{query}' returned {len(users)} results")
    return users


@router.get("/api/users/{user_id}", response_model=schemas.UserBrief)
def get_user(
    user_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.patch("/api/users/{user_id}/status", response_model=schemas.User)
def admin_update_user(
    user_id: str,
    update: schemas.AdminUserUpdate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Change a user's status or global role (admin only)."""
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    if user.id == current_user.id and update.role == schemas.UserRole.user:
        raise HTTPException(status_code=400, detail="Cannot remove your own admin role")

    for key, value in update.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(user, key, value)

    db.commit()
    db.refresh(user)

    logger.info(f"User {user_id} updated by admin {current_user.id}: status={user.status}, role={user.role}")
    return user
