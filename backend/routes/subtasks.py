import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
import models
import schemas
from activity import record_activity
from auth.dependencies import get_current_user
from auth.permissions import require_task, team_role_of
from notifier import notify
from realtime import RoomHub, get_hub
from schemas import ActivityAction
from time_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(tags=["subtasks"])


def _require_subtask(db: Session, subtask_id: int, user: models.User) -> models.Subtask:
    subtask = db.query(models.Subtask).filter(models.Subtask.id == subtask_id).first()
    if not subtask:
        raise HTTPException(status_code=404, detail="Subtask not found")
    require_task(db, subtask.task_id, user)
    return subtask


def _check_assignee(db: Session, task: models.Task, assignee_id: str) -> None:
    if not db.query(models.User).filter(models.User.id == assignee_id).first():
        raise HTTPException(status_code=404, detail="Assignee not found")
    if task.team_id is not None and team_role_of(db, task.team_id, assignee_id) is None:
        raise HTTPException(status_code=400, detail="Assignee must be a member of the task's team")


def _notify_subtask_assignee(db: Session, hub: RoomHub, subtask: models.Subtask, actor: models.User):
    if subtask.assignee_id and subtask.assignee_id != actor.id:
        notify(
            db, hub, subtask.assignee_id,
            type="subtask_assigned",
            title="Subtask Assigned",
            message=f"{actor.name} assigned you to subtask: {subtask.title}",
            data={"task_id": subtask.task_id, "subtask_id": subtask.id},
        )


@router.get("/api/tasks/{task_id}/subtasks", response_model=List[schemas.Subtask])
def list_subtasks(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    task = require_task(db, task_id, current_user)
    return task.subtasks


@router.post("/api/tasks/{task_id}/subtasks", response_model=schemas.Subtask, status_code=201)
def create_subtask(
    task_id: int,
    subtask: schemas.SubtaskCreate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Add a subtask to a task."""
    task = require_task(db, task_id, current_user)
    if subtask.assignee_id:
        _check_assignee(db, task, subtask.assignee_id)

    order = subtask.order
    if order is None:
        order = len(task.subtasks)

    db_subtask = models.Subtask(
        **subtask.model_dump(exclude={"order"}),
        order=order,
        task_id=task_id,
        creator_id=current_user.id,
        dependencies=[],
    )
    db.add(db_subtask)
    db.commit()
    db.refresh(db_subtask)

    hub.emit(task.room, "subtask:created", schemas.Subtask.model_validate(db_subtask))
    _notify_subtask_assignee(db, hub, db_subtask, current_user)
    record_activity(db, current_user.id, ActivityAction.subtask_created,
                    {"task_id": task_id, "subtask_id": db_subtask.id, "title": db_subtask.title},
                    team_id=task.team_id)

    logger.info(f"Subtask {db_subtask.id} created on task {task_id} by user {current_user.id}")
    return db_subtask


@router.put("/api/subtasks/{subtask_id}", response_model=schemas.Subtask)
def update_subtask(
    subtask_id: int,
    subtask_update: schemas.SubtaskUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Update a subtask; completing it records who completed it and when."""
    db_subtask = _require_subtask(db, subtask_id, current_user)
    task = db_subtask.task

    update_data = subtask_update.model_dump(exclude_unset=True)
    for field in ("title", "order", "completed"):
        if field in update_data and update_data[field] is None:
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")

    assignee_changed = "assignee_id" in update_data and update_data["assignee_id"] != db_subtask.assignee_id
    if assignee_changed and update_data["assignee_id"]:
        _check_assignee(db, task, update_data["assignee_id"])

    if "completed" in update_data and update_data["completed"] != db_subtask.completed:
        if update_data["completed"]:
            db_subtask.completed_at = utc_now()
            db_subtask.completed_by_id = current_user.id
        else:
            db_subtask.completed_at = None
            db_subtask.completed_by_id = None

    for key, value in update_data.items():
        setattr(db_subtask, key, value)

    db.commit()
    db.refresh(db_subtask)

    hub.emit(task.room, "subtask:updated", schemas.Subtask.model_validate(db_subtask))
    if assignee_changed:
        _notify_subtask_assignee(db, hub, db_subtask, current_user)
    record_activity(db, current_user.id, ActivityAction.subtask_updated,
                    {"task_id": task.id, "subtask_id": subtask_id, "title": db_subtask.title,
                     "completed": db_subtask.completed},
                    team_id=task.team_id)

    logger.info(f"Subtask {subtask_id} updated by user {current_user.id}")
    return db_subtask


@router.delete("/api/subtasks/{subtask_id}")
def delete_subtask(
    subtask_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a subtask and drop it from its siblings' dependency lists."""
    db_subtask = _require_subtask(db, subtask_id, current_user)
    task = db_subtask.task
    task_id, room, team_id = task.id, task.room, task.team_id

    for sibling in task.subtasks:
        if sibling.id != subtask_id and subtask_id in (sibling.dependencies or []):
            sibling.dependencies = [d for d in sibling.dependencies if d != subtask_id]

    db.delete(db_subtask)
    db.commit()

    hub.emit(room, "subtask:deleted", {"id": subtask_id, "task_id": task_id})
    record_activity(db, current_user.id, ActivityAction.subtask_deleted,
                    {"task_id": task_id, "subtask_id": subtask_id}, team_id=team_id)

    logger.info(f"Subtask {subtask_id} deleted by user {current_user.id}")
    return {"message": "Subtask deleted"}


@router.post("/api/subtasks/{subtask_id}/dependencies", response_model=schemas.Subtask)
def add_subtask_dependency(
    subtask_id: int,
    dependency: schemas.DependencyAdd,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Make a subtask depend on a sibling subtask of the same task."""
    db_subtask = _require_subtask(db, subtask_id, current_user)

    if dependency.dependency_id == subtask_id:
        raise HTTPException(status_code=400, detail="A subtask cannot depend on itself")

    blocking = db.query(models.Subtask).filter(models.Subtask.id == dependency.dependency_id).first()
    if not blocking:
        raise HTTPException(status_code=404, detail="Dependency subtask not found")
    if blocking.task_id != db_subtask.task_id:
        raise HTTPException(status_code=400, detail="Dependencies must belong to the same task")
    if subtask_id in (blocking.dependencies or []):
        raise HTTPException(status_code=400, detail="Circular dependency detected")

    current = list(db_subtask.dependencies or [])
    if dependency.dependency_id not in current:
        # Reassign so the JSON column change is tracked
        db_subtask.dependencies = current + [dependency.dependency_id]
        db.commit()
        db.refresh(db_subtask)
        hub.emit(db_subtask.task.room, "subtask:updated", schemas.Subtask.model_validate(db_subtask))

    logger.info(f"Subtask {subtask_id} now depends on {dependency.dependency_id}")
    return db_subtask


@router.delete("/api/subtasks/{subtask_id}/dependencies/{dependency_id}", response_model=schemas.Subtask)
def remove_subtask_dependency(
    subtask_id: int,
    dependency_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    db_subtask = _require_subtask(db, subtask_id, current_user)

    current = list(db_subtask.dependencies or [])
    if dependency_id not in current:
        raise HTTPException(status_code=404, detail="Dependency not found")

    db_subtask.dependencies = [d for d in current if d != dependency_id]
    db.commit()
    db.refresh(db_subtask)

    hub.emit(db_subtask.task.room, "subtask:updated", schemas.Subtask.model_validate(db_subtask))
    logger.info(f"Subtask {subtask_id} no longer depends on {dependency_id}")
    return db_subtask
