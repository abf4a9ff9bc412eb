import logging
from datetime import datetime
from typing import Iterable, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload, selectinload

from config import MAX_FILES_PER_UPLOAD
from database import get_db
import models
import schemas
from activity import record_activity
from auth.dependencies import get_current_user
from auth.permissions import require_task, require_team
from notifier import notify
from realtime import RoomHub, get_hub
from schemas import ActivityAction
from storage import delete_stored_file, require_content_length, save_upload_file
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tasks"])


def _task_detail_query(db: Session):
    return db.query(models.Task).options(
        joinedload(models.Task.creator),
        joinedload(models.Task.team),
        selectinload(models.Task.assignees),
        selectinload(models.Task.comments).selectinload(models.Comment.reaction_rows),
        selectinload(models.Task.comments).joinedload(models.Comment.author),
        selectinload(models.Task.subtasks),
        selectinload(models.Task.files),
    )


def _load_task(db: Session, task_id: int) -> models.Task:
    return _task_detail_query(db).filter(models.Task.id == task_id).first()


def _member_team_ids(db: Session, user_id: str) -> List[int]:
    rows = db.query(models.TeamMember.team_id).filter(models.TeamMember.user_id == user_id).all()
    return [row.team_id for row in rows]


def _validate_assignees(db: Session, user_ids: Iterable[str], team_id: Optional[int]) -> List[str]:
    """Deduplicate assignee ids and check they exist (and belong to the team)."""
    unique_ids = list(dict.fromkeys(user_ids))
    if not unique_ids:
        return []

    found = {u.id for u in db.query(models.User.id).filter(models.User.id.in_(unique_ids)).all()}
    missing = [uid for uid in unique_ids if uid not in found]
    if missing:
        raise HTTPException(status_code=404, detail=f"Assignee not found: {', '.join(missing)}")

    if team_id is not None:
        members = set(
            row.user_id for row in db.query(models.TeamMember.user_id)
            .filter(models.TeamMember.team_id == team_id, models.TeamMember.user_id.in_(unique_ids))
            .all()
        )
        outsiders = [uid for uid in unique_ids if uid not in members]
        if outsiders:
            raise HTTPException(
                status_code=400,
                detail=f"Assignees must be members of the task's team: {', '.join(outsiders)}"
            )
    return unique_ids


def _notify_assigned(db: Session, hub: RoomHub, task: models.Task, user_ids: Iterable[str], actor: models.User):
    for user_id in user_ids:
        if user_id == actor.id:
            continue
        notify(
            db, hub, user_id,
            type="task_assigned",
            title="New Task Assigned",
            message=f"{actor.name} assigned you to task: {task.title}",
            data={"task_id": task.id, "team_id": task.team_id},
        )


def _publish_task(db: Session, hub: RoomHub, task_id: int, event: str) -> models.Task:
    task = _load_task(db, task_id)
    hub.emit(task.room, event, schemas.Task.model_validate(task))
    return task


# ============== Tasks ==============

@router.get("/api/tasks", response_model=List[schemas.TaskSummary])
def list_tasks(
    status: Optional[schemas.TaskStatus] = Query(None),
    team_id: Optional[int] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List tasks the user created or that belong to one of the user's teams."""
    logger.debug(f"User {current_user.id} listing tasks (status={status}, team_id={team_id})")

    team_ids = _member_team_ids(db, current_user.id)
    query = (
        db.query(models.Task)
        .filter(or_(models.Task.creator_id == current_user.id, models.Task.team_id.in_(team_ids)))
        .options(selectinload(models.Task.assignees))
    )
    if status is not None:
        query = query.filter(models.Task.status == status.value)
    if team_id is not None:
        query = query.filter(models.Task.team_id == team_id)

    tasks = query.order_by(models.Task.order.asc(), models.Task.id.asc()).all()

    logger.info(f"User {current_user.id} retrieved {len(tasks)} tasks")
    return tasks


@router.post("/api/tasks", response_model=schemas.Task, status_code=201)
def create_task(
    task: schemas.TaskCreate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Create a task; team tasks require membership of that team."""
    logger.debug(f"User {current_user.id} creating task: {task.title}")

    if task.team_id is not None:
        require_team(db, task.team_id, current_user)

    assignee_ids = _validate_assignees(db, task.assignees, task.team_id)

    order = task.order
    if order is None:
        # New tasks go to the end of the creator's list
        last = (
            db.query(models.Task.order)
            .filter(models.Task.creator_id == current_user.id)
            .order_by(models.Task.order.desc())
            .first()
        )
        order = (last.order + 1) if last else 0

    db_task = models.Task(
        **task.model_dump(exclude={"assignees", "order"}),
        order=order,
        creator_id=current_user.id,
    )
    db.add(db_task)
    db.flush()

    for user_id in assignee_ids:
        db.add(models.TaskAssignee(task_id=db_task.id, user_id=user_id))

    db.commit()

    created = _publish_task(db, hub, db_task.id, "task:created")
    _notify_assigned(db, hub, created, assignee_ids, current_user)
    record_activity(db, current_user.id, ActivityAction.task_created,
                    {"task_id": created.id, "title": created.title}, team_id=created.team_id)

    logger.info(f"Task created: {created.title} (ID: {created.id}) by user {current_user.id}")
    return _load_task(db, created.id)


@router.get("/api/tasks/stats", response_model=schemas.TaskStats)
def get_task_stats(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Status and priority breakdown of the user's accessible tasks."""
    team_ids = _member_team_ids(db, current_user.id)
    query = db.query(models.Task).filter(
        or_(models.Task.creator_id == current_user.id, models.Task.team_id.in_(team_ids))
    )
    if start_date:
        query = query.filter(models.Task.created_at >= start_date)
    if end_date:
        query = query.filter(models.Task.created_at <= end_date)

    tasks = query.all()
    now = utc_now()

    by_status = {s.value: 0 for s in models.TaskStatus}
    by_priority = {p.value: 0 for p in models.TaskPriority}
    overdue = 0
    for task in tasks:
        status_value = models.TaskStatus(task.status).value
        by_status[status_value] += 1
        by_priority[models.TaskPriority(task.priority).value] += 1
        if task.due_date and status_value != "done" and ensure_utc(task.due_date) < now:
            overdue += 1

    total = len(tasks)
    return {
        "total": total,
        "by_status": by_status,
        "by_priority": by_priority,
        "overdue": overdue,
        "completion_rate": round(by_status["done"] / total * 100, 1) if total else 0.0,
    }


@router.patch("/api/tasks/order", response_model=List[schemas.TaskSummary])
def reorder_tasks(
    order_update: schemas.TaskOrderUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Bulk-update task positions; every task must be accessible."""
    tasks = []
    for item in order_update.tasks:
        task = require_task(db, item.id, current_user)
        task.order = item.order
        tasks.append(task)

    db.commit()

    for task in tasks:
        db.refresh(task)
        hub.emit(task.room, "task:updated", schemas.TaskSummary.model_validate(task))

    logger.info(f"User {current_user.id} reordered {len(tasks)} tasks")
    return sorted(tasks, key=lambda t: (t.order, t.id))


@router.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a task with assignees, comments, subtasks and files."""
    require_task(db, task_id, current_user)
    return _load_task(db, task_id)


@router.put("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Update task fields; moving to another team requires membership of it."""
    db_task = require_task(db, task_id, current_user)
    old_room = db_task.room

    update_data = task_update.model_dump(exclude_unset=True)
    for field in ("title", "status", "priority", "progress", "order"):
        if field in update_data and update_data[field] is None:
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")

    if "team_id" in update_data and update_data["team_id"] != db_task.team_id:
        if update_data["team_id"] is not None:
            require_team(db, update_data["team_id"], current_user)
        elif db_task.creator_id != current_user.id:
            raise HTTPException(status_code=403, detail="Only the creator can make a team task personal")

    target_team_id = update_data.get("team_id", db_task.team_id)
    new_assignees = []
    assignee_ids = update_data.pop("assignees", None)
    if assignee_ids is not None:
        assignee_ids = _validate_assignees(db, assignee_ids, target_team_id)
        current_ids = {link.user_id for link in db_task.assignee_links}
        new_assignees = [uid for uid in assignee_ids if uid not in current_ids]
        for link in list(db_task.assignee_links):
            if link.user_id not in assignee_ids:
                db_task.assignee_links.remove(link)
        for user_id in new_assignees:
            db_task.assignee_links.append(models.TaskAssignee(user_id=user_id))

    changes = sorted(update_data.keys()) + (["assignees"] if assignee_ids is not None else [])
    for key, value in update_data.items():
        setattr(db_task, key, value)

    db.commit()

    updated = _publish_task(db, hub, task_id, "task:updated")
    if updated.room != old_room:
        hub.emit(old_room, "task:deleted", {"id": task_id})
    _notify_assigned(db, hub, updated, new_assignees, current_user)
    record_activity(db, current_user.id, ActivityAction.task_updated,
                    {"task_id": task_id, "title": updated.title, "changes": changes}, team_id=updated.team_id)

    logger.info(f"Task updated: {task_id} by user {current_user.id} (fields: {changes})")
    return _load_task(db, task_id)


@router.patch("/api/tasks/{task_id}/status", response_model=schemas.Task)
def update_task_status(
    task_id: int,
    status_update: schemas.TaskStatusUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Change only the status of a task."""
    db_task = require_task(db, task_id, current_user)
    old_status = models.TaskStatus(db_task.status).value

    db_task.status = status_update.status.value
    if status_update.status == schemas.TaskStatus.done:
        db_task.progress = 100
    db.commit()

    updated = _publish_task(db, hub, task_id, "task:updated")
    record_activity(db, current_user.id, ActivityAction.task_status_changed,
                    {"task_id": task_id, "title": updated.title, "status": status_update.status.value},
                    team_id=updated.team_id)

    logger.info(f"Task {task_id} status: {old_status} -> {status_update.status.value}")
    return _load_task(db, task_id)


@router.delete("/api/tasks/{task_id}")
def delete_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a task with its comments, subtasks, files and assignees."""
    db_task = require_task(db, task_id, current_user)
    room = db_task.room
    team_id = db_task.team_id
    title = db_task.title
    file_paths = [f.path for f in db_task.files]

    db.delete(db_task)
    db.commit()

    for path in file_paths:
        delete_stored_file(path)

    hub.emit(room, "task:deleted", {"id": task_id})
    record_activity(db, current_user.id, ActivityAction.task_deleted,
                    {"task_id": task_id, "title": title}, team_id=team_id)

    logger.info(f"Task deleted: {task_id} by user {current_user.id} ({len(file_paths)} files removed)")
    return {"message": "Task deleted"}


# ============== Assignees ==============

@router.post("/api/tasks/{task_id}/assignees", response_model=schemas.Task, status_code=201)
def add_assignee(
    task_id: int,
    assignee: schemas.AssigneeAdd,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    db_task = require_task(db, task_id, current_user)
    _validate_assignees(db, [assignee.user_id], db_task.team_id)

    existing = (
        db.query(models.TaskAssignee)
        .filter(models.TaskAssignee.task_id == task_id, models.TaskAssignee.user_id == assignee.user_id)
        .first()
    )
    if existing:
        raise HTTPException(status_code=409, detail="User is already assigned to this task")

    db.add(models.TaskAssignee(task_id=task_id, user_id=assignee.user_id))
    db.commit()

    updated = _publish_task(db, hub, task_id, "task:updated")
    _notify_assigned(db, hub, updated, [assignee.user_id], current_user)

    logger.info(f"User {assignee.user_id} assigned to task {task_id}")
    return _load_task(db, task_id)


@router.delete("/api/tasks/{task_id}/assignees/{user_id}", response_model=schemas.Task)
def remove_assignee(
    task_id: int,
    user_id: str,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    require_task(db, task_id, current_user)

    link = (
        db.query(models.TaskAssignee)
        .filter(models.TaskAssignee.task_id == task_id, models.TaskAssignee.user_id == user_id)
        .first()
    )
    if not link:
        raise HTTPException(status_code=404, detail="Assignee not found")

    db.delete(link)
    db.commit()

    _publish_task(db, hub, task_id, "task:updated")
    logger.info(f"User {user_id} unassigned from task {task_id}")
    return _load_task(db, task_id)


# ============== Files ==============

@router.post("/api/tasks/{task_id}/files", response_model=List[schemas.TaskFile], status_code=201)
async def upload_task_files(
    task_id: int,
    request: Request,
    files: List[UploadFile] = File(...),
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Upload one or more files to a task."""
    require_content_length(request)
    db_task = require_task(db, task_id, current_user)

    if db_task.team is not None and not (db_task.team.settings or {}).get("allow_file_sharing", True):
        raise HTTPException(status_code=403, detail="File sharing is disabled for this team")
    if len(files) > MAX_FILES_PER_UPLOAD:
        raise HTTPException(status_code=400, detail=f"At most {MAX_FILES_PER_UPLOAD} files per upload")

    stored = []
    try:
        for upload in files:
            stored.append(await save_upload_file("tasks", task_id, upload))
    except HTTPException:
        for item in stored:
            delete_stored_file(item.path)
        raise

    records = [
        models.TaskFile(
            name=item.name, path=item.path, size=item.size, mime_type=item.mime_type,
            task_id=task_id, owner_id=current_user.id,
        )
        for item in stored
    ]
    db.add_all(records)
    db.commit()
    for record in records:
        db.refresh(record)

    payload = [schemas.TaskFile.model_validate(r) for r in records]
    hub.emit(db_task.room, "file:uploaded", {"task_id": task_id, "files": payload})
    record_activity(db, current_user.id, ActivityAction.file_uploaded,
                    {"task_id": task_id, "file_id": records[0].id, "name": records[0].name, "count": len(records)},
                    team_id=db_task.team_id)

    logger.info(f"{len(records)} files uploaded to task {task_id} by user {current_user.id}")
    return records


@router.get("/api/tasks/{task_id}/files", response_model=List[schemas.TaskFile])
def list_task_files(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    task = require_task(db, task_id, current_user)
    return task.files


@router.delete("/api/tasks/{task_id}/files/{file_id}")
def delete_task_file(
    task_id: int,
    file_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a task file from disk and the database."""
    db_task = require_task(db, task_id, current_user)

    record = (
        db.query(models.TaskFile)
        .filter(models.TaskFile.id == file_id, models.TaskFile.task_id == task_id)
        .first()
    )
    if not record:
        raise HTTPException(status_code=404, detail="File not found")

    name, path = record.name, record.path
    db.delete(record)
    db.commit()
    delete_stored_file(path)

    hub.emit(db_task.room, "file:deleted", {"task_id": task_id, "file_id": file_id})
    record_activity(db, current_user.id, ActivityAction.file_deleted,
                    {"task_id": task_id, "file_id": file_id, "name": name}, team_id=db_task.team_id)

    logger.info(f"File {file_id} deleted from task {task_id} by user {current_user.id}")
    return {"message": "File deleted"}
