import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from database import get_db
import models
import schemas
from activity import record_activity
from auth.dependencies import get_current_user
from auth.permissions import Action, require_comment, require_task
from notifier import notify
from realtime import RoomHub, get_hub
from schemas import ActivityAction

logger = logging.getLogger(__name__)

router = APIRouter(tags=["comments"])


def _reaction_summary(comment: models.Comment) -> dict:
    return {"comment_id": comment.id, "task_id": comment.task_id, "reactions": comment.reactions}


def _add_reaction(db: Session, hub: RoomHub, comment: models.Comment, user: models.User, reaction: str) -> dict:
    duplicate = (
        db.query(models.CommentReaction)
        .filter(
            models.CommentReaction.comment_id == comment.id,
            models.CommentReaction.user_id == user.id,
            models.CommentReaction.reaction == reaction,
        )
        .first()
    )
    if duplicate:
        raise HTTPException(status_code=400, detail="User already reacted with this emoji")

    db.add(models.CommentReaction(comment_id=comment.id, user_id=user.id, reaction=reaction))
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request inserted the same reaction first
        db.rollback()
        raise HTTPException(status_code=400, detail="User already reacted with this emoji")

    db.refresh(comment)
    summary = _reaction_summary(comment)
    hub.emit(comment.task.room, "comment:reactions", summary)
    logger.info(f"User {user.id} reacted '{reaction}' to comment {comment.id}")
    return summary


def _remove_reaction(db: Session, hub: RoomHub, comment: models.Comment, user: models.User, reaction: str) -> dict:
    row = (
        db.query(models.CommentReaction)
        .filter(
            models.CommentReaction.comment_id == comment.id,
            models.CommentReaction.user_id == user.id,
            models.CommentReaction.reaction == reaction,
        )
        .first()
    )
    if not row:
        raise HTTPException(status_code=400, detail="Reaction not found")

    db.delete(row)
    db.commit()

    db.refresh(comment)
    summary = _reaction_summary(comment)
    hub.emit(comment.task.room, "comment:reactions", summary)
    logger.info(f"User {user.id} removed reaction '{reaction}' from comment {comment.id}")
    return summary


def _comment_in_task(db: Session, task_id: int, comment_id: int, user: models.User) -> models.Comment:
    require_task(db, task_id, user)
    comment = require_comment(db, comment_id, user)
    if comment.task_id != task_id:
        raise HTTPException(status_code=400, detail="Comment does not belong to this task")
    return comment


@router.get("/api/tasks/{task_id}/comments", response_model=List[schemas.CommentThread])
def list_comments(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Top-level comments (newest first) with their reply threads (oldest first)."""
    require_task(db, task_id, current_user)

    comments = (
        db.query(models.Comment)
        .filter(models.Comment.task_id == task_id, models.Comment.parent_id.is_(None))
        .options(selectinload(models.Comment.reaction_rows), selectinload(models.Comment.author))
        .order_by(models.Comment.id.desc())
        .all()
    )

    logger.debug(f"Retrieved {len(comments)} top-level comments for task {task_id}")
    return comments


@router.post("/api/tasks/{task_id}/comments", response_model=schemas.Comment, status_code=201)
def create_comment(
    task_id: int,
    comment: schemas.CommentCreate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Comment on a task, optionally as a reply to another comment on it."""
    task = require_task(db, task_id, current_user)

    if comment.parent_id is not None:
        parent = db.query(models.Comment).filter(models.Comment.id == comment.parent_id).first()
        if not parent:
            raise HTTPException(status_code=404, detail="Parent comment not found")
        if parent.task_id != task_id:
            raise HTTPException(status_code=400, detail="Parent comment belongs to another task")

    db_comment = models.Comment(
        text=comment.text,
        parent_id=comment.parent_id,
        task_id=task_id,
        author_id=current_user.id,
    )
    db.add(db_comment)
    db.commit()
    db.refresh(db_comment)

    payload = schemas.Comment.model_validate(db_comment)
    hub.emit(task.room, "comment:added", payload)
    if task.creator_id != current_user.id:
        notify(
            db, hub, task.creator_id,
            type="comment_added",
            title="New Comment",
            message=f"{current_user.name} commented on task: {task.title}",
            data={"task_id": task_id, "comment_id": db_comment.id},
        )
    record_activity(db, current_user.id, ActivityAction.comment_added,
                    {"task_id": task_id, "comment_id": db_comment.id, "parent_id": db_comment.parent_id},
                    team_id=task.team_id)

    logger.info(f"Comment {db_comment.id} added to task {task_id} by user {current_user.id}")
    return db_comment


@router.put("/api/comments/{comment_id}", response_model=schemas.Comment)
def update_comment(
    comment_id: int,
    comment_update: schemas.CommentUpdate,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Edit a comment (author only)."""
    db_comment = require_comment(db, comment_id, current_user, Action.update)

    db_comment.text = comment_update.text
    db_comment.edited = True
    db.commit()
    db.refresh(db_comment)

    hub.emit(db_comment.task.room, "comment:updated", schemas.Comment.model_validate(db_comment))
    record_activity(db, current_user.id, ActivityAction.comment_updated,
                    {"task_id": db_comment.task_id, "comment_id": comment_id},
                    team_id=db_comment.task.team_id)

    logger.info(f"Comment {comment_id} edited by user {current_user.id}")
    return db_comment


@router.delete("/api/comments/{comment_id}")
def delete_comment(
    comment_id: int,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Delete a comment and its replies (author only)."""
    db_comment = require_comment(db, comment_id, current_user, Action.delete)
    task = db_comment.task

    db.delete(db_comment)
    db.commit()

    hub.emit(task.room, "comment:deleted", {"id": comment_id, "task_id": task.id})
    record_activity(db, current_user.id, ActivityAction.comment_deleted,
                    {"task_id": task.id, "comment_id": comment_id}, team_id=task.team_id)

    logger.info(f"Comment {comment_id} deleted by user {current_user.id}")
    return {"message": "Comment deleted"}


# ============== Reactions ==============

@router.post("/api/comments/{comment_id}/reactions", response_model=schemas.ReactionSummary, status_code=201)
def add_reaction(
    comment_id: int,
    request: schemas.ReactionRequest,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    comment = require_comment(db, comment_id, current_user, Action.react)
    return _add_reaction(db, hub, comment, current_user, request.reaction)


@router.delete("/api/comments/{comment_id}/reactions/{reaction}", response_model=schemas.ReactionSummary)
def remove_reaction(
    comment_id: int,
    reaction: str,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    comment = require_comment(db, comment_id, current_user, Action.react)
    return _remove_reaction(db, hub, comment, current_user, reaction)


@router.post(
    "/api/tasks/{task_id}/comments/{comment_id}/reactions",
    response_model=schemas.ReactionSummary,
    status_code=201,
)
def add_task_comment_reaction(
    task_id: int,
    comment_id: int,
    request: schemas.ReactionRequest,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    """Task-scoped variant: the comment must belong to the given task."""
    comment = _comment_in_task(db, task_id, comment_id, current_user)
    return _add_reaction(db, hub, comment, current_user, request.reaction)


@router.delete(
    "/api/tasks/{task_id}/comments/{comment_id}/reactions/{reaction}",
    response_model=schemas.ReactionSummary,
)
def remove_task_comment_reaction(
    task_id: int,
    comment_id: int,
    reaction: str,
    current_user: models.User = Depends(get_current_user),
    hub: RoomHub = Depends(get_hub),
    db: Session = Depends(get_db)
):
    comment = _comment_in_task(db, task_id, comment_id, current_user)
    return _remove_reaction(db, hub, comment, current_user, reaction)
