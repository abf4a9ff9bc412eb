"""
Activity log recording.

Every known action maps to exactly one details shape; anything else is stored
with the "unknown" shape so clients can log custom actions without a schema
change. Recording from inside a controller is best-effort: a failed write is
logged and rolled back but never fails the operation that triggered it.
"""

import logging
from typing import Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from schemas import ActivityAction

logger = logging.getLogger(__name__)

DETAIL_SHAPES = {
    ActivityAction.task_created: schemas.TaskDetails,
    ActivityAction.task_updated: schemas.TaskDetails,
    ActivityAction.task_status_changed: schemas.TaskDetails,
    ActivityAction.task_deleted: schemas.TaskDetails,
    ActivityAction.comment_added: schemas.CommentDetails,
    ActivityAction.comment_updated: schemas.CommentDetails,
    ActivityAction.comment_deleted: schemas.CommentDetails,
    ActivityAction.subtask_created: schemas.SubtaskDetails,
    ActivityAction.subtask_updated: schemas.SubtaskDetails,
    ActivityAction.subtask_deleted: schemas.SubtaskDetails,
    ActivityAction.file_uploaded: schemas.FileDetails,
    ActivityAction.file_deleted: schemas.FileDetails,
    ActivityAction.team_created: schemas.TeamDetails,
    ActivityAction.team_updated: schemas.TeamDetails,
    ActivityAction.team_deleted: schemas.TeamDetails,
    ActivityAction.team_joined: schemas.TeamDetails,
    ActivityAction.team_left: schemas.TeamDetails,
    ActivityAction.member_added: schemas.TeamDetails,
    ActivityAction.member_removed: schemas.TeamDetails,
    ActivityAction.member_role_changed: schemas.TeamDetails,
    ActivityAction.event_created: schemas.EventDetails,
    ActivityAction.event_updated: schemas.EventDetails,
    ActivityAction.event_deleted: schemas.EventDetails,
    ActivityAction.chat_created: schemas.ChatDetails,
    ActivityAction.message_sent: schemas.ChatDetails,
}


def build_details(action: str, details: Optional[Union[dict, BaseModel]] = None) -> BaseModel:
    """
    Validate a details payload against the shape registered for an action.

    Args:
        action: Action name (known or custom)
        details: Raw payload or an already-built details model

    Returns:
        The validated details model

    Raises:
        pydantic.ValidationError: If a known action's payload does not fit its shape
    """
    if isinstance(details, BaseModel):
        details = details.model_dump()
    details = details or {}

    try:
        shape = DETAIL_SHAPES[ActivityAction(action)]
    except ValueError:
        if details.get("kind") == "unknown":
            return schemas.UnknownDetails.model_validate(details)
        return schemas.UnknownDetails(data=details)
    return shape.model_validate(details)


def add_activity(
    db: Session,
    actor_id: Optional[str],
    action: str,
    details: BaseModel,
    team_id: Optional[int] = None,
    commit: bool = True,
) -> models.ActivityLog:
    """Persist a validated activity entry."""
    logger.debug(f"Recording activity: action={action}, actor={actor_id}, team={team_id}")

    entry = models.ActivityLog(
        actor_id=actor_id,
        team_id=team_id,
        action=action,
        details=details.model_dump(mode="json"),
    )
    db.add(entry)
    db.flush()

    if commit:
        db.commit()
        db.refresh(entry)

    logger.debug(f"Activity recorded: id={entry.id}, action={action}")
    return entry


def record_activity(
    db: Session,
    actor_id: Optional[str],
    action: Union[ActivityAction, str],
    details: Optional[Union[dict, BaseModel]] = None,
    team_id: Optional[int] = None,
) -> Optional[models.ActivityLog]:
    """
    Best-effort activity write used by controllers after their primary commit.

    Returns:
        The stored entry, or None if the write failed
    """
    action = action.value if isinstance(action, ActivityAction) else action
    try:
        validated = build_details(action, details)
        return add_activity(db, actor_id, action, validated, team_id=team_id)
    except ValidationError as e:
        logger.error(f"Skipping activity '{action}': details do not match shape: {e}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to record activity '{action}': {e}")
    return None
