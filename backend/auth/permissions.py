"""
Resource-level authorization.

Access rules live in a single pure function, authorize(actor, resource, action),
which works on small frozen projections of the stored rows (ids and roles
only) and returns a Decision. The loaders below build those projections from
the database, and the require_* helpers turn a 404 or a denial into an
HTTPException for route handlers.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


class Action(str, Enum):
    read = "read"
    create = "create"
    update = "update"
    delete = "delete"
    react = "react"
    update_settings = "update_settings"
    add_member = "add_member"
    change_role = "change_role"
    remove_member = "remove_member"
    leave = "leave"
    send = "send"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class TaskAccess:
    task_id: int
    creator_id: str
    team_id: Optional[int]
    # Actor's role in the task's team, None when not a member (or no team)
    actor_team_role: Optional[str] = None


@dataclass(frozen=True)
class TeamAccess:
    team_id: int
    owner_id: str
    actor_role: Optional[str] = None
    target_user_id: Optional[str] = None
    target_role: Optional[str] = None


@dataclass(frozen=True)
class CommentAccess:
    comment_id: int
    author_id: str
    task: TaskAccess


@dataclass(frozen=True)
class ChatAccess:
    chat_id: int
    owner_id: str
    actor_role: Optional[str] = None
    target_user_id: Optional[str] = None


@dataclass(frozen=True)
class MessageAccess:
    message_id: int
    author_id: str
    chat: ChatAccess


@dataclass(frozen=True)
class EventAccess:
    event_id: int
    owner_id: str
    team_id: Optional[int]
    actor_team_role: Optional[str] = None


@dataclass(frozen=True)
class NotificationAccess:
    notification_id: int
    recipient_id: str


@dataclass(frozen=True)
class ActivityScope:
    user_id: Optional[str] = None
    team_id: Optional[int] = None
    actor_team_role: Optional[str] = None


Resource = Union[
    TaskAccess, TeamAccess, CommentAccess, ChatAccess, MessageAccess,
    EventAccess, NotificationAccess, ActivityScope,
]


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


def _task_decision(actor: Actor, task: TaskAccess) -> Decision:
    if actor.user_id == task.creator_id:
        return ALLOW
    if task.team_id is not None and task.actor_team_role is not None:
        return ALLOW
    return deny("You do not have access to this task")


def _team_decision(actor: Actor, team: TeamAccess, action: Action) -> Decision:
    is_owner = actor.user_id == team.owner_id or team.actor_role == "owner"
    is_manager = is_owner or team.actor_role == "admin"

    if team.actor_role is None and not is_owner:
        return deny("You are not a member of this team")

    if action == Action.read:
        return ALLOW
    if action == Action.leave:
        if is_owner:
            return deny("Team owner cannot leave the team")
        return ALLOW
    if action in (Action.update_settings, Action.delete):
        return ALLOW if is_owner else deny("Only the team owner can perform this action")
    if action in (Action.update, Action.add_member):
        return ALLOW if is_manager else deny("Only team owners and admins can perform this action")
    if action in (Action.change_role, Action.remove_member):
        if not is_manager:
            return deny("Only team owners and admins can manage members")
        if team.target_user_id == team.owner_id or team.target_role == "owner":
            return deny("The team owner cannot be modified")
        return ALLOW
    return deny(f"Unsupported team action: {action.value}")


def _comment_decision(actor: Actor, comment: CommentAccess, action: Action) -> Decision:
    task_decision = _task_decision(actor, comment.task)
    if not task_decision:
        return task_decision
    if action in (Action.update, Action.delete) and actor.user_id != comment.author_id:
        return deny("Only the comment author can modify this comment")
    return ALLOW


def _chat_decision(actor: Actor, chat: ChatAccess, action: Action) -> Decision:
    if chat.actor_role is None:
        return deny("You are not a member of this chat")
    if action == Action.delete:
        return ALLOW if actor.user_id == chat.owner_id else deny("Only the chat owner can delete this chat")
    if action == Action.add_member:
        return ALLOW if chat.actor_role == "admin" else deny("Only chat admins can add users")
    if action == Action.remove_member:
        if chat.actor_role == "admin" or chat.target_user_id == actor.user_id:
            return ALLOW
        return deny("Only chat admins can remove other users")
    return ALLOW


def _message_decision(actor: Actor, message: MessageAccess, action: Action) -> Decision:
    chat_decision = _chat_decision(actor, message.chat, Action.read)
    if not chat_decision:
        return chat_decision
    if action in (Action.update, Action.delete) and actor.user_id != message.author_id:
        return deny("Only the message author can modify this message")
    return ALLOW


def _event_decision(actor: Actor, event: EventAccess, action: Action) -> Decision:
    if actor.user_id == event.owner_id:
        return ALLOW
    if action == Action.read and event.team_id is not None and event.actor_team_role is not None:
        return ALLOW
    if action == Action.read:
        return deny("You do not have access to this event")
    return deny("Only the event owner can modify this event")


def _notification_decision(actor: Actor, notification: NotificationAccess) -> Decision:
    if actor.user_id == notification.recipient_id:
        return ALLOW
    return deny("This notification belongs to another user")


def _activity_decision(actor: Actor, scope: ActivityScope) -> Decision:
    if scope.team_id is not None and scope.actor_team_role is None and not actor.is_admin:
        return deny("You are not a member of this team")
    if scope.user_id is not None and scope.user_id != actor.user_id and not actor.is_admin:
        return deny("You can only view your own activity")
    return ALLOW


def authorize(actor: Actor, resource: Resource, action: Action = Action.read) -> Decision:
    """
    Decide whether an actor may perform an action on a resource.

    Pure function: no database access, no side effects.

    Args:
        actor: Who is acting (user id and global role)
        resource: Projection of the target resource
        action: What the actor wants to do

    Returns:
        Decision with allowed=True, or allowed=False and a human-readable reason
    """
    if isinstance(resource, TaskAccess):
        return _task_decision(actor, resource)
    if isinstance(resource, TeamAccess):
        return _team_decision(actor, resource, action)
    if isinstance(resource, CommentAccess):
        return _comment_decision(actor, resource, action)
    if isinstance(resource, ChatAccess):
        return _chat_decision(actor, resource, action)
    if isinstance(resource, MessageAccess):
        return _message_decision(actor, resource, action)
    if isinstance(resource, EventAccess):
        return _event_decision(actor, resource, action)
    if isinstance(resource, NotificationAccess):
        return _notification_decision(actor, resource)
    if isinstance(resource, ActivityScope):
        return _activity_decision(actor, resource)
    raise TypeError(f"Unsupported resource type: {type(resource).__name__}")


# ============== Loaders ==============

def actor_for(user: models.User) -> Actor:
    role = user.role.value if isinstance(user.role, Enum) else str(user.role)
    return Actor(user_id=user.id, role=role)


def _role_value(role) -> Optional[str]:
    if role is None:
        return None
    return role.value if isinstance(role, Enum) else str(role)


def team_role_of(db: Session, team_id: Optional[int], user_id: str) -> Optional[str]:
    """Return the user's role in a team, or None if not a member."""
    if team_id is None:
        return None
    membership = (
        db.query(models.TeamMember.role)
        .filter(models.TeamMember.team_id == team_id, models.TeamMember.user_id == user_id)
        .first()
    )
    return _role_value(membership.role) if membership else None


def chat_role_of(db: Session, chat_id: int, user_id: str) -> Optional[str]:
    membership = (
        db.query(models.ChatUser.role)
        .filter(models.ChatUser.chat_id == chat_id, models.ChatUser.user_id == user_id)
        .first()
    )
    return _role_value(membership.role) if membership else None


def task_access(db: Session, task: models.Task, user_id: str) -> TaskAccess:
    return TaskAccess(
        task_id=task.id,
        creator_id=task.creator_id,
        team_id=task.team_id,
        actor_team_role=team_role_of(db, task.team_id, user_id),
    )


def team_access(db: Session, team: models.Team, user_id: str,
                target_user_id: Optional[str] = None) -> TeamAccess:
    return TeamAccess(
        team_id=team.id,
        owner_id=team.owner_id,
        actor_role=team_role_of(db, team.id, user_id),
        target_user_id=target_user_id,
        target_role=team_role_of(db, team.id, target_user_id) if target_user_id else None,
    )


def chat_access(db: Session, chat: models.Chat, user_id: str,
                target_user_id: Optional[str] = None) -> ChatAccess:
    return ChatAccess(
        chat_id=chat.id,
        owner_id=chat.owner_id,
        actor_role=chat_role_of(db, chat.id, user_id),
        target_user_id=target_user_id,
    )


def event_access(db: Session, event: models.Event, user_id: str) -> EventAccess:
    return EventAccess(
        event_id=event.id,
        owner_id=event.owner_id,
        team_id=event.team_id,
        actor_team_role=team_role_of(db, event.team_id, user_id),
    )


def enforce(decision: Decision) -> None:
    """Raise 403 with the decision's reason when access is denied."""
    if not decision.allowed:
        logger.info(f"Access denied: {decision.reason}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)


# ============== Route helpers ==============

def require_task(db: Session, task_id: int, user: models.User) -> models.Task:
    """Load a task the user may access (404 if missing, 403 if not allowed)."""
    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    enforce(authorize(actor_for(user), task_access(db, task, user.id)))
    return task


def require_team(db: Session, team_id: int, user: models.User, action: Action = Action.read,
                 target_user_id: Optional[str] = None) -> models.Team:
    """Load a team and check the user may perform the action on it."""
    team = db.query(models.Team).filter(models.Team.id == team_id).first()
    if team is None:
        raise HTTPException(status_code=404, detail="Team not found")
    enforce(authorize(actor_for(user), team_access(db, team, user.id, target_user_id), action))
    return team


def require_team_member(db: Session, team_id: int, user: models.User) -> models.Team:
    return require_team(db, team_id, user, Action.read)


def require_comment(db: Session, comment_id: int, user: models.User,
                    action: Action = Action.read) -> models.Comment:
    comment = db.query(models.Comment).filter(models.Comment.id == comment_id).first()
    if comment is None:
        raise HTTPException(status_code=404, detail="Comment not found")
    access = CommentAccess(
        comment_id=comment.id,
        author_id=comment.author_id,
        task=task_access(db, comment.task, user.id),
    )
    enforce(authorize(actor_for(user), access, action))
    return comment


def require_chat(db: Session, chat_id: int, user: models.User, action: Action = Action.read,
                 target_user_id: Optional[str] = None) -> models.Chat:
    chat = db.query(models.Chat).filter(models.Chat.id == chat_id).first()
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    enforce(authorize(actor_for(user), chat_access(db, chat, user.id, target_user_id), action))
    return chat


def require_message(db: Session, chat: models.Chat, message_id: int, user: models.User,
                    action: Action = Action.read) -> models.Message:
    message = (
        db.query(models.Message)
        .filter(models.Message.id == message_id, models.Message.chat_id == chat.id)
        .first()
    )
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    access = MessageAccess(
        message_id=message.id,
        author_id=message.author_id,
        chat=chat_access(db, chat, user.id),
    )
    enforce(authorize(actor_for(user), access, action))
    return message


def require_event(db: Session, event_id: int, user: models.User,
                  action: Action = Action.read) -> models.Event:
    event = db.query(models.Event).filter(models.Event.id == event_id).first()
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    enforce(authorize(actor_for(user), event_access(db, event, user.id), action))
    return event


def require_notification(db: Session, notification_id: int, user: models.User) -> models.Notification:
    notification = (
        db.query(models.Notification).filter(models.Notification.id == notification_id).first()
    )
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    enforce(authorize(
        actor_for(user),
        NotificationAccess(notification_id=notification.id, recipient_id=notification.recipient_id),
    ))
    return notification
