from sqlalchemy import (
    Column, Integer, String, Text, ForeignKey, DateTime, Enum, Boolean, UniqueConstraint, event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
import enum
from database import Base
from time_utils import utc_now


class UserRole(str, enum.Enum):
    user = "user"
    admin = "admin"


class UserStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    blocked = "blocked"


class TeamRole(str, enum.Enum):
    member = "member"
    admin = "admin"
    owner = "owner"


class TaskStatus(str, enum.Enum):
    todo = "todo"
    in_progress = "in_progress"
    done = "done"


class TaskPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class ChatRole(str, enum.Enum):
    admin = "admin"
    member = "member"


class MessageType(str, enum.Enum):
    text = "text"
    file = "file"
    image = "image"


def default_preferences():
    return {"theme": "light", "notifications": True, "language": "en"}


def default_team_settings():
    return {"allow_invites": True, "allow_file_sharing": True}


class User(Base):
    __tablename__ = "users"

    # External identity id issued by the identity provider
    id = Column(String(128), primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    avatar = Column(String(1024))
    role = Column(Enum(UserRole, name="user_role"), nullable=False, default=UserRole.user)
    status = Column(Enum(UserStatus, name="user_status"), nullable=False, default=UserStatus.active)
    preferences = Column(JSONB, default=default_preferences)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    owned_teams = relationship("Team", back_populates="owner")
    team_memberships = relationship("TeamMember", back_populates="user", cascade="all, delete-orphan")
    created_tasks = relationship("Task", back_populates="creator")
    notifications = relationship("Notification", back_populates="recipient", cascade="all, delete-orphan")


class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    avatar = Column(String(1024))
    owner_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    settings = Column(JSONB, default=default_team_settings)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    owner = relationship("User", back_populates="owned_teams")
    members = relationship("TeamMember", back_populates="team", cascade="all, delete-orphan")
    tasks = relationship("Task", back_populates="team", cascade="all, delete-orphan")


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (UniqueConstraint("team_id", "user_id", name="uq_team_member"),)

    id = Column(Integer, primary_key=True, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(TeamRole, name="team_role"), nullable=False, default=TeamRole.member)
    joined_at = Column(DateTime(timezone=True), default=utc_now)

    # Relationships
    team = relationship("Team", back_populates="members")
    user = relationship("User", back_populates="team_memberships")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(Enum(TaskStatus, name="task_status"), nullable=False, default=TaskStatus.todo)
    priority = Column(Enum(TaskPriority, name="task_priority"), nullable=False, default=TaskPriority.medium)
    due_date = Column(DateTime(timezone=True), nullable=True)
    order = Column(Integer, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0)
    creator_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    creator = relationship("User", back_populates="created_tasks")
    team = relationship("Team", back_populates="tasks")
    assignee_links = relationship("TaskAssignee", back_populates="task", cascade="all, delete-orphan")
    assignees = relationship("User", secondary="task_assignees", viewonly=True, order_by="User.name")
    comments = relationship(
        "Comment", back_populates="task", cascade="all, delete-orphan", order_by="Comment.id"
    )
    subtasks = relationship(
        "Subtask", back_populates="task", cascade="all, delete-orphan", order_by="Subtask.order"
    )
    files = relationship("TaskFile", back_populates="task", cascade="all, delete-orphan", order_by="TaskFile.id")

    @property
    def room(self) -> str:
        """Real-time room that receives this task's change events."""
        if self.team_id is not None:
            return f"team-{self.team_id}"
        return f"user-{self.creator_id}"


class TaskAssignee(Base):
    __tablename__ = "task_assignees"
    __table_args__ = (UniqueConstraint("task_id", "user_id", name="uq_task_assignee"),)

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_at = Column(DateTime(timezone=True), default=utc_now)

    # Relationships
    task = relationship("Task", back_populates="assignee_links")
    user = relationship("User")


class Subtask(Base):
    __tablename__ = "subtasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_by_id = Column(String(128), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    order = Column(Integer, nullable=False, default=0)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assignee_id = Column(String(128), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    # Ids of sibling subtasks that must be completed first
    dependencies = Column(JSONB, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    task = relationship("Task", back_populates="subtasks")
    creator = relationship("User", foreign_keys=[creator_id])
    assignee = relationship("User", foreign_keys=[assignee_id])


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, index=True)
    text = Column(Text, nullable=False)
    edited = Column(Boolean, nullable=False, default=False)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    parent_id = Column(Integer, ForeignKey("comments.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    task = relationship("Task", back_populates="comments")
    author = relationship("User")
    parent = relationship("Comment", remote_side=[id], back_populates="replies")
    replies = relationship(
        "Comment", back_populates="parent", cascade="all, delete-orphan", order_by="Comment.id"
    )
    reaction_rows = relationship(
        "CommentReaction", back_populates="comment", cascade="all, delete-orphan",
        order_by="CommentReaction.id"
    )

    @property
    def reactions(self) -> dict:
        """Reaction label -> ids of users who reacted with it."""
        grouped = {}
        for row in self.reaction_rows:
            grouped.setdefault(row.reaction, []).append(row.user_id)
        return grouped


class CommentReaction(Base):
    __tablename__ = "comment_reactions"
    __table_args__ = (
        UniqueConstraint("comment_id", "user_id", "reaction", name="uq_comment_reaction"),
    )

    id = Column(Integer, primary_key=True, index=True)
    comment_id = Column(Integer, ForeignKey("comments.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reaction = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    # Relationships
    comment = relationship("Comment", back_populates="reaction_rows")


class TaskFile(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    path = Column(String(512), nullable=False)
    size = Column(Integer, nullable=False)
    mime_type = Column(String(100))
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    task = relationship("Task", back_populates="files")
    owner = relationship("User")


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    start = Column(DateTime(timezone=True), nullable=False, index=True)
    end = Column(DateTime(timezone=True), nullable=False)
    all_day = Column(Boolean, nullable=False, default=False)
    location = Column(String(255))
    color = Column(String(32))
    event_type = Column(String(50), nullable=False, default="event")
    # {"frequency", "interval", "end_date", "max_instances"}; None for single events
    recurrence = Column(JSONB, nullable=True)
    attendees = Column(JSONB, default=list)
    reminders = Column(JSONB, default=list)
    owner_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="SET NULL"), nullable=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True)
    parent_event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=True, index=True)
    is_exception = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    owner = relationship("User")
    parent_event = relationship("Event", remote_side=[id], back_populates="occurrences")
    occurrences = relationship("Event", back_populates="parent_event", order_by="Event.start")


class Chat(Base):
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    is_group = Column(Boolean, nullable=False, default=False)
    owner_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    owner = relationship("User")
    members = relationship("ChatUser", back_populates="chat", cascade="all, delete-orphan")
    messages = relationship(
        "Message", back_populates="chat", cascade="all, delete-orphan", order_by="Message.id"
    )


class ChatUser(Base):
    __tablename__ = "chat_users"
    __table_args__ = (UniqueConstraint("chat_id", "user_id", name="uq_chat_user"),)

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(ChatRole, name="chat_role"), nullable=False, default=ChatRole.member)
    joined_at = Column(DateTime(timezone=True), default=utc_now)
    last_read_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    chat = relationship("Chat", back_populates="members")
    user = relationship("User")


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text)
    message_type = Column(Enum(MessageType, name="message_type"), nullable=False, default=MessageType.text)
    reply_to_id = Column(Integer, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
    edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    # Relationships
    chat = relationship("Chat", back_populates="messages")
    author = relationship("User")
    reply_to = relationship("Message", remote_side=[id])
    files = relationship("MessageFile", back_populates="message", cascade="all, delete-orphan")


class MessageFile(Base):
    __tablename__ = "message_files"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    path = Column(String(512), nullable=False)
    size = Column(Integer, nullable=False)
    mime_type = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=utc_now)

    # Relationships
    message = relationship("Message", back_populates="files")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # VARCHAR so new notification types need no migration
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONB, default=dict)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    # Relationships
    recipient = relationship("User", back_populates="notifications")


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(String(128), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    # Not a foreign key: entries keep the team id after the team is deleted
    team_id = Column(Integer, nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)
    details = Column(JSONB, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    # Relationships
    actor = relationship("User")


class ActivityLogImmutable(Exception):
    """Raised when code attempts to modify a persisted activity log entry."""


@event.listens_for(ActivityLog, "before_update")
def _reject_activity_update(mapper, connection, target):
    raise ActivityLogImmutable(f"Activity log {target.id} is append-only")
