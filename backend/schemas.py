from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from datetime import datetime
from typing import Optional, List, Dict, Literal, Union, Annotated
from enum import Enum

from config import RECURRENCE_HARD_LIMIT
from time_utils import ensure_utc


class UserRole(str, Enum):
    user = "user"
    admin = "admin"


class UserStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    blocked = "blocked"


class TeamRole(str, Enum):
    member = "member"
    admin = "admin"
    owner = "owner"


class TaskStatus(str, Enum):
    todo = "todo"
    in_progress = "in_progress"
    done = "done"


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class ChatRole(str, Enum):
    admin = "admin"
    member = "member"


class MessageType(str, Enum):
    text = "text"
    file = "file"
    image = "image"


class ActivityAction(str, Enum):
    """
    Known activity actions.

    Note: the database stores action as VARCHAR(50), so clients may log
    additional custom actions; those are stored with the "unknown" details shape.
    """
    task_created = "task_created"
    task_updated = "task_updated"
    task_status_changed = "task_status_changed"
    task_deleted = "task_deleted"
    comment_added = "comment_added"
    comment_updated = "comment_updated"
    comment_deleted = "comment_deleted"
    subtask_created = "subtask_created"
    subtask_updated = "subtask_updated"
    subtask_deleted = "subtask_deleted"
    file_uploaded = "file_uploaded"
    file_deleted = "file_deleted"
    team_created = "team_created"
    team_updated = "team_updated"
    team_deleted = "team_deleted"
    team_joined = "team_joined"
    team_left = "team_left"
    member_added = "member_added"
    member_removed = "member_removed"
    member_role_changed = "member_role_changed"
    event_created = "event_created"
    event_updated = "event_updated"
    event_deleted = "event_deleted"
    chat_created = "chat_created"
    message_sent = "message_sent"


# User schemas
class UserBrief(BaseModel):
    id: str
    name: str
    email: str
    avatar: Optional[str] = None

    class Config:
        from_attributes = True


class User(UserBrief):
    role: UserRole
    status: UserStatus
    preferences: Optional[dict] = None
    created_at: Optional[datetime] = None


class UserSyncRequest(BaseModel):
    token: str = Field(..., min_length=1)
    display_name: Optional[str] = Field(None, max_length=255)
    photo_url: Optional[str] = Field(None, max_length=1024)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    avatar: Optional[str] = Field(None, max_length=1024)
    preferences: Optional[dict] = None


class UserStatusUpdate(BaseModel):
    status: Literal["active", "inactive"]


class AdminUserUpdate(BaseModel):
    status: Optional[UserStatus] = None
    role: Optional[UserRole] = None


class EmailCheckRequest(BaseModel):
    email: EmailStr


class EmailCheckResponse(BaseModel):
    exists: bool
    user: Optional[UserBrief] = None


class SessionResponse(BaseModel):
    authenticated: bool
    user: User


class UserStats(BaseModel):
    teams: int
    tasks_created: int
    tasks_assigned: int
    tasks_completed: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]


# Team schemas
class TeamSettings(BaseModel):
    allow_invites: bool = True
    allow_file_sharing: bool = True


class TeamSettingsUpdate(BaseModel):
    allow_invites: Optional[bool] = None
    allow_file_sharing: Optional[bool] = None


class TeamBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    avatar: Optional[str] = Field(None, max_length=1024)


class TeamCreate(TeamBase):
    settings: Optional[TeamSettings] = None


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    avatar: Optional[str] = Field(None, max_length=1024)


class TeamBrief(BaseModel):
    id: int
    name: str
    avatar: Optional[str] = None

    class Config:
        from_attributes = True


class TeamMember(BaseModel):
    user_id: str
    role: TeamRole
    joined_at: Optional[datetime] = None
    user: UserBrief

    class Config:
        from_attributes = True


class Team(TeamBase):
    id: int
    owner_id: str
    settings: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    members: List[TeamMember] = []

    class Config:
        from_attributes = True


class TeamMemberAdd(BaseModel):
    email: EmailStr
    role: Literal["member", "admin"] = "member"


class TeamMemberRoleUpdate(BaseModel):
    role: Literal["member", "admin"]


# File schemas
class TaskFile(BaseModel):
    id: int
    name: str
    path: str
    size: int
    mime_type: Optional[str] = None
    task_id: int
    owner_id: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Comment schemas
class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)
    parent_id: Optional[int] = None


class CommentUpdate(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)


class Comment(BaseModel):
    id: int
    text: str
    edited: bool
    task_id: int
    author_id: str
    parent_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    author: Optional[UserBrief] = None
    reactions: Dict[str, List[str]] = {}

    class Config:
        from_attributes = True


class CommentThread(Comment):
    replies: List["CommentThread"] = []


class ReactionRequest(BaseModel):
    reaction: str = Field(..., min_length=1, max_length=64)

    @field_validator("reaction")
    @classmethod
    def strip_reaction(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Reaction cannot be blank")
        return v


class ReactionSummary(BaseModel):
    comment_id: int
    task_id: int
    reactions: Dict[str, List[str]]


# Subtask schemas
class SubtaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    assignee_id: Optional[str] = None
    order: Optional[int] = None


class SubtaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    assignee_id: Optional[str] = None
    order: Optional[int] = None
    completed: Optional[bool] = None


class Subtask(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    completed: bool
    completed_at: Optional[datetime] = None
    completed_by_id: Optional[str] = None
    due_date: Optional[datetime] = None
    order: int
    task_id: int
    creator_id: str
    assignee_id: Optional[str] = None
    dependencies: Optional[List[int]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DependencyAdd(BaseModel):
    dependency_id: int


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.todo
    priority: TaskPriority = TaskPriority.medium
    due_date: Optional[datetime] = None
    progress: int = Field(0, ge=0, le=100)


class TaskCreate(TaskBase):
    team_id: Optional[int] = None
    order: Optional[int] = None
    assignees: List[str] = []


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    progress: Optional[int] = Field(None, ge=0, le=100)
    order: Optional[int] = None
    team_id: Optional[int] = None
    assignees: Optional[List[str]] = None


# Clients written against the camelCase API still send this spelling
STATUS_ALIASES = {"inProgress": "in_progress", "in-progress": "in_progress"}


class TaskStatusUpdate(BaseModel):
    status: TaskStatus

    @field_validator("status", mode="before")
    @classmethod
    def map_status_alias(cls, v):
        if isinstance(v, str):
            return STATUS_ALIASES.get(v, v)
        return v


class TaskOrderItem(BaseModel):
    id: int
    order: int


class TaskOrderUpdate(BaseModel):
    tasks: List[TaskOrderItem] = Field(..., min_length=1)


class AssigneeAdd(BaseModel):
    user_id: str = Field(..., min_length=1)


class TaskSummary(BaseModel):
    id: int
    title: str
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    order: int
    progress: int
    creator_id: str
    team_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assignees: List[UserBrief] = []

    class Config:
        from_attributes = True


class Task(TaskSummary):
    description: Optional[str] = None
    creator: Optional[UserBrief] = None
    team: Optional[TeamBrief] = None
    comments: List[Comment] = []
    subtasks: List[Subtask] = []
    files: List[TaskFile] = []


class TaskStats(BaseModel):
    total: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]
    overdue: int
    completion_rate: float


class UserActivity(BaseModel):
    created_tasks: List[TaskSummary]
    assigned_tasks: List[TaskSummary]
    teams: List[TeamBrief]


# Event schemas
class RecurrenceRule(BaseModel):
    frequency: Literal["daily", "weekly", "monthly", "yearly"]
    interval: int = Field(1, ge=1, le=365)
    end_date: Optional[datetime] = None
    max_instances: Optional[int] = Field(None, ge=1, le=RECURRENCE_HARD_LIMIT)

    @field_validator("end_date")
    @classmethod
    def normalize_end_date(cls, v):
        return ensure_utc(v)


class EventBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool = False
    location: Optional[str] = Field(None, max_length=255)
    color: Optional[str] = Field(None, max_length=32)
    event_type: str = Field("event", min_length=1, max_length=50)
    attendees: List[str] = []
    reminders: List[int] = []

    @field_validator("start", "end")
    @classmethod
    def normalize_times(cls, v):
        return ensure_utc(v)


class EventCreate(EventBase):
    recurrence: Optional[RecurrenceRule] = None
    team_id: Optional[int] = None
    task_id: Optional[int] = None


class EventUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: Optional[bool] = None
    location: Optional[str] = Field(None, max_length=255)
    color: Optional[str] = Field(None, max_length=32)
    event_type: Optional[str] = Field(None, min_length=1, max_length=50)
    attendees: Optional[List[str]] = None
    reminders: Optional[List[int]] = None
    update_recurring: Optional[Literal["this", "all"]] = None

    @field_validator("start", "end")
    @classmethod
    def normalize_times(cls, v):
        return ensure_utc(v)


class Event(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool
    location: Optional[str] = None
    color: Optional[str] = None
    event_type: str
    recurrence: Optional[dict] = None
    attendees: Optional[List[str]] = None
    reminders: Optional[List[int]] = None
    owner_id: str
    team_id: Optional[int] = None
    task_id: Optional[int] = None
    parent_event_id: Optional[int] = None
    is_exception: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EventSeries(Event):
    occurrence_count: int = 0


# Chat schemas
class ChatCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    is_group: bool = False
    user_ids: List[str] = []


class ChatMember(BaseModel):
    user_id: str
    role: ChatRole
    joined_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None
    user: UserBrief

    class Config:
        from_attributes = True


class MessageFile(BaseModel):
    id: int
    name: str
    path: str
    size: int
    mime_type: Optional[str] = None

    class Config:
        from_attributes = True


class Message(BaseModel):
    id: int
    chat_id: int
    author_id: str
    content: Optional[str] = None
    message_type: MessageType
    reply_to_id: Optional[int] = None
    edited: bool
    edited_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    author: Optional[UserBrief] = None
    files: List[MessageFile] = []

    class Config:
        from_attributes = True


class MessageCreate(BaseModel):
    content: Optional[str] = Field(None, max_length=10000)
    message_type: MessageType = MessageType.text
    reply_to_id: Optional[int] = None

    @model_validator(mode="after")
    def require_text_content(self):
        if self.message_type == MessageType.text and not (self.content and self.content.strip()):
            raise ValueError("Text messages require content")
        return self


class MessageUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


class Chat(BaseModel):
    id: int
    name: str
    is_group: bool
    owner_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    members: List[ChatMember] = []

    class Config:
        from_attributes = True


class ChatSummary(Chat):
    last_message: Optional[Message] = None
    unread_count: int = 0


class ChatUserAdd(BaseModel):
    user_id: str = Field(..., min_length=1)
    role: ChatRole = ChatRole.member


# Notification schemas
class Notification(BaseModel):
    id: int
    recipient_id: str
    type: str
    title: str
    message: str
    data: Optional[dict] = None
    read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationCreate(BaseModel):
    recipient_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    data: dict = {}


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


class NotificationList(BaseModel):
    notifications: List[Notification]
    pagination: Pagination
    unread_count: int


# Activity detail shapes, discriminated by "kind"
class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TaskDetails(_Details):
    kind: Literal["task"] = "task"
    task_id: int
    title: Optional[str] = None
    status: Optional[str] = None
    changes: List[str] = []


class CommentDetails(_Details):
    kind: Literal["comment"] = "comment"
    task_id: int
    comment_id: int
    parent_id: Optional[int] = None


class SubtaskDetails(_Details):
    kind: Literal["subtask"] = "subtask"
    task_id: int
    subtask_id: int
    title: Optional[str] = None
    completed: Optional[bool] = None


class FileDetails(_Details):
    kind: Literal["file"] = "file"
    task_id: int
    file_id: Optional[int] = None
    name: Optional[str] = None
    count: Optional[int] = None


class TeamDetails(_Details):
    kind: Literal["team"] = "team"
    team_id: int
    user_id: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None


class EventDetails(_Details):
    kind: Literal["event"] = "event"
    event_id: int
    title: Optional[str] = None
    occurrences: Optional[int] = None
    scope: Optional[Literal["this", "all"]] = None


class ChatDetails(_Details):
    kind: Literal["chat"] = "chat"
    chat_id: int
    message_id: Optional[int] = None


class UnknownDetails(_Details):
    kind: Literal["unknown"] = "unknown"
    data: dict = {}


ActivityDetails = Annotated[
    Union[
        TaskDetails, CommentDetails, SubtaskDetails, FileDetails,
        TeamDetails, EventDetails, ChatDetails, UnknownDetails,
    ],
    Field(discriminator="kind"),
]


class ActivityCreate(BaseModel):
    action: str = Field(..., min_length=1, max_length=50)
    team_id: Optional[int] = None
    details: dict = {}


class ActivityLog(BaseModel):
    id: int
    actor_id: Optional[str] = None
    team_id: Optional[int] = None
    action: str
    details: ActivityDetails
    created_at: Optional[datetime] = None
    actor: Optional[UserBrief] = None

    class Config:
        from_attributes = True


class ActivityLogList(BaseModel):
    logs: List[ActivityLog]
    pagination: Pagination


class ActivityBucket(BaseModel):
    period: datetime
    count: int
    by_action: Dict[str, int]


class ActivityTrends(BaseModel):
    total_actions: int
    most_common_action: Optional[str] = None
    average_per_bucket: float


class ActivityStats(BaseModel):
    group_by: Literal["hour", "day", "week", "month"]
    buckets: List[ActivityBucket]
    by_action: Dict[str, int]
    by_kind: Dict[str, int]
    trends: ActivityTrends
