"""
Entity and command schemas for the project-management store

Each entity maps to one collection (``User`` -> "users", ``Project`` ->
"projects", ...). Documents are stored with camelCase field names; the models
use snake_case attributes with camelCase aliases. ``from_record`` is the
service-boundary conversion: raw store timestamps become aware UTC datetimes
and missing fields get their defaults.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from bson import Timestamp
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

Role = Literal["Owner", "Member", "Viewer"]
InviteRole = Literal["Member", "Viewer"]
Visibility = Literal["private", "public"]
TaskStatus = Literal["To Do", "In Progress", "Review", "Done"]
Priority = Literal["High", "Medium", "Low"]
InvitationStatus = Literal["pending", "accepted", "declined"]
NotificationKind = Literal["invitation", "task_assignment", "task_completion"]
NotificationStatus = Literal["pending", "sent", "failed"]

DONE = "Done"
PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """Convert a stored temporal value into an aware UTC ``datetime``."""
    if value is None:
        return default
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, Timestamp):
        return value.as_datetime()
    if isinstance(value, dict) and "seconds" in value:
        seconds = value["seconds"] + value.get("nanoseconds", 0) / 1e9
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch millis vs seconds
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return to_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")), default)
        except ValueError:
            return default
    return default


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Command(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def changes(self) -> Dict[str, Any]:
        """Only the fields the caller set; ``None`` means "clear this field"."""
        return self.model_dump(by_alias=True, exclude_unset=True)


# -----------------------------
# Users
# -----------------------------

class Preferences(Document):
    work_hours: Optional[str] = "9-5 EST"
    communication_style: Optional[str] = "async"
    skills: List[str] = Field(default_factory=list)


class User(Document):
    uid: str
    display_name: str = "User"
    email: str = ""
    avatar_url: Optional[str] = None
    preferences: Preferences = Field(default_factory=Preferences)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "User":
        now = utcnow()
        return cls(
            uid=record["id"],
            display_name=record.get("displayName") or "User",
            email=record.get("email") or "",
            avatar_url=record.get("avatarUrl"),
            preferences=Preferences.model_validate(record.get("preferences") or {}),
            created_at=to_datetime(record.get("createdAt"), now),
            updated_at=to_datetime(record.get("updatedAt"), now),
        )


class Identity(Document):
    """What the authentication provider tells us about the signed-in user."""

    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    photo_url: Optional[str] = None


# -----------------------------
# Projects
# -----------------------------

class TeamMember(Document):
    role: Role
    joined_at: datetime


class Project(Document):
    id: str
    project_name: str
    goal: str = ""
    deadline: Optional[datetime] = None
    created_by: str
    created_by_email: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    team_members: Dict[str, TeamMember] = Field(default_factory=dict)
    visibility: Visibility = "private"

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Project":
        now = utcnow()
        members = {}
        for uid, member in (record.get("teamMembers") or {}).items():
            if not isinstance(member, dict) or not member.get("role"):
                continue
            members[uid] = TeamMember(
                role=member["role"],
                joined_at=to_datetime(member.get("joinedAt"), now),
            )
        return cls(
            id=record["id"],
            project_name=record.get("projectName") or "",
            goal=record.get("goal") or "",
            deadline=to_datetime(record.get("deadline")),
            created_by=record.get("createdBy") or "",
            created_by_email=record.get("createdByEmail"),
            created_at=to_datetime(record.get("createdAt"), now),
            updated_at=to_datetime(record.get("updatedAt"), now),
            team_members=members,
            visibility=record.get("visibility") or "private",
        )


class ProjectCreate(Command):
    project_name: str
    goal: str = ""
    deadline: Optional[datetime] = None
    created_by: str
    created_by_email: Optional[str] = None
    visibility: Visibility = "private"
    # extra members besides the creator, uid -> role
    team_members: Dict[str, InviteRole] = Field(default_factory=dict)

    @field_validator("deadline")
    @classmethod
    def _utc_deadline(cls, value):
        return to_datetime(value)


class ProjectUpdate(Command):
    project_name: Optional[str] = None
    goal: Optional[str] = None
    deadline: Optional[datetime] = None
    visibility: Optional[Visibility] = None

    @field_validator("deadline")
    @classmethod
    def _utc_deadline(cls, value):
        return to_datetime(value)


# -----------------------------
# Tasks
# -----------------------------

class Task(Document):
    id: str
    project_id: str
    title: str
    description: str = ""
    status: TaskStatus = "To Do"
    assigned_to: Optional[str] = None
    assigned_to_users: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    estimated_hours: Optional[float] = None
    created_by: str
    created_at: datetime
    updated_at: datetime

    @property
    def assignees(self) -> List[str]:
        if self.assigned_to_users:
            return list(self.assigned_to_users)
        return [self.assigned_to] if self.assigned_to else []

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Task":
        now = utcnow()
        return cls(
            id=record["id"],
            project_id=record.get("projectId") or "",
            title=record.get("title") or "",
            description=record.get("description") or "",
            status=record.get("status") or "To Do",
            assigned_to=record.get("assignedTo"),
            assigned_to_users=record.get("assignedToUsers"),
            due_date=to_datetime(record.get("dueDate")),
            priority=record.get("priority"),
            category=record.get("category"),
            estimated_hours=record.get("estimatedHours"),
            created_by=record.get("createdBy") or "",
            created_at=to_datetime(record.get("createdAt"), now),
            updated_at=to_datetime(record.get("updatedAt"), now),
        )


class TaskCreate(Command):
    project_id: str
    title: str
    description: str = ""
    status: TaskStatus = "To Do"
    assigned_to: Optional[str] = None
    assigned_to_users: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    created_by: str

    @field_validator("due_date")
    @classmethod
    def _utc_due_date(cls, value):
        return to_datetime(value)


class TaskUpdate(Command):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    assigned_to: Optional[str] = None
    assigned_to_users: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)

    @field_validator("due_date")
    @classmethod
    def _utc_due_date(cls, value):
        return to_datetime(value)


# -----------------------------
# Invitations
# -----------------------------

class Invitation(Document):
    id: str
    project_id: str
    project_name: str = ""
    invited_by: str
    invited_by_email: str = ""
    invited_to: str
    invited_to_email: str = ""
    role: InviteRole = "Member"
    status: InvitationStatus = PENDING
    member_added_at: Optional[datetime] = None
    orphaned_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Invitation":
        now = utcnow()
        return cls(
            id=record["id"],
            project_id=record.get("projectId") or "",
            project_name=record.get("projectName") or "",
            invited_by=record.get("invitedBy") or "",
            invited_by_email=record.get("invitedByEmail") or "",
            invited_to=record.get("invitedTo") or "",
            invited_to_email=record.get("invitedToEmail") or "",
            role=record.get("role") or "Member",
            status=record.get("status") or PENDING,
            member_added_at=to_datetime(record.get("memberAddedAt")),
            orphaned_at=to_datetime(record.get("orphanedAt")),
            created_at=to_datetime(record.get("createdAt"), now),
            updated_at=to_datetime(record.get("updatedAt"), now),
        )


class InvitationCreate(Command):
    project_id: str
    project_name: str
    invited_by: str
    invited_by_email: EmailStr
    invited_to: str
    invited_to_email: EmailStr
    role: InviteRole = "Member"


# -----------------------------
# Notifications (outbox)
# -----------------------------

class Notification(Document):
    id: str
    kind: NotificationKind
    status: NotificationStatus = "pending"
    project_id: str
    task_id: Optional[str] = None
    invitation_id: Optional[str] = None
    recipient_id: Optional[str] = None
    recipient_email: Optional[str] = None
    actor_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Notification":
        now = utcnow()
        return cls(
            id=record["id"],
            kind=record["kind"],
            status=record.get("status") or "pending",
            project_id=record.get("projectId") or "",
            task_id=record.get("taskId"),
            invitation_id=record.get("invitationId"),
            recipient_id=record.get("recipientId"),
            recipient_email=record.get("recipientEmail"),
            actor_id=record.get("actorId"),
            attempts=record.get("attempts") or 0,
            last_error=record.get("lastError"),
            next_attempt_at=to_datetime(record.get("nextAttemptAt")),
            sent_at=to_datetime(record.get("sentAt")),
            created_at=to_datetime(record.get("createdAt"), now),
            updated_at=to_datetime(record.get("updatedAt"), now),
        )
