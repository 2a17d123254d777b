"""
Request schemas for the ProjectFlow API

Documents are stored in MongoDB collections named after the entity
(``user``, ``project``, ``milestone``, ``task``, ``subtask``,
``task_request``, ``activity``). Ids travel as stringified ObjectIds and are
converted at the route boundary.
"""
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator

Role = Literal["pm", "employee", "customer"]
UserStatus = Literal["active", "inactive"]
ProjectStatus = Literal["planning", "active", "on-hold", "completed", "cancelled"]
WorkStatus = Literal["pending", "in-progress", "completed", "cancelled"]
Priority = Literal["low", "normal", "high", "urgent"]
RequestReason = Literal["bug-fix", "feature-request", "improvement", "change-request", "additional-work", "other"]


def _not_blank(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


Text = Annotated[str, AfterValidator(_not_blank)]


# Auth and Users
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ProfileUpdate(BaseModel):
    full_name: Optional[Text] = Field(None, max_length=100)
    phone: Optional[str] = None
    department: Optional[str] = Field(None, max_length=100)
    job_title: Optional[str] = Field(None, max_length=100)
    company: Optional[str] = Field(None, max_length=100)


class UserCreate(BaseModel):
    full_name: Text = Field(..., max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "employee"
    status: UserStatus = "active"
    department: Optional[str] = Field(None, max_length=100)
    job_title: Optional[str] = Field(None, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = None


class UserUpdate(BaseModel):
    full_name: Optional[Text] = Field(None, max_length=100)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    department: Optional[str] = Field(None, max_length=100)
    job_title: Optional[str] = Field(None, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = None


# Projects
class ProjectCreate(BaseModel):
    name: Text = Field(..., max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    customer_id: str
    priority: Priority = "normal"
    status: ProjectStatus = "planning"
    start_date: Optional[datetime] = None
    due_date: datetime
    assigned_team: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class ProjectUpdate(BaseModel):
    name: Optional[Text] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    customer_id: Optional[str] = None
    priority: Optional[Priority] = None
    status: Optional[ProjectStatus] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    assigned_team: Optional[List[str]] = None
    tags: Optional[List[str]] = None


# Milestones
class MilestoneCreate(BaseModel):
    project_id: str
    title: Text = Field(..., max_length=200)
    description: str = Field("", max_length=2000)
    sequence: int = Field(..., ge=1)
    due_date: datetime
    status: WorkStatus = "pending"
    priority: Priority = "normal"
    assigned_to: List[str] = Field(default_factory=list)


class MilestoneUpdate(BaseModel):
    title: Optional[Text] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    sequence: Optional[int] = Field(None, ge=1)
    due_date: Optional[datetime] = None
    status: Optional[WorkStatus] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[List[str]] = None


# Tasks and subtasks
class TaskCreate(BaseModel):
    project_id: str
    milestone_id: str
    title: Text = Field(..., max_length=200)
    description: str = Field("", max_length=2000)
    status: WorkStatus = "pending"
    priority: Priority = "normal"
    assigned_to: List[str] = Field(default_factory=list)
    due_date: datetime
    sequence: Optional[int] = Field(None, ge=1)


class TaskUpdate(BaseModel):
    milestone_id: Optional[str] = None
    title: Optional[Text] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    status: Optional[WorkStatus] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    sequence: Optional[int] = Field(None, ge=1)


class TaskCopy(BaseModel):
    milestone_id: Optional[str] = None


class StatusUpdate(BaseModel):
    status: WorkStatus


class SubtaskCreate(BaseModel):
    task_id: str
    title: Text = Field(..., max_length=200)
    description: str = Field("", max_length=1000)
    status: WorkStatus = "pending"
    priority: Priority = "normal"
    assigned_to: List[str] = Field(default_factory=list)
    due_date: datetime
    sequence: Optional[int] = Field(None, ge=1)


class SubtaskUpdate(BaseModel):
    title: Optional[Text] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    status: Optional[WorkStatus] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    sequence: Optional[int] = Field(None, ge=1)


# Comments
class CommentCreate(BaseModel):
    message: Text = Field(..., max_length=1000)


# Task requests
class TaskRequestCreate(BaseModel):
    project_id: str
    milestone_id: str
    title: Text = Field(..., min_length=5, max_length=100)
    description: str = Field(..., min_length=20, max_length=1000)
    priority: Priority = "normal"
    due_date: datetime
    reason: RequestReason

    @field_validator("due_date")
    @classmethod
    def due_date_in_future(cls, value: datetime) -> datetime:
        compare = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if compare <= datetime.now(timezone.utc):
            raise ValueError("Due date must be in the future")
        return value


class TaskRequestUpdate(BaseModel):
    title: Optional[Text] = Field(None, min_length=5, max_length=100)
    description: Optional[str] = Field(None, min_length=20, max_length=1000)
    priority: Optional[Priority] = None
    due_date: Optional[datetime] = None
    reason: Optional[RequestReason] = None


class TaskRequestReview(BaseModel):
    action: Literal["approve", "reject"]
    review_comments: Optional[str] = Field(None, max_length=500)
