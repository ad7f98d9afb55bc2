from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from models import TaskStatus, TaskPriority, CollaboratorRole


MAX_CUSTOM_FIELDS = 50
MAX_CUSTOM_FIELD_KEY_LENGTH = 64
MAX_CUSTOM_FIELD_VALUE_LENGTH = 1000

CustomFieldValue = Union[bool, int, float, str, None]


def validate_custom_fields(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Custom fields are a flat map of short keys to scalar values."""
    if value is None:
        return value
    if len(value) > MAX_CUSTOM_FIELDS:
        raise ValueError(f"At most {MAX_CUSTOM_FIELDS} custom fields are allowed")
    for key, field_value in value.items():
        if not key or len(key) > MAX_CUSTOM_FIELD_KEY_LENGTH:
            raise ValueError(f"Custom field keys must be 1-{MAX_CUSTOM_FIELD_KEY_LENGTH} characters")
        if isinstance(field_value, str) and len(field_value) > MAX_CUSTOM_FIELD_VALUE_LENGTH:
            raise ValueError(
                f"Custom field '{key}' exceeds {MAX_CUSTOM_FIELD_VALUE_LENGTH} characters"
            )
    return value


# User schemas
class UserSummary(BaseModel):
    id: int
    email: str
    name: Optional[str] = None


class User(UserSummary):
    external_auth_id: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)


# Project schemas
class ProjectBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class ProjectCreate(ProjectBase):
    pass


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class Project(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    owner_user_id: int
    role: str
    can_write: bool
    created_at: datetime
    updated_at: datetime


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.not_started
    priority: TaskPriority = TaskPriority.none
    custom_fields: Optional[Dict[str, CustomFieldValue]] = None

    @field_validator("custom_fields")
    @classmethod
    def check_custom_fields(cls, value):
        return validate_custom_fields(value)


class TaskCreate(TaskBase):
    position: Optional[int] = Field(None, ge=0)


class TaskUpdate(BaseModel):
    """
    Partial task update. Only fields present in the request are changed.

    expected_version is the version the client last saw; when given, the
    update is rejected with 409 if someone else has written since.
    """
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    position: Optional[int] = Field(None, ge=0)
    custom_fields: Optional[Dict[str, CustomFieldValue]] = None
    expected_version: Optional[int] = Field(None, ge=1)

    @field_validator("custom_fields")
    @classmethod
    def check_custom_fields(cls, value):
        return validate_custom_fields(value)


class TaskPriorityUpdate(BaseModel):
    priority: TaskPriority
    expected_version: Optional[int] = Field(None, ge=1)


class Task(BaseModel):
    id: int
    project_id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    position: int
    custom_fields: Optional[Dict[str, Any]] = None
    version: int
    updated_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime


# Bulk operation schemas
class BulkTaskChanges(BaseModel):
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None


class BulkTaskUpdate(BaseModel):
    task_ids: List[int]
    updates: BulkTaskChanges


class TaskPosition(BaseModel):
    id: int
    position: int = Field(..., ge=0)


class TaskReorder(BaseModel):
    tasks: List[TaskPosition]


class BulkTaskDelete(BaseModel):
    task_ids: List[int]


class BulkDeleteResult(BaseModel):
    success: bool
    deleted_count: int
    deleted_task_ids: List[int]


# Comment schemas
class CommentBase(BaseModel):
    content: str = Field(..., min_length=1)


class CommentCreate(CommentBase):
    pass


class CommentUpdate(CommentBase):
    pass


class Comment(CommentBase):
    id: int
    task_id: int
    user_id: int
    author: Optional[UserSummary] = None
    created_at: datetime
    updated_at: datetime


# Invitation schemas
class InvitationCreate(BaseModel):
    email: EmailStr
    role: CollaboratorRole


class Invitation(BaseModel):
    id: int
    project_id: int
    receiver_email: str
    role: CollaboratorRole
    status: str
    expires_at: datetime
    created_at: datetime


class ReceivedInvitation(Invitation):
    token: str
    project_name: Optional[str] = None
    project_description: Optional[str] = None
    sender: Optional[UserSummary] = None


class InvitationAccepted(BaseModel):
    project_id: int
    role: CollaboratorRole


# Team schemas
class TeamMember(BaseModel):
    id: int
    email: str
    name: Optional[str] = None
    role: str
    joined_at: datetime


class MemberRoleUpdate(BaseModel):
    role: CollaboratorRole


class Message(BaseModel):
    message: str
