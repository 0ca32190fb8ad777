from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import EntryType, TaskOrigin, TaskPriority, TaskStatus, UserRole


# ---------- profiles ----------

class ProfileBase(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    role: UserRole = UserRole.USER
    active: bool = True
    avatar_url: Optional[str] = None


class ProfileCreate(ProfileBase):
    pass


class ProfileOut(ProfileBase):
    id: int
    created_at: datetime

    class Config:
        from_attributes = True


class ProfileRef(BaseModel):
    id: int
    full_name: str

    class Config:
        from_attributes = True


# ---------- tasks ----------

class TaskBase(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    origin: TaskOrigin = TaskOrigin.MANUAL
    responsible_id: Optional[int] = None
    estimated_minutes: Optional[int] = Field(default=None, ge=0)
    due_date: Optional[datetime] = None
    tags: Optional[List[str]] = None
    whatsapp_chat_name: Optional[str] = None
    whatsapp_phone_number: Optional[str] = None
    whatsapp_message_id: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        if not value.strip():
            raise ValueError("El título es obligatorio")
        return value.strip()


class TaskCreate(TaskBase):
    creator_id: int
    # Pasted WhatsApp text, appended to the description.
    whatsapp_message: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    responsible_id: Optional[int] = None
    estimated_minutes: Optional[int] = Field(default=None, ge=0)
    due_date: Optional[datetime] = None
    tags: Optional[List[str]] = None

    # Omitting a field keeps it; an explicit null is only allowed for nullable columns.
    @field_validator("title", "priority", mode="before")
    @classmethod
    def not_null(cls, value, info):
        if value is None:
            raise ValueError(f"El campo {info.field_name} no puede ser nulo")
        return value

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        if not value.strip():
            raise ValueError("El título es obligatorio")
        return value.strip()


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class PollTaskCreate(BaseModel):
    poll_title: str = Field(min_length=1)
    poll_options: str = Field(description="One option per line; each becomes a task")
    creator_id: int
    priority: TaskPriority = TaskPriority.MEDIUM
    responsible_id: Optional[int] = None
    due_date: Optional[datetime] = None
    whatsapp_chat_name: Optional[str] = None
    whatsapp_phone_number: Optional[str] = None


class TaskOut(TaskBase):
    id: int
    creator_id: int
    total_minutes: int
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    responsible: Optional[ProfileRef] = None
    creator: ProfileRef

    class Config:
        from_attributes = True


class BoardOut(BaseModel):
    pending: List[TaskOut] = []
    in_progress: List[TaskOut] = []
    blocked: List[TaskOut] = []
    completed: List[TaskOut] = []


# ---------- checklist ----------

class ChecklistItemCreate(BaseModel):
    text: str = Field(min_length=1, max_length=500)


class ChecklistItemUpdate(BaseModel):
    done: bool


class ChecklistItemOut(BaseModel):
    id: int
    task_id: int
    text: str
    done: bool
    position: int

    class Config:
        from_attributes = True


# ---------- comments ----------

class CommentCreate(BaseModel):
    author_id: int
    text: str = Field(min_length=1)


class CommentOut(BaseModel):
    id: int
    task_id: int
    text: str
    created_at: datetime
    author: ProfileRef

    class Config:
        from_attributes = True


# ---------- time tracking ----------

class TimerStart(BaseModel):
    user_id: int


class ManualTimeEntryCreate(BaseModel):
    user_id: int
    start_time: datetime
    duration_minutes: int = Field(ge=0)
    note: Optional[str] = None


class TimeEntryOut(BaseModel):
    id: int
    task_id: int
    user_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    entry_type: EntryType
    note: Optional[str] = None
    user: Optional[ProfileRef] = None

    class Config:
        from_attributes = True


class ActiveTimerOut(BaseModel):
    entry: TimeEntryOut
    elapsed_seconds: int
    elapsed_display: str


# ---------- reports ----------

class DayTotal(BaseModel):
    label: str
    hours: float


class ReportSummary(BaseModel):
    total_minutes: int
    total_hours: int
    total_minutes_remainder: int
    entry_count: int
    active_users: int
    average_hours_per_user: int
    worked_tasks: int
    average_hours_per_task: int
    by_user: Dict[str, int]
    by_task: Dict[str, int]
    by_day: List[DayTotal]


class DashboardStats(BaseModel):
    pending: int
    in_progress: int
    blocked: int
    completed: int
    due_today_or_past: int
    total_minutes_today: int
    total_minutes_week: int
