import enum

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class TaskPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskOrigin(str, enum.Enum):
    MANUAL = "manual"
    WHATSAPP_MESSAGE = "whatsapp_message"
    WHATSAPP_POLL = "whatsapp_poll"


class EntryType(str, enum.Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(10), nullable=False, default=UserRole.USER.value)
    active = Column(Boolean, nullable=False, default=True)
    avatar_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value, index=True)
    priority = Column(String(10), nullable=False, default=TaskPriority.MEDIUM.value)
    origin = Column(String(20), nullable=False, default=TaskOrigin.MANUAL.value)
    responsible_id = Column(Integer, ForeignKey("profiles.id"), nullable=True)
    creator_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    total_minutes = Column(Integer, nullable=False, default=0)
    estimated_minutes = Column(Integer, nullable=True)
    due_date = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    tags = Column(JSON, nullable=True)
    whatsapp_chat_name = Column(String(255), nullable=True)
    whatsapp_phone_number = Column(String(50), nullable=True)
    whatsapp_message_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    responsible = relationship("Profile", foreign_keys=[responsible_id])
    creator = relationship("Profile", foreign_keys=[creator_id])
    checklist_items = relationship(
        "ChecklistItem", back_populates="task", cascade="all, delete-orphan",
        order_by="ChecklistItem.position",
    )
    comments = relationship("Comment", back_populates="task", cascade="all, delete-orphan")
    time_entries = relationship("TimeEntry", back_populates="task", cascade="all, delete-orphan")


class ChecklistItem(Base):
    __tablename__ = "checklist_items"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    text = Column(String(500), nullable=False)
    done = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("Task", back_populates="checklist_items")


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("Task", back_populates="comments")
    author = relationship("Profile")


class TimeEntry(Base):
    __tablename__ = "time_entries"
    __table_args__ = (
        # One running timer per (task, user).
        Index(
            "uq_time_entries_active", "task_id", "user_id", unique=True,
            sqlite_where=text("end_time IS NULL"),
            postgresql_where=text("end_time IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    start_time = Column(DateTime, default=utcnow, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    entry_type = Column(String(10), nullable=False, default=EntryType.AUTOMATIC.value)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("Task", back_populates="time_entries")
    user = relationship("Profile")

    @property
    def is_running(self) -> bool:
        return self.end_time is None
