# backend/photo_analysis/models.py
from enum import Enum
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
from uuid import uuid4


def utcnow() -> datetime:
    # naive UTC; datetime columns are declared as plain DateTime to match
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    PAUSED = "paused"  # tripped by a critical upstream error


ACTIVE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.PAUSED)


class QueueRecord(SQLModel, table=True):
    __tablename__ = "analysis_queue"

    id: str = Field(default_factory=new_id, primary_key=True)
    report_id: str = Field(foreign_key="reports.id", unique=True, index=True)
    owner_id: str = Field(foreign_key="users.id", index=True)
    status: QueueStatus = Field(default=QueueStatus.PENDING, index=True)
    position: Optional[int] = Field(default=None)  # only while pending
    total_images: int = Field(default=0)
    processed_images: int = Field(default=0)
    current_image_id: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    @property
    def progress_percentage(self) -> int:
        if not self.total_images:
            return 0
        return round(self.processed_images / self.total_images * 100)


class QueueState(SQLModel, table=True):
    """Single row (id=1) holding the global pause flag."""
    __tablename__ = "queue_state"

    id: int = Field(default=1, primary_key=True)
    paused: bool = Field(default=False)
    reason: Optional[str] = Field(default=None)
    paused_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class SystemConfig(SQLModel, table=True):
    __tablename__ = "system_config"

    key: str = Field(primary_key=True, max_length=100)
    value: str = Field(default="")
    description: Optional[str] = Field(default=None, max_length=500)
    updated_by: Optional[str] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# --- collaborator tables: owned by other subsystems, read/written through collaborators.py ---

class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    email: str
    role: str = Field(default="user")  # user | admin | dev
    photo_quota: int = Field(default=0)


class Report(SQLModel, table=True):
    __tablename__ = "reports"

    id: str = Field(default_factory=new_id, primary_key=True)
    owner_id: str = Field(foreign_key="users.id", index=True)
    address: Optional[str] = Field(default=None)
    status: str = Field(default="pending")  # pending | in_progress | done


class Photo(SQLModel, table=True):
    __tablename__ = "photos"

    id: str = Field(default_factory=new_id, primary_key=True)
    report_id: str = Field(foreign_key="reports.id", index=True)
    storage_key: str
    ordering: int = Field(default=0)
    environment_label: Optional[str] = Field(default=None)
    item_label: Optional[str] = Field(default=None)
    analyzed: str = Field(default="no")  # yes | no
    caption: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Environment(SQLModel, table=True):
    __tablename__ = "environments"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(unique=True)
    ordering: int = Field(default=0)
    active: bool = Field(default=True)


class Item(SQLModel, table=True):
    """Taxonomy node. Children point at their parent through parent_id."""
    __tablename__ = "items"

    id: str = Field(default_factory=new_id, primary_key=True)
    environment_id: str = Field(foreign_key="environments.id", index=True)
    parent_id: Optional[str] = Field(default=None, foreign_key="items.id", index=True)
    name: str
    prompt: str = Field(default="")
    ordering: int = Field(default=0)
    active: bool = Field(default=True)
