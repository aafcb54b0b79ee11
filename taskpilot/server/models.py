"""
SOLE RESPONSIBILITY: Defines all Pydantic and SQLModel data contracts for the entire system,
serving as the single source of truth for data shapes.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, TypeAdapter, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def new_id() -> str:
    """Opaque unique identifier used as primary key for every persisted record."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task and sub-task status enumeration."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ProcessStatus(str, Enum):
    """Lifecycle of a process launched by the process engine."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"
    TIMEOUT = "timeout"


TERMINAL_PROCESS_STATUSES = frozenset(
    {ProcessStatus.COMPLETED, ProcessStatus.STOPPED, ProcessStatus.FAILED, ProcessStatus.TIMEOUT}
)


class IsolationType(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


# Database tables


class TaskDB(SQLModel, table=True):
    """Database model representing the tasks table schema."""

    __tablename__ = "tasks"

    id: str = Field(default_factory=new_id, primary_key=True)
    title: str
    description: Optional[str] = None
    status: TaskStatus = Field(index=True, default=TaskStatus.PENDING)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    due_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    task_metadata: Optional[str] = None  # JSON-encoded TaskMetadata
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    sub_tasks: List["SubTaskDB"] = Relationship(
        back_populates="task",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "SubTaskDB.order"},
    )
    logs: List["TaskLogDB"] = Relationship(
        back_populates="task",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class SubTaskDB(SQLModel, table=True):
    """One ordered unit of work owned by exactly one task."""

    __tablename__ = "sub_tasks"
    __table_args__ = (UniqueConstraint("task_id", "order"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    title: str
    description: Optional[str] = None
    status: TaskStatus = Field(index=True, default=TaskStatus.PENDING)
    order: int = Field(index=True)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    task: Optional[TaskDB] = Relationship(back_populates="sub_tasks")


class TaskLogDB(SQLModel, table=True):
    """Append-only audit record. Rows are never updated."""

    __tablename__ = "task_logs"

    id: str = Field(default_factory=new_id, primary_key=True)
    task_id: Optional[str] = Field(default=None, foreign_key="tasks.id", index=True)
    sub_task_id: Optional[str] = Field(default=None, index=True)
    message: str
    level: LogLevel = Field(default=LogLevel.INFO)
    details: Optional[str] = None  # JSON-encoded LogDetails
    seq: int = Field(default=0, index=True)  # per-task write order
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)

    task: Optional[TaskDB] = Relationship(back_populates="logs")


class SandboxSessionDB(SQLModel, table=True):
    """Persisted sandbox session with its command and output history."""

    __tablename__ = "sandbox_sessions"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = "New Session"
    commands: str = "[]"  # JSON list of CommandHistoryEntry
    outputs: str = "[]"  # JSON list of CommandOutputEntry
    session_metadata: Optional[str] = None  # JSON-encoded SessionMetadata
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)


# Typed metadata payloads stored in the JSON text columns above


class PlanDetails(BaseModel):
    kind: Literal["plan"] = "plan"
    plan: str
    sub_task_count: int


class SubTaskResponseDetails(BaseModel):
    kind: Literal["sub_task_response"] = "sub_task_response"
    response: str
    commands: List["CommandResult"] = []


class ErrorDetails(BaseModel):
    kind: Literal["error"] = "error"
    error_type: str
    error: str


LogDetails = Annotated[
    Union[PlanDetails, SubTaskResponseDetails, ErrorDetails],
    PydanticField(discriminator="kind"),
]


class TaskMetadata(BaseModel):
    sandbox_session_id: Optional[str] = None


class SessionMetadata(BaseModel):
    working_directory: str
    temp_directory: str
    is_isolated: bool = True
    status: Literal["active", "inactive"] = "active"


class CommandHistoryEntry(BaseModel):
    command: str
    timestamp: datetime
    success: bool = True


class CommandOutputEntry(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int
    execution_time: float  # milliseconds
    process_id: Optional[str] = None


# In-memory process and session state


@dataclass
class ProcessOptions:
    """Launch options understood by the process engine."""

    working_dir: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    timeout: Optional[float] = None  # seconds
    detached: bool = False
    hide_window: bool = True


@dataclass
class ProcessInfo:
    """State of a single launched process, owned and mutated by the process engine."""

    process_id: str
    command: str
    args: List[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    status: ProcessStatus = ProcessStatus.STARTING
    pid: Optional[int] = None
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PROCESS_STATUSES


@dataclass
class ExecutionOptions:
    """Per-command options for sandbox execution."""

    working_directory: Optional[str] = None
    timeout: Optional[float] = None  # seconds
    env: Optional[Dict[str, str]] = None
    isolation_type: IsolationType = IsolationType.PARTIAL


@dataclass
class SandboxSession:
    """Cached, live view of a sandbox session."""

    id: str
    name: str
    working_directory: str
    temp_directory: str
    created_at: datetime
    is_isolated: bool = True
    status: str = "active"
    processes: List[ProcessInfo] = field(default_factory=list)


# API contracts


class TaskCreate(BaseModel):
    """Input model for submitting a new goal."""

    title: str = PydanticField(..., min_length=1, max_length=500)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()


class SubTaskRead(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus
    order: int
    completed_at: Optional[datetime] = None


class TaskRead(BaseModel):
    """Public-facing task representation for API responses."""

    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    sandbox_session_id: Optional[str] = None
    sub_tasks: List[SubTaskRead] = []


class TaskLogRead(BaseModel):
    id: str
    task_id: Optional[str] = None
    sub_task_id: Optional[str] = None
    message: str
    level: LogLevel
    details: Optional[LogDetails] = None
    created_at: datetime


class SessionCreate(BaseModel):
    name: str = PydanticField("New Session", min_length=1, max_length=200)
    is_isolated: bool = True


class ProcessRead(BaseModel):
    process_id: str
    pid: Optional[int] = None
    command: str
    args: List[str] = []
    status: ProcessStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None


class SessionRead(BaseModel):
    id: str
    name: str
    working_directory: str
    temp_directory: str
    is_isolated: bool
    status: str
    created_at: datetime
    processes: List[ProcessRead] = []


class CommandRequest(BaseModel):
    """Input model for running a command line inside a sandbox session."""

    command: str = PydanticField(..., min_length=1)
    working_directory: Optional[str] = None
    timeout: Optional[float] = PydanticField(None, gt=0, le=86400)
    env: Optional[Dict[str, str]] = None
    isolation_type: IsolationType = IsolationType.PARTIAL


class CommandResult(BaseModel):
    """Outcome of one sandbox command; failures are reported here, never raised."""

    success: bool
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int
    process_id: Optional[str] = None
    execution_time: float = 0.0  # milliseconds
    timestamp: datetime


class CommandHistoryItem(BaseModel):
    command: str
    timestamp: datetime
    success: bool = True
    result: Optional[CommandOutputEntry] = None


class CleanupOutcome(BaseModel):
    session_id: str
    success: bool
    files_deleted: int = 0
    reason: Optional[str] = None


class CleanupResult(BaseModel):
    deleted_sessions: int = 0
    deleted_files: int = 0
    errors: List[str] = []
    outcomes: List[CleanupOutcome] = []


SubTaskResponseDetails.model_rebuild()

log_details_adapter = TypeAdapter(LogDetails)
history_adapter = TypeAdapter(List[CommandHistoryEntry])
outputs_adapter = TypeAdapter(List[CommandOutputEntry])
