"""
Data models for the task queue.

Defines Pydantic models for tasks, the in-memory index, the on-disk
queue document, lock diagnostics and import summaries.
"""

import random
import re
import time
from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from resume_queue.errors import ValidationError


STORE_VERSION = "1.0"

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
TASK_ID_MAX_LENGTH = 100

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class TaskType(str, Enum):
    """Kind of work a task represents."""
    GITHUB_ISSUE = "github_issue"
    GITHUB_PR = "github_pr"
    CUSTOM = "custom"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})


def now() -> datetime:
    """Current local time (naive), the clock used across the queue."""
    return datetime.now()


def to_local_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def validate_task_id(task_id: str) -> str:
    """
    Validate a task ID.

    Raises:
        ValidationError: If the ID is empty, too long or has invalid characters
    """
    if not task_id:
        raise ValidationError("Task ID cannot be empty")
    if len(task_id) > TASK_ID_MAX_LENGTH:
        raise ValidationError(f"Task ID too long (max {TASK_ID_MAX_LENGTH} chars): {task_id}")
    if not TASK_ID_PATTERN.match(task_id):
        raise ValidationError(f"Task ID contains invalid characters: {task_id}")
    return task_id


def validate_priority(priority: Any) -> int:
    """
    Validate a priority value.

    Raises:
        ValidationError: If priority is not an integer in [1, 10]
    """
    if isinstance(priority, bool):
        raise ValidationError(f"Priority must be an integer: {priority!r}")
    try:
        value = int(priority)
    except (TypeError, ValueError):
        raise ValidationError(f"Priority must be an integer: {priority!r}")
    if isinstance(priority, float) and value != priority:
        raise ValidationError(f"Priority must be an integer: {priority!r}")
    if not MIN_PRIORITY <= value <= MAX_PRIORITY:
        raise ValidationError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}: {priority}"
        )
    return value


def parse_task_type(value: Any) -> TaskType:
    """Parse a task type, raising ValidationError for unknown types."""
    if isinstance(value, TaskType):
        return value
    try:
        return TaskType(str(value))
    except ValueError:
        valid = ", ".join(t.value for t in TaskType)
        raise ValidationError(f"Invalid task type: {value} (expected one of: {valid})")


def parse_task_status(value: Any) -> TaskStatus:
    """Parse a task status, raising ValidationError for unknown statuses."""
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(str(value))
    except ValueError:
        valid = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(f"Invalid task status: {value} (expected one of: {valid})")


def generate_task_id(task_type: TaskType) -> str:
    """Generate a task ID of the form <type>-<unix_ts>-<random_suffix>."""
    return f"{task_type.value}-{int(time.time())}-{random.randint(0, 9999):04d}"


class Task(BaseModel):
    """
    A task in the queue.

    Metadata is an open map; the queue itself only reads the fields
    exposed through the helper properties below.
    """

    id: str = Field(..., description="Unique task identifier (<type>-<unix_ts>-<suffix>)")
    type: TaskType = Field(default=TaskType.CUSTOM, description="Kind of work")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Current task status")
    priority: int = Field(default=DEFAULT_PRIORITY, description="1 (most urgent) to 10")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Open key-value map")
    retry_count: int = Field(default=0, ge=0, description="Number of retries performed")

    # Timestamps
    created_at: datetime = Field(default_factory=now, description="When task was created")
    updated_at: datetime = Field(default_factory=now, description="Last mutation time")

    @field_validator("id")
    @classmethod
    def check_id(cls, v: str) -> str:
        """Validate task ID format."""
        try:
            return validate_task_id(v)
        except ValidationError as e:
            raise ValueError(e.message)

    @field_validator("priority")
    @classmethod
    def check_priority(cls, v: int) -> int:
        """Validate priority range."""
        if not MIN_PRIORITY <= v <= MAX_PRIORITY:
            raise ValueError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}: {v}")
        return v

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Store timestamps as naive local time."""
        return to_local_naive(v)

    @property
    def is_terminal(self) -> bool:
        """True if the task is completed, failed or timed out."""
        return self.status in TERMINAL_STATUSES

    @property
    def description(self) -> str:
        """Human readable description (description, else GitHub title)."""
        description = self.metadata.get("description")
        if description:
            return str(description)
        title = self.metadata.get("title") or ""
        number = self.metadata.get("github_number")
        if number not in (None, ""):
            return f"#{number}: {title}" if title else f"#{number}"
        return str(title)

    @property
    def clear_context(self) -> bool:
        """Whether the driver should clear the Claude context before running."""
        value = self.metadata.get("clear_context", True)
        if isinstance(value, str):
            return value.strip().lower() not in ("false", "0", "no")
        return bool(value)

    def timeout_seconds(self, default: int) -> int:
        """Per-task execution timeout, falling back to the configured default."""
        try:
            return int(self.metadata.get("timeout", default))
        except (TypeError, ValueError):
            return default

    def max_retries(self, default: int) -> int:
        """Per-task retry limit, falling back to the configured default."""
        try:
            return int(self.metadata.get("max_retries", default))
        except (TypeError, ValueError):
            return default

    def completion_marker(self, default: str) -> str:
        """Completion marker the driver looks for in terminal output."""
        return str(self.metadata.get("completion_marker") or default)


class QueueIndex(BaseModel):
    """
    In-memory index of all tasks, keyed by task ID.

    Rebuilt from the store on every load; owned by a single process.
    """

    tasks: Dict[str, Task] = Field(default_factory=dict)
    created: datetime = Field(default_factory=now, description="When the store was first created")

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def get(self, task_id: str) -> Optional[Task]:
        """Get task by ID."""
        return self.tasks.get(task_id)

    def add(self, task: Task) -> None:
        """Insert a new task, rejecting duplicate IDs."""
        if task.id in self.tasks:
            raise ValidationError(f"Task already exists: {task.id}", task_id=task.id)
        self.tasks[task.id] = task

    def remove(self, task_id: str) -> Optional[Task]:
        """Remove a task by ID, returning it if present."""
        return self.tasks.pop(task_id, None)

    def list_tasks(self) -> List[Task]:
        """All tasks in insertion order."""
        return list(self.tasks.values())

    def count_by_status(self) -> Dict[str, int]:
        """Count tasks per status (every status present, zero if unused)."""
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks.values():
            counts[task.status.value] += 1
        return counts


class QueueDocument(BaseModel):
    """
    On-disk representation of the queue (task-queue.json).

    The summary counters are derived on save and ignored on load.
    """

    version: str = STORE_VERSION
    created: datetime = Field(default_factory=now)
    last_updated: datetime = Field(default_factory=now)
    total_tasks: int = 0
    pending_tasks: int = 0
    active_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    timeout_tasks: int = 0
    tasks: List[Task] = Field(default_factory=list)

    @field_validator("created", "last_updated")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_local_naive(v)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "QueueDocument":
        seen = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task ID in store: {task.id}")
            seen.add(task.id)
        return self

    @classmethod
    def from_index(cls, index: QueueIndex) -> "QueueDocument":
        """Build a document (with summary counters) from an index."""
        counts = index.count_by_status()
        return cls(
            created=index.created,
            last_updated=now(),
            total_tasks=len(index),
            pending_tasks=counts[TaskStatus.PENDING.value],
            active_tasks=counts[TaskStatus.IN_PROGRESS.value],
            completed_tasks=counts[TaskStatus.COMPLETED.value],
            failed_tasks=counts[TaskStatus.FAILED.value],
            timeout_tasks=counts[TaskStatus.TIMEOUT.value],
            tasks=index.list_tasks(),
        )

    def to_index(self) -> QueueIndex:
        """Rebuild the in-memory index from this document."""
        return QueueIndex(
            tasks={task.id: task for task in self.tasks},
            created=self.created,
        )


class LockInfo(BaseModel):
    """Holder identity of the queue lock, for diagnostics."""

    backend: str
    path: str
    pid: Optional[int] = None
    hostname: Optional[str] = None
    user: Optional[str] = None
    operation: Optional[str] = None
    acquired_at: Optional[datetime] = None
    alive: Optional[bool] = None
    token: Optional[str] = Field(default=None, exclude=True, repr=False)

    @property
    def age_seconds(self) -> Optional[float]:
        """Seconds since the lock was acquired, if known."""
        if self.acquired_at is None:
            return None
        return (now() - to_local_naive(self.acquired_at)).total_seconds()

    @property
    def state(self) -> str:
        """'active', 'stale' or 'unknown'."""
        if self.alive is None:
            return "unknown"
        return "active" if self.alive else "stale"


class ImportSummary(BaseModel):
    """Result of an import (validate, merge or replace)."""

    mode: str
    valid: bool = True
    total: int = 0
    imported: int = 0
    updated: int = 0
    errors: int = 0
    messages: List[str] = Field(default_factory=list)
    backup_path: Optional[str] = None


class QueueStatistics(BaseModel):
    """Aggregated queue statistics."""

    total: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    average_completion_seconds: Optional[float] = None
    health: str = "healthy"


class BatchResult(BaseModel):
    """Outcome of a batch add/remove."""

    operation: str
    lines: int = 0
    succeeded: List[str] = Field(default_factory=list, description="Task IDs added or removed")
    failures: List[str] = Field(default_factory=list, description="One message per failed line")

    @property
    def ok(self) -> bool:
        return not self.failures
