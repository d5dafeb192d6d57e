"""
Resume Queue - persistent task queue for Claude auto-resume sessions.

A lock-protected, crash-recoverable work queue with states, priorities,
retries and backups, driven by an external terminal monitor.

Layout (under the queue directory):
- task-queue.json     - the queue document (source of truth)
- backups/            - timestamped snapshots
- .queue.lock(.d)     - lock marker (fcntl file or directory backend)
"""

__version__ = "1.0.0"

from resume_queue.errors import (
    QueueError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    QueueFullError,
    LockTimeoutError,
    CorruptStoreError,
    StoreIOError,
)

from resume_queue.models import (
    Task,
    TaskStatus,
    TaskType,
    QueueIndex,
    LockInfo,
    ImportSummary,
    QueueStatistics,
)

from resume_queue.config import ConfigManager, QueueSettings, DEFAULT_CONFIG_FILE
from resume_queue.engine import QueueEngine
from resume_queue.locking import LockManager, DirectoryLock, FcntlLock, create_lock_backend
from resume_queue.store import QueueStore
from resume_queue.query import TaskFilter, SortKey, query_tasks
from resume_queue.service import QueueService

__all__ = [
    # Errors
    "QueueError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "QueueFullError",
    "LockTimeoutError",
    "CorruptStoreError",
    "StoreIOError",
    # Models
    "Task",
    "TaskStatus",
    "TaskType",
    "QueueIndex",
    "LockInfo",
    "ImportSummary",
    "QueueStatistics",
    # Config
    "ConfigManager",
    "QueueSettings",
    "DEFAULT_CONFIG_FILE",
    # Components
    "QueueEngine",
    "QueueStore",
    "LockManager",
    "DirectoryLock",
    "FcntlLock",
    "create_lock_backend",
    "TaskFilter",
    "SortKey",
    "query_tasks",
    "QueueService",
]
