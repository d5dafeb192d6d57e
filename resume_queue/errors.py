"""
Error taxonomy for the task queue core.

Every error raised by the queue derives from QueueError so that callers
(CLI, monitor, external drivers) can catch the whole family at once and
map each subclass to an exit code or structured payload.
"""

from typing import Optional


class QueueError(Exception):
    """Base class for all task queue errors."""

    error_code = "queue_error"
    exit_code = 1

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id

    def to_dict(self) -> dict:
        """Structured payload for machine-readable output."""
        payload = {"error": self.error_code, "message": self.message}
        if self.task_id:
            payload["task_id"] = self.task_id
        return payload


class ValidationError(QueueError):
    """Bad input shape or range (type, priority, id format, payload)."""

    error_code = "validation_error"
    exit_code = 2


class NotFoundError(QueueError):
    """Unknown task id."""

    error_code = "not_found"
    exit_code = 3


class InvalidTransitionError(QueueError):
    """Illegal status change."""

    error_code = "invalid_transition"
    exit_code = 4

    def __init__(self, task_id: str, old_status: str, new_status: str, reason: str = ""):
        message = f"Invalid state transition for {task_id}: {old_status} -> {new_status}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, task_id=task_id)
        self.old_status = old_status
        self.new_status = new_status


class QueueFullError(QueueError):
    """Queue capacity exceeded."""

    error_code = "queue_full"
    exit_code = 5


class LockTimeoutError(QueueError):
    """Could not acquire the queue lock in time."""

    error_code = "lock_timeout"
    exit_code = 6


class CorruptStoreError(QueueError):
    """Persisted queue JSON is unreadable or violates the schema."""

    error_code = "corrupt_store"
    exit_code = 7


class StoreIOError(QueueError, OSError):
    """Disk or write failure while persisting queue state."""

    error_code = "io_error"
    exit_code = 8
