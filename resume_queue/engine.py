"""
Queue engine: task lifecycle and selection over an in-memory index.

The engine never touches the disk. QueueService wraps each mutating
call in load -> engine op -> save under the queue lock.

State machine (initial: pending; terminal: completed, failed, timeout):

    pending      -> in_progress   (dequeue/select-next)
    in_progress  -> completed     (success)
    in_progress  -> failed        (unrecoverable error)
    in_progress  -> timeout       (execution exceeded timeout)
    failed       -> pending       (retry, only if retry_count < max_retries)
    timeout      -> pending       (retry, only if retry_count < max_retries)
"""

import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from resume_queue.config import QueueSettings
from resume_queue.errors import (
    InvalidTransitionError,
    NotFoundError,
    QueueFullError,
    ValidationError,
)
from resume_queue.models import (
    DEFAULT_PRIORITY,
    QueueIndex,
    QueueStatistics,
    Task,
    TaskStatus,
    TaskType,
    generate_task_id,
    now,
    parse_task_status,
    parse_task_type,
    validate_priority,
    validate_task_id,
)


logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[TaskStatus, frozenset] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.TIMEOUT: frozenset({TaskStatus.PENDING}),
}

RETRYABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.TIMEOUT})

# Generated ID collisions are retried this many times before giving up
MAX_ID_ATTEMPTS = 10

HEALTH_CRITICAL_FAILURE_RATIO = 0.2
HEALTH_WARNING_ACTIVE_TASKS = 5


def is_transition_allowed(old_status: TaskStatus, new_status: TaskStatus) -> bool:
    """Check a status pair against the state machine."""
    return new_status in ALLOWED_TRANSITIONS.get(old_status, frozenset())


def priority_sort_key(lower_priority_first: bool = True) -> Callable[[Task], tuple]:
    """
    Sort key for "most urgent first", ties broken by earliest creation.

    Args:
        lower_priority_first: True if priority 1 is the most urgent

    Returns:
        Key function for sorted(); stable, so insertion order breaks exact ties
    """
    def key(task: Task) -> tuple:
        priority = task.priority if lower_priority_first else -task.priority
        return (priority, task.created_at)
    return key


class QueueEngine:
    """
    Task lifecycle operations on a QueueIndex.

    Every operation validates fully before mutating, so a raised error
    leaves the index exactly as it was.
    """

    def __init__(
        self,
        index: QueueIndex,
        settings: Optional[QueueSettings] = None,
        clock: Callable[[], datetime] = now
    ):
        """
        Initialize engine.

        Args:
            index: Index to operate on (mutated in place)
            settings: Queue settings (defaults if None)
            clock: Time source, injectable for tests
        """
        self.index = index
        self.settings = settings or QueueSettings()
        self.clock = clock

    # Lookup

    def get_task(self, task_id: str) -> Task:
        """
        Get task by ID.

        Raises:
            NotFoundError: If the task does not exist
        """
        task = self.index.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}", task_id=task_id)
        return task

    # Creation

    def create_task(
        self,
        task_type: Any = TaskType.CUSTOM,
        priority: Any = DEFAULT_PRIORITY,
        task_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Task:
        """
        Create a pending task.

        Args:
            task_type: github_issue, github_pr or custom
            priority: Integer 1-10
            task_id: Explicit ID; generated as <type>-<unix_ts>-<suffix> if None
            metadata: Open key-value map

        Returns:
            The created Task

        Raises:
            ValidationError: Bad type, priority, ID format, or duplicate ID
            QueueFullError: If max_queue_size is reached
        """
        task_type = parse_task_type(task_type)
        priority = validate_priority(priority)

        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise ValidationError("Task metadata must be a key-value mapping")

        if task_id is not None:
            validate_task_id(task_id)
            if task_id in self.index:
                raise ValidationError(f"Task already exists: {task_id}", task_id=task_id)
        else:
            task_id = self._generate_unique_id(task_type)

        self.check_capacity()

        timestamp = self.clock()
        task = Task(
            id=task_id,
            type=task_type,
            status=TaskStatus.PENDING,
            priority=priority,
            metadata=copy.deepcopy(metadata),
            created_at=timestamp,
            updated_at=timestamp,
        )
        self.index.add(task)

        logger.info(f"Added task {task_id} (type: {task_type.value}, priority: {priority})")
        return task

    def create_github_issue_task(
        self,
        number: Any,
        priority: Any = DEFAULT_PRIORITY,
        title: Optional[str] = None,
        labels: Optional[List[str]] = None
    ) -> Task:
        """
        Create a task for a GitHub issue (ID issue-<n>, command /dev <n>).

        Issue details are not fetched; title defaults to "GitHub Issue #<n>".
        """
        number = self._validate_github_number(number)
        metadata = {
            "github_number": number,
            "title": title or f"GitHub Issue #{number}",
            "labels": list(labels or []),
            "command": f"/dev {number}",
        }
        return self.create_task(TaskType.GITHUB_ISSUE, priority, f"issue-{number}", metadata)

    def create_github_pr_task(
        self,
        number: Any,
        priority: Any = DEFAULT_PRIORITY,
        title: Optional[str] = None
    ) -> Task:
        """Create a task for a GitHub pull request (ID pr-<n>, command /dev <n>)."""
        number = self._validate_github_number(number)
        metadata = {
            "github_number": number,
            "title": title or f"GitHub PR #{number}",
            "command": f"/dev {number}",
        }
        return self.create_task(TaskType.GITHUB_PR, priority, f"pr-{number}", metadata)

    # Removal

    def remove_task(self, task_id: str) -> Task:
        """
        Remove a task.

        Removing an in-progress task is allowed; avoiding that is the
        caller's responsibility.

        Returns:
            The removed Task

        Raises:
            NotFoundError: If the task does not exist
        """
        task = self.get_task(task_id)
        if task.status == TaskStatus.IN_PROGRESS:
            logger.warning(f"Removing task {task_id} while it is in progress")
        self.index.remove(task_id)
        logger.info(f"Removed task {task_id}")
        return task

    def clear(self) -> int:
        """Remove all tasks. Returns number removed."""
        count = len(self.index)
        self.index.tasks.clear()
        logger.info(f"Cleared {count} tasks from queue")
        return count

    # Transitions

    def update_status(self, task_id: str, new_status: Any) -> Task:
        """
        Move a task along the state machine.

        The retry transition (failed/timeout -> pending) is only allowed
        while retry_count < max_retries, and increments retry_count.

        Returns:
            The updated Task

        Raises:
            NotFoundError: If the task does not exist
            ValidationError: If new_status is not a known status
            InvalidTransitionError: If the transition is not allowed
        """
        task = self.get_task(task_id)
        new_status = parse_task_status(new_status)
        self._check_transition(task, new_status)
        self._apply_transition(task, new_status)
        return task

    def can_retry(self, task_id: str) -> bool:
        """Whether the task is failed/timeout and has retries left."""
        task = self.get_task(task_id)
        if task.status not in RETRYABLE_STATUSES:
            return False
        return task.retry_count < task.max_retries(self.settings.max_retries)

    def retry_task(self, task_id: str) -> Task:
        """Return a failed or timed-out task to pending."""
        return self.update_status(task_id, TaskStatus.PENDING)

    def record_error(self, task_id: str, message: str, code: int = 1) -> Task:
        """
        Mark an in-progress task as failed and record the error.

        Stores last_error, last_error_code and last_error_time in metadata.

        Raises:
            NotFoundError: If the task does not exist
            InvalidTransitionError: If the task is not in progress
        """
        task = self.get_task(task_id)
        self._check_transition(task, TaskStatus.FAILED)

        task.metadata["last_error"] = message
        task.metadata["last_error_code"] = code
        task.metadata["last_error_time"] = self.clock().isoformat()
        self._apply_transition(task, TaskStatus.FAILED)
        return task

    def update_priority(self, task_id: str, new_priority: Any) -> Task:
        """
        Change priority. Legal in every status.

        Raises:
            NotFoundError: If the task does not exist
            ValidationError: If priority is outside [1, 10]
        """
        task = self.get_task(task_id)
        priority = validate_priority(new_priority)
        old_priority = task.priority
        task.priority = priority
        task.updated_at = self.clock()
        logger.info(f"Updated task {task_id} priority: {old_priority} -> {priority}")
        return task

    # Selection

    def select_next(self) -> Optional[Task]:
        """
        Most urgent pending task, or None if nothing is pending.

        Urgency is the priority value (lowest first unless
        lower_priority_first is off); ties go to the earliest created.
        """
        pending = [t for t in self.index.list_tasks() if t.status == TaskStatus.PENDING]
        if not pending:
            return None
        pending.sort(key=priority_sort_key(self.settings.lower_priority_first))
        return pending[0]

    def dequeue(self) -> Optional[Task]:
        """Select the next pending task and mark it in progress."""
        task = self.select_next()
        if task is None:
            return None
        return self.update_status(task.id, TaskStatus.IN_PROGRESS)

    # Maintenance

    def cleanup_old_tasks(self, max_age_days: int) -> int:
        """
        Remove terminal tasks created more than max_age_days ago.

        The boundary is exclusive: a task whose age equals the threshold
        exactly is kept.

        Args:
            max_age_days: Retention window; zero or negative disables cleanup

        Returns:
            Number of tasks removed
        """
        if max_age_days <= 0:
            return 0

        threshold = timedelta(days=max_age_days)
        current = self.clock()
        expired = [
            task.id for task in self.index.list_tasks()
            if task.is_terminal and current - task.created_at > threshold
        ]
        for task_id in expired:
            self.index.remove(task_id)

        if expired:
            logger.info(f"Cleaned up {len(expired)} tasks older than {max_age_days} days")
        return len(expired)

    # Reporting

    def task_duration(self, task_id: str) -> float:
        """Seconds from creation to finish (or to now while still open)."""
        task = self.get_task(task_id)
        end = task.updated_at if task.is_terminal else self.clock()
        return max(0.0, (end - task.created_at).total_seconds())

    def statistics(self) -> QueueStatistics:
        """Per-status counts, average completion time and a health verdict."""
        counts = self.index.count_by_status()
        total = len(self.index)

        durations = [
            (t.updated_at - t.created_at).total_seconds()
            for t in self.index.list_tasks()
            if t.status == TaskStatus.COMPLETED
        ]
        average = sum(durations) / len(durations) if durations else None

        return QueueStatistics(
            total=total,
            counts=counts,
            average_completion_seconds=average,
            health=self._health(counts, total),
        )

    # Internals

    def _health(self, counts: Dict[str, int], total: int) -> str:
        if total == 0:
            return "healthy"
        problems = counts[TaskStatus.FAILED.value] + counts[TaskStatus.TIMEOUT.value]
        if problems > total * HEALTH_CRITICAL_FAILURE_RATIO:
            return "critical"
        if problems > 0 or counts[TaskStatus.IN_PROGRESS.value] > HEALTH_WARNING_ACTIVE_TASKS:
            return "warning"
        return "healthy"

    def _check_transition(self, task: Task, new_status: TaskStatus) -> None:
        old_status = task.status
        if not is_transition_allowed(old_status, new_status):
            raise InvalidTransitionError(task.id, old_status.value, new_status.value)

        if old_status in RETRYABLE_STATUSES and new_status == TaskStatus.PENDING:
            max_retries = task.max_retries(self.settings.max_retries)
            if task.retry_count >= max_retries:
                raise InvalidTransitionError(
                    task.id, old_status.value, new_status.value,
                    reason=f"retry limit reached ({task.retry_count}/{max_retries})"
                )

    def _apply_transition(self, task: Task, new_status: TaskStatus) -> None:
        old_status = task.status
        if old_status in RETRYABLE_STATUSES and new_status == TaskStatus.PENDING:
            task.retry_count += 1
        task.status = new_status
        task.updated_at = self.clock()
        logger.info(f"Updated task {task.id} status: {old_status.value} -> {new_status.value}")

    def check_capacity(self) -> None:
        """Raise QueueFullError if max_queue_size is reached (0 = unlimited)."""
        limit = self.settings.max_queue_size
        if limit > 0 and len(self.index) >= limit:
            raise QueueFullError(f"Queue is full ({len(self.index)}/{limit} tasks)")

    def _generate_unique_id(self, task_type: TaskType) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            task_id = generate_task_id(task_type)
            if task_id not in self.index:
                return task_id
        raise ValidationError(f"Could not generate a unique task ID for type {task_type.value}")

    @staticmethod
    def _validate_github_number(number: Any) -> int:
        if isinstance(number, bool):
            raise ValidationError(f"Invalid GitHub number: {number!r}")
        try:
            value = int(number)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid GitHub number: {number!r}")
        if value <= 0:
            raise ValidationError(f"GitHub number must be positive: {number}")
        return value
