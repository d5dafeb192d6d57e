"""
Command interface to the queue.

QueueService is what the CLI, the monitor and external drivers call.
Every mutating operation runs as lock -> load -> engine op -> save, so
mutators are linearized across processes. Read-only operations load the
store without the lock; atomic replace guarantees they see a whole file.
"""

import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from resume_queue.config import QueueSettings
from resume_queue.engine import QueueEngine
from resume_queue.errors import QueueError, ValidationError
from resume_queue.locking import LockManager, create_lock_backend
from resume_queue.models import (
    DEFAULT_PRIORITY,
    BatchResult,
    ImportSummary,
    LockInfo,
    QueueIndex,
    QueueStatistics,
    Task,
    TaskType,
    now,
)
from resume_queue.query import SortKey, TaskFilter, query_tasks
from resume_queue.store import QueueStore
from resume_queue import transfer


logger = logging.getLogger(__name__)

T = TypeVar("T")

ISSUE_LINE = re.compile(r"^(\d+)$")
ISSUE_WITH_TITLE_LINE = re.compile(r"^(\d+),(.+)$")
FULL_LINE = re.compile(r"^([^,]+),(\d+),(.+)$")


class QueueService:
    """
    Queue operations backed by the persistent store and lock manager.

    Example:
        service = QueueService(settings)
        task = service.create("custom", 5, metadata={"description": "Fix tests"})
        next_task = service.dequeue()
        service.update_status(next_task.id, "completed")
    """

    def __init__(
        self,
        settings: Optional[QueueSettings] = None,
        clock: Callable = now,
        store: Optional[QueueStore] = None,
        lock_manager: Optional[LockManager] = None
    ):
        """
        Initialize service.

        Args:
            settings: Effective queue settings (defaults if None)
            clock: Time source passed to the engine
            store: Store override (built from settings if None)
            lock_manager: Lock override (built from settings if None)
        """
        self.settings = settings or QueueSettings()
        self.clock = clock
        queue_dir = self.settings.queue_path

        self.store = store or QueueStore(
            queue_dir,
            backup_on_save=self.settings.backup_on_save,
            backup_retention_days=self.settings.backup_retention_days,
        )
        if lock_manager is None:
            backend = create_lock_backend(
                queue_dir,
                backend=self.settings.lock_backend,
                stale_after=self.settings.lock_stale_after,
            )
            lock_manager = LockManager(backend, default_timeout=self.settings.lock_timeout)
        self.lock = lock_manager

    # Plumbing

    def _engine(self, index: QueueIndex) -> QueueEngine:
        return QueueEngine(index, self.settings, clock=self.clock)

    def _mutate(self, operation: str, fn: Callable[[QueueEngine], T], save_backup: bool = True) -> T:
        """
        Run fn against a freshly loaded index under the lock; save if it changed.

        Operations that snapshot the store themselves pass save_backup=False
        so the save does not copy the same file again.
        """
        with self.lock.locked(operation=operation):
            index = self.store.load()
            before = index.model_dump()
            result = fn(self._engine(index))
            if index.model_dump() != before:
                self.store.save(index, backup=save_backup)
            else:
                logger.debug(f"{operation}: no changes to save")
            return result

    def _read(self) -> QueueEngine:
        return self._engine(self.store.read_only_load())

    # Creation and removal

    def create(
        self,
        task_type: Any = TaskType.CUSTOM,
        priority: Any = DEFAULT_PRIORITY,
        task_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Task:
        """Create a pending task. See QueueEngine.create_task."""
        return self._mutate("add", lambda e: e.create_task(task_type, priority, task_id, metadata))

    def create_github_issue(
        self,
        number: Any,
        priority: Any = DEFAULT_PRIORITY,
        title: Optional[str] = None,
        labels: Optional[List[str]] = None
    ) -> Task:
        return self._mutate(
            "github_issue",
            lambda e: e.create_github_issue_task(number, priority, title, labels)
        )

    def create_github_pr(self, number: Any, priority: Any = DEFAULT_PRIORITY, title: Optional[str] = None) -> Task:
        return self._mutate("github_pr", lambda e: e.create_github_pr_task(number, priority, title))

    def remove(self, task_id: str) -> Task:
        return self._mutate("remove", lambda e: e.remove_task(task_id))

    def clear(self) -> int:
        """Remove every task (snapshotted first as a pre-clear backup)."""
        def op(engine: QueueEngine) -> int:
            self.store.backup("pre-clear")
            return engine.clear()
        return self._mutate("clear", op, save_backup=False)

    # Transitions

    def update_status(self, task_id: str, status: Any) -> Task:
        return self._mutate("update_status", lambda e: e.update_status(task_id, status))

    def update_priority(self, task_id: str, priority: Any) -> Task:
        return self._mutate("update_priority", lambda e: e.update_priority(task_id, priority))

    def dequeue(self) -> Optional[Task]:
        """Select the most urgent pending task and mark it in progress."""
        return self._mutate("dequeue", lambda e: e.dequeue())

    def retry(self, task_id: str) -> Task:
        return self._mutate("retry", lambda e: e.retry_task(task_id))

    def record_error(self, task_id: str, message: str, code: int = 1) -> Task:
        return self._mutate("record_error", lambda e: e.record_error(task_id, message, code))

    # Reads (lock-free)

    def select_next(self) -> Optional[Task]:
        """Most urgent pending task without changing it."""
        return self._read().select_next()

    def get_task(self, task_id: str) -> Task:
        return self._read().get_task(task_id)

    def can_retry(self, task_id: str) -> bool:
        return self._read().can_retry(task_id)

    def list_tasks(
        self,
        task_filter: Optional[TaskFilter] = None,
        sort: SortKey = SortKey.PRIORITY,
        limit: Optional[int] = None
    ) -> List[Task]:
        """Filtered, sorted and truncated task list."""
        index = self.store.read_only_load()
        return query_tasks(
            index.list_tasks(),
            task_filter=task_filter,
            sort=sort,
            limit=limit,
            lower_priority_first=self.settings.lower_priority_first,
        )

    def statistics(self) -> QueueStatistics:
        return self._read().statistics()

    def task_duration(self, task_id: str) -> float:
        return self._read().task_duration(task_id)

    # Export/import

    def export(self, fmt: str = "json", task_filter: Optional[TaskFilter] = None) -> bytes:
        """
        Serialize the queue.

        Args:
            fmt: "json" (importable envelope) or "csv" (flat table)
            task_filter: Optional predicate; tasks keep store order

        Returns:
            Serialized bytes
        """
        index = self.store.read_only_load()
        tasks = index.list_tasks()
        if task_filter is not None:
            tasks = [t for t in tasks if task_filter.matches(t)]

        if fmt == "json":
            return transfer.export_json(tasks, self.settings)
        if fmt == "csv":
            return transfer.export_csv(tasks)
        raise ValidationError(f"Unknown export format: {fmt} (expected json or csv)")

    def import_data(self, payload: bytes, mode: str = "merge") -> ImportSummary:
        """
        Import an exported payload.

        Args:
            payload: JSON export bytes
            mode: "validate" (no changes), "merge" (upsert) or
                "replace" (backup, clear, then merge)

        Returns:
            ImportSummary with counts

        Raises:
            ValidationError: Malformed JSON or envelope (nothing is touched)
        """
        if mode not in transfer.IMPORT_MODES:
            raise ValidationError(f"Unknown import mode: {mode} (expected validate, merge or replace)")

        data = transfer.parse_payload(payload)

        if mode == "validate":
            return transfer.validate_payload(data)

        transfer.check_structure(data)

        if mode == "merge":
            return self._mutate("import", lambda e: transfer.merge_tasks(e, data, "merge"))

        def replace(engine: QueueEngine) -> ImportSummary:
            backup_path = self.store.backup("pre-replace")
            engine.clear()
            summary = transfer.merge_tasks(engine, data, "replace")
            if backup_path is not None:
                summary.backup_path = str(backup_path)
            return summary

        return self._mutate("import", replace, save_backup=False)

    # Maintenance

    def cleanup(self, max_age_days: Optional[int] = None) -> Dict[str, int]:
        """
        Remove old terminal tasks and expired backups.

        Args:
            max_age_days: Task retention (auto_cleanup_days if None)

        Returns:
            {"tasks_removed": n, "backups_removed": m}
        """
        days = self.settings.auto_cleanup_days if max_age_days is None else max_age_days
        removed = self._mutate("cleanup", lambda e: e.cleanup_old_tasks(days))
        backups_removed = self.store.cleanup_old_backups(self.settings.backup_retention_days)
        return {"tasks_removed": removed, "backups_removed": backups_removed}

    def backup(self, reason: str = "manual") -> Optional[Path]:
        return self.store.backup(reason)

    def list_backups(self) -> List[Path]:
        return self.store.list_backups()

    def restore(self, backup_path: Optional[Path] = None) -> QueueIndex:
        """
        Restore from a backup (latest if none given).

        Raises:
            ValidationError: No backup available or file missing
            CorruptStoreError: Backup is not a valid queue document
        """
        with self.lock.locked(operation="restore"):
            if backup_path is None:
                backup_path = self.store.latest_backup()
                if backup_path is None:
                    raise ValidationError("No backups available to restore")
            return self.store.restore(backup_path)

    # Batch operations

    def batch_add(
        self,
        lines: Iterable[str],
        task_type: Any = TaskType.CUSTOM,
        priority: Any = DEFAULT_PRIORITY
    ) -> BatchResult:
        """
        Add one task per input line, under a single lock and save.

        Line formats:
            123                         GitHub issue #123
            123,Fix login bug           GitHub issue with title
            custom,3,Refactor parser    type,priority,description
            Anything else               description with the default type/priority

        Blank lines and # comments are skipped. A failing line is
        reported and does not stop the batch.
        """
        def op(engine: QueueEngine) -> BatchResult:
            result = BatchResult(operation="add")
            for raw in lines:
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                result.lines += 1
                try:
                    task = self._add_batch_line(engine, line, task_type, priority)
                except QueueError as e:
                    result.failures.append(f"Line {result.lines} ({line}): {e.message}")
                    continue
                result.succeeded.append(task.id)
            return result

        return self._mutate("batch_add", op)

    def batch_remove(self, task_ids: Iterable[str]) -> BatchResult:
        """Remove one task per input line (blank lines and # comments skipped)."""
        def op(engine: QueueEngine) -> BatchResult:
            result = BatchResult(operation="remove")
            for raw in task_ids:
                task_id = "".join(raw.split())
                if not task_id or task_id.startswith("#"):
                    continue
                result.lines += 1
                try:
                    engine.remove_task(task_id)
                except QueueError as e:
                    result.failures.append(f"{task_id}: {e.message}")
                    continue
                result.succeeded.append(task_id)
            return result

        return self._mutate("batch_remove", op)

    @staticmethod
    def _add_batch_line(engine: QueueEngine, line: str, task_type: Any, priority: Any) -> Task:
        match = ISSUE_LINE.match(line)
        if match:
            return engine.create_github_issue_task(match.group(1), priority)

        match = ISSUE_WITH_TITLE_LINE.match(line)
        if match:
            return engine.create_github_issue_task(match.group(1), priority, title=match.group(2).strip())

        match = FULL_LINE.match(line)
        if match:
            return engine.create_task(
                match.group(1).strip(),
                match.group(2),
                metadata={"description": match.group(3).strip()},
            )

        return engine.create_task(task_type, priority, metadata={"description": line})

    # Lock administration

    def lock_status(self) -> Optional[LockInfo]:
        return self.lock.status()

    def cleanup_locks(self) -> bool:
        return self.lock.cleanup_stale()

    def force_unlock(self) -> bool:
        return self.lock.force_unlock()

    def lock_health(self) -> Tuple[int, List[str]]:
        return self.lock.health()
