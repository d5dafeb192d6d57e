"""Tests for QueueService (store + lock + engine)."""

import json
import threading

import pytest
from unittest.mock import patch

from resume_queue.config import QueueSettings
from resume_queue.errors import (
    InvalidTransitionError,
    LockTimeoutError,
    NotFoundError,
    ValidationError,
)
from resume_queue.locking import FcntlLock, LockManager
from resume_queue.models import TaskStatus
from resume_queue.query import SortKey, TaskFilter
from resume_queue.service import QueueService


def store_bytes(service):
    return service.store.store_file.read_bytes()


class TestMutations:
    """Tests for persisted mutating operations."""

    def test_create_persists(self, service):
        task = service.create("custom", 3, metadata={"description": "Write docs"})

        reloaded = QueueService(service.settings).get_task(task.id)
        assert reloaded == task

    def test_dequeue_lifecycle(self, service):
        task = service.create("custom", 5)

        assert service.select_next().id == task.id
        assert service.get_task(task.id).status == TaskStatus.PENDING

        dequeued = service.dequeue()
        assert dequeued.id == task.id
        assert service.get_task(task.id).status == TaskStatus.IN_PROGRESS
        assert service.dequeue() is None

        service.update_status(task.id, "completed")
        with pytest.raises(InvalidTransitionError):
            service.update_status(task.id, "pending")
        assert service.get_task(task.id).status == TaskStatus.COMPLETED

    def test_failed_operation_does_not_save(self, service):
        service.create("custom", 5, task_id="a")
        before = store_bytes(service)

        with pytest.raises(NotFoundError):
            service.remove("missing")
        with pytest.raises(ValidationError):
            service.update_priority("a", 99)

        assert store_bytes(service) == before

    def test_noop_operation_does_not_save(self, service):
        service.create("custom", 5, task_id="a")
        service.dequeue()

        with patch.object(service.store, "save") as save:
            assert service.dequeue() is None
            assert service.cleanup()["tasks_removed"] == 0
        save.assert_not_called()

    def test_retry_and_record_error(self, service):
        task = service.create("custom", 5)
        service.dequeue()
        service.record_error(task.id, "rate limited", code=3)

        failed = service.get_task(task.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.metadata["last_error"] == "rate limited"
        assert service.can_retry(task.id)

        retried = service.retry(task.id)
        assert retried.status == TaskStatus.PENDING
        assert retried.retry_count == 1

    def test_github_tasks(self, service):
        service.create_github_issue(12, 2, title="Crash on start")
        service.create_github_pr(13)

        ids = [t.id for t in service.list_tasks()]
        assert ids == ["issue-12", "pr-13"]

    def test_clear_takes_backup(self, service):
        service.create("custom", 5)
        service.create("custom", 5)
        before = set(service.list_backups())

        assert service.clear() == 2
        assert service.list_tasks() == []
        added = [p.name for p in service.list_backups() if p not in before]
        assert len(added) == 1
        assert added[0].startswith("backup-pre-clear-")

    def test_list_tasks_filters(self, service):
        for priority in (1, 2, 3, 4, 5):
            service.create("custom", priority, task_id=f"t{priority}")

        result = service.list_tasks(TaskFilter(priority_min=1, priority_max=3), SortKey.PRIORITY, limit=2)
        assert [t.id for t in result] == ["t1", "t2"]

    def test_statistics(self, service, clock):
        task = service.create("custom", 5)
        service.dequeue()
        clock.advance(minutes=2)
        service.update_status(task.id, "completed")

        stats = service.statistics()
        assert stats.total == 1
        assert stats.average_completion_seconds == 120.0
        assert service.task_duration(task.id) == 120.0


class TestLocking:
    """Tests for lock usage around mutations."""

    def test_mutation_times_out_when_lock_held(self, queue_dir, clock):
        service = QueueService(QueueSettings(queue_dir=str(queue_dir), lock_timeout=0.2), clock=clock)
        service.create("custom", 5, task_id="a")
        before = store_bytes(service)

        holder = LockManager(FcntlLock(queue_dir / ".queue.lock"))
        handle = holder.acquire()
        try:
            with pytest.raises(LockTimeoutError):
                service.create("custom", 5, task_id="b")
            # Reads do not need the lock
            assert [t.id for t in service.list_tasks()] == ["a"]
        finally:
            holder.release(handle)

        assert store_bytes(service) == before

    def test_mutations_run_under_lock(self, service):
        with patch.object(service.lock, "locked", wraps=service.lock.locked) as locked:
            service.create("custom", 5)
            service.dequeue()
        assert [c.kwargs["operation"] for c in locked.call_args_list] == ["add", "dequeue"]

    @pytest.mark.parametrize("backend", ["auto", "directory"])
    def test_concurrent_creates_are_not_lost(self, queue_dir, backend):
        settings = QueueSettings(
            queue_dir=str(queue_dir),
            lock_timeout=30.0,
            lock_backend=backend,
            backup_on_save=False,
        )
        errors = []

        def worker():
            service = QueueService(settings)
            try:
                for _ in range(5):
                    service.create("custom", 5)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(QueueService(settings).list_tasks()) == 20

    def test_lock_admin(self, service, queue_dir):
        (queue_dir / ".queue.lock").write_text(json.dumps({"pid": 99999999}))

        assert service.lock_status().alive is False
        assert service.cleanup_locks() is True
        assert service.lock_status() is None
        assert service.force_unlock() is False


class TestImportExport:
    """Tests for export/import through the service."""

    def test_export_then_replace_restores_queue(self, service, clock):
        service.create("custom", 2, task_id="a", metadata={"description": "first"})
        service.create_github_issue(7, 4)
        service.dequeue()
        original = [t.model_dump() for t in service.list_tasks(sort=SortKey.CREATED)]
        payload = service.export("json")

        clock.advance(hours=1)
        service.create("custom", 1, task_id="extra")
        service.remove("issue-7")
        backups_before = set(service.list_backups())

        summary = service.import_data(payload, mode="replace")

        assert summary.valid
        assert summary.imported == 2
        assert summary.backup_path is not None
        added = [str(p) for p in service.list_backups() if p not in backups_before]
        assert added == [summary.backup_path]
        assert [t.model_dump() for t in service.list_tasks(sort=SortKey.CREATED)] == original

    def test_malformed_import_touches_nothing(self, service):
        service.create("custom", 5, task_id="a")
        before = store_bytes(service)
        backups_before = service.list_backups()

        for payload in (b"{broken", b'{"tasks": []}', b'{"export_metadata": {}, "tasks": {}}'):
            with pytest.raises(ValidationError):
                service.import_data(payload, mode="replace")

        assert store_bytes(service) == before
        assert service.list_backups() == backups_before

    def test_validate_mode_does_not_write(self, service):
        service.create("custom", 5, task_id="a")
        before = store_bytes(service)

        payload = json.dumps({"export_metadata": {}, "tasks": [{"id": "b", "status": "pending"}]}).encode()
        summary = service.import_data(payload, mode="validate")

        assert not summary.valid
        assert store_bytes(service) == before

    def test_merge_mode(self, service):
        service.create("custom", 5, task_id="a")
        payload = json.dumps({
            "export_metadata": {},
            "tasks": [{"id": "a", "status": "pending", "priority": 1}, {"id": "b", "status": "pending", "priority": 2}],
        }).encode()

        summary = service.import_data(payload)

        assert (summary.imported, summary.updated) == (1, 1)
        assert service.get_task("a").priority == 1

    def test_unknown_modes_and_formats(self, service):
        with pytest.raises(ValidationError):
            service.import_data(b"{}", mode="overwrite")
        with pytest.raises(ValidationError):
            service.export("xml")

    def test_filtered_csv_export(self, service):
        service.create("custom", 1, task_id="urgent")
        service.create("custom", 9, task_id="later")

        output = service.export("csv", TaskFilter(priority_max=3)).decode("utf-8")
        lines = output.strip().splitlines()
        assert len(lines) == 2
        assert lines[1].startswith("urgent,")


class TestBatch:
    """Tests for batch add/remove."""

    def test_batch_add_formats(self, service):
        lines = [
            "# issues to pick up",
            "101",
            "",
            "102,Login fails on Safari",
            "custom,3,Refactor the parser",
            "Update the changelog",
        ]

        result = service.batch_add(lines, priority=4)

        assert result.ok
        assert result.lines == 4
        assert result.succeeded[:2] == ["issue-101", "issue-102"]
        assert service.get_task("issue-102").description == "#102: Login fails on Safari"
        custom = service.get_task(result.succeeded[2])
        assert custom.priority == 3
        assert custom.description == "Refactor the parser"
        plain = service.get_task(result.succeeded[3])
        assert plain.priority == 4
        assert plain.description == "Update the changelog"

    def test_batch_add_reports_failures_and_continues(self, service):
        result = service.batch_add(["101", "101", "feature,3,Nope", "102"])

        assert not result.ok
        assert result.succeeded == ["issue-101", "issue-102"]
        assert len(result.failures) == 2
        assert result.failures[0].startswith("Line 2 (101):")
        assert len(service.list_tasks()) == 2

    def test_batch_remove(self, service):
        service.create("custom", 5, task_id="a")
        service.create("custom", 5, task_id="b")

        result = service.batch_remove(["a", "# comment", " ", "missing", "b\n"])

        assert result.succeeded == ["a", "b"]
        assert result.failures == ["missing: Task not found: missing"]
        assert service.list_tasks() == []


class TestMaintenance:
    """Tests for cleanup, backup and restore."""

    def test_cleanup(self, service, clock):
        old = service.create("custom", 5)
        service.dequeue()
        service.update_status(old.id, "completed")
        keep = service.create("custom", 5)

        clock.advance(days=8)
        result = service.cleanup()

        assert result["tasks_removed"] == 1
        assert [t.id for t in service.list_tasks()] == [keep.id]

    def test_cleanup_explicit_age(self, service, clock):
        task = service.create("custom", 5)
        service.dequeue()
        service.update_status(task.id, "completed")
        clock.advance(days=2)

        assert service.cleanup(max_age_days=30)["tasks_removed"] == 0
        assert service.cleanup(max_age_days=1)["tasks_removed"] == 1

    def test_restore_latest(self, service):
        """Without a path, the newest snapshot (taken before adding c) is used."""
        service.create("custom", 5, task_id="a")
        service.create("custom", 5, task_id="b")
        service.create("custom", 5, task_id="c")

        restored = service.restore()

        assert list(restored.tasks) == ["a", "b"]
        assert [t.id for t in service.list_tasks()] == ["a", "b"]

    def test_restore_specific_backup(self, service):
        service.create("custom", 5, task_id="a")
        snapshot = service.backup("manual")
        service.create("custom", 5, task_id="b")

        service.restore(snapshot)
        assert [t.id for t in service.list_tasks()] == ["a"]

    def test_restore_without_backups(self, service):
        with pytest.raises(ValidationError, match="No backups"):
            service.restore()
