"""Tests for export and import."""

import csv
import io
import json

import pytest

from resume_queue.config import QueueSettings
from resume_queue.engine import QueueEngine
from resume_queue.errors import ValidationError
from resume_queue.models import QueueIndex, TaskStatus
from resume_queue.transfer import (
    export_csv,
    export_json,
    merge_tasks,
    parse_payload,
    validate_payload,
)


def envelope(*tasks):
    return {"export_metadata": {"version": "1.0"}, "tasks": list(tasks)}


def raw_task(task_id, priority=5, status="pending", **extra):
    data = {"id": task_id, "status": status, "priority": priority}
    data.update(extra)
    return data


class TestExport:
    """Tests for JSON and CSV export."""

    def test_json_envelope(self, engine, settings):
        engine.create_task("custom", 2, task_id="a")
        done = engine.create_task("custom", 5, task_id="b")
        engine.update_status(done.id, "in_progress")
        engine.update_status(done.id, "completed")

        data = json.loads(export_json(engine.index.list_tasks(), settings))

        meta = data["export_metadata"]
        assert meta["version"] == "1.0"
        assert meta["total_tasks"] == 2
        assert meta["task_counts"]["completed"] == 1
        assert meta["task_counts"]["pending"] == 1
        assert meta["source_system"] == "resume-queue"
        assert data["configuration"]["max_retries"] == settings.max_retries
        assert [t["id"] for t in data["tasks"]] == ["a", "b"]

    def test_csv_quotes_embedded_commas(self, engine):
        engine.create_task("custom", 3, task_id="a", metadata={"description": 'Fix "parser", then docs'})

        rows = list(csv.reader(io.StringIO(export_csv(engine.index.list_tasks()).decode("utf-8"))))

        assert rows[0] == ["id", "status", "priority", "type", "created", "description"]
        assert rows[1][0] == "a"
        assert rows[1][2] == "3"
        assert rows[1][4] == "2025-01-31T10:00:00"
        assert rows[1][5] == 'Fix "parser", then docs'

    def test_csv_empty(self):
        assert export_csv([]).decode("utf-8").strip() == "id,status,priority,type,created,description"


class TestParseAndValidate:
    """Tests for payload decoding and validate mode."""

    @pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b"\xff\xfe"])
    def test_parse_rejects_bad_payloads(self, payload):
        with pytest.raises(ValidationError):
            parse_payload(payload)

    def test_validate_reports_missing_fields(self):
        data = envelope(raw_task("a"), {"id": "b", "status": "pending"}, "oops")

        summary = validate_payload(data)

        assert summary.mode == "validate"
        assert summary.total == 3
        assert summary.errors == 2
        assert not summary.valid
        assert any("b: missing priority" in m for m in summary.messages)

    def test_validate_missing_envelope(self):
        summary = validate_payload({"tasks": []})
        assert not summary.valid
        assert "export_metadata" in summary.messages[0]

    def test_validate_clean_payload(self):
        summary = validate_payload(envelope(raw_task("a"), raw_task("b")))
        assert summary.valid
        assert summary.errors == 0


class TestMerge:
    """Tests for merge_tasks."""

    def test_merge_adds_and_updates(self, engine):
        engine.create_task("custom", 5, task_id="a")

        summary = merge_tasks(engine, envelope(raw_task("a", priority=1), raw_task("b")))

        assert summary.imported == 1
        assert summary.updated == 1
        assert summary.valid
        assert engine.index.get("a").priority == 1
        assert list(engine.index.tasks) == ["a", "b"]

    def test_merge_keeps_type_and_creation_time(self, engine):
        original = engine.create_task("custom", 5, task_id="a")

        summary = merge_tasks(engine, envelope(
            raw_task("a", priority=1, type="github_pr", created_at="2020-01-01T00:00:00")
        ))

        updated = engine.index.get("a")
        assert summary.updated == 1
        assert updated.priority == 1
        assert updated.type == original.type
        assert updated.created_at == original.created_at

    def test_merge_counts_bad_tasks_and_continues(self, engine):
        data = envelope(
            raw_task("ok"),
            raw_task("bad-priority", priority=42),
            {"id": "no-status", "priority": 3},
            raw_task("bad-status", status="done"),
        )

        summary = merge_tasks(engine, data)

        assert summary.imported == 1
        assert summary.errors == 3
        assert not summary.valid
        assert list(engine.index.tasks) == ["ok"]

    def test_merge_respects_capacity(self, index, clock):
        engine = QueueEngine(index, QueueSettings(max_queue_size=2), clock=clock)
        engine.create_task("custom", 5, task_id="existing")

        summary = merge_tasks(engine, envelope(raw_task("existing"), raw_task("new-1"), raw_task("new-2")))

        assert summary.updated == 1
        assert summary.imported == 1
        assert summary.errors == 1
        assert "Queue is full" in summary.messages[0]
        assert len(index) == 2

    def test_merge_preserves_status_and_retries(self, engine):
        merge_tasks(engine, envelope(raw_task("a", status="failed", retry_count=2)))
        task = engine.index.get("a")
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 2

    def test_merge_rejects_bad_structure(self, engine):
        with pytest.raises(ValidationError):
            merge_tasks(engine, {"export_metadata": {}, "tasks": "nope"})
        assert len(engine.index) == 0

    def test_merge_into_fresh_index_reproduces_export(self, engine, settings, clock):
        engine.create_task("custom", 2, task_id="a", metadata={"description": "first"})
        engine.create_github_issue_task(7, 3)
        exported = parse_payload(export_json(engine.index.list_tasks(), settings))

        fresh = QueueEngine(QueueIndex(), settings, clock=clock)
        merge_tasks(fresh, exported, mode="replace")

        assert fresh.index.tasks == engine.index.tasks
