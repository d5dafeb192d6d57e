"""Tests for filtering, sorting and rendering."""

import json
from datetime import datetime, timedelta

import pytest

from resume_queue.config import QueueSettings
from resume_queue.errors import ValidationError
from resume_queue.models import QueueStatistics, Task, TaskStatus, TaskType
from resume_queue.query import (
    SortKey,
    TaskFilter,
    parse_priority_range,
    parse_status_set,
    parse_timestamp,
    query_tasks,
    render_json,
    render_status,
    render_table,
    render_text,
    sort_tasks,
)


BASE_TIME = datetime(2025, 1, 31, 10, 0, 0)


def make_task(task_id, priority=5, status=TaskStatus.PENDING, minutes=0, **metadata):
    created = BASE_TIME + timedelta(minutes=minutes)
    return Task(
        id=task_id,
        priority=priority,
        status=status,
        metadata=metadata,
        created_at=created,
        updated_at=created,
    )


@pytest.fixture
def five_tasks():
    """Tasks with priorities 1..5, created a minute apart."""
    return [make_task(f"t{p}", priority=p, minutes=p) for p in range(1, 6)]


class TestParsers:
    """Tests for CLI-facing filter parsers."""

    def test_priority_range(self):
        assert parse_priority_range("1-3") == (1, 3)
        assert parse_priority_range("7") == (7, 7)
        assert parse_priority_range(" 2 - 4 ") == (2, 4)

    @pytest.mark.parametrize("value", ["3-1", "0-2", "1-11", "a-b", "high"])
    def test_invalid_priority_range(self, value):
        with pytest.raises(ValidationError):
            parse_priority_range(value)

    def test_status_set(self):
        assert parse_status_set("failed, timeout") == {TaskStatus.FAILED, TaskStatus.TIMEOUT}

    def test_invalid_status_set(self):
        with pytest.raises(ValidationError):
            parse_status_set("done")
        with pytest.raises(ValidationError):
            parse_status_set(" , ")

    def test_timestamp(self):
        assert parse_timestamp("2025-01-31") == datetime(2025, 1, 31)
        assert parse_timestamp("2025-01-31T10:30:00") == datetime(2025, 1, 31, 10, 30)

    def test_invalid_timestamp(self):
        with pytest.raises(ValidationError, match="ISO-8601"):
            parse_timestamp("yesterday")


class TestTaskFilter:
    """Tests for TaskFilter.matches."""

    def test_priority_range_filter(self, five_tasks):
        """priority=1-3 over priorities 1..5 returns exactly the first three."""
        low, high = parse_priority_range("1-3")
        result = query_tasks(five_tasks, TaskFilter(priority_min=low, priority_max=high))
        assert [t.priority for t in result] == [1, 2, 3]

    def test_empty_filter_matches_all(self, five_tasks):
        assert all(TaskFilter().matches(t) for t in five_tasks)

    def test_status_filter(self):
        tasks = [
            make_task("a", status=TaskStatus.FAILED),
            make_task("b", status=TaskStatus.PENDING),
            make_task("c", status=TaskStatus.TIMEOUT),
        ]
        task_filter = TaskFilter(statuses={TaskStatus.FAILED, TaskStatus.TIMEOUT})
        assert {t.id for t in query_tasks(tasks, task_filter)} == {"a", "c"}

    def test_type_filter(self):
        issue = Task(id="issue-1", type=TaskType.GITHUB_ISSUE)
        custom = Task(id="custom-1")
        result = query_tasks([issue, custom], TaskFilter(task_type=TaskType.GITHUB_ISSUE))
        assert [t.id for t in result] == ["issue-1"]

    def test_created_bounds_are_exclusive(self, five_tasks):
        task_filter = TaskFilter(
            created_after=BASE_TIME + timedelta(minutes=1),
            created_before=BASE_TIME + timedelta(minutes=4),
        )
        assert [t.id for t in query_tasks(five_tasks, task_filter)] == ["t2", "t3"]

    def test_text_search_is_case_insensitive(self):
        tasks = [
            make_task("a", description="Fix the LOGIN page"),
            make_task("b", description="Write docs"),
            make_task("c", labels=["login", "ui"]),
        ]
        result = query_tasks(tasks, TaskFilter(text="login"))
        assert {t.id for t in result} == {"a", "c"}


class TestSorting:
    """Tests for sort keys and limits."""

    def test_priority_sort_with_fifo_ties(self):
        tasks = [
            make_task("late-urgent", priority=1, minutes=5),
            make_task("normal", priority=5, minutes=0),
            make_task("early-urgent", priority=1, minutes=1),
        ]
        assert [t.id for t in sort_tasks(tasks)] == ["early-urgent", "late-urgent", "normal"]

    def test_created_sort_newest_first(self, five_tasks):
        assert [t.id for t in sort_tasks(five_tasks, SortKey.CREATED)] == ["t5", "t4", "t3", "t2", "t1"]

    def test_status_sort(self):
        tasks = [
            make_task("done", priority=1, status=TaskStatus.COMPLETED),
            make_task("waiting", priority=2),
            make_task("running", priority=9, status=TaskStatus.IN_PROGRESS),
            make_task("broken", priority=3, status=TaskStatus.FAILED),
        ]
        assert [t.id for t in sort_tasks(tasks, "status")] == ["running", "waiting", "broken", "done"]

    def test_higher_priority_first(self, five_tasks):
        result = sort_tasks(five_tasks, SortKey.PRIORITY, lower_priority_first=False)
        assert [t.priority for t in result] == [5, 4, 3, 2, 1]

    def test_limit_applies_after_sorting(self, five_tasks):
        result = query_tasks(list(reversed(five_tasks)), limit=2)
        assert [t.id for t in result] == ["t1", "t2"]

    def test_zero_limit(self, five_tasks):
        assert query_tasks(five_tasks, limit=0) == []

    def test_negative_limit_rejected(self, five_tasks):
        with pytest.raises(ValidationError):
            query_tasks(five_tasks, limit=-1)

    def test_unknown_sort_key(self, five_tasks):
        with pytest.raises(ValueError):
            sort_tasks(five_tasks, "alphabetical")


class TestRendering:
    """Tests for text, table, json and status renderers."""

    def test_render_text_empty(self):
        assert render_text([]) == "📭 No tasks found"

    def test_render_text_rows(self):
        task = make_task("custom-1", priority=2, description="Write docs")
        output = render_text([task])
        assert output.startswith("⏳ custom-1")
        assert "[pending]" in output
        assert "P2" in output
        assert "2025-01-31 10:00:00" in output
        assert output.endswith("Write docs")

    def test_render_table(self, five_tasks):
        lines = render_table(five_tasks).splitlines()
        assert lines[0].startswith("ID")
        assert "STATUS" in lines[0] and "DESCRIPTION" in lines[0]
        assert set(lines[1].replace(" ", "")) == {"-"}
        assert lines[2].startswith("t1")
        assert lines[-1] == "(5 tasks)"

    def test_render_json(self, five_tasks):
        payload = render_json(five_tasks[:2])
        assert payload["count"] == 2
        assert [t["id"] for t in payload["tasks"]] == ["t1", "t2"]
        assert payload["tasks"][0]["created_at"] == "2025-01-31T10:01:00"
        json.dumps(payload)

    def test_render_status_formats(self, tmp_path):
        stats = QueueStatistics(
            total=3,
            counts={"pending": 2, "in_progress": 0, "completed": 1, "failed": 0, "timeout": 0},
            average_completion_seconds=90.0,
            health="healthy",
        )
        settings = QueueSettings(queue_dir=str(tmp_path), max_queue_size=10)

        text = render_status(stats, settings)
        assert "Tasks: 3/10" in text
        assert "Average completion: 90.0s" in text
        assert "Health: ✅ healthy" in text

        compact = render_status(stats, settings, "compact")
        assert compact == "total=3 pending=2 in_progress=0 completed=1 failed=0 timeout=0 health=healthy"

        data = json.loads(render_status(stats, settings, "json"))
        assert data["counts"]["pending"] == 2
        assert data["max_queue_size"] == 10

    def test_render_status_unknown_format(self, tmp_path):
        with pytest.raises(ValidationError):
            render_status(QueueStatistics(), QueueSettings(queue_dir=str(tmp_path)), "xml")
