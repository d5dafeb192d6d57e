"""
Query and presentation layer.

Composable filters, sort keys, limits and renderers over task lists.
Nothing here mutates state; callers pass in tasks from a loaded index.
"""

import json
from enum import Enum
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from resume_queue.config import QueueSettings
from resume_queue.engine import priority_sort_key
from resume_queue.errors import ValidationError
from resume_queue.models import (
    QueueStatistics,
    Task,
    TaskStatus,
    TaskType,
    parse_task_status,
    to_local_naive,
    validate_priority,
)


STATUS_ICONS = {
    TaskStatus.PENDING: "⏳",
    TaskStatus.IN_PROGRESS: "🔄",
    TaskStatus.COMPLETED: "✅",
    TaskStatus.FAILED: "❌",
    TaskStatus.TIMEOUT: "⏰",
}

# Sort rank for SortKey.STATUS (active work first, finished work last)
STATUS_RANK = {
    TaskStatus.IN_PROGRESS: 0,
    TaskStatus.PENDING: 1,
    TaskStatus.FAILED: 2,
    TaskStatus.TIMEOUT: 2,
    TaskStatus.COMPLETED: 3,
}

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class SortKey(str, Enum):
    """Result ordering."""
    PRIORITY = "priority"   # most urgent first, FIFO on ties
    CREATED = "created"     # newest first
    STATUS = "status"       # in_progress, pending, failed/timeout, completed


class TaskFilter(BaseModel):
    """
    Predicate over tasks. Unset fields match everything.

    created_after / created_before are exclusive bounds.
    """

    statuses: Optional[Set[TaskStatus]] = None
    priority_min: Optional[int] = None
    priority_max: Optional[int] = None
    task_type: Optional[TaskType] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    text: Optional[str] = Field(default=None, description="Case-insensitive substring over metadata")

    def matches(self, task: Task) -> bool:
        if self.statuses and task.status not in self.statuses:
            return False
        if self.priority_min is not None and task.priority < self.priority_min:
            return False
        if self.priority_max is not None and task.priority > self.priority_max:
            return False
        if self.task_type is not None and task.type != self.task_type:
            return False
        if self.created_after is not None and not task.created_at > to_local_naive(self.created_after):
            return False
        if self.created_before is not None and not task.created_at < to_local_naive(self.created_before):
            return False
        if self.text:
            needle = self.text.lower()
            if not any(needle in value.lower() for value in _flatten_values(task.metadata)):
                return False
        return True


def _flatten_values(value: Any) -> Iterable[str]:
    if isinstance(value, dict):
        for item in value.values():
            yield from _flatten_values(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            yield from _flatten_values(item)
    elif value is not None:
        yield str(value)


def parse_priority_range(value: str) -> Tuple[int, int]:
    """
    Parse "3" or "1-3" into an inclusive (min, max) pair.

    Raises:
        ValidationError: Malformed range or priority outside [1, 10]
    """
    text = str(value).strip()
    if "-" in text:
        low_text, _, high_text = text.partition("-")
        low = validate_priority(low_text.strip())
        high = validate_priority(high_text.strip())
        if low > high:
            raise ValidationError(f"Invalid priority range (min > max): {value}")
        return low, high
    priority = validate_priority(text)
    return priority, priority


def parse_status_set(value: str) -> Set[TaskStatus]:
    """Parse "pending" or "failed,timeout" into a set of statuses."""
    parts = [part.strip() for part in str(value).split(",") if part.strip()]
    if not parts:
        raise ValidationError("Status filter cannot be empty")
    return {parse_task_status(part) for part in parts}


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime for creation-time filters."""
    try:
        return to_local_naive(datetime.fromisoformat(str(value).strip()))
    except ValueError:
        raise ValidationError(f"Invalid timestamp (expected ISO-8601): {value}")


def sort_tasks(
    tasks: Iterable[Task],
    sort: SortKey = SortKey.PRIORITY,
    lower_priority_first: bool = True
) -> List[Task]:
    """Sort tasks by the given key (stable)."""
    sort = SortKey(sort)
    by_priority = priority_sort_key(lower_priority_first)

    if sort == SortKey.CREATED:
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)
    if sort == SortKey.STATUS:
        return sorted(tasks, key=lambda t: (STATUS_RANK[t.status], by_priority(t)))
    return sorted(tasks, key=by_priority)


def query_tasks(
    tasks: Iterable[Task],
    task_filter: Optional[TaskFilter] = None,
    sort: SortKey = SortKey.PRIORITY,
    limit: Optional[int] = None,
    lower_priority_first: bool = True
) -> List[Task]:
    """
    Filter, sort, then truncate.

    Args:
        tasks: Candidate tasks
        task_filter: Predicate (None matches all)
        sort: Sort key
        limit: Maximum results after filtering and sorting (None = all)
        lower_priority_first: Priority direction for priority ordering

    Returns:
        Ordered list of matching tasks
    """
    if limit is not None and limit < 0:
        raise ValidationError(f"Limit cannot be negative: {limit}")

    if task_filter is not None:
        tasks = [t for t in tasks if task_filter.matches(t)]

    result = sort_tasks(tasks, sort, lower_priority_first)
    if limit is not None:
        result = result[:limit]
    return result


# Rendering

def task_summary(task: Task) -> Dict[str, Any]:
    """Flat per-task record used by the text and table renderers."""
    return {
        "id": task.id,
        "status": task.status.value,
        "priority": task.priority,
        "type": task.type.value,
        "created": task.created_at.strftime(TIMESTAMP_FORMAT),
        "description": task.description,
    }


def render_json(tasks: List[Task]) -> Dict[str, Any]:
    """Structured output: {"count": n, "tasks": [...]}."""
    return {
        "count": len(tasks),
        "tasks": [task.model_dump(mode="json") for task in tasks],
    }


def render_text(tasks: List[Task]) -> str:
    """One line per task: icon, id, status, priority, created, description."""
    if not tasks:
        return "📭 No tasks found"

    lines = []
    for task in tasks:
        row = task_summary(task)
        icon = STATUS_ICONS[task.status]
        line = f"{icon} {row['id']}  [{row['status']}]  P{row['priority']}  {row['created']}"
        if row["description"]:
            line += f"  {row['description']}"
        lines.append(line)
    return "\n".join(lines)


def render_table(tasks: List[Task]) -> str:
    """Fixed-width table with a header row."""
    columns = ["id", "status", "priority", "type", "created", "description"]
    rows = [{k: str(v) for k, v in task_summary(t).items()} for t in tasks]

    widths = {c: len(c) for c in columns}
    for row in rows:
        for c in columns[:-1]:
            widths[c] = max(widths[c], len(row[c]))

    def fmt(values: Dict[str, str]) -> str:
        head = "  ".join(values[c].ljust(widths[c]) for c in columns[:-1])
        return f"{head}  {values['description']}".rstrip()

    lines = [fmt({c: c.upper() for c in columns})]
    lines.append("  ".join("-" * widths[c] for c in columns))
    lines.extend(fmt(row) for row in rows)
    lines.append(f"({len(rows)} tasks)")
    return "\n".join(lines)


def render_status(stats: QueueStatistics, settings: QueueSettings, fmt: str = "text") -> str:
    """
    Queue status summary.

    Args:
        stats: Statistics from QueueEngine.statistics()
        settings: Effective settings (for queue location and limits)
        fmt: "text", "compact" or "json"

    Returns:
        Rendered status
    """
    counts = {status.value: stats.counts.get(status.value, 0) for status in TaskStatus}

    if fmt == "json":
        return json.dumps({
            "total": stats.total,
            "counts": counts,
            "average_completion_seconds": stats.average_completion_seconds,
            "health": stats.health,
            "queue_dir": str(settings.queue_path),
            "max_queue_size": settings.max_queue_size,
        }, indent=2)

    if fmt == "compact":
        parts = [f"total={stats.total}"]
        parts.extend(f"{name}={count}" for name, count in counts.items())
        parts.append(f"health={stats.health}")
        return " ".join(parts)

    if fmt != "text":
        raise ValidationError(f"Unknown status format: {fmt} (expected text, compact or json)")

    health_icon = {"healthy": "✅", "warning": "⚠️ ", "critical": "❌"}.get(stats.health, "❓")
    capacity = f"{stats.total}/{settings.max_queue_size}" if settings.max_queue_size else f"{stats.total}"
    lines = [
        "=" * 60,
        "📊 Task Queue Status",
        "=" * 60,
        f"Queue: {settings.queue_path}",
        f"Tasks: {capacity}",
        "",
    ]
    for status in TaskStatus:
        label = status.value.replace("_", " ").title()
        lines.append(f"   {STATUS_ICONS[status]} {label + ':':<13}{counts[status.value]}")
    if stats.average_completion_seconds is not None:
        lines.append("")
        lines.append(f"Average completion: {stats.average_completion_seconds:.1f}s")
    lines.append("")
    lines.append(f"Health: {health_icon} {stats.health}")
    return "\n".join(lines)
