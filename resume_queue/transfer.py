"""
Export and import of queue contents.

JSON exports carry an envelope (export_metadata, configuration, tasks)
and can be imported back with validate, merge or replace semantics.
CSV exports are a flat, one-way table for spreadsheets.
"""

import csv
import io
import json
import logging
from typing import Any, Dict, List

import pydantic

from resume_queue.config import QueueSettings
from resume_queue.engine import QueueEngine
from resume_queue.errors import QueueFullError, ValidationError
from resume_queue.models import STORE_VERSION, ImportSummary, Task, TaskStatus, now


logger = logging.getLogger(__name__)

SOURCE_SYSTEM = "resume-queue"
CSV_HEADER = ["id", "status", "priority", "type", "created", "description"]
REQUIRED_TASK_FIELDS = ("id", "status", "priority")

IMPORT_MODES = ("validate", "merge", "replace")
EXPORT_FORMATS = ("json", "csv")


def export_json(tasks: List[Task], settings: QueueSettings) -> bytes:
    """
    Serialize tasks with a metadata envelope.

    Args:
        tasks: Tasks to export (already filtered)
        settings: Effective settings, recorded under "configuration"

    Returns:
        UTF-8 encoded JSON document
    """
    counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status.value] += 1

    envelope = {
        "export_metadata": {
            "version": STORE_VERSION,
            "timestamp": now().isoformat(),
            "total_tasks": len(tasks),
            "task_counts": counts,
            "source_system": SOURCE_SYSTEM,
        },
        "configuration": {
            "max_queue_size": settings.max_queue_size,
            "default_timeout": settings.default_timeout,
            "max_retries": settings.max_retries,
            "auto_cleanup_days": settings.auto_cleanup_days,
            "backup_retention_days": settings.backup_retention_days,
        },
        "tasks": [task.model_dump(mode="json") for task in tasks],
    }
    return (json.dumps(envelope, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def export_csv(tasks: List[Task]) -> bytes:
    """Flat table (id, status, priority, type, created, description)."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for task in tasks:
        writer.writerow([
            task.id,
            task.status.value,
            task.priority,
            task.type.value,
            task.created_at.isoformat(),
            task.description,
        ])
    return buffer.getvalue().encode("utf-8")


def parse_payload(payload: bytes) -> Dict[str, Any]:
    """
    Decode an import payload.

    Raises:
        ValidationError: Not UTF-8, not JSON, or not a JSON object
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"Import payload is not valid UTF-8: {e}")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Import payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ValidationError("Import payload must be a JSON object")
    return data


def check_structure(data: Dict[str, Any]) -> None:
    """
    Check the top-level envelope.

    Raises:
        ValidationError: Missing export_metadata or tasks list
    """
    if not isinstance(data.get("export_metadata"), dict):
        raise ValidationError("Import payload missing 'export_metadata' object")
    if not isinstance(data.get("tasks"), list):
        raise ValidationError("Import payload missing 'tasks' array")


def validate_payload(data: Dict[str, Any]) -> ImportSummary:
    """
    Check structure and per-task required fields without touching state.

    Returns:
        ImportSummary with mode "validate"; valid is False on any problem
    """
    summary = ImportSummary(mode="validate")
    try:
        check_structure(data)
    except ValidationError as e:
        summary.valid = False
        summary.errors = 1
        summary.messages.append(e.message)
        return summary

    summary.total = len(data["tasks"])
    for position, raw in enumerate(data["tasks"]):
        if not isinstance(raw, dict):
            summary.errors += 1
            summary.messages.append(f"Task #{position}: not an object")
            continue
        missing = [f for f in REQUIRED_TASK_FIELDS if f not in raw]
        if missing:
            summary.errors += 1
            label = raw.get("id", f"#{position}")
            summary.messages.append(f"Task {label}: missing {', '.join(missing)}")

    summary.valid = summary.errors == 0
    return summary


def merge_tasks(engine: QueueEngine, data: Dict[str, Any], mode: str = "merge") -> ImportSummary:
    """
    Upsert tasks from a payload into the engine's index.

    Existing IDs are replaced in place, keeping their type and created_at.
    New IDs are appended, subject to max_queue_size. Tasks that fail to
    parse are counted and skipped.

    Args:
        engine: Engine whose index receives the tasks
        data: Parsed payload (structure already checked)
        mode: Mode recorded in the summary

    Returns:
        ImportSummary with imported/updated/error counts
    """
    check_structure(data)
    summary = ImportSummary(mode=mode, total=len(data["tasks"]))

    for position, raw in enumerate(data["tasks"]):
        label = raw.get("id", f"#{position}") if isinstance(raw, dict) else f"#{position}"

        if not isinstance(raw, dict) or any(f not in raw for f in REQUIRED_TASK_FIELDS):
            summary.errors += 1
            summary.messages.append(f"Task {label}: missing required fields")
            continue

        try:
            task = Task.model_validate(raw)
        except pydantic.ValidationError as e:
            summary.errors += 1
            summary.messages.append(f"Task {label}: {e.errors()[0]['msg']}")
            continue

        existing = engine.index.get(task.id)
        if existing is not None:
            # Type and creation time never change after a task is created
            engine.index.tasks[task.id] = task.model_copy(
                update={"type": existing.type, "created_at": existing.created_at}
            )
            summary.updated += 1
            continue

        try:
            engine.check_capacity()
        except QueueFullError as e:
            summary.errors += 1
            summary.messages.append(f"Task {label}: {e.message}")
            continue

        engine.index.add(task)
        summary.imported += 1

    summary.valid = summary.errors == 0
    logger.info(
        f"Import ({mode}): {summary.imported} imported, {summary.updated} updated, "
        f"{summary.errors} errors"
    )
    return summary
