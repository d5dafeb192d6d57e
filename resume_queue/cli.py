"""
Command-line interface for resume-queue.

Command structure:
- tasks: add, github-issue, github-pr, remove, clear, show
- lifecycle: next, dequeue, set-status, set-priority, retry, fail
- queries: status, list (filter), stats
- transfer: export, import, batch add|remove
- maintenance: cleanup, backup create|list|restore, lock status|cleanup|health|force-unlock
- config, monitor
"""

import sys
import json
import logging
import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

from resume_queue import __version__
from resume_queue.config import ConfigManager, QueueSettings
from resume_queue.errors import QueueError, ValidationError
from resume_queue.models import DEFAULT_PRIORITY, Task, TaskType, parse_task_type
from resume_queue.monitor import QueueMonitor
from resume_queue.query import (
    STATUS_ICONS,
    SortKey,
    TaskFilter,
    parse_priority_range,
    parse_status_set,
    parse_timestamp,
    render_json,
    render_status,
    render_table,
    render_text,
)
from resume_queue.service import QueueService


logger = logging.getLogger(__name__)


# =============================================================================
# HELPERS
# =============================================================================

def _settings(args) -> QueueSettings:
    settings = ConfigManager(args.config).settings
    if args.queue_dir:
        settings = settings.model_copy(update={"queue_dir": str(args.queue_dir)})
    return settings


def _service(args) -> QueueService:
    return QueueService(_settings(args))


def _emit(args, payload: Any, text: str) -> None:
    """Print JSON payload with --json, human text otherwise."""
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def _task_payload(task: Optional[Task]) -> Optional[Dict[str, Any]]:
    return task.model_dump(mode="json") if task is not None else None


def _parse_meta(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """Parse KEY=VALUE pairs; values that parse as JSON keep their type."""
    metadata: Dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"Invalid metadata (expected KEY=VALUE): {pair}")
        try:
            metadata[key.strip()] = json.loads(value)
        except ValueError:
            metadata[key.strip()] = value
    return metadata


def _build_filter(args) -> TaskFilter:
    task_filter = TaskFilter()
    if getattr(args, "status", None):
        task_filter.statuses = parse_status_set(args.status)
    if getattr(args, "priority", None):
        task_filter.priority_min, task_filter.priority_max = parse_priority_range(args.priority)
    if getattr(args, "type", None):
        task_filter.task_type = parse_task_type(args.type)
    if getattr(args, "after", None):
        task_filter.created_after = parse_timestamp(args.after)
    if getattr(args, "before", None):
        task_filter.created_before = parse_timestamp(args.before)
    if getattr(args, "text", None):
        task_filter.text = args.text
    return task_filter


def _read_input_lines(source: str) -> List[str]:
    if source == "-":
        return sys.stdin.read().splitlines()
    path = Path(source)
    if not path.is_file():
        raise ValidationError(f"Input file not found: {source}")
    return path.read_text(encoding="utf-8").splitlines()


def _print_task(task: Task) -> None:
    print(f"\n{STATUS_ICONS[task.status]} Task: {task.id}")
    print(f"   Type:     {task.type.value}")
    print(f"   Status:   {task.status.value}")
    print(f"   Priority: {task.priority}")
    print(f"   Retries:  {task.retry_count}")
    print(f"   Created:  {task.created_at.isoformat(sep=' ', timespec='seconds')}")
    print(f"   Updated:  {task.updated_at.isoformat(sep=' ', timespec='seconds')}")
    if task.description:
        print(f"   Description: {task.description}")
    for key, value in task.metadata.items():
        if key in ("description",):
            continue
        print(f"   {key}: {value}")


# =============================================================================
# TASK COMMANDS
# =============================================================================

def cmd_add(args):
    """Add a custom (or typed) task."""
    metadata = _parse_meta(args.meta)
    if args.description:
        metadata["description"] = args.description
    if args.command_text:
        metadata["command"] = args.command_text
    if args.timeout is not None:
        metadata["timeout"] = args.timeout
    if args.completion_marker:
        metadata["completion_marker"] = args.completion_marker
    if args.no_clear_context:
        metadata["clear_context"] = False

    task = _service(args).create(args.type, args.priority, task_id=args.id, metadata=metadata)
    _emit(args, _task_payload(task), f"✅ Added task {task.id}")
    return 0


def cmd_github_issue(args):
    """Add a GitHub issue task."""
    task = _service(args).create_github_issue(args.number, args.priority, args.title, args.label)
    _emit(args, _task_payload(task), f"✅ Added task {task.id} ({task.description})")
    return 0


def cmd_github_pr(args):
    """Add a GitHub PR task."""
    task = _service(args).create_github_pr(args.number, args.priority, args.title)
    _emit(args, _task_payload(task), f"✅ Added task {task.id} ({task.description})")
    return 0


def cmd_remove(args):
    task = _service(args).remove(args.task_id)
    _emit(args, {"removed": task.id}, f"🗑️  Removed task {task.id}")
    return 0


def cmd_clear(args):
    if not args.yes:
        print("⚠️  This removes every task in the queue. Re-run with --yes to confirm.")
        return 1
    count = _service(args).clear()
    _emit(args, {"removed": count}, f"🗑️  Cleared {count} tasks")
    return 0


def cmd_show(args):
    service = _service(args)
    task = service.get_task(args.task_id)
    if args.json:
        payload = _task_payload(task)
        payload["duration_seconds"] = service.task_duration(task.id)
        _emit(args, payload, "")
    else:
        _print_task(task)
    return 0


# =============================================================================
# LIFECYCLE COMMANDS
# =============================================================================

def cmd_next(args):
    """Print the next pending task ID without changing it."""
    task = _service(args).select_next()
    if args.json:
        _emit(args, {"task": _task_payload(task)}, "")
    elif task is not None:
        print(task.id)
    return 0


def cmd_dequeue(args):
    """Take the next pending task and mark it in progress."""
    task = _service(args).dequeue()
    if args.json:
        _emit(args, {"task": _task_payload(task)}, "")
    elif task is not None:
        print(task.id)
    return 0


def cmd_set_status(args):
    task = _service(args).update_status(args.task_id, args.status)
    _emit(args, _task_payload(task), f"{STATUS_ICONS[task.status]} {task.id} -> {task.status.value}")
    return 0


def cmd_set_priority(args):
    task = _service(args).update_priority(args.task_id, args.priority)
    _emit(args, _task_payload(task), f"✅ {task.id} priority -> {task.priority}")
    return 0


def cmd_retry(args):
    task = _service(args).retry(args.task_id)
    _emit(args, _task_payload(task), f"🔁 {task.id} queued for retry (attempt {task.retry_count})")
    return 0


def cmd_fail(args):
    task = _service(args).record_error(args.task_id, args.message, args.code)
    _emit(args, _task_payload(task), f"❌ {task.id} marked failed: {args.message}")
    return 0


# =============================================================================
# QUERY COMMANDS
# =============================================================================

def cmd_status(args):
    service = _service(args)
    fmt = "json" if args.json else args.format
    print(render_status(service.statistics(), service.settings, fmt))
    return 0


def cmd_list(args):
    tasks = _service(args).list_tasks(_build_filter(args), SortKey(args.sort), args.limit)
    if args.json or args.format == "json":
        print(json.dumps(render_json(tasks), indent=2))
    elif args.format == "table":
        print(render_table(tasks))
    else:
        print(render_text(tasks))
    return 0


def cmd_stats(args):
    stats = _service(args).statistics()
    if args.json:
        _emit(args, stats.model_dump(), "")
        return 0

    print("\n📊 Queue Statistics:")
    print(f"   Total: {stats.total}")
    for status, count in stats.counts.items():
        print(f"   {status}: {count}")
    if stats.average_completion_seconds is not None:
        print(f"   Average completion: {stats.average_completion_seconds:.1f}s")
    print(f"   Health: {stats.health}")
    return 0


# =============================================================================
# TRANSFER COMMANDS
# =============================================================================

def cmd_export(args):
    data = _service(args).export(args.format, _build_filter(args))
    if args.output:
        Path(args.output).write_bytes(data)
        print(f"💾 Exported to {args.output}", file=sys.stderr)
    else:
        sys.stdout.write(data.decode("utf-8"))
    return 0


def cmd_import(args):
    if args.file == "-":
        payload = sys.stdin.buffer.read()
    else:
        path = Path(args.file)
        if not path.is_file():
            raise ValidationError(f"Import file not found: {args.file}")
        payload = path.read_bytes()

    summary = _service(args).import_data(payload, args.mode)
    if args.json:
        _emit(args, summary.model_dump(), "")
    else:
        icon = "✅" if summary.valid else "⚠️ "
        print(f"{icon} Import ({summary.mode}): {summary.total} tasks")
        if summary.mode != "validate":
            print(f"   Imported: {summary.imported}")
            print(f"   Updated:  {summary.updated}")
        print(f"   Errors:   {summary.errors}")
        for message in summary.messages:
            print(f"   - {message}")
        if summary.backup_path:
            print(f"   Backup: {summary.backup_path}")
    return 0 if summary.valid else 1


def cmd_batch_add(args):
    lines = _read_input_lines(args.source)
    result = _service(args).batch_add(lines, args.type, args.priority)
    return _print_batch(args, result, "Added")


def cmd_batch_remove(args):
    lines = _read_input_lines(args.source)
    result = _service(args).batch_remove(lines)
    return _print_batch(args, result, "Removed")


def _print_batch(args, result, verb: str) -> int:
    if args.json:
        _emit(args, result.model_dump(), "")
    else:
        for task_id in result.succeeded:
            print(f"✓ {verb} {task_id}")
        for failure in result.failures:
            print(f"✗ {failure}", file=sys.stderr)
        print(f"\nLines processed: {result.lines}")
        print(f"Succeeded: {len(result.succeeded)}")
        print(f"Errors: {len(result.failures)}")
    return 0 if result.ok else 1


# =============================================================================
# MAINTENANCE COMMANDS
# =============================================================================

def cmd_cleanup(args):
    result = _service(args).cleanup(args.days)
    _emit(
        args, result,
        f"🧹 Removed {result['tasks_removed']} old tasks and {result['backups_removed']} old backups"
    )
    return 0


def cmd_backup_create(args):
    path = _service(args).backup(args.reason)
    if path is None:
        _emit(args, {"backup": None}, "📭 Nothing to back up (queue store does not exist yet)")
    else:
        _emit(args, {"backup": str(path)}, f"💾 Backup created: {path}")
    return 0


def cmd_backup_list(args):
    backups = _service(args).list_backups()
    if args.json:
        _emit(args, {"backups": [str(p) for p in backups]}, "")
        return 0
    print("\n💾 Backups:")
    if not backups:
        print("  (none)")
    for path in backups:
        print(f"  {path.name}")
    return 0


def cmd_backup_restore(args):
    index = _service(args).restore(Path(args.path) if args.path else None)
    _emit(args, {"restored_tasks": len(index)}, f"✅ Restored {len(index)} tasks")
    return 0


def cmd_lock_status(args):
    info = _service(args).lock_status()
    if args.json:
        payload = {"held": info is not None}
        if info is not None:
            payload.update(info.model_dump(mode="json"))
            payload["state"] = info.state
            payload["age_seconds"] = info.age_seconds
        _emit(args, payload, "")
        return 0

    if info is None:
        print("🔓 Queue lock is not held")
        return 0
    print(f"🔒 Queue lock held ({info.backend}): {info.path}")
    print(f"   PID: {info.pid or 'unknown'} ({info.state})")
    print(f"   Host: {info.hostname or 'unknown'}, user: {info.user or 'unknown'}")
    print(f"   Operation: {info.operation or 'unknown'}")
    if info.age_seconds is not None:
        print(f"   Held for: {info.age_seconds:.0f}s")
    return 0


def cmd_lock_cleanup(args):
    removed = _service(args).cleanup_locks()
    _emit(args, {"removed": removed}, "🧹 Removed stale lock" if removed else "✅ No stale locks")
    return 0


def cmd_lock_health(args):
    score, issues = _service(args).lock_health()
    if args.json:
        _emit(args, {"score": score, "issues": issues}, "")
    else:
        print(f"🩺 Lock health score: {score}/100")
        for issue in issues:
            print(f"   ⚠️  {issue}")
    return 0 if score >= 80 else 1


def cmd_lock_force_unlock(args):
    if not args.yes:
        print("⚠️  Force-unlock is unsafe if another process is working on the queue.")
        print("   Re-run with --yes to confirm.")
        return 1
    removed = _service(args).force_unlock()
    _emit(args, {"removed": removed}, "🔓 Lock removed" if removed else "🔓 No lock to remove")
    return 0


def cmd_config(args):
    manager = ConfigManager(args.config)
    if args.set:
        updates = {}
        for pair in args.set:
            key, sep, value = pair.partition("=")
            if not sep:
                raise ValidationError(f"Invalid setting (expected KEY=VALUE): {pair}")
            updates[key.strip()] = value
        manager.update_settings(**updates)
        if not args.json:
            print(f"💾 Configuration saved to {manager.config_file}")

    settings = manager.settings
    if args.json:
        _emit(args, settings.model_dump(), "")
    else:
        print(f"\n⚙️  Configuration ({manager.config_file}):")
        for key, value in settings.model_dump().items():
            print(f"   {key}: {value}")
    return 0


def cmd_monitor(args):
    """Live status view, refreshed on store changes."""
    service = _service(args)

    def render() -> str:
        text = render_status(service.statistics(), service.settings, "text")
        active = service.list_tasks(
            TaskFilter(statuses=set(args.show_statuses)), SortKey.STATUS, limit=args.limit
        )
        return f"{text}\n\n{render_text(active)}\n"

    monitor = QueueMonitor(
        service.settings.queue_path,
        render,
        refresh_interval=args.interval,
        use_watchdog=not args.no_watch,
    )
    try:
        monitor.run(max_refreshes=args.count)
    except KeyboardInterrupt:
        print("\n\nInterrupted")
    return 0


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resume-queue",
        description="Persistent task queue for Claude auto-resume sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Add tasks
  resume-queue add custom 3 -d "Refactor the parser"
  resume-queue github-issue 123 --priority 2
  echo -e "41\\n42\\n43" | resume-queue batch add - --priority 2

  # Drive the queue
  resume-queue dequeue
  resume-queue set-status custom-1700000000-0042 completed

  # Inspect
  resume-queue status
  resume-queue list --status pending --priority 1-3 --format table
  resume-queue export --format csv -o tasks.csv
        """
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to configuration file")
    parser.add_argument("--queue-dir", type=Path, default=None, help="Queue directory (overrides config)")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Status
    status_parser = subparsers.add_parser("status", help="Show queue status")
    status_parser.add_argument("--format", choices=["text", "compact", "json"], default="text")
    status_parser.set_defaults(func=cmd_status)

    # Task commands
    add_parser = subparsers.add_parser("add", help="Add a task")
    add_parser.add_argument("type", choices=[t.value for t in TaskType], help="Task type")
    add_parser.add_argument("priority", nargs="?", default=DEFAULT_PRIORITY, help="Priority 1-10 (1 = most urgent)")
    add_parser.add_argument("--id", help="Explicit task ID")
    add_parser.add_argument("--description", "-d", help="Task description")
    add_parser.add_argument("--command", dest="command_text", help="Command the driver sends to Claude")
    add_parser.add_argument("--timeout", type=int, help="Execution timeout in seconds")
    add_parser.add_argument("--completion-marker", help="Marker signalling completion")
    add_parser.add_argument("--no-clear-context", action="store_true", help="Keep the Claude context")
    add_parser.add_argument("--meta", action="append", metavar="KEY=VALUE", help="Extra metadata")
    add_parser.set_defaults(func=cmd_add)

    issue_parser = subparsers.add_parser("github-issue", help="Add a GitHub issue task")
    issue_parser.add_argument("number", help="Issue number")
    issue_parser.add_argument("--priority", "-p", default=DEFAULT_PRIORITY, help="Priority 1-10")
    issue_parser.add_argument("--title", help="Issue title")
    issue_parser.add_argument("--label", action="append", help="Issue label (repeatable)")
    issue_parser.set_defaults(func=cmd_github_issue)

    pr_parser = subparsers.add_parser("github-pr", help="Add a GitHub pull request task")
    pr_parser.add_argument("number", help="PR number")
    pr_parser.add_argument("--priority", "-p", default=DEFAULT_PRIORITY, help="Priority 1-10")
    pr_parser.add_argument("--title", help="PR title")
    pr_parser.set_defaults(func=cmd_github_pr)

    remove_parser = subparsers.add_parser("remove", help="Remove a task")
    remove_parser.add_argument("task_id", help="Task ID")
    remove_parser.set_defaults(func=cmd_remove)

    clear_parser = subparsers.add_parser("clear", help="Remove all tasks")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm")
    clear_parser.set_defaults(func=cmd_clear)

    show_parser = subparsers.add_parser("show", help="Show task details")
    show_parser.add_argument("task_id", help="Task ID")
    show_parser.set_defaults(func=cmd_show)

    # Lifecycle commands
    next_parser = subparsers.add_parser("next", help="Print the next pending task ID")
    next_parser.set_defaults(func=cmd_next)

    dequeue_parser = subparsers.add_parser("dequeue", help="Take the next pending task")
    dequeue_parser.set_defaults(func=cmd_dequeue)

    set_status_parser = subparsers.add_parser("set-status", help="Change task status")
    set_status_parser.add_argument("task_id", help="Task ID")
    set_status_parser.add_argument("status", help="pending, in_progress, completed, failed or timeout")
    set_status_parser.set_defaults(func=cmd_set_status)

    set_priority_parser = subparsers.add_parser("set-priority", help="Change task priority")
    set_priority_parser.add_argument("task_id", help="Task ID")
    set_priority_parser.add_argument("priority", help="Priority 1-10")
    set_priority_parser.set_defaults(func=cmd_set_priority)

    retry_parser = subparsers.add_parser("retry", help="Return a failed/timed-out task to pending")
    retry_parser.add_argument("task_id", help="Task ID")
    retry_parser.set_defaults(func=cmd_retry)

    fail_parser = subparsers.add_parser("fail", help="Mark an in-progress task failed")
    fail_parser.add_argument("task_id", help="Task ID")
    fail_parser.add_argument("message", help="Error message")
    fail_parser.add_argument("--code", type=int, default=1, help="Error code")
    fail_parser.set_defaults(func=cmd_fail)

    # Query commands
    list_parser = subparsers.add_parser("list", aliases=["filter"], help="List and filter tasks")
    _add_filter_arguments(list_parser)
    list_parser.add_argument("--sort", choices=[k.value for k in SortKey], default=SortKey.PRIORITY.value)
    list_parser.add_argument("--limit", type=int, help="Maximum results")
    list_parser.add_argument("--format", choices=["text", "table", "json"], default="text")
    list_parser.set_defaults(func=cmd_list)

    stats_parser = subparsers.add_parser("stats", help="Show queue statistics")
    stats_parser.set_defaults(func=cmd_stats)

    # Transfer commands
    export_parser = subparsers.add_parser("export", help="Export tasks")
    export_parser.add_argument("--format", choices=["json", "csv"], default="json")
    export_parser.add_argument("--output", "-o", help="Output file (stdout if omitted)")
    _add_filter_arguments(export_parser)
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import a JSON export")
    import_parser.add_argument("file", help="Export file, or - for stdin")
    import_parser.add_argument("--mode", choices=["validate", "merge", "replace"], default="merge")
    import_parser.set_defaults(func=cmd_import)

    batch_parser = subparsers.add_parser("batch", help="Batch operations")
    batch_subparsers = batch_parser.add_subparsers(dest="batch_command", help="Batch commands")

    batch_add_parser = batch_subparsers.add_parser("add", help="Add one task per line")
    batch_add_parser.add_argument("source", nargs="?", default="-", help="Input file, or - for stdin")
    batch_add_parser.add_argument("--type", default=TaskType.CUSTOM.value, help="Default task type")
    batch_add_parser.add_argument("--priority", "-p", default=DEFAULT_PRIORITY, help="Default priority")
    batch_add_parser.set_defaults(func=cmd_batch_add)

    batch_remove_parser = batch_subparsers.add_parser("remove", help="Remove one task ID per line")
    batch_remove_parser.add_argument("source", nargs="?", default="-", help="Input file, or - for stdin")
    batch_remove_parser.set_defaults(func=cmd_batch_remove)

    # Maintenance commands
    cleanup_parser = subparsers.add_parser("cleanup", help="Remove old finished tasks and backups")
    cleanup_parser.add_argument("--days", type=int, help="Task retention in days (default from config)")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    backup_parser = subparsers.add_parser("backup", help="Manage backups")
    backup_subparsers = backup_parser.add_subparsers(dest="backup_command", help="Backup commands")

    backup_create_parser = backup_subparsers.add_parser("create", help="Snapshot the queue")
    backup_create_parser.add_argument("--reason", default="manual", help="Label in the file name")
    backup_create_parser.set_defaults(func=cmd_backup_create)

    backup_list_parser = backup_subparsers.add_parser("list", help="List backups")
    backup_list_parser.set_defaults(func=cmd_backup_list)

    backup_restore_parser = backup_subparsers.add_parser("restore", help="Restore a backup")
    backup_restore_parser.add_argument("path", nargs="?", help="Backup file (latest if omitted)")
    backup_restore_parser.set_defaults(func=cmd_backup_restore)

    lock_parser = subparsers.add_parser("lock", help="Inspect and repair the queue lock")
    lock_subparsers = lock_parser.add_subparsers(dest="lock_command", help="Lock commands")

    lock_status_parser = lock_subparsers.add_parser("status", help="Show lock holder")
    lock_status_parser.set_defaults(func=cmd_lock_status)

    lock_cleanup_parser = lock_subparsers.add_parser("cleanup", help="Remove a stale lock")
    lock_cleanup_parser.set_defaults(func=cmd_lock_cleanup)

    lock_health_parser = lock_subparsers.add_parser("health", help="Lock health check")
    lock_health_parser.set_defaults(func=cmd_lock_health)

    lock_force_parser = lock_subparsers.add_parser("force-unlock", help="Remove the lock unconditionally")
    lock_force_parser.add_argument("--yes", action="store_true", help="Confirm")
    lock_force_parser.set_defaults(func=cmd_lock_force_unlock)

    config_parser = subparsers.add_parser("config", help="Show or change configuration")
    config_parser.add_argument("--set", action="append", metavar="KEY=VALUE", help="Update a setting")
    config_parser.set_defaults(func=cmd_config)

    monitor_parser = subparsers.add_parser("monitor", help="Live queue view")
    monitor_parser.add_argument("--interval", type=float, default=5.0, help="Refresh interval in seconds")
    monitor_parser.add_argument("--count", type=int, help="Stop after this many refreshes")
    monitor_parser.add_argument("--limit", type=int, default=10, help="Tasks shown")
    monitor_parser.add_argument("--no-watch", action="store_true", help="Poll only, no file events")
    monitor_parser.set_defaults(func=cmd_monitor, show_statuses=["in_progress", "pending"])

    return parser


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--status", help="Status or comma-separated statuses")
    parser.add_argument("--priority", help="Priority or inclusive range, e.g. 1-3")
    parser.add_argument("--type", choices=[t.value for t in TaskType], help="Task type")
    parser.add_argument("--after", help="Created after (ISO-8601, exclusive)")
    parser.add_argument("--before", help="Created before (ISO-8601, exclusive)")
    parser.add_argument("--text", help="Case-insensitive text search over metadata")


def _report_error(args, error: QueueError) -> None:
    if getattr(args, "json", False):
        print(json.dumps(error.to_dict(), indent=2))
    else:
        print(f"❌ Error: {error.message}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    logging.getLogger("watchdog").setLevel(logging.WARNING)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except QueueError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        _report_error(args, e)
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
