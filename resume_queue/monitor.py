"""
Watchdog-based monitoring of the queue store.

Re-renders a status view whenever task-queue.json changes, with a
periodic refresh as a fallback for filesystems without change events.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from resume_queue.errors import QueueError
from resume_queue.store import STORE_FILE_NAME


logger = logging.getLogger(__name__)


class DebounceTracker:
    """
    Tracks file events with debouncing to prevent duplicate processing.

    Multiple events within the debounce window are coalesced into a single event.
    """

    def __init__(self, debounce_ms: int = 500):
        """
        Initialize debounce tracker.

        Args:
            debounce_ms: Debounce delay in milliseconds
        """
        self.debounce_seconds = debounce_ms / 1000.0
        self._last_events: Dict[str, float] = {}

    def should_process(self, file_path: str) -> bool:
        """
        Check if file event should be processed (debounced).

        Args:
            file_path: Path to file that triggered event

        Returns:
            True if event should be processed, False if debounced
        """
        current = time.monotonic()
        last_event_time = self._last_events.get(file_path)

        if last_event_time is not None and current - last_event_time < self.debounce_seconds:
            return False

        self._last_events[file_path] = current
        return True

    def cleanup_old_events(self, max_age_seconds: float = 60.0) -> None:
        """Remove old event timestamps to prevent memory growth."""
        cutoff = time.monotonic() - max_age_seconds
        self._last_events = {
            path: ts
            for path, ts in self._last_events.items()
            if ts > cutoff
        }


class StoreWatcher(FileSystemEventHandler):
    """
    Watches the queue directory for changes to the store file.

    Atomic saves show up as a move of the temp file onto task-queue.json,
    so moved events are matched on their destination.
    """

    def __init__(
        self,
        queue_dir: Path,
        on_change: Callable[[], None],
        debounce_ms: int = 500,
        store_file_name: str = STORE_FILE_NAME
    ):
        """
        Initialize store watcher.

        Args:
            queue_dir: Directory containing the store file
            on_change: Called (from the observer thread) when the store changes
            debounce_ms: Debounce delay in milliseconds
            store_file_name: Name of the file to watch
        """
        super().__init__()
        self.queue_dir = Path(queue_dir)
        self.on_change = on_change
        self.store_file_name = store_file_name
        self.debounce = DebounceTracker(debounce_ms)
        self._observer: Optional[Observer] = None

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.src_path, "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.src_path, "modified")

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event.dest_path, "replaced")

    def _handle(self, file_path, event_type: str) -> None:
        if isinstance(file_path, bytes):
            file_path = file_path.decode()
        if Path(file_path).name != self.store_file_name:
            return

        if not self.debounce.should_process(file_path):
            logger.debug(f"Debounced {event_type} event for {self.store_file_name}")
            return

        logger.debug(f"Queue store {event_type}")
        try:
            self.on_change()
        except Exception as e:
            logger.error(f"Error in change callback: {e}", exc_info=True)

        self.debounce.cleanup_old_events()

    def start(self) -> None:
        """Start a watchdog observer on the queue directory."""
        if self._observer is not None:
            logger.warning(f"Observer already running for {self.queue_dir}")
            return

        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(self, str(self.queue_dir), recursive=False)
        self._observer.start()
        logger.info(f"Watching queue store in {self.queue_dir}")

    def stop(self) -> None:
        """Stop and join the observer."""
        if self._observer is None:
            return
        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        finally:
            self._observer = None
        logger.debug(f"Stopped watching {self.queue_dir}")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


class QueueMonitor:
    """
    Live view of the queue.

    Calls render() and hands the result to output() on start, on every
    store change, and at least every refresh_interval seconds.
    """

    def __init__(
        self,
        queue_dir: Path,
        render: Callable[[], str],
        output: Callable[[str], None] = print,
        refresh_interval: float = 5.0,
        debounce_ms: int = 500,
        use_watchdog: bool = True
    ):
        self.render = render
        self.output = output
        self.refresh_interval = refresh_interval
        self._changed = threading.Event()
        self._stopped = threading.Event()
        self.watcher: Optional[StoreWatcher] = None
        if use_watchdog:
            self.watcher = StoreWatcher(queue_dir, self._changed.set, debounce_ms=debounce_ms)

    def refresh(self) -> bool:
        """
        Render once.

        Returns:
            True if rendering succeeded
        """
        try:
            self.output(self.render())
        except QueueError as e:
            logger.warning(f"Could not read queue: {e.message}")
            return False
        return True

    def run(self, max_refreshes: Optional[int] = None) -> int:
        """
        Refresh until stop() is called or max_refreshes is reached.

        Returns:
            Number of refreshes performed
        """
        if self.watcher is not None:
            self.watcher.start()

        refreshes = 0
        try:
            while not self._stopped.is_set():
                self.refresh()
                refreshes += 1
                if max_refreshes is not None and refreshes >= max_refreshes:
                    break
                self._changed.wait(timeout=self.refresh_interval)
                self._changed.clear()
        finally:
            if self.watcher is not None:
                self.watcher.stop()
        return refreshes

    def stop(self) -> None:
        self._stopped.set()
        self._changed.set()
