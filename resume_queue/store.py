"""
Persistent JSON store for the task queue.

Layout under the queue directory:

    task-queue.json     the queue document (source of truth)
    backups/            timestamped snapshots of task-queue.json
"""

import json
import shutil
import logging
import time
from pathlib import Path
from typing import List, Optional

import pydantic

from resume_queue.atomic import AtomicFileWriter
from resume_queue.errors import CorruptStoreError, StoreIOError, ValidationError
from resume_queue.models import QueueDocument, QueueIndex, now


logger = logging.getLogger(__name__)

STORE_FILE_NAME = "task-queue.json"
BACKUP_DIR_NAME = "backups"
BACKUP_PREFIX = "backup-"


def _parse_document(data: object, source: Path) -> QueueDocument:
    if not isinstance(data, dict):
        raise CorruptStoreError(f"Queue store {source} is not a JSON object")
    try:
        return QueueDocument.model_validate(data)
    except pydantic.ValidationError as e:
        raise CorruptStoreError(f"Queue store {source} violates schema: {e}")


class QueueStore:
    """
    Durable JSON representation of the queue.

    load() and save() move a whole QueueIndex between memory and disk.
    Writes go through AtomicFileWriter, so readers always see either the
    previous or the new document in full.
    """

    def __init__(
        self,
        queue_dir: Path,
        backup_on_save: bool = True,
        backup_retention_days: int = 30
    ):
        """
        Initialize the store.

        Args:
            queue_dir: Directory holding task-queue.json and backups/
            backup_on_save: Snapshot the previous file before every save
            backup_retention_days: Prune backups older than this after saving
        """
        self.queue_dir = Path(queue_dir)
        self.store_file = self.queue_dir / STORE_FILE_NAME
        self.backup_dir = self.queue_dir / BACKUP_DIR_NAME
        self.backup_on_save = backup_on_save
        self.backup_retention_days = backup_retention_days

    def ensure_dirs(self) -> None:
        """Create the queue and backup directories."""
        try:
            self.queue_dir.mkdir(parents=True, exist_ok=True)
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"Cannot create queue directory {self.queue_dir}: {e}")

    def exists(self) -> bool:
        return self.store_file.exists()

    def load(self) -> QueueIndex:
        """
        Read the store into a fresh index.

        Returns:
            QueueIndex (empty if the store file does not exist)

        Raises:
            CorruptStoreError: Malformed JSON, schema violation or duplicate IDs
            StoreIOError: File exists but cannot be read
        """
        return self._read(self.store_file).to_index()

    def read_only_load(self) -> QueueIndex:
        """Load for lock-free readers; identical to load()."""
        return self.load()

    def save(self, index: QueueIndex, backup: bool = True) -> None:
        """
        Persist the index atomically.

        Args:
            index: Index to write
            backup: Snapshot the previous file first (when backup_on_save is set)

        Raises:
            StoreIOError: On disk/write failure (previous file left intact)
        """
        self.ensure_dirs()

        if backup and self.backup_on_save and self.store_file.exists():
            self.backup("save")

        document = QueueDocument.from_index(index)
        try:
            AtomicFileWriter.write_json(self.store_file, document.model_dump(mode="json"))
        except OSError as e:
            raise StoreIOError(f"Failed to write queue store {self.store_file}: {e}")

        logger.debug(f"Saved {len(index)} tasks to {self.store_file}")

        if self.backup_retention_days > 0:
            self.cleanup_old_backups(self.backup_retention_days)

    # Backups

    def backup(self, reason: str = "manual") -> Optional[Path]:
        """
        Snapshot the current store file.

        Args:
            reason: Short label embedded in the backup file name

        Returns:
            Path to the backup, or None if there is no store file yet
        """
        if not self.store_file.exists():
            return None

        self.ensure_dirs()
        safe_reason = "".join(c if c.isalnum() or c in "-_" else "-" for c in reason) or "manual"
        stamp = now().strftime("%Y%m%d-%H%M%S-%f")
        backup_path = self.backup_dir / f"{BACKUP_PREFIX}{safe_reason}-{stamp}.json"

        try:
            shutil.copy2(self.store_file, backup_path)
        except OSError as e:
            raise StoreIOError(f"Failed to create backup {backup_path}: {e}")

        logger.debug(f"Created backup: {backup_path}")
        return backup_path

    def list_backups(self) -> List[Path]:
        """Backups, newest first."""
        if not self.backup_dir.exists():
            return []
        backups = [p for p in self.backup_dir.glob(f"{BACKUP_PREFIX}*.json") if p.is_file()]
        return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)

    def latest_backup(self) -> Optional[Path]:
        backups = self.list_backups()
        return backups[0] if backups else None

    def restore(self, backup_path: Path) -> QueueIndex:
        """
        Install a backup as the current store.

        The backup is validated first; the current store (if any) is
        snapshotted with reason "pre-recovery" before being replaced.

        Args:
            backup_path: Backup file to restore

        Returns:
            The restored index

        Raises:
            ValidationError: If the backup file does not exist
            CorruptStoreError: If the backup is not a valid queue document
        """
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            raise ValidationError(f"Backup file not found: {backup_path}")

        document = self._read(backup_path)

        self.backup("pre-recovery")
        try:
            AtomicFileWriter.write_json(self.store_file, document.model_dump(mode="json"))
        except OSError as e:
            raise StoreIOError(f"Failed to restore {backup_path}: {e}")

        logger.info(f"Restored queue from backup: {backup_path}")
        return document.to_index()

    def cleanup_old_backups(self, max_age_days: int) -> int:
        """
        Delete backups whose modification time is older than max_age_days.

        Args:
            max_age_days: Retention window; zero or negative disables pruning

        Returns:
            Number of backups removed
        """
        if max_age_days <= 0 or not self.backup_dir.exists():
            return 0

        cutoff = time.time() - max_age_days * 86400
        removed = 0
        for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not remove old backup {path}: {e}")

        if removed:
            logger.info(f"Removed {removed} backups older than {max_age_days} days")
        return removed

    def _read(self, path: Path) -> QueueDocument:
        try:
            data = AtomicFileWriter.read_json(path)
        except json.JSONDecodeError as e:
            raise CorruptStoreError(f"Queue store {path} is not valid JSON: {e}")
        except UnicodeDecodeError as e:
            raise CorruptStoreError(f"Queue store {path} is not valid UTF-8: {e}")
        except OSError as e:
            raise StoreIOError(f"Failed to read queue store {path}: {e}")

        if data is None:
            return QueueDocument()
        return _parse_document(data, path)
