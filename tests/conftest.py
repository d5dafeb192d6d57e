"""Test fixtures for resume-queue tests."""

import pytest
from datetime import datetime, timedelta

from resume_queue.config import QueueSettings
from resume_queue.engine import QueueEngine
from resume_queue.models import QueueIndex, Task, TaskStatus, TaskType
from resume_queue.service import QueueService
from resume_queue.store import QueueStore


class FakeClock:
    """Controllable time source for the engine."""

    def __init__(self, start: datetime = datetime(2025, 1, 31, 10, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the user's config and environment overrides."""
    for var in (
        "TASK_QUEUE_DIR", "TASK_QUEUE_MAX_SIZE", "TASK_MAX_RETRIES",
        "TASK_DEFAULT_TIMEOUT", "TASK_COMPLETION_PATTERN", "TASK_AUTO_CLEANUP_DAYS",
        "TASK_BACKUP_RETENTION_DAYS", "QUEUE_LOCK_TIMEOUT", "QUEUE_LOCK_BACKEND",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("resume_queue.config.DEFAULT_CONFIG_FILE", tmp_path / "home-config" / "config.json")
    monkeypatch.setattr("resume_queue.config.DEFAULT_ENV_FILE", tmp_path / "home-config" / ".env")


@pytest.fixture
def clock():
    """Fixed clock starting at 2025-01-31 10:00:00."""
    return FakeClock()


@pytest.fixture
def queue_dir(tmp_path):
    """Queue directory for a test."""
    path = tmp_path / "queue"
    path.mkdir()
    return path


@pytest.fixture
def settings(queue_dir):
    """Settings pointing at the test queue directory."""
    return QueueSettings(queue_dir=str(queue_dir), lock_timeout=2.0)


@pytest.fixture
def index():
    """Empty in-memory index."""
    return QueueIndex()


@pytest.fixture
def engine(index, settings, clock):
    """Engine over an empty index with a fixed clock."""
    return QueueEngine(index, settings, clock=clock)


@pytest.fixture
def store(queue_dir):
    """Store without pruning."""
    return QueueStore(queue_dir, backup_on_save=True, backup_retention_days=0)


@pytest.fixture
def service(settings, clock):
    """Service over the test queue directory."""
    return QueueService(settings, clock=clock)


@pytest.fixture
def sample_task():
    """A pending custom task."""
    return Task(
        id="custom-1738317600-0001",
        type=TaskType.CUSTOM,
        status=TaskStatus.PENDING,
        priority=5,
        metadata={"description": "Refactor the parser", "command": "/dev refactor"},
        created_at=datetime(2025, 1, 31, 10, 0, 0),
        updated_at=datetime(2025, 1, 31, 10, 0, 0),
    )
