"""
Configuration management for the resume queue.

Settings come from three layers, later ones winning:

1. Defaults on QueueSettings
2. JSON config file (~/.config/resume-queue/config.json)
3. Environment variables (optionally loaded from a .env file)
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import pydantic
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from resume_queue.atomic import AtomicFileWriter
from resume_queue.errors import StoreIOError, ValidationError


logger = logging.getLogger(__name__)

# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "resume-queue"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_ENV_FILE = DEFAULT_CONFIG_DIR / ".env"

DEFAULT_COMPLETION_MARKER = "###TASK_COMPLETE###"

LOCK_BACKENDS = ("auto", "fcntl", "directory")

# Environment variable -> setting name
ENV_OVERRIDES = {
    "TASK_QUEUE_DIR": "queue_dir",
    "TASK_QUEUE_MAX_SIZE": "max_queue_size",
    "TASK_MAX_RETRIES": "max_retries",
    "TASK_DEFAULT_TIMEOUT": "default_timeout",
    "TASK_COMPLETION_PATTERN": "completion_marker",
    "TASK_AUTO_CLEANUP_DAYS": "auto_cleanup_days",
    "TASK_BACKUP_RETENTION_DAYS": "backup_retention_days",
    "QUEUE_LOCK_TIMEOUT": "lock_timeout",
    "QUEUE_LOCK_BACKEND": "lock_backend",
}


class QueueSettings(BaseModel):
    """Queue behaviour settings."""

    queue_dir: str = Field(default="queue", description="Directory holding task-queue.json")
    max_queue_size: int = Field(default=0, ge=0, description="Maximum tasks (0 = unlimited)")
    max_retries: int = Field(default=3, ge=0, description="Default retry limit per task")
    default_timeout: int = Field(default=3600, gt=0, description="Default task timeout in seconds")
    completion_marker: str = Field(
        default=DEFAULT_COMPLETION_MARKER,
        description="Marker the driver watches for in terminal output"
    )
    auto_cleanup_days: int = Field(default=7, description="Remove terminal tasks older than this")
    backup_retention_days: int = Field(default=30, description="Remove backups older than this")
    lock_timeout: float = Field(default=30.0, ge=0, description="Seconds to wait for the queue lock")
    lock_stale_after: float = Field(default=600, gt=0, description="Age at which a directory lock is stale")
    lock_backend: str = Field(default="auto", description="auto, fcntl or directory")
    backup_on_save: bool = Field(default=True, description="Snapshot the store before each save")
    lower_priority_first: bool = Field(default=True, description="Priority 1 is the most urgent")

    @field_validator("lock_backend")
    @classmethod
    def check_lock_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in LOCK_BACKENDS:
            raise ValueError(f"lock_backend must be one of {', '.join(LOCK_BACKENDS)}: {v}")
        return v

    @field_validator("queue_dir")
    @classmethod
    def check_queue_dir(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("queue_dir cannot be empty")
        return v

    @property
    def queue_path(self) -> Path:
        """Queue directory with ~ expanded."""
        return Path(self.queue_dir).expanduser()


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Collect setting overrides from environment variables.

    Args:
        environ: Mapping to read (os.environ if None)

    Returns:
        Setting name -> raw string value
    """
    environ = os.environ if environ is None else environ
    overrides = {}
    for var, setting in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is not None and value != "":
            overrides[setting] = value
    return overrides


class ConfigManager:
    """
    Manages queue configuration.

    Handles loading configuration from disk, applying environment
    overrides, and persisting changes atomically.
    """

    def __init__(
        self,
        config_file: Optional[Path] = None,
        env_file: Optional[Path] = None,
        use_env: bool = True
    ):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to ~/.config/resume-queue/config.json
            env_file: .env file loaded before reading overrides. Defaults to ~/.config/resume-queue/.env
            use_env: Apply environment variable overrides
        """
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.env_file = Path(env_file) if env_file else DEFAULT_ENV_FILE
        self.use_env = use_env

        # Settings as stored in the file, and effective settings (file + env)
        self.file_settings = self._load_config()
        self.settings = self._apply_env(self.file_settings)

    def _load_config(self) -> QueueSettings:
        """Load configuration from file or create default."""
        try:
            data = AtomicFileWriter.read_json(self.config_file)
        except (ValueError, OSError) as e:
            logger.warning(f"Unreadable config file {self.config_file}, using defaults: {e}")
            return QueueSettings()

        if data is None:
            return QueueSettings()

        try:
            return QueueSettings.model_validate(data)
        except pydantic.ValidationError as e:
            logger.warning(f"Invalid config file {self.config_file}, using defaults: {e}")
            return QueueSettings()

    def _apply_env(self, settings: QueueSettings) -> QueueSettings:
        if not self.use_env:
            return settings

        # Existing environment variables take precedence over the .env file
        if self.env_file.exists():
            load_dotenv(self.env_file)

        overrides = env_overrides()
        if not overrides:
            return settings

        merged = settings.model_dump()
        for name, value in overrides.items():
            candidate = dict(merged, **{name: value})
            try:
                QueueSettings.model_validate(candidate)
            except pydantic.ValidationError as e:
                logger.warning(f"Ignoring invalid environment override for {name}: {value!r} ({e.errors()[0]['msg']})")
                continue
            merged = candidate

        return QueueSettings.model_validate(merged)

    def save_config(self) -> None:
        """Save file-level configuration atomically."""
        try:
            AtomicFileWriter.write_json(self.config_file, self.file_settings.model_dump(), indent=2)
        except OSError as e:
            raise StoreIOError(f"Failed to save configuration {self.config_file}: {e}")

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.file_settings = self._load_config()
        self.settings = self._apply_env(self.file_settings)

    def update_settings(self, **kwargs) -> QueueSettings:
        """
        Update and persist settings.

        Args:
            **kwargs: Settings to update (max_retries, lock_backend, etc.)

        Returns:
            The new effective settings

        Raises:
            ValidationError: Unknown setting or invalid value
        """
        for key in kwargs:
            if key not in QueueSettings.model_fields:
                raise ValidationError(f"Unknown setting: {key}")

        try:
            updated = QueueSettings.model_validate(dict(self.file_settings.model_dump(), **kwargs))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid setting value: {e}")

        self.file_settings = updated
        self.save_config()
        self.settings = self._apply_env(self.file_settings)
        return self.settings
