"""
Atomic file operations.

Provides safe JSON write operations so that readers of the queue
store always see either the previous or the next whole file.
"""

import os
import json
import logging
import tempfile
from pathlib import Path
from typing import Any, Union


logger = logging.getLogger(__name__)


class AtomicFileWriter:
    """
    Atomic file writer using temp file + atomic replace.

    Ensures that state files are never corrupted by partial writes.
    Writes to a temporary file first, then atomically replaces
    the target file using os.replace().
    """

    @staticmethod
    def write_bytes(filepath: Path, data: bytes) -> None:
        """
        Atomically write raw bytes to a file.

        Args:
            filepath: Target file path
            data: Bytes to write

        Raises:
            OSError: If write fails (temp file is cleaned up)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        temp_path = None
        try:
            # Create temporary file in same directory for atomic replace
            with tempfile.NamedTemporaryFile(
                mode='wb',
                dir=filepath.parent,
                prefix=f".{filepath.name}.",
                suffix='.tmp',
                delete=False
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                tmp_file.write(data)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())  # Force write to disk

            # Atomic replace (POSIX guarantees this is atomic)
            os.replace(temp_path, filepath)

        except BaseException:
            # Clean up temp file on error, including interrupts
            if temp_path is not None and temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as cleanup_error:
                    logger.warning(f"Could not remove temp file {temp_path}: {cleanup_error}")
            raise

    @staticmethod
    def write_json(filepath: Path, data: Any, indent: int = 2) -> None:
        """
        Atomically write JSON data to a file.

        Args:
            filepath: Target file path
            data: Data to serialize as JSON
            indent: JSON indentation level
        """
        payload = json.dumps(data, indent=indent, default=str, ensure_ascii=False)
        AtomicFileWriter.write_bytes(filepath, (payload + "\n").encode("utf-8"))

    @staticmethod
    def read_json(filepath: Union[str, Path], default: Any = None) -> Any:
        """
        Read a JSON file, returning a default if it doesn't exist.

        Malformed content raises json.JSONDecodeError.

        Args:
            filepath: File to read
            default: Value returned if the file does not exist

        Returns:
            Parsed JSON data or default value
        """
        filepath = Path(filepath)

        if not filepath.exists():
            return default

        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)
