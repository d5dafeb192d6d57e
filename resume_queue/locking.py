"""
Inter-process locking for the queue store.

Two interchangeable backends guard read-modify-write cycles:

- FcntlLock: advisory flock() on a lock file (POSIX). The kernel drops
  the lock when the holder dies, so it can never go stale.
- DirectoryLock: atomic mkdir() of a marker directory holding pid,
  timestamp, hostname, user and operation files. Portable; staleness is
  detected by PID liveness and an age threshold.

LockManager adds timeouts with exponential backoff, stale lock
reclamation, idempotent release and diagnostics on top of a backend.
"""

import os
import json
import time
import uuid
import random
import shutil
import socket
import getpass
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Tuple, TypeVar

from resume_queue.errors import LockTimeoutError, StoreIOError, ValidationError
from resume_queue.models import LockInfo, now


logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_DIR_NAME = ".queue.lock.d"
LOCK_FILE_NAME = ".queue.lock"

# Backoff: 0.1s * 1.5^attempt + jitter, capped per sleep
BACKOFF_BASE_SECONDS = 0.1
BACKOFF_FACTOR = 1.5
BACKOFF_MAX_SECONDS = 1.0
BACKOFF_JITTER_SECONDS = 0.1

DEFAULT_STALE_AFTER_SECONDS = 600
# A lock directory without a PID file is only considered abandoned after this long
MISSING_PID_GRACE_SECONDS = 2.0
# A reclaim guard older than this belongs to a reclaimer that died
RECLAIM_GUARD_STALE_SECONDS = 10.0


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def is_process_alive(pid: int) -> bool:
    """
    Check whether a process exists (signal 0 probe).

    Args:
        pid: Process ID to check

    Returns:
        True if the process exists
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


class LockBackend:
    """Interface shared by the lock backends."""

    name = "base"

    def __init__(self, path: Path):
        self.path = Path(path)

    def try_acquire(self, token: str, operation: str) -> bool:
        """Attempt a single non-blocking acquisition."""
        raise NotImplementedError

    def release(self, token: str) -> None:
        """Release the lock if it is still held under this token."""
        raise NotImplementedError

    def read_info(self) -> Optional[LockInfo]:
        """Holder information, or None if the lock is not held."""
        raise NotImplementedError

    def is_stale(self, info: LockInfo) -> bool:
        """Whether a held lock has been abandoned."""
        raise NotImplementedError

    def break_lock(self) -> bool:
        """Remove the lock unconditionally. Returns True if something was removed."""
        raise NotImplementedError

    def break_stale(self, info: LockInfo) -> bool:
        """Remove a lock already judged stale. Returns True if it was removed."""
        return self.break_lock()


class DirectoryLock(LockBackend):
    """
    Directory-based lock (mkdir is atomic on every filesystem we care about).

    Layout:
        .queue.lock.d/
            pid, timestamp, hostname, user, operation, token
    """

    name = "directory"

    def __init__(self, path: Path, stale_after: float = DEFAULT_STALE_AFTER_SECONDS):
        super().__init__(path)
        self.stale_after = stale_after
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def try_acquire(self, token: str, operation: str) -> bool:
        try:
            os.mkdir(self.path)
        except FileExistsError:
            return False
        except OSError as e:
            raise StoreIOError(f"Cannot create lock directory {self.path}: {e}")

        try:
            self._write_field("pid", str(os.getpid()))
            self._write_field("timestamp", now().isoformat())
            self._write_field("hostname", socket.gethostname())
            self._write_field("user", _current_user())
            self._write_field("operation", operation)
            self._write_field("token", token)
        except OSError as e:
            shutil.rmtree(self.path, ignore_errors=True)
            raise StoreIOError(f"Failed to write lock metadata in {self.path}: {e}")

        return True

    def release(self, token: str) -> None:
        if not self.path.exists():
            return
        if self._read_field("token") != token:
            logger.debug(f"Lock {self.path} no longer held by this handle, leaving it")
            return
        shutil.rmtree(self.path, ignore_errors=True)

    def read_info(self) -> Optional[LockInfo]:
        if not self.path.is_dir():
            return None

        token, pid, acquired_at = self._read_identity(self.path)
        hostname = self._read_field("hostname")
        alive = None
        if pid is not None and (not hostname or hostname == socket.gethostname()):
            alive = is_process_alive(pid)

        return LockInfo(
            backend=self.name,
            path=str(self.path),
            pid=pid,
            hostname=hostname,
            user=self._read_field("user"),
            operation=self._read_field("operation"),
            acquired_at=acquired_at,
            alive=alive,
            token=token,
        )

    def is_stale(self, info: LockInfo) -> bool:
        if info.pid is None:
            # Holder may still be writing its metadata
            try:
                dir_age = time.time() - self.path.stat().st_mtime
            except OSError:
                return False
            return dir_age > MISSING_PID_GRACE_SECONDS

        if info.alive is False:
            logger.info(f"Stale lock detected: process {info.pid} is dead")
            return True

        age = info.age_seconds
        if age is not None and self.stale_after > 0 and age > self.stale_after:
            logger.info(f"Stale lock detected: lock age {age:.0f}s exceeds {self.stale_after}s")
            return True

        return False

    def break_lock(self) -> bool:
        if not self.path.exists():
            return False
        # Move aside first so a concurrent acquirer never sees a half-deleted lock
        tomb = self.path.with_name(f"{self.path.name}.stale.{uuid.uuid4().hex[:8]}")
        try:
            os.rename(self.path, tomb)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreIOError(f"Failed to remove lock directory {self.path}: {e}")
        shutil.rmtree(tomb, ignore_errors=True)
        return True

    def break_stale(self, info: LockInfo) -> bool:
        """
        Remove the lock only if it still belongs to the holder in info.

        Another process may have reclaimed the stale lock and taken a fresh
        one since info was read. Reclaimers take turns through a guard
        directory, and the holder is compared before the lock is moved aside
        and again on the moved copy. On a mismatch the lock is put back and
        nothing is removed.
        """
        guard = self.path.with_name(f"{self.path.name}.reclaim")
        if not self._enter_guard(guard):
            return False
        try:
            return self._break_if_unchanged(self._identity(info))
        finally:
            try:
                os.rmdir(guard)
            except OSError:
                pass

    def _enter_guard(self, guard: Path) -> bool:
        try:
            os.mkdir(guard)
            return True
        except FileExistsError:
            pass
        except OSError as e:
            raise StoreIOError(f"Cannot create reclaim guard {guard}: {e}")

        # Left behind by a reclaimer that died mid-cleanup
        try:
            abandoned = time.time() - guard.stat().st_mtime > RECLAIM_GUARD_STALE_SECONDS
        except OSError:
            return False
        if abandoned:
            logger.info(f"Removing abandoned reclaim guard {guard}")
            try:
                os.rmdir(guard)
            except OSError:
                pass
        return False

    def _break_if_unchanged(self, expected: Tuple[Optional[str], Optional[int], Optional[datetime]]) -> bool:
        if self._read_identity(self.path) != expected:
            logger.debug(f"Lock {self.path} changed hands, not removing it")
            return False

        tomb = self.path.with_name(f"{self.path.name}.stale.{uuid.uuid4().hex[:8]}")
        try:
            os.rename(self.path, tomb)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreIOError(f"Failed to remove lock directory {self.path}: {e}")

        if self._read_identity(tomb) != expected:
            try:
                os.rename(tomb, self.path)
            except OSError as e:
                logger.warning(f"Could not restore lock {self.path} moved during stale cleanup: {e}")
                shutil.rmtree(tomb, ignore_errors=True)
            return False

        shutil.rmtree(tomb, ignore_errors=True)
        return True

    @staticmethod
    def _identity(info: LockInfo) -> Tuple[Optional[str], Optional[int], Optional[datetime]]:
        return info.token, info.pid, info.acquired_at

    def _read_identity(self, directory: Path) -> Tuple[Optional[str], Optional[int], Optional[datetime]]:
        """(token, pid, acquired_at) recorded in a lock directory."""
        pid = None
        pid_text = self._read_field("pid", directory)
        if pid_text and pid_text.isdigit():
            pid = int(pid_text)

        acquired_at = None
        timestamp = self._read_field("timestamp", directory)
        if timestamp:
            try:
                acquired_at = datetime.fromisoformat(timestamp)
            except ValueError:
                acquired_at = None

        return self._read_field("token", directory), pid, acquired_at

    def _write_field(self, name: str, value: str) -> None:
        (self.path / name).write_text(f"{value}\n", encoding="utf-8")

    def _read_field(self, name: str, directory: Optional[Path] = None) -> Optional[str]:
        try:
            value = ((directory or self.path) / name).read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return value or None


class FcntlLock(LockBackend):
    """
    File lock using fcntl.flock for inter-process synchronization.

    Holder info is written into the lock file for diagnostics. The lock
    file is unlinked on release; acquirers verify they locked the inode
    that is still linked at the path.
    """

    name = "fcntl"

    def __init__(self, path: Path):
        super().__init__(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.fd: Optional[Any] = None
        self._token: Optional[str] = None

    def try_acquire(self, token: str, operation: str) -> bool:
        import fcntl

        if self.fd is not None:
            # Flock is per open file description; refuse re-entry from this object
            return False

        fd = open(self.path, 'a+', encoding='utf-8')
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            fd.close()
            return False
        except OSError as e:
            fd.close()
            raise StoreIOError(f"Cannot lock {self.path}: {e}")

        # The file may have been unlinked by a releasing holder or force-unlock
        try:
            linked = os.stat(self.path).st_ino == os.fstat(fd.fileno()).st_ino
        except FileNotFoundError:
            linked = False
        if not linked:
            fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
            fd.close()
            return False

        # Write process info for debugging
        fd.seek(0)
        fd.truncate()
        fd.write(json.dumps({
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "user": _current_user(),
            "operation": operation,
            "acquired_at": now().isoformat(),
        }))
        fd.flush()

        self.fd = fd
        self._token = token
        return True

    def release(self, token: str) -> None:
        import fcntl

        if self.fd is None or self._token != token:
            return

        try:
            try:
                if os.stat(self.path).st_ino == os.fstat(self.fd.fileno()).st_ino:
                    self.path.unlink()
            except FileNotFoundError:
                pass
            fcntl.flock(self.fd.fileno(), fcntl.LOCK_UN)
        finally:
            self.fd.close()
            self.fd = None
            self._token = None

    def read_info(self) -> Optional[LockInfo]:
        if not self.path.exists():
            return None

        data = {}
        try:
            content = self.path.read_text(encoding="utf-8").strip()
            if content:
                data = json.loads(content)
        except (OSError, ValueError):
            data = {}

        acquired_at = None
        if data.get("acquired_at"):
            try:
                acquired_at = datetime.fromisoformat(data["acquired_at"])
            except ValueError:
                acquired_at = None

        return LockInfo(
            backend=self.name,
            path=str(self.path),
            pid=data.get("pid"),
            hostname=data.get("hostname"),
            user=data.get("user"),
            operation=data.get("operation"),
            acquired_at=acquired_at,
            alive=self.is_locked(),
        )

    def is_stale(self, info: LockInfo) -> bool:
        # A leftover file nobody holds a flock on
        return info.alive is False

    def break_lock(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreIOError(f"Failed to remove lock file {self.path}: {e}")
        return True

    def break_stale(self, info: LockInfo) -> bool:
        import fcntl

        # Unlink only while holding the flock, so a new holder is never cut loose
        try:
            fd = open(self.path, 'r')
        except FileNotFoundError:
            return False
        try:
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except (BlockingIOError, PermissionError):
                return False
            try:
                if os.stat(self.path).st_ino != os.fstat(fd.fileno()).st_ino:
                    return False
                self.path.unlink()
                return True
            except FileNotFoundError:
                return False
            finally:
                fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
        finally:
            fd.close()

    def is_locked(self) -> bool:
        """
        Check if the lock file is currently flocked by anyone.

        Returns:
            True if locked
        """
        import fcntl

        if self.fd is not None:
            return True
        try:
            test_fd = open(self.path, 'r')
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(test_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            fcntl.flock(test_fd.fileno(), fcntl.LOCK_UN)
            return False
        except (BlockingIOError, PermissionError):
            return True
        finally:
            test_fd.close()


def create_lock_backend(
    queue_dir: Path,
    backend: str = "auto",
    stale_after: float = DEFAULT_STALE_AFTER_SECONDS
) -> LockBackend:
    """
    Create the lock backend for a queue directory.

    Args:
        queue_dir: Directory holding the queue store
        backend: "auto" (fcntl on POSIX, directory elsewhere), "fcntl" or "directory"
        stale_after: Age in seconds after which a directory lock is stale

    Returns:
        Configured lock backend
    """
    queue_dir = Path(queue_dir)
    if backend == "auto":
        backend = "fcntl" if os.name == "posix" else "directory"

    if backend == "fcntl":
        return FcntlLock(queue_dir / LOCK_FILE_NAME)
    if backend == "directory":
        return DirectoryLock(queue_dir / LOCK_DIR_NAME, stale_after=stale_after)

    raise ValidationError(f"Unknown lock backend: {backend} (expected auto, fcntl or directory)")


class LockHandle:
    """Proof of a successful acquisition; passed back to release()."""

    def __init__(self, token: str, operation: str):
        self.token = token
        self.operation = operation
        self.acquired_at = now()
        self.released = False

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"LockHandle(operation={self.operation!r}, {state})"


class LockManager:
    """
    Serializes read-modify-write access to the queue store.

    Usage:
        manager = LockManager(create_lock_backend(queue_dir))
        with manager.locked(timeout=10, operation="add"):
            # Critical section
            ...
    """

    def __init__(self, backend: LockBackend, default_timeout: float = 30.0):
        """
        Initialize lock manager.

        Args:
            backend: Lock backend (directory or fcntl)
            default_timeout: Seconds to wait when acquire() gets no timeout
        """
        self.backend = backend
        self.default_timeout = default_timeout

    def acquire(self, timeout: Optional[float] = None, operation: str = "unknown") -> LockHandle:
        """
        Acquire the lock, retrying with backoff until the timeout elapses.

        Stale locks are reclaimed before the first attempt, between
        attempts, and once more before giving up.

        Args:
            timeout: Maximum seconds to wait (default_timeout if None)
            operation: Name recorded in the lock for diagnostics

        Returns:
            LockHandle for release()

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
        """
        timeout = self.default_timeout if timeout is None else max(0.0, timeout)
        deadline = time.monotonic() + timeout
        token = uuid.uuid4().hex
        attempt = 0

        self.cleanup_stale()

        while True:
            if self.backend.try_acquire(token, operation):
                logger.debug(
                    f"Acquired queue lock (pid: {os.getpid()}, attempt: {attempt}, "
                    f"operation: {operation})"
                )
                return LockHandle(token, operation)

            if self.cleanup_stale():
                logger.debug("Cleaned up stale lock, retrying immediately")
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            delay = BACKOFF_BASE_SECONDS * (BACKOFF_FACTOR ** attempt)
            delay += random.uniform(0, BACKOFF_JITTER_SECONDS)
            delay = min(delay, BACKOFF_MAX_SECONDS, remaining)
            logger.debug(f"Lock attempt {attempt + 1} failed, waiting {delay:.2f}s")
            time.sleep(delay)
            attempt += 1

        # Final cleanup attempt before giving up
        if self.cleanup_stale() and self.backend.try_acquire(token, operation):
            return LockHandle(token, operation)

        holder = self.status()
        detail = ""
        if holder is not None:
            detail = f" (held by pid {holder.pid}, operation {holder.operation})"
        raise LockTimeoutError(
            f"Could not acquire queue lock within {timeout:.1f}s{detail}"
        )

    def release(self, handle: Optional[LockHandle]) -> None:
        """
        Release the lock. Safe to call repeatedly.

        Args:
            handle: Handle returned by acquire()
        """
        if handle is None or handle.released:
            return
        try:
            self.backend.release(handle.token)
        finally:
            handle.released = True
        logger.debug(f"Released queue lock (operation: {handle.operation})")

    @contextmanager
    def locked(self, timeout: Optional[float] = None, operation: str = "unknown") -> Iterator[LockHandle]:
        """Scoped acquisition; the lock is released on every exit path."""
        handle = self.acquire(timeout=timeout, operation=operation)
        try:
            yield handle
        finally:
            self.release(handle)

    def with_lock(self, timeout: Optional[float], fn: Callable[[], T], operation: str = "unknown") -> T:
        """
        Run fn while holding the lock.

        Args:
            timeout: Maximum seconds to wait for the lock
            fn: Callable to run inside the critical section
            operation: Name recorded in the lock

        Returns:
            Whatever fn returns
        """
        with self.locked(timeout=timeout, operation=operation):
            return fn()

    def force_unlock(self) -> bool:
        """
        Remove the lock unconditionally.

        Unsafe if another process is genuinely inside its critical section.

        Returns:
            True if a lock was removed
        """
        info = self.backend.read_info()
        removed = self.backend.break_lock()
        if removed:
            holder = f"pid {info.pid}" if info and info.pid else "unknown holder"
            logger.warning(f"Force-unlocked queue lock {self.backend.path} ({holder})")
        return removed

    def cleanup_stale(self) -> bool:
        """
        Remove the lock if its holder is gone or it exceeded the age threshold.

        Returns:
            True if a stale lock was removed
        """
        info = self.backend.read_info()
        if info is None or not self.backend.is_stale(info):
            return False
        removed = self.backend.break_stale(info)
        if removed:
            logger.info(f"Removed stale lock: {self.backend.path} (pid: {info.pid})")
        return removed

    def status(self) -> Optional[LockInfo]:
        """Current holder information, or None if the lock is not held."""
        return self.backend.read_info()

    def health(self) -> Tuple[int, List[str]]:
        """
        Score the lock system (100 = healthy) and list detected issues.

        Returns:
            Tuple of (score, issues)
        """
        score = 100
        issues: List[str] = []

        info = self.backend.read_info()
        if info is not None:
            if self.backend.is_stale(info):
                score -= 20
                issues.append(f"Stale lock detected (pid {info.pid})")
            elif info.pid is None:
                score -= 20
                issues.append("Lock held without holder information")
            else:
                age = info.age_seconds
                if age is not None and age > self.default_timeout:
                    score -= 10
                    issues.append(f"Lock held for {age:.0f}s by pid {info.pid}")

        if hasattr(os, "getloadavg"):
            load_avg = os.getloadavg()[0]
            cpus = os.cpu_count() or 1
            if load_avg > 2.0 * cpus:
                score -= 15
                issues.append(f"High system load may affect lock performance: {load_avg:.2f}")

        return score, issues
