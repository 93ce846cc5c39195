"""Cross-process locking and atomic JSON file operations.

The shared backlog, claims table and conflict table are mutated by several
worker processes at once. Every mutation goes through
``DistributedLockManager.atomic_file_operation``, which serializes
read-modify-write cycles with a named ``filelock.FileLock`` and replaces the
target file atomically (temp file + rename), so readers never observe a
partially written record.
"""

import json
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from filelock import FileLock, Timeout

from .exceptions import LockTimeoutError, StateError

logger = logging.getLogger(__name__)

__all__ = [
    "DistributedLockManager",
    "read_json_file",
    "write_json_atomic",
]


def read_json_file(path: Path, default: Any = None) -> Any:
    """Read a JSON file without locking.

    Args:
        path: File to read.
        default: Value returned when the file does not exist.

    Returns:
        Parsed JSON content, or ``default``.

    Raises:
        StateError: If the file exists but is not valid JSON.
    """
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise StateError(
            f"Corrupt JSON in {path}: {e}", path=str(path), original_error=e
        ) from e
    except OSError as e:
        raise StateError(
            f"Cannot read {path}: {e}", path=str(path), original_error=e
        ) from e


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via a temp file and atomic rename.

    Args:
        path: Destination file.
        data: JSON-serializable content.

    Raises:
        StateError: If the write fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.write("\n")
        temp_path.replace(path)
    except OSError as e:
        raise StateError(
            f"Cannot write {path}: {e}", path=str(path), original_error=e
        ) from e
    finally:
        if temp_path.exists():
            temp_path.unlink()


class DistributedLockManager:
    """Process-safe named locks over a shared state directory.

    Features:
    - Cross-platform file locking via ``filelock``
    - Retry with exponential backoff on lock timeout
    - Atomic read-modify-write operations on JSON files
    """

    def __init__(
        self,
        state_dir: Path,
        default_timeout: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize lock manager with the shared state directory.

        Args:
            state_dir: Directory holding the shared state files
            default_timeout: Seconds to wait for a lock before giving up
            sleep: Sleep function used between retries (injectable for tests)
        """
        self.state_dir = Path(state_dir)
        self.locks_dir = self.state_dir / "locks"
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        self.default_timeout = default_timeout
        self._sleep = sleep

    def acquire_lock(self, lock_name: str, timeout: Optional[float] = None) -> FileLock:
        """
        Acquire a named lock with timeout.

        The caller owns the returned lock and must call ``release()``.
        Prefer ``locked()`` where a context manager fits.

        Args:
            lock_name: Name of the lock file (e.g., "queue", "conflicts")
            timeout: Lock acquisition timeout in seconds

        Returns:
            Acquired FileLock object

        Raises:
            LockTimeoutError: If lock cannot be acquired within timeout
        """
        if timeout is None:
            timeout = self.default_timeout

        lock_path = self.locks_dir / f"{lock_name}.lock"
        lock = FileLock(str(lock_path), timeout=timeout)

        try:
            lock.acquire()
            return lock
        except Timeout as e:
            raise LockTimeoutError(
                f"Could not acquire {lock_name} lock within {timeout}s. "
                f"Another worker may be holding it.",
                lock_name=lock_name,
                timeout=timeout,
            ) from e

    @contextmanager
    def locked(self, lock_name: str, timeout: Optional[float] = None) -> Iterator[FileLock]:
        """Hold a named lock for the duration of a ``with`` block."""
        lock = self.acquire_lock(lock_name, timeout=timeout)
        try:
            yield lock
        finally:
            lock.release()

    def atomic_file_operation(self,
                              file_path: Path,
                              operation: Callable[[Dict], Optional[Dict]],
                              lock_name: Optional[str] = None,
                              max_retries: int = 3) -> Dict:
        """
        Perform atomic read-modify-write operation on a JSON file.

        The operation receives the current content (an empty dict when the
        file does not exist yet). If it returns None it is assumed to have
        modified the dict in place; otherwise its return value is written.

        Args:
            file_path: Path to JSON file
            operation: Function that takes current data and returns modified data
            lock_name: Name for the lock (defaults to filename stem)
            max_retries: Number of attempts on lock timeout

        Returns:
            The data that was written

        Raises:
            LockTimeoutError: If lock cannot be acquired after max_retries
            StateError: If the file is corrupt or cannot be written

        Example:
            def add_item(data):
                data.setdefault("items", []).append({"id": "item-1"})

            lock_manager.atomic_file_operation(Path("backlog.json"), add_item)
        """
        if lock_name is None:
            lock_name = file_path.stem

        for attempt in range(max_retries):
            try:
                with self.locked(lock_name):
                    data = read_json_file(file_path, default={})
                    if not isinstance(data, dict):
                        raise StateError(
                            f"Expected a JSON object in {file_path}",
                            path=str(file_path),
                        )

                    result = operation(data)
                    data_to_save = data if result is None else result
                    write_json_atomic(file_path, data_to_save)
                    return data_to_save

            except LockTimeoutError:
                if attempt < max_retries - 1:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Lock timeout on {lock_name}, retrying in {wait_time}s... "
                        f"({attempt + 1}/{max_retries})"
                    )
                    self._sleep(wait_time)
                else:
                    raise

        raise LockTimeoutError(
            f"Could not acquire {lock_name} lock", lock_name=lock_name
        )

    def read_json(self, file_path: Path, default: Any = None,
                  lock_name: Optional[str] = None) -> Any:
        """
        Read a JSON file under its lock for a consistent snapshot.

        Args:
            file_path: Path to JSON file
            default: Value returned when the file does not exist
            lock_name: Name for the lock (defaults to filename stem)

        Returns:
            Parsed JSON content or default
        """
        with self.locked(lock_name or file_path.stem):
            return read_json_file(file_path, default=default)
