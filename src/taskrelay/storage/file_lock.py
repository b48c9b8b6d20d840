"""Lock files guarding whole-document read-modify-write cycles."""

import os
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..core.exceptions import StateError


class DocumentLock:
    """Exclusive lock on one document, held through a sibling ``.lock`` file.

    Usage::

        with DocumentLock(path, owner="task_001"):
            data = read(path)
            write(path, modify(data))
    """

    def __init__(
        self,
        path: Union[str, Path],
        owner: str = "",
        timeout: float = 30.0,
        stale_after: float = 60.0,
    ):
        """
        Initialize a document lock.

        Args:
            path: Document to lock
            owner: Identifier written into the lock file
            timeout: Maximum time to wait for the lock (seconds)
            stale_after: Lock files older than this are considered abandoned
        """
        self.path = Path(path)
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.owner = owner or f"pid={os.getpid()}"
        self.timeout = timeout
        self.stale_after = stale_after
        self._held = False

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if the lock was acquired, False on timeout
        """
        start_time = time.time()
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        while time.time() - start_time < self.timeout:
            try:
                lock_fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._is_stale():
                    self._remove_lock_file()
                    continue
                time.sleep(0.05)
                continue

            lock_info = f"owner={self.owner}\ntimestamp={datetime.now().isoformat()}\nfilepath={self.path}\n"
            os.write(lock_fd, lock_info.encode('utf-8'))
            os.close(lock_fd)
            self._held = True
            return True
        return False

    def release(self) -> None:
        """Release the lock if held."""
        if not self._held:
            return
        self._remove_lock_file()
        self._held = False

    def get_owner(self) -> Optional[str]:
        """Return the owner recorded in the lock file, if any."""
        try:
            content = self.lock_file.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        for line in content.split('\n'):
            if line.startswith('owner='):
                return line.split('=', 1)[1]
        return None

    def _is_stale(self) -> bool:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.stale_after

    def _remove_lock_file(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "DocumentLock":
        if not self.acquire():
            raise StateError(
                f"Timed out after {self.timeout}s waiting for lock on {self.path} "
                f"(held by {self.get_owner() or 'unknown'})",
                retryable=True,
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
