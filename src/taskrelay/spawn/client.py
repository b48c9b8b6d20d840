"""Abstract base class for worker spawners."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..models.task import Task


@dataclass
class SpawnHandle:
    """Liveness-checkable reference to a launched worker."""
    task_id: str
    pid: Optional[int] = None
    started_at: Optional[str] = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = datetime.now().isoformat()


def pid_alive(pid: Optional[int]) -> bool:
    """Check whether a process exists and is not a zombie."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True

    # Exited-but-unreaped processes still answer signal 0
    stat_file = Path(f"/proc/{pid}/stat")
    try:
        state = stat_file.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


class WorkerSpawner(ABC):
    """Abstract base class for launching one external worker per task.

    A launch failure is reported synchronously by raising SpawnError. A worker
    that starts and later fails is only observable through its status
    channels and ``is_alive``.
    """

    @abstractmethod
    def spawn(self, task: Task) -> SpawnHandle:
        """
        Launch a worker for the task.

        Args:
            task: Task to work on

        Returns:
            Handle of the launched worker

        Raises:
            SpawnError: If the worker could not be launched
        """
        pass

    @abstractmethod
    def is_alive(self, handle: SpawnHandle) -> bool:
        """Check whether the worker behind a handle is still running."""
        pass

    def find_handle(self, task: Task) -> Optional[SpawnHandle]:
        """
        Recover a handle for an already dispatched task.

        The default uses the worker pid recorded on the task. Returns None
        when liveness cannot be determined.
        """
        if task.worker_pid:
            return SpawnHandle(task_id=task.id, pid=task.worker_pid, started_at=task.started_at)
        return None
