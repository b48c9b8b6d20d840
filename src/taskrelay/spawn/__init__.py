"""Worker spawning."""

from .client import SpawnHandle, WorkerSpawner, pid_alive
from .subprocess_spawner import SubprocessSpawner
from .factory import WorkerSpawnerFactory

__all__ = [
    "SpawnHandle",
    "WorkerSpawner",
    "pid_alive",
    "SubprocessSpawner",
    "WorkerSpawnerFactory",
]
