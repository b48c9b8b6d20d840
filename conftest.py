"""Shared fixtures: a process-free spawner and a fully wired orchestrator."""

import itertools
from typing import Dict, Optional, Set

import pytest

from taskrelay.config import QueueConfig, Settings
from taskrelay.core.exceptions import SpawnError
from taskrelay.core.logger import OrchestratorLogger
from taskrelay.models.task import Task
from taskrelay.orchestrator import TaskRelay
from taskrelay.spawn.client import SpawnHandle, WorkerSpawner


class FakeSpawner(WorkerSpawner):
    """Records spawns instead of launching processes.

    Workers are alive until ``finish`` or ``kill`` is called for them.
    """

    def __init__(self):
        self._pids = itertools.count(1000)
        self.spawned = []
        self.alive: Dict[str, bool] = {}
        self.fail_next = 0
        self.fail_always: Set[str] = set()

    def spawn(self, task: Task) -> SpawnHandle:
        if self.fail_next > 0 or task.id in self.fail_always:
            self.fail_next = max(self.fail_next - 1, 0)
            raise SpawnError(f"cannot launch worker for {task.id}")
        handle = SpawnHandle(task_id=task.id, pid=next(self._pids))
        self.spawned.append(task.id)
        self.alive[task.id] = True
        return handle

    def is_alive(self, handle: SpawnHandle) -> bool:
        return self.alive.get(handle.task_id, False)

    def find_handle(self, task: Task) -> Optional[SpawnHandle]:
        if task.id not in self.alive:
            return None
        return SpawnHandle(task_id=task.id, pid=task.worker_pid)

    def kill(self, task_id: str) -> None:
        self.alive[task_id] = False


def make_settings(tmp_path, **queue) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        projects_root=tmp_path / "projects",
        log_dir=tmp_path / "logs",
        log_level="DEBUG",
        queue=QueueConfig(**{"processing_interval_seconds": 0.05, **queue}),
        zombie_grace_seconds=0,
        parent_grace_seconds=0,
    )


def make_relay(tmp_path, **queue) -> TaskRelay:
    """Wire a TaskRelay over ``tmp_path`` with a FakeSpawner."""
    settings = make_settings(tmp_path, **queue)
    logger = OrchestratorLogger(log_dir=str(settings.log_dir), log_level="DEBUG", console=False)
    return TaskRelay(settings, spawner=FakeSpawner(), logger=logger)


def finish(relay: TaskRelay, task_id: str, message: str = "done") -> None:
    """Make a worker report success and exit."""
    relay.channels.write_progress(task_id, 100, message, exit_code=0)
    relay.spawner.kill(task_id)


def crash(relay: TaskRelay, task_id: str) -> None:
    """Make a worker vanish without reporting anything."""
    relay.channels.clear(task_id)
    relay.spawner.kill(task_id)


@pytest.fixture
def relay(tmp_path):
    relay = make_relay(tmp_path)
    yield relay
    if relay.queue.is_running():
        relay.queue.stop(timeout=1.0)
