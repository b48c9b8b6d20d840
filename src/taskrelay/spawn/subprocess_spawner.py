"""Spawner that runs each worker as a detached local process."""

import os
import shutil
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

from ..core.exceptions import SpawnError
from ..models.task import Task
from ..tracking.status_channels import StatusChannels
from .client import SpawnHandle, WorkerSpawner, pid_alive

if TYPE_CHECKING:
    from ..core.logger import OrchestratorLogger


class SubprocessSpawner(WorkerSpawner):
    """Launches the worker CLI through ``taskrelay.spawn.wrapper``.

    The wrapper owns the status channels of its task: it writes the liveness
    marker and progress, and appends the worker's output to the task log.
    """

    def __init__(
        self,
        projects_root: str,
        channels: StatusChannels,
        worker_command: str = "agent",
        output_format: str = "text",
        model: Optional[str] = None,
        logger: Optional["OrchestratorLogger"] = None,
    ):
        """
        Initialize the spawner.

        Args:
            projects_root: Directory containing one working directory per project
            channels: Status channels shared with the detector
            worker_command: Worker CLI executable
            output_format: Output format passed to the worker CLI
            model: Model passed to the worker CLI (optional)
            logger: Logger instance (optional)
        """
        self.projects_root = Path(projects_root)
        self.channels = channels
        self.worker_command = worker_command
        self.output_format = output_format
        self.model = model
        self.logger = logger
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def build_prompt(self, task: Task) -> str:
        """Prompt handed to the worker CLI."""
        parts = [f"# Task: {task.title}", ""]
        if task.description:
            parts.extend([task.description, ""])
        parts.extend([
            "## Progress reporting",
            "Print lines of the form `PROGRESS: <percent>% - <message>` as you work.",
        ])
        return "\n".join(parts)

    def build_command(self, task: Task) -> List[str]:
        """Full command line: the wrapper followed by the worker CLI invocation."""
        cmd = [
            sys.executable, "-m", "taskrelay.spawn.wrapper",
            "--task-id", task.id,
            "--scratch-dir", str(self.channels.scratch_dir.resolve()),
            "--timeout-minutes", str(task.timeout_minutes),
            "--attempt", str(task.attempt),
            "--",
            self.worker_command, "-p", self.build_prompt(task),
            "--output-format", self.output_format,
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    def spawn(self, task: Task) -> SpawnHandle:
        if shutil.which(self.worker_command) is None:
            raise SpawnError(
                f"Worker command not found: {self.worker_command}",
                retryable=False,
            )

        project_dir = self.projects_root / task.project_id
        try:
            project_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SpawnError(f"Cannot create project directory {project_dir}: {e}", original_error=e)

        env = os.environ.copy()
        env.update({
            "TASKRELAY_TASK_ID": task.id,
            "TASKRELAY_PROJECT_DIR": str(project_dir.resolve()),
            "TASKRELAY_PROGRESS_FILE": str(self.channels.progress_path(task.id).resolve()),
            "TASKRELAY_LOG_FILE": str(self.channels.log_path(task.id).resolve()),
            "TASKRELAY_ATTEMPT": str(task.attempt),
        })

        try:
            process = subprocess.Popen(
                self.build_command(task),
                cwd=str(project_dir),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Failed to launch worker for {task.id}: {e}", original_error=e)

        with self._lock:
            self._processes[task.id] = process
        if self.logger:
            self.logger.info(f"[Spawner] Launched worker for {task.id} (pid {process.pid})")
        return SpawnHandle(task_id=task.id, pid=process.pid)

    def is_alive(self, handle: SpawnHandle) -> bool:
        with self._lock:
            process = self._processes.get(handle.task_id)
        if process is not None and process.pid == handle.pid:
            # poll() also reaps the exited child
            if process.poll() is None:
                return True
            with self._lock:
                self._processes.pop(handle.task_id, None)
            return False
        return pid_alive(handle.pid)

    def find_handle(self, task: Task) -> Optional[SpawnHandle]:
        with self._lock:
            process = self._processes.get(task.id)
        if process is not None:
            return SpawnHandle(task_id=task.id, pid=process.pid, started_at=task.started_at)

        pid = self.channels.read_pid(task.id) or task.worker_pid
        if pid:
            return SpawnHandle(task_id=task.id, pid=pid, started_at=task.started_at)
        return None
