"""Completion and zombie detection for dispatched tasks."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from ..core.exceptions import OrchestratorError, TaskTimeoutError
from ..core.state_machine import apply_failure, transition
from ..models.task import Task, TaskStatus, ProgressUpdate
from ..spawn.client import WorkerSpawner
from ..storage.task_store import TaskStore
from ..tracking.project_files import find_new_files, parse_timestamp
from ..tracking.status_channels import ProgressMarker, StatusChannels, TaskLog

if TYPE_CHECKING:
    from ..core.logger import OrchestratorLogger


GENERIC_FAILURE = "Worker process terminated without reporting completion"
COMPLETION_PATTERN = re.compile(r"\b(?:completed|task complete)\b", re.IGNORECASE)
NEGATION_PATTERN = re.compile(r"\b(?:not|never|no|failed|errors?)\b|n't\b", re.IGNORECASE)
COUNT_PATTERN = re.compile(r"\b(\d+)\s*(?:/|of)\s*(\d+)\b")
IGNORED_LEVELS = ("warn", "error")


class Outcome(str, Enum):
    """Classification of a dispatched task's signals."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class SignalSnapshot:
    """Everything known about one attempt of a task at one instant.

    ``alive`` is None when liveness cannot be determined (no handle and no
    liveness marker).
    """
    alive: Optional[bool]
    elapsed_seconds: float
    timeout_minutes: int
    grace_seconds: float = 180.0
    progress: Optional[ProgressMarker] = None
    log: Optional[TaskLog] = None
    new_files: List[str] = field(default_factory=list)


@dataclass
class Verdict:
    """Result of classifying a snapshot."""
    outcome: Outcome
    reason: str = ""
    result: Optional[str] = None
    progress: Optional[int] = None
    message: Optional[str] = None


def is_completion_line(message: str) -> bool:
    """
    Whether a log line states that the task finished.

    The completion wording must stand as whole words and the line must not
    be negated. A count such as ``2 of 3`` only counts when it is complete.
    """
    if not COMPLETION_PATTERN.search(message) or NEGATION_PATTERN.search(message):
        return False
    for done, total in COUNT_PATTERN.findall(message):
        if int(done) != int(total) or int(total) == 0:
            return False
    return True


def _completion_line(log: Optional[TaskLog]) -> Optional[str]:
    """Latest completion-worded line, ignoring warning and error entries."""
    if log is None:
        return None
    for entry in reversed(log.logs):
        if entry.get("level") in IGNORED_LEVELS:
            continue
        message = str(entry.get("message", ""))
        if is_completion_line(message):
            return message
    return None


def classify(snapshot: SignalSnapshot) -> Verdict:
    """
    Rank the signals of one attempt and decide what happened.

    Order: explicit success, explicit failure, liveness (running or timed
    out), completion-worded log line, new task files, generic failure.
    """
    progress = snapshot.progress
    log = snapshot.log

    # Explicit success
    if progress is not None and (progress.percentage >= 100 or progress.exit_code == 0):
        return Verdict(Outcome.COMPLETED, result=(log.result if log and log.result else progress.message) or "Task completed")
    if log is not None and log.status == "completed":
        return Verdict(Outcome.COMPLETED, result=log.result or "Task completed")

    # Explicit failure
    if progress is not None and progress.exit_code not in (None, 0):
        return Verdict(Outcome.FAILED, reason=progress.message or f"Worker exited with code {progress.exit_code}")
    if log is not None and log.status == "failed":
        return Verdict(Outcome.FAILED, reason=log.result or "Worker reported failure")

    # Liveness
    presumed_alive = snapshot.alive is True or (
        snapshot.alive is None and snapshot.elapsed_seconds <= snapshot.grace_seconds
    )
    if presumed_alive:
        if snapshot.elapsed_seconds > snapshot.timeout_minutes * 60:
            return Verdict(Outcome.TIMED_OUT, reason=f"Task timed out after {snapshot.timeout_minutes} minutes")
        return Verdict(
            Outcome.RUNNING,
            progress=progress.percentage if progress else None,
            message=progress.message if progress else None,
        )

    # Filesystem and log evidence left behind by a vanished worker
    line = _completion_line(log)
    if line:
        return Verdict(Outcome.COMPLETED, result=f"Completion detected in log: {line}")
    if snapshot.new_files:
        return Verdict(
            Outcome.COMPLETED,
            result=f"Completion inferred from {len(snapshot.new_files)} new file(s): {', '.join(snapshot.new_files[:10])}",
        )

    return Verdict(Outcome.FAILED, reason=GENERIC_FAILURE)


def attempt_started_at(task: Task) -> Optional[datetime]:
    """When the current attempt entered its present status."""
    return parse_timestamp(task.status_history[-1].timestamp) or parse_timestamp(task.started_at)


class CompletionDetector:
    """Sweeps non-terminal tasks and reconciles them with their workers.

    ``on_task_terminal`` is called with every child task this detector moves
    to a resting terminal state; ``on_parent_check`` is called with every
    tracking parent past its grace window.
    """

    def __init__(
        self,
        store: TaskStore,
        spawner: WorkerSpawner,
        channels: StatusChannels,
        projects_root: str,
        completion_file_extensions: List[str],
        logger: Optional["OrchestratorLogger"] = None,
        zombie_grace_seconds: float = 180.0,
        parent_grace_seconds: float = 30.0,
    ):
        self.store = store
        self.spawner = spawner
        self.channels = channels
        self.projects_root = Path(projects_root)
        self.completion_file_extensions = completion_file_extensions
        self.logger = logger
        self.zombie_grace_seconds = zombie_grace_seconds
        self.parent_grace_seconds = parent_grace_seconds
        self.on_task_terminal: Optional[Callable[[Task], None]] = None
        self.on_parent_check: Optional[Callable[[Task], None]] = None
        self.on_progress: Optional[Callable[[Task], None]] = None

    def snapshot(self, task: Task, now: Optional[datetime] = None) -> SignalSnapshot:
        """Collect the signals of a task's current attempt."""
        now = now or datetime.now()
        started = attempt_started_at(task) or now
        elapsed = max((now - started).total_seconds(), 0.0)

        handle = self.spawner.find_handle(task)
        alive = self.spawner.is_alive(handle) if handle is not None else None

        new_files: List[str] = []
        if alive is not True:
            new_files = find_new_files(
                self.projects_root / task.project_id,
                started,
                self.completion_file_extensions,
            )

        # Signals tagged with another attempt belong to an earlier worker
        attempt = task.attempt
        progress = self.channels.read_progress(task.id)
        if progress is not None and progress.attempt not in (None, attempt):
            progress = None
        log = self.channels.read_log(task.id)
        if log is not None and log.attempt not in (None, attempt):
            log = None

        return SignalSnapshot(
            alive=alive,
            elapsed_seconds=elapsed,
            timeout_minutes=task.timeout_minutes,
            grace_seconds=self.zombie_grace_seconds,
            progress=progress,
            log=log,
            new_files=new_files,
        )

    def sweep(self) -> Dict[str, int]:
        """
        Reconcile every dispatched task once.

        Errors on one task are logged and do not stop the sweep.

        Returns:
            Counts of tasks per action taken
        """
        counts = {"checked": 0, "completed": 0, "failed": 0, "requeued": 0, "running": 0}
        now = datetime.now()

        for task in self.store.list(status=(TaskStatus.ACTIVE, TaskStatus.PROCESSING)):
            counts["checked"] += 1
            try:
                if task.is_tracking:
                    self._check_parent(task, now)
                elif task.status == TaskStatus.ACTIVE:
                    if self._requeue_stuck(task, now):
                        counts["requeued"] += 1
                else:
                    action = self.check_task(task, now)
                    if action in counts:
                        counts[action] += 1
            except OrchestratorError as e:
                self._log_error(e, task)
            except OSError as e:
                self._log_error(e, task)
        return counts

    def check_task(self, task: Task, now: Optional[datetime] = None) -> str:
        """
        Classify one processing task and apply the verdict.

        Returns:
            "running", "completed", "failed" or "requeued"
        """
        snapshot = self.snapshot(task, now)
        verdict = classify(snapshot)

        if verdict.outcome == Outcome.RUNNING:
            self._refresh_progress(task, verdict)
            return "running"
        if verdict.outcome == Outcome.COMPLETED:
            return self._complete(task, verdict, snapshot.new_files)
        reason = verdict.reason
        if verdict.outcome == Outcome.TIMED_OUT:
            reason = str(TaskTimeoutError(task.id, task.timeout_minutes))
        return self._fail(task, reason)

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    def _refresh_progress(self, task: Task, verdict: Verdict) -> None:
        if verdict.progress is None or verdict.progress == task.progress:
            return

        def apply(current: Task) -> None:
            if current.status != TaskStatus.PROCESSING:
                return
            current.progress = verdict.progress
            if verdict.message:
                current.current_step = verdict.message
            current.progress_updates.append(ProgressUpdate(verdict.progress, verdict.message or ""))
            current.updated_at = datetime.now().isoformat()

        updated = self.store.modify(task.id, apply)
        if self.on_progress and updated.parent_task_id:
            self.on_progress(updated)

    def _complete(self, task: Task, verdict: Verdict, new_files: List[str]) -> str:
        changed = []

        def apply(current: Task) -> None:
            if current.status != TaskStatus.PROCESSING:
                return
            transition(current, TaskStatus.COMPLETED, "Worker finished")
            current.result = verdict.result
            current.progress = 100
            current.error = None
            for path in new_files:
                if path not in current.artifacts:
                    current.artifacts.append(path)
            changed.append(True)

        updated = self.store.modify(task.id, apply)
        if not changed:
            return "running"
        if self.logger:
            self.logger.log_transition(task.id, "processing", "completed", verdict.result or "")
        self._notify_terminal(updated)
        return "completed"

    def _fail(self, task: Task, reason: str) -> str:
        outcome = []

        def apply(current: Task) -> None:
            if current.status != TaskStatus.PROCESSING:
                return
            outcome.append(apply_failure(current, reason))

        updated = self.store.modify(task.id, apply)
        if not outcome:
            return "running"
        if outcome[0]:
            if self.logger:
                self.logger.log_transition(task.id, "processing", "pending", f"retrying: {reason}")
            return "requeued"
        if self.logger:
            self.logger.log_transition(task.id, "processing", "failed", updated.error or reason)
        self._notify_terminal(updated)
        return "failed"

    def _requeue_stuck(self, task: Task, now: datetime) -> bool:
        """Return an ``active`` task whose dispatch never finished to the queue."""
        started = attempt_started_at(task)
        if started is None or (now - started).total_seconds() <= self.zombie_grace_seconds:
            return False

        moved = []

        def apply(current: Task) -> None:
            if current.status != TaskStatus.ACTIVE:
                return
            transition(current, TaskStatus.PENDING, "Dispatch interrupted, requeued")
            moved.append(True)

        self.store.modify(task.id, apply)
        if moved and self.logger:
            self.logger.log_transition(task.id, "active", "pending", "dispatch interrupted")
        return bool(moved)

    def _check_parent(self, parent: Task, now: datetime) -> None:
        """Tracking parents never fail on liveness; they follow their children."""
        if parent.status != TaskStatus.PROCESSING or self.on_parent_check is None:
            return
        # Grace runs from when coordination began, not from task creation
        started = attempt_started_at(parent) or now
        if (now - started).total_seconds() < self.parent_grace_seconds:
            return
        self.on_parent_check(parent)

    def _notify_terminal(self, task: Task) -> None:
        if task.parent_task_id and self.on_task_terminal:
            self.on_task_terminal(task)

    def _log_error(self, error: Exception, task: Task) -> None:
        if self.logger:
            self.logger.log_error_with_traceback("Detector", error, {"task_id": task.id})
