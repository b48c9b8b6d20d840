"""Custom exceptions for the task orchestration core."""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for every error raised by taskrelay.

    Attributes:
        retryable: True when repeating the operation may succeed
        original_error: Lower-level exception this one wraps, if any
    """

    def __init__(self, message: str, retryable: bool = False, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.retryable = retryable
        self.original_error = original_error


class SpawnError(OrchestratorError):
    """Launching a worker process failed."""

    def __init__(self, message: str, retryable: bool = True, original_error: Optional[Exception] = None):
        super().__init__(message, retryable=retryable, original_error=original_error)


class WorkerFailure(OrchestratorError):
    """A worker ran but ended without success evidence."""

    def __init__(self, task_id: str, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, retryable=True, original_error=original_error)
        self.task_id = task_id


class TaskTimeoutError(WorkerFailure):
    """A worker exceeded the task's timeout."""

    def __init__(self, task_id: str, timeout_minutes: int):
        message = f"Task timed out after {timeout_minutes} minutes"
        super().__init__(task_id, message)
        self.timeout_minutes = timeout_minutes


class StepFailure(OrchestratorError):
    """A pipeline step has a permanently failed child task."""

    def __init__(self, parent_task_id: str, step_id: str, failed_task_ids: Optional[list] = None):
        failed_task_ids = failed_task_ids or []
        message = f"Step '{step_id}' failed"
        if failed_task_ids:
            message += f" (failed tasks: {', '.join(failed_task_ids)})"
        super().__init__(message, retryable=False)
        self.parent_task_id = parent_task_id
        self.step_id = step_id
        self.failed_task_ids = failed_task_ids


class ConfigError(OrchestratorError):
    """Invalid pipeline, pool or queue configuration."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, retryable=False, original_error=original_error)


class NotFoundError(OrchestratorError):
    """A referenced task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", retryable=False)
        self.task_id = task_id


class InvalidStateError(OrchestratorError):
    """An operation is not allowed in the task's current state."""

    def __init__(self, task_id: str, message: str):
        super().__init__(f"Task {task_id}: {message}", retryable=False)
        self.task_id = task_id


class DuplicateTaskError(OrchestratorError):
    """A task with the same id already exists."""

    def __init__(self, task_id: str):
        super().__init__(f"Task already exists: {task_id}", retryable=False)
        self.task_id = task_id


class StateError(OrchestratorError):
    """Error related to state persistence."""

    def __init__(self, message: str, retryable: bool = False, original_error: Optional[Exception] = None):
        super().__init__(message, retryable=retryable, original_error=original_error)


class StateCorruptionError(StateError):
    """Error when a state file is corrupted."""

    def __init__(self, filename: str, original_error: Optional[Exception] = None):
        message = f"State file corrupted: {filename}"
        super().__init__(message, retryable=False, original_error=original_error)
