"""Task lifecycle transitions and retry policy.

All functions mutate the given Task in place and are meant to run inside a
single ``TaskStore.modify`` call so that a transition and its bookkeeping are
persisted together.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from ..models.task import Task, TaskStatus, StatusChange
from .exceptions import InvalidStateError


ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.CREATED: frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.PENDING: frozenset({TaskStatus.ACTIVE, TaskStatus.PROCESSING, TaskStatus.CANCELLED}),
    TaskStatus.ACTIVE: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.PENDING,  # spawn failed, requeued
        TaskStatus.FAILED,  # spawn failed, budget exhausted
        TaskStatus.CANCELLED,
    }),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Check whether ``current -> target`` is an allowed transition."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(
    task: Task,
    target: TaskStatus,
    message: str = "",
    now: Optional[str] = None,
    settle: bool = True,
) -> Task:
    """
    Move a task to a new status and record it in the history.

    Args:
        task: Task to mutate
        target: New status
        message: History message
        now: Timestamp to use (defaults to current time)
        settle: Stamp ``completed_at`` when the target is terminal

    Returns:
        The same task

    Raises:
        InvalidStateError: If the transition is not allowed; the task is left unchanged
    """
    if not can_transition(task.status, target):
        raise InvalidStateError(
            task.id,
            f"cannot transition from {task.status.value} to {target.value}"
        )

    now = now or datetime.now().isoformat()
    task.status = target
    task.status_history.append(StatusChange(target, now, message))
    task.updated_at = now

    if target == TaskStatus.ACTIVE and task.started_at is None:
        task.started_at = now
    if settle and target.is_terminal():
        task.completed_at = now
    return task


def apply_failure(task: Task, reason: str, now: Optional[str] = None) -> bool:
    """
    Record a failed attempt, requeueing while retry budget remains.

    A spawn failure (task still ``active``) goes straight back to ``pending``.
    A worker failure (task ``processing``) is recorded as ``failed`` and then
    ``pending`` in the same update, leaving ``completed_at`` untouched.

    Args:
        task: Task that failed
        reason: Human readable failure reason
        now: Timestamp to use

    Returns:
        True if the task was requeued, False if it is now permanently failed
    """
    now = now or datetime.now().isoformat()
    attempts = task.retry_count + 1

    if task.retry_count < task.max_retries:
        retry_message = f"Retry {task.retry_count + 1}/{task.max_retries}: {reason}"
        if task.status == TaskStatus.ACTIVE:
            transition(task, TaskStatus.PENDING, retry_message, now=now)
        else:
            transition(task, TaskStatus.FAILED, reason, now=now, settle=False)
            transition(task, TaskStatus.PENDING, retry_message, now=now)
        task.retry_count += 1
        task.error = reason
        task.worker_pid = None
        return True

    final_error = f"Failed after {attempts} attempts: {reason}" if attempts > 1 else reason
    transition(task, TaskStatus.FAILED, final_error, now=now)
    task.error = final_error
    return False


def ensure_cancellable(task: Task) -> None:
    """Raise InvalidStateError if the task is already terminal."""
    if task.status.is_terminal():
        raise InvalidStateError(task.id, f"cannot cancel a {task.status.value} task")


def ensure_deletable(task: Task) -> None:
    """Raise InvalidStateError if the task is terminal or processing."""
    if task.status.is_terminal() or task.status == TaskStatus.PROCESSING:
        raise InvalidStateError(task.id, f"cannot delete a {task.status.value} task")
