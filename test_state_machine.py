"""Tests for task transitions and the retry policy."""

import pytest

from taskrelay.core.exceptions import InvalidStateError
from taskrelay.core.state_machine import (
    ALLOWED_TRANSITIONS,
    apply_failure,
    can_transition,
    ensure_cancellable,
    ensure_deletable,
    transition,
)
from taskrelay.models.task import Task, TaskPriority, TaskStatus


def make_task(status=TaskStatus.CREATED, **kwargs) -> Task:
    task = Task(id="task_001", project_id="p1", title="Write report", **kwargs)
    path = {
        TaskStatus.CREATED: [],
        TaskStatus.PENDING: [TaskStatus.PENDING],
        TaskStatus.ACTIVE: [TaskStatus.PENDING, TaskStatus.ACTIVE],
        TaskStatus.PROCESSING: [TaskStatus.PENDING, TaskStatus.ACTIVE, TaskStatus.PROCESSING],
        TaskStatus.COMPLETED: [TaskStatus.PENDING, TaskStatus.ACTIVE, TaskStatus.PROCESSING, TaskStatus.COMPLETED],
        TaskStatus.FAILED: [TaskStatus.PENDING, TaskStatus.ACTIVE, TaskStatus.PROCESSING, TaskStatus.FAILED],
        TaskStatus.CANCELLED: [TaskStatus.CANCELLED],
    }[status]
    for step in path:
        transition(task, step)
    return task


def test_new_task_history_mirrors_status():
    task = make_task()
    assert task.status == TaskStatus.CREATED
    assert len(task.status_history) == 1
    assert task.status_history[-1].status == TaskStatus.CREATED


def test_every_disallowed_pair_raises_and_leaves_task_unchanged():
    for current in TaskStatus:
        for target in TaskStatus:
            if can_transition(current, target):
                continue
            task = make_task(current)
            before = task.to_dict()
            with pytest.raises(InvalidStateError):
                transition(task, target)
            assert task.to_dict() == before, f"{current.value} -> {target.value} mutated the task"


def test_allowed_transitions_append_history():
    for current, targets in ALLOWED_TRANSITIONS.items():
        for target in targets:
            task = make_task(current)
            length = len(task.status_history)
            transition(task, target, "step")
            assert task.status == target
            assert len(task.status_history) == length + 1
            assert task.status_history[-1].status == target


def test_terminal_states_have_no_exits():
    assert not ALLOWED_TRANSITIONS[TaskStatus.COMPLETED]
    assert not ALLOWED_TRANSITIONS[TaskStatus.CANCELLED]
    assert ALLOWED_TRANSITIONS[TaskStatus.FAILED] == {TaskStatus.PENDING}


def test_started_at_set_once():
    task = make_task(TaskStatus.ACTIVE)
    first = task.started_at
    assert first is not None
    transition(task, TaskStatus.PENDING, "requeued")
    transition(task, TaskStatus.ACTIVE, "again", now="2099-01-01T00:00:00")
    assert task.started_at == first


def test_completed_at_stamped_on_terminal():
    task = make_task(TaskStatus.PROCESSING)
    assert task.completed_at is None
    transition(task, TaskStatus.COMPLETED)
    assert task.completed_at is not None


def test_apply_failure_requeues_with_budget():
    task = make_task(TaskStatus.PROCESSING, max_retries=2)
    assert apply_failure(task, "worker died") is True
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 1
    assert task.error == "worker died"
    assert task.completed_at is None
    statuses = [change.status for change in task.status_history[-2:]]
    assert statuses == [TaskStatus.FAILED, TaskStatus.PENDING]


def test_apply_failure_from_active_goes_straight_to_pending():
    task = make_task(TaskStatus.ACTIVE, max_retries=1)
    assert apply_failure(task, "Spawn failed") is True
    assert task.status_history[-1].status == TaskStatus.PENDING
    assert task.status_history[-2].status == TaskStatus.ACTIVE


def test_apply_failure_exhausted_budget():
    task = make_task(TaskStatus.PROCESSING, max_retries=1)
    task.retry_count = 1
    assert apply_failure(task, "worker died") is False
    assert task.status == TaskStatus.FAILED
    assert task.error == "Failed after 2 attempts: worker died"
    assert task.completed_at is not None
    assert task.retry_count == 1


def test_apply_failure_without_retries_keeps_reason():
    task = make_task(TaskStatus.PROCESSING, max_retries=0)
    assert apply_failure(task, "boom") is False
    assert task.error == "boom"


def test_cancel_and_delete_guards():
    for status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
        with pytest.raises(InvalidStateError):
            ensure_cancellable(make_task(status))
        with pytest.raises(InvalidStateError):
            ensure_deletable(make_task(status))

    with pytest.raises(InvalidStateError):
        ensure_deletable(make_task(TaskStatus.PROCESSING))
    ensure_cancellable(make_task(TaskStatus.PROCESSING))
    ensure_deletable(make_task(TaskStatus.PENDING))


def test_priority_rank():
    ranks = [TaskPriority.from_string(p).to_score() for p in ("low", "medium", "high", "urgent")]
    assert ranks == sorted(ranks)
    assert len(set(ranks)) == 4


def test_task_round_trips_through_dict():
    task = make_task(TaskStatus.PROCESSING, priority="urgent")
    task.parent_task_id = "task_000"
    task.step_id = "workers"
    task.agent_index = 1
    restored = Task.from_dict(task.to_dict())
    assert restored.to_dict() == task.to_dict()
