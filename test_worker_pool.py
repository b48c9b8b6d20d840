"""Tests for worker pool fan-out, settlement and reporting."""

import pytest

from conftest import crash, finish, make_relay
from taskrelay.coordination.worker_pool import POOL_STEP_ID, generate_work_scopes
from taskrelay.core.exceptions import ConfigError, InvalidStateError
from taskrelay.models.pipeline import StepStatus
from taskrelay.models.task import TaskKind, TaskStatus


def test_split_scopes_are_distinct():
    scopes = generate_work_scopes("split", 4)
    assert len(scopes) == 4
    assert len(set(scopes)) == 4
    assert all(scope for scope in scopes)
    assert scopes[0].startswith("Part 1/4")


def test_collaborative_scopes_are_identical():
    scopes = generate_work_scopes("collaborative", 3)
    assert len(set(scopes)) == 1


def test_review_scopes_have_one_primary():
    scopes = generate_work_scopes("review", 3)
    assert scopes[0].startswith("Primary")
    assert scopes[1].startswith("Reviewer 1")
    assert scopes[2].startswith("Reviewer 2")
    assert sum(1 for s in scopes if "Primary" in s) == 1


def test_unknown_strategy():
    with pytest.raises(ConfigError):
        generate_work_scopes("round-robin", 2)


def test_review_pool_spawns_three_workers(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.service.create_task("p1", "Implement login", description="Add a login form")
    assignments = relay.pools.create_worker_pool(parent.id, 3, "review", "Keep it small")

    assert len(assignments) == 3
    assert "Primary" in assignments[0].scope
    assert all("Reviewer" in a.scope for a in assignments[1:])
    assert [a.primary for a in assignments] == [True, False, False]

    parent = relay.store.require(parent.id)
    assert parent.kind == TaskKind.WORKER_POOL
    assert parent.status == TaskStatus.PROCESSING

    workers = relay.pools.workers(parent.id)
    assert [w.worker_index for w in workers] == [1, 2, 3]
    assert all(w.total_workers == 3 for w in workers)
    assert all(w.status == TaskStatus.PROCESSING for w in workers)
    assert "PRIMARY implementer" in workers[0].description
    assert "REVIEWER" in workers[1].description

    context = relay.contexts.read(relay.pools.context_path(parent))
    assert [s.step_id for s in context.steps] == [POOL_STEP_ID]
    assert len(context.steps[0].agents) == 3


def test_pool_completes_when_all_workers_complete(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.service.create_task("p1", "Split work")
    assignments = relay.pools.create_worker_pool(parent.id, 2, "split")

    finish(relay, assignments[0].task_id)
    relay.process_queue()
    status = relay.pools.check_worker_pool_completion(parent.id)
    assert not status.complete
    assert status.completed_workers == 1
    assert relay.store.require(parent.id).status == TaskStatus.PROCESSING

    finish(relay, assignments[1].task_id)
    relay.process_queue()
    status = relay.pools.check_worker_pool_completion(parent.id)
    assert status.complete
    assert status.all_workers == 2
    parent = relay.store.require(parent.id)
    assert parent.status == TaskStatus.COMPLETED
    assert "2/2" in parent.result

    assert relay.pools.settle_worker_pool(parent.id) is False

    report = relay.pools.merge_worker_outputs(parent.id)
    assert report.startswith("# Worker Pool Results")
    assert "**Workers:** 2" in report
    assert "**Status:** completed" in report


def test_failed_worker_halts_pool(tmp_path):
    relay = make_relay(tmp_path)
    relay.configure_queue(max_retries=0)
    parent = relay.service.create_task("p1", "Fragile pool")
    assignments = relay.pools.create_worker_pool(parent.id, 2, "collaborative")

    crash(relay, assignments[1].task_id)
    relay.process_queue()
    parent = relay.store.require(parent.id)
    assert parent.status == TaskStatus.PROCESSING
    assert "Worker pool failed" in parent.error
    context = relay.contexts.read(relay.pools.context_path(parent))
    assert context.steps[0].status == StepStatus.FAILED
    assert relay.pools.check_worker_pool_completion(parent.id).failed_workers == 1


def test_pool_validation(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.service.create_task("p1", "Validate me")
    with pytest.raises(ConfigError):
        relay.pools.create_worker_pool(parent.id, 0, "split")
    with pytest.raises(ConfigError):
        relay.pools.create_worker_pool(parent.id, relay.settings.max_pool_workers + 1, "split")
    with pytest.raises(ConfigError):
        relay.pools.create_worker_pool(parent.id, 2, "nonsense")
    assert relay.store.list(parent_task_id=parent.id) == []

    relay.service.cancel_task(parent.id)
    with pytest.raises(InvalidStateError):
        relay.pools.create_worker_pool(parent.id, 2, "split")


def test_empty_pool_is_not_complete(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.service.create_task("p1", "Nothing yet")
    status = relay.pools.check_worker_pool_completion(parent.id)
    assert not status.complete
    assert status.all_workers == 0


def test_retrying_a_failed_worker_resumes_the_pool(tmp_path):
    relay = make_relay(tmp_path)
    relay.configure_queue(max_retries=0)
    parent = relay.service.create_task("p1", "Second chance pool")
    assignments = relay.pools.create_worker_pool(parent.id, 2, "split")

    crash(relay, assignments[1].task_id)
    relay.process_queue()
    assert "Worker pool failed" in relay.store.require(parent.id).error

    relay.service.retry_task(assignments[1].task_id)
    parent = relay.store.require(parent.id)
    assert parent.error is None
    assert parent.current_step == "Worker Pool"
    context = relay.contexts.read(relay.pools.context_path(parent))
    assert context.steps[0].status == StepStatus.RUNNING

    relay.process_queue()
    assert relay.store.require(assignments[1].task_id).status == TaskStatus.PROCESSING
    for assignment in assignments:
        finish(relay, assignment.task_id)
    relay.process_queue()
    assert relay.store.require(parent.id).status == TaskStatus.COMPLETED


def test_interrupted_pool_creation_is_filled_in(tmp_path, monkeypatch):
    relay = make_relay(tmp_path)
    parent = relay.service.create_task("p1", "Half built")
    create_task = relay.service.create_task

    def fail_second_worker(*args, **kwargs):
        if kwargs.get("worker_index") == 2:
            raise RuntimeError("store unavailable")
        return create_task(*args, **kwargs)

    monkeypatch.setattr(relay.service, "create_task", fail_second_worker)
    with pytest.raises(RuntimeError):
        relay.pools.create_worker_pool(parent.id, 2, "split")
    monkeypatch.undo()

    assert [w.worker_index for w in relay.pools.workers(parent.id)] == [1]
    status = relay.pools.check_worker_pool_completion(parent.id)
    assert not status.complete
    assert status.all_workers == 2

    relay.process_queue()
    workers = relay.pools.workers(parent.id)
    assert [w.worker_index for w in workers] == [1, 2]
    assert all(w.status == TaskStatus.PROCESSING for w in workers)
    context = relay.contexts.read(relay.pools.context_path(parent))
    assert len(context.steps[0].agents) == 2

    for worker in workers:
        finish(relay, worker.id)
    relay.process_queue()
    assert relay.store.require(parent.id).status == TaskStatus.COMPLETED
