"""Tests for pipeline creation, step advancement and halting."""

import threading

import pytest

from conftest import crash, finish, make_relay
from taskrelay.core.exceptions import ConfigError
from taskrelay.core.state_machine import transition
from taskrelay.models.pipeline import PipelineConfig, PipelineStep, StepStatus
from taskrelay.models.task import TaskKind, TaskStatus


def three_step_config(counts=(2, 1, 1)) -> PipelineConfig:
    names = ["plan", "build", "review"]
    return PipelineConfig(steps=[
        PipelineStep(id=name, name=name.title(), count=count, instructions=f"Do the {name} work",
                     output_files=[f"{name.upper()}.md"])
        for name, count in zip(names, counts)
    ])


def step_children(relay, parent_id, step_id):
    return [t for t in relay.store.list(parent_task_id=parent_id) if t.step_id == step_id]


def complete_directly(relay, task_id):
    """Complete a child without going through the detector hooks."""
    relay.store.modify(task_id, lambda t: transition(t, TaskStatus.COMPLETED, "done"))


def test_three_step_pipeline_runs_to_completion(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Feature", "Ship the feature", three_step_config())

    assert parent.kind == TaskKind.PIPELINE
    assert parent.status == TaskStatus.PROCESSING
    assert parent.id not in relay.spawner.spawned
    plan = step_children(relay, parent.id, "plan")
    assert len(plan) == 2
    assert sorted(c.agent_index for c in plan) == [0, 1]
    assert all(c.status == TaskStatus.PROCESSING for c in plan)

    for child in plan:
        finish(relay, child.id)
    relay.process_queue()
    build = step_children(relay, parent.id, "build")
    assert len(build) == 1
    assert step_children(relay, parent.id, "review") == []

    finish(relay, build[0].id)
    relay.process_queue()
    review = step_children(relay, parent.id, "review")
    assert len(review) == 1

    finish(relay, review[0].id)
    relay.process_queue()
    parent = relay.store.require(parent.id)
    assert parent.status == TaskStatus.COMPLETED
    assert parent.progress == 100
    assert len(relay.store.list(parent_task_id=parent.id)) == 4

    status = relay.pipelines.get_pipeline_status(parent.id)
    assert status.status == "completed"
    assert status.total_steps == 3


def test_parent_never_holds_a_slot(tmp_path):
    relay = make_relay(tmp_path, max_concurrent_tasks=2)
    parent = relay.pipelines.create_pipeline("p1", "Wide", "", three_step_config((2, 1, 1)))
    assert relay.queue.running_count() == 2
    assert len(step_children(relay, parent.id, "plan")) == 2
    assert all(c.status == TaskStatus.PROCESSING for c in step_children(relay, parent.id, "plan"))


def test_k_step_pipeline_needs_exactly_k_advancements(tmp_path):
    relay = make_relay(tmp_path)
    config = PipelineConfig(steps=[PipelineStep(id=f"s{i}", name=f"Step {i}") for i in range(4)])
    parent = relay.pipelines.create_pipeline("p1", "Chain", "", config)

    advancements = 0
    for step in config.steps:
        children = step_children(relay, parent.id, step.id)
        assert len(children) == 1
        complete_directly(relay, children[0].id)
        assert relay.store.require(parent.id).status == TaskStatus.PROCESSING
        if relay.pipelines.check_step_completion(parent.id, step.id):
            advancements += 1

    assert advancements == 4
    assert relay.store.require(parent.id).status == TaskStatus.COMPLETED


def test_step_completion_is_idempotent(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Twice", "", three_step_config((1, 1, 1)))
    child = step_children(relay, parent.id, "plan")[0]
    complete_directly(relay, child.id)

    assert relay.pipelines.check_step_completion(parent.id, "plan") is True
    before = len(relay.store.list())
    history = len(relay.store.require(parent.id).status_history)
    assert relay.pipelines.check_step_completion(parent.id, "plan") is False
    assert relay.pipelines.check_step_completion(parent.id, "plan") is False
    assert len(relay.store.list()) == before
    assert len(relay.store.require(parent.id).status_history) == history
    assert len(step_children(relay, parent.id, "build")) == 1


def test_incomplete_step_does_not_advance(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Half", "", three_step_config())
    first = step_children(relay, parent.id, "plan")[0]
    complete_directly(relay, first.id)
    assert relay.pipelines.check_step_completion(parent.id, "plan") is False
    assert step_children(relay, parent.id, "build") == []


def test_failed_child_halts_pipeline(tmp_path):
    relay = make_relay(tmp_path)
    relay.configure_queue(max_retries=0)
    parent = relay.pipelines.create_pipeline("p1", "Doomed", "", three_step_config((1, 1, 1)))
    child = step_children(relay, parent.id, "plan")[0]

    crash(relay, child.id)
    relay.process_queue()
    assert relay.store.require(child.id).status == TaskStatus.FAILED

    parent = relay.store.require(parent.id)
    assert parent.status == TaskStatus.PROCESSING
    assert parent.current_step == "halted"
    assert "Step 'plan' failed" in parent.error
    assert step_children(relay, parent.id, "build") == []

    context = relay.contexts.read(relay.pipelines.context_path(parent))
    assert context.steps[0].status == StepStatus.FAILED
    assert relay.pipelines.get_pipeline_status(parent.id).status == "failed"

    # Further sweeps leave the halted pipeline alone
    relay.process_queue()
    assert step_children(relay, parent.id, "build") == []


def test_shared_context_tracks_the_pipeline(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Doc", "Goal text", three_step_config())
    path = relay.pipelines.context_path(parent)
    assert path.name == f"SHARED_CONTEXT-{parent.id}.md"

    context = relay.contexts.read(path)
    assert [s.status for s in context.steps] == [StepStatus.RUNNING, StepStatus.PENDING, StepStatus.PENDING]
    assert len(context.steps[0].agents) == 2

    child = step_children(relay, parent.id, "plan")[0]
    assert path.name in child.description
    assert "## Important" in child.description
    assert "PLAN.md" in child.description

    status = relay.pipelines.get_pipeline_status(parent.id)
    assert (status.step, status.total_steps, status.current_step_name, status.status) == (1, 3, "Plan", "running")


def test_status_before_document_exists(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Gone", "", three_step_config())
    relay.pipelines.context_path(parent).unlink()
    status = relay.pipelines.get_pipeline_status(parent.id)
    assert status.step == 0
    assert status.status == "starting"


def test_invalid_configs_create_nothing(tmp_path):
    relay = make_relay(tmp_path)
    bad_configs = [
        PipelineConfig(steps=[]),
        PipelineConfig(steps=[PipelineStep(id="a", name="A", count=0)]),
        PipelineConfig(steps=[PipelineStep(id="a", name="A"), PipelineStep(id="a", name="B")]),
        PipelineConfig(steps=[PipelineStep(id="a", name="A", depends_on=["b"]), PipelineStep(id="b", name="B")]),
    ]
    for config in bad_configs:
        with pytest.raises(ConfigError):
            relay.pipelines.create_pipeline("p1", "Bad", "", config)
    assert relay.store.list() == []


def test_create_from_template(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline_from_template("p1", "Blog post", "Write about queues", "content-creation")
    assert parent.pipeline.template_id == "content-creation"
    assert [s.id for s in parent.pipeline.steps] == ["researcher", "writers", "editor"]
    assert len(step_children(relay, parent.id, "researcher")) == 1
    assert {t.id for t in relay.pipelines.list_templates()} >= {"software-dev", "content-creation", "simple"}

    with pytest.raises(ConfigError):
        relay.pipelines.create_pipeline_from_template("p1", "x", "", "no-such-template")


def test_reconcile_respawns_missing_agents(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Restart", "", three_step_config((1, 1, 1)))
    child = step_children(relay, parent.id, "plan")[0]
    relay.service.cancel_task(child.id)
    relay.store.delete(child.id)

    relay.pipelines.reconcile(relay.store.require(parent.id))
    assert len(step_children(relay, parent.id, "plan")) == 1


def test_cancelling_parent_cancels_children(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Abort", "", three_step_config())
    relay.service.cancel_task(parent.id)
    assert relay.store.require(parent.id).status == TaskStatus.CANCELLED
    assert all(c.status == TaskStatus.CANCELLED for c in relay.store.list(parent_task_id=parent.id))
    assert relay.pipelines.get_pipeline_status(parent.id).status == "cancelled"


def test_concurrent_step_checks_advance_once(tmp_path):
    relay = make_relay(tmp_path)
    parent = relay.pipelines.create_pipeline("p1", "Racy", "", three_step_config((2, 3, 1)))
    for child in step_children(relay, parent.id, "plan"):
        complete_directly(relay, child.id)

    barrier = threading.Barrier(4)
    results = []

    def check():
        barrier.wait()
        results.append(relay.pipelines.check_step_completion(parent.id, "plan"))

    threads = [threading.Thread(target=check) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == 4
    assert results.count(True) == 1
    assert len(step_children(relay, parent.id, "build")) == 3
    context = relay.contexts.read(relay.pipelines.context_path(parent))
    assert context.current_step == 1


def test_retrying_a_failed_child_resumes_the_pipeline(tmp_path):
    relay = make_relay(tmp_path)
    relay.configure_queue(max_retries=0)
    parent = relay.pipelines.create_pipeline("p1", "Second chance", "", three_step_config((1, 1, 1)))
    child = step_children(relay, parent.id, "plan")[0]

    crash(relay, child.id)
    relay.process_queue()
    assert relay.store.require(parent.id).current_step == "halted"

    relay.service.retry_task(child.id)
    parent = relay.store.require(parent.id)
    assert parent.error is None
    assert parent.current_step == "Plan"
    context = relay.contexts.read(relay.pipelines.context_path(parent))
    assert context.steps[0].status == StepStatus.RUNNING

    relay.process_queue()
    assert relay.store.require(child.id).status == TaskStatus.PROCESSING
    finish(relay, child.id)
    relay.process_queue()
    assert relay.store.require(child.id).status == TaskStatus.COMPLETED
    assert len(step_children(relay, parent.id, "build")) == 1
    assert relay.store.require(parent.id).current_step == "Build"
