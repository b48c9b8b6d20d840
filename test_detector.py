"""Tests for signal classification and the zombie sweep."""

import os
import time

from conftest import crash, make_relay
from taskrelay.scheduler.detector import GENERIC_FAILURE, Outcome, SignalSnapshot, classify, is_completion_line
from taskrelay.models.task import TaskStatus
from taskrelay.tracking.status_channels import ProgressMarker, TaskLog, parse_progress_line


def snapshot(**kwargs) -> SignalSnapshot:
    defaults = {"alive": False, "elapsed_seconds": 600.0, "timeout_minutes": 30, "grace_seconds": 180.0}
    defaults.update(kwargs)
    return SignalSnapshot(**defaults)


def test_explicit_success_beats_everything():
    verdict = classify(snapshot(
        alive=True,
        progress=ProgressMarker(100, "all done", exit_code=0),
        log=TaskLog(task_id="t", status="failed"),
    ))
    assert verdict.outcome == Outcome.COMPLETED
    assert verdict.result == "all done"

    verdict = classify(snapshot(log=TaskLog(task_id="t", status="completed", result="shipped")))
    assert verdict.outcome == Outcome.COMPLETED
    assert verdict.result == "shipped"


def test_explicit_failure_beats_liveness():
    verdict = classify(snapshot(alive=True, progress=ProgressMarker(0, "crashed", exit_code=2)))
    assert verdict.outcome == Outcome.FAILED
    assert verdict.reason == "crashed"

    verdict = classify(snapshot(alive=True, log=TaskLog(task_id="t", status="failed")))
    assert verdict.outcome == Outcome.FAILED


def test_alive_worker_is_running_until_timeout():
    verdict = classify(snapshot(alive=True, elapsed_seconds=60, progress=ProgressMarker(40, "halfway")))
    assert verdict.outcome == Outcome.RUNNING
    assert verdict.progress == 40
    assert verdict.message == "halfway"

    verdict = classify(snapshot(alive=True, elapsed_seconds=31 * 60))
    assert verdict.outcome == Outcome.TIMED_OUT


def test_unknown_liveness_is_alive_during_grace():
    assert classify(snapshot(alive=None, elapsed_seconds=10)).outcome == Outcome.RUNNING
    verdict = classify(snapshot(alive=None, elapsed_seconds=1000))
    assert verdict.outcome == Outcome.FAILED
    assert verdict.reason == GENERIC_FAILURE


def test_dead_worker_evidence_chain():
    log = TaskLog(task_id="t", logs=[{"message": "Task dispatched"}, {"message": "Build completed"}])
    verdict = classify(snapshot(log=log, new_files=["main.py"]))
    assert verdict.outcome == Outcome.COMPLETED
    assert "Build completed" in verdict.result

    verdict = classify(snapshot(new_files=["main.py", "README.md"]))
    assert verdict.outcome == Outcome.COMPLETED
    assert "2 new file(s)" in verdict.result

    verdict = classify(snapshot())
    assert verdict.outcome == Outcome.FAILED
    assert verdict.reason == GENERIC_FAILURE


def test_qualified_completion_lines_are_not_success():
    for line in (
        "Tests not completed",
        "0 of 3 tests completed",
        "2/3 completed",
        "Migration didn't get completed",
        "uncompleted items remain",
        "completed with errors",
    ):
        log = TaskLog(task_id="t", logs=[{"level": "info", "message": line}])
        assert classify(snapshot(log=log)).outcome == Outcome.FAILED, line

    log = TaskLog(task_id="t", logs=[{"level": "error", "message": "Deploy completed"}])
    assert classify(snapshot(log=log)).outcome == Outcome.FAILED

    assert is_completion_line("Task completed")
    assert is_completion_line("TASK COMPLETE")
    assert is_completion_line("3 of 3 tests completed")
    assert not is_completion_line("Task incomplete")


def test_parse_progress_line():
    marker = parse_progress_line("PROGRESS: 40% - writing tests")
    assert marker.percentage == 40
    assert marker.message == "writing tests"
    assert parse_progress_line("nothing here") is None


def test_dead_worker_without_evidence_fails_after_retries(tmp_path):
    relay = make_relay(tmp_path)
    task = relay.create_task("p1", "vanishing", dispatch=True, max_retries=1)

    crash(relay, task.id)
    relay.detector.sweep()
    task = relay.store.require(task.id)
    assert task.status == TaskStatus.PENDING
    assert task.status_history[-2].status == TaskStatus.FAILED
    assert task.error == GENERIC_FAILURE

    relay.queue.kick()
    crash(relay, task.id)
    relay.detector.sweep()
    task = relay.store.require(task.id)
    assert task.status == TaskStatus.FAILED
    assert task.error == f"Failed after 2 attempts: {GENERIC_FAILURE}"


def test_new_project_files_complete_a_dead_worker(tmp_path):
    relay = make_relay(tmp_path)
    task = relay.create_task("p1", "write code", dispatch=True)
    project_dir = relay.settings.project_dir("p1")
    project_dir.mkdir(parents=True)
    time.sleep(0.01)
    (project_dir / "feature.py").write_text("print('hi')\n", encoding="utf-8")
    (project_dir / "SHARED_CONTEXT-x.md").write_text("ignored\n", encoding="utf-8")
    future = time.time() + 5
    os.utime(project_dir / "feature.py", (future, future))

    crash(relay, task.id)
    counts = relay.detector.sweep()
    task = relay.store.require(task.id)
    assert counts["completed"] == 1
    assert task.status == TaskStatus.COMPLETED
    assert task.artifacts == ["feature.py"]


def test_progress_is_refreshed_for_live_workers(tmp_path):
    relay = make_relay(tmp_path)
    task = relay.create_task("p1", "long job", dispatch=True)
    relay.channels.write_progress(task.id, 55, "compiling")
    relay.detector.sweep()
    task = relay.store.require(task.id)
    assert task.status == TaskStatus.PROCESSING
    assert task.progress == 55
    assert task.current_step == "compiling"
    assert task.progress_updates[-1].percentage == 55


def test_timeout_counts_as_worker_failure(tmp_path):
    relay = make_relay(tmp_path)
    task = relay.create_task("p1", "slow", dispatch=True, max_retries=0, timeout_minutes=1)

    def backdate(t):
        t.status_history[-1].timestamp = "2000-01-01T00:00:00"

    relay.store.modify(task.id, backdate)
    relay.detector.sweep()
    task = relay.store.require(task.id)
    assert task.status == TaskStatus.FAILED
    assert "timed out after 1 minutes" in task.error


def test_signals_of_an_earlier_attempt_are_ignored(tmp_path):
    relay = make_relay(tmp_path)
    task = relay.create_task("p1", "flaky", dispatch=True, max_retries=1)
    assert task.attempt == 1

    crash(relay, task.id)
    relay.detector.sweep()
    relay.queue.kick()
    task = relay.store.require(task.id)
    assert task.status == TaskStatus.PROCESSING
    assert task.attempt == 2
    assert relay.channels.read_log(task.id).attempt == 2

    # A late writer from the first attempt is refused by the channels
    assert not relay.channels.write_progress(task.id, 100, "late success", exit_code=0, attempt=1)
    relay.detector.sweep()
    assert relay.store.require(task.id).status == TaskStatus.PROCESSING

    # and its marker is skipped by the detector if it lands anyway
    relay.channels.log_path(task.id).unlink()
    assert relay.channels.write_progress(task.id, 100, "late success", exit_code=0, attempt=1)
    relay.detector.sweep()
    task = relay.store.require(task.id)
    assert task.status == TaskStatus.PROCESSING
    assert task.progress != 100
