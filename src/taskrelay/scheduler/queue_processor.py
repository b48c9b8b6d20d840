"""Queue processing: admission control, priority scheduling and dispatch."""

import threading
from datetime import datetime
from typing import Callable, Dict, Any, List, Optional, TYPE_CHECKING

from ..config import QueueConfig
from ..core.exceptions import InvalidStateError, OrchestratorError, SpawnError
from ..core.state_machine import apply_failure, transition
from ..models.task import Task, TaskStatus, TaskStatistics
from ..spawn.client import WorkerSpawner
from ..storage.task_store import TaskStore
from ..tracking.project_files import parse_timestamp
from ..tracking.status_channels import StatusChannels
from .detector import CompletionDetector

if TYPE_CHECKING:
    from ..core.logger import OrchestratorLogger


def schedule_order(tasks: List[Task]) -> List[Task]:
    """Sort by priority (highest first), then by creation time (oldest first)."""
    def key(task: Task):
        created = parse_timestamp(task.created_at)
        return (-task.priority.to_score(), created.timestamp() if created else 0.0)
    return sorted(tasks, key=key)


class QueueProcessor:
    """Periodic scheduler over the task store.

    Every tick sweeps dispatched tasks through the detector, then admits up to
    ``max_concurrent_tasks - running`` pending tasks in priority order and
    dispatches them. Tracking parents never occupy a slot.
    """

    def __init__(
        self,
        store: TaskStore,
        spawner: WorkerSpawner,
        channels: StatusChannels,
        config: Optional[QueueConfig] = None,
        detector: Optional[CompletionDetector] = None,
        logger: Optional["OrchestratorLogger"] = None,
    ):
        """
        Initialize the queue processor.

        Args:
            store: Task store
            spawner: Worker spawner
            channels: Status channels initialised before each dispatch
            config: Queue configuration
            detector: Completion detector run at the start of every tick
            logger: Logger instance (optional)
        """
        self.store = store
        self.spawner = spawner
        self.channels = channels
        self.config = config or QueueConfig()
        self.config.validate()
        self.detector = detector
        self.logger = logger
        self.on_task_terminal: Optional[Callable[[Task], None]] = None

        self._tick_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def process_queue(self) -> Dict[str, Any]:
        """
        Run one full tick: zombie sweep, then admission and dispatch.

        A tick requested while another thread is mid-tick is skipped.

        Returns:
            Summary of the tick
        """
        if not self._tick_lock.acquire(blocking=False):
            if self.logger:
                self.logger.debug("[Queue] Tick already in progress, skipping")
            return {"skipped": True}
        try:
            swept = self.detector.sweep() if self.detector else {}
            dispatched = self._admit_and_dispatch()
            return {"skipped": False, "swept": swept, "dispatched": dispatched}
        finally:
            self._tick_lock.release()

    def kick(self) -> int:
        """
        Admit and dispatch immediately, without a sweep.

        Waits for an in-progress tick to finish instead of skipping.

        Returns:
            Number of tasks dispatched
        """
        with self._tick_lock:
            return self._admit_and_dispatch()

    def running_count(self, tasks: Optional[List[Task]] = None) -> int:
        """Tasks holding a slot: dispatched or mid-dispatch, excluding tracking parents."""
        tasks = tasks if tasks is not None else self.store.list()
        return sum(
            1 for t in tasks
            if not t.is_tracking and t.status in (TaskStatus.ACTIVE, TaskStatus.PROCESSING)
        )

    def _admit_and_dispatch(self) -> int:
        tasks = self.store.list()
        running = self.running_count(tasks)
        available = self.config.max_concurrent_tasks - running
        pending = [t for t in tasks if t.status == TaskStatus.PENDING and not t.is_tracking]

        if available <= 0 or not pending:
            return 0

        dispatched = 0
        for task in schedule_order(pending)[:available]:
            if self._dispatch(task.id):
                dispatched += 1

        if self.logger:
            self.logger.log_queue_tick(
                running=running,
                available_slots=available,
                dispatched=dispatched,
                pending=len(pending) - dispatched,
            )
        return dispatched

    def _dispatch(self, task_id: str) -> bool:
        """
        Move one pending task to ``active``, launch its worker and mark it ``processing``.

        Returns:
            True if a worker was launched
        """
        try:
            task = self.store.modify(
                task_id,
                lambda t: transition(t, TaskStatus.ACTIVE, "Admitted by queue"),
            )
        except InvalidStateError:
            # Picked up or cancelled since selection
            return False
        if self.logger:
            self.logger.log_transition(task.id, "pending", "active", "admitted")

        self.channels.initialize(task.id, task.title, attempt=task.attempt)
        try:
            handle = self.spawner.spawn(task)
        except SpawnError as e:
            self._spawn_failed(task, e)
            return False

        def mark_processing(current: Task) -> None:
            if current.status != TaskStatus.ACTIVE:
                return
            transition(current, TaskStatus.PROCESSING, f"Worker started (pid {handle.pid})")
            current.worker_pid = handle.pid

        task = self.store.modify(task.id, mark_processing)
        if self.logger and task.status == TaskStatus.PROCESSING:
            self.logger.log_transition(task.id, "active", "processing", f"pid {handle.pid}")
        return task.status == TaskStatus.PROCESSING

    def _spawn_failed(self, task: Task, error: SpawnError) -> None:
        reason = f"Spawn failed: {error}"
        outcome = []

        def apply(current: Task) -> None:
            if current.status != TaskStatus.ACTIVE:
                return
            outcome.append(apply_failure(current, reason))

        updated = self.store.modify(task.id, apply)
        if not outcome:
            return
        if self.logger:
            self.logger.log_error_with_traceback("QueueProcessor", error, {"task_id": task.id})
            self.logger.log_transition(
                task.id, "active", "pending" if outcome[0] else "failed", updated.error or reason
            )
        if not outcome[0] and updated.parent_task_id and self.on_task_terminal:
            self.on_task_terminal(updated)

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start periodic processing; the first tick runs immediately."""
        if self.is_running():
            return
        # Fresh event so a previous loop still winding down stays stopped
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run_loop, name="taskrelay-queue", daemon=True)
        self._thread.start()
        if self.logger:
            self.logger.info(
                f"[Queue] Started (interval {self.config.processing_interval_seconds}s, "
                f"max {self.config.max_concurrent_tasks} concurrent)"
            )

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop periodic processing and wait for the loop to exit."""
        thread = self._thread
        self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        if self.logger:
            self.logger.info("[Queue] Stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def _run_loop(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                self.process_queue()
            except OrchestratorError as e:
                if self.logger:
                    self.logger.error(f"[Queue] Tick failed: {e}")
            except Exception as e:
                if self.logger:
                    self.logger.log_error_with_traceback("QueueProcessor", e)
            stop_event.wait(self.config.processing_interval_seconds)

    # ------------------------------------------------------------------
    # Configuration and statistics
    # ------------------------------------------------------------------

    def get_config(self) -> QueueConfig:
        return self.config

    def configure(self, **changes) -> QueueConfig:
        """
        Update queue settings; a running loop is restarted to pick them up.

        Args:
            **changes: max_concurrent_tasks, default_timeout_minutes,
                max_retries, processing_interval_seconds

        Returns:
            The new configuration

        Raises:
            ConfigError: If a setting is unknown or out of range
        """
        new_config = self.config.updated(**changes)
        was_running = self.is_running()
        if was_running:
            self.stop()
        self.config = new_config
        if self.logger:
            self.logger.info(f"[Queue] Configuration updated: {new_config.to_dict()}")
        if was_running:
            self.start()
        return new_config

    def stats(self) -> Dict[str, Any]:
        """Task counts by status plus queue state."""
        statistics = TaskStatistics.from_tasks(self.store.list())
        return {
            **statistics.to_dict(),
            "is_running": self.is_running(),
            "config": self.config.to_dict(),
            "checked_at": datetime.now().isoformat(),
        }
