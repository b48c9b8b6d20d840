"""Task CRUD and lifecycle operations exposed to callers."""

from typing import Any, Callable, List, Optional, TYPE_CHECKING

from .config import QueueConfig
from .core.exceptions import InvalidStateError
from .core.state_machine import ensure_cancellable, ensure_deletable, transition
from .models.pipeline import PipelineConfig, WorkerPoolConfig
from .models.task import Task, TaskKind, TaskPriority, TaskStatus, TaskStatistics
from .storage.task_store import TaskStore

if TYPE_CHECKING:
    from .core.logger import OrchestratorLogger


EDITABLE_FIELDS = ("title", "description", "priority", "agent_id", "max_retries", "timeout_minutes")


class TaskService:
    """Synchronous task operations.

    Missing tasks raise NotFoundError and operations forbidden in the task's
    current state raise InvalidStateError; neither is retried.
    """

    def __init__(
        self,
        store: TaskStore,
        queue_config: Optional[QueueConfig] = None,
        logger: Optional["OrchestratorLogger"] = None,
    ):
        self.store = store
        self.queue_config = queue_config or QueueConfig()
        self.logger = logger
        self.on_task_retried: Optional[Callable[[Task], None]] = None

    def _log_transition(self, task: Task, from_status: str, message: str = "") -> None:
        if self.logger:
            self.logger.log_transition(task.id, from_status, task.status.value, message)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        return self.store.require(task_id)

    def list_tasks(
        self,
        project_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        parent_task_id: Optional[str] = None,
    ) -> List[Task]:
        return self.store.list(project_id=project_id, status=status, parent_task_id=parent_task_id)

    def task_summary(self, project_id: Optional[str] = None) -> TaskStatistics:
        """Count tasks by status."""
        return TaskStatistics.from_tasks(self.store.list(project_id=project_id))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_task(
        self,
        project_id: str,
        title: str,
        description: str = "",
        priority: Any = TaskPriority.MEDIUM,
        agent_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout_minutes: Optional[int] = None,
        auto_start: bool = False,
        task_id: str = "",
        **relations,
    ) -> Task:
        """
        Create a task in ``created`` (or ``pending`` with ``auto_start``).

        Args:
            project_id: Owning project
            title: Task title
            description: Instructions for the worker
            priority: TaskPriority or its string value
            agent_id: Worker agent profile (optional)
            max_retries: Retry budget (defaults to the queue setting)
            timeout_minutes: Per-attempt timeout (defaults to the queue setting)
            auto_start: Move straight to ``pending``
            task_id: Explicit ID (allocated when empty)
            **relations: parent_task_id, step_id, agent_index, worker_index, total_workers

        Returns:
            The stored task

        Raises:
            DuplicateTaskError: If ``task_id`` is already taken
        """
        if not project_id or not title:
            raise ValueError("project_id and title are required")

        task = Task(
            id=task_id,
            project_id=project_id,
            title=title,
            description=description,
            agent_id=agent_id,
            priority=priority.value if isinstance(priority, TaskPriority) else priority,
            max_retries=self.queue_config.max_retries if max_retries is None else max_retries,
            timeout_minutes=self.queue_config.default_timeout_minutes if timeout_minutes is None else timeout_minutes,
            **relations,
        )
        if auto_start:
            transition(task, TaskStatus.PENDING, "Queued on creation")
        task = self.store.create(task)
        if self.logger:
            self.logger.info(f"[Tasks] Created {task.id} ({task.priority.value}) in project {project_id}: {title}")
        return task

    def start_task(self, task_id: str) -> Task:
        """Queue a created task (``created -> pending``)."""
        task = self.store.modify(task_id, lambda t: transition(t, TaskStatus.PENDING, "Start requested"))
        self._log_transition(task, "created", "start requested")
        return task

    def cancel_task(self, task_id: str, reason: str = "Cancelled by user") -> Task:
        """
        Cancel a non-terminal task. Children of a tracking task are cancelled too.

        The worker process, if any, is not killed; its results are ignored.
        """
        previous = {}

        def apply(task: Task) -> None:
            ensure_cancellable(task)
            previous["status"] = task.status.value
            transition(task, TaskStatus.CANCELLED, reason)

        task = self.store.modify(task_id, apply)
        self._log_transition(task, previous["status"], reason)

        if task.is_tracking:
            for child in self.store.list(parent_task_id=task.id):
                if not child.status.is_terminal():
                    try:
                        self.cancel_task(child.id, f"Parent {task.id} cancelled")
                    except InvalidStateError:
                        # Settled concurrently
                        continue
        return task

    def retry_task(self, task_id: str) -> Task:
        """
        Requeue a permanently failed task with a fresh retry budget.

        A retried pipeline or pool child reopens the step its parent halted on.
        """
        def apply(task: Task) -> None:
            if task.status != TaskStatus.FAILED:
                raise InvalidStateError(task.id, f"only failed tasks can be retried (status: {task.status.value})")
            transition(task, TaskStatus.PENDING, "Manual retry")
            task.retry_count = 0
            task.completed_at = None
            task.error = None
            task.worker_pid = None

        task = self.store.modify(task_id, apply)
        self._log_transition(task, "failed", "manual retry")
        if task.parent_task_id and self.on_task_retried:
            self.on_task_retried(task)
        return task

    def update_task(self, task_id: str, **fields) -> Task:
        """
        Edit descriptive fields of a non-terminal task.

        Raises:
            ValueError: If a field is not editable
            InvalidStateError: If the task is terminal
        """
        invalid = [name for name in fields if name not in EDITABLE_FIELDS]
        if invalid:
            raise ValueError(f"Fields not editable: {', '.join(invalid)}")

        def apply(task: Task) -> None:
            if task.status.is_terminal():
                raise InvalidStateError(task.id, f"cannot edit a {task.status.value} task")
            for name, value in fields.items():
                if name == "priority":
                    value = TaskPriority.from_string(value.value if isinstance(value, TaskPriority) else value)
                setattr(task, name, value)

        return self.store.modify(task_id, apply)

    def delete_task(self, task_id: str) -> None:
        """Delete a task that is neither terminal nor processing."""
        task = self.store.require(task_id)
        ensure_deletable(task)
        self.store.delete(task_id)
        if self.logger:
            self.logger.info(f"[Tasks] Deleted {task_id}")

    # ------------------------------------------------------------------
    # Tracking parents
    # ------------------------------------------------------------------

    def begin_tracking(
        self,
        task_id: str,
        kind: TaskKind,
        pipeline: Optional[PipelineConfig] = None,
        current_step: Optional[str] = None,
        worker_pool: Optional[WorkerPoolConfig] = None,
    ) -> Task:
        """
        Turn a created or pending task into a tracking parent and walk it to ``processing``.

        Tracking parents are never dispatched and never hold a queue slot.

        Raises:
            InvalidStateError: If the task is already dispatched or terminal
        """
        def apply(task: Task) -> None:
            if task.status not in (TaskStatus.CREATED, TaskStatus.PENDING):
                raise InvalidStateError(task.id, f"cannot coordinate a {task.status.value} task")
            task.kind = kind
            if pipeline is not None:
                task.pipeline = pipeline
            if worker_pool is not None:
                task.worker_pool = worker_pool
            if task.status == TaskStatus.CREATED:
                transition(task, TaskStatus.PENDING, "Coordination requested")
            transition(task, TaskStatus.ACTIVE, "Coordinating child tasks")
            transition(task, TaskStatus.PROCESSING, "Child tasks dispatched")
            task.current_step = current_step

        task = self.store.modify(task_id, apply)
        self._log_transition(task, "created", f"tracking {kind.value}")
        return task

    def finish_tracking(self, task_id: str, result: str) -> bool:
        """
        Complete a processing tracking parent.

        Returns:
            True if this call completed it
        """
        changed = []

        def apply(task: Task) -> None:
            if task.status != TaskStatus.PROCESSING:
                return
            transition(task, TaskStatus.COMPLETED, "All child tasks completed")
            task.result = result
            task.progress = 100
            changed.append(True)

        task = self.store.modify(task_id, apply)
        if changed:
            self._log_transition(task, "processing", "all child tasks completed")
        return bool(changed)

    def halt_tracking(self, task_id: str, error: str) -> None:
        """Record a halted pipeline or pool on its parent; the parent stays processing."""
        def apply(task: Task) -> None:
            if task.status != TaskStatus.PROCESSING:
                return
            task.error = error
            task.current_step = "halted"

        self.store.modify(task_id, apply)
        if self.logger:
            self.logger.warning(f"[Tasks] {task_id} halted: {error}")

    def set_tracking_step(self, task_id: str, current_step: str, progress: Optional[int] = None) -> None:
        def apply(task: Task) -> None:
            if task.status != TaskStatus.PROCESSING:
                return
            task.current_step = current_step
            if progress is not None:
                task.progress = progress

        self.store.modify(task_id, apply)

    def resume_tracking(self, task_id: str, current_step: str) -> bool:
        """
        Clear a halted parent's error so it follows its children again.

        Returns:
            True if the parent was processing and is now resumed
        """
        resumed = []

        def apply(task: Task) -> None:
            if task.status != TaskStatus.PROCESSING:
                return
            task.error = None
            task.current_step = current_step
            resumed.append(True)

        self.store.modify(task_id, apply)
        if resumed and self.logger:
            self.logger.info(f"[Tasks] {task_id} resumed at {current_step}")
        return bool(resumed)
