"""Wiring of all orchestrator components."""

from typing import Any, Dict, List, Optional

from .config import QueueConfig, Settings
from .coordination.pipeline import PipelineOrchestrator
from .coordination.worker_pool import WorkerPoolManager
from .core.logger import OrchestratorLogger
from .models.task import Task, TaskKind, TaskStatus
from .scheduler.detector import CompletionDetector
from .scheduler.queue_processor import QueueProcessor
from .service import TaskService
from .spawn.client import WorkerSpawner
from .spawn.factory import WorkerSpawnerFactory
from .storage.task_store import TaskStore
from .tracking.shared_context import SharedContextManager
from .tracking.status_channels import StatusChannels


class TaskRelay:
    """One orchestrator instance: store, queue, detector and coordinators.

    Terminal child tasks are routed to the pipeline or worker pool that owns
    them; tracking parents past their grace window are re-derived from their
    children on every sweep.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        spawner: Optional[WorkerSpawner] = None,
        logger: Optional[OrchestratorLogger] = None,
    ):
        """
        Build and wire all components.

        Args:
            settings: Settings (read from the environment when omitted)
            spawner: Spawn backend (built from ``settings.worker_backend`` when omitted)
            logger: Logger (built from the logging settings when omitted)
        """
        self.settings = settings or Settings.from_env()
        s = self.settings
        self.logger = logger or OrchestratorLogger(
            log_dir=str(s.log_dir),
            log_level=s.log_level,
            sync=s.log_fsync,
        )

        self.store = TaskStore(state_dir=str(s.state_dir))
        self.channels = StatusChannels(scratch_dir=str(s.scratch_dir))
        self.spawner = spawner or WorkerSpawnerFactory.create(
            backend=s.worker_backend,
            projects_root=str(s.projects_root),
            channels=self.channels,
            worker_command=s.worker_command,
            output_format=s.worker_output_format,
            model=s.worker_model,
            logger=self.logger,
        )

        self.detector = CompletionDetector(
            self.store,
            self.spawner,
            self.channels,
            projects_root=str(s.projects_root),
            completion_file_extensions=s.completion_file_extensions,
            logger=self.logger,
            zombie_grace_seconds=s.zombie_grace_seconds,
            parent_grace_seconds=s.parent_grace_seconds,
        )
        self.queue = QueueProcessor(
            self.store,
            self.spawner,
            self.channels,
            config=s.queue,
            detector=self.detector,
            logger=self.logger,
        )
        self.service = TaskService(self.store, queue_config=s.queue, logger=self.logger)
        self.contexts = SharedContextManager()
        self.pipelines = PipelineOrchestrator(
            self.store,
            self.service,
            self.queue,
            self.contexts,
            projects_root=str(s.projects_root),
            logger=self.logger,
            max_step_count=s.max_pool_workers,
            templates_file=str(s.pipeline_templates_file) if s.pipeline_templates_file else None,
        )
        self.pools = WorkerPoolManager(
            self.store,
            self.service,
            self.queue,
            self.contexts,
            projects_root=str(s.projects_root),
            logger=self.logger,
            max_pool_workers=s.max_pool_workers,
        )

        self.detector.on_task_terminal = self._on_child_terminal
        self.detector.on_parent_check = self._on_parent_check
        self.detector.on_progress = self._on_child_progress
        self.queue.on_task_terminal = self._on_child_terminal
        self.service.on_task_retried = self._on_child_retried

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _parent_kind(self, child: Task) -> Optional[TaskKind]:
        if not child.parent_task_id:
            return None
        parent = self.store.get(child.parent_task_id)
        return parent.kind if parent else None

    def _on_child_terminal(self, child: Task) -> None:
        kind = self._parent_kind(child)
        if kind == TaskKind.PIPELINE:
            self.pipelines.on_task_terminal(child)
        elif kind == TaskKind.WORKER_POOL:
            self.pools.on_task_terminal(child)

    def _on_child_retried(self, child: Task) -> None:
        kind = self._parent_kind(child)
        if kind == TaskKind.PIPELINE:
            self.pipelines.on_task_retried(child)
        elif kind == TaskKind.WORKER_POOL:
            self.pools.on_task_retried(child)

    def _on_child_progress(self, child: Task) -> None:
        kind = self._parent_kind(child)
        if kind == TaskKind.PIPELINE:
            self.pipelines.on_child_progress(child)
        elif kind == TaskKind.WORKER_POOL:
            self.pools.on_worker_progress(child)

    def _on_parent_check(self, parent: Task) -> None:
        if parent.kind == TaskKind.PIPELINE:
            self.pipelines.reconcile(parent)
        elif parent.kind == TaskKind.WORKER_POOL:
            self.pools.reconcile(parent)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, project_id: str, title: str, dispatch: bool = False, **kwargs) -> Task:
        """
        Create a task; with ``dispatch`` it is queued and admitted right away.

        Args:
            project_id: Owning project
            title: Task title
            dispatch: Queue the task and run admission immediately
            **kwargs: Passed to TaskService.create_task

        Returns:
            The task as stored after admission
        """
        if dispatch:
            kwargs["auto_start"] = True
        task = self.service.create_task(project_id, title, **kwargs)
        if task.status == TaskStatus.PENDING and dispatch:
            self.queue.kick()
            task = self.store.require(task.id)
        return task

    def list_tasks(self, **filters) -> List[Task]:
        return self.service.list_tasks(**filters)

    # ------------------------------------------------------------------
    # Queue control
    # ------------------------------------------------------------------

    def process_queue(self) -> Dict[str, Any]:
        return self.queue.process_queue()

    def start(self) -> None:
        self.queue.start()

    def stop(self) -> None:
        self.queue.stop()

    def configure_queue(self, **changes) -> QueueConfig:
        """Update queue settings; new tasks pick up the new defaults."""
        config = self.queue.configure(**changes)
        self.service.queue_config = config
        self.settings.queue = config
        return config

    def status(self) -> Dict[str, Any]:
        """Queue statistics plus the pending pipelines and pools."""
        stats = self.queue.stats()
        tracking = self.store.list(status=TaskStatus.PROCESSING)
        stats["pipelines"] = [
            {"task_id": t.id, **self.pipelines.get_pipeline_status(t.id).to_dict()}
            for t in tracking if t.kind == TaskKind.PIPELINE
        ]
        stats["worker_pools"] = [
            {"task_id": t.id, **self.pools.check_worker_pool_completion(t.id).to_dict()}
            for t in tracking if t.kind == TaskKind.WORKER_POOL
        ]
        return stats
