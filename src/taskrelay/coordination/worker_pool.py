"""Worker pools: several workers on one task."""

from pathlib import Path
from typing import Any, List, Optional, TYPE_CHECKING

from ..core.exceptions import ConfigError, InvalidStateError, OrchestratorError
from ..models.pipeline import (
    DistributionStrategy,
    PipelineStep,
    StepStatus,
    StepType,
    WorkerAssignment,
    WorkerPoolConfig,
    WorkerPoolStatus,
)
from ..models.task import Task, TaskKind, TaskPriority, TaskStatus
from ..scheduler.queue_processor import QueueProcessor
from ..service import TaskService
from ..storage.task_store import TaskStore
from ..tracking.shared_context import SharedContextManager, document_path, mark_step, reopen_step

if TYPE_CHECKING:
    from ..core.logger import OrchestratorLogger


POOL_STEP_ID = "worker-pool"

STRATEGY_GUIDELINES = {
    DistributionStrategy.SPLIT: [
        "Focus on your assigned portion only",
        "Your work will be merged with others at the end",
    ],
    DistributionStrategy.COLLABORATIVE: [
        "Coordinate with other workers through {context_file}",
        "Avoid duplicate work by checking what others have done",
    ],
}


def parse_strategy(strategy: Any) -> DistributionStrategy:
    """
    Coerce a strategy name.

    Raises:
        ConfigError: If the strategy is unknown
    """
    if isinstance(strategy, DistributionStrategy):
        return strategy
    try:
        return DistributionStrategy(str(strategy).lower())
    except ValueError as e:
        valid = ", ".join(s.value for s in DistributionStrategy)
        raise ConfigError(f"Unknown distribution strategy: {strategy} (expected one of {valid})", original_error=e)


def generate_work_scopes(strategy: Any, count: int) -> List[str]:
    """
    One scope line per worker.

    ``split`` gives every worker its own part, ``collaborative`` gives all
    workers the same scope and ``review`` makes the first worker the primary
    implementer and the rest reviewers.
    """
    strategy = parse_strategy(strategy)
    if strategy == DistributionStrategy.SPLIT:
        return [f"Part {i + 1}/{count}: Work on assigned portion" for i in range(count)]
    if strategy == DistributionStrategy.COLLABORATIVE:
        return ["Collaborative work with coordination"] * count
    return ["Primary: Implement the solution"] + [
        f"Reviewer {k}: Review and suggest improvements" for k in range(1, count)
    ]


class WorkerPoolManager:
    """Fans one task out to a pool of workers and settles it when they finish."""

    def __init__(
        self,
        store: TaskStore,
        service: TaskService,
        queue: QueueProcessor,
        contexts: SharedContextManager,
        projects_root: str,
        logger: Optional["OrchestratorLogger"] = None,
        max_pool_workers: int = 10,
    ):
        self.store = store
        self.service = service
        self.queue = queue
        self.contexts = contexts
        self.projects_root = Path(projects_root)
        self.logger = logger
        self.max_pool_workers = max_pool_workers

    def context_path(self, parent: Task) -> Path:
        return document_path(self.projects_root / parent.project_id, parent.id)

    def workers(self, parent_id: str) -> List[Task]:
        """Child tasks of a pool ordered by worker index."""
        children = [c for c in self.store.list(parent_task_id=parent_id) if c.worker_index is not None]
        return sorted(children, key=lambda c: c.worker_index)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_worker_pool(
        self,
        task_id: str,
        worker_count: int,
        strategy: Any,
        instructions: str = "",
    ) -> List[WorkerAssignment]:
        """
        Split an existing task across ``worker_count`` workers.

        Args:
            task_id: Task to turn into the pool's tracking parent
            worker_count: Number of workers
            strategy: split, collaborative or review
            instructions: Extra instructions shared by all workers

        Returns:
            One WorkerAssignment per worker

        Raises:
            ConfigError: If the count or strategy is invalid
            NotFoundError: If the task doesn't exist
            InvalidStateError: If the task is terminal or already dispatched
        """
        strategy = parse_strategy(strategy)
        if not 1 <= worker_count <= self.max_pool_workers:
            raise ConfigError(
                f"Worker count must be between 1 and {self.max_pool_workers}, got {worker_count}"
            )

        parent = self.store.require(task_id)
        if parent.status.is_terminal():
            raise InvalidStateError(task_id, f"cannot create a worker pool for a {parent.status.value} task")

        config = WorkerPoolConfig(worker_count=worker_count, strategy=strategy, instructions=instructions)
        parent = self.service.begin_tracking(
            task_id,
            TaskKind.WORKER_POOL,
            current_step="Worker Pool",
            worker_pool=config,
        )
        step = PipelineStep(
            id=POOL_STEP_ID,
            name="Worker Pool",
            type=StepType.WORKER,
            count=worker_count,
            instructions=instructions,
        )
        self.contexts.create(self.context_path(parent), pipeline_id=POOL_STEP_ID, task_id=parent.id, steps=[step])

        assignments = self.spawn_workers(parent)
        if self.logger:
            self.logger.info(
                f"[WorkerPool] {parent.id}: spawned {worker_count} worker(s) in {strategy.value} mode"
            )
        return assignments

    def spawn_workers(self, parent: Task) -> List[WorkerAssignment]:
        """
        Create, register and dispatch the pool's workers.

        Worker indexes that already have a task are skipped, so this also
        fills in a pool whose creation was interrupted.

        Returns:
            Assignments of the newly created workers
        """
        config = parent.worker_pool
        if config is None:
            raise InvalidStateError(parent.id, "worker pool has no configuration")
        path = self.context_path(parent)
        existing = {w.worker_index for w in self.workers(parent.id)}
        scopes = generate_work_scopes(config.strategy, config.worker_count)

        assignments = []
        for index, scope in enumerate(scopes):
            worker_index = index + 1
            if worker_index in existing:
                continue
            worker = self.service.create_task(
                project_id=parent.project_id,
                title=f"Worker {worker_index}/{config.worker_count}: {parent.title}",
                description=self.build_worker_description(
                    parent, worker_index, config.worker_count, scope, config.strategy, config.instructions
                ),
                priority=TaskPriority.HIGH,
                agent_id=parent.agent_id,
                auto_start=True,
                parent_task_id=parent.id,
                worker_index=worker_index,
                total_workers=config.worker_count,
            )
            self.contexts.add_agent_to_step(
                path, POOL_STEP_ID, worker.agent_id or f"worker-{worker_index}", worker.id
            )
            assignments.append(WorkerAssignment(
                worker_index=worker_index,
                task_id=worker.id,
                scope=scope,
                instructions=config.instructions,
                primary=worker_index == 1,
            ))

        self.queue.kick()
        return assignments

    def build_worker_description(
        self,
        parent: Task,
        worker_index: int,
        total_workers: int,
        scope: str,
        strategy: DistributionStrategy,
        instructions: str = "",
    ) -> str:
        context_file = self.context_path(parent).name
        lines = [
            f"## Worker {worker_index} of {total_workers}",
            "",
            f"**Parent Task:** {parent.title} ({parent.id})",
            f"**Strategy:** {strategy.value}",
            f"**Your Scope:** {scope}",
            "",
            "## Instructions",
            parent.description or parent.title,
        ]
        if instructions:
            lines.extend(["", instructions])

        guidelines = [
            f"You are part of a {total_workers}-person team working on this task",
            f"Read {context_file} to see what others are doing",
            "Update your progress regularly",
        ]
        if strategy == DistributionStrategy.REVIEW:
            if worker_index == 1:
                guidelines.extend(["You are the PRIMARY implementer", "Others will review your work"])
            else:
                guidelines.extend([
                    "You are a REVIEWER",
                    "Check the primary implementer's work and suggest improvements",
                ])
        else:
            guidelines.extend(g.format(context_file=context_file) for g in STRATEGY_GUIDELINES[strategy])

        lines.extend(["", "## Worker Pool Guidelines"])
        lines.extend(f"{n}. {text}" for n, text in enumerate(guidelines, start=1))
        lines.extend([
            "",
            "## Communication",
            f"Use {context_file} to:",
            "- Report your progress",
            "- Ask questions to other workers",
            "- Share findings or issues",
        ])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def check_worker_pool_completion(self, parent_id: str) -> WorkerPoolStatus:
        """
        Aggregate worker states.

        A pool is complete iff every configured worker exists and completed;
        a pool whose creation stopped short is never complete.
        """
        parent = self.store.get(parent_id)
        expected = parent.worker_pool.worker_count if parent and parent.worker_pool else 0
        workers = self.workers(parent_id)
        completed = [w for w in workers if w.status == TaskStatus.COMPLETED]
        failed = [w for w in workers if w.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)]
        return WorkerPoolStatus(
            complete=bool(workers) and len(workers) >= expected and len(completed) == len(workers),
            all_workers=max(len(workers), expected),
            completed_workers=len(completed),
            failed_workers=len(failed),
        )

    def reconcile(self, parent: Task) -> bool:
        """
        Bring a running pool back in line with its configuration.

        Workers missing because pool creation was interrupted are created and
        dispatched, then the pool is settled from its workers' states.

        Returns:
            True if the pool was completed
        """
        if parent.kind != TaskKind.WORKER_POOL or parent.status != TaskStatus.PROCESSING:
            return False
        config = parent.worker_pool
        if config is not None and len(self.workers(parent.id)) < config.worker_count:
            context = self.contexts.read(self.context_path(parent))
            step = context.get_step(POOL_STEP_ID) if context else None
            if step is not None and step.status == StepStatus.RUNNING:
                spawned = self.spawn_workers(parent)
                if spawned and self.logger:
                    self.logger.warning(
                        f"[WorkerPool] {parent.id}: recreated {len(spawned)} missing worker(s)"
                    )
        return self.settle_worker_pool(parent.id)

    def settle_worker_pool(self, parent_id: str) -> bool:
        """
        Complete (or halt) a pool once its workers are done.

        The pool step's ``running`` status is flipped inside the document lock,
        so only one caller settles a pool.

        Returns:
            True if this call completed the pool
        """
        parent = self.store.require(parent_id)
        if parent.kind != TaskKind.WORKER_POOL:
            raise InvalidStateError(parent_id, "not a worker pool task")
        if parent.status != TaskStatus.PROCESSING:
            return False

        status = self.check_worker_pool_completion(parent_id)
        if not status.complete and not status.failed_workers:
            return False

        workers = self.workers(parent_id)
        settled = False
        with self.contexts.transaction(self.context_path(parent), owner=parent_id) as context:
            step = context.get_step(POOL_STEP_ID) if context else None
            if step is not None and step.status == StepStatus.RUNNING:
                for worker in workers:
                    slot = step.find_agent(worker.id)
                    if slot:
                        slot.status = worker.status.value
                        if worker.status == TaskStatus.COMPLETED:
                            slot.progress = 100
                    for artifact in worker.artifacts:
                        if artifact not in step.outputs:
                            step.outputs.append(artifact)
                if status.complete:
                    mark_step(context, POOL_STEP_ID, StepStatus.COMPLETED,
                              summary=f"{status.completed_workers} worker(s) completed")
                else:
                    mark_step(context, POOL_STEP_ID, StepStatus.FAILED,
                              summary=f"{status.failed_workers} of {status.all_workers} worker(s) failed")
                settled = True

        if not settled:
            return False

        if not status.complete:
            failed_ids = [w.id for w in workers if w.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)]
            self.service.halt_tracking(parent_id, f"Worker pool failed (failed workers: {', '.join(failed_ids)})")
            return False

        self.service.finish_tracking(
            parent_id,
            f"Worker pool completed: {status.completed_workers}/{status.all_workers} worker(s) finished",
        )
        if self.logger:
            self.logger.info(f"[WorkerPool] {parent_id}: completed")
        return True

    def on_task_terminal(self, worker: Task) -> None:
        """Completion hook for a worker that reached a resting terminal state."""
        if not worker.parent_task_id:
            return
        try:
            self.settle_worker_pool(worker.parent_task_id)
        except OrchestratorError as e:
            if self.logger:
                self.logger.log_error_with_traceback("WorkerPool", e, {"task_id": worker.id})

    def on_task_retried(self, worker: Task) -> None:
        """Reopen the pool step a failed worker halted, so its retry can settle the pool."""
        parent = self.store.get(worker.parent_task_id) if worker.parent_task_id else None
        if parent is None or parent.kind != TaskKind.WORKER_POOL or parent.status != TaskStatus.PROCESSING:
            return
        with self.contexts.transaction(self.context_path(parent), owner=parent.id) as context:
            reopened = context is not None and reopen_step(context, POOL_STEP_ID, worker.id)
        if not reopened:
            return
        self.service.resume_tracking(parent.id, "Worker Pool")
        if self.logger:
            self.logger.info(f"[WorkerPool] {parent.id}: reopened for retry of {worker.id}")

    def on_worker_progress(self, worker: Task) -> None:
        if worker.progress is None or not worker.parent_task_id:
            return
        parent = self.store.get(worker.parent_task_id)
        if parent is None:
            return
        self.contexts.update_agent_progress(self.context_path(parent), POOL_STEP_ID, worker.id, worker.progress)

    def merge_worker_outputs(self, parent_id: str) -> str:
        """Markdown report of a pool's workers, outputs and messages."""
        parent = self.store.require(parent_id)
        context = self.contexts.read(self.context_path(parent))
        if context is None:
            return "No shared context found"
        step = context.get_step(POOL_STEP_ID)
        if step is None:
            return "No worker pool data found"

        lines = [
            "# Worker Pool Results",
            "",
            f"**Task:** {parent_id}",
            f"**Workers:** {len(step.agents)}",
            f"**Status:** {step.status.value}",
            "",
            "## Worker Outputs",
            "",
        ]
        for index, agent in enumerate(step.agents, start=1):
            lines.extend([
                f"### Worker {index} ({agent.agent_id})",
                f"- Task: {agent.task_id}",
                f"- Status: {agent.status}",
                f"- Progress: {agent.progress}%",
                "",
            ])
        lines.append("## Outputs")
        lines.extend(f"- {output}" for output in step.outputs)
        lines.extend(["", "## Messages"])
        lines.extend(f"[{m.sender} → {m.recipient}]: {m.message}" for m in context.messages)
        return "\n".join(lines) + "\n"
