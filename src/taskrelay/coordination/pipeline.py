"""Pipeline orchestration: sequential steps of parallel child tasks."""

from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

from ..core.exceptions import ConfigError, InvalidStateError, OrchestratorError, StepFailure
from ..models.pipeline import (
    PIPELINE_TEMPLATES,
    PipelineConfig,
    PipelineStatus,
    PipelineStep,
    PipelineTemplate,
    StepStatus,
)
from ..models.task import Task, TaskKind, TaskPriority, TaskStatus
from ..scheduler.queue_processor import QueueProcessor
from ..service import TaskService
from ..storage.task_store import TaskStore
from ..tracking.shared_context import (
    SharedContextManager,
    advance,
    document_path,
    mark_step,
    reopen_step,
)
from .templates import load_pipeline_templates, validate_pipeline_config

if TYPE_CHECKING:
    from ..core.logger import OrchestratorLogger


class PipelineOrchestrator:
    """Drives pipelines through their steps.

    A pipeline is a tracking parent task carrying its PipelineConfig plus
    child tasks tagged with ``step_id``. No state is kept in memory: every
    call re-reads the parent, its children and the coordination document.
    """

    def __init__(
        self,
        store: TaskStore,
        service: TaskService,
        queue: QueueProcessor,
        contexts: SharedContextManager,
        projects_root: str,
        logger: Optional["OrchestratorLogger"] = None,
        max_step_count: int = 10,
        templates_file: Optional[str] = None,
    ):
        self.store = store
        self.service = service
        self.queue = queue
        self.contexts = contexts
        self.projects_root = Path(projects_root)
        self.logger = logger
        self.max_step_count = max_step_count
        self.templates: Dict[str, PipelineTemplate] = dict(PIPELINE_TEMPLATES)
        if templates_file:
            self.templates.update(load_pipeline_templates(templates_file))

    def _log(self, message: str) -> None:
        if self.logger:
            self.logger.info(f"[Pipeline] {message}")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def list_templates(self) -> List[PipelineTemplate]:
        return list(self.templates.values())

    def get_template(self, template_id: str) -> PipelineTemplate:
        template = self.templates.get(template_id)
        if template is None:
            raise ConfigError(
                f"Unknown pipeline template: {template_id}. "
                f"Available: {', '.join(sorted(self.templates))}"
            )
        return template

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def context_path(self, parent: Task) -> Path:
        return document_path(self.projects_root / parent.project_id, parent.id)

    def create_pipeline(
        self,
        project_id: str,
        title: str,
        description: str,
        config: PipelineConfig,
        agent_id: Optional[str] = None,
    ) -> Task:
        """
        Create a pipeline and immediately dispatch its first step.

        Args:
            project_id: Owning project
            title: Pipeline title
            description: Overall goal, shown to every step
            config: Ordered steps
            agent_id: Default agent profile for steps without one

        Returns:
            The tracking parent task

        Raises:
            ConfigError: If the configuration is invalid
        """
        validate_pipeline_config(config, self.max_step_count)

        parent = self.service.create_task(
            project_id=project_id,
            title=f"[Pipeline] {title}",
            description=description or f"Multi-agent pipeline: {config.template_id or 'custom'}",
            priority=TaskPriority.HIGH,
            agent_id=agent_id or "coordinator",
        )
        parent = self.service.begin_tracking(
            parent.id,
            TaskKind.PIPELINE,
            pipeline=config,
            current_step=config.steps[0].name,
        )
        self.contexts.create(
            self.context_path(parent),
            pipeline_id=config.template_id or parent.id,
            task_id=parent.id,
            steps=config.steps,
        )
        self._log(f"Created {parent.id} with {len(config.steps)} step(s)")

        self.spawn_step_agents(parent, config.steps[0], 0)
        return self.store.require(parent.id)

    def create_pipeline_from_template(
        self,
        project_id: str,
        title: str,
        description: str,
        template_id: str,
        agent_id: Optional[str] = None,
    ) -> Task:
        """Create a pipeline from a named template."""
        config = self.get_template(template_id).to_config()
        return self.create_pipeline(project_id, title, description, config, agent_id=agent_id)

    def build_step_description(self, parent: Task, step: PipelineStep, step_index: int) -> str:
        """Instructions for one child, including the coordination protocol."""
        context_file = self.context_path(parent).name
        lines = [
            f"## Pipeline Step {step_index + 1}: {step.name}",
            "",
            f"**Type:** {step.type.value}",
            f"**Step ID:** {step.id}",
            f"**Instructions:** {step.instructions}",
            "",
        ]
        if step.depends_on:
            lines.extend([f"**Depends on:** {', '.join(step.depends_on)}", ""])
        lines.extend([f"**Parent Task:** {parent.id}", ""])
        if parent.description:
            lines.extend(["## Goal", parent.description, ""])
        lines.extend([
            "## Important",
            f"1. Read {context_file} for the current pipeline status",
            f"2. Update your progress in {context_file}",
            f"3. Communicate with other agents via {context_file}",
            "4. When complete, report completion",
        ])
        if step.output_files:
            lines.extend(["", "**Expected Outputs:**"])
            lines.extend(f"- {name}" for name in step.output_files)
        return "\n".join(lines)

    def spawn_step_agents(self, parent: Task, step: PipelineStep, step_index: int) -> List[Task]:
        """
        Create, register and dispatch ``step.count`` children for a step.

        Agents that already exist for the step are not created again.

        Returns:
            The newly created child tasks
        """
        path = self.context_path(parent)
        existing = {
            child.agent_index
            for child in self.store.list(parent_task_id=parent.id)
            if child.step_id == step.id
        }

        created = []
        for agent_index in range(step.count):
            if agent_index in existing:
                continue
            suffix = f" #{agent_index + 1}" if step.count > 1 else ""
            child = self.service.create_task(
                project_id=parent.project_id,
                title=f"{step.name}{suffix}: {parent.title}",
                description=self.build_step_description(parent, step, step_index),
                priority=TaskPriority.HIGH,
                agent_id=step.agent_id or parent.agent_id,
                auto_start=True,
                parent_task_id=parent.id,
                step_id=step.id,
                agent_index=agent_index,
            )
            self.contexts.add_agent_to_step(
                path, step.id, child.agent_id or f"agent-{agent_index + 1}", child.id
            )
            created.append(child)

        self._log(f"{parent.id}: spawned {len(created)} agent(s) for step {step_index + 1} ({step.id})")
        self.queue.kick()
        return created

    # ------------------------------------------------------------------
    # Advancement
    # ------------------------------------------------------------------

    def _require_pipeline(self, parent_id: str) -> Task:
        parent = self.store.require(parent_id)
        if parent.kind != TaskKind.PIPELINE or parent.pipeline is None:
            raise InvalidStateError(parent_id, "not a pipeline task")
        return parent

    def check_step_completion(self, parent_id: str, step_id: str) -> bool:
        """
        Settle a step once all of its children are terminal.

        The step's ``running -> completed`` (or ``failed``) flip is a
        check-and-set inside the document lock; only the caller that performs
        it may finish the pipeline or spawn the next step, so repeated or
        concurrent calls are no-ops.

        Returns:
            True if this call completed the step and advanced the pipeline
        """
        parent = self._require_pipeline(parent_id)
        if parent.status != TaskStatus.PROCESSING:
            return False
        config = parent.pipeline
        step_index = config.step_index(step_id)
        if step_index < 0:
            raise ConfigError(f"Pipeline {parent_id} has no step '{step_id}'")

        children = [c for c in self.store.list(parent_task_id=parent_id) if c.step_id == step_id]
        if not children:
            return False
        failed = [c for c in children if c.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)]
        all_completed = all(c.status == TaskStatus.COMPLETED for c in children)
        if not all_completed and not failed:
            return False

        decision = None
        with self.contexts.transaction(self.context_path(parent), owner=parent_id) as context:
            step = context.get_step(step_id) if context else None
            if step is not None and step.status == StepStatus.RUNNING:
                if failed:
                    mark_step(context, step_id, StepStatus.FAILED,
                              summary=f"{len(failed)} of {len(children)} agent(s) failed")
                    for child in failed:
                        slot = step.find_agent(child.id)
                        if slot:
                            slot.status = child.status.value
                    decision = "halt"
                else:
                    for child in children:
                        slot = step.find_agent(child.id)
                        if slot:
                            slot.status = "completed"
                            slot.progress = 100
                        for artifact in child.artifacts:
                            if artifact not in step.outputs:
                                step.outputs.append(artifact)
                    mark_step(context, step_id, StepStatus.COMPLETED,
                              summary=f"{len(children)} agent(s) completed")
                    next_index = advance(context)
                    decision = "finish" if next_index >= len(config.steps) else "next"

        if decision is None:
            return False

        if decision == "halt":
            failure = StepFailure(parent_id, step_id, [c.id for c in failed])
            self.service.halt_tracking(parent_id, str(failure))
            if self.logger:
                self.logger.warning(f"[Pipeline] {parent_id}: {failure}")
            return False

        if decision == "finish":
            self.service.finish_tracking(
                parent_id,
                f"Pipeline completed: {len(config.steps)} step(s) finished",
            )
            self._log(f"{parent_id}: completed")
            return True

        next_step = config.steps[step_index + 1]
        self.service.set_tracking_step(
            parent_id,
            next_step.name,
            progress=int((step_index + 1) * 100 / len(config.steps)),
        )
        self._log(f"{parent_id}: step {step_index + 1} completed, starting {next_step.id}")
        self.spawn_step_agents(parent, next_step, step_index + 1)
        return True

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def on_task_terminal(self, child: Task) -> None:
        """Completion hook for a child that reached a resting terminal state."""
        if not child.parent_task_id or not child.step_id:
            return
        try:
            self.check_step_completion(child.parent_task_id, child.step_id)
        except OrchestratorError as e:
            if self.logger:
                self.logger.log_error_with_traceback("Pipeline", e, {"task_id": child.id})

    def on_task_retried(self, child: Task) -> None:
        """
        Resume a halted pipeline when one of its failed children is retried.

        The halted step goes back to ``running`` and the parent's error is
        cleared, so the step settles again once the retried child finishes.
        Children still failed in that step halt it again at the next check.
        """
        if not child.parent_task_id or not child.step_id:
            return
        parent = self.store.get(child.parent_task_id)
        if parent is None or parent.kind != TaskKind.PIPELINE or parent.status != TaskStatus.PROCESSING:
            return
        with self.contexts.transaction(self.context_path(parent), owner=parent.id) as context:
            reopened = context is not None and reopen_step(context, child.step_id, child.id)
            step_name = context.get_step(child.step_id).step_name if reopened else None
        if reopened:
            self.service.resume_tracking(parent.id, step_name)
            self._log(f"{parent.id}: step {child.step_id} reopened for {child.id}")

    def on_child_progress(self, child: Task) -> None:
        """Mirror a child's progress into the coordination document."""
        if not child.parent_task_id or not child.step_id or child.progress is None:
            return
        parent = self.store.get(child.parent_task_id)
        if parent is None:
            return
        self.contexts.update_agent_progress(
            self.context_path(parent), child.step_id, child.id, child.progress
        )

    def reconcile(self, parent: Task) -> None:
        """
        Re-derive a pipeline from its children.

        Settles the current step if its children are done, and re-spawns a
        running step whose children were never created.
        """
        if parent.kind != TaskKind.PIPELINE or parent.pipeline is None:
            return
        context = self.contexts.read(self.context_path(parent))
        if context is None or context.current_step >= len(parent.pipeline.steps):
            return
        step = parent.pipeline.steps[context.current_step]
        step_context = context.steps[context.current_step]
        if step_context.status != StepStatus.RUNNING:
            return

        if not any(c.step_id == step.id for c in self.store.list(parent_task_id=parent.id)):
            self.spawn_step_agents(parent, step, context.current_step)
            return
        self.check_step_completion(parent.id, step.id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_pipeline_status(self, parent_id: str) -> PipelineStatus:
        """
        Current position of a pipeline.

        Returns:
            PipelineStatus with a 1-based step, or step 0 and status
            ``"starting"`` when the coordination document doesn't exist yet
        """
        parent = self._require_pipeline(parent_id)
        total = len(parent.pipeline.steps)
        context = self.contexts.read(self.context_path(parent))
        if context is None or not context.steps:
            return PipelineStatus(step=0, total_steps=total, current_step_name="", status="starting")

        index = min(context.current_step, len(context.steps) - 1)
        step = context.steps[index]
        if parent.status == TaskStatus.COMPLETED:
            status = "completed"
        elif parent.status == TaskStatus.CANCELLED:
            status = "cancelled"
        elif any(s.status == StepStatus.FAILED for s in context.steps):
            status = "failed"
        else:
            status = step.status.value
        return PipelineStatus(
            step=index + 1,
            total_steps=total,
            current_step_name=step.step_name,
            status=status,
        )
