"""Pipeline and worker pool data models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


class StepType(str, Enum):
    """Role a pipeline step plays."""
    EVALUATOR = "evaluator"
    WORKER = "worker"
    INTEGRATOR = "integrator"
    REVIEWER = "reviewer"
    TESTER = "tester"
    CUSTOM = "custom"

    @classmethod
    def from_string(cls, value: str) -> "StepType":
        """Create from string, defaulting to CUSTOM if unknown."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.CUSTOM


class StepStatus(str, Enum):
    """Pipeline step status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DistributionStrategy(str, Enum):
    """How a worker pool divides one task."""
    SPLIT = "split"
    COLLABORATIVE = "collaborative"
    REVIEW = "review"


@dataclass
class PipelineStep:
    """One step of a pipeline, fanned out to ``count`` parallel agents."""
    id: str
    name: str
    type: StepType = StepType.CUSTOM
    count: int = 1
    instructions: str = ""
    depends_on: List[str] = field(default_factory=list)
    output_files: List[str] = field(default_factory=list)
    agent_id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = StepType.from_string(self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "count": self.count,
            "instructions": self.instructions,
        }
        if self.depends_on:
            data["depends_on"] = self.depends_on
        if self.output_files:
            data["output_files"] = self.output_files
        if self.agent_id:
            data["agent_id"] = self.agent_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineStep":
        """Create PipelineStep from dictionary."""
        return cls(
            id=data.get("id", ""),
            name=data.get("name", data.get("id", "")),
            type=StepType.from_string(data.get("type", "custom")),
            count=int(data.get("count", 1)),
            instructions=data.get("instructions", ""),
            depends_on=list(data.get("depends_on", [])),
            output_files=list(data.get("output_files", [])),
            agent_id=data.get("agent_id"),
        )


@dataclass
class PipelineConfig:
    """Ordered step list carried by a pipeline's tracking task."""
    steps: List[PipelineStep] = field(default_factory=list)
    template_id: Optional[str] = None
    shared_context: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "steps": [step.to_dict() for step in self.steps],
            "shared_context": self.shared_context,
        }
        if self.template_id:
            data["template_id"] = self.template_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Create PipelineConfig from dictionary."""
        return cls(
            steps=[PipelineStep.from_dict(s) for s in data.get("steps", [])],
            template_id=data.get("template_id"),
            shared_context=data.get("shared_context", True),
        )

    def step_index(self, step_id: str) -> int:
        """Return the position of a step, or -1 if absent."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1


@dataclass
class PipelineTemplate:
    """Named, reusable pipeline definition."""
    id: str
    name: str
    description: str = ""
    steps: List[PipelineStep] = field(default_factory=list)

    def to_config(self) -> PipelineConfig:
        """Build a fresh PipelineConfig from this template."""
        return PipelineConfig(
            steps=[PipelineStep.from_dict(step.to_dict()) for step in self.steps],
            template_id=self.id,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineTemplate":
        """Create PipelineTemplate from dictionary."""
        return cls(
            id=data.get("id", ""),
            name=data.get("name", data.get("id", "")),
            description=data.get("description", ""),
            steps=[PipelineStep.from_dict(s) for s in data.get("steps", [])],
        )


PIPELINE_TEMPLATES: Dict[str, PipelineTemplate] = {
    "software-dev": PipelineTemplate(
        id="software-dev",
        name="Software Development",
        description="Evaluation, parallel workers, integration, review and testing",
        steps=[
            PipelineStep(
                id="evaluator",
                name="Evaluator & Planner",
                type=StepType.EVALUATOR,
                count=1,
                instructions="Analyze requirements and create a detailed technical plan (PLAN.md)",
                output_files=["PLAN.md", "ARCHITECTURE.md"],
            ),
            PipelineStep(
                id="workers",
                name="Development Workers",
                type=StepType.WORKER,
                count=3,
                depends_on=["evaluator"],
                instructions="Implement assigned components based on PLAN.md",
            ),
            PipelineStep(
                id="integrator",
                name="System Integrator",
                type=StepType.INTEGRATOR,
                count=1,
                depends_on=["workers"],
                instructions="Merge all worker outputs, resolve conflicts, create a unified system",
                output_files=["INTEGRATION_REPORT.md"],
            ),
            PipelineStep(
                id="reviewer",
                name="Code Reviewer",
                type=StepType.REVIEWER,
                count=1,
                depends_on=["integrator"],
                instructions="Review code quality and suggest improvements",
                output_files=["REVIEW_REPORT.md"],
            ),
            PipelineStep(
                id="tester",
                name="QA Tester",
                type=StepType.TESTER,
                count=1,
                depends_on=["integrator"],
                instructions="Create and run tests, verify functionality",
                output_files=["TEST_RESULTS.md"],
            ),
        ],
    ),
    "content-creation": PipelineTemplate(
        id="content-creation",
        name="Content Creation",
        description="Research, write, and edit content",
        steps=[
            PipelineStep(
                id="researcher",
                name="Researcher",
                type=StepType.EVALUATOR,
                count=1,
                instructions="Research topic and create content outline",
                output_files=["RESEARCH.md", "OUTLINE.md"],
            ),
            PipelineStep(
                id="writers",
                name="Content Writers",
                type=StepType.WORKER,
                count=2,
                depends_on=["researcher"],
                instructions="Write content sections based on the outline",
            ),
            PipelineStep(
                id="editor",
                name="Editor",
                type=StepType.REVIEWER,
                count=1,
                depends_on=["writers"],
                instructions="Edit and polish final content",
                output_files=["FINAL_CONTENT.md"],
            ),
        ],
    ),
    "simple": PipelineTemplate(
        id="simple",
        name="Simple Task",
        description="Single agent execution",
        steps=[
            PipelineStep(
                id="worker",
                name="Worker",
                type=StepType.CUSTOM,
                count=1,
                instructions="Execute the task",
            ),
        ],
    ),
}


@dataclass
class PipelineStatus:
    """Externally visible pipeline position (``step`` is 1-based)."""
    step: int
    total_steps: int
    current_step_name: str
    status: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "step": self.step,
            "total_steps": self.total_steps,
            "current_step_name": self.current_step_name,
            "status": self.status,
        }


@dataclass
class WorkerPoolConfig:
    """Shape of a worker pool, kept on its tracking task so missing workers can be recreated."""
    worker_count: int
    strategy: DistributionStrategy = DistributionStrategy.SPLIT
    instructions: str = ""

    def __post_init__(self):
        if isinstance(self.strategy, str):
            self.strategy = DistributionStrategy(self.strategy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_count": self.worker_count,
            "strategy": self.strategy.value,
            "instructions": self.instructions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerPoolConfig":
        return cls(
            worker_count=int(data.get("worker_count", 1)),
            strategy=data.get("strategy", "split"),
            instructions=data.get("instructions", ""),
        )


@dataclass
class WorkerAssignment:
    """One worker's share of a worker pool."""
    worker_index: int
    task_id: str
    scope: str
    instructions: str
    primary: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "worker_index": self.worker_index,
            "task_id": self.task_id,
            "scope": self.scope,
            "instructions": self.instructions,
            "primary": self.primary,
        }


@dataclass
class WorkerPoolStatus:
    """Aggregated completion state of a worker pool."""
    complete: bool
    all_workers: int
    completed_workers: int
    failed_workers: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "complete": self.complete,
            "all_workers": self.all_workers,
            "completed_workers": self.completed_workers,
            "failed_workers": self.failed_workers,
        }
