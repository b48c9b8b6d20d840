"""Data models for the taskrelay system."""

from .pipeline import (
    StepType,
    StepStatus,
    DistributionStrategy,
    PipelineStep,
    PipelineConfig,
    PipelineTemplate,
    PIPELINE_TEMPLATES,
    PipelineStatus,
    WorkerAssignment,
    WorkerPoolConfig,
    WorkerPoolStatus,
)
from .task import (
    TaskStatus,
    TaskPriority,
    TaskKind,
    StatusChange,
    ProgressUpdate,
    Task,
    TaskStatistics,
)
from .context import (
    AgentSlot,
    StepContext,
    AgentMessage,
    SharedContext,
)
from .state import ValidationResult

__all__ = [
    # Pipeline models
    "StepType",
    "StepStatus",
    "DistributionStrategy",
    "PipelineStep",
    "PipelineConfig",
    "PipelineTemplate",
    "PIPELINE_TEMPLATES",
    "PipelineStatus",
    "WorkerAssignment",
    "WorkerPoolConfig",
    "WorkerPoolStatus",
    # Task models
    "TaskStatus",
    "TaskPriority",
    "TaskKind",
    "StatusChange",
    "ProgressUpdate",
    "Task",
    "TaskStatistics",
    # Coordination document models
    "AgentSlot",
    "StepContext",
    "AgentMessage",
    "SharedContext",
    # State models
    "ValidationResult",
]
