"""Task-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from .pipeline import PipelineConfig, WorkerPoolConfig


class TaskStatus(str, Enum):
    """Task status enumeration."""
    CREATED = "created"
    PENDING = "pending"
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if the status is a resting terminal state."""
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskPriority(str, Enum):
    """Task priority enumeration."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_string(cls, value: str) -> "TaskPriority":
        """Create from string, defaulting to MEDIUM if invalid."""
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return cls.MEDIUM

    def to_score(self) -> int:
        """Convert priority to numeric score (higher is better)."""
        score_map = {
            TaskPriority.URGENT: 4,
            TaskPriority.HIGH: 3,
            TaskPriority.MEDIUM: 2,
            TaskPriority.LOW: 1,
        }
        return score_map.get(self, 2)


class TaskKind(str, Enum):
    """What a task record represents."""
    STANDARD = "standard"
    PIPELINE = "pipeline"
    WORKER_POOL = "worker_pool"


@dataclass
class StatusChange:
    """One entry of a task's status history."""
    status: TaskStatus
    timestamp: str
    message: str = ""

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = TaskStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusChange":
        """Create StatusChange from dictionary."""
        return cls(
            status=TaskStatus(data.get("status", "created")),
            timestamp=data.get("timestamp", ""),
            message=data.get("message", ""),
        )


@dataclass
class ProgressUpdate:
    """A progress sample reported by a worker."""
    percentage: int
    message: str = ""
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "percentage": self.percentage,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressUpdate":
        """Create ProgressUpdate from dictionary."""
        return cls(
            percentage=int(data.get("percentage", 0)),
            message=data.get("message", ""),
            timestamp=data.get("timestamp"),
        )


@dataclass
class Task:
    """Full task data model.

    Pipeline and worker-pool membership is carried by typed fields:
    ``parent_task_id`` links a child to its tracking parent, ``step_id`` and
    ``agent_index`` place it in a pipeline step, ``worker_index`` and
    ``total_workers`` place it in a worker pool.
    """
    id: str
    project_id: str
    title: str
    description: str = ""
    agent_id: Optional[str] = None
    status: TaskStatus = TaskStatus.CREATED
    priority: TaskPriority = TaskPriority.MEDIUM
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    timeout_minutes: int = 30
    result: Optional[str] = None
    error: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    status_history: List[StatusChange] = field(default_factory=list)
    progress: Optional[int] = None
    current_step: Optional[str] = None
    progress_updates: List[ProgressUpdate] = field(default_factory=list)
    kind: TaskKind = TaskKind.STANDARD
    parent_task_id: Optional[str] = None
    step_id: Optional[str] = None
    agent_index: Optional[int] = None
    worker_index: Optional[int] = None
    total_workers: Optional[int] = None
    worker_pid: Optional[int] = None
    pipeline: Optional[PipelineConfig] = None
    worker_pool: Optional[WorkerPoolConfig] = None

    def __post_init__(self):
        """Post-initialization processing."""
        if isinstance(self.priority, str):
            self.priority = TaskPriority.from_string(self.priority)
        if isinstance(self.status, str):
            self.status = TaskStatus(self.status)
        if isinstance(self.kind, str):
            self.kind = TaskKind(self.kind)
        if isinstance(self.pipeline, dict):
            self.pipeline = PipelineConfig.from_dict(self.pipeline)
        if isinstance(self.worker_pool, dict):
            self.worker_pool = WorkerPoolConfig.from_dict(self.worker_pool)
        if self.created_at is None:
            self.created_at = datetime.now().isoformat()
        if self.updated_at is None:
            self.updated_at = self.created_at
        if not self.status_history:
            self.status_history.append(
                StatusChange(self.status, self.created_at, "Task created")
            )

    @property
    def is_tracking(self) -> bool:
        """True for pipeline/pool parents that are never dispatched."""
        return self.kind != TaskKind.STANDARD

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def attempt(self) -> int:
        """Number of times the task has been admitted; 0 before its first dispatch."""
        return sum(1 for change in self.status_history if change.status == TaskStatus.ACTIVE)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "kind": self.kind.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "timeout_minutes": self.timeout_minutes,
            "status_history": [change.to_dict() for change in self.status_history],
        }

        # Only include optional fields if they have values
        optional = {
            "agent_id": self.agent_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error": self.error,
            "progress": self.progress,
            "current_step": self.current_step,
            "parent_task_id": self.parent_task_id,
            "step_id": self.step_id,
            "agent_index": self.agent_index,
            "worker_index": self.worker_index,
            "total_workers": self.total_workers,
            "worker_pid": self.worker_pid,
        }
        for key, value in optional.items():
            if value is not None:
                data[key] = value
        if self.artifacts:
            data["artifacts"] = self.artifacts
        if self.progress_updates:
            data["progress_updates"] = [u.to_dict() for u in self.progress_updates]
        if self.pipeline:
            data["pipeline"] = self.pipeline.to_dict()
        if self.worker_pool:
            data["worker_pool"] = self.worker_pool.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create Task from dictionary."""
        pipeline_data = data.get("pipeline")
        pool_data = data.get("worker_pool")
        return cls(
            id=data.get("id", ""),
            project_id=data.get("project_id", ""),
            title=data.get("title", "No title"),
            description=data.get("description", ""),
            agent_id=data.get("agent_id"),
            status=TaskStatus(data.get("status", "created")),
            priority=TaskPriority.from_string(data.get("priority", "medium")),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            timeout_minutes=data.get("timeout_minutes", 30),
            result=data.get("result"),
            error=data.get("error"),
            artifacts=list(data.get("artifacts", [])),
            status_history=[StatusChange.from_dict(c) for c in data.get("status_history", [])],
            progress=data.get("progress"),
            current_step=data.get("current_step"),
            progress_updates=[ProgressUpdate.from_dict(u) for u in data.get("progress_updates", [])],
            kind=TaskKind(data.get("kind", "standard")),
            parent_task_id=data.get("parent_task_id"),
            step_id=data.get("step_id"),
            agent_index=data.get("agent_index"),
            worker_index=data.get("worker_index"),
            total_workers=data.get("total_workers"),
            worker_pid=data.get("worker_pid"),
            pipeline=PipelineConfig.from_dict(pipeline_data) if pipeline_data else None,
            worker_pool=WorkerPoolConfig.from_dict(pool_data) if pool_data else None,
        )


@dataclass
class TaskStatistics:
    """Task counts by status."""
    total: int = 0
    created: int = 0
    pending: int = 0
    active: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    running_now: int = 0

    @classmethod
    def from_tasks(cls, tasks: List[Task]) -> "TaskStatistics":
        """Count tasks by status; ``running_now`` excludes tracking parents."""
        stats = cls(total=len(tasks))
        for task in tasks:
            setattr(stats, task.status.value, getattr(stats, task.status.value) + 1)
            if task.status == TaskStatus.PROCESSING and not task.is_tracking:
                stats.running_now += 1
        return stats

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total": self.total,
            "created": self.created,
            "pending": self.pending,
            "active": self.active,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "running_now": self.running_now,
        }
