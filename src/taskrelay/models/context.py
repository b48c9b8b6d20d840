"""Shared coordination document models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from .pipeline import StepStatus


@dataclass
class AgentSlot:
    """A child task registered against a step."""
    agent_id: str
    task_id: str
    status: str = "pending"
    progress: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "status": self.status,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentSlot":
        """Create AgentSlot from dictionary."""
        return cls(
            agent_id=data.get("agent_id", ""),
            task_id=data.get("task_id", ""),
            status=data.get("status", "pending"),
            progress=int(data.get("progress", 0)),
        )


@dataclass
class StepContext:
    """Per-step section of the coordination document."""
    step_id: str
    step_name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    agents: List[AgentSlot] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    summary: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = StepStatus(self.status)

    def find_agent(self, task_id: str) -> Optional[AgentSlot]:
        for agent in self.agents:
            if agent.task_id == task_id:
                return agent
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "step_id": self.step_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "agents": [agent.to_dict() for agent in self.agents],
            "outputs": self.outputs,
        }
        if self.started_at:
            data["started_at"] = self.started_at
        if self.completed_at:
            data["completed_at"] = self.completed_at
        if self.summary:
            data["summary"] = self.summary
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepContext":
        """Create StepContext from dictionary."""
        return cls(
            step_id=data.get("step_id", ""),
            step_name=data.get("step_name", ""),
            status=StepStatus(data.get("status", "pending")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            agents=[AgentSlot.from_dict(a) for a in data.get("agents", [])],
            outputs=list(data.get("outputs", [])),
            summary=data.get("summary"),
        )


@dataclass
class AgentMessage:
    """A message posted between agents."""
    sender: str
    recipient: str
    message: str
    step_id: str
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "from": self.sender,
            "to": self.recipient,
            "message": self.message,
            "timestamp": self.timestamp,
            "step_id": self.step_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentMessage":
        """Create AgentMessage from dictionary."""
        return cls(
            sender=data.get("from", ""),
            recipient=data.get("to", ""),
            message=data.get("message", ""),
            step_id=data.get("step_id", ""),
            timestamp=data.get("timestamp"),
        )


@dataclass
class SharedContext:
    """Canonical state of a coordination document."""
    pipeline_id: str
    task_id: str
    steps: List[StepContext] = field(default_factory=list)
    messages: List[AgentMessage] = field(default_factory=list)
    current_step: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now().isoformat()
        if self.updated_at is None:
            self.updated_at = self.created_at

    def get_step(self, step_id: str) -> Optional[StepContext]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.step_id == step_id:
                return index
        return -1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pipeline_id": self.pipeline_id,
            "task_id": self.task_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "current_step": self.current_step,
            "steps": [step.to_dict() for step in self.steps],
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SharedContext":
        """Create SharedContext from dictionary."""
        return cls(
            pipeline_id=data.get("pipeline_id", ""),
            task_id=data.get("task_id", ""),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            current_step=int(data.get("current_step", 0)),
            steps=[StepContext.from_dict(s) for s in data.get("steps", [])],
            messages=[AgentMessage.from_dict(m) for m in data.get("messages", [])],
        )
