"""Core building blocks: errors, logging and the task state machine."""

from .exceptions import (
    OrchestratorError,
    SpawnError,
    WorkerFailure,
    TaskTimeoutError,
    StepFailure,
    ConfigError,
    NotFoundError,
    InvalidStateError,
    DuplicateTaskError,
    StateError,
    StateCorruptionError,
)
from .logger import OrchestratorLogger

__all__ = [
    "OrchestratorError",
    "SpawnError",
    "WorkerFailure",
    "TaskTimeoutError",
    "StepFailure",
    "ConfigError",
    "NotFoundError",
    "InvalidStateError",
    "DuplicateTaskError",
    "StateError",
    "StateCorruptionError",
    "OrchestratorLogger",
]
