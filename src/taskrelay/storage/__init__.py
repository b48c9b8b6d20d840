"""Persistence: the task store and document locks."""

from .file_lock import DocumentLock
from .task_store import TaskStore

__all__ = [
    "DocumentLock",
    "TaskStore",
]
