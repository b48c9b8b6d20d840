"""Durable task collection backed by a single JSON document."""

import json
import os
import threading
import time
from pathlib import Path
from typing import Dict, Any, Optional, Callable, List, Iterable, Union

from ..core.exceptions import (
    DuplicateTaskError,
    NotFoundError,
    StateCorruptionError,
    StateError,
)
from ..models.state import ValidationResult
from ..models.task import Task, TaskStatus, TaskKind


class TaskStore:
    """Owns every Task record.

    The collection lives in ``<state_dir>/tasks.json`` as
    ``{"version", "next_task_id", "tasks": [...]}`` and is rewritten wholesale
    on each mutation. Mutations within a process are serialized by one
    re-entrant lock; the document version is re-checked before each write so
    that a foreign writer is detected instead of silently overwritten.
    """

    FILENAME = "tasks.json"

    def __init__(self, state_dir: str = "state", fsync: bool = True):
        """
        Initialize TaskStore.

        Args:
            state_dir: Directory path for state files
            fsync: Force each write to disk
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.filepath = self.state_dir / self.FILENAME
        self.fsync = fsync
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        """
        Load the task document.

        Returns:
            Document dictionary, or an empty document if the file doesn't exist

        Raises:
            StateCorruptionError: If the JSON file is corrupted
        """
        if not self.filepath.exists():
            return {"version": 0, "next_task_id": 1, "tasks": []}
        try:
            with open(self.filepath, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateCorruptionError(self.FILENAME, e)
        data.setdefault("version", 0)
        data.setdefault("next_task_id", 1)
        data.setdefault("tasks", [])
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        tmp_path = self.filepath.with_name(self.filepath.name + ".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            if self.fsync:
                f.flush()
                os.fsync(f.fileno())
        os.replace(tmp_path, self.filepath)

    def _read_version(self) -> int:
        if not self.filepath.exists():
            return 0
        try:
            with open(self.filepath, 'r', encoding='utf-8') as f:
                return json.load(f).get("version", 0)
        except json.JSONDecodeError as e:
            raise StateCorruptionError(self.FILENAME, e)

    def _update(self, update_func: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any]:
        """
        Apply ``update_func`` to the document with optimistic concurrency control.

        Exceptions raised by ``update_func`` propagate and leave the file untouched.

        Args:
            update_func: Function that takes current data and returns updated data

        Returns:
            Updated data dictionary

        Raises:
            StateError: If the document kept changing underneath us
        """
        max_retries = 5
        with self._lock:
            for attempt in range(max_retries):
                current = self._load()
                version = current.get("version", 0)

                updated = update_func(current)
                updated["version"] = version + 1

                if self._read_version() != version:
                    time.sleep(0.05 * (2 ** attempt))  # Exponential backoff
                    continue

                self._save(updated)
                return updated

        raise StateError(
            f"Failed to update {self.FILENAME} after {max_retries} attempts (version conflict)",
            retryable=True,
        )

    @staticmethod
    def _find_index(data: Dict[str, Any], task_id: str) -> int:
        for index, entry in enumerate(data["tasks"]):
            if entry.get("id") == task_id:
                return index
        return -1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(
        self,
        project_id: Optional[str] = None,
        status: Optional[Union[TaskStatus, Iterable[TaskStatus]]] = None,
        parent_task_id: Optional[str] = None,
        kind: Optional[TaskKind] = None,
    ) -> List[Task]:
        """
        List tasks in creation order, optionally filtered.

        Args:
            project_id: Only tasks of this project
            status: A status or collection of statuses to match
            parent_task_id: Only children of this tracking task
            kind: Only tasks of this kind

        Returns:
            List of Task objects
        """
        if isinstance(status, TaskStatus):
            statuses = {status}
        elif status is not None:
            statuses = set(status)
        else:
            statuses = None

        with self._lock:
            data = self._load()

        tasks = []
        for entry in data["tasks"]:
            task = Task.from_dict(entry)
            if project_id is not None and task.project_id != project_id:
                continue
            if statuses is not None and task.status not in statuses:
                continue
            if parent_task_id is not None and task.parent_task_id != parent_task_id:
                continue
            if kind is not None and task.kind != kind:
                continue
            tasks.append(task)
        return tasks

    def get(self, task_id: str) -> Optional[Task]:
        """Get a task by ID, or None if it doesn't exist."""
        with self._lock:
            data = self._load()
        index = self._find_index(data, task_id)
        if index < 0:
            return None
        return Task.from_dict(data["tasks"][index])

    def require(self, task_id: str) -> Task:
        """Get a task by ID, raising NotFoundError if it doesn't exist."""
        task = self.get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def allocate_id(self) -> str:
        """Reserve the next sequential task ID (``task_001`` style)."""
        allocated = {}

        def update(data: Dict[str, Any]) -> Dict[str, Any]:
            allocated["id"] = f"task_{data['next_task_id']:03d}"
            data["next_task_id"] += 1
            return data

        self._update(update)
        return allocated["id"]

    def create(self, task: Task) -> Task:
        """
        Add a new task. A task without an ID gets the next sequential one.

        Args:
            task: Task to add

        Returns:
            The stored task

        Raises:
            DuplicateTaskError: If a task with the same ID already exists
        """
        def update(data: Dict[str, Any]) -> Dict[str, Any]:
            if not task.id:
                task.id = f"task_{data['next_task_id']:03d}"
                data["next_task_id"] += 1
            if self._find_index(data, task.id) >= 0:
                raise DuplicateTaskError(task.id)
            data["tasks"].append(task.to_dict())
            return data

        self._update(update)
        return task

    def modify(self, task_id: str, mutate: Callable[[Task], None]) -> Task:
        """
        Atomically read, mutate and write back one task.

        If ``mutate`` raises, nothing is written.

        Args:
            task_id: Task ID
            mutate: Function that mutates the Task in place

        Returns:
            The updated task

        Raises:
            NotFoundError: If the task doesn't exist
        """
        holder = {}

        def update(data: Dict[str, Any]) -> Dict[str, Any]:
            index = self._find_index(data, task_id)
            if index < 0:
                raise NotFoundError(task_id)
            task = Task.from_dict(data["tasks"][index])
            mutate(task)
            data["tasks"][index] = task.to_dict()
            holder["task"] = task
            return data

        self._update(update)
        return holder["task"]

    def update(self, task_id: str, updates: Dict[str, Any]) -> Task:
        """
        Apply a partial update to a task's fields.

        Args:
            task_id: Task ID
            updates: Field name to new value

        Returns:
            The updated task

        Raises:
            NotFoundError: If the task doesn't exist
            ValueError: If an update names an unknown field, or a field only
                the state machine may change
        """
        def apply(task: Task) -> None:
            for key, value in updates.items():
                if key in ("id", "status", "status_history") or not hasattr(task, key):
                    raise ValueError(f"Cannot update field: {key}")
                setattr(task, key, value)
            task.__post_init__()

        return self.modify(task_id, apply)

    def delete(self, task_id: str) -> None:
        """
        Delete a task.

        Raises:
            NotFoundError: If the task doesn't exist
        """
        def update(data: Dict[str, Any]) -> Dict[str, Any]:
            index = self._find_index(data, task_id)
            if index < 0:
                raise NotFoundError(task_id)
            del data["tasks"][index]
            return data

        self._update(update)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def validate(self) -> ValidationResult:
        """
        Validate the task document for integrity.

        Returns:
            ValidationResult object with validation results
        """
        result = ValidationResult()
        if not self.filepath.exists():
            result.add_warning(f"File not found: {self.FILENAME}")
            return result

        try:
            with self._lock:
                data = self._load()
        except StateCorruptionError as e:
            result.add_error(f"Corrupted file: {self.FILENAME} - {e}")
            return result

        seen = set()
        ids = {entry.get("id") for entry in data["tasks"]}
        result.tasks_checked = len(data["tasks"])
        for entry in data["tasks"]:
            try:
                task = Task.from_dict(entry)
            except (ValueError, TypeError) as e:
                result.add_error(f"Invalid task entry {entry.get('id', '?')}: {e}")
                continue
            if task.id in seen:
                result.add_error(f"Duplicate task id: {task.id}")
            seen.add(task.id)
            if task.status_history[-1].status != task.status:
                result.add_error(f"Task {task.id}: status history does not end in {task.status.value}")
            if task.retry_count > task.max_retries:
                result.add_error(f"Task {task.id}: retry_count exceeds max_retries")
            if task.parent_task_id and task.parent_task_id not in ids:
                result.add_warning(f"Task {task.id}: parent {task.parent_task_id} not found")
        return result
