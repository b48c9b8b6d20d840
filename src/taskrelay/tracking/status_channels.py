"""Per-task side channels written by workers and polled by the orchestrator.

Three independent, best-effort files live in the scratch directory:

- ``<task_id>.progress``: ``{"percentage", "message", "timestamp", "exitCode"?, "attempt"?}``
- ``<task_id>.log.json``: ``{"taskId", "status", "logs": [...], "result"?, "artifacts"?, "attempt"?}``
- ``<task_id>.pid``: the worker's process id (liveness marker)

Readers treat a missing or unreadable file as "no signal". Files carry the
attempt number they were written for; a writer from an older attempt than
the one recorded in the log is ignored.
"""

import json
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional


MAX_LOG_ENTRIES = 1000
LOG_LEVELS = ("info", "warn", "error", "success")

PROGRESS_LINE_PATTERN = re.compile(r"PROGRESS:\s*(\d+)%\s*-\s*(.+)")


@dataclass
class ProgressMarker:
    """Latest progress reported by a worker."""
    percentage: int
    message: str = ""
    timestamp: Optional[str] = None
    exit_code: Optional[int] = None
    attempt: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "percentage": self.percentage,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        if self.attempt is not None:
            data["attempt"] = self.attempt
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressMarker":
        exit_code = data.get("exitCode")
        attempt = data.get("attempt")
        return cls(
            percentage=int(data.get("percentage", 0)),
            message=str(data.get("message", "")),
            timestamp=str(data["timestamp"]) if data.get("timestamp") is not None else None,
            exit_code=int(exit_code) if exit_code is not None else None,
            attempt=int(attempt) if attempt is not None else None,
        )


@dataclass
class TaskLog:
    """Capped, append-only log of one task."""
    task_id: str
    status: str = "processing"
    logs: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    attempt: Optional[int] = None

    def messages(self) -> List[str]:
        return [str(entry.get("message", "")) for entry in self.logs]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "taskId": self.task_id,
            "status": self.status,
            "logs": self.logs,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.artifacts:
            data["artifacts"] = self.artifacts
        if self.attempt is not None:
            data["attempt"] = self.attempt
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskLog":
        return cls(
            task_id=data.get("taskId", ""),
            status=data.get("status", "processing"),
            logs=list(data.get("logs", [])),
            result=data.get("result"),
            artifacts=list(data.get("artifacts", [])),
            attempt=int(data["attempt"]) if data.get("attempt") is not None else None,
        )


def parse_progress_line(line: str) -> Optional[ProgressMarker]:
    """Parse a ``PROGRESS: 40% - message`` line printed by a worker."""
    match = PROGRESS_LINE_PATTERN.search(line)
    if not match:
        return None
    return ProgressMarker(
        percentage=min(int(match.group(1)), 100),
        message=match.group(2).strip(),
        timestamp=datetime.now().isoformat(),
    )


class StatusChannels:
    """Reads and writes the per-task side channel files."""

    def __init__(self, scratch_dir: str = "state/task-contexts"):
        """
        Initialize status channels.

        Args:
            scratch_dir: Directory holding the per-task files
        """
        self.scratch_dir = Path(scratch_dir)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)

    def progress_path(self, task_id: str) -> Path:
        return self.scratch_dir / f"{task_id}.progress"

    def log_path(self, task_id: str) -> Path:
        return self.scratch_dir / f"{task_id}.log.json"

    def pid_path(self, task_id: str) -> Path:
        return self.scratch_dir / f"{task_id}.pid"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, task_id: str, title: str = "", attempt: Optional[int] = None) -> None:
        """
        Reset the channels for a new attempt.

        Signals left over from a previous attempt are removed so they
        cannot be mistaken for this attempt's outcome, and the attempt
        number is recorded so late writes from older attempts are dropped.
        """
        self.clear(task_id)
        self._write_json(self.log_path(task_id), TaskLog(
            task_id=task_id,
            status="processing",
            logs=[self._entry("info", "Task dispatched", {"title": title} if title else None)],
            attempt=attempt,
        ).to_dict())

    def current_attempt(self, task_id: str) -> Optional[int]:
        """Attempt recorded by the last dispatch, or None if unknown."""
        log = self.read_log(task_id)
        if log is not None and log.attempt is not None:
            return log.attempt
        marker = self.read_progress(task_id)
        return marker.attempt if marker else None

    def is_stale(self, task_id: str, attempt: Optional[int]) -> bool:
        """True if a writer for ``attempt`` belongs to an older attempt than the recorded one."""
        if attempt is None:
            return False
        current = self.current_attempt(task_id)
        return current is not None and attempt < current

    def clear(self, task_id: str) -> None:
        """Remove every side channel file of a task."""
        for path in (self.progress_path(task_id), self.log_path(task_id), self.pid_path(task_id)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    # ------------------------------------------------------------------
    # Progress marker
    # ------------------------------------------------------------------

    def write_progress(
        self,
        task_id: str,
        percentage: int,
        message: str,
        exit_code: Optional[int] = None,
        attempt: Optional[int] = None
    ) -> bool:
        """
        Replace the progress marker.

        Returns:
            False if the write came from an older attempt and was dropped
        """
        if self.is_stale(task_id, attempt):
            return False
        marker = ProgressMarker(
            percentage=percentage,
            message=message,
            timestamp=datetime.now().isoformat(),
            exit_code=exit_code,
            attempt=attempt,
        )
        self._write_json(self.progress_path(task_id), marker.to_dict())
        return True

    def read_progress(self, task_id: str) -> Optional[ProgressMarker]:
        data = self._read_json(self.progress_path(task_id))
        if not isinstance(data, dict):
            return None
        try:
            return ProgressMarker.from_dict(data)
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Log stream
    # ------------------------------------------------------------------

    def append_log(
        self,
        task_id: str,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None
    ) -> bool:
        """Append an entry, keeping only the last MAX_LOG_ENTRIES. Stale attempts are dropped."""
        if self.is_stale(task_id, attempt):
            return False
        log = self.read_log(task_id) or TaskLog(task_id=task_id, attempt=attempt)
        log.logs.append(self._entry(level, message, metadata))
        if len(log.logs) > MAX_LOG_ENTRIES:
            log.logs = log.logs[-MAX_LOG_ENTRIES:]
        self._write_json(self.log_path(task_id), log.to_dict())
        return True

    def set_log_status(
        self,
        task_id: str,
        status: str,
        result: Optional[str] = None,
        artifacts: Optional[List[str]] = None,
        attempt: Optional[int] = None
    ) -> bool:
        """Record the worker's declared status in the log stream. Stale attempts are dropped."""
        if self.is_stale(task_id, attempt):
            return False
        log = self.read_log(task_id) or TaskLog(task_id=task_id, attempt=attempt)
        log.status = status
        if result:
            log.result = result
        if artifacts:
            log.artifacts = artifacts
        level = "success" if status == "completed" else "error" if status == "failed" else "info"
        log.logs.append(self._entry(level, f"Task {status}" + (f": {result}" if result else "")))
        if len(log.logs) > MAX_LOG_ENTRIES:
            log.logs = log.logs[-MAX_LOG_ENTRIES:]
        self._write_json(self.log_path(task_id), log.to_dict())
        return True

    def read_log(self, task_id: str) -> Optional[TaskLog]:
        data = self._read_json(self.log_path(task_id))
        if not isinstance(data, dict):
            return None
        try:
            return TaskLog.from_dict(data)
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Liveness marker
    # ------------------------------------------------------------------

    def write_pid(self, task_id: str, pid: int) -> None:
        path = self.pid_path(task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(pid), encoding='utf-8')

    def read_pid(self, task_id: str) -> Optional[int]:
        try:
            return int(self.pid_path(task_id).read_text(encoding='utf-8').strip())
        except (OSError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _entry(level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level if level in LOG_LEVELS else "info",
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata
        return entry

    @staticmethod
    def _read_json(path: Path) -> Optional[Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError):
            return None

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
