"""Logging for the orchestrator.

Human-readable lines go to a rotating ``orchestrator_YYYYMMDD.log`` file
(and optionally stderr). Structured events are appended to dated JSONL
files next to it: ``transitions_*``, ``queue_*`` and ``errors_*``.
"""

import json
import logging
import os
import traceback
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Any, Optional


FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def _today() -> str:
    return datetime.now().strftime('%Y%m%d')


class OrchestratorLogger:
    """Logger for queue ticks, task transitions and orchestration errors."""

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: str = "INFO",
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        sync: bool = False,
        console: bool = True,
    ):
        """
        Args:
            log_dir: Where the .log and .jsonl files are written
            log_level: Name of the minimum level, e.g. "DEBUG"
            max_bytes: Rotation threshold for the text log
            backup_count: Rotated text logs kept on disk
            sync: fsync every JSONL append
            console: Mirror the text log to stderr
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.sync = sync
        self.level = getattr(logging, log_level.upper(), logging.INFO)

        handlers = [
            self._configure(
                RotatingFileHandler(
                    self.log_dir / f"orchestrator_{_today()}.log",
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding='utf-8',
                ),
                FILE_FORMAT,
            )
        ]
        if console:
            handlers.append(self._configure(logging.StreamHandler(), CONSOLE_FORMAT))

        self.logger = logging.getLogger("taskrelay")
        self.logger.setLevel(self.level)
        # A second OrchestratorLogger replaces the handlers of the first
        for stale in list(self.logger.handlers):
            self.logger.removeHandler(stale)
            stale.close()
        for handler in handlers:
            self.logger.addHandler(handler)
        self.logger.propagate = False

    def _configure(self, handler: logging.Handler, fmt: str) -> logging.Handler:
        handler.setLevel(self.level)
        handler.setFormatter(logging.Formatter(fmt))
        return handler

    def _append_jsonl(self, prefix: str, entry: Dict[str, Any]) -> None:
        """Append one event to ``<prefix>_YYYYMMDD.jsonl``."""
        record = {'timestamp': datetime.now().isoformat()}
        record.update(entry)
        path = self.log_dir / f"{prefix}_{_today()}.jsonl"
        with open(path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(record, ensure_ascii=False) + '\n')
            if self.sync:
                f.flush()
                try:
                    os.fsync(f.fileno())
                except OSError:
                    # not every filesystem supports fsync
                    pass

    def log_transition(
        self,
        task_id: str,
        from_status: str,
        to_status: str,
        message: str = "",
        **kwargs
    ) -> None:
        """
        Record a task status change.

        Args:
            task_id: Task whose status changed
            from_status: Status before the change
            to_status: Status after the change
            message: Why it changed
            **kwargs: Extra fields stored with the event
        """
        event = {'task_id': task_id, 'from': from_status, 'to': to_status, 'message': message}
        event.update(kwargs)
        self._append_jsonl("transitions", event)
        line = f"[Task {task_id}] {from_status} -> {to_status}"
        self.logger.info(f"{line} ({message})" if message else line)

    def log_error_with_traceback(
        self,
        component: str,
        error: Exception,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record an exception raised inside a component.

        The traceback is the one currently being handled, so call this from
        an ``except`` block.

        Args:
            component: Which part of the orchestrator raised
            error: The exception
            context: Identifiers that help reproduce the failure
        """
        trace = traceback.format_exc()
        self._append_jsonl("errors", {
            'component': component,
            'error_type': type(error).__name__,
            'error_message': str(error),
            'traceback': trace,
            'context': context or {},
        })
        self.logger.error(f"[{component}] {type(error).__name__}: {error}")
        self.logger.debug(f"[{component}] Traceback:\n{trace}")

    def log_queue_tick(
        self,
        running: int,
        available_slots: int,
        dispatched: int,
        pending: int
    ) -> None:
        """Record the counters of one queue processing pass."""
        self._append_jsonl("queue", {
            'running': running,
            'available_slots': available_slots,
            'dispatched': dispatched,
            'pending': pending,
        })
        self.logger.info(
            f"[Queue] running={running}, slots={available_slots}, "
            f"dispatched={dispatched}, pending={pending}"
        )

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)

    def exception(self, message: str, exc_info: bool = True) -> None:
        """Log at ERROR level with the active traceback attached."""
        self.logger.exception(message, exc_info=exc_info)
