"""Configuration for the orchestrator."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv

from .core.exceptions import ConfigError

# Load environment variables
load_dotenv()


DEFAULT_COMPLETION_FILE_EXTENSIONS = (
    ".js,.ts,.tsx,.jsx,.py,.go,.rs,.java,.rb,.php,.c,.cpp,.h,.cs,.swift,.kt,.md,.json,.yaml,.yml,.html,.css"
)


def _env_or_default(name: str, default: Optional[str]) -> Optional[str]:
    """
    Get environment variable value or default, treating empty string as unset.

    docker-compose passes unset variables through as empty strings.
    """
    value = os.getenv(name, None)
    if value is None or value == "":
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_or_default(name, str(default))
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}", original_error=e)


def _env_bool(name: str, default: bool) -> bool:
    return _env_or_default(name, "true" if default else "false").lower() == "true"


@dataclass
class QueueConfig:
    """Process-wide queue tunables."""
    max_concurrent_tasks: int = 3
    default_timeout_minutes: int = 30
    max_retries: int = 3
    processing_interval_seconds: float = 30.0

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: If any value is out of range
        """
        if self.max_concurrent_tasks < 1:
            raise ConfigError("max_concurrent_tasks must be at least 1")
        if self.default_timeout_minutes < 1:
            raise ConfigError("default_timeout_minutes must be at least 1")
        if self.max_retries < 0:
            raise ConfigError("max_retries must not be negative")
        if self.processing_interval_seconds <= 0:
            raise ConfigError("processing_interval_seconds must be positive")

    def updated(self, **changes) -> "QueueConfig":
        """Return a validated copy with the given fields replaced."""
        unknown = [key for key in changes if not hasattr(self, key)]
        if unknown:
            raise ConfigError(f"Unknown queue setting(s): {', '.join(unknown)}")
        new_config = replace(self, **{k: v for k, v in changes.items() if v is not None})
        new_config.validate()
        return new_config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "default_timeout_minutes": self.default_timeout_minutes,
            "max_retries": self.max_retries,
            "processing_interval_seconds": self.processing_interval_seconds,
        }


@dataclass
class Settings:
    """All orchestrator settings, injected into components at construction."""
    state_dir: Path = Path("state")
    projects_root: Path = Path("state/projects")
    log_dir: Path = Path("logs")
    log_level: str = "INFO"
    log_fsync: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    zombie_grace_seconds: float = 180.0
    parent_grace_seconds: float = 30.0
    max_pool_workers: int = 10
    worker_backend: str = "subprocess"
    worker_command: str = "agent"
    worker_output_format: str = "text"
    worker_model: Optional[str] = None
    completion_file_extensions: List[str] = field(
        default_factory=lambda: DEFAULT_COMPLETION_FILE_EXTENSIONS.split(",")
    )
    pipeline_templates_file: Optional[Path] = None

    def __post_init__(self):
        self.state_dir = Path(self.state_dir)
        self.projects_root = Path(self.projects_root)
        self.log_dir = Path(self.log_dir)
        if self.pipeline_templates_file is not None:
            self.pipeline_templates_file = Path(self.pipeline_templates_file)

    @property
    def scratch_dir(self) -> Path:
        """Per-task side channel directory."""
        return self.state_dir / "task-contexts"

    def project_dir(self, project_id: str) -> Path:
        """Working directory of a project."""
        return self.projects_root / project_id

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables (and a ``.env`` file).

        Raises:
            ConfigError: If a numeric variable cannot be parsed or is out of range
        """
        state_dir = Path(_env_or_default("STATE_DIR", "state"))
        queue = QueueConfig(
            max_concurrent_tasks=_env_int("MAX_CONCURRENT_TASKS", 3),
            default_timeout_minutes=_env_int("DEFAULT_TIMEOUT_MINUTES", 30),
            max_retries=_env_int("MAX_RETRIES", 3),
            processing_interval_seconds=float(_env_int("PROCESSING_INTERVAL_SECONDS", 30)),
        )
        queue.validate()

        templates_file = _env_or_default("PIPELINE_TEMPLATES_FILE", None)
        extensions = _env_or_default("COMPLETION_FILE_EXTENSIONS", DEFAULT_COMPLETION_FILE_EXTENSIONS)

        return cls(
            state_dir=state_dir,
            projects_root=Path(_env_or_default("PROJECTS_DIR", str(state_dir / "projects"))),
            log_dir=Path(_env_or_default("LOG_DIR", "logs")),
            log_level=_env_or_default("LOG_LEVEL", "INFO"),
            log_fsync=_env_bool("LOG_FSYNC", False),
            queue=queue,
            zombie_grace_seconds=float(_env_int("ZOMBIE_GRACE_SECONDS", 180)),
            parent_grace_seconds=float(_env_int("PARENT_GRACE_SECONDS", 30)),
            max_pool_workers=_env_int("MAX_POOL_WORKERS", 10),
            worker_backend=_env_or_default("WORKER_BACKEND", "subprocess"),
            worker_command=_env_or_default("WORKER_COMMAND", "agent"),
            worker_output_format=_env_or_default("WORKER_OUTPUT_FORMAT", "text"),
            worker_model=_env_or_default("WORKER_MODEL", None),
            completion_file_extensions=[e.strip() for e in extensions.split(",") if e.strip()],
            pipeline_templates_file=Path(templates_file) if templates_file else None,
        )
