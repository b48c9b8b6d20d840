"""Startup utilities for the orchestrator."""

import subprocess

from ..config import Settings
from ..models.state import ValidationResult
from ..storage.task_store import TaskStore


def check_worker_command(command: str) -> bool:
    """Check if the worker CLI is available."""
    try:
        result = subprocess.run(
            [command, '--version'],
            capture_output=True,
            text=True,
            timeout=5
        )
        return result.returncode == 0
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False


def print_configuration(settings: Settings) -> None:
    """Print current configuration settings."""
    queue = settings.queue
    print("\n" + "=" * 60)
    print("Configuration")
    print("=" * 60)

    # Queue
    print("\n[Queue]")
    print(f"  Max concurrent tasks: {queue.max_concurrent_tasks}")
    print(f"  Default timeout: {queue.default_timeout_minutes} min")
    print(f"  Max retries: {queue.max_retries}")
    print(f"  Processing interval: {queue.processing_interval_seconds}s")

    # Detection
    print("\n[Detection]")
    print(f"  Zombie grace: {settings.zombie_grace_seconds}s")
    print(f"  Parent grace: {settings.parent_grace_seconds}s")
    print(f"  Completion file extensions: {', '.join(settings.completion_file_extensions)}")

    # Workers
    print("\n[Workers]")
    print(f"  Backend: {settings.worker_backend}")
    print(f"  Command: {settings.worker_command}")
    print(f"  Output format: {settings.worker_output_format}")
    print(f"  Model: {settings.worker_model or '(default)'}")
    print(f"  Max pool workers: {settings.max_pool_workers}")
    available = check_worker_command(settings.worker_command)
    print(f"  CLI: {'available' if available else 'not found'}")

    # Storage
    print("\n[Storage]")
    print(f"  State directory: {settings.state_dir}")
    print(f"  Projects directory: {settings.projects_root}")
    print(f"  Pipeline templates: {settings.pipeline_templates_file or '(built-in only)'}")

    # Logging
    print("\n[Logging]")
    print(f"  Log directory: {settings.log_dir}")
    print(f"  Log level: {settings.log_level}")

    print("=" * 60)


def validate_store(store: TaskStore) -> ValidationResult:
    """Validate the task store and print any problems found."""
    validation = store.validate()
    print(f"\n[Store] {validation.summary()}")
    if not validation.valid:
        print("\n[Warning] Problems detected in the task store")
        for error in validation.errors:
            print(f"  Error: {error}")
    for warning in validation.warnings:
        print(f"  Warning: {warning}")
    return validation
