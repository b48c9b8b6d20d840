"""Tests for settings, queue configuration, template files and logging."""

import json

import pytest

from taskrelay.config import QueueConfig, Settings
from taskrelay.coordination.templates import (
    load_pipeline_templates,
    save_pipeline_templates,
    validate_pipeline_config,
)
from taskrelay.core.exceptions import ConfigError
from taskrelay.core.logger import OrchestratorLogger
from taskrelay.models.pipeline import PIPELINE_TEMPLATES, PipelineTemplate, PipelineStep


ENV_VARS = [
    "STATE_DIR", "PROJECTS_DIR", "LOG_DIR", "LOG_LEVEL", "MAX_CONCURRENT_TASKS",
    "DEFAULT_TIMEOUT_MINUTES", "MAX_RETRIES", "PROCESSING_INTERVAL_SECONDS",
    "WORKER_MODEL", "COMPLETION_FILE_EXTENSIONS", "PIPELINE_TEMPLATES_FILE", "MAX_POOL_WORKERS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_settings_defaults(clean_env):
    settings = Settings.from_env()
    assert settings.queue.max_concurrent_tasks == 3
    assert settings.queue.default_timeout_minutes == 30
    assert settings.queue.max_retries == 3
    assert settings.queue.processing_interval_seconds == 30
    assert settings.max_pool_workers == 10
    assert settings.worker_model is None
    assert ".py" in settings.completion_file_extensions
    assert settings.scratch_dir == settings.state_dir / "task-contexts"


def test_settings_from_environment(clean_env, tmp_path):
    clean_env.setenv("STATE_DIR", str(tmp_path / "s"))
    clean_env.setenv("MAX_CONCURRENT_TASKS", "7")
    clean_env.setenv("WORKER_MODEL", "")
    clean_env.setenv("COMPLETION_FILE_EXTENSIONS", ".py, .md")
    settings = Settings.from_env()
    assert settings.queue.max_concurrent_tasks == 7
    assert settings.projects_root == tmp_path / "s" / "projects"
    assert settings.worker_model is None
    assert settings.completion_file_extensions == [".py", ".md"]


def test_settings_reject_bad_numbers(clean_env):
    clean_env.setenv("MAX_RETRIES", "many")
    with pytest.raises(ConfigError):
        Settings.from_env()
    clean_env.setenv("MAX_RETRIES", "2")
    clean_env.setenv("MAX_CONCURRENT_TASKS", "0")
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_queue_config_updated():
    config = QueueConfig()
    updated = config.updated(max_concurrent_tasks=5, max_retries=None)
    assert updated.max_concurrent_tasks == 5
    assert updated.max_retries == 3
    assert config.max_concurrent_tasks == 3
    with pytest.raises(ConfigError):
        config.updated(processing_interval_seconds=0)


def test_templates_round_trip_through_yaml(tmp_path):
    path = tmp_path / "templates.yaml"
    custom = PipelineTemplate(
        id="docs",
        name="Documentation",
        description="Write and review docs",
        steps=[
            PipelineStep(id="writer", name="Writer", count=2, instructions="Write"),
            PipelineStep(id="editor", name="Editor", depends_on=["writer"], instructions="Edit"),
        ],
    )
    save_pipeline_templates(path, [custom, PIPELINE_TEMPLATES["simple"]])
    loaded = load_pipeline_templates(path)
    assert set(loaded) == {"docs", "simple"}
    assert loaded["docs"].to_dict() == custom.to_dict()


def test_template_file_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_pipeline_templates(tmp_path / "missing.yaml")

    bad_yaml = tmp_path / "bad.yaml"
    bad_yaml.write_text("templates: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_pipeline_templates(bad_yaml)

    no_steps = tmp_path / "empty.yaml"
    no_steps.write_text("- id: hollow\n  name: Hollow\n  steps: []\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_pipeline_templates(no_steps)


def test_builtin_templates_are_valid():
    for template in PIPELINE_TEMPLATES.values():
        validate_pipeline_config(template.to_config())


def test_logger_writes_jsonl(tmp_path):
    logger = OrchestratorLogger(log_dir=str(tmp_path), console=False)
    logger.log_transition("task_001", "pending", "active", "admitted")
    logger.log_queue_tick(running=1, available_slots=2, dispatched=1, pending=0)
    try:
        raise ConfigError("bad setting")
    except ConfigError as e:
        logger.log_error_with_traceback("Test", e, {"key": "value"})

    transitions = next(tmp_path.glob("transitions_*.jsonl")).read_text(encoding="utf-8").splitlines()
    entry = json.loads(transitions[0])
    assert (entry["task_id"], entry["from"], entry["to"]) == ("task_001", "pending", "active")

    errors = next(tmp_path.glob("errors_*.jsonl")).read_text(encoding="utf-8").splitlines()
    error = json.loads(errors[0])
    assert error["error_type"] == "ConfigError"
    assert error["context"] == {"key": "value"}
    assert list(tmp_path.glob("queue_*.jsonl"))
    assert list(tmp_path.glob("orchestrator_*.log"))
