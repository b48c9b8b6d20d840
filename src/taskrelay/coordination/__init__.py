"""Coordination layer: pipelines, worker pools and their templates."""

from .pipeline import PipelineOrchestrator
from .templates import load_pipeline_templates, save_pipeline_templates, validate_pipeline_config
from .worker_pool import WorkerPoolManager, generate_work_scopes

__all__ = [
    "PipelineOrchestrator",
    "WorkerPoolManager",
    "generate_work_scopes",
    "load_pipeline_templates",
    "save_pipeline_templates",
    "validate_pipeline_config",
]
