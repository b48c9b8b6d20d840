"""Task orchestration core: queue, pipelines and worker pools."""

__version__ = "0.1.0"
