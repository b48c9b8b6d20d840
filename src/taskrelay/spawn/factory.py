"""Factory for creating worker spawners."""

from .client import WorkerSpawner
from .subprocess_spawner import SubprocessSpawner


class WorkerSpawnerFactory:
    """Factory for creating worker spawners."""

    @staticmethod
    def create(backend: str = "subprocess", **kwargs) -> WorkerSpawner:
        """
        Create a spawner for the given backend.

        Args:
            backend: Backend name
                - "subprocess": detached local processes
            **kwargs: Backend-specific settings

        Returns:
            WorkerSpawner instance

        Raises:
            ValueError: If unsupported backend is specified
        """
        if backend == "subprocess":
            return SubprocessSpawner(
                projects_root=kwargs["projects_root"],
                channels=kwargs["channels"],
                worker_command=kwargs.get("worker_command", "agent"),
                output_format=kwargs.get("output_format", "text"),
                model=kwargs.get("model"),
                logger=kwargs.get("logger"),
            )
        supported = ["subprocess"]
        raise ValueError(
            f"Unknown backend: {backend}. "
            f"Supported backends: {', '.join(supported)}"
        )
