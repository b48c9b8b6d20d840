"""Runner layer for the queue loop and startup logic."""

from .startup import print_configuration, validate_store

__all__ = [
    "print_configuration",
    "validate_store",
]
