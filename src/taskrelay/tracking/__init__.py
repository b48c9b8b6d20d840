"""Worker status channels, project files and coordination documents."""

from .status_channels import StatusChannels, ProgressMarker, TaskLog, parse_progress_line
from .shared_context import SharedContextManager, document_path
from .project_files import find_new_files

__all__ = [
    "StatusChannels",
    "ProgressMarker",
    "TaskLog",
    "parse_progress_line",
    "SharedContextManager",
    "document_path",
    "find_new_files",
]
