"""Project directory listing used as last-resort completion evidence."""

import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union


IGNORED_DIRS = {"node_modules", "__pycache__", "venv", ".venv", "dist", "build"}
COORDINATION_PREFIX = "SHARED_CONTEXT"


def find_new_files(
    project_dir: Union[str, Path],
    since: datetime,
    extensions: Iterable[str],
    max_depth: int = 2,
) -> List[str]:
    """
    List task-relevant files modified after ``since``.

    Hidden directories, dependency folders and coordination documents are
    skipped.

    Args:
        project_dir: Project working directory
        since: Only files with a later mtime count
        extensions: File suffixes that count as task output (e.g. ``.py``)
        max_depth: How many directory levels below the root to scan

    Returns:
        Paths relative to ``project_dir``, sorted
    """
    root = Path(project_dir)
    if not root.is_dir():
        return []

    suffixes = {ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions}
    threshold = since.timestamp()
    found = []

    for dirpath, dirnames, filenames in os.walk(root):
        depth = len(Path(dirpath).relative_to(root).parts)
        dirnames[:] = [
            d for d in dirnames
            if not d.startswith(".") and d not in IGNORED_DIRS and depth < max_depth
        ]
        for name in filenames:
            if name.startswith(COORDINATION_PREFIX) or Path(name).suffix.lower() not in suffixes:
                continue
            path = Path(dirpath) / name
            try:
                if path.stat().st_mtime > threshold:
                    found.append(str(path.relative_to(root)))
            except FileNotFoundError:
                continue
    return sorted(found)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, returning None when absent or malformed."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
