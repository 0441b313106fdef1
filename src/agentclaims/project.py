"""Locating the claim store for a source tree.

Every agent working on one checkout must open the same store, so the store
sits under the project root. Resolution order:

1. An explicit root passed by the caller (``--project-root``)
2. The AGENTCLAIMS_ROOT environment variable
3. The nearest ancestor of the working directory holding a marker
4. The working directory itself
"""

import os
from pathlib import Path
from typing import Iterator, Optional, Union

__all__ = [
    "ROOT_ENV_VAR",
    "PROJECT_MARKERS",
    "get_project_root",
    "find_project_root",
]

ROOT_ENV_VAR = "AGENTCLAIMS_ROOT"

# An existing store wins over generic VCS/package markers at the same level
PROJECT_MARKERS = (
    ".agent_claims",
    ".agentclaims.yaml",
    ".agentclaims.toml",
    ".git",
    "pyproject.toml",
    "package.json",
)


def _ancestors(start: Path, limit: int) -> Iterator[Path]:
    yield start
    yield from list(start.parents)[: max(limit - 1, 0)]


def find_project_root(start_path: Optional[Path] = None, max_depth: int = 10) -> Optional[Path]:
    """Return the nearest directory (start_path included) holding a marker.

    Args:
        start_path: Where to begin (default: cwd)
        max_depth: How many directories to inspect, start_path counting as one

    Returns:
        The matching directory, or None when no marker is found in range
    """
    start = Path(start_path or Path.cwd()).resolve()

    for directory in _ancestors(start, max_depth):
        if any((directory / marker).exists() for marker in PROJECT_MARKERS):
            return directory

    return None


def get_project_root(project_root: Optional[Union[Path, str]] = None) -> Path:
    """Resolve the project root, falling back to the working directory."""
    if project_root is not None:
        return Path(project_root).resolve()

    from_env = os.environ.get(ROOT_ENV_VAR)
    if from_env:
        return Path(from_env).resolve()

    return find_project_root() or Path.cwd().resolve()
