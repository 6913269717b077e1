"""Path utilities for locating lockfiles and advisory files."""

import fnmatch
import os
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from ..errors import NotFoundError

LOCKFILE_NAME = "Cargo.lock"


class PathFilter:
    """Filters paths inside an advisory snapshot based on glob patterns."""

    DEFAULT_IGNORE_PATTERNS = [
        ".*",
        "__pycache__",
        "*.swp",
        "*~",
    ]

    def __init__(self, ignore_patterns: Optional[List[str]] = None) -> None:
        """Initialize path filter.

        Args:
            ignore_patterns: Glob patterns matched against each path component
        """
        self.ignore_patterns = list(self.DEFAULT_IGNORE_PATTERNS if ignore_patterns is None else ignore_patterns)

    def is_ignored(self, path: Path) -> bool:
        """Check if any component of a (relative) path matches an ignore pattern."""
        return any(
            fnmatch.fnmatch(part, pattern)
            for part in path.parts
            for pattern in self.ignore_patterns
        )

    def filter_paths(self, paths: Iterable[Path]) -> Iterator[Path]:
        for path in paths:
            if not self.is_ignored(path):
                yield path


def find_lockfile(path: Path) -> Path:
    """Resolve a lockfile argument to a lockfile path.

    Args:
        path: A lockfile, or a directory containing ``Cargo.lock``

    Returns:
        Path of the lockfile

    Raises:
        NotFoundError: If no lockfile exists at or inside ``path``
    """
    if path.is_dir():
        path = path / LOCKFILE_NAME
    if not path.is_file():
        raise NotFoundError(f"lockfile not found: {path}")
    return path


def iter_advisory_files(
    root: Path,
    suffixes: Iterable[str],
    path_filter: Optional[PathFilter] = None,
) -> Iterator[Path]:
    """Walk a snapshot directory and yield advisory files in sorted order.

    Ignored directories are pruned rather than walked.

    Args:
        root: Snapshot root directory
        suffixes: File suffixes to yield, e.g. ``.md``
        path_filter: Filter applied to paths relative to ``root``
    """
    path_filter = path_filter or PathFilter()
    wanted = {suffix.lower() for suffix in suffixes}

    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        relative_dir = current.relative_to(root)
        dirnames[:] = sorted(
            name for name in dirnames
            if not path_filter.is_ignored(relative_dir / name)
        )
        for filename in sorted(filenames):
            relative = relative_dir / filename
            if Path(filename).suffix.lower() in wanted and not path_filter.is_ignored(relative):
                yield current / filename
