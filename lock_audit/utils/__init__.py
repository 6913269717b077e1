"""Utility modules for lockaudit."""

from .logging import get_logger, setup_logging
from .paths import PathFilter, find_lockfile, iter_advisory_files
from .performance import PerformanceMonitor, benchmark

__all__ = [
    "get_logger",
    "setup_logging",
    "PathFilter",
    "find_lockfile",
    "iter_advisory_files",
    "PerformanceMonitor",
    "benchmark",
]
