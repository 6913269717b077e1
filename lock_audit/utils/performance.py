"""Stage timing for audit runs."""

import functools
import logging
import os
import time
import tracemalloc
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from rich.console import Console
from rich.table import Table

F = TypeVar('F', bound=Callable[..., Any])

BENCHMARK_ENV = "LOCKAUDIT_VERBOSE_BENCHMARK"

_MB = 1024 * 1024


@dataclass(frozen=True)
class StageTiming:
    """Wall time, and optionally traced memory, of one measured stage."""

    name: str
    seconds: float
    allocated_bytes: Optional[int] = None
    peak_bytes: Optional[int] = None

    @property
    def allocated_mb(self) -> Optional[float]:
        return None if self.allocated_bytes is None else self.allocated_bytes / _MB

    @property
    def peak_mb(self) -> Optional[float]:
        return None if self.peak_bytes is None else self.peak_bytes / _MB


class PerformanceMonitor:
    """Collects :class:`StageTiming` records for the stages of one run.

    With ``enable_memory_tracking`` the monitor starts ``tracemalloc`` (unless
    it is already tracing) and :meth:`stop` turns it off again.
    """

    def __init__(self, enable_memory_tracking: bool = False, console: Optional[Console] = None) -> None:
        self.metrics: List[StageTiming] = []
        self.enable_memory_tracking = enable_memory_tracking
        self.console = console or Console(stderr=True)
        self._started_tracing = False

        if enable_memory_tracking and not tracemalloc.is_tracing():
            tracemalloc.start()
            self._started_tracing = True

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        """Record the duration of the ``with`` block as stage ``name``."""
        if self.enable_memory_tracking:
            tracemalloc.reset_peak()
            before = tracemalloc.get_traced_memory()[0]
        started = time.perf_counter()

        try:
            yield
        finally:
            elapsed = time.perf_counter() - started
            if self.enable_memory_tracking:
                current, peak = tracemalloc.get_traced_memory()
                self.metrics.append(StageTiming(name, elapsed, current - before, peak))
            else:
                self.metrics.append(StageTiming(name, elapsed))

    def total_seconds(self) -> float:
        return sum(metric.seconds for metric in self.metrics)

    def get_summary(self) -> Dict[str, Any]:
        """Per-stage seconds plus the total, in measurement order."""
        summary: Dict[str, Any] = {"stages": {m.name: m.seconds for m in self.metrics}}
        summary["total_seconds"] = self.total_seconds()
        if self.enable_memory_tracking and self.metrics:
            summary["peak_mb"] = max(m.peak_mb or 0.0 for m in self.metrics)
        return summary

    def print_summary(self) -> None:
        """Print one row per stage and a total row to stderr."""
        if not self.metrics:
            return

        table = Table(title="Performance Summary")
        table.add_column("Stage", style="cyan")
        table.add_column("Time", style="green", justify="right")
        if self.enable_memory_tracking:
            table.add_column("Peak Memory", style="green", justify="right")

        for metric in self.metrics:
            row = [metric.name, f"{metric.seconds:.4f}s"]
            if self.enable_memory_tracking:
                row.append(f"{metric.peak_mb or 0.0:.2f} MB")
            table.add_row(*row)

        total = ["[bold]Total[/bold]", f"[bold]{self.total_seconds():.4f}s[/bold]"]
        if self.enable_memory_tracking:
            total.append("")
        table.add_row(*total)
        self.console.print(table)

    def stop(self) -> None:
        if self._started_tracing:
            tracemalloc.stop()
            self._started_tracing = False


def benchmark(func: F) -> F:
    """Log the call duration of ``func`` when ``LOCKAUDIT_VERBOSE_BENCHMARK`` is set."""
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        if not os.environ.get(BENCHMARK_ENV):
            return func(*args, **kwargs)

        started = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            logging.getLogger("lock_audit.Performance").info(
                f"{func.__qualname__} took {time.perf_counter() - started:.4f} seconds"
            )
    return wrapper
