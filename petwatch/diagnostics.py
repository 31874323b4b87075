"""
Diagnostics and logging setup for Petwatch
"""

import logging
import time
from typing import Dict, Any, Optional
from contextlib import contextmanager
from collections import defaultdict
import threading
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import config


# Rich console for pretty output
console = Console()


def enable_diagnostics(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    format: str = "%(message)s",
    use_rich: bool = True,
):
    """Enable logging for the ``petwatch`` logger.

    Level and log file default to ``PW_LOG_LEVEL`` / ``PW_LOG_FILE``.
    """
    level = level or config.get("PW_LOG_LEVEL", "INFO")
    log_file = log_file if log_file is not None else config.get("PW_LOG_FILE", "")
    log_level = getattr(logging, level.upper(), logging.INFO)

    if use_rich:
        handler = RichHandler(console=console, show_time=True, show_path=False)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format))

    petwatch_logger = logging.getLogger("petwatch")
    petwatch_logger.setLevel(log_level)
    petwatch_logger.addHandler(handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        petwatch_logger.addHandler(file_handler)

    logging.getLogger(__name__).debug(f"Diagnostics enabled (level: {level})")


class Metrics:
    """Session metrics.

    Two kinds of entries:
        timings - backend calls (identify, interpret, clip) via ``track()``
        counters - cycle events (``cycle.fired``, ``cycle.skipped``) via ``count()``
    """

    def __init__(self):
        self._timings = defaultdict(lambda: {
            'processed': 0,
            'errors': 0,
            'total_time': 0.0,
            'min_time': float('inf'),
            'max_time': 0.0,
        })
        self._counters: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    @contextmanager
    def track(self, name: str):
        """Time one call; an exception counts as an error and propagates."""
        start_time = time.time()
        error = False

        try:
            yield
        except BaseException:
            error = True
            raise
        finally:
            elapsed = time.time() - start_time

            with self._lock:
                timing = self._timings[name]
                timing['processed'] += 1
                if error:
                    timing['errors'] += 1
                timing['total_time'] += elapsed
                timing['min_time'] = min(timing['min_time'], elapsed)
                timing['max_time'] = max(timing['max_time'], elapsed)

    def count(self, name: str, n: int = 1):
        """Bump an event counter"""
        with self._lock:
            self._counters[name] += n

    def get_count(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_stats(self, name: str) -> Dict[str, Any]:
        """Timing statistics for a tracked call, or {} if never tracked"""
        with self._lock:
            if name not in self._timings:
                return {}
            stats = self._timings[name].copy()
        stats['avg_time'] = stats['total_time'] / stats['processed']
        return stats

    def print_summary(self):
        """Print backend timings and cycle counters"""
        table = Table(title="Session Metrics")
        table.add_column("Operation", style="cyan")
        table.add_column("Calls", style="green")
        table.add_column("Errors", style="red")
        table.add_column("Avg Time (s)", style="yellow")
        table.add_column("Min/Max (s)", style="blue")

        for name in sorted(self._timings):
            stats = self.get_stats(name)
            table.add_row(
                name,
                str(stats['processed']),
                str(stats['errors']),
                f"{stats['avg_time']:.3f}",
                f"{stats['min_time']:.3f}/{stats['max_time']:.3f}"
            )
        console.print(table)

        with self._lock:
            counters = dict(self._counters)
        if counters:
            events = Table(title="Cycle Events")
            events.add_column("Event", style="cyan")
            events.add_column("Count", style="green")
            for name in sorted(counters):
                events.add_row(name, str(counters[name]))
            console.print(events)


# Global metrics instance
metrics = Metrics()
