"""Logging configuration and progress display for tilewise commands."""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

LOGGER_NAME = "tilewise"

console = Console(stderr=True)


def configure_logging(verbosity: int) -> logging.Logger:
    """Map -v/-vv to INFO/DEBUG and route tilewise logs through rich."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    return logger


class ProgressManager:
    """Thin wrapper around rich Progress; a no-op when disabled."""

    def __init__(self, enabled: bool = True):
        self.enabled = bool(enabled)
        self._progress: Optional[Progress] = None

    def __enter__(self) -> "ProgressManager":
        if self.enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                TimeRemainingColumn(),
                console=console,
                refresh_per_second=5,
            )
            self._progress.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._progress:
            self._progress.stop()
        self._progress = None

    def add(self, description: str, total: Optional[int] = None) -> Optional[int]:
        if not self._progress:
            return None
        return self._progress.add_task(description, total=total)

    def advance(self, task_id: Optional[int], advance: float = 1.0) -> None:
        if self._progress and task_id is not None:
            self._progress.advance(task_id, advance)


def progress_enabled(requested: bool) -> bool:
    return requested or logging.getLogger(LOGGER_NAME).isEnabledFor(logging.INFO)


__all__ = ["configure_logging", "ProgressManager", "progress_enabled", "console"]
