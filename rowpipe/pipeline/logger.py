"""
Run logging.
============
Emoji-prefixed lines for a pipeline run. Row-scoped events always carry the
row label (`3` or `3.1.0` for explode descendants) and the 1-based step.
"""
import logging
from enum import Enum
from typing import Iterable


class LogLevel(Enum):
    """Log level indicators with emoji prefixes."""
    RUN = "🚀"
    STEP = "📋"
    SUCCESS = "✅"
    DROP = "🗑️"
    WARNING = "⚠️"
    ERROR = "❌"
    DEBUG = "🔍"
    SAVE = "💾"


def row_prefix(row_label: str, step_index: int) -> str:
    return f"[Row {row_label} | Step {step_index + 1}]"


class PipelineLogger:
    """Logger for one pipeline run."""

    def __init__(self, name: str = "rowpipe", verbose: bool = False):
        self.logger = logging.getLogger(name)
        self.verbose = verbose
        self._setup_handler()

    def _setup_handler(self):
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)
        self.logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    # Run lifecycle

    def run_started(self, row_count: int, step_count: int):
        self.logger.info(f"\n{LogLevel.RUN.value} Running {row_count} row(s) through {step_count} step(s)")

    def run_finished(self, completed: int, dropped: int, failed_rows: Iterable[int], elapsed: float):
        """Summary line; logged as an error when any row failed."""
        failed_rows = sorted(set(failed_rows))
        summary = f"{completed} completed, {dropped} dropped, {len(failed_rows)} failed in {elapsed:.1f}s"
        if failed_rows:
            self.logger.error(f"{LogLevel.ERROR.value} {summary} (failed rows: {failed_rows})")
        else:
            self.logger.info(f"{LogLevel.SUCCESS.value} {summary}")

    # Row and step events

    def step_started(self, row_label: str, step_index: int, step_count: int):
        self.logger.info(f"{LogLevel.STEP.value} [Row {row_label}] Step {step_index + 1}/{step_count}")

    def row_dropped(self, row_label: str, step_index: int, source: str):
        self.logger.info(f"{LogLevel.DROP.value} {row_prefix(row_label, step_index)} dropped by {source}")

    def row_failed(self, row_label: str, step_index: int, error: BaseException):
        self.logger.error(
            f"{LogLevel.ERROR.value} {row_prefix(row_label, step_index)} failed: "
            f"{type(error).__name__}: {error}"
        )

    def plugin_packets(self, row_label: str, step_index: int, plugin_id: str, count: int):
        self.debug(f"{row_prefix(row_label, step_index)} {plugin_id} returned {count} packet(s)")

    def artifact_saved(self, path: str):
        self.logger.info(f"{LogLevel.SAVE.value} Saved: {path}")

    # Free-form

    def warning(self, message: str):
        self.logger.warning(f"{LogLevel.WARNING.value} {message}")

    def debug(self, message: str):
        """Only emitted when verbose."""
        if self.verbose:
            self.logger.debug(f"{LogLevel.DEBUG.value} {message}")
