"""
Append-only execute log.

A human-readable record of every execute run, kept apart from the
diagnostic ``logging`` output so operators can ``grep`` a single file for
what happened to a given row.

Log format (one line per entry)::

    2024-01-15 09:30:00.123 [INFO] ========== Execute session start ==========
    2024-01-15 09:30:00.124 [INFO] Mode: parallel, Total rows: 120000, Start row: 0, Chunk size: 30000
    2024-01-15 09:31:12.500 [FAIL]   Row 1042: ID='A-17' | Violation of PRIMARY KEY constraint ...
    2024-01-15 09:31:40.001 [INFO] Session end: Inserted: 119998, Failed: 2

The file is appended to on every run, never truncated.  Writes from
parallel workers are serialised with a lock.  A failure to write is
reported through the module logger and never stops execution.

Usage::

    from sheet2sql.loaders.execute_log import ExecuteLog

    log = ExecuteLog(config.execute_log_path)
    log.start_session("safe", total_rows=len(rows), start_row=0, chunk_size=0)
"""

from __future__ import annotations

import logging
import threading
import traceback
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from sheet2sql.models.models import FailureRecord

logger = logging.getLogger(__name__)

_SESSION_START = "========== Execute session start =========="
_SESSION_END = "========== Execute session end =========="


class ExecuteLog:
    """
    Line-oriented execute log.

    Args:
        path: Log file.  Parent directories are created on first write.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    # ── levels ───────────────────────────────────────────────────────────

    def info(self, message: str) -> None:
        self._write("INFO", message)

    def warn(self, message: str) -> None:
        self._write("WARN", message)

    def error(self, message: str, exc: BaseException | None = None) -> None:
        if exc is not None:
            trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            message = f"{message}\n  {type(exc).__name__}: {exc}\n{trace.rstrip()}"
        self._write("ERROR", message)

    # ── run structure ────────────────────────────────────────────────────

    def start_session(self, mode: str, total_rows: int, start_row: int, chunk_size: int) -> None:
        """Write a session separator so runs are easy to spot."""
        self.info(_SESSION_START)
        self.info(
            f"Mode: {mode}, Total rows: {total_rows}, Start row: {start_row}, "
            f"Chunk size: {chunk_size}"
        )

    def end_session(self, inserted: int, failed: int, stopped_with_error: str | None = None) -> None:
        if stopped_with_error:
            self.error("Stopped with error: " + stopped_with_error)
        self.info(f"Session end: Inserted: {inserted}, Failed: {failed}")
        self.info(_SESSION_END)

    def skipped_range(self, start_row: int) -> None:
        """Record rows ``0 .. start_row - 1`` being skipped (resume or explicit start)."""
        if start_row <= 0:
            return
        self.info(
            f"Skipped rows 0 to {start_row - 1} (count={start_row}). "
            f"Execution starting at row {start_row}."
        )

    def failed_rows(self, failures: Iterable[FailureRecord]) -> None:
        """One ``FAIL`` line per record; the summary entry is written as-is."""
        failures = list(failures)
        if not failures:
            return
        self.info(f"Failed rows ({len(failures)}):")
        for record in failures:
            if record.is_summary:
                self._write("FAIL", f"  {record.message}")
                continue
            id_part = f" ID={record.id_value} |" if record.id_value else ""
            self._write("FAIL", f"  Row {record.row_number}:{id_part} {record.message}")

    # ── internals ────────────────────────────────────────────────────────

    def _write(self, level: str, message: str) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        line = f"{stamp} [{level}] {message}\n"
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            logger.warning("Could not write execute log %s: %s", self.path, e)


def count_fail_lines(path: Path | str) -> int:
    """
    Count ``[FAIL]`` entries in the log file.

    Returns 0 if the log file does not exist.
    """
    log_path = Path(path)
    if not log_path.exists():
        return 0
    with open(log_path, encoding="utf-8") as f:
        return sum(1 for line in f if " [FAIL] " in line)
