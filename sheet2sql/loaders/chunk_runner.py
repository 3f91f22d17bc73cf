"""
Sequential execution of one contiguous row range.

``ChunkRunner`` drives rows through the formatter, the batcher and the
connection supervisor.  It never raises for database trouble: connection
loss, open failures and unexpected errors all end the run in ``FATAL``
with a report saying where to resume.

State machine::

    IDLE -> OPENING_CONNECTION -> FORMATTING -> BATCHING -> SUBMITTING
         -> CHECKPOINTING -> (next row / next connection)
         -> COMPLETED | CANCELLED | FATAL

Resume point:
    ``processed`` is the exclusive end of the prefix of rows that are
    settled (committed or recorded as failed).  Rows sitting in the pending
    batch are not settled, so ``processed`` only advances when the batch is
    empty.  Checkpoints and ``resume_row`` both use it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import (
    BatchSubmitError,
    CheckpointError,
    ConnectionOpenError,
    OperationCancelled,
    RowFormatError,
)
from sheet2sql.loaders.batcher import Batcher
from sheet2sql.loaders.checkpoint import CheckpointStore
from sheet2sql.loaders.connection import ConnectionSupervisor
from sheet2sql.loaders.execute_log import ExecuteLog
from sheet2sql.loaders.progress import ProgressCallback, ProgressReporter
from sheet2sql.models.models import (
    ExecutionReport,
    FailureRecord,
    FormattedStatement,
    RunStatus,
)
from sheet2sql.transformers.row_generator import clamp_range
from sheet2sql.transformers.statement_formatter import StatementFormatter

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    OPENING_CONNECTION = "opening_connection"
    FORMATTING = "formatting"
    BATCHING = "batching"
    SUBMITTING = "submitting"
    CHECKPOINTING = "checkpointing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FATAL = "fatal"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.CANCELLED, RunState.FATAL)


# ---------------------------------------------------------------------------
# Failure capping
# ---------------------------------------------------------------------------

def summary_record(omitted: int, cap: int) -> FailureRecord:
    """The trailing entry standing in for failures beyond the cap."""
    return FailureRecord(
        -1, None, f"... and {omitted} more failures (only first {cap} logged)"
    )


def cap_failures(
    records: Sequence[FailureRecord], total_failed: int, cap: int
) -> tuple[list[FailureRecord], int]:
    """
    Sort ``records`` by row and keep at most ``cap`` of them.

    Args:
        records:      Failure records (summary entries are dropped).
        total_failed: Failures counted, recorded or not.
        cap:          Maximum detail records kept.

    Returns:
        ``(records, omitted)``; when ``omitted > 0`` the list ends with one
        summary entry.
    """
    details = sorted((r for r in records if not r.is_summary), key=lambda r: r.row_index)
    kept = details[:cap]
    omitted = max(0, total_failed - len(kept))
    if omitted:
        kept.append(summary_record(omitted, cap))
    return kept, omitted


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class ChunkRunner:
    """
    Runs ``[start_row, end_row)`` on connections from one supervisor.

    Args:
        rows:        Full row sequence (indexes are absolute).
        formatter:   Prepared statement formatter.
        supervisor:  Connection source for this runner only.
        config:      Batch size, checkpoint interval, failure cap.
        batcher:     Defaults to a ``Batcher`` for the supervisor's dialect.
        checkpoint:  Store to persist progress in; ``None`` disables
                     checkpoints (parallel chunks).
        progress:    Receives ``(settled_rows_in_range, range_size)``.
        cancel:      Shared cancel event, checked before every row.
        execute_log: Receives fatal errors with their traceback.
    """

    def __init__(
        self,
        rows: Sequence[Mapping[str, Any]],
        formatter: StatementFormatter,
        supervisor: ConnectionSupervisor,
        config: ExecutionConfig,
        *,
        batcher: Batcher | None = None,
        checkpoint: CheckpointStore | None = None,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        execute_log: ExecuteLog | None = None,
    ) -> None:
        self.rows = rows
        self.formatter = formatter
        self.supervisor = supervisor
        self.config = config
        self.batcher = batcher or Batcher(config, supervisor.dialect)
        self.checkpoint = checkpoint
        self.cancel = cancel or threading.Event()
        self.execute_log = execute_log
        self._progress_cb = progress
        self._state = RunState.IDLE
        self._batch: list[FormattedStatement] = []
        self._failures: list[FailureRecord] = []
        self._processed = 0
        self._last_checkpoint = 0

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def processed(self) -> int:
        """Exclusive end of the settled row prefix."""
        return self._processed

    # ── public ───────────────────────────────────────────────────────────

    def run(self, start_row: int, end_row: int | None = None) -> ExecutionReport:
        """
        Process ``[start_row, end_row)``.

        Returns:
            ``ExecutionReport``.  ``status`` is ``COMPLETED``, ``CANCELLED``
            or ``FATAL``; for the last two ``resume_row`` is where a rerun
            should start.

        Raises:
            MemoryError: Propagated to the outermost boundary.
            RuntimeError: If the runner was already used.
        """
        if self._state is not RunState.IDLE:
            raise RuntimeError(f"ChunkRunner already ran (state={self._state.value})")

        start, end = clamp_range(len(self.rows), start_row, end_row)
        report = ExecutionReport(start_row=start, end_row=end, resume_row=start)
        self._processed = start
        self._last_checkpoint = start

        if end <= start:
            self._state = RunState.COMPLETED
            report.resume_row = end
            return report

        total = end - start
        reporter = ProgressReporter(
            self._progress_cb,
            interval_seconds=self.config.progress_interval_seconds,
            row_step=self.config.report_interval(total),
        )
        logger.info("Chunk [%d, %d) starting", start, end)

        try:
            for range_start, range_end in self.supervisor.rotation_ranges(start, end):
                self._state = RunState.OPENING_CONNECTION
                with self.supervisor.session(self.cancel) as conn:
                    cancelled_at = self._run_range(conn, range_start, range_end, report, reporter)
                if cancelled_at is not None:
                    return self._finish_cancelled(report, cancelled_at)
        except OperationCancelled:
            return self._finish_cancelled(report, self._processed)
        except BatchSubmitError as e:
            report.inserted += e.inserted
            report.failed += len(e.failures)
            self._record(e.failures)
            if e.first_row is not None:
                self._processed = e.first_row
            return self._finish_fatal(report, e)
        except ConnectionOpenError as e:
            return self._finish_fatal(report, e)
        except MemoryError:
            self._batch.clear()
            self._state = RunState.FATAL
            self._safe_checkpoint(self._processed)
            raise
        except Exception as e:
            logger.exception("Unexpected error in chunk [%d, %d)", start, end)
            return self._finish_fatal(report, e)

        self._state = RunState.COMPLETED
        self._processed = end
        self._safe_checkpoint(end)
        reporter.update(report.processed, total, force=True)
        self._finalize(report)
        logger.info(
            "Chunk [%d, %d) completed: inserted=%d failed=%d",
            start, end, report.inserted, report.failed,
        )
        return report

    # ── row loop ─────────────────────────────────────────────────────────

    def _run_range(
        self,
        conn: Any,
        range_start: int,
        range_end: int,
        report: ExecutionReport,
        reporter: ProgressReporter,
    ) -> int | None:
        """Process one connection's rows; returns the row index if cancelled."""
        batch = self._batch
        total = report.end_row - report.start_row

        for i in range(range_start, range_end):
            if self.cancel.is_set():
                self._flush(conn, report)
                self._processed = i
                return i

            self._state = RunState.FORMATTING
            try:
                stmt = self.formatter.format(self.rows[i], i)
            except RowFormatError as e:
                report.failed += 1
                self._record([FailureRecord(i, None, str(e))])
            else:
                self._state = RunState.BATCHING
                batch.append(stmt)
                if len(batch) >= self.config.batch_size:
                    self._flush(conn, report)

            if not batch:
                self._processed = i + 1
                self._maybe_checkpoint()
            reporter.update(report.processed, total)

        self._flush(conn, report)
        self._processed = range_end
        self._maybe_checkpoint()
        reporter.update(report.processed, total)
        return None

    def _flush(self, conn: Any, report: ExecutionReport) -> None:
        if not self._batch:
            return
        self._state = RunState.SUBMITTING
        try:
            outcome = self.batcher.submit_batch(conn, self._batch)
        finally:
            self._batch.clear()
        report.inserted += outcome.inserted
        report.failed += outcome.failed
        self._record(outcome.failures)

    def _record(self, failures: Sequence[FailureRecord]) -> None:
        # Format failures are recorded before earlier rows in the pending
        # batch settle, so trim by row index rather than arrival order.
        if not failures:
            return
        self._failures.extend(failures)
        cap = self.config.max_failed_rows
        if len(self._failures) > cap:
            self._failures.sort(key=lambda record: record.row_index)
            del self._failures[cap:]

    # ── checkpoints ──────────────────────────────────────────────────────

    def _maybe_checkpoint(self) -> None:
        if self.checkpoint is None:
            return
        if self._processed - self._last_checkpoint >= self.config.checkpoint_interval:
            self._state = RunState.CHECKPOINTING
            self.checkpoint.write(self._processed)
            self._last_checkpoint = self._processed

    def _safe_checkpoint(self, row: int) -> None:
        """Checkpoint on the way out; a write failure must not mask the real outcome."""
        if self.checkpoint is None:
            return
        try:
            self.checkpoint.write(row)
            self._last_checkpoint = row
        except CheckpointError as e:
            logger.error("Final checkpoint write failed: %s", e)

    # ── terminal states ──────────────────────────────────────────────────

    def _finish_cancelled(self, report: ExecutionReport, row: int) -> ExecutionReport:
        self._state = RunState.CANCELLED
        self._processed = row
        self._safe_checkpoint(row)
        report.status = RunStatus.CANCELLED
        report.resume_row = row
        self._finalize(report, resume=row)
        logger.info("Chunk [%d, %d) cancelled at row index %d", report.start_row, report.end_row, row)
        return report

    def _finish_fatal(self, report: ExecutionReport, error: BaseException) -> ExecutionReport:
        self._batch.clear()
        self._state = RunState.FATAL
        self._safe_checkpoint(self._processed)
        report.status = RunStatus.FATAL
        report.fatal_error = str(error)
        self._finalize(report, resume=self._processed)
        logger.error(
            "Chunk [%d, %d) stopped at row index %d: %s",
            report.start_row, report.end_row, self._processed, error,
        )
        if self.execute_log is not None:
            self.execute_log.error(
                f"Chunk [{report.start_row}, {report.end_row}) stopped; "
                f"resume from row index {self._processed}",
                error,
            )
        return report

    def _finalize(self, report: ExecutionReport, resume: int | None = None) -> None:
        report.resume_row = resume if resume is not None else report.end_row
        report.failed_rows, report.omitted_failures = cap_failures(
            self._failures, report.failed, self.config.max_failed_rows
        )
