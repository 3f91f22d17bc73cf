"""
Parallel execution across independent row chunks.

The requested range is cut into contiguous, non-overlapping chunks and one
``ChunkRunner`` per chunk runs on a bounded thread pool.  Every chunk opens
its own connections; nothing database-related is shared between threads.

Chunk size:
  - ``config.parallel_chunk_rows`` when set, otherwise
  - ``max(min_parallel_chunk_rows, ceil(remaining / workers))``

Chunks write no checkpoint: a single integer cannot describe several
partially finished ranges.  A stopped parallel run resumes from its start
row, and rows committed by finished chunks are inserted again.

A fatal chunk does not cancel its siblings; only the shared cancel event
does.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.loaders.chunk_runner import ChunkRunner, cap_failures
from sheet2sql.loaders.connection import ConnectFn, ConnectionSupervisor
from sheet2sql.loaders.drivers import Dialect
from sheet2sql.loaders.execute_log import ExecuteLog
from sheet2sql.loaders.progress import ProgressAggregator, ProgressCallback, ProgressReporter
from sheet2sql.models.models import ChunkOutcome, ExecutionReport, RunStatus
from sheet2sql.transformers.row_generator import clamp_range
from sheet2sql.transformers.statement_formatter import StatementFormatter

logger = logging.getLogger(__name__)


def plan_chunks(
    start_row: int, end_row: int, config: ExecutionConfig
) -> list[tuple[int, int]]:
    """
    Split ``[start_row, end_row)`` into contiguous ``[start, end)`` chunks.

    Example::

        >>> plan_chunks(0, 10_000, ExecutionConfig(max_workers=4, min_parallel_chunk_rows=1000))
        [(0, 2500), (2500, 5000), (5000, 7500), (7500, 10000)]
    """
    remaining = end_row - start_row
    if remaining <= 0:
        return []
    if config.parallel_chunk_rows > 0:
        size = config.parallel_chunk_rows
    else:
        size = max(
            config.min_parallel_chunk_rows,
            math.ceil(remaining / config.effective_max_workers),
            1,
        )
    return [(s, min(s + size, end_row)) for s in range(start_row, end_row, size)]


class ParallelOrchestrator:
    """
    Runs chunks concurrently and merges their reports.

    Args:
        rows:        Full row sequence.
        formatter:   Shared, stateless formatter.
        conn_str:    Connection string every chunk connects with.
        config:      Worker count, chunk sizing, failure cap.
        dialect:     Target dialect.
        connect:     Optional connection factory override (tests).
        cancel:      Shared cancel event for all chunks.
        progress:    Receives ``(rows_done, total_rows)`` for the whole run.
        execute_log: Shared execute log (fatal chunk errors).
    """

    def __init__(
        self,
        rows: Sequence[Mapping[str, Any]],
        formatter: StatementFormatter,
        conn_str: str,
        config: ExecutionConfig,
        dialect: Dialect,
        *,
        connect: ConnectFn | None = None,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
        execute_log: ExecuteLog | None = None,
    ) -> None:
        self.rows = rows
        self.formatter = formatter
        self.conn_str = conn_str
        self.config = config
        self.dialect = dialect
        self.connect = connect
        self.cancel = cancel or threading.Event()
        self.progress = progress
        self.execute_log = execute_log

    def run(self, start_row: int = 0, end_row: int | None = None) -> ExecutionReport:
        """
        Execute ``[start_row, end_row)`` in parallel chunks.

        Raises:
            MemoryError: Re-raised from any worker, for the outermost boundary.
        """
        start, end = clamp_range(len(self.rows), start_row, end_row)
        chunks = plan_chunks(start, end, self.config)
        if not chunks:
            return ExecutionReport(start_row=start, end_row=end, resume_row=end)

        workers = min(self.config.effective_max_workers, len(chunks))
        logger.info(
            "Running rows [%d, %d) as %d chunk(s) on %d worker(s)",
            start, end, len(chunks), workers,
        )

        reporter = ProgressReporter(
            self.progress,
            interval_seconds=self.config.progress_interval_seconds,
            row_step=self.config.report_interval(len(self.rows)),
        )
        aggregator = ProgressAggregator(reporter, total=len(self.rows), offset=start)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sheet2sql-chunk") as pool:
            futures: list[Future] = [
                pool.submit(self._run_chunk, chunk_id, chunk_start, chunk_end, aggregator)
                for chunk_id, (chunk_start, chunk_end) in enumerate(chunks)
            ]
            reports = [self._collect(f, chunks[i]) for i, f in enumerate(futures)]

        aggregator.finish()
        return self._aggregate(start, end, reports)

    # ── workers ──────────────────────────────────────────────────────────

    def _run_chunk(
        self, chunk_id: int, chunk_start: int, chunk_end: int, aggregator: ProgressAggregator
    ) -> ExecutionReport:
        supervisor = ConnectionSupervisor(
            self.conn_str, self.config, self.dialect, connect=self.connect
        )
        runner = ChunkRunner(
            self.rows,
            self.formatter,
            supervisor,
            self.config,
            checkpoint=None,
            progress=aggregator.adapter(chunk_id) if self.progress else None,
            cancel=self.cancel,
            execute_log=self.execute_log,
        )
        return runner.run(chunk_start, chunk_end)

    def _collect(self, future: Future, chunk: tuple[int, int]) -> ExecutionReport:
        """
        Wait for one chunk; an escaped exception becomes a fatal chunk report.

        A ``MemoryError`` sets ``cancel`` before propagating; the other
        chunks stop at their next row.
        """
        try:
            return future.result()
        except MemoryError:
            self.cancel.set()
            raise
        except Exception as e:
            logger.exception("Chunk [%d, %d) raised", *chunk)
            return ExecutionReport(
                status=RunStatus.FATAL,
                fatal_error=str(e),
                resume_row=chunk[0],
                start_row=chunk[0],
                end_row=chunk[1],
            )

    # ── aggregation ──────────────────────────────────────────────────────

    def _aggregate(
        self, start: int, end: int, reports: list[ExecutionReport]
    ) -> ExecutionReport:
        total = ExecutionReport(start_row=start, end_row=end)
        records = []
        for r in reports:
            total.inserted += r.inserted
            total.failed += r.failed
            records.extend(r.failure_details())
            total.chunks.append(ChunkOutcome(
                start_row=r.start_row,
                end_row=r.end_row,
                status=r.status,
                inserted=r.inserted,
                failed=r.failed,
                fatal_error=r.fatal_error,
                resume_row=r.resume_row,
            ))

        total.failed_rows, total.omitted_failures = cap_failures(
            records, total.failed, self.config.max_failed_rows
        )

        fatal = [c for c in total.chunks if c.status is RunStatus.FATAL]
        cancelled = any(c.status is RunStatus.CANCELLED for c in total.chunks)
        if fatal:
            total.status = RunStatus.FATAL
            total.fatal_error = "; ".join(
                f"Chunk [{c.start_row}, {c.end_row}) stopped at row {c.resume_row}: {c.fatal_error}"
                for c in fatal
            )
            total.resume_row = start
        elif cancelled:
            total.status = RunStatus.CANCELLED
            total.resume_row = start
        else:
            total.resume_row = end

        logger.info(
            "Parallel run [%d, %d) %s: inserted=%d failed=%d",
            start, end, total.status.value, total.inserted, total.failed,
        )
        return total
