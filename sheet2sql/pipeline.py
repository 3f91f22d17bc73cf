"""
Pipeline entry points for sheet2sql.

Wires the formatter, validator and execution engine together and is the
outermost error boundary.  These are the callables the CLI invokes.

Entry points:
  - ``execute``         rows -> database, single (``safe``) or ``parallel``
  - ``validate``        dry run of the formatter, no database
  - ``generate_script`` rows -> ``.sql`` file(s)
  - ``execute_script``  previously generated ``.sql`` text -> database

Error policy:
  - ``TemplateError`` / ``ConfigError`` are raised before any row is
    touched; nothing is logged to the execute log.
  - Connection and submission failures come back inside the
    ``ExecutionReport`` (``status=FATAL``, ``resume_row``); never raised.
  - ``MemoryError`` is caught here, and only here.  The resume row is read
    back from the checkpoint file, the last state known to be on disk.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import CheckpointError, ConfigError
from sheet2sql.loaders.checkpoint import CheckpointStore
from sheet2sql.loaders.chunk_runner import ChunkRunner
from sheet2sql.loaders.connection import ConnectFn, ConnectionSupervisor
from sheet2sql.loaders.drivers import get_dialect
from sheet2sql.loaders.execute_log import ExecuteLog
from sheet2sql.loaders.parallel import ParallelOrchestrator
from sheet2sql.loaders.progress import ProgressCallback, ProgressReporter
from sheet2sql.models.models import (
    ExecutionReport,
    FormattedStatement,
    PlaceholderMapping,
    RunStatus,
    ValidationIssue,
    ValidationResult,
)
from sheet2sql.transformers.row_generator import clamp_range, generate_statements
from sheet2sql.transformers.statement_formatter import StatementFormatter
from sheet2sql.transformers.template_parser import split_statements
from sheet2sql.utils.validation import Validator

logger = logging.getLogger(__name__)

MODES = ("safe", "parallel")


# ---------------------------------------------------------------------------
# Result object
# ---------------------------------------------------------------------------

@dataclass
class ScriptResult:
    """
    Summary of a ``generate_script`` run.

    Attributes:
        files:      Files written, in order.
        statements: Statements written across all files.
        issues:     Rows skipped because they could not be formatted.
        cancelled:  True if the run stopped on the cancel event.
    """
    files: list[Path] = field(default_factory=list)
    statements: int = 0
    issues: list[ValidationIssue] = field(default_factory=list)
    cancelled: bool = False


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def execute(
    rows: Sequence[Mapping[str, Any]],
    template: str,
    mappings: Sequence[PlaceholderMapping],
    conn_str: str,
    config: ExecutionConfig,
    *,
    mode: str = "safe",
    start_row: int = 0,
    chunk_size: int = 0,
    resume: bool = False,
    cancel: threading.Event | None = None,
    progress: ProgressCallback | None = None,
    connect: ConnectFn | None = None,
) -> ExecutionReport:
    """
    Execute one INSERT per row against the database.

    Args:
        rows:       Full row sequence.
        template:   INSERT template with ``VALUES``.
        mappings:   Placeholder mappings (empty = same-named columns).
        conn_str:   Connection string.
        config:     Execution config.
        mode:       ``safe`` (one ChunkRunner, checkpoints) or ``parallel``.
        start_row:  First row index to execute.
        chunk_size: Rows to execute from ``start_row``; 0 means to the end.
        resume:     Start from the checkpoint file instead of ``start_row``
                    when a checkpoint exists.  Ignored in ``parallel`` mode,
                    which keeps no checkpoint.
        cancel:     Cooperative cancel event.
        progress:   Receives ``(rows_done, total_rows)`` with ``rows_done``
                    counted from row 0.
        connect:    Connection factory override (tests).

    Returns:
        ``ExecutionReport``.  ``fatal_error`` set means resume from
        ``resume_row``.

    The run owns the checkpoint file from the start: a safe run rewrites
    it with its start row, a parallel run deletes it, so no value left by
    an earlier run can point past rows this run never inserted.

    Raises:
        ConfigError:     Unknown mode or unreadable checkpoint on resume.
        TemplateError:   Unusable template or mappings.
        CheckpointError: The checkpoint file cannot be rewritten.
    """
    if mode not in MODES:
        raise ConfigError(f"Unknown mode. Valid modes: {list(MODES)}", key="mode", value=mode)

    dialect = get_dialect(config)
    formatter = StatementFormatter(template, mappings, config, dialect)
    checkpoint = CheckpointStore(config.checkpoint_path)
    cancel = cancel or threading.Event()
    total = len(rows)

    if resume and mode == "parallel":
        logger.warning(
            "Parallel runs keep no checkpoint; --resume ignored, starting at row %d", start_row
        )
    elif resume:
        try:
            saved = checkpoint.read()
        except CheckpointError as e:
            raise ConfigError(str(e), key="checkpoint", value=str(config.checkpoint_path)) from e
        if saved is not None:
            logger.info("Resuming from checkpoint row %d", saved)
            start_row = saved

    start, end = clamp_range(total, start_row, start_row + chunk_size if chunk_size > 0 else None)
    _claim_checkpoint(checkpoint, None if mode == "parallel" else start)

    log = ExecuteLog(config.execute_log_path)
    log.start_session(mode, total, start, chunk_size)
    log.skipped_range(start)

    try:
        if mode == "parallel":
            report = ParallelOrchestrator(
                rows, formatter, conn_str, config, dialect,
                connect=connect, cancel=cancel, progress=progress, execute_log=log,
            ).run(start, end)
        else:
            supervisor = ConnectionSupervisor(conn_str, config, dialect, connect=connect)
            runner = ChunkRunner(
                rows, formatter, supervisor, config,
                checkpoint=checkpoint,
                progress=_offset_progress(progress, start, total),
                cancel=cancel,
                execute_log=log,
            )
            report = runner.run(start, end)
    except MemoryError as e:
        report = _out_of_memory_report(checkpoint, mode, start, end)
        log.error(report.fatal_error, e)

    log.failed_rows(report.failed_rows)
    log.end_session(report.inserted, report.failed, report.fatal_error)
    _log_outcome(report)
    return report


def validate(
    rows: Sequence[Mapping[str, Any]],
    template: str,
    mappings: Sequence[PlaceholderMapping],
    config: ExecutionConfig,
    *,
    start_row: int = 0,
    end_row: int | None = None,
    cancel: threading.Event | None = None,
    progress: ProgressCallback | None = None,
) -> ValidationResult:
    """
    Dry-run the formatter over ``[start_row, end_row)`` without a database.

    Uses the same prepared template (ROWLOCK hint included) as ``execute``
    so statement lengths match what would be sent.
    """
    formatter = StatementFormatter(template, mappings, config)
    result = Validator(formatter, config).validate(
        rows, start_row, end_row, cancel=cancel, progress=progress
    )
    logger.info(
        "Validation %s: %d row(s) checked, %d issue(s)",
        "cancelled" if result.cancelled else ("passed" if result.ok else "failed"),
        result.rows_checked, len(result.issues),
    )
    return result


def generate_script(
    rows: Sequence[Mapping[str, Any]],
    template: str,
    mappings: Sequence[PlaceholderMapping],
    output_path: Path | str,
    config: ExecutionConfig,
    *,
    statements_per_file: int = 0,
    start_row: int = 0,
    end_row: int | None = None,
    cancel: threading.Event | None = None,
    progress: ProgressCallback | None = None,
) -> ScriptResult:
    """
    Write one statement per line to ``output_path``.

    With ``statements_per_file > 0`` the output is split into
    ``{stem}_part001{suffix}``, ``{stem}_part002{suffix}`` ... each holding
    at most that many statements.  Rows that fail to format are skipped and
    returned as issues.  The ROWLOCK hint is not applied: scripts are meant
    to be reviewed and run by hand.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = StatementFormatter(template, mappings, replace(config, rowlock_hint=False))
    start, end = clamp_range(len(rows), start_row, end_row)
    reporter = ProgressReporter(
        progress,
        interval_seconds=config.progress_interval_seconds,
        row_step=config.report_interval(end - start),
    )
    result = ScriptResult()

    with ExitStack() as stack:
        handle = None
        in_file = 0
        for item in generate_statements(rows, formatter, start, end):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                break
            if item.error is not None:
                result.issues.append(ValidationIssue(item.row_index, str(item.error)))
            else:
                if handle is None or (0 < statements_per_file <= in_file):
                    if handle is not None:
                        handle.close()
                    path = _part_path(output_path, len(result.files) + 1, statements_per_file)
                    handle = stack.enter_context(open(path, "w", encoding="utf-8"))
                    result.files.append(path)
                    in_file = 0
                handle.write(item.statement.sql + "\n")
                in_file += 1
                result.statements += 1
            reporter.update(item.row_index + 1 - start, end - start, force=item.row_index + 1 == end)

    logger.info(
        "Wrote %d statement(s) to %d file(s); %d row(s) skipped",
        result.statements, len(result.files), len(result.issues),
    )
    return result


def execute_script(
    sql_text: str,
    conn_str: str,
    config: ExecutionConfig,
    *,
    start_statement: int = 0,
    cancel: threading.Event | None = None,
    progress: ProgressCallback | None = None,
    connect: ConnectFn | None = None,
) -> ExecutionReport:
    """
    Execute a generated script statement by statement, in batches.

    ``sql_text`` is split with ``split_statements``; statement indexes take
    the place of row indexes in the report and the checkpoint.
    The statement checkpoint is kept beside the row checkpoint, in
    ``<stem>.script<suffix>``, so a script run never moves a row resume point.
    """
    statements = split_statements(sql_text)
    dialect = get_dialect(config)
    supervisor = ConnectionSupervisor(conn_str, config, dialect, connect=connect)
    log = ExecuteLog(config.execute_log_path)
    log.start_session("script", len(statements), start_statement, 0)
    checkpoint = CheckpointStore(_script_checkpoint_path(config.checkpoint_path))
    _claim_checkpoint(checkpoint, start_statement)

    runner = ChunkRunner(
        statements,
        _ScriptStatements(),
        supervisor,
        config,
        checkpoint=checkpoint,
        progress=_offset_progress(progress, start_statement, len(statements)),
        cancel=cancel,
        execute_log=log,
    )
    report = runner.run(start_statement)
    log.failed_rows(report.failed_rows)
    log.end_session(report.inserted, report.failed, report.fatal_error)
    _log_outcome(report)
    return report


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

class _ScriptStatements:
    """Formatter stand-in for rows that already are statements."""

    def format(self, row: str, row_index: int) -> FormattedStatement:
        return FormattedStatement(row_index, row.strip())


def _offset_progress(
    progress: ProgressCallback | None, offset: int, total: int
) -> ProgressCallback | None:
    """Turn a runner's ``(done_in_range, _)`` into ``(offset + done, total)``."""
    if progress is None:
        return None
    return lambda done, _range_total: progress(offset + done, total)


def _claim_checkpoint(checkpoint: CheckpointStore, start: int | None) -> None:
    """Drop any earlier run's checkpoint and, unless ``start`` is None, seed it at ``start``."""
    checkpoint.reset()
    if start is not None:
        checkpoint.write(start)


def _script_checkpoint_path(path: Path) -> Path:
    """``run.ckpt`` -> ``run.script.ckpt``; statement indexes never share the row file."""
    return path.with_name(f"{path.stem}.script{path.suffix}")


def _part_path(output_path: Path, part: int, statements_per_file: int) -> Path:
    if statements_per_file <= 0:
        return output_path
    return output_path.with_name(f"{output_path.stem}_part{part:03d}{output_path.suffix}")


def _out_of_memory_report(
    checkpoint: CheckpointStore, mode: str, start: int, end: int
) -> ExecutionReport:
    resume = start
    if mode != "parallel":
        try:
            saved = checkpoint.read()
        except CheckpointError:
            saved = None
        if saved is not None and saved >= start:
            resume = saved
    return ExecutionReport(
        status=RunStatus.FATAL,
        fatal_error=(
            f"Out of memory near row {resume}. Resume from row {resume}, "
            "or reduce the batch size or chunk size."
        ),
        resume_row=resume,
        start_row=start,
        end_row=end,
    )


def _log_outcome(report: ExecutionReport) -> None:
    if report.status is RunStatus.FATAL:
        logger.error(
            "Execution stopped: inserted=%d failed=%d resume_row=%s error=%s",
            report.inserted, report.failed, report.resume_row, report.fatal_error,
        )
    elif report.status is RunStatus.CANCELLED:
        logger.warning(
            "Execution cancelled: inserted=%d failed=%d resume_row=%s",
            report.inserted, report.failed, report.resume_row,
        )
    else:
        logger.info("Execution completed: inserted=%d failed=%d", report.inserted, report.failed)
