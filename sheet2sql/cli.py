"""
sheet2sql: spreadsheet rows to SQL INSERT statements.

Reads an ``.xlsx`` / ``.csv`` source, fills an INSERT template once per row
and either executes the statements in batches, validates them, or writes
them to a script.

Settings come from the environment (optionally loaded from an env file
with ``--config``/``--env``, or from ``.env`` in the working directory) and
can be overridden per run with flags:

    DB_CONNECTION  Connection string used when --connection is not given
    DB_DIALECT     mssql (default) or oracle
    BATCH_SIZE, MAX_WORKERS, CHECKPOINT_PATH, EXECUTE_LOG, ...

Commands:
    execute     Validate, then execute one INSERT per row.
    validate    Format every row without touching the database.
    generate    Write the statements to a .sql script (optionally split).
    run-script  Execute a previously generated script.

Usage examples:
    sheet2sql --config config.dat --env dev execute people.xlsx \\
        --template-file insert_people.sql --mapping people.json --mode parallel

    sheet2sql validate people.csv --template "INSERT INTO dbo.People (Id, Name) VALUES (<Id, int>, <Name, nvarchar(50)>)"
    sheet2sql generate people.xlsx --template-file insert_people.sql --output out/people.sql --per-file 50000
    sheet2sql execute people.xlsx --template-file insert_people.sql --resume

Exit codes:
    0    Success (per-row failures are reported but do not fail the run)
    1    Execution stopped early, or validation found issues
    2    Configuration / template / source / argument error
    130  Cancelled (Ctrl+C)
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from dotenv import load_dotenv

from sheet2sql.configs.config import SUPPORTED_DIALECTS, ExecutionConfig
from sheet2sql.configs.env_file import apply_env_file
from sheet2sql.configs.exceptions import ConfigError, Sheet2SqlError
from sheet2sql.configs.mappings import build_mappings, load_mapping_file
from sheet2sql.discovery.sources import load_rows
from sheet2sql.models.models import ExecutionReport, PlaceholderMapping, ValidationResult
from sheet2sql.pipeline import MODES, execute, execute_script, generate_script, validate

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        level=level,
        stream=sys.stdout,
    )


# ---------------------------------------------------------------------------
# Config: env vars (env file / .env) + optional CLI overrides
# ---------------------------------------------------------------------------

def _load_environment(args: argparse.Namespace) -> None:
    if args.config:
        apply_env_file(args.config, args.env)
    else:
        load_dotenv(override=False)


def _build_config(args: argparse.Namespace) -> ExecutionConfig:
    """
    Priority order for each setting:
      1. CLI flag (--batch-size, --workers, etc.)
      2. Environment variable (process, --config file or .env)
      3. ExecutionConfig default
    """
    overrides = {
        "batch_size":      getattr(args, "batch_size", None),
        "max_workers":     getattr(args, "workers", None),
        "dialect":         getattr(args, "dialect", None),
        "checkpoint_path": getattr(args, "checkpoint", None),
        "execute_log_path": getattr(args, "log", None),
    }
    kwargs = {k: v for k, v in overrides.items() if v is not None}
    if getattr(args, "no_rowlock", False):
        kwargs["rowlock_hint"] = False
    return ExecutionConfig(**kwargs)


def _read_template(args: argparse.Namespace) -> str:
    if args.template_file:
        path = Path(args.template_file)
        try:
            return path.read_text(encoding="utf-8-sig")
        except OSError as e:
            raise ConfigError(f"Cannot read template file: {e}", key="template_file", value=str(path)) from e
    return args.template


def _build_mappings(args: argparse.Namespace, template: str) -> list[PlaceholderMapping]:
    entries = load_mapping_file(args.mapping) if args.mapping else []
    return build_mappings(template, entries)


def _connection_string(args: argparse.Namespace) -> str:
    conn_str = args.connection or os.environ.get("DB_CONNECTION")
    if not conn_str:
        raise ConfigError(
            "Missing connection string. Pass --connection or set DB_CONNECTION "
            "(directly or in the --config file).",
            key="DB_CONNECTION",
        )
    return conn_str


# ---------------------------------------------------------------------------
# Cancellation and progress
# ---------------------------------------------------------------------------

@contextmanager
def _cancel_on_sigint() -> Iterator[threading.Event]:
    """Turn Ctrl+C into a cooperative cancel for the duration of a command."""
    cancel = threading.Event()

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        print("\nCancelling after the current batch... (Ctrl+C again to abort)", file=sys.stderr)
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_progress(done: int, total: int) -> None:
    pct = 100.0 * done / total if total else 100.0
    end = "\n" if done >= total else ""
    print(f"\r  {done:,} / {total:,} rows ({pct:5.1f}%)", end=end, file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Result printers
# ---------------------------------------------------------------------------

def _print_validation(result: ValidationResult, limit: int = 20) -> None:
    if result.cancelled:
        print(f"\n── Validation cancelled after {result.rows_checked:,} row(s) ──")
    elif result.ok:
        print(f"\n✓ Validation passed: {result.rows_checked:,} row(s) checked")
        return
    else:
        print(f"\n✗ Validation failed: {len(result.issues):,} issue(s) in {result.rows_checked:,} row(s)")
    for issue in result.issues[:limit]:
        print(f"  Row {issue.row_number}: {issue.message}")
    if len(result.issues) > limit:
        print(f"  ... and {len(result.issues) - limit} more")


def _print_report(report: ExecutionReport) -> None:
    if report.cancelled:
        print("\n── Cancelled ─────────────────────────────────────────")
    elif report.stopped:
        print("\n✗ STOPPED")
    else:
        print("\n✓ COMPLETED")
    print(f"  Rows     : [{report.start_row:,}, {report.end_row:,})")
    print(f"  Inserted : {report.inserted:,}")
    print(f"  Failed   : {report.failed:,}")
    for record in report.failed_rows[:10]:
        if record.is_summary:
            print(f"    {record.message}")
        else:
            print(f"    Row {record.row_number}: ID={record.id_value} | {record.message}")
    if len(report.failed_rows) > 10:
        print(f"    ... see the execute log for all {len(report.failed_rows)} records")
    for chunk in report.chunks:
        print(
            f"  Chunk [{chunk.start_row:,}, {chunk.end_row:,}) {chunk.status.value}: "
            f"inserted={chunk.inserted:,} failed={chunk.failed:,}"
        )
    if report.fatal_error:
        print(f"  Error    : {report.fatal_error}")
    if report.stopped or report.cancelled:
        print(f"  Resume   : --start-row {report.resume_row}")


def _report_exit_code(report: ExecutionReport) -> int:
    if report.cancelled:
        return EXIT_CANCELLED
    if report.stopped:
        return EXIT_FAILED
    return EXIT_OK


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------

def _cmd_execute(args: argparse.Namespace) -> int:
    config = _build_config(args)
    template = _read_template(args)
    mappings = _build_mappings(args, template)
    conn_str = _connection_string(args)
    rows = load_rows(args.source, args.sheet)

    with _cancel_on_sigint() as cancel:
        if not args.skip_validation:
            end = args.start_row + args.chunk_size if args.chunk_size > 0 else None
            result = validate(
                rows, template, mappings, config,
                start_row=args.start_row, end_row=end,
                cancel=cancel, progress=_print_progress,
            )
            if not result.ok:
                _print_validation(result)
                return EXIT_CANCELLED if result.cancelled else EXIT_FAILED

        report = execute(
            rows, template, mappings, conn_str, config,
            mode=args.mode,
            start_row=args.start_row,
            chunk_size=args.chunk_size,
            resume=args.resume,
            cancel=cancel,
            progress=_print_progress,
        )
    _print_report(report)
    return _report_exit_code(report)


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _build_config(args)
    template = _read_template(args)
    mappings = _build_mappings(args, template)
    rows = load_rows(args.source, args.sheet)

    with _cancel_on_sigint() as cancel:
        result = validate(
            rows, template, mappings, config,
            start_row=args.start_row,
            cancel=cancel, progress=_print_progress,
        )
    _print_validation(result)
    if result.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if result.ok else EXIT_FAILED


def _cmd_generate(args: argparse.Namespace) -> int:
    config = _build_config(args)
    template = _read_template(args)
    mappings = _build_mappings(args, template)
    rows = load_rows(args.source, args.sheet)

    with _cancel_on_sigint() as cancel:
        result = generate_script(
            rows, template, mappings, args.output, config,
            statements_per_file=args.per_file,
            start_row=args.start_row,
            cancel=cancel,
            progress=_print_progress,
        )

    print(f"\n✓ Wrote {result.statements:,} statement(s)")
    for path in result.files:
        print(f"  {path}")
    if result.issues:
        print(f"  Skipped {len(result.issues):,} row(s) that could not be formatted:")
        for issue in result.issues[:20]:
            print(f"    Row {issue.row_number}: {issue.message}")
    if result.cancelled:
        return EXIT_CANCELLED
    return EXIT_FAILED if result.issues else EXIT_OK


def _cmd_run_script(args: argparse.Namespace) -> int:
    config = _build_config(args)
    conn_str = _connection_string(args)
    path = Path(args.script)
    try:
        sql_text = path.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise ConfigError(f"Cannot read script: {e}", key="script", value=str(path)) from e

    with _cancel_on_sigint() as cancel:
        report = execute_script(
            sql_text, conn_str, config,
            start_statement=args.start_statement,
            cancel=cancel,
            progress=_print_progress,
        )
    _print_report(report)
    return _report_exit_code(report)


# ---------------------------------------------------------------------------
# Argument parser (importable for tests)
# ---------------------------------------------------------------------------

def _non_negative(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {value}")
    return value


def _positive(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sheet2sql",
        description="Spreadsheet rows -> SQL INSERT statements",
        epilog=(
            "The connection string is read from --connection or DB_CONNECTION;\n"
            "load per-environment values with --config FILE --env NAME."
        ),
    )
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--config", default=None, help="env file (key=value) to load first")
    parser.add_argument("--env", default=None, help="environment name for {env} references")

    sub = parser.add_subparsers(dest="command", required=True)

    def _source_args(p):
        p.add_argument("source", help=".xlsx, .xlsm, .csv or .txt file")
        p.add_argument("--sheet", default=None, help="worksheet name (default: first)")
        group = p.add_mutually_exclusive_group(required=True)
        group.add_argument("--template", default=None, help="INSERT template text")
        group.add_argument("--template-file", default=None, dest="template_file")
        p.add_argument("--mapping", default=None, help="mapping JSON file")
        p.add_argument("--start-row", type=_non_negative, default=0, dest="start_row")

    def _config_args(p):
        p.add_argument("--batch-size", type=_positive, default=None, dest="batch_size")
        p.add_argument("--dialect", choices=SUPPORTED_DIALECTS, default=None)
        p.add_argument("--no-rowlock", action="store_true", dest="no_rowlock")

    def _db_args(p):
        p.add_argument("--connection", default=None, help="connection string")
        p.add_argument("--checkpoint", default=None, help="checkpoint file")
        p.add_argument("--log", default=None, help="execute log file")

    p_exec = sub.add_parser("execute", help="Validate, then execute against the database")
    _source_args(p_exec); _config_args(p_exec); _db_args(p_exec)
    p_exec.add_argument("--mode", choices=MODES, default="safe")
    p_exec.add_argument("--chunk-size", type=_non_negative, default=0, dest="chunk_size",
                        help="rows to execute from --start-row (0 = to the end)")
    p_exec.add_argument("--resume", action="store_true", help="start from the checkpoint file")
    p_exec.add_argument("--workers", type=_positive, default=None)
    p_exec.add_argument("--skip-validation", action="store_true", dest="skip_validation")

    p_val = sub.add_parser("validate", help="Format every row; no database")
    _source_args(p_val); _config_args(p_val)

    p_gen = sub.add_parser("generate", help="Write the statements to a .sql script")
    _source_args(p_gen); _config_args(p_gen)
    p_gen.add_argument("--output", required=True)
    p_gen.add_argument("--per-file", type=_non_negative, default=0, dest="per_file",
                       help="statements per file (0 = one file)")

    p_run = sub.add_parser("run-script", help="Execute a generated .sql script")
    _config_args(p_run); _db_args(p_run)
    p_run.add_argument("script")
    p_run.add_argument("--start-statement", type=_non_negative, default=0, dest="start_statement")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

_HANDLERS = {
    "execute": _cmd_execute,
    "validate": _cmd_validate,
    "generate": _cmd_generate,
    "run-script": _cmd_run_script,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)
    try:
        _load_environment(args)
        return _HANDLERS[args.command](args)
    except Sheet2SqlError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except KeyboardInterrupt:
        print("\nAborted.", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
