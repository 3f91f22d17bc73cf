"""
Execution configuration.

All tuneable constants live here. Import from this module everywhere;
batch sizes, retry counts and timeouts are never hardcoded inline.

Usage:
    from sheet2sql.configs.config import ExecutionConfig
    cfg = ExecutionConfig()              # defaults (+ environment overrides)
    cfg = ExecutionConfig(batch_size=200)

Environment overrides are read when the config object is constructed.
``sheet2sql.configs.env_file`` can load a ``.env`` style file into
``os.environ`` first; this module does not read files itself.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from sheet2sql.configs.exceptions import ConfigError
from sheet2sql.utils.retry import RetryPolicy


# Hard limits
MAX_PARALLEL_WORKERS: int = 16
"""Upper bound on concurrent ChunkRunner workers, whatever the config says."""

SUPPORTED_DIALECTS: tuple[str, ...] = ("mssql", "oracle")


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer", key=key, value=raw) from e


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number", key=key, value=raw) from e


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(slots=True)
class ExecutionConfig:
    """
    Runtime configuration for formatting, validation and execution.

    Attributes:
        batch_size: INSERT statements per batch round trip. Higher is faster
            but holds more text per batch.
        rows_per_connection: Rows served by one connection before it is
            closed and a fresh one opened.
        checkpoint_interval: Processed rows between checkpoint writes.
        max_failed_rows: Failure records kept in a report. Extra failures are
            counted and summarised in one trailing entry.
        command_timeout_seconds: Timeout for each batch or single statement.
        connection_timeout_seconds: Injected into the connection string when
            the caller did not set one.
        connection_retry_count: Extra attempts when opening a connection fails.
        connection_retry_delay_seconds: Fixed delay between those attempts.
        batch_retry_count: Extra attempts for a failed batch before falling
            back to row-by-row submission.
        batch_retry_delay_seconds: Fixed delay between batch attempts.
        max_workers: Worker threads in parallel mode (capped at 16).
        parallel_chunk_rows: Rows per parallel chunk; 0 derives it from the
            remaining rows and the worker count.
        min_parallel_chunk_rows: Floor for the derived parallel chunk size.
        report_interval_divisor: Progress is reported about every
            ``total / divisor`` rows during execution.
        validate_report_interval_divisor: Same, for validation.
        progress_interval_seconds: Minimum wall-clock gap between progress
            callbacks (the final update is always delivered).
        max_string_length: Longer string values are truncated with a marker.
        max_statement_length: Validation flags statements longer than this.
        id_value_max_length: Cap for the identifier quoted in failure records.
        rowlock_hint: Inject ``WITH (ROWLOCK)`` into the template (SQL Server).
        dialect: Target database dialect, ``mssql`` or ``oracle``.
        odbc_driver: ODBC driver name used for ``mssql`` connection strings
            that do not name one.
        checkpoint_path: File holding the resume checkpoint.
        execute_log_path: Append-only execute log.
    """

    batch_size: int = field(default_factory=lambda: _env_int("BATCH_SIZE", 50))
    rows_per_connection: int = field(
        default_factory=lambda: _env_int("CONNECTION_CHUNK_ROWS", 10_000)
    )
    checkpoint_interval: int = field(
        default_factory=lambda: _env_int("CHECKPOINT_INTERVAL", 25_000)
    )
    max_failed_rows: int = field(
        default_factory=lambda: _env_int("MAX_FAILED_ROWS", 2_000)
    )
    command_timeout_seconds: int = field(
        default_factory=lambda: _env_int("COMMAND_TIMEOUT", 300)
    )
    connection_timeout_seconds: int = field(
        default_factory=lambda: _env_int("CONNECTION_TIMEOUT", 120)
    )
    connection_retry_count: int = field(
        default_factory=lambda: _env_int("CONNECTION_RETRY_COUNT", 2)
    )
    connection_retry_delay_seconds: float = field(
        default_factory=lambda: _env_float("CONNECTION_RETRY_DELAY", 1.0)
    )
    batch_retry_count: int = field(
        default_factory=lambda: _env_int("BATCH_RETRY_COUNT", 1)
    )
    batch_retry_delay_seconds: float = field(
        default_factory=lambda: _env_float("BATCH_RETRY_DELAY", 1.0)
    )
    max_workers: int = field(default_factory=lambda: _env_int("MAX_WORKERS", 4))
    parallel_chunk_rows: int = field(
        default_factory=lambda: _env_int("PARALLEL_CHUNK_ROWS", 0)
    )
    min_parallel_chunk_rows: int = field(
        default_factory=lambda: _env_int("MIN_PARALLEL_CHUNK_ROWS", 1_000)
    )
    report_interval_divisor: int = field(
        default_factory=lambda: _env_int("REPORT_INTERVAL_DIVISOR", 200)
    )
    validate_report_interval_divisor: int = field(
        default_factory=lambda: _env_int("VALIDATE_REPORT_INTERVAL_DIVISOR", 500)
    )
    progress_interval_seconds: float = field(
        default_factory=lambda: _env_float("PROGRESS_INTERVAL", 0.25)
    )
    max_string_length: int = field(
        default_factory=lambda: _env_int("MAX_STRING_LENGTH", 100_000)
    )
    max_statement_length: int = field(
        default_factory=lambda: _env_int("MAX_STATEMENT_LENGTH", 2_000_000)
    )
    id_value_max_length: int = field(
        default_factory=lambda: _env_int("ID_VALUE_MAX_LENGTH", 50)
    )
    rowlock_hint: bool = field(default_factory=lambda: _env_bool("ROWLOCK_HINT", True))
    dialect: str = field(
        default_factory=lambda: os.environ.get("DB_DIALECT", "mssql").strip().lower()
    )
    odbc_driver: str = field(
        default_factory=lambda: os.environ.get("ODBC_DRIVER", "ODBC Driver 18 for SQL Server")
    )
    checkpoint_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get(
                "CHECKPOINT_PATH",
                str(Path.home() / ".sheet2sql" / "checkpoint.txt"),
            )
        )
    )
    execute_log_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("EXECUTE_LOG", "log/sheet2sql_execute.log")
        )
    )

    def __post_init__(self) -> None:
        positive = {
            "batch_size": self.batch_size,
            "rows_per_connection": self.rows_per_connection,
            "checkpoint_interval": self.checkpoint_interval,
            "max_failed_rows": self.max_failed_rows,
            "max_workers": self.max_workers,
            "report_interval_divisor": self.report_interval_divisor,
            "validate_report_interval_divisor": self.validate_report_interval_divisor,
            "max_string_length": self.max_string_length,
            "max_statement_length": self.max_statement_length,
            "id_value_max_length": self.id_value_max_length,
        }
        for key, value in positive.items():
            if value < 1:
                raise ConfigError(f"{key} must be at least 1", key=key, value=value)

        non_negative = {
            "command_timeout_seconds": self.command_timeout_seconds,
            "connection_timeout_seconds": self.connection_timeout_seconds,
            "connection_retry_count": self.connection_retry_count,
            "connection_retry_delay_seconds": self.connection_retry_delay_seconds,
            "batch_retry_count": self.batch_retry_count,
            "batch_retry_delay_seconds": self.batch_retry_delay_seconds,
            "parallel_chunk_rows": self.parallel_chunk_rows,
            "min_parallel_chunk_rows": self.min_parallel_chunk_rows,
            "progress_interval_seconds": self.progress_interval_seconds,
        }
        for key, value in non_negative.items():
            if value < 0:
                raise ConfigError(f"{key} must not be negative", key=key, value=value)

        if self.dialect not in SUPPORTED_DIALECTS:
            raise ConfigError(
                f"Unsupported dialect. Valid dialects: {list(SUPPORTED_DIALECTS)}",
                key="dialect",
                value=self.dialect,
            )
        self.checkpoint_path = Path(self.checkpoint_path)
        self.execute_log_path = Path(self.execute_log_path)

    @property
    def effective_max_workers(self) -> int:
        """Worker count actually used in parallel mode."""
        return max(1, min(self.max_workers, MAX_PARALLEL_WORKERS))

    @property
    def connection_retry(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.connection_retry_count,
            delay_seconds=self.connection_retry_delay_seconds,
        )

    @property
    def batch_retry(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.batch_retry_count,
            delay_seconds=self.batch_retry_delay_seconds,
        )

    def report_interval(self, total_rows: int, validating: bool = False) -> int:
        """
        Rows between progress reports for a run of ``total_rows`` rows.

        Returns:
            ``max(1, total_rows // divisor)`` using the execute or validate divisor.
        """
        divisor = (
            self.validate_report_interval_divisor if validating
            else self.report_interval_divisor
        )
        return max(1, total_rows // divisor)
