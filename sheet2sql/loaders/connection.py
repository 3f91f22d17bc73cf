"""
Connection supervision.

``ConnectionSupervisor`` owns everything about getting a usable connection:
the login-timeout default, bounded retry on open, and rotation to a fresh
connection every ``rows_per_connection`` rows.  It never shares a
connection: every worker gets its own supervisor.

Usage::

    supervisor = ConnectionSupervisor(conn_str, config, dialect)
    for range_start, range_end in supervisor.rotation_ranges(0, len(rows)):
        with supervisor.session(cancel) as conn:
            ...
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import ConnectionOpenError, OperationCancelled
from sheet2sql.loaders.drivers import TIMEOUT_KEYS, Dialect, get_option, parse_connection_string
from sheet2sql.utils.retry import call_with_retry

logger = logging.getLogger(__name__)

ConnectFn = Callable[[str], Any]


def ensure_timeout(conn_str: str, timeout_seconds: int) -> str:
    """
    Append ``Connection Timeout=<n>`` unless the string already sets one.

    Either ``Connection Timeout`` or ``Connect Timeout`` (any case) counts as
    set.

    Example::

        >>> ensure_timeout("Server=db;Database=app", 120)
        'Server=db;Database=app;Connection Timeout=120'
    """
    if get_option(parse_connection_string(conn_str), *TIMEOUT_KEYS) is not None:
        return conn_str
    stripped = conn_str.rstrip()
    sep = "" if not stripped or stripped.endswith(";") else ";"
    return f"{stripped}{sep}Connection Timeout={timeout_seconds}"


class ConnectionSupervisor:
    """
    Opens connections with retry and plans connection rotation.

    Args:
        conn_str: Connection string; a default login timeout is injected.
        config:   Retry policy, timeouts and ``rows_per_connection``.
        dialect:  Dialect whose ``connect`` is used by default.
        connect:  Replacement for ``dialect.connect``; receives the final
                  connection string.  Tests inject mock connections here.

    Attributes:
        opened: Connections successfully opened so far.
    """

    def __init__(
        self,
        conn_str: str,
        config: ExecutionConfig,
        dialect: Dialect,
        connect: ConnectFn | None = None,
    ) -> None:
        self.conn_str = ensure_timeout(conn_str, config.connection_timeout_seconds)
        self.config = config
        self.dialect = dialect
        self._connect = connect or (
            lambda s: dialect.connect(s, command_timeout=config.command_timeout_seconds)
        )
        self.opened = 0

    def open(self, cancel: threading.Event | None = None) -> Any:
        """
        Open a connection, retrying per ``config.connection_retry``.

        Raises:
            ConnectionOpenError: When every attempt failed (carries the last
                                 driver error).
            OperationCancelled:  If cancelled before or between attempts.
        """
        policy = self.config.connection_retry

        def _on_retry(attempt: int, error: BaseException) -> None:
            logger.warning(
                "Connection attempt %d/%d failed: %s", attempt, policy.attempts, error
            )

        try:
            conn = call_with_retry(
                lambda: self._connect(self.conn_str),
                policy,
                cancel=cancel,
                on_retry=_on_retry,
            )
        except (OperationCancelled, MemoryError):
            raise
        except Exception as e:
            raise ConnectionOpenError(
                f"Could not open connection: {e}", attempts=policy.attempts
            ) from e
        self.opened += 1
        return conn

    @contextmanager
    def session(self, cancel: threading.Event | None = None) -> Iterator[Any]:
        """Open a connection for one rotation range and always close it."""
        conn = self.open(cancel)
        try:
            yield conn
        finally:
            close_quietly(conn)

    def rotation_ranges(self, start_row: int, end_row: int) -> Iterator[tuple[int, int]]:
        """
        Yield the ``[start, end)`` sub-ranges each connection serves.

        Example::

            rows_per_connection=10_000, (0, 25_000)
            -> (0, 10_000), (10_000, 20_000), (20_000, 25_000)
        """
        step = self.config.rows_per_connection
        for range_start in range(start_row, end_row, step):
            yield range_start, min(range_start + step, end_row)


def close_quietly(conn: Any) -> None:
    """Close ``conn``; a dead connection failing to close is only logged."""
    try:
        conn.close()
    except Exception as e:
        logger.debug("Ignoring error while closing connection: %s", e)
