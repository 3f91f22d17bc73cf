"""
Database dialects and driver connections.

A ``Dialect`` knows how to open a DB-API connection from a connection
string, how to wrap a batch of INSERT statements into one round trip, and
which driver errors mean the connection itself is gone.

Drivers are imported lazily inside ``connect()``; this allows ``validate``
and ``generate`` to work without ``pyodbc`` or ``python-oracledb``
installed, since those paths never open a connection.

Dialects:
  - ``mssql``  : ``pyodbc``; ADO.NET-style keys (``Server``/``Data Source``,
                 ``Database``/``Initial Catalog``, ``User Id``, ``Password``,
                 ``Integrated Security``) are translated to ODBC keywords.
  - ``oracle`` : ``oracledb``; keys ``User Id``, ``Password``,
                 ``Data Source`` (any DSN or Easy Connect string).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sheet2sql.configs.config import ExecutionConfig
from sheet2sql.configs.exceptions import ConfigError
from sheet2sql.transformers.normalizers import format_timestamp

logger = logging.getLogger(__name__)

TIMEOUT_KEYS = ("connection timeout", "connect timeout")


# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------

def parse_connection_string(conn_str: str) -> dict[str, str]:
    """
    Parse ``key=value;key=value`` into a dict, keeping key spelling and order.

    Values may be wrapped in ``{...}`` (ODBC) or quotes to contain ``;``.

    Raises:
        ConfigError: If a segment has no ``=``.
    """
    parts: dict[str, str] = {}
    for segment in _split_segments(conn_str):
        if not segment.strip():
            continue
        key, sep, value = segment.partition("=")
        if not sep or not key.strip():
            raise ConfigError("Malformed connection string segment", key="connection", value="<redacted>")
        parts[key.strip()] = _unquote(value.strip())
    return parts


def get_option(parts: dict[str, str], *names: str) -> str | None:
    """Case-insensitive lookup of the first present key in ``names``."""
    wanted = {n.casefold() for n in names}
    for key, value in parts.items():
        if key.casefold() in wanted:
            return value
    return None


def pop_option(parts: dict[str, str], *names: str) -> str | None:
    """Like ``get_option`` but removes every matching key."""
    wanted = {n.casefold() for n in names}
    found = None
    for key in [k for k in parts if k.casefold() in wanted]:
        value = parts.pop(key)
        if found is None:
            found = value
    return found


def build_connection_string(parts: dict[str, str]) -> str:
    """Inverse of ``parse_connection_string``; braces values that need it."""
    return ";".join(f"{k}={_quote(v)}" for k, v in parts.items())


# ---------------------------------------------------------------------------
# Dialects
# ---------------------------------------------------------------------------

class Dialect:
    """Base dialect. Subclasses provide the driver-specific pieces."""

    name = "base"
    supports_rowlock = False

    def connect(self, conn_str: str, *, command_timeout: int) -> Any:
        raise NotImplementedError

    def batch_sql(self, statements: list[str]) -> str:
        raise NotImplementedError

    def single_sql(self, statement: str) -> str:
        return statement

    def drain(self, cursor: Any) -> None:
        """Consume remaining result sets so deferred errors surface."""

    def is_disconnect(self, error: BaseException) -> bool:
        raise NotImplementedError

    def describe_error(self, error: BaseException) -> str:
        """Driver error as a one-line message for failure records."""
        return " ".join(str(error).split())

    def temporal_literal(self, value: datetime) -> str:
        return format_timestamp(value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class MSSQLDialect(Dialect):
    """
    SQL Server through ``pyodbc``.

    Batches run with ``SET XACT_ABORT ON`` so any failing statement aborts
    and rolls back the whole batch transaction.
    """

    name = "mssql"
    supports_rowlock = True

    _BATCH_PREFIX = "SET NOCOUNT ON; SET XACT_ABORT ON;"

    # ADO.NET key -> ODBC keyword
    _KEY_ALIASES = {
        "data source": "Server",
        "server": "Server",
        "address": "Server",
        "initial catalog": "Database",
        "database": "Database",
        "user id": "UID",
        "uid": "UID",
        "user": "UID",
        "password": "PWD",
        "pwd": "PWD",
    }

    def __init__(self, odbc_driver: str = "ODBC Driver 18 for SQL Server") -> None:
        self.odbc_driver = odbc_driver

    def to_odbc(self, conn_str: str) -> tuple[str, int | None]:
        """
        Translate a connection string to ODBC form.

        Returns:
            ``(odbc_connection_string, login_timeout_seconds)``.  The timeout
            key is removed from the string and passed to ``pyodbc`` directly.
        """
        parts = parse_connection_string(conn_str)
        raw_timeout = pop_option(parts, *TIMEOUT_KEYS)
        login_timeout = None
        if raw_timeout is not None:
            try:
                login_timeout = int(raw_timeout)
            except ValueError as e:
                raise ConfigError("Connection timeout must be an integer",
                                  key="Connection Timeout", value=raw_timeout) from e

        odbc: dict[str, str] = {}
        if get_option(parts, "driver") is None:
            odbc["Driver"] = self.odbc_driver
        for key, value in parts.items():
            folded = key.casefold()
            if folded == "integrated security":
                if value.strip().lower() in ("true", "yes", "sspi"):
                    odbc["Trusted_Connection"] = "yes"
                continue
            odbc[self._KEY_ALIASES.get(folded, key)] = value
        return build_connection_string(odbc), login_timeout

    def connect(self, conn_str: str, *, command_timeout: int) -> Any:
        import pyodbc  # lazy; only needed when actually executing

        odbc_str, login_timeout = self.to_odbc(conn_str)
        kwargs: dict[str, Any] = {"autocommit": False}
        if login_timeout is not None:
            kwargs["timeout"] = login_timeout
        conn = pyodbc.connect(odbc_str, **kwargs)
        conn.timeout = command_timeout
        logger.debug("Opened mssql connection (login timeout %s s)", login_timeout)
        return conn

    def batch_sql(self, statements: list[str]) -> str:
        return "\n".join([self._BATCH_PREFIX, *statements])

    def drain(self, cursor: Any) -> None:
        while cursor.nextset():
            pass

    def is_disconnect(self, error: BaseException) -> bool:
        """SQLSTATE class ``08`` (connection exception) means the link is gone."""
        args = getattr(error, "args", ())
        state = args[0] if args and isinstance(args[0], str) else ""
        return state.startswith("08")

    def describe_error(self, error: BaseException) -> str:
        """
        ``pyodbc`` errors carry ``(sqlstate, message)``; keep the message.

        Example::

            ('42000', "[42000] [Microsoft][ODBC Driver 18 for SQL Server][SQL Server]Incorrect syntax ...")
            -> "[42000] [Microsoft][ODBC Driver 18 for SQL Server][SQL Server]Incorrect syntax ..."
        """
        args = getattr(error, "args", ())
        if len(args) >= 2 and isinstance(args[1], str):
            return " ".join(args[1].split())
        return super().describe_error(error)


class OracleDialect(Dialect):
    """Oracle through ``python-oracledb`` (thin mode)."""

    name = "oracle"
    supports_rowlock = False

    # Default session settings applied to every new connection
    _SESSION_SQL = [
        "ALTER SESSION SET NLS_DATE_FORMAT = 'YYYY-MM-DD HH24:MI:SS'",
        "ALTER SESSION SET NLS_TIMESTAMP_FORMAT = 'YYYY-MM-DD HH24:MI:SS.FF3'",
    ]

    _DISCONNECT_CODES = ("DPY-1001", "DPY-4011", "ORA-03113", "ORA-03114", "ORA-03135")

    def connect(self, conn_str: str, *, command_timeout: int) -> Any:
        import oracledb  # lazy; only needed when actually executing

        parts = parse_connection_string(conn_str)
        dsn = get_option(parts, "data source", "dsn")
        if not dsn:
            raise ConfigError("Oracle connection string needs Data Source", key="Data Source")
        kwargs: dict[str, Any] = {
            "user": get_option(parts, "user id", "user", "uid"),
            "password": get_option(parts, "password", "pwd"),
            "dsn": dsn,
        }
        raw_timeout = get_option(parts, *TIMEOUT_KEYS)
        if raw_timeout is not None:
            kwargs["tcp_connect_timeout"] = float(raw_timeout)

        conn = oracledb.connect(**kwargs)
        conn.call_timeout = command_timeout * 1000
        self._apply_session(conn)
        logger.debug("Opened oracle connection to %s", dsn)
        return conn

    def _apply_session(self, conn: Any) -> None:
        """Execute standard session-level SQL on an open connection."""
        cur = conn.cursor()
        try:
            for stmt in self._SESSION_SQL:
                cur.execute(stmt)
        finally:
            cur.close()

    def batch_sql(self, statements: list[str]) -> str:
        return "\n".join(["BEGIN", *statements, "END;"])

    def single_sql(self, statement: str) -> str:
        return statement.rstrip().rstrip(";")

    def is_disconnect(self, error: BaseException) -> bool:
        text = str(error)
        return any(code in text for code in self._DISCONNECT_CODES)

    def temporal_literal(self, value: datetime) -> str:
        return "TIMESTAMP " + format_timestamp(value)


def get_dialect(config: ExecutionConfig) -> Dialect:
    """
    Return the dialect named by ``config.dialect``.

    Raises:
        ConfigError: If the dialect is unknown.
    """
    if config.dialect == "mssql":
        return MSSQLDialect(odbc_driver=config.odbc_driver)
    if config.dialect == "oracle":
        return OracleDialect()
    raise ConfigError("Unsupported dialect", key="dialect", value=config.dialect)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _split_segments(text: str) -> list[str]:
    """Split on ``;`` outside ``{...}`` and quoted values."""
    parts: list[str] = []
    buf: list[str] = []
    closer: str | None = None
    for ch in text:
        if closer is None and ch in "{'\"":
            closer = "}" if ch == "{" else ch
        elif closer is not None and ch == closer:
            closer = None
        elif ch == ";" and closer is None:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    parts.append("".join(buf))
    return parts


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == "{" and value[-1] == "}":
        return value[1:-1].replace("}}", "}")
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    return value


def _quote(value: str) -> str:
    if ";" in value or " " in value or value.startswith("{"):
        return "{" + value.replace("}", "}}") + "}"
    return value
