"""
Custom exceptions for the sheet2sql execution engine.

Hierarchy:
    Sheet2SqlError
    ├── ConfigError           Invalid configuration value or missing setting.
    ├── TemplateError         Template has no VALUES keyword or a bad mapping.
    ├── SourceError           Row source could not be opened or read.
    │   └── AlignmentError    CSV row field count doesn't match the header.
    ├── RowFormatError        One row could not be rendered into a statement.
    ├── ConnectionOpenError   Opening a connection failed after all retries.
    ├── BatchSubmitError      Submission lost its connection; the chunk stops.
    ├── CheckpointError       Checkpoint file unreadable or unwritable.
    └── OperationCancelled    Cooperative cancellation observed mid-operation.
"""

from __future__ import annotations

from typing import Any


class Sheet2SqlError(Exception):
    """Base class for all sheet2sql errors."""


class ConfigError(Sheet2SqlError):
    """
    Raised when a configuration value is invalid.

    Args:
        message: Human-readable description.
        key:     Setting or environment variable name.
        value:   The rejected value.
    """

    def __init__(self, message: str, key: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.key = key
        self.value = value

    def __str__(self) -> str:
        base = super().__str__()
        if self.key:
            return f"{base} | key={self.key} value={self.value!r}"
        return base


class TemplateError(Sheet2SqlError):
    """
    Raised when a statement template or placeholder mapping is unusable.

    Args:
        message:  Human-readable description.
        template: The offending template text, if available.
    """

    def __init__(self, message: str, template: str | None = None) -> None:
        super().__init__(message)
        self.template = template

    def __str__(self) -> str:
        base = super().__str__()
        if self.template:
            preview = self.template if len(self.template) <= 80 else self.template[:80] + "..."
            return f"{base} | template={preview!r}"
        return base


class SourceError(Sheet2SqlError):
    """
    Raised when a row source cannot be opened or parsed.

    Args:
        message:     Human-readable description.
        source_path: Path of the file being read.
    """

    def __init__(self, message: str, source_path: str | None = None) -> None:
        super().__init__(message)
        self.source_path = source_path

    def __str__(self) -> str:
        base = super().__str__()
        if self.source_path:
            return f"{base} | source={self.source_path}"
        return base


class AlignmentError(SourceError):
    """
    Raised when a CSV row has a different number of fields than the header row.

    Args:
        message:     Human-readable description.
        source_path: Path of the CSV file.
        row_number:  1-based row number where the misalignment was detected.
        expected:    Number of fields expected (from header).
        got:         Number of fields actually found in the row.
    """

    def __init__(
        self,
        message: str,
        source_path: str | None = None,
        row_number: int | None = None,
        expected: int | None = None,
        got: int | None = None,
    ) -> None:
        super().__init__(message, source_path)
        self.row_number = row_number
        self.expected = expected
        self.got = got

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.row_number is not None:
            parts.append(f"row={self.row_number}")
        if self.expected is not None:
            parts.append(f"expected={self.expected}")
        if self.got is not None:
            parts.append(f"got={self.got}")
        if parts:
            return f"{base} | {' '.join(parts)}"
        return base


class RowFormatError(Sheet2SqlError):
    """
    Raised when a single row cannot be rendered into a statement.

    Args:
        message:    Human-readable description of the conversion failure.
        column:     Target column (placeholder) name.
        source:     Source column the value was read from, if any.
        value:      The offending source value.
        row_number: Spreadsheet row number (row index + 2).
    """

    def __init__(
        self,
        message: str,
        column: str | None = None,
        source: str | None = None,
        value: Any = None,
        row_number: int | None = None,
    ) -> None:
        super().__init__(message)
        self.column = column
        self.source = source
        self.value = value
        self.row_number = row_number

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.column:
            parts.append(f"column={self.column}")
        if self.source:
            parts.append(f"source={self.source}")
        if self.row_number is not None:
            parts.append(f"row={self.row_number}")
        if self.value is not None:
            parts.append(f"value_type={type(self.value).__name__}")
            parts.append(f"value={self.value!r}")
        if parts:
            return f"{base} | {' '.join(parts)}"
        return base


class ConnectionOpenError(Sheet2SqlError):
    """
    Raised when a connection could not be opened after all retry attempts.

    Args:
        message:  Human-readable description (includes the last driver error).
        attempts: Number of attempts made.
    """

    def __init__(self, message: str, attempts: int | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts

    def __str__(self) -> str:
        base = super().__str__()
        if self.attempts is not None:
            return f"{base} | attempts={self.attempts}"
        return base


class BatchSubmitError(Sheet2SqlError):
    """
    Raised when submission cannot continue on the current connection.

    Rows before ``first_row`` in the batch were settled before the link
    dropped; ``inserted`` and ``failures`` describe them so the caller can
    count them.

    Args:
        message:   Human-readable description.
        first_row: Row index of the first statement not confirmed processed.
        inserted:  Statements of the batch committed before the failure.
        failures:  Failure records for statements of the batch that failed
                   before the connection was lost.
    """

    def __init__(
        self,
        message: str,
        first_row: int | None = None,
        inserted: int = 0,
        failures: list | None = None,
    ) -> None:
        super().__init__(message)
        self.first_row = first_row
        self.inserted = inserted
        self.failures = failures or []

    def __str__(self) -> str:
        base = super().__str__()
        if self.first_row is not None:
            return f"{base} | first_row={self.first_row}"
        return base


class CheckpointError(Sheet2SqlError):
    """
    Raised when the checkpoint file cannot be read or written.

    Args:
        message: Human-readable description.
        path:    Checkpoint file path.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path

    def __str__(self) -> str:
        base = super().__str__()
        if self.path:
            return f"{base} | path={self.path}"
        return base


class OperationCancelled(Sheet2SqlError):
    """Raised inside a component when the shared cancel event is observed."""
