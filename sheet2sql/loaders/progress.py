"""
Throttled progress reporting.

Progress callbacks take ``(current, total)``.  A UI or CLI redrawing on
every row would dominate the run, so ``ProgressReporter`` only forwards an
update once both a row step and a wall-clock interval have passed.  Forced
updates (the final row) are always delivered.

Parallel runs give each chunk its own adapter from ``ProgressAggregator``;
the aggregator sums completed rows across chunks and pushes the total
through one shared reporter.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

ProgressCallback = Callable[[int, int], None]


class ProgressReporter:
    """
    Thread-safe throttle in front of a progress callback.

    Args:
        callback:         Receives ``(current, total)``; ``None`` disables
                          reporting.
        interval_seconds: Minimum wall-clock gap between delivered updates.
        row_step:         Minimum change in ``current`` between delivered
                          updates.
        clock:            Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        callback: ProgressCallback | None,
        interval_seconds: float = 0.25,
        row_step: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._interval = interval_seconds
        self._row_step = max(1, row_step)
        self._clock = clock
        self._lock = threading.Lock()
        self._last_rows: int | None = None
        self._last_time: float | None = None

    @property
    def enabled(self) -> bool:
        return self._callback is not None

    def update(self, current: int, total: int, force: bool = False) -> bool:
        """
        Offer an update; returns True if the callback was invoked.

        The callback runs outside the lock so a slow consumer cannot block
        other workers from recording progress.
        """
        if self._callback is None:
            return False
        with self._lock:
            now = self._clock()
            if not force and self._last_rows is not None:
                if current - self._last_rows < self._row_step:
                    return False
                if now - self._last_time < self._interval:
                    return False
            self._last_rows = current
            self._last_time = now
        self._callback(current, total)
        return True


class ProgressAggregator:
    """
    Sums per-chunk progress into one global reporter.

    Args:
        reporter: Shared, throttled reporter for the whole run.
        total:    Rows in the whole run.
        offset:   Rows already done before the run started (resume point).
    """

    def __init__(self, reporter: ProgressReporter, total: int, offset: int = 0) -> None:
        self._reporter = reporter
        self._total = total
        self._offset = offset
        self._lock = threading.Lock()
        self._done: dict[int, int] = {}

    def adapter(self, chunk_id: int) -> ProgressCallback:
        """Callback for one chunk, fed with that chunk's own done-row count."""

        def _on_progress(done: int, _chunk_total: int) -> None:
            with self._lock:
                self._done[chunk_id] = done
                current = self._offset + sum(self._done.values())
            self._reporter.update(current, self._total, force=current >= self._total)

        return _on_progress

    @property
    def completed(self) -> int:
        with self._lock:
            return sum(self._done.values())

    def finish(self) -> None:
        """Deliver one final forced update with the summed count."""
        self._reporter.update(self._offset + self.completed, self._total, force=True)
