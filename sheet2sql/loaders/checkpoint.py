"""
Resume checkpoint persistence.

The checkpoint is a single integer: the exclusive end of the row prefix
that is confirmed processed (inserted or definitively failed).  A rerun
with ``--resume`` starts at that row.

File format: the integer as decimal text, nothing else.  Writes go to a
sibling temp file first and are moved into place with ``os.replace``, so
a crash mid-write leaves the previous checkpoint intact.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

from sheet2sql.configs.exceptions import CheckpointError

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Read / write the checkpoint file.

    Within one store instance writes are monotonic: a lower row than the
    last one written is ignored.  ``reset()`` clears both the file and that
    high-water mark.

    Args:
        path: Checkpoint file.  Parent directories are created on write.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._high_water: int | None = None

    def read(self) -> int | None:
        """
        Return the stored row, or ``None`` when no checkpoint exists.

        Raises:
            CheckpointError: If the file exists but cannot be read or parsed.
        """
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CheckpointError(f"Cannot read checkpoint: {e}", path=str(self.path)) from e
        if not text:
            return None
        try:
            value = int(text)
        except ValueError as e:
            raise CheckpointError(f"Checkpoint is not an integer: {text!r}", path=str(self.path)) from e
        if value < 0:
            raise CheckpointError(f"Checkpoint is negative: {value}", path=str(self.path))
        return value

    def write(self, row: int) -> bool:
        """
        Persist ``row``.  Returns False if it was below the high-water mark.

        Raises:
            CheckpointError: If the file cannot be written.
        """
        with self._lock:
            if self._high_water is not None and row < self._high_water:
                logger.debug("Ignoring checkpoint %d below %d", row, self._high_water)
                return False
            tmp = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(str(row), encoding="utf-8")
                os.replace(tmp, self.path)
            except OSError as e:
                raise CheckpointError(f"Cannot write checkpoint: {e}", path=str(self.path)) from e
            self._high_water = row
        logger.debug("Checkpoint %d written to %s", row, self.path)
        return True

    def reset(self) -> None:
        """Delete the checkpoint file (a fresh run starts from its own start row)."""
        with self._lock:
            self._high_water = None
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise CheckpointError(f"Cannot delete checkpoint: {e}", path=str(self.path)) from e
