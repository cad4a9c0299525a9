"""
JSONL snapshots of the deferred queue.

With ``deferred.durability = "file"`` the runtime saves every parked entry on
shutdown and restores them on start, one entry per line. Saves go through a
temporary file and an atomic rename so a crash mid-write leaves the previous
snapshot intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from .models import DeferredEntry

logger = logging.getLogger(__name__)


class DeferredSnapshotError(Exception):
    """Raised when a snapshot file cannot be read back."""

    def __init__(self, message: str, line_num: int | None = None) -> None:
        super().__init__(message)
        self.line_num = line_num


class DeferredSnapshot:
    """
    Snapshot file for deferred entries.

    Args:
        path: JSONL file to write and read
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, entries: list[DeferredEntry]) -> int:
        """
        Atomically replace the snapshot with ``entries``.

        Returns:
            Number of entries written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=".deferred_", suffix=".jsonl.tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for entry in entries:
                    f.write(entry.model_dump_json())
                    f.write("\n")
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

        logger.info("Saved %d deferred notifications to %s", len(entries), self.path)
        return len(entries)

    def load(self) -> list[DeferredEntry]:
        """
        Read entries back in file order. A missing file is an empty snapshot.

        Raises:
            DeferredSnapshotError: If a line is not a valid entry
        """
        if not self.path.exists():
            return []

        entries: list[DeferredEntry] = []
        with self.path.open(encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(DeferredEntry.model_validate(json.loads(line)))
                except json.JSONDecodeError as e:
                    raise DeferredSnapshotError(
                        f"Line {line_num}: invalid JSON - {e}", line_num=line_num
                    ) from e
                except ValidationError as e:
                    raise DeferredSnapshotError(
                        f"Line {line_num}: invalid deferred entry - {e}", line_num=line_num
                    ) from e

        logger.info("Loaded %d deferred notifications from %s", len(entries), self.path)
        return entries

    def clear(self) -> None:
        """Remove the snapshot once its entries have been restored."""
        self.path.unlink(missing_ok=True)
