from __future__ import annotations
import os
import logging
from pathlib import Path
from typing import Callable, Optional
import uuid


class StatePersistence:
    """Single-file byte store for a piece of worker state.

    ``save`` replaces the whole file atomically; ``append`` extends it in
    place, so callers must be able to recognise a record torn by a crash at
    the end of the file.
    """

    def __init__(self, filename: str, *, directory: str = "/backup") -> None:
        self._dir = directory
        os.makedirs(self._dir, exist_ok=True)

        self._file_name = filename
        self._file_path = os.path.join(self._dir, self._file_name)

    def save(self, data: bytes) -> None:
        """Persist *data* to disk in an *atomic* fashion."""
        tmp_path = os.path.join(self._dir, f"temp_{uuid.uuid4().hex}_{self._file_name}")
        try:
            logging.debug(f"[StatePersistence] Saving state to {self._file_path}")
            os.makedirs(self._dir, exist_ok=True)

            with open(tmp_path, "wb") as fp:
                fp.write(bytes(data))
                fp.flush()

            os.replace(tmp_path, self._file_path)
        except Exception as exc:
            logging.error(f"[StatePersistence] Error saving state to {self._file_path}: {exc}")
            if Path(tmp_path).exists():
                os.remove(tmp_path)
            raise

    def append(self, data: bytes) -> None:
        """Add *data* at the end of the persisted file, creating it if needed."""
        try:
            with open(self._file_path, "ab") as fp:
                fp.write(bytes(data))
                fp.flush()
        except Exception as exc:
            logging.error(f"[StatePersistence] Error appending state to {self._file_path}: {exc}")
            raise

    def load(self, default_factory: Optional[Callable[[], bytes]] = None) -> bytes:
        """Load previously persisted data.

        If the file does not exist the *default_factory* is invoked (or empty
        ``bytes`` are returned if *default_factory* is ``None``). A file that
        exists but cannot be read raises, since silently dropping a snapshot
        would lose buffered messages.
        """
        if default_factory is None:
            default_factory = bytes

        if not Path(self._file_path).exists():
            return default_factory()

        try:
            with open(self._file_path, "rb") as fp:
                return fp.read()
        except Exception as exc:
            logging.error(f"[StatePersistence] Error loading state from {self._file_path}: {exc}")
            raise

    def clear(self) -> None:
        """Remove the persisted file from disk if it exists."""
        if Path(self._file_path).exists():
            os.remove(self._file_path)
            logging.debug(f"[StatePersistence] Deleted state file: {self._file_path}")
