"""Persistence helpers for mailgate's on-disk state documents."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

STATE_DIRNAME = "state"
WHITELIST_FILENAME = "whitelist.json"
SUBJECTS_FILENAME = "subjects.json"


class StoreError(RuntimeError):
    """Raised when a state document cannot be written."""


class Store:
    """High-level helper responsible for the on-disk state layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir.expanduser()
        self.state_dir = self.root_dir / STATE_DIRNAME
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @property
    def whitelist(self) -> JsonDocument:
        return JsonDocument(self.state_dir / WHITELIST_FILENAME)

    @property
    def subjects(self) -> JsonDocument:
        return JsonDocument(self.state_dir / SUBJECTS_FILENAME)


class JsonDocument:
    """A single JSON file replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self.path = path.expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def modified_at(self) -> datetime | None:
        """Return the file's last-modified time, or None if it is missing."""

        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def read(self) -> Any | None:
        """Load the document. Returns None on missing or corrupt data."""

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError):
            LOGGER.warning("Failed to decode %s; quarantining", self.path, exc_info=True)
            self._quarantine_corrupt_file()
            return None

    def write(self, payload: Any) -> Path:
        """Serialise ``payload`` to a temp file and rename it over the target."""

        def _write(tmp_path: Path) -> None:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.write("\n")

        try:
            self._atomic_write(_write)
        except OSError as exc:
            raise StoreError(f"Failed to write {self.path}: {exc}") from exc
        return self.path

    def _atomic_write(self, writer: Callable[[Path], None]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_name = f".{self.path.name}.{uuid.uuid4().hex}.tmp"
        tmp_path = self.path.with_name(tmp_name)
        try:
            writer(tmp_path)
            tmp_path.replace(self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def _quarantine_corrupt_file(self) -> None:
        if not self.path.exists():
            return
        suffix = ".corrupt"
        candidate = self.path.with_name(f"{self.path.name}{suffix}")
        counter = 1
        while candidate.exists():
            counter += 1
            candidate = self.path.with_name(f"{self.path.name}{suffix}{counter}")
        self.path.replace(candidate)


__all__ = ["JsonDocument", "Store", "StoreError"]
