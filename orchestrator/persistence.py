"""
Durable state storage.

The stores only need "durable, read-your-writes": a save must reach disk
before the call returns so a restart between the write and the next read
never observes stale state. Each store owns one DurableStore and rewrites its
whole document on every mutation.

JsonFileStore writes to a temporary sibling, fsyncs it and atomically replaces
the target. A corrupt or unreadable file is logged and treated as empty.
MemoryStore keeps the document in-process only (tests, or running without a
data directory).
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("persistence")


class DurableStore:
    """Interface for a single durable JSON-compatible document."""

    def load(self, default: Any) -> Any:
        """Return the stored document, or `default` if nothing is stored."""
        raise NotImplementedError

    def save(self, document: Any) -> None:
        """Persist the document. Must be durable when it returns."""
        raise NotImplementedError


class MemoryStore(DurableStore):
    """In-process store. Survives nothing, used where durability is not wanted."""

    def __init__(self, document: Optional[Any] = None):
        self._document = copy.deepcopy(document)

    def load(self, default: Any) -> Any:
        if self._document is None:
            return default
        return copy.deepcopy(self._document)

    def save(self, document: Any) -> None:
        self._document = copy.deepcopy(document)


class JsonFileStore(DurableStore):
    """JSON document on disk with atomic replace."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_dir(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def load(self, default: Any) -> Any:
        if not self._path.exists():
            return default
        try:
            return json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load state file {self._path}: {e}")
            return default

    def save(self, document: Any) -> None:
        self._ensure_dir()
        temp_file = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with open(temp_file, "w") as f:
                f.write(json.dumps(document, indent=2, default=str))
                f.flush()
                os.fsync(f.fileno())
            temp_file.replace(self._path)
        except OSError as e:
            logger.error(f"Failed to save state file {self._path}: {e}")
            if temp_file.exists():
                temp_file.unlink()
            raise


def open_store(data_dir: Optional[Path], filename: str) -> DurableStore:
    """JSON file under `data_dir`, or an in-memory store when no dir is given."""
    if data_dir is None:
        return MemoryStore()
    return JsonFileStore(Path(data_dir) / filename)
