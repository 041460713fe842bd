"""Key-value stores for terminal match snapshots.

Snapshots are plain dicts in the wire shape, keyed by
``match_results_<matchId>``. Backends raise SnapshotStoreError on I/O
failure; callers decide whether that is fatal.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

KEY_PREFIX = "match_results_"

_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


def snapshot_key(match_id: str) -> str:
    return f"{KEY_PREFIX}{match_id}"


class SnapshotStoreError(Exception):
    """A snapshot could not be read or written."""


class SnapshotStore(Protocol):
    def get(self, key: str) -> dict | None: ...

    def put(self, key: str, value: dict) -> None: ...

    def delete(self, key: str) -> None: ...


class MemorySnapshotStore:
    """Per-process store; lives as long as the engine's host."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> dict | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, key: str, value: dict) -> None:
        try:
            self._data[key] = json.dumps(value, default=str)
        except (TypeError, ValueError) as exc:
            raise SnapshotStoreError(f"Cannot serialize snapshot {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileSnapshotStore:
    """One JSON file per key, written atomically (tmp + rename)."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    def path_for(self, key: str) -> Path:
        return self._dir / f"{_SAFE_KEY_RE.sub('_', key)}.json"

    def get(self, key: str) -> dict | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotStoreError(f"Cannot read snapshot {path}: {exc}") from exc

    def put(self, key: str, value: dict) -> None:
        path = self.path_for(key)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
        except OSError as exc:
            raise SnapshotStoreError(f"Cannot write snapshot {path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(value, f, indent=2, default=str)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise SnapshotStoreError(f"Cannot write snapshot {path}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as exc:
            raise SnapshotStoreError(f"Cannot delete snapshot {key}: {exc}") from exc
