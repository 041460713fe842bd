"""RecoveryManager: persist and restore terminal match snapshots.

A finished match is written once it reaches post_match and read back on
mount, before any channel event, so a reload still shows the results.
Entries are removed only by an explicit leave. Store failures are
recorded as incidents; the in-memory state stays authoritative.
"""

from __future__ import annotations

import logging
import os

from relaysync.config import StorageConfig
from relaysync.core.incidents import IncidentKind, IncidentLog
from relaysync.core.snapshot_store import (
    FileSnapshotStore,
    MemorySnapshotStore,
    SnapshotStore,
    SnapshotStoreError,
    snapshot_key,
)
from relaysync.state.models import MatchState, Phase

logger = logging.getLogger(__name__)


def build_store(storage: StorageConfig) -> SnapshotStore:
    """Create the snapshot backend named in config."""
    if storage.backend == "file":
        return FileSnapshotStore(storage.path)
    if storage.backend == "mongo":
        uri = os.environ.get(storage.mongo_uri_env)
        if not uri:
            logger.warning(
                "%s not set, falling back to in-memory snapshots", storage.mongo_uri_env,
            )
            return MemorySnapshotStore()
        from relaysync.core.mongo_store import MongoSnapshotStore

        return MongoSnapshotStore(uri, storage.db_name)
    return MemorySnapshotStore()


class RecoveryManager:
    def __init__(self, store: SnapshotStore, incidents: IncidentLog, user_id: str | None = None) -> None:
        self._store = store
        self._incidents = incidents
        self._user_id = user_id

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def persist(self, match: MatchState) -> bool:
        key = snapshot_key(match.match_id)
        try:
            self._store.put(key, match.to_dict())
        except SnapshotStoreError as exc:
            self._incidents.record(IncidentKind.STORE_WRITE_FAILURE, None, str(exc))
            return False
        logger.info("Saved final state for %s", match.match_id)
        return True

    def restore(self, match_id: str) -> MatchState | None:
        """Return the stored post_match state for a match, if any."""
        key = snapshot_key(match_id)
        try:
            raw = self._store.get(key)
        except SnapshotStoreError as exc:
            logger.warning("Could not read stored snapshot for %s: %s", match_id, exc)
            return None
        if not raw:
            return None
        try:
            match = MatchState.from_dict(raw, user_id=self._user_id)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable snapshot for %s: %s", match_id, exc)
            return None
        if match.phase != Phase.POST_MATCH:
            logger.warning("Stored snapshot for %s is not terminal, ignoring", match_id)
            return None
        return match

    def clear(self, match_id: str) -> None:
        try:
            self._store.delete(snapshot_key(match_id))
        except SnapshotStoreError as exc:
            self._incidents.record(IncidentKind.STORE_WRITE_FAILURE, "leave_match", str(exc))
