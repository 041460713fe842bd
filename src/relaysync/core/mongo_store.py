"""MongoSnapshotStore: terminal match snapshots in MongoDB.

Connects and verifies connectivity with a ping. If the connection fails
the store disables itself: reads return None and writes are dropped with
a warning. Errors after a successful connect raise SnapshotStoreError.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from relaysync.core.snapshot_store import SnapshotStoreError

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = "1.0.0"
_COLLECTION = "match_snapshots"


class MongoSnapshotStore:
    def __init__(self, uri: str, db_name: str) -> None:
        self._uri = uri
        self._db_name = db_name
        self._disabled = False
        self._client = None

        try:
            self._client = MongoClient(uri, serverSelectionTimeoutMS=5000)
            self._client.admin.command("ping")
        except (ConnectionFailure, ServerSelectionTimeoutError, PyMongoError) as exc:
            logger.warning("MongoDB connection failed, snapshot store disabled: %s", exc)
            self._disabled = True
            return

        self._collection = self._client[db_name][_COLLECTION]
        try:
            self._collection.create_index("key", unique=True)
        except PyMongoError as exc:
            logger.warning("Failed to create snapshot index: %s", exc)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> MongoSnapshotStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def disabled(self) -> bool:
        return self._disabled

    def get(self, key: str) -> dict | None:
        if self._disabled:
            return None
        try:
            doc = self._collection.find_one({"key": key})
        except PyMongoError as exc:
            raise SnapshotStoreError(f"Failed to read snapshot {key}: {exc}") from exc
        return doc["state"] if doc else None

    def put(self, key: str, value: dict) -> None:
        if self._disabled:
            logger.warning("Snapshot store disabled, dropping write for %s", key)
            return
        doc = {
            "key": key,
            "match_id": value.get("matchId"),
            "schema_version": _SCHEMA_VERSION,
            "state": value,
            "_updated_at": datetime.now(timezone.utc),
        }
        try:
            self._collection.update_one({"key": key}, {"$set": doc}, upsert=True)
        except PyMongoError as exc:
            raise SnapshotStoreError(f"Failed to upsert snapshot {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        if self._disabled:
            return
        try:
            self._collection.delete_one({"key": key})
        except PyMongoError as exc:
            raise SnapshotStoreError(f"Failed to delete snapshot {key}: {exc}") from exc

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
