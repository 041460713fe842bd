"""Journal reader: loads JSONL event journals and replays them.

Usage:
    journal = JournalData.from_file("output/journal/match-1.jsonl")
    print(journal.match_id)        # "match-1"
    print(len(journal.events))     # 412
    engine = replay(journal, config)
    print(engine.match.phase)      # Phase.POST_MATCH
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from relaysync.config import ClientConfig, EngineConfig, JournalConfig
from relaysync.core.snapshot_store import MemorySnapshotStore
from relaysync.engine.sync import MatchSyncEngine

logger = logging.getLogger(__name__)


@dataclass
class JournalEvent:
    """One inbound event from a journal."""

    seq: int
    event: str
    payload: dict
    timestamp: str

    @classmethod
    def from_record(cls, record: dict) -> JournalEvent:
        return cls(
            seq=record.get("seq", 0),
            event=record.get("event", ""),
            payload=record.get("payload") or {},
            timestamp=record.get("timestamp", ""),
        )


@dataclass
class JournalData:
    """Parsed event journal."""

    file_path: Path
    match_id: str
    events: list[JournalEvent]
    summary: dict | None
    schema_version: str

    @classmethod
    def from_file(cls, path: str | Path) -> JournalData:
        path = Path(path)
        events: list[JournalEvent] = []
        summary: dict | None = None
        match_id = ""
        schema_version = ""

        with open(path) as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("%s:%d: skipping unreadable line", path, line_no)
                    continue

                if not match_id:
                    match_id = record.get("match_id", "")
                if not schema_version:
                    schema_version = record.get("schema_version", "")

                if record.get("record_type") == "match_summary":
                    summary = record
                else:
                    events.append(JournalEvent.from_record(record))

        events.sort(key=lambda e: e.seq)
        return cls(
            file_path=path,
            match_id=match_id or path.stem,
            events=events,
            summary=summary,
            schema_version=schema_version,
        )

    @property
    def event_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for e in self.events:
            counts[e.event] = counts.get(e.event, 0) + 1
        return counts


def replay(
    journal: JournalData,
    config: EngineConfig | None = None,
    user_id: str | None = None,
) -> MatchSyncEngine:
    """Fold every journaled event through a fresh engine.

    The replay engine keeps snapshots in memory and writes no journal of
    its own, so replaying never touches configured storage.
    """
    config = config or EngineConfig()
    config = dataclasses.replace(config, journal=JournalConfig(enabled=False))
    if user_id is not None:
        config = dataclasses.replace(config, client=ClientConfig(user_id=user_id, party_id=config.client.party_id))
    engine = MatchSyncEngine(journal.match_id, config, snapshot_store=MemorySnapshotStore())
    for e in journal.events:
        engine.dispatch(e.event, e.payload)
    engine.teardown()
    return engine
