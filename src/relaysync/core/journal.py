"""EventJournal: JSONL record of inbound match events.

One journal per match. Writes one JSONL line per inbound event, and a
match summary once the match first reaches post_match. Late events that
arrive after the finish are still appended, so the summary is not
necessarily the last line. A journal reopened after a reload continues
the existing sequence numbers. All entries include schema version and
match ID, so a journal can be replayed through a fresh engine.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import relaysync

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = "1.0.0"


class EventJournal:
    """Writes JSONL event records for a single match."""

    def __init__(self, output_dir: Path, match_id: str):
        self._output_dir = Path(output_dir)
        self._match_id = match_id
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._file_path = self._output_dir / f"{match_id}.jsonl"
        self._seq = self._last_seq()
        self._finalized = False

    @property
    def file_path(self) -> Path:
        return self._file_path

    @property
    def match_id(self) -> str:
        return self._match_id

    def _last_seq(self) -> int:
        """Highest event seq already in the file, 0 for a new journal."""
        if not self._file_path.exists():
            return 0
        last = 0
        with open(self._file_path) as f:
            for line in f:
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                seq = record.get("seq") if isinstance(record, dict) else None
                if isinstance(seq, int):
                    last = max(last, seq)
        if last:
            logger.info("Resuming journal %s at seq %d", self._file_path, last + 1)
        return last

    def log_event(self, event: str, payload: dict) -> None:
        self._seq += 1
        self._append({
            "schema_version": _SCHEMA_VERSION,
            "record_type": "event",
            "match_id": self._match_id,
            "seq": self._seq,
            "event": event,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def finalize_match(self, final_state: dict, incidents: dict, extra: dict | None = None) -> None:
        if self._finalized:
            return
        self._finalized = True
        record = {
            "schema_version": _SCHEMA_VERSION,
            "record_type": "match_summary",
            "match_id": self._match_id,
            "events_logged": self._seq,
            "final_state": final_state,
            "incident_report": incidents,
            "engine_version": relaysync.__version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if extra:
            record.update(extra)
        self._append(record)

    def _append(self, record: dict) -> None:
        with open(self._file_path, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
