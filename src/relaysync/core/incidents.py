"""IncidentLog: non-fatal anomaly tracking for a single match.

One IncidentLog per engine. Every dropped, ignored, or downgraded event is
recorded here and logged. Nothing recorded here ever stops the engine; the
worst case is a stale view that a resync or snapshot restore recovers.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class IncidentKind(Enum):
    MALFORMED_EVENT = "malformed_event"
    UNKNOWN_ENTITY = "unknown_entity"
    STALE_TERMINAL_UPDATE = "stale_terminal_update"
    ILLEGAL_TRANSITION = "illegal_transition"
    TRANSPORT_DISCONNECTED = "transport_disconnected"
    TRANSPORT_ERROR = "transport_error"
    STORE_WRITE_FAILURE = "store_write_failure"
    SEQUENCE_GAP = "sequence_gap"
    NO_STATE = "no_state"


@dataclass(frozen=True)
class Incident:
    kind: IncidentKind
    event: str | None
    details: str


class IncidentLog:
    """Records incidents and reports per-kind counts."""

    def __init__(self) -> None:
        self._incidents: list[Incident] = []

    def record(self, kind: IncidentKind, event: str | None, details: str) -> Incident:
        incident = Incident(kind=kind, event=event, details=details)
        self._incidents.append(incident)
        logger.warning("[%s] %s: %s", kind.value, event or "-", details)
        return incident

    @property
    def incidents(self) -> list[Incident]:
        return list(self._incidents)

    def count(self, kind: IncidentKind) -> int:
        return sum(1 for i in self._incidents if i.kind == kind)

    def last(self, kind: IncidentKind | None = None) -> Incident | None:
        """Return the most recent incident, optionally of a given kind."""
        for incident in reversed(self._incidents):
            if kind is None or incident.kind == kind:
                return incident
        return None

    def get_report(self) -> dict:
        counts = Counter(i.kind.value for i in self._incidents)
        report = {kind.value: counts.get(kind.value, 0) for kind in IncidentKind}
        report["total_incidents"] = len(self._incidents)
        return report
