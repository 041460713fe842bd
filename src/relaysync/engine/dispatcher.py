"""EventDispatcher: route decoded server events to handlers.

Events are handled synchronously in delivery order. Names with no
registered handler are ignored. Payloads that fail decoding are dropped
before any handler runs, and a handler that raises is recorded as a
malformed event instead of propagating. When payloads carry an integer
``seq`` the dispatcher checks continuity and asks for a resync on a gap.
"""

from __future__ import annotations

import logging
from typing import Callable

from relaysync.core.decoder import EventDecoder
from relaysync.core.incidents import IncidentKind, IncidentLog

logger = logging.getLogger(__name__)

Handler = Callable[[dict], None]

# Connectivity events are local and never carry a sequence number
_UNSEQUENCED = frozenset({"connect", "disconnect", "error"})

# A full snapshot re-bases the sequence instead of being checked against it
_RESYNC = frozenset({"match_state"})


class EventDispatcher:
    def __init__(
        self,
        incidents: IncidentLog,
        decoder: EventDecoder | None = None,
        on_gap: Callable[[int, int], None] | None = None,
    ) -> None:
        self._incidents = incidents
        self._decoder = decoder or EventDecoder()
        self._handlers: dict[str, Handler] = {}
        self._on_gap = on_gap
        self._last_seq: int | None = None

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def handles(self, name: str) -> bool:
        return name in self._handlers

    @property
    def last_seq(self) -> int | None:
        return self._last_seq

    def reset_sequence(self) -> None:
        """Forget the last seen seq (after a resync snapshot)."""
        self._last_seq = None

    def dispatch(self, name: str, payload: dict | None) -> bool:
        """Decode and handle one event. Returns True if a handler ran."""
        handler = self._handlers.get(name)
        if handler is None:
            logger.debug("No handler for event %r, ignoring", name)
            return False

        result = self._decoder.decode(name, payload)
        if not result.success:
            self._incidents.record(IncidentKind.MALFORMED_EVENT, name, result.error or "invalid payload")
            return False

        data = result.payload
        if name not in _UNSEQUENCED:
            self._check_sequence(name, data.get("seq"))

        try:
            handler(data)
        except Exception as exc:
            logger.exception("Handler for %r failed", name)
            self._incidents.record(IncidentKind.MALFORMED_EVENT, name, f"handler failed: {exc}")
            return False
        return True

    def _check_sequence(self, name: str, seq) -> None:
        if not isinstance(seq, int) or isinstance(seq, bool):
            return
        if name in _RESYNC:
            self._last_seq = seq
            return
        last = self._last_seq
        if last is not None and seq > last + 1:
            self._incidents.record(
                IncidentKind.SEQUENCE_GAP, name,
                f"expected seq {last + 1}, got {seq}",
            )
            if self._on_gap is not None:
                self._on_gap(last + 1, seq)
        if last is None or seq > last:
            self._last_seq = seq
