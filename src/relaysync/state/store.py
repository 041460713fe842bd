"""MatchStore: the single owner of match and client state.

Handlers never keep references to state across events. They either
replace the match wholesale or open one ``mutate()`` transaction, patch
entities in place, and let the store commit. Each commit bumps
``version`` once and notifies subscribers once.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from relaysync.state.models import ClientState, MatchState

logger = logging.getLogger(__name__)

Listener = Callable[["MatchStore", str], None]


class MatchStore:
    def __init__(self, points_feed_size: int = 50) -> None:
        self._points_feed_size = points_feed_size
        self.match: MatchState | None = None
        self.client = ClientState(points_feed_size=points_feed_size)
        self.version = 0
        self._listeners: list[Listener] = []
        self._in_transaction = False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def replace(self, match: MatchState | None, label: str = "replace") -> None:
        """Atomically swap in a new match snapshot."""
        if self._in_transaction:
            raise RuntimeError("replace() called inside an open transaction")
        self.match = match
        self._commit(label)

    @contextmanager
    def mutate(self, label: str) -> Iterator[MatchStore]:
        """Open a single transaction for in-place patches.

        On exception nothing is committed and listeners are not notified.
        Transactions do not nest.
        """
        if self._in_transaction:
            raise RuntimeError(f"nested transaction {label!r}")
        self._in_transaction = True
        try:
            yield self
        finally:
            self._in_transaction = False
        self._commit(label)

    def reset(self) -> None:
        """Drop all match and client state (explicit leave)."""
        self.match = None
        self.client = ClientState(points_feed_size=self._points_feed_size)
        self._commit("reset")

    def _commit(self, label: str) -> None:
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(self, label)
            except Exception:
                logger.exception("Store listener failed on %s", label)
