"""Display-only countdowns.

The server owns all real timing. Local countdowns interpolate between
server updates and are overwritten by every absolute time update. They
freeze while the transport is down and are cancelled when their phase
ends or a new countdown of the same kind starts.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TimerKind(Enum):
    PRE_MATCH = "pre_match"
    STRATEGY = "strategy"
    BREAK = "break"
    ROUND_COUNTDOWN = "round_countdown"
    QUESTION_WARNING = "question_warning"
    SOLO_DECISION = "solo_decision"
    QUIT_VOTE = "quit_vote"


class Countdown:
    """A countdown from a known remaining duration, read against a clock."""

    def __init__(self, kind: TimerKind, duration_ms: float, clock: Clock = time.monotonic) -> None:
        self.kind = kind
        self.duration_ms = duration_ms
        self._clock = clock
        self._remaining_at_anchor = duration_ms
        self._anchor = clock()
        self._frozen = False
        self.cancelled = False

    def remaining_ms(self) -> float:
        if self.cancelled:
            return 0.0
        if self._frozen:
            return self._remaining_at_anchor
        elapsed = (self._clock() - self._anchor) * 1000
        return max(0.0, self._remaining_at_anchor - elapsed)

    def overwrite(self, remaining_ms: float) -> None:
        """Snap to an authoritative server value."""
        self._remaining_at_anchor = max(0.0, remaining_ms)
        self._anchor = self._clock()

    def extend(self, extra_ms: float) -> None:
        self.duration_ms += extra_ms
        self.overwrite(self.remaining_ms() + extra_ms)

    def freeze(self) -> None:
        if not self._frozen:
            self._remaining_at_anchor = self.remaining_ms()
            self._frozen = True

    def resume(self) -> None:
        if self._frozen:
            self._frozen = False
            self._anchor = self._clock()

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def expired(self) -> bool:
        return self.remaining_ms() <= 0


# Countdowns that belong to a phase and stop when it ends
PHASE_OWNED = {
    "pre_match": (TimerKind.PRE_MATCH,),
    "strategy": (TimerKind.STRATEGY,),
    "break": (TimerKind.BREAK,),
    "halftime": (TimerKind.BREAK,),
    "anchor_decision": (TimerKind.SOLO_DECISION,),
    "round_countdown": (TimerKind.ROUND_COUNTDOWN,),
    "active": (TimerKind.QUESTION_WARNING,),
}


class TimerRegistry:
    """At most one live countdown per kind."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._timers: dict[TimerKind, Countdown] = {}
        self._frozen = False

    def start(self, kind: TimerKind, duration_ms: float) -> Countdown:
        self.cancel(kind)
        countdown = Countdown(kind, duration_ms, clock=self._clock)
        if self._frozen:
            countdown.freeze()
        self._timers[kind] = countdown
        return countdown

    def get(self, kind: TimerKind) -> Countdown | None:
        return self._timers.get(kind)

    def remaining_ms(self, kind: TimerKind) -> float | None:
        countdown = self._timers.get(kind)
        return countdown.remaining_ms() if countdown else None

    def overwrite(self, kind: TimerKind, remaining_ms: float) -> Countdown:
        """Apply a server time update, starting the countdown if needed."""
        countdown = self._timers.get(kind)
        if countdown is None:
            return self.start(kind, remaining_ms)
        countdown.overwrite(remaining_ms)
        return countdown

    def cancel(self, kind: TimerKind) -> None:
        countdown = self._timers.pop(kind, None)
        if countdown is not None:
            countdown.cancel()

    def cancel_phase(self, phase: str) -> None:
        """Cancel the countdowns owned by a phase that just ended."""
        for kind in PHASE_OWNED.get(phase, ()):
            self.cancel(kind)

    def cancel_all(self) -> None:
        for kind in list(self._timers):
            self.cancel(kind)

    def freeze_all(self) -> None:
        self._frozen = True
        for countdown in self._timers.values():
            countdown.freeze()

    def resume_all(self) -> None:
        self._frozen = False
        for countdown in self._timers.values():
            countdown.resume()

    def active(self) -> dict[TimerKind, float]:
        return {kind: c.remaining_ms() for kind, c in self._timers.items()}


class TickLoop:
    """Daemon thread that calls ``on_tick`` once per interval until stopped."""

    def __init__(self, on_tick: Callable[[], None], interval_s: float = 1.0) -> None:
        self._on_tick = on_tick
        self._interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> TickLoop:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="relaysync-tick",
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Tick thread did not stop within %.1fs", timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval_s):
            try:
                self._on_tick()
            except Exception as exc:
                logger.warning("Tick callback failed: %s", exc)
