"""AbilityLedger: append-only record of rate-limited team abilities.

Every local request and every server confirmation is appended. Whether an
ability is still available is computed from the log, so a duplicate
confirmation or a confirmation of an optimistic local request never
changes the answer twice, and a used flag can never go back to false.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AbilityKind(Enum):
    DOUBLE_CALLIN = "double_callin"
    ANCHOR_SOLO = "anchor_solo"
    TIMEOUT = "timeout"


class Source(Enum):
    LOCAL = "local"
    SERVER = "server"


MATCH_SCOPE = "match"


def half_scope(half: int) -> str:
    return f"half{half}"


@dataclass(frozen=True)
class AbilityUse:
    kind: AbilityKind
    scope: str
    source: Source
    remaining: int | None = None  # server-mirrored timeout credits


class AbilityLedger:
    def __init__(self, timeout_credits: int = 2) -> None:
        self._credits = timeout_credits
        self._log: list[AbilityUse] = []

    @property
    def entries(self) -> list[AbilityUse]:
        return list(self._log)

    def record(
        self,
        kind: AbilityKind,
        scope: str,
        source: Source,
        remaining: int | None = None,
    ) -> bool:
        """Append a use. Returns True if this is the first use in its scope."""
        first = not self.used(kind, scope)
        self._log.append(AbilityUse(kind=kind, scope=scope, source=source, remaining=remaining))
        return first

    # ------------------------------------------------------------------
    # Derived flags
    # ------------------------------------------------------------------

    def used(self, kind: AbilityKind, scope: str) -> bool:
        return any(e.kind == kind and e.scope == scope for e in self._log)

    def used_double_callin(self, half: int) -> bool:
        return self.used(AbilityKind.DOUBLE_CALLIN, half_scope(half))

    @property
    def used_double_callin_half1(self) -> bool:
        return self.used_double_callin(1)

    @property
    def used_double_callin_half2(self) -> bool:
        return self.used_double_callin(2)

    @property
    def used_anchor_solo(self) -> bool:
        return self.used(AbilityKind.ANCHOR_SOLO, MATCH_SCOPE)

    @property
    def timeouts_remaining(self) -> int:
        """Credits left: the last server value, minus local requests made since."""
        remaining = self._credits
        for entry in self._log:
            if entry.kind != AbilityKind.TIMEOUT:
                continue
            if entry.remaining is not None:
                remaining = entry.remaining
            elif entry.source == Source.LOCAL:
                remaining -= 1
        return max(0, remaining)

    def can_call_timeout(self) -> bool:
        return self.timeouts_remaining > 0

    def reset(self) -> None:
        self._log.clear()
