"""Phase state machine for the match lifecycle.

Incremental events may only move the phase along the transition table.
A full snapshot may set any phase, except that nothing leaves post_match.
"""

from __future__ import annotations

from enum import Enum

from relaysync.core.incidents import IncidentKind, IncidentLog
from relaysync.state.models import MatchState, Phase

LEGAL_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PRE_MATCH: frozenset({Phase.STRATEGY, Phase.ROUND_COUNTDOWN, Phase.ACTIVE}),
    Phase.STRATEGY: frozenset({Phase.ROUND_COUNTDOWN, Phase.ACTIVE}),
    Phase.ROUND_COUNTDOWN: frozenset({Phase.ACTIVE}),
    Phase.ACTIVE: frozenset({Phase.BREAK, Phase.HALFTIME, Phase.ANCHOR_DECISION, Phase.ROUND_COUNTDOWN}),
    Phase.BREAK: frozenset({Phase.ROUND_COUNTDOWN, Phase.ACTIVE, Phase.ANCHOR_DECISION}),
    Phase.HALFTIME: frozenset({Phase.ROUND_COUNTDOWN, Phase.ACTIVE, Phase.STRATEGY}),
    Phase.ANCHOR_DECISION: frozenset({Phase.ROUND_COUNTDOWN, Phase.ACTIVE}),
    Phase.POST_MATCH: frozenset(),
}

# Nobody is answering in these phases
IDLE_PHASES = frozenset({Phase.BREAK, Phase.HALFTIME, Phase.ROUND_COUNTDOWN, Phase.POST_MATCH})


class Verdict(Enum):
    ACCEPT = "accept"
    SAME = "same"
    ILLEGAL = "illegal"
    STALE = "stale"


def is_legal(current: Phase, target: Phase) -> bool:
    if current == target:
        return True
    if target == Phase.POST_MATCH:
        return current != Phase.POST_MATCH
    return target in LEGAL_TRANSITIONS[current]


def judge(current: Phase, target: Phase, *, snapshot: bool = False) -> Verdict:
    if current == target:
        return Verdict.SAME
    if current == Phase.POST_MATCH:
        return Verdict.STALE
    if snapshot or is_legal(current, target):
        return Verdict.ACCEPT
    return Verdict.ILLEGAL


class PhaseMachine:
    """Applies phase changes to a match and records rejected ones."""

    def __init__(self, incidents: IncidentLog) -> None:
        self._incidents = incidents

    def check(self, match: MatchState, target: Phase, event: str, *, snapshot: bool = False) -> Verdict:
        """Judge a transition without applying it; log rejections."""
        verdict = judge(match.phase, target, snapshot=snapshot)
        if verdict == Verdict.STALE:
            self._incidents.record(
                IncidentKind.STALE_TERMINAL_UPDATE, event,
                f"match already finished, ignoring phase {target.value}",
            )
        elif verdict == Verdict.ILLEGAL:
            self._incidents.record(
                IncidentKind.ILLEGAL_TRANSITION, event,
                f"{match.phase.value} -> {target.value} not allowed",
            )
        return verdict

    @staticmethod
    def apply(match: MatchState, target: Phase, verdict: Verdict) -> bool:
        """Apply a checked transition. Must run inside a store transaction."""
        if verdict not in (Verdict.ACCEPT, Verdict.SAME):
            return False
        match.phase = target
        apply_entry_effects(match, target)
        return True

    def enter(self, match: MatchState, target: Phase, event: str) -> Verdict:
        """Check and apply in one step."""
        verdict = self.check(match, target, event)
        self.apply(match, target, verdict)
        return verdict


def apply_entry_effects(match: MatchState, phase: Phase) -> None:
    if phase in IDLE_PHASES:
        for player in match.all_players():
            player.is_active = False
    if phase == Phase.ROUND_COUNTDOWN:
        for player in match.all_players():
            player.is_complete = False
