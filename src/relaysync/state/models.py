"""Match state models: the canonical, id-indexed view of one relay match.

Teams are held in a table keyed by team id with an order tuple giving
team1/team2, and a player index maps each player id to its team so
handlers can patch a single entity in place. Wire and snapshot format is
camelCase JSON; every model converts with ``to_dict()`` / ``from_dict()``.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Phase(str, Enum):
    PRE_MATCH = "pre_match"
    STRATEGY = "strategy"
    ROUND_COUNTDOWN = "round_countdown"
    ACTIVE = "active"
    BREAK = "break"
    HALFTIME = "halftime"
    ANCHOR_DECISION = "anchor_decision"
    POST_MATCH = "post_match"


@dataclass
class Question:
    question: str
    operation: str

    def to_dict(self) -> dict:
        return {"question": self.question, "operation": self.operation}

    @classmethod
    def from_dict(cls, data: dict | None) -> Question | None:
        if not data:
            return None
        return cls(question=data.get("question", ""), operation=data.get("operation", ""))


@dataclass
class PlayerState:
    """One roster member and their running stats."""

    user_id: str
    name: str = "Unknown"
    level: int = 1
    equipped_frame: str = "default"
    equipped_banner: str = "default"
    equipped_title: str = "Player"
    slot: str = ""
    score: float = 0
    correct: int = 0
    total: int = 0
    streak: int = 0
    max_streak: int = 0
    total_answer_time_ms: float = 0
    is_active: bool = False
    is_complete: bool = False
    is_igl: bool = False
    is_anchor: bool = False
    current_question: Question | None = None

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0

    @property
    def average_answer_time_ms(self) -> float:
        return self.total_answer_time_ms / self.total if self.total else 0.0

    def to_dict(self) -> dict:
        return {
            "odUserId": self.user_id,
            "odName": self.name,
            "odLevel": self.level,
            "odEquippedFrame": self.equipped_frame,
            "odEquippedBanner": self.equipped_banner,
            "odEquippedTitle": self.equipped_title,
            "slot": self.slot,
            "score": self.score,
            "correct": self.correct,
            "total": self.total,
            "streak": self.streak,
            "maxStreak": self.max_streak,
            "totalAnswerTimeMs": self.total_answer_time_ms,
            "isActive": self.is_active,
            "isComplete": self.is_complete,
            "isIgl": self.is_igl,
            "isAnchor": self.is_anchor,
            "currentQuestion": self.current_question.to_dict() if self.current_question else None,
        }

    @classmethod
    def from_dict(cls, data: dict, user_id: str | None = None) -> PlayerState:
        return cls(
            user_id=data.get("odUserId") or user_id or "",
            name=data.get("odName") or "Unknown",
            level=data.get("odLevel") or 1,
            equipped_frame=data.get("odEquippedFrame") or "default",
            equipped_banner=data.get("odEquippedBanner") or "default",
            equipped_title=data.get("odEquippedTitle") or "Player",
            slot=data.get("slot") or "",
            score=data.get("score") or 0,
            correct=data.get("correct") or 0,
            total=data.get("total") or 0,
            streak=data.get("streak") or 0,
            max_streak=data.get("maxStreak") or 0,
            total_answer_time_ms=data.get("totalAnswerTimeMs") or 0,
            is_active=bool(data.get("isActive", False)),
            is_complete=bool(data.get("isComplete", False)),
            is_igl=bool(data.get("isIgl", False)),
            is_anchor=bool(data.get("isAnchor", False)),
            current_question=Question.from_dict(data.get("currentQuestion")),
        )


@dataclass
class TeamState:
    team_id: str
    team_name: str = ""
    team_tag: str | None = None
    leader_id: str | None = None
    score: float = 0
    current_streak: int = 0
    slot_assignments: dict[str, str] = field(default_factory=dict)  # operation -> player id
    players: dict[str, PlayerState] = field(default_factory=dict)
    current_slot: int = 1
    questions_in_slot: int = 0
    is_home: bool = False
    timeouts_used: int = 0

    def to_dict(self) -> dict:
        return {
            "teamId": self.team_id,
            "teamName": self.team_name,
            "teamTag": self.team_tag,
            "leaderId": self.leader_id,
            "score": self.score,
            "currentStreak": self.current_streak,
            "slotAssignments": dict(self.slot_assignments),
            "players": {pid: p.to_dict() for pid, p in self.players.items()},
            "currentSlot": self.current_slot,
            "questionsInSlot": self.questions_in_slot,
            "isHome": self.is_home,
            "timeoutsUsed": self.timeouts_used,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TeamState:
        players = {
            pid: PlayerState.from_dict(p or {}, user_id=pid)
            for pid, p in (data.get("players") or {}).items()
        }
        return cls(
            team_id=data["teamId"],
            team_name=data.get("teamName") or "",
            team_tag=data.get("teamTag"),
            leader_id=data.get("leaderId"),
            score=data.get("score") or 0,
            current_streak=data.get("currentStreak") or 0,
            slot_assignments=dict(data.get("slotAssignments") or {}),
            players=players,
            current_slot=data.get("currentSlot") or 1,
            questions_in_slot=data.get("questionsInSlot") or 0,
            is_home=bool(data.get("isHome", False)),
            timeouts_used=data.get("timeoutsUsed") or 0,
        )


@dataclass
class MatchOutcome:
    winner_id: str | None = None
    is_draw: bool = False
    team1_score: float | None = None
    team2_score: float | None = None
    match_duration_ms: float | None = None

    def to_dict(self) -> dict:
        return {
            "winnerId": self.winner_id,
            "isDraw": self.is_draw,
            "team1Score": self.team1_score,
            "team2Score": self.team2_score,
            "matchDurationMs": self.match_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> MatchOutcome | None:
        if not data:
            return None
        return cls(
            winner_id=data.get("winnerId"),
            is_draw=bool(data.get("isDraw", False)),
            team1_score=data.get("team1Score"),
            team2_score=data.get("team2Score"),
            match_duration_ms=data.get("matchDurationMs"),
        )


@dataclass
class MatchState:
    """Canonical match snapshot.

    ``is_my_team`` always equals exactly one of the two team ids.
    """

    match_id: str
    phase: Phase
    teams: dict[str, TeamState]
    team_order: tuple[str, str]
    is_my_team: str
    round: int = 1
    half: int = 1
    game_clock_ms: float = 0
    relay_clock_ms: float = 0
    mode: str | None = None
    slot_operations: list[str] | None = None
    forfeited_by: str | None = None
    outcome: MatchOutcome | None = None
    _player_index: dict[str, str] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.reindex()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def team1(self) -> TeamState:
        return self.teams[self.team_order[0]]

    @property
    def team2(self) -> TeamState:
        return self.teams[self.team_order[1]]

    @property
    def my_team(self) -> TeamState:
        return self.teams[self.is_my_team]

    @property
    def opponent_team(self) -> TeamState:
        other = self.team_order[1] if self.team_order[0] == self.is_my_team else self.team_order[0]
        return self.teams[other]

    def team(self, team_id: str | None) -> TeamState | None:
        if team_id is None:
            return None
        return self.teams.get(team_id)

    def find_player(self, player_id: str | None) -> tuple[TeamState, PlayerState] | None:
        """Return (team, player) for a player id, or None if unknown."""
        team_id = self._player_index.get(player_id) if player_id else None
        if team_id is None:
            return None
        team = self.teams[team_id]
        return team, team.players[player_id]

    def all_players(self):
        for team_id in self.team_order:
            yield from self.teams[team_id].players.values()

    def add_player(self, team: TeamState, player: PlayerState) -> None:
        team.players[player.user_id] = player
        self._player_index[player.user_id] = team.team_id

    def reindex(self) -> None:
        self._player_index = {
            pid: team.team_id
            for team in self.teams.values()
            for pid in team.players
        }

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "matchId": self.match_id,
            "phase": self.phase.value,
            "round": self.round,
            "half": self.half,
            "gameClockMs": self.game_clock_ms,
            "relayClockMs": self.relay_clock_ms,
            "team1": self.team1.to_dict(),
            "team2": self.team2.to_dict(),
            "isMyTeam": self.is_my_team,
            "mode": self.mode,
            "slotOperations": list(self.slot_operations) if self.slot_operations else None,
            "forfeitedBy": self.forfeited_by,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }

    @classmethod
    def from_dict(cls, data: dict, user_id: str | None = None) -> MatchState:
        """Build from a wire snapshot.

        When ``isMyTeam`` is missing or names neither team, the local team is
        the one whose roster contains ``user_id``, falling back to team1.
        Raises ValueError when both sides carry the same team id.
        """
        team1 = TeamState.from_dict(data["team1"])
        team2 = TeamState.from_dict(data["team2"])
        if team1.team_id == team2.team_id:
            raise ValueError(f"both teams have id {team1.team_id!r}")
        my_team = data.get("isMyTeam")
        if my_team not in (team1.team_id, team2.team_id):
            my_team = team2.team_id if user_id and user_id in team2.players else team1.team_id
        return cls(
            match_id=data["matchId"],
            phase=Phase(data["phase"]),
            teams={team1.team_id: team1, team2.team_id: team2},
            team_order=(team1.team_id, team2.team_id),
            is_my_team=my_team,
            round=data.get("round") or 1,
            half=data.get("half") or 1,
            game_clock_ms=data.get("gameClockMs") or 0,
            relay_clock_ms=data.get("relayClockMs") or 0,
            mode=data.get("mode"),
            slot_operations=list(data["slotOperations"]) if data.get("slotOperations") else None,
            forfeited_by=data.get("forfeitedBy"),
            outcome=MatchOutcome.from_dict(data.get("outcome")),
        )


# ----------------------------------------------------------------------
# Ephemeral client-side state
# ----------------------------------------------------------------------


@dataclass
class SlotAssignment:
    """One roster entry shown during the strategy phase."""

    player_id: str
    operation: str
    name: str = "Unknown"
    level: int = 1
    is_igl: bool = False
    is_anchor: bool = False
    equipped_banner: str = "default"
    equipped_frame: str = "default"
    equipped_title: str = "Player"


@dataclass
class StrategyState:
    duration_ms: float
    remaining_ms: float
    my_slots: dict[str, SlotAssignment] = field(default_factory=dict)
    opponent_slots: dict[str, SlotAssignment] = field(default_factory=dict)
    my_team_ready: bool = False
    opponent_team_ready: bool = False


@dataclass
class SoloDecisionState:
    duration_ms: float
    remaining_ms: float | None = None
    my_anchor_name: str = ""
    opponent_anchor_name: str = ""
    my_decision: str | None = None
    opponent_decision: str | None = None
    auto_selected: bool = False


@dataclass
class HandoffState:
    next_player_id: str
    next_player_name: str
    slot_number: int | None
    operation: str
    countdown_ms: float
    is_my_turn: bool


@dataclass
class RoundSummary:
    round: int
    half: int | None
    team1_score: float | None
    team2_score: float | None


@dataclass
class DoubleAnchorIndicator:
    half: int
    target_slot: str | None
    for_round: int | None
    benched_player_name: str | None
    anchor_name: str | None


@dataclass
class PointsFeedEntry:
    team_id: str
    player_id: str
    points: float
    kind: str  # "answer", "bonus", "timeout"
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class QuitVoteState:
    initiator_id: str
    initiator_name: str = ""
    votes: dict[str, str | None] = field(default_factory=dict)
    expires_at: float | None = None
    remaining_ms: float | None = None
    active: bool = True
    result: str | None = None  # "quit", "stay"


@dataclass
class ClientState:
    """Local, non-persisted state that decorates the match view."""

    points_feed_size: int = 50
    connected: bool = False
    pre_match_countdown_ms: float | None = None
    strategy: StrategyState | None = None
    solo_decision: SoloDecisionState | None = None
    break_countdown_ms: float | None = None
    round_countdown_ms: float | None = None
    phase_initial_duration_ms: float | None = None
    teammate_typing: dict[str, str] = field(default_factory=dict)
    timeout_warning_seconds: int | None = None
    handoff: HandoffState | None = None
    round_summaries: list[RoundSummary] = field(default_factory=list)
    double_anchor: DoubleAnchorIndicator | None = None
    points_feed: deque = field(default=None)
    ready_for_next: set[str] = field(default_factory=set)
    quit_vote: QuitVoteState | None = None
    anchor_solo_active: dict[str, bool] = field(default_factory=dict)  # team id -> solo
    last_error: str | None = None

    def __post_init__(self) -> None:
        if self.points_feed is None:
            self.points_feed = deque(maxlen=self.points_feed_size)

    def push_points(self, entry: PointsFeedEntry) -> None:
        self.points_feed.append(entry)
