"""Relay progression: per-team slot counters and active-player selection.

One RelayConfig covers every mode: the slot order comes from the match's
own ``slotOperations`` when the server sends them, otherwise from the
configured operation list for the match mode.
"""

from __future__ import annotations

from dataclasses import dataclass

from relaysync.config import EngineConfig
from relaysync.state.models import MatchState, Phase, PlayerState, Question, TeamState


@dataclass(frozen=True)
class RelayConfig:
    mode: str
    slot_operations: tuple[str, ...]
    questions_per_slot: int = 5

    @classmethod
    def for_match(cls, match: MatchState | None, config: EngineConfig) -> RelayConfig:
        mode_cfg = config.mode(match.mode if match else None)
        operations = (match.slot_operations if match else None) or mode_cfg.slot_operations
        return cls(
            mode=mode_cfg.name,
            slot_operations=tuple(op.lower() for op in operations),
            questions_per_slot=mode_cfg.questions_per_slot,
        )

    @property
    def slot_count(self) -> int:
        return len(self.slot_operations)

    def operation_for_slot(self, slot: int) -> str | None:
        """Operation for a 1-based slot number."""
        if 1 <= slot <= self.slot_count:
            return self.slot_operations[slot - 1]
        return None

    def slot_for_operation(self, operation: str) -> int | None:
        """1-based slot number for an operation name."""
        try:
            return self.slot_operations.index(operation.lower()) + 1
        except ValueError:
            return None


class RelayTracker:
    """In-place relay updates. Callers hold an open store transaction."""

    def __init__(self, relay: RelayConfig) -> None:
        self.relay = relay

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    @staticmethod
    def activate(match: MatchState, team: TeamState, player_id: str | None) -> bool:
        """Make ``player_id`` the only active player of ``team``.

        Only allowed while the match is active; returns False otherwise or
        when the player is not on the team.
        """
        if match.phase != Phase.ACTIVE or player_id not in team.players:
            return False
        for pid, player in team.players.items():
            player.is_active = pid == player_id
        return True

    def first_slot_player(self, team: TeamState) -> str | None:
        """Player assigned to the first slot operation, if any."""
        first_op = self.relay.operation_for_slot(1)
        pid = team.slot_assignments.get(first_op) if first_op else None
        if pid in team.players:
            return pid
        for pid, player in team.players.items():
            if player.slot and player.slot.lower() == first_op:
                return pid
        return None

    def start_round(self, match: MatchState, designated: dict[str, str | None]) -> None:
        """Reset both relays to slot 1 and activate one player per team."""
        for team_id in match.team_order:
            team = match.teams[team_id]
            team.current_slot = 1
            team.questions_in_slot = 0
            for player in team.players.values():
                player.is_complete = False
            player_id = designated.get(team_id)
            if player_id not in team.players:
                player_id = self.first_slot_player(team)
            if player_id is None:
                for player in team.players.values():
                    player.is_active = False
            else:
                self.activate(match, team, player_id)

    # ------------------------------------------------------------------
    # Slot progression
    # ------------------------------------------------------------------

    def change_slot(
        self,
        match: MatchState,
        team: TeamState,
        current_slot: int,
        active_player_id: str | None,
        question: Question | None = None,
    ) -> None:
        team.current_slot = current_slot
        team.questions_in_slot = 0
        for player in team.players.values():
            player.is_complete = False
        if not self.activate(match, team, active_player_id):
            for player in team.players.values():
                player.is_active = False
            return
        if question is not None:
            team.players[active_player_id].current_question = question

    def set_question(
        self,
        match: MatchState,
        team: TeamState,
        player_id: str,
        question: Question,
        slot_number: int | None = None,
    ) -> bool:
        if not self.activate(match, team, player_id):
            return False
        player = team.players[player_id]
        player.is_complete = False
        player.current_question = question
        if slot_number is not None:
            team.current_slot = slot_number
        return True

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def apply_answer(self, team: TeamState, player: PlayerState, data: dict) -> None:
        """Fold one answer_result into team and player state."""
        correct = data["isCorrect"]
        if "newTeamScore" in data:
            team.score = data["newTeamScore"]
        if "newPlayerScore" in data:
            player.score = data["newPlayerScore"]

        if "newStreak" in data:
            player.streak = data["newStreak"]
        elif not correct:
            player.streak = 0
        team.current_streak = player.streak
        player.max_streak = max(player.max_streak, player.streak)

        player.total += 1
        if correct:
            player.correct += 1
        if "answerTimeMs" in data:
            player.total_answer_time_ms += data["answerTimeMs"]

        if "questionsInSlot" in data:
            team.questions_in_slot = data["questionsInSlot"]
        else:
            team.questions_in_slot = min(team.questions_in_slot + 1, self.relay.questions_per_slot)
        if team.questions_in_slot >= self.relay.questions_per_slot:
            self.complete(player)

    def apply_timeout(self, team: TeamState, player: PlayerState, data: dict) -> None:
        """Fold a question_timeout for the local player."""
        if "questionsInSlot" in data:
            team.questions_in_slot = data["questionsInSlot"]
        if "newPlayerScore" in data:
            player.score = data["newPlayerScore"]
        if "newTeamScore" in data:
            team.score = data["newTeamScore"]
        player.total += 1
        player.streak = 0
        team.current_streak = 0
        if team.questions_in_slot >= self.relay.questions_per_slot:
            self.complete(player)

    @staticmethod
    def complete(player: PlayerState) -> None:
        player.is_active = False
        player.current_question = None
        player.is_complete = True
