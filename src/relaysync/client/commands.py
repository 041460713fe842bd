"""CommandEmitter: outbound player intents.

Each command checks its local preconditions against the engine's current
state, ledger and quit-vote coordinator before anything is sent. A
blocked command returns False and sends nothing. Abilities are marked as
used optimistically as soon as the request goes out.
"""

from __future__ import annotations

import logging

from relaysync.engine.ledger import MATCH_SCOPE, AbilityKind, Source, half_scope
from relaysync.engine.sync import MatchSyncEngine, Transport
from relaysync.state.models import Phase

logger = logging.getLogger(__name__)

_DECISIONS = ("normal", "solo")
_VOTES = ("yes", "no")


class CommandEmitter:
    def __init__(self, engine: MatchSyncEngine, transport: Transport | None = None) -> None:
        self._engine = engine
        self._transport = transport or engine.transport
        if self._transport is None:
            raise ValueError("CommandEmitter needs a transport")

    @property
    def match_id(self) -> str:
        return self._engine.match_id

    @property
    def user_id(self) -> str | None:
        return self._engine.user_id

    def _send(self, event: str, payload: dict) -> bool:
        if not self._engine.client.connected:
            logger.warning("Not connected, dropping %s", event)
            return False
        self._transport.emit(event, payload)
        return True

    def _blocked(self, command: str, reason: str) -> bool:
        logger.info("%s blocked: %s", command, reason)
        return False

    # ------------------------------------------------------------------
    # Match membership
    # ------------------------------------------------------------------

    def join_match(self) -> bool:
        return self._send("join_team_match", self._engine.join_payload())

    def leave_match(self) -> bool:
        """Tell the server we are leaving and drop the stored result."""
        sent = False
        if self._engine.client.connected:
            sent = self._send("leave_match", {"matchId": self.match_id})
        self._engine.leave()
        return sent

    # ------------------------------------------------------------------
    # Answering
    # ------------------------------------------------------------------

    def _is_my_turn(self) -> bool:
        match = self._engine.match
        if match is None or match.phase != Phase.ACTIVE:
            return False
        found = match.find_player(self.user_id)
        return found is not None and found[1].is_active and found[0].team_id == match.is_my_team

    def submit_answer(self, answer: str) -> bool:
        answer = (answer or "").strip()
        if not answer:
            return self._blocked("submit_answer", "empty answer")
        if not self._is_my_turn():
            return self._blocked("submit_answer", "not this player's turn")
        return self._send("submit_answer", {
            "matchId": self.match_id,
            "userId": self.user_id,
            "answer": answer,
        })

    def send_typing(self, current_input: str) -> bool:
        if current_input and not current_input.isdigit():
            return self._blocked("typing_update", "input must be digits only")
        if not self._is_my_turn():
            return self._blocked("typing_update", "not this player's turn")
        return self._send("typing_update", {
            "matchId": self.match_id,
            "userId": self.user_id,
            "currentInput": current_input,
        })

    # ------------------------------------------------------------------
    # Strategy
    # ------------------------------------------------------------------

    def _is_leader(self) -> bool:
        match = self._engine.match
        return match is not None and self.user_id is not None and match.my_team.leader_id == self.user_id

    def update_slot_assignment(self, player_id: str, new_slot: str) -> bool:
        match = self._engine.match
        if match is None:
            return self._blocked("update_slot_assignment", "no match state")
        if match.phase not in (Phase.STRATEGY, Phase.HALFTIME):
            return self._blocked("update_slot_assignment", f"not allowed during {match.phase.value}")
        if not self._is_leader():
            return self._blocked("update_slot_assignment", "not the team leader")
        if player_id not in match.my_team.players:
            return self._blocked("update_slot_assignment", f"{player_id} is not on this team")
        if self._engine.relay.slot_for_operation(new_slot) is None:
            return self._blocked("update_slot_assignment", f"unknown slot {new_slot!r}")
        return self._send("update_slot_assignment", {
            "matchId": self.match_id,
            "userId": self.user_id,
            "playerId": player_id,
            "newSlot": new_slot.lower(),
        })

    def confirm_slots(self) -> bool:
        match = self._engine.match
        if match is None or match.phase != Phase.STRATEGY:
            return self._blocked("confirm_slots", "not in strategy phase")
        if not self._is_leader():
            return self._blocked("confirm_slots", "not the team leader")
        return self._send("confirm_slots", {"matchId": self.match_id, "userId": self.user_id})

    # ------------------------------------------------------------------
    # Abilities
    # ------------------------------------------------------------------

    def anchor_callin(self, target_round: int, target_slot: str) -> bool:
        """Request a double call-in; ``target_slot`` is an operation name."""
        match = self._engine.match
        if match is None:
            return self._blocked("anchor_callin", "no match state")
        ledger = self._engine.ledger
        if ledger.used_double_callin(match.half):
            return self._blocked("anchor_callin", f"already used in half {match.half}")
        slot_number = self._engine.relay.slot_for_operation(target_slot)
        if slot_number is None:
            return self._blocked("anchor_callin", f"unknown slot {target_slot!r}")
        sent = self._send("anchor_callin", {
            "matchId": self.match_id,
            "userId": self.user_id,
            "targetRound": target_round,
            "targetSlot": slot_number,
            "half": match.half,
        })
        if sent:
            ledger.record(AbilityKind.DOUBLE_CALLIN, half_scope(match.half), Source.LOCAL)
        return sent

    def anchor_solo(self) -> bool:
        ledger = self._engine.ledger
        if ledger.used_anchor_solo:
            return self._blocked("anchor_solo", "already used this match")
        sent = self._send("anchor_solo", {"matchId": self.match_id})
        if sent:
            ledger.record(AbilityKind.ANCHOR_SOLO, MATCH_SCOPE, Source.LOCAL)
        return sent

    def anchor_solo_decision(self, decision: str) -> bool:
        if decision not in _DECISIONS:
            return self._blocked("anchor_solo_decision", f"unknown decision {decision!r}")
        if self._engine.client.solo_decision is None:
            return self._blocked("anchor_solo_decision", "no decision in progress")
        if not self._is_leader():
            return self._blocked("anchor_solo_decision", "not the team leader")
        return self._send("anchor_solo_decision", {
            "matchId": self.match_id,
            "userId": self.user_id,
            "decision": decision,
        })

    def igl_timeout(self) -> bool:
        ledger = self._engine.ledger
        if not ledger.can_call_timeout():
            return self._blocked("igl_timeout", "no timeouts remaining")
        if not self._is_leader():
            return self._blocked("igl_timeout", "not the team leader")
        sent = self._send("igl_timeout", {"matchId": self.match_id, "userId": self.user_id})
        if sent:
            ledger.record(AbilityKind.TIMEOUT, MATCH_SCOPE, Source.LOCAL)
        return sent

    # ------------------------------------------------------------------
    # Quit vote
    # ------------------------------------------------------------------

    def initiate_quit_vote(self) -> bool:
        if not self._engine.quit_vote.can_initiate(self._engine.match, self._engine.client):
            return self._blocked("initiate_quit_vote", "only the team leader may start a vote")
        return self._send("initiate_quit_vote", {"matchId": self.match_id})

    def cast_quit_vote(self, vote: str) -> bool:
        if vote not in _VOTES:
            return self._blocked("cast_quit_vote", f"unknown vote {vote!r}")
        coordinator = self._engine.quit_vote
        if not coordinator.can_vote(self._engine.client):
            return self._blocked("cast_quit_vote", "no open vote or already voted")
        sent = self._send("cast_quit_vote", {"matchId": self.match_id, "vote": vote})
        if sent:
            coordinator.mark_voted()
        return sent
