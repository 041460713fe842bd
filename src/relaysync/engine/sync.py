"""MatchSyncEngine: folds server events into one consistent match view.

One engine per mounted match. The transport adapter feeds every delivered
message into ``dispatch()``; the engine decodes it, routes it to exactly
one ``_on_<event>`` handler, and each handler commits at most one store
transition. Phase changes go through the phase machine, ability usage
through the ledger, and the terminal state is persisted as soon as the
match reaches post_match.

Usage:
    engine = MatchSyncEngine("match-1", config, transport=socket_adapter)
    engine.mount()                      # restore a finished match, if any
    engine.dispatch("connect", {})
    engine.dispatch("match_state", payload)
"""

from __future__ import annotations

import dataclasses
import logging
import math
import threading
import time
from typing import Callable, Protocol

from relaysync.config import EngineConfig
from relaysync.core.incidents import IncidentKind, IncidentLog
from relaysync.core.journal import EventJournal
from relaysync.core.snapshot_store import SnapshotStore
from relaysync.core.timers import TickLoop, TimerKind, TimerRegistry
from relaysync.engine.dispatcher import EventDispatcher
from relaysync.engine.ledger import MATCH_SCOPE, AbilityKind, AbilityLedger, Source, half_scope
from relaysync.engine.phases import IDLE_PHASES, PhaseMachine, Verdict, apply_entry_effects
from relaysync.engine.quit_vote import QuitVoteCoordinator
from relaysync.engine.recovery import RecoveryManager, build_store
from relaysync.engine.relay import RelayConfig, RelayTracker
from relaysync.state.models import (
    DoubleAnchorIndicator,
    HandoffState,
    MatchOutcome,
    MatchState,
    Phase,
    PointsFeedEntry,
    Question,
    RoundSummary,
    SlotAssignment,
    SoloDecisionState,
    StrategyState,
    TeamState,
)
from relaysync.state.store import MatchStore

logger = logging.getLogger(__name__)

INBOUND_EVENTS = (
    "match_state",
    "pre_match_countdown_start", "pre_match_countdown_tick",
    "strategy_phase_start", "strategy_time_update",
    "slot_assignments_updated", "opponent_slots_updated", "team_ready",
    "match_start", "question_update", "typing_update", "answer_result", "teammate_answer",
    "timeout_warning", "question_timeout", "teammate_timeout",
    "first_to_finish_bonus", "new_question",
    "solo_decision_phase", "solo_decision_made", "solo_decisions_revealed",
    "slot_change", "opponent_slot_change", "handoff_countdown",
    "round_complete", "round_break", "break_time_update", "timeout_called",
    "halftime", "halftime_time_update", "team_ready_for_next",
    "double_callin_activated", "double_callin_success",
    "round_countdown", "round_countdown_tick", "round_start", "clock_update",
    "match_end",
    "quit_vote_started", "quit_vote_update", "quit_vote_result", "team_forfeit",
    "connect", "disconnect", "error",
)

# Commits that never need the terminal snapshot rewritten
_NO_PERSIST = frozenset({"restore", "reset", "tick", "connect", "disconnect", "error"})


class Transport(Protocol):
    def emit(self, event: str, payload: dict) -> None: ...


class MatchSyncEngine:
    def __init__(
        self,
        match_id: str,
        config: EngineConfig | None = None,
        *,
        transport: Transport | None = None,
        snapshot_store: SnapshotStore | None = None,
        journal: EventJournal | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.match_id = match_id
        self.config = config or EngineConfig()
        self.user_id = self.config.client.user_id
        self.transport = transport

        self.incidents = IncidentLog()
        self.store = MatchStore(points_feed_size=self.config.abilities.points_feed_size)
        self.phases = PhaseMachine(self.incidents)
        self.ledger = AbilityLedger(timeout_credits=self.config.abilities.timeout_credits)
        self.quit_vote = QuitVoteCoordinator(
            self.user_id,
            display_ms=self.config.timers.quit_vote_display_ms,
            clock=clock,
        )
        self.timers = TimerRegistry(clock=clock)
        store_backend = snapshot_store if snapshot_store is not None else build_store(self.config.storage)
        self.recovery = RecoveryManager(store_backend, self.incidents, user_id=self.user_id)
        if journal is None and self.config.journal.enabled:
            journal = EventJournal(self.config.journal.output_dir, match_id)
        self.journal = journal

        self.dispatcher = EventDispatcher(self.incidents, on_gap=self._on_sequence_gap)
        for name in INBOUND_EVENTS:
            self.dispatcher.register(name, getattr(self, f"_on_{name}"))

        # Users whose last answer_result carried no timing; teammate_answer fills it in
        self._untimed_answers: set[str] = set()
        self._lock = threading.RLock()
        self._tick_loop: TickLoop | None = None
        self.store.subscribe(self._on_commit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mount(self) -> bool:
        """Restore a finished match from the snapshot store, if one exists."""
        with self._lock:
            restored = self.recovery.restore(self.match_id)
            if restored is None:
                return False
            logger.info("Restored finished match %s from snapshot", self.match_id)
            self.store.replace(restored, "restore")
            return True

    def start_ticking(self) -> TickLoop:
        if self._tick_loop is None:
            self._tick_loop = TickLoop(self.tick, interval_s=self.config.timers.tick_interval_s)
        self._tick_loop.start()
        return self._tick_loop

    def teardown(self) -> None:
        """Stop local countdowns and the tick thread. State is kept.

        Must not be called while holding the engine lock: the tick thread
        may be waiting on it.
        """
        if self._tick_loop is not None:
            self._tick_loop.stop()
            self._tick_loop = None
        with self._lock:
            self.timers.cancel_all()

    def leave(self) -> None:
        """Explicit exit: forget the stored result and all local state."""
        self.teardown()
        with self._lock:
            self.recovery.clear(self.match_id)
            self.ledger.reset()
            self.store.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def match(self) -> MatchState | None:
        return self.store.match

    @property
    def client(self):
        return self.store.client

    @property
    def relay(self) -> RelayConfig:
        return RelayConfig.for_match(self.store.match, self.config)

    @property
    def is_terminal(self) -> bool:
        match = self.store.match
        return match is not None and match.phase == Phase.POST_MATCH

    def dispatch(self, name: str, payload: dict | None = None) -> bool:
        """Handle one inbound event. Returns True if a handler ran."""
        with self._lock:
            if self.journal is not None:
                self.journal.log_event(name, payload or {})
            self._expire_quit_vote()
            return self.dispatcher.dispatch(name, payload)

    def tick(self) -> None:
        """Push interpolated countdown values into client state."""
        with self._lock:
            self._expire_quit_vote()
            remaining = self.timers.active()
            if not remaining:
                return
            with self.store.mutate("tick") as tx:
                client = tx.client
                if TimerKind.PRE_MATCH in remaining:
                    client.pre_match_countdown_ms = remaining[TimerKind.PRE_MATCH]
                if TimerKind.STRATEGY in remaining and client.strategy is not None:
                    client.strategy.remaining_ms = remaining[TimerKind.STRATEGY]
                if TimerKind.BREAK in remaining:
                    client.break_countdown_ms = remaining[TimerKind.BREAK]
                if TimerKind.ROUND_COUNTDOWN in remaining:
                    client.round_countdown_ms = remaining[TimerKind.ROUND_COUNTDOWN]
                if TimerKind.QUESTION_WARNING in remaining:
                    client.timeout_warning_seconds = math.ceil(remaining[TimerKind.QUESTION_WARNING] / 1000)
                if TimerKind.SOLO_DECISION in remaining and client.solo_decision is not None:
                    client.solo_decision.remaining_ms = remaining[TimerKind.SOLO_DECISION]
                if TimerKind.QUIT_VOTE in remaining and client.quit_vote is not None and client.quit_vote.active:
                    client.quit_vote.remaining_ms = remaining[TimerKind.QUIT_VOTE]

    def join_payload(self) -> dict:
        payload = {"matchId": self.match_id, "userId": self.user_id}
        if self.config.client.party_id:
            payload["partyId"] = self.config.client.party_id
        return payload

    def request_resync(self) -> None:
        """Ask the server for a fresh snapshot by re-joining the match."""
        if self.transport is None:
            logger.warning("No transport attached, cannot resync %s", self.match_id)
            return
        self.transport.emit("join_team_match", self.join_payload())

    # ------------------------------------------------------------------
    # Internal: helpers
    # ------------------------------------------------------------------

    def _tracker(self) -> RelayTracker:
        return RelayTracker(self.relay)

    def _require_match(self, event: str) -> MatchState | None:
        match = self.store.match
        if match is None:
            self.incidents.record(IncidentKind.NO_STATE, event, "no match snapshot received yet")
        return match

    def _team(self, match: MatchState, team_id: str | None, event: str) -> TeamState | None:
        team = match.team(team_id)
        if team is None:
            self.incidents.record(IncidentKind.UNKNOWN_ENTITY, event, f"unknown team {team_id!r}")
        return team

    def _player(self, match: MatchState, player_id: str | None, event: str):
        found = match.find_player(player_id)
        if found is None:
            self.incidents.record(IncidentKind.UNKNOWN_ENTITY, event, f"unknown player {player_id!r}")
        return found

    def _check_phase(self, match: MatchState, target: Phase, event: str) -> Verdict:
        return self.phases.check(match, target, event)

    def _apply_phase(self, match: MatchState, target: Phase, verdict: Verdict) -> None:
        previous = match.phase
        if self.phases.apply(match, target, verdict) and previous != target:
            self.timers.cancel_phase(previous.value)

    def _set_break_duration(self, client, match: MatchState | None, duration_ms: float) -> None:
        client.break_countdown_ms = duration_ms
        client.phase_initial_duration_ms = duration_ms
        if match is not None:
            match.relay_clock_ms = duration_ms
        self.timers.overwrite(TimerKind.BREAK, duration_ms)

    def _expire_quit_vote(self) -> None:
        if self.quit_vote.is_expired():
            with self.store.mutate("quit_vote_cleared") as tx:
                self.quit_vote.expire(tx.client)

    def _on_sequence_gap(self, expected: int, received: int) -> None:
        logger.warning("Sequence gap on %s (expected %d, got %d), resyncing", self.match_id, expected, received)
        self.request_resync()

    def _on_commit(self, store: MatchStore, label: str) -> None:
        match = store.match
        if match is None or match.phase != Phase.POST_MATCH or label in _NO_PERSIST:
            return
        self.recovery.persist(match)
        if self.journal is not None:
            self.journal.finalize_match(match.to_dict(), self.incidents.get_report())

    @staticmethod
    def _parse_slots(raw: dict | None) -> dict[str, SlotAssignment]:
        slots = {}
        for player_id, s in (raw or {}).items():
            s = s or {}
            slots[player_id] = SlotAssignment(
                player_id=player_id,
                operation=s.get("slot") or "",
                name=s.get("name") or "Unknown",
                level=s.get("level") or 1,
                is_igl=bool(s.get("isIgl", False)),
                is_anchor=bool(s.get("isAnchor", False)),
                equipped_banner=s.get("banner") or "default",
                equipped_frame=s.get("frame") or "default",
                equipped_title=s.get("title") or "Player",
            )
        return slots

    @staticmethod
    def _reassign(existing: dict[str, SlotAssignment], slots: dict[str, str]) -> dict[str, SlotAssignment]:
        """Rebuild a strategy roster from an operation -> player mapping."""
        rebuilt = {}
        for operation, player_id in slots.items():
            previous = existing.get(player_id)
            if previous is not None:
                rebuilt[player_id] = dataclasses.replace(previous, operation=operation)
            else:
                rebuilt[player_id] = SlotAssignment(player_id=player_id, operation=operation)
        return rebuilt

    @staticmethod
    def _apply_slot_map(team: TeamState, slots: dict[str, str]) -> None:
        team.slot_assignments = dict(slots)
        for operation, player_id in slots.items():
            if player_id in team.players:
                team.players[player_id].slot = operation

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def _on_connect(self, data: dict) -> None:
        with self.store.mutate("connect") as tx:
            tx.client.connected = True
            tx.client.last_error = None
        self.timers.resume_all()
        self.request_resync()

    def _on_disconnect(self, data: dict) -> None:
        self.incidents.record(IncidentKind.TRANSPORT_DISCONNECTED, "disconnect", "transport lost, state kept")
        self.timers.freeze_all()
        with self.store.mutate("disconnect") as tx:
            tx.client.connected = False

    def _on_error(self, data: dict) -> None:
        message = data.get("message") or "transport error"
        self.incidents.record(IncidentKind.TRANSPORT_ERROR, "error", message)
        with self.store.mutate("error") as tx:
            tx.client.last_error = message

    # ------------------------------------------------------------------
    # Snapshot & pre-match
    # ------------------------------------------------------------------

    def _on_match_state(self, data: dict) -> None:
        current = self.store.match
        if current is not None and current.phase == Phase.POST_MATCH:
            if data["phase"] != Phase.POST_MATCH.value:
                self.incidents.record(
                    IncidentKind.STALE_TERMINAL_UPDATE, "match_state",
                    f"match already finished, ignoring snapshot in {data['phase']}",
                )
            else:
                logger.debug("Ignoring match_state for finished match %s", self.match_id)
            return
        if data["matchId"] != self.match_id:
            self.incidents.record(
                IncidentKind.UNKNOWN_ENTITY, "match_state", f"snapshot for other match {data['matchId']!r}",
            )
            return

        try:
            match = MatchState.from_dict(data, user_id=self.user_id)
        except ValueError as exc:
            self.incidents.record(IncidentKind.MALFORMED_EVENT, "match_state", str(exc))
            return
        if match.phase in IDLE_PHASES:
            apply_entry_effects(match, match.phase)
        if current is not None and current.phase != match.phase:
            self.timers.cancel_phase(current.phase.value)
        self.store.replace(match, "match_state")

    def _on_pre_match_countdown_start(self, data: dict) -> None:
        self.timers.start(TimerKind.PRE_MATCH, data["durationMs"])
        with self.store.mutate("pre_match_countdown_start") as tx:
            tx.client.pre_match_countdown_ms = data["durationMs"]
            tx.client.phase_initial_duration_ms = data["durationMs"]

    def _on_pre_match_countdown_tick(self, data: dict) -> None:
        self.timers.overwrite(TimerKind.PRE_MATCH, data["remainingMs"])
        with self.store.mutate("pre_match_countdown_tick") as tx:
            tx.client.pre_match_countdown_ms = data["remainingMs"]

    # ------------------------------------------------------------------
    # Strategy
    # ------------------------------------------------------------------

    def _on_strategy_phase_start(self, data: dict) -> None:
        match = self._require_match("strategy_phase_start")
        if match is None:
            return
        verdict = self._check_phase(match, Phase.STRATEGY, "strategy_phase_start")
        if verdict == Verdict.STALE:
            return

        team1_slots, team2_slots = data["team1Slots"], data["team2Slots"]
        if self.user_id in team1_slots:
            mine_is_team1 = True
        elif self.user_id in team2_slots:
            mine_is_team1 = False
        else:
            mine_is_team1 = match.is_my_team == match.team_order[0]
        my_raw, their_raw = (team1_slots, team2_slots) if mine_is_team1 else (team2_slots, team1_slots)

        my_slots = self._parse_slots(my_raw)
        opponent_slots = self._parse_slots(their_raw)

        self.timers.start(TimerKind.STRATEGY, data["durationMs"])
        with self.store.mutate("strategy_phase_start") as tx:
            self._apply_phase(match, Phase.STRATEGY, verdict)
            if data.get("mode"):
                match.mode = data["mode"]
            if data.get("slotOperations"):
                match.slot_operations = list(data["slotOperations"])
            tx.client.strategy = StrategyState(
                duration_ms=data["durationMs"],
                remaining_ms=data["durationMs"],
                my_slots=my_slots,
                opponent_slots=opponent_slots,
            )
            tx.client.phase_initial_duration_ms = data["durationMs"]

    def _on_strategy_time_update(self, data: dict) -> None:
        if self.store.client.strategy is None:
            logger.debug("strategy_time_update outside strategy phase")
            return
        self.timers.overwrite(TimerKind.STRATEGY, data["remainingMs"])
        with self.store.mutate("strategy_time_update") as tx:
            tx.client.strategy.remaining_ms = data["remainingMs"]

    def _on_slot_assignments_updated(self, data: dict) -> None:
        match = self._require_match("slot_assignments_updated")
        if match is None:
            return
        slots = data["slots"]
        if "teamId" in data:
            team = self._team(match, data["teamId"], "slot_assignments_updated")
            if team is None:
                return
        elif any(pid in match.team1.players for pid in slots.values()):
            team = match.team1
        else:
            team = match.team2

        with self.store.mutate("slot_assignments_updated") as tx:
            self._apply_slot_map(team, slots)
            strategy = tx.client.strategy
            if strategy is not None:
                if team.team_id == match.is_my_team:
                    strategy.my_slots = self._reassign(strategy.my_slots, slots)
                else:
                    strategy.opponent_slots = self._reassign(strategy.opponent_slots, slots)

    def _on_opponent_slots_updated(self, data: dict) -> None:
        match = self._require_match("opponent_slots_updated")
        if match is None:
            return
        team = self._team(match, data["teamId"], "opponent_slots_updated")
        if team is None:
            return
        with self.store.mutate("opponent_slots_updated") as tx:
            self._apply_slot_map(team, data["slots"])
            strategy = tx.client.strategy
            if strategy is not None and team.team_id != match.is_my_team:
                strategy.opponent_slots = self._reassign(strategy.opponent_slots, data["slots"])

    def _on_team_ready(self, data: dict) -> None:
        if self.store.client.strategy is None:
            logger.debug("team_ready outside strategy phase")
            return
        match = self.store.match
        is_mine = match is not None and data["teamId"] == match.is_my_team
        with self.store.mutate("team_ready") as tx:
            if is_mine:
                tx.client.strategy.my_team_ready = True
            else:
                tx.client.strategy.opponent_team_ready = True

    # ------------------------------------------------------------------
    # Active play
    # ------------------------------------------------------------------

    def _start_round(self, event: str, data: dict) -> None:
        match = self._require_match(event)
        if match is None:
            return
        verdict = self._check_phase(match, Phase.ACTIVE, event)
        if verdict == Verdict.STALE:
            return
        designated = {
            match.team_order[0]: data.get("team1ActivePlayerId"),
            match.team_order[1]: data.get("team2ActivePlayerId"),
        }
        with self.store.mutate(event) as tx:
            self._apply_phase(match, Phase.ACTIVE, verdict)
            if data.get("round"):
                match.round = data["round"]
            if data.get("half"):
                match.half = data["half"]
            self._tracker().start_round(match, designated)
            tx.client.strategy = None
            tx.client.pre_match_countdown_ms = None
            tx.client.round_countdown_ms = None
            tx.client.ready_for_next.clear()
        self.timers.cancel(TimerKind.ROUND_COUNTDOWN)

    def _on_match_start(self, data: dict) -> None:
        self._start_round("match_start", data)

    def _on_round_start(self, data: dict) -> None:
        self._start_round("round_start", data)

    def _on_question_update(self, data: dict) -> None:
        match = self._require_match("question_update")
        if match is None:
            return
        team = match.my_team
        player_id = data["activePlayerId"]
        if player_id not in team.players:
            self.incidents.record(IncidentKind.UNKNOWN_ENTITY, "question_update", f"unknown player {player_id!r}")
            return
        question = Question(question=data["questionText"], operation=data["operation"])
        with self.store.mutate("question_update") as tx:
            if not self._tracker().set_question(match, team, player_id, question, data.get("slotNumber")):
                logger.debug("question_update for %s outside active play", player_id)
            tx.client.teammate_typing.pop(player_id, None)
            if player_id == self.user_id:
                tx.client.timeout_warning_seconds = None

    def _on_typing_update(self, data: dict) -> None:
        if data["userId"] == self.user_id:
            return
        with self.store.mutate("typing_update") as tx:
            tx.client.teammate_typing[data["userId"]] = data["currentInput"]

    def _on_answer_result(self, data: dict) -> None:
        match = self._require_match("answer_result")
        if match is None:
            return
        team = self._team(match, data["teamId"], "answer_result")
        if team is None:
            return
        player = team.players.get(data["userId"])
        if player is None:
            self.incidents.record(
                IncidentKind.UNKNOWN_ENTITY, "answer_result",
                f"unknown player {data['userId']!r} on team {team.team_id!r}",
            )
            return

        with self.store.mutate("answer_result") as tx:
            self._tracker().apply_answer(team, player, data)
            if "answerTimeMs" in data:
                self._untimed_answers.discard(player.user_id)
            else:
                self._untimed_answers.add(player.user_id)
            tx.client.teammate_typing.pop(player.user_id, None)
            if player.user_id == self.user_id:
                tx.client.timeout_warning_seconds = None
            tx.client.push_points(PointsFeedEntry(
                team_id=team.team_id,
                player_id=player.user_id,
                points=data["pointsEarned"],
                kind="answer",
                detail={
                    "isCorrect": data["isCorrect"],
                    "speedBonus": data["speedBonus"],
                    "streakMilestoneBonus": data["streakMilestoneBonus"],
                    "streak": player.streak,
                },
            ))
        if player.user_id == self.user_id:
            self.timers.cancel(TimerKind.QUESTION_WARNING)

    def _on_teammate_answer(self, data: dict) -> None:
        match = self._require_match("teammate_answer")
        if match is None:
            return
        found = self._player(match, data["userId"], "teammate_answer")
        if found is None:
            return
        _, player = found
        with self.store.mutate("teammate_answer") as tx:
            tx.client.teammate_typing.pop(player.user_id, None)
            if "answerTimeMs" in data and player.user_id in self._untimed_answers:
                player.total_answer_time_ms += data["answerTimeMs"]
                self._untimed_answers.discard(player.user_id)

    def _on_timeout_warning(self, data: dict) -> None:
        if data["playerId"] != self.user_id:
            return
        seconds = data["countdownSeconds"]
        self.timers.start(TimerKind.QUESTION_WARNING, data.get("remainingMs", seconds * 1000))
        with self.store.mutate("timeout_warning") as tx:
            tx.client.timeout_warning_seconds = seconds

    def _on_question_timeout(self, data: dict) -> None:
        if data["playerId"] != self.user_id:
            logger.debug("question_timeout for another player %s, ignoring", data["playerId"])
            return
        match = self._require_match("question_timeout")
        if match is None:
            return
        found = self._player(match, data["playerId"], "question_timeout")
        if found is None:
            return
        team, player = found
        self.timers.cancel(TimerKind.QUESTION_WARNING)
        with self.store.mutate("question_timeout") as tx:
            self._tracker().apply_timeout(team, player, data)
            tx.client.timeout_warning_seconds = None
            tx.client.push_points(PointsFeedEntry(
                team_id=team.team_id,
                player_id=player.user_id,
                points=-data["pointsLost"],
                kind="timeout",
            ))

    def _on_teammate_timeout(self, data: dict) -> None:
        match = self._require_match("teammate_timeout")
        if match is None:
            return
        found = self._player(match, data["playerId"], "teammate_timeout")
        team = found[0] if found else match.my_team
        with self.store.mutate("teammate_timeout") as tx:
            if "newTeamScore" in data:
                team.score = data["newTeamScore"]
            team.current_streak = 0
            if found is not None:
                found[1].streak = 0
            tx.client.teammate_typing.pop(data["playerId"], None)
            tx.client.push_points(PointsFeedEntry(
                team_id=team.team_id,
                player_id=data["playerId"],
                points=-data["pointsLost"],
                kind="timeout",
            ))

    def _on_first_to_finish_bonus(self, data: dict) -> None:
        match = self._require_match("first_to_finish_bonus")
        if match is None:
            return
        team = self._team(match, data["teamId"], "first_to_finish_bonus")
        if team is None:
            return
        with self.store.mutate("first_to_finish_bonus") as tx:
            team.score = data["newTeamScore"]
            tx.client.push_points(PointsFeedEntry(
                team_id=team.team_id,
                player_id="",
                points=data["bonus"],
                kind="bonus",
                detail={"round": data.get("round")},
            ))

    def _on_new_question(self, data: dict) -> None:
        match = self._require_match("new_question")
        if match is None:
            return
        found = self._player(match, self.user_id, "new_question")
        if found is None:
            return
        team, _ = found
        question = Question(question=data["question"]["question"], operation=data["operation"])
        with self.store.mutate("new_question"):
            if not self._tracker().set_question(match, team, self.user_id, question):
                logger.debug("new_question outside active play")

    # ------------------------------------------------------------------
    # Final-round decision
    # ------------------------------------------------------------------

    def _on_solo_decision_phase(self, data: dict) -> None:
        match = self._require_match("solo_decision_phase")
        if match is None:
            return
        verdict = self._check_phase(match, Phase.ANCHOR_DECISION, "solo_decision_phase")
        if verdict == Verdict.STALE:
            return
        mine_is_team1 = match.is_my_team == match.team_order[0]
        mine, theirs = (data["team1"], data["team2"]) if mine_is_team1 else (data["team2"], data["team1"])
        self.timers.start(TimerKind.SOLO_DECISION, data["durationMs"])
        with self.store.mutate("solo_decision_phase") as tx:
            self._apply_phase(match, Phase.ANCHOR_DECISION, verdict)
            tx.client.solo_decision = SoloDecisionState(
                duration_ms=data["durationMs"],
                remaining_ms=data["durationMs"],
                my_anchor_name=mine.get("anchorName") or "",
                opponent_anchor_name=theirs.get("anchorName") or "",
            )
            tx.client.phase_initial_duration_ms = data["durationMs"]

    def _on_solo_decision_made(self, data: dict) -> None:
        if self.store.client.solo_decision is None:
            logger.debug("solo_decision_made with no decision in progress")
            return
        match = self.store.match
        is_mine = match is not None and data["teamId"] == match.is_my_team
        with self.store.mutate("solo_decision_made") as tx:
            decision = tx.client.solo_decision
            if is_mine:
                decision.my_decision = data["decision"]
                decision.auto_selected = data["autoSelected"]
            else:
                decision.opponent_decision = data["decision"]

    def _on_solo_decisions_revealed(self, data: dict) -> None:
        match = self._require_match("solo_decisions_revealed")
        if match is None:
            return
        self.timers.cancel(TimerKind.SOLO_DECISION)
        with self.store.mutate("solo_decisions_revealed") as tx:
            for index, side in enumerate(("team1", "team2")):
                team_id = data[side].get("teamId") or match.team_order[index]
                solo = bool(data[side].get("anchorSoloActive", False))
                tx.client.anchor_solo_active[team_id] = solo
                if solo and team_id == match.is_my_team:
                    self.ledger.record(AbilityKind.ANCHOR_SOLO, MATCH_SCOPE, Source.SERVER)
            tx.client.solo_decision = None

    # ------------------------------------------------------------------
    # Relay hand-offs
    # ------------------------------------------------------------------

    def _on_slot_change(self, data: dict) -> None:
        match = self._require_match("slot_change")
        if match is None:
            return
        team = self._team(match, data["teamId"], "slot_change")
        if team is None:
            return
        tracker = self._tracker()
        question = None
        if data.get("questionText"):
            operation = data.get("slotOperation") or tracker.relay.operation_for_slot(data["currentSlot"]) or ""
            question = Question(question=data["questionText"], operation=operation)
        with self.store.mutate("slot_change") as tx:
            tracker.change_slot(match, team, data["currentSlot"], data.get("activePlayerId"), question)
            if team.team_id == match.is_my_team:
                tx.client.handoff = None

    def _on_opponent_slot_change(self, data: dict) -> None:
        match = self._require_match("opponent_slot_change")
        if match is None:
            return
        team = self._team(match, data["teamId"], "opponent_slot_change")
        if team is None:
            return
        with self.store.mutate("opponent_slot_change"):
            self._tracker().change_slot(match, team, data["currentSlot"], data.get("activePlayerId"))

    def _on_handoff_countdown(self, data: dict) -> None:
        with self.store.mutate("handoff_countdown") as tx:
            tx.client.handoff = HandoffState(
                next_player_id=data["nextPlayerId"],
                next_player_name=data["nextPlayerName"],
                slot_number=data.get("slotNumber"),
                operation=data["operation"],
                countdown_ms=data["countdownMs"],
                is_my_turn=data["nextPlayerId"] == self.user_id,
            )

    # ------------------------------------------------------------------
    # Breaks, halftime & abilities
    # ------------------------------------------------------------------

    def _on_round_complete(self, data: dict) -> None:
        with self.store.mutate("round_complete") as tx:
            tx.client.round_summaries.append(RoundSummary(
                round=data["round"],
                half=data.get("half"),
                team1_score=data.get("team1Score"),
                team2_score=data.get("team2Score"),
            ))

    def _enter_intermission(self, event: str, target: Phase, duration_ms: float) -> None:
        match = self._require_match(event)
        if match is None:
            return
        verdict = self._check_phase(match, target, event)
        if verdict == Verdict.STALE:
            return
        with self.store.mutate(event) as tx:
            self._apply_phase(match, target, verdict)
            self._set_break_duration(tx.client, match, duration_ms)
            tx.client.ready_for_next.clear()
            tx.client.handoff = None
            tx.client.timeout_warning_seconds = None
            if target == Phase.BREAK:
                tx.client.double_anchor = None

    def _on_round_break(self, data: dict) -> None:
        duration = data.get("breakDurationMs") or self.config.timers.break_ms
        self._enter_intermission("round_break", Phase.BREAK, duration)

    def _on_halftime(self, data: dict) -> None:
        duration = data.get("halftimeDurationMs") or self.config.timers.halftime_ms
        self._enter_intermission("halftime", Phase.HALFTIME, duration)

    def _on_break_time_update(self, data: dict) -> None:
        self.timers.overwrite(TimerKind.BREAK, data["remainingMs"])
        with self.store.mutate("break_time_update") as tx:
            tx.client.break_countdown_ms = data["remainingMs"]
            if tx.match is not None:
                tx.match.relay_clock_ms = data["remainingMs"]

    def _on_halftime_time_update(self, data: dict) -> None:
        self.timers.overwrite(TimerKind.BREAK, data["remainingMs"])
        with self.store.mutate("halftime_time_update") as tx:
            tx.client.break_countdown_ms = data["remainingMs"]
            if tx.match is not None:
                tx.match.relay_clock_ms = data["remainingMs"]

    def _on_timeout_called(self, data: dict) -> None:
        match = self.store.match
        team_id = data.get("teamId")
        is_mine = team_id is None or (match is not None and team_id == match.is_my_team)
        with self.store.mutate("timeout_called") as tx:
            client = tx.client
            if "newBreakDurationMs" in data:
                self._set_break_duration(client, match, data["newBreakDurationMs"])
            else:
                extension = data.get("extensionMs") or self.config.timers.timeout_extension_ms
                client.break_countdown_ms = (client.break_countdown_ms or 0) + extension
                client.phase_initial_duration_ms = (client.phase_initial_duration_ms or 0) + extension
                countdown = self.timers.get(TimerKind.BREAK)
                if countdown is not None:
                    countdown.extend(extension)
                else:
                    self.timers.start(TimerKind.BREAK, client.break_countdown_ms)
            if is_mine:
                self.ledger.record(
                    AbilityKind.TIMEOUT, MATCH_SCOPE, Source.SERVER,
                    remaining=data.get("timeoutsRemaining"),
                )
            team = match.team(team_id) if match is not None else None
            if team is not None:
                if "timeoutsRemaining" in data:
                    used = self.config.abilities.timeout_credits - data["timeoutsRemaining"]
                    team.timeouts_used = max(team.timeouts_used, used)
                else:
                    team.timeouts_used += 1

    def _on_team_ready_for_next(self, data: dict) -> None:
        with self.store.mutate("team_ready_for_next") as tx:
            tx.client.ready_for_next.add(data["teamId"])

    def _on_double_callin_activated(self, data: dict) -> None:
        match = self.store.match
        team_id = data.get("teamId")
        is_mine = team_id is None or (match is not None and team_id == match.is_my_team)
        target = data.get("targetSlot")
        if isinstance(target, int):
            target = self.relay.operation_for_slot(target)
        elif isinstance(target, str):
            target = target.lower()
        with self.store.mutate("double_callin_activated") as tx:
            if is_mine:
                self.ledger.record(AbilityKind.DOUBLE_CALLIN, half_scope(data["half"]), Source.SERVER)
                tx.client.double_anchor = DoubleAnchorIndicator(
                    half=data["half"],
                    target_slot=target,
                    for_round=data.get("forRound"),
                    benched_player_name=data.get("benchedPlayerName"),
                    anchor_name=data.get("anchorName"),
                )
            if "newBreakDurationMs" in data:
                self._set_break_duration(tx.client, match, data["newBreakDurationMs"])

    def _on_double_callin_success(self, data: dict) -> None:
        logger.info("Double call-in confirmed: %s", data["message"])

    def _on_round_countdown(self, data: dict) -> None:
        match = self._require_match("round_countdown")
        if match is None:
            return
        verdict = self._check_phase(match, Phase.ROUND_COUNTDOWN, "round_countdown")
        if verdict == Verdict.STALE:
            return
        self.timers.start(TimerKind.ROUND_COUNTDOWN, data["countdownMs"])
        with self.store.mutate("round_countdown") as tx:
            self._apply_phase(match, Phase.ROUND_COUNTDOWN, verdict)
            match.round = data["round"]
            match.half = data["half"]
            tx.client.round_countdown_ms = data["countdownMs"]
            tx.client.break_countdown_ms = None

    def _on_round_countdown_tick(self, data: dict) -> None:
        self.timers.overwrite(TimerKind.ROUND_COUNTDOWN, data["remainingMs"])
        with self.store.mutate("round_countdown_tick") as tx:
            tx.client.round_countdown_ms = data["remainingMs"]

    def _on_clock_update(self, data: dict) -> None:
        match = self._require_match("clock_update")
        if match is None:
            return
        with self.store.mutate("clock_update"):
            if "gameClockMs" in data:
                match.game_clock_ms = data["gameClockMs"]
            if "relayClockMs" in data:
                match.relay_clock_ms = data["relayClockMs"]
            if "round" in data:
                match.round = data["round"]

    # ------------------------------------------------------------------
    # Terminal
    # ------------------------------------------------------------------

    def _finish(self, event: str, apply: Callable[[MatchState], None]) -> None:
        match = self._require_match(event)
        if match is None:
            return
        verdict = self._check_phase(match, Phase.POST_MATCH, event)
        self.timers.cancel_all()
        with self.store.mutate(event) as tx:
            self._apply_phase(match, Phase.POST_MATCH, verdict)
            apply(match)
            tx.client.handoff = None
            tx.client.timeout_warning_seconds = None
            tx.client.solo_decision = None

    def _on_match_end(self, data: dict) -> None:
        def apply(match: MatchState) -> None:
            if "team1Score" in data:
                match.team1.score = data["team1Score"]
            if "team2Score" in data:
                match.team2.score = data["team2Score"]
            match.outcome = MatchOutcome(
                winner_id=data.get("winnerId"),
                is_draw=data["isDraw"],
                team1_score=data.get("team1Score", match.team1.score),
                team2_score=data.get("team2Score", match.team2.score),
                match_duration_ms=data.get("matchDurationMs"),
            )

        self._finish("match_end", apply)

    def _on_team_forfeit(self, data: dict) -> None:
        def apply(match: MatchState) -> None:
            match.forfeited_by = data["forfeitingTeamId"]

        self._finish("team_forfeit", apply)

    # ------------------------------------------------------------------
    # Quit vote
    # ------------------------------------------------------------------

    def _on_quit_vote_started(self, data: dict) -> None:
        duration_ms = self.config.timers.quit_vote_s * 1000
        self.timers.start(TimerKind.QUIT_VOTE, duration_ms)
        with self.store.mutate("quit_vote_started") as tx:
            self.quit_vote.start(tx.client, data)
            tx.client.quit_vote.remaining_ms = duration_ms

    def _on_quit_vote_update(self, data: dict) -> None:
        if self.store.client.quit_vote is None:
            logger.warning("quit_vote_update with no vote in progress")
            return
        with self.store.mutate("quit_vote_update") as tx:
            self.quit_vote.update(tx.client, data["votes"])

    def _on_quit_vote_result(self, data: dict) -> None:
        if self.store.client.quit_vote is None:
            logger.warning("quit_vote_result with no vote in progress")
            return
        self.timers.cancel(TimerKind.QUIT_VOTE)
        with self.store.mutate("quit_vote_result") as tx:
            self.quit_vote.resolve(tx.client, data["result"])
