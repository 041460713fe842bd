"""End-to-end tests for MatchSyncEngine: events in, match view out."""

import threading
import time

import pytest

from relaysync.config import ClientConfig, EngineConfig, JournalConfig
from relaysync.core.incidents import IncidentKind
from relaysync.core.snapshot_store import snapshot_key
from relaysync.core.timers import TickLoop
from relaysync.engine.phases import IDLE_PHASES
from relaysync.engine.sync import MatchSyncEngine
from relaysync.state.models import MatchState, Phase

from conftest import MATCH_ID, make_snapshot


def _active_ids(team):
    return [pid for pid, p in team.players.items() if p.is_active]


def _to_break(engine):
    engine.dispatch("round_complete", {"round": 1, "half": 1, "team1Score": 100, "team2Score": 90})
    engine.dispatch("round_break", {})


# ----------------------------------------------------------------------
# Core scenarios
# ----------------------------------------------------------------------


class TestCoreScenarios:
    def test_match_start_activates_designated_player(self, active_engine):
        match = active_engine.match
        assert match.phase == Phase.ACTIVE
        assert match.team1.players["p1"].is_active is True
        assert _active_ids(match.team1) == ["p1"]
        assert _active_ids(match.team2) == ["q1"]

    def test_answer_to_quota_completes_player(self, active_engine):
        active_engine.dispatch("answer_result", {
            "userId": "p1", "teamId": "A", "isCorrect": True,
            "newTeamScore": 120, "newStreak": 3, "newPlayerScore": 40, "questionsInSlot": 5,
        })
        team = active_engine.match.team1
        p1 = team.players["p1"]
        assert team.score == 120
        assert team.current_streak == 3
        assert team.questions_in_slot == 5
        assert p1.is_active is False
        assert p1.is_complete is True
        assert p1.current_question is None

    def test_late_snapshot_after_match_end_ignored(self, active_engine):
        active_engine.dispatch("match_end", {"winnerId": "A", "team1Score": 300, "team2Score": 250})
        active_engine.dispatch("match_state", make_snapshot(phase="active"))
        assert active_engine.match.phase == Phase.POST_MATCH
        assert active_engine.match.team1.score == 300
        assert active_engine.incidents.count(IncidentKind.STALE_TERMINAL_UPDATE) == 1

    def test_mount_restores_finished_match(self, config, transport, snapshot_store, clock):
        stored = make_snapshot(phase="post_match")
        stored["team1"]["score"] = 410
        snapshot_store.put(snapshot_key(MATCH_ID), stored)

        engine = MatchSyncEngine(MATCH_ID, config, transport=transport, snapshot_store=snapshot_store, clock=clock)
        assert engine.mount() is True
        assert engine.match == MatchState.from_dict(stored, user_id="p1")
        assert engine.is_terminal

        engine.dispatch("match_state", make_snapshot(phase="active"))
        assert engine.match.team1.score == 410

    def test_mount_without_snapshot(self, engine):
        assert engine.mount() is False
        assert engine.match is None

    def test_duplicate_double_callin_is_idempotent(self, active_engine):
        _to_break(active_engine)
        payload = {"half": 1, "teamId": "A", "targetSlot": 3, "newBreakDurationMs": 30_000}
        active_engine.dispatch("double_callin_activated", payload)
        assert active_engine.ledger.used_double_callin_half1
        active_engine.dispatch("double_callin_activated", payload)
        client = active_engine.client
        assert active_engine.ledger.used_double_callin_half1
        assert client.break_countdown_ms == 30_000
        assert client.phase_initial_duration_ms == 30_000
        assert client.double_anchor.target_slot == "multiplication"


# ----------------------------------------------------------------------
# Snapshot handling
# ----------------------------------------------------------------------


class TestSnapshots:
    def test_events_before_snapshot_record_no_state(self, engine):
        engine.dispatch("answer_result", {"userId": "p1", "teamId": "A", "isCorrect": True})
        assert engine.match is None
        assert engine.incidents.last().kind == IncidentKind.NO_STATE

    def test_snapshot_for_other_match_ignored(self, engine):
        engine.dispatch("match_state", make_snapshot(match_id="other"))
        assert engine.match is None
        assert engine.incidents.last().kind == IncidentKind.UNKNOWN_ENTITY

    def test_idle_snapshot_clears_activation(self, engine):
        snapshot = make_snapshot(phase="break")
        snapshot["team1"]["players"]["p2"]["isActive"] = True
        engine.dispatch("match_state", snapshot)
        assert not any(p.is_active for p in engine.match.all_players())

    def test_snapshot_may_jump_phases(self, engine):
        engine.dispatch("match_state", make_snapshot())
        engine.dispatch("match_state", make_snapshot(phase="halftime"))
        assert engine.match.phase == Phase.HALFTIME
        assert engine.incidents.incidents == []

    def test_malformed_snapshot_keeps_previous_state(self, engine):
        engine.dispatch("match_state", make_snapshot())
        bad = make_snapshot(phase="active")
        del bad["team2"]
        engine.dispatch("match_state", bad)
        assert engine.match.phase == Phase.PRE_MATCH
        assert engine.incidents.last().kind == IncidentKind.MALFORMED_EVENT

    def test_snapshot_with_duplicate_team_ids_rejected(self, engine):
        snapshot = make_snapshot()
        snapshot["team2"]["teamId"] = "A"
        engine.dispatch("match_state", snapshot)
        assert engine.match is None
        assert engine.incidents.last().kind == IncidentKind.MALFORMED_EVENT

    def test_duplicate_team_ids_keep_previous_snapshot(self, engine):
        engine.dispatch("match_state", make_snapshot())
        snapshot = make_snapshot(phase="active")
        snapshot["team1"]["teamId"] = "B"
        engine.dispatch("match_state", snapshot)
        assert engine.match.phase == Phase.PRE_MATCH
        assert engine.match.team_order == ("A", "B")

    def test_one_commit_per_event(self, active_engine):
        before = active_engine.store.version
        active_engine.dispatch("answer_result", {"userId": "p1", "teamId": "A", "isCorrect": True})
        assert active_engine.store.version == before + 1


# ----------------------------------------------------------------------
# Pre-match & strategy
# ----------------------------------------------------------------------


class TestStrategy:
    @pytest.fixture
    def strategy_engine(self, engine):
        engine.dispatch("match_state", make_snapshot())
        engine.dispatch("strategy_phase_start", {
            "durationMs": 60_000,
            "team1Slots": {"p1": {"slot": "addition", "name": "Ada", "isIgl": True}, "p2": {"slot": "subtraction"}},
            "team2Slots": {"q1": {"slot": "addition", "name": "Bo"}},
        })
        return engine

    def test_strategy_start(self, strategy_engine):
        strategy = strategy_engine.client.strategy
        assert strategy_engine.match.phase == Phase.STRATEGY
        assert strategy.duration_ms == 60_000
        assert strategy.my_slots["p1"].name == "Ada"
        assert strategy.my_slots["p1"].is_igl is True
        assert strategy.my_slots["p2"].name == "Unknown"
        assert strategy.opponent_slots["q1"].operation == "addition"

    def test_non_object_slot_entry_leaves_consistent_state(self, engine):
        engine.dispatch("match_state", make_snapshot())
        version = engine.store.version
        assert engine.dispatch("strategy_phase_start", {"durationMs": 1000, "team2Slots": {"q1": 5}}) is True
        assert engine.match.phase == Phase.STRATEGY
        assert engine.client.strategy is not None
        assert engine.client.strategy.opponent_slots == {}
        assert engine.store.version == version + 1

    def test_strategy_time_update(self, strategy_engine):
        strategy_engine.dispatch("strategy_time_update", {"remainingMs": 12_000})
        assert strategy_engine.client.strategy.remaining_ms == 12_000

    def test_slot_swap(self, strategy_engine):
        strategy_engine.dispatch("slot_assignments_updated", {
            "teamId": "A", "slots": {"addition": "p2", "subtraction": "p1"},
        })
        team = strategy_engine.match.team1
        assert team.slot_assignments == {"addition": "p2", "subtraction": "p1"}
        assert team.players["p2"].slot == "addition"
        my_slots = strategy_engine.client.strategy.my_slots
        assert my_slots["p1"].operation == "subtraction"
        assert my_slots["p1"].name == "Ada"
        assert my_slots["p2"].operation == "addition"

    def test_slot_swap_without_team_id(self, strategy_engine):
        strategy_engine.dispatch("slot_assignments_updated", {"slots": {"addition": "q2", "subtraction": "q1"}})
        assert strategy_engine.match.team2.slot_assignments["addition"] == "q2"
        assert strategy_engine.client.strategy.opponent_slots["q1"].name == "Bo"

    def test_opponent_slots(self, strategy_engine):
        strategy_engine.dispatch("opponent_slots_updated", {"teamId": "B", "slots": {"mixed": "q1"}})
        assert strategy_engine.match.team2.players["q1"].slot == "mixed"
        assert strategy_engine.client.strategy.opponent_slots["q1"].operation == "mixed"

    def test_team_ready(self, strategy_engine):
        strategy_engine.dispatch("team_ready", {"teamId": "B"})
        assert strategy_engine.client.strategy.opponent_team_ready
        assert not strategy_engine.client.strategy.my_team_ready
        strategy_engine.dispatch("team_ready", {"teamId": "A"})
        assert strategy_engine.client.strategy.my_team_ready

    def test_match_start_clears_strategy(self, strategy_engine):
        strategy_engine.dispatch("match_start", {})
        assert strategy_engine.client.strategy is None
        assert strategy_engine.match.phase == Phase.ACTIVE
        assert _active_ids(strategy_engine.match.team1) == ["p1"]

    def test_pre_match_countdown(self, engine, clock):
        engine.dispatch("match_state", make_snapshot())
        engine.dispatch("pre_match_countdown_start", {"durationMs": 10_000})
        clock.advance(3)
        engine.tick()
        assert engine.client.pre_match_countdown_ms == 7_000
        engine.dispatch("pre_match_countdown_tick", {"remainingMs": 5_000})
        assert engine.client.pre_match_countdown_ms == 5_000


# ----------------------------------------------------------------------
# Active play
# ----------------------------------------------------------------------


class TestActivePlay:
    def test_question_update_moves_activation(self, active_engine):
        active_engine.dispatch("question_update", {
            "activePlayerId": "p2", "questionText": "3+4", "operation": "addition", "slotNumber": 2,
        })
        team = active_engine.match.team1
        assert _active_ids(team) == ["p2"]
        assert team.players["p2"].current_question.question == "3+4"
        assert team.current_slot == 2

    def test_question_update_for_opponent_rejected(self, active_engine):
        active_engine.dispatch("question_update", {"activePlayerId": "q2"})
        assert active_engine.incidents.last().kind == IncidentKind.UNKNOWN_ENTITY
        assert _active_ids(active_engine.match.team2) == ["q1"]

    def test_typing(self, active_engine):
        active_engine.dispatch("typing_update", {"userId": "p2", "currentInput": "12"})
        active_engine.dispatch("typing_update", {"userId": "p1", "currentInput": "99"})
        assert active_engine.client.teammate_typing == {"p2": "12"}

    def test_answer_points_feed(self, active_engine):
        active_engine.dispatch("answer_result", {
            "userId": "p1", "teamId": "A", "isCorrect": True, "pointsEarned": 12, "speedBonus": 2,
        })
        entry = active_engine.client.points_feed[-1]
        assert entry.points == 12
        assert entry.kind == "answer"
        assert entry.detail["speedBonus"] == 2

    def test_unknown_player_answer(self, active_engine):
        active_engine.dispatch("answer_result", {"userId": "q1", "teamId": "A", "isCorrect": True})
        assert active_engine.incidents.last().kind == IncidentKind.UNKNOWN_ENTITY
        assert active_engine.match.team1.players["p1"].total == 0

    def test_answer_time_not_double_counted(self, active_engine):
        active_engine.dispatch("answer_result", {"userId": "p2", "teamId": "A", "isCorrect": True})
        active_engine.dispatch("teammate_answer", {"userId": "p2", "answerTimeMs": 1500})
        active_engine.dispatch("answer_result", {
            "userId": "p2", "teamId": "A", "isCorrect": True, "answerTimeMs": 1000,
        })
        active_engine.dispatch("teammate_answer", {"userId": "p2", "answerTimeMs": 1000})
        assert active_engine.match.team1.players["p2"].total_answer_time_ms == 2500

    def test_timeout_warning_cleared_by_answer(self, active_engine):
        active_engine.dispatch("timeout_warning", {"playerId": "p1", "countdownSeconds": 5})
        assert active_engine.client.timeout_warning_seconds == 5
        active_engine.dispatch("answer_result", {"userId": "p1", "teamId": "A", "isCorrect": False})
        assert active_engine.client.timeout_warning_seconds is None

    def test_timeout_warning_for_teammate_ignored(self, active_engine):
        active_engine.dispatch("timeout_warning", {"playerId": "p2"})
        assert active_engine.client.timeout_warning_seconds is None

    def test_warning_interpolated_by_tick(self, active_engine, clock):
        active_engine.dispatch("timeout_warning", {"playerId": "p1", "countdownSeconds": 5})
        clock.advance(2.5)
        active_engine.tick()
        assert active_engine.client.timeout_warning_seconds == 3

    def test_question_timeout_local_player(self, active_engine):
        active_engine.dispatch("answer_result", {"userId": "p1", "teamId": "A", "isCorrect": True, "newStreak": 2})
        active_engine.dispatch("question_timeout", {"playerId": "p1", "newTeamScore": 7})
        team = active_engine.match.team1
        assert team.players["p1"].streak == 0
        assert team.current_streak == 0
        assert team.score == 7
        assert active_engine.client.points_feed[-1].points == -3

    def test_question_timeout_other_player_ignored(self, active_engine):
        active_engine.dispatch("question_timeout", {"playerId": "p2", "newTeamScore": 7})
        assert active_engine.match.team1.score == 0

    def test_teammate_timeout(self, active_engine):
        active_engine.dispatch("answer_result", {"userId": "p1", "teamId": "A", "isCorrect": True, "newStreak": 4})
        active_engine.dispatch("teammate_timeout", {"playerId": "p2", "newTeamScore": 50, "pointsLost": 5})
        team = active_engine.match.team1
        assert team.score == 50
        assert team.current_streak == 0
        assert active_engine.client.points_feed[-1].points == -5

    def test_teammate_timeout_unknown_player_recorded(self, active_engine):
        active_engine.dispatch("teammate_timeout", {"playerId": "zz", "pointsLost": 5})
        assert active_engine.incidents.last().kind == IncidentKind.UNKNOWN_ENTITY
        assert active_engine.match.team1.current_streak == 0

    def test_first_to_finish_bonus(self, active_engine):
        active_engine.dispatch("first_to_finish_bonus", {"teamId": "B", "bonus": 10, "newTeamScore": 210})
        assert active_engine.match.team2.score == 210
        entry = active_engine.client.points_feed[-1]
        assert entry.kind == "bonus"
        assert entry.team_id == "B"

    def test_new_question(self, active_engine):
        active_engine.dispatch("new_question", {
            "question": {"question": "5*5"}, "operation": "multiplication", "afterTimeout": True,
        })
        question = active_engine.match.team1.players["p1"].current_question
        assert question.question == "5*5"
        assert question.operation == "multiplication"

    def test_clock_update(self, active_engine):
        active_engine.dispatch("clock_update", {"gameClockMs": 61_000, "relayClockMs": 4_000, "round": 2})
        match = active_engine.match
        assert (match.game_clock_ms, match.relay_clock_ms, match.round) == (61_000, 4_000, 2)


# ----------------------------------------------------------------------
# Relay hand-offs
# ----------------------------------------------------------------------


class TestHandoffs:
    def test_slot_change(self, active_engine):
        active_engine.dispatch("handoff_countdown", {
            "nextPlayerId": "p2", "nextPlayerName": "Bea", "slotNumber": 2,
            "operation": "subtraction", "countdownMs": 3000,
        })
        assert active_engine.client.handoff.is_my_turn is False
        active_engine.dispatch("slot_change", {
            "teamId": "A", "currentSlot": 2, "activePlayerId": "p2", "questionText": "8-3",
        })
        team = active_engine.match.team1
        assert team.current_slot == 2
        assert _active_ids(team) == ["p2"]
        assert team.players["p2"].current_question.operation == "subtraction"
        assert active_engine.client.handoff is None

    def test_handoff_to_me(self, active_engine):
        active_engine.dispatch("handoff_countdown", {"nextPlayerId": "p1"})
        assert active_engine.client.handoff.is_my_turn is True

    def test_opponent_slot_change(self, active_engine):
        active_engine.dispatch("opponent_slot_change", {"teamId": "B", "currentSlot": 3, "activePlayerId": "q3"})
        team = active_engine.match.team2
        assert team.current_slot == 3
        assert _active_ids(team) == ["q3"]
        assert _active_ids(active_engine.match.team1) == ["p1"]

    def test_slot_change_unknown_team(self, active_engine):
        active_engine.dispatch("slot_change", {"teamId": "Z", "currentSlot": 2})
        assert active_engine.incidents.last().kind == IncidentKind.UNKNOWN_ENTITY


# ----------------------------------------------------------------------
# Final-round decision
# ----------------------------------------------------------------------


class TestSoloDecision:
    @pytest.fixture
    def deciding(self, active_engine):
        active_engine.dispatch("solo_decision_phase", {
            "durationMs": 10_000, "team1": {"anchorName": "Ada"}, "team2": {"anchorName": "Bo"},
        })
        return active_engine

    def test_decision_phase(self, deciding):
        decision = deciding.client.solo_decision
        assert deciding.match.phase == Phase.ANCHOR_DECISION
        assert decision.my_anchor_name == "Ada"
        assert decision.opponent_anchor_name == "Bo"

    def test_decision_countdown_shown(self, deciding, clock):
        assert deciding.client.solo_decision.remaining_ms == 10_000
        clock.advance(4)
        deciding.tick()
        assert deciding.client.solo_decision.remaining_ms == 6_000

    def test_non_string_anchor_name_rejected(self, active_engine):
        active_engine.dispatch("solo_decision_phase", {
            "durationMs": 10_000, "team1": {"anchorName": 5}, "team2": {},
        })
        assert active_engine.match.phase == Phase.ACTIVE
        assert active_engine.client.solo_decision is None
        assert active_engine.incidents.last().kind == IncidentKind.MALFORMED_EVENT

    def test_decisions(self, deciding):
        deciding.dispatch("solo_decision_made", {"teamId": "A", "decision": "solo"})
        deciding.dispatch("solo_decision_made", {"teamId": "B", "decision": "normal", "autoSelected": True})
        decision = deciding.client.solo_decision
        assert decision.my_decision == "solo"
        assert decision.auto_selected is False
        assert decision.opponent_decision == "normal"

    def test_reveal(self, deciding):
        deciding.dispatch("solo_decisions_revealed", {
            "team1": {"teamId": "A", "anchorSoloActive": True},
            "team2": {"anchorSoloActive": False},
        })
        assert deciding.client.solo_decision is None
        assert deciding.client.anchor_solo_active == {"A": True, "B": False}
        assert deciding.ledger.used_anchor_solo

    def test_decision_outside_phase_ignored(self, active_engine):
        active_engine.dispatch("solo_decision_made", {"teamId": "A", "decision": "solo"})
        assert active_engine.client.solo_decision is None


# ----------------------------------------------------------------------
# Breaks, halftime & abilities
# ----------------------------------------------------------------------


class TestIntermissions:
    def test_round_break(self, active_engine):
        _to_break(active_engine)
        match, client = active_engine.match, active_engine.client
        assert match.phase == Phase.BREAK
        assert not any(p.is_active for p in match.all_players())
        assert client.break_countdown_ms == 10_000
        assert client.round_summaries[-1].team1_score == 100

    def test_break_time_update(self, active_engine):
        _to_break(active_engine)
        active_engine.dispatch("break_time_update", {"remainingMs": 4_000})
        assert active_engine.client.break_countdown_ms == 4_000
        assert active_engine.match.relay_clock_ms == 4_000

    def test_next_round(self, active_engine):
        _to_break(active_engine)
        active_engine.dispatch("team_ready_for_next", {"teamId": "A"})
        assert active_engine.client.ready_for_next == {"A"}
        active_engine.dispatch("round_countdown", {"round": 2, "half": 1, "countdownMs": 5_000})
        match, client = active_engine.match, active_engine.client
        assert match.phase == Phase.ROUND_COUNTDOWN
        assert match.round == 2
        assert client.break_countdown_ms is None
        assert client.round_countdown_ms == 5_000
        active_engine.dispatch("round_countdown_tick", {"remainingMs": 2_000})
        assert client.round_countdown_ms == 2_000

        active_engine.dispatch("round_start", {"round": 2, "half": 1, "team1ActivePlayerId": "p1"})
        assert match.phase == Phase.ACTIVE
        assert client.round_countdown_ms is None
        assert client.ready_for_next == set()
        assert _active_ids(match.team1) == ["p1"]

    def test_halftime(self, active_engine):
        active_engine.dispatch("halftime", {})
        assert active_engine.match.phase == Phase.HALFTIME
        assert active_engine.client.break_countdown_ms == 120_000
        active_engine.dispatch("halftime_time_update", {"remainingMs": 90_000})
        assert active_engine.client.break_countdown_ms == 90_000

    def test_illegal_transition_keeps_phase(self, engine):
        engine.dispatch("match_state", make_snapshot())
        engine.dispatch("halftime", {"halftimeDurationMs": 30_000})
        assert engine.match.phase == Phase.PRE_MATCH
        assert engine.incidents.last().kind == IncidentKind.ILLEGAL_TRANSITION

    def test_timeout_extends_break(self, active_engine):
        _to_break(active_engine)
        active_engine.dispatch("timeout_called", {"teamId": "A"})
        assert active_engine.client.break_countdown_ms == 70_000
        assert active_engine.ledger.timeouts_remaining == 2

    def test_timeout_absolute_duration_is_idempotent(self, active_engine):
        _to_break(active_engine)
        payload = {"teamId": "A", "newBreakDurationMs": 70_000, "timeoutsRemaining": 1}
        active_engine.dispatch("timeout_called", payload)
        active_engine.dispatch("timeout_called", payload)
        assert active_engine.client.break_countdown_ms == 70_000
        assert active_engine.ledger.timeouts_remaining == 1
        assert active_engine.match.team1.timeouts_used == 1

    def test_opponent_timeout_leaves_ledger(self, active_engine):
        _to_break(active_engine)
        active_engine.dispatch("timeout_called", {"teamId": "B", "newBreakDurationMs": 70_000, "timeoutsRemaining": 0})
        assert active_engine.ledger.timeouts_remaining == 2
        assert active_engine.match.team2.timeouts_used == 2

    def test_opponent_double_callin(self, active_engine):
        _to_break(active_engine)
        active_engine.dispatch("double_callin_activated", {"half": 1, "teamId": "B"})
        assert not active_engine.ledger.used_double_callin_half1
        assert active_engine.client.double_anchor is None

    def test_double_callin_success(self, active_engine):
        assert active_engine.dispatch("double_callin_success", {"message": "ok"})


# ----------------------------------------------------------------------
# Terminal state
# ----------------------------------------------------------------------


class TestTerminal:
    def test_match_end(self, active_engine, snapshot_store):
        active_engine.dispatch("match_end", {
            "winnerId": "A", "isDraw": False, "team1Score": 300, "team2Score": 250, "matchDurationMs": 600_000,
        })
        match = active_engine.match
        assert match.phase == Phase.POST_MATCH
        assert match.outcome.winner_id == "A"
        assert match.team2.score == 250
        assert not any(p.is_active for p in match.all_players())

        stored = snapshot_store.get(snapshot_key(MATCH_ID))
        assert stored["phase"] == "post_match"
        assert stored["outcome"]["winnerId"] == "A"

    def test_forfeit(self, active_engine, snapshot_store):
        active_engine.dispatch("team_forfeit", {"forfeitingTeamId": "B"})
        assert active_engine.match.phase == Phase.POST_MATCH
        assert active_engine.match.forfeited_by == "B"
        assert snapshot_store.get(snapshot_key(MATCH_ID))["forfeitedBy"] == "B"

    def test_phase_events_after_end_are_stale(self, active_engine):
        active_engine.dispatch("match_end", {})
        active_engine.dispatch("round_start", {"round": 3, "half": 2, "team1ActivePlayerId": "p1"})
        active_engine.dispatch("round_break", {})
        assert active_engine.match.phase == Phase.POST_MATCH
        assert active_engine.match.round == 1
        assert active_engine.incidents.count(IncidentKind.STALE_TERMINAL_UPDATE) == 2

    def test_leave_clears_everything(self, active_engine, snapshot_store):
        active_engine.dispatch("match_end", {})
        active_engine.leave()
        assert active_engine.match is None
        assert snapshot_store.get(snapshot_key(MATCH_ID)) is None
        assert active_engine.ledger.entries == []

    def test_teardown_keeps_state(self, active_engine, snapshot_store):
        active_engine.dispatch("match_end", {})
        active_engine.teardown()
        assert active_engine.match.phase == Phase.POST_MATCH
        assert snapshot_store.get(snapshot_key(MATCH_ID)) is not None


# ----------------------------------------------------------------------
# Quit vote
# ----------------------------------------------------------------------


class TestQuitVote:
    def test_vote_lifecycle(self, active_engine, clock):
        active_engine.dispatch("quit_vote_started", {
            "initiatorId": "p1", "initiatorName": "Ada", "votes": {"p1": None, "p2": None},
        })
        assert active_engine.client.quit_vote.active
        active_engine.dispatch("quit_vote_update", {"votes": {"p1": "yes", "p2": None}})
        assert active_engine.quit_vote.has_voted
        active_engine.dispatch("quit_vote_result", {"result": "stay"})
        vote = active_engine.client.quit_vote
        assert vote.active is False
        assert vote.result == "stay"

        clock.advance(2.5)
        active_engine.tick()
        assert active_engine.client.quit_vote is None

    def test_vote_countdown_shown(self, active_engine, clock):
        active_engine.dispatch("quit_vote_started", {"initiatorId": "p1"})
        assert active_engine.client.quit_vote.remaining_ms == 30_000
        clock.advance(10)
        active_engine.tick()
        assert active_engine.client.quit_vote.remaining_ms == 20_000

    def test_result_without_vote_ignored(self, active_engine):
        active_engine.dispatch("quit_vote_result", {"result": "quit"})
        assert active_engine.client.quit_vote is None


# ----------------------------------------------------------------------
# Connectivity & sequencing
# ----------------------------------------------------------------------


class TestConnectivity:
    def test_connect_requests_snapshot(self, engine, transport):
        engine.dispatch("connect", {})
        assert engine.client.connected
        assert transport.sent == [("join_team_match", {"matchId": MATCH_ID, "userId": "p1"})]

    def test_party_id_in_join(self, transport, snapshot_store, clock):
        config = EngineConfig(client=ClientConfig(user_id="p1", party_id="party-9"))
        engine = MatchSyncEngine(MATCH_ID, config, transport=transport, snapshot_store=snapshot_store, clock=clock)
        engine.dispatch("connect", {})
        assert transport.sent[-1][1]["partyId"] == "party-9"

    def test_disconnect_keeps_state_and_freezes_timers(self, active_engine, clock):
        _to_break(active_engine)
        active_engine.dispatch("disconnect", {})
        assert not active_engine.client.connected
        assert active_engine.match.phase == Phase.BREAK
        assert active_engine.incidents.last().kind == IncidentKind.TRANSPORT_DISCONNECTED
        clock.advance(4)
        active_engine.tick()
        assert active_engine.client.break_countdown_ms == 10_000

    def test_leave_while_tick_waits_for_lock(self, active_engine):
        entered = threading.Event()

        def slow_tick():
            entered.set()
            time.sleep(0.1)
            with active_engine._lock:
                pass

        active_engine._tick_loop = TickLoop(slow_tick, interval_s=0.01)
        loop = active_engine.start_ticking()
        assert entered.wait(2)
        thread = loop._thread

        started = time.monotonic()
        active_engine.leave()
        assert time.monotonic() - started < 2
        assert not thread.is_alive()
        assert active_engine.match is None

    def test_error(self, engine):
        engine.dispatch("error", {"message": "boom"})
        assert engine.client.last_error == "boom"
        assert engine.incidents.last().kind == IncidentKind.TRANSPORT_ERROR

    def test_sequence_gap_requests_resync(self, active_engine, transport):
        sent_before = len(transport.sent)
        active_engine.dispatch("team_ready_for_next", {"teamId": "A", "seq": 1})
        active_engine.dispatch("team_ready_for_next", {"teamId": "B", "seq": 3})
        assert transport.names()[sent_before:] == ["join_team_match"]
        assert active_engine.incidents.last().kind == IncidentKind.SEQUENCE_GAP

    def test_unknown_event_ignored(self, active_engine):
        version = active_engine.store.version
        assert active_engine.dispatch("brand_new_event", {"x": 1}) is False
        assert active_engine.store.version == version


# ----------------------------------------------------------------------
# Journal
# ----------------------------------------------------------------------


class TestJournal:
    def test_events_and_summary_journaled(self, tmp_output, snapshot_store, clock):
        config = EngineConfig(
            client=ClientConfig(user_id="p1"),
            journal=JournalConfig(enabled=True, output_dir=tmp_output),
        )
        engine = MatchSyncEngine(MATCH_ID, config, snapshot_store=snapshot_store, clock=clock)
        engine.dispatch("match_state", make_snapshot(phase="active"))
        engine.dispatch("match_end", {"winnerId": "A"})
        lines = (tmp_output / f"{MATCH_ID}.jsonl").read_text().splitlines()
        assert len(lines) == 3
        assert '"record_type": "match_summary"' in lines[-1]


# ----------------------------------------------------------------------
# Invariants over a full match
# ----------------------------------------------------------------------


FULL_MATCH = [
    ("connect", {}),
    ("match_state", make_snapshot()),
    ("strategy_phase_start", {"durationMs": 60_000}),
    ("match_start", {"team1ActivePlayerId": "p1", "team2ActivePlayerId": "q1"}),
    ("answer_result", {"userId": "p1", "teamId": "A", "isCorrect": True, "questionsInSlot": 5}),
    ("slot_change", {"teamId": "A", "currentSlot": 2, "activePlayerId": "p2"}),
    ("opponent_slot_change", {"teamId": "B", "currentSlot": 2, "activePlayerId": "q2"}),
    ("question_update", {"activePlayerId": "p3"}),
    ("round_break", {}),
    ("slot_change", {"teamId": "A", "currentSlot": 3, "activePlayerId": "p3"}),
    ("round_countdown", {"round": 2, "half": 1}),
    ("round_start", {"round": 2, "half": 1}),
    ("halftime", {}),
    ("match_state", make_snapshot(phase="active", isMyTeam="A")),
    ("solo_decision_phase", {"team1": {}, "team2": {}}),
    ("round_start", {"round": 4, "half": 2}),
    ("match_end", {"winnerId": "B"}),
    ("match_state", make_snapshot(phase="active")),
    ("round_start", {"round": 5, "half": 2}),
]


class TestInvariants:
    def test_invariants_hold_after_every_event(self, engine):
        violations = []
        terminal_seen = []

        def check(store, label):
            match = store.match
            if match is None:
                return
            if match.is_my_team not in match.teams:
                violations.append((label, "isMyTeam"))
            for team in match.teams.values():
                if len(_active_ids(team)) > 1:
                    violations.append((label, f"{team.team_id} has several active players"))
            if match.phase in IDLE_PHASES and any(p.is_active for p in match.all_players()):
                violations.append((label, f"active player during {match.phase.value}"))
            if terminal_seen and match.phase != Phase.POST_MATCH:
                violations.append((label, "left post_match"))
            if match.phase == Phase.POST_MATCH:
                terminal_seen.append(label)

        engine.store.subscribe(check)
        for name, payload in FULL_MATCH:
            engine.dispatch(name, payload)
        assert violations == []
        assert engine.match.phase == Phase.POST_MATCH
        assert engine.match.outcome.winner_id == "B"
