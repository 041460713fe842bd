"""Tests for EventDispatcher: routing, decoding and sequence checks."""

from relaysync.core.incidents import IncidentKind, IncidentLog
from relaysync.engine.dispatcher import EventDispatcher


def _dispatcher(on_gap=None):
    incidents = IncidentLog()
    received = []
    dispatcher = EventDispatcher(incidents, on_gap=on_gap)
    dispatcher.register("team_ready", received.append)
    dispatcher.register("match_state", received.append)
    dispatcher.register("connect", received.append)
    return dispatcher, incidents, received


class TestRouting:
    def test_handler_receives_decoded_payload(self):
        dispatcher, _, received = _dispatcher()
        assert dispatcher.dispatch("team_ready", {"teamId": "A"}) is True
        assert received == [{"teamId": "A"}]

    def test_unregistered_event_ignored(self):
        dispatcher, incidents, received = _dispatcher()
        assert dispatcher.dispatch("something_new", {"x": 1}) is False
        assert received == []
        assert incidents.incidents == []

    def test_malformed_payload_dropped(self):
        dispatcher, incidents, received = _dispatcher()
        assert dispatcher.dispatch("team_ready", {"teamId": 7}) is False
        assert received == []
        assert incidents.last().kind == IncidentKind.MALFORMED_EVENT
        assert incidents.last().event == "team_ready"

    def test_failing_handler_recorded_not_raised(self):
        dispatcher, incidents, _ = _dispatcher()

        def broken(data):
            raise AttributeError("no attribute get")

        dispatcher.register("team_ready", broken)
        assert dispatcher.dispatch("team_ready", {"teamId": "A"}) is False
        assert incidents.last().kind == IncidentKind.MALFORMED_EVENT
        assert "no attribute get" in incidents.last().details

    def test_handles(self):
        dispatcher, _, _ = _dispatcher()
        assert dispatcher.handles("team_ready")
        assert not dispatcher.handles("round_start")


class TestSequence:
    def test_no_seq_no_check(self):
        dispatcher, incidents, _ = _dispatcher()
        dispatcher.dispatch("team_ready", {"teamId": "A"})
        assert dispatcher.last_seq is None
        assert incidents.incidents == []

    def test_contiguous(self):
        gaps = []
        dispatcher, incidents, _ = _dispatcher(on_gap=lambda e, g: gaps.append((e, g)))
        for seq in (1, 2, 3):
            dispatcher.dispatch("team_ready", {"teamId": "A", "seq": seq})
        assert dispatcher.last_seq == 3
        assert gaps == []

    def test_gap_reported(self):
        gaps = []
        dispatcher, incidents, received = _dispatcher(on_gap=lambda e, g: gaps.append((e, g)))
        dispatcher.dispatch("team_ready", {"teamId": "A", "seq": 1})
        dispatcher.dispatch("team_ready", {"teamId": "B", "seq": 4})
        assert gaps == [(2, 4)]
        assert incidents.count(IncidentKind.SEQUENCE_GAP) == 1
        # the event itself is still handled
        assert len(received) == 2
        assert dispatcher.last_seq == 4

    def test_duplicate_does_not_rewind(self):
        dispatcher, incidents, _ = _dispatcher()
        dispatcher.dispatch("team_ready", {"teamId": "A", "seq": 5})
        dispatcher.dispatch("team_ready", {"teamId": "A", "seq": 5})
        dispatcher.dispatch("team_ready", {"teamId": "A", "seq": 3})
        assert dispatcher.last_seq == 5
        assert incidents.incidents == []

    def test_snapshot_rebases(self):
        gaps = []
        dispatcher, _, _ = _dispatcher(on_gap=lambda e, g: gaps.append((e, g)))
        dispatcher.dispatch("team_ready", {"teamId": "A", "seq": 2})
        dispatcher.dispatch("match_state", {
            "matchId": "m", "phase": "active", "seq": 40,
            "team1": {"teamId": "A", "players": {}},
            "team2": {"teamId": "B", "players": {}},
        })
        dispatcher.dispatch("team_ready", {"teamId": "A", "seq": 41})
        assert gaps == []
        assert dispatcher.last_seq == 41

    def test_reset_sequence(self):
        dispatcher, _, _ = _dispatcher()
        dispatcher.dispatch("team_ready", {"teamId": "A", "seq": 2})
        dispatcher.reset_sequence()
        assert dispatcher.last_seq is None
