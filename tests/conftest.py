"""Shared test fixtures for relaysync."""

import pytest

from relaysync.config import DEFAULT_OPERATIONS, ClientConfig, EngineConfig
from relaysync.core.snapshot_store import MemorySnapshotStore
from relaysync.engine.sync import MatchSyncEngine

MATCH_ID = "match-1"


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    def emit(self, event: str, payload: dict) -> None:
        self.sent.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.sent]


def make_team(team_id: str, prefix: str, leader: str | None = None, score: float = 0) -> dict:
    players = {}
    slots = {}
    for i, op in enumerate(DEFAULT_OPERATIONS, 1):
        pid = f"{prefix}{i}"
        players[pid] = {"odUserId": pid, "odName": f"Player {pid}", "slot": op}
        slots[op] = pid
    leader = leader or f"{prefix}1"
    players[leader]["isIgl"] = True
    return {
        "teamId": team_id,
        "teamName": f"Team {team_id}",
        "leaderId": leader,
        "score": score,
        "players": players,
        "slotAssignments": slots,
    }


def make_snapshot(phase: str = "pre_match", match_id: str = MATCH_ID, **overrides) -> dict:
    """Server match_state payload: team A (p1..p5) vs team B (q1..q5)."""
    snapshot = {
        "matchId": match_id,
        "phase": phase,
        "round": 1,
        "half": 1,
        "team1": make_team("A", "p"),
        "team2": make_team("B", "q"),
    }
    snapshot.update(overrides)
    return snapshot


@pytest.fixture
def tmp_output(tmp_path):
    """Provide a temporary output directory for journals and snapshots."""
    return tmp_path / "output"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def snapshot_store():
    return MemorySnapshotStore()


@pytest.fixture
def config():
    return EngineConfig(client=ClientConfig(user_id="p1"))


@pytest.fixture
def engine(config, transport, snapshot_store, clock):
    eng = MatchSyncEngine(
        MATCH_ID, config,
        transport=transport, snapshot_store=snapshot_store, clock=clock,
    )
    yield eng
    eng.teardown()


@pytest.fixture
def active_engine(engine):
    """Engine connected, holding a snapshot, with round 1 started."""
    engine.dispatch("connect", {})
    engine.dispatch("match_state", make_snapshot())
    engine.dispatch("match_start", {"team1ActivePlayerId": "p1", "team2ActivePlayerId": "q1"})
    return engine
