"""Engine configuration loader."""

import yaml
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_OPERATIONS = ["addition", "subtraction", "multiplication", "division", "mixed"]

_STORAGE_BACKENDS = ("memory", "file", "mongo")


@dataclass
class ClientConfig:
    user_id: str | None = None
    party_id: str | None = None  # PvP matches are looked up by party


@dataclass
class ModeConfig:
    name: str
    slot_operations: list[str] = field(default_factory=lambda: list(DEFAULT_OPERATIONS))
    questions_per_slot: int = 5


@dataclass
class TimerConfig:
    pre_match_ms: int = 15_000
    break_ms: int = 10_000
    halftime_ms: int = 120_000
    timeout_extension_ms: int = 60_000
    quit_vote_s: int = 30
    quit_vote_display_ms: int = 2_000
    tick_interval_s: float = 1.0


@dataclass
class AbilityConfig:
    timeout_credits: int = 2
    points_feed_size: int = 50


@dataclass
class StorageConfig:
    backend: str = "memory"  # "memory", "file", "mongo"
    path: Path = Path(".relaysync") / "snapshots"
    mongo_uri_env: str = "RELAYSYNC_MONGO_URI"
    db_name: str = "relaysync"


@dataclass
class JournalConfig:
    enabled: bool = False
    output_dir: Path = Path("output") / "journal"


def _default_modes() -> dict[str, ModeConfig]:
    return {
        "5v5": ModeConfig(name="5v5"),
        "2v2": ModeConfig(name="2v2", slot_operations=["addition", "multiplication"]),
    }


@dataclass
class EngineConfig:
    client: ClientConfig = field(default_factory=ClientConfig)
    modes: dict[str, ModeConfig] = field(default_factory=_default_modes)
    default_mode: str = "5v5"
    timers: TimerConfig = field(default_factory=TimerConfig)
    abilities: AbilityConfig = field(default_factory=AbilityConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    journal: JournalConfig = field(default_factory=JournalConfig)

    def mode(self, name: str | None) -> ModeConfig:
        """Return the config for a mode, falling back to the default mode."""
        return self.modes.get(name or self.default_mode) or self.modes[self.default_mode]


def load_config(path: Path) -> EngineConfig:
    """Load engine config from YAML file."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    client_raw = raw.get("client", {})
    client = ClientConfig(
        user_id=client_raw.get("user_id"),
        party_id=client_raw.get("party_id"),
    )

    modes = _default_modes()
    for name, m in raw.get("modes", {}).items():
        base = modes.get(name, ModeConfig(name=name))
        operations = m.get("slot_operations", base.slot_operations)
        if not operations:
            raise ValueError(f"modes.{name}.slot_operations must not be empty")
        modes[name] = ModeConfig(
            name=name,
            slot_operations=list(operations),
            questions_per_slot=m.get("questions_per_slot", base.questions_per_slot),
        )

    default_mode = raw.get("default_mode", "5v5")
    if default_mode not in modes:
        raise ValueError(f"Unknown default_mode: {default_mode!r}. Available: {list(modes)}")

    t = raw.get("timers", {})
    timers = TimerConfig(
        pre_match_ms=t.get("pre_match_ms", 15_000),
        break_ms=t.get("break_ms", 10_000),
        halftime_ms=t.get("halftime_ms", 120_000),
        timeout_extension_ms=t.get("timeout_extension_ms", 60_000),
        quit_vote_s=t.get("quit_vote_s", 30),
        quit_vote_display_ms=t.get("quit_vote_display_ms", 2_000),
        tick_interval_s=t.get("tick_interval_s", 1.0),
    )

    a = raw.get("abilities", {})
    abilities = AbilityConfig(
        timeout_credits=a.get("timeout_credits", 2),
        points_feed_size=a.get("points_feed_size", 50),
    )

    s = raw.get("storage", {})
    backend = s.get("backend", "memory")
    if backend not in _STORAGE_BACKENDS:
        raise ValueError(
            f"Unknown storage backend: {backend!r}. Available: {list(_STORAGE_BACKENDS)}"
        )
    storage = StorageConfig(
        backend=backend,
        path=Path(s.get("path", Path(".relaysync") / "snapshots")),
        mongo_uri_env=s.get("mongo_uri_env", "RELAYSYNC_MONGO_URI"),
        db_name=s.get("db_name", "relaysync"),
    )

    j = raw.get("journal", {})
    journal = JournalConfig(
        enabled=j.get("enabled", False),
        output_dir=Path(j.get("output_dir", Path("output") / "journal")),
    )

    return EngineConfig(
        client=client,
        modes=modes,
        default_mode=default_mode,
        timers=timers,
        abilities=abilities,
        storage=storage,
        journal=journal,
    )
