"""relaysync: match-state synchronization engine for team relay-trivia matches."""

__version__ = "0.1.0"
