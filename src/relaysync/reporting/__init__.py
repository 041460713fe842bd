"""relaysync reporting module.

Usage:
    from relaysync.reporting import JournalData, replay, print_summary

    journal = JournalData.from_file("output/journal/match-1.jsonl")
    engine = replay(journal)
    print_summary(engine.match, engine.incidents)
"""

from .reader import JournalData, JournalEvent, replay
from .summary import print_summary, render

__all__ = [
    "JournalData",
    "JournalEvent",
    "replay",
    "print_summary",
    "render",
]
