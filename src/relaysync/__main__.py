"""CLI entry point: python -m relaysync {replay,snapshot} ..."""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from relaysync.config import EngineConfig, load_config
from relaysync.core.incidents import IncidentLog
from relaysync.engine.recovery import RecoveryManager, build_store
from relaysync.reporting import JournalData, print_summary, replay


def _load(path: Path | None) -> EngineConfig:
    if path is None:
        return EngineConfig()
    if not path.exists():
        print(f"Error: config file not found: {path}", file=sys.stderr)
        sys.exit(1)
    return load_config(path)


def _replay(args) -> int:
    if not args.journal.exists():
        print(f"Error: journal not found: {args.journal}", file=sys.stderr)
        return 1
    config = _load(args.config)
    journal = JournalData.from_file(args.journal)
    engine = replay(journal, config, user_id=args.user_id)

    if args.json:
        out = {
            "match_id": journal.match_id,
            "events": len(journal.events),
            "final_state": engine.match.to_dict() if engine.match else None,
            "incident_report": engine.incidents.get_report(),
        }
        print(json.dumps(out, indent=2, default=str))
    else:
        print_summary(engine.match, engine.incidents)
    return 0


def _snapshot(args) -> int:
    config = _load(args.config)
    recovery = RecoveryManager(build_store(config.storage), IncidentLog(), user_id=config.client.user_id)

    if args.clear:
        recovery.clear(args.match_id)
        print(f"Cleared stored result for {args.match_id}")
        return 0

    match = recovery.restore(args.match_id)
    if match is None:
        print(f"No stored result for {args.match_id}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(match.to_dict(), indent=2, default=str))
    else:
        print_summary(match, IncidentLog())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relaysync",
        description="Relay match state sync tools",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_replay = sub.add_parser("replay", parents=[common], help="Replay an event journal and show the final view")
    p_replay.add_argument("journal", type=Path, help="Path to a .jsonl event journal")
    p_replay.add_argument("--config", type=Path, default=None, help="Engine YAML config")
    p_replay.add_argument("--user-id", default=None, help="Replay as this player")
    p_replay.add_argument("--json", action="store_true", help="Print JSON instead of tables")
    p_replay.set_defaults(func=_replay)

    p_snap = sub.add_parser("snapshot", parents=[common], help="Show or clear a stored match result")
    p_snap.add_argument("match_id", help="Match ID")
    p_snap.add_argument("--config", type=Path, default=None, help="Engine YAML config")
    p_snap.add_argument("--clear", action="store_true", help="Delete the stored result")
    p_snap.add_argument("--json", action="store_true", help="Print JSON instead of tables")
    p_snap.set_defaults(func=_snapshot)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
