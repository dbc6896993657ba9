"""
Command-line entrypoint.

USAGE:
    campus run --config-dir config
    campus run --config-dir config --run-once
    campus deadletters --config-dir config
    campus resolve <message_id> --note "refund re-issued" --config-dir config
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, List

from campus.config import load_config
from campus.deadletter import DeadLetterLog, DeadLetterNotFoundError, DeadLetterService
from campus.runtime.app import RunOptions, run_app


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="campus",
        description="Campus services order timeout engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command")
    subparsers.required = True

    run_parser = subparsers.add_parser("run", help="Run the timeout engine and message consumers")
    run_parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path("config"),
        help="Directory holding config.yaml and .env.local (default: ./config)",
    )
    run_parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run one sweep, drain ready messages, and exit",
    )

    list_parser = subparsers.add_parser("deadletters", help="List dead-lettered messages")
    list_parser.add_argument("--config-dir", type=Path, default=Path("config"))
    list_parser.add_argument("--all", action="store_true", help="Include resolved records")

    resolve_parser = subparsers.add_parser("resolve", help="Mark a dead-lettered message resolved")
    resolve_parser.add_argument("message_id")
    resolve_parser.add_argument("--note", required=True, help="Resolution note for the audit trail")
    resolve_parser.add_argument("--by", default="operator", help="Who resolved it")
    resolve_parser.add_argument("--config-dir", type=Path, default=Path("config"))

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    if args.command == "run":
        print(f"Starting campus timeout engine (config: {args.config_dir})")
        print("Press Ctrl+C to stop")
        print("-" * 60)
        return run_app(RunOptions(config_dir=args.config_dir, run_once=args.run_once))

    config = load_config(args.config_dir)
    with DeadLetterLog(config.deadletter.log_path) as log:
        if args.command == "deadletters":
            records = log.all() if args.all else log.unresolved()
            for record in records:
                print(json.dumps(record.to_dict(), ensure_ascii=False))
            print(f"{len(records)} record(s)", file=sys.stderr)
            return 0

        service = DeadLetterService(store=log)
        try:
            record = service.resolve(args.message_id, args.note, resolved_by=args.by)
        except DeadLetterNotFoundError:
            print(f"ERROR: no dead letter with message_id {args.message_id}", file=sys.stderr)
            return 1
        print(json.dumps(record.to_dict(), ensure_ascii=False))
        return 0


if __name__ == "__main__":
    sys.exit(main())
