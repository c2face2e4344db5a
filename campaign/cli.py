"""
Campaign Orchestrator — CLI

Drive the engine from a shell against a persistent store. Timers are
manual here (the process exits after each command), so run `resume`
periodically, or keep a worker running, to apply due transitions.

Usage:
    # Start an operation
    python -m campaign.cli initiate group-42 --initiator admin-1 \\
        --participants u1,u2,u3 --metrics metrics.json

    # Inspect
    python -m campaign.cli status <operation_id>
    python -m campaign.cli list group-42

    # Apply overdue phase transitions and message due times
    python -m campaign.cli resume

    # Poll and confirm deliveries
    python -m campaign.cli ready --limit 20
    python -m campaign.cli confirm <message_id>

    # Audit trail
    python -m campaign.cli ledger --operation <operation_id> -v
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from engine.config import load_config
from engine.logging import configure_logging

from campaign.result import Err
from campaign.runtime import CampaignEngine


def _fail(result: Err) -> None:
    print(f"Error ({result.kind.value}): {result.detail}", file=sys.stderr)
    sys.exit(1)


def _load_metrics(raw: str | None) -> dict:
    if not raw:
        return {}
    p = Path(raw)
    if p.exists():
        with open(p) as f:
            return json.load(f)
    return json.loads(raw)


def cmd_initiate(args, engine: CampaignEngine):
    """Start an operation against a target."""
    participants = [p.strip() for p in (args.participants or "").split(",") if p.strip()]
    result = engine.initiate(
        target_id=args.target_id,
        initiator_id=args.initiator,
        participant_ids=participants,
        initial_metrics=_load_metrics(args.metrics),
        campaign=args.campaign,
    )
    if not result.ok:
        _fail(result)
    print(result.value)


def cmd_advance(args, engine: CampaignEngine):
    """Advance an operation to its next phase."""
    result = engine.advance_phase(args.operation_id, expected_phase=args.expected_phase)
    if not result.ok:
        _fail(result)
    op = result.value
    print(f"{op.operation_id}: phase {op.phase}/{op.final_phase} ({op.progress}%)")


def cmd_complete(args, engine: CampaignEngine):
    """Complete the target's active operation."""
    result = engine.mark_complete(args.target_id)
    if not result.ok:
        _fail(result)
    if not result.value:
        print(f"No active operation for {args.target_id}")
        sys.exit(1)
    print(f"Completed: {args.target_id}")


def cmd_cancel(args, engine: CampaignEngine):
    """Cancel an operation."""
    result = engine.cancel(args.operation_id)
    if not result.ok:
        _fail(result)
    if not result.value:
        print(f"Not an active operation: {args.operation_id}")
        sys.exit(1)
    print(f"Cancelled: {args.operation_id}")


def cmd_status(args, engine: CampaignEngine):
    result = engine.get_status(args.operation_id)
    if not result.ok:
        _fail(result)
    print(json.dumps(result.value, indent=2))


def cmd_list(args, engine: CampaignEngine):
    """Show active and historical operations for a target."""
    listing = engine.list_for_target(args.target_id)
    for label, key in (("Active", "active"), ("Historical", "historical")):
        ops = listing[key]
        print(f"\n{label} ({len(ops)})")
        print(f"{'─' * 70}")
        for op in ops:
            ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(op["start_time"]))
            print(f"  {op['operation_id']}  {op['status']:10s} phase {op['phase']} "
                  f"({op['progress']}%)  started {ts}")


def cmd_ready(args, engine: CampaignEngine):
    messages = engine.get_ready_messages(args.limit)
    if args.json:
        print(json.dumps(messages, indent=2))
        return
    if not messages:
        print("No messages ready.")
        return
    print(f"\nReady Messages ({len(messages)})")
    print(f"{'─' * 70}")
    for m in messages:
        print(f"  {m['message_id']}  → {m['target_id']} [{m['channel']}] phase {m['phase']}")
        print(f"    {m['payload'][:80]}")


def cmd_confirm(args, engine: CampaignEngine):
    """Confirm a ready message was delivered."""
    result = engine.confirm_delivered(args.message_id)
    if not result.ok:
        _fail(result)
    if not result.value:
        print(f"Unknown message: {args.message_id}", file=sys.stderr)
        sys.exit(1)
    print(f"Delivered: {args.message_id}")


def cmd_resume(args, engine: CampaignEngine):
    """Run one resumption pass."""
    report = engine.sweep()
    print(json.dumps(report.to_dict(), indent=2))


def cmd_stats(args, engine: CampaignEngine):
    print(json.dumps(engine.stats(), indent=2))


def cmd_ledger(args, engine: CampaignEngine):
    """Show the action ledger."""
    entries = engine.get_ledger(operation_id=args.operation, target_id=args.target)
    if not entries:
        print("No ledger entries found.")
        return

    print(f"\nAction Ledger ({len(entries)} entries)")
    print(f"{'─' * 70}")
    for e in entries:
        ts = time.strftime("%H:%M:%S", time.localtime(e["created_at"]))
        print(f"  [{ts}] {e['action_type']:20s} {e['operation_id']}")
        if args.verbose:
            for k, v in e["details"].items():
                print(f"           {k}: {str(v)[:60]}")


COMMANDS = {
    "initiate": cmd_initiate,
    "advance": cmd_advance,
    "complete": cmd_complete,
    "cancel": cmd_cancel,
    "status": cmd_status,
    "list": cmd_list,
    "ready": cmd_ready,
    "confirm": cmd_confirm,
    "resume": cmd_resume,
    "stats": cmd_stats,
    "ledger": cmd_ledger,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Campaign Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="", help="Base config YAML (default: config/campaign.yaml)")
    parser.add_argument("--db", default="", help="SQLite database path (overrides store.path)")
    parser.add_argument("--log-level", default="WARNING")

    subs = parser.add_subparsers(dest="command", help="Command")

    p = subs.add_parser("initiate", help="Start an operation against a target")
    p.add_argument("target_id")
    p.add_argument("--initiator", required=True)
    p.add_argument("--participants", default="", help="Comma-separated participant ids")
    p.add_argument("--metrics", help="JSON file or inline JSON: {participant: {metric: value}}")
    p.add_argument("--campaign", help="Campaign definition name")

    p = subs.add_parser("advance", help="Advance an operation one phase")
    p.add_argument("operation_id")
    p.add_argument("--expected-phase", type=int, default=None,
                   help="Only advance from this phase; repeats become no-ops")

    p = subs.add_parser("complete", help="Complete the target's active operation")
    p.add_argument("target_id")

    p = subs.add_parser("cancel", help="Cancel an operation")
    p.add_argument("operation_id")

    p = subs.add_parser("status", help="Show operation status")
    p.add_argument("operation_id")

    p = subs.add_parser("list", help="List operations for a target")
    p.add_argument("target_id")

    p = subs.add_parser("ready", help="List messages ready for delivery")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--json", action="store_true")

    p = subs.add_parser("confirm", help="Confirm a message was delivered")
    p.add_argument("message_id")

    subs.add_parser("resume", help="Apply overdue transitions now")
    subs.add_parser("stats", help="Show store statistics")

    p = subs.add_parser("ledger", help="Show the action ledger")
    p.add_argument("--operation", help="Filter by operation id")
    p.add_argument("--target", help="Filter by target id")
    p.add_argument("--verbose", "-v", action="store_true")

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args.log_level, stream=sys.stderr)

    config = load_config(base_path=args.config)
    config.setdefault("scheduler", {})["timers"] = "manual"
    if args.db:
        config.setdefault("store", {})["path"] = args.db

    engine = CampaignEngine.from_config(config)
    try:
        COMMANDS[args.command](args, engine)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
