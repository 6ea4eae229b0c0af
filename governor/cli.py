"""
Command-line interface for Governor.

Provides commands for:
- Checking and recording quota usage
- Inspecting a user's usage
- Enqueueing and processing background tasks
- Ledger and queue maintenance
"""

import argparse
import json
import logging
import sys
from datetime import timedelta

from governor.admission import AdmissionController
from governor.config import get_db_path, get_store_timeout, load_tier_plans
from governor.executor import TaskExecutor
from governor.models import Surface, TaskPriority
from governor.queue import TaskQueue
from governor.registry import load_registry
from governor.storage import SQLiteStorage, StoreError
from governor.usage import UsageRecorder


def _storage(args) -> SQLiteStorage:
    return SQLiteStorage(db_path=args.db or get_db_path(), timeout=get_store_timeout())


def _emit(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_check(args):
    """Run an admission check without recording anything."""
    plans = load_tier_plans(args.tiers) if args.tiers else None
    controller = AdmissionController(_storage(args), plans=plans)
    decision = controller.check(
        identity=args.identity,
        ip=args.ip,
        endpoint=args.endpoint,
        tier=args.tier,
        surface=args.surface,
    )
    _emit(decision.to_dict())


def cmd_record(args):
    """Record a completed request."""
    recorder = UsageRecorder(_storage(args))
    event = recorder.record(
        identity=args.identity,
        ip=args.ip,
        endpoint=args.endpoint,
        token_count=args.tokens,
        surface=args.surface,
    )
    _emit({
        "event_id": event.event_id,
        "identity": event.identity,
        "endpoint": event.endpoint,
        "timestamp": event.timestamp.isoformat(),
        "token_count": args.tokens,
    })


def cmd_usage(args):
    """Show token usage and legacy per-endpoint counters."""
    storage = _storage(args)
    recorder = UsageRecorder(storage)
    plans = load_tier_plans(args.tiers) if args.tiers else None
    budget = AdmissionController(storage, plans=plans).check_token_limit(args.identity, args.tier)
    _emit({
        "identity": args.identity,
        "tokens": recorder.token_usage_breakdown(args.identity),
        "budget": {
            "allowed": budget.allowed,
            "tokens_used": budget.tokens_used,
            "token_limit": budget.token_limit,
            "remaining": budget.remaining,
            "percentage": budget.percentage,
            "reset_at": budget.reset_at.isoformat(),
        },
        "endpoints": recorder.usage_stats(args.identity),
    })


def cmd_enqueue(args):
    """Enqueue a background task."""
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"payload is not valid JSON: {exc}") from exc

    queue = TaskQueue(_storage(args))
    task = queue.enqueue(
        args.type,
        payload,
        args.workspace,
        priority=TaskPriority(args.priority),
        max_retries=args.max_retries,
        timeout_seconds=args.timeout,
    )
    _emit(task.to_dict())


def cmd_process(args):
    """Claim and run one batch of tasks."""
    queue = TaskQueue(_storage(args))
    executor = TaskExecutor(queue, load_registry(args.handlers))
    processed = executor.process_batch(max_count=args.max_count)
    _emit({"processed": processed, "stats": queue.stats().to_dict()})


def cmd_stats(args):
    """Show task counts by status."""
    stats = TaskQueue(_storage(args)).stats(workspace_id=args.workspace)
    _emit({**stats.to_dict(), "total": stats.total})


def cmd_prune(args):
    """Delete old rate events."""
    recorder = UsageRecorder(_storage(args))
    removed = recorder.prune_rate_events(retention=timedelta(hours=args.retention_hours))
    _emit({"pruned": removed})


def cmd_recover(args):
    """Fail running tasks that exceeded their timeout."""
    queue = TaskQueue(_storage(args))
    timeout = timedelta(seconds=args.timeout) if args.timeout else None
    _emit({"recovered": queue.recover_stale(timeout=timeout)})


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Governor: quota governance and background task CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Would this request be admitted?
  governor check user_123 --endpoint oscar/ask --tier pro --surface vscode

  # Record a completed request
  governor record user_123 --endpoint oscar/ask --tokens 1850

  # Enqueue and process tasks
  governor enqueue index-document --workspace ws-1 --payload '{"documentId": "doc-1"}'
  governor process --handlers myapp.tasks:registry --max-count 5

  # Maintenance (run from cron)
  governor prune --retention-hours 24
  governor recover
""",
    )
    parser.add_argument("--db", help="SQLite database path (default: $GOVERNOR_DB_PATH or governor.db)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    surfaces = [s.value for s in Surface]

    # Check command
    check_parser = subparsers.add_parser("check", help="Run an admission check")
    check_parser.add_argument("identity", help="User id")
    check_parser.add_argument("--ip", default="0.0.0.0", help="Client IP")
    check_parser.add_argument("--endpoint", "-e", required=True, help="Endpoint key")
    check_parser.add_argument("--tier", "-t", default=None, help="Tier name (default: pro)")
    check_parser.add_argument("--surface", "-s", default="web", choices=surfaces)
    check_parser.add_argument("--tiers", help="Path to tier plans JSON file")

    # Record command
    record_parser = subparsers.add_parser("record", help="Record a completed request")
    record_parser.add_argument("identity", help="User id")
    record_parser.add_argument("--ip", default="0.0.0.0", help="Client IP")
    record_parser.add_argument("--endpoint", "-e", required=True, help="Endpoint key")
    record_parser.add_argument("--tokens", "-n", type=int, default=0, help="Tokens consumed")
    record_parser.add_argument("--surface", "-s", default="web", choices=surfaces)

    # Usage command
    usage_parser = subparsers.add_parser("usage", help="Show a user's usage")
    usage_parser.add_argument("identity", help="User id")
    usage_parser.add_argument("--tier", "-t", default=None, help="Tier name (default: pro)")
    usage_parser.add_argument("--tiers", help="Path to tier plans JSON file")

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a background task")
    enqueue_parser.add_argument("type", help="Task type")
    enqueue_parser.add_argument("--workspace", "-w", required=True, help="Workspace id")
    enqueue_parser.add_argument("--payload", "-p", default="{}", help="JSON payload")
    enqueue_parser.add_argument("--priority", default="normal",
                                choices=[p.value for p in TaskPriority])
    enqueue_parser.add_argument("--max-retries", type=int, default=3)
    enqueue_parser.add_argument("--timeout", type=float, default=300.0,
                                help="Handler timeout in seconds")

    # Process command
    process_parser = subparsers.add_parser("process", help="Process one batch of tasks")
    process_parser.add_argument("--handlers", required=True,
                                help="HandlerRegistry to use, as package.module:attribute")
    process_parser.add_argument("--max-count", "-n", type=int, default=5)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show task counts by status")
    stats_parser.add_argument("--workspace", "-w", help="Limit to one workspace")

    # Prune command
    prune_parser = subparsers.add_parser("prune", help="Delete old rate events")
    prune_parser.add_argument("--retention-hours", type=float, default=24.0)

    # Recover command
    recover_parser = subparsers.add_parser("recover", help="Fail stale running tasks")
    recover_parser.add_argument("--timeout", type=float, default=None,
                                help="Override each task's own timeout, in seconds")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Dispatch to command handler
    commands = {
        "check": cmd_check,
        "record": cmd_record,
        "usage": cmd_usage,
        "enqueue": cmd_enqueue,
        "process": cmd_process,
        "stats": cmd_stats,
        "prune": cmd_prune,
        "recover": cmd_recover,
    }

    try:
        commands[args.command](args)
    except (ValueError, ImportError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except StoreError as exc:
        print(f"Store error: {exc}", file=sys.stderr)
        sys.exit(3)


if __name__ == "__main__":
    main()
