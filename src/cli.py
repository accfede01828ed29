"""
Settlement Rail CLI

Commands:
  serve         - Run the settlement API server
  route         - Route and execute a settlement
  usage         - Show today's per-rail usage against daily limits
  queue         - List the overflow queue, or drain it for a currency
  verify-audit  - Verify audit hash chains
"""

import argparse
import json
import os
import sys
from datetime import date


def _load_config():
    from rails import ConfigurationError, SettlementConfig

    try:
        return SettlementConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)


def _print_results(results):
    from settlement import summarize

    for r in results:
        line = f"  {r.status.value:<24} {r.rail:<16} {r.amount:>12}"
        if r.reason:
            line += f"  ({r.reason})"
        print(line)
    summary = summarize(results)
    print(f"Routed: {summary['routed']}  Queued: {summary['queued']}  Total: {summary['total']}")


def cmd_serve(args):
    """Run the settlement API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Settlement Rail on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_route(args):
    """Route and execute a settlement."""
    from audit import AuditConfigurationError
    from ledger import LockTimeoutError
    from settlement import IdempotencyConflictError, SettlementOrchestrator

    config = _load_config()
    orchestrator = SettlementOrchestrator.from_config(config)

    try:
        results = orchestrator.route_and_execute(
            args.amount,
            args.currency,
            destination=args.destination,
            idempotency_key=args.idempotency_key,
        )
    except IdempotencyConflictError as e:
        print(f"Conflict: {e}")
        sys.exit(3)
    except LockTimeoutError as e:
        print(f"Ledger busy, nothing was recorded for this run: {e}")
        sys.exit(4)
    except AuditConfigurationError as e:
        print(f"Audit log unavailable: {e}")
        sys.exit(2)

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        print(f"Settlement of {args.amount} {args.currency.upper()}")
        _print_results(results)


def cmd_usage(args):
    """Show per-rail usage for today."""
    from ledger import SettlementLedger

    config = _load_config()
    ledger = SettlementLedger.from_config(config)
    day = args.day or ledger.today()
    usage = ledger.usage_snapshot(day)

    print(f"Rail usage for {day}")
    print("=" * 60)
    for rail, policy in config.policies.items():
        used = usage.get(rail.value, 0)
        print(
            f"{rail.value:<16} {used:>12} / {policy.daily_limit:<12} {policy.currency}"
            f"  remaining {ledger.remaining_capacity(rail, policy.daily_limit, day)}"
        )


def cmd_queue(args):
    """List or drain the overflow queue."""
    from ledger import SettlementLedger
    from settlement import SettlementOrchestrator

    config = _load_config()

    if args.drain:
        if not args.currency:
            print("Error: --currency required with --drain")
            sys.exit(1)
        orchestrator = SettlementOrchestrator.from_config(config)
        results = orchestrator.drain_queue(args.currency, destination=args.destination)
        if not results:
            print("Queue empty")
            return
        print(f"Drained queue for {args.currency.upper()}")
        _print_results(results)
        return

    ledger = SettlementLedger.from_config(config)
    items = ledger.list_queued(currency=args.currency)
    print(f"Queued items: {len(items)}  Total: {sum(i.amount for i in items)}")
    for item in items:
        print(
            f"  {item.id:<36} {item.rail:<16} {item.amount:>12} {item.currency:<5}"
            f" {item.reason.value:<18} {item.status.value}"
        )


def cmd_verify_audit(args):
    """Verify audit hash chains."""
    from audit import AuditLog
    from rails import ConfigurationError

    config = _load_config()
    try:
        secret = config.require_audit_secret()
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(2)

    base_dir = config.audit_directory
    if args.day:
        path = base_dir / f"{args.day}.jsonl"
        results = {path.name: AuditLog.verify_chain(path, secret)}
    else:
        results = AuditLog.verify_directory(base_dir, secret)

    if not results:
        print(f"No audit files under {base_dir}")
        return

    failed = False
    for name, result in results.items():
        if result.ok:
            print(f"  OK      {name}  ({result.entries} entries)")
        else:
            failed = True
            print(f"  FAILED  {name}  {result.error} at line {result.line}")
    if failed:
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Settlement Rail - Multi-rail settlement routing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # route
    route_parser = subparsers.add_parser("route", help="Route and execute a settlement")
    route_parser.add_argument("amount", type=int, help="Amount in minor units")
    route_parser.add_argument("currency", help="Currency code")
    route_parser.add_argument("--destination", help="Override the configured destination")
    route_parser.add_argument("--idempotency-key", help="Caller-chosen key for safe retries")
    route_parser.add_argument("--json", action="store_true", help="Print results as JSON")

    # usage
    usage_parser = subparsers.add_parser("usage", help="Show daily usage")
    usage_parser.add_argument("--day", type=lambda s: date.fromisoformat(s).isoformat(), help="YYYY-MM-DD")

    # queue
    queue_parser = subparsers.add_parser("queue", help="List or drain the overflow queue")
    queue_parser.add_argument("--currency", help="Filter by currency")
    queue_parser.add_argument("--drain", action="store_true", help="Re-route queued amounts")
    queue_parser.add_argument("--destination", help="Destination for drained amounts")

    # verify-audit
    verify_parser = subparsers.add_parser("verify-audit", help="Verify audit hash chains")
    verify_parser.add_argument("--day", type=lambda s: date.fromisoformat(s).isoformat(), help="YYYY-MM-DD")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "route":
        cmd_route(args)
    elif args.command == "usage":
        cmd_usage(args)
    elif args.command == "queue":
        cmd_queue(args)
    elif args.command == "verify-audit":
        cmd_verify_audit(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
