"""
Command-line interface for replyguard.

Operates on the SQLite guardrail store:
- Initializing the database
- Running the budget sweep
- Inspecting rate limits
- Reading and writing owner config
- Recording costs and re-enabling features
"""

import argparse
import json
import logging
import sys
from typing import Optional

from replyguard import config
from replyguard.budget import BudgetMonitor
from replyguard.models import OwnerGuardrailConfig
from replyguard.pipeline import build_notifier
from replyguard.rate_limiter import RateLimiter
from replyguard.storage import SQLiteGuardrailStore
from replyguard.validation import validate_owner_config


def _store(args) -> SQLiteGuardrailStore:
    return SQLiteGuardrailStore(db_path=args.db)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init(args):
    """Create the database schema."""
    store = _store(args)
    store.close()
    print(f"Initialized guardrail store at {args.db}")


def cmd_sweep(args):
    """Run the budget sweep once."""
    store = _store(args)
    try:
        notifier = None if args.no_notify else build_notifier(store)
        report = BudgetMonitor(store, notifier=notifier).sweep(period_id=args.period)
    finally:
        store.close()

    print("\n" + "=" * 60)
    print("BUDGET SWEEP")
    print("=" * 60)
    print(f"Period: {report.period_id}")
    print(f"Owners checked: {report.owners_checked}")
    print(f"Alerts sent: {report.alerts_sent}")
    print(f"Features disabled: {report.features_disabled}")
    print(f"Duration: {report.duration_ms}ms")
    if report.failures:
        print(f"Failures: {', '.join(report.failures)}")
    print("=" * 60)


def cmd_rate_status(args):
    """Show rate limit usage for an owner and operation."""
    store = _store(args)
    try:
        status = RateLimiter(store).check(args.owner, args.operation)
    finally:
        store.close()
    _print_json(status.to_dict())


def _config_dict(owner_config: OwnerGuardrailConfig) -> dict:
    return {
        "owner_id": owner_config.owner_id,
        "feature_enabled": owner_config.feature_enabled,
        "require_approval": owner_config.require_approval,
        "max_auto_actions_per_day": owner_config.max_auto_actions_per_day,
        "escalation_sentiment_threshold": owner_config.escalation_sentiment_threshold,
    }


def cmd_config_get(args):
    """Print an owner's guardrail config (defaults if none stored)."""
    store = _store(args)
    try:
        owner_config = store.get_owner_config(args.owner) or OwnerGuardrailConfig.default(args.owner)
        flags = store.get_feature_flags(args.owner)
    finally:
        store.close()
    data = _config_dict(owner_config)
    data["features_disabled"] = flags.features_disabled
    data["disabled_reason"] = flags.disabled_reason
    _print_json(data)


def cmd_config_set(args):
    """Update fields of an owner's guardrail config."""
    store = _store(args)
    try:
        owner_config = store.get_owner_config(args.owner) or OwnerGuardrailConfig.default(args.owner)
        if args.enabled is not None:
            owner_config.feature_enabled = args.enabled
        if args.require_approval is not None:
            owner_config.require_approval = args.require_approval
        if args.max_per_day is not None:
            owner_config.max_auto_actions_per_day = args.max_per_day
        if args.escalation_threshold is not None:
            owner_config.escalation_sentiment_threshold = args.escalation_threshold
        validate_owner_config(owner_config)
        store.set_owner_config(owner_config)
    finally:
        store.close()
    _print_json(_config_dict(owner_config))


def cmd_record_cost(args):
    """Add a billed operation to an owner's record for today."""
    store = _store(args)
    try:
        record = BudgetMonitor(store).record_cost(
            args.owner,
            cents=args.cents,
            operation=args.operation,
            budget_limit_cents=args.budget_cents,
        )
    finally:
        store.close()
    _print_json({
        "owner_id": record.owner_id,
        "period_id": record.period_id,
        "total_cost_cents": record.total_cost_cents,
        "budget_limit_cents": record.budget_limit_cents,
        "used_percent": round(record.used_percent, 2),
    })


def cmd_enable_features(args):
    """Clear the budget kill switch for an owner."""
    store = _store(args)
    try:
        cleared = store.enable_features(args.owner)
    finally:
        store.close()
    print(f"Features {'re-enabled' if cleared else 'were not disabled'} for {args.owner}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replyguard",
        description="Guardrail administration for automated chat replies",
    )
    parser.add_argument("--db", default=config.get_settings().db_path,
                        help="SQLite database path (default: $REPLYGUARD_DB_PATH or replyguard.db)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init", help="Create the database schema")

    sweep_parser = subparsers.add_parser("sweep", help="Run the budget sweep once")
    sweep_parser.add_argument("--period", help="Period id (default: today, daily-YYYY-MM-DD)")
    sweep_parser.add_argument("--no-notify", action="store_true", help="Do not send push notifications")

    rate_parser = subparsers.add_parser("rate-status", help="Show rate limit usage")
    rate_parser.add_argument("owner", help="Owner id")
    rate_parser.add_argument("operation", help="Operation kind, e.g. auto_response")

    get_parser = subparsers.add_parser("config-get", help="Show owner guardrail config")
    get_parser.add_argument("owner", help="Owner id")

    set_parser = subparsers.add_parser("config-set", help="Update owner guardrail config")
    set_parser.add_argument("owner", help="Owner id")
    enabled = set_parser.add_mutually_exclusive_group()
    enabled.add_argument("--enabled", dest="enabled", action="store_const", const=True)
    enabled.add_argument("--disabled", dest="enabled", action="store_const", const=False)
    approval = set_parser.add_mutually_exclusive_group()
    approval.add_argument("--require-approval", dest="require_approval", action="store_const", const=True)
    approval.add_argument("--no-require-approval", dest="require_approval", action="store_const", const=False)
    set_parser.add_argument("--max-per-day", type=int, help="Daily automated action cap")
    set_parser.add_argument("--escalation-threshold", type=float,
                            help="Sentiment below this escalates (-1.0 to 1.0)")

    cost_parser = subparsers.add_parser("record-cost", help="Record a billed operation")
    cost_parser.add_argument("owner", help="Owner id")
    cost_parser.add_argument("cents", type=int, help="Cost in cents")
    cost_parser.add_argument("--operation", default="faq_detection", help="Operation kind")
    cost_parser.add_argument("--budget-cents", type=int, help="Daily budget ceiling in cents")

    enable_parser = subparsers.add_parser("enable-features", help="Clear the budget kill switch")
    enable_parser.add_argument("owner", help="Owner id")

    return parser


COMMANDS = {
    "init": cmd_init,
    "sweep": cmd_sweep,
    "rate-status": cmd_rate_status,
    "config-get": cmd_config_get,
    "config-set": cmd_config_set,
    "record-cost": cmd_record_cost,
    "enable-features": cmd_enable_features,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        COMMANDS[args.command](args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
