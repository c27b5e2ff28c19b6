"""
CLI script for the scheduled notification pipeline.

Usage:
    # Evaluate automation rules and send matching emails
    uv run python -m notifications.run_pipeline --rules

    # Deliver due queued emails, then check system health
    uv run python -m notifications.run_pipeline --queue --health

    # Everything, in order: rules, queue, health
    uv run python -m notifications.run_pipeline --all

    # Dry run (select and render, don't send or write)
    uv run python -m notifications.run_pipeline --all --dry-run
"""

import argparse
from typing import Any, Dict

from notifications.health_monitor import run_health_check
from notifications.queue_worker import drain_queue
from notifications.rule_processor import process_rules
from shared.config import load_config
from shared.utils import print_summary, utc_now


def run(
    rules: bool = False,
    queue: bool = False,
    health: bool = False,
    batch_size: int | None = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Run the selected stages once and return their results."""
    config = load_config()
    now = utc_now()
    results: Dict[str, Any] = {}

    if rules:
        print(f"Processing automation rules at {now.isoformat()}")
        stats = process_rules(now=now, config=config, dry_run=dry_run)
        print_summary("Automation Rules Complete", stats.model_dump())
        results["rules"] = stats

    if queue:
        print(f"Draining notification queue at {now.isoformat()}")
        stats = drain_queue(now=now, batch_size=batch_size, config=config, dry_run=dry_run)
        print_summary("Queue Delivery Complete", stats.model_dump())
        results["queue"] = stats

    if health:
        if dry_run:
            print("[DRY RUN] Skipping health check (it records alerts)")
        else:
            response = run_health_check(now=now, config=config)
            if response["success"]:
                report = response["health_check"]
                print(f"Health: {report['status'].upper()} - {report['message']}")
            else:
                print(f"Health check failed: {response['error']}")
            results["health"] = response

    return results


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run the automated email notification pipeline"
    )

    parser.add_argument("--rules", action="store_true", help="Process automation rules")
    parser.add_argument("--queue", action="store_true", help="Deliver due queued emails")
    parser.add_argument("--health", action="store_true", help="Check email system health")
    parser.add_argument("--all", action="store_true", help="Run rules, queue and health")

    parser.add_argument(
        "--batch-size",
        type=int,
        help="Maximum queued emails to deliver (defaults to NOTIFICATION_BATCH_SIZE or 50)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry run mode (don't actually send emails)",
    )

    args = parser.parse_args()

    if not (args.rules or args.queue or args.health or args.all):
        parser.error("Must specify at least one of --rules, --queue, --health, --all")

    if args.batch_size is not None and args.batch_size < 1:
        parser.error("--batch-size must be a positive integer")

    run(
        rules=args.rules or args.all,
        queue=args.queue or args.all,
        health=args.health or args.all,
        batch_size=args.batch_size,
        dry_run=args.dry_run,
    )


if __name__ == "__main__":
    main()
