"""
Sync engine CLI commands.

Run syncs by hand, run the scheduler in the foreground, inspect state,
manage failed page jobs and query ledger aggregations.
"""

import asyncio
import sys
from typing import Optional

import structlog

from ledgersync.aggregation.engine import AggregationEngine
from ledgersync.core.config import get_settings
from ledgersync.core.logging import configure_logging
from ledgersync.db.init import create_tables
from ledgersync.sync.queue import JobNotFoundError
from ledgersync.sync.service import SyncService

logger = structlog.get_logger()


def print_status(status: dict):
    """Pretty print sync status."""
    print("\n=== Transaction Sync Status ===\n")
    print(f"Enabled: {status['enabled']}")
    print(f"Source: {status['source']}")

    state = status["state"]
    print(f"\n--- Stream ---")
    print(f"Stream: {state['stream_key']}")
    print(f"Watermark: {state['last_sync_time'] or 'Never synced'}")
    if state.get("run_id"):
        print(f"Run in flight: {state['run_id']} (lease until {state['lease_expires_at']})")

    print(f"\n--- Page Jobs ---")
    for job_status, count in status["queue"]["jobs"].items():
        print(f"{job_status.capitalize()}: {count}")

    orchestrator = status["orchestrator"]
    if orchestrator["last_run"]:
        run = orchestrator["last_run"]
        print(f"\n--- Last Run ---")
        print(f"Run ID: {run['run_id']}")
        print(f"Status: {run['status']}")
        print(f"Duration: {run['duration_seconds']:.2f}s")
        print(f"Pages: {run['total_pages']}")
        print(f"Fetched: {run['records_fetched']}")
        print(f"Inserted: {run['records_inserted']}")
        print(f"Duplicates: {run['records_duplicate']}")
        if run["error_count"] > 0:
            print(f"Errors: {run['error_count']}")
    print()


def print_run_result(result: dict):
    print(f"\nRun ID: {result['run_id']}")
    print(f"Status: {result['status']}")
    if result["status"] == "success":
        print(f"Window: {result['window_start']} -> {result['window_end']}")
        print(f"Pages: {result['total_pages']}")
        print(f"Fetched: {result['records_fetched']}")
        print(f"Inserted: {result['records_inserted']}")
        print(f"Duplicates: {result['records_duplicate']}")
    elif result["status"] == "failed":
        print(f"Error: {result['error']}")
        print(f"Watermark kept at: {result['watermark']}")
    if "duration_seconds" in result:
        print(f"Duration: {result['duration_seconds']:.2f}s")


async def sync_command():
    """Run a single sync with in-process page-job workers."""
    await create_tables()
    service = SyncService()
    print("Starting sync run...")

    result = await service.run_now()

    print_run_result(result)
    return 0 if result["status"] != "failed" else 1


async def run_command():
    """Run the scheduler and workers until interrupted."""
    await create_tables()
    service = SyncService()
    print("Starting transaction sync...")
    print(f"Interval: {service.config.interval_seconds} seconds")
    print(f"Rate limit: {service.config.rate_limit.limit} per {service.config.rate_limit.window_seconds}s")
    print(f"Press Ctrl+C to stop\n")

    await service.start()
    try:
        while True:
            await asyncio.sleep(1)
    finally:
        print("\nShutting down...")
        await service.stop()
        print("Sync stopped.")


async def status_command():
    """Show stream watermark, queue counts and in-process history."""
    await create_tables()
    service = SyncService()
    print_status(await service.get_status())
    return 0


async def failed_jobs_command(limit: Optional[int] = None):
    """List page jobs that exhausted their attempts."""
    await create_tables()
    service = SyncService()
    jobs = await service.queue.list_failed(limit=limit or 50)
    if not jobs:
        print("No failed jobs.")
        return 0

    print(f"\n=== Failed Page Jobs ({len(jobs)}) ===\n")
    for job in jobs:
        data = job["data"]
        print(
            f"#{job['job_id']} page {data.get('page')} of run {data.get('parent_run_id')}: "
            f"{job['attempts_made']}/{job['max_attempts']} attempts, "
            f"failed {job['finished_at']}"
        )
        print(f"    {job['last_error']}")
    print()
    return 0


async def retry_job_command(job_id: int):
    """Requeue a failed page job."""
    await create_tables()
    service = SyncService()
    try:
        handle = await service.queue.retry_job(job_id)
    except JobNotFoundError as e:
        print(f"Cannot retry: {e}")
        return 1
    print(f"Job {handle.job_id} requeued.")
    return 0


async def balance_command(user_id: str):
    """Show a user's aggregated balance."""
    await create_tables()
    balance = await AggregationEngine().balance_for(user_id)
    print(f"\n=== Balance for {balance.user_id} ===\n")
    print(f"Earned:   {balance.earned}")
    print(f"Spent:    {balance.spent}")
    print(f"Payout:   {balance.payout}")
    print(f"Balance:  {balance.balance}")
    print(f"Paid out: {balance.paid_out}")
    print()
    return 0


async def payouts_command():
    """Show requested payout totals per user."""
    await create_tables()
    payouts = await AggregationEngine().pending_payouts()
    if not payouts:
        print("No payouts requested.")
        return 0
    print("\n=== Requested Payouts ===\n")
    for payout in payouts:
        print(f"{payout.user_id}: {payout.amount}")
    print()
    return 0


def main():
    """Main CLI entry point."""
    if len(sys.argv) < 2:
        print("Usage: python -m ledgersync.sync.cli <command> [options]")
        print("\nCommands:")
        print("  sync                 Run a single sync now")
        print("  run                  Run the scheduler continuously")
        print("  status               Show watermark, queue and run status")
        print("  failed-jobs [limit]  List page jobs that exhausted their attempts")
        print("  retry-job <id>       Requeue a failed page job")
        print("  balance <user_id>    Show a user's aggregated balance")
        print("  payouts              Show requested payouts per user")
        print("\nExamples:")
        print("  python -m ledgersync.sync.cli sync")
        print("  python -m ledgersync.sync.cli retry-job 42")
        print("  python -m ledgersync.sync.cli balance 074092")
        return 1

    settings = get_settings()
    configure_logging(settings.ENV, settings.DEBUG)
    command = sys.argv[1]

    try:
        if command == "sync":
            return asyncio.run(sync_command())
        elif command == "run":
            return asyncio.run(run_command())
        elif command == "status":
            return asyncio.run(status_command())
        elif command == "failed-jobs":
            limit = int(sys.argv[2]) if len(sys.argv) > 2 else None
            return asyncio.run(failed_jobs_command(limit))
        elif command == "retry-job":
            if len(sys.argv) < 3:
                print("Usage: python -m ledgersync.sync.cli retry-job <id>")
                return 1
            return asyncio.run(retry_job_command(int(sys.argv[2])))
        elif command == "balance":
            if len(sys.argv) < 3:
                print("Usage: python -m ledgersync.sync.cli balance <user_id>")
                return 1
            return asyncio.run(balance_command(sys.argv[2]))
        elif command == "payouts":
            return asyncio.run(payouts_command())
        else:
            print(f"Unknown command: {command}")
            return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except Exception as e:
        print(f"Error: {str(e)}")
        logger.exception("cli_error", command=command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
