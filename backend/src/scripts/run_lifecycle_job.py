#!/usr/bin/env python3
"""
Run one lifecycle job once, outside the API process.

Useful for operators after an outage (catch up start/end sweeps, fire
overdue timers) and for cron-driven deployments that do not run the
in-process periodic jobs.

Usage:
    python -m backend.src.scripts.run_lifecycle_job <job>

Jobs:
    start-sweep         Transition published events whose start time has passed to live
    end-sweep           Transition live events whose end time has passed to ended
    no-show-sweep       Forfeit staked tickets of events that ended over an hour ago
    reconcile           Compare a sample of events/tickets with their time-derived status
    escrow-settlement   Retry escrow release/forfeit for settled tickets without a tx hash
    resume-timers       Fire every overdue durable timer

Examples:
    python -m backend.src.scripts.run_lifecycle_job reconcile
    python -m backend.src.scripts.run_lifecycle_job end-sweep --no-escrow

The job summary is printed as JSON. Exit code is 1 if any candidate failed.
"""

import argparse
import asyncio
import json
import signal
import sys

from backend.src.runtime import JOB_NAMES


def signal_handler(signum, frame):
    """Handle CTRL+C gracefully."""
    print("\n\nOperation interrupted by user.")
    sys.exit(130)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run one lifecycle job once and print its summary.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s reconcile
  %(prog)s end-sweep --no-escrow

Notes:
  - Every job is idempotent; running it twice is safe
  - Timers created while the job runs are persisted and armed by the API process
        """
    )

    parser.add_argument(
        "job",
        choices=JOB_NAMES,
        help="Job to run"
    )
    parser.add_argument(
        "--no-escrow",
        action="store_true",
        help="Skip escrow calls (settlement is retried later by escrow-settlement)"
    )

    return parser.parse_args(argv)


def run(job: str, no_escrow: bool = False) -> dict:
    """Wire a runtime around a fresh session and run the job on a new event loop."""
    from backend.src.db.database import SessionLocal

    db = SessionLocal()
    try:
        return asyncio.run(_run_job(db, job, no_escrow))
    finally:
        db.close()


async def _run_job(db, job: str, no_escrow: bool) -> dict:
    from backend.src.runtime import LifecycleRuntime

    runtime = LifecycleRuntime(db)
    if no_escrow:
        runtime.lifecycle.hooks = None
    try:
        summary = await runtime.run_job(job)
        # Let escrow calls started by the job finish before the loop closes
        await runtime.hooks.wait_idle()
        return summary
    finally:
        await runtime.stop()


def main(argv=None) -> int:
    """Main entry point."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    args = parse_args(argv)

    from backend.src.utils.logging_config import init_logging
    init_logging()

    summary = run(args.job, no_escrow=args.no_escrow)
    print(json.dumps(summary, indent=2, default=str))

    return 1 if summary.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
