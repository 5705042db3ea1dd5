#!/usr/bin/env python3
"""
Dispatch Sweep Script

Runs the dispatcher outside the API process. By default performs a single
sweep and exits; with --loop it keeps sweeping until interrupted.

Usage:
    python scripts/run_dispatch_sweep.py
    python scripts/run_dispatch_sweep.py --loop --interval 10
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fulfillment.db.session import close_engines, get_write_session_factory
from fulfillment.observability import get_logger, setup_logging
from fulfillment.services.dispatcher import Dispatcher

logger = get_logger(__name__)


async def run(loop: bool, interval: float | None, batch_size: int | None) -> int:
    """Run one sweep, or sweep until interrupted. Returns the exit code."""
    dispatcher = Dispatcher(
        get_write_session_factory(),
        batch_size=batch_size,
        interval_seconds=interval,
    )
    stop = asyncio.Event()

    try:
        if loop:
            await dispatcher.run_forever(stop)
            return 0

        report = await dispatcher.sweep()
        logger.info(
            "dispatch_sweep_script_finished",
            examined=report.examined,
            assigned=report.assigned,
            allocated=report.allocated,
            completed=report.completed,
            pending=report.pending,
            stale=report.stale,
            errors=report.errors,
        )
        return 1 if report.errors else 0
    finally:
        stop.set()
        await close_engines()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the request dispatcher")
    parser.add_argument("--loop", action="store_true", help="Keep sweeping until interrupted")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")
    parser.add_argument("--batch-size", type=int, default=None, help="Requests examined per sweep")
    args = parser.parse_args()

    setup_logging()
    try:
        sys.exit(asyncio.run(run(args.loop, args.interval, args.batch_size)))
    except KeyboardInterrupt:
        logger.info("dispatch_sweep_script_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
