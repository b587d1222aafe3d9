#!/usr/bin/env python3
"""
Recovery Sweep Runner
Re-drives jobs that stopped making progress.

Usage:
    python scripts/run_sweep.py                  # Loop every SWEEP_INTERVAL_SECONDS
    python scripts/run_sweep.py --once           # Single pass, print the report
    python scripts/run_sweep.py --interval 30
    python scripts/run_sweep.py --enqueue        # Hand one pass to the RQ maintenance queue
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stylize.core.config import settings
from stylize.core.database import init_db
from stylize.workers.dispatch import RQDispatcher, get_dispatcher
from stylize.workers.queue import get_queue_manager
from stylize.workers.sweep import RecoverySweep


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger("stylize.sweep")


async def run(args):
    dispatcher = get_dispatcher()
    sweep = RecoverySweep(dispatcher)

    if args.enqueue:
        job = get_queue_manager().enqueue_sweep()
        print(job.id)
        return

    if args.once:
        report = await sweep.run_once()
        # Inline re-drives run in this process; wait for them before exiting
        await dispatcher.drain()
        print(json.dumps(report.as_dict()))
        return

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await sweep.run_forever(interval=args.interval, stop=stop)
    await dispatcher.drain()


def main():
    parser = argparse.ArgumentParser(description="Run the Stylize recovery sweep")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass and exit"
    )
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Enqueue one pass on the maintenance queue for an RQ worker"
    )
    parser.add_argument(
        "--interval", "-i",
        type=float,
        default=settings.SWEEP_INTERVAL_SECONDS,
        help="Seconds between passes (default: SWEEP_INTERVAL_SECONDS)"
    )
    args = parser.parse_args()

    init_db()
    if not isinstance(get_dispatcher(), RQDispatcher):
        logger.info("Dispatch mode is inline; re-driven steps run inside this process")
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
