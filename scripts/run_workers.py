#!/usr/bin/env python3
"""
RQ Worker Runner
Runs execution steps (generation queue) and sweep passes (maintenance queue).
Only needed with DISPATCH_MODE=rq; inline mode runs steps in the API process.

Usage:
    python scripts/run_workers.py                       # Both queues
    python scripts/run_workers.py --queues generation
    python scripts/run_workers.py --burst               # Drain and exit
    python scripts/run_workers.py --stats               # Print queue sizes
"""

import argparse
import json
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rq import Queue, Worker

from stylize.core.config import settings
from stylize.core.database import init_db
from stylize.core.redis import Queues, get_redis, redis_health_check
from stylize.workers.queue import get_queue_manager


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger("stylize.worker")

# Steps first: a worker always drains pending generations before sweeping
DEFAULT_QUEUES = [Queues.GENERATION, Queues.MAINTENANCE]


def require_redis():
    health = redis_health_check()
    if not health.get("connected"):
        logger.error(f"Cannot reach Redis at {health.get('url')}: {health.get('error')}")
        sys.exit(1)
    logger.info(f"Redis {health.get('redis_version')} at {health.get('url')}")


def run(queue_names, name=None, burst=False):
    connection = get_redis()
    worker = Worker(
        [Queue(q, connection=connection) for q in queue_names],
        connection=connection,
        name=name,
        job_monitoring_interval=5,
    )
    logger.info(f"Worker {worker.name} listening on {', '.join(queue_names)}")
    # The scheduler releases Retry(interval=...) steps back onto the queue
    worker.work(with_scheduler=True, burst=burst)


def main():
    parser = argparse.ArgumentParser(description="Run Stylize RQ workers")
    parser.add_argument(
        "--queues", "-q",
        nargs="+",
        default=DEFAULT_QUEUES,
        choices=DEFAULT_QUEUES,
        help="Queues to listen on (default: all)"
    )
    parser.add_argument("--name", "-n", default=None, help="Worker name")
    parser.add_argument(
        "--burst", "-b",
        action="store_true",
        help="Exit once the queues are empty"
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print queue statistics and exit"
    )
    args = parser.parse_args()

    require_redis()
    if args.stats:
        print(json.dumps(get_queue_manager().get_queue_stats(), indent=2))
        return

    if settings.DISPATCH_MODE != "rq":
        logger.warning("DISPATCH_MODE is not 'rq'; nothing will enqueue steps for this worker")
    init_db()
    run(args.queues, name=args.name, burst=args.burst)


if __name__ == "__main__":
    main()
