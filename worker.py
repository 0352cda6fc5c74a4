#!/usr/bin/env python
"""
Reconciliation Worker

Standalone background process that:
1. Replays M-Pesa callbacks that are pending or whose commit failed
2. Expires stale pending bookings

Run with:
    python worker.py

Run this OR the in-process scheduler (SCHEDULER_ENABLED=true), not
necessarily both; running both is safe because rows are picked with
SKIP LOCKED on PostgreSQL.
"""

import os
import sys
import time
import logging
import signal

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from safari_bookings.config import settings
from safari_bookings.database import SessionLocal
from safari_bookings.services.reconciliation_scheduler import (
    replay_pending_callbacks, sweep_stale_bookings
)
from safari_bookings.utils.logging_config import setup_logging

setup_logging(level=settings.log_level, json_format=settings.log_json)
logger = logging.getLogger("worker")

POLL_INTERVAL = settings.worker_poll_interval
SWEEP_EVERY = max(1, settings.sweep_interval_seconds // max(1, POLL_INTERVAL))
RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current batch...")
    RUNNING = False


def run_cycle(cycle: int) -> None:
    db = SessionLocal()
    try:
        start_time = time.time()
        replay = replay_pending_callbacks(db)
        expired = 0
        if cycle % SWEEP_EVERY == 0:
            expired = sweep_stale_bookings(db)["expired"]

        if replay["processed"] + replay["skipped"] + expired > 0:
            logger.info(
                f"Cycle {cycle}: callbacks {replay['processed']} processed / "
                f"{replay['skipped']} skipped | {expired} expired | "
                f"{time.time() - start_time:.2f}s"
            )
    except Exception as e:
        db.rollback()
        logger.exception(f"Error in cycle {cycle}: {e}")
    finally:
        db.close()


def run_worker():
    """Main worker loop"""
    logger.info(
        f"Starting reconciliation worker (poll {POLL_INTERVAL}s, "
        f"batch {settings.worker_batch_size}, sweep every {SWEEP_EVERY} cycles)"
    )

    cycle = 0
    while RUNNING:
        cycle += 1
        run_cycle(cycle)
        if RUNNING:
            time.sleep(POLL_INTERVAL)

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_worker()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
