"""
Reconciliation Scheduler

Background jobs running inside the API process:
- replay callbacks that are still pending or whose commit failed
  (every WORKER_POLL_INTERVAL seconds)
- expire stale pending bookings (every SWEEP_INTERVAL_SECONDS)

Uses APScheduler's AsyncIOScheduler. worker.py runs the same two
cycles when a separate worker process is preferred.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from .pending_sweeper import PendingPaymentSweeper
from .reconciliation_service import CallbackProcessor

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None
_last_run: Dict[str, Dict] = {}

REPLAY_JOB_ID = "replay_mpesa_callbacks"
SWEEP_JOB_ID = "sweep_stale_pending_bookings"


def replay_pending_callbacks(db: Session, limit: Optional[int] = None) -> Dict:
    processed, skipped = CallbackProcessor(db).process_batch(
        limit=limit or settings.worker_batch_size
    )
    result = {"processed": processed, "skipped": skipped, "run_at": datetime.utcnow().isoformat()}
    if processed or skipped:
        logger.info(f"Callback replay: {processed} processed, {skipped} skipped")
    return result


def sweep_stale_bookings(db: Session) -> Dict:
    expired = PendingPaymentSweeper(db).sweep()
    return {"expired": expired, "run_at": datetime.utcnow().isoformat()}


def _run_job(name: str, job) -> None:
    db = SessionLocal()
    try:
        _last_run[name] = job(db)
    except Exception as e:
        db.rollback()
        logger.exception(f"Scheduled job {name} failed: {e}")
        _last_run[name] = {"error": str(e), "run_at": datetime.utcnow().isoformat()}
    finally:
        db.close()


async def run_replay_job():
    _run_job(REPLAY_JOB_ID, replay_pending_callbacks)


async def run_sweep_job():
    _run_job(SWEEP_JOB_ID, sweep_stale_bookings)


def start_reconciliation_scheduler() -> bool:
    """
    Start the background jobs.

    Returns:
        True if the scheduler is running
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Reconciliation scheduler is already running")
        return True

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        run_replay_job,
        IntervalTrigger(seconds=settings.worker_poll_interval),
        id=REPLAY_JOB_ID,
        name="Replay pending M-Pesa callbacks",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    _scheduler.add_job(
        run_sweep_job,
        IntervalTrigger(seconds=settings.sweep_interval_seconds),
        id=SWEEP_JOB_ID,
        name="Expire stale pending bookings",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    _scheduler.start()

    logger.info(
        f"Reconciliation scheduler started (replay every {settings.worker_poll_interval}s, "
        f"sweep every {settings.sweep_interval_seconds}s)"
    )
    return True


def stop_reconciliation_scheduler() -> None:
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Reconciliation scheduler stopped")
    _scheduler = None


def get_scheduler_status() -> Dict:
    if _scheduler is None or not _scheduler.running:
        return {"running": False, "jobs": [], "last_run": _last_run}

    jobs = []
    for job in _scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None
        })
    return {"running": True, "jobs": jobs, "last_run": _last_run}
