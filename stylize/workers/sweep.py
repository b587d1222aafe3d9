"""
Recovery Sweep
Re-drives queued/running jobs that stopped making progress.

Safe to run from several processes at once: each re-drive is claimed by a
conditional touch of updated_at, and the execution step is idempotent.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from stylize.core.config import settings as default_settings
from stylize.core.database import SessionLocal
from stylize.models.job import version_key
from stylize.schemas.job import InitialStep, parse_payload
from stylize.services.jobs import JobRepository, failure_record
from stylize.workers.base import ErrorCode, public_message

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    found: int = 0
    redriven: int = 0
    force_failed: int = 0
    skipped: int = 0
    dispatch_errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "found": self.found,
            "redriven": self.redriven,
            "force_failed": self.force_failed,
            "skipped": self.skipped,
            "dispatch_errors": self.dispatch_errors,
        }


class RecoverySweep:
    def __init__(
        self,
        dispatcher,
        session_factory: Callable[[], Session] = SessionLocal,
        settings=default_settings,
    ):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.settings = settings

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.utcnow()
        stale_before = now - timedelta(seconds=self.settings.STALE_JOB_SECONDS)
        report = SweepReport()

        db = self.session_factory()
        repo = JobRepository(db)
        try:
            jobs = repo.find_stale(stale_before, now, limit=self.settings.SWEEP_BATCH_SIZE)
            # Snapshot before any commit expires the loaded rows
            candidates = [
                (job.id, job.updated_at, job.attempts, len(job.versions), job.pending_step)
                for job in jobs
            ]
            report.found = len(candidates)

            for job_id, updated_at, attempts, version_count, pending_step in candidates:
                if attempts >= self.settings.MAX_ATTEMPTS:
                    self._force_fail(repo, job_id, version_count, pending_step, now)
                    report.force_failed += 1
                    continue

                if not repo.touch(job_id, updated_at, now):
                    # Another sweeper or a live execution got there first
                    report.skipped += 1
                    continue

                payload = pending_step or InitialStep(
                    job_id=job_id, requested_version_id=version_key(version_count + 1)
                ).model_dump()
                try:
                    self.dispatcher.dispatch(parse_payload(payload))
                except Exception as e:
                    logger.error(f"[Sweep] Could not re-dispatch {job_id}: {e}")
                    report.dispatch_errors.append(job_id)
                    continue
                report.redriven += 1
        finally:
            db.close()

        if report.found:
            logger.info(
                f"[Sweep] found={report.found} redriven={report.redriven} "
                f"force_failed={report.force_failed} skipped={report.skipped}"
            )
        return report

    def _force_fail(self, repo: JobRepository, job_id: str, version_count: int, pending_step, now: datetime):
        version_id = (pending_step or {}).get("requested_version_id") or version_key(version_count + 1)
        failure = failure_record(ErrorCode.STUCK, public_message(ErrorCode.STUCK), False, version_id, now=now)
        if version_count and repo.finish_refine_attempt(job_id, failure, now=now):
            logger.warning(f"[Sweep] {job_id} refine stuck, returned to succeeded")
            return
        repo.mark_failed(job_id, failure, now=now)
        logger.warning(f"[Sweep] {job_id} force-failed as stuck")

    async def run_forever(self, interval: Optional[float] = None, stop: Optional[asyncio.Event] = None):
        interval = interval or self.settings.SWEEP_INTERVAL_SECONDS
        stop = stop or asyncio.Event()
        logger.info(f"[Sweep] Running every {interval}s")
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                # Keep the loop alive across transient database outages
                logger.exception(f"[Sweep] Pass failed: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("[Sweep] Stopped")
