"""
Job Repository
Durable job records. Every mutation here is one conditional UPDATE or
INSERT whose row count says whether this caller won, so two executions of
the same payload converge instead of overwriting each other.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, insert, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stylize.models.job import ACTIVE_STATUSES, Job, JobStatus, JobVersion

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:16]}"


def failure_record(code: str, message: str, retryable: bool, version_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> dict:
    return {
        "code": code,
        "message": message,
        "retryable": retryable,
        "version_id": version_id,
        "at": (now or datetime.utcnow()).isoformat(),
    }


class JobRepository:
    """Conditional transitions over the jobs and job_versions tables."""

    def __init__(self, db: Session):
        self.db = db

    # --- reads ---

    def get(self, job_id: str) -> Optional[Job]:
        """Fresh read; drops anything cached in the session first."""
        self.db.expire_all()
        return self.db.query(Job).filter(Job.id == job_id).first()

    def count_active(self, owner_id: str) -> int:
        return (
            self.db.query(Job)
            .filter(
                Job.owner_id == owner_id,
                Job.status.in_(ACTIVE_STATUSES),
                Job.deleted_at.is_(None),
            )
            .count()
        )

    def list_for_owner(self, owner_id: str, limit: int = 20, before: Optional[datetime] = None) -> List[Job]:
        query = self.db.query(Job).filter(Job.owner_id == owner_id, Job.deleted_at.is_(None))
        if before:
            query = query.filter(Job.created_at < before)
        return query.order_by(Job.created_at.desc()).limit(limit).all()

    def find_stale(self, stale_before: datetime, now: datetime, limit: int = 100) -> List[Job]:
        """
        Queued or running jobs due for a re-drive: either their backoff
        window has passed, or they have been untouched since `stale_before`.
        """
        return (
            self.db.query(Job)
            .filter(
                Job.status.in_(ACTIVE_STATUSES),
                Job.deleted_at.is_(None),
                or_(
                    and_(Job.retry_after.isnot(None), Job.retry_after <= now),
                    and_(Job.retry_after.is_(None), Job.updated_at < stale_before),
                ),
            )
            .order_by(Job.updated_at.asc())
            .limit(limit)
            .all()
        )

    # --- writes ---

    def create(self, job: Job) -> Job:
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def _update(self, criteria, values: dict) -> bool:
        count = (
            self.db.query(Job)
            .filter(*criteria)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return count == 1

    def claim(self, job_id: str, execution_id: str, lease_seconds: int, now: Optional[datetime] = None) -> bool:
        """
        queued|running -> running, taking the execution lease.

        Succeeds only when the lease is free, expired, or already ours.
        """
        now = now or datetime.utcnow()
        lease_cutoff = now - timedelta(seconds=lease_seconds)
        return self._update(
            [
                Job.id == job_id,
                Job.status.in_(ACTIVE_STATUSES),
                Job.deleted_at.is_(None),
                or_(
                    Job.locked_by.is_(None),
                    Job.locked_at.is_(None),
                    Job.locked_at < lease_cutoff,
                    Job.locked_by == execution_id,
                ),
            ],
            {
                Job.status: JobStatus.RUNNING.value,
                Job.locked_by: execution_id,
                Job.locked_at: now,
                Job.attempts: Job.attempts + 1,
                Job.retry_after: None,
                Job.updated_at: now,
            },
        )

    def append_version(self, job_id: str, values: dict, now: Optional[datetime] = None) -> bool:
        """
        Insert a version row. False when that version id already exists.

        A plain INSERT bypasses the session identity map, so the primary key
        is the only arbiter between concurrent appends.
        """
        now = now or datetime.utcnow()
        row = dict(values, job_id=job_id, created_at=now)
        try:
            self.db.execute(insert(JobVersion).values(**row))
            self.db.query(Job).filter(Job.id == job_id).update(
                {Job.updated_at: now}, synchronize_session=False
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"[Jobs] Version {values.get('version_id')} already present on {job_id}")
            return False
        return True

    def mark_succeeded(self, job_id: str, version_id: str, now: Optional[datetime] = None) -> bool:
        """
        -> succeeded once version_id has landed.

        Refused while a different version is pending, so a late duplicate of
        an earlier step cannot settle the job out from under a queued refine.
        """
        now = now or datetime.utcnow()
        landed = Job.versions.any(JobVersion.version_id == version_id)
        return self._update(
            [
                Job.id == job_id,
                Job.deleted_at.is_(None),
                landed,
                or_(Job.pending_version_id.is_(None), Job.pending_version_id == version_id),
            ],
            {
                Job.status: JobStatus.SUCCEEDED.value,
                Job.last_failure: None,
                Job.error_code: None,
                Job.error_message: None,
                Job.error_retryable: None,
                Job.pending_step: None,
                Job.pending_version_id: None,
                Job.retry_after: None,
                Job.locked_by: None,
                Job.locked_at: None,
                Job.updated_at: now,
            },
        )

    def mark_failed(self, job_id: str, failure: dict, now: Optional[datetime] = None) -> bool:
        """queued|running -> failed with a non-null error."""
        now = now or datetime.utcnow()
        return self._update(
            [Job.id == job_id, Job.status.in_(ACTIVE_STATUSES), Job.deleted_at.is_(None)],
            {
                Job.status: JobStatus.FAILED.value,
                Job.error_code: failure["code"],
                Job.error_message: failure["message"],
                Job.error_retryable: bool(failure["retryable"]),
                Job.last_failure: failure,
                Job.pending_step: None,
                Job.pending_version_id: None,
                Job.retry_after: None,
                Job.locked_by: None,
                Job.locked_at: None,
                Job.updated_at: now,
            },
        )

    def finish_refine_attempt(self, job_id: str, failure: dict, now: Optional[datetime] = None) -> bool:
        """
        queued|running -> succeeded after a refine that will not be retried.

        The job keeps its good versions; the failure is exposed as last_failure.
        """
        now = now or datetime.utcnow()
        has_version = Job.versions.any()
        return self._update(
            [Job.id == job_id, Job.status.in_(ACTIVE_STATUSES), Job.deleted_at.is_(None), has_version],
            {
                Job.status: JobStatus.SUCCEEDED.value,
                Job.last_failure: failure,
                Job.pending_step: None,
                Job.pending_version_id: None,
                Job.retry_after: None,
                Job.locked_by: None,
                Job.locked_at: None,
                Job.updated_at: now,
            },
        )

    def requeue_for_retry(self, job_id: str, execution_id: str, failure: dict,
                          retry_after: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """running -> queued, releasing our lease."""
        now = now or datetime.utcnow()
        return self._update(
            [
                Job.id == job_id,
                Job.status.in_(ACTIVE_STATUSES),
                Job.deleted_at.is_(None),
                or_(Job.locked_by.is_(None), Job.locked_by == execution_id),
            ],
            {
                Job.status: JobStatus.QUEUED.value,
                Job.last_failure: failure,
                Job.retry_after: retry_after,
                Job.locked_by: None,
                Job.locked_at: None,
                Job.updated_at: now,
            },
        )

    def begin_refine(self, job_id: str, owner_id: str, pending_step: dict, now: Optional[datetime] = None) -> bool:
        """succeeded -> queued. The only way out of a terminal state."""
        now = now or datetime.utcnow()
        return self._update(
            [
                Job.id == job_id,
                Job.owner_id == owner_id,
                Job.status == JobStatus.SUCCEEDED.value,
                Job.deleted_at.is_(None),
            ],
            {
                Job.status: JobStatus.QUEUED.value,
                Job.pending_step: pending_step,
                Job.pending_version_id: pending_step.get("requested_version_id"),
                Job.last_failure: None,
                Job.attempts: 0,
                Job.retry_after: None,
                Job.locked_by: None,
                Job.locked_at: None,
                Job.updated_at: now,
            },
        )

    def touch(self, job_id: str, expected_updated_at: datetime, now: Optional[datetime] = None) -> bool:
        """Bump updated_at if nobody else has since. Used by the sweep to claim a re-drive."""
        now = now or datetime.utcnow()
        return self._update(
            [
                Job.id == job_id,
                Job.status.in_(ACTIVE_STATUSES),
                Job.deleted_at.is_(None),
                Job.updated_at == expected_updated_at,
            ],
            {Job.updated_at: now},
        )

    def set_visibility(self, job_id: str, visibility: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self._update([Job.id == job_id, Job.deleted_at.is_(None)],
                            {Job.visibility: visibility, Job.updated_at: now})

    def relocate_version_image(self, job_id: str, version_id: str, from_pool: str, to_pool: str) -> bool:
        """Record that a version's image moved pools. The relative path is unchanged."""
        count = (
            self.db.query(JobVersion)
            .filter(
                and_(
                    JobVersion.job_id == job_id,
                    JobVersion.version_id == version_id,
                    JobVersion.image_pool == from_pool,
                )
            )
            .update({JobVersion.image_pool: to_pool}, synchronize_session=False)
        )
        self.db.commit()
        return count == 1

    def soft_delete(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """Set deleted_at once. Returns False if already deleted."""
        now = now or datetime.utcnow()
        return self._update(
            [Job.id == job_id, Job.deleted_at.is_(None)],
            {
                Job.deleted_at: now,
                Job.pending_step: None,
                Job.pending_version_id: None,
                Job.locked_by: None,
                Job.locked_at: None,
                Job.updated_at: now,
            },
        )

    def add_provider_request_id(self, job_id: str, request_id: Optional[str]) -> bool:
        """Append to the audit trail. Best-effort: failures are logged and ignored."""
        if not request_id:
            return False
        try:
            job = self.get(job_id)
            if job is None:
                return False
            ids = list(job.provider_request_ids or [])
            if request_id in ids:
                return True
            ids.append(request_id)
            job.provider_request_ids = ids
            self.db.commit()
            return True
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"[Jobs] Could not record provider request id on {job_id}: {e}")
            return False
