"""
Job Model
Database models for generation jobs and their append-only versions.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Boolean, ForeignKey, JSON,
)
from sqlalchemy.orm import relationship

from stylize.core.database import Base


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class JobMode(str, Enum):
    PRESET = "preset"
    FREEFORM_PROMPT = "freeform-prompt"
    STYLE_TRANSFER_FROM_POST = "style-transfer-from-post"


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class Job(Base):
    """One generation request and its accumulated versions."""

    __tablename__ = "jobs"

    id = Column(String, primary_key=True)  # job_xxxx format
    owner_id = Column(String, nullable=False, index=True)

    # Source
    mode = Column(String, nullable=False)
    reference_image_ids = Column(JSON, nullable=False, default=list)
    seed_post_id = Column(String, nullable=True)

    # Style
    preset_id = Column(String, nullable=True)
    prompt = Column(Text, nullable=True)
    negative_prompt = Column(Text, nullable=True)
    aspect_ratio = Column(String, nullable=False, default="1:1")
    quality = Column(String, nullable=False, default="standard")

    # Provider metadata
    provider_name = Column(String, nullable=False, default="gemini")
    provider_model = Column(String, nullable=False)
    provider_request_ids = Column(JSON, nullable=False, default=list)

    # Status: queued, running, succeeded, failed
    status = Column(String, default=JobStatus.QUEUED.value, index=True)
    visibility = Column(String, default=Visibility.PRIVATE.value)

    # Error is only set while status=failed
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    error_retryable = Column(Boolean, nullable=True)

    # Most recent failed attempt, kept across refine attempts
    last_failure = Column(JSON, nullable=True)

    # Execution bookkeeping
    pending_step = Column(JSON, nullable=True)
    # requested_version_id of pending_step, as a column so updates can filter on it
    pending_version_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    retry_after = Column(DateTime, nullable=True)
    locked_by = Column(String, nullable=True)
    locked_at = Column(DateTime, nullable=True)

    # Timestamps
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    versions = relationship(
        "JobVersion",
        back_populates="job",
        order_by="JobVersion.seq",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def latest_version(self):
        return self.versions[-1] if self.versions else None

    def get_version(self, version_id: str):
        for version in self.versions:
            if version.version_id == version_id:
                return version
        return None

    @property
    def error(self):
        if self.status != JobStatus.FAILED.value:
            return None
        return {
            "code": self.error_code,
            "message": self.error_message,
            "retryable": bool(self.error_retryable),
        }

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class JobVersion(Base):
    """
    One produced artifact of a Job.

    (job_id, version_id) is the primary key, so appending a version that
    already exists fails at the database instead of overwriting it.
    """

    __tablename__ = "job_versions"

    job_id = Column(String, ForeignKey("jobs.id"), primary_key=True)
    version_id = Column(String, primary_key=True)  # v1, v2, ...
    seq = Column(Integer, nullable=False)

    base_version_id = Column(String, nullable=True)
    instruction = Column(Text, nullable=True)

    image_pool = Column(String, nullable=False)
    image_path = Column(String, nullable=False)
    thumb_pool = Column(String, nullable=False)
    thumb_path = Column(String, nullable=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)

    # image_* is the served (visibly marked) copy; clean_* has provenance only
    has_watermark = Column(Boolean, nullable=False, default=False)
    clean_image_pool = Column(String, nullable=True)
    clean_image_path = Column(String, nullable=True)

    provider_request_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("Job", back_populates="versions")


def version_key(seq: int) -> str:
    return f"v{seq}"


def version_seq(version_id: str) -> int:
    """Parse a `vN` key. Raises ValueError for anything else."""
    if not version_id or version_id[0] != "v" or not version_id[1:].isdigit():
        raise ValueError(f"Invalid version id: {version_id!r}")
    seq = int(version_id[1:])
    if seq < 1:
        raise ValueError(f"Invalid version id: {version_id!r}")
    return seq
