"""
Generation Orchestrator
Admission, refinement, status and placement operations on jobs.

The concurrency ceiling is a soft admission check: the active-job count is
read and the insert follows in a separate statement, so two simultaneous
requests can both pass and admit one job over the ceiling. That is
accepted; the ceiling is a cost control and correctness never depends on it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from stylize.core.config import settings as default_settings
from stylize.core.exceptions import (
    ConcurrencyLimitExceeded,
    InvalidReferenceImages,
    InvalidRequest,
    JobForbidden,
    JobNotFound,
    JobNotReady,
    NoVersions,
    SeedPostNotFound,
    UnsafePrompt,
    VersionNotFound,
)
from stylize.models.job import ACTIVE_STATUSES, Job, JobMode, JobStatus, JobVersion, Visibility, version_key
from stylize.models.reference import Post, Profile
from stylize.schemas.job import (
    AvatarResponse,
    CreateJobRequest,
    CreateJobResponse,
    DeleteResponse,
    ErrorView,
    InitialStep,
    JobStatusView,
    JobSummary,
    PublishResponse,
    RefineJobResponse,
    RefineStep,
    TimingView,
    VersionView,
)
from stylize.services.jobs import JobRepository, new_job_id
from stylize.services.prompts import estimate_ms, model_for_quality
from stylize.services.reference_images import find_active
from stylize.services.safety import check_prompt_safety
from stylize.services.storage import POOL_POLICIES, ObjectNotFound, StoragePool, StorageService

logger = logging.getLogger(__name__)


@dataclass
class SignedUrlCache:
    """Short-lived cache of minted read URLs in Redis. Purely advisory."""

    redis: object
    ttl: int

    def _key(self, pool: str, path: str) -> str:
        return f"signed-url:{pool}:{path}"

    def get(self, pool: str, path: str) -> Optional[str]:
        try:
            value = self.redis.get(self._key(pool, path))
        except RedisError as e:
            logger.warning(f"[Orchestrator] URL cache read failed: {e}")
            return None
        return value

    def put(self, pool: str, path: str, url: str):
        try:
            self.redis.setex(self._key(pool, path), self.ttl, url)
        except RedisError as e:
            logger.warning(f"[Orchestrator] URL cache write failed: {e}")

    def forget(self, pool: str, path: str):
        try:
            self.redis.delete(self._key(pool, path))
        except RedisError as e:
            logger.warning(f"[Orchestrator] URL cache delete failed: {e}")


class GenerationOrchestrator:
    def __init__(
        self,
        db: Session,
        storage: StorageService,
        dispatcher,
        settings=default_settings,
        url_cache: Optional[SignedUrlCache] = None,
    ):
        self.db = db
        self.repo = JobRepository(db)
        self.storage = storage
        self.dispatcher = dispatcher
        self.settings = settings
        self.url_cache = url_cache

    # --- helpers ---

    def _check_safety(self, *texts: Optional[str]):
        for text in texts:
            verdict = check_prompt_safety(text, max_length=self.settings.MAX_PROMPT_LENGTH)
            if not verdict.safe:
                raise UnsafePrompt(verdict.reason)

    def _check_ceiling(self, owner_id: str):
        active = self.repo.count_active(owner_id)
        if active >= self.settings.MAX_CONCURRENT_JOBS:
            logger.info(f"[Orchestrator] {owner_id} at concurrency ceiling ({active})")
            raise ConcurrencyLimitExceeded()

    def _owned(self, owner_id: str, job_id: str, allow_deleted: bool = False) -> Job:
        job = self.repo.get(job_id)
        if job is None or (job.is_deleted and not allow_deleted):
            raise JobNotFound()
        if job.owner_id != owner_id:
            raise JobForbidden()
        return job

    def _dispatch(self, payload):
        try:
            self.dispatcher.dispatch(payload)
        except Exception as e:
            # The job is durable and queued; the recovery sweep re-drives it
            logger.error(f"[Orchestrator] Dispatch failed for {payload.job_id}/{payload.requested_version_id}: {e}")

    async def _read_url(self, pool: str, path: str) -> str:
        if POOL_POLICIES[StoragePool(pool)].public:
            return self.storage.public_url(pool, path)
        if self.url_cache:
            cached = self.url_cache.get(pool, path)
            if cached:
                return cached
        url = await self.storage.mint_read_url(pool, path, self.settings.SIGNED_URL_TTL_SECONDS)
        if self.url_cache:
            self.url_cache.put(pool, path, url)
        return url

    async def _version_view(self, version: JobVersion) -> VersionView:
        return VersionView(
            version_id=version.version_id,
            base_version_id=version.base_version_id,
            instruction=version.instruction,
            image_url=await self._read_url(version.image_pool, version.image_path),
            thumb_url=await self._read_url(version.thumb_pool, version.thumb_path),
            width=version.width,
            height=version.height,
            has_watermark=bool(version.has_watermark),
            created_at=version.created_at,
        )

    # --- create / refine ---

    async def create_job(self, owner_id: str, request: CreateJobRequest) -> CreateJobResponse:
        self._check_safety(request.prompt, request.negative_prompt)
        if len(request.reference_image_ids) > self.settings.MAX_REFERENCE_IMAGES:
            raise InvalidRequest(f"At most {self.settings.MAX_REFERENCE_IMAGES} reference images are allowed")

        self._check_ceiling(owner_id)

        images = find_active(self.db, request.reference_image_ids, owner_id)
        if len(images) != len(request.reference_image_ids):
            raise InvalidReferenceImages()

        if request.mode == JobMode.STYLE_TRANSFER_FROM_POST:
            post = self.db.query(Post).filter(Post.id == request.seed_post_id).first()
            if post is None:
                raise SeedPostNotFound()

        job_id = new_job_id()
        step = InitialStep(job_id=job_id, requested_version_id=version_key(1))
        quality = request.quality.value
        self.repo.create(Job(
            id=job_id,
            owner_id=owner_id,
            mode=request.mode.value,
            reference_image_ids=list(request.reference_image_ids),
            seed_post_id=request.seed_post_id,
            preset_id=request.preset_id,
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            aspect_ratio=request.aspect_ratio.value,
            quality=quality,
            provider_name=self.settings.PROVIDER_NAME,
            provider_model=model_for_quality(quality),
            provider_request_ids=[],
            status=JobStatus.QUEUED.value,
            visibility=Visibility.PRIVATE.value,
            pending_step=step.model_dump(),
            pending_version_id=step.requested_version_id,
            attempts=0,
        ))
        logger.info(f"[Orchestrator] Created {job_id} for {owner_id} ({request.mode.value}, {quality})")

        self._dispatch(step)
        return CreateJobResponse(job_id=job_id, status=JobStatus.QUEUED.value, estimated_ms=estimate_ms(quality))

    async def refine_job(self, owner_id: str, job_id: str, instruction: str) -> RefineJobResponse:
        instruction = (instruction or "").strip()
        if not instruction:
            raise InvalidRequest("Instruction is required")
        if len(instruction) > self.settings.MAX_INSTRUCTION_LENGTH:
            raise InvalidRequest("Instruction is too long")
        self._check_safety(instruction)

        job = self._owned(owner_id, job_id)
        if not job.versions:
            raise NoVersions()
        if job.status != JobStatus.SUCCEEDED.value:
            raise JobNotReady("Job must be finished before it can be refined")
        self._check_ceiling(owner_id)

        step = RefineStep(
            job_id=job_id,
            requested_version_id=version_key(len(job.versions) + 1),
            base_version_id=job.latest_version.version_id,
            instruction=instruction,
        )
        if not self.repo.begin_refine(job_id, owner_id, step.model_dump()):
            raise JobNotReady("Job changed while refining; try again")
        logger.info(f"[Orchestrator] Refining {job_id} {step.base_version_id} -> {step.requested_version_id}")

        self._dispatch(step)
        return RefineJobResponse(
            job_id=job_id,
            status=JobStatus.QUEUED.value,
            requested_version_id=step.requested_version_id,
        )

    # --- status ---

    def _timing(self, job: Job, now: datetime) -> TimingView:
        estimated = estimate_ms(job.quality)
        if job.status in ACTIVE_STATUSES:
            started = job.latest_version.created_at if job.versions else job.created_at
            elapsed = max(0, int((now - started).total_seconds() * 1000))
            return TimingView(estimated_total_ms=estimated, elapsed_ms=elapsed,
                              remaining_ms=max(0, estimated - elapsed))
        elapsed = max(0, int((job.updated_at - job.created_at).total_seconds() * 1000))
        return TimingView(estimated_total_ms=estimated, elapsed_ms=elapsed, remaining_ms=0)

    async def get_job_status(self, owner_id: str, job_id: str) -> JobStatusView:
        job = self._owned(owner_id, job_id)

        error = ErrorView(**job.error) if job.error else None
        refine_error = None
        if job.versions and job.last_failure:
            failure = job.last_failure
            refine_error = ErrorView(
                code=failure["code"], message=failure["message"], retryable=bool(failure["retryable"]),
            )

        return JobStatusView(
            job_id=job.id,
            status=job.status,
            mode=job.mode,
            visibility=job.visibility,
            versions=[await self._version_view(v) for v in job.versions],
            error=error,
            refine_error=refine_error,
            timing=self._timing(job, datetime.utcnow()),
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    async def list_jobs(self, owner_id: str, limit: int = 20, before: Optional[datetime] = None) -> List[JobSummary]:
        return [
            JobSummary(
                job_id=job.id,
                status=job.status,
                mode=job.mode,
                version_count=len(job.versions),
                created_at=job.created_at,
                updated_at=job.updated_at,
            )
            for job in self.repo.list_for_owner(owner_id, limit=min(max(limit, 1), 100), before=before)
        ]

    # --- placement ---

    async def publish(self, owner_id: str, job_id: str) -> PublishResponse:
        """Move the latest image into the public pool and return its long-lived URL."""
        job = self._owned(owner_id, job_id)
        if not job.versions:
            raise NoVersions()
        if job.status != JobStatus.SUCCEEDED.value:
            raise JobNotReady()

        latest = job.latest_version
        public = StoragePool.PUBLIC.value
        if latest.image_pool != public:
            from_pool = latest.image_pool
            try:
                await self.storage.move(from_pool, latest.image_path, public, latest.image_path)
            except ObjectNotFound:
                # An earlier publish moved the bytes but did not record it
                if not await self.storage.exists(public, latest.image_path):
                    raise
            self.repo.relocate_version_image(job_id, latest.version_id, from_pool, public)
            self._repoint_avatars(job_id, latest.version_id, from_pool, public)
            if self.url_cache:
                self.url_cache.forget(from_pool, latest.image_path)
            await self.storage.invalidate_cdn([latest.image_path])

        if job.visibility != Visibility.PUBLIC.value:
            self.repo.set_visibility(job_id, Visibility.PUBLIC.value)

        logger.info(f"[Orchestrator] Published {job_id}/{latest.version_id}")
        return PublishResponse(
            job_id=job_id,
            version_id=latest.version_id,
            public_url=self.storage.public_url(public, latest.image_path),
        )

    async def set_avatar(self, owner_id: str, job_id: str, version_id: str) -> AvatarResponse:
        """Point the owner's profile at a version. Nothing is moved or deleted."""
        job = self._owned(owner_id, job_id)
        if job.status != JobStatus.SUCCEEDED.value:
            raise JobNotReady()
        version = job.get_version(version_id)
        if version is None:
            raise VersionNotFound()

        profile = self.db.query(Profile).filter(Profile.user_id == owner_id).first()
        if profile is None:
            profile = Profile(user_id=owner_id)
            self.db.add(profile)
        profile.avatar_job_id = job_id
        profile.avatar_version_id = version_id
        profile.avatar_image_pool = version.image_pool
        profile.avatar_image_path = version.image_path
        profile.avatar_thumb_pool = version.thumb_pool
        profile.avatar_thumb_path = version.thumb_path
        profile.updated_at = datetime.utcnow()
        self.db.commit()

        logger.info(f"[Orchestrator] {owner_id} avatar set to {job_id}/{version_id}")
        return AvatarResponse(
            job_id=job_id,
            version_id=version_id,
            image_url=await self._read_url(version.image_pool, version.image_path),
            thumb_url=await self._read_url(version.thumb_pool, version.thumb_path),
        )

    async def delete_job(self, owner_id: str, job_id: str, archive: bool = True,
                         permanent: bool = False) -> DeleteResponse:
        job = self._owned(owner_id, job_id, allow_deleted=True)
        if job.is_deleted:
            return DeleteResponse(job_id=job_id, deleted=True)

        versions = list(job.versions)
        archived_path = None
        latest = job.latest_version
        if archive and not permanent and latest is not None:
            stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S")
            archived_path = f"{owner_id}/archived/{stamp}_{job_id}.png"
            # Archive the unmarked copy when there is one
            if latest.clean_image_path:
                source = (latest.clean_image_pool, latest.clean_image_path)
            else:
                source = (latest.image_pool, latest.image_path)
            await self.storage.copy(*source, StoragePool.ARCHIVE, archived_path)

        for version in versions:
            await self.storage.delete(version.image_pool, version.image_path)
            await self.storage.delete(version.thumb_pool, version.thumb_path)
            if version.clean_image_path:
                await self.storage.delete(version.clean_image_pool, version.clean_image_path)
            if self.url_cache:
                self.url_cache.forget(version.image_pool, version.image_path)
                self.url_cache.forget(version.thumb_pool, version.thumb_path)

        public_paths = [v.image_path for v in versions if v.image_pool == StoragePool.PUBLIC.value]
        await self.storage.invalidate_cdn(public_paths)

        self.repo.soft_delete(job_id)
        self._clear_avatar(owner_id, job_id)
        logger.info(f"[Orchestrator] Deleted {job_id} ({len(versions)} version(s), archived={archived_path is not None})")
        return DeleteResponse(job_id=job_id, deleted=True, archived_path=archived_path)

    def _repoint_avatars(self, job_id: str, version_id: str, from_pool: str, to_pool: str):
        # Profiles store the pool by value; follow the image to its new pool
        moved = self.db.query(Profile).filter(
            Profile.avatar_job_id == job_id,
            Profile.avatar_version_id == version_id,
            Profile.avatar_image_pool == from_pool,
        ).update({Profile.avatar_image_pool: to_pool, Profile.updated_at: datetime.utcnow()},
                 synchronize_session=False)
        self.db.commit()
        if moved:
            logger.info(f"[Orchestrator] Re-pointed {moved} avatar(s) for {job_id}/{version_id} to {to_pool}")

    def _clear_avatar(self, owner_id: str, job_id: str):
        profile = self.db.query(Profile).filter(
            Profile.user_id == owner_id, Profile.avatar_job_id == job_id,
        ).first()
        if profile is None:
            return
        profile.avatar_job_id = None
        profile.avatar_version_id = None
        profile.avatar_image_pool = None
        profile.avatar_image_path = None
        profile.avatar_thumb_pool = None
        profile.avatar_thumb_path = None
        self.db.commit()
