"""
Generation Pipeline
The idempotent execution step: one payload in, at most one new version out.

Step order:
1. Load the job and return early if the requested version already exists
2. Check the version sequence and the retry gate
3. Claim the job (conditional transition plus lease)
   and refuse owners that are banned
4. Fetch reference images, build the prompt, call the provider
5. Validate, watermark and derive a thumbnail
6. Stage in the raw pool, promote to the visibility-selected pools
7. Append the version and mark the job succeeded

Only this module decides whether a failure is terminal or retryable.
"""

import asyncio
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from sqlalchemy.orm import Session

from stylize.core.config import settings as default_settings
from stylize.core.database import SessionLocal
from stylize.models.job import ACTIVE_STATUSES, Job, JobMode, Visibility, version_seq
from stylize.models.reference import Post, Profile
from stylize.schemas.job import InitialStep, RefineStep, StepResult, parse_payload
from stylize.services.imaging import ArtifactLimits, create_thumbnail, validate_artifact
from stylize.services.jobs import JobRepository, failure_record
from stylize.services.prompts import build_user_prompt
from stylize.services.reference_images import find_active
from stylize.services.storage import ObjectNotFound, StoragePool, StorageService
from stylize.services.watermark import apply_watermarks, create_provenance
from stylize.workers.base import BaseWorker, ErrorCode, NonRetryableError, WorkerException, public_message

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


class ArtifactValidationError(NonRetryableError):
    def __init__(self, reason: str):
        super().__init__(f"Artifact rejected: {reason}", code=ErrorCode.VALIDATION_FAILED)


def artifact_paths(owner_id: str, job_id: str, version_id: str):
    """Deterministic, pool-relative paths for one version."""
    base = f"{owner_id}/{job_id}/{version_id}"
    return f"{base}.png", f"{base}_thumb.jpg", f"{base}_clean.png"


def execution_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class GenerationPipeline:
    """Runs execution payloads against the job store, provider and storage."""

    def __init__(
        self,
        storage: StorageService,
        provider,
        session_factory: Callable[[], Session] = SessionLocal,
        settings=default_settings,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.storage = storage
        self.provider = provider
        self.session_factory = session_factory
        self.settings = settings
        self.limits = ArtifactLimits.from_settings(settings)
        self.on_progress = on_progress

    def _progress(self, fraction: float, message: str):
        if self.on_progress:
            self.on_progress(fraction, message)

    async def execute(self, payload: Union[InitialStep, RefineStep, dict]) -> StepResult:
        if isinstance(payload, dict):
            payload = parse_payload(payload)

        db = self.session_factory()
        try:
            return await self._execute(JobRepository(db), payload, execution_id())
        finally:
            db.close()

    def _result(self, payload, outcome: str, code: Optional[str] = None, retryable: bool = False) -> StepResult:
        return StepResult(
            job_id=payload.job_id,
            version_id=payload.requested_version_id,
            outcome=outcome,
            code=code,
            retryable=retryable,
        )

    async def _execute(self, repo: JobRepository, payload, exec_id: str) -> StepResult:
        job_id = payload.job_id
        version_id = payload.requested_version_id
        tag = f"[Pipeline] {job_id}/{version_id}"

        job = repo.get(job_id)
        if job is None or job.is_deleted:
            logger.warning(f"{tag} job missing or deleted, dropping step")
            return self._result(payload, "aborted", ErrorCode.NOT_FOUND)

        # Idempotency: the expensive work already landed
        if job.get_version(version_id) is not None:
            if job.status in ACTIVE_STATUSES and not repo.mark_succeeded(job_id, version_id):
                # A later step is pending; leave it to its own delivery
                logger.info(f"{tag} version already present, {job.pending_version_id} pending, no-op")
                return self._result(payload, "noop")
            logger.info(f"{tag} version already present, no-op")
            return self._result(payload, "noop")

        try:
            seq = version_seq(version_id)
        except ValueError:
            logger.error(f"{tag} malformed version id")
            return self._result(payload, "aborted", ErrorCode.VERSION_GAP)
        if seq != len(job.versions) + 1:
            logger.warning(f"{tag} expected v{len(job.versions) + 1}, dropping out-of-sequence step")
            return self._result(payload, "aborted", ErrorCode.VERSION_GAP)

        now = datetime.utcnow()
        if job.retry_after and job.retry_after > now:
            logger.info(f"{tag} backing off until {job.retry_after.isoformat()}")
            return self._result(payload, "aborted", ErrorCode.DEFERRED)

        if not repo.claim(job_id, exec_id, self.settings.LEASE_SECONDS, now=now):
            logger.warning(f"{tag} claim failed (status or lease held elsewhere)")
            return self._result(payload, "aborted", ErrorCode.CLAIM_FAILED)

        job = repo.get(job_id)
        logger.info(f"{tag} claimed by {exec_id} (attempt {job.attempts})")
        self._progress(0.1, "Claimed")

        staged: List[str] = []
        try:
            return await self._run(repo, job, payload, staged, tag)
        except WorkerException as e:
            await self._discard_raw(staged, tag)
            return self._handle_failure(repo, job, payload, exec_id, e, tag)
        except Exception as e:
            # Unclassified bugs are recorded as a retryable failure so the
            # job is requeued rather than left holding a lease.
            logger.exception(f"{tag} unexpected error: {e}")
            repo.db.rollback()
            await self._discard_raw(staged, tag)
            return self._handle_failure(
                repo, job, payload, exec_id,
                WorkerException(str(e), code=ErrorCode.GENERATION_FAILED, retryable=True), tag,
            )

    async def _run(self, repo: JobRepository, job: Job, payload, staged: List[str], tag: str) -> StepResult:
        job_id = job.id
        version_id = payload.requested_version_id

        self._check_owner(repo.db, job.owner_id)

        base = None
        if payload.type == "refine":
            base = job.get_version(payload.base_version_id)
            if base is None:
                raise NonRetryableError(f"Base version {payload.base_version_id} not found")

        references = await self._fetch_references(repo.db, job)
        prompt = self._build_prompt(repo.db, job)
        self._progress(0.2, "Inputs ready")

        if base is not None:
            # Refine from the unmarked copy so marks do not compound
            source = (base.clean_image_pool, base.clean_image_path) if base.clean_image_path \
                else (base.image_pool, base.image_path)
            try:
                base_image = await self.storage.download(*source)
            except ObjectNotFound:
                raise NonRetryableError(f"Base artifact missing for {payload.base_version_id}")
            result = await self.provider.refine(
                base_image=base_image,
                instruction=payload.instruction,
                reference_images=references,
                prompt=prompt,
                aspect_ratio=job.aspect_ratio,
                quality=job.quality,
            )
        else:
            result = await self.provider.generate(
                prompt=prompt,
                reference_images=references,
                aspect_ratio=job.aspect_ratio,
                quality=job.quality,
            )
        self._progress(0.6, "Image generated")

        validation = await asyncio.to_thread(validate_artifact, result.image_bytes, self.limits)
        if not validation.valid:
            raise ArtifactValidationError(validation.reason)
        primary, clean = validation.cleaned, None
        if self.settings.WATERMARK_ENABLED:
            marks = await asyncio.to_thread(
                apply_watermarks, validation.cleaned,
                create_provenance(job_id, version_id, job.visibility),
                self.settings.WATERMARK_TEXT, self.settings.WATERMARK_OPACITY,
            )
            primary, clean = marks.watermarked, marks.clean
        thumb = await asyncio.to_thread(
            create_thumbnail, primary,
            self.settings.THUMBNAIL_WIDTH, self.settings.THUMBNAIL_QUALITY,
        )
        self._progress(0.7, "Artifact validated")

        image_path, thumb_path, clean_path = artifact_paths(job.owner_id, job_id, version_id)
        await self.storage.upload(StoragePool.RAW, image_path, primary, "image/png")
        staged.append(image_path)
        await self.storage.upload(StoragePool.RAW, thumb_path, thumb, "image/jpeg")
        staged.append(thumb_path)
        if clean is not None:
            await self.storage.upload(StoragePool.RAW, clean_path, clean, "image/png")
            staged.append(clean_path)

        image_pool = StoragePool.PUBLIC if job.visibility == Visibility.PUBLIC.value else StoragePool.PRIVATE
        await self.storage.copy(StoragePool.RAW, image_path, image_pool, image_path)
        await self.storage.copy(StoragePool.RAW, thumb_path, StoragePool.DERIVATIVE, thumb_path)
        if clean is not None:
            await self.storage.copy(StoragePool.RAW, clean_path, StoragePool.PRIVATE, clean_path)
        await self._discard_raw(staged, tag)
        staged.clear()
        self._progress(0.9, "Stored")

        appended = repo.append_version(job_id, {
            "version_id": version_id,
            "seq": version_seq(version_id),
            "base_version_id": base.version_id if base is not None else None,
            "instruction": payload.instruction if payload.type == "refine" else None,
            "image_pool": image_pool.value,
            "image_path": image_path,
            "thumb_pool": StoragePool.DERIVATIVE.value,
            "thumb_path": thumb_path,
            "width": validation.width,
            "height": validation.height,
            "has_watermark": clean is not None,
            "clean_image_pool": StoragePool.PRIVATE.value if clean is not None else None,
            "clean_image_path": clean_path if clean is not None else None,
            "provider_request_id": result.request_id,
        })
        repo.mark_succeeded(job_id, version_id)
        if not appended:
            logger.info(f"{tag} lost the append race, converged as no-op")
            return self._result(payload, "noop")

        repo.add_provider_request_id(job_id, result.request_id)

        current = repo.get(job_id)
        if current is None or current.is_deleted:
            # Deleted while we were generating; nothing will ever reference these
            logger.info(f"{tag} job deleted mid-flight, removing placed artifacts")
            await self.storage.delete(image_pool, image_path)
            await self.storage.delete(StoragePool.DERIVATIVE, thumb_path)
            if clean is not None:
                await self.storage.delete(StoragePool.PRIVATE, clean_path)

        logger.info(f"{tag} succeeded ({validation.width}x{validation.height}, model {result.model})")
        return self._result(payload, "succeeded")

    def _check_owner(self, db: Session, owner_id: str):
        profile = db.query(Profile).filter(Profile.user_id == owner_id).first()
        if profile is not None and (profile.banned or profile.shadowbanned):
            raise NonRetryableError(f"Owner {owner_id} is banned", code=ErrorCode.BANNED_USER)

    async def _fetch_references(self, db: Session, job: Job) -> List[bytes]:
        ids = list(job.reference_image_ids or [])
        images = find_active(db, ids, job.owner_id)
        if len(images) != len(ids):
            raise NonRetryableError(f"{len(ids) - len(images)} reference image(s) unavailable")
        try:
            return list(await asyncio.gather(
                *(self.storage.download(img.pool, img.storage_path) for img in images)
            ))
        except ObjectNotFound as e:
            raise NonRetryableError(f"Reference image bytes missing: {e}")

    def _build_prompt(self, db: Session, job: Job) -> str:
        prompt, preset_id = job.prompt, job.preset_id
        if job.mode == JobMode.STYLE_TRANSFER_FROM_POST.value and job.seed_post_id:
            post = db.query(Post).filter(Post.id == job.seed_post_id).first()
            if post is not None:
                prompt = prompt or post.prompt
                preset_id = preset_id or post.preset_id
        return build_user_prompt(
            aspect_ratio=job.aspect_ratio,
            preset_id=preset_id,
            prompt=prompt,
            negative_prompt=job.negative_prompt,
        )

    async def _discard_raw(self, paths: List[str], tag: str):
        for path in paths:
            try:
                await self.storage.delete(StoragePool.RAW, path)
            except WorkerException as e:
                # The raw pool's retention policy purges anything left here
                logger.warning(f"{tag} could not remove staged {path}: {e}")

    def _backoff(self, attempts: int) -> timedelta:
        schedule = self.settings.RETRY_BACKOFF_SECONDS
        index = min(max(attempts - 1, 0), len(schedule) - 1)
        return timedelta(seconds=schedule[index])

    def _handle_failure(self, repo: JobRepository, job: Job, payload, exec_id: str,
                        error: WorkerException, tag: str) -> StepResult:
        code = error.code
        retryable = error.retryable
        if retryable and job.attempts >= self.settings.MAX_ATTEMPTS:
            logger.error(f"{tag} {code} after {job.attempts} attempts, giving up")
            retryable = False

        failure = failure_record(code, public_message(code), retryable, payload.requested_version_id)
        logger.warning(f"{tag} failed with {code} (retryable={retryable}): {error}")

        if retryable:
            if code == ErrorCode.RATE_LIMITED:
                retry_after = datetime.utcnow() + self._backoff(job.attempts)
                repo.requeue_for_retry(job.id, exec_id, failure, retry_after)
                return self._result(payload, "deferred", code, retryable=True)
            repo.requeue_for_retry(job.id, exec_id, failure, None)
            return self._result(payload, "retry", code, retryable=True)

        if payload.type == "refine" and repo.finish_refine_attempt(job.id, failure):
            return self._result(payload, "failed", code)
        repo.mark_failed(job.id, failure)
        return self._result(payload, "failed", code)


def build_pipeline(on_progress: Optional[ProgressCallback] = None) -> GenerationPipeline:
    """Pipeline wired to the configured storage backend and Gemini."""
    from stylize.services.gemini_image import GeminiImageService
    from stylize.services.storage import get_storage

    return GenerationPipeline(
        storage=get_storage(),
        provider=GeminiImageService(),
        on_progress=on_progress,
    )


class GenerationWorker(BaseWorker):
    """Runs one execution step under RQ, reporting progress in job meta."""

    TASK_NAME = "Step"

    def __init__(self, pipeline: Optional[GenerationPipeline] = None):
        super().__init__()
        self.pipeline = pipeline or build_pipeline(on_progress=self._update_progress)

    async def execute(self, payload: dict) -> StepResult:
        step = parse_payload(payload)
        self._log_start(self.TASK_NAME, job_id=step.job_id, version_id=step.requested_version_id, type=step.type)
        try:
            result = await self.pipeline.execute(step)
        except Exception as e:
            self._log_error(self.TASK_NAME, e)
            raise
        self._log_complete(self.TASK_NAME, result.outcome, f"{step.job_id}/{step.requested_version_id}")
        return result
