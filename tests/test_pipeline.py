"""Execution step: idempotency, failure classification, version append."""

import asyncio
import io
from datetime import datetime, timedelta

import pytest
from PIL import Image, ImageChops

from stylize.core.config import settings
from stylize.models import Profile
from stylize.models.job import JobVersion
from stylize.schemas.job import InitialStep, RefineStep
from stylize.services.gemini_image import ProviderError
from stylize.services.jobs import JobRepository
from stylize.services.storage import StoragePool
from stylize.services.watermark import extract_provenance
from stylize.workers.base import ErrorCode, public_message
from stylize.workers.pipeline import artifact_paths

OWNER = "user-1"


def _run(pipeline, payload):
    return asyncio.run(pipeline.execute(payload))


def _exists(storage, pool, path) -> bool:
    return asyncio.run(storage.exists(pool, path))


def _refine(db, job_id, instruction="make the background blue"):
    """Move a succeeded job back to queued with a refine step for the next version."""
    repo = JobRepository(db)
    job = repo.get(job_id)
    step = RefineStep(
        job_id=job_id,
        requested_version_id=f"v{len(job.versions) + 1}",
        base_version_id=job.latest_version.version_id,
        instruction=instruction,
    )
    assert repo.begin_refine(job_id, OWNER, step.model_dump())
    return step


class TestInitialStep:
    def test_happy_path(self, pipeline, provider, storage, db, make_job):
        """One call, one version, artifacts placed, raw pool cleaned up."""
        job_id = make_job()

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "succeeded"
        job = JobRepository(db).get(job_id)
        assert job.status == "succeeded"
        assert [v.version_id for v in job.versions] == ["v1"]
        assert job.pending_step is None
        assert job.locked_by is None
        assert job.provider_request_ids == ["req-1"]
        assert len(provider.calls) == 1
        assert provider.calls[0]["references"] == 2

        image_path, thumb_path, clean_path = artifact_paths(OWNER, job_id, "v1")
        version = job.versions[0]
        assert (version.image_pool, version.image_path) == ("private", image_path)
        assert (version.thumb_pool, version.thumb_path) == ("derivative", thumb_path)
        assert (version.clean_image_pool, version.clean_image_path) == ("private", clean_path)
        assert version.has_watermark
        assert _exists(storage, StoragePool.PRIVATE, image_path)
        assert _exists(storage, StoragePool.DERIVATIVE, thumb_path)
        assert _exists(storage, StoragePool.PRIVATE, clean_path)
        for path in (image_path, thumb_path, clean_path):
            assert not _exists(storage, StoragePool.RAW, path)

    def test_public_job_lands_in_public_pool(self, pipeline, storage, db, make_job):
        """Visibility selects the destination pool for the full image."""
        job_id = make_job(visibility="public")

        _run(pipeline, InitialStep(job_id=job_id))

        version = JobRepository(db).get(job_id).versions[0]
        assert version.image_pool == "public"
        assert _exists(storage, StoragePool.PUBLIC, version.image_path)

    def test_duplicate_delivery_is_noop(self, pipeline, provider, db, make_job):
        """The same payload twice calls the provider once and appends once."""
        job_id = make_job()

        first = _run(pipeline, InitialStep(job_id=job_id))
        second = _run(pipeline, InitialStep(job_id=job_id))

        assert first.outcome == "succeeded"
        assert second.outcome == "noop"
        assert len(provider.calls) == 1
        assert len(JobRepository(db).get(job_id).versions) == 1

    def test_version_present_but_job_running_converges(self, pipeline, provider, db, make_job):
        """A crash after the append is finished by the next delivery without a provider call."""
        job_id = make_job(status="running", locked_by="dead-worker", locked_at=datetime.utcnow())
        repo = JobRepository(db)
        assert repo.append_version(job_id, {
            "version_id": "v1", "seq": 1,
            "image_pool": "private", "image_path": f"{OWNER}/{job_id}/v1.png",
            "thumb_pool": "derivative", "thumb_path": f"{OWNER}/{job_id}/v1_thumb.jpg",
        })

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "noop"
        assert provider.calls == []
        assert repo.get(job_id).status == "succeeded"

    def test_missing_job_aborts(self, pipeline, provider):
        """Payloads for unknown jobs are dropped."""
        result = _run(pipeline, InitialStep(job_id="job_missing"))

        assert result.outcome == "aborted"
        assert result.code == ErrorCode.NOT_FOUND
        assert provider.calls == []

    def test_deleted_job_aborts(self, pipeline, provider, db, make_job):
        """Soft-deleted jobs are never executed."""
        job_id = make_job()
        JobRepository(db).soft_delete(job_id)

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "aborted"
        assert provider.calls == []

    def test_out_of_sequence_version_aborts(self, pipeline, provider, make_job):
        """v2 cannot be produced before v1 exists."""
        job_id = make_job()

        result = _run(pipeline, InitialStep(job_id=job_id, requested_version_id="v2"))

        assert result.outcome == "aborted"
        assert result.code == ErrorCode.VERSION_GAP
        assert provider.calls == []

    def test_live_lease_blocks_second_execution(self, pipeline, provider, make_job):
        """Another execution holding a fresh lease keeps this one out."""
        job_id = make_job(status="running", locked_by="other-worker", locked_at=datetime.utcnow())

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "aborted"
        assert result.code == ErrorCode.CLAIM_FAILED
        assert provider.calls == []

    def test_expired_lease_is_taken_over(self, pipeline, make_job):
        """A lease older than LEASE_SECONDS no longer blocks."""
        stale = datetime.utcnow() - timedelta(seconds=settings.LEASE_SECONDS + 60)
        job_id = make_job(status="running", locked_by="dead-worker", locked_at=stale)

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "succeeded"


class TestFailures:
    def test_blocked_is_terminal(self, pipeline, provider, storage, db, make_job):
        """A content-policy block fails the job with no version and no retry."""
        provider.errors = [ProviderError(ErrorCode.BLOCKED, "blocked by policy")]
        job_id = make_job()

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "failed"
        assert not result.should_redeliver
        job = JobRepository(db).get(job_id)
        assert job.status == "failed"
        assert job.error == {"code": "blocked", "message": public_message(ErrorCode.BLOCKED), "retryable": False}
        assert job.versions == []

    def test_invalid_artifact_leaves_no_partial_version(self, pipeline, provider, storage, db, make_job):
        """Undecodable output fails validation; nothing is stored."""
        provider.image_bytes = b"not an image at all"
        job_id = make_job()

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "failed"
        assert result.code == ErrorCode.VALIDATION_FAILED
        job = JobRepository(db).get(job_id)
        assert job.status == "failed"
        assert job.versions == []
        for path in artifact_paths(OWNER, job_id, "v1"):
            for pool in (StoragePool.RAW, StoragePool.PRIVATE, StoragePool.DERIVATIVE):
                assert not _exists(storage, pool, path)

    def test_retryable_failure_requeues_then_converges(self, pipeline, provider, db, make_job):
        """A transient failure asks for redelivery; the redelivery succeeds."""
        provider.errors = [ProviderError(ErrorCode.GENERATION_FAILED, "upstream 500")]
        job_id = make_job()

        first = _run(pipeline, InitialStep(job_id=job_id))

        assert first.outcome == "retry"
        assert first.should_redeliver
        job = JobRepository(db).get(job_id)
        assert job.status == "queued"
        assert job.attempts == 1
        assert job.last_failure["code"] == ErrorCode.GENERATION_FAILED
        assert job.locked_by is None

        second = _run(pipeline, InitialStep(job_id=job_id))

        assert second.outcome == "succeeded"
        job = JobRepository(db).get(job_id)
        assert job.status == "succeeded"
        assert job.attempts == 2
        assert len(job.versions) == 1
        assert job.last_failure is None

    def test_unexpected_exception_is_retryable(self, pipeline, provider, db, make_job):
        """Unclassified errors requeue instead of leaving the lease held."""
        provider.errors = [RuntimeError("boom")]
        job_id = make_job()

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "retry"
        job = JobRepository(db).get(job_id)
        assert job.status == "queued"
        assert job.locked_by is None

    def test_rate_limited_is_deferred(self, pipeline, provider, db, make_job):
        """Rate limits set a backoff gate; early redelivery is turned away."""
        provider.errors = [ProviderError(ErrorCode.RATE_LIMITED, "429")]
        job_id = make_job()

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "deferred"
        assert not result.should_redeliver
        job = JobRepository(db).get(job_id)
        assert job.status == "queued"
        assert job.retry_after > datetime.utcnow()

        early = _run(pipeline, InitialStep(job_id=job_id))
        assert early.outcome == "aborted"
        assert early.code == ErrorCode.DEFERRED
        assert len(provider.calls) == 1

    def test_attempt_cap_makes_failure_terminal(self, pipeline, provider, db, make_job):
        """The last allowed attempt fails the job outright."""
        provider.errors = [ProviderError(ErrorCode.GENERATION_FAILED, "upstream 500")]
        job_id = make_job(attempts=settings.MAX_ATTEMPTS - 1)

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "failed"
        job = JobRepository(db).get(job_id)
        assert job.status == "failed"
        assert job.error["code"] == ErrorCode.GENERATION_FAILED
        assert job.error["retryable"] is False

    def test_unavailable_reference_image_fails(self, pipeline, provider, db, make_job, reference_ids):
        """A reference image deleted after admission is a non-retryable input error."""
        from stylize.models import ReferenceImage

        job_id = make_job()
        db.query(ReferenceImage).filter(ReferenceImage.id == reference_ids[0]).update({"status": "deleted"})
        db.commit()

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "failed"
        assert result.code == ErrorCode.INVALID_INPUT
        assert provider.calls == []

    @pytest.mark.parametrize("flag", ["banned", "shadowbanned"])
    def test_banned_owner_fails_before_generation(self, pipeline, provider, storage, db, make_job, flag):
        """An owner banned after admission is refused when the step runs."""
        job_id = make_job()
        db.add(Profile(user_id=OWNER, **{flag: True}))
        db.commit()

        result = _run(pipeline, InitialStep(job_id=job_id))

        assert result.outcome == "failed"
        assert result.code == ErrorCode.BANNED_USER
        assert provider.calls == []
        job = JobRepository(db).get(job_id)
        assert job.status == "failed"
        assert job.error == {
            "code": "banned_user", "message": public_message(ErrorCode.BANNED_USER), "retryable": False,
        }
        assert job.locked_by is None
        assert not _exists(storage, StoragePool.PRIVATE, artifact_paths(OWNER, job_id, "v1")[0])

    def test_unbanned_profile_runs(self, pipeline, db, make_job):
        """A profile row without moderation flags does not block generation."""
        job_id = make_job()
        db.add(Profile(user_id=OWNER))
        db.commit()

        assert _run(pipeline, InitialStep(job_id=job_id)).outcome == "succeeded"


class TestRefineStep:
    def test_refine_appends_next_version(self, pipeline, provider, db, make_job):
        """v2 records its base and instruction; v1 is untouched."""
        job_id = make_job()
        _run(pipeline, InitialStep(job_id=job_id))
        step = _refine(db, job_id, "add a gold crown")

        result = _run(pipeline, step)

        assert result.outcome == "succeeded"
        job = JobRepository(db).get(job_id)
        assert job.status == "succeeded"
        assert [v.version_id for v in job.versions] == ["v1", "v2"]
        v2 = job.get_version("v2")
        assert v2.base_version_id == "v1"
        assert v2.instruction == "add a gold crown"
        assert provider.calls[-1] == {"kind": "refine", "instruction": "add a gold crown", "references": 2}
        assert job.provider_request_ids == ["req-1", "req-2"]

    def test_versions_are_monotonic(self, pipeline, db, make_job):
        """Repeated refines produce v1..vN in order with increasing seq."""
        job_id = make_job()
        _run(pipeline, InitialStep(job_id=job_id))
        for _ in range(2):
            _run(pipeline, _refine(db, job_id))

        rows = db.query(JobVersion).filter(JobVersion.job_id == job_id).order_by(JobVersion.seq).all()
        assert [(r.version_id, r.seq) for r in rows] == [("v1", 1), ("v2", 2), ("v3", 3)]

    def test_late_duplicate_of_earlier_step_keeps_refine_pending(self, pipeline, provider, db, make_job):
        """A redelivered v1 arriving after a refine was queued leaves the refine to run."""
        job_id = make_job()
        _run(pipeline, InitialStep(job_id=job_id))
        step = _refine(db, job_id)

        late = _run(pipeline, InitialStep(job_id=job_id))

        assert late.outcome == "noop"
        job = JobRepository(db).get(job_id)
        assert job.status == "queued"
        assert job.pending_step == step.model_dump()

        result = _run(pipeline, step)

        assert result.outcome == "succeeded"
        job = JobRepository(db).get(job_id)
        assert job.status == "succeeded"
        assert [v.version_id for v in job.versions] == ["v1", "v2"]
        assert len(provider.calls) == 2

    def test_refine_retried_to_success_reports_no_error(self, pipeline, provider, db, make_job):
        """A refine that fails once and then succeeds leaves no refine error behind."""
        job_id = make_job()
        _run(pipeline, InitialStep(job_id=job_id))
        step = _refine(db, job_id)
        provider.errors = [ProviderError(ErrorCode.GENERATION_FAILED, "upstream 500")]

        assert _run(pipeline, step).outcome == "retry"
        assert _run(pipeline, step).outcome == "succeeded"

        assert JobRepository(db).get(job_id).last_failure is None

    def test_terminal_refine_failure_keeps_job_succeeded(self, pipeline, provider, db, make_job):
        """A blocked refine leaves earlier versions usable and reports the failure separately."""
        job_id = make_job()
        _run(pipeline, InitialStep(job_id=job_id))
        step = _refine(db, job_id)
        provider.errors = [ProviderError(ErrorCode.BLOCKED, "blocked")]

        result = _run(pipeline, step)

        assert result.outcome == "failed"
        job = JobRepository(db).get(job_id)
        assert job.status == "succeeded"
        assert job.error is None
        assert job.last_failure["code"] == ErrorCode.BLOCKED
        assert job.last_failure["version_id"] == "v2"
        assert [v.version_id for v in job.versions] == ["v1"]

    def test_refine_with_unknown_base_fails(self, pipeline, provider, db, make_job):
        """A base version that does not exist is an input error."""
        job_id = make_job()
        _run(pipeline, InitialStep(job_id=job_id))
        step = _refine(db, job_id)
        bad = step.model_copy(update={"base_version_id": "v9"})

        result = _run(pipeline, bad)

        assert result.outcome == "failed"
        assert result.code == ErrorCode.INVALID_INPUT
        assert len(provider.calls) == 1

    def test_refine_starts_from_clean_copy(self, pipeline, provider, storage, db, make_job):
        """The provider sees the unmarked base so marks do not stack up."""
        job_id = make_job()
        _run(pipeline, InitialStep(job_id=job_id))
        base = JobRepository(db).get(job_id).versions[0]
        clean = asyncio.run(storage.download(base.clean_image_pool, base.clean_image_path))

        _run(pipeline, _refine(db, job_id))

        assert provider.calls[-1]["kind"] == "refine"
        assert provider.calls[-1]["base_image"] == clean


def _pixels(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGB")


class TestWatermark:
    def test_served_image_is_marked_and_clean_copy_is_not(self, pipeline, storage, db, make_job):
        """The served image differs from the generated pixels; the clean copy matches them."""
        job_id = make_job()

        _run(pipeline, InitialStep(job_id=job_id))

        version = JobRepository(db).get(job_id).versions[0]
        served = asyncio.run(storage.download(version.image_pool, version.image_path))
        clean = asyncio.run(storage.download(version.clean_image_pool, version.clean_image_path))
        generated = Image.new("RGB", (512, 512), "purple")
        assert ImageChops.difference(_pixels(clean), generated).getbbox() is None
        bbox = ImageChops.difference(_pixels(served), generated).getbbox()
        assert bbox is not None
        assert bbox[0] > 256 and bbox[1] > 256

    def test_both_copies_carry_provenance(self, pipeline, storage, db, make_job):
        """Job and version are recoverable from either stored copy."""
        job_id = make_job()

        _run(pipeline, InitialStep(job_id=job_id))

        version = JobRepository(db).get(job_id).versions[0]
        for pool, path in ((version.image_pool, version.image_path),
                           (version.clean_image_pool, version.clean_image_path)):
            provenance = extract_provenance(asyncio.run(storage.download(pool, path)))
            assert (provenance.job_id, provenance.version_id) == (job_id, "v1")

    def test_disabled_stores_single_unmarked_copy(self, pipeline, storage, db, make_job, monkeypatch):
        """With watermarking off there is no clean copy and the served image is untouched."""
        monkeypatch.setattr(settings, "WATERMARK_ENABLED", False)
        job_id = make_job()

        _run(pipeline, InitialStep(job_id=job_id))

        version = JobRepository(db).get(job_id).versions[0]
        assert not version.has_watermark
        assert version.clean_image_path is None
        assert not _exists(storage, StoragePool.PRIVATE, artifact_paths(OWNER, job_id, "v1")[2])
        served = asyncio.run(storage.download(version.image_pool, version.image_path))
        assert ImageChops.difference(_pixels(served), Image.new("RGB", (512, 512), "purple")).getbbox() is None
        assert extract_provenance(served) is None
