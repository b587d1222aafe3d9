"""HTTP surface: job routes, internal routes, file proxy, error format."""

import asyncio

import pytest

from stylize.api import internal
from stylize.core.config import settings
from stylize.services.gemini_image import ProviderError
from stylize.services.storage import ObjectNotFound, StorageError, StoragePool
from stylize.workers.base import ErrorCode
from stylize.workers.sweep import RecoverySweep

HEADERS = {"X-User-Id": "user-1"}
OTHER_HEADERS = {"X-User-Id": "user-2"}


def _create(client, reference_ids, **overrides):
    body = {"reference_image_ids": reference_ids, "mode": "preset", "preset_id": "royal"}
    body.update(overrides)
    return client.post("/api/v1/jobs", headers=HEADERS, json=body)


def _execute(client, dispatcher):
    """Deliver the most recently dispatched payload to the execute endpoint."""
    payload = dispatcher.payloads[-1].model_dump()
    return client.post("/internal/jobs/execute", json=payload)


class TestCreateAndPoll:
    def test_requires_user(self, client, reference_ids):
        """Missing X-User-Id → 401 in the standard error shape."""
        resp = client.post("/api/v1/jobs", json={"reference_image_ids": reference_ids, "mode": "preset",
                                                 "preset_id": "royal"})

        assert resp.status_code == 401
        assert resp.json()["error"] == "unauthorized"
        assert "message" in resp.json()

    def test_create_returns_202(self, client, dispatcher, reference_ids):
        """Creation answers immediately with an estimate."""
        resp = _create(client, reference_ids)

        assert resp.status_code == 202
        data = resp.json()
        assert data["status"] == "queued"
        assert data["estimated_ms"] > 0
        assert dispatcher.payloads[0].job_id == data["job_id"]

    def test_mode_inputs_validated(self, client, reference_ids):
        """Preset mode without a preset is a 422."""
        resp = _create(client, reference_ids, preset_id=None)

        assert resp.status_code == 422

    def test_concurrency_limit_is_429(self, client, reference_ids):
        """Over the ceiling → 429 concurrent_limit."""
        for _ in range(settings.MAX_CONCURRENT_JOBS):
            assert _create(client, reference_ids).status_code == 202

        resp = _create(client, reference_ids)

        assert resp.status_code == 429
        assert resp.json()["error"] == "concurrent_limit"

    def test_full_lifecycle(self, client, dispatcher, reference_ids):
        """Create, execute, poll, refine, publish, avatar, delete."""
        job_id = _create(client, reference_ids).json()["job_id"]

        executed = _execute(client, dispatcher)
        assert executed.status_code == 200
        assert executed.json()["outcome"] == "succeeded"

        status = client.get(f"/api/v1/jobs/{job_id}", headers=HEADERS).json()
        assert status["status"] == "succeeded"
        assert [v["version_id"] for v in status["versions"]] == ["v1"]

        refine = client.post(f"/api/v1/jobs/{job_id}/refine", headers=HEADERS, json={"instruction": "add a crown"})
        assert refine.status_code == 202
        assert refine.json()["requested_version_id"] == "v2"
        assert _execute(client, dispatcher).json()["outcome"] == "succeeded"

        published = client.post(f"/api/v1/jobs/{job_id}/publish", headers=HEADERS)
        assert published.status_code == 200
        assert published.json()["version_id"] == "v2"

        avatar = client.post(f"/api/v1/jobs/{job_id}/avatar", headers=HEADERS, json={"version_id": "v1"})
        assert avatar.status_code == 200

        listed = client.get("/api/v1/jobs", headers=HEADERS).json()
        assert [j["job_id"] for j in listed] == [job_id]
        assert listed[0]["version_count"] == 2

        deleted = client.delete(f"/api/v1/jobs/{job_id}", headers=HEADERS, params={"archive": "false"})
        assert deleted.status_code == 200
        assert deleted.json() == {"job_id": job_id, "deleted": True, "archived_path": None}
        assert client.get(f"/api/v1/jobs/{job_id}", headers=HEADERS).status_code == 404

    def test_other_owner_forbidden(self, client, reference_ids):
        """Polling someone else's job → 403."""
        job_id = _create(client, reference_ids).json()["job_id"]

        resp = client.get(f"/api/v1/jobs/{job_id}", headers=OTHER_HEADERS)

        assert resp.status_code == 403

    def test_refine_before_ready(self, client, reference_ids):
        """Refining a job with no versions → 409."""
        job_id = _create(client, reference_ids).json()["job_id"]

        resp = client.post(f"/api/v1/jobs/{job_id}/refine", headers=HEADERS, json={"instruction": "smile"})

        assert resp.status_code == 409


class TestInternal:
    def test_retry_outcome_is_503(self, client, dispatcher, provider, reference_ids):
        """Retryable failures ask the delivering queue to redeliver."""
        provider.errors = [ProviderError(ErrorCode.GENERATION_FAILED, "upstream 500")]
        _create(client, reference_ids)

        resp = _execute(client, dispatcher)

        assert resp.status_code == 503
        assert resp.json()["outcome"] == "retry"

    def test_terminal_failure_is_200(self, client, dispatcher, provider, reference_ids):
        """Terminal failures acknowledge the delivery."""
        provider.errors = [ProviderError(ErrorCode.BLOCKED, "blocked")]
        _create(client, reference_ids)

        resp = _execute(client, dispatcher)

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "failed"

    def test_malformed_payload(self, client):
        """Unparseable payloads are rejected without redelivery."""
        resp = client.post("/internal/jobs/execute", json={"type": "mystery", "job_id": "x"})

        assert resp.status_code == 400

    def test_execute_token(self, client, dispatcher, reference_ids, monkeypatch):
        """With INTERNAL_API_TOKEN set, a bearer token is required."""
        monkeypatch.setattr(settings, "INTERNAL_API_TOKEN", "s3cret")
        _create(client, reference_ids)
        payload = dispatcher.payloads[-1].model_dump()

        assert client.post("/internal/jobs/execute", json=payload).status_code == 401
        resp = client.post("/internal/jobs/execute", json=payload, headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200

    def test_cron_sweep(self, client, dispatcher, session_factory, monkeypatch):
        """The cron endpoint runs one sweep pass behind CRON_SECRET."""
        from stylize.main import app

        app.dependency_overrides[internal.get_sweep] = lambda: RecoverySweep(
            dispatcher, session_factory=session_factory,
        )
        assert client.post("/internal/cron/recovery-sweep").status_code == 401

        monkeypatch.setattr(settings, "CRON_SECRET", "cron-key")
        assert client.post("/internal/cron/recovery-sweep").status_code == 401
        resp = client.post("/internal/cron/recovery-sweep", headers={"Authorization": "Bearer cron-key"})

        assert resp.status_code == 200
        assert resp.json()["found"] == 0


class TestFiles:
    @pytest.fixture()
    def finished(self, client, dispatcher, reference_ids):
        job_id = _create(client, reference_ids).json()["job_id"]
        _execute(client, dispatcher)
        return client.get(f"/api/v1/jobs/{job_id}", headers=HEADERS).json()

    def test_signed_url_serves_file(self, client, finished):
        """A minted read URL fetches the thumbnail."""
        resp = client.get(finished["versions"][0]["thumb_url"])

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/jpeg"

    def test_tampered_signature_rejected(self, client, finished):
        """Any change to the signature → 403."""
        url = finished["versions"][0]["image_url"]

        resp = client.get(url[:-4] + "0000")

        assert resp.status_code == 403

    def test_unsigned_private_rejected(self, client, finished):
        """Private objects need a signature."""
        url = finished["versions"][0]["image_url"].split("?")[0]

        assert client.get(url).status_code == 403

    def test_public_pool_served_unsigned(self, client, finished):
        """Published images are reachable without a signature."""
        published = client.post(f"/api/v1/jobs/{finished['job_id']}/publish", headers=HEADERS).json()

        resp = client.get(published["public_url"])

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"

    def test_signed_write_url_accepts_upload(self, client, storage):
        """A minted write URL stores the PUT body in its pool."""
        url = asyncio.run(storage.mint_write_url(StoragePool.PRIVATE, "user-1/references/new.jpg"))

        resp = client.put(url, content=b"jpeg-bytes", headers={"Content-Type": "image/jpeg"})

        assert resp.status_code == 201
        assert resp.json() == {"bucket": "test-private", "path": "user-1/references/new.jpg", "size": 10}
        assert asyncio.run(storage.download(StoragePool.PRIVATE, "user-1/references/new.jpg")) == b"jpeg-bytes"

    def test_empty_upload_rejected(self, client, storage):
        """A signed PUT with no body is a 400 and stores nothing."""
        url = asyncio.run(storage.mint_write_url(StoragePool.PRIVATE, "user-1/references/empty.jpg"))

        resp = client.put(url, content=b"")

        assert resp.status_code == 400
        assert not asyncio.run(storage.exists(StoragePool.PRIVATE, "user-1/references/empty.jpg"))

    def test_read_url_cannot_upload(self, client, storage):
        """A GET signature does not authorize a PUT."""
        url = asyncio.run(storage.mint_read_url(StoragePool.PRIVATE, "user-1/references/x.jpg"))

        assert client.put(url, content=b"x").status_code == 403


class TestWorkerErrors:
    @pytest.fixture()
    def job_id(self, client, dispatcher, reference_ids):
        job_id = _create(client, reference_ids).json()["job_id"]
        _execute(client, dispatcher)
        return job_id

    def test_storage_outage_is_503(self, client, storage, job_id, monkeypatch):
        """A storage failure escaping a route is a retryable 503 without backend detail."""
        async def broken_move(*args, **kwargs):
            raise StorageError("connection reset by bucket-host-7")

        monkeypatch.setattr(storage, "move", broken_move)

        resp = client.post(f"/api/v1/jobs/{job_id}/publish", headers=HEADERS)

        assert resp.status_code == 503
        assert resp.json()["error"] == ErrorCode.STORAGE_ERROR
        assert "bucket-host-7" not in resp.json()["message"]

    def test_missing_object_is_404(self, client, storage, job_id, monkeypatch):
        """An object gone from both pools surfaces as 404 not_found."""
        async def vanished(src_pool, src_path, dst_pool, dst_path):
            raise ObjectNotFound(storage.bucket_for(src_pool), src_path)

        monkeypatch.setattr(storage, "move", vanished)

        resp = client.post(f"/api/v1/jobs/{job_id}/publish", headers=HEADERS)

        assert resp.status_code == 404
        assert resp.json() == {"error": "not_found", "message": "Object not found"}


def test_health(client):
    """Health reports database and storage."""
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["services"]["database"] == "ok"
