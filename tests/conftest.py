"""Shared pytest fixtures.

Every test runs against a fresh in-memory SQLite database and a local
storage backend rooted in tmp_path. The image provider is a fake that
returns Pillow-generated PNGs, so nothing leaves the process.
"""

import asyncio
import io
import os
import tempfile

# Settings are read at import time; keep tests away from ./stylize.db and the
# background sweep.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("DISPATCH_MODE", "inline")
os.environ.setdefault("LOCAL_STORAGE_PATH", tempfile.mkdtemp(prefix="stylize-test-"))

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stylize.core.config import settings
from stylize.core.database import Base
from stylize.models import Job, ReferenceImage
from stylize.models.job import JobStatus
from stylize.schemas.job import InitialStep
from stylize.services.gemini_image import ProviderResult
from stylize.services.jobs import new_job_id
from stylize.services.storage import LocalBackend, StoragePool, StorageService
from stylize.workers.pipeline import GenerationPipeline

OWNER = "user-1"
OTHER_OWNER = "user-2"


def make_png(width: int = 512, height: int = 512, color: str = "purple") -> bytes:
    """PNG bytes for a solid-color image built in memory."""
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buf, format="PNG")
    return buf.getvalue()


class FakeProvider:
    """Stands in for GeminiImageService.

    `errors` is consumed one entry per call; None means succeed.
    """

    def __init__(self, errors=None, image_bytes: bytes = None, size=(512, 512)):
        self.errors = list(errors or [])
        self.image_bytes = image_bytes
        self.size = size
        self.calls = []

    async def generate(self, prompt, reference_images, aspect_ratio="1:1", quality="standard"):
        self.calls.append({"kind": "generate", "prompt": prompt, "references": len(reference_images)})
        return self._result()

    async def refine(self, base_image, instruction, reference_images, prompt=None,
                     aspect_ratio="1:1", quality="standard"):
        self.calls.append({"kind": "refine", "instruction": instruction, "references": len(reference_images),
                           "base_image": base_image})
        return self._result()

    def _result(self) -> ProviderResult:
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return ProviderResult(
            image_bytes=self.image_bytes or make_png(*self.size),
            mime_type="image/png",
            request_id=f"req-{len(self.calls)}",
            model="fake-image-model",
        )


class RecordingDispatcher:
    """Collects dispatched payloads instead of running them."""

    def __init__(self):
        self.payloads = []

    def dispatch(self, payload):
        self.payloads.append(payload)
        return f"step-{payload.job_id}-{payload.requested_version_id}"

    async def drain(self):
        return None


@pytest.fixture()
def engine():
    """Fresh in-memory database per test.

    StaticPool makes every session share the one connection, so all of
    them see the same in-memory tables.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def storage(tmp_path):
    backend = LocalBackend(str(tmp_path / "objects"), "http://testserver", "test-signing-secret")
    return StorageService(backend=backend, buckets={pool: f"test-{pool.value}" for pool in StoragePool})


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def pipeline(storage, provider, session_factory):
    return GenerationPipeline(storage=storage, provider=provider, session_factory=session_factory, settings=settings)


@pytest.fixture()
def reference_ids(db, storage):
    """Two active reference images owned by OWNER, bytes in the private pool."""
    ids = []
    for index in range(2):
        ref_id = f"ref-{index}"
        path = f"{OWNER}/references/{ref_id}.png"
        asyncio.run(storage.upload(StoragePool.PRIVATE, path, make_png(300, 300, "white")))
        db.add(ReferenceImage(id=ref_id, owner_id=OWNER, pool="private", storage_path=path, status="active"))
        ids.append(ref_id)
    db.commit()
    return ids


@pytest.fixture()
def make_job(db, reference_ids):
    """Insert a queued job the way the orchestrator does and return its id."""

    def _make(owner_id: str = OWNER, visibility: str = "private", **overrides) -> str:
        job_id = new_job_id()
        values = dict(
            id=job_id,
            owner_id=owner_id,
            mode="preset",
            reference_image_ids=list(reference_ids),
            preset_id="royal",
            aspect_ratio="1:1",
            quality="standard",
            provider_name="gemini",
            provider_model="fake-image-model",
            provider_request_ids=[],
            status=JobStatus.QUEUED.value,
            visibility=visibility,
            pending_step=InitialStep(job_id=job_id).model_dump(),
            attempts=0,
        )
        values.update(overrides)
        values.setdefault("pending_version_id", (values["pending_step"] or {}).get("requested_version_id"))
        db.add(Job(**values))
        db.commit()
        return job_id

    return _make


@pytest.fixture()
def client(session_factory, storage, dispatcher, pipeline):
    """TestClient with database, storage, dispatch and pipeline overridden."""
    from stylize.api import deps, internal
    from stylize.main import app

    def _override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[deps.get_db] = _override_db
    app.dependency_overrides[deps.get_storage] = lambda: storage
    app.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[internal.get_pipeline] = lambda: pipeline
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
