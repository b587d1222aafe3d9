"""
Storage Service
Named storage pools over Google Cloud Storage, S3, or the local filesystem.

Each pool is its own bucket with a visibility and retention policy. Backends
expose blocking calls; StorageService runs them in worker threads so one
job's I/O never blocks another's.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from stylize.core.config import settings
from stylize.workers.base import ErrorCode, NonRetryableError, RetryableError, with_retry

logger = logging.getLogger(__name__)


class StoragePool(str, Enum):
    RAW = "raw"
    PRIVATE = "private"
    PUBLIC = "public"
    DERIVATIVE = "derivative"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class PoolPolicy:
    public: bool
    cdn: bool
    retention_days: Optional[int]
    cache_control: str


POOL_POLICIES: Dict[StoragePool, PoolPolicy] = {
    StoragePool.RAW: PoolPolicy(public=False, cdn=False, retention_days=1, cache_control="private, no-store"),
    StoragePool.PRIVATE: PoolPolicy(public=False, cdn=False, retention_days=None, cache_control="private, max-age=3600"),
    StoragePool.PUBLIC: PoolPolicy(public=True, cdn=True, retention_days=None, cache_control="public, max-age=31536000, immutable"),
    StoragePool.DERIVATIVE: PoolPolicy(public=False, cdn=False, retention_days=None, cache_control="private, max-age=86400"),
    StoragePool.ARCHIVE: PoolPolicy(public=False, cdn=False, retention_days=30, cache_control="private, no-store"),
}


class StorageError(RetryableError):
    """Transient backend failure (network, 5xx, throttling)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code=ErrorCode.STORAGE_ERROR, details=details)


class ObjectNotFound(NonRetryableError):
    """The requested object does not exist."""

    def __init__(self, bucket: str, path: str):
        super().__init__(f"Object not found: {bucket}/{path}", code=ErrorCode.NOT_FOUND)
        self.bucket = bucket
        self.path = path


# --- Backends ---


class LocalBackend:
    """Filesystem backend. Signed URLs point at the API's /files route."""

    name = "local"

    def __init__(self, base_path: str, base_url: str, signing_secret: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.signing_secret = signing_secret.encode()
        logger.info(f"[Storage] Using local storage: {self.base_path}")

    def _file(self, bucket: str, path: str) -> Path:
        root = (self.base_path / bucket).resolve()
        target = (root / path).resolve()
        if root != target and root not in target.parents:
            raise NonRetryableError(f"Path escapes bucket: {path}")
        return target

    def put(self, bucket: str, path: str, data: bytes, content_type: str, cache_control: str):
        target = self._file(bucket, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    def get(self, bucket: str, path: str) -> bytes:
        target = self._file(bucket, path)
        if not target.is_file():
            raise ObjectNotFound(bucket, path)
        return target.read_bytes()

    def delete(self, bucket: str, path: str):
        self._file(bucket, path).unlink(missing_ok=True)

    def exists(self, bucket: str, path: str) -> bool:
        return self._file(bucket, path).is_file()

    def copy(self, src_bucket: str, src_path: str, dst_bucket: str, dst_path: str):
        data = self.get(src_bucket, src_path)
        self.put(dst_bucket, dst_path, data, "", "")

    def sign(self, method: str, bucket: str, path: str, expires: int) -> str:
        message = f"{method.upper()}|{bucket}|{path}|{expires}".encode()
        return hmac.new(self.signing_secret, message, hashlib.sha256).hexdigest()

    def verify(self, method: str, bucket: str, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self.sign(method, bucket, path, expires), signature)

    def signed_url(self, bucket: str, path: str, ttl: int, method: str = "GET",
                   content_type: Optional[str] = None) -> str:
        expires = int(time.time()) + ttl
        query = urlencode({"expires": expires, "signature": self.sign(method, bucket, path, expires)})
        return f"{self.base_url}/files/{bucket}/{quote(path)}?{query}"

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/files/{bucket}/{quote(path)}"


class GCSBackend:
    """Google Cloud Storage backend."""

    name = "gcs"

    def __init__(self, project_id: str):
        from google.cloud import storage
        from google.api_core import exceptions as gcs_exceptions

        self.client = storage.Client(project=project_id or None)
        self._not_found = gcs_exceptions.NotFound
        logger.info(f"[Storage] Using Google Cloud Storage (project: {project_id or 'default'})")

    def _blob(self, bucket: str, path: str):
        return self.client.bucket(bucket).blob(path)

    def put(self, bucket: str, path: str, data: bytes, content_type: str, cache_control: str):
        blob = self._blob(bucket, path)
        blob.cache_control = cache_control
        blob.upload_from_string(data, content_type=content_type)

    def get(self, bucket: str, path: str) -> bytes:
        try:
            return self._blob(bucket, path).download_as_bytes()
        except self._not_found:
            raise ObjectNotFound(bucket, path)

    def delete(self, bucket: str, path: str):
        try:
            self._blob(bucket, path).delete()
        except self._not_found:
            logger.debug(f"[Storage] Already gone: {bucket}/{path}")

    def exists(self, bucket: str, path: str) -> bool:
        return self._blob(bucket, path).exists()

    def copy(self, src_bucket: str, src_path: str, dst_bucket: str, dst_path: str):
        source = self.client.bucket(src_bucket)
        try:
            source.copy_blob(source.blob(src_path), self.client.bucket(dst_bucket), dst_path)
        except self._not_found:
            raise ObjectNotFound(src_bucket, src_path)

    def signed_url(self, bucket: str, path: str, ttl: int, method: str = "GET",
                   content_type: Optional[str] = None) -> str:
        return self._blob(bucket, path).generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=ttl),
            method=method,
            content_type=content_type,
        )

    def public_url(self, bucket: str, path: str) -> str:
        return f"https://storage.googleapis.com/{bucket}/{quote(path)}"


class S3Backend:
    """S3-compatible backend (AWS, R2, MinIO)."""

    name = "s3"

    def __init__(self):
        import boto3
        from botocore.config import Config
        from botocore.exceptions import ClientError

        self.s3 = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT or None,
            aws_access_key_id=settings.S3_ACCESS_KEY or None,
            aws_secret_access_key=settings.S3_SECRET_KEY or None,
            region_name=settings.S3_REGION,
            config=Config(signature_version="s3v4")
        )
        self._client_error = ClientError
        logger.info(f"[Storage] Using S3 (endpoint: {settings.S3_ENDPOINT or 'aws'})")

    def _is_missing(self, error) -> bool:
        code = error.response.get("Error", {}).get("Code", "")
        return code in ("404", "NoSuchKey", "NotFound")

    def put(self, bucket: str, path: str, data: bytes, content_type: str, cache_control: str):
        self.s3.put_object(
            Bucket=bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
            CacheControl=cache_control,
        )

    def get(self, bucket: str, path: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=bucket, Key=path)
        except self._client_error as e:
            if self._is_missing(e):
                raise ObjectNotFound(bucket, path)
            raise
        return response["Body"].read()

    def delete(self, bucket: str, path: str):
        # S3 delete is already a no-op for missing keys
        self.s3.delete_object(Bucket=bucket, Key=path)

    def exists(self, bucket: str, path: str) -> bool:
        try:
            self.s3.head_object(Bucket=bucket, Key=path)
            return True
        except self._client_error as e:
            if self._is_missing(e):
                return False
            raise

    def copy(self, src_bucket: str, src_path: str, dst_bucket: str, dst_path: str):
        try:
            self.s3.copy_object(
                Bucket=dst_bucket,
                Key=dst_path,
                CopySource={"Bucket": src_bucket, "Key": src_path},
            )
        except self._client_error as e:
            if self._is_missing(e):
                raise ObjectNotFound(src_bucket, src_path)
            raise

    def signed_url(self, bucket: str, path: str, ttl: int, method: str = "GET",
                   content_type: Optional[str] = None) -> str:
        operation = "put_object" if method.upper() == "PUT" else "get_object"
        params = {"Bucket": bucket, "Key": path}
        if content_type and operation == "put_object":
            params["ContentType"] = content_type
        return self.s3.generate_presigned_url(operation, Params=params, ExpiresIn=ttl)

    def public_url(self, bucket: str, path: str) -> str:
        if settings.S3_ENDPOINT:
            return f"{settings.S3_ENDPOINT.rstrip('/')}/{bucket}/{quote(path)}"
        return f"https://{bucket}.s3.{settings.S3_REGION}.amazonaws.com/{quote(path)}"


def create_backend(backend: Optional[str] = None):
    backend = backend or settings.STORAGE_BACKEND
    if backend == "gcs":
        return GCSBackend(settings.GCP_PROJECT_ID)
    if backend == "s3":
        return S3Backend()
    if backend == "local":
        return LocalBackend(settings.LOCAL_STORAGE_PATH, settings.API_BASE_URL, settings.URL_SIGNING_SECRET)
    raise ValueError(f"Unknown storage backend: {backend}")


def default_buckets() -> Dict[StoragePool, str]:
    return {
        StoragePool.RAW: settings.BUCKET_RAW,
        StoragePool.PRIVATE: settings.BUCKET_PRIVATE,
        StoragePool.PUBLIC: settings.BUCKET_PUBLIC,
        StoragePool.DERIVATIVE: settings.BUCKET_DERIVATIVE,
        StoragePool.ARCHIVE: settings.BUCKET_ARCHIVE,
    }


# --- Gateway ---


class StorageService:
    """Pool-aware object store gateway used by the pipeline."""

    def __init__(self, backend=None, buckets: Optional[Dict[StoragePool, str]] = None):
        self.backend = backend or create_backend()
        self.buckets = buckets or default_buckets()
        self._pools_by_bucket = {bucket: pool for pool, bucket in self.buckets.items()}

    def bucket_for(self, pool) -> str:
        return self.buckets[StoragePool(pool)]

    def pool_for_bucket(self, bucket: str) -> Optional[StoragePool]:
        return self._pools_by_bucket.get(bucket)

    async def _run(self, operation: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (ObjectNotFound, NonRetryableError):
            raise
        except Exception as e:
            logger.error(f"[Storage] {operation} failed: {e}")
            raise StorageError(f"{operation} failed: {e}", details={"args": [str(a) for a in args[:2]]}) from e

    @with_retry(max_retries=2, retry_delay=0.5, retryable_exceptions=(StorageError,))
    async def upload(self, pool, path: str, data: bytes, content_type: str = "image/png",
                     cache_control: Optional[str] = None) -> str:
        """Upload bytes and return the pool-relative path."""
        pool = StoragePool(pool)
        cache_control = cache_control or POOL_POLICIES[pool].cache_control
        await self._run("upload", self.backend.put, self.bucket_for(pool), path, data, content_type, cache_control)
        logger.debug(f"[Storage] Uploaded {len(data)} bytes to {pool.value}/{path}")
        return path

    @with_retry(max_retries=2, retry_delay=0.5, retryable_exceptions=(StorageError,))
    async def download(self, pool, path: str) -> bytes:
        return await self._run("download", self.backend.get, self.bucket_for(pool), path)

    async def delete(self, pool, path: str):
        """Delete an object. Deleting a missing object succeeds."""
        await self._run("delete", self.backend.delete, self.bucket_for(pool), path)
        logger.debug(f"[Storage] Deleted {StoragePool(pool).value}/{path}")

    async def exists(self, pool, path: str) -> bool:
        return await self._run("exists", self.backend.exists, self.bucket_for(pool), path)

    @with_retry(max_retries=2, retry_delay=0.5, retryable_exceptions=(StorageError,))
    async def copy(self, src_pool, src_path: str, dst_pool, dst_path: str):
        await self._run(
            "copy", self.backend.copy,
            self.bucket_for(src_pool), src_path, self.bucket_for(dst_pool), dst_path,
        )

    async def move(self, src_pool, src_path: str, dst_pool, dst_path: str):
        """Copy then delete. A leftover source is logged, not raised."""
        await self.copy(src_pool, src_path, dst_pool, dst_path)
        try:
            await self.delete(src_pool, src_path)
        except StorageError as e:
            logger.warning(f"[Storage] Move left source behind at {StoragePool(src_pool).value}/{src_path}: {e}")

    async def mint_read_url(self, pool, path: str, ttl: Optional[int] = None) -> str:
        ttl = ttl or settings.SIGNED_URL_TTL_SECONDS
        return await self._run("sign", self.backend.signed_url, self.bucket_for(pool), path, ttl, "GET")

    async def mint_write_url(self, pool, path: str, ttl: Optional[int] = None,
                             content_type: str = "image/jpeg") -> str:
        ttl = ttl or settings.WRITE_URL_TTL_SECONDS
        return await self._run(
            "sign", self.backend.signed_url, self.bucket_for(pool), path, ttl, "PUT", content_type,
        )

    def public_url(self, pool, path: str) -> str:
        """Long-lived URL for a public pool object, via the CDN when configured."""
        pool = StoragePool(pool)
        if not POOL_POLICIES[pool].public:
            raise ValueError(f"Pool {pool.value} is not public")
        if settings.CDN_BASE_URL and POOL_POLICIES[pool].cdn:
            return f"{settings.CDN_BASE_URL.rstrip('/')}/{quote(path)}"
        return self.backend.public_url(self.bucket_for(pool), path)

    async def invalidate_cdn(self, paths: List[str]) -> bool:
        """Purge CDN cache entries. Returns False when no purge endpoint is set."""
        if not paths:
            return True
        if not settings.CDN_PURGE_URL:
            logger.info(f"[Storage] CDN purge skipped (not configured): {paths}")
            return False

        headers = {}
        if settings.CDN_PURGE_TOKEN:
            headers["Authorization"] = f"Bearer {settings.CDN_PURGE_TOKEN}"
        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    settings.CDN_PURGE_URL, json={"paths": paths}, headers=headers, timeout=10.0,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"[Storage] CDN purge failed for {len(paths)} path(s): {e}")
                return False
        logger.info(f"[Storage] CDN purge requested for {len(paths)} path(s)")
        return True


_storage: Optional[StorageService] = None


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage
