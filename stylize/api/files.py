"""
File Routes
Serves and accepts objects for the local storage backend.

Signed URLs minted by LocalBackend point here; public pool objects are
served without a signature, everything else needs a valid one.
"""

import io
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from stylize.api.deps import get_storage
from stylize.services.imaging import sniff_mime_type
from stylize.services.storage import POOL_POLICIES, LocalBackend, StorageService
from stylize.workers.base import NonRetryableError

logger = logging.getLogger(__name__)

router = APIRouter()


def _authorize(storage: StorageService, method: str, bucket: str, path: str,
               expires: Optional[int], signature: Optional[str]):
    if not isinstance(storage.backend, LocalBackend):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    pool = storage.pool_for_bucket(bucket)
    if pool is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    if method == "GET" and POOL_POLICIES[pool].public:
        return
    if expires is None or not signature or not storage.backend.verify(method, bucket, path, expires, signature):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")


@router.get("/{bucket}/{file_path:path}")
async def serve_file(
    bucket: str,
    file_path: str,
    expires: Optional[int] = None,
    signature: Optional[str] = None,
    storage: StorageService = Depends(get_storage),
):
    """Serve a stored object."""
    _authorize(storage, "GET", bucket, file_path, expires, signature)
    pool = storage.pool_for_bucket(bucket)
    try:
        file_bytes = await storage.download(pool, file_path)
    except NonRetryableError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    return StreamingResponse(
        io.BytesIO(file_bytes),
        media_type=sniff_mime_type(file_bytes),
        headers={"Cache-Control": POOL_POLICIES[pool].cache_control},
    )


@router.put("/{bucket}/{file_path:path}", status_code=status.HTTP_201_CREATED)
async def upload_file(
    bucket: str,
    file_path: str,
    request: Request,
    expires: Optional[int] = None,
    signature: Optional[str] = None,
    storage: StorageService = Depends(get_storage),
):
    """Accept an upload through a signed write URL."""
    _authorize(storage, "PUT", bucket, file_path, expires, signature)
    data = await request.body()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")

    pool = storage.pool_for_bucket(bucket)
    content_type = request.headers.get("content-type") or sniff_mime_type(data)
    await storage.upload(pool, file_path, data, content_type=content_type)
    logger.info(f"[Files] Stored {len(data)} bytes at {pool.value}/{file_path}")
    return {"bucket": bucket, "path": file_path, "size": len(data)}
