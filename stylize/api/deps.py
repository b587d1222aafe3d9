"""
API Dependencies
Common dependencies for FastAPI routes (database sessions, caller identity, services).
"""

from typing import Generator, Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from stylize.core.config import settings
from stylize.core.database import SessionLocal
from stylize.core.exceptions import Unauthorized
from stylize.services.orchestrator import GenerationOrchestrator, SignedUrlCache
from stylize.services.storage import StorageService
from stylize.services.storage import get_storage as _get_storage
from stylize.workers.dispatch import get_dispatcher as _get_dispatcher


def get_db() -> Generator:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, set by the authenticating gateway in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise Unauthorized()
    return x_user_id.strip()


def get_storage() -> StorageService:
    return _get_storage()


def get_dispatcher():
    return _get_dispatcher()


def get_url_cache() -> Optional[SignedUrlCache]:
    if not settings.SIGNED_URL_CACHE_ENABLED:
        return None
    from stylize.core.redis import get_cache_redis
    # Expire well before the URLs themselves do
    ttl = max(60, settings.SIGNED_URL_TTL_SECONDS - 300)
    return SignedUrlCache(redis=get_cache_redis(), ttl=ttl)


def get_orchestrator(
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    dispatcher=Depends(get_dispatcher),
    url_cache: Optional[SignedUrlCache] = Depends(get_url_cache),
) -> GenerationOrchestrator:
    return GenerationOrchestrator(db, storage, dispatcher, url_cache=url_cache)
