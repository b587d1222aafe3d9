"""
Redis Connections
One pool per use: RQ needs raw bytes and patient timeouts, the signed-URL
cache wants decoded strings and must fail fast so reads never stall.
"""

import logging
from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from stylize.core.config import settings

logger = logging.getLogger(__name__)


def mask_url(url: str) -> str:
    """redis://:secret@host:6379/0 -> redis://***@host:6379/0"""
    parts = urlsplit(url)
    if parts.password is None and parts.username is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://***@{host}{parts.path}"


class RedisManager:
    """Lazily built Redis clients for the job queue and the URL cache."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self._queue_client: Optional[Redis] = None
        self._cache_client: Optional[Redis] = None

    @property
    def queue_client(self) -> Redis:
        if self._queue_client is None:
            pool = ConnectionPool.from_url(
                self.url,
                max_connections=10,
                socket_connect_timeout=5,
                socket_timeout=10,
                retry_on_timeout=True,
                decode_responses=False,  # RQ pickles job data
            )
            self._queue_client = Redis(connection_pool=pool)
            logger.info(f"[Redis] Queue pool ready for {mask_url(self.url)}")
        return self._queue_client

    @property
    def cache_client(self) -> Redis:
        if self._cache_client is None:
            pool = ConnectionPool.from_url(
                self.url,
                max_connections=20,
                socket_connect_timeout=1,
                socket_timeout=0.5,
                decode_responses=True,
            )
            self._cache_client = Redis(connection_pool=pool)
            logger.info(f"[Redis] Cache pool ready for {mask_url(self.url)}")
        return self._cache_client

    def health_check(self) -> dict:
        try:
            client = self.queue_client
            client.ping()
            info = client.info("server")
        except RedisError as e:
            logger.error(f"[Redis] Health check failed: {e}")
            return {"connected": False, "error": str(e), "url": mask_url(self.url)}
        return {
            "connected": True,
            "redis_version": info.get("redis_version", "unknown"),
            "url": mask_url(self.url),
        }

    def close(self):
        for client in (self._queue_client, self._cache_client):
            if client is not None:
                client.connection_pool.disconnect()
        self._queue_client = None
        self._cache_client = None
        logger.info("[Redis] Pools closed")


@lru_cache()
def get_redis_manager() -> RedisManager:
    return RedisManager()


def get_redis() -> Redis:
    """Connection for RQ queues and workers."""
    return get_redis_manager().queue_client


def get_cache_redis() -> Redis:
    """Connection for the signed-URL cache."""
    return get_redis_manager().cache_client


def redis_health_check() -> dict:
    return get_redis_manager().health_check()


class Queues:
    """RQ queue names."""
    GENERATION = "generation"
    MAINTENANCE = "maintenance"


__all__ = [
    "RedisManager",
    "get_redis_manager",
    "get_redis",
    "get_cache_redis",
    "redis_health_check",
    "mask_url",
    "Queues",
]
