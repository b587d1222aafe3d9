"""
Base Worker Classes
Error taxonomy, retry helper and the RQ-aware worker base class.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from rq import get_current_job

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ErrorCode:
    """Classified failure codes stored on jobs and returned to clients."""
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    GENERATION_FAILED = "generation_failed"
    VALIDATION_FAILED = "validation_failed"
    INVALID_INPUT = "invalid_input"
    STORAGE_ERROR = "storage_error"
    STUCK = "stuck"
    CLAIM_FAILED = "claim_failed"
    VERSION_GAP = "version_gap"
    NOT_FOUND = "not_found"
    DEFERRED = "deferred"
    BANNED_USER = "banned_user"


# Messages shown to clients. Provider text never leaves the logs.
PUBLIC_MESSAGES = {
    ErrorCode.BLOCKED: "This request was blocked by the content policy.",
    ErrorCode.RATE_LIMITED: "The image service is busy. Your request will be retried.",
    ErrorCode.GENERATION_FAILED: "Image generation failed. Please try again.",
    ErrorCode.VALIDATION_FAILED: "The generated image could not be processed.",
    ErrorCode.INVALID_INPUT: "One or more input images are no longer available.",
    ErrorCode.STORAGE_ERROR: "A storage error occurred. Your request will be retried.",
    ErrorCode.STUCK: "Generation did not complete. Please try again.",
    ErrorCode.BANNED_USER: "This account cannot create images.",
}


def public_message(code: str) -> str:
    return PUBLIC_MESSAGES.get(code, "Something went wrong. Please try again.")


class WorkerException(Exception):
    """Base exception for worker errors."""

    def __init__(
        self,
        message: str,
        code: str = ErrorCode.GENERATION_FAILED,
        retryable: bool = True,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.details = details or {}


class NonRetryableError(WorkerException):
    """Error that should NOT be retried (e.g., invalid input)."""

    def __init__(self, message: str, code: str = ErrorCode.INVALID_INPUT, details: Optional[dict] = None):
        super().__init__(message, code=code, retryable=False, details=details)


class RetryableError(WorkerException):
    """Error that SHOULD be retried (e.g., API timeout)."""

    def __init__(self, message: str, code: str = ErrorCode.GENERATION_FAILED, details: Optional[dict] = None):
        super().__init__(message, code=code, retryable=True, details=details)


def backoff_delay(attempt: int, base: float, cap: float = 30.0) -> float:
    """Exponential delay for the given zero-based attempt, capped."""
    return min(base * (2 ** attempt), cap)


def with_retry(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    retryable_exceptions: tuple = (RetryableError, TimeoutError, ConnectionError)
):
    """
    Retry an async call in-process on transient errors.

    Anything raised with retryable=False propagates on the first attempt, even
    when its type is listed in retryable_exceptions.
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if not getattr(e, "retryable", True):
                        raise
                    if attempt >= max_retries:
                        logger.error(f"[Retry] {func.__name__} gave up after {attempt + 1} attempt(s): {e}")
                        raise
                    delay = backoff_delay(attempt, retry_delay)
                    attempt += 1
                    logger.warning(f"[Retry {attempt}/{max_retries}] {func.__name__}: {e}; next try in {delay:.1f}s")
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


class BaseWorker(ABC):
    """
    Base class for code that runs inside an RQ job.

    Progress and the step outcome are mirrored into the RQ job's meta so they
    show up in rq-dashboard and `rq info`. Outside RQ the meta calls are no-ops.
    """

    def __init__(self):
        self.started_at: Optional[float] = None

    def _write_meta(self, **values):
        job = get_current_job()
        if job is None:
            return
        job.meta.update(values)
        job.meta["updated_at"] = datetime.utcnow().isoformat()
        job.save_meta()

    def _update_progress(self, progress: float, message: str = ""):
        """Progress between 0 and 1 with a short stage label."""
        progress = min(max(progress, 0.0), 1.0)
        self._write_meta(progress=progress, stage=message)
        logger.debug(f"[Worker] {progress:.0%} {message}")

    def _elapsed(self) -> float:
        return time.monotonic() - self.started_at if self.started_at else 0.0

    def _log_start(self, task_name: str, **context):
        self.started_at = time.monotonic()
        self._write_meta(worker_status="running", **context)
        details = " ".join(f"{k}={v}" for k, v in context.items())
        logger.info(f"[{task_name}] start {details}")

    def _log_complete(self, task_name: str, outcome: str, summary: str = ""):
        self._write_meta(worker_status="done", outcome=outcome, progress=1.0)
        logger.info(f"[{task_name}] {outcome} in {self._elapsed():.2f}s {summary}".rstrip())

    def _log_error(self, task_name: str, error: Exception):
        self._write_meta(worker_status="crashed", error=repr(error))
        logger.exception(f"[{task_name}] crashed after {self._elapsed():.2f}s: {error}")

    @abstractmethod
    async def execute(self, *args, **kwargs) -> Any:
        ...


__all__ = [
    "ErrorCode",
    "public_message",
    "backoff_delay",
    "WorkerException",
    "NonRetryableError",
    "RetryableError",
    "with_retry",
    "BaseWorker",
]
