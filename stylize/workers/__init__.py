# Workers package - execution steps, dispatch and recovery

from stylize.workers.base import (
    ErrorCode,
    WorkerException,
    NonRetryableError,
    RetryableError,
    with_retry,
    BaseWorker
)

__all__ = [
    "ErrorCode",
    "WorkerException",
    "NonRetryableError",
    "RetryableError",
    "with_retry",
    "BaseWorker",
]
