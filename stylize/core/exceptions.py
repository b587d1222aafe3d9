"""
Service Exceptions
Admission and ownership errors raised synchronously by the orchestrator.

Subclasses set status_code, error_code and message as class attributes;
service_error_handler turns any of them into {"error", "message"} JSON.
Worker-layer errors that escape a route (storage outages, missing objects)
go through worker_error_handler in the same shape.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from stylize.workers.base import ErrorCode, WorkerException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    error_code: str = "internal_error"
    message: str = "Internal server error"

    def __init__(self, message: str = None):
        if message:
            self.message = message
        super().__init__(self.message)


# --- Admission ---


class ConcurrencyLimitExceeded(ServiceError):
    status_code = 429
    error_code = "concurrent_limit"
    message = "Too many generations in progress. Wait for one to finish."


class InvalidReferenceImages(ServiceError):
    status_code = 400
    error_code = "invalid_reference_images"
    message = "One or more reference images are missing or not yours"


class SeedPostNotFound(ServiceError):
    status_code = 400
    error_code = "invalid_seed"
    message = "Seed post not found"


class UnsafePrompt(ServiceError):
    status_code = 400
    error_code = "unsafe_prompt"
    message = "Prompt was rejected by the content filter"


class InvalidRequest(ServiceError):
    status_code = 400
    error_code = "invalid_request"
    message = "Invalid request"


# --- Ownership and lifecycle ---


class JobNotFound(ServiceError):
    status_code = 404
    error_code = "not_found"
    message = "Job not found"


class JobForbidden(ServiceError):
    status_code = 403
    error_code = "forbidden"
    message = "You do not own this job"


class JobNotReady(ServiceError):
    status_code = 409
    error_code = "not_ready"
    message = "Job is not ready for this operation"


class NoVersions(ServiceError):
    status_code = 409
    error_code = "no_versions"
    message = "Job has no versions yet"


class VersionNotFound(ServiceError):
    status_code = 404
    error_code = "version_not_found"
    message = "Version not found"


class Unauthorized(ServiceError):
    status_code = 401
    error_code = "unauthorized"
    message = "Missing or invalid credentials"


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
        },
    )


async def worker_error_handler(request: Request, exc: WorkerException) -> JSONResponse:
    if exc.code == ErrorCode.NOT_FOUND:
        status_code, message = 404, "Object not found"
    else:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc}")
        status_code, message = 503, "Service temporarily unavailable. Please retry."
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": message,
        },
    )
