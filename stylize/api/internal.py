"""
Internal API Routes
Execution endpoint for push-based task queues and the cron sweep trigger.
Not exposed to end users; both routes take a bearer secret.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from stylize.api.deps import get_dispatcher
from stylize.core.config import settings
from stylize.core.exceptions import InvalidRequest, Unauthorized
from stylize.schemas.job import parse_payload
from stylize.workers.pipeline import GenerationPipeline, build_pipeline
from stylize.workers.sweep import RecoverySweep

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_bearer(authorization: Optional[str], secret: str):
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise Unauthorized()


def get_pipeline() -> GenerationPipeline:
    return build_pipeline()


def get_sweep(dispatcher=Depends(get_dispatcher)) -> RecoverySweep:
    return RecoverySweep(dispatcher)


@router.post("/jobs/execute")
async def execute_step(
    payload: Dict[str, Any],
    authorization: Optional[str] = Header(None),
    pipeline: GenerationPipeline = Depends(get_pipeline),
):
    """
    Run one execution step to completion.

    Returns 503 only for retryable failures so the delivering queue
    redelivers the same payload; every other outcome acknowledges it.
    """
    _check_bearer(authorization, settings.INTERNAL_API_TOKEN)
    try:
        step = parse_payload(payload)
    except ValidationError as e:
        raise InvalidRequest(f"Malformed execution payload: {e.error_count()} error(s)")
    result = await pipeline.execute(step)
    status_code = 503 if result.should_redeliver else 200
    logger.info(f"[Internal] {step.job_id}/{step.requested_version_id} -> {result.outcome} ({status_code})")
    return JSONResponse(status_code=status_code, content=result.model_dump())


@router.post("/cron/recovery-sweep")
async def recovery_sweep(
    authorization: Optional[str] = Header(None),
    sweep: RecoverySweep = Depends(get_sweep),
):
    """Run one sweep pass. Schedule this from an external cron."""
    if not settings.CRON_SECRET:
        # Refuse to run an unauthenticated sweep endpoint
        raise Unauthorized("Cron endpoint is not configured")
    _check_bearer(authorization, settings.CRON_SECRET)
    report = await sweep.run_once()
    return report.as_dict()
