"""
RQ Task Definitions
Entry points executed by RQ workers.
"""

import logging
import asyncio
from typing import Any, Dict

from stylize.workers.base import RetryableError

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Helper to run async code in sync context (for RQ)."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


def run_execution_task(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    RQ task for one execution step.

    Returns the step result for every outcome except `retry`, which raises so
    RQ's Retry policy redelivers the same payload.
    """
    from stylize.workers.pipeline import GenerationWorker

    logger.info(f"[Task] Step {payload.get('job_id')}/{payload.get('requested_version_id')}")
    result = _run_async(GenerationWorker().execute(payload))

    if result.should_redeliver:
        raise RetryableError(
            f"Step {result.job_id}/{result.version_id} failed with {result.code}",
            code=result.code,
        )
    return result.model_dump()


def run_recovery_sweep_task() -> Dict[str, Any]:
    """RQ task for one recovery sweep pass."""
    from stylize.workers.dispatch import get_dispatcher
    from stylize.workers.sweep import RecoverySweep

    report = _run_async(RecoverySweep(get_dispatcher()).run_once())
    return report.as_dict()


__all__ = [
    "run_execution_task",
    "run_recovery_sweep_task",
]
