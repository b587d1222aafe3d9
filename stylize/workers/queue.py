"""
Queue Management Utilities
RQ queue wrappers for execution steps and maintenance tasks.
"""

import logging
from typing import Dict, Optional
from datetime import datetime

from rq import Queue, Retry
from rq.job import Job

from stylize.core.redis import get_redis, Queues
from stylize.core.config import settings

logger = logging.getLogger(__name__)


def step_job_id(job_id: str, version_id: str) -> str:
    """RQ job id for one execution step. Re-enqueueing the same step reuses it."""
    return f"step-{job_id}-{version_id}"


class QueueManager:
    """
    Manages RQ queues for execution steps.

    Features:
    - Named queues for steps and maintenance
    - Deterministic RQ job ids per step
    - Retry configuration for retryable step outcomes
    """

    def __init__(self, redis=None):
        self._queues: Dict[str, Queue] = {}
        self._redis = redis

    @property
    def redis(self):
        """Lazy Redis connection."""
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def get_queue(self, queue_name: str = Queues.GENERATION) -> Queue:
        if queue_name not in self._queues:
            self._queues[queue_name] = Queue(
                name=queue_name,
                connection=self.redis,
                default_timeout=settings.JOB_TIMEOUT_GENERATION
            )
            logger.debug(f"Created queue: {queue_name}")

        return self._queues[queue_name]

    def enqueue_step(self, payload: dict) -> Job:
        """
        Enqueue one execution step.

        Args:
            payload: Serialized InitialStep or RefineStep

        Returns:
            RQ Job instance
        """
        from stylize.workers.tasks import run_execution_task

        rq_job_id = step_job_id(payload["job_id"], payload["requested_version_id"])
        job = self.get_queue(Queues.GENERATION).enqueue(
            run_execution_task,
            payload,
            job_id=rq_job_id,
            job_timeout=settings.JOB_TIMEOUT_GENERATION,
            retry=Retry(max=settings.RQ_RETRY_MAX, interval=settings.RQ_RETRY_INTERVALS),
            meta={
                "type": payload["type"],
                "job_id": payload["job_id"],
                "version_id": payload["requested_version_id"],
                "created_at": datetime.utcnow().isoformat(),
            }
        )

        logger.info(f"Enqueued step: {rq_job_id}")
        return job

    def enqueue_sweep(self) -> Job:
        from stylize.workers.tasks import run_recovery_sweep_task

        job = self.get_queue(Queues.MAINTENANCE).enqueue(
            run_recovery_sweep_task,
            job_timeout=300,
            meta={"type": "recovery_sweep", "created_at": datetime.utcnow().isoformat()},
        )
        logger.info(f"Enqueued recovery sweep: {job.id}")
        return job

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        stats = {}
        for name in (Queues.GENERATION, Queues.MAINTENANCE):
            queue = self.get_queue(name)
            stats[name] = {
                "queued": len(queue),
                "started": queue.started_job_registry.count,
                "finished": queue.finished_job_registry.count,
                "failed": queue.failed_job_registry.count,
                "deferred": queue.deferred_job_registry.count
            }
        return stats


_queue_manager: Optional[QueueManager] = None


def get_queue_manager() -> QueueManager:
    """Get singleton QueueManager instance."""
    global _queue_manager
    if _queue_manager is None:
        _queue_manager = QueueManager()
    return _queue_manager


__all__ = [
    "QueueManager",
    "get_queue_manager",
    "step_job_id",
]
