"""
Step Dispatch
Hands execution payloads to whatever runs them: an in-process worker pool
or the RQ generation queue. Callers never wait for the step to finish.
"""

import asyncio
import logging
from typing import Callable, Optional, Set, Union

from stylize.core.config import settings
from stylize.schemas.job import InitialStep, RefineStep, StepResult

logger = logging.getLogger(__name__)

Payload = Union[InitialStep, RefineStep]


class InlineDispatcher:
    """
    Runs steps as asyncio tasks in the current event loop.

    A semaphore bounds how many steps call the provider at once; retryable
    outcomes are re-run after a short delay until the pipeline's attempt
    cap turns them terminal.
    """

    def __init__(
        self,
        pipeline_factory: Optional[Callable] = None,
        concurrency: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        if pipeline_factory is None:
            from stylize.workers.pipeline import build_pipeline
            pipeline_factory = build_pipeline
        self.pipeline_factory = pipeline_factory
        self.concurrency = concurrency or settings.INLINE_WORKER_CONCURRENCY
        self.retry_delay = settings.INLINE_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, payload: Payload) -> str:
        loop = asyncio.get_running_loop()
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.concurrency)
        name = f"step-{payload.job_id}-{payload.requested_version_id}"
        task = loop.create_task(self._run(payload), name=name)
        # Keep a strong reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info(f"[Dispatch] Scheduled {name} inline")
        return name

    async def _run(self, payload: Payload) -> StepResult:
        pipeline = self.pipeline_factory()
        while True:
            async with self._semaphore:
                result = await pipeline.execute(payload)
            if not result.should_redeliver:
                return result
            logger.info(f"[Dispatch] {payload.job_id}/{payload.requested_version_id} retrying in {self.retry_delay}s")
            await asyncio.sleep(self.retry_delay)

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"[Dispatch] {task.get_name()} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Dispatch] {task.get_name()} crashed: {error!r}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every scheduled step. Used at shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class RQDispatcher:
    """Enqueues steps on the RQ generation queue."""

    def __init__(self, queue_manager=None):
        if queue_manager is None:
            from stylize.workers.queue import get_queue_manager
            queue_manager = get_queue_manager()
        self.queue_manager = queue_manager

    def dispatch(self, payload: Payload) -> str:
        job = self.queue_manager.enqueue_step(payload.model_dump())
        return job.id

    async def drain(self):
        return None


_dispatcher = None


def get_dispatcher():
    """Dispatcher selected by DISPATCH_MODE."""
    global _dispatcher
    if _dispatcher is None:
        if settings.DISPATCH_MODE == "rq":
            _dispatcher = RQDispatcher()
        elif settings.DISPATCH_MODE == "inline":
            _dispatcher = InlineDispatcher()
        else:
            raise ValueError(f"Unknown DISPATCH_MODE: {settings.DISPATCH_MODE}")
    return _dispatcher
