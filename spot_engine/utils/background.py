"""
Background task queue.

Work that must not block the trading path (reconciliation after a virtual close,
dust conversion attempts, post-trade hooks) is submitted here and consumed by a
single asyncio task. Failures are logged per job; the consumer keeps running.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class BackgroundJob:
    name: str
    factory: JobFactory
    key: Optional[str] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundWorker:
    """
    asyncio queue consumer.

    Jobs submitted with a ``key`` are de-duplicated while queued: a second
    ``reconcile:testnet`` request is dropped if one is already waiting.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._queued_keys: set = set()
        self._task: Optional[asyncio.Task] = None
        self.stats: Dict[str, int] = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, name: str, factory: JobFactory, key: Optional[str] = None) -> bool:
        """Enqueue a job. Returns False when dropped (duplicate key or full queue)."""
        if key is not None and key in self._queued_keys:
            self.stats["dropped"] += 1
            logger.debug("BACKGROUND_JOB_DEDUPED", job=name, key=key)
            return False
        try:
            self._queue.put_nowait(BackgroundJob(name=name, factory=factory, key=key))
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning("BACKGROUND_QUEUE_FULL", job=name, size=self._queue.qsize())
            return False
        if key is not None:
            self._queued_keys.add(key)
        self.stats["submitted"] += 1
        return True

    async def _run_job(self, job: BackgroundJob) -> None:
        if job.key is not None:
            self._queued_keys.discard(job.key)
        try:
            await job.factory()
            self.stats["completed"] += 1
        except Exception as e:
            self.stats["failed"] += 1
            logger.error("BACKGROUND_JOB_FAILED", job=job.name, error=str(e), error_type=type(e).__name__)

    async def drain(self) -> int:
        """Run every queued job inline. Used by tests and at shutdown."""
        ran = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            await self._run_job(job)
            self._queue.task_done()
            ran += 1
        return ran

    async def _consume(self) -> None:
        logger.info("BACKGROUND_WORKER_STARTED")
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._consume())

    async def stop(self, drain: bool = True) -> None:
        if drain:
            await self.drain()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("BACKGROUND_WORKER_STOPPED", **self.stats)
