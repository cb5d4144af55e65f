"""Supervised asyncio worker pool for deferred event processing."""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from ..core.errors import EngineError
from ..core.models import new_id


logger = structlog.get_logger()


@dataclass
class Job:
    """A unit of deferred work."""
    name: str
    func: Callable[..., Awaitable[Any]]
    args: tuple = ()
    id: str = field(default_factory=new_id)
    submitted_at: float = field(default_factory=time.time)


@dataclass
class JobFailure:
    """Error channel entry for a job that raised."""
    job_id: str
    name: str
    error_type: str
    message: str
    failed_at: float
    details: dict[str, Any] = field(default_factory=dict)


FailureHandler = Callable[[JobFailure], Awaitable[None]]


class WorkerPool:
    """
    Fixed set of worker coroutines draining a bounded queue.

    A job that raises never kills its worker: the exception is logged and
    recorded as a JobFailure, then handed to ``on_error``. Only the most
    recent ``failure_history`` failures are kept.
    """

    def __init__(
        self,
        size: int = 3,
        queue_size: int = 1000,
        on_error: Optional[FailureHandler] = None,
        failure_history: int = 100,
    ):
        self.size = size
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=queue_size)
        self._on_error = on_error
        self._workers: list[asyncio.Task] = []
        self._running = False
        self.failures: deque[JobFailure] = deque(maxlen=failure_history)
        self.completed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for i in range(self.size):
            self._workers.append(asyncio.create_task(self._worker_loop(i)))
        logger.info("worker_pool_started", workers=self.size)

    async def submit(self, name: str, func: Callable[..., Awaitable[Any]], *args: Any) -> str:
        """Queue ``func(*args)``; starts the pool on first use."""
        if not self._running:
            await self.start()
        job = Job(name=name, func=func, args=args)
        await self._queue.put(job)
        logger.debug("job_submitted", job_id=job.id, name=name, queue_depth=self._queue.qsize())
        return job.id

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def stop(self, timeout: float = 30.0) -> None:
        """Drain the queue (bounded by ``timeout``) and stop the workers."""
        if not self._running:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("worker_pool_drain_timeout", pending=self._queue.qsize())

        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("worker_pool_stopped", completed=self.completed, failures=len(self.failures))

    async def _worker_loop(self, worker_id: int) -> None:
        """Worker coroutine that processes jobs from the queue."""
        logger.debug("worker_started", worker_id=worker_id)

        while self._running:
            job = await self._queue.get()
            try:
                await job.func(*job.args)
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("worker_job_failed", worker_id=worker_id, job_id=job.id, name=job.name)
                await self._report(job, e)
            finally:
                self._queue.task_done()

        logger.debug("worker_stopped", worker_id=worker_id)

    async def _report(self, job: Job, error: Exception) -> None:
        failure = JobFailure(
            job_id=job.id,
            name=job.name,
            error_type=type(error).__name__,
            message=str(error),
            failed_at=time.time(),
            details=error.to_dict() if isinstance(error, EngineError) else {},
        )
        self.failures.append(failure)
        if self._on_error is None:
            return
        try:
            await self._on_error(failure)
        except Exception:
            logger.exception("worker_error_handler_failed", job_id=job.id)
