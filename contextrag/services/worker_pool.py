"""
Bounded in-process worker pool for retrieval requests.

- asyncio.PriorityQueue ordered by (priority, submission order)
- ``concurrency`` workers; each job first passes a sliding-window rate limiter
- failed jobs retry with exponential backoff up to ``max_attempts``;
  non-recoverable errors (auth, validation, not found) fail immediately
- job status, cancellation and queue statistics
"""

import asyncio
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from contextrag.services.error_recovery import (
    STRATEGY_TABLE,
    RecoveryStrategy,
    categorize_error,
)
from contextrag.shared.config import WorkerPoolConfig
from contextrag.shared.errors import QueueFullError
from contextrag.shared.observability import get_logger
from contextrag.shared.observability.metrics import (
    worker_job_duration_seconds,
    worker_jobs_total,
    worker_queue_depth,
)
from contextrag.shared.resilience import SlidingWindowRateLimiter

logger = get_logger(__name__)


class JobPriority(IntEnum):
    URGENT = 0
    HIGH = 1
    NORMAL = 5
    LOW = 10


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


@dataclass
class Job:
    id: str
    payload: Dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 3
    result: Any = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def to_status(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "priority": int(self.priority),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def is_recoverable(error: BaseException) -> bool:
    return STRATEGY_TABLE[categorize_error(error)] != RecoveryStrategy.SKIP


class WorkerPool:
    """
    Args:
        handler: Coroutine function executing one job payload
        config: Pool sizing, rate limit and retry settings
        sleep: Awaitable sleep used for retry backoff (injectable for tests)
    """

    def __init__(
        self,
        handler: Callable[[Dict[str, Any]], Awaitable[Any]],
        config: Optional[WorkerPoolConfig] = None,
        *,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.handler = handler
        self.config = config or WorkerPoolConfig()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_events=self.config.rate_limit_max_jobs,
            period=self.config.rate_limit_period_seconds,
        )
        self._sleep = sleep
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._jobs: Dict[str, Job] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._workers: List[asyncio.Task] = []
        self._timers: set = set()
        self._sequence = 0
        self._completed = 0
        self._failed = 0
        self._cancelled = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self.running:
            return
        if self._queue is None:
            self._queue = asyncio.PriorityQueue(maxsize=self.config.max_queue_size)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"contextrag-worker-{i}")
            for i in range(self.config.concurrency)
        ]
        logger.info(
            "worker_pool_started",
            concurrency=self.config.concurrency,
            rate_limit=f"{self.config.rate_limit_max_jobs}/{self.config.rate_limit_period_seconds}s",
        )

    async def stop(self) -> None:
        """Cancel workers and pending retry timers; queued jobs stay queued."""
        tasks = list(self._workers) + list(self._timers)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._timers.clear()
        logger.info("worker_pool_stopped")

    def _enqueue(self, job: Job) -> None:
        if self._queue is None:
            self._queue = asyncio.PriorityQueue(maxsize=self.config.max_queue_size)
        self._sequence += 1
        try:
            self._queue.put_nowait((int(job.priority), self._sequence, job.id))
        except asyncio.QueueFull as e:
            raise QueueFullError(
                f"worker queue full ({self.config.max_queue_size} jobs)"
            ) from e
        job.state = JobState.WAITING
        worker_queue_depth.set(self._queue.qsize())

    async def submit(
        self,
        payload: Dict[str, Any],
        priority: JobPriority = JobPriority.NORMAL,
        job_id: Optional[str] = None,
    ) -> str:
        """
        Queue a job and return its id.

        Raises:
            QueueFullError: The queue is at ``max_queue_size``
        """
        job = Job(
            id=job_id or str(uuid.uuid4()),
            payload=payload,
            priority=JobPriority(priority),
            max_attempts=self.config.max_attempts,
        )
        self._enqueue(job)
        self._jobs[job.id] = job
        logger.debug("job_submitted", job_id=job.id, priority=int(job.priority))
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self._jobs.get(job_id)
        return job.to_status() if job else None

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a waiting or delayed job. Active and finished jobs are not cancelled."""
        job = self._jobs.get(job_id)
        if job is None or job.state not in (JobState.WAITING, JobState.DELAYED):
            return False
        self._finish(job, JobState.CANCELLED)
        logger.info("job_cancelled", job_id=job_id)
        return True

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """
        Wait until the job is finished.

        Raises:
            KeyError: Unknown job id
            asyncio.TimeoutError: Not finished within ``timeout``
        """
        job = self._jobs[job_id]
        await asyncio.wait_for(job.done.wait(), timeout=timeout)
        return job

    def _finish(self, job: Job, state: JobState) -> None:
        job.state = state
        job.finished_at = time.time()
        job.done.set()
        if state == JobState.COMPLETED:
            self._completed += 1
        elif state == JobState.FAILED:
            self._failed += 1
        else:
            self._cancelled += 1
        worker_jobs_total.labels(status=state.value).inc()

        self._finished[job.id] = None
        while len(self._finished) > self.config.completed_jobs_retained:
            oldest, _ = self._finished.popitem(last=False)
            self._jobs.pop(oldest, None)

    async def _requeue_later(self, job: Job, delay: float) -> None:
        await self._sleep(delay)
        if job.state != JobState.DELAYED:
            return
        try:
            self._enqueue(job)
        except QueueFullError as e:
            job.error = f"{type(e).__name__}: {e}"
            logger.warning("job_requeue_failed", job_id=job.id, attempt=job.attempts, error=str(e))
            self._finish(job, JobState.FAILED)

    def _schedule_retry(self, job: Job) -> None:
        delay = self.config.backoff_base_seconds * (2 ** (job.attempts - 1))
        job.state = JobState.DELAYED
        timer = asyncio.create_task(self._requeue_later(job, delay))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)
        worker_jobs_total.labels(status="retried").inc()
        logger.info(
            "job_retry_scheduled",
            job_id=job.id,
            attempt=job.attempts,
            delay_seconds=delay,
        )

    async def _run(self, job: Job) -> None:
        job.state = JobState.ACTIVE
        job.attempts += 1
        job.started_at = job.started_at or time.time()
        start = time.monotonic()
        try:
            job.result = await self.handler(job.payload)
        except Exception as e:
            job.error = f"{type(e).__name__}: {e}"
            recoverable = is_recoverable(e)
            logger.warning(
                "job_failed",
                job_id=job.id,
                attempt=job.attempts,
                recoverable=recoverable,
                error=str(e),
            )
            if recoverable and job.attempts < job.max_attempts:
                self._schedule_retry(job)
            else:
                self._finish(job, JobState.FAILED)
        else:
            job.error = None
            self._finish(job, JobState.COMPLETED)
        finally:
            worker_job_duration_seconds.observe(time.monotonic() - start)

    async def _worker(self, index: int) -> None:
        while True:
            _, _, job_id = await self._queue.get()
            try:
                worker_queue_depth.set(self._queue.qsize())
                job = self._jobs.get(job_id)
                if job is None or job.state != JobState.WAITING:
                    continue
                await self.rate_limiter.acquire()
                if job.state != JobState.WAITING:
                    continue
                await self._run(job)
            finally:
                self._queue.task_done()

    def stats(self) -> Dict[str, Any]:
        counts = {state.value: 0 for state in (JobState.WAITING, JobState.ACTIVE, JobState.DELAYED)}
        for job in self._jobs.values():
            if job.state.value in counts:
                counts[job.state.value] += 1
        return {
            **counts,
            "completed": self._completed,
            "failed": self._failed,
            "cancelled": self._cancelled,
            "queue_size": self._queue.qsize() if self._queue is not None else 0,
            "concurrency": self.config.concurrency,
            "running": self.running,
            "rate_limit": {
                "max_jobs": self.config.rate_limit_max_jobs,
                "period_seconds": self.config.rate_limit_period_seconds,
                "in_window": self.rate_limiter.events_in_window,
            },
        }
