"""
Queue-backed job dispatcher.

Each named queue is an ``asyncio.Queue`` drained by a fixed pool of worker
tasks, so the pool size is the queue's concurrency ceiling. Failed attempts
are re-queued after an exponential backoff (the worker slot is released
while the job waits), non-retryable errors fail the job at once, and a job
that exhausts its attempts is marked failed with its last error retained.

The dispatcher is constructed once per process and passed to the
orchestrator; it owns no module-level state.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .errors import describe_error, is_retryable
from .types import utcnow

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class RetryPolicy:
    """Attempt budget and exponential backoff for one kind of job."""
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    max_backoff_seconds: float = 60.0
    timeout_seconds: Optional[float] = 300.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt that follows ``attempt`` (1-based)."""
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)


@dataclass
class QueueConfig:
    name: str
    concurrency: int = 1
    policy: RetryPolicy = field(default_factory=RetryPolicy)


def default_queue_configs(
    micro_concurrency: int = 10,
    micro_attempts: int = 3,
    job_timeout_seconds: float = 300.0,
) -> List[QueueConfig]:
    """Queues used by the orchestrator: many Micro workers, singleton Meso/Meta."""
    return [
        QueueConfig("micro", micro_concurrency, RetryPolicy(micro_attempts, 2.0, 30.0, job_timeout_seconds)),
        QueueConfig("meso", 1, RetryPolicy(3, 2.0, 30.0, job_timeout_seconds)),
        QueueConfig("meta", 1, RetryPolicy(2, 3.0, 30.0, job_timeout_seconds)),
    ]


JobHandler = Callable[["Job"], Awaitable[Any]]


class Job:
    """A unit of work admitted to a queue."""

    def __init__(
        self,
        queue: str,
        handler: JobHandler,
        policy: RetryPolicy,
        name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        on_failed: Optional[Callable[["Job"], None]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.queue = queue
        self.name = name or self.id
        self.data = data or {}
        self.policy = policy
        self.handler = handler
        self.on_failed = on_failed

        self.status = JobStatus.WAITING
        self.progress = 0
        self.attempts_made = 0
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.error_message: Optional[str] = None

        self.created_at: datetime = utcnow()
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

        self._done = asyncio.Event()
        self._attempt: Optional[asyncio.Future] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.policy.max_attempts

    def will_retry(self, error: BaseException) -> bool:
        """Whether a failure of the current attempt would be retried."""
        return not self.is_final_attempt and is_retryable(error)

    def report_progress(self, percent: float) -> None:
        """Record progress; values are clamped to 0..100 and never decrease."""
        value = int(min(max(percent, 0), 100))
        if value > self.progress:
            self.progress = value

    async def wait(self) -> "Job":
        await self._done.wait()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "queue": self.queue,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts_made,
            "max_attempts": self.policy.max_attempts,
            "error": self.error_message,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobDispatcher:
    """Bounded-concurrency task queues with retry, progress and barriers."""

    def __init__(self, queues: Optional[Iterable[QueueConfig]] = None):
        self._configs: Dict[str, QueueConfig] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, List[asyncio.Task]] = {}
        self._jobs: Dict[str, Job] = {}
        self._timers: Set[asyncio.Task] = set()
        self._resume_events: Dict[str, asyncio.Event] = {}
        self._paused: Set[str] = set()
        self._closed = False

        for config in queues if queues is not None else default_queue_configs():
            self.register_queue(config)

    def register_queue(self, config: QueueConfig) -> None:
        if config.concurrency < 1:
            raise ValueError(f"Queue {config.name!r} needs a concurrency of at least 1")
        if config.name in self._workers:
            raise ValueError(f"Queue {config.name!r} is already running")
        self._configs[config.name] = config

    @property
    def queue_names(self) -> List[str]:
        return list(self._configs)

    async def enqueue(
        self,
        queue: str,
        handler: JobHandler,
        name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        on_failed: Optional[Callable[[Job], None]] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> Job:
        """Admit a unit of work to ``queue`` and return its handle."""
        if self._closed:
            raise RuntimeError("Dispatcher is closed")
        if queue not in self._configs:
            raise KeyError(f"Unknown queue: {queue}")

        self._ensure_workers(queue)
        job = Job(queue, handler, policy or self._configs[queue].policy, name, data, on_failed)
        self._jobs[job.id] = job
        self._queues[queue].put_nowait(job)
        logger.debug("Enqueued job %s (%s) on %s", job.id, job.name, queue)
        return job

    def _ensure_workers(self, queue: str) -> None:
        if queue in self._workers:
            return
        config = self._configs[queue]
        self._queues[queue] = asyncio.Queue()
        self._resume_events[queue] = asyncio.Event()
        if queue not in self._paused:
            self._resume_events[queue].set()
        self._workers[queue] = [
            asyncio.create_task(self._worker(queue), name=f"{queue}-worker-{i}")
            for i in range(config.concurrency)
        ]

    async def _worker(self, queue_name: str) -> None:
        queue = self._queues[queue_name]
        resumed = self._resume_events[queue_name]
        while True:
            job = await queue.get()
            try:
                # A paused queue holds the job here until resume().
                await resumed.wait()
                if job.status == JobStatus.WAITING:
                    await self._run_attempt(job)
            finally:
                queue.task_done()

    async def _run_attempt(self, job: Job) -> None:
        job.status = JobStatus.ACTIVE
        job.attempts_made += 1
        if job.started_at is None:
            job.started_at = utcnow()

        job._attempt = asyncio.ensure_future(self._call(job))
        try:
            result = await job._attempt
        except asyncio.CancelledError:
            if job.is_terminal:
                # Abandoned by a barrier timeout; the worker keeps serving.
                return
            raise
        except Exception as e:
            self._handle_failure(job, e)
            return
        finally:
            job._attempt = None

        if job.is_terminal:
            return
        job.result = result
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.finished_at = utcnow()
        job._done.set()
        logger.debug("Job %s (%s) completed after %d attempt(s)", job.id, job.name, job.attempts_made)

    async def _call(self, job: Job) -> Any:
        timeout = job.policy.timeout_seconds
        if timeout:
            return await asyncio.wait_for(job.handler(job), timeout=timeout)
        return await job.handler(job)

    def _handle_failure(self, job: Job, error: BaseException) -> None:
        job.error = error
        if isinstance(error, asyncio.TimeoutError):
            job.error_message = f"attempt timed out after {job.policy.timeout_seconds}s"
        else:
            job.error_message = f"{type(error).__name__}: {error}"

        if job.will_retry(error):
            delay = job.policy.delay_for(job.attempts_made)
            job.status = JobStatus.DELAYED
            logger.warning(
                "Job %s (%s) attempt %d/%d failed: %s; retrying in %.1fs",
                job.id, job.name, job.attempts_made, job.policy.max_attempts, job.error_message, delay,
            )
            timer = asyncio.ensure_future(self._requeue_after(job, delay))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
            return

        label, _ = describe_error(error)
        logger.error(
            "Job %s (%s) failed after %d attempt(s) [%s]: %s",
            job.id, job.name, job.attempts_made, label, job.error_message,
        )
        self._finish_failed(job)

    async def _requeue_after(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        if job.status == JobStatus.DELAYED:
            job.status = JobStatus.WAITING
            self._queues[job.queue].put_nowait(job)

    def _finish_failed(self, job: Job) -> None:
        job.status = JobStatus.FAILED
        job.finished_at = utcnow()
        job._done.set()
        if job.on_failed is not None:
            try:
                job.on_failed(job)
            except Exception:
                logger.exception("on_failed callback for job %s raised", job.id)

    def _abandon(self, job: Job, reason: str) -> None:
        """Fail a job that outlived a barrier; an in-flight attempt is cancelled."""
        job.error = asyncio.TimeoutError(reason)
        job.error_message = reason
        logger.error("Job %s (%s) abandoned: %s", job.id, job.name, reason)
        attempt = job._attempt
        self._finish_failed(job)
        if attempt is not None and not attempt.done():
            attempt.cancel()

    async def wait(self, job: Job, timeout: Optional[float] = None) -> Job:
        await self.wait_all([job], timeout=timeout)
        return job

    async def wait_all(self, jobs: Iterable[Job], timeout: Optional[float] = None) -> List[Job]:
        """
        Barrier: return once every job is terminal.

        Jobs still unfinished when ``timeout`` expires are treated as failed
        rather than awaited indefinitely.
        """
        jobs = list(jobs)
        waiters = [asyncio.ensure_future(job.wait()) for job in jobs if not job.is_terminal]
        if waiters:
            _, pending = await asyncio.wait(waiters, timeout=timeout)
            for waiter in pending:
                waiter.cancel()
        for job in jobs:
            if not job.is_terminal:
                self._abandon(job, f"timed out waiting for completion after {timeout}s")
        return jobs

    def cancel(self, predicate: Callable[[Job], bool]) -> List[Job]:
        """Cancel waiting or delayed jobs matching ``predicate``; active ones finish."""
        cancelled = []
        for job in self._jobs.values():
            if job.status in (JobStatus.WAITING, JobStatus.DELAYED) and predicate(job):
                job.status = JobStatus.CANCELLED
                job.finished_at = utcnow()
                job._done.set()
                cancelled.append(job)
        if cancelled:
            logger.info("Cancelled %d queued job(s)", len(cancelled))
        return cancelled

    def pause(self, queue: str) -> None:
        """Stop starting new jobs on ``queue``; active attempts run to completion."""
        if queue not in self._configs:
            raise KeyError(f"Unknown queue: {queue}")
        self._paused.add(queue)
        if queue in self._resume_events:
            self._resume_events[queue].clear()
        logger.info("Paused %s queue", queue)

    def resume(self, queue: str) -> None:
        if queue not in self._configs:
            raise KeyError(f"Unknown queue: {queue}")
        self._paused.discard(queue)
        if queue in self._resume_events:
            self._resume_events[queue].set()
        logger.info("Resumed %s queue", queue)

    def is_paused(self, queue: str) -> bool:
        return queue in self._paused

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def stats(self, queue: str) -> Dict[str, Any]:
        if queue not in self._configs:
            raise KeyError(f"Unknown queue: {queue}")
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            if job.queue == queue:
                counts[job.status.value] += 1
        return {
            "queue": queue,
            "concurrency": self._configs[queue].concurrency,
            "paused": queue in self._paused,
            "workers_alive": sum(1 for w in self._workers.get(queue, []) if not w.done()),
            "workers_started": queue in self._workers,
            **counts,
            "total": sum(counts.values()),
        }

    def all_stats(self) -> Dict[str, Any]:
        return {
            "queues": [self.stats(name) for name in self._configs],
            "timestamp": utcnow().isoformat(),
        }

    def clean(self, older_than: timedelta = timedelta(hours=24)) -> int:
        """Forget terminal jobs that finished before ``older_than`` ago."""
        cutoff = utcnow() - older_than
        stale = [
            job_id for job_id, job in self._jobs.items()
            if job.is_terminal and job.finished_at and job.finished_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    async def close(self) -> None:
        """Stop all workers and pending retry timers."""
        self._closed = True
        tasks = list(self._timers)
        for workers in self._workers.values():
            tasks.extend(workers)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._resume_events.clear()
        logger.info("Dispatcher closed")
