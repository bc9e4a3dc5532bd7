"""In-process job queue: priority ordering, bounded worker pool, retries, delayed and repeating jobs."""
import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from lunarbot.errors import TransientError
from lunarbot.parse.redact import user_facing_error

logger = logging.getLogger(__name__)

MAX_FINISHED_JOBS = 1000


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"


FINISHED_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.REMOVED})


@dataclass
class JobOptions:
    priority: int = 0
    delay: float = 0.0
    attempts: int = 1
    backoff: float = 1.0
    job_id: Optional[str] = None
    repeat_every: Optional[float] = None


@dataclass
class Job:
    id: str
    name: str
    payload: dict[str, Any]
    options: JobOptions
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    error: Optional[str] = None
    result: Any = None
    repeat_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def retries(self) -> int:
        return max(self.attempts_made - 1, 0)


Handler = Callable[[Job], Awaitable[Any]]
FailedHook = Callable[[Job, BaseException], Awaitable[None]]


@dataclass
class _Registration:
    handler: Handler
    on_failed: Optional[FailedHook] = None


class JobQueue:
    """
    Jobs are pulled by ``concurrency`` workers, highest priority first.

    A job is retried with exponential backoff (``backoff * 2**(n-1)`` seconds)
    only when it raises TransientError; any other exception fails it at once.
    After the final failure the ``on_failed`` hook registered for the job name
    runs. Repeating jobs are interval jobs on an AsyncIOScheduler keyed by their
    job id, so scheduling the same id again replaces rather than duplicates.
    """

    def __init__(
        self,
        name: str,
        concurrency: int = 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self.concurrency = concurrency
        self._sleep = sleep
        self._handlers: dict[str, _Registration] = {}
        self._jobs: dict[str, Job] = {}
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._workers: list[asyncio.Task] = []
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._repeatable: dict[str, tuple[str, dict[str, Any], JobOptions]] = {}
        self._repeat_latest: dict[str, str] = {}
        self.scheduler = AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1})

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def register(self, job_name: str, handler: Handler, on_failed: Optional[FailedHook] = None) -> None:
        self._handlers[job_name] = _Registration(handler, on_failed)

    async def enqueue(
        self,
        job_name: str,
        payload: BaseModel | dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> Job:
        """Add a job. An unfinished job with the same job_id is returned instead of duplicated."""
        options = options or JobOptions()
        data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)

        if options.repeat_every:
            return self._add_repeatable(job_name, data, options)

        job_id = options.job_id or uuid.uuid4().hex
        existing = self._jobs.get(job_id)
        if existing is not None and existing.state not in FINISHED_STATES:
            logger.debug(f"[{self.name}] job {job_id} already queued")
            return existing

        job = Job(id=job_id, name=job_name, payload=data, options=options)
        self._jobs[job_id] = job
        if options.delay > 0:
            job.state = JobState.DELAYED
            loop = asyncio.get_running_loop()
            self._timers[job_id] = loop.call_later(options.delay, self._push, job)
        else:
            self._push(job)
        return job

    def _push(self, job: Job) -> None:
        self._timers.pop(job.id, None)
        if job.state == JobState.REMOVED:
            return
        job.state = JobState.WAITING
        # PriorityQueue pops the smallest entry; higher priority must come first
        self._queue.put_nowait((-job.options.priority, next(self._seq), job.id))

    def _add_repeatable(self, job_name: str, data: dict[str, Any], options: JobOptions) -> Job:
        repeat_id = options.job_id or f"{job_name}:{uuid.uuid4().hex}"
        replaced = repeat_id in self._repeatable
        self._repeatable[repeat_id] = (job_name, data, options)
        if self.scheduler.running:
            self._schedule_repeat(repeat_id)
        logger.info(
            f"[{self.name}] {'rescheduled' if replaced else 'scheduled'} repeating job {repeat_id} "
            f"every {options.repeat_every}s"
        )
        return Job(
            id=repeat_id,
            name=job_name,
            payload=data,
            options=options,
            state=JobState.DELAYED,
            repeat_id=repeat_id,
        )

    def _schedule_repeat(self, repeat_id: str) -> None:
        _, _, options = self._repeatable[repeat_id]
        self.scheduler.add_job(
            self._fire_repeat,
            "interval",
            seconds=options.repeat_every,
            id=repeat_id,
            args=[repeat_id],
            replace_existing=True,
            next_run_time=datetime.now(),
        )

    async def _fire_repeat(self, repeat_id: str) -> None:
        spec = self._repeatable.get(repeat_id)
        if spec is None:
            return
        latest = self._jobs.get(self._repeat_latest.get(repeat_id, ""))
        if latest is not None and latest.state not in FINISHED_STATES:
            logger.debug(f"[{self.name}] previous run of {repeat_id} still pending, skipping")
            return
        job_name, data, options = spec
        job = Job(
            id=f"{repeat_id}:{int(time.time() * 1000)}",
            name=job_name,
            payload=dict(data),
            options=options,
            repeat_id=repeat_id,
        )
        self._jobs[job.id] = job
        self._repeat_latest[repeat_id] = job.id
        self._push(job)

    def repeatable_jobs(self) -> list[dict[str, Any]]:
        return [
            {"id": repeat_id, "name": name, "every": options.repeat_every}
            for repeat_id, (name, _, options) in self._repeatable.items()
        ]

    def get_job(self, job_id: str) -> Optional[Job]:
        """Look up a job. A repeating job id resolves to its most recent run."""
        job = self._jobs.get(job_id)
        if job is None and job_id in self._repeat_latest:
            job = self._jobs.get(self._repeat_latest[job_id])
        return job

    def active_jobs(self, job_name: Optional[str] = None) -> list[Job]:
        """Jobs a worker has picked up and not finished. After stop() these were interrupted."""
        return [
            job
            for job in self._jobs.values()
            if job.state == JobState.ACTIVE and (job_name is None or job.name == job_name)
        ]

    def remove_job(self, job_id: str) -> bool:
        removed = False
        if self._repeatable.pop(job_id, None) is not None:
            removed = True
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                logger.debug(f"[{self.name}] repeating job {job_id} was not scheduled yet")
            job_id = self._repeat_latest.pop(job_id, job_id)

        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        job = self._jobs.get(job_id)
        if job is not None and job.state in (JobState.WAITING, JobState.DELAYED):
            job.state = JobState.REMOVED
            job.finished_at = time.time()
            removed = True
        return removed

    async def _run(self, job: Job) -> None:
        registration = self._handlers.get(job.name)
        if registration is None:
            job.state = JobState.FAILED
            job.error = f"No handler registered for {job.name}"
            logger.error(f"[{self.name}] {job.error}")
            return

        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"[{self.name}] job {job.id} ({job.name}) attempt {retry_state.attempt_number} "
                f"failed, retrying: {exc}"
            )

        job.state = JobState.ACTIVE
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(job.options.attempts, 1)),
            wait=wait_exponential(multiplier=job.options.backoff),
            retry=retry_if_exception_type(TransientError),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    job.attempts_made += 1
                    job.result = await registration.handler(job)
        except Exception as e:
            job.state = JobState.FAILED
            job.error = user_facing_error(e)
            job.finished_at = time.time()
            logger.error(
                f"[{self.name}] job {job.id} ({job.name}) failed after {job.attempts_made} attempt(s): {e}",
                exc_info=True,
            )
            if registration.on_failed is not None:
                try:
                    await registration.on_failed(job, e)
                except Exception as hook_error:
                    logger.error(f"[{self.name}] on_failed hook for {job.id} raised: {hook_error}", exc_info=True)
        else:
            job.state = JobState.COMPLETED
            job.finished_at = time.time()
            logger.debug(f"[{self.name}] job {job.id} ({job.name}) completed")
        self._prune()

    def clean(self, completed_age: float = 24 * 3600, failed_age: float = 7 * 24 * 3600) -> int:
        """Forget finished jobs older than the given ages (seconds)."""
        now = time.time()
        max_age = {
            JobState.COMPLETED: completed_age,
            JobState.REMOVED: completed_age,
            JobState.FAILED: failed_age,
        }
        stale = [
            job.id
            for job in self._jobs.values()
            if job.state in max_age and now - (job.finished_at or job.created_at) > max_age[job.state]
        ]
        for job_id in stale:
            self._jobs.pop(job_id, None)
        if stale:
            logger.info(f"[{self.name}] cleaned {len(stale)} old jobs")
        return len(stale)

    def _prune(self) -> None:
        finished = [job for job in self._jobs.values() if job.state in FINISHED_STATES]
        if len(finished) <= MAX_FINISHED_JOBS:
            return
        finished.sort(key=lambda job: job.finished_at or 0)
        for job in finished[: len(finished) - MAX_FINISHED_JOBS]:
            self._jobs.pop(job.id, None)

    async def _worker(self, index: int) -> None:
        while True:
            _, _, job_id = await self._queue.get()
            try:
                job = self._jobs.get(job_id)
                if job is not None and job.state == JobState.WAITING:
                    await self._run(job)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        if not self.scheduler.running:
            self.scheduler.start()
        for repeat_id in self._repeatable:
            self._schedule_repeat(repeat_id)
        logger.info(f"[{self.name}] started with concurrency {self.concurrency}")

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"[{self.name}] stopped")

    def stats(self) -> dict[str, Any]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        return {
            "name": self.name,
            "concurrency": self.concurrency,
            "running": self.running,
            "repeatable": len(self._repeatable),
            **counts,
        }
