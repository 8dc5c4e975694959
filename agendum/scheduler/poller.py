"""
Poller — the background asyncio task that claims and runs due jobs.

Design:
- Polls the store every poll_interval seconds
- Each cycle claims up to batch_size jobs minus those still in flight,
  so a slow executor (e.g. a mail relay under load) gets backpressure
  instead of an ever-growing pile of tasks
- Each claimed job runs as its own task: mark running, dispatch under
  a timeout, then settle (succeeded, pending with backoff, or dead)
- Errors in one job never reach other jobs or the loop; a store outage
  aborts the current cycle only
- No job state lives in memory between cycles.  A job whose poller died
  mid-execution is re-claimed once its lock expires (at-least-once)

Several pollers, in one process or many, may share a store.  Mutual
exclusion comes entirely from the store's atomic claim; settles carry
the poller id so a poller whose lock expired cannot overwrite the
outcome of the poller that re-claimed the job.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from typing import TYPE_CHECKING, Callable

from agendum.core.errors import StoreUnavailable, UnknownKindError
from agendum.executors.registry import ExecutionResult, ExecutorRegistry
from agendum.scheduler.backoff import BackoffPolicy
from agendum.scheduler.job import Job, JobState
from agendum.store.base import JobStore

if TYPE_CHECKING:
    from agendum.core.config import SchedulerConfig

logger = logging.getLogger(__name__)


def default_poller_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Poller:
    """
    Claims due jobs from a JobStore and dispatches them to executors.

    Usage:
        poller = Poller(store, registry, poll_interval=30, batch_size=10)
        await poller.start()
        ...
        await poller.stop()   # waits for in-flight jobs, claims nothing new

    Tests drive cycles directly:
        await poller.run_once(now=fake_now)
    """

    def __init__(
        self,
        store: JobStore,
        registry: ExecutorRegistry,
        *,
        poll_interval: float = 30.0,
        batch_size: int = 10,
        lock_duration: float = 300.0,
        job_timeout: float = 120.0,
        max_attempts: int = 5,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
        poller_id: str | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._registry = registry
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._lock_duration = lock_duration
        self._job_timeout = job_timeout
        self._max_attempts = max_attempts
        self._backoff = backoff or BackoffPolicy()
        self._clock = clock
        self._id = poller_id or default_poller_id()

        self._task: asyncio.Task | None = None
        self._running = False
        self._wake: asyncio.Event | None = None
        self._in_flight: set[asyncio.Task] = set()

        if lock_duration <= job_timeout:
            logger.warning(
                f"lock_duration ({lock_duration}s) <= job_timeout ({job_timeout}s): "
                "a slow job may be re-claimed while it is still running"
            )

    @classmethod
    def from_config(
        cls,
        store: JobStore,
        registry: ExecutorRegistry,
        config: "SchedulerConfig",
        **kwargs,
    ) -> "Poller":
        return cls(
            store,
            registry,
            poll_interval=config.poll_interval,
            batch_size=config.batch_size,
            lock_duration=config.lock_duration,
            job_timeout=config.job_timeout,
            max_attempts=config.max_attempts,
            backoff=BackoffPolicy(config.backoff_base, config.backoff_max),
            **kwargs,
        )

    @property
    def poller_id(self) -> str:
        return self._id

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        """Start the background polling loop. No-op if already running."""
        if self._running:
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"poller:{self._id}")
        logger.info(f"Poller {self._id} started (every {self._poll_interval}s)")

    async def stop(self) -> None:
        """
        Stop claiming new jobs and wait for in-flight ones to finish.
        No-op if not running.
        """
        if not self._running:
            return
        self._running = False
        if self._wake is not None:
            self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.drain()
        logger.info(f"Poller {self._id} stopped")

    # ── Internal loop ─────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except StoreUnavailable as e:
                logger.warning(f"Poll cycle aborted, store unavailable: {e}")
            except Exception as e:
                logger.exception(f"Poll cycle error (non-fatal): {e}")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self, now: float | None = None) -> list[Job]:
        """
        Run one cycle: claim due jobs and start a task for each.

        Returns the claimed jobs. Does not wait for them to finish.
        """
        t = self._clock() if now is None else now
        capacity = self._batch_size - len(self._in_flight)
        if capacity <= 0:
            logger.debug(f"{len(self._in_flight)} jobs in flight, skipping claim")
            return []

        jobs = await self._store.claim_due(
            t, capacity, self._lock_duration, owner=self._id
        )
        for job in jobs:
            task = asyncio.create_task(self._execute(job), name=f"job:{job.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        if jobs:
            logger.debug(f"Claimed {len(jobs)} job(s)")
        return jobs

    async def drain(self) -> None:
        """Wait until every in-flight job has settled."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def run_once(self, now: float | None = None) -> list[Job]:
        """One cycle, then wait for its jobs to settle."""
        jobs = await self.poll_once(now)
        await self.drain()
        return jobs

    # ── Per-job execution ─────────────────────────────────────────────────────

    async def _execute(self, job: Job) -> None:
        """Per-job boundary: nothing raised here escapes to the loop."""
        try:
            await self._run(job)
        except StoreUnavailable as e:
            # Job stays locked; it becomes claimable again when the lock expires
            logger.warning(f"Could not settle job {job.id}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error running job {job.id}: {e}")

    async def _run(self, job: Job) -> None:
        if job.attempts >= self._max_attempts:
            # Previous owner died during the last allowed attempt
            await self._retire(job)
            return
        if not await self._store.mark_running(job.id, owner=self._id):
            logger.warning(f"Lost claim on job {job.id} before it started")
            return
        attempts = job.attempts + 1
        logger.info(f"Running job {job.id} ({job.kind!r}, attempt {attempts})")

        try:
            result = await asyncio.wait_for(
                self._registry.dispatch(job.kind, job.payload),
                timeout=self._job_timeout,
            )
        except UnknownKindError as e:
            await self._settle_failure(job, attempts, e.message, permanent=True)
            return
        except asyncio.TimeoutError:
            result = ExecutionResult.fail(f"Timed out after {self._job_timeout}s")

        if result.success:
            if await self._store.mark_succeeded(job.id, owner=self._id):
                logger.info(f"Job {job.id} succeeded")
            else:
                logger.warning(f"Job {job.id} finished after its claim was lost")
        else:
            await self._settle_failure(job, attempts, result.error or "executor failed")

    async def _retire(self, job: Job) -> None:
        """Send a re-claimed job with no attempts left to dead without running it."""
        error = "Lock expired after final attempt"
        if job.last_error:
            error = f"{error}; last error: {job.last_error}"
        if await self._store.mark_failed(
            job.id, error, owner=self._id, from_state=JobState.LOCKED
        ):
            logger.error(f"Job {job.id} is dead after {job.attempts} attempt(s): {error}")
        else:
            logger.warning(f"Lost claim on job {job.id} before it could be retired")

    async def _settle_failure(
        self, job: Job, attempts: int, error: str, permanent: bool = False
    ) -> None:
        if permanent or attempts >= self._max_attempts:
            next_run_at = None
        else:
            next_run_at = self._backoff.next_run_at(attempts, now=self._clock())

        if not await self._store.mark_failed(
            job.id, error, next_run_at=next_run_at, owner=self._id
        ):
            logger.warning(f"Job {job.id} failed after its claim was lost: {error}")
        elif next_run_at is None:
            logger.error(f"Job {job.id} is dead after {attempts} attempt(s): {error}")
        else:
            logger.warning(
                f"Job {job.id} failed (attempt {attempts}/{self._max_attempts}), "
                f"retry in {next_run_at - self._clock():.0f}s: {error}"
            )
