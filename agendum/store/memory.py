"""
In-memory job store — for testing.

Dict-based storage. Data lost when process exits.  Claims are
serialized with an asyncio.Lock, so it is safe for many pollers in one
event loop but not across processes.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import replace
from typing import Any, Mapping

from agendum.core.errors import StoreUnavailable
from agendum.scheduler.job import Job, JobState, new_job_id
from agendum.store.base import JobStore, check_failure_source, validate_new_job


class InMemoryJobStore(JobStore):
    """
    In-memory job store for testing.

    Usage:
        store = InMemoryJobStore()
        job_id = await store.insert("send email", {"to": "a@b.com"}, time.time())
        claimed = await store.claim_due(time.time(), batch_size=10, lock_duration=60)
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def insert(self, kind: str, payload: Mapping[str, Any], run_at: float) -> str:
        self._check_open()
        blob = validate_new_job(kind, payload, run_at)
        now = time.time()
        job = Job(
            id=new_job_id(),
            kind=kind,
            payload=json.loads(blob),
            run_at=float(run_at),
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._jobs[job.id] = job
        return job.id

    async def claim_due(
        self,
        now: float,
        batch_size: int,
        lock_duration: float,
        owner: str = "",
    ) -> list[Job]:
        self._check_open()
        if batch_size <= 0:
            return []
        async with self._lock:
            due = sorted(
                (j for j in self._jobs.values() if j.is_due(now)),
                key=lambda j: (j.run_at, j.id),
            )[:batch_size]
            for job in due:
                job.state = JobState.LOCKED
                job.locked_until = now + lock_duration
                job.locked_by = owner
                job.updated_at = time.time()
            return [self._copy(j) for j in due]

    async def mark_running(self, job_id: str, owner: str | None = None) -> bool:
        async with self._lock:
            job = self._owned(job_id, owner, JobState.LOCKED)
            if job is None:
                return False
            job.state = JobState.RUNNING
            job.attempts += 1
            job.updated_at = time.time()
            return True

    async def mark_succeeded(self, job_id: str, owner: str | None = None) -> bool:
        async with self._lock:
            job = self._owned(job_id, owner, JobState.RUNNING)
            if job is None:
                return False
            job.state = JobState.SUCCEEDED
            job.last_error = None
            job.locked_until = 0.0
            job.locked_by = ""
            job.updated_at = time.time()
            return True

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        next_run_at: float | None = None,
        owner: str | None = None,
        from_state: JobState = JobState.RUNNING,
    ) -> bool:
        check_failure_source(from_state)
        async with self._lock:
            job = self._owned(job_id, owner, from_state)
            if job is None:
                return False
            job.last_error = error
            if next_run_at is None:
                job.state = JobState.DEAD
            else:
                job.state = JobState.PENDING
                job.run_at = float(next_run_at)
            job.locked_until = 0.0
            job.locked_by = ""
            job.updated_at = time.time()
            return True

    async def get(self, job_id: str) -> Job | None:
        self._check_open()
        job = self._jobs.get(job_id)
        return self._copy(job) if job else None

    async def list_jobs(
        self, state: JobState | None = None, limit: int = 100
    ) -> list[Job]:
        self._check_open()
        jobs = sorted(self._jobs.values(), key=lambda j: (j.run_at, j.id))
        if state is not None:
            jobs = [j for j in jobs if j.state == state]
        return [self._copy(j) for j in jobs[:limit]]

    async def close(self) -> None:
        self._jobs.clear()
        self._closed = True

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("In-memory job store is closed")

    def _owned(self, job_id: str, owner: str | None, state: JobState) -> Job | None:
        self._check_open()
        job = self._jobs.get(job_id)
        if job is None or job.state != state:
            return None
        if owner is not None and job.locked_by != owner:
            return None
        return job

    @staticmethod
    def _copy(job: Job) -> Job:
        return replace(job, payload=json.loads(json.dumps(job.payload)))
