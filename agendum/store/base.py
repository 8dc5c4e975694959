"""
Job Store interface.

Durable record of jobs plus the atomic claim that keeps two pollers
from running the same job.  The store is the only shared mutable
resource in the system; callers need no extra locking.
"""

from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Mapping

from agendum.core.errors import ValidationError
from agendum.scheduler.job import Job, JobState


class JobStore(ABC):
    """
    Abstract base class for job store backends.

    Implementations:
        SQLiteJobStore — file-based, durable, safe across processes
        InMemoryJobStore — for testing

    Lifecycle:
        store = SQLiteJobStore("~/.agendum/jobs.db")
        await store.initialize()
        ...
        await store.close()

    Settle operations (mark_*) accept an optional owner.  When given, the
    transition only applies while the job is still locked by that owner;
    False means the claim was lost to lock expiry.
    """

    async def initialize(self) -> None:
        """Open the backend. Default: nothing to do."""

    @abstractmethod
    async def insert(self, kind: str, payload: Mapping[str, Any], run_at: float) -> str:
        """Create a pending job. Returns its id."""
        ...

    @abstractmethod
    async def claim_due(
        self,
        now: float,
        batch_size: int,
        lock_duration: float,
        owner: str = "",
    ) -> list[Job]:
        """
        Atomically lock up to batch_size due jobs, oldest run_at first.

        Due means pending with run_at <= now, or locked/running with
        locked_until < now (crash recovery).
        """
        ...

    @abstractmethod
    async def mark_running(self, job_id: str, owner: str | None = None) -> bool:
        """locked -> running. Counts one attempt."""
        ...

    @abstractmethod
    async def mark_succeeded(self, job_id: str, owner: str | None = None) -> bool:
        """running -> succeeded. Clears last_error."""
        ...

    @abstractmethod
    async def mark_failed(
        self,
        job_id: str,
        error: str,
        next_run_at: float | None = None,
        owner: str | None = None,
        from_state: JobState = JobState.RUNNING,
    ) -> bool:
        """
        running -> pending at next_run_at, or -> dead when next_run_at is None.

        from_state=LOCKED settles a claimed job that must not run again
        (its attempts are already used up).
        """
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Get a job by id. Returns None if not found."""
        ...

    @abstractmethod
    async def list_jobs(
        self, state: JobState | None = None, limit: int = 100
    ) -> list[Job]:
        """List jobs ordered by run_at, optionally filtered by state."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store backend."""
        ...


def validate_new_job(kind: str, payload: Mapping[str, Any], run_at: float) -> str:
    """
    Check insert arguments and return the serialized payload.

    Raises ValidationError for an empty kind, a non-mapping or
    non-JSON-serializable payload, or a run_at that is not a representable
    unix timestamp.
    """
    if not isinstance(kind, str) or not kind.strip():
        raise ValidationError("Job kind is required", field="kind")
    if not isinstance(payload, Mapping):
        raise ValidationError(
            f"Payload must be a mapping, got {type(payload).__name__}",
            field="payload",
        )
    if isinstance(run_at, bool) or not isinstance(run_at, (int, float)):
        raise ValidationError(f"Invalid run_at: {run_at!r}", field="run_at")
    check_timestamp(run_at)
    try:
        return json.dumps(dict(payload))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Payload is not serializable: {e}", field="payload") from e


def check_timestamp(ts: float) -> None:
    """Raise ValidationError unless ts is a finite, representable unix time."""
    try:
        if math.isfinite(ts):
            datetime.fromtimestamp(ts, tz=timezone.utc)
            return
    except (OverflowError, OSError, ValueError):
        pass
    raise ValidationError(f"Invalid run_at: {ts!r}", field="run_at")


def check_failure_source(state: JobState) -> None:
    """mark_failed only settles a running job, or a locked one that must not run."""
    if JobState(state) not in (JobState.RUNNING, JobState.LOCKED):
        raise ValueError(f"Cannot fail a job from state {state!r}")
