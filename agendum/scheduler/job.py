"""
Job — the unit of deferred work.

A Job carries an opaque payload, the kind of executor that handles it,
when it becomes due, and where it is in its lifecycle.  Timestamps are
unix seconds (float) so they serialize cleanly to SQLite.

State machine:
    pending  --claim-->            locked
    locked   --execution begins--> running
    running  --success-->          succeeded  (terminal)
    running  --failure, retry-->   pending    (run_at pushed back)
    running  --failure, final-->   dead       (terminal)
    locked/running with an expired lock is claimable again.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobState(str, Enum):
    """Lifecycle states persisted with each job."""

    PENDING = "pending"
    LOCKED = "locked"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.DEAD)


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    """A persisted unit of deferred work."""

    kind: str                 # executor name, e.g. "send email"
    payload: dict[str, Any]   # opaque to the scheduler
    run_at: float             # not eligible before this time

    id: str = field(default_factory=new_job_id)
    state: JobState = JobState.PENDING
    attempts: int = 0
    locked_until: float = 0.0  # 0 means unlocked
    locked_by: str = ""        # poller id holding the claim
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def is_due(self, now: float) -> bool:
        """True when a claim at `now` would pick this job up."""
        if self.state == JobState.PENDING:
            return self.run_at <= now
        if self.state in (JobState.LOCKED, JobState.RUNNING):
            return self.locked_until < now
        return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "run_at": self.run_at,
            "state": self.state.value,
            "attempts": self.attempts,
            "locked_until": self.locked_until,
            "locked_by": self.locked_by,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Job":
        return cls(
            id=d["id"],
            kind=d["kind"],
            payload=d["payload"],
            run_at=float(d["run_at"]),
            state=JobState(d["state"]),
            attempts=int(d["attempts"]),
            locked_until=float(d.get("locked_until") or 0.0),
            locked_by=d.get("locked_by") or "",
            last_error=d.get("last_error"),
            created_at=float(d["created_at"]),
            updated_at=float(d["updated_at"]),
        )
