"""
Scheduler — the façade external callers use.

    scheduler = Scheduler.from_config(AgendumConfig.load())
    await scheduler.initialize()
    await scheduler.start()

    job_id = await scheduler.schedule(
        "send email",
        {"to": "a@b.com", "subject": "Hi", "body": "there"},
        "2026-10-19T09:00:00Z",
    )
    job = await scheduler.status(job_id)

    await scheduler.close()
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Union

from agendum.core.config import AgendumConfig
from agendum.core.errors import ConfigError, ValidationError
from agendum.executors.email import SEND_EMAIL, SMTPEmailExecutor
from agendum.executors.registry import Executor, ExecutorRegistry
from agendum.scheduler.job import Job
from agendum.scheduler.poller import Poller
from agendum.store.base import JobStore, check_timestamp
from agendum.store.memory import InMemoryJobStore
from agendum.store.sqlite import SQLiteJobStore

logger = logging.getLogger(__name__)

RunAt = Union[datetime, str, int, float]


class Scheduler:
    """
    Schedule jobs, run the poller, inspect job state.

    The store is passed in and owned by the caller's lifecycle:
    initialize() opens it, close() stops the poller and closes it.
    """

    def __init__(
        self,
        store: JobStore,
        registry: ExecutorRegistry | None = None,
        poller: Poller | None = None,
    ) -> None:
        self._store = store
        self._registry = registry or ExecutorRegistry()
        self._poller = poller or Poller(store, self._registry)

    @classmethod
    def from_config(cls, config: AgendumConfig) -> "Scheduler":
        """Build store, registry (with the email executor) and poller from config."""
        backend = config.store.backend
        if backend == "sqlite":
            store: JobStore = SQLiteJobStore(
                config.get_db_path(), busy_timeout=config.store.busy_timeout
            )
        elif backend == "memory":
            store = InMemoryJobStore()
        else:
            raise ConfigError(f"Unknown store backend: {backend!r}")

        registry = ExecutorRegistry()
        registry.register(SEND_EMAIL, SMTPEmailExecutor(config.smtp))
        if not config.smtp.configured:
            logger.info("SMTP is not configured; 'send email' jobs will fail")

        poller = Poller.from_config(store, registry, config.scheduler)
        return cls(store, registry, poller)

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def registry(self) -> ExecutorRegistry:
        return self._registry

    @property
    def poller(self) -> Poller:
        return self._poller

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        await self._store.initialize()

    async def start(self) -> None:
        await self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()

    async def close(self) -> None:
        await self._poller.stop()
        await self._store.close()

    # ── API ───────────────────────────────────────────────────────────────────

    def define(self, kind: str, executor: Executor) -> None:
        """Register the executor for a job kind."""
        self._registry.register(kind, executor)

    async def schedule(self, kind: str, payload: Mapping[str, Any], run_at: RunAt) -> str:
        """
        Persist a job to run at or after run_at. Returns its id.

        Raises ValidationError for an empty kind, a non-mapping payload or
        an unparseable run_at; nothing is persisted in that case.
        """
        if not isinstance(kind, str) or not kind.strip():
            raise ValidationError("Job kind is required", field="kind")
        if not isinstance(payload, Mapping):
            raise ValidationError("Payload must be a mapping", field="payload")
        ts = parse_run_at(run_at)
        job_id = await self._store.insert(kind, payload, ts)
        logger.info(f"Scheduled {kind!r} job {job_id} for {_fmt(ts)}")
        return job_id

    async def status(self, job_id: str) -> Job | None:
        """Snapshot of a job, or None if no such job exists."""
        return await self._store.get(job_id)


def parse_run_at(value: RunAt) -> float:
    """
    Normalize a run time to a unix timestamp.

    Accepts a datetime, an ISO-8601 string, or unix seconds.  Naive
    datetimes and strings without an offset are taken as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValidationError("run_at is required", field="run_at")
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(
                f"run_at is not an ISO-8601 timestamp: {value!r}", field="run_at"
            ) from None
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        check_timestamp(value)
        return float(value)
    else:
        raise ValidationError(
            f"run_at must be a datetime, ISO-8601 string or timestamp, "
            f"got {type(value).__name__}",
            field="run_at",
        )

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    ts = dt.timestamp()
    check_timestamp(ts)
    return ts


def _fmt(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")
