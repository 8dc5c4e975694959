"""
SQLite job store.

Uses aiosqlite for async SQLite access.  WAL mode lets pollers read
while another connection writes; claims run inside BEGIN IMMEDIATE and
every per-job lock is a conditional UPDATE, so pollers in separate
processes sharing one database file never claim the same job.

Table: jobs
    id           TEXT  PK
    kind         TEXT
    payload      TEXT  (JSON)
    run_at       REAL
    state        TEXT
    attempts     INT
    locked_until REAL
    locked_by    TEXT
    last_error   TEXT
    created_at   REAL
    updated_at   REAL
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Mapping

import aiosqlite

from agendum.core.errors import StoreUnavailable
from agendum.scheduler.job import Job, JobState, new_job_id
from agendum.store.base import JobStore, check_failure_source, validate_new_job

logger = logging.getLogger(__name__)

# Shared by the SELECT and the per-row guard so both agree on "due".
_DUE_CONDITION = (
    "((state = 'pending' AND run_at <= :now)"
    " OR (state IN ('locked', 'running') AND locked_until < :now))"
)


class SQLiteJobStore(JobStore):
    """
    Durable job store backed by a single SQLite file.

    Usage:
        store = SQLiteJobStore("~/.agendum/jobs.db")
        await store.initialize()

        job_id = await store.insert("send email", payload, run_at)
        claimed = await store.claim_due(now, batch_size=10, lock_duration=300)
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        # One connection: writers must not interleave with an open claim transaction
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the jobs table."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            # Autocommit; transactions are opened explicitly where needed.
            self._db = await aiosqlite.connect(
                str(self._db_path),
                timeout=self._busy_timeout,
                isolation_level=None,
            )
            self._db.row_factory = aiosqlite.Row

            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")

            await self._db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id           TEXT PRIMARY KEY,
                    kind         TEXT NOT NULL,
                    payload      TEXT NOT NULL,
                    run_at       REAL NOT NULL,
                    state        TEXT NOT NULL DEFAULT 'pending',
                    attempts     INTEGER NOT NULL DEFAULT 0,
                    locked_until REAL NOT NULL DEFAULT 0,
                    locked_by    TEXT NOT NULL DEFAULT '',
                    last_error   TEXT,
                    created_at   REAL NOT NULL,
                    updated_at   REAL NOT NULL
                )
                """
            )
            # Claim query scans by (state, run_at); recovery by locked_until
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_state_run_at ON jobs(state, run_at)"
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_state_locked ON jobs(state, locked_until)"
            )
            logger.debug(f"SQLite job store initialized at {self._db_path}")

        except aiosqlite.Error as e:
            raise StoreUnavailable(
                f"Failed to initialize SQLite at {self._db_path}: {e}"
            ) from e

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            await self.initialize()
        return self._db  # type: ignore[return-value]

    # ── Writes ────────────────────────────────────────────────────────────────

    async def insert(self, kind: str, payload: Mapping[str, Any], run_at: float) -> str:
        blob = validate_new_job(kind, payload, run_at)
        db = await self._ensure_db()
        job_id = new_job_id()
        now = time.time()
        try:
            async with self._write_lock:
                await db.execute(
                    """
                    INSERT INTO jobs (id, kind, payload, run_at, state, attempts,
                                      created_at, updated_at)
                    VALUES (?, ?, ?, ?, 'pending', 0, ?, ?)
                    """,
                    (job_id, kind, blob, float(run_at), now, now),
                )
        except aiosqlite.Error as e:
            raise StoreUnavailable(f"Failed to insert {kind!r} job: {e}") from e
        return job_id

    async def claim_due(
        self,
        now: float,
        batch_size: int,
        lock_duration: float,
        owner: str = "",
    ) -> list[Job]:
        if batch_size <= 0:
            return []
        db = await self._ensure_db()
        try:
            async with self._write_lock:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    jobs = await self._claim_in_transaction(
                        db, now, batch_size, lock_duration, owner
                    )
                    await db.execute("COMMIT")
                except BaseException:
                    await self._rollback(db)
                    raise
        except aiosqlite.Error as e:
            raise StoreUnavailable(f"Failed to claim due jobs: {e}") from e
        return jobs

    async def _claim_in_transaction(
        self,
        db: aiosqlite.Connection,
        now: float,
        batch_size: int,
        lock_duration: float,
        owner: str,
    ) -> list[Job]:
        async with db.execute(
            f"SELECT id FROM jobs WHERE {_DUE_CONDITION} ORDER BY run_at, id LIMIT :limit",
            {"now": now, "limit": batch_size},
        ) as cursor:
            candidates = [row["id"] for row in await cursor.fetchall()]

        claimed: list[str] = []
        for job_id in candidates:
            # Compare-and-update: only a row that is still due gets locked
            cursor = await db.execute(
                f"""
                UPDATE jobs
                SET state = 'locked', locked_until = :until,
                    locked_by = :owner, updated_at = :updated
                WHERE id = :id AND {_DUE_CONDITION}
                """,
                {
                    "now": now,
                    "until": now + lock_duration,
                    "owner": owner,
                    "updated": time.time(),
                    "id": job_id,
                },
            )
            if cursor.rowcount == 1:
                claimed.append(job_id)

        if not claimed:
            return []
        marks = ", ".join("?" for _ in claimed)
        async with db.execute(
            f"SELECT * FROM jobs WHERE id IN ({marks}) ORDER BY run_at, id",
            claimed,
        ) as cursor:
            return [self._row_to_job(r) for r in await cursor.fetchall()]

    async def mark_running(self, job_id: str, owner: str | None = None) -> bool:
        return await self._transition(
            job_id,
            owner,
            from_state=JobState.LOCKED,
            assignments="state = 'running', attempts = attempts + 1",
            values={},
        )

    async def mark_succeeded(self, job_id: str, owner: str | None = None) -> bool:
        return await self._transition(
            job_id,
            owner,
            from_state=JobState.RUNNING,
            assignments=(
                "state = 'succeeded', last_error = NULL,"
                " locked_until = 0, locked_by = ''"
            ),
            values={},
        )

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        next_run_at: float | None = None,
        owner: str | None = None,
        from_state: JobState = JobState.RUNNING,
    ) -> bool:
        check_failure_source(from_state)
        if next_run_at is None:
            assignments = (
                "state = 'dead', last_error = :error,"
                " locked_until = 0, locked_by = ''"
            )
            values: dict[str, Any] = {"error": error}
        else:
            assignments = (
                "state = 'pending', run_at = :next_run_at, last_error = :error,"
                " locked_until = 0, locked_by = ''"
            )
            values = {"error": error, "next_run_at": float(next_run_at)}
        return await self._transition(
            job_id, owner, from_state=JobState(from_state),
            assignments=assignments, values=values,
        )

    async def _transition(
        self,
        job_id: str,
        owner: str | None,
        from_state: JobState,
        assignments: str,
        values: dict[str, Any],
    ) -> bool:
        """Conditional single-row update. False if the guard did not match."""
        db = await self._ensure_db()
        where = "id = :id AND state = :from_state"
        if owner is not None:
            where += " AND locked_by = :owner"
        try:
            async with self._write_lock:
                cursor = await db.execute(
                    f"UPDATE jobs SET {assignments}, updated_at = :updated WHERE {where}",
                    {
                        **values,
                        "id": job_id,
                        "from_state": from_state.value,
                        "owner": owner,
                        "updated": time.time(),
                    },
                )
        except aiosqlite.Error as e:
            raise StoreUnavailable(f"Failed to update job {job_id}: {e}") from e
        return cursor.rowcount == 1

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, job_id: str) -> Job | None:
        db = await self._ensure_db()
        try:
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreUnavailable(f"Failed to get job {job_id}: {e}") from e
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self, state: JobState | None = None, limit: int = 100
    ) -> list[Job]:
        db = await self._ensure_db()
        q = "SELECT * FROM jobs"
        args: tuple = ()
        if state is not None:
            q += " WHERE state = ?"
            args = (JobState(state).value,)
        q += " ORDER BY run_at, id LIMIT ?"
        try:
            async with db.execute(q, (*args, limit)) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreUnavailable(f"Failed to list jobs: {e}") from e
        return [self._row_to_job(r) for r in rows]

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    async def _rollback(db: aiosqlite.Connection) -> None:
        try:
            await db.execute("ROLLBACK")
        except aiosqlite.Error as e:
            logger.warning(f"Rollback failed: {e}")

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> Job:
        d = dict(row)
        d["payload"] = json.loads(d["payload"])
        return Job.from_dict(d)
