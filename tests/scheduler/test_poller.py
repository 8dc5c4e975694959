"""Tests for agendum/scheduler/poller.py"""
from __future__ import annotations

import asyncio

import pytest

from agendum.core.errors import StoreUnavailable
from agendum.executors.registry import ExecutionResult, ExecutorRegistry
from agendum.scheduler.backoff import BackoffPolicy
from agendum.scheduler.job import JobState
from agendum.scheduler.poller import Poller
from agendum.store.memory import InMemoryJobStore

T0 = 1_800_000_000.0


# ── Helpers ──────────────────────────────────────────────────────────────────

class Recorder:
    """Async executor that records payloads and returns a fixed outcome."""

    def __init__(self, result: ExecutionResult | None = None) -> None:
        self.calls: list[dict] = []
        self._result = result or ExecutionResult.ok("sent")

    async def __call__(self, payload):
        self.calls.append(dict(payload))
        return self._result


def make_poller(store, registry, clock, **kwargs) -> Poller:
    defaults = dict(
        poll_interval=0.01,
        batch_size=10,
        lock_duration=60,
        job_timeout=5,
        max_attempts=3,
        backoff=BackoffPolicy(base=10, maximum=1000),
        clock=clock,
        poller_id="test-poller",
    )
    defaults.update(kwargs)
    return Poller(store, registry, **defaults)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not await predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


# ── Cycle behaviour ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_successful_job_runs_once(store, registry, clock):
    executor = Recorder()
    registry.register("send email", executor)
    job_id = await store.insert("send email", {"to": "a@b.com"}, T0 - 5)
    poller = make_poller(store, registry, clock)

    claimed = await poller.run_once(now=T0)

    assert [j.id for j in claimed] == [job_id]
    assert executor.calls == [{"to": "a@b.com"}]
    job = await store.get(job_id)
    assert job.state == JobState.SUCCEEDED
    assert job.attempts == 1
    assert job.last_error is None


@pytest.mark.asyncio
async def test_past_job_claimed_on_next_cycle(store, registry, clock):
    registry.register("k", Recorder())
    job_id = await store.insert("k", {}, T0 - 86400)
    poller = make_poller(store, registry, clock)

    claimed = await poller.run_once(now=T0)
    assert [j.id for j in claimed] == [job_id]


@pytest.mark.asyncio
async def test_future_job_not_claimed_early(store, registry, clock):
    executor = Recorder()
    registry.register("k", executor)
    job_id = await store.insert("k", {}, T0 + 60)
    poller = make_poller(store, registry, clock)

    assert await poller.run_once(now=T0 + 59.9) == []
    assert executor.calls == []
    assert (await store.get(job_id)).state == JobState.PENDING


@pytest.mark.asyncio
async def test_failure_reschedules_with_backoff(store, registry, clock):
    registry.register("k", Recorder(ExecutionResult.fail("relay down")))
    job_id = await store.insert("k", {}, T0)
    poller = make_poller(store, registry, clock)

    await poller.run_once(now=T0)

    job = await store.get(job_id)
    assert job.state == JobState.PENDING
    assert job.attempts == 1
    assert job.last_error == "relay down"
    # base * 2**attempts from the failure time
    assert job.run_at == clock.now + 20


@pytest.mark.asyncio
async def test_always_failing_job_dies_after_max_attempts(store, registry, clock):
    executor = Recorder(ExecutionResult.fail("smtp refused"))
    registry.register("send email", executor)
    job_id = await store.insert("send email", {"to": "a@b.com"}, T0)
    poller = make_poller(store, registry, clock, max_attempts=3)

    states = []
    run_ats = []
    for _ in range(3):
        job = await store.get(job_id)
        clock.now = job.run_at
        claimed = await poller.run_once(now=clock.now)
        assert [j.id for j in claimed] == [job_id]
        job = await store.get(job_id)
        states.append(job.state)
        run_ats.append(job.run_at)
        assert job.attempts <= 3

    assert states == [JobState.PENDING, JobState.PENDING, JobState.DEAD]
    job = await store.get(job_id)
    assert job.attempts == 3
    assert job.last_error == "smtp refused"
    assert len(executor.calls) == 3
    # backoff strictly increases between retries
    assert run_ats[1] > run_ats[0]
    # dead jobs are never claimed again
    assert await poller.run_once(now=T0 + 10**6) == []


@pytest.mark.asyncio
async def test_backoff_capped_at_maximum(registry, clock):
    store = InMemoryJobStore()
    registry.register("k", Recorder(ExecutionResult.fail("no")))
    job_id = await store.insert("k", {}, T0)
    poller = make_poller(
        store, registry, clock,
        max_attempts=10, backoff=BackoffPolicy(base=10, maximum=50),
    )

    delays = []
    for _ in range(5):
        job = await store.get(job_id)
        clock.now = job.run_at
        await poller.run_once(now=clock.now)
        delays.append((await store.get(job_id)).run_at - clock.now)

    assert delays == [20, 40, 50, 50, 50]


@pytest.mark.asyncio
async def test_unknown_kind_is_dead_immediately(store, registry, clock):
    job_id = await store.insert("teleport", {}, T0)
    poller = make_poller(store, registry, clock, max_attempts=5)

    await poller.run_once(now=T0)

    job = await store.get(job_id)
    assert job.state == JobState.DEAD
    assert job.attempts == 1
    assert "teleport" in job.last_error


@pytest.mark.asyncio
async def test_raising_executor_is_retried(store, registry, clock):
    async def explode(payload):
        raise ConnectionError("connection reset")

    registry.register("k", explode)
    job_id = await store.insert("k", {}, T0)
    poller = make_poller(store, registry, clock)

    await poller.run_once(now=T0)

    job = await store.get(job_id)
    assert job.state == JobState.PENDING
    assert "connection reset" in job.last_error


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(store, registry, clock):
    async def hang(payload):
        await asyncio.sleep(10)

    registry.register("k", hang)
    job_id = await store.insert("k", {}, T0)
    poller = make_poller(store, registry, clock, job_timeout=0.05)

    await poller.run_once(now=T0)

    job = await store.get(job_id)
    assert job.state == JobState.PENDING
    assert job.attempts == 1
    assert "Timed out" in job.last_error


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_batch(store, registry, clock):
    ok = Recorder()
    registry.register("good", ok)
    registry.register("bad", Recorder(ExecutionResult.fail("nope")))
    good_id = await store.insert("good", {}, T0)
    bad_id = await store.insert("bad", {}, T0)
    poller = make_poller(store, registry, clock)

    await poller.run_once(now=T0)

    assert (await store.get(good_id)).state == JobState.SUCCEEDED
    assert (await store.get(bad_id)).state == JobState.PENDING


@pytest.mark.asyncio
async def test_batch_size_bounds_claims(store, registry, clock):
    registry.register("k", Recorder())
    for i in range(5):
        await store.insert("k", {"i": i}, T0 - i)
    poller = make_poller(store, registry, clock, batch_size=2)

    claimed = await poller.run_once(now=T0)
    assert [j.payload["i"] for j in claimed] == [4, 3]


@pytest.mark.asyncio
async def test_in_flight_jobs_limit_next_claim(registry, clock):
    store = InMemoryJobStore()
    release = asyncio.Event()

    async def slow(payload):
        await release.wait()

    registry.register("k", slow)
    for i in range(4):
        await store.insert("k", {}, T0)
    poller = make_poller(store, registry, clock, batch_size=2)

    assert len(await poller.poll_once(now=T0)) == 2
    assert poller.in_flight == 2
    assert await poller.poll_once(now=T0) == []

    release.set()
    await poller.drain()
    assert poller.in_flight == 0
    assert len(await poller.run_once(now=T0)) == 2


@pytest.mark.asyncio
async def test_lost_claim_does_not_overwrite_new_owner(registry, clock):
    store = InMemoryJobStore()
    release = asyncio.Event()

    async def slow(payload):
        await release.wait()
        return ExecutionResult.ok()

    registry.register("k", slow)
    job_id = await store.insert("k", {}, T0)
    poller = make_poller(store, registry, clock, poller_id="slow", lock_duration=30)

    await poller.poll_once(now=T0)
    await asyncio.sleep(0)  # let the job reach the executor
    # lock expires, another poller takes over
    await store.claim_due(T0 + 31, 10, 30, owner="other")

    release.set()
    await poller.drain()

    job = await store.get(job_id)
    assert job.state == JobState.LOCKED
    assert job.locked_by == "other"


@pytest.mark.asyncio
async def test_crashed_claim_is_recovered(store, registry, clock):
    executor = Recorder()
    registry.register("k", executor)
    job_id = await store.insert("k", {}, T0)
    # a poller claimed it and died
    await store.claim_due(T0, 10, 30, owner="crashed")
    poller = make_poller(store, registry, clock)

    assert await poller.run_once(now=T0 + 10) == []
    claimed = await poller.run_once(now=T0 + 31)

    assert [j.id for j in claimed] == [job_id]
    assert (await store.get(job_id)).state == JobState.SUCCEEDED
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_crash_during_final_attempt_goes_dead_without_rerun(store, registry, clock):
    executor = Recorder(ExecutionResult.fail("smtp down"))
    registry.register("k", executor)
    job_id = await store.insert("k", {}, T0)
    # a poller started the only allowed attempt and died
    await store.claim_due(T0, 10, 30, owner="crashed")
    assert await store.mark_running(job_id, owner="crashed")
    poller = make_poller(store, registry, clock, max_attempts=1, lock_duration=30)

    claimed = await poller.run_once(now=T0 + 31)

    assert [j.id for j in claimed] == [job_id]
    assert executor.calls == []
    job = await store.get(job_id)
    assert job.state == JobState.DEAD
    assert job.attempts == 1
    assert "Lock expired after final attempt" in job.last_error
    assert job.locked_by == ""


@pytest.mark.asyncio
async def test_crash_with_attempts_left_is_retried(store, registry, clock):
    executor = Recorder()
    registry.register("k", executor)
    job_id = await store.insert("k", {}, T0)
    await store.claim_due(T0, 10, 30, owner="crashed")
    await store.mark_running(job_id, owner="crashed")
    poller = make_poller(store, registry, clock, max_attempts=2, lock_duration=30)

    await poller.run_once(now=T0 + 31)

    job = await store.get(job_id)
    assert job.state == JobState.SUCCEEDED
    assert job.attempts == 2
    assert len(executor.calls) == 1


# ── Scenario ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_email_scheduled_a_minute_ahead(store, registry, clock):
    executor = Recorder()
    registry.register("send email", executor)
    payload = {"to": "a@b.com", "subject": "Hi", "body": "there"}
    job_id = await store.insert("send email", payload, T0 + 60)
    poller = make_poller(store, registry, clock)

    assert (await store.get(job_id)).state == JobState.PENDING
    assert await poller.run_once(now=T0 + 59) == []

    claimed = await poller.run_once(now=T0 + 61)
    assert [j.id for j in claimed] == [job_id]
    assert executor.calls == [payload]
    job = await store.get(job_id)
    assert job.state == JobState.SUCCEEDED
    assert job.attempts == 1


# ── Lifecycle ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(registry):
    store = InMemoryJobStore()
    poller = Poller(store, registry, poll_interval=0.01)

    await poller.stop()  # not running: no-op
    await poller.start()
    task = poller._task
    await poller.start()  # already running: no-op
    assert poller._task is task
    assert poller.running

    await poller.stop()
    await poller.stop()
    assert not poller.running


@pytest.mark.asyncio
async def test_background_loop_runs_due_jobs(registry):
    store = InMemoryJobStore()
    executor = Recorder()
    registry.register("k", executor)
    job_id = await store.insert("k", {"n": 1}, 0)
    poller = Poller(store, registry, poll_interval=0.01)

    await poller.start()

    async def done():
        return (await store.get(job_id)).state == JobState.SUCCEEDED

    await wait_for(done)
    await poller.stop()
    assert executor.calls == [{"n": 1}]


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_jobs(registry):
    store = InMemoryJobStore()
    started = asyncio.Event()

    async def slow(payload):
        started.set()
        await asyncio.sleep(0.05)

    registry.register("k", slow)
    job_id = await store.insert("k", {}, 0)
    poller = Poller(store, registry, poll_interval=0.01)

    await poller.start()
    await asyncio.wait_for(started.wait(), 2.0)
    await poller.stop()

    assert poller.in_flight == 0
    assert (await store.get(job_id)).state == JobState.SUCCEEDED


class FlakyStore(InMemoryJobStore):
    """Fails the first few claims as if the database were unreachable."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.claims = 0

    async def claim_due(self, now, batch_size, lock_duration, owner=""):
        self.claims += 1
        if self.claims <= self.failures:
            raise StoreUnavailable("database is locked")
        return await super().claim_due(now, batch_size, lock_duration, owner)


@pytest.mark.asyncio
async def test_store_outage_aborts_cycle_not_loop(registry):
    store = FlakyStore(failures=2)
    registry.register("k", Recorder())
    job_id = await store.insert("k", {}, 0)
    poller = Poller(store, registry, poll_interval=0.01)

    await poller.start()

    async def done():
        return (await store.get(job_id)).state == JobState.SUCCEEDED

    await wait_for(done)
    await poller.stop()
    assert store.claims >= 3


@pytest.mark.asyncio
async def test_poll_once_propagates_store_outage(registry, clock):
    poller = make_poller(FlakyStore(failures=1), registry, clock)
    with pytest.raises(StoreUnavailable):
        await poller.poll_once(now=T0)


def test_from_config(config, registry):
    store = InMemoryJobStore()
    config.scheduler.batch_size = 3
    poller = Poller.from_config(store, registry, config.scheduler, poller_id="p")

    assert poller.poller_id == "p"
    assert poller._batch_size == 3
    assert poller._backoff.base == config.scheduler.backoff_base
