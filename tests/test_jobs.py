"""Tests for the delayed job queue and the background processor."""

import asyncio

import pytest

from warden.service.jobs import PROCESSOR_LEASE_NAME, Job, JobProcessor, JobScheduler
from warden.storage.memory_cache import InMemoryCache


def _job(scheduler, delay_ms=0, job_type="noop", payload=None):
    return Job(type=job_type, payload=payload or {}, due_at_ms=scheduler.now_ms() + delay_ms)


class Recorder:
    """Handler that records payloads and can be told to fail."""

    def __init__(self, failures: int = 0) -> None:
        self.calls = []
        self.failures = failures

    async def __call__(self, payload):
        self.calls.append(payload)
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("handler failed")


class TestSchedulerOrdering:
    async def test_job_due_exactly_at_its_time(self, scheduler):
        job = await scheduler.schedule(_job(scheduler, delay_ms=5000))
        due_at = job.due_at_ms
        assert await scheduler.due_jobs(due_at - 1) == []
        assert [j.id for j in await scheduler.due_jobs(due_at)] == [job.id]
        assert [j.id for j in await scheduler.due_jobs(due_at + 10_000)] == [job.id]

    async def test_due_jobs_does_not_remove(self, scheduler):
        job = await scheduler.schedule(_job(scheduler))
        await scheduler.due_jobs()
        assert [j.id for j in await scheduler.due_jobs()] == [job.id]

    async def test_oldest_first(self, scheduler):
        late = await scheduler.schedule(_job(scheduler, delay_ms=-10))
        early = await scheduler.schedule(_job(scheduler, delay_ms=-20))
        assert [j.id for j in await scheduler.due_jobs()] == [early.id, late.id]

    async def test_remove_by_id_survives_payload_change(self, scheduler):
        job = await scheduler.schedule(_job(scheduler, payload={"n": 1}))
        job.payload["n"] = 2
        await scheduler.remove(job)
        assert await scheduler.due_jobs() == []

    async def test_enqueue_defaults_to_now(self, scheduler):
        job = await scheduler.enqueue("noop", {"a": 1})
        assert job.due_at_ms == scheduler.now_ms()
        assert (await scheduler.due_jobs())[0].payload == {"a": 1}

    def test_job_json_round_trip(self):
        job = Job(type="t", payload={"k": [1, 2]}, due_at_ms=5, attempts=2, last_error="x")
        assert Job.from_json(job.to_json()) == job


class TestClaimAndLease:
    async def test_claim_moves_job_out_of_pending(self, scheduler):
        job = await scheduler.schedule(_job(scheduler))
        claimed = await scheduler.claim()
        assert [j.id for j in claimed] == [job.id]
        assert await scheduler.claim() == []
        assert await scheduler.due_jobs() == []

    async def test_claim_skips_future_jobs(self, scheduler):
        await scheduler.schedule(_job(scheduler, delay_ms=1000))
        assert await scheduler.claim() == []

    async def test_claim_respects_limit(self, scheduler):
        for offset in range(5):
            await scheduler.schedule(_job(scheduler, delay_ms=-offset))
        assert len(await scheduler.claim(limit=2)) == 2
        assert len(await scheduler.claim(limit=10)) == 3

    async def test_ack_deletes(self, scheduler, clock):
        job = await scheduler.schedule(_job(scheduler))
        (claimed,) = await scheduler.claim()
        await scheduler.ack(claimed)
        clock.advance(120)
        assert await scheduler.requeue_expired() == 0
        assert await scheduler.due_jobs() == []

    async def test_expired_lease_requeued(self, scheduler, clock):
        job = await scheduler.schedule(_job(scheduler))
        await scheduler.claim()
        clock.advance(59)
        assert await scheduler.requeue_expired() == 0
        clock.advance(2)
        assert await scheduler.requeue_expired() == 1
        assert [j.id for j in await scheduler.claim()] == [job.id]

    async def test_fail_retries_with_delay_then_dead_letters(self, scheduler, clock):
        await scheduler.schedule(_job(scheduler))
        for attempt in (1, 2):
            (job,) = await scheduler.claim()
            assert await scheduler.fail(job, "boom") == "retry"
            assert job.attempts == attempt
            assert await scheduler.claim() == []
            clock.advance(30 * attempt + 1)

        (job,) = await scheduler.claim()
        assert job.attempts == 2
        assert await scheduler.fail(job, "boom") == "dead"
        dead = await scheduler.dead_letters()
        assert [(d.id, d.attempts, d.last_error) for d in dead] == [(job.id, 3, "boom")]
        clock.advance(3600)
        assert await scheduler.due_jobs() == []


class TestProcessor:
    @pytest.fixture
    def processor(self, scheduler):
        return JobProcessor(scheduler, interval_ms=50, owner="node-a")

    async def test_dispatches_by_type_and_acks(self, processor, scheduler):
        handler = Recorder()
        processor.register("greet", handler)
        await scheduler.schedule(_job(scheduler, job_type="greet", payload={"to": "alice"}))
        report = await processor.run_once()
        assert report == {"processed": 1, "retried": 0, "dead": 0}
        assert handler.calls == [{"to": "alice"}]
        assert (await processor.run_once())["processed"] == 0

    async def test_not_yet_due_is_left_alone(self, processor, scheduler, clock):
        handler = Recorder()
        processor.register("greet", handler)
        await scheduler.schedule(_job(scheduler, delay_ms=5000, job_type="greet"))
        await processor.run_once()
        assert handler.calls == []
        clock.advance(5)
        await processor.run_once()
        assert len(handler.calls) == 1

    async def test_handler_error_retries(self, processor, scheduler, clock):
        handler = Recorder(failures=1)
        processor.register("greet", handler)
        await scheduler.schedule(_job(scheduler, job_type="greet"))
        assert (await processor.run_once())["retried"] == 1
        clock.advance(31)
        assert (await processor.run_once())["processed"] == 1
        assert len(handler.calls) == 2

    async def test_unknown_type_dead_lettered(self, processor, scheduler):
        await scheduler.schedule(_job(scheduler, job_type="mystery"))
        assert (await processor.run_once())["dead"] == 1
        (dead,) = await scheduler.dead_letters()
        assert dead.type == "mystery"
        assert "no handler" in dead.last_error

    async def test_single_writer_lease(self, processor, scheduler, clock):
        other = JobProcessor(scheduler, interval_ms=50, owner="node-b")
        handler = Recorder()
        processor.register("greet", handler)
        other.register("greet", handler)
        await scheduler.schedule(_job(scheduler, job_type="greet"))

        await processor.run_once()
        await scheduler.schedule(_job(scheduler, job_type="greet"))
        assert await other.run_once() == {"processed": 0, "retried": 0, "dead": 0}
        assert len(handler.calls) == 1

        clock.advance(processor.lease_ttl_ms / 1000 + 1)
        assert (await other.run_once())["processed"] == 1

    async def test_stop_releases_lease(self, processor, scheduler, cache):
        await processor.run_once()
        await processor.stop()
        assert await cache.acquire_lease(PROCESSOR_LEASE_NAME, "node-b", 1000)

    async def test_crashed_worker_job_redelivered(self, scheduler, clock):
        """A job claimed by a worker that died is picked up after its lease."""
        await scheduler.schedule(_job(scheduler, job_type="greet"))
        await scheduler.claim()

        survivor = JobProcessor(scheduler, interval_ms=50, owner="node-b")
        handler = Recorder()
        survivor.register("greet", handler)
        assert (await survivor.run_once())["processed"] == 0
        clock.advance(61)
        assert (await survivor.run_once())["processed"] == 1

    async def test_background_loop(self):
        # Real clock so the loop's sleeps and due times line up
        scheduler = JobScheduler(InMemoryCache())
        processor = JobProcessor(scheduler, interval_ms=10, owner="loop")
        done = asyncio.Event()

        async def handler(payload):
            done.set()

        processor.register("greet", handler)
        await scheduler.enqueue("greet", {})
        await processor.start()
        try:
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await processor.stop()
        assert processor._task is None

    async def test_dead_letter_error_is_sanitized(self, cache, clock):
        scheduler = JobScheduler(cache, clock=clock, max_attempts=1)
        processor = JobProcessor(scheduler, owner="node-a")

        async def leaky(payload):
            raise ConnectionError("cannot reach redis://:hunter2@cache:6379/0")

        processor.register("greet", leaky)
        await scheduler.schedule(_job(scheduler, job_type="greet"))
        assert (await processor.run_once())["dead"] == 1
        (dead,) = await scheduler.dead_letters()
        assert dead.last_error.startswith("ConnectionError:")
        assert "hunter2" not in dead.last_error
