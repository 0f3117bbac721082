"""Delayed job queue and its background processor.

Jobs live in the cache as three structures: a pending set scored by due time,
an in-flight set scored by lease deadline, and a hash of job bodies keyed by
job id. Processing follows claim -> handle -> ack:

- ``claim`` atomically moves due jobs from pending to in-flight
- a handler that returns acks the job (removed by id)
- a handler that raises is rescheduled with a delay, or dead-lettered once
  it has used ``max_attempts``
- a processor that dies mid-job leaves the lease to expire; the next tick
  requeues it, so delivery is at-least-once and handlers must be idempotent

Only one processor per deployment runs a tick at a time: each tick first
takes or renews a named lease in the cache.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from warden.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_LEASE_MS = 60_000
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 30_000
DEFAULT_BATCH_SIZE = 50
PROCESSOR_LEASE_NAME = "processor"

JobHandler = Callable[[Dict[str, Any]], Awaitable[None]]


def _new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    type: str
    payload: Dict[str, Any]
    due_at_ms: int
    id: str = field(default_factory=_new_job_id)
    attempts: int = 0
    last_error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        data = json.loads(raw)
        return cls(
            type=data["type"],
            payload=data.get("payload") or {},
            due_at_ms=int(data["due_at_ms"]),
            id=data["id"],
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
        )


class JobScheduler:
    """Time-ordered job queue on top of the ephemeral cache."""

    def __init__(
        self,
        cache,
        *,
        clock: Callable[[], float] = time.time,
        lease_ms: int = DEFAULT_LEASE_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
    ) -> None:
        self.cache = cache
        self.clock = clock
        self.lease_ms = lease_ms
        self.max_attempts = max_attempts
        self.retry_delay_ms = retry_delay_ms

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    @staticmethod
    def _decode(bodies: List[str]) -> List[Job]:
        jobs = []
        for raw in bodies:
            try:
                jobs.append(Job.from_json(raw))
            except (ValueError, KeyError, TypeError) as exc:
                logger.error("job_decode_failed", error=str(exc))
        return jobs

    async def schedule(self, job: Job) -> Job:
        await self.cache.enqueue_job(job.id, job.due_at_ms, job.to_json())
        logger.info("job_scheduled", job_id=job.id, job_type=job.type, due_at_ms=job.due_at_ms)
        return job

    async def enqueue(
        self, job_type: str, payload: Dict[str, Any], *, delay_ms: int = 0
    ) -> Job:
        return await self.schedule(
            Job(type=job_type, payload=payload, due_at_ms=self.now_ms() + delay_ms)
        )

    async def due_jobs(self, now_ms: Optional[int] = None) -> List[Job]:
        """Pending jobs with due time <= now, oldest first. Nothing is removed."""
        now = self.now_ms() if now_ms is None else now_ms
        return self._decode(await self.cache.due_jobs(now))

    async def remove(self, job: Job) -> None:
        await self.cache.remove_job(job.id)

    async def claim(self, now_ms: Optional[int] = None, *, limit: int = DEFAULT_BATCH_SIZE) -> List[Job]:
        now = self.now_ms() if now_ms is None else now_ms
        return self._decode(await self.cache.claim_due_jobs(now, self.lease_ms, limit))

    async def ack(self, job: Job) -> None:
        await self.cache.remove_job(job.id)

    async def fail(self, job: Job, error: str) -> str:
        """Record a failed attempt; returns ``"retry"`` or ``"dead"``."""
        job.attempts += 1
        job.last_error = error
        if job.attempts >= self.max_attempts:
            await self.cache.dead_letter_job(job.id, job.to_json())
            logger.error(
                "job_dead_lettered",
                job_id=job.id,
                job_type=job.type,
                attempts=job.attempts,
                error=error,
            )
            return "dead"
        job.due_at_ms = self.now_ms() + self.retry_delay_ms * job.attempts
        await self.cache.reschedule_job(job.id, job.due_at_ms, job.to_json())
        logger.warning(
            "job_retry_scheduled",
            job_id=job.id,
            job_type=job.type,
            attempts=job.attempts,
            due_at_ms=job.due_at_ms,
        )
        return "retry"

    async def dead_letter(self, job: Job, reason: str) -> None:
        job.last_error = reason
        await self.cache.dead_letter_job(job.id, job.to_json())
        logger.error("job_dead_lettered", job_id=job.id, job_type=job.type, error=reason)

    async def requeue_expired(self, now_ms: Optional[int] = None) -> int:
        now = self.now_ms() if now_ms is None else now_ms
        count = await self.cache.requeue_expired_leases(now)
        if count:
            logger.warning("job_leases_requeued", count=count)
        return count

    async def dead_letters(self, limit: int = 100) -> List[Job]:
        return self._decode(await self.cache.dead_jobs(limit))


class JobProcessor:
    """Polls the scheduler and dispatches due jobs to handlers by type.

    Jobs in one tick run sequentially. Loop errors back off exponentially.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        handlers: Optional[Dict[str, JobHandler]] = None,
        *,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        owner: Optional[str] = None,
    ) -> None:
        self.scheduler = scheduler
        self.cache = scheduler.cache
        self.handlers: Dict[str, JobHandler] = dict(handlers or {})
        self.interval_ms = interval_ms
        self.batch_size = batch_size
        self.owner = owner or uuid.uuid4().hex
        # Lease must outlive a slow tick plus one sleep
        self.lease_ttl_ms = max(interval_ms * 3, scheduler.lease_ms)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def register(self, job_type: str, handler: JobHandler) -> None:
        self.handlers[job_type] = handler

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("job_processor_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("job_processor_started", interval_ms=self.interval_ms, owner=self.owner)

    async def stop(self) -> None:
        """Stop the background loop and give up the processor lease."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.cache.release_lease(PROCESSOR_LEASE_NAME, self.owner)
        logger.info("job_processor_stopped", owner=self.owner)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        interval = self.interval_ms / 1000
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "job_processor_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(300, interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "job_processor_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(interval)

    async def run_once(self) -> Dict[str, int]:
        """Run a single tick; returns counts of what happened to each job."""
        report = {"processed": 0, "retried": 0, "dead": 0}
        if not await self.cache.acquire_lease(PROCESSOR_LEASE_NAME, self.owner, self.lease_ttl_ms):
            logger.debug("job_processor_lease_held_elsewhere", owner=self.owner)
            return report

        await self.scheduler.requeue_expired()
        jobs = await self.scheduler.claim(limit=self.batch_size)
        for job in jobs:
            handler = self.handlers.get(job.type)
            if handler is None:
                await self.scheduler.dead_letter(job, f"no handler for job type {job.type}")
                report["dead"] += 1
                continue
            try:
                await handler(job.payload)
            except Exception as exc:
                error = sanitize_error_message(f"{type(exc).__name__}: {exc}")
                outcome = await self.scheduler.fail(job, error)
                report["retried" if outcome == "retry" else "dead"] += 1
                continue
            await self.scheduler.ack(job)
            report["processed"] += 1
            logger.info("job_processed", job_id=job.id, job_type=job.type, attempts=job.attempts)
        return report
