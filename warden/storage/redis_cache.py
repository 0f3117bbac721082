from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from warden.logging import get_logger

logger = get_logger(__name__)

PENDING_JOBS_KEY = "jobs:pending"
INFLIGHT_JOBS_KEY = "jobs:inflight"
JOB_DATA_KEY = "jobs:data"
DEAD_JOBS_KEY = "jobs:dead"


def _login_key(session_id: str) -> str:
    return f"auth:login:{session_id}"


def _mfa_challenge_key(key: str) -> str:
    return f"auth:mfa:challenge:{key}"


def _mfa_enrollment_key(identity_id: int) -> str:
    return f"auth:mfa:enroll:{identity_id}"


def _verification_key(identity_id: int, slot: int) -> str:
    return f"auth:verify:{identity_id}:{slot}"


def _permissions_key(identity_id: int) -> str:
    return f"auth:perms:{identity_id}"


def _lease_key(name: str) -> str:
    return f"jobs:lease:{name}"


class RedisCache:
    """Redis wrapper exposing the ephemeral state the auth service needs.

    Single-use records (login sessions, MFA challenges) are consumed with
    GETDEL; job claims and lease handling run as Lua scripts so each step is
    atomic on the server.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Move due jobs from pending to in-flight with a lease deadline
    _CLAIM_SCRIPT = """
local pending = KEYS[1]
local inflight = KEYS[2]
local data = KEYS[3]
local now = tonumber(ARGV[1])
local lease_until = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local ids = redis.call('ZRANGEBYSCORE', pending, '-inf', now, 'LIMIT', 0, limit)
local claimed = {}
for _, id in ipairs(ids) do
  redis.call('ZREM', pending, id)
  local body = redis.call('HGET', data, id)
  if body then
    redis.call('ZADD', inflight, lease_until, id)
    table.insert(claimed, body)
  end
end
return claimed
"""

    # Return in-flight jobs whose lease expired to the pending set
    _REQUEUE_SCRIPT = """
local pending = KEYS[1]
local inflight = KEYS[2]
local now = tonumber(ARGV[1])

local ids = redis.call('ZRANGEBYSCORE', inflight, '-inf', now)
for _, id in ipairs(ids) do
  redis.call('ZREM', inflight, id)
  redis.call('ZADD', pending, now, id)
end
return #ids
"""

    # Take or renew a named lease held by a single owner
    _ACQUIRE_LEASE_SCRIPT = """
local holder = redis.call('GET', KEYS[1])
if holder == ARGV[1] then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
  return 1
end
if holder then
  return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[2])
return 1
"""

    _RELEASE_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        dead_letter_max: int = 1000,
    ):
        self.redis_url = redis_url
        self.dead_letter_max = dead_letter_max
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._claim_jobs = self.client.register_script(self._CLAIM_SCRIPT)
        self._requeue_jobs = self.client.register_script(self._REQUEUE_SCRIPT)
        self._acquire_lease = self.client.register_script(self._ACQUIRE_LEASE_SCRIPT)
        self._release_lease = self.client.register_script(self._RELEASE_LEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    @staticmethod
    def _loads(raw: Optional[str]) -> Optional[Any]:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("cache_payload_corrupt")
            return None

    # ------------------------------------------------------------------
    # Login sessions and MFA state
    # ------------------------------------------------------------------

    async def set_login_session(
        self, session_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(_login_key(session_id), json.dumps(payload), ex=ttl_seconds)

    async def pop_login_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Atomically fetch and delete a login session so it validates once."""
        return self._loads(await self.client.getdel(_login_key(session_id)))

    async def set_mfa_challenge(self, key: str, identity_id: int, ttl_seconds: int) -> None:
        await self.client.set(_mfa_challenge_key(key), str(identity_id), ex=ttl_seconds)

    async def pop_mfa_challenge(self, key: str) -> Optional[int]:
        raw = await self.client.getdel(_mfa_challenge_key(key))
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None

    async def set_mfa_enrollment(self, identity_id: int, secret: str, ttl_seconds: int) -> None:
        await self.client.set(_mfa_enrollment_key(identity_id), secret, ex=ttl_seconds)

    async def get_mfa_enrollment(self, identity_id: int) -> Optional[str]:
        return await self.client.get(_mfa_enrollment_key(identity_id))

    async def delete_mfa_enrollment(self, identity_id: int) -> None:
        await self.client.delete(_mfa_enrollment_key(identity_id))

    # ------------------------------------------------------------------
    # Email verification codes
    # ------------------------------------------------------------------

    async def claim_verification_slot(
        self, identity_id: int, code: str, *, slots: int, ttl_seconds: int
    ) -> Optional[int]:
        """Store ``code`` in the first free slot; None when every slot is live."""
        for slot in range(slots):
            acquired = await self.client.set(
                _verification_key(identity_id, slot), code, ex=ttl_seconds, nx=True
            )
            if acquired:
                return slot
        return None

    async def verification_slot_live(self, identity_id: int, slot: int) -> bool:
        return bool(await self.client.exists(_verification_key(identity_id, slot)))

    async def get_verification_codes(
        self, identity_id: int, *, slots: int
    ) -> List[Optional[str]]:
        keys = [_verification_key(identity_id, slot) for slot in range(slots)]
        return list(await self.client.mget(keys))

    async def delete_verification_code(self, identity_id: int, slot: int) -> None:
        await self.client.delete(_verification_key(identity_id, slot))

    async def clear_verification_codes(self, identity_id: int, *, slots: int) -> None:
        await self.client.delete(
            *[_verification_key(identity_id, slot) for slot in range(slots)]
        )

    # ------------------------------------------------------------------
    # Effective permission cache
    # ------------------------------------------------------------------

    async def get_permissions(self, identity_id: int) -> Optional[Dict[str, List[str]]]:
        return self._loads(await self.client.get(_permissions_key(identity_id)))

    async def set_permissions(
        self, identity_id: int, resolved: Dict[str, List[str]], ttl_seconds: int
    ) -> None:
        await self.client.set(_permissions_key(identity_id), json.dumps(resolved), ex=ttl_seconds)

    async def invalidate_permissions(self, *identity_ids: int) -> None:
        if identity_ids:
            await self.client.delete(*[_permissions_key(i) for i in identity_ids])

    # ------------------------------------------------------------------
    # Delayed jobs
    # ------------------------------------------------------------------

    async def enqueue_job(self, job_id: str, due_at_ms: int, body: str) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(JOB_DATA_KEY, job_id, body)
        pipe.zadd(PENDING_JOBS_KEY, {job_id: due_at_ms})
        await pipe.execute()

    async def due_jobs(self, now_ms: int, limit: Optional[int] = None) -> List[str]:
        if limit is None:
            ids = await self.client.zrangebyscore(PENDING_JOBS_KEY, "-inf", now_ms)
        else:
            ids = await self.client.zrangebyscore(
                PENDING_JOBS_KEY, "-inf", now_ms, start=0, num=limit
            )
        if not ids:
            return []
        bodies = await self.client.hmget(JOB_DATA_KEY, ids)
        return [body for body in bodies if body is not None]

    async def claim_due_jobs(self, now_ms: int, lease_ms: int, limit: int) -> List[str]:
        return list(
            await self._claim_jobs(
                keys=[PENDING_JOBS_KEY, INFLIGHT_JOBS_KEY, JOB_DATA_KEY],
                args=[now_ms, now_ms + lease_ms, limit],
            )
        )

    async def remove_job(self, job_id: str) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.zrem(PENDING_JOBS_KEY, job_id)
        pipe.zrem(INFLIGHT_JOBS_KEY, job_id)
        pipe.hdel(JOB_DATA_KEY, job_id)
        await pipe.execute()

    async def reschedule_job(self, job_id: str, due_at_ms: int, body: str) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.zrem(INFLIGHT_JOBS_KEY, job_id)
        pipe.hset(JOB_DATA_KEY, job_id, body)
        pipe.zadd(PENDING_JOBS_KEY, {job_id: due_at_ms})
        await pipe.execute()

    async def dead_letter_job(self, job_id: str, record: str) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.zrem(PENDING_JOBS_KEY, job_id)
        pipe.zrem(INFLIGHT_JOBS_KEY, job_id)
        pipe.hdel(JOB_DATA_KEY, job_id)
        pipe.rpush(DEAD_JOBS_KEY, record)
        pipe.ltrim(DEAD_JOBS_KEY, -self.dead_letter_max, -1)
        await pipe.execute()

    async def requeue_expired_leases(self, now_ms: int) -> int:
        return int(
            await self._requeue_jobs(keys=[PENDING_JOBS_KEY, INFLIGHT_JOBS_KEY], args=[now_ms])
        )

    async def dead_jobs(self, limit: int = 100) -> List[str]:
        return list(await self.client.lrange(DEAD_JOBS_KEY, 0, limit - 1))

    async def acquire_lease(self, name: str, owner: str, ttl_ms: int) -> bool:
        return bool(await self._acquire_lease(keys=[_lease_key(name)], args=[owner, ttl_ms]))

    async def release_lease(self, name: str, owner: str) -> None:
        await self._release_lease(keys=[_lease_key(name)], args=[owner])
