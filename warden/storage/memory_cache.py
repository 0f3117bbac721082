from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from warden.logging import get_logger

logger = get_logger(__name__)


class InMemoryCache:
    """Process-local stand-in for ``RedisCache`` with the same async surface.

    Only used under TEST_MODE or ALLOW_CACHE_FALLBACK_DEV. Expiry is driven by
    ``clock`` (seconds), which tests replace to step time deterministically.
    """

    def __init__(
        self, *, clock: Callable[[], float] = time.time, dead_letter_max: int = 1000
    ) -> None:
        self.clock = clock
        self.dead_letter_max = dead_letter_max
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._pending: Dict[str, int] = {}
        self._inflight: Dict[str, int] = {}
        self._job_data: Dict[str, str] = {}
        self._dead: List[str] = []

    # Caller must hold self._lock
    def _get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: str, ttl_seconds: Optional[float]) -> None:
        expires_at = self.clock() + ttl_seconds if ttl_seconds is not None else None
        self._values[key] = (value, expires_at)

    def _pop(self, key: str) -> Optional[str]:
        value = self._get(key)
        self._values.pop(key, None)
        return value

    @staticmethod
    def _loads(raw: Optional[str]) -> Optional[Any]:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("cache_payload_corrupt")
            return None

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # Login sessions and MFA state

    async def set_login_session(
        self, session_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(f"auth:login:{session_id}", json.dumps(payload), ttl_seconds)

    async def pop_login_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._loads(self._pop(f"auth:login:{session_id}"))

    async def set_mfa_challenge(self, key: str, identity_id: int, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:mfa:challenge:{key}", str(identity_id), ttl_seconds)

    async def pop_mfa_challenge(self, key: str) -> Optional[int]:
        with self._lock:
            raw = self._pop(f"auth:mfa:challenge:{key}")
        return int(raw) if raw is not None else None

    async def set_mfa_enrollment(self, identity_id: int, secret: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:mfa:enroll:{identity_id}", secret, ttl_seconds)

    async def get_mfa_enrollment(self, identity_id: int) -> Optional[str]:
        with self._lock:
            return self._get(f"auth:mfa:enroll:{identity_id}")

    async def delete_mfa_enrollment(self, identity_id: int) -> None:
        with self._lock:
            self._values.pop(f"auth:mfa:enroll:{identity_id}", None)

    # Email verification codes

    async def claim_verification_slot(
        self, identity_id: int, code: str, *, slots: int, ttl_seconds: int
    ) -> Optional[int]:
        with self._lock:
            for slot in range(slots):
                key = f"auth:verify:{identity_id}:{slot}"
                if self._get(key) is None:
                    self._set(key, code, ttl_seconds)
                    return slot
        return None

    async def verification_slot_live(self, identity_id: int, slot: int) -> bool:
        with self._lock:
            return self._get(f"auth:verify:{identity_id}:{slot}") is not None

    async def get_verification_codes(
        self, identity_id: int, *, slots: int
    ) -> List[Optional[str]]:
        with self._lock:
            return [self._get(f"auth:verify:{identity_id}:{slot}") for slot in range(slots)]

    async def delete_verification_code(self, identity_id: int, slot: int) -> None:
        with self._lock:
            self._values.pop(f"auth:verify:{identity_id}:{slot}", None)

    async def clear_verification_codes(self, identity_id: int, *, slots: int) -> None:
        with self._lock:
            for slot in range(slots):
                self._values.pop(f"auth:verify:{identity_id}:{slot}", None)

    # Effective permission cache

    async def get_permissions(self, identity_id: int) -> Optional[Dict[str, List[str]]]:
        with self._lock:
            return self._loads(self._get(f"auth:perms:{identity_id}"))

    async def set_permissions(
        self, identity_id: int, resolved: Dict[str, List[str]], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(f"auth:perms:{identity_id}", json.dumps(resolved), ttl_seconds)

    async def invalidate_permissions(self, *identity_ids: int) -> None:
        with self._lock:
            for identity_id in identity_ids:
                self._values.pop(f"auth:perms:{identity_id}", None)

    # Delayed jobs

    @staticmethod
    def _ordered(scores: Dict[str, int], max_score: int) -> List[str]:
        due = [(score, job_id) for job_id, score in scores.items() if score <= max_score]
        return [job_id for _, job_id in sorted(due)]

    async def enqueue_job(self, job_id: str, due_at_ms: int, body: str) -> None:
        with self._lock:
            self._job_data[job_id] = body
            self._pending[job_id] = due_at_ms

    async def due_jobs(self, now_ms: int, limit: Optional[int] = None) -> List[str]:
        with self._lock:
            ids = self._ordered(self._pending, now_ms)
            if limit is not None:
                ids = ids[:limit]
            return [self._job_data[job_id] for job_id in ids if job_id in self._job_data]

    async def claim_due_jobs(self, now_ms: int, lease_ms: int, limit: int) -> List[str]:
        with self._lock:
            claimed = []
            for job_id in self._ordered(self._pending, now_ms)[:limit]:
                self._pending.pop(job_id, None)
                body = self._job_data.get(job_id)
                if body is None:
                    continue
                self._inflight[job_id] = now_ms + lease_ms
                claimed.append(body)
            return claimed

    async def remove_job(self, job_id: str) -> None:
        with self._lock:
            self._pending.pop(job_id, None)
            self._inflight.pop(job_id, None)
            self._job_data.pop(job_id, None)

    async def reschedule_job(self, job_id: str, due_at_ms: int, body: str) -> None:
        with self._lock:
            self._inflight.pop(job_id, None)
            self._job_data[job_id] = body
            self._pending[job_id] = due_at_ms

    async def dead_letter_job(self, job_id: str, record: str) -> None:
        with self._lock:
            self._pending.pop(job_id, None)
            self._inflight.pop(job_id, None)
            self._job_data.pop(job_id, None)
            self._dead.append(record)
            del self._dead[: -self.dead_letter_max]

    async def requeue_expired_leases(self, now_ms: int) -> int:
        with self._lock:
            expired = self._ordered(self._inflight, now_ms)
            for job_id in expired:
                self._inflight.pop(job_id, None)
                self._pending[job_id] = now_ms
            return len(expired)

    async def dead_jobs(self, limit: int = 100) -> List[str]:
        with self._lock:
            return list(self._dead[:limit])

    async def acquire_lease(self, name: str, owner: str, ttl_ms: int) -> bool:
        key = f"jobs:lease:{name}"
        with self._lock:
            holder = self._get(key)
            if holder is not None and holder != owner:
                return False
            self._set(key, owner, ttl_ms / 1000)
            return True

    async def release_lease(self, name: str, owner: str) -> None:
        key = f"jobs:lease:{name}"
        with self._lock:
            if self._get(key) == owner:
                self._values.pop(key, None)
