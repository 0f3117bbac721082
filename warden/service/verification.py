from __future__ import annotations

import asyncio
import hmac
from typing import Any, Dict, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.crypto import generate_verification_code
from warden.service.email import EmailService

logger = get_logger(__name__)

SEND_VERIFICATION_EMAIL = "send_verification_email"


class VerificationDeliveryError(RuntimeError):
    """Raised when the mail transport refuses a verification code."""


class VerificationCodes:
    """Slotted, expiring email verification codes.

    Each identity holds at most ``slots`` live codes. New codes take the
    first free slot; once the last slot is live further requests are refused
    until a code expires or one is solved.
    """

    def __init__(self, cache, settings: Settings) -> None:
        self.cache = cache
        self.slots = settings.verification_code_slots
        self.ttl_seconds = settings.verification_code_ttl_seconds
        self.invalidate_siblings = settings.verification_invalidate_siblings

    async def exhausted(self, identity_id: int) -> bool:
        return await self.cache.verification_slot_live(identity_id, self.slots - 1)

    async def issue(self, identity_id: int) -> Optional[tuple[int, str]]:
        code = generate_verification_code()
        slot = await self.cache.claim_verification_slot(
            identity_id, code, slots=self.slots, ttl_seconds=self.ttl_seconds
        )
        if slot is None:
            return None
        return slot, code

    async def release(self, identity_id: int, slot: int) -> None:
        await self.cache.delete_verification_code(identity_id, slot)

    async def match(self, identity_id: int, code: str) -> Optional[int]:
        """Return the slot holding ``code``; clears slots on success."""
        candidate = code.strip()
        if not candidate.isascii():
            return None
        stored = await self.cache.get_verification_codes(identity_id, slots=self.slots)
        matched = None
        for slot, value in enumerate(stored):
            # Compare every slot so timing does not reveal which one matched
            if value is not None and hmac.compare_digest(value, candidate) and matched is None:
                matched = slot
        if matched is not None and self.invalidate_siblings:
            await self.cache.clear_verification_codes(identity_id, slots=self.slots)
        return matched


class VerificationMailer:
    """Job handler for ``send_verification_email``.

    Safe to run more than once for the same job: a verified or deleted
    identity is skipped, and a code whose mail could not be sent gives its
    slot back before the job is retried.
    """

    def __init__(self, store, codes: VerificationCodes, email: EmailService) -> None:
        self.store = store
        self.codes = codes
        self.email = email

    async def __call__(self, payload: Dict[str, Any]) -> None:
        identity_id = int(payload["identity_id"])
        identity = self.store.get_identity(identity_id)
        if identity is None:
            logger.warning("verification_identity_missing", identity_id=identity_id)
            return
        if identity.email_verified:
            logger.info("verification_already_confirmed", identity_id=identity_id)
            return

        issued = await self.codes.issue(identity_id)
        if issued is None:
            logger.warning("verification_slots_exhausted", identity_id=identity_id)
            return
        slot, code = issued

        sent = await asyncio.to_thread(
            self.email.send_verification_code, identity.email, code, identity.name
        )
        if not sent:
            await self.codes.release(identity_id, slot)
            raise VerificationDeliveryError("verification email could not be sent")
        logger.info("verification_code_sent", identity_id=identity_id, slot=slot)
