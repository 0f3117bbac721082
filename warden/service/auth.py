from __future__ import annotations

import calendar
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service import crypto, totp
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from warden.service.jobs import JobScheduler
from warden.service.tokens import IssuedToken, TokenIssuer
from warden.service.verification import SEND_VERIFICATION_EMAIL, VerificationCodes
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Identity, Permission, Role

logger = get_logger(__name__)

LOGGED_IN = "LOGGED_IN"
EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
PASSWORD_EXPIRED = "PASSWORD_EXPIRED"
MFA_REQUIRED = "MFA_REQUIRED"

_WRONG_CREDENTIALS = "wrong credentials"


class IdentityStore(Protocol):
    def create_identity(
        self,
        name: str,
        email: str,
        password_hash: str,
        salt: str,
        password_expires_at: datetime,
    ) -> Identity: ...

    def get_identity(self, identity_id: int, *, with_grants: bool = False) -> Optional[Identity]: ...

    def get_identity_by_email(
        self, email: str, *, with_grants: bool = False
    ) -> Optional[Identity]: ...

    def find_identity(self, identifier: str) -> Optional[Identity]: ...

    def mark_email_verified(
        self, identity_id: int, at: Optional[datetime] = None
    ) -> Optional[Identity]: ...

    def set_mfa_secret(self, identity_id: int, secret: Optional[str]) -> Optional[Identity]: ...

    def list_roles(self) -> List[Role]: ...

    def get_role(self, role_id: int) -> Optional[Role]: ...

    def create_role(self, name: str, permission_names: Iterable[str] = ()) -> Role: ...

    def update_role(
        self,
        role_id: int,
        *,
        name: Optional[str] = None,
        permission_names: Optional[Iterable[str]] = None,
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: int) -> Optional[List[int]]: ...

    def identities_with_role(self, role_id: int) -> List[int]: ...

    def list_permissions(self) -> List[Permission]: ...

    def get_permission(self, permission_id: int) -> Optional[Permission]: ...

    def create_permission(self, name: str) -> Permission: ...

    def add_role_to_identity(self, identity_id: int, role_id: int) -> bool: ...

    def remove_role_from_identity(self, identity_id: int, role_id: int) -> bool: ...

    def add_permission_to_identity(self, identity_id: int, permission_id: int) -> bool: ...

    def remove_permission_from_identity(self, identity_id: int, permission_id: int) -> bool: ...

    def close(self) -> None: ...


@dataclass
class LoginChallenge:
    session_id: str
    iv: str
    challenge: str
    salt: str

    def to_dict(self) -> dict[str, str]:
        return {
            "sessionId": self.session_id,
            "iv": self.iv,
            "challenge": self.challenge,
            "salt": self.salt,
        }


@dataclass
class LoginResult:
    """Outcome of a successful credential check.

    ``code`` is ``LOGGED_IN`` when a token was issued; the other codes are
    expected account states and carry no token.
    """

    code: str
    identity: Optional[Identity] = None
    token: Optional[IssuedToken] = None
    mfa_key: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code}
        if self.identity is not None and self.token is not None:
            body["user"] = self.identity.public_view()
            body["token"] = self.token.token
            body["tokenType"] = self.token.token_type
            body["expiresAt"] = self.token.expires_at
        if self.mfa_key is not None:
            body["key"] = self.mfa_key
        return body


@dataclass
class AuthContext:
    identity_id: int
    identity: Identity


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class AuthService:
    """Challenge-response login, registration, email verification and MFA."""

    def __init__(
        self,
        store: IdentityStore,
        cache,
        settings: Settings,
        *,
        tokens: TokenIssuer,
        scheduler: JobScheduler,
        codes: Optional[VerificationCodes] = None,
        clock=time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.scheduler = scheduler
        self.codes = codes or VerificationCodes(cache, settings)
        self.clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _wrong_challenge(self) -> AuthenticationError:
        return AuthenticationError(_WRONG_CREDENTIALS, error_code="WRONG_CHALLENGE")

    # ------------------------------------------------------------------
    # Login handshake
    # ------------------------------------------------------------------

    async def init_login(self, identifier: str) -> LoginChallenge:
        """Start a login; the response has the same shape for unknown identifiers."""
        session_id = crypto.generate_session_id()
        iv = crypto.generate_iv()
        challenge = crypto.generate_challenge()

        identity = self.store.find_identity(identifier)
        if identity is None:
            self.logger.info("login_init_unknown_identifier")
            return LoginChallenge(
                session_id=session_id,
                iv=iv,
                challenge=challenge,
                salt=crypto.decoy_salt(identifier, self.settings.jwt_secret),
            )

        await self.cache.set_login_session(
            session_id,
            {
                "email": identity.email,
                "iv": iv,
                "challenge": challenge,
                "password_hash": identity.password_hash,
                "salt": identity.salt,
            },
            self.settings.login_session_ttl_seconds,
        )
        self.logger.info("login_init", identity_id=identity.id)
        return LoginChallenge(session_id=session_id, iv=iv, challenge=challenge, salt=identity.salt)

    async def verify_challenge(
        self, session_id: str, processed_challenge: str, *, remember_me: bool = False
    ) -> LoginResult:
        session = await self.cache.pop_login_session(session_id)
        if not session:
            self.logger.info("login_session_missing")
            raise self._wrong_challenge()

        if not crypto.challenge_matches(
            processed_challenge, session["challenge"], session["password_hash"], session["iv"]
        ):
            self.logger.info("login_challenge_mismatch")
            raise self._wrong_challenge()

        identity = self.store.get_identity_by_email(session["email"], with_grants=True)
        if identity is None:
            self.logger.warning("login_identity_vanished")
            raise self._wrong_challenge()

        if not identity.email_verified:
            self.logger.info("login_email_not_verified", identity_id=identity.id)
            return LoginResult(code=EMAIL_NOT_VERIFIED)
        if identity.password_expires_at < self._now():
            self.logger.info("login_password_expired", identity_id=identity.id)
            return LoginResult(code=PASSWORD_EXPIRED)
        if identity.mfa_enabled:
            key = secrets.token_urlsafe(32)
            await self.cache.set_mfa_challenge(
                key, identity.id, self.settings.mfa_challenge_ttl_seconds
            )
            self.logger.info("login_mfa_required", identity_id=identity.id)
            return LoginResult(code=MFA_REQUIRED, mfa_key=key)
        return self._complete_login(identity, remember_me)

    def _complete_login(self, identity: Identity, remember_me: bool) -> LoginResult:
        token = self.tokens.issue(identity.id, remember_me=remember_me)
        self.logger.info("login_succeeded", identity_id=identity.id, remember_me=remember_me)
        return LoginResult(code=LOGGED_IN, identity=identity, token=token)

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self.tokens.extract_bearer(authorization)
        if not token:
            return None
        identity_id = self.tokens.verify(token)
        if identity_id is None:
            return None
        identity = self.store.get_identity(identity_id, with_grants=True)
        if identity is None:
            return None
        return AuthContext(identity_id=identity_id, identity=identity)

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    async def register(self, name: str, email: str, password: str) -> Identity:
        if self.store.find_identity(name) or self.store.get_identity_by_email(email):
            raise ConflictError("username already taken", error_code="USERNAME_ALREADY_TAKEN")

        salt = crypto.generate_salt()
        password_hash = crypto.hash_password(
            password, salt, iterations=self.settings.password_hash_iterations
        )
        expires_at = add_months(self._now(), self.settings.password_validity_months)
        try:
            identity = self.store.create_identity(name, email, password_hash, salt, expires_at)
        except ConstraintViolation as exc:
            raise ConflictError(
                "username already taken", error_code="USERNAME_ALREADY_TAKEN"
            ) from exc
        self.logger.info("identity_registered", identity_id=identity.id)

        try:
            await self.scheduler.enqueue(SEND_VERIFICATION_EMAIL, {"identity_id": identity.id})
        except Exception as exc:
            # The identity exists; the client can ask for the email again
            self.logger.error(
                "verification_job_schedule_failed",
                identity_id=identity.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return identity

    async def send_verification_email(self, email: str) -> str:
        identity = self.store.get_identity_by_email(email)
        if identity is None or identity.email_verified:
            return "VERIFICATION_EMAIL_SENT"
        if await self.codes.exhausted(identity.id):
            raise RateLimitedError(
                "too many verification attempts, wait before retrying",
                error_code="WAIT_TOO_MANY_ATTEMPTS",
            )
        await self.scheduler.enqueue(SEND_VERIFICATION_EMAIL, {"identity_id": identity.id})
        return "VERIFICATION_EMAIL_SENT"

    async def verify_email(self, email: str, code: str) -> str:
        identity = self.store.get_identity_by_email(email)
        if identity is not None and not identity.email_verified:
            slot = await self.codes.match(identity.id, code)
            if slot is not None:
                self.store.mark_email_verified(identity.id, self._now())
                self.logger.info("email_verified", identity_id=identity.id, slot=slot)
                return "EMAIL_CONFIRMED"
        raise ValidationError("wrong verification code", error_code="WRONG_VERIFICATION_CODE")

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    async def ask_mfa_activation(self, identity: Identity) -> dict[str, str]:
        if identity.mfa_enabled:
            raise ConflictError("mfa already activated", error_code="MFA_ALREADY_ACTIVATED")
        secret = totp.generate_secret()
        try:
            uri = totp.provisioning_uri(secret, identity.name, self.settings.app_name)
            qr_code_url = totp.qr_data_url(uri)
        except totp.ProvisioningError as exc:
            raise ServerError("unable to create otpauth payload", error_code="OTPAUTH_ERROR") from exc
        await self.cache.set_mfa_enrollment(
            identity.id, secret, self.settings.mfa_enrollment_ttl_seconds
        )
        self.logger.info("mfa_enrollment_started", identity_id=identity.id)
        return {"qrCodeUrl": qr_code_url, "otpauthUrl": uri}

    async def confirm_mfa_activation(self, identity: Identity, token: str) -> str:
        if identity.mfa_enabled:
            raise ConflictError("mfa already activated", error_code="MFA_ALREADY_ACTIVATED")
        secret = await self.cache.get_mfa_enrollment(identity.id)
        if not secret or not totp.verify_totp(secret, token, now=self.clock()):
            self.logger.info("mfa_activation_rejected", identity_id=identity.id)
            raise ValidationError("mfa not activated", error_code="MFA_NOT_ACTIVATED")
        self.store.set_mfa_secret(identity.id, secret)
        await self.cache.delete_mfa_enrollment(identity.id)
        self.logger.info("mfa_activated", identity_id=identity.id)
        return "MFA_ACTIVATED"

    async def verify_mfa(self, key: str, token: str, *, remember_me: bool = False) -> LoginResult:
        identity_id = await self.cache.pop_mfa_challenge(key)
        if identity_id is None:
            raise self._wrong_challenge()
        identity = self.store.get_identity(identity_id, with_grants=True)
        if identity is None or not identity.mfa_secret:
            raise self._wrong_challenge()
        if not totp.verify_totp(identity.mfa_secret, token, now=self.clock()):
            self.logger.info("mfa_token_rejected", identity_id=identity_id)
            raise self._wrong_challenge()
        return self._complete_login(identity, remember_me)

    async def remove_mfa(self, identity: Identity) -> str:
        if not identity.mfa_enabled:
            raise ConflictError("mfa already deactivated", error_code="MFA_ALREADY_DEACTIVATED")
        self.store.set_mfa_secret(identity.id, None)
        self.logger.info("mfa_deactivated", identity_id=identity.id)
        return "MFA_DEACTIVATED"
