from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from warden.config import Settings
from warden.logging import get_logger

logger = get_logger(__name__)


@dataclass
class IssuedToken:
    token: str
    expires_at: int
    token_type: str = "Bearer"


class TokenIssuer:
    """Stateless HS256 bearer tokens carrying the identity id.

    Tokens live 24 hours by default and 30 days with "remember me". There is
    no server-side revocation list; a token stays valid until it expires.
    """

    def __init__(self, settings: Settings, *, clock=time.time) -> None:
        self.settings = settings
        self.clock = clock
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.clock() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue(self, identity_id: int, *, remember_me: bool = False) -> IssuedToken:
        now = int(self.clock())
        if remember_me:
            ttl = timedelta(days=self.settings.remember_me_ttl_days)
        else:
            ttl = timedelta(hours=self.settings.token_ttl_hours)
        expires_at = now + int(ttl.total_seconds())
        token = self._encode_jwt(
            {
                "id": identity_id,
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "iat": now,
                "exp": expires_at,
            }
        )
        return IssuedToken(token=token, expires_at=expires_at)

    def verify(self, token: str) -> Optional[int]:
        """Return the identity id a valid token was issued for."""
        payload = self._decode_jwt(token)
        if not payload:
            return None
        identity_id = payload.get("id")
        if not isinstance(identity_id, int) or isinstance(identity_id, bool):
            return None
        return identity_id

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
