"""Tests for bearer token issuing and validation."""

import base64
import json

from warden.config import Settings
from warden.service.tokens import TokenIssuer


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestTokenIssuer:
    def test_round_trip(self, tokens):
        issued = tokens.issue(42)
        assert issued.token_type == "Bearer"
        assert tokens.verify(issued.token) == 42

    def test_default_lifetime_is_24_hours(self, tokens, clock):
        issued = tokens.issue(1)
        assert issued.expires_at == int(clock()) + 24 * 3600

    def test_remember_me_lasts_30_days(self, tokens, clock):
        issued = tokens.issue(1, remember_me=True)
        assert issued.expires_at == int(clock()) + 30 * 24 * 3600

    def test_expired_token_rejected(self, tokens, clock):
        issued = tokens.issue(1)
        clock.advance(24 * 3600 + 121)
        assert tokens.verify(issued.token) is None

    def test_remember_me_outlives_default(self, tokens, clock):
        issued = tokens.issue(1, remember_me=True)
        clock.advance(2 * 24 * 3600)
        assert tokens.verify(issued.token) == 1

    def test_tampered_payload_rejected(self, tokens):
        header, _, signature = tokens.issue(1).token.split(".")
        forged = _segment({"id": 2, "iss": "warden", "aud": "warden-clients", "exp": 9999999999})
        assert tokens.verify(f"{header}.{forged}.{signature}") is None

    def test_other_secret_rejected(self, tokens, clock):
        other = TokenIssuer(Settings(jwt_secret="a-completely-different-secret"), clock=clock)
        assert other.verify(tokens.issue(1).token) is None

    def test_alg_none_rejected(self, tokens, clock):
        header = _segment({"alg": "none", "typ": "JWT"})
        payload = _segment(
            {"id": 1, "iss": "warden", "aud": "warden-clients", "exp": int(clock()) + 60}
        )
        assert tokens.verify(f"{header}.{payload}.") is None

    def test_garbage_rejected(self, tokens):
        assert tokens.verify("not-a-token") is None

    def test_extract_bearer(self):
        assert TokenIssuer.extract_bearer("Bearer abc") == "abc"
        assert TokenIssuer.extract_bearer("bearer abc") == "abc"
        assert TokenIssuer.extract_bearer("Basic abc") is None
        assert TokenIssuer.extract_bearer("Bearer ") is None
        assert TokenIssuer.extract_bearer(None) is None
