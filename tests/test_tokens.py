"""Tests for access-token signing/verification and opaque secret helpers."""

import base64
import json
from datetime import timedelta

import pytest

from gallerycore.config import TokenPolicy
from gallerycore.service.tokens import TokenCodec
from gallerycore.storage.models import User

SECRET = "x" * 48


def _user(**overrides):
    fields = {"id": "user-1", "email": "a@example.com", "handle": "alice", "tier": "pro"}
    fields.update(overrides)
    return User(**fields)


def _codec(clock, **policy_overrides):
    return TokenCodec(TokenPolicy(secret=SECRET, **policy_overrides), clock=clock)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestTokenCodec:
    def test_round_trip_claims(self, clock):
        codec = _codec(clock)
        claims = codec.verify_access_token(codec.sign_access_token(_user()))

        assert claims is not None
        assert claims.user_id == "user-1"
        assert claims.email == "a@example.com"
        assert claims.handle == "alice"
        assert claims.tier == "pro"
        assert claims.issued_at == clock.now
        assert claims.expires_at == clock.now + timedelta(minutes=15)
        assert claims.jti

    def test_each_token_has_unique_jti(self, clock):
        codec = _codec(clock)
        first = codec.verify_access_token(codec.sign_access_token(_user()))
        second = codec.verify_access_token(codec.sign_access_token(_user()))
        assert first.jti != second.jti

    def test_expired_token_rejected_after_leeway(self, clock):
        codec = _codec(clock)
        token = codec.sign_access_token(_user())

        clock.advance(minutes=15, seconds=10)
        assert codec.verify_access_token(token) is not None  # within leeway

        clock.advance(seconds=30)
        assert codec.verify_access_token(token) is None

    def test_wrong_secret_rejected(self, clock):
        token = _codec(clock).sign_access_token(_user())
        other = TokenCodec(TokenPolicy(secret="y" * 48), clock=clock)
        assert other.verify_access_token(token) is None

    def test_tampered_payload_rejected(self, clock):
        codec = _codec(clock)
        header, _payload, sig = codec.sign_access_token(_user()).split(".")
        forged = _b64({"sub": "admin", "iss": "gallerycore", "aud": "gallery-clients"})
        assert codec.verify_access_token(f"{header}.{forged}.{sig}") is None

    def test_algorithm_none_rejected(self, clock):
        codec = _codec(clock)
        _header, payload, _sig = codec.sign_access_token(_user()).split(".")
        none_header = _b64({"alg": "none", "typ": "JWT"})
        assert codec.verify_access_token(f"{none_header}.{payload}.") is None

    def test_other_token_class_rejected(self, clock):
        token = _codec(clock, token_class="panel").sign_access_token(_user())
        assert _codec(clock).verify_access_token(token) is None

    def test_wrong_audience_rejected(self, clock):
        token = _codec(clock, audience="someone-else").sign_access_token(_user())
        assert _codec(clock).verify_access_token(token) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_malformed_tokens_return_none(self, clock, garbage):
        assert _codec(clock).verify_access_token(garbage) is None

    def test_non_ascii_signature_returns_none(self, clock):
        codec = _codec(clock)
        header, payload, _sig = codec.sign_access_token(_user()).split(".")
        assert codec.verify_access_token(f"{header}.{payload}.é") is None
        assert codec.verify_access_token(f"{header}.{payload}.sigÿé") is None

    def test_class_marker_claim(self, clock):
        codec = _codec(clock, token_class="gallery")
        _header, payload, _sig = codec.sign_access_token(_user()).split(".")
        padded = payload + "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded))
        assert claims["token_class"] == "gallery"
        assert "type" not in claims

    def test_missing_secret_refused(self, clock):
        with pytest.raises(ValueError):
            TokenCodec(TokenPolicy(secret=""), clock=clock)


class TestOpaqueSecrets:
    def test_refresh_secret_shape(self):
        secret = TokenCodec.generate_opaque_secret()
        assert len(secret) == 128
        int(secret, 16)

    def test_one_time_secret_shape(self):
        secret = TokenCodec.generate_one_time_secret()
        assert len(secret) == 64
        assert secret != TokenCodec.generate_one_time_secret()

    def test_hash_is_stable_sha256_hex(self):
        digest = TokenCodec.hash_secret("abc")
        assert digest == TokenCodec.hash_secret("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
