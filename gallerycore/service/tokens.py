from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from gallerycore.config import TokenPolicy
from gallerycore.logging import get_logger
from gallerycore.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessClaims:
    """Verified access-token payload."""

    user_id: str
    email: str
    handle: str
    tier: str
    issued_at: datetime
    expires_at: datetime
    jti: str


class TokenCodec:
    """Signs and verifies access tokens; generates and hashes opaque secrets.

    Access tokens are compact HS256 JWTs. The header algorithm is pinned so a
    token claiming any other algorithm is rejected before signature checks.
    """

    def __init__(
        self,
        policy: TokenPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not policy.secret:
            raise ValueError("token secret is required")
        self.policy = policy
        self._clock = clock
        self._key = policy.secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def sign_access_token(self, user: User) -> str:
        now = self._clock()
        payload = {
            "iss": self.policy.issuer,
            "aud": self.policy.audience,
            "sub": user.id,
            "email": user.email,
            "handle": user.handle,
            "tier": user.tier,
            "token_class": self.policy.token_class,
            # Milliseconds so a token issued in the same second as a password
            # change compares correctly against password_changed_at
            "iat_ms": int(now.timestamp() * 1000),
            "iat": int(now.timestamp()),
            "exp": int((now + self.policy.access_ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> Optional[AccessClaims]:
        """Return the claims of a valid token, or None for any defect."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        # Header values arrive latin-1 decoded; compare bytes so stray
        # non-ASCII in the signature is a mismatch rather than a TypeError
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.policy.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.policy.audience in aud
        else:
            valid_aud = aud == self.policy.audience
        if not valid_aud:
            return None
        if payload.get("token_class") != self.policy.token_class:
            logger.warning("jwt_token_class_mismatch", token_class=payload.get("token_class"))
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ms = int(payload.get("iat_ms") or int(payload["iat"]) * 1000)
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self.policy.leeway.total_seconds():
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        tz = self._clock().tzinfo
        return AccessClaims(
            user_id=sub,
            email=str(payload.get("email") or ""),
            handle=str(payload.get("handle") or ""),
            tier=str(payload.get("tier") or ""),
            issued_at=datetime.fromtimestamp(iat_ms / 1000, tz=tz),
            expires_at=datetime.fromtimestamp(exp_ts, tz=tz),
            jti=str(payload.get("jti") or ""),
        )

    @staticmethod
    def generate_opaque_secret() -> str:
        """128 hex chars of CSPRNG output for refresh tokens."""
        return secrets.token_hex(64)

    @staticmethod
    def generate_one_time_secret() -> str:
        """64 hex chars for email verification and password reset links."""
        return secrets.token_hex(32)

    @staticmethod
    def hash_secret(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()
