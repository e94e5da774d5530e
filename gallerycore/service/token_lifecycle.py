from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from gallerycore.config import TokenPolicy
from gallerycore.logging import get_logger, log_security_event
from gallerycore.service.errors import InvalidOrReusedTokenError
from gallerycore.service.tokens import TokenCodec
from gallerycore.storage.models import ClientMeta, RefreshToken, User, utcnow

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, old_token_id: str, new_token: RefreshToken, now: datetime
    ) -> bool: ...

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int: ...


class ReviewFlagger(Protocol):
    def flag_user_for_review(self, user_id: str, reason: str) -> None: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenLifecycleManager:
    """Issues, rotates and revokes access/refresh token pairs.

    Refresh secrets are handed to the caller once and only their SHA-256 hash
    is stored. Every failure path of ``rotate`` raises the same
    ``InvalidOrReusedTokenError`` so callers cannot distinguish the cause.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        codec: TokenCodec,
        policy: TokenPolicy,
        *,
        flagger: Optional[ReviewFlagger] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.policy = policy
        self.flagger = flagger
        self._clock = clock

    def _new_refresh(
        self, user_id: str, client: Optional[ClientMeta], now: datetime
    ) -> tuple[str, RefreshToken]:
        secret = self.codec.generate_opaque_secret()
        record = RefreshToken.new(
            user_id,
            self.codec.hash_secret(secret),
            self.policy.refresh_ttl,
            client,
            now=now,
        )
        return secret, record

    def _pair(self, user: User, secret: str, record: RefreshToken, now: datetime) -> TokenPair:
        return TokenPair(
            access_token=self.codec.sign_access_token(user),
            refresh_token=secret,
            access_expires_at=now + self.policy.access_ttl,
            refresh_expires_at=record.expires_at,
        )

    def issue_pair(self, user: User, client: Optional[ClientMeta] = None) -> TokenPair:
        now = self._clock()
        secret, record = self._new_refresh(user.id, client, now)
        self.store.create_refresh_token(record)
        logger.info("refresh_token_issued", user_id=user.id, token_id=record.id)
        return self._pair(user, secret, record, now)

    def _report_reuse(self, token: RefreshToken, client: Optional[ClientMeta]) -> None:
        client = client or ClientMeta()
        log_security_event(
            "refresh_token_reuse_detected",
            logger,
            user_id=token.user_id,
            token_id=token.id,
            revoked_at=token.revoked_at.isoformat() if token.revoked_at else None,
            replaced=token.replaced_by_token is not None,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        if not self.flagger:
            return
        try:
            self.flagger.flag_user_for_review(token.user_id, "refresh_token_reuse")
        except Exception as exc:
            logger.warning(
                "refresh_reuse_flag_failed", user_id=token.user_id, error=str(exc)
            )

    def rotate(self, secret: str, client: Optional[ClientMeta] = None) -> TokenPair:
        if not secret:
            raise InvalidOrReusedTokenError()
        now = self._clock()
        token = self.store.get_refresh_token_by_hash(self.codec.hash_secret(secret))
        if not token:
            logger.info("refresh_token_unknown")
            raise InvalidOrReusedTokenError()
        if token.is_revoked:
            self._report_reuse(token, client)
            raise InvalidOrReusedTokenError()
        if token.is_expired(now):
            self.store.revoke_refresh_token(token.id, now)
            logger.info("refresh_token_expired", user_id=token.user_id, token_id=token.id)
            raise InvalidOrReusedTokenError()
        user = self.store.get_user(token.user_id)
        if not user or not user.is_active:
            self.store.revoke_refresh_token(token.id, now)
            logger.warning(
                "refresh_token_owner_unusable",
                user_id=token.user_id,
                reason="missing" if not user else "inactive",
            )
            raise InvalidOrReusedTokenError()
        new_secret, record = self._new_refresh(user.id, client, now)
        if not self.store.rotate_refresh_token(token.id, record, now):
            # Lost a race with another rotation of the same secret
            current = self.store.get_refresh_token_by_hash(token.token_hash) or token
            self._report_reuse(current, client)
            raise InvalidOrReusedTokenError()
        logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            old_token_id=token.id,
            new_token_id=record.id,
        )
        return self._pair(user, new_secret, record, now)

    def revoke(self, secret: str) -> bool:
        """Revoke the single refresh token behind ``secret``; False if unknown or already revoked."""
        if not secret:
            return False
        token = self.store.get_refresh_token_by_hash(self.codec.hash_secret(secret))
        if not token:
            return False
        revoked = self.store.revoke_refresh_token(token.id, self._clock())
        if revoked:
            logger.info("refresh_token_revoked", user_id=token.user_id, token_id=token.id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, self._clock())
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count
