from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gallerycore.logging import get_logger
from gallerycore.service.account_guard import (
    AccountGuard,
    OAuthProfile,
    validate_handle,
)
from gallerycore.service.email import EmailService
from gallerycore.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from gallerycore.service.oauth import OAuthVerifier
from gallerycore.service.token_lifecycle import TokenLifecycleManager, TokenPair
from gallerycore.service.tokens import AccessClaims, TokenCodec
from gallerycore.storage.errors import ConstraintViolation
from gallerycore.storage.models import (
    PROVIDER_ID_FIELDS,
    ClientMeta,
    LoginHistory,
    OneTimePurpose,
    OneTimeToken,
    User,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(hours=1)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_handle(self, handle: str) -> Optional[User]: ...

    def create_user(self, email: str, handle: str, **kwargs: Any) -> User: ...

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]: ...

    def append_login_history(self, entry: LoginHistory) -> LoginHistory: ...

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def consume_one_time_token(
        self, token_hash: str, purpose: str, now: datetime
    ) -> Optional[OneTimeToken]: ...

    def invalidate_one_time_tokens(self, user_id: str, purpose: str, now: datetime) -> int: ...


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair
    is_new_user: bool = False


@dataclass(frozen=True)
class AuthContext:
    user: User
    claims: AccessClaims


def validate_password(password: Any) -> str:
    if not isinstance(password, str):
        raise ValidationError("password is required", detail={"field": "password"})
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"password must not exceed {PASSWORD_MAX_LENGTH} characters",
            detail={"field": "password"},
        )
    if not re.search(r"[A-Za-z]", password) or not re.search(r"[0-9]", password):
        raise ValidationError(
            "password must contain at least one letter and one number",
            detail={"field": "password"},
        )
    return password


def _normalize_email(email: Any) -> str:
    if not isinstance(email, str) or not _EMAIL_PATTERN.match(email.strip()):
        raise ValidationError("a valid email is required", detail={"field": "email"})
    return email.strip().lower()


def _truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


class AuthService:
    """Composes the account guard and token lifecycle into login flows."""

    def __init__(
        self,
        store: AuthStore,
        lifecycle: TokenLifecycleManager,
        guard: AccountGuard,
        codec: TokenCodec,
        *,
        email_service: Optional[EmailService] = None,
        oauth_verifier: Optional[OAuthVerifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.guard = guard
        self.codec = codec
        self.email_service = email_service
        self.oauth_verifier = oauth_verifier
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        try:
            ok = self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
        if ok and self._pwd_hasher.check_needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.hash_password(password))
        return ok

    def _record_history(
        self,
        user_id: str,
        provider: str,
        client: ClientMeta,
        *,
        success: bool,
        failure_reason: Optional[str] = None,
    ) -> None:
        self.store.append_login_history(
            LoginHistory(
                user_id=user_id,
                provider=provider,
                success=success,
                ip_address=client.ip_address or "unknown",
                user_agent=client.user_agent or "unknown",
                failure_reason=failure_reason,
            )
        )

    # one-time tokens
    def _issue_one_time(self, user: User, purpose: OneTimePurpose, ttl: timedelta) -> str:
        now = self._clock()
        self.store.invalidate_one_time_tokens(user.id, purpose.value, now)
        secret = self.codec.generate_one_time_secret()
        self.store.create_one_time_token(
            OneTimeToken(
                user_id=user.id,
                purpose=purpose.value,
                token_hash=self.codec.hash_secret(secret),
                expires_at=now + ttl,
            )
        )
        return secret

    def _send_verification(self, user: User) -> None:
        secret = self._issue_one_time(user, OneTimePurpose.EMAIL_VERIFICATION, EMAIL_VERIFICATION_TTL)
        if not self.email_service:
            return
        try:
            self.email_service.send_email_verification(user.email, secret)
        except Exception as exc:
            self.logger.warning("verification_email_failed", user_id=user.id, error=str(exc))

    # flows
    def register(
        self,
        email: str,
        password: str,
        handle: str,
        client: Optional[ClientMeta] = None,
    ) -> AuthResult:
        client = client or ClientMeta()
        handle = validate_handle(handle)
        validate_password(password)
        email = _normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        if self.store.get_user_by_handle(handle):
            raise ConflictError("handle already taken", detail={"field": "handle"})
        try:
            user = self.store.create_user(
                email, handle, password_hash=self.hash_password(password)
            )
        except ConstraintViolation as exc:
            field = exc.field or "email"
            raise ConflictError(f"{field} already in use", detail={"field": field}) from exc
        self.guard.provision_dependents(user)
        self._send_verification(user)
        tokens = self.lifecycle.issue_pair(user, client)
        self._record_history(user.id, "local", client, success=True)
        self.logger.info("user_registered", user_id=user.id, handle=user.handle)
        return AuthResult(user=user, tokens=tokens, is_new_user=True)

    def login(
        self,
        email: str,
        password: str,
        client: Optional[ClientMeta] = None,
    ) -> AuthResult:
        client = client or ClientMeta()
        user = self.store.get_user_by_email(email) if isinstance(email, str) else None
        if not user:
            raise UnauthenticatedError("invalid email or password")
        user = self.guard.ensure_not_locked(user)
        if user.is_oauth_only:
            raise ValidationError(
                "this account uses social login; sign in with Google or GitHub"
            )
        if not self._verify_password(user, password or ""):
            updated = self.guard.record_failed_attempt(user.id)
            self._record_history(
                user.id, "local", client, success=False, failure_reason="invalid_password"
            )
            self.logger.info(
                "login_failed",
                user_id=user.id,
                failed_attempts=updated.failed_login_attempts,
            )
            if self.guard.is_locked(updated):
                raise AccountLockedError(
                    "too many failed attempts; account locked",
                    detail={
                        "retry_after_seconds": int(self.guard.policy.duration.total_seconds()),
                        "locked_until": updated.locked_until.isoformat()
                        if updated.locked_until
                        else None,
                    },
                )
            raise UnauthenticatedError("invalid email or password")
        if not user.is_active:
            raise AccountInactiveError("account is deactivated")
        user = self.guard.record_success(user.id)
        tokens = self.lifecycle.issue_pair(user, client)
        self._record_history(user.id, "local", client, success=True)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    def oauth_callback(
        self,
        provider: str,
        profile: OAuthProfile,
        client: Optional[ClientMeta] = None,
    ) -> AuthResult:
        """Sign in a provider identity that has already been verified.

        ``profile`` must come from an ``OAuthVerifier``; request input is
        never passed here directly (see ``complete_oauth``).
        """
        client = client or ClientMeta()
        user, created = self.guard.resolve_oauth_identity(provider, profile, client)
        user = self.guard.ensure_not_locked(user)
        if not user.is_active:
            raise AccountInactiveError("account is deactivated")
        user = self.guard.record_success(user.id)
        tokens = self.lifecycle.issue_pair(user, client)
        self._record_history(user.id, provider, client, success=True)
        self.logger.info("oauth_login_succeeded", user_id=user.id, provider=provider, created=created)
        return AuthResult(user=user, tokens=tokens, is_new_user=created)

    def complete_oauth(
        self,
        provider: str,
        code: str,
        client: Optional[ClientMeta] = None,
    ) -> AuthResult:
        if provider not in PROVIDER_ID_FIELDS:
            raise ValidationError(f"unsupported provider: {provider}", detail={"field": "provider"})
        profile = self.oauth_verifier.verify(provider, code) if self.oauth_verifier else None
        if profile is None:
            self.logger.warning("oauth_verification_failed", provider=provider)
            raise UnauthenticatedError("oauth verification failed")
        return self.oauth_callback(provider, profile, client)

    def refresh(self, secret: str, client: Optional[ClientMeta] = None) -> TokenPair:
        return self.lifecycle.rotate(secret, client)

    def logout(self, user_id: str) -> int:
        return self.lifecycle.revoke_all(user_id)

    def logout_token(self, secret: str) -> bool:
        return self.lifecycle.revoke(secret)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.is_oauth_only:
            raise ValidationError("cannot change password for social login accounts")
        if not self._verify_password(user, current_password or ""):
            raise UnauthenticatedError("current password is incorrect")
        validate_password(new_password)
        if self._verify_password(user, new_password):
            raise ValidationError(
                "new password must be different from current password",
                detail={"field": "new_password"},
            )
        self.store.update_user(
            user_id,
            password_hash=self.hash_password(new_password),
            password_changed_at=self._clock(),
        )
        revoked = self.lifecycle.revoke_all(user_id)
        self.logger.info("password_changed", user_id=user_id, revoked_tokens=revoked)

    def verify_email(self, token: str) -> User:
        consumed = self.store.consume_one_time_token(
            self.codec.hash_secret(token or ""),
            OneTimePurpose.EMAIL_VERIFICATION.value,
            self._clock(),
        )
        if not consumed:
            raise ValidationError("invalid or expired verification token")
        user = self.store.update_user(consumed.user_id, email_verified=True)
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("email_verified", user_id=user.id)
        return user

    def resend_verification(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.email_verified:
            raise ValidationError("email is already verified")
        self._send_verification(user)

    def forgot_password(self, email: str) -> None:
        """Send a reset link; silent for unknown and social-login accounts."""
        user = self.store.get_user_by_email(email) if isinstance(email, str) else None
        if not user or user.is_oauth_only:
            return
        secret = self._issue_one_time(user, OneTimePurpose.PASSWORD_RESET, PASSWORD_RESET_TTL)
        if self.email_service:
            try:
                self.email_service.send_password_reset(user.email, secret)
            except Exception as exc:
                self.logger.warning("password_reset_email_failed", user_id=user.id, error=str(exc))
        self.logger.info("password_reset_requested", user_id=user.id)

    def reset_password(self, token: str, new_password: str) -> None:
        validate_password(new_password)
        now = self._clock()
        consumed = self.store.consume_one_time_token(
            self.codec.hash_secret(token or ""),
            OneTimePurpose.PASSWORD_RESET.value,
            now,
        )
        if not consumed:
            raise ValidationError("invalid or expired reset token")
        self.store.update_user(
            consumed.user_id,
            password_hash=self.hash_password(new_password),
            password_changed_at=now,
        )
        revoked = self.lifecycle.revoke_all(consumed.user_id)
        self.logger.info("password_reset_completed", user_id=consumed.user_id, revoked_tokens=revoked)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a ``Bearer`` header to the acting user."""
        if not authorization:
            raise UnauthenticatedError("authentication required")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise UnauthenticatedError("authentication required")
        claims = self.codec.verify_access_token(token.strip())
        if not claims:
            raise UnauthenticatedError("invalid or expired token")
        user = self.store.get_user(claims.user_id)
        if not user:
            raise UnauthenticatedError("invalid or expired token")
        if not user.is_active:
            raise AccountInactiveError("account is deactivated")
        if user.password_changed_at and claims.issued_at < _truncate_to_millis(
            user.password_changed_at
        ):
            raise UnauthenticatedError("token issued before password change")
        return AuthContext(user=user, claims=claims)
