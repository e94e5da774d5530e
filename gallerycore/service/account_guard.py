from __future__ import annotations

import math
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, Tuple, TypeVar

from gallerycore.config import LockoutPolicy
from gallerycore.logging import get_logger, log_security_event
from gallerycore.service.email import EmailService
from gallerycore.service.errors import (
    AccountLockedError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from gallerycore.storage.errors import ConstraintViolation
from gallerycore.storage.models import (
    PROVIDER_ID_FIELDS,
    ClientMeta,
    LoginHistory,
    QuotaUsage,
    Subscription,
    User,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

HANDLE_MIN_LENGTH = 3
HANDLE_MAX_LENGTH = 20
HANDLE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
RESERVED_HANDLES = frozenset(
    {
        "admin", "administrator", "root", "system", "moderator", "mod",
        "support", "help", "info", "contact", "about", "api", "www", "mail",
        "email", "ftp", "ssh", "null", "undefined", "anonymous", "guest",
        "test", "demo", "example", "user", "users", "account", "profile",
        "settings", "login", "logout", "register", "signup", "signin", "auth",
        "oauth", "callback", "webhook", "webhooks", "gallery", "panel",
        "dashboard", "vibesquare", "vibersquare",
    }
)

OAUTH_CONFLICT_REASON = "oauth_email_conflict_prevented_auto_linking"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    def create_user(self, email: str, handle: str, **kwargs: Any) -> User: ...

    def increment_failed_attempts(self, user_id: str) -> Optional[User]: ...

    def lock_user(self, user_id: str, locked_until: datetime) -> Optional[User]: ...

    def reset_failed_attempts(self, user_id: str) -> Optional[User]: ...

    def record_login(self, user_id: str, at: datetime) -> Optional[User]: ...

    def append_login_history(self, entry: LoginHistory) -> LoginHistory: ...

    def create_subscription_if_missing(self, user_id: str, tier: str = "free") -> Subscription: ...

    def create_quota_usage_if_missing(self, usage: QuotaUsage) -> QuotaUsage: ...


@dataclass(frozen=True)
class OAuthProfile:
    """Identity asserted by an external provider after its own verification."""

    provider_id: str
    email: str
    username: Optional[str] = None


def _base36(value: int) -> str:
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
        if value == 0:
            return "".join(reversed(digits))


def normalize_handle_base(base: str) -> str:
    """Turn an arbitrary username/email local part into a handle stem."""
    stem = re.sub(r"[^a-z0-9_]", "_", (base or "").lower())
    if not stem or not stem[0].isalpha():
        stem = f"u{stem}"
    stem = stem[:HANDLE_MAX_LENGTH]
    if len(stem) < HANDLE_MIN_LENGTH:
        stem = f"{stem}_user"
    return stem


def validate_handle(handle: str) -> str:
    """Check a user-chosen handle; returns it lower-cased."""
    if not isinstance(handle, str):
        raise ValidationError("handle is required", detail={"field": "handle"})
    candidate = handle.strip().lower()
    if not HANDLE_MIN_LENGTH <= len(candidate) <= HANDLE_MAX_LENGTH:
        raise ValidationError(
            f"handle must be between {HANDLE_MIN_LENGTH} and {HANDLE_MAX_LENGTH} characters",
            detail={"field": "handle"},
        )
    if not HANDLE_PATTERN.match(candidate):
        raise ValidationError(
            "handle must start with a letter and contain only lowercase letters, numbers, and underscores",
            detail={"field": "handle"},
        )
    if candidate in RESERVED_HANDLES:
        raise ValidationError("this handle is not available", detail={"field": "handle"})
    return candidate


class AccountGuard:
    """Login lockout, OAuth identity resolution and handle allocation."""

    def __init__(
        self,
        store: UserDirectory,
        policy: LockoutPolicy,
        *,
        email_service: Optional[EmailService] = None,
        quota_period: timedelta = timedelta(days=7),
        max_handle_attempts: int = 10,
        backoff_base: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.email_service = email_service
        self.quota_period = quota_period
        self.max_handle_attempts = max_handle_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    # lockout
    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        if user.locked_until is None:
            return False
        return (now or self._clock()) < user.locked_until

    def ensure_not_locked(self, user: User) -> User:
        """Raise while the lock is active; clear an expired lock and its counter."""
        now = self._clock()
        if self.is_locked(user, now):
            remaining = (user.locked_until - now).total_seconds()
            raise AccountLockedError(
                f"account is locked; try again in {math.ceil(remaining / 60)} minutes",
                detail={
                    "retry_after_seconds": max(1, math.ceil(remaining)),
                    "locked_until": user.locked_until.isoformat(),
                },
            )
        if user.locked_until is not None:
            refreshed = self.store.reset_failed_attempts(user.id)
            logger.info("account_lock_expired", user_id=user.id)
            return refreshed or user
        return user

    def record_failed_attempt(self, user_id: str) -> User:
        user = self.store.increment_failed_attempts(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if user.failed_login_attempts >= self.policy.threshold and not self.is_locked(user):
            locked_until = self._clock() + self.policy.duration
            user = self.store.lock_user(user_id, locked_until) or user
            log_security_event(
                "account_locked",
                logger,
                user_id=user_id,
                failed_attempts=user.failed_login_attempts,
                locked_until=locked_until.isoformat(),
            )
        return user

    def record_success(self, user_id: str) -> User:
        user = self.store.record_login(user_id, self._clock())
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    # handles
    def allocate_handle(self, base: str, create: Callable[[str], T]) -> T:
        """Call ``create(handle)`` with successive candidates until one is unique.

        Uniqueness is decided by ``create`` raising ``ConstraintViolation`` on
        the handle column; other constraint failures propagate.
        """
        stem = normalize_handle_base(base)
        for attempt in range(self.max_handle_attempts):
            if attempt == 0:
                candidate = stem
            else:
                candidate = f"{stem[:15]}_{self._rng.randrange(10000):04d}"
            if candidate in RESERVED_HANDLES:
                continue
            try:
                return create(candidate)
            except ConstraintViolation as exc:
                if exc.field != "handle":
                    raise
                logger.info("handle_collision", attempt=attempt + 1, handle=candidate)
            if attempt < self.max_handle_attempts - 1:
                self._sleep((2**attempt) * self.backoff_base)

        millis = int(self._clock().timestamp() * 1000)
        suffix = _base36(self._rng.randrange(36**2)).rjust(2, "0")
        fallback = f"{stem[:8]}_{_base36(millis)[-8:]}{suffix}"
        logger.warning("handle_allocation_fallback", handle=fallback)
        try:
            return create(fallback)
        except ConstraintViolation as exc:
            if exc.field != "handle":
                raise
            raise ServerError("could not allocate a unique handle") from exc

    # dependent records
    def provision_dependents(self, user: User) -> None:
        """Create the subscription and quota rows; failures are repaired on next read."""
        try:
            self.store.create_subscription_if_missing(user.id, user.tier)
        except Exception as exc:
            logger.error("subscription_provision_failed", user_id=user.id, error=str(exc))
        try:
            self.store.create_quota_usage_if_missing(
                QuotaUsage.new(user.id, self.quota_period, now=self._clock())
            )
        except Exception as exc:
            logger.error("quota_provision_failed", user_id=user.id, error=str(exc))

    # oauth
    def _reject_email_conflict(
        self, existing: User, provider: str, client: ClientMeta
    ) -> None:
        self.store.append_login_history(
            LoginHistory(
                user_id=existing.id,
                provider=provider,
                success=False,
                ip_address=client.ip_address or "unknown",
                user_agent=client.user_agent or "unknown",
                failure_reason=OAUTH_CONFLICT_REASON,
            )
        )
        log_security_event(
            "oauth_email_conflict",
            logger,
            user_id=existing.id,
            provider=provider,
            ip_address=client.ip_address,
        )
        if self.email_service:
            try:
                self.email_service.send_account_link_alert(
                    existing.email,
                    provider,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                )
            except Exception as exc:
                logger.warning(
                    "account_link_alert_failed", user_id=existing.id, error=str(exc)
                )
        raise ConflictError(
            "an account with this email already exists; sign in with your password",
            detail={"provider": provider, "reason": OAUTH_CONFLICT_REASON},
        )

    def resolve_oauth_identity(
        self,
        provider: str,
        profile: OAuthProfile,
        client: Optional[ClientMeta] = None,
    ) -> Tuple[User, bool]:
        """Find or create the account for a provider identity.

        An existing account with the same email but no link to this provider
        is never merged: the attempt is audited, the owner is alerted and a
        ``ConflictError`` is raised. Returns ``(user, created)``.
        """
        client = client or ClientMeta()
        column = PROVIDER_ID_FIELDS.get(provider)
        if not column:
            raise ValidationError(f"unsupported provider: {provider}", detail={"field": "provider"})
        if not profile.provider_id or not profile.email or "@" not in profile.email:
            raise ValidationError("provider profile requires an id and an email")

        user = self.store.get_user_by_provider(provider, profile.provider_id)
        if user:
            return user, False

        existing = self.store.get_user_by_email(profile.email)
        if existing:
            self._reject_email_conflict(existing, provider, client)

        base = profile.username or profile.email.split("@", 1)[0]
        try:
            user = self.allocate_handle(
                base,
                lambda handle: self.store.create_user(
                    profile.email,
                    handle,
                    email_verified=True,
                    **{column: profile.provider_id},
                ),
            )
        except ConstraintViolation as exc:
            # A concurrent callback for the same identity won the insert
            winner = self.store.get_user_by_provider(provider, profile.provider_id)
            if winner:
                return winner, False
            if exc.field == "email":
                existing = self.store.get_user_by_email(profile.email)
                if existing:
                    self._reject_email_conflict(existing, provider, client)
            raise
        logger.info("oauth_user_created", user_id=user.id, provider=provider, handle=user.handle)
        self.provision_dependents(user)
        return user, True
