from __future__ import annotations

import threading
import uuid
from dataclasses import fields as dataclass_fields
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from gallerycore.logging import get_logger
from gallerycore.storage.errors import ConstraintViolation
from gallerycore.storage.models import (
    PROVIDER_ID_FIELDS,
    LoginHistory,
    Notification,
    OneTimeToken,
    QuotaTransaction,
    QuotaUsage,
    RefreshToken,
    Subscription,
    TransactionType,
    User,
    utcnow,
)

_USER_FIELDS = {f.name for f in dataclass_fields(User)} - {"id", "created_at"}


class MemoryStore:
    """In-memory backing store for tests and local development.

    Every mutation runs under a single re-entrant lock so that the atomic
    operations (refresh rotation, quota increments, conditional resets) have
    the same all-or-nothing behaviour as their Postgres counterparts.
    Returned entities are copies; mutating them does not touch the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.quota_usage: Dict[str, QuotaUsage] = {}
        self.quota_transactions: List[QuotaTransaction] = []
        self.login_history: List[LoginHistory] = []
        self.subscriptions: Dict[str, Subscription] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        self.notifications: List[Notification] = []
        # RLock for all data operations; nested acquisitions happen when one
        # store method composes another.
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        handle: str,
        *,
        password_hash: Optional[str] = None,
        tier: str = "free",
        is_active: bool = True,
        email_verified: bool = False,
        google_id: Optional[str] = None,
        github_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == normalized_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.handle == handle:
                    raise ConstraintViolation("handle already exists", {"field": "handle"})
                if google_id and existing.google_id == google_id:
                    raise ConstraintViolation("google id already linked", {"field": "google_id"})
                if github_id and existing.github_id == github_id:
                    raise ConstraintViolation("github id already linked", {"field": "github_id"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=normalized_email,
                handle=handle,
                password_hash=password_hash,
                tier=tier,
                is_active=is_active,
                email_verified=email_verified,
                google_id=google_id,
                github_id=github_id,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user_by_handle(self, handle: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.handle == handle), None)
            return replace(user) if user else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        column = PROVIDER_ID_FIELDS.get(provider)
        if not column:
            return None
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if getattr(u, column) == provider_id),
                None,
            )
            return replace(user) if user else None

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        unknown = set(updates) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in updates:
                updates["email"] = updates["email"].strip().lower()
            for key in ("email", "handle", "google_id", "github_id"):
                value = updates.get(key)
                if value is None:
                    continue
                if any(
                    getattr(other, key) == value
                    for other in self.users.values()
                    if other.id != user_id
                ):
                    raise ConstraintViolation(f"{key} already exists", {"field": key})
            for key, value in updates.items():
                setattr(user, key, value)
            return replace(user)

    def increment_failed_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            return replace(user)

    def lock_user(self, user_id: str, locked_until: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.locked_until = locked_until
            return replace(user)

    def reset_failed_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            user.locked_until = None
            return replace(user)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            # An unexpired lock survives; only waiting clears it
            if user.locked_until is None or user.locked_until <= at:
                user.failed_login_attempts = 0
                user.locked_until = None
            user.last_login_at = at
            return replace(user)

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
            if token.user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
            stored = replace(token)
            self.refresh_tokens[stored.id] = stored
            self._refresh_by_hash[stored.token_hash] = stored.id
            return replace(stored)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def rotate_refresh_token(
        self, old_token_id: str, new_token: RefreshToken, now: datetime
    ) -> bool:
        """Revoke ``old_token_id`` and insert ``new_token`` as one step.

        Returns False without side effects when the old token was already
        revoked, so only one concurrent rotation of the same token can win.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if not old or old.revoked_at is not None:
                return False
            if new_token.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
            old.revoked_at = now
            old.replaced_by_token = new_token.token_hash
            stored = replace(new_token)
            self.refresh_tokens[stored.id] = stored
            self._refresh_by_hash[stored.token_hash] = stored.id
            return True

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.revoked_at is not None:
                return False
            token.revoked_at = now
            return True

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    revoked += 1
            return revoked

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [t for t in self.refresh_tokens.values() if t.user_id == user_id]
            return [replace(t) for t in sorted(tokens, key=lambda t: t.issued_at)]

    # quota ledger
    def get_quota_usage(self, user_id: str) -> Optional[QuotaUsage]:
        with self._data_lock:
            usage = self.quota_usage.get(user_id)
            return replace(usage) if usage else None

    def create_quota_usage_if_missing(self, usage: QuotaUsage) -> QuotaUsage:
        with self._data_lock:
            existing = self.quota_usage.get(usage.user_id)
            if existing:
                return replace(existing)
            stored = replace(usage)
            self.quota_usage[usage.user_id] = stored
            return replace(stored)

    def _require_usage(self, user_id: str) -> QuotaUsage:
        usage = self.quota_usage.get(user_id)
        if not usage:
            raise ConstraintViolation("quota usage row missing", {"user_id": user_id})
        return usage

    def _append_transaction(self, tx: QuotaTransaction) -> QuotaTransaction:
        self.quota_transactions.append(tx)
        return replace(tx)

    def apply_quota_deduction(
        self,
        user_id: str,
        amount: int,
        *,
        now: datetime,
        analysis_id: Optional[str] = None,
        analysis_url: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Tuple[QuotaUsage, QuotaTransaction]:
        with self._data_lock:
            usage = self._require_usage(user_id)
            before = usage.tokens_used
            tx = QuotaTransaction(
                user_id=user_id,
                type=TransactionType.ANALYSIS,
                tokens_amount=-amount,
                tokens_before=before,
                tokens_after=before + amount,
                analysis_id=analysis_id,
                analysis_url=analysis_url,
                description=description,
                metadata=metadata or {},
                created_at=now,
            )
            usage.tokens_used = before + amount
            usage.total_tokens_used += amount
            usage.analysis_count += 1
            usage.total_analysis_count += 1
            usage.last_analysis_at = now
            if analysis_url is not None:
                usage.last_analysis_url = analysis_url
            usage.last_analysis_tokens = amount
            usage.updated_at = now
            return replace(usage), self._append_transaction(tx)

    def apply_quota_credit(
        self,
        user_id: str,
        amount: int,
        tx_type: TransactionType,
        *,
        now: datetime,
        reduce_lifetime: bool = False,
        analysis_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Tuple[QuotaUsage, QuotaTransaction]:
        with self._data_lock:
            usage = self._require_usage(user_id)
            before = usage.tokens_used
            after = max(0, before - amount)
            tx = QuotaTransaction(
                user_id=user_id,
                type=tx_type,
                tokens_amount=before - after,
                tokens_before=before,
                tokens_after=after,
                analysis_id=analysis_id,
                description=description,
                metadata=metadata or {},
                created_at=now,
            )
            usage.tokens_used = after
            if reduce_lifetime:
                usage.total_tokens_used = max(0, usage.total_tokens_used - amount)
            usage.updated_at = now
            return replace(usage), self._append_transaction(tx)

    def reset_quota_usage(
        self,
        user_id: str,
        period_start: datetime,
        period_end: datetime,
        *,
        now: datetime,
        only_if_expired: bool = False,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[Tuple[QuotaUsage, QuotaTransaction]]:
        """Zero the period counters; with ``only_if_expired`` a fresh period is left alone."""
        with self._data_lock:
            usage = self._require_usage(user_id)
            if only_if_expired and not usage.period_end < now:
                return None
            before = usage.tokens_used
            meta = dict(metadata or {})
            meta.setdefault("previous_period_end", usage.period_end.isoformat())
            tx = QuotaTransaction(
                user_id=user_id,
                type=TransactionType.RESET,
                tokens_amount=before,
                tokens_before=before,
                tokens_after=0,
                description=description,
                metadata=meta,
                created_at=now,
            )
            usage.tokens_used = 0
            usage.analysis_count = 0
            usage.period_start = period_start
            usage.period_end = period_end
            usage.updated_at = now
            return replace(usage), self._append_transaction(tx)

    def set_quota_custom_limit(
        self,
        user_id: str,
        custom_limit: Optional[int],
        *,
        now: datetime,
        tier_limit: int,
        reason: Optional[str] = None,
        set_by: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tuple[QuotaUsage, QuotaTransaction, Optional[int]]:
        with self._data_lock:
            usage = self._require_usage(user_id)
            previous = usage.custom_limit
            tx = QuotaTransaction(
                user_id=user_id,
                type=TransactionType.CUSTOM_QUOTA_SET,
                tokens_amount=0,
                tokens_before=usage.tokens_used,
                tokens_after=usage.tokens_used,
                description=description,
                metadata={
                    "previous_limit": previous,
                    "new_limit": custom_limit,
                    "tier_limit": tier_limit,
                    "reason": reason,
                    "set_by": set_by,
                },
                created_at=now,
            )
            usage.custom_limit = custom_limit
            usage.updated_at = now
            return replace(usage), self._append_transaction(tx), previous

    def list_expired_quota_usage(self, now: datetime) -> List[QuotaUsage]:
        with self._data_lock:
            return [replace(u) for u in self.quota_usage.values() if u.period_end < now]

    def list_custom_quota_usage(self) -> List[QuotaUsage]:
        with self._data_lock:
            return [replace(u) for u in self.quota_usage.values() if u.custom_limit is not None]

    def list_quota_transactions(
        self, user_id: str, *, limit: int = 20, offset: int = 0
    ) -> Tuple[List[QuotaTransaction], int]:
        with self._data_lock:
            rows = [tx for tx in self.quota_transactions if tx.user_id == user_id]
            # Insertion order breaks created_at ties (same-instant writes in tests)
            ordered = list(reversed(rows))
            return [replace(tx) for tx in ordered[offset : offset + limit]], len(rows)

    # login history
    def append_login_history(self, entry: LoginHistory) -> LoginHistory:
        with self._data_lock:
            self.login_history.append(replace(entry))
            return entry

    def list_login_history(self, user_id: str) -> List[LoginHistory]:
        with self._data_lock:
            return [replace(e) for e in self.login_history if e.user_id == user_id]

    # subscriptions
    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._data_lock:
            sub = self.subscriptions.get(user_id)
            return replace(sub) if sub else None

    def create_subscription_if_missing(self, user_id: str, tier: str = "free") -> Subscription:
        with self._data_lock:
            existing = self.subscriptions.get(user_id)
            if existing:
                return replace(existing)
            if user_id not in self.users:
                raise ConstraintViolation("subscription user missing", {"user_id": user_id})
            sub = Subscription(user_id=user_id, tier=tier)
            self.subscriptions[user_id] = sub
            return replace(sub)

    def update_subscription(self, user_id: str, **updates: Any) -> Optional[Subscription]:
        with self._data_lock:
            sub = self.subscriptions.get(user_id)
            if not sub:
                return None
            for key, value in updates.items():
                if not hasattr(sub, key):
                    raise ValueError(f"unknown subscription field: {key}")
                setattr(sub, key, value)
            sub.updated_at = utcnow()
            return replace(sub)

    # one-time tokens
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            if token.token_hash in self.one_time_tokens:
                raise ConstraintViolation("one-time token collision", {"field": "token_hash"})
            self.one_time_tokens[token.token_hash] = replace(token)
            return token

    def consume_one_time_token(
        self, token_hash: str, purpose: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            token = self.one_time_tokens.get(token_hash)
            if (
                not token
                or token.purpose != purpose
                or token.used_at is not None
                or token.expires_at <= now
            ):
                return None
            token.used_at = now
            return replace(token)

    def invalidate_one_time_tokens(self, user_id: str, purpose: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for token in self.one_time_tokens.values():
                if token.user_id == user_id and token.purpose == purpose and token.used_at is None:
                    token.used_at = now
                    count += 1
            return count

    # notifications
    def create_notification(self, notification: Notification) -> Notification:
        with self._data_lock:
            self.notifications.append(replace(notification))
            return notification

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._data_lock:
            return [replace(n) for n in self.notifications if n.user_id == user_id]
