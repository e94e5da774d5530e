from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    handle: str
    password_hash: Optional[str] = None
    tier: str = "free"
    is_active: bool = True
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    google_id: Optional[str] = None
    github_id: Optional[str] = None
    panel_user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_oauth_only(self) -> bool:
        return self.password_hash is None


# Linked external identities live in per-provider columns on the user row.
PROVIDER_ID_FIELDS: Dict[str, str] = {"google": "google_id", "github": "github_id"}


@dataclass(frozen=True)
class ClientMeta:
    """Audit metadata for the client presenting a credential."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by_token: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        client: Optional[ClientMeta] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        client = client or ClientMeta()
        return cls(
            id=f"rt-{uuid.uuid4()}",
            user_id=user_id,
            token_hash=token_hash,
            issued_at=issued,
            expires_at=issued + ttl,
            user_agent=client.user_agent,
            ip_address=client.ip_address,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class QuotaUsage:
    user_id: str
    period_start: datetime
    period_end: datetime
    tokens_used: int = 0
    total_tokens_used: int = 0
    analysis_count: int = 0
    total_analysis_count: int = 0
    custom_limit: Optional[int] = None
    last_analysis_at: Optional[datetime] = None
    last_analysis_url: Optional[str] = None
    last_analysis_tokens: Optional[int] = None
    id: str = field(default_factory=lambda: f"gtu-{uuid.uuid4()}")
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, period: timedelta, *, now: Optional[datetime] = None) -> "QuotaUsage":
        start = now or utcnow()
        return cls(user_id=user_id, period_start=start, period_end=start + period)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.period_end


class TransactionType(str, Enum):
    ANALYSIS = "analysis"
    RESET = "reset"
    BONUS = "bonus"
    REFUND = "refund"
    CUSTOM_QUOTA_SET = "custom_quota_set"


# Closed set of metadata keys accepted per transaction type.
TRANSACTION_METADATA_KEYS: Dict[TransactionType, frozenset[str]] = {
    TransactionType.ANALYSIS: frozenset({"model"}),
    TransactionType.RESET: frozenset({"trigger", "previous_period_end"}),
    TransactionType.BONUS: frozenset({"requested", "granted_by"}),
    TransactionType.REFUND: frozenset({"requested"}),
    TransactionType.CUSTOM_QUOTA_SET: frozenset(
        {"previous_limit", "new_limit", "tier_limit", "reason", "set_by"}
    ),
}

_METADATA_VALUE_TYPES = (str, int, float, bool, type(None))


def validate_transaction_metadata(
    tx_type: TransactionType, metadata: Optional[Mapping[str, Any]]
) -> Dict[str, Any]:
    """Return a plain copy of ``metadata`` after checking its keys and value types."""
    if not metadata:
        return {}
    allowed = TRANSACTION_METADATA_KEYS[tx_type]
    unknown = set(metadata) - allowed
    if unknown:
        raise ValueError(
            f"unexpected metadata keys for {tx_type.value}: {sorted(unknown)}"
        )
    for key, value in metadata.items():
        if not isinstance(value, _METADATA_VALUE_TYPES):
            raise ValueError(f"metadata value for {key!r} must be a scalar")
    return dict(metadata)


@dataclass
class QuotaTransaction:
    user_id: str
    type: TransactionType
    tokens_amount: int
    tokens_before: int
    tokens_after: int
    analysis_id: Optional[str] = None
    analysis_url: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"gtt-{uuid.uuid4()}")
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.type = TransactionType(self.type)
        # Amounts are signed from the budget's side: a deduction of N is -N and
        # moves tokens_used up by N.
        if self.tokens_after != self.tokens_before - self.tokens_amount:
            raise ValueError(
                "ledger identity violated: "
                f"{self.tokens_before} - ({self.tokens_amount}) != {self.tokens_after}"
            )
        if self.tokens_after < 0:
            raise ValueError("tokens_after cannot be negative")
        self.metadata = validate_transaction_metadata(self.type, self.metadata)


@dataclass
class LoginHistory:
    user_id: str
    provider: str
    success: bool
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    failure_reason: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


@dataclass
class Subscription:
    user_id: str
    tier: str = "free"
    status: str = SubscriptionStatus.ACTIVE.value
    id: str = field(default_factory=lambda: f"gs-{uuid.uuid4()}")
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class OneTimePurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class OneTimeToken:
    user_id: str
    purpose: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    user_id: str
    kind: str
    title: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
