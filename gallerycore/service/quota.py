from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Tuple

from gallerycore.config import QuotaPolicy
from gallerycore.logging import get_logger
from gallerycore.service.errors import (
    NotFoundError,
    QuotaExceededError,
    ServerError,
    ValidationError,
)
from gallerycore.service.notifications import (
    NotificationKind,
    NotificationSink,
    safe_notify,
)
from gallerycore.storage.models import (
    QuotaTransaction,
    QuotaUsage,
    TransactionType,
    User,
    utcnow,
)
from gallerycore.storage.redis_cache import MemoryCache, ttl_until

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class QuotaLedger(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_quota_usage(self, user_id: str) -> Optional[QuotaUsage]: ...

    def create_quota_usage_if_missing(self, usage: QuotaUsage) -> QuotaUsage: ...

    def apply_quota_deduction(
        self, user_id: str, amount: int, *, now: datetime, **kwargs: Any
    ) -> Tuple[QuotaUsage, QuotaTransaction]: ...

    def apply_quota_credit(
        self, user_id: str, amount: int, tx_type: TransactionType, *, now: datetime, **kwargs: Any
    ) -> Tuple[QuotaUsage, QuotaTransaction]: ...

    def reset_quota_usage(
        self, user_id: str, period_start: datetime, period_end: datetime, *, now: datetime, **kwargs: Any
    ) -> Optional[Tuple[QuotaUsage, QuotaTransaction]]: ...

    def set_quota_custom_limit(
        self, user_id: str, custom_limit: Optional[int], *, now: datetime, **kwargs: Any
    ) -> Tuple[QuotaUsage, QuotaTransaction, Optional[int]]: ...

    def list_expired_quota_usage(self, now: datetime) -> List[QuotaUsage]: ...

    def list_custom_quota_usage(self) -> List[QuotaUsage]: ...

    def list_quota_transactions(
        self, user_id: str, *, limit: int = 20, offset: int = 0
    ) -> Tuple[List[QuotaTransaction], int]: ...


class ClaimCache(Protocol):
    def claim_once(self, key: str, ttl_seconds: int) -> bool: ...


@dataclass(frozen=True)
class QuotaStatus:
    user_id: str
    tier: str
    limit: int
    tier_limit: int
    custom_limit: Optional[int]
    used: int
    remaining: int
    percent_used: float
    period_start: datetime
    period_end: datetime
    analysis_count: int
    total_tokens_used: int
    total_analysis_count: int

    @property
    def has_custom_limit(self) -> bool:
        return self.custom_limit is not None

    @property
    def is_exceeded(self) -> bool:
        return self.used >= self.limit


@dataclass(frozen=True)
class QuotaCheckResult:
    sufficient: bool
    remaining: int
    required: int
    shortfall: int
    limit: int


@dataclass(frozen=True)
class TransactionPage:
    items: List[QuotaTransaction]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total


@dataclass(frozen=True)
class CustomLimitEntry:
    user_id: str
    email: Optional[str]
    handle: Optional[str]
    tier: str
    custom_limit: int
    tier_limit: int
    tokens_used: int


def _require_int(name: str, value: Any, *, positive: bool) -> int:
    # bool is an int subclass; True must not be accepted as 1 token
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", detail={"field": name})
    if positive and value <= 0:
        raise ValidationError(f"{name} must be positive", detail={"field": name})
    if value < 0:
        raise ValidationError(f"{name} must be non-negative", detail={"field": name})
    return value


class QuotaManager:
    """Per-user, per-period token budget.

    Expired periods are reset lazily on any read; the scheduled sweep only
    keeps idle accounts from carrying stale periods. Tier limits are read from
    the user directory on every call so billing changes apply immediately.
    """

    def __init__(
        self,
        store: QuotaLedger,
        policy: QuotaPolicy,
        *,
        sink: Optional[NotificationSink] = None,
        cache: Optional[ClaimCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self.sink = sink
        self.cache = cache or MemoryCache()
        self._clock = clock

    # helpers
    def _get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _effective_limit(self, user: User, usage: QuotaUsage) -> int:
        if usage.custom_limit is not None:
            return usage.custom_limit
        return self.policy.limit_for(user.tier)

    def _ensure_usage(self, user_id: str, now: datetime) -> QuotaUsage:
        usage = self.store.get_quota_usage(user_id)
        if usage is None:
            usage = self.store.create_quota_usage_if_missing(
                QuotaUsage.new(user_id, self.policy.period, now=now)
            )
            logger.info("quota_usage_provisioned", user_id=user_id)
        if usage.is_expired(now):
            result = self.store.reset_quota_usage(
                user_id,
                now,
                now + self.policy.period,
                now=now,
                only_if_expired=True,
                description="Period expired",
                metadata={"trigger": "lazy"},
            )
            if result:
                usage = result[0]
                logger.info(
                    "quota_period_reset",
                    user_id=user_id,
                    trigger="lazy",
                    tokens_cleared=result[1].tokens_amount,
                )
            else:
                usage = self.store.get_quota_usage(user_id) or usage
        return usage

    def _status(self, user: User, usage: QuotaUsage) -> QuotaStatus:
        limit = self._effective_limit(user, usage)
        used = usage.tokens_used
        if limit > 0:
            percent = round(used / limit * 100, 2)
        else:
            percent = 100.0 if used > 0 else 0.0
        return QuotaStatus(
            user_id=user.id,
            tier=user.tier,
            limit=limit,
            tier_limit=self.policy.limit_for(user.tier),
            custom_limit=usage.custom_limit,
            used=used,
            remaining=max(0, limit - used),
            percent_used=percent,
            period_start=usage.period_start,
            period_end=usage.period_end,
            analysis_count=usage.analysis_count,
            total_tokens_used=usage.total_tokens_used,
            total_analysis_count=usage.total_analysis_count,
        )

    def _maybe_warn(self, user: User, usage: QuotaUsage) -> None:
        limit = self._effective_limit(user, usage)
        if limit <= 0:
            return
        ratio = usage.tokens_used / limit
        if not self.policy.warning_ratio <= ratio < 1:
            return
        threshold = int(round(self.policy.warning_ratio * 100))
        key = f"quota_warning:{user.id}:{usage.period_start.isoformat()}:{threshold}"
        try:
            claimed = self.cache.claim_once(key, ttl_until(usage.period_end, self._clock()))
        except Exception as exc:
            logger.warning("quota_warning_claim_failed", user_id=user.id, error=str(exc))
            return
        if not claimed:
            return
        logger.info("quota_warning_threshold_crossed", user_id=user.id, threshold=threshold)
        safe_notify(
            self.sink,
            user.id,
            NotificationKind.QUOTA_WARNING,
            {
                "percent": threshold,
                "used": usage.tokens_used,
                "limit": limit,
                "period_end": usage.period_end.isoformat(),
            },
        )

    # reads
    def get_status(self, user_id: str) -> QuotaStatus:
        user = self._get_user(user_id)
        usage = self._ensure_usage(user_id, self._clock())
        return self._status(user, usage)

    def check_sufficient(self, user_id: str, estimated_cost: int) -> QuotaCheckResult:
        required = _require_int("estimated_cost", estimated_cost, positive=False)
        status = self.get_status(user_id)
        return QuotaCheckResult(
            sufficient=status.remaining >= required,
            remaining=status.remaining,
            required=required,
            shortfall=max(0, required - status.remaining),
            limit=status.limit,
        )

    def ensure_sufficient(self, user_id: str, estimated_cost: int) -> QuotaCheckResult:
        result = self.check_sufficient(user_id, estimated_cost)
        if not result.sufficient:
            logger.info(
                "quota_insufficient",
                user_id=user_id,
                required=result.required,
                remaining=result.remaining,
            )
            raise QuotaExceededError(
                "insufficient token quota",
                detail={
                    "remaining": result.remaining,
                    "limit": result.limit,
                    "required": result.required,
                    "shortfall": result.shortfall,
                },
            )
        return result

    def list_transactions(self, user_id: str, page: int = 1, limit: int = 20) -> TransactionPage:
        page = _require_int("page", page, positive=True)
        limit = _require_int("limit", limit, positive=True)
        if limit > MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be at most {MAX_PAGE_SIZE}", detail={"field": "limit"}
            )
        self._get_user(user_id)
        items, total = self.store.list_quota_transactions(
            user_id, limit=limit, offset=(page - 1) * limit
        )
        return TransactionPage(items=items, total=total, page=page, limit=limit)

    def list_custom_limits(self) -> List[CustomLimitEntry]:
        entries: List[CustomLimitEntry] = []
        for usage in self.store.list_custom_quota_usage():
            user = self.store.get_user(usage.user_id)
            tier = user.tier if user else self.policy.default_tier
            entries.append(
                CustomLimitEntry(
                    user_id=usage.user_id,
                    email=user.email if user else None,
                    handle=user.handle if user else None,
                    tier=tier,
                    custom_limit=usage.custom_limit or 0,
                    tier_limit=self.policy.limit_for(tier),
                    tokens_used=usage.tokens_used,
                )
            )
        return entries

    # writes
    def deduct(
        self,
        user_id: str,
        actual_cost: int,
        *,
        analysis_id: Optional[str] = None,
        analysis_url: Optional[str] = None,
        model: Optional[str] = None,
        description: Optional[str] = None,
    ) -> QuotaUsage:
        """Record consumption after an analysis completes.

        Never refuses: the pre-flight check is ``check_sufficient``. Usage may
        end above the limit when the actual cost exceeds the estimate.
        """
        amount = _require_int("actual_cost", actual_cost, positive=True)
        user = self._get_user(user_id)
        now = self._clock()
        self._ensure_usage(user_id, now)
        usage, tx = self.store.apply_quota_deduction(
            user_id,
            amount,
            now=now,
            analysis_id=analysis_id,
            analysis_url=analysis_url,
            description=description or "Analysis",
            metadata={"model": model} if model else None,
        )
        logger.info(
            "quota_deducted",
            user_id=user_id,
            amount=amount,
            tokens_before=tx.tokens_before,
            tokens_after=tx.tokens_after,
            analysis_id=analysis_id,
        )
        self._maybe_warn(user, usage)
        return usage

    def refund(
        self,
        user_id: str,
        amount: int,
        *,
        analysis_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> QuotaUsage:
        amount = _require_int("amount", amount, positive=True)
        self._get_user(user_id)
        now = self._clock()
        self._ensure_usage(user_id, now)
        usage, tx = self.store.apply_quota_credit(
            user_id,
            amount,
            TransactionType.REFUND,
            now=now,
            reduce_lifetime=True,
            analysis_id=analysis_id,
            description=reason or "Refund",
            metadata={"requested": amount},
        )
        logger.info(
            "quota_refunded",
            user_id=user_id,
            requested=amount,
            applied=tx.tokens_amount,
            analysis_id=analysis_id,
        )
        return usage

    def grant_bonus(
        self,
        user_id: str,
        amount: int,
        *,
        reason: Optional[str] = None,
        granted_by: Optional[str] = None,
    ) -> QuotaUsage:
        """Credit ``amount`` tokens by lowering period usage (floored at zero).

        A bonus larger than current usage is partly lost; it does not raise
        the limit.
        """
        amount = _require_int("amount", amount, positive=True)
        self._get_user(user_id)
        now = self._clock()
        self._ensure_usage(user_id, now)
        usage, tx = self.store.apply_quota_credit(
            user_id,
            amount,
            TransactionType.BONUS,
            now=now,
            description=reason or "Bonus tokens",
            metadata={"requested": amount, "granted_by": granted_by},
        )
        logger.info(
            "quota_bonus_granted",
            user_id=user_id,
            requested=amount,
            applied=tx.tokens_amount,
            granted_by=granted_by,
        )
        safe_notify(
            self.sink,
            user_id,
            NotificationKind.QUOTA_BONUS,
            {"amount": amount, "reason": reason},
        )
        return usage

    def _write_custom_limit(
        self,
        user_id: str,
        limit: Optional[int],
        reason: Optional[str],
        set_by: Optional[str],
    ) -> QuotaStatus:
        user = self._get_user(user_id)
        now = self._clock()
        self._ensure_usage(user_id, now)
        tier_limit = self.policy.limit_for(user.tier)
        usage, _tx, previous = self.store.set_quota_custom_limit(
            user_id,
            limit,
            now=now,
            tier_limit=tier_limit,
            reason=reason,
            set_by=set_by,
            description="Custom limit cleared" if limit is None else "Custom limit set",
        )
        logger.info(
            "quota_custom_limit_changed",
            user_id=user_id,
            previous_limit=previous,
            new_limit=limit,
            tier_limit=tier_limit,
        )
        return self._status(user, usage)

    def set_custom_limit(
        self,
        user_id: str,
        limit: int,
        *,
        reason: Optional[str] = None,
        set_by: Optional[str] = None,
    ) -> QuotaStatus:
        limit = _require_int("limit", limit, positive=False)
        return self._write_custom_limit(user_id, limit, reason, set_by)

    def clear_custom_limit(
        self,
        user_id: str,
        *,
        reason: Optional[str] = None,
        set_by: Optional[str] = None,
    ) -> QuotaStatus:
        return self._write_custom_limit(user_id, None, reason, set_by)

    def reset(self, user_id: str, *, trigger: str = "admin") -> QuotaUsage:
        self._get_user(user_id)
        now = self._clock()
        if self.store.get_quota_usage(user_id) is None:
            self.store.create_quota_usage_if_missing(
                QuotaUsage.new(user_id, self.policy.period, now=now)
            )
        result = self.store.reset_quota_usage(
            user_id,
            now,
            now + self.policy.period,
            now=now,
            description="Manual reset" if trigger == "admin" else "Period reset",
            metadata={"trigger": trigger},
        )
        if result is None:
            raise ServerError("quota reset failed", detail={"user_id": user_id})
        usage, tx = result
        logger.info(
            "quota_period_reset", user_id=user_id, trigger=trigger, tokens_cleared=tx.tokens_amount
        )
        safe_notify(
            self.sink,
            user_id,
            NotificationKind.QUOTA_RESET,
            {"period_end": usage.period_end.isoformat()},
        )
        return usage

    def sweep_expired(self) -> int:
        """Reset every expired period; returns the number actually reset.

        A failure for one user is logged and does not stop the others.
        """
        now = self._clock()
        expired = self.store.list_expired_quota_usage(now)
        reset_count = 0
        for usage in expired:
            try:
                result = self.store.reset_quota_usage(
                    usage.user_id,
                    now,
                    now + self.policy.period,
                    now=now,
                    only_if_expired=True,
                    description="Scheduled reset",
                    metadata={"trigger": "sweep"},
                )
            except Exception as exc:
                logger.error(
                    "quota_sweep_user_failed",
                    user_id=usage.user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if not result:
                # Reset concurrently by a lazy read
                continue
            reset_count += 1
            safe_notify(
                self.sink,
                usage.user_id,
                NotificationKind.QUOTA_RESET,
                {"period_end": result[0].period_end.isoformat()},
            )
        logger.info("quota_sweep_completed", candidates=len(expired), reset=reset_count)
        return reset_count
