from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from gallerycore.config import Tier
from gallerycore.logging import get_logger
from gallerycore.service.errors import NotFoundError, ValidationError
from gallerycore.service.notifications import (
    NotificationKind,
    NotificationSink,
    safe_notify,
)
from gallerycore.storage.models import Subscription, SubscriptionStatus, User

logger = get_logger(__name__)


class BillingEventType(str, Enum):
    ACTIVATED = "activated"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BillingEvent:
    """A payment-provider event already parsed and mapped to a user."""

    user_id: str
    type: str


class BillingStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]: ...

    def create_subscription_if_missing(self, user_id: str, tier: str = "free") -> Subscription: ...

    def update_subscription(self, user_id: str, **updates: Any) -> Optional[Subscription]: ...


class BillingEventHandler:
    """Applies subscription lifecycle events to the user's tier.

    Only the user directory and subscription row change; the quota manager
    reads the tier on its next call, so no quota state is touched here.
    """

    def __init__(self, store: BillingStore, *, sink: Optional[NotificationSink] = None) -> None:
        self.store = store
        self.sink = sink

    def apply(self, event: BillingEvent) -> Subscription:
        try:
            event_type = BillingEventType(event.type)
        except ValueError:
            raise ValidationError(
                f"unsupported billing event: {event.type}", detail={"field": "type"}
            ) from None
        user = self.store.get_user(event.user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": event.user_id})
        self.store.create_subscription_if_missing(user.id, user.tier)

        if event_type is BillingEventType.PAST_DUE:
            sub = self.store.update_subscription(
                user.id, status=SubscriptionStatus.PAST_DUE.value
            )
            logger.warning("subscription_past_due", user_id=user.id, tier=user.tier)
            safe_notify(self.sink, user.id, NotificationKind.PAYMENT_PAST_DUE, {})
            return sub

        if event_type is BillingEventType.ACTIVATED:
            tier, status = Tier.PRO.value, SubscriptionStatus.ACTIVE.value
        else:
            tier, status = Tier.FREE.value, SubscriptionStatus.CANCELLED.value
        self.store.update_user(user.id, tier=tier)
        sub = self.store.update_subscription(user.id, tier=tier, status=status)
        logger.info(
            "subscription_tier_changed",
            user_id=user.id,
            previous_tier=user.tier,
            tier=tier,
            billing_event=event_type.value,
        )
        if tier != user.tier:
            safe_notify(self.sink, user.id, NotificationKind.TIER_CHANGED, {"tier": tier})
        return sub
