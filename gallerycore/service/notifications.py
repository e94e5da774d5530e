from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol

from gallerycore.logging import get_logger
from gallerycore.storage.models import Notification

logger = get_logger(__name__)


class NotificationKind:
    QUOTA_WARNING = "quota_warning"
    QUOTA_RESET = "quota_reset"
    QUOTA_BONUS = "quota_bonus"
    TIER_CHANGED = "tier_changed"
    PAYMENT_PAST_DUE = "payment_past_due"


_TEMPLATES: Dict[str, tuple[str, str]] = {
    NotificationKind.QUOTA_WARNING: (
        "Token quota running low",
        "You have used {percent}% of your token quota for this period.",
    ),
    NotificationKind.QUOTA_RESET: (
        "Token quota reset",
        "Your token quota has been reset. New period ends {period_end}.",
    ),
    NotificationKind.QUOTA_BONUS: (
        "Bonus tokens granted",
        "You received {amount} bonus tokens.",
    ),
    NotificationKind.TIER_CHANGED: (
        "Plan updated",
        "Your plan is now {tier}.",
    ),
    NotificationKind.PAYMENT_PAST_DUE: (
        "Payment failed",
        "We could not process your latest payment. Please update your billing details.",
    ),
}


class NotificationSink(Protocol):
    def notify(self, user_id: str, kind: str, payload: Mapping[str, Any]) -> None: ...


class NotificationStore(Protocol):
    def create_notification(self, notification: Notification) -> Notification: ...


def render_notification(kind: str, payload: Mapping[str, Any]) -> tuple[str, str]:
    title, template = _TEMPLATES.get(kind, (kind.replace("_", " ").capitalize(), ""))
    try:
        message = template.format(**payload)
    except (KeyError, IndexError, ValueError):
        message = template
    return title, message


class StoreNotificationSink:
    """Persists in-app notifications through the backing store."""

    def __init__(self, store: NotificationStore) -> None:
        self.store = store

    def notify(self, user_id: str, kind: str, payload: Mapping[str, Any]) -> None:
        title, message = render_notification(kind, payload)
        self.store.create_notification(
            Notification(
                user_id=user_id,
                kind=kind,
                title=title,
                message=message,
                payload=dict(payload),
            )
        )
        logger.info("notification_created", user_id=user_id, kind=kind)


def safe_notify(
    sink: Optional[NotificationSink],
    user_id: str,
    kind: str,
    payload: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Deliver a notification without letting a sink failure reach the caller."""
    if sink is None:
        return False
    try:
        sink.notify(user_id, kind, payload or {})
        return True
    except Exception as exc:
        logger.warning(
            "notification_failed",
            user_id=user_id,
            kind=kind,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
