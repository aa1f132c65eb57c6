"""
Subscription lifecycle notifications.

Delivery is a structured log line; a mail or push transport plugs in at
send_notification. Webhook handling only builds Notification values; the
route schedules delivery on FastAPI BackgroundTasks after acknowledging.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict
import logging


logger = logging.getLogger("assetgate")


class NotificationKind(str, Enum):
    SUBSCRIPTION_STARTED = "subscription_started"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_ENDING = "trial_ending"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    user_id: str
    data: Dict[str, Any] = field(default_factory=dict)


def send_notification(notification: Notification) -> None:
    logger.info(
        "notification.sent",
        extra={
            "user_id": notification.user_id,
            "notification_kind": notification.kind.value,
            **{f"notification_{k}": v for k, v in notification.data.items()},
        },
    )
