"""
In-memory notification inbox for order and payment events.

Delivery channels (email, SMS) live outside this service; it only records what
the storefront should show the customer.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from threading import Lock

from fashion_shop.config import Config
from fashion_shop.observability.metrics import increment_counter, record_event


@dataclass
class Notification:
    """A single inbox entry."""
    id: str
    user_id: int
    event: str
    title: str
    message: str
    order_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event": self.event,
            "title": self.title,
            "message": self.message,
            "order_id": self.order_id,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
        }


class NotificationService:
    """
    Process-wide inbox keyed by user.

    Singleton so request handlers and background sweeps share one state.
    """

    _instance: Optional["NotificationService"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._counter: int = 0
        self._max_per_user: int = Config.MAX_NOTIFICATIONS_PER_USER
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    def add_notification(
        self,
        user_id: int,
        event: str,
        title: str,
        message: str,
        order_id: Optional[int] = None,
    ) -> Notification:
        with self._lock:
            self._counter += 1
            notification = Notification(
                id=f"notif_{self._counter}",
                user_id=user_id,
                event=event,
                title=title,
                message=message,
                order_id=order_id,
            )

            # Most recent first
            inbox = self._notifications[user_id]
            inbox.insert(0, notification)
            del inbox[self._max_per_user:]

        increment_counter("notifications_created_total", labels={"event": event})
        self.logger.info("Notification %s for user %d: %s", event, user_id, title)
        return notification

    def get_notifications(self, user_id: int, unread_only: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        notifications = self._notifications.get(user_id, [])
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        return sum(1 for n in self._notifications.get(user_id, []) if not n.read)

    def mark_all_as_read(self, user_id: int) -> int:
        count = 0
        for notification in self._notifications.get(user_id, []):
            if not notification.read:
                notification.read = True
                count += 1
        return count

    def reset(self) -> None:
        """Testing helper."""
        with self._lock:
            self._notifications.clear()
            self._counter = 0


ORDER_STATUS_LABELS = {
    "pending": "Pending",
    "processing": "Processing",
    "shipped": "Shipped",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
    "expired": "Expired",
}

EVENT_TITLES = {
    "order_created": "Order placed",
    "order_status_changed": "Order updated",
    "payment_confirmed": "Payment received",
    "payment_reminder": "Payment due soon",
    "order_expired": "Order expired",
    "order_cancelled": "Order cancelled",
}


def notify(user_id: int, event: str, message: str, order_id: Optional[int] = None) -> None:
    """Default dispatcher: record the event and drop it into the user's inbox."""
    record_event("notification_dispatched", {"user_id": user_id, "event": event, "order_id": order_id})
    NotificationService().add_notification(
        user_id=user_id,
        event=event,
        title=EVENT_TITLES.get(event, event.replace("_", " ").capitalize()),
        message=message,
        order_id=order_id,
    )


def describe_status_change(order_id: int, old_status: str, new_status: str) -> str:
    old_label = ORDER_STATUS_LABELS.get(old_status, old_status)
    new_label = ORDER_STATUS_LABELS.get(new_status, new_status)
    return f"Order #{order_id} changed from {old_label} to {new_label}."
