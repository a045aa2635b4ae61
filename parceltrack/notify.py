"""
Status-change notifications. Delivery transport is a caller concern: anything with a
`notify(user_id, old_status, new_status, tracking_number)` method can be plugged into the service.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from parceltrack.models import STATUS_LABELS, Carrier, ShipmentStatus
from parceltrack.tools.carrier_detect import classify, tracking_url

log = logging.getLogger(__name__)

# label overrides for the notification body only
NOTIFY_LABELS = {
    ShipmentStatus.DELIVERED: "Delivered 🎉",
    ShipmentStatus.EXCEPTION: "⚠️ Exception",
}


@dataclass(frozen=True)
class Notification:
    user_id: str
    title: str
    body: str
    tag: str
    url: Optional[str] = None


class Notifier(Protocol):
    def notify(
        self,
        user_id: str,
        old_status: Optional[ShipmentStatus],
        new_status: ShipmentStatus,
        tracking_number: str,
    ) -> None: ...


def format_status_notification(
    user_id: str,
    tracking_number: str,
    new_status: ShipmentStatus,
    carrier: Optional[Carrier] = None,
) -> Notification:
    title = "📦 Package Delivered!" if new_status == ShipmentStatus.DELIVERED else "📦 Tracking Update"
    label = NOTIFY_LABELS.get(new_status) or STATUS_LABELS.get(new_status, str(new_status))
    return Notification(
        user_id=user_id,
        title=title,
        body=f"{tracking_number}: {label}",
        tag=f"pkg-{tracking_number}",
        url=tracking_url(tracking_number, carrier or classify(tracking_number)),
    )


class LoggingNotifier:
    """Formats and logs every notification, keeping the most recent ones in memory."""

    def __init__(self, keep: int = 100):
        self.keep = keep
        self.sent: List[Notification] = []

    def notify(self, user_id, old_status, new_status, tracking_number):
        n = format_status_notification(user_id, tracking_number, new_status)
        old = old_status.value if old_status else "-"
        log.info(f"[notify] {user_id} {tracking_number}: {old} -> {new_status.value} | {n.title} {n.body}")
        self.sent.append(n)
        self.sent = self.sent[-self.keep:] if self.keep > 0 else []
