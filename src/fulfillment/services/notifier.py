"""Best-effort notifications.

``Notifier.emit`` never blocks the caller and never raises: delivery happens
in a detached task, failures and timeouts are logged and dropped. Engines call
it only after their transaction has committed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from fulfillment.db.models import Claim, Notification, Order, Product, Warranty
from fulfillment.engine.ports import NotificationSink
from fulfillment.utils.logger import get_logger

_logger = get_logger(__name__)


class LoggingNotificationSink:
    """Writes notifications to the log. Default sink when no mailer is wired."""

    async def send(self, notification: Notification) -> None:
        target = notification.user_id or "admin"
        _logger.info(
            f"notify {target}: [{notification.kind}] {notification.subject}"
        )


@dataclass
class Notifier:
    sink: NotificationSink = field(default_factory=LoggingNotificationSink)
    timeout: float = 10.0
    _pending: set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    def emit(self, notification: Notification) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await asyncio.wait_for(self.sink.send(notification), self.timeout)
        except asyncio.TimeoutError:
            _logger.warning(
                f"notification '{notification.kind}' timed out after {self.timeout}s"
            )
        except Exception:
            _logger.exception(f"notification '{notification.kind}' failed")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


# ---------------------------
# Message builders
# ---------------------------


def order_confirmation(order: Order, units: int) -> Notification:
    return Notification(
        kind="order_confirmation",
        subject=f"Order {order.order_id} received",
        user_id=order.user_id,
        payload={
            "order_id": order.order_id,
            "total_price": str(order.total_price),
            "units": units,
        },
    )


def order_status_update(
    order: Order, status: str, tracking: Optional[str] = None
) -> Notification:
    payload: dict[str, Any] = {
        "order_id": order.order_id,
        "order_status": status,
        "payment_status": order.payment_status,
    }
    if tracking:
        payload["tracking_number"] = tracking
    return Notification(
        kind="order_status_update",
        subject=f"Order {order.order_id} is now {status}",
        user_id=order.user_id,
        payload=payload,
    )


def admin_alert(subject: str, **payload: Any) -> Notification:
    return Notification(kind="admin_alert", subject=subject, payload=payload)


def warranty_registered(warranty: Warranty) -> Notification:
    return Notification(
        kind="warranty_registered",
        subject=f"Warranty {warranty.serial_number or warranty.warranty_id} registered",
        user_id=warranty.user_id,
        payload={
            "warranty_id": warranty.warranty_id,
            "product_id": warranty.product_id,
            "expiry_date": warranty.expiry_date.isoformat(),
        },
    )


def claim_status_update(claim: Claim, user_id: str) -> Notification:
    return Notification(
        kind="claim_status_update",
        subject=f"Claim {claim.claim_id} is now {claim.status}",
        user_id=user_id,
        payload={
            "claim_id": claim.claim_id,
            "status": claim.status,
            "admin_notes": claim.admin_notes,
        },
    )


def warranty_expiry_reminder(warranty: Warranty, days_left: int) -> Notification:
    return Notification(
        kind="warranty_expiry_reminder",
        subject=f"Your warranty expires in {days_left} day(s)",
        user_id=warranty.user_id,
        payload={
            "warranty_id": warranty.warranty_id,
            "product_id": warranty.product_id,
            "days_left": days_left,
        },
    )


def low_stock_alert(product: Product) -> Notification:
    return admin_alert(
        f"Low stock: {product.name}",
        product_id=product.product_id,
        stock=product.stock,
    )
