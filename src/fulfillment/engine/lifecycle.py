"""Order and payment state machines.

Order status only moves forward (pending -> confirmed -> shipped ->
delivered); privileged updates may skip steps. Anything not yet delivered can
be cancelled, and cancelled is terminal. Payment status has its own table;
refunded is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from fulfillment.db.models import ORDER_STATUSES, PAYMENT_STATUSES, Order
from fulfillment.engine.errors import InvalidStatus
from fulfillment.utils.config import Settings

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"confirmed", "shipped", "delivered", "cancelled"},
    "confirmed": {"shipped", "delivered", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "failed"},
    "failed": {"pending", "paid"},
    "paid": {"refunded"},
    "refunded": set(),
}

NON_CANCELLABLE: set[str] = {"delivered", "cancelled"}


def is_cancellable(order_status: str) -> bool:
    return order_status not in NON_CANCELLABLE


def check_order_transition(current: str, target: str) -> bool:
    """
    Validate an order_status change. Returns False for a no-op (same status),
    True for a real move, raises InvalidStatus otherwise.
    """
    if target not in ORDER_STATUSES:
        raise InvalidStatus("order_status", target)
    if current == target:
        return False
    if target not in ORDER_TRANSITIONS[current]:
        raise InvalidStatus("order_status", target, f"cannot move from {current}")
    return True


def check_payment_transition(current: str, target: str) -> bool:
    """Same contract as ``check_order_transition`` for payment_status."""
    if target not in PAYMENT_STATUSES:
        raise InvalidStatus("payment_status", target)
    if current == target:
        return False
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidStatus("payment_status", target, f"cannot move from {current}")
    return True


def confirmed_status_after_payment(current: str) -> str:
    """A payment only advances pending orders; later states are left alone."""
    return "confirmed" if current == "pending" else current


# ---------------------------
# Time-based auto progression
# ---------------------------


@dataclass(frozen=True)
class ProgressionStep:
    order_id: str
    from_status: str
    to_status: str


def progression_cutoffs(now: datetime, settings: Settings) -> dict[str, datetime]:
    """Orders created before the cutoff for their status are due to advance."""
    return {
        "confirmed": now - timedelta(hours=settings.ship_after_hours),
        "shipped": now - timedelta(days=settings.deliver_after_days),
    }


_NEXT_STATUS = {"confirmed": "shipped", "shipped": "delivered"}


def plan_auto_progression(
    now: datetime, orders: Iterable[Order], settings: Settings
) -> List[ProgressionStep]:
    """
    Pure planner for the background sweep: confirmed orders older than the
    ship threshold become shipped, shipped orders older than the delivery
    threshold become delivered. Each order advances at most one step per run.
    """
    cutoffs = progression_cutoffs(now, settings)
    steps: List[ProgressionStep] = []
    for order in orders:
        cutoff: Optional[datetime] = cutoffs.get(order.order_status)
        if cutoff is None or order.created_at >= cutoff:
            continue
        steps.append(
            ProgressionStep(
                order.order_id, order.order_status, _NEXT_STATUS[order.order_status]
            )
        )
    return steps


def tracking_number(order_id: str) -> str:
    return f"TRK{order_id[-8:].upper()}"
