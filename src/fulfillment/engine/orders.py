"""Order engine: checkout, payment events, status changes and cancellation.

Every public method is one transaction. Stock is only touched through
``crud.reserve_stock`` / ``crud.release_stock`` while the database write lock
is held, so concurrent checkouts for the same product are serialized and the
second one sees the first one's decrement. Notifications go out after commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import aiosqlite

from fulfillment.db import crud
from fulfillment.db.database import run_in_transaction
from fulfillment.db.models import (
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    Order,
    OrderDetail,
    OrderItem,
    Product,
    ShippingAddress,
    Warranty,
)
from fulfillment.engine import lifecycle
from fulfillment.engine.errors import (
    AlreadyProcessed,
    ConflictError,
    EmptyCart,
    InsufficientStock,
    InvalidAddress,
    InvalidStatus,
    OrderNotCancellable,
    OrderNotFound,
    ProductNotFound,
    ValidationError,
)
from fulfillment.engine.ports import Clock, IdGenerator, SystemClock, UuidIdGenerator
from fulfillment.engine.pricing import price_lines
from fulfillment.engine.warranty import WarrantyEngine
from fulfillment.services import notifier as notices
from fulfillment.services.notifier import Notifier
from fulfillment.utils.config import Settings, get_settings
from fulfillment.utils.logger import get_logger

_logger = get_logger(__name__)

AddressInput = Union[ShippingAddress, Mapping[str, Any]]


def validate_address(address: Optional[AddressInput]) -> ShippingAddress:
    """Accept a ShippingAddress or a plain mapping; all required parts non-blank."""
    if address is None:
        raise InvalidAddress(list(ShippingAddress.REQUIRED))
    if not isinstance(address, ShippingAddress):
        address = ShippingAddress.from_dict(dict(address))
    missing = [
        name
        for name in ShippingAddress.REQUIRED
        if not str(getattr(address, name) or "").strip()
    ]
    if missing:
        raise InvalidAddress(missing)
    return address


def merge_manual_items(items: Iterable[Tuple[str, int]]) -> List[Tuple[str, int]]:
    """Collapse repeated products, keep first-seen order, reject bad quantities."""
    merged: dict[str, int] = {}
    for product_id, quantity in items:
        if int(quantity) < 1:
            raise ValidationError(f"Quantity for {product_id} must be at least 1")
        merged[product_id] = merged.get(product_id, 0) + int(quantity)
    if not merged:
        raise ValidationError("At least one item is required")
    return list(merged.items())


@dataclass
class OrderEngine:
    settings: Settings = field(default_factory=get_settings)
    clock: Clock = field(default_factory=SystemClock)
    ids: IdGenerator = field(default_factory=UuidIdGenerator)
    notifier: Notifier = field(default_factory=Notifier)
    warranties: Optional[WarrantyEngine] = None

    def __post_init__(self):
        if self.warranties is None:
            self.warranties = WarrantyEngine(
                clock=self.clock, ids=self.ids, notifier=self.notifier
            )

    # ---------------------------
    # Checkout
    # ---------------------------

    async def _place_order(
        self,
        conn: aiosqlite.Connection,
        user_id: str,
        lines: Sequence[Tuple[Product, int]],
        address: ShippingAddress,
        *,
        payment_method: str,
        order_status: str,
        payment_status: str,
    ) -> OrderDetail:
        """
        Shared by cart checkout and manual orders: check stock against the
        rows read in this transaction, write the order and its items with
        the prices just read, then decrement stock with a guarded update.
        """
        for product, quantity in lines:
            # sold-out products are deactivated by the catalog sweep
            if product.stock < quantity:
                raise InsufficientStock(product.product_id, product.name, product.stock)
            if not product.is_active:
                raise ProductNotFound(product.product_id)

        pricing = price_lines(
            ((product.price, quantity) for product, quantity in lines), self.settings
        )
        now = self.clock.now()
        order = Order(
            order_id=self.ids.new_id("ord"),
            user_id=user_id,
            subtotal=pricing.subtotal,
            shipping_fee=pricing.shipping_fee,
            tax=pricing.tax,
            total_price=pricing.total,
            payment_status=payment_status,
            order_status=order_status,
            payment_method=payment_method,
            payment_reference=None,
            shipping_address=address,
            created_at=now,
            updated_at=now,
        )
        await crud.insert_order(conn, order)

        items: List[OrderItem] = []
        for product, quantity in lines:
            item = OrderItem(
                item_id=self.ids.new_id("itm"),
                order_id=order.order_id,
                product_id=product.product_id,
                quantity=quantity,
                price_at_purchase=product.price,
            )
            await crud.insert_order_item(conn, item)
            if not await crud.reserve_stock(conn, product.product_id, quantity):
                current = await crud.fetch_product(conn, product.product_id)
                raise InsufficientStock(
                    product.product_id, product.name, current.stock if current else 0
                )
            items.append(item)

        return OrderDetail(order=order, items=items)

    async def create_order(
        self,
        user_id: str,
        shipping_address: Optional[AddressInput],
        payment_method: str = "gateway",
    ) -> OrderDetail:
        """Turn the user's cart into a pending order, reserving stock."""
        address = validate_address(shipping_address)

        async def work(conn: aiosqlite.Connection) -> OrderDetail:
            cart = await crud.fetch_cart_with_products(conn, user_id)
            if not cart:
                raise EmptyCart(user_id)
            detail = await self._place_order(
                conn,
                user_id,
                [(entry.product, entry.line.quantity) for entry in cart],
                address,
                payment_method=payment_method,
                order_status="pending",
                payment_status="pending",
            )
            await crud.delete_cart(conn, user_id)
            return detail

        try:
            detail = await run_in_transaction(work, label="create_order")
        except ConflictError as exc:
            _logger.warning(f"checkout rejected for user {user_id}: {exc}")
            raise

        order = detail.order
        _logger.info(
            f"order {order.order_id} created for user {user_id}: "
            f"{detail.units} unit(s), total {order.total_price}"
        )
        self.notifier.emit(notices.order_confirmation(order, detail.units))
        self.notifier.emit(
            notices.admin_alert(
                "New Order Placed",
                order_id=order.order_id,
                user_id=user_id,
                total_price=str(order.total_price),
            )
        )
        return detail

    async def create_manual_order(
        self,
        user_id: str,
        items: Iterable[Tuple[str, int]],
        shipping_address: Optional[AddressInput],
        mark_paid: bool = True,
        payment_method: str = "manual",
    ) -> OrderDetail:
        """
        Privileged: place an order for ``user_id`` from an explicit item list.
        The order starts confirmed; when ``mark_paid`` the payment is settled
        and warranties are issued in the same transaction.
        """
        address = validate_address(shipping_address)
        requested = merge_manual_items(items)

        async def work(conn: aiosqlite.Connection) -> Tuple[OrderDetail, List[Warranty]]:
            lines: List[Tuple[Product, int]] = []
            for product_id, quantity in requested:
                product = await crud.fetch_product(conn, product_id)
                if product is None:
                    raise ProductNotFound(product_id)
                lines.append((product, quantity))
            detail = await self._place_order(
                conn,
                user_id,
                lines,
                address,
                payment_method=payment_method,
                order_status="confirmed",
                payment_status="paid" if mark_paid else "pending",
            )
            issued: List[Warranty] = []
            if mark_paid:
                issued = await self.warranties.issue_for_order(
                    conn, detail, detail.order.created_at
                )
            return detail, issued

        detail, issued = await run_in_transaction(work, label="create_manual_order")
        _logger.info(
            f"manual order {detail.order.order_id} created for user {user_id} "
            f"({len(issued)} warranties)"
        )
        self.notifier.emit(notices.order_confirmation(detail.order, detail.units))
        return detail

    # ---------------------------
    # Payment events
    # ---------------------------

    async def _owned_order(
        self, conn: aiosqlite.Connection, order_id: str, user_id: Optional[str]
    ) -> Order:
        order = await crud.fetch_order(conn, order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound(order_id)
        return order

    async def confirm_payment(
        self,
        order_id: str,
        payment_reference: str,
        user_id: Optional[str] = None,
    ) -> OrderDetail:
        """
        Record a successful payment and issue warranties. Replaying the same
        reference is harmless; a different reference on a paid order, or any
        payment on a cancelled/refunded order, is AlreadyProcessed.
        """
        reference = (payment_reference or "").strip()
        if not reference:
            raise ValidationError("Payment reference is required")

        async def work(conn: aiosqlite.Connection) -> Tuple[OrderDetail, bool]:
            order = await self._owned_order(conn, order_id, user_id)
            if order.order_status == "cancelled" or order.payment_status == "refunded":
                raise AlreadyProcessed(order_id, order.payment_status)

            replay = order.payment_status == "paid"
            if replay:
                if order.payment_reference != reference:
                    raise AlreadyProcessed(order_id, order.payment_status)
            else:
                await crud.set_order_status(
                    conn,
                    order_id,
                    self.clock.now(),
                    payment_status="paid",
                    payment_reference=reference,
                    order_status=lifecycle.confirmed_status_after_payment(
                        order.order_status
                    ),
                )

            detail = await crud.fetch_order_detail(conn, order_id)
            await self.warranties.issue_for_order(conn, detail, self.clock.now())
            return detail, replay

        detail, replay = await run_in_transaction(work, label="confirm_payment")
        if replay:
            _logger.info(f"payment {reference} for order {order_id} already recorded")
            return detail

        _logger.info(f"payment {reference} confirmed for order {order_id}")
        self.notifier.emit(
            notices.order_status_update(detail.order, detail.order.order_status)
        )
        return detail

    async def fail_payment(
        self,
        order_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """Record a gateway failure; only a pending payment can fail."""

        async def work(conn: aiosqlite.Connection) -> Order:
            order = await self._owned_order(conn, order_id, user_id)
            if order.order_status == "cancelled" or order.payment_status != "pending":
                raise AlreadyProcessed(order_id, order.payment_status)
            await crud.set_order_status(
                conn, order_id, self.clock.now(), payment_status="failed"
            )
            return await crud.fetch_order(conn, order_id)

        order = await run_in_transaction(work, label="fail_payment")
        _logger.warning(f"payment failed for order {order_id}: {reason or 'no reason'}")
        return order

    # ---------------------------
    # Status management
    # ---------------------------

    async def _cancel_locked(self, conn: aiosqlite.Connection, order: Order) -> None:
        """Restore every item's stock and flip the order to cancelled."""
        for item in await crud.fetch_order_items(conn, order.order_id):
            await crud.release_stock(conn, item.product_id, item.quantity)
        if not await crud.set_order_status(
            conn,
            order.order_id,
            self.clock.now(),
            order_status="cancelled",
            expected_order_status=order.order_status,
        ):
            raise OrderNotCancellable(order.order_id, order.order_status)

    async def update_order_status(
        self,
        order_id: str,
        order_status: Optional[str] = None,
        payment_status: Optional[str] = None,
    ) -> OrderDetail:
        """
        Privileged status change. Setting ``cancelled`` restores stock;
        reaching ``delivered`` or ``paid`` issues any missing warranties.
        Repeating the current status is a no-op apart from that issuance.
        """
        if order_status is None and payment_status is None:
            raise InvalidStatus("order_status", "None", "nothing to update")
        if order_status is not None and order_status not in ORDER_STATUSES:
            raise InvalidStatus("order_status", order_status)
        if payment_status is not None and payment_status not in PAYMENT_STATUSES:
            raise InvalidStatus("payment_status", payment_status)

        async def work(conn: aiosqlite.Connection) -> Tuple[OrderDetail, bool]:
            order = await self._owned_order(conn, order_id, None)
            order_move = (
                lifecycle.check_order_transition(order.order_status, order_status)
                if order_status is not None
                else False
            )
            pay_move = (
                lifecycle.check_payment_transition(order.payment_status, payment_status)
                if payment_status is not None
                else False
            )
            if order.order_status == "cancelled" and pay_move:
                raise InvalidStatus(
                    "payment_status", payment_status, "order is cancelled"
                )

            now = self.clock.now()
            if order_move and order_status == "cancelled":
                await self._cancel_locked(conn, order)
                if pay_move:
                    await crud.set_order_status(
                        conn, order_id, now, payment_status=payment_status
                    )
            elif order_move or pay_move:
                await crud.set_order_status(
                    conn,
                    order_id,
                    now,
                    order_status=order_status if order_move else None,
                    payment_status=payment_status if pay_move else None,
                )

            detail = await crud.fetch_order_detail(conn, order_id)
            if detail.order.order_status == "delivered" or (
                detail.order.payment_status == "paid" and payment_status == "paid"
            ):
                await self.warranties.issue_for_order(conn, detail, now)
            return detail, order_move or pay_move

        detail, changed = await run_in_transaction(work, label="update_order_status")
        if not changed:
            return detail

        order = detail.order
        _logger.info(
            f"order {order_id} now {order.order_status}/{order.payment_status}"
        )
        self.notifier.emit(notices.order_status_update(order, order.order_status))
        self.notifier.emit(
            notices.admin_alert(
                "Order Status Changed",
                order_id=order_id,
                user_id=order.user_id,
                new_status=order.order_status,
                payment_status=order.payment_status,
            )
        )
        return detail

    async def cancel_order(
        self, order_id: str, user_id: Optional[str] = None
    ) -> OrderDetail:
        """Cancel anything not yet delivered, returning its units to stock."""

        async def work(conn: aiosqlite.Connection) -> OrderDetail:
            order = await self._owned_order(conn, order_id, user_id)
            if not lifecycle.is_cancellable(order.order_status):
                raise OrderNotCancellable(order_id, order.order_status)
            await self._cancel_locked(conn, order)
            return await crud.fetch_order_detail(conn, order_id)

        try:
            detail = await run_in_transaction(work, label="cancel_order")
        except OrderNotCancellable as exc:
            _logger.warning(str(exc))
            raise

        _logger.info(f"order {order_id} cancelled, {detail.units} unit(s) restocked")
        self.notifier.emit(notices.order_status_update(detail.order, "cancelled"))
        return detail

    async def apply_progression(
        self, step: lifecycle.ProgressionStep
    ) -> Optional[OrderDetail]:
        """
        Advance one order as planned by the sweep. Compare-and-set on the
        expected status, so an order changed meanwhile is left alone (None).
        Deliveries issue warranties exactly like a direct update.
        """

        async def work(conn: aiosqlite.Connection) -> Optional[OrderDetail]:
            now = self.clock.now()
            if not await crud.set_order_status(
                conn,
                step.order_id,
                now,
                order_status=step.to_status,
                expected_order_status=step.from_status,
            ):
                return None
            detail = await crud.fetch_order_detail(conn, step.order_id)
            if step.to_status == "delivered":
                await self.warranties.issue_for_order(conn, detail, now)
            return detail

        detail = await run_in_transaction(work, label="apply_progression")
        if detail is None:
            _logger.debug(f"order {step.order_id} moved on before the sweep, skipped")
            return None

        tracking = (
            lifecycle.tracking_number(step.order_id)
            if step.to_status == "shipped"
            else None
        )
        _logger.info(f"order {step.order_id} auto-advanced to {step.to_status}")
        self.notifier.emit(
            notices.order_status_update(detail.order, step.to_status, tracking)
        )
        return detail

    # ---------------------------
    # Reads
    # ---------------------------

    async def get_order(
        self, order_id: str, user_id: Optional[str] = None
    ) -> OrderDetail:
        detail = await crud.get_order_detail(order_id)
        if detail is None or (user_id is not None and detail.order.user_id != user_id):
            raise OrderNotFound(order_id)
        return detail

    async def list_orders(
        self, user_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Order]:
        return await crud.list_orders(user_id, status)

    async def order_warranties(self, order_id: str) -> List[Warranty]:
        return await crud.list_order_warranties(order_id)
