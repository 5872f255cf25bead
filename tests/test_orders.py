import asyncio
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from support import ADDRESS, DbTestCase

from fulfillment.db import crud
from fulfillment.engine.errors import (
    AlreadyProcessed,
    EmptyCart,
    InsufficientStock,
    InvalidAddress,
    InvalidStatus,
    OrderNotCancellable,
    OrderNotFound,
    ProductNotFound,
    ValidationError,
)
from fulfillment.engine.orders import merge_manual_items, validate_address


class CheckoutTestCase(DbTestCase):
    async def test_checkout_then_payment_issues_one_warranty_per_unit(self):
        await self.add_product("p1", price="100", stock=3, warranty_months=12)

        detail = await self.checkout("u1", "p1", 2)
        order = detail.order
        self.assertEqual(order.subtotal, Decimal("200"))
        self.assertEqual(order.shipping_fee, Decimal("50"))
        self.assertEqual(order.total_price, Decimal("250"))
        self.assertEqual((order.order_status, order.payment_status), ("pending", "pending"))
        self.assertEqual(await self.stock_of("p1"), 1)
        self.assertEqual(await crud.list_cart("u1"), [])

        paid = await self.orders.confirm_payment(order.order_id, "pay_123")
        self.assertEqual(paid.order.payment_status, "paid")
        self.assertEqual(paid.order.order_status, "confirmed")
        self.assertEqual(paid.order.payment_reference, "pay_123")

        warranties = await self.orders.order_warranties(order.order_id)
        self.assertEqual(len(warranties), 2)
        self.assertEqual({w.unit_index for w in warranties}, {1, 2})
        for w in warranties:
            self.assertEqual(w.registration_type, "auto")
            self.assertEqual(w.user_id, "u1")
            self.assertEqual(w.purchase_date, self.clock.now())
            self.assertEqual(
                w.expiry_date, datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
            )
        self.assertEqual(len({w.serial_number for w in warranties}), 2)

    async def test_free_shipping_above_threshold(self):
        await self.add_product("p1", price="600", stock=5)
        detail = await self.checkout("u1", "p1", 2)
        self.assertEqual(detail.order.shipping_fee, Decimal("0"))
        self.assertEqual(detail.order.total_price, Decimal("1200"))

    async def test_checkout_notifications_after_commit(self):
        await self.add_product("p1")
        detail = await self.checkout("u1", "p1", 1)
        await self.notifier.drain()
        self.assertEqual(self.sink.kinds(), ["order_confirmation", "admin_alert"])
        self.assertIn("New Order Placed", self.sink.subjects())
        self.assertEqual(self.sink.sent[0].payload["order_id"], detail.order.order_id)

    async def test_empty_cart(self):
        with self.assertRaises(EmptyCart):
            await self.orders.create_order("u1", ADDRESS)

    async def test_incomplete_address_rejected_before_anything_changes(self):
        await self.add_product("p1", stock=3)
        await crud.add_to_cart("u1", "p1", 1, self.clock.now())
        with self.assertRaises(InvalidAddress) as ctx:
            await self.orders.create_order(
                "u1", {"recipient_name": "Ada", "street": "1 Main St", "city": " "}
            )
        self.assertEqual(ctx.exception.missing, ["city", "postal_code"])
        self.assertEqual(await self.stock_of("p1"), 3)
        self.assertEqual(len(await crud.list_cart("u1")), 1)

    async def test_stock_drop_between_cart_and_checkout_leaves_cart(self):
        await self.add_product("p1", stock=3)
        await crud.add_to_cart("u1", "p1", 2, self.clock.now())
        await self.orders.create_manual_order("u2", [("p1", 2)], ADDRESS)

        with self.assertRaises(InsufficientStock) as ctx:
            await self.orders.create_order("u1", ADDRESS)
        self.assertEqual(ctx.exception.available, 1)
        self.assertEqual(await self.stock_of("p1"), 1)
        self.assertEqual(len(await crud.list_cart("u1")), 1)
        self.assertEqual(await self.orders.list_orders(user_id="u1"), [])

    async def test_inactive_product_in_cart(self):
        await self.add_product("p1", stock=3)
        await crud.add_to_cart("u1", "p1", 1, self.clock.now())
        async with crud.connect() as conn:
            await conn.execute("UPDATE products SET is_active = 0 WHERE product_id = 'p1';")
        with self.assertRaises(ProductNotFound):
            await self.orders.create_order("u1", ADDRESS)

    async def test_sold_out_product_deactivated_by_sweep(self):
        await self.add_product("p1", stock=1)
        await crud.add_to_cart("u1", "p1", 1, self.clock.now())
        await self.orders.create_manual_order("u2", [("p1", 1)], ADDRESS)
        await self.sweeps.reconcile_catalog()

        with self.assertRaises(InsufficientStock) as ctx:
            await self.orders.create_order("u1", ADDRESS)
        self.assertEqual(ctx.exception.product_id, "p1")
        self.assertEqual(ctx.exception.available, 0)
        self.assertEqual(len(await crud.list_cart("u1")), 1)

    async def test_concurrent_checkouts_never_oversell(self):
        await self.add_product("p1", price="100", stock=3)
        await crud.add_to_cart("u1", "p1", 2, self.clock.now())
        await crud.add_to_cart("u2", "p1", 2, self.clock.now())

        results = await asyncio.gather(
            self.orders.create_order("u1", ADDRESS),
            self.orders.create_order("u2", ADDRESS),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], InsufficientStock)
        self.assertEqual(await self.stock_of("p1"), 1)
        self.assertEqual(len(await self.orders.list_orders()), 1)

    async def test_many_concurrent_single_unit_checkouts(self):
        await self.add_product("p1", stock=3)
        users = [f"u{i}" for i in range(6)]
        for user in users:
            await crud.add_to_cart(user, "p1", 1, self.clock.now())

        results = await asyncio.gather(
            *(self.orders.create_order(u, ADDRESS) for u in users),
            return_exceptions=True,
        )
        placed = [r for r in results if not isinstance(r, Exception)]
        self.assertEqual(len(placed), 3)
        self.assertTrue(
            all(isinstance(r, InsufficientStock) for r in results if r not in placed)
        )
        self.assertEqual(await self.stock_of("p1"), 0)

    async def test_price_snapshot_survives_catalog_change(self):
        await self.add_product("p1", price="100", stock=3)
        detail = await self.checkout("u1", "p1", 2)
        await crud.update_product_price("p1", Decimal("500"))

        again = await self.orders.get_order(detail.order.order_id)
        self.assertEqual(again.items[0].price_at_purchase, Decimal("100"))
        self.assertEqual(again.order.total_price, Decimal("250"))

    async def test_get_order_hides_other_users(self):
        await self.add_product("p1")
        detail = await self.checkout("u1", "p1", 1)
        self.assertEqual(
            (await self.orders.get_order(detail.order.order_id, "u1")).order.user_id,
            "u1",
        )
        with self.assertRaises(OrderNotFound):
            await self.orders.get_order(detail.order.order_id, "u2")
        with self.assertRaises(OrderNotFound):
            await self.orders.get_order("ord_missing")


class PaymentTestCase(DbTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.add_product("p1", price="100", stock=3, warranty_months=12)
        self.detail = await self.checkout("u1", "p1", 2)
        self.order_id = self.detail.order.order_id

    async def test_confirm_payment_is_idempotent(self):
        await self.orders.confirm_payment(self.order_id, "pay_1")
        replay = await self.orders.confirm_payment(self.order_id, "pay_1")
        self.assertEqual(replay.order.payment_status, "paid")
        self.assertEqual(len(await self.orders.order_warranties(self.order_id)), 2)
        self.assertEqual(
            await self.warranties.issue_auto_warranties(self.order_id), []
        )
        self.assertEqual(len(await self.orders.order_warranties(self.order_id)), 2)

    async def test_confirm_payment_with_new_reference_rejected(self):
        await self.orders.confirm_payment(self.order_id, "pay_1")
        with self.assertRaises(AlreadyProcessed):
            await self.orders.confirm_payment(self.order_id, "pay_2")

    async def test_confirm_payment_validation(self):
        with self.assertRaises(ValidationError):
            await self.orders.confirm_payment(self.order_id, "   ")
        with self.assertRaises(OrderNotFound):
            await self.orders.confirm_payment(self.order_id, "pay_1", user_id="u2")
        with self.assertRaises(OrderNotFound):
            await self.orders.confirm_payment("ord_missing", "pay_1")

    async def test_confirm_payment_on_cancelled_order(self):
        await self.orders.cancel_order(self.order_id)
        with self.assertRaises(AlreadyProcessed):
            await self.orders.confirm_payment(self.order_id, "pay_1")
        self.assertEqual(await self.orders.order_warranties(self.order_id), [])

    async def test_fail_then_retry_payment(self):
        failed = await self.orders.fail_payment(self.order_id, reason="card declined")
        self.assertEqual(failed.payment_status, "failed")
        with self.assertRaises(AlreadyProcessed):
            await self.orders.fail_payment(self.order_id)

        paid = await self.orders.confirm_payment(self.order_id, "pay_retry")
        self.assertEqual(paid.order.payment_status, "paid")
        self.assertEqual(len(await self.orders.order_warranties(self.order_id)), 2)

    async def test_payment_does_not_roll_order_status_back(self):
        await self.orders.update_order_status(self.order_id, order_status="shipped")
        paid = await self.orders.confirm_payment(self.order_id, "pay_1")
        self.assertEqual(paid.order.order_status, "shipped")


class StatusTestCase(DbTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.add_product("p1", price="100", stock=5, warranty_months=6)
        self.detail = await self.checkout("u1", "p1", 2)
        self.order_id = self.detail.order.order_id

    async def test_cancel_restores_stock_once(self):
        self.assertEqual(await self.stock_of("p1"), 3)
        cancelled = await self.orders.cancel_order(self.order_id, user_id="u1")
        self.assertEqual(cancelled.order.order_status, "cancelled")
        self.assertEqual(await self.stock_of("p1"), 5)

        with self.assertRaises(OrderNotCancellable):
            await self.orders.cancel_order(self.order_id)
        self.assertEqual(await self.stock_of("p1"), 5)

    async def test_cancel_someone_elses_order(self):
        with self.assertRaises(OrderNotFound):
            await self.orders.cancel_order(self.order_id, user_id="u2")
        self.assertEqual(await self.stock_of("p1"), 3)

    async def test_delivered_orders_cannot_be_cancelled(self):
        await self.orders.update_order_status(self.order_id, order_status="delivered")
        with self.assertRaises(OrderNotCancellable):
            await self.orders.cancel_order(self.order_id)
        with self.assertRaises(InvalidStatus):
            await self.orders.update_order_status(self.order_id, order_status="cancelled")
        self.assertEqual(await self.stock_of("p1"), 3)

    async def test_shipped_orders_can_be_cancelled(self):
        await self.orders.update_order_status(self.order_id, order_status="shipped")
        await self.orders.cancel_order(self.order_id)
        self.assertEqual(await self.stock_of("p1"), 5)

    async def test_cancel_through_status_update_restocks(self):
        detail = await self.orders.update_order_status(
            self.order_id, order_status="cancelled"
        )
        self.assertEqual(detail.order.order_status, "cancelled")
        self.assertEqual(await self.stock_of("p1"), 5)
        with self.assertRaises(InvalidStatus):
            await self.orders.update_order_status(self.order_id, payment_status="paid")

    async def test_delivery_issues_warranties_and_is_idempotent(self):
        first = await self.orders.update_order_status(
            self.order_id, order_status="delivered"
        )
        self.assertEqual(first.order.order_status, "delivered")
        self.assertEqual(len(await self.orders.order_warranties(self.order_id)), 2)

        await self.notifier.drain()
        sent_before = len(self.sink.sent)
        again = await self.orders.update_order_status(
            self.order_id, order_status="delivered"
        )
        self.assertEqual(again.order.order_status, "delivered")
        self.assertEqual(len(await self.orders.order_warranties(self.order_id)), 2)
        await self.notifier.drain()
        self.assertEqual(len(self.sink.sent), sent_before)

    async def test_status_change_notifies_customer_and_admin(self):
        await self.notifier.drain()
        self.sink.sent.clear()
        await self.orders.update_order_status(self.order_id, order_status="shipped")
        await self.notifier.drain()
        self.assertEqual(self.sink.kinds(), ["order_status_update", "admin_alert"])
        self.assertEqual(self.sink.sent[1].subject, "Order Status Changed")

    async def test_payment_only_change_notifies_customer_and_admin(self):
        await self.orders.confirm_payment(self.order_id, "pay_1")
        await self.notifier.drain()
        self.sink.sent.clear()

        await self.orders.update_order_status(self.order_id, payment_status="refunded")
        await self.notifier.drain()
        self.assertEqual(self.sink.kinds(), ["order_status_update", "admin_alert"])
        self.assertEqual(self.sink.sent[0].payload["payment_status"], "refunded")
        self.assertEqual(self.sink.sent[1].payload["payment_status"], "refunded")

    async def test_invalid_transitions(self):
        with self.assertRaises(InvalidStatus):
            await self.orders.update_order_status(self.order_id, order_status="lost")
        with self.assertRaises(InvalidStatus):
            await self.orders.update_order_status(self.order_id)

        await self.orders.update_order_status(self.order_id, order_status="shipped")
        with self.assertRaises(InvalidStatus):
            await self.orders.update_order_status(self.order_id, order_status="confirmed")

        await self.orders.update_order_status(self.order_id, payment_status="paid")
        with self.assertRaises(InvalidStatus):
            await self.orders.update_order_status(self.order_id, payment_status="pending")

    async def test_admin_marking_paid_issues_warranties(self):
        await self.orders.update_order_status(self.order_id, payment_status="paid")
        self.assertEqual(len(await self.orders.order_warranties(self.order_id)), 2)

    async def test_update_missing_order(self):
        with self.assertRaises(OrderNotFound):
            await self.orders.update_order_status("ord_missing", order_status="shipped")


class StockConservationTestCase(DbTestCase):
    """Stock on hand plus units held by live orders never changes."""

    TOTAL = 10

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.add_product("p1", stock=self.TOTAL)

    async def assertConserved(self):
        held = 0
        for order in await self.orders.list_orders():
            if order.order_status != "cancelled":
                held += (await self.orders.get_order(order.order_id)).units
        self.assertEqual(await self.stock_of("p1") + held, self.TOTAL)

    async def test_mixed_creates_and_cancels(self):
        first = await self.checkout("u1", "p1", 2)
        await self.assertConserved()
        second = await self.orders.create_manual_order("u2", [("p1", 3)], ADDRESS)
        await self.assertConserved()
        third = await self.checkout("u3", "p1", 1)
        await self.assertConserved()

        await self.orders.cancel_order(first.order.order_id, user_id="u1")
        await self.assertConserved()
        await self.orders.update_order_status(
            second.order.order_id, order_status="cancelled"
        )
        await self.assertConserved()

        results = await asyncio.gather(
            self.orders.cancel_order(third.order.order_id),
            self.orders.cancel_order(third.order.order_id),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], OrderNotCancellable)
        await self.assertConserved()
        self.assertEqual(await self.stock_of("p1"), self.TOTAL)

        fourth = await self.checkout("u1", "p1", 4)
        await self.assertConserved()
        await asyncio.gather(
            self.orders.update_order_status(
                fourth.order.order_id, order_status="cancelled"
            ),
            self.orders.cancel_order(fourth.order.order_id),
            return_exceptions=True,
        )
        await self.assertConserved()
        self.assertEqual(await self.stock_of("p1"), self.TOTAL)

    async def test_checkouts_racing_cancels(self):
        placed = await self.checkout("u1", "p1", 5)
        for user in ("u2", "u3", "u4"):
            await crud.add_to_cart(user, "p1", 3, self.clock.now())

        await asyncio.gather(
            self.orders.cancel_order(placed.order.order_id),
            self.orders.create_order("u2", ADDRESS),
            self.orders.create_order("u3", ADDRESS),
            self.orders.create_order("u4", ADDRESS),
            return_exceptions=True,
        )
        await self.assertConserved()
        self.assertGreaterEqual(await self.stock_of("p1"), 0)


class ManualOrderTestCase(DbTestCase):
    async def test_manual_order_is_paid_and_warrantied(self):
        await self.add_product("p1", price="100", stock=5, warranty_months=12)
        await self.add_product("p2", price="10", stock=5, warranty_months=0)

        detail = await self.orders.create_manual_order(
            "u9", [("p1", 1), ("p2", 1), ("p1", 1)], ADDRESS
        )
        order = detail.order
        self.assertEqual((order.order_status, order.payment_status), ("confirmed", "paid"))
        self.assertEqual(order.payment_method, "manual")
        self.assertEqual(len(detail.items), 2)
        self.assertEqual(order.subtotal, Decimal("210"))
        self.assertEqual(await self.stock_of("p1"), 3)
        self.assertEqual(await self.stock_of("p2"), 4)

        warranties = await self.orders.order_warranties(order.order_id)
        self.assertEqual([w.product_id for w in warranties], ["p1", "p1"])

    async def test_unpaid_manual_order_has_no_warranties_yet(self):
        await self.add_product("p1", stock=5)
        detail = await self.orders.create_manual_order(
            "u9", [("p1", 2)], ADDRESS, mark_paid=False
        )
        self.assertEqual(detail.order.payment_status, "pending")
        self.assertEqual(await self.orders.order_warranties(detail.order.order_id), [])

    async def test_manual_order_rejections(self):
        await self.add_product("p1", stock=1)
        with self.assertRaises(ValidationError):
            await self.orders.create_manual_order("u9", [], ADDRESS)
        with self.assertRaises(ProductNotFound):
            await self.orders.create_manual_order("u9", [("ghost", 1)], ADDRESS)
        with self.assertRaises(InsufficientStock):
            await self.orders.create_manual_order("u9", [("p1", 2)], ADDRESS)
        with self.assertRaises(InvalidAddress):
            await self.orders.create_manual_order("u9", [("p1", 1)], None)
        self.assertEqual(await self.stock_of("p1"), 1)


class HelperTestCase(unittest.TestCase):
    def test_merge_manual_items(self):
        self.assertEqual(
            merge_manual_items([("a", 1), ("b", 2), ("a", 3)]), [("a", 4), ("b", 2)]
        )
        with self.assertRaises(ValidationError):
            merge_manual_items([("a", 0)])

    def test_validate_address_accepts_mapping(self):
        address = validate_address(
            {
                "recipient_name": "Ada",
                "street": "1 Main St",
                "city": "Springfield",
                "postal_code": "12345",
                "phone": "555-0100",
            }
        )
        self.assertEqual(address.phone, "555-0100")
        with self.assertRaises(InvalidAddress):
            validate_address(None)


if __name__ == "__main__":
    unittest.main()
