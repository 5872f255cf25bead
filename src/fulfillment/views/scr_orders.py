import asyncio
from typing import List, Optional

from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.events import ScreenResume
from textual.reactive import reactive
from textual.widgets import Button, DataTable, MarkdownViewer, Select

from fulfillment.db import crud
from fulfillment.db.models import ORDER_STATUSES, OrderDetail, Product, Warranty
from fulfillment.engine.errors import FulfillmentError
from fulfillment.utils.messages import (
    ModeSwitchedMessage,
    OrdersChangedMessage,
    SweepFinishedMessage,
)
from fulfillment.utils.pure import generate_markdown_table
from fulfillment.views.base_screen import BaseScreen
from fulfillment.views.modal_dialog import DialogModal, PromptModal


class OrderManagementScreen(BaseScreen):
    """
    Operators browse every order, newest first, and push it through its
    lifecycle.

    Layout:
    - Markdown detail view at the top (address, lines, issued warranties).
    - Orders table below, filterable by order status.
    - Action buttons under the table.
    """

    DEFAULT_CSS = """
    OrderManagementScreen #md-order-detail {
        height: 1fr;
    }
    OrderManagementScreen #table-orders {
        height: 1fr;
    }
    OrderManagementScreen #hort-order-actions {
        height: auto;
    }
    OrderManagementScreen #select-status {
        width: 24;
    }
    """

    status_filter = reactive("all")
    selected_order = reactive[Optional[str]](None)

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical():
            yield MarkdownViewer(id="md-order-detail", show_table_of_contents=False)
            yield DataTable(id="table-orders")
        with Horizontal(id="hort-order-actions"):
            yield Select(
                [(s.title(), s) for s in ("all", *ORDER_STATUSES)],
                value="all",
                allow_blank=False,
                id="select-status",
            )
            yield Button("Refresh", id="btn-refresh")
            yield Button("Mark Paid", id="btn-paid", variant="success")
            yield Button("Ship", id="btn-ship", variant="primary")
            yield Button("Deliver", id="btn-deliver", variant="primary")
            yield Button("Refund", id="btn-refund", variant="warning")
            yield Button("Cancel Order", id="btn-cancel", variant="error")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.cursor_type = "row"
        table.zebra_stripes = True
        table.add_columns(
            "Order ID", "Customer", "Created", "Status", "Payment", "Total ($)"
        )

    @on(Button.Pressed, "#btn-refresh")
    @on(ModeSwitchedMessage)
    @on(ScreenResume)
    @on(OrdersChangedMessage)
    @on(SweepFinishedMessage)
    async def handle_refresh(self):
        self._load_orders()

    @on(Select.Changed, "#select-status")
    def handle_filter(self, event: Select.Changed) -> None:
        self.status_filter = str(event.value)

    def watch_status_filter(self, old: str, new: str) -> None:
        if self.is_mounted:
            self._load_orders()

    @on(DataTable.RowHighlighted)
    def handle_row_highlight(self) -> None:
        table = self.query_one(DataTable)
        if table.row_count == 0 or table.cursor_row is None:
            self.selected_order = None
            return
        self.selected_order = str(table.get_row_at(table.cursor_row)[0])

    def watch_selected_order(self, old: Optional[str], new: Optional[str]) -> None:
        self._load_and_render_detail(new)

    @work(exclusive=True, group="orders")
    async def _load_orders(self) -> None:
        orders = await self.app.orders.list_orders(status=self.status_filter)
        table = self.query_one(DataTable)
        table.clear()
        for o in orders:
            table.add_row(
                o.order_id,
                o.user_id,
                o.created_at.strftime("%Y-%m-%d %H:%M"),
                o.order_status,
                o.payment_status,
                f"{o.total_price:.2f}",
            )
        if orders:
            table.cursor_coordinate = (0, 0)
            self.selected_order = orders[0].order_id
            # same id as before does not trigger the watcher
            self._load_and_render_detail(self.selected_order)
        else:
            self.selected_order = None

    @work(exclusive=True, group="order-detail")
    async def _load_and_render_detail(self, order_id: Optional[str]) -> None:
        if order_id is None:
            self._render_detail(None, [], [])
            return
        try:
            detail = await self.app.orders.get_order(order_id)
        except FulfillmentError:
            self._render_detail(None, [], [])
            return
        prods = await asyncio.gather(
            *(crud.get_product(item.product_id) for item in detail.items)
        )
        warranties = await self.app.orders.order_warranties(order_id)
        self._render_detail(detail, list(prods), warranties)

    def _render_detail(
        self,
        detail: Optional[OrderDetail],
        products: List[Optional[Product]],
        warranties: List[Warranty],
    ) -> None:
        viewer = self.query_one("#md-order-detail", MarkdownViewer)
        if detail is None:
            viewer.document.update("### Select an order to view its details.")
            return

        order = detail.order
        addr = order.shipping_address
        header = (
            f"### Order {order.order_id}\n"
            f"Customer: {order.user_id}  \n"
            f"Status: **{order.order_status}** / payment **{order.payment_status}**"
            f" ({order.payment_method or '-'}, ref {order.payment_reference or '-'})  \n"
            f"Ship To: {addr.recipient_name}, {addr.street}, {addr.city} {addr.postal_code}\n\n"
        )
        rows = []
        for item, prod in zip(detail.items, products):
            rows.append(
                [
                    prod.name if prod else item.product_id,
                    item.quantity,
                    f"{item.price_at_purchase:.2f}",
                    f"{item.price_at_purchase * item.quantity:.2f}",
                ]
            )
        lines = generate_markdown_table(
            ["Product", "Qty", "Unit Price", "Line Total"], rows, ["l", "r", "r", "r"]
        )
        totals = (
            f"\n\nSubtotal: ${order.subtotal:.2f}  \n"
            f"Shipping: ${order.shipping_fee:.2f}  \n"
            f"Tax: ${order.tax:.2f}  \n"
            f"**Grand Total:** ${order.total_price:.2f}\n\n"
        )
        if warranties:
            w_rows = [
                [w.serial_number, w.product_id, w.expiry_date.strftime("%Y-%m-%d")]
                for w in warranties
            ]
            issued = "#### Warranties\n" + generate_markdown_table(
                ["Serial", "Product", "Expires"], w_rows
            )
        else:
            issued = "_No warranties issued yet._"
        viewer.document.update(header + lines + totals + issued)

    async def _confirm(self, caption: str, tone: str = "warning") -> bool:
        return await self.app.push_screen_wait(
            DialogModal(caption, primary_text="Yes", secondary_text="No", tone=tone)
        )

    async def _apply(self, action) -> None:
        try:
            detail = await action
        except FulfillmentError as exc:
            self.report_error(exc)
            return
        self.app.notify(
            f"Order {detail.order.order_id}: {detail.order.order_status}"
            f" / {detail.order.payment_status}"
        )
        self.post_message(OrdersChangedMessage())

    @on(Button.Pressed, "#btn-paid")
    @work()
    async def handle_mark_paid(self) -> None:
        if self.selected_order is None:
            return
        reference = await self.app.push_screen_wait(
            PromptModal("Payment reference", placeholder="e.g. gateway transaction id")
        )
        if not reference:
            return
        await self._apply(
            self.app.orders.confirm_payment(self.selected_order, reference)
        )

    @on(Button.Pressed, "#btn-ship")
    @work()
    async def handle_ship(self) -> None:
        if self.selected_order is None:
            return
        await self._apply(
            self.app.orders.update_order_status(self.selected_order, "shipped")
        )

    @on(Button.Pressed, "#btn-deliver")
    @work()
    async def handle_deliver(self) -> None:
        if self.selected_order is None:
            return
        await self._apply(
            self.app.orders.update_order_status(self.selected_order, "delivered")
        )

    @on(Button.Pressed, "#btn-refund")
    @work()
    async def handle_refund(self) -> None:
        if self.selected_order is None:
            return
        if not await self._confirm(f"Mark order {self.selected_order} as refunded?"):
            return
        await self._apply(
            self.app.orders.update_order_status(
                self.selected_order, payment_status="refunded"
            )
        )

    @on(Button.Pressed, "#btn-cancel")
    @work()
    async def handle_cancel(self) -> None:
        if self.selected_order is None:
            return
        if not await self._confirm(
            f"Cancel order {self.selected_order} and restock its items?", tone="error"
        ):
            return
        await self._apply(self.app.orders.cancel_order(self.selected_order))
