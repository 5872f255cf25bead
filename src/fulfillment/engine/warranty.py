"""Warranty issuance and manual registration.

Auto warranties are keyed by (order, product, unit): each purchased unit gets
exactly one row with a deterministic serial number, and the unique index on
that key turns repeated issuance for the same order into a no-op.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import aiosqlite

from fulfillment.db import crud
from fulfillment.db.database import run_in_transaction
from fulfillment.db.models import OrderDetail, Warranty
from fulfillment.engine.errors import (
    DuplicateSerial,
    OrderNotFound,
    ProductNotFound,
    ValidationError,
    WarrantyNotFound,
)
from fulfillment.engine.ports import Clock, IdGenerator, SystemClock, UuidIdGenerator
from fulfillment.services import notifier as notices
from fulfillment.services.notifier import Notifier
from fulfillment.utils.logger import get_logger
from fulfillment.utils.pure import add_months, as_utc

_logger = get_logger(__name__)


def auto_serial(order_id: str, product_id: str, unit_index: int) -> str:
    return f"AUTO-{order_id}-{product_id}-{unit_index}"


@dataclass
class WarrantyEngine:
    clock: Clock = field(default_factory=SystemClock)
    ids: IdGenerator = field(default_factory=UuidIdGenerator)
    notifier: Notifier = field(default_factory=Notifier)

    async def issue_for_order(
        self,
        conn: aiosqlite.Connection,
        detail: OrderDetail,
        purchase_date: datetime,
    ) -> List[Warranty]:
        """
        Issue one auto warranty per purchased unit inside the caller's
        transaction. Returns only the rows written by this call.
        """
        if detail.order.order_status == "cancelled":
            _logger.warning(
                f"skipping warranty issuance for cancelled order {detail.order.order_id}"
            )
            return []

        created: List[Warranty] = []
        now = self.clock.now()
        for item in detail.items:
            product = await crud.fetch_product(conn, item.product_id)
            if product is None or product.warranty_months <= 0:
                continue
            expiry = add_months(purchase_date, product.warranty_months)
            for unit in range(1, item.quantity + 1):
                warranty = Warranty(
                    warranty_id=self.ids.new_id("wty"),
                    user_id=detail.order.user_id,
                    product_id=product.product_id,
                    order_id=detail.order.order_id,
                    unit_index=unit,
                    purchase_date=purchase_date,
                    expiry_date=expiry,
                    serial_number=auto_serial(
                        detail.order.order_id, product.product_id, unit
                    ),
                    invoice_url=None,
                    registration_type="auto",
                    created_at=now,
                )
                if await crud.insert_warranty_once(conn, warranty):
                    created.append(warranty)

        if created:
            _logger.info(
                f"issued {len(created)} warranties for order {detail.order.order_id}"
            )
        else:
            _logger.debug(f"no new warranties for order {detail.order.order_id}")
        return created

    async def issue_auto_warranties(
        self, order_id: str, purchase_date: Optional[datetime] = None
    ) -> List[Warranty]:
        """Standalone issuance for an order; safe to call any number of times."""
        when = as_utc(purchase_date) if purchase_date else self.clock.now()

        async def work(conn: aiosqlite.Connection) -> List[Warranty]:
            detail = await crud.fetch_order_detail(conn, order_id)
            if detail is None:
                raise OrderNotFound(order_id)
            return await self.issue_for_order(conn, detail, when)

        return await run_in_transaction(work, label="issue_auto_warranties")

    async def register_warranty(
        self,
        user_id: str,
        product_id: str,
        purchase_date: datetime,
        serial_number: Optional[str] = None,
        invoice_url: Optional[str] = None,
    ) -> Warranty:
        """Manual registration by a customer, expiry from current warranty_months."""
        purchase_date = as_utc(purchase_date)
        serial_number = (serial_number or "").strip() or None
        now = self.clock.now()
        if purchase_date > now:
            raise ValidationError("Purchase date cannot be in the future")

        async def work(conn: aiosqlite.Connection) -> Warranty:
            product = await crud.fetch_product(conn, product_id)
            if product is None or not product.is_active:
                raise ProductNotFound(product_id)
            if serial_number and await crud.serial_exists(conn, serial_number):
                raise DuplicateSerial(serial_number)

            warranty = Warranty(
                warranty_id=self.ids.new_id("wty"),
                user_id=user_id,
                product_id=product_id,
                order_id=None,
                unit_index=None,
                purchase_date=purchase_date,
                expiry_date=add_months(purchase_date, product.warranty_months),
                serial_number=serial_number,
                invoice_url=invoice_url,
                registration_type="manual",
                created_at=now,
            )
            try:
                await crud.insert_warranty(conn, warranty)
            except sqlite3.IntegrityError as exc:
                # lost a race with another registration of the same serial
                raise DuplicateSerial(serial_number or "") from exc
            return warranty

        warranty = await run_in_transaction(work, label="register_warranty")
        _logger.info(
            f"registered manual warranty {warranty.warranty_id} for user {user_id}"
        )
        self.notifier.emit(notices.warranty_registered(warranty))
        return warranty

    async def get_warranty(
        self, warranty_id: str, user_id: Optional[str] = None
    ) -> Warranty:
        warranty = await crud.get_warranty(warranty_id)
        if warranty is None or (user_id is not None and warranty.user_id != user_id):
            raise WarrantyNotFound(warranty_id)
        return warranty

    async def list_warranties(
        self, user_id: Optional[str] = None, status: str = "all"
    ) -> List[Warranty]:
        if status not in ("all", "active", "expired"):
            raise ValidationError(f"Unknown warranty filter: {status}")
        return await crud.list_warranties(user_id, status, self.clock.now())
