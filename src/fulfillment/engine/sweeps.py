"""Periodic maintenance jobs.

Each job is an ordinary coroutine the operator console (or any scheduler)
calls; none of them loops or sleeps on its own. Writes go through the same
guarded transactional paths as user requests.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fulfillment.db import crud
from fulfillment.db.database import run_in_transaction
from fulfillment.db.models import Order, Product, Warranty
from fulfillment.engine import lifecycle
from fulfillment.engine.errors import StorageError
from fulfillment.engine.orders import OrderEngine
from fulfillment.services import notifier as notices
from fulfillment.utils.logger import get_logger

_logger = get_logger(__name__)


@dataclass
class SweepRunner:
    orders: OrderEngine

    @property
    def settings(self):
        return self.orders.settings

    async def run_order_progression(self, now: Optional[datetime] = None) -> int:
        """Advance due confirmed/shipped orders one step. Returns orders moved."""
        now = now or self.orders.clock.now()
        cutoffs = lifecycle.progression_cutoffs(now, self.settings)
        candidates: List[Order] = []
        for status, cutoff in cutoffs.items():
            candidates.extend(await crud.list_orders_created_before(status, cutoff))

        moved = 0
        for step in lifecycle.plan_auto_progression(now, candidates, self.settings):
            try:
                if await self.orders.apply_progression(step) is not None:
                    moved += 1
            except StorageError:
                _logger.exception(f"could not advance order {step.order_id}")
        _logger.info(f"order progression: {moved}/{len(candidates)} advanced")
        return moved

    async def reconcile_catalog(self) -> Tuple[int, int]:
        """Sold-out products go inactive, restocked ones come back."""
        deactivated, reactivated = await run_in_transaction(
            crud.reconcile_product_activity, label="reconcile_catalog"
        )
        if deactivated or reactivated:
            _logger.info(
                f"catalog: {deactivated} marked out of stock, {reactivated} back in stock"
            )
        return deactivated, reactivated

    async def scan_low_stock(self) -> List[Product]:
        products = await crud.list_low_stock(self.settings.low_stock_threshold)
        for product in products:
            self.orders.notifier.emit(notices.low_stock_alert(product))
        _logger.info(f"low stock alerts sent for {len(products)} products")
        return products

    async def send_expiry_reminders(self, now: Optional[datetime] = None) -> int:
        """Remind owners once per warranty when it enters the reminder window."""
        now = now or self.orders.clock.now()
        horizon = now + timedelta(days=self.settings.expiry_reminder_days)

        async def work(conn) -> List[Warranty]:
            due = await crud.fetch_unreminded_warranties_expiring(conn, now, horizon)
            for warranty in due:
                await crud.mark_warranty_reminded(conn, warranty.warranty_id, now)
            return due

        warranties = await run_in_transaction(work, label="expiry_reminders")
        for warranty in warranties:
            days_left = math.ceil(
                (warranty.expiry_date - now).total_seconds() / 86400
            )
            self.orders.notifier.emit(
                notices.warranty_expiry_reminder(warranty, days_left)
            )
        _logger.info(f"expiry reminders sent for {len(warranties)} warranties")
        return len(warranties)

    def jobs(self) -> Dict[str, Callable[[], Awaitable[Any]]]:
        return {
            "order-progression": self.run_order_progression,
            "catalog-reconcile": self.reconcile_catalog,
            "low-stock": self.scan_low_stock,
            "warranty-expiry": self.send_expiry_reminders,
        }

    def schedule(self) -> Dict[str, float]:
        """Seconds between runs of each job."""
        s = self.settings
        return {
            "order-progression": s.progression_interval_seconds,
            "catalog-reconcile": s.reconcile_interval_seconds,
            "low-stock": s.low_stock_interval_seconds,
            "warranty-expiry": s.reminder_interval_seconds,
        }

    async def run_job(self, name: str) -> Any:
        """Run one job by name. Failures are logged and reported as None."""
        try:
            return await self.jobs()[name]()
        except Exception:
            _logger.exception(f"sweep job {name} failed")
            return None

    async def run_all(self) -> Dict[str, Any]:
        """Run every job; one failing job does not stop the others."""
        return {name: await self.run_job(name) for name in self.jobs()}
