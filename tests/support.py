import asyncio
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

from fulfillment.db import crud
from fulfillment.db import database as db_database
from fulfillment.db.models import Notification, Product, ShippingAddress
from fulfillment.engine.claims import ClaimEngine
from fulfillment.engine.orders import OrderEngine
from fulfillment.engine.sweeps import SweepRunner
from fulfillment.services.notifier import Notifier
from fulfillment.utils.config import Settings

T0 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

ADDRESS = ShippingAddress(
    recipient_name="Ada Buyer",
    street="1 Main St",
    city="Springfield",
    postal_code="12345",
)


class FixedClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class CounterIds:
    def __init__(self):
        self.counts: dict[str, int] = {}

    def new_id(self, kind: str) -> str:
        self.counts[kind] = self.counts.get(kind, 0) + 1
        return f"{kind}_{self.counts[kind]:04d}"


class RecordingSink:
    def __init__(self):
        self.sent: List[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> List[str]:
        return [n.kind for n in self.sent]

    def subjects(self) -> List[str]:
        return [n.subject for n in self.sent]


class FailingSink:
    def __init__(self):
        self.calls = 0

    async def send(self, notification: Notification) -> None:
        self.calls += 1
        raise ConnectionError("mail server down")


class DbTestCase(unittest.IsolatedAsyncioTestCase):
    """Temporary database plus engines wired to deterministic collaborators."""

    settings = Settings()

    def setUp(self):
        # Point the DB to a temporary file and force re-initialization
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.sqlite")
        db_database.DB_PATH = self.db_path
        db_database._initialized = False
        db_database._init_lock = asyncio.Lock()

        self.clock = FixedClock()
        self.ids = CounterIds()
        self.sink = RecordingSink()

    async def asyncSetUp(self):
        # Touch initialization by opening a connection
        async with db_database.connect() as conn:
            cur = await conn.execute("SELECT name FROM sqlite_master WHERE type='table';")
            await cur.fetchall()
            await cur.close()

        self.notifier = Notifier(sink=self.sink, timeout=1.0)
        self.orders = OrderEngine(
            settings=self.settings, clock=self.clock, ids=self.ids, notifier=self.notifier
        )
        self.warranties = self.orders.warranties
        self.claims = ClaimEngine(clock=self.clock, ids=self.ids, notifier=self.notifier)
        self.sweeps = SweepRunner(self.orders)

    async def asyncTearDown(self):
        await self.notifier.drain()

    def tearDown(self):
        self.temp_dir.cleanup()

    async def add_product(
        self,
        product_id: str = "p1",
        price: str = "100",
        stock: int = 3,
        warranty_months: int = 12,
        name: str = "",
        is_active: bool = True,
    ) -> Product:
        return await crud.create_product(
            Product(
                product_id=product_id,
                name=name or f"Product {product_id}",
                price=Decimal(price),
                stock=stock,
                warranty_months=warranty_months,
                is_active=is_active,
            )
        )

    async def stock_of(self, product_id: str) -> int:
        return (await crud.get_product(product_id)).stock

    async def checkout(self, user_id: str, product_id: str, quantity: int):
        await crud.add_to_cart(user_id, product_id, quantity, self.clock.now())
        return await self.orders.create_order(user_id, ADDRESS)
