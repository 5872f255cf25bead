# src/fulfillment/db/crud.py
#
# Repository functions. Functions taking ``conn`` as first argument run inside
# the caller's transaction; the others open their own connection.
from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from sqlite3 import Row
from typing import List, Optional, Tuple

import aiosqlite

from fulfillment.db import models
from fulfillment.db.database import connect, run_in_transaction
from fulfillment.engine.errors import (
    InsufficientStock,
    ProductNotFound,
    ValidationError,
)


def to_ts(dt: datetime) -> str:
    """Store every timestamp as UTC ISO-8601 with microseconds, so text order is time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_ts(val: Optional[str]) -> Optional[datetime]:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _money(val) -> Decimal:
    return Decimal(str(val))


# ---------------------------
# Row mapping
# ---------------------------


def _row_to_product(row: Row) -> models.Product:
    return models.Product(
        product_id=row["product_id"],
        name=row["name"],
        price=_money(row["price"]),
        stock=int(row["stock"]),
        warranty_months=int(row["warranty_months"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_order(row: Row) -> models.Order:
    return models.Order(
        order_id=row["order_id"],
        user_id=row["user_id"],
        subtotal=_money(row["subtotal"]),
        shipping_fee=_money(row["shipping_fee"]),
        tax=_money(row["tax"]),
        total_price=_money(row["total_price"]),
        payment_status=row["payment_status"],
        order_status=row["order_status"],
        payment_method=row["payment_method"],
        payment_reference=row["payment_reference"],
        shipping_address=models.ShippingAddress.from_dict(
            json.loads(row["shipping_address"])
        ),
        created_at=_from_ts(row["created_at"]),
        updated_at=_from_ts(row["updated_at"]),
    )


def _row_to_item(row: Row) -> models.OrderItem:
    return models.OrderItem(
        item_id=row["item_id"],
        order_id=row["order_id"],
        product_id=row["product_id"],
        quantity=int(row["quantity"]),
        price_at_purchase=_money(row["price_at_purchase"]),
    )


def _row_to_warranty(row: Row) -> models.Warranty:
    return models.Warranty(
        warranty_id=row["warranty_id"],
        user_id=row["user_id"],
        product_id=row["product_id"],
        order_id=row["order_id"],
        unit_index=row["unit_index"],
        purchase_date=_from_ts(row["purchase_date"]),
        expiry_date=_from_ts(row["expiry_date"]),
        serial_number=row["serial_number"],
        invoice_url=row["invoice_url"],
        registration_type=row["registration_type"],
        created_at=_from_ts(row["created_at"]),
    )


def _row_to_claim(row: Row) -> models.Claim:
    return models.Claim(
        claim_id=row["claim_id"],
        warranty_id=row["warranty_id"],
        issue_description=row["issue_description"],
        status=row["status"],
        admin_notes=row["admin_notes"],
        image_url=row["image_url"],
        created_at=_from_ts(row["created_at"]),
        updated_at=_from_ts(row["updated_at"]),
    )


async def _fetchone(conn: aiosqlite.Connection, sql: str, params=()) -> Optional[Row]:
    cur = await conn.execute(sql, params)
    row = await cur.fetchone()
    await cur.close()
    return row


async def _fetchall(conn: aiosqlite.Connection, sql: str, params=()) -> List[Row]:
    cur = await conn.execute(sql, params)
    rows = await cur.fetchall()
    await cur.close()
    return list(rows)


# ---------------------------
# Catalog
# ---------------------------

_PRODUCT_COLS = "product_id, name, price, stock, warranty_months, is_active"


async def create_product(product: models.Product) -> models.Product:
    """Insert a catalog record. Catalog management lives elsewhere; this seeds it."""
    async with connect() as conn:
        await conn.execute(
            f"INSERT INTO products({_PRODUCT_COLS}) VALUES (?, ?, ?, ?, ?, ?);",
            (
                product.product_id,
                product.name,
                str(product.price),
                product.stock,
                product.warranty_months,
                int(product.is_active),
            ),
        )
    return product


async def fetch_product(
    conn: aiosqlite.Connection, product_id: str
) -> Optional[models.Product]:
    row = await _fetchone(
        conn,
        f"SELECT {_PRODUCT_COLS} FROM products WHERE product_id = ?;",
        (product_id,),
    )
    return _row_to_product(row) if row else None


async def get_product(product_id: str) -> Optional[models.Product]:
    """Fetch a product by id."""
    async with connect() as conn:
        return await fetch_product(conn, product_id)


async def list_products(active_only: bool = False) -> List[models.Product]:
    where = "WHERE is_active = 1" if active_only else ""
    async with connect() as conn:
        rows = await _fetchall(
            conn, f"SELECT {_PRODUCT_COLS} FROM products {where} ORDER BY name;"
        )
    return [_row_to_product(r) for r in rows]


async def update_product_price(product_id: str, price: Decimal) -> bool:
    """Change the catalog price. Existing order items keep their snapshot."""
    async with connect() as conn:
        cur = await conn.execute(
            "UPDATE products SET price = ? WHERE product_id = ?;",
            (str(price), product_id),
        )
        return cur.rowcount > 0


async def reserve_stock(
    conn: aiosqlite.Connection, product_id: str, quantity: int
) -> bool:
    """Guarded decrement; False when the row does not hold enough stock."""
    cur = await conn.execute(
        """
        UPDATE products
        SET stock = stock - ?
        WHERE product_id = ?
          AND stock >= ?;
        """,
        (quantity, product_id, quantity),
    )
    return cur.rowcount == 1


async def release_stock(
    conn: aiosqlite.Connection, product_id: str, quantity: int
) -> bool:
    cur = await conn.execute(
        "UPDATE products SET stock = stock + ? WHERE product_id = ?;",
        (quantity, product_id),
    )
    return cur.rowcount == 1


async def restock_product(product_id: str, quantity: int) -> int:
    """Add ``quantity`` units to a product and return the new stock level."""
    if quantity < 1:
        raise ValidationError("Restock quantity must be at least 1")

    async def work(conn: aiosqlite.Connection) -> int:
        if not await release_stock(conn, product_id, quantity):
            raise ProductNotFound(product_id)
        row = await _fetchone(
            conn, "SELECT stock FROM products WHERE product_id = ?;", (product_id,)
        )
        return int(row["stock"])

    return await run_in_transaction(work, label="restock")


async def reconcile_product_activity(conn: aiosqlite.Connection) -> Tuple[int, int]:
    """Deactivate sold-out products and reactivate restocked ones.

    Returns (deactivated, reactivated).
    """
    cur = await conn.execute(
        "UPDATE products SET is_active = 0 WHERE stock = 0 AND is_active = 1;"
    )
    deactivated = cur.rowcount
    cur = await conn.execute(
        "UPDATE products SET is_active = 1 WHERE stock > 0 AND is_active = 0;"
    )
    return deactivated, cur.rowcount


async def list_low_stock(threshold: int) -> List[models.Product]:
    async with connect() as conn:
        rows = await _fetchall(
            conn,
            f"""
            SELECT {_PRODUCT_COLS}
            FROM products
            WHERE stock <= ?
              AND is_active = 1
            ORDER BY stock, name;
            """,
            (threshold,),
        )
    return [_row_to_product(r) for r in rows]


# ---------------------------
# Cart Management
# ---------------------------


async def list_cart(user_id: str) -> List[models.CartLine]:
    async with connect() as conn:
        rows = await _fetchall(
            conn,
            """
            SELECT user_id, product_id, quantity
            FROM cart_items
            WHERE user_id = ?
            ORDER BY created_at, product_id;
            """,
            (user_id,),
        )
    return [
        models.CartLine(
            user_id=r["user_id"], product_id=r["product_id"], quantity=r["quantity"]
        )
        for r in rows
    ]


async def fetch_cart_with_products(
    conn: aiosqlite.Connection, user_id: str
) -> List[models.CartLineWithProduct]:
    """Cart lines joined with each product's current stock and price."""
    rows = await _fetchall(
        conn,
        """
        SELECT c.user_id, c.quantity,
               p.product_id, p.name, p.price, p.stock, p.warranty_months, p.is_active
        FROM cart_items c
        JOIN products p ON p.product_id = c.product_id
        WHERE c.user_id = ?
        ORDER BY c.created_at, p.product_id;
        """,
        (user_id,),
    )
    return [
        models.CartLineWithProduct(
            line=models.CartLine(
                user_id=r["user_id"], product_id=r["product_id"], quantity=r["quantity"]
            ),
            product=_row_to_product(r),
        )
        for r in rows
    ]


async def _active_product_or_raise(
    conn: aiosqlite.Connection, product_id: str
) -> models.Product:
    product = await fetch_product(conn, product_id)
    if product is None or not product.is_active:
        raise ProductNotFound(product_id)
    return product


async def add_to_cart(
    user_id: str, product_id: str, quantity: int, when: datetime
) -> models.CartLine:
    """
    Add ``quantity`` units to the user's cart, merging with an existing line.
    The resulting quantity may not exceed current stock.
    """
    if quantity < 1:
        raise ValidationError("Quantity must be greater than 0")

    async def work(conn: aiosqlite.Connection) -> models.CartLine:
        product = await _active_product_or_raise(conn, product_id)
        row = await _fetchone(
            conn,
            "SELECT quantity FROM cart_items WHERE user_id = ? AND product_id = ?;",
            (user_id, product_id),
        )
        new_total = quantity + (int(row["quantity"]) if row else 0)
        if new_total > product.stock:
            raise InsufficientStock(product.product_id, product.name, product.stock)
        await conn.execute(
            """
            INSERT INTO cart_items(user_id, product_id, quantity, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, product_id) DO UPDATE SET quantity = excluded.quantity;
            """,
            (user_id, product_id, new_total, to_ts(when)),
        )
        return models.CartLine(user_id, product_id, new_total)

    return await run_in_transaction(work, label="add_to_cart")


async def update_cart_quantity(
    user_id: str, product_id: str, quantity: int
) -> Optional[models.CartLine]:
    """Set the line quantity. Zero removes the line; returns None in that case."""
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative")
    if quantity == 0:
        await remove_from_cart(user_id, product_id)
        return None

    async def work(conn: aiosqlite.Connection) -> models.CartLine:
        product = await _active_product_or_raise(conn, product_id)
        if quantity > product.stock:
            raise InsufficientStock(product.product_id, product.name, product.stock)
        cur = await conn.execute(
            "UPDATE cart_items SET quantity = ? WHERE user_id = ? AND product_id = ?;",
            (quantity, user_id, product_id),
        )
        if cur.rowcount == 0:
            raise ProductNotFound(product_id)
        return models.CartLine(user_id, product_id, quantity)

    return await run_in_transaction(work, label="update_cart_quantity")


async def remove_from_cart(user_id: str, product_id: str) -> None:
    async with connect() as conn:
        await conn.execute(
            "DELETE FROM cart_items WHERE user_id = ? AND product_id = ?;",
            (user_id, product_id),
        )


async def delete_cart(conn: aiosqlite.Connection, user_id: str) -> None:
    await conn.execute("DELETE FROM cart_items WHERE user_id = ?;", (user_id,))


async def clear_cart(user_id: str) -> None:
    """Remove all items from the user's cart."""
    async with connect() as conn:
        await delete_cart(conn, user_id)


# ---------------------------
# Orders
# ---------------------------

_ORDER_COLS = (
    "order_id, user_id, subtotal, shipping_fee, tax, total_price, payment_status, "
    "order_status, payment_method, payment_reference, shipping_address, "
    "created_at, updated_at"
)


async def insert_order(conn: aiosqlite.Connection, order: models.Order) -> None:
    await conn.execute(
        f"INSERT INTO orders({_ORDER_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
        (
            order.order_id,
            order.user_id,
            str(order.subtotal),
            str(order.shipping_fee),
            str(order.tax),
            str(order.total_price),
            order.payment_status,
            order.order_status,
            order.payment_method,
            order.payment_reference,
            json.dumps(order.shipping_address.to_dict()),
            to_ts(order.created_at),
            to_ts(order.updated_at),
        ),
    )


async def insert_order_item(conn: aiosqlite.Connection, item: models.OrderItem) -> None:
    await conn.execute(
        """
        INSERT INTO order_items(item_id, order_id, product_id, quantity, price_at_purchase)
        VALUES (?, ?, ?, ?, ?);
        """,
        (
            item.item_id,
            item.order_id,
            item.product_id,
            item.quantity,
            str(item.price_at_purchase),
        ),
    )


async def fetch_order(
    conn: aiosqlite.Connection, order_id: str
) -> Optional[models.Order]:
    row = await _fetchone(
        conn, f"SELECT {_ORDER_COLS} FROM orders WHERE order_id = ?;", (order_id,)
    )
    return _row_to_order(row) if row else None


async def fetch_order_items(
    conn: aiosqlite.Connection, order_id: str
) -> List[models.OrderItem]:
    rows = await _fetchall(
        conn,
        """
        SELECT item_id, order_id, product_id, quantity, price_at_purchase
        FROM order_items
        WHERE order_id = ?
        ORDER BY rowid;
        """,
        (order_id,),
    )
    return [_row_to_item(r) for r in rows]


async def fetch_order_detail(
    conn: aiosqlite.Connection, order_id: str
) -> Optional[models.OrderDetail]:
    order = await fetch_order(conn, order_id)
    if order is None:
        return None
    return models.OrderDetail(order=order, items=await fetch_order_items(conn, order_id))


async def get_order_detail(order_id: str) -> Optional[models.OrderDetail]:
    """Return the order with its items, or None."""
    async with connect() as conn:
        return await fetch_order_detail(conn, order_id)


async def set_order_status(
    conn: aiosqlite.Connection,
    order_id: str,
    when: datetime,
    *,
    order_status: Optional[str] = None,
    payment_status: Optional[str] = None,
    payment_reference: Optional[str] = None,
    expected_order_status: Optional[str] = None,
) -> bool:
    """
    Update the provided status fields. With ``expected_order_status`` the write
    only happens if the row still holds that status (compare-and-set).
    Returns True if a row was updated.
    """
    sets = ["updated_at = ?"]
    params: list = [to_ts(when)]
    if order_status is not None:
        sets.append("order_status = ?")
        params.append(order_status)
    if payment_status is not None:
        sets.append("payment_status = ?")
        params.append(payment_status)
    if payment_reference is not None:
        sets.append("payment_reference = ?")
        params.append(payment_reference)

    where = "order_id = ?"
    params.append(order_id)
    if expected_order_status is not None:
        where += " AND order_status = ?"
        params.append(expected_order_status)

    cur = await conn.execute(
        f"UPDATE orders SET {', '.join(sets)} WHERE {where};", tuple(params)
    )
    return cur.rowcount > 0


async def list_orders(
    user_id: Optional[str] = None, status: Optional[str] = None
) -> List[models.Order]:
    """
    List orders in reverse chronological order, optionally for one user and/or
    one order_status.
    """
    conds, params = [], []
    if user_id is not None:
        conds.append("user_id = ?")
        params.append(user_id)
    if status is not None and status != "all":
        conds.append("order_status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(conds)}" if conds else ""
    async with connect() as conn:
        rows = await _fetchall(
            conn,
            f"SELECT {_ORDER_COLS} FROM orders {where} ORDER BY created_at DESC;",
            tuple(params),
        )
    return [_row_to_order(r) for r in rows]


async def list_orders_created_before(
    order_status: str, created_before: datetime
) -> List[models.Order]:
    async with connect() as conn:
        rows = await _fetchall(
            conn,
            f"""
            SELECT {_ORDER_COLS}
            FROM orders
            WHERE order_status = ?
              AND created_at < ?
            ORDER BY created_at;
            """,
            (order_status, to_ts(created_before)),
        )
    return [_row_to_order(r) for r in rows]


# ---------------------------
# Warranties
# ---------------------------

_WARRANTY_COLS = (
    "warranty_id, user_id, product_id, order_id, unit_index, purchase_date, "
    "expiry_date, serial_number, invoice_url, registration_type, created_at"
)


def _warranty_params(w: models.Warranty) -> tuple:
    return (
        w.warranty_id,
        w.user_id,
        w.product_id,
        w.order_id,
        w.unit_index,
        to_ts(w.purchase_date),
        to_ts(w.expiry_date),
        w.serial_number,
        w.invoice_url,
        w.registration_type,
        to_ts(w.created_at),
    )


async def insert_warranty(conn: aiosqlite.Connection, warranty: models.Warranty) -> None:
    """Plain insert; a taken serial number surfaces as sqlite3.IntegrityError."""
    await conn.execute(
        f"INSERT INTO warranties({_WARRANTY_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
        _warranty_params(warranty),
    )


async def insert_warranty_once(
    conn: aiosqlite.Connection, warranty: models.Warranty
) -> bool:
    """Insert unless the (order, product, unit) slot or serial is taken.

    Returns True when a row was written.
    """
    cur = await conn.execute(
        f"""
        INSERT INTO warranties({_WARRANTY_COLS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT DO NOTHING;
        """,
        _warranty_params(warranty),
    )
    return cur.rowcount == 1


async def serial_exists(conn: aiosqlite.Connection, serial_number: str) -> bool:
    row = await _fetchone(
        conn, "SELECT 1 FROM warranties WHERE serial_number = ?;", (serial_number,)
    )
    return row is not None


async def fetch_warranty(
    conn: aiosqlite.Connection, warranty_id: str
) -> Optional[models.Warranty]:
    row = await _fetchone(
        conn,
        f"SELECT {_WARRANTY_COLS} FROM warranties WHERE warranty_id = ?;",
        (warranty_id,),
    )
    return _row_to_warranty(row) if row else None


async def get_warranty(warranty_id: str) -> Optional[models.Warranty]:
    async with connect() as conn:
        return await fetch_warranty(conn, warranty_id)


async def list_warranties(
    user_id: Optional[str] = None,
    status: str = "all",
    now: Optional[datetime] = None,
) -> List[models.Warranty]:
    """
    ``status`` is 'all', 'active' (expiry >= now) or 'expired' (expiry < now).
    """
    conds, params = [], []
    if user_id is not None:
        conds.append("user_id = ?")
        params.append(user_id)
    if status in ("active", "expired"):
        if now is None:
            raise ValueError("now is required to filter by expiry")
        conds.append("expiry_date >= ?" if status == "active" else "expiry_date < ?")
        params.append(to_ts(now))
    where = f"WHERE {' AND '.join(conds)}" if conds else ""
    async with connect() as conn:
        rows = await _fetchall(
            conn,
            f"SELECT {_WARRANTY_COLS} FROM warranties {where} ORDER BY expiry_date, serial_number;",
            tuple(params),
        )
    return [_row_to_warranty(r) for r in rows]


async def list_order_warranties(order_id: str) -> List[models.Warranty]:
    async with connect() as conn:
        rows = await _fetchall(
            conn,
            f"""
            SELECT {_WARRANTY_COLS}
            FROM warranties
            WHERE order_id = ?
            ORDER BY product_id, unit_index;
            """,
            (order_id,),
        )
    return [_row_to_warranty(r) for r in rows]


async def fetch_unreminded_warranties_expiring(
    conn: aiosqlite.Connection, start: datetime, end: datetime
) -> List[models.Warranty]:
    """Warranties expiring in [start, end] that have not been reminded yet."""
    rows = await _fetchall(
        conn,
        f"""
        SELECT {_WARRANTY_COLS}
        FROM warranties
        WHERE expiry_date BETWEEN ? AND ?
          AND warranty_id NOT IN (SELECT warranty_id FROM warranty_reminders)
        ORDER BY expiry_date;
        """,
        (to_ts(start), to_ts(end)),
    )
    return [_row_to_warranty(r) for r in rows]


async def mark_warranty_reminded(
    conn: aiosqlite.Connection, warranty_id: str, when: datetime
) -> bool:
    cur = await conn.execute(
        """
        INSERT INTO warranty_reminders(warranty_id, sent_at)
        VALUES (?, ?)
        ON CONFLICT DO NOTHING;
        """,
        (warranty_id, to_ts(when)),
    )
    return cur.rowcount == 1


# ---------------------------
# Claims
# ---------------------------

_CLAIM_COLS = (
    "claim_id, warranty_id, issue_description, status, admin_notes, image_url, "
    "created_at, updated_at"
)


async def insert_claim(conn: aiosqlite.Connection, claim: models.Claim) -> None:
    await conn.execute(
        f"INSERT INTO claims({_CLAIM_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
        (
            claim.claim_id,
            claim.warranty_id,
            claim.issue_description,
            claim.status,
            claim.admin_notes,
            claim.image_url,
            to_ts(claim.created_at),
            to_ts(claim.updated_at),
        ),
    )


async def fetch_claim(
    conn: aiosqlite.Connection, claim_id: str
) -> Optional[models.Claim]:
    row = await _fetchone(
        conn, f"SELECT {_CLAIM_COLS} FROM claims WHERE claim_id = ?;", (claim_id,)
    )
    return _row_to_claim(row) if row else None


async def get_claim(claim_id: str) -> Optional[models.Claim]:
    async with connect() as conn:
        return await fetch_claim(conn, claim_id)


async def set_claim_status(
    conn: aiosqlite.Connection,
    claim_id: str,
    status: str,
    admin_notes: Optional[str],
    when: datetime,
) -> bool:
    cur = await conn.execute(
        """
        UPDATE claims
        SET status = ?, admin_notes = COALESCE(?, admin_notes), updated_at = ?
        WHERE claim_id = ?;
        """,
        (status, admin_notes, to_ts(when), claim_id),
    )
    return cur.rowcount > 0


async def list_claims(
    user_id: Optional[str] = None, status: Optional[str] = None
) -> List[models.Claim]:
    """Claims newest first; ``user_id`` filters on the owning warranty."""
    conds, params = [], []
    if user_id is not None:
        conds.append("w.user_id = ?")
        params.append(user_id)
    if status is not None and status != "all":
        conds.append("c.status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(conds)}" if conds else ""
    cols = ", ".join(f"c.{col.strip()}" for col in _CLAIM_COLS.split(","))
    async with connect() as conn:
        rows = await _fetchall(
            conn,
            f"""
            SELECT {cols}
            FROM claims c
            JOIN warranties w ON w.warranty_id = c.warranty_id
            {where}
            ORDER BY c.created_at DESC;
            """,
            tuple(params),
        )
    return [_row_to_claim(r) for r in rows]
