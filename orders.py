"""Cart and order lifecycle.

A user's cart is their order in status ``In Progress`` that has not been
placed yet (``placed_at`` is NULL). Checkout stamps ``placed_at``, moves the
order to ``Confirmed`` and debits stock; cancelling a confirmed order gives the
stock back. After that, only admins move orders through ``TRANSITIONS``.
"""
import json
import logging
import sqlite3
from typing import Dict, List, Optional

from catalog import MAX_QUANTITY, to_money
from db import now, transaction
from errors import EmptyCart, InsufficientStock, InvalidTransition, NotFound, ValidationError

logger = logging.getLogger(__name__)

IN_PROGRESS = "In Progress"
CONFIRMED = "Confirmed"
DELIVERED = "Delivered"
CANCELED = "Canceled"
STATUSES = (IN_PROGRESS, CONFIRMED, DELIVERED, CANCELED)

TRANSITIONS = {
    CONFIRMED: (IN_PROGRESS, DELIVERED, CANCELED),
    IN_PROGRESS: (DELIVERED, CANCELED),
    DELIVERED: (),
    CANCELED: (),
}

SHIPPING_FEE_CENTS = 4000
CONTACT_FIELDS = ("customerName", "customerPhone", "customerAddress", "customerEmail")


def _positive_quantity(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("Invalid quantity")
    try:
        quantity = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("Invalid quantity")
    if quantity != value and str(quantity) != str(value).strip():
        raise ValidationError("Invalid quantity")
    if not 1 <= quantity <= MAX_QUANTITY:
        raise ValidationError("Invalid quantity")
    return quantity


def _find_cart(conn: sqlite3.Connection, user_id) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM orders WHERE user_id = ? AND status = ? AND placed_at IS NULL",
        (user_id, IN_PROGRESS),
    ).fetchone()


def _cart_item(conn: sqlite3.Connection, user_id, item_id) -> sqlite3.Row:
    item = conn.execute(
        """
        SELECT oi.*
        FROM order_items oi
        JOIN orders o ON oi.order_id = o.id
        WHERE oi.id = ? AND o.user_id = ? AND o.status = ? AND o.placed_at IS NULL
        """,
        (item_id, user_id, IN_PROGRESS),
    ).fetchone()
    if not item:
        raise NotFound("Item not found")
    return item


def _quantity_in_cart(conn, order_id, bag_id, exclude_item_id=None) -> int:
    row = conn.execute(
        "SELECT COALESCE(SUM(quantity), 0) AS total FROM order_items WHERE order_id = ? AND bag_id = ? AND id IS NOT ?",
        (order_id, bag_id, exclude_item_id),
    ).fetchone()
    return row["total"]


def _check_stock(conn, bag_id, wanted: int):
    bag = conn.execute("SELECT name_en, quantity FROM bags WHERE id = ?", (bag_id,)).fetchone()
    if bag is None:
        raise NotFound("Bag not found")
    if wanted > bag["quantity"]:
        logger.warning("Bag %s: %s requested, %s in stock", bag_id, wanted, bag["quantity"])
        raise InsufficientStock(f"Only {bag['quantity']} left of {bag['name_en']}")


def recompute_total(conn: sqlite3.Connection, order_id):
    row = conn.execute(
        "SELECT COUNT(*) AS lines, COALESCE(SUM(quantity * price_cents), 0) AS items_total FROM order_items WHERE order_id = ?",
        (order_id,),
    ).fetchone()
    shipping = SHIPPING_FEE_CENTS if row["lines"] else 0
    conn.execute(
        "UPDATE orders SET total_cents = ?, shipping_fee_cents = ?, updated_at = ? WHERE id = ?",
        (row["items_total"] + shipping, shipping, now(), order_id),
    )


def add_item(conn: sqlite3.Connection, user_id, bag_id, quantity, color: Optional[str] = None) -> int:
    """Put ``quantity`` of a bag in the user's cart, creating the cart if needed.

    Returns the cart's order id.
    """
    quantity = _positive_quantity(quantity)
    if color is not None and not isinstance(color, str):
        raise ValidationError("Selected color must be text")
    color = (color or "").strip()
    with transaction(conn):
        bag = conn.execute("SELECT * FROM bags WHERE id = ?", (bag_id,)).fetchone()
        if bag is None:
            raise NotFound("Bag not found")
        colors = json.loads(bag["colors"] or "[]")
        if color and colors and color not in colors:
            raise ValidationError("Selected color is not available for this bag")

        cart = _find_cart(conn, user_id)
        if cart is None:
            stamp = now()
            order_id = conn.execute(
                "INSERT INTO orders (user_id, status, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (user_id, IN_PROGRESS, stamp, stamp),
            ).lastrowid
            logger.info("Cart %s created for user %s", order_id, user_id)
        else:
            order_id = cart["id"]

        _check_stock(conn, bag["id"], _quantity_in_cart(conn, order_id, bag["id"]) + quantity)

        # an existing line keeps the price it was first added at
        conn.execute(
            """
            INSERT INTO order_items (order_id, bag_id, quantity, price_cents, selected_color)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (order_id, bag_id, selected_color)
            DO UPDATE SET quantity = quantity + excluded.quantity
            """,
            (order_id, bag["id"], quantity, bag["price_cents"], color),
        )
        recompute_total(conn, order_id)
    return order_id


def update_item_quantity(conn: sqlite3.Connection, user_id, item_id, quantity):
    quantity = _positive_quantity(quantity)
    with transaction(conn):
        item = _cart_item(conn, user_id, item_id)
        others = _quantity_in_cart(conn, item["order_id"], item["bag_id"], exclude_item_id=item["id"])
        _check_stock(conn, item["bag_id"], others + quantity)
        conn.execute("UPDATE order_items SET quantity = ? WHERE id = ?", (quantity, item["id"]))
        recompute_total(conn, item["order_id"])


def remove_item(conn: sqlite3.Connection, user_id, item_id):
    # the emptied cart row stays; its shipping fee drops to zero
    with transaction(conn):
        item = _cart_item(conn, user_id, item_id)
        conn.execute("DELETE FROM order_items WHERE id = ?", (item["id"],))
        recompute_total(conn, item["order_id"])


def checkout(conn: sqlite3.Connection, user_id, contact: Dict) -> int:
    """Place the user's cart as a confirmed order and debit stock."""
    details = {key: str(contact.get(key) or "").strip() for key in CONTACT_FIELDS}
    if not all(details.values()):
        raise ValidationError("All customer details are required")
    if "@" not in details["customerEmail"]:
        raise ValidationError("A valid email address is required")

    with transaction(conn):
        cart = _find_cart(conn, user_id)
        if cart is None:
            raise EmptyCart()
        items = conn.execute(
            """
            SELECT oi.*, b.name_en FROM order_items oi
            JOIN bags b ON oi.bag_id = b.id
            WHERE oi.order_id = ?
            """,
            (cart["id"],),
        ).fetchall()
        if not items:
            raise EmptyCart()

        for item in items:
            debited = conn.execute(
                "UPDATE bags SET quantity = quantity - ?, updated_at = ? WHERE id = ? AND quantity >= ?",
                (item["quantity"], now(), item["bag_id"], item["quantity"]),
            ).rowcount
            if not debited:
                logger.warning("Checkout of order %s stopped: bag %s is short", cart["id"], item["bag_id"])
                raise InsufficientStock(f"Not enough stock left for {item['name_en']}")

        recompute_total(conn, cart["id"])
        stamp = now()
        conn.execute(
            """
            UPDATE orders
            SET customer_name = ?, customer_phone = ?, customer_address = ?, customer_email = ?,
                status = ?, placed_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                details["customerName"],
                details["customerPhone"],
                details["customerAddress"],
                details["customerEmail"],
                CONFIRMED,
                stamp,
                stamp,
                cart["id"],
            ),
        )
    logger.info("Order %s placed by user %s", cart["id"], user_id)
    return cart["id"]


def cancel_order(conn: sqlite3.Connection, user_id, order_id):
    """Cancel a confirmed order of the user and return its stock."""
    with transaction(conn):
        order = conn.execute("SELECT * FROM orders WHERE id = ? AND user_id = ?", (order_id, user_id)).fetchone()
        if order is None:
            raise NotFound("Order not found or cannot be cancelled")
        if order["status"] != CONFIRMED:
            raise InvalidTransition(order["status"], CANCELED)

        items = conn.execute("SELECT bag_id, quantity FROM order_items WHERE order_id = ?", (order_id,)).fetchall()
        for item in items:
            conn.execute(
                "UPDATE bags SET quantity = quantity + ?, updated_at = ? WHERE id = ?",
                (item["quantity"], now(), item["bag_id"]),
            )
        conn.execute("UPDATE orders SET status = ?, updated_at = ? WHERE id = ?", (CANCELED, now(), order_id))
    logger.info("Order %s cancelled by user %s", order_id, user_id)


def admin_set_status(conn: sqlite3.Connection, order_id, status: str):
    """Move a placed order along TRANSITIONS. Stock is left untouched."""
    if status not in STATUSES:
        raise ValidationError("Invalid status")
    with transaction(conn):
        order = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if order is None:
            raise NotFound("Order not found")
        current = order["status"]
        if order["placed_at"] is None or status not in TRANSITIONS.get(current, ()):
            logger.warning("Rejected status change of order %s: %s -> %s", order_id, current, status)
            raise InvalidTransition(current, status)
        conn.execute("UPDATE orders SET status = ?, updated_at = ? WHERE id = ?", (status, now(), order_id))
    logger.info("Order %s status changed: %s -> %s", order_id, current, status)


def _serialize_item(row) -> Dict:
    return {
        "id": row["id"],
        "bag_id": row["bag_id"],
        "bag_name_en": row["bag_name_en"],
        "bag_name_ar": row["bag_name_ar"],
        "bag_image": (json.loads(row["bag_images"] or "[]") or [None])[0],
        "quantity": row["quantity"],
        "price": to_money(row["price_cents"]),
        "line_total": to_money(row["quantity"] * row["price_cents"]),
        "selected_color": row["selected_color"],
    }


def _serialize_order(row, items: List[Dict]) -> Dict:
    order = {
        "id": row["id"],
        "user_id": row["user_id"],
        "status": row["status"],
        "items": items,
        "subtotal": to_money(row["total_cents"] - row["shipping_fee_cents"]),
        "shipping_fee": to_money(row["shipping_fee_cents"]),
        "total_amount": to_money(row["total_cents"]),
        "customer_name": row["customer_name"],
        "customer_phone": row["customer_phone"],
        "customer_address": row["customer_address"],
        "customer_email": row["customer_email"],
        "placed_at": row["placed_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "can_cancel": row["status"] == CONFIRMED,
    }
    if "user_email" in row.keys():
        order["user_name"] = f"{row['first_name']} {row['last_name']}".strip()
        order["user_email"] = row["user_email"]
    return order


def _items_by_order(conn, order_ids) -> Dict[int, List[Dict]]:
    grouped = {order_id: [] for order_id in order_ids}
    if not grouped:
        return grouped
    placeholders = ", ".join("?" for _ in grouped)
    rows = conn.execute(
        f"""
        SELECT oi.*, b.name_en AS bag_name_en, b.name_ar AS bag_name_ar, b.image_urls AS bag_images
        FROM order_items oi
        JOIN bags b ON oi.bag_id = b.id
        WHERE oi.order_id IN ({placeholders})
        ORDER BY oi.id
        """,
        tuple(grouped),
    ).fetchall()
    for row in rows:
        grouped[row["order_id"]].append(_serialize_item(row))
    return grouped


def get_cart(conn: sqlite3.Connection, user_id) -> Optional[Dict]:
    cart = _find_cart(conn, user_id)
    if cart is None:
        return None
    return _serialize_order(cart, _items_by_order(conn, [cart["id"]])[cart["id"]])


def cart_count(conn: sqlite3.Connection, user_id) -> int:
    row = conn.execute(
        """
        SELECT COUNT(oi.id) AS count
        FROM order_items oi
        JOIN orders o ON oi.order_id = o.id
        WHERE o.user_id = ? AND o.status = ? AND o.placed_at IS NULL
        """,
        (user_id, IN_PROGRESS),
    ).fetchone()
    return row["count"]


def list_orders(conn: sqlite3.Connection, user_id=None) -> List[Dict]:
    """Placed orders, newest first. Without ``user_id`` every user's orders are listed."""
    query = """
        SELECT o.*, u.first_name, u.last_name, u.email AS user_email
        FROM orders o
        JOIN users u ON o.user_id = u.id
        WHERE o.placed_at IS NOT NULL
    """
    params = ()
    if user_id is not None:
        query += " AND o.user_id = ?"
        params = (user_id,)
    rows = conn.execute(query + " ORDER BY o.placed_at DESC, o.id DESC", params).fetchall()
    items = _items_by_order(conn, [row["id"] for row in rows])
    return [_serialize_order(row, items[row["id"]]) for row in rows]


def get_order(conn: sqlite3.Connection, user_id, order_id) -> Dict:
    row = conn.execute(
        "SELECT * FROM orders WHERE id = ? AND user_id = ? AND placed_at IS NOT NULL", (order_id, user_id)
    ).fetchone()
    if row is None:
        raise NotFound("Order not found")
    return _serialize_order(row, _items_by_order(conn, [row["id"]])[row["id"]])


def admin_stats(conn: sqlite3.Connection) -> Dict:
    products = conn.execute("SELECT COUNT(*) AS count FROM bags").fetchone()["count"]
    orders = conn.execute("SELECT COUNT(*) AS count FROM orders WHERE placed_at IS NOT NULL").fetchone()["count"]
    revenue = conn.execute(
        "SELECT COALESCE(SUM(total_cents), 0) AS total FROM orders WHERE placed_at IS NOT NULL AND status != ?",
        (CANCELED,),
    ).fetchone()["total"]
    pending = conn.execute(
        "SELECT COUNT(*) AS count FROM orders WHERE placed_at IS NOT NULL AND status IN (?, ?)",
        (IN_PROGRESS, CONFIRMED),
    ).fetchone()["count"]
    return {
        "totalProducts": products,
        "totalOrders": orders,
        "totalRevenue": to_money(revenue),
        "pendingOrders": pending,
    }


def recent_activity(conn: sqlite3.Connection, limit: int = 10) -> List[Dict]:
    rows = conn.execute(
        "SELECT id, customer_name, placed_at FROM orders WHERE placed_at IS NOT NULL ORDER BY placed_at DESC, id DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [
        {
            "type": "New Order",
            "description": f"Order #{row['id']} placed by {row['customer_name']}",
            "created_at": row["placed_at"],
        }
        for row in rows
    ]
