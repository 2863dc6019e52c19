import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL DEFAULT '',
        email TEXT UNIQUE NOT NULL,
        phone TEXT,
        password_hash TEXT,
        google_id TEXT UNIQUE,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name_en TEXT NOT NULL,
        name_ar TEXT NOT NULL,
        description_en TEXT NOT NULL DEFAULT '',
        description_ar TEXT NOT NULL DEFAULT '',
        price_cents INTEGER NOT NULL CHECK (price_cents >= 0),
        colors TEXT NOT NULL DEFAULT '[]',
        quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
        image_urls TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        status TEXT NOT NULL DEFAULT 'In Progress'
            CHECK (status IN ('In Progress', 'Confirmed', 'Delivered', 'Canceled')),
        total_cents INTEGER NOT NULL DEFAULT 0,
        shipping_fee_cents INTEGER NOT NULL DEFAULT 0,
        customer_name TEXT NOT NULL DEFAULT '',
        customer_phone TEXT NOT NULL DEFAULT '',
        customer_address TEXT NOT NULL DEFAULT '',
        customer_email TEXT NOT NULL DEFAULT '',
        placed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # the cart: at most one unplaced "In Progress" order per user
    """
    CREATE UNIQUE INDEX IF NOT EXISTS orders_one_cart_per_user
        ON orders (user_id) WHERE status = 'In Progress' AND placed_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders (id) ON DELETE CASCADE,
        bag_id INTEGER NOT NULL REFERENCES bags (id),
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        price_cents INTEGER NOT NULL,
        selected_color TEXT NOT NULL DEFAULT '',
        UNIQUE (order_id, bag_id, selected_color)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reviews (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        bag_id INTEGER NOT NULL REFERENCES bags (id) ON DELETE CASCADE,
        rating INTEGER NOT NULL CHECK (rating >= 1 AND rating <= 5),
        review_text TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (user_id, bag_id)
    )
    """,
]

SAMPLE_BAGS = [
    {
        "name_en": "Classic Leather Handbag",
        "name_ar": "حقيبة يد جلدية كلاسيكية",
        "description_en": "Elegant leather handbag perfect for everyday use",
        "description_ar": "حقيبة يد جلدية أنيقة مثالية للاستخدام اليومي",
        "price_cents": 15000,
        "colors": ["Black", "Brown", "Navy"],
        "quantity": 25,
        "image_urls": ["/static/images/bags/classic-leather-1.jpg"],
    },
    {
        "name_en": "Modern Tote Bag",
        "name_ar": "حقيبة حمل عصرية",
        "description_en": "Spacious tote bag ideal for work and travel",
        "description_ar": "حقيبة حمل واسعة مثالية للعمل والسفر",
        "price_cents": 8999,
        "colors": ["Beige", "Black", "Red"],
        "quantity": 30,
        "image_urls": ["/static/images/bags/modern-tote-1.jpg"],
    },
]


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect(path: str) -> sqlite3.Connection:
    # autocommit mode; multi-statement work goes through transaction()
    conn = sqlite3.connect(path, isolation_level=None, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection):
    """Run a block as one write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so the
    read-check-then-write sequences inside the block cannot interleave with
    another writer.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def init_db(path: str, admin_email: str = "", admin_password: str = ""):
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)
    conn = connect(path)
    try:
        with transaction(conn):
            for statement in SCHEMA:
                conn.execute(statement)

            if admin_email and admin_password:
                email = admin_email.strip().lower()
                existing = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
                if not existing:
                    stamp = now()
                    conn.execute(
                        """
                        INSERT INTO users (first_name, last_name, email, password_hash, is_admin, created_at, updated_at)
                        VALUES (?, ?, ?, ?, 1, ?, ?)
                        """,
                        ("Admin", "User", email, generate_password_hash(admin_password), stamp, stamp),
                    )
                    logger.info("Admin user %s created", email)

            for bag in SAMPLE_BAGS:
                existing = conn.execute("SELECT id FROM bags WHERE name_en = ?", (bag["name_en"],)).fetchone()
                if existing:
                    continue
                stamp = now()
                conn.execute(
                    """
                    INSERT INTO bags (
                        name_en, name_ar, description_en, description_ar,
                        price_cents, colors, quantity, image_urls, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        bag["name_en"],
                        bag["name_ar"],
                        bag["description_en"],
                        bag["description_ar"],
                        bag["price_cents"],
                        json.dumps(bag["colors"], ensure_ascii=False),
                        bag["quantity"],
                        json.dumps(bag["image_urls"]),
                        stamp,
                        stamp,
                    ),
                )
    finally:
        conn.close()
    logger.info("Database initialized at %s", path)


def health_check(path: str) -> dict:
    connected = False
    try:
        conn = connect(path)
        try:
            conn.execute("SELECT 1").fetchone()
            connected = True
        finally:
            conn.close()
    except sqlite3.Error:
        logger.exception("Database health check failed")
    return {
        "connected": connected,
        # one short-lived connection per request, no shared pool
        "pool": {"engine": "sqlite3", "mode": "per-request", "database": os.path.basename(path)},
    }
