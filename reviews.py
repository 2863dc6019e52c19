import json
import logging
import sqlite3
from typing import Dict, List

from db import now, transaction
from errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

MAX_REVIEW_LENGTH = 2000


def _rating(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("Valid bag ID and rating (1-5) are required")
    try:
        rating = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError("Valid bag ID and rating (1-5) are required")
    if not 1 <= rating <= 5:
        raise ValidationError("Valid bag ID and rating (1-5) are required")
    return rating


def has_purchased(conn: sqlite3.Connection, user_id, bag_id) -> bool:
    row = conn.execute(
        """
        SELECT 1 FROM order_items oi
        JOIN orders o ON oi.order_id = o.id
        WHERE o.user_id = ? AND oi.bag_id = ? AND o.status IN ('Confirmed', 'Delivered')
        LIMIT 1
        """,
        (user_id, bag_id),
    ).fetchone()
    return row is not None


def submit_review(conn: sqlite3.Connection, user_id, bag_id, rating, text: str = "", require_purchase: bool = False) -> int:
    """Create or overwrite the user's review of a bag. Returns the review id."""
    rating = _rating(rating)
    if text is not None and not isinstance(text, str):
        raise ValidationError("Review text must be text")
    text = (text or "").strip()[:MAX_REVIEW_LENGTH]
    with transaction(conn):
        if not conn.execute("SELECT id FROM bags WHERE id = ?", (bag_id,)).fetchone():
            raise NotFound("Bag not found")
        if require_purchase and not has_purchased(conn, user_id, bag_id):
            raise ValidationError("You can only review bags you have ordered")
        stamp = now()
        conn.execute(
            """
            INSERT INTO reviews (user_id, bag_id, rating, review_text, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, bag_id) DO UPDATE SET
                rating = excluded.rating,
                review_text = excluded.review_text,
                updated_at = excluded.updated_at
            """,
            (user_id, bag_id, rating, text, stamp, stamp),
        )
        review_id = conn.execute(
            "SELECT id FROM reviews WHERE user_id = ? AND bag_id = ?", (user_id, bag_id)
        ).fetchone()["id"]
    logger.info("Review %s saved by user %s for bag %s", review_id, user_id, bag_id)
    return review_id


def delete_review(conn: sqlite3.Connection, review_id):
    deleted = conn.execute("DELETE FROM reviews WHERE id = ?", (review_id,)).rowcount
    if not deleted:
        raise NotFound("Review not found")
    logger.info("Review %s deleted", review_id)


def _serialize(row) -> Dict:
    review = {key: row[key] for key in row.keys()}
    if "image_urls" in review:
        review["image_urls"] = json.loads(review["image_urls"] or "[]")
    return review


def bag_reviews(conn: sqlite3.Connection, bag_id) -> List[Dict]:
    rows = conn.execute(
        """
        SELECT r.*, u.first_name, u.last_name
        FROM reviews r
        JOIN users u ON r.user_id = u.id
        WHERE r.bag_id = ?
        ORDER BY r.created_at DESC, r.id DESC
        """,
        (bag_id,),
    ).fetchall()
    return [_serialize(row) for row in rows]


def user_reviews(conn: sqlite3.Connection, user_id) -> List[Dict]:
    rows = conn.execute(
        """
        SELECT r.*, b.name_en, b.name_ar, b.image_urls
        FROM reviews r
        JOIN bags b ON r.bag_id = b.id
        WHERE r.user_id = ?
        ORDER BY r.created_at DESC, r.id DESC
        """,
        (user_id,),
    ).fetchall()
    return [_serialize(row) for row in rows]


def all_reviews(conn: sqlite3.Connection) -> List[Dict]:
    rows = conn.execute(
        """
        SELECT r.*, u.first_name, u.last_name, u.email, b.name_en, b.name_ar
        FROM reviews r
        JOIN users u ON r.user_id = u.id
        JOIN bags b ON r.bag_id = b.id
        ORDER BY r.created_at DESC, r.id DESC
        """
    ).fetchall()
    return [_serialize(row) for row in rows]


def reviewable_bags(conn: sqlite3.Connection, user_id) -> List[Dict]:
    """Bags in the user's confirmed or delivered orders that they have not reviewed."""
    rows = conn.execute(
        """
        SELECT DISTINCT b.id, b.name_en, b.name_ar, b.image_urls
        FROM bags b
        JOIN order_items oi ON b.id = oi.bag_id
        JOIN orders o ON oi.order_id = o.id
        WHERE o.user_id = ? AND o.status IN ('Delivered', 'Confirmed')
          AND b.id NOT IN (SELECT bag_id FROM reviews WHERE user_id = ?)
        ORDER BY b.name_en
        """,
        (user_id, user_id),
    ).fetchall()
    return [_serialize(row) for row in rows]


def rating_summary(conn: sqlite3.Connection, bag_id) -> Dict:
    row = conn.execute(
        "SELECT COUNT(*) AS count, AVG(rating) AS average FROM reviews WHERE bag_id = ?", (bag_id,)
    ).fetchone()
    average = round(row["average"], 1) if row["average"] is not None else None
    return {"count": row["count"], "average": average}
