import json
import logging
import os
import sqlite3
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from werkzeug.datastructures import FileStorage

from db import now, transaction
from errors import Conflict, NotFound, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"jpeg", "jpg", "png", "gif"}
MAX_IMAGES = 5
CENT = Decimal("0.01")
MAX_PRICE = Decimal("1000000000")
MAX_QUANTITY = 1000000
# largest value a sqlite INTEGER column holds
MAX_ID = 2**63 - 1


def to_money(cents: int) -> Decimal:
    return (Decimal(cents or 0) / 100).quantize(CENT)


def parse_price(value) -> int:
    """Parse a non-negative decimal price and return it in cents."""
    if value is None or str(value).strip() == "":
        raise ValidationError("Price is required")
    try:
        price = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("Price must be a number")
    if not price.is_finite() or price < 0:
        raise ValidationError("Price must be a non-negative number")
    if price > MAX_PRICE:
        raise ValidationError(f"Price cannot be more than {MAX_PRICE}")
    try:
        return int(price.quantize(CENT, rounding=ROUND_HALF_UP) * 100)
    except InvalidOperation:
        raise ValidationError("Price must be a number")


def parse_quantity(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("Quantity must be a whole number")
    try:
        quantity = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a whole number")
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative")
    if quantity > MAX_QUANTITY:
        raise ValidationError(f"Quantity cannot be more than {MAX_QUANTITY}")
    return quantity


def parse_id(value, message: str = "Invalid ID") -> int:
    """Accept a positive integer or a string of digits."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(message)
    try:
        ident = int(value)
    except ValueError:
        raise ValidationError(message)
    if not 1 <= ident <= MAX_ID:
        raise ValidationError(message)
    return ident


def parse_colors(value) -> List[str]:
    """Accept a JSON list, a list, or a comma separated string.

    Duplicates are dropped and the first-seen order is kept.
    """
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = text.split(",")
        value = parsed if isinstance(parsed, list) else [parsed]
    if not isinstance(value, (list, tuple)):
        raise ValidationError("Colors must be a list")
    colors = []
    for color in value:
        name = str(color).strip()
        if name and name not in colors:
            colors.append(name)
    return colors


def _parse_url_list(value) -> List[str]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            raise ValidationError("existingImages must be a JSON list")
    if not isinstance(value, list):
        raise ValidationError("existingImages must be a list")
    return [str(url) for url in value]


def serialize_bag(row: sqlite3.Row) -> Dict:
    bag = {
        "id": row["id"],
        "name_en": row["name_en"],
        "name_ar": row["name_ar"],
        "description_en": row["description_en"],
        "description_ar": row["description_ar"],
        "price": to_money(row["price_cents"]),
        "colors": json.loads(row["colors"] or "[]"),
        "quantity": row["quantity"],
        "image_urls": json.loads(row["image_urls"] or "[]"),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    if "review_count" in row.keys():
        bag["review_count"] = row["review_count"]
        bag["average_rating"] = round(row["average_rating"], 1) if row["average_rating"] is not None else None
    return bag


BAG_WITH_RATING = """
    SELECT b.*, COUNT(r.id) AS review_count, AVG(r.rating) AS average_rating
    FROM bags b
    LEFT JOIN reviews r ON r.bag_id = b.id
"""


def list_bags(conn: sqlite3.Connection, in_stock_only: bool = False) -> List[Dict]:
    where = "WHERE b.quantity > 0" if in_stock_only else ""
    rows = conn.execute(
        f"{BAG_WITH_RATING} {where} GROUP BY b.id ORDER BY b.created_at DESC, b.id DESC"
    ).fetchall()
    return [serialize_bag(row) for row in rows]


def get_bag(conn: sqlite3.Connection, bag_id) -> Dict:
    row = conn.execute(f"{BAG_WITH_RATING} WHERE b.id = ? GROUP BY b.id", (bag_id,)).fetchone()
    if not row:
        raise NotFound("Bag not found")
    return serialize_bag(row)


def _bag_fields(data: Dict, current: Optional[Dict] = None) -> Dict:
    """Validate bag input. With ``current`` set, missing keys keep their value."""

    def pick(key):
        value = data.get(key)
        if isinstance(value, str):
            value = value.strip()
        return value

    def text(key):
        value = pick(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be text")
        return value

    name_en, name_ar = text("nameEn"), text("nameAr")
    if current is None:
        missing = [key for key in ("nameEn", "nameAr", "price", "colors", "quantity") if pick(key) in (None, "", [])]
        if missing:
            raise ValidationError("All required fields must be provided")

    fields = {}
    if current is None or name_en:
        fields["name_en"] = name_en
    if current is None or name_ar:
        fields["name_ar"] = name_ar
    for key, column in (("descriptionEn", "description_en"), ("descriptionAr", "description_ar")):
        value = text(key)
        if value is not None:
            fields[column] = value
        elif current is None:
            fields[column] = ""
    if current is None or pick("price") not in (None, ""):
        fields["price_cents"] = parse_price(pick("price"))
    if current is None or pick("colors") not in (None, "", []):
        colors = parse_colors(pick("colors"))
        if not colors:
            raise ValidationError("At least one color is required")
        fields["colors"] = json.dumps(colors, ensure_ascii=False)
    if current is None or pick("quantity") not in (None, ""):
        fields["quantity"] = parse_quantity(pick("quantity"))
    return fields


def create_bag(conn: sqlite3.Connection, data: Dict, image_urls: Iterable[str] = ()) -> int:
    fields = _bag_fields(data)
    stamp = now()
    fields.update(image_urls=json.dumps(list(image_urls)), created_at=stamp, updated_at=stamp)
    columns = ", ".join(fields)
    placeholders = ", ".join("?" for _ in fields)
    cur = conn.execute(f"INSERT INTO bags ({columns}) VALUES ({placeholders})", tuple(fields.values()))
    logger.info("Bag %s created (%s)", cur.lastrowid, fields["name_en"])
    return cur.lastrowid


def update_bag(conn: sqlite3.Connection, bag_id, data: Dict, new_image_urls: Iterable[str] = ()) -> Dict:
    """Update a bag. Uploaded images are appended to the current ones.

    ``existingImages`` narrows the kept images to the listed subset of the
    current ones, in the given order.
    """
    with transaction(conn):
        current = get_bag(conn, bag_id)
        fields = _bag_fields(data, current)

        images = current["image_urls"]
        if data.get("existingImages") is not None:
            keep = _parse_url_list(data["existingImages"])
            images = [url for url in keep if url in current["image_urls"]]
        images = images + [url for url in new_image_urls if url not in images]

        fields.update(image_urls=json.dumps(images), updated_at=now())
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(f"UPDATE bags SET {assignments} WHERE id = ?", (*fields.values(), bag_id))
    logger.info("Bag %s updated", bag_id)
    return get_bag(conn, bag_id)


def delete_bag(conn: sqlite3.Connection, bag_id):
    with transaction(conn):
        if not conn.execute("SELECT id FROM bags WHERE id = ?", (bag_id,)).fetchone():
            raise NotFound("Bag not found")
        ordered = conn.execute("SELECT COUNT(*) AS count FROM order_items WHERE bag_id = ?", (bag_id,)).fetchone()
        if ordered["count"] > 0:
            raise Conflict("Cannot delete bag that has been ordered")
        conn.execute("DELETE FROM bags WHERE id = ?", (bag_id,))
    logger.info("Bag %s deleted", bag_id)


def allowed_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def save_images(files: List[FileStorage], upload_folder: str, max_size: int) -> List[str]:
    """Store uploaded images and return their public URLs."""
    files = [f for f in files if f and f.filename]
    if len(files) > MAX_IMAGES:
        raise ValidationError(f"At most {MAX_IMAGES} images can be uploaded")
    for storage in files:
        if not allowed_file(storage.filename) or not (storage.mimetype or "").startswith("image/"):
            raise ValidationError("Only image files are allowed")
        storage.stream.seek(0, os.SEEK_END)
        size = storage.stream.tell()
        storage.stream.seek(0)
        if size > max_size:
            raise ValidationError("Image file is too large")

    os.makedirs(upload_folder, exist_ok=True)
    urls = []
    for storage in files:
        ext = storage.filename.rsplit(".", 1)[1].lower()
        filename = f"images-{uuid4().hex}.{ext}"
        storage.save(os.path.join(upload_folder, filename))
        urls.append(f"/uploads/{filename}")
    return urls


def remove_images(urls: Iterable[str], upload_folder: str):
    for url in urls:
        path = os.path.join(upload_folder, url.rsplit("/", 1)[1])
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        else:
            logger.info("Removed unused upload %s", path)
