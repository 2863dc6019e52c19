import logging
import sqlite3
from functools import wraps
from typing import Dict, Optional

from flask import g, redirect, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from db import now
from errors import Conflict, Forbidden, Unauthorized, ValidationError

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def get_user(conn: sqlite3.Connection, user_id) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def _by_email(conn, email: str) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()


def create_user(conn: sqlite3.Connection, first_name, last_name, email, password, confirm, phone="") -> sqlite3.Row:
    first_name, last_name = (first_name or "").strip(), (last_name or "").strip()
    email = (email or "").strip().lower()
    if not first_name or not last_name or not email or not password:
        raise ValidationError("Please fill in all required fields")
    if "@" not in email:
        raise ValidationError("Please enter a valid email address")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if password != confirm:
        raise ValidationError("Passwords do not match")
    if _by_email(conn, email):
        raise Conflict("This email is already registered")

    stamp = now()
    try:
        user_id = conn.execute(
            """
            INSERT INTO users (first_name, last_name, email, phone, password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (first_name, last_name, email, (phone or "").strip(), generate_password_hash(password), stamp, stamp),
        ).lastrowid
    except sqlite3.IntegrityError:
        # a concurrent signup took the email after the lookup above
        raise Conflict("This email is already registered")
    logger.info("User %s signed up", user_id)
    return get_user(conn, user_id)


def authenticate(conn: sqlite3.Connection, email, password) -> Optional[sqlite3.Row]:
    user = _by_email(conn, email or "")
    if not user or not user["password_hash"] or not check_password_hash(user["password_hash"], password or ""):
        return None
    return user


def google_login(conn: sqlite3.Connection, profile: Dict) -> sqlite3.Row:
    """Find, link or create the account for a Google OpenID profile."""
    google_id = profile.get("sub")
    email = (profile.get("email") or "").strip().lower()
    if not google_id or not email:
        raise ValidationError("Unable to read Google profile")

    user = conn.execute("SELECT * FROM users WHERE google_id = ?", (google_id,)).fetchone()
    if user:
        return user

    user = _by_email(conn, email)
    if user:
        conn.execute("UPDATE users SET google_id = ?, updated_at = ? WHERE id = ?", (google_id, now(), user["id"]))
        logger.info("Linked Google account to user %s", user["id"])
        return get_user(conn, user["id"])

    first_name = (profile.get("given_name") or profile.get("name") or email.split("@", 1)[0]).strip()
    stamp = now()
    user_id = conn.execute(
        """
        INSERT INTO users (first_name, last_name, email, google_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (first_name, (profile.get("family_name") or "").strip(), email, google_id, stamp, stamp),
    ).lastrowid
    logger.info("User %s created from Google login", user_id)
    return get_user(conn, user_id)


def login_user(user):
    session.clear()
    session["user_id"] = user["id"]
    session["is_admin"] = bool(user["is_admin"])


def logout_user():
    lang = session.get("lang")
    session.clear()
    if lang:
        session["lang"] = lang


def _is_api() -> bool:
    return request.path.startswith("/api/")


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get("user") is None:
            if _is_api():
                raise Unauthorized()
            return redirect(url_for("login", next=request.path))
        return f(*args, **kwargs)

    return decorated_function


def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = g.get("user")
        if user is None:
            if _is_api():
                raise Unauthorized()
            return redirect(url_for("login", next=request.path))
        if not user["is_admin"]:
            raise Forbidden()
        return f(*args, **kwargs)

    return decorated_function
