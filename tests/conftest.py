"""Pytest fixtures for the store tests."""

import pytest

import app as shop
import catalog
import db
import users


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "store.db")
    db.init_db(path, "admin@example.com", "admin-pass")
    return path


@pytest.fixture
def conn(db_path):
    connection = db.connect(db_path)
    yield connection
    connection.close()


@pytest.fixture
def make_user(conn):
    counter = {"n": 0}

    def _make_user(email=None, password="secret123"):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        return users.create_user(conn, "Test", f"User{counter['n']}", email, password, password)["id"]

    return _make_user


@pytest.fixture
def make_bag(conn):
    def _make_bag(quantity=5, price="100.00", colors=("Black", "Brown"), name="Test Bag"):
        return catalog.create_bag(
            conn,
            {
                "nameEn": name,
                "nameAr": "حقيبة تجربة",
                "price": price,
                "colors": list(colors),
                "quantity": quantity,
            },
        )

    return _make_bag


@pytest.fixture
def flask_app(db_path, tmp_path):
    shop.app.config.update(
        TESTING=True,
        DATABASE=db_path,
        UPLOAD_FOLDER=str(tmp_path / "uploads"),
        REVIEWS_REQUIRE_PURCHASE=False,
    )
    yield shop.app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


def login(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


@pytest.fixture
def user_client(client, make_user):
    user_id = make_user()
    login(client, user_id)
    client.user_id = user_id
    return client


@pytest.fixture
def admin_client(client, conn):
    admin = conn.execute("SELECT id FROM users WHERE is_admin = 1").fetchone()
    login(client, admin["id"])
    client.user_id = admin["id"]
    return client
