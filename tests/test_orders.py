"""Tests for the cart and order lifecycle."""

from decimal import Decimal

import pytest

import orders
from errors import EmptyCart, InsufficientStock, InvalidTransition, NotFound, ValidationError

CONTACT = {
    "customerName": "Reem Ahmed",
    "customerPhone": "01000000000",
    "customerAddress": "12 Nile St, Cairo",
    "customerEmail": "reem@example.com",
}


def bag_stock(conn, bag_id):
    return conn.execute("SELECT quantity FROM bags WHERE id = ?", (bag_id,)).fetchone()["quantity"]


def order_row(conn, order_id):
    return conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()


def assert_total_consistent(conn, order_id):
    row = order_row(conn, order_id)
    items = conn.execute(
        "SELECT COUNT(*) AS n, COALESCE(SUM(quantity * price_cents), 0) AS s FROM order_items WHERE order_id = ?",
        (order_id,),
    ).fetchone()
    assert row["total_cents"] == items["s"] + row["shipping_fee_cents"]
    assert (row["shipping_fee_cents"] == 0) == (items["n"] == 0)


class TestAddItem:
    def test_first_add_creates_cart(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(price="150.00")

        order_id = orders.add_item(conn, user_id, bag_id, 2, "Black")

        row = order_row(conn, order_id)
        assert row["status"] == orders.IN_PROGRESS
        assert row["placed_at"] is None
        assert row["shipping_fee_cents"] == 4000
        assert row["total_cents"] == 2 * 15000 + 4000
        assert_total_consistent(conn, order_id)

    def test_same_bag_and_color_merges_lines(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=10)

        first = orders.add_item(conn, user_id, bag_id, 2, "Black")
        second = orders.add_item(conn, user_id, bag_id, 3, "Black")

        assert first == second
        lines = conn.execute("SELECT quantity FROM order_items WHERE order_id = ?", (first,)).fetchall()
        assert [line["quantity"] for line in lines] == [5]
        assert_total_consistent(conn, first)

    def test_other_color_is_a_separate_line(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=10)

        order_id = orders.add_item(conn, user_id, bag_id, 1, "Black")
        orders.add_item(conn, user_id, bag_id, 1, "Brown")

        count = conn.execute("SELECT COUNT(*) AS n FROM order_items WHERE order_id = ?", (order_id,)).fetchone()["n"]
        assert count == 2

    def test_price_is_snapshotted(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(price="100.00")
        order_id = orders.add_item(conn, user_id, bag_id, 1, "Black")

        conn.execute("UPDATE bags SET price_cents = 99900 WHERE id = ?", (bag_id,))
        orders.add_item(conn, user_id, bag_id, 1, "Black")

        cart = orders.get_cart(conn, user_id)
        assert cart["id"] == order_id
        assert cart["items"][0]["price"] == Decimal("100.00")
        assert cart["total_amount"] == Decimal("240.00")

    def test_stock_is_not_debited_on_add(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=5)
        orders.add_item(conn, user_id, bag_id, 3, "Black")
        assert bag_stock(conn, bag_id) == 5

    def test_insufficient_stock(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=2)
        with pytest.raises(InsufficientStock):
            orders.add_item(conn, user_id, bag_id, 3, "Black")
        assert orders.get_cart(conn, user_id) is None

    def test_cart_total_for_bag_counts_against_stock(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=4)
        orders.add_item(conn, user_id, bag_id, 3, "Black")
        with pytest.raises(InsufficientStock):
            orders.add_item(conn, user_id, bag_id, 2, "Brown")

    def test_missing_bag(self, conn, make_user):
        with pytest.raises(NotFound):
            orders.add_item(conn, make_user(), 9999, 1, "Black")

    @pytest.mark.parametrize("quantity", [0, -1, "abc", None, 1.5, True, float("inf"), 10**7])
    def test_invalid_quantity(self, conn, make_user, make_bag, quantity):
        with pytest.raises(ValidationError):
            orders.add_item(conn, make_user(), make_bag(), quantity, "Black")

    def test_unknown_color(self, conn, make_user, make_bag):
        with pytest.raises(ValidationError):
            orders.add_item(conn, make_user(), make_bag(), 1, "Purple")

    @pytest.mark.parametrize("color", [5, ["Black"], {"name": "Black"}])
    def test_color_must_be_text(self, conn, make_user, make_bag, color):
        with pytest.raises(ValidationError):
            orders.add_item(conn, make_user(), make_bag(), 1, color)


class TestUpdateAndRemove:
    def test_update_quantity_recomputes_total(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=10, price="50.00")
        order_id = orders.add_item(conn, user_id, bag_id, 1, "Black")
        item_id = orders.get_cart(conn, user_id)["items"][0]["id"]

        orders.update_item_quantity(conn, user_id, item_id, 4)

        assert order_row(conn, order_id)["total_cents"] == 4 * 5000 + 4000
        assert_total_consistent(conn, order_id)

    def test_update_beyond_stock(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=3)
        orders.add_item(conn, user_id, bag_id, 1, "Black")
        item_id = orders.get_cart(conn, user_id)["items"][0]["id"]
        with pytest.raises(InsufficientStock):
            orders.update_item_quantity(conn, user_id, item_id, 4)

    def test_update_other_users_item_is_not_found(self, conn, make_user, make_bag):
        owner, stranger, bag_id = make_user(), make_user(), make_bag()
        orders.add_item(conn, owner, bag_id, 1, "Black")
        item_id = orders.get_cart(conn, owner)["items"][0]["id"]
        with pytest.raises(NotFound):
            orders.update_item_quantity(conn, stranger, item_id, 2)
        with pytest.raises(NotFound):
            orders.remove_item(conn, stranger, item_id)

    def test_update_invalid_quantity(self, conn, make_user, make_bag):
        user_id = make_user()
        orders.add_item(conn, user_id, make_bag(), 1, "Black")
        item_id = orders.get_cart(conn, user_id)["items"][0]["id"]
        with pytest.raises(ValidationError):
            orders.update_item_quantity(conn, user_id, item_id, 0)

    def test_removing_last_item_drops_shipping(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag()
        order_id = orders.add_item(conn, user_id, bag_id, 2, "Black")
        item_id = orders.get_cart(conn, user_id)["items"][0]["id"]

        orders.remove_item(conn, user_id, item_id)

        row = order_row(conn, order_id)
        assert row is not None
        assert row["total_cents"] == 0
        assert row["shipping_fee_cents"] == 0

    def test_placed_order_items_are_frozen(self, conn, make_user, make_bag):
        user_id = make_user()
        orders.add_item(conn, user_id, make_bag(), 1, "Black")
        item_id = orders.get_cart(conn, user_id)["items"][0]["id"]
        orders.checkout(conn, user_id, CONTACT)
        with pytest.raises(NotFound):
            orders.update_item_quantity(conn, user_id, item_id, 2)
        with pytest.raises(NotFound):
            orders.remove_item(conn, user_id, item_id)


class TestCheckoutAndCancel:
    def test_checkout_then_cancel_scenario(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=5, price="150.00")
        orders.add_item(conn, user_id, bag_id, 3, "Black")

        order_id = orders.checkout(conn, user_id, CONTACT)

        row = order_row(conn, order_id)
        assert bag_stock(conn, bag_id) == 2
        assert row["status"] == orders.CONFIRMED
        assert row["total_cents"] == 3 * 15000 + 4000
        assert row["customer_name"] == "Reem Ahmed"
        assert row["placed_at"] is not None

        orders.cancel_order(conn, user_id, order_id)

        assert bag_stock(conn, bag_id) == 5
        assert order_row(conn, order_id)["status"] == orders.CANCELED

    def test_checkout_empty_cart(self, conn, make_user):
        with pytest.raises(EmptyCart):
            orders.checkout(conn, make_user(), CONTACT)

    def test_checkout_cart_emptied_by_removal(self, conn, make_user, make_bag):
        user_id = make_user()
        orders.add_item(conn, user_id, make_bag(), 1, "Black")
        orders.remove_item(conn, user_id, orders.get_cart(conn, user_id)["items"][0]["id"])
        with pytest.raises(EmptyCart):
            orders.checkout(conn, user_id, CONTACT)

    @pytest.mark.parametrize("missing", ["customerName", "customerPhone", "customerAddress", "customerEmail"])
    def test_checkout_requires_contact(self, conn, make_user, make_bag, missing):
        user_id = make_user()
        orders.add_item(conn, user_id, make_bag(), 1, "Black")
        with pytest.raises(ValidationError):
            orders.checkout(conn, user_id, dict(CONTACT, **{missing: "  "}))
        assert orders.get_cart(conn, user_id) is not None

    def test_double_checkout_does_not_double_debit(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=5)
        orders.add_item(conn, user_id, bag_id, 2, "Black")
        orders.checkout(conn, user_id, CONTACT)

        with pytest.raises(ValidationError):
            orders.checkout(conn, user_id, CONTACT)
        assert bag_stock(conn, bag_id) == 3

    def test_oversold_checkout_rolls_back(self, conn, make_user, make_bag):
        first, second = make_user(), make_user()
        plenty, scarce = make_bag(quantity=10, name="Plenty"), make_bag(quantity=3, name="Scarce")
        orders.add_item(conn, first, plenty, 2, "Black")
        orders.add_item(conn, first, scarce, 2, "Black")
        orders.add_item(conn, second, scarce, 2, "Black")
        orders.checkout(conn, second, CONTACT)

        with pytest.raises(InsufficientStock):
            orders.checkout(conn, first, CONTACT)

        assert bag_stock(conn, plenty) == 10
        assert bag_stock(conn, scarce) == 1
        assert orders.get_cart(conn, first)["status"] == orders.IN_PROGRESS

    def test_new_cart_after_checkout(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=10)
        orders.add_item(conn, user_id, bag_id, 1, "Black")
        placed = orders.checkout(conn, user_id, CONTACT)

        cart_id = orders.add_item(conn, user_id, bag_id, 1, "Black")

        assert cart_id != placed
        assert orders.cart_count(conn, user_id) == 1

    def test_cancel_restores_every_line(self, conn, make_user, make_bag):
        user_id = make_user()
        a, b = make_bag(quantity=7, name="A"), make_bag(quantity=4, name="B")
        orders.add_item(conn, user_id, a, 3, "Black")
        orders.add_item(conn, user_id, a, 2, "Brown")
        orders.add_item(conn, user_id, b, 4, "Black")
        order_id = orders.checkout(conn, user_id, CONTACT)
        assert (bag_stock(conn, a), bag_stock(conn, b)) == (2, 0)

        orders.cancel_order(conn, user_id, order_id)

        assert (bag_stock(conn, a), bag_stock(conn, b)) == (7, 4)

    def test_cancel_cart_is_rejected(self, conn, make_user, make_bag):
        user_id = make_user()
        order_id = orders.add_item(conn, user_id, make_bag(), 1, "Black")
        with pytest.raises(InvalidTransition):
            orders.cancel_order(conn, user_id, order_id)

    @pytest.mark.parametrize("status", [orders.DELIVERED, orders.CANCELED])
    def test_cancel_after_terminal_status(self, conn, make_user, make_bag, status):
        user_id, bag_id = make_user(), make_bag(quantity=5)
        orders.add_item(conn, user_id, bag_id, 1, "Black")
        order_id = orders.checkout(conn, user_id, CONTACT)
        orders.admin_set_status(conn, order_id, status)

        with pytest.raises(InvalidTransition):
            orders.cancel_order(conn, user_id, order_id)
        assert bag_stock(conn, bag_id) == 4

    def test_cancel_someone_elses_order(self, conn, make_user, make_bag):
        owner, stranger = make_user(), make_user()
        orders.add_item(conn, owner, make_bag(), 1, "Black")
        order_id = orders.checkout(conn, owner, CONTACT)
        with pytest.raises(NotFound):
            orders.cancel_order(conn, stranger, order_id)


class TestAdminStatus:
    @pytest.fixture
    def placed(self, conn, make_user, make_bag):
        user_id = make_user()
        orders.add_item(conn, user_id, make_bag(), 1, "Black")
        return orders.checkout(conn, user_id, CONTACT)

    @pytest.mark.parametrize(
        "path",
        [
            [orders.DELIVERED],
            [orders.CANCELED],
            [orders.IN_PROGRESS, orders.DELIVERED],
            [orders.IN_PROGRESS, orders.CANCELED],
        ],
    )
    def test_allowed_paths(self, conn, placed, path):
        for status in path:
            orders.admin_set_status(conn, placed, status)
        assert order_row(conn, placed)["status"] == path[-1]

    def test_canceled_to_delivered_is_rejected(self, conn, placed):
        orders.admin_set_status(conn, placed, orders.CANCELED)
        with pytest.raises(InvalidTransition) as excinfo:
            orders.admin_set_status(conn, placed, orders.DELIVERED)
        assert excinfo.value.current == orders.CANCELED
        assert excinfo.value.requested == orders.DELIVERED

    def test_delivered_is_terminal(self, conn, placed):
        orders.admin_set_status(conn, placed, orders.DELIVERED)
        for status in orders.STATUSES:
            with pytest.raises(InvalidTransition):
                orders.admin_set_status(conn, placed, status)

    def test_reopened_order_is_not_a_cart(self, conn, placed):
        user_id = order_row(conn, placed)["user_id"]
        orders.admin_set_status(conn, placed, orders.IN_PROGRESS)
        assert orders.get_cart(conn, user_id) is None

    def test_cart_cannot_be_moved_by_admin(self, conn, make_user, make_bag):
        user_id = make_user()
        cart_id = orders.add_item(conn, user_id, make_bag(), 1, "Black")
        with pytest.raises(InvalidTransition):
            orders.admin_set_status(conn, cart_id, orders.DELIVERED)

    def test_delivery_does_not_move_stock(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=5)
        orders.add_item(conn, user_id, bag_id, 2, "Black")
        order_id = orders.checkout(conn, user_id, CONTACT)
        orders.admin_set_status(conn, order_id, orders.DELIVERED)
        assert bag_stock(conn, bag_id) == 3

    def test_unknown_status(self, conn, placed):
        with pytest.raises(ValidationError):
            orders.admin_set_status(conn, placed, "Shipped")

    def test_missing_order(self, conn):
        with pytest.raises(NotFound):
            orders.admin_set_status(conn, 4242, orders.DELIVERED)


class TestReadModels:
    def test_order_history_and_stats(self, conn, make_user, make_bag):
        user_id, bag_id = make_user(), make_bag(quantity=10, price="100.00")
        orders.add_item(conn, user_id, bag_id, 1, "Black")
        first = orders.checkout(conn, user_id, CONTACT)
        orders.add_item(conn, user_id, bag_id, 2, "Black")
        second = orders.checkout(conn, user_id, CONTACT)
        orders.cancel_order(conn, user_id, first)
        orders.add_item(conn, user_id, bag_id, 1, "Black")

        history = orders.list_orders(conn, user_id)
        assert [order["id"] for order in history] == [second, first]
        assert history[0]["items"][0]["quantity"] == 2
        assert history[0]["can_cancel"] is True
        assert history[1]["can_cancel"] is False

        stats = orders.admin_stats(conn)
        assert stats["totalOrders"] == 2
        assert stats["totalRevenue"] == Decimal("240.00")
        assert stats["pendingOrders"] == 1

        activity = orders.recent_activity(conn)
        assert activity[0]["description"] == f"Order #{second} placed by Reem Ahmed"
