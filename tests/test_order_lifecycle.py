import pytest
from bson import ObjectId

from pharmashop.order_lifecycle import (
    ADMIN_SETTABLE_STATUSES,
    ORDER_STATUSES,
    InvalidOrderId,
    InvalidOrderStatus,
    InvalidTransition,
    OrderForbidden,
    OrderNotFound,
    _apply_status,
    admin_list_orders,
    admin_set_status,
    cancel_order,
    list_orders,
    restore_order_stock,
)

pytestmark = pytest.mark.usefixtures("app_context")


@pytest.mark.parametrize("current", ["delivered", "cancelled"])
@pytest.mark.parametrize("target", ADMIN_SETTABLE_STATUSES)
def test_terminal_orders_never_change(db, make_user, make_order, current, target):
    admin = make_user(email="admin@example.com", role="admin")
    order = make_order(admin, status=current)

    with pytest.raises(InvalidTransition):
        admin_set_status(db, order["_id"], target, admin)

    assert db.orders.find_one({"_id": order["_id"]})["status"] == current


@pytest.mark.parametrize("current", ["delivered", "cancelled"])
def test_terminal_orders_cannot_be_cancelled(db, make_user, make_order, current):
    owner = make_user()
    order = make_order(owner, status=current)

    with pytest.raises(InvalidTransition):
        cancel_order(db, order["_id"], owner)


def test_admin_moves_order_forward(db, make_user, make_order):
    admin = make_user(email="admin@example.com", role="admin")
    order = make_order(admin, status="confirmed")

    updated = admin_set_status(db, str(order["_id"]), "shipped", admin)

    assert updated["status"] == "shipped"
    stored = db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "shipped"
    assert stored["updatedAt"] is not None


@pytest.mark.parametrize("target", ["pending", "refunded", "", None])
def test_admin_cannot_set_unknown_or_initial_status(db, make_user, make_order, target):
    admin = make_user(email="admin@example.com", role="admin")
    order = make_order(admin, status="shipped")

    with pytest.raises(InvalidOrderStatus):
        admin_set_status(db, order["_id"], target, admin)


def test_non_admin_cannot_set_status(db, make_user, make_order):
    owner = make_user()
    order = make_order(owner, status="pending")

    with pytest.raises(OrderForbidden):
        admin_set_status(db, order["_id"], "confirmed", owner)


def test_unknown_and_malformed_order_ids(db, make_user):
    admin = make_user(email="admin@example.com", role="admin")

    with pytest.raises(OrderNotFound):
        admin_set_status(db, ObjectId(), "confirmed", admin)
    with pytest.raises(InvalidOrderId):
        cancel_order(db, "not-an-id", admin)
    # A malformed id is still a not-found condition.
    assert issubclass(InvalidOrderId, OrderNotFound)


@pytest.mark.parametrize("status", ["pending", "confirmed"])
def test_owner_cancels_open_order(db, make_user, make_order, status):
    owner = make_user()
    order = make_order(owner, status=status)

    updated = cancel_order(db, order["_id"], owner)

    assert updated["status"] == "cancelled"
    assert db.orders.find_one({"_id": order["_id"]})["status"] == "cancelled"


def test_owner_matches_string_user_id(db, make_user, make_order):
    owner = make_user()
    order = make_order(owner)
    db.orders.update_one({"_id": order["_id"]}, {"$set": {"userId": str(owner["_id"])}})

    assert cancel_order(db, order["_id"], owner)["status"] == "cancelled"


def test_second_cancel_fails_loudly(db, make_user, make_order):
    owner = make_user()
    order = make_order(owner, status="pending")

    cancel_order(db, order["_id"], owner)
    with pytest.raises(InvalidTransition):
        cancel_order(db, order["_id"], owner)


def test_shipped_order_cannot_be_cancelled(db, make_user, make_order):
    owner = make_user()
    order = make_order(owner, status="shipped")

    with pytest.raises(InvalidTransition):
        cancel_order(db, order["_id"], owner)


def test_stranger_cannot_cancel(db, make_user, make_order):
    owner = make_user()
    stranger = make_user(email="stranger@example.com")
    order = make_order(owner)

    with pytest.raises(OrderForbidden):
        cancel_order(db, order["_id"], stranger)
    assert db.orders.find_one({"_id": order["_id"]})["status"] == "pending"


def test_admin_cancels_any_order(db, make_user, make_order):
    owner = make_user()
    admin = make_user(email="admin@example.com", role="admin")
    order = make_order(owner, status="confirmed")

    assert cancel_order(db, order["_id"], admin)["status"] == "cancelled"


def test_concurrent_status_change_is_rejected(db, make_user, make_order):
    admin = make_user(email="admin@example.com", role="admin")
    order = make_order(admin, status="pending")
    stale = db.orders.find_one({"_id": order["_id"]})
    db.orders.update_one({"_id": order["_id"]}, {"$set": {"status": "shipped"}})

    with pytest.raises(InvalidTransition):
        _apply_status(db, stale, "cancelled", stale["updatedAt"])


def test_cancel_restores_stock_when_enabled(db, make_user, make_order, make_product):
    owner = make_user()
    product = make_product("Ibuprofen", stock=3)
    order = make_order(
        owner,
        items=[{"productId": str(product["_id"]), "name": "Ibuprofen", "quantity": 2, "price": 5}],
    )

    cancel_order(db, order["_id"], owner, restore_stock=True)

    assert db.products.find_one({"_id": product["_id"]})["stock"] == 5


def test_cancel_leaves_stock_alone_by_default(db, make_user, make_order, make_product):
    owner = make_user()
    product = make_product("Ibuprofen", stock=3)
    order = make_order(owner, items=[{"productId": product["_id"], "quantity": 2}])

    cancel_order(db, order["_id"], owner)

    assert db.products.find_one({"_id": product["_id"]})["stock"] == 3


def test_restore_stock_skips_bad_items(db, make_user, make_order, make_product):
    owner = make_user()
    product = make_product("Aspirin", stock=0)
    order = make_order(
        owner,
        items=[
            {"productId": "garbage", "quantity": 1},
            {"productId": product["_id"], "quantity": 0},
            {"productId": product["_id"], "quantity": 4},
        ],
    )

    assert restore_order_stock(db, order) == 1
    assert db.products.find_one({"_id": product["_id"]})["stock"] == 4


def test_list_orders_scopes_users_to_their_own(db, make_user, make_order):
    owner = make_user()
    other = make_user(email="other@example.com")
    admin = make_user(email="admin@example.com", role="admin")
    make_order(owner)
    make_order(owner, status="shipped")
    make_order(other)

    own = list_orders(db, owner)
    assert own["pagination"]["total"] == 2
    assert {order["userId"] for order in own["orders"]} == {str(owner["_id"])}

    shipped = list_orders(db, owner, status="shipped")
    assert [order["status"] for order in shipped["orders"]] == ["shipped"]

    assert list_orders(db, admin)["pagination"]["total"] == 3


def test_status_constants_cover_lifecycle():
    assert set(ADMIN_SETTABLE_STATUSES) == set(ORDER_STATUSES) - {"pending"}


def test_malformed_id_is_reported_before_bad_status(db, make_user):
    admin = make_user(email="admin@example.com", role="admin")

    with pytest.raises(InvalidOrderId):
        admin_set_status(db, "not-an-id", "refunded", admin)


def test_admin_list_orders_attaches_owner_and_filters(db, make_user, make_order):
    owner = make_user(email="ana@example.com", name="Ana")
    ghost = {"_id": ObjectId()}
    first = make_order(owner, status="pending")
    db.orders.update_one(
        {"_id": first["_id"]}, {"$set": {"shippingAddress": {"fullName": "Ana Lopez"}}}
    )
    make_order(owner, status="shipped")
    make_order(ghost, status="pending")

    everything = admin_list_orders(db)
    assert everything["pagination"]["total"] == 3
    accounts = [order["userAccount"] for order in everything["orders"]]
    assert accounts.count(None) == 1
    assert {"id": str(owner["_id"]), "name": "Ana", "email": "ana@example.com"} in accounts

    pending = admin_list_orders(db, status="pending")
    assert {order["status"] for order in pending["orders"]} == {"pending"}

    by_recipient = admin_list_orders(db, search="lopez")
    assert [order["id"] for order in by_recipient["orders"]] == [str(first["_id"])]
    assert admin_list_orders(db, search="l.pez")["orders"] == []
