"""Order status transitions and who may trigger them.

    pending -> confirmed -> shipped -> delivered
    pending | confirmed -> cancelled

``delivered`` and ``cancelled`` are terminal: nothing moves an order out of
them, not even a request for the same value.
"""

import math
import re
from datetime import datetime
from typing import Dict, List, Optional

from bson.errors import InvalidId
from flask import current_app
from pymongo.errors import PyMongoError

from pharmashop.auth_guard import is_admin
from pharmashop.helpers import (
    format_timestamp,
    parse_object_id,
    safe_float,
    safe_positive_int,
)

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")
TERMINAL_STATUSES = frozenset({"delivered", "cancelled"})
ADMIN_SETTABLE_STATUSES = ("confirmed", "shipped", "delivered", "cancelled")
CANCELLABLE_STATUSES = frozenset({"pending", "confirmed"})


class OrderLifecycleError(Exception):
    status_code = 400
    default_message = "Order could not be updated"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class OrderNotFound(OrderLifecycleError):
    status_code = 404
    default_message = "Order not found"


class InvalidOrderId(OrderNotFound):
    status_code = 400
    default_message = "Invalid order ID"


class OrderForbidden(OrderLifecycleError):
    status_code = 403
    default_message = "You are not allowed to modify this order"


class InvalidTransition(OrderLifecycleError):
    status_code = 400
    default_message = "Order cannot change status at this stage"


class InvalidOrderStatus(OrderLifecycleError):
    status_code = 400
    default_message = "Invalid status value"


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def is_order_owner(order_document, actor) -> bool:
    if not order_document or not actor:
        return False
    owner_id = order_document.get("userId")
    actor_id = actor.get("_id")
    if owner_id is None or actor_id is None:
        return False
    return str(owner_id).strip() == str(actor_id).strip()


def parse_order_id(order_id):
    try:
        return parse_object_id(order_id)
    except (InvalidId, TypeError):
        raise InvalidOrderId()


def load_order(db, order_id):
    order_document = db.orders.find_one({"_id": parse_order_id(order_id)})
    if not order_document:
        raise OrderNotFound()
    return order_document


def _apply_status(db, order_document, new_status: str, now: datetime):
    # Only write if nobody moved the order since it was read.
    result = db.orders.update_one(
        {"_id": order_document["_id"], "status": order_document.get("status")},
        {"$set": {"status": new_status, "updatedAt": now}},
    )
    if result.matched_count == 0:
        raise InvalidTransition("Order status changed while updating; reload and retry")

    updated = dict(order_document)
    updated["status"] = new_status
    updated["updatedAt"] = now
    return updated


def admin_set_status(db, order_id, new_status, actor, now: Optional[datetime] = None):
    if not is_admin(actor):
        raise OrderForbidden("Admin privileges required")

    object_id = parse_order_id(order_id)
    if new_status not in ADMIN_SETTABLE_STATUSES:
        raise InvalidOrderStatus()

    order_document = load_order(db, object_id)
    current_status = order_document.get("status")
    if is_terminal(current_status):
        raise InvalidTransition("Cannot update order in final state")

    updated = _apply_status(db, order_document, new_status, now or datetime.utcnow())
    current_app.logger.info(
        "Order %s moved from %s to %s by %s",
        order_document["_id"],
        current_status,
        new_status,
        actor.get("_id"),
    )
    return updated


def cancel_order(
    db, order_id, actor, restore_stock: bool = False, now: Optional[datetime] = None
):
    order_document = load_order(db, order_id)

    if not is_order_owner(order_document, actor) and not is_admin(actor):
        raise OrderForbidden("You are not allowed to cancel this order")

    if order_document.get("status") not in CANCELLABLE_STATUSES:
        raise InvalidTransition("Order cannot be cancelled at this stage")

    timestamp = now or datetime.utcnow()
    updated = _apply_status(db, order_document, "cancelled", timestamp)
    current_app.logger.info(
        "Order %s cancelled by %s", order_document["_id"], actor.get("_id")
    )

    if restore_stock:
        restore_order_stock(db, order_document, timestamp)

    return updated


def restore_order_stock(db, order_document, now: Optional[datetime] = None) -> int:
    """Give the quantities of a cancelled order back to product stock.

    Runs after the status write and outside any transaction. A failed
    increment is logged and skipped; the cancellation stands.
    """
    timestamp = now or datetime.utcnow()
    restored = 0
    for item in order_document.get("items") or []:
        if not isinstance(item, dict):
            continue
        quantity = safe_positive_int(item.get("quantity"), 0)
        if quantity <= 0:
            continue
        try:
            product_id = parse_object_id(item.get("productId") or item.get("product_id"))
        except (InvalidId, TypeError):
            current_app.logger.warning(
                "Skipping stock restore for order %s: bad product id %r",
                order_document.get("_id"),
                item.get("productId"),
            )
            continue
        try:
            db.products.update_one(
                {"_id": product_id},
                {"$inc": {"stock": quantity}, "$set": {"updatedAt": timestamp}},
            )
        except PyMongoError as exc:
            current_app.logger.warning(
                "Unable to restore stock for product %s: %s", product_id, exc
            )
            continue
        restored += 1
    return restored


def serialize_order_item(item) -> Dict[str, object]:
    if not isinstance(item, dict):
        return {}
    product_id = item.get("productId") or item.get("product_id")
    return {
        "productId": str(product_id) if product_id is not None else "",
        "name": str(item.get("name") or "").strip(),
        "price": round(safe_float(item.get("price"), 0.0), 2),
        "quantity": safe_positive_int(item.get("quantity"), 0),
    }


def serialize_order(order_document) -> Optional[Dict[str, object]]:
    if not order_document:
        return None

    items: List[Dict[str, object]] = [
        serialize_order_item(item)
        for item in order_document.get("items") or []
        if isinstance(item, dict)
    ]
    total_amount = order_document.get("totalAmount")
    if total_amount is None:
        total_amount = order_document.get("total")

    owner_id = order_document.get("userId")
    return {
        "id": str(order_document.get("_id")),
        "userId": str(owner_id) if owner_id is not None else "",
        "items": items,
        "totalAmount": round(safe_float(total_amount, 0.0), 2),
        "status": order_document.get("status") or "",
        "shippingAddress": order_document.get("shippingAddress") or None,
        "createdAt": format_timestamp(order_document.get("createdAt")),
        "updatedAt": format_timestamp(order_document.get("updatedAt")),
    }


def list_orders(db, actor, status: Optional[str] = None, page: int = 1, limit: int = 10):
    query: Dict[str, object] = {}
    if not is_admin(actor):
        actor_id = actor.get("_id")
        query["userId"] = {"$in": [actor_id, str(actor_id)]}
    if status and status != "all":
        query["status"] = status

    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    skip = (page - 1) * limit

    cursor = (
        db.orders.find(query)
        .sort([("createdAt", -1), ("_id", -1)])
        .skip(skip)
        .limit(limit)
    )
    orders = [serialize_order(document) for document in cursor]
    total = db.orders.count_documents(query)

    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def fetch_order_owners(db, order_documents) -> Dict[str, Dict[str, str]]:
    owner_ids = []
    for order_document in order_documents:
        try:
            owner_id = parse_object_id(order_document.get("userId"))
        except (InvalidId, TypeError):
            continue
        if owner_id not in owner_ids:
            owner_ids.append(owner_id)
    if not owner_ids:
        return {}

    cursor = db.users.find({"_id": {"$in": owner_ids}}, {"name": 1, "email": 1})
    return {
        str(document["_id"]): {
            "id": str(document["_id"]),
            "name": document.get("name", "") or "",
            "email": document.get("email", "") or "",
        }
        for document in cursor
    }


def admin_list_orders(
    db, status: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 50
):
    """Every order, newest first, with the owning account attached.

    ``search`` matches the shipping recipient's name case-insensitively.
    Orders whose owner no longer exists carry ``userAccount: None``.
    """
    query: Dict[str, object] = {}
    if status and status != "all":
        query["status"] = status
    if search:
        query["shippingAddress.fullName"] = re.compile(re.escape(search), re.IGNORECASE)

    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    skip = (page - 1) * limit

    order_documents = list(
        db.orders.find(query)
        .sort([("createdAt", -1), ("_id", -1)])
        .skip(skip)
        .limit(limit)
    )
    owners = fetch_order_owners(db, order_documents)

    orders = []
    for order_document in order_documents:
        serialized = serialize_order(order_document)
        serialized["userAccount"] = owners.get(str(order_document.get("userId")))
        orders.append(serialized)
    total = db.orders.count_documents(query)

    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }
