"""Synthetic admin activity feed built from recent users, products and low stock.

Nothing here is persisted; entries are rebuilt on every request.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pharmashop.helpers import format_timestamp, safe_positive_int

RECENT_USERS_LIMIT = 3
RECENT_PRODUCTS_LIMIT = 2
LOW_STOCK_LIMIT = 3
LOW_STOCK_THRESHOLD = 5
FEED_LIMIT = 10


def user_registered_entry(user_document) -> Dict[str, object]:
    return {
        "id": f"user_{user_document.get('_id')}",
        "type": "user_registered",
        "message": f"New user: {user_document.get('name') or user_document.get('email') or ''}",
        "timestamp": user_document.get("createdAt"),
        "status": "success",
    }


def product_added_entry(product_document) -> Dict[str, object]:
    return {
        "id": f"product_{product_document.get('_id')}",
        "type": "product_added",
        "message": f"New product added: {product_document.get('name') or ''}",
        "timestamp": product_document.get("createdAt") or product_document.get("updatedAt"),
        "status": "info",
    }


def low_stock_entry(product_document, now: datetime) -> Dict[str, object]:
    # Low stock is a live condition, so it is stamped with the request time.
    stock = safe_positive_int(product_document.get("stock"), 0)
    return {
        "id": f"stock_{product_document.get('_id')}",
        "type": "stock_low",
        "message": f"Low stock: {product_document.get('name') or ''} ({stock} units left)",
        "timestamp": now,
        "status": "warning",
    }


def _timestamp_sort_key(entry):
    timestamp = entry.get("timestamp")
    if isinstance(timestamp, datetime):
        return (1, timestamp.replace(tzinfo=None))
    return (0, datetime.min)


def merge_activities(
    users: Iterable,
    products: Iterable,
    low_stock_products: Iterable,
    now: datetime,
    limit: int = FEED_LIMIT,
) -> List[Dict[str, object]]:
    entries = [user_registered_entry(document) for document in users]
    entries.extend(product_added_entry(document) for document in products)
    entries.extend(low_stock_entry(document, now) for document in low_stock_products)

    entries.sort(key=_timestamp_sort_key, reverse=True)
    return entries[:limit]


def serialize_activity(entry) -> Dict[str, object]:
    serialized = dict(entry)
    serialized["timestamp"] = format_timestamp(entry.get("timestamp"))
    return serialized


def fetch_activity_feed(
    db, now: Optional[datetime] = None, low_stock_threshold: int = LOW_STOCK_THRESHOLD
) -> List[Dict[str, object]]:
    now = now or datetime.utcnow()
    recent_users = db.users.find({}).sort("createdAt", -1).limit(RECENT_USERS_LIMIT)
    recent_products = (
        db.products.find({}).sort("createdAt", -1).limit(RECENT_PRODUCTS_LIMIT)
    )
    low_stock_products = db.products.find(
        {"stock": {"$lte": low_stock_threshold}}
    ).limit(LOW_STOCK_LIMIT)

    entries = merge_activities(
        list(recent_users), list(recent_products), list(low_stock_products), now
    )
    return [serialize_activity(entry) for entry in entries]
