from datetime import datetime, timedelta
from typing import Dict, Optional

from pharmashop.helpers import safe_float, safe_positive_int

ACTIVE_USER_WINDOW_DAYS = 30
DASHBOARD_LOW_STOCK_THRESHOLD = 10
TOP_PRODUCTS_LIMIT = 5


def month_bounds(now: datetime):
    start_of_month = datetime(now.year, now.month, 1)
    if now.month == 1:
        start_of_last_month = datetime(now.year - 1, 12, 1)
    else:
        start_of_last_month = datetime(now.year, now.month - 1, 1)
    return start_of_last_month, start_of_month


def growth_percentage(current: int, previous: int) -> float:
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def dashboard_stats(
    db,
    now: Optional[datetime] = None,
    low_stock_threshold: int = DASHBOARD_LOW_STOCK_THRESHOLD,
) -> Dict[str, object]:
    now = now or datetime.utcnow()
    start_of_last_month, start_of_month = month_bounds(now)

    total_products = db.products.count_documents({})
    total_users = db.users.count_documents({})
    active_users = db.users.count_documents(
        {
            "isActive": True,
            "lastLogin": {"$gte": now - timedelta(days=ACTIVE_USER_WINDOW_DAYS)},
        }
    )
    low_stock_products = db.products.count_documents(
        {"stock": {"$lte": low_stock_threshold}}
    )
    users_this_month = db.users.count_documents({"createdAt": {"$gte": start_of_month}})
    users_last_month = db.users.count_documents(
        {"createdAt": {"$gte": start_of_last_month, "$lt": start_of_month}}
    )

    total_orders = db.orders.count_documents({})
    revenue_rows = list(
        db.orders.aggregate(
            [
                {"$match": {"status": {"$ne": "cancelled"}}},
                {"$group": {"_id": None, "revenue": {"$sum": "$totalAmount"}}},
            ]
        )
    )
    total_revenue = safe_float(revenue_rows[0].get("revenue"), 0.0) if revenue_rows else 0.0

    top_products = [
        {
            "id": str(document.get("_id")),
            "name": document.get("name", "") or "",
            "stock": safe_positive_int(document.get("stock"), 0),
            "price": round(safe_float(document.get("price"), 0.0), 2),
        }
        for document in db.products.find({}).sort("stock", -1).limit(TOP_PRODUCTS_LIMIT)
    ]

    return {
        "stats": {
            "totalProducts": total_products,
            "totalUsers": total_users,
            "activeUsers": active_users,
            "lowStockProducts": low_stock_products,
            "recentUsers": users_this_month,
            "monthlyGrowth": growth_percentage(users_this_month, users_last_month),
            "totalOrders": total_orders,
            "totalRevenue": round(total_revenue, 2),
        },
        "topProducts": top_products,
    }
