"""Turn catalog search parameters into a product filter, sort and page.

``CatalogQuery`` holds the parsed parameters; ``build_product_filter`` and
``build_sort`` translate it into MongoDB terms. Neither touches the database,
only ``search_products`` and the facet helpers do.
"""

import math
import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from pharmashop.helpers import parse_bool, safe_float, safe_positive_int
from pharmashop.products import serialize_product

DEFAULT_MIN_PRICE = 0.0
DEFAULT_MAX_PRICE = 999999.0
DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 100
SUGGESTION_THRESHOLD = 5
SUGGESTION_LIMIT = 5
SUGGESTION_PREFIX_LENGTH = 3
BRAND_FACET_LIMIT = 20
ALL_CATEGORIES = "all"

TEXT_SEARCH_FIELDS = ("name", "description", "brand", "tags", "activeIngredients")

SORT_OPTIONS: Dict[str, List[Tuple[str, int]]] = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "name_asc": [("name", 1)],
    "name_desc": [("name", -1)],
    "newest": [("createdAt", -1)],
    "oldest": [("createdAt", 1)],
}
# No text scoring: "relevance" means best stocked first, then alphabetical.
RELEVANCE_SORT = [("stock", -1), ("name", 1)]


class CatalogQuery(NamedTuple):
    text: str = ""
    category: Optional[str] = None
    min_price: float = DEFAULT_MIN_PRICE
    max_price: float = DEFAULT_MAX_PRICE
    in_stock: bool = False
    prescription_required: Optional[bool] = None
    sort_by: str = "relevance"
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    @classmethod
    def from_args(cls, args) -> "CatalogQuery":
        text = str(args.get("q") or "").strip()
        category = str(args.get("category") or "").strip() or None
        limit = safe_positive_int(args.get("limit"), 0) or DEFAULT_PAGE_SIZE
        return cls(
            text=text,
            category=category,
            min_price=safe_float(args.get("minPrice"), DEFAULT_MIN_PRICE),
            max_price=safe_float(args.get("maxPrice"), DEFAULT_MAX_PRICE),
            in_stock=bool(parse_bool(args.get("inStock"))),
            prescription_required=parse_bool(args.get("prescriptionRequired")),
            sort_by=str(args.get("sortBy") or "relevance").strip(),
            page=safe_positive_int(args.get("page"), 1),
            limit=min(limit, MAX_PAGE_SIZE),
        )


def text_pattern(text: str):
    return re.compile(re.escape(text), re.IGNORECASE)


def build_product_filter(query: CatalogQuery) -> Dict[str, object]:
    product_filter: Dict[str, object] = {"isActive": True}

    if query.text:
        pattern = text_pattern(query.text)
        product_filter["$or"] = [{field: pattern} for field in TEXT_SEARCH_FIELDS]

    if query.category and query.category != ALL_CATEGORIES:
        product_filter["category"] = query.category

    product_filter["price"] = {"$gte": query.min_price, "$lte": query.max_price}

    if query.in_stock:
        product_filter["stock"] = {"$gt": 0}

    if query.prescription_required is not None:
        product_filter["prescriptionRequired"] = query.prescription_required

    return product_filter


def build_sort(sort_by: Optional[str]) -> List[Tuple[str, int]]:
    return list(SORT_OPTIONS.get(sort_by or "", RELEVANCE_SORT))


def build_suggestion_filter(text: str) -> Dict[str, object]:
    pattern = text_pattern(text[:SUGGESTION_PREFIX_LENGTH])
    return {"isActive": True, "$or": [{"name": pattern}, {"tags": pattern}]}


def needs_suggestions(query: CatalogQuery, result_count: int) -> bool:
    return bool(query.text) and result_count < SUGGESTION_THRESHOLD


def build_pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def search_products(db, query: CatalogQuery) -> Dict[str, object]:
    product_filter = build_product_filter(query)
    cursor = (
        db.products.find(product_filter)
        .sort(build_sort(query.sort_by))
        .skip(query.skip)
        .limit(query.limit)
    )
    product_documents = list(cursor)
    total = db.products.count_documents(product_filter)

    suggestions: List[str] = []
    if needs_suggestions(query, len(product_documents)):
        suggestion_cursor = db.products.find(
            build_suggestion_filter(query.text), {"name": 1, "_id": 0}
        ).limit(SUGGESTION_LIMIT)
        suggestions = [
            document["name"] for document in suggestion_cursor if document.get("name")
        ]

    return {
        "products": [serialize_product(document) for document in product_documents],
        "suggestions": suggestions,
        "pagination": build_pagination(query.page, query.limit, total),
        "filters": {
            "query": query.text or None,
            "category": query.category,
            "minPrice": query.min_price,
            "maxPrice": query.max_price,
            "inStock": query.in_stock,
            "prescriptionRequired": query.prescription_required,
            "sortBy": query.sort_by,
        },
    }


def category_facet_pipeline() -> List[Dict[str, object]]:
    return [
        {"$match": {"isActive": True}},
        {
            "$group": {
                "_id": "$category",
                "count": {"$sum": 1},
                "avgPrice": {"$avg": "$price"},
                "minPrice": {"$min": "$price"},
                "maxPrice": {"$max": "$price"},
            }
        },
        {"$sort": {"count": -1, "_id": 1}},
    ]


def brand_facet_pipeline() -> List[Dict[str, object]]:
    return [
        {"$match": {"isActive": True}},
        {"$group": {"_id": "$brand", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
        {"$limit": BRAND_FACET_LIMIT},
    ]


def serialize_category_facet(document) -> Dict[str, object]:
    average = document.get("avgPrice")
    return {
        "category": document.get("_id"),
        "count": document.get("count", 0),
        "avgPrice": round(average, 2) if average is not None else None,
        "minPrice": document.get("minPrice"),
        "maxPrice": document.get("maxPrice"),
    }


def serialize_brand_facet(document) -> Dict[str, object]:
    return {"brand": document.get("_id"), "count": document.get("count", 0)}


def catalog_facets(db) -> Dict[str, List[Dict[str, object]]]:
    categories = [
        serialize_category_facet(document)
        for document in db.products.aggregate(category_facet_pipeline())
    ]
    brands = [
        serialize_brand_facet(document)
        for document in db.products.aggregate(brand_facet_pipeline())
    ]
    return {"categories": categories, "brands": brands}


def catalog_stats(db) -> Dict[str, object]:
    visible = {"isActive": {"$ne": False}}
    total_products = db.products.count_documents(visible)
    categories = db.products.distinct("category", visible)
    total_orders = db.orders.count_documents({})

    rating_rows = list(
        db.products.aggregate(
            [
                {"$match": {"isActive": {"$ne": False}, "rating": {"$exists": True}}},
                {"$group": {"_id": None, "avgRating": {"$avg": "$rating"}}},
            ]
        )
    )
    average_rating = None
    if rating_rows and rating_rows[0].get("avgRating") is not None:
        average_rating = round(rating_rows[0]["avgRating"], 1)

    return {
        "totalProducts": total_products,
        "totalCategories": len(categories),
        "totalOrders": total_orders,
        "averageRating": average_rating,
    }
