import math
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pharmashop.helpers import (
    format_timestamp,
    parse_bool,
    safe_float,
    safe_positive_int,
)

PRODUCT_LIST_SORT_FIELDS = {"createdAt", "updatedAt", "price", "name", "stock"}
DEFAULT_BRAND = "Generic"


def normalize_string_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        candidates = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        candidates = list(value)
    else:
        return []
    normalized: List[str] = []
    for candidate in candidates:
        text = str(candidate or "").strip()
        if text and text not in normalized:
            normalized.append(text)
    return normalized


def serialize_product(product_document) -> Dict[str, object]:
    if not product_document:
        return {}

    rating = product_document.get("rating")
    return {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", "") or "",
        "description": product_document.get("description", "") or "",
        "brand": product_document.get("brand", "") or "",
        "category": product_document.get("category", "") or "",
        "price": round(safe_float(product_document.get("price"), 0.0), 2),
        "stock": safe_positive_int(product_document.get("stock"), 0),
        "isActive": product_document.get("isActive") is not False,
        "tags": normalize_string_list(product_document.get("tags")),
        "activeIngredients": normalize_string_list(
            product_document.get("activeIngredients")
        ),
        "prescriptionRequired": bool(product_document.get("prescriptionRequired")),
        "imageUrl": product_document.get("imageUrl", "") or "",
        "sku": product_document.get("sku", "") or "",
        "rating": safe_float(rating, None) if rating is not None else None,
        "createdAt": format_timestamp(product_document.get("createdAt")),
        "updatedAt": format_timestamp(product_document.get("updatedAt")),
    }


def normalize_product_payload(
    payload: Optional[Dict], partial: bool = False
) -> Tuple[Dict[str, object], Optional[str]]:
    """Validate a create/update body.

    With ``partial`` only the supplied keys are validated and returned.
    """
    payload = payload if isinstance(payload, dict) else {}
    fields: Dict[str, object] = {}

    if not partial:
        missing = [
            key
            for key in ("name", "description", "price", "stock")
            if payload.get(key) in (None, "")
        ]
        if missing:
            return {}, f"Missing required fields: {', '.join(missing)}"

    for key in ("name", "description", "category", "imageUrl"):
        if key in payload:
            fields[key] = str(payload.get(key) or "").strip()
    if "name" in fields and not fields["name"]:
        return {}, "A product name is required."

    if "brand" in payload or not partial:
        fields["brand"] = str(payload.get("brand") or "").strip() or DEFAULT_BRAND

    if "price" in payload:
        price_value = safe_float(payload.get("price"), None)
        if price_value is None or price_value < 0:
            return {}, "Valid price is required"
        fields["price"] = round(price_value, 2)

    if "stock" in payload:
        try:
            stock_value = int(str(payload.get("stock")).strip())
        except (TypeError, ValueError):
            return {}, "Valid stock quantity is required"
        if stock_value < 0:
            return {}, "Valid stock quantity is required"
        fields["stock"] = stock_value

    for key in ("tags", "activeIngredients"):
        if key in payload:
            fields[key] = normalize_string_list(payload.get(key))

    if "prescriptionRequired" in payload:
        fields["prescriptionRequired"] = bool(parse_bool(payload.get("prescriptionRequired")))

    if "isActive" in payload:
        fields["isActive"] = bool(parse_bool(payload.get("isActive")))

    if not partial:
        fields.setdefault("category", "")
        fields.setdefault("tags", [])
        fields.setdefault("prescriptionRequired", False)
        fields["isActive"] = True
        category_code = str(fields.get("category") or "").upper() or "GEN"
        fields["sku"] = f"{category_code}-{int(datetime.utcnow().timestamp() * 1000)}"

    return fields, None


def list_products(db, args, include_inactive: bool = False):
    query: Dict[str, object] = {}
    if not include_inactive:
        query["isActive"] = True

    category = str(args.get("category") or "").strip()
    if category and category != "all":
        query["category"] = re.compile(f"^{re.escape(category)}$", re.IGNORECASE)

    search_term = str(args.get("search") or "").strip()
    if search_term:
        regex = re.compile(re.escape(search_term), re.IGNORECASE)
        query["$or"] = [{"name": regex}, {"description": regex}, {"brand": regex}]

    sort_field = str(args.get("sortBy") or "createdAt").strip()
    if sort_field not in PRODUCT_LIST_SORT_FIELDS:
        sort_field = "createdAt"
    sort_direction = 1 if str(args.get("sortOrder") or "").lower() == "asc" else -1

    page = safe_positive_int(args.get("page"), 1)
    limit = min(safe_positive_int(args.get("limit"), 0) or 20, 100)
    skip = (page - 1) * limit

    cursor = (
        db.products.find(query)
        .sort([(sort_field, sort_direction), ("_id", sort_direction)])
        .skip(skip)
        .limit(limit)
    )
    products = [serialize_product(document) for document in cursor]
    total = db.products.count_documents(query)

    return {
        "products": products,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }
