from datetime import datetime, timedelta

import pytest
from werkzeug.datastructures import MultiDict

from pharmashop.catalog_query import (
    DEFAULT_MAX_PRICE,
    RELEVANCE_SORT,
    TEXT_SEARCH_FIELDS,
    CatalogQuery,
    build_pagination,
    build_product_filter,
    build_sort,
    build_suggestion_filter,
    needs_suggestions,
    search_products,
)


def test_defaults_when_no_parameters():
    query = CatalogQuery.from_args(MultiDict())

    assert query.text == ""
    assert query.category is None
    assert (query.min_price, query.max_price) == (0.0, DEFAULT_MAX_PRICE)
    assert query.in_stock is False
    assert query.prescription_required is None
    assert query.page == 1
    assert query.limit == 12
    assert query.skip == 0

    assert build_product_filter(query) == {
        "isActive": True,
        "price": {"$gte": 0.0, "$lte": DEFAULT_MAX_PRICE},
    }


def test_parses_request_parameters():
    query = CatalogQuery.from_args(
        MultiDict(
            {
                "q": " aspirin ",
                "category": "pain-relief",
                "minPrice": "2.5",
                "maxPrice": "abc",
                "inStock": "true",
                "prescriptionRequired": "false",
                "sortBy": "price_desc",
                "page": "3",
                "limit": "500",
            }
        )
    )

    assert query.text == "aspirin"
    assert query.min_price == 2.5
    assert query.max_price == DEFAULT_MAX_PRICE
    assert query.in_stock is True
    assert query.prescription_required is False
    assert query.limit == 100
    assert query.skip == 200


def test_text_matches_every_search_field_case_insensitively():
    product_filter = build_product_filter(CatalogQuery(text="Para.cetamol"))

    clauses = product_filter["$or"]
    assert [next(iter(clause)) for clause in clauses] == list(TEXT_SEARCH_FIELDS)
    pattern = clauses[0]["name"]
    assert pattern.search("PARA.CETAMOL 500mg")
    # Regex metacharacters are matched literally.
    assert not pattern.search("paraXcetamol")


def test_category_all_is_the_same_as_no_category():
    base = dict(text="zinc", min_price=1.0, max_price=50.0, sort_by="name_asc")
    assert build_product_filter(CatalogQuery(category="all", **base)) == build_product_filter(
        CatalogQuery(**base)
    )
    assert build_product_filter(CatalogQuery(category="vitamins", **base))["category"] == "vitamins"


def test_stock_and_prescription_filters():
    product_filter = build_product_filter(
        CatalogQuery(in_stock=True, prescription_required=True)
    )
    assert product_filter["stock"] == {"$gt": 0}
    assert product_filter["prescriptionRequired"] is True


@pytest.mark.parametrize(
    "sort_by, expected",
    [
        ("price_asc", [("price", 1)]),
        ("price_desc", [("price", -1)]),
        ("name_asc", [("name", 1)]),
        ("name_desc", [("name", -1)]),
        ("newest", [("createdAt", -1)]),
        ("oldest", [("createdAt", 1)]),
        ("relevance", RELEVANCE_SORT),
        ("bogus", RELEVANCE_SORT),
        (None, RELEVANCE_SORT),
    ],
)
def test_sort_keys(sort_by, expected):
    assert build_sort(sort_by) == expected


def test_pagination_arithmetic():
    query = CatalogQuery(page=3, limit=10)
    assert query.skip == 20
    assert build_pagination(3, 10, 25) == {"page": 3, "limit": 10, "total": 25, "pages": 3}
    assert build_pagination(1, 10, 0)["pages"] == 0


def test_suggestions_use_a_three_character_prefix():
    suggestion_filter = build_suggestion_filter("ibuprofen")
    pattern = suggestion_filter["$or"][0]["name"]
    assert pattern.pattern == "ibu"
    assert suggestion_filter["isActive"] is True

    assert needs_suggestions(CatalogQuery(text="ibu"), 4)
    assert not needs_suggestions(CatalogQuery(text="ibu"), 5)
    assert not needs_suggestions(CatalogQuery(), 0)


def test_search_returns_requested_page(db, make_product):
    for index in range(25):
        make_product(f"Product {index:02d}", stock=100 - index)

    data = search_products(db, CatalogQuery(page=3, limit=10))

    assert data["pagination"] == {"page": 3, "limit": 10, "total": 25, "pages": 3}
    # Relevance order is stock descending, so page 3 holds items 21-25.
    assert [product["name"] for product in data["products"]] == [
        f"Product {index:02d}" for index in range(20, 25)
    ]


def test_search_skips_inactive_and_filters_price(db, make_product):
    make_product("Cheap Balm", price=3.0)
    make_product("Pricey Balm", price=80.0)
    make_product("Hidden Balm", price=5.0, isActive=False)

    data = search_products(db, CatalogQuery(text="balm", max_price=10.0))

    assert [product["name"] for product in data["products"]] == ["Cheap Balm"]
    assert data["filters"]["query"] == "balm"


def test_search_sorts_newest_first(db, make_product):
    now = datetime.utcnow()
    make_product("Old", createdAt=now - timedelta(days=3))
    make_product("New", createdAt=now)

    data = search_products(db, CatalogQuery(sort_by="newest"))
    assert [product["name"] for product in data["products"]] == ["New", "Old"]


def test_search_offers_suggestions_for_sparse_results(db, make_product):
    make_product("Paracetamol 500")
    make_product("Parapharm Gel")
    make_product("Zinc")

    data = search_products(db, CatalogQuery(text="parasol"))

    assert data["products"] == []
    assert sorted(data["suggestions"]) == ["Paracetamol 500", "Parapharm Gel"]


def test_search_route_envelope(client, make_product):
    make_product("Vitamin D3", category="vitamins", stock=0)
    make_product("Vitamin C", category="vitamins", stock=4)

    response = client.get("/api/search?q=vitamin&category=vitamins&inStock=true")
    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert [product["name"] for product in body["data"]["products"]] == ["Vitamin C"]
    assert body["data"]["filters"]["inStock"] is True


def test_categories_route_groups_active_products(client, make_product):
    make_product("A", category="vitamins", brand="Acme", price=10.0)
    make_product("B", category="vitamins", brand="Acme", price=15.0)
    make_product("C", category="vitamins", brand="Beta", price=20.0)
    make_product("D", category="skin", brand="Beta", price=7.5)
    make_product("E", category="skin", brand="Gamma", price=99.0, isActive=False)

    response = client.get("/api/categories")
    assert response.status_code == 200
    data = response.get_json()["data"]

    assert data["categories"][0] == {
        "category": "vitamins",
        "count": 3,
        "avgPrice": 15.0,
        "minPrice": 10.0,
        "maxPrice": 20.0,
    }
    assert data["categories"][1]["category"] == "skin"
    assert data["categories"][1]["count"] == 1
    assert {brand["brand"]: brand["count"] for brand in data["brands"]} == {
        "Acme": 2,
        "Beta": 2,
    }


def test_stats_route(client, db, make_product):
    make_product("A", category="vitamins", rating=4.0)
    make_product("B", category="skin", rating=4.6)
    make_product("C", category="skin", isActive=False)
    db.orders.insert_one({"status": "pending"})

    data = client.get("/api/stats").get_json()["data"]

    assert data == {
        "totalProducts": 2,
        "totalCategories": 2,
        "totalOrders": 1,
        "averageRating": 4.3,
    }


def test_out_of_range_numbers_fall_back_to_defaults():
    query = CatalogQuery.from_args(
        MultiDict({"page": "inf", "limit": "1e400", "minPrice": "-inf", "maxPrice": "1e400"})
    )

    assert query.page == 1
    assert query.limit == 12
    assert (query.min_price, query.max_price) == (0.0, DEFAULT_MAX_PRICE)


@pytest.mark.parametrize(
    "url",
    [
        "/api/search?page=inf",
        "/api/search?limit=1e400",
        "/api/search?page=1e400",
        "/api/products?page=inf&limit=-inf",
    ],
)
def test_listing_routes_tolerate_overflowing_numbers(client, make_product, url):
    make_product("Zinc")

    response = client.get(url)
    assert response.status_code == 200
    assert response.get_json()["data"]["pagination"]["page"] == 1


def test_stats_counts_every_distinct_category_value(client, make_product):
    make_product("A", category="vitamins")
    make_product("B", category="")
    make_product("C", category="")

    data = client.get("/api/stats").get_json()["data"]
    assert data["totalCategories"] == 2
