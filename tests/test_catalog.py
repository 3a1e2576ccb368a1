from sqlalchemy import select

from models import Product, ProductSize


def _product_body(category_id, name="Runner", sizes=None, **extra):
    body = {
        "category_id": category_id,
        "name": name,
        "price": 200000,
        "description": "Lightweight running shoe",
        "sizes": sizes or [{"size": "M", "stock": 3}, {"size": "L", "stock": 4, "price": 210000}],
    }
    body.update(extra)
    return body


def _create_category(client, admin_headers, name="Giày Thể Thao"):
    resp = client.post("/api/v1/admin/categories", json={"name": name}, headers=admin_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_admin_creates_category_with_slug(client, admin_headers):
    category = _create_category(client, admin_headers)
    assert category["slug"] == "giay-the-thao"

    dup = client.post("/api/v1/admin/categories", json={"name": "giày thể thao"}, headers=admin_headers)
    assert dup.status_code == 409


def test_category_writes_need_admin(client, user_headers):
    resp = client.post("/api/v1/admin/categories", json={"name": "Hats"}, headers=user_headers)
    assert resp.status_code == 403


def test_product_create_computes_total_stock(client, admin_headers):
    category = _create_category(client, admin_headers)
    resp = client.post("/api/v1/admin/products", json=_product_body(category["id"]), headers=admin_headers)
    assert resp.status_code == 201, resp.text
    product = resp.json()["data"]
    assert product["slug"] == "runner"
    assert product["total_stock"] == 7
    assert product["stock_status"] == "low_stock"
    sizes = {s["size"]: s for s in product["sizes"]}
    assert sizes["M"]["final_price"] == 200000
    assert sizes["L"]["final_price"] == 210000


def test_product_validation_rules(client, admin_headers):
    category = _create_category(client, admin_headers)

    no_sizes = _product_body(category["id"], sizes=[])
    no_sizes["sizes"] = []
    assert client.post("/api/v1/admin/products", json=no_sizes, headers=admin_headers).status_code == 400

    dup_sizes = _product_body(category["id"], sizes=[{"size": "m", "stock": 1}, {"size": "M", "stock": 1}])
    assert client.post("/api/v1/admin/products", json=dup_sizes, headers=admin_headers).status_code == 400

    bad_discount = _product_body(category["id"], discount_price=200000)
    assert client.post("/api/v1/admin/products", json=bad_discount, headers=admin_headers).status_code == 400

    assert client.post("/api/v1/admin/products", json=_product_body(category["id"]), headers=admin_headers).status_code == 201
    clash = client.post("/api/v1/admin/products", json=_product_body(category["id"], name="RUNNER"), headers=admin_headers)
    assert clash.status_code == 409


def test_discount_rate_and_final_price(client, admin_headers):
    category = _create_category(client, admin_headers)
    body = _product_body(category["id"], discount_price=150000, sizes=[{"size": "M", "stock": 20}])
    product = client.post("/api/v1/admin/products", json=body, headers=admin_headers).json()["data"]
    assert product["final_price"] == 150000
    assert product["discount_rate"] == 25.0
    assert product["stock_status"] == "in_stock"
    assert product["sizes"][0]["final_price"] == 150000


def test_product_update_replaces_sizes(client, admin_headers, db):
    category = _create_category(client, admin_headers)
    product = client.post("/api/v1/admin/products", json=_product_body(category["id"]), headers=admin_headers).json()["data"]

    body = _product_body(category["id"], name="Runner Pro", sizes=[{"size": "m", "stock": 10}, {"size": "XL", "stock": 1}])
    resp = client.put(f"/api/v1/admin/products/{product['id']}", json=body, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    updated = resp.json()["data"]
    assert updated["slug"] == "runner-pro"
    assert updated["total_stock"] == 11
    assert sorted(s["size"] for s in updated["sizes"]) == ["XL", "m"]

    sizes = db.scalars(select(ProductSize).where(ProductSize.product_id == product["id"])).all()
    assert sorted(s.size for s in sizes) == ["XL", "m"]


def test_size_in_a_cart_is_retired_not_deleted(client, admin_headers, db):
    category = _create_category(client, admin_headers)
    product = client.post("/api/v1/admin/products", json=_product_body(category["id"]), headers=admin_headers).json()["data"]
    large = next(s for s in product["sizes"] if s["size"] == "L")
    client.post(
        "/api/v1/cart/add",
        json={"product_id": product["id"], "product_size_id": large["id"], "quantity": 1},
        headers={"X-Session-ID": "s-1"},
    )

    body = _product_body(category["id"], sizes=[{"size": "M", "stock": 3}])
    updated = client.put(f"/api/v1/admin/products/{product['id']}", json=body, headers=admin_headers).json()["data"]
    assert updated["total_stock"] == 3

    db.expire_all()
    retired = db.get(ProductSize, large["id"])
    assert retired is not None and retired.is_active is False

    cart = client.get("/api/v1/cart", headers={"X-Session-ID": "s-1"}).json()["data"]
    assert cart["cart_items"][0]["stock_status"] == "size_inactive"
    assert cart["is_valid"] is False


def test_public_reads_hide_inactive_products(client, admin_headers, make_product):
    visible = make_product(name="Visible")
    hidden = make_product(name="Hidden", is_active=False)

    listing = client.get("/api/v1/products").json()["data"]
    assert [p["id"] for p in listing["products"]] == [visible.id]
    assert client.get(f"/api/v1/products/{hidden.id}").status_code == 404

    # A non-admin cannot lift the filter.
    assert [p["id"] for p in client.get("/api/v1/products?is_active=false").json()["data"]["products"]] == [visible.id]

    admin_view = client.get("/api/v1/products?is_active=false", headers=admin_headers).json()["data"]
    assert [p["id"] for p in admin_view["products"]] == [hidden.id]
    assert client.get(f"/api/v1/products/{hidden.id}", headers=admin_headers).status_code == 200


def test_product_list_sorting_and_filters(client, make_product, make_category):
    shoes = make_category(name="Shoes")
    cheap = make_product(name="Cheap", price="100", category=shoes)
    pricey = make_product(name="Pricey", price="900", category=shoes, is_featured=True)
    make_product(name="Other", price="500")

    by_price = client.get(f"/api/v1/products?category_id={shoes.id}&sort=price_desc").json()["data"]
    assert [p["id"] for p in by_price["products"]] == [pricey.id, cheap.id]

    ranged = client.get("/api/v1/products?min_price=200&max_price=600").json()["data"]
    assert [p["name"] for p in ranged["products"]] == ["Other"]

    unknown_sort = client.get("/api/v1/products?sort=bogus").json()["data"]
    assert unknown_sort["pagination"]["total"] == 3

    paged = client.get("/api/v1/products?limit=2&page=2&sort=name_asc").json()["data"]
    assert paged["pagination"] == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}
    assert [p["name"] for p in paged["products"]] == ["Pricey"]

    featured = client.get("/api/v1/products/featured").json()["data"]
    assert [p["id"] for p in featured] == [pricey.id]


def test_search_requires_every_token(client, make_product):
    make_product(name="Red Runner", description="Road running shoe")
    make_product(name="Blue Runner", description="Trail shoe")
    make_product(name="Red Scarf", description="Wool")

    resp = client.get("/api/v1/products/search", params={"q": "red runner"})
    assert resp.status_code == 200
    assert [p["name"] for p in resp.json()["data"]["products"]] == ["Red Runner"]

    trail = client.get("/api/v1/products/search", params={"q": "TRAIL runner"}).json()["data"]["products"]
    assert [p["name"] for p in trail] == ["Blue Runner"]

    assert client.get("/api/v1/products/search", params={"q": "   "}).status_code == 400


def test_search_treats_wildcards_literally(client, make_product):
    make_product(name="Tee 100% Cotton")
    make_product(name="Tee 1000 Cotton")
    make_product(name="Cap snap_back")
    make_product(name="Cap snapxback")

    def names(q, path="/api/v1/products/search"):
        resp = client.get(path, params={"q": q, "search": q})
        return sorted(p["name"] for p in resp.json()["data"]["products"])

    assert names("100%") == ["Tee 100% Cotton"]
    assert names("snap_back") == ["Cap snap_back"]
    assert names("100%", path="/api/v1/products") == ["Tee 100% Cotton"]


def test_view_count_increments_after_read(client, make_product, db):
    product = make_product()
    client.get(f"/api/v1/products/{product.id}")
    client.get(f"/api/v1/products/slug/{product.slug}")

    db.expire_all()
    assert db.get(Product, product.id).view_count == 2


def test_category_listing_counts_active_products(client, make_category, make_product):
    shoes = make_category(name="Shoes")
    make_product(name="One", category=shoes)
    make_product(name="Two", category=shoes, is_active=False)

    categories = client.get("/api/v1/categories").json()["data"]["categories"]
    counts = {c["slug"]: c["product_count"] for c in categories}
    assert counts["shoes"] == 1

    by_slug = client.get("/api/v1/categories/slug/shoes")
    assert by_slug.status_code == 200
    assert by_slug.json()["data"]["product_count"] == 1


def test_delete_guards(client, admin_headers, make_category, make_product, make_user, login):
    shoes = make_category(name="Shoes")
    product = make_product(name="Runner", category=shoes)

    assert client.delete(f"/api/v1/admin/categories/{shoes.id}", headers=admin_headers).status_code == 409

    make_user(email="carol@example.com")
    carol = login("carol@example.com")
    review = {"product_id": product.id, "rating": 4, "comment": "Comfortable and light"}
    assert client.post("/api/v1/reviews", json=review, headers=carol).status_code == 201
    assert client.delete(f"/api/v1/admin/products/{product.id}", headers=admin_headers).status_code == 409

    empty = make_category(name="Empty")
    assert client.delete(f"/api/v1/admin/categories/{empty.id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/v1/categories/{empty.id}").status_code == 404
