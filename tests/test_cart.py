from datetime import timedelta

import pytest
from sqlalchemy import func, select

from cart_service import MAX_CART_ITEMS, MAX_ITEM_QTY
from database import utc_now
from errors import FailedPreconditionError
from models import Cart, CartItem, Product
from schemas import AddToCartRequest
from security import RequestIdentity

GUEST = {"X-Session-ID": "guest-session-1"}


def _size(product, name="M"):
    return next(s for s in product.sizes if s.size == name)


def _request(product, quantity, size="M"):
    return AddToCartRequest(product_id=product.id, product_size_id=_size(product, size).id, quantity=quantity)


def _add(client, product, size, quantity, headers=GUEST):
    return client.post(
        "/api/v1/cart/add",
        json={"product_id": product.id, "product_size_id": size.id, "quantity": quantity},
        headers=headers,
    )


def test_guest_without_session_gets_one_echoed(client):
    resp = client.get("/api/v1/cart")
    assert resp.status_code == 200
    session_id = resp.headers["X-Session-ID"]
    assert session_id
    assert resp.json()["data"]["session_id"] == session_id

    again = client.get("/api/v1/cart", headers={"X-Session-ID": session_id})
    assert again.json()["data"]["id"] == resp.json()["data"]["id"]


def test_failed_first_request_still_returns_session(client, db):
    resp = client.post("/api/v1/cart/add", json={"product_id": 999, "product_size_id": 999, "quantity": 1})
    assert resp.status_code == 404
    session_id = resp.headers["X-Session-ID"]
    assert session_id

    carts = db.scalars(select(Cart)).all()
    assert [c.session_id for c in carts] == [session_id]
    again = client.get("/api/v1/cart", headers={"X-Session-ID": session_id})
    assert again.json()["data"]["id"] == carts[0].id


def test_invalid_cart_response_returns_session(client):
    resp = client.get("/api/v1/cart/validate")
    assert resp.status_code == 400
    assert resp.headers["X-Session-ID"] == resp.json()["data"]["cart"]["session_id"]


def test_add_captures_price_and_merges_lines(client, make_product):
    product = make_product(sizes=(("M", 10, "120"),))
    size = _size(product)

    first = _add(client, product, size, 2)
    assert first.status_code == 200, first.text
    cart = first.json()["data"]
    assert cart["item_count"] == 1
    assert cart["cart_items"][0]["price"] == 120
    assert cart["cart_items"][0]["stock_status"] == "available"

    cart = _add(client, product, size, 3).json()["data"]
    assert cart["item_count"] == 1
    assert cart["total_quantity"] == 5
    assert cart["subtotal"] == 600
    assert cart["total"] == 600


def test_add_rejects_more_than_stock(client, make_product):
    product = make_product(sizes=(("M", 2, None),))
    size = _size(product)
    assert _add(client, product, size, 3).status_code == 400
    assert _add(client, product, size, 2).status_code == 200
    assert _add(client, product, size, 1).status_code == 400


def test_add_rejects_inactive_product_and_foreign_size(client, make_product):
    active = make_product(name="Active")
    inactive = make_product(name="Inactive", is_active=False)
    assert _add(client, inactive, _size(inactive), 1).status_code == 404
    assert _add(client, active, _size(inactive), 1).status_code == 404


def test_quantity_per_item_is_capped(client, make_product):
    product = make_product(sizes=(("M", 500, None),))
    size = _size(product)
    assert _add(client, product, size, MAX_ITEM_QTY + 1).status_code == 400
    assert _add(client, product, size, MAX_ITEM_QTY).status_code == 200
    assert _add(client, product, size, 1).status_code == 400


def test_cart_item_count_is_capped(client, make_product):
    sizes = tuple((f"S{i}", 5, None) for i in range(MAX_CART_ITEMS + 1))
    product = make_product(sizes=sizes)
    for size in product.sizes[:MAX_CART_ITEMS]:
        assert _add(client, product, size, 1).status_code == 200
    resp = _add(client, product, product.sizes[MAX_CART_ITEMS], 1)
    assert resp.status_code == 400
    assert str(MAX_CART_ITEMS) in resp.json()["message"]


def test_update_remove_and_clear(client, make_product):
    product = make_product(sizes=(("M", 5, None), ("L", 5, None)))
    _add(client, product, _size(product, "M"), 1)
    cart = _add(client, product, _size(product, "L"), 1).json()["data"]
    m_item, l_item = cart["cart_items"]

    resp = client.put(f"/api/v1/cart/items/{m_item['id']}", json={"quantity": 4}, headers=GUEST)
    assert resp.json()["data"]["total_quantity"] == 5
    assert client.put(f"/api/v1/cart/items/{m_item['id']}", json={"quantity": 6}, headers=GUEST).status_code == 400

    resp = client.put(f"/api/v1/cart/items/{m_item['id']}", json={"quantity": 0}, headers=GUEST)
    assert [i["id"] for i in resp.json()["data"]["cart_items"]] == [l_item["id"]]

    resp = client.delete(f"/api/v1/cart/items/{l_item['id']}", headers=GUEST)
    assert resp.json()["data"]["item_count"] == 0
    assert client.delete(f"/api/v1/cart/items/{l_item['id']}", headers=GUEST).status_code == 404

    _add(client, product, _size(product, "M"), 2)
    assert client.delete("/api/v1/cart/clear", headers=GUEST).json()["data"]["cart_items"] == []


def test_items_of_other_carts_are_not_reachable(client, make_product):
    product = make_product(sizes=(("M", 5, None),))
    item = _add(client, product, _size(product), 1).json()["data"]["cart_items"][0]
    other = {"X-Session-ID": "someone-else"}
    assert client.delete(f"/api/v1/cart/items/{item['id']}", headers=other).status_code == 404


def test_count_endpoint(client, make_product):
    product = make_product(sizes=(("M", 5, "50"), ("L", 5, "70")))
    _add(client, product, _size(product, "M"), 2)
    _add(client, product, _size(product, "L"), 1)
    counts = client.get("/api/v1/cart/count", headers=GUEST).json()["data"]
    assert counts == {"item_count": 2, "total_quantity": 3, "total": 170.0}


def test_validate_collects_every_issue(client, make_product, db):
    first = make_product(name="First", sizes=(("M", 5, None),))
    second = make_product(name="Second", sizes=(("M", 5, None),))
    _add(client, first, _size(first), 3)
    _add(client, second, _size(second), 1)

    assert client.get("/api/v1/cart/validate", headers=GUEST).status_code == 200

    db.get(Product, second.id).is_active = False
    _size(first).stock = 2
    db.commit()

    resp = client.get("/api/v1/cart/validate", headers=GUEST)
    assert resp.status_code == 400
    data = resp.json()["data"]
    assert data["is_valid"] is False
    assert len(data["issues"]) == 2
    statuses = sorted(i["stock_status"] for i in data["cart"]["cart_items"])
    assert statuses == ["insufficient_stock", "product_inactive"]


def test_empty_cart_is_invalid(client):
    resp = client.get("/api/v1/cart/validate", headers=GUEST)
    assert resp.status_code == 400
    assert resp.json()["data"]["issues"] == ["Cart is empty"]


def test_expired_cart_is_reset_in_place(app, db, make_product, guest):
    service = app.state.cart_service
    product = make_product(sizes=(("M", 5, None),))
    cart = service.get_or_create_cart(db, guest())

    service.add_to_cart(db, cart, _request(product, 1))
    cart.expires_at = utc_now() - timedelta(minutes=1)
    db.commit()

    reset = service.get_or_create_cart(db, guest())
    assert reset.id == cart.id
    assert reset.items == []
    assert reset.expires_at > utc_now() + timedelta(hours=23)


def test_user_cart_lives_a_week(app, db, make_user):
    user = make_user()
    cart = app.state.cart_service.get_or_create_cart(db, RequestIdentity(user_id=user.id))
    assert cart.expires_at > utc_now() + timedelta(days=6, hours=23)
    assert cart.user_id == user.id


def test_guest_cart_merges_into_user_cart(client, make_product, make_user, login, db):
    product = make_product(name="Alpha", sizes=(("M", 10, None),))
    size = _size(product)
    _add(client, product, size, 3, headers={"X-Session-ID": "S"})

    make_user(email="alice@example.com")
    headers = {**login("alice@example.com"), "X-Session-ID": "S"}
    resp = client.post("/api/v1/cart/merge", headers=headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["merged_items"] == 1
    items = data["cart"]["cart_items"]
    assert [(i["product_id"], i["product_size_id"], i["quantity"]) for i in items] == [(product.id, size.id, 3)]

    assert db.scalar(select(func.count(Cart.id)).where(Cart.session_id == "S", Cart.user_id.is_(None))) == 0
    assert db.scalar(select(func.count(CartItem.id)).where(CartItem.cart_id != data["cart"]["id"])) == 0


def test_merge_drops_lines_that_no_longer_fit(client, make_product, make_user, login, db):
    product = make_product(name="Alpha", sizes=(("M", 4, None),))
    size = _size(product)
    make_user(email="alice@example.com")
    headers = login("alice@example.com")

    _add(client, product, size, 3, headers=headers)
    _add(client, product, size, 2, headers={"X-Session-ID": "S"})

    resp = client.post("/api/v1/cart/merge", headers={**headers, "X-Session-ID": "S"})
    data = resp.json()["data"]
    assert (data["merged_items"], data["dropped_items"]) == (0, 1)
    assert data["cart"]["cart_items"][0]["quantity"] == 3
    assert db.scalar(select(func.count(Cart.id)).where(Cart.user_id.is_(None))) == 0


def test_merge_requires_session_header(client, user_headers):
    assert client.post("/api/v1/cart/merge", headers=user_headers).status_code == 400


def test_sweep_removes_expired_carts_only(app, db, make_product, make_user, guest):
    service = app.state.cart_service
    product = make_product(sizes=(("M", 5, None),))

    stale = service.get_or_create_cart(db, guest("stale"))
    service.add_to_cart(db, stale, _request(product, 1))
    fresh = service.get_or_create_cart(db, guest("fresh"))
    stale.expires_at = utc_now() - timedelta(seconds=1)
    db.commit()

    assert service.sweep_expired(db) == (1, 1)
    assert service.sweep_expired(db) == (0, 0)
    remaining = db.scalars(select(Cart.id)).all()
    assert remaining == [fresh.id]


def test_add_item_errors_leave_cart_untouched(app, db, make_product, guest):
    service = app.state.cart_service
    product = make_product(sizes=(("M", 1, None),))
    cart = service.get_or_create_cart(db, guest())

    with pytest.raises(FailedPreconditionError):
        service.add_to_cart(db, cart, _request(product, 2))
    assert db.scalar(select(func.count(CartItem.id))) == 0
