import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event, func, select

from cart_service import CartService
from catalog_service import CatalogService
from config import Settings
from database import build_session_factory, init_db
from errors import FailedPreconditionError, InsufficientStockError
from models import Category, Order, OrderItem, Product, ProductSize
from notifier import RecordingNotifier
from order_service import OrderService
from schemas import AddToCartRequest, CartValidation, CreateOrderRequest, ProductRequest, ProductSizeRequest
from security import RequestIdentity

from tests.helpers import shipping_payload

BUYERS = ("buyer-a", "buyer-b")


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # SQLite has no row locks; writers queue on the database lock instead.
    @event.listens_for(engine, "connect")
    def _autocommit_driver(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


def _stock_one_size(session_factory):
    session = session_factory()
    try:
        category = Category(name="Shoes", slug="shoes", description="", thumbnail="", is_active=True)
        session.add(category)
        session.commit()
        product = CatalogService().create_product(
            session,
            ProductRequest(
                category_id=category.id,
                name="Runner",
                price=Decimal("100"),
                sizes=[ProductSizeRequest(size="M", stock=1)],
            ),
        )
        carts = CartService()
        for session_id in BUYERS:
            cart = carts.get_or_create_cart(session, RequestIdentity(session_id=session_id))
            carts.add_to_cart(
                session,
                cart,
                AddToCartRequest(product_id=product.id, product_size_id=product.sizes[0].id, quantity=1),
            )
        return product.id
    finally:
        session.close()


def _race(session_factory, orders):
    barrier = threading.Barrier(len(BUYERS))
    placed, refused, unexpected = [], [], []

    def buy(session_id):
        session = session_factory()
        try:
            barrier.wait()
            order = orders.create_order(
                session, RequestIdentity(session_id=session_id), CreateOrderRequest(**shipping_payload())
            )
            placed.append(order.order_code)
        except FailedPreconditionError as exc:
            refused.append(exc)
        except Exception as exc:
            unexpected.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=buy, args=(session_id,)) for session_id in BUYERS]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(60)
    return placed, refused, unexpected


@pytest.mark.parametrize("skip_validation", [False, True])
def test_concurrent_buyers_of_the_last_unit(file_session_factory, monkeypatch, skip_validation):
    product_id = _stock_one_size(file_session_factory)
    carts = CartService()
    orders = OrderService(Settings(), carts, RecordingNotifier())
    if skip_validation:
        # Both buyers get past validation; only the locked stock read stands between them.
        monkeypatch.setattr(carts, "validate_cart", lambda cart, now=None: CartValidation(is_valid=True, issues=[]))

    placed, refused, unexpected = _race(file_session_factory, orders)

    assert unexpected == []
    assert len(placed) == 1
    assert len(refused) == 1
    if skip_validation:
        assert isinstance(refused[0], InsufficientStockError)

    session = file_session_factory()
    try:
        assert session.scalar(select(ProductSize.stock).where(ProductSize.product_id == product_id)) == 0
        assert session.scalar(select(Product.total_stock).where(Product.id == product_id)) == 0
        assert session.scalars(select(Order.order_code)).all() == placed
        assert session.scalar(select(func.count(OrderItem.id))) == 1
        orphans = session.scalar(
            select(func.count(OrderItem.id)).where(OrderItem.order_id.not_in(select(Order.id)))
        )
        assert orphans == 0
    finally:
        session.close()
