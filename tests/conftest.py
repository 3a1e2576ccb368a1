from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import build_engine, build_session_factory, init_db
from main import create_app
from models import Category, User
from notifier import RecordingNotifier
from schemas import ProductRequest, ProductSizeRequest, Role
from security import RequestIdentity

from tests.helpers import PASSWORD


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        enable_schedulers=False,
    )


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(settings, notifier, session_factory):
    return create_app(settings=settings, notifier=notifier, session_factory=session_factory)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(app, db):
    def _make(email="alice@example.com", password=PASSWORD, role=Role.user, fullname="Alice Nguyen"):
        user = User(
            fullname=fullname,
            email=email,
            password_hash=app.state.auth_service.hash_password(password),
            address="",
            phone="",
            role=int(role),
            is_active=True,
            failed_login_count=0,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def login(client):
    def _login(email, password=PASSWORD):
        resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        return {"Authorization": f"Bearer {data['token']}", "X-CSRF-Token": data["csrf_token"]}

    return _login


@pytest.fixture
def admin_headers(make_user, login):
    make_user(email="admin@example.com", role=Role.admin, fullname="Admin")
    return login("admin@example.com")


@pytest.fixture
def user_headers(make_user, login):
    make_user(email="alice@example.com")
    return login("alice@example.com")


@pytest.fixture
def make_category(db):
    def _make(name="Shoes", is_active=True):
        from text_utils import slugify

        category = Category(name=name, slug=slugify(name), description="", thumbnail="", is_active=is_active)
        db.add(category)
        db.commit()
        return category

    return _make


@pytest.fixture
def make_product(app, db, make_category):
    def _make(name="Runner", sizes=(("M", 2, "100"),), price="100", category=None, **fields):
        category = category or make_category(name=f"Category for {name}")
        req = ProductRequest(
            category_id=category.id,
            name=name,
            price=Decimal(price),
            sizes=[
                ProductSizeRequest(size=size, stock=stock, price=Decimal(p) if p is not None else None)
                for size, stock, p in sizes
            ],
            **fields,
        )
        return app.state.catalog_service.create_product(db, req)

    return _make


@pytest.fixture
def guest():
    def _guest(session_id="guest-session-1"):
        return RequestIdentity(session_id=session_id)

    return _guest
