import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

import routes_auth
import routes_cart
import routes_catalog
import routes_orders
import routes_reviews
from auth_service import AuthService
from cart_service import CartService
from catalog_service import CatalogService
from config import Settings, load_settings
from database import build_engine, build_session_factory, init_db
from errors import register_exception_handlers
from notifier import build_notifier
from order_service import OrderService
from review_service import ReviewService
from scheduler import PeriodicSweeper
from security import TokenService, build_password_context, echo_session_id

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_app(
    settings: Optional[Settings] = None,
    notifier=None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    settings = settings or load_settings()
    if session_factory is None:
        engine = build_engine(settings.database_url)
        init_db(engine)
        session_factory = build_session_factory(engine)
    notifier = notifier or build_notifier(settings)

    tokens = TokenService(settings)
    carts = CartService()
    orders = OrderService(settings, carts, notifier)
    cart_sweeper = PeriodicSweeper(
        "cart-sweeper", settings.cart_sweep_interval_seconds, session_factory, carts.sweep_expired
    )
    order_sweeper = PeriodicSweeper(
        "order-sweeper", settings.order_sweep_interval_seconds, session_factory, orders.sweep_expired
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.enable_schedulers:
            cart_sweeper.start()
            order_sweeper.start()
        yield
        # uvicorn has already drained in-flight requests by the time we get here.
        cart_sweeper.stop()
        order_sweeper.stop()
        notifier.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(title="Storelite API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Session-ID"],
    )
    app.middleware("http")(echo_session_id)
    register_exception_handlers(app)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.tokens = tokens
    app.state.notifier = notifier
    app.state.auth_service = AuthService(settings, tokens, build_password_context(settings.bcrypt_rounds), notifier)
    app.state.catalog_service = CatalogService()
    app.state.cart_service = carts
    app.state.order_service = orders
    app.state.review_service = ReviewService()
    app.state.cart_sweeper = cart_sweeper
    app.state.order_sweeper = order_sweeper

    @app.get("/")
    def root():
        return {"message": "Storelite Backend Running"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    for module in (routes_auth, routes_catalog, routes_cart, routes_orders, routes_reviews):
        app.include_router(module.router)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
