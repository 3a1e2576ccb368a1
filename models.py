"""
ORM tables for the store.

Aggregates own their children (product -> sizes, cart -> items,
order -> items/payments); a child refers back to its parent by id only.
"""
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from database import Base, utc_now


class TimestampMixin:
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class User(TimestampMixin, Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("role IN (0, 1, 2)", name="ck_users_role"),)

    id = Column(Integer, primary_key=True, index=True)
    fullname = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    address = Column(String(500), default="", nullable=False)
    phone = Column(String(20), default="", nullable=False)
    birthday = Column(Date, nullable=True)
    role = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    failed_login_count = Column(Integer, default=0, nullable=False)
    last_login_at = Column(DateTime, nullable=True)


class RecoveryCode(TimestampMixin, Base):
    __tablename__ = "recovery_codes"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(64), unique=True, nullable=False)
    is_used = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    user = relationship("User")


class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    ip_address = Column(String(45), default="", nullable=False)
    user_agent = Column(String(500), default="", nullable=False)
    is_success = Column(Boolean, default=False, nullable=False)
    fail_reason = Column(String(255), default="", nullable=False)
    attempted_at = Column(DateTime, default=utc_now, nullable=False)


class Category(TimestampMixin, Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    description = Column(Text, default="", nullable=False)
    thumbnail = Column(String(500), default="", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime, nullable=True, index=True)


class Product(TimestampMixin, Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    price = Column(Numeric(10, 2), nullable=False)
    discount_price = Column(Numeric(10, 2), nullable=True)
    description = Column(Text, default="", nullable=False)
    total_stock = Column(Integer, default=0, nullable=False)
    thumbnail = Column(String(500), default="", nullable=False)
    images = Column(JSON, default=list, nullable=False)
    is_featured = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)
    average_rating = Column(Numeric(3, 2), default=0, nullable=False)
    review_count = Column(Integer, default=0, nullable=False)
    deleted_at = Column(DateTime, nullable=True, index=True)

    category = relationship("Category")
    sizes = relationship(
        "ProductSize",
        order_by="ProductSize.id",
        cascade="all, delete-orphan",
    )


class ProductSize(TimestampMixin, Base):
    __tablename__ = "product_sizes"
    __table_args__ = (
        UniqueConstraint("product_id", "size", name="unique_product_size"),
        CheckConstraint("stock >= 0", name="ck_product_sizes_stock"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    size = Column(String(50), nullable=False)
    stock = Column(Integer, default=0, nullable=False)
    price = Column(Numeric(10, 2), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class Review(TimestampMixin, Base):
    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("product_id", "user_id", name="unique_product_review"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    comment = Column(Text, nullable=False)
    rating = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    user = relationship("User")
    product = relationship("Product")


class Cart(TimestampMixin, Base):
    __tablename__ = "carts"
    __table_args__ = (
        Index(
            "uq_carts_guest_session",
            "session_id",
            unique=True,
            sqlite_where=text("user_id IS NULL"),
            postgresql_where=text("user_id IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, unique=True)
    session_id = Column(String(255), default="", nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    items = relationship(
        "CartItem",
        order_by="CartItem.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def is_expired(self, now=None) -> bool:
        return (now or utc_now()) > self.expires_at


class CartItem(TimestampMixin, Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", "product_size_id", name="unique_cart_item"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    product_size_id = Column(Integer, ForeignKey("product_sizes.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    product = relationship("Product")
    size = relationship("ProductSize")


class Order(TimestampMixin, Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    order_code = Column(String(5), unique=True, nullable=False)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(20), nullable=False)
    shipping_address = Column(JSON, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    shipping_fee = Column(Numeric(10, 2), default=0, nullable=False)
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)
    final_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)
    payment_method = Column(String(50), nullable=False)
    payment_status = Column(String(20), default="unpaid", nullable=False)
    notes = Column(Text, default="", nullable=False)
    session_id = Column(String(255), default="", nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    items = relationship("OrderItem", order_by="OrderItem.id", cascade="all, delete-orphan")
    payments = relationship("Payment", order_by="Payment.id", cascade="all, delete-orphan")


class OrderItem(TimestampMixin, Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    product_size_id = Column(Integer, ForeignKey("product_sizes.id"), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    product_size = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = Column(String(255), nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_gateway = Column(String(50), nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    payment_date = Column(DateTime, nullable=True)
    response_data = Column(JSON, nullable=True)
    notes = Column(Text, default="", nullable=False)
