"""
API schemas for the store.

Enums describe the variant fields persisted as plain strings/ints in the
database; the ``*_text`` functions derive the localized labels shown to
customers. Request models validate incoming JSON; response models are built
from ORM rows by the ``*_response`` helpers at the bottom of this module.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator


class Role(IntEnum):
    admin = 0
    user = 1
    vip = 2


class OrderStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    failed = "failed"


class PaymentMethod(str, Enum):
    cod = "cod"
    bank_transfer = "bank_transfer"
    momo = "momo"
    zalopay = "zalopay"
    vnpay = "vnpay"


class PaymentGateway(str, Enum):
    internal = "internal"
    bank_transfer = "bank_transfer"
    momo = "momo"
    zalopay = "zalopay"
    vnpay = "vnpay"


class PaymentRecordStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


UNKNOWN_TEXT = "Không xác định"

_ROLE_NAMES = {Role.admin: "Admin", Role.user: "User", Role.vip: "VIP"}

_ORDER_STATUS_TEXT = {
    OrderStatus.pending: "Đang chờ xử lý",
    OrderStatus.paid: "Đã thanh toán",
    OrderStatus.shipped: "Đang giao hàng",
    OrderStatus.delivered: "Đã giao hàng",
    OrderStatus.cancelled: "Đã hủy",
}

_PAYMENT_STATUS_TEXT = {
    PaymentStatus.unpaid: "Chưa thanh toán",
    PaymentStatus.paid: "Đã thanh toán",
    PaymentStatus.failed: "Thanh toán thất bại",
}

_PAYMENT_METHOD_TEXT = {
    PaymentMethod.cod: "Thanh toán khi nhận hàng",
    PaymentMethod.bank_transfer: "Chuyển khoản ngân hàng",
    PaymentMethod.momo: "Ví MoMo",
    PaymentMethod.zalopay: "ZaloPay",
    PaymentMethod.vnpay: "VNPay",
}

_GATEWAY_TEXT = {
    PaymentGateway.internal: "Hệ thống nội bộ",
    PaymentGateway.bank_transfer: "Chuyển khoản ngân hàng",
    PaymentGateway.momo: "Ví MoMo",
    PaymentGateway.zalopay: "ZaloPay",
    PaymentGateway.vnpay: "VNPay",
}

_PAYMENT_RECORD_STATUS_TEXT = {
    PaymentRecordStatus.pending: "Đang chờ xử lý",
    PaymentRecordStatus.completed: "Hoàn thành",
    PaymentRecordStatus.failed: "Thất bại",
    PaymentRecordStatus.cancelled: "Đã hủy",
}

_RATING_TEXT = {1: "Rất tệ", 2: "Tệ", 3: "Trung bình", 4: "Tốt", 5: "Rất tốt"}


def _lookup(table, enum_cls, value) -> str:
    try:
        return table[enum_cls(value)]
    except (ValueError, KeyError):
        return UNKNOWN_TEXT


def role_name(role) -> str:
    try:
        return _ROLE_NAMES[Role(role)]
    except ValueError:
        return "Unknown"


def order_status_text(status) -> str:
    return _lookup(_ORDER_STATUS_TEXT, OrderStatus, status)


def payment_status_text(status) -> str:
    return _lookup(_PAYMENT_STATUS_TEXT, PaymentStatus, status)


def payment_method_text(method) -> str:
    return _lookup(_PAYMENT_METHOD_TEXT, PaymentMethod, method)


def gateway_text(gateway) -> str:
    return _lookup(_GATEWAY_TEXT, PaymentGateway, gateway)


def payment_record_status_text(status) -> str:
    return _lookup(_PAYMENT_RECORD_STATUS_TEXT, PaymentRecordStatus, status)


def rating_text(rating: int) -> str:
    return _RATING_TEXT.get(rating, UNKNOWN_TEXT)


def gateway_for(method) -> PaymentGateway:
    """Payment gateway that settles orders paid with ``method``."""
    mapping = {
        PaymentMethod.cod: PaymentGateway.internal,
        PaymentMethod.bank_transfer: PaymentGateway.bank_transfer,
        PaymentMethod.momo: PaymentGateway.momo,
        PaymentMethod.zalopay: PaymentGateway.zalopay,
        PaymentMethod.vnpay: PaymentGateway.vnpay,
    }
    try:
        return mapping[PaymentMethod(method)]
    except ValueError:
        return PaymentGateway.internal


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[Any] = None


def ok(message: str, data: Any = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


# ---------------------------------------------------------------------------
# Auth / users
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    fullname: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6)
    confirm_password: str
    address: str = ""
    phone: Optional[str] = Field(default=None, max_length=20)
    birthday: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def phone_length(cls, v):
        if v and len(v) < 10:
            raise ValueError("phone must have at least 10 characters")
        return v

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("confirm_password must match password")
        return self


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RecoveryRequest(BaseModel):
    email: EmailStr


class RecoveryVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    id: int
    fullname: str
    email: str
    address: str
    phone: str
    birthday: Optional[date] = None
    role: int
    role_name: str
    is_active: bool


class LoginInfo(BaseModel):
    login_time: datetime
    last_login_at: Optional[datetime] = None
    login_count: int


class LoginResponse(BaseModel):
    user: UserResponse
    token: str
    token_type: str = "Bearer"
    expires_at: datetime
    expires_in: int
    csrf_token: str
    login_info: LoginInfo


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class CategoryRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    description: str = ""
    thumbnail: str = ""
    is_active: Optional[bool] = None


class CategoryResponse(BaseModel):
    id: int
    name: str
    slug: str
    description: str
    thumbnail: str
    is_active: bool
    product_count: int = 0
    created_at: datetime
    updated_at: datetime


class ProductSizeRequest(BaseModel):
    size: str = Field(..., min_length=1, max_length=50)
    stock: int = Field(default=0, ge=0)
    price: Optional[Decimal] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class ProductRequest(BaseModel):
    category_id: int
    name: str = Field(..., min_length=2, max_length=255)
    price: Decimal = Field(..., ge=0)
    discount_price: Optional[Decimal] = Field(default=None, ge=0)
    description: str = ""
    thumbnail: str = ""
    images: List[str] = []
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None
    sizes: List[ProductSizeRequest] = Field(..., min_length=1)


class ProductSizeResponse(BaseModel):
    id: int
    product_id: int
    size: str
    stock: int
    price: Optional[float] = None
    final_price: float
    is_active: bool
    stock_status: str


class ProductResponse(BaseModel):
    id: int
    category_id: int
    category: Optional[CategoryResponse] = None
    name: str
    slug: str
    price: float
    discount_price: Optional[float] = None
    final_price: float
    discount_rate: float
    description: str
    total_stock: int
    stock_status: str
    thumbnail: str
    images: List[str]
    is_featured: bool
    is_active: bool
    view_count: int
    average_rating: float
    review_count: int
    sizes: List[ProductSizeResponse]
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------

class ReviewRequest(BaseModel):
    product_id: int
    comment: str = Field(..., min_length=10, max_length=1000)
    rating: int = Field(..., ge=1, le=5)


class ReviewUpdateRequest(BaseModel):
    comment: str = Field(..., min_length=10, max_length=1000)
    rating: int = Field(..., ge=1, le=5)


class ReviewResponse(BaseModel):
    id: int
    product_id: int
    user_id: int
    user: Optional[UserResponse] = None
    product: Optional[Dict[str, Any]] = None
    comment: str
    rating: int
    rating_text: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ReviewStats(BaseModel):
    total_reviews: int
    average_rating: float
    rating_breakdown: Dict[str, int]


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

class AddToCartRequest(BaseModel):
    product_id: int
    product_size_id: int
    quantity: int = Field(..., ge=1, le=100)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=0, le=100)


class CartValidation(BaseModel):
    is_valid: bool
    issues: List[str] = []


class CartItemResponse(BaseModel):
    id: int
    product_id: int
    product_size_id: int
    product: ProductResponse
    product_size: ProductSizeResponse
    quantity: int
    price: float
    current_price: float
    subtotal: float
    is_available: bool
    stock_status: str
    message: str = ""
    created_at: datetime
    updated_at: datetime


class CartResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    session_id: str
    item_count: int
    total_quantity: int
    subtotal: float
    discount: float
    total: float
    is_valid: bool
    issues: List[str]
    expires_at: datetime
    cart_items: List[CartItemResponse]
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., min_length=10, max_length=20)
    address_line: str = Field(..., min_length=10, max_length=500)
    city: str = Field(..., min_length=2, max_length=100)
    district: str = Field(..., min_length=2, max_length=100)
    ward: str = Field(..., min_length=2, max_length=100)
    postal_code: str = ""


class CreateOrderRequest(BaseModel):
    customer_name: str = Field(..., min_length=2, max_length=255)
    customer_email: EmailStr
    customer_phone: str = Field(..., min_length=10, max_length=20)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    notes: str = ""


class OrderSummaryRequest(BaseModel):
    shipping_address: ShippingAddress


class CancelOrderRequest(BaseModel):
    reason: str = Field(..., min_length=5, max_length=500)


class PaymentWebhookRequest(BaseModel):
    order_code: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    response_data: Dict[str, Any] = {}


class OrderSummary(BaseModel):
    item_count: int
    total_quantity: int
    total_amount: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    final_amount: Decimal


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    product_size_id: int
    product_name: str
    product_size: str
    quantity: int
    unit_price: float
    total_price: float


class PaymentResponse(BaseModel):
    id: int
    order_id: int
    transaction_id: Optional[str] = None
    amount: float
    payment_gateway: str
    gateway_text: str
    status: str
    status_text: str
    payment_date: Optional[datetime] = None
    notes: str
    created_at: datetime
    updated_at: datetime


class OrderResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    order_code: str
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_address: Dict[str, Any]
    total_amount: float
    shipping_fee: float
    discount_amount: float
    final_amount: float
    status: str
    status_text: str
    payment_method: str
    payment_method_text: str
    payment_status: str
    payment_status_text: str
    notes: str
    expires_at: datetime
    order_items: List[OrderItemResponse]
    payments: List[PaymentResponse] = []
    created_at: datetime
    updated_at: datetime


class BankTransferInfo(BaseModel):
    bank_name: str
    account_number: str
    account_name: str
    amount: float
    transfer_note: str
    qr_code_url: str


class PaymentMethodInfo(BaseModel):
    method: str
    method_text: str
    description: str
    is_available: bool
    extra: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Row -> response helpers
# ---------------------------------------------------------------------------

def _money(value) -> Optional[float]:
    return None if value is None else float(value)


def effective_price(product, size) -> Decimal:
    """Unit price a size sells for: size price, else discount price, else base price."""
    if size is not None and size.price is not None:
        return Decimal(size.price)
    if product.discount_price is not None and product.discount_price > 0:
        return Decimal(product.discount_price)
    return Decimal(product.price)


def user_response(user) -> UserResponse:
    return UserResponse(
        id=user.id,
        fullname=user.fullname,
        email=user.email,
        address=user.address or "",
        phone=user.phone or "",
        birthday=user.birthday,
        role=user.role,
        role_name=role_name(user.role),
        is_active=user.is_active,
    )


def category_response(category, product_count: int = 0) -> CategoryResponse:
    return CategoryResponse(
        id=category.id,
        name=category.name,
        slug=category.slug,
        description=category.description or "",
        thumbnail=category.thumbnail or "",
        is_active=category.is_active,
        product_count=product_count,
        created_at=category.created_at,
        updated_at=category.updated_at,
    )


def size_response(size, product) -> ProductSizeResponse:
    if size.stock == 0:
        stock_status = "out_of_stock"
    elif size.stock <= 5:
        stock_status = "low_stock"
    else:
        stock_status = "in_stock"
    return ProductSizeResponse(
        id=size.id,
        product_id=size.product_id,
        size=size.size,
        stock=size.stock,
        price=_money(size.price),
        final_price=float(effective_price(product, size)),
        is_active=size.is_active,
        stock_status=stock_status,
    )


def product_response(product, include_inactive_sizes: bool = False) -> ProductResponse:
    price = Decimal(product.price)
    final_price = price
    discount_rate = 0.0
    discount = product.discount_price
    if discount is not None and 0 < discount < price:
        final_price = Decimal(discount)
        discount_rate = float((price - final_price) / price * 100)

    if product.total_stock == 0:
        stock_status = "out_of_stock"
    elif product.total_stock <= 10:
        stock_status = "low_stock"
    else:
        stock_status = "in_stock"

    sizes = [s for s in product.sizes if include_inactive_sizes or s.is_active]
    return ProductResponse(
        id=product.id,
        category_id=product.category_id,
        category=category_response(product.category) if product.category is not None else None,
        name=product.name,
        slug=product.slug,
        price=float(price),
        discount_price=_money(discount),
        final_price=float(final_price),
        discount_rate=round(discount_rate, 2),
        description=product.description or "",
        total_stock=product.total_stock,
        stock_status=stock_status,
        thumbnail=product.thumbnail or "",
        images=list(product.images or []),
        is_featured=product.is_featured,
        is_active=product.is_active,
        view_count=product.view_count,
        average_rating=float(product.average_rating or 0),
        review_count=product.review_count,
        sizes=[size_response(s, product) for s in sizes],
        created_at=product.created_at,
        updated_at=product.updated_at,
    )


def review_response(review, include_product: bool = False) -> ReviewResponse:
    product = None
    if include_product and review.product is not None:
        product = {
            "id": review.product.id,
            "name": review.product.name,
            "slug": review.product.slug,
            "thumbnail": review.product.thumbnail or "",
        }
    return ReviewResponse(
        id=review.id,
        product_id=review.product_id,
        user_id=review.user_id,
        user=user_response(review.user) if review.user is not None else None,
        product=product,
        comment=review.comment,
        rating=review.rating,
        rating_text=rating_text(review.rating),
        is_active=review.is_active,
        created_at=review.created_at,
        updated_at=review.updated_at,
    )


def payment_response(payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        order_id=payment.order_id,
        transaction_id=payment.transaction_id,
        amount=float(payment.amount),
        payment_gateway=payment.payment_gateway,
        gateway_text=gateway_text(payment.payment_gateway),
        status=payment.status,
        status_text=payment_record_status_text(payment.status),
        payment_date=payment.payment_date,
        notes=payment.notes or "",
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


def order_response(order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        user_id=order.user_id,
        order_code=order.order_code,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
        shipping_address=dict(order.shipping_address or {}),
        total_amount=float(order.total_amount),
        shipping_fee=float(order.shipping_fee),
        discount_amount=float(order.discount_amount),
        final_amount=float(order.final_amount),
        status=order.status,
        status_text=order_status_text(order.status),
        payment_method=order.payment_method,
        payment_method_text=payment_method_text(order.payment_method),
        payment_status=order.payment_status,
        payment_status_text=payment_status_text(order.payment_status),
        notes=order.notes or "",
        expires_at=order.expires_at,
        order_items=[
            OrderItemResponse(
                id=item.id,
                product_id=item.product_id,
                product_size_id=item.product_size_id,
                product_name=item.product_name,
                product_size=item.product_size,
                quantity=item.quantity,
                unit_price=float(item.unit_price),
                total_price=float(item.total_price),
            )
            for item in order.items
        ],
        payments=[payment_response(p) for p in order.payments],
        created_at=order.created_at,
        updated_at=order.updated_at,
    )
