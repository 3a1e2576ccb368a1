"""
Orders, stock reservation and payments.

An order is cut from the caller's cart in one transaction: the order row gets a
fresh five digit code, each participating size row is locked and decremented,
the items are snapshotted, the cart is emptied and a pending payment row is
attached. Cancelling (by the customer or by the expiry sweep) hands the stock
back. The payment webhook settles an order at most once.
"""
import logging
import threading
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

import notifier as notifications
from cart_service import CartService
from config import Settings
from database import transaction, utc_now
from errors import (
    CartInvalidError,
    FailedPreconditionError,
    InsufficientStockError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from models import Cart, CartItem, Order, OrderItem, Payment, Product, ProductSize
from policies import DiscountPolicy, ShippingFeePolicy
from schemas import (
    BankTransferInfo,
    CreateOrderRequest,
    OrderStatus,
    OrderSummary,
    PaymentMethod,
    PaymentMethodInfo,
    PaymentRecordStatus,
    PaymentStatus,
    gateway_for,
    payment_method_text,
)
from security import RequestIdentity

logger = logging.getLogger(__name__)

MIN_ORDER_CODE = 1
MAX_ORDER_CODE = 99999
ORDER_EXPIRY = timedelta(minutes=30)
ORDER_CREATE_ATTEMPTS = 3
CANCELLABLE = (OrderStatus.pending.value, OrderStatus.paid.value)
EXPIRED_REASON = "payment expired"

COD_INSTRUCTION = "Thanh toán khi nhận hàng. Vui lòng chuẩn bị đúng số tiền khi nhận hàng."
NOT_INTEGRATED = "Phương thức thanh toán này sẽ được tích hợp sớm."
QR_URL = "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data=Bank:{account},Amount:{amount:.0f},Note:{note}"


def format_order_code(number: int) -> str:
    return f"{number:05d}"


def is_order_code_collision(exc: IntegrityError) -> bool:
    """True when ``exc`` comes from the unique index on ``orders.order_code``."""
    return "order_code" in str(exc.orig)


def _order_query():
    return select(Order).options(selectinload(Order.items), selectinload(Order.payments))


class OrderService:
    def __init__(
        self,
        settings: Settings,
        carts: CartService,
        notifier,
        shipping: Optional[ShippingFeePolicy] = None,
        discounts: Optional[DiscountPolicy] = None,
    ):
        self.settings = settings
        self.carts = carts
        self.notifier = notifier
        self.shipping = shipping or ShippingFeePolicy()
        self.discounts = discounts or DiscountPolicy()
        self._code_lock = threading.Lock()

    # -- order codes -------------------------------------------------------

    def allocate_order_code(self, session: Session) -> str:
        """Next free code after the most recent order, wrapping after 99999.

        Callers hold ``_code_lock``; the unique index on ``order_code`` is what
        finally decides between concurrent processes.
        """
        last = session.scalar(select(Order.order_code).order_by(Order.id.desc()).limit(1))
        candidate = MIN_ORDER_CODE
        if last is not None:
            candidate = int(last) + 1
            if candidate > MAX_ORDER_CODE:
                candidate = MIN_ORDER_CODE

        def taken(number: int) -> bool:
            code = format_order_code(number)
            return session.scalar(select(Order.id).where(Order.order_code == code)) is not None

        if not taken(candidate):
            return format_order_code(candidate)
        for number in list(range(candidate + 1, MAX_ORDER_CODE + 1)) + list(range(MIN_ORDER_CODE, candidate)):
            if not taken(number):
                return format_order_code(number)
        raise InternalError("All order codes are taken")

    # -- pricing -----------------------------------------------------------

    def calculate_summary(self, cart: Cart, city: str) -> OrderSummary:
        if not cart.items:
            raise FailedPreconditionError("Cart is empty")
        total = sum((Decimal(i.price) * i.quantity for i in cart.items), Decimal("0"))
        shipping_fee = self.shipping.fee(total, city)
        discount = self.discounts.discount(total)
        return OrderSummary(
            item_count=len(cart.items),
            total_quantity=sum(i.quantity for i in cart.items),
            total_amount=total,
            shipping_fee=shipping_fee,
            discount_amount=discount,
            final_amount=total + shipping_fee - discount,
        )

    def summary_for(self, session: Session, identity: RequestIdentity, city: str) -> OrderSummary:
        """Price the caller's cart without creating one; a missing or expired cart is empty."""
        cart = self.carts.find_cart(session, identity)
        if cart is None or cart.is_expired():
            raise FailedPreconditionError("Cart is empty")
        return self.calculate_summary(cart, city)

    # -- create ------------------------------------------------------------

    def create_order(self, session: Session, identity: RequestIdentity, req: CreateOrderRequest) -> Order:
        cart = self.carts.get_or_create_cart(session, identity)
        validation = self.carts.validate_cart(cart)
        if not validation.is_valid:
            raise CartInvalidError(validation.issues)
        summary = self.calculate_summary(cart, req.shipping_address.city)

        for attempt in range(1, ORDER_CREATE_ATTEMPTS + 1):
            try:
                order = self._place_order(session, identity, cart, req, summary)
                break
            except IntegrityError as exc:
                if not is_order_code_collision(exc):
                    raise
                logger.warning("Order code collision on attempt %d: %s", attempt, exc.orig)
                cart = self.carts.reload(session, cart)
        else:
            raise InternalError("Could not allocate an order code, please retry")

        logger.info("Created order %s (%s) for %s", order.order_code, order.payment_method, order.final_amount)
        self.notifier.notify(
            order.customer_email,
            notifications.ORDER_CONFIRMATION,
            {
                "customer_name": order.customer_name,
                "order_code": order.order_code,
                "final_amount": str(order.final_amount),
                "payment_method_text": payment_method_text(order.payment_method),
            },
        )
        return self.reload(session, order)

    def _place_order(self, session, identity, cart, req, summary) -> Order:
        items = sorted(cart.items, key=lambda i: (i.product_size_id, i.id))
        with transaction(session):
            with self._code_lock:
                order = Order(
                    user_id=identity.user_id,
                    order_code=self.allocate_order_code(session),
                    customer_name=req.customer_name.strip(),
                    customer_email=str(req.customer_email),
                    customer_phone=req.customer_phone.strip(),
                    shipping_address=req.shipping_address.model_dump(),
                    total_amount=summary.total_amount,
                    shipping_fee=summary.shipping_fee,
                    discount_amount=summary.discount_amount,
                    final_amount=summary.final_amount,
                    status=OrderStatus.pending.value,
                    payment_method=req.payment_method.value,
                    payment_status=PaymentStatus.unpaid.value,
                    notes=req.notes or "",
                    session_id=identity.session_id if identity.is_guest else "",
                    expires_at=utc_now() + ORDER_EXPIRY,
                )
                session.add(order)
                session.flush()

            size_ids = [i.product_size_id for i in items]
            locked = {
                size.id: size
                for size in session.scalars(
                    select(ProductSize)
                    .where(ProductSize.id.in_(size_ids))
                    .order_by(ProductSize.id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            }
            for item in items:
                size = locked.get(item.product_size_id)
                if size is None or not size.is_active:
                    raise FailedPreconditionError(f"Product size {item.product_size_id} is no longer available")
                if size.stock < item.quantity:
                    raise InsufficientStockError(item.product.name, size.size, size.stock, item.quantity)
                size.stock -= item.quantity
                session.execute(
                    update(Product)
                    .where(Product.id == item.product_id)
                    .values(total_stock=Product.total_stock - item.quantity)
                    .execution_options(synchronize_session=False)
                )
                order.items.append(
                    OrderItem(
                        product_id=item.product_id,
                        product_size_id=size.id,
                        product_name=item.product.name,
                        product_size=size.size,
                        quantity=item.quantity,
                        unit_price=item.price,
                        total_price=Decimal(item.price) * item.quantity,
                    )
                )

            session.execute(
                delete(CartItem).where(CartItem.cart_id == cart.id).execution_options(synchronize_session=False)
            )
            order.payments.append(
                Payment(
                    amount=order.final_amount,
                    payment_gateway=gateway_for(order.payment_method).value,
                    status=PaymentRecordStatus.pending.value,
                    notes="",
                )
            )
        for product in {i.product for i in items}:
            session.expire(product, ["total_stock"])
        return order

    # -- reads -------------------------------------------------------------

    def reload(self, session: Session, order: Order) -> Order:
        stmt = _order_query().where(Order.id == order.id).execution_options(populate_existing=True)
        return session.scalars(stmt).one()

    def get_order(self, session: Session, identity: RequestIdentity, order_code: str) -> Order:
        stmt = _order_query().where(Order.order_code == order_code)
        if identity.is_guest:
            stmt = stmt.where(Order.user_id.is_(None), Order.session_id == identity.session_id)
        else:
            stmt = stmt.where(Order.user_id == identity.user_id)
        order = session.scalars(stmt).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def get_order_by_code(self, session: Session, order_code: str) -> Order:
        order = session.scalars(_order_query().where(Order.order_code == order_code)).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    # -- payment instructions ----------------------------------------------

    def bank_transfer_info(self, order_code: str, amount) -> BankTransferInfo:
        note = f"DH {order_code}"
        return BankTransferInfo(
            bank_name=self.settings.bank_name,
            account_number=self.settings.bank_account_number,
            account_name=self.settings.bank_account_name,
            amount=float(amount),
            transfer_note=note,
            qr_code_url=QR_URL.format(account=self.settings.bank_account_number, amount=float(amount), note=note),
        )

    def bank_transfer_for(self, session: Session, identity: RequestIdentity, order_code: str) -> BankTransferInfo:
        order = self.get_order(session, identity, order_code)
        if order.payment_method != PaymentMethod.bank_transfer.value:
            raise ValidationError("This order does not use bank transfer payment method")
        if order.payment_status == PaymentStatus.paid.value:
            raise ValidationError("This order has already been paid")
        return self.bank_transfer_info(order.order_code, order.final_amount)

    def payment_instructions(self, order: Order) -> Dict[str, Any]:
        if order.payment_method == PaymentMethod.bank_transfer.value:
            return self.bank_transfer_info(order.order_code, order.final_amount).model_dump()
        if order.payment_method == PaymentMethod.cod.value:
            return {"message": COD_INSTRUCTION}
        return {"message": NOT_INTEGRATED}

    def payment_methods(self) -> List[PaymentMethodInfo]:
        bank_info = {
            "bank_name": self.settings.bank_name,
            "account_number": self.settings.bank_account_number,
            "account_name": self.settings.bank_account_name,
        }
        soon = {"note": "Tính năng sẽ được tích hợp sớm"}
        return [
            PaymentMethodInfo(
                method=PaymentMethod.cod.value,
                method_text=payment_method_text(PaymentMethod.cod),
                description="Thanh toán bằng tiền mặt khi nhận hàng",
                is_available=True,
            ),
            PaymentMethodInfo(
                method=PaymentMethod.bank_transfer.value,
                method_text=payment_method_text(PaymentMethod.bank_transfer),
                description="Chuyển khoản qua ngân hàng với QR Code",
                is_available=True,
                extra={"bank_info": bank_info},
            ),
            PaymentMethodInfo(
                method=PaymentMethod.momo.value,
                method_text=payment_method_text(PaymentMethod.momo),
                description="Thanh toán qua ví điện tử MoMo",
                is_available=False,
                extra=dict(soon),
            ),
            PaymentMethodInfo(
                method=PaymentMethod.zalopay.value,
                method_text=payment_method_text(PaymentMethod.zalopay),
                description="Thanh toán qua ví điện tử ZaloPay",
                is_available=False,
                extra=dict(soon),
            ),
            PaymentMethodInfo(
                method=PaymentMethod.vnpay.value,
                method_text=payment_method_text(PaymentMethod.vnpay),
                description="Thanh toán qua cổng VNPay",
                is_available=False,
                extra=dict(soon),
            ),
        ]

    # -- cancel ------------------------------------------------------------

    def cancel_order(self, session: Session, identity: RequestIdentity, order_code: str, reason: str) -> Order:
        order = self.get_order(session, identity, order_code)
        return self._cancel(session, order, reason)

    def _cancel(self, session: Session, order: Order, reason: str, only_unpaid: bool = False) -> Order:
        if order.status not in CANCELLABLE:
            raise FailedPreconditionError(f"Order cannot be cancelled. Current status: {order.status}")

        with transaction(session):
            stmt = update(Order).where(Order.id == order.id, Order.status.in_(CANCELLABLE))
            if only_unpaid:
                stmt = stmt.where(
                    Order.status == OrderStatus.pending.value,
                    Order.payment_status == PaymentStatus.unpaid.value,
                )
            changed = session.execute(
                stmt.values(
                    status=OrderStatus.cancelled.value,
                    notes=f"{order.notes or ''}\nLý do hủy: {reason}",
                    updated_at=utc_now(),
                ).execution_options(synchronize_session=False)
            ).rowcount
            if changed != 1:
                # Someone else cancelled or settled it in the meantime.
                raise FailedPreconditionError("Order cannot be cancelled. Its status has changed")

            for item in order.items:
                size_active = session.scalar(select(ProductSize.is_active).where(ProductSize.id == item.product_size_id))
                session.execute(
                    update(ProductSize)
                    .where(ProductSize.id == item.product_size_id)
                    .values(stock=ProductSize.stock + item.quantity)
                    .execution_options(synchronize_session=False)
                )
                if size_active:
                    session.execute(
                        update(Product)
                        .where(Product.id == item.product_id)
                        .values(total_stock=Product.total_stock + item.quantity)
                        .execution_options(synchronize_session=False)
                    )
            session.execute(
                update(Payment)
                .where(Payment.order_id == order.id)
                .values(status=PaymentRecordStatus.cancelled.value, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )

        logger.info("Cancelled order %s: %s", order.order_code, reason)
        self.notifier.notify(
            order.customer_email,
            notifications.ORDER_CANCELLED,
            {"customer_name": order.customer_name, "order_code": order.order_code, "reason": reason},
        )
        return self.reload(session, order)

    # -- payment -----------------------------------------------------------

    def process_payment(
        self,
        session: Session,
        order_code: str,
        transaction_id: str,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """Mark an order paid. Repeating the call for a paid order is a no-op."""
        order = self.get_order_by_code(session, order_code)
        if order.payment_status == PaymentStatus.paid.value:
            return order
        if order.status == OrderStatus.cancelled.value:
            raise FailedPreconditionError("Order has been cancelled")

        now = utc_now()
        with transaction(session):
            changed = session.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.payment_status != PaymentStatus.paid.value,
                    Order.status != OrderStatus.cancelled.value,
                )
                .values(payment_status=PaymentStatus.paid.value, status=OrderStatus.paid.value, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if changed == 1:
                session.execute(
                    update(Payment)
                    .where(Payment.order_id == order.id, Payment.status == PaymentRecordStatus.pending.value)
                    .values(
                        transaction_id=transaction_id,
                        status=PaymentRecordStatus.completed.value,
                        payment_date=now,
                        response_data=response_data or {},
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

        order = self.reload(session, order)
        if changed != 1:
            if order.payment_status == PaymentStatus.paid.value:
                return order
            raise FailedPreconditionError("Order has been cancelled")

        logger.info("Order %s paid (transaction %s)", order.order_code, transaction_id)
        self.notifier.notify(
            order.customer_email,
            notifications.PAYMENT_CONFIRMATION,
            {"customer_name": order.customer_name, "order_code": order.order_code, "transaction_id": transaction_id},
        )
        return order

    def confirm_cod(self, session: Session, order_code: str) -> Order:
        order = self.get_order_by_code(session, order_code)
        if order.payment_method != PaymentMethod.cod.value:
            raise ValidationError("This order does not use cash on delivery")
        return self.process_payment(
            session,
            order_code,
            f"COD_{order_code}",
            {"payment_method": "cod", "confirmed_by": "admin", "confirmed_at": utc_now().isoformat()},
        )

    # -- sweep -------------------------------------------------------------

    def sweep_expired(self, session: Session) -> int:
        """Cancel unpaid pending orders past their deadline; returns how many."""
        expired = session.scalars(
            _order_query().where(
                Order.status == OrderStatus.pending.value,
                Order.payment_status == PaymentStatus.unpaid.value,
                Order.expires_at < utc_now(),
            )
        ).all()
        cancelled = 0
        for order in expired:
            try:
                self._cancel(session, order, EXPIRED_REASON, only_unpaid=True)
                cancelled += 1
            except FailedPreconditionError:
                logger.info("Order %s changed state before it could expire", order.order_code)
        if cancelled:
            logger.info("Order sweep cancelled %d expired orders", cancelled)
        return cancelled
