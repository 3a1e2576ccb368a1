"""
Shopping carts.

A cart belongs either to a signed-in user or to a guest session. Guest carts
live for a day, user carts for a week; every write pushes ``expires_at`` out
again. Expired carts are reset in place when their owner comes back and are
deleted outright by ``sweep_expired``.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from database import transaction, utc_now
from errors import AppError, FailedPreconditionError, NotFoundError, ValidationError
from models import Cart, CartItem, Product, ProductSize
from schemas import (
    AddToCartRequest,
    CartItemResponse,
    CartResponse,
    CartValidation,
    effective_price,
    product_response,
    size_response,
)
from security import RequestIdentity

logger = logging.getLogger(__name__)

USER_CART_TTL = timedelta(days=7)
GUEST_CART_TTL = timedelta(hours=24)
MAX_CART_ITEMS = 50
MAX_ITEM_QTY = 100


@dataclass
class ItemStatus:
    is_available: bool
    stock_status: str
    message: str = ""


def item_status(item: CartItem) -> ItemStatus:
    product, size = item.product, item.size
    if product is None or not product.is_active or product.deleted_at is not None:
        return ItemStatus(False, "product_inactive", "Sản phẩm không còn được bán")
    if size is None or not size.is_active:
        label = size.size if size is not None else item.product_size_id
        return ItemStatus(False, "size_inactive", f"Size {label} không còn được bán")
    if size.stock == 0:
        return ItemStatus(False, "out_of_stock", f"Size {size.size} đã hết hàng")
    if size.stock < item.quantity:
        return ItemStatus(False, "insufficient_stock", f"Size {size.size} chỉ còn {size.stock} sản phẩm")
    return ItemStatus(True, "available")


def _cart_query():
    return select(Cart).options(
        selectinload(Cart.items).options(
            joinedload(CartItem.product).selectinload(Product.sizes),
            joinedload(CartItem.product).joinedload(Product.category),
            joinedload(CartItem.size),
        )
    )


class CartService:
    def ttl_for(self, identity: RequestIdentity) -> timedelta:
        return GUEST_CART_TTL if identity.is_guest else USER_CART_TTL

    def find_cart(self, session: Session, identity: RequestIdentity) -> Optional[Cart]:
        if not identity.is_guest:
            stmt = _cart_query().where(Cart.user_id == identity.user_id)
        elif identity.session_id:
            stmt = _cart_query().where(Cart.user_id.is_(None), Cart.session_id == identity.session_id)
        else:
            return None
        return session.scalars(stmt).unique().first()

    def reload(self, session: Session, cart: Cart) -> Cart:
        session.expire(cart)
        stmt = _cart_query().where(Cart.id == cart.id).execution_options(populate_existing=True)
        return session.scalars(stmt).unique().one()

    def get_or_create_cart(self, session: Session, identity: RequestIdentity) -> Cart:
        cart = self.find_cart(session, identity)
        now = utc_now()
        if cart is None:
            cart = Cart(
                user_id=identity.user_id,
                session_id=identity.session_id or "",
                expires_at=now + self.ttl_for(identity),
            )
            try:
                with transaction(session):
                    session.add(cart)
            except IntegrityError:
                # Another request created the cart for this owner first.
                cart = self.find_cart(session, identity)
                if cart is None:
                    raise
                return cart
            logger.debug("Created cart %s for %s", cart.id, identity.user_id or identity.session_id)
            return self.reload(session, cart)

        if cart.is_expired(now):
            with transaction(session):
                session.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
                cart.expires_at = now + self.ttl_for(identity)
            logger.info("Reset expired cart %s", cart.id)
            return self.reload(session, cart)
        return cart

    def _touch(self, cart: Cart) -> None:
        cart.expires_at = utc_now() + (GUEST_CART_TTL if cart.is_guest else USER_CART_TTL)

    def _add_item(self, session: Session, cart: Cart, product_id: int, size_id: int, quantity: int) -> CartItem:
        """Add ``quantity`` of a size to ``cart`` without committing."""
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        product = session.get(Product, product_id)
        if product is None or product.deleted_at is not None or not product.is_active:
            raise NotFoundError("Product not found or inactive")
        size = session.get(ProductSize, size_id)
        if size is None or size.product_id != product.id or not size.is_active:
            raise NotFoundError("Product size not found or inactive")
        if size.stock < quantity:
            raise FailedPreconditionError(
                f"Not enough stock. Available: {size.stock}",
                {"available": size.stock, "requested": quantity},
            )

        price = effective_price(product, size)
        item = next(
            (i for i in cart.items if i.product_id == product.id and i.product_size_id == size.id),
            None,
        )
        if item is None:
            if len(cart.items) >= MAX_CART_ITEMS:
                raise FailedPreconditionError(f"Cart cannot contain more than {MAX_CART_ITEMS} items")
            item = CartItem(product_id=product.id, product_size_id=size.id, quantity=quantity, price=price)
            item.product = product
            item.size = size
            cart.items.append(item)
        else:
            new_quantity = item.quantity + quantity
            if new_quantity > MAX_ITEM_QTY:
                raise FailedPreconditionError(f"Quantity per item cannot exceed {MAX_ITEM_QTY}")
            if new_quantity > size.stock:
                raise FailedPreconditionError(
                    f"Not enough stock. Available: {size.stock}",
                    {"available": size.stock, "requested": new_quantity},
                )
            item.quantity = new_quantity
            item.price = price
        self._touch(cart)
        return item

    def add_to_cart(self, session: Session, cart: Cart, req: AddToCartRequest) -> Cart:
        with transaction(session):
            self._add_item(session, cart, req.product_id, req.product_size_id, req.quantity)
        return self.reload(session, cart)

    def _find_item(self, cart: Cart, item_id: int) -> CartItem:
        item = next((i for i in cart.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError("Cart item not found")
        return item

    def update_item(self, session: Session, cart: Cart, item_id: int, quantity: int) -> Cart:
        item = self._find_item(cart, item_id)
        if quantity == 0:
            return self.remove_item(session, cart, item_id)
        if quantity < 0 or quantity > MAX_ITEM_QTY:
            raise ValidationError(f"Quantity must be between 1 and {MAX_ITEM_QTY}")
        size = item.size
        if size is None or not size.is_active:
            raise FailedPreconditionError("Product size is no longer available")
        if quantity > size.stock:
            raise FailedPreconditionError(
                f"Not enough stock. Available: {size.stock}",
                {"available": size.stock, "requested": quantity},
            )
        with transaction(session):
            item.quantity = quantity
            self._touch(cart)
        return self.reload(session, cart)

    def remove_item(self, session: Session, cart: Cart, item_id: int) -> Cart:
        item = self._find_item(cart, item_id)
        with transaction(session):
            cart.items.remove(item)
            self._touch(cart)
        return self.reload(session, cart)

    def clear_cart(self, session: Session, cart: Cart) -> Cart:
        with transaction(session):
            session.execute(delete(CartItem).where(CartItem.cart_id == cart.id))
            self._touch(cart)
        return self.reload(session, cart)

    def validate_cart(self, cart: Cart, now=None) -> CartValidation:
        issues: List[str] = []
        if cart.is_expired(now):
            issues.append("Cart has expired")
        if not cart.items:
            issues.append("Cart is empty")
        for item in cart.items:
            status = item_status(item)
            if status.is_available:
                continue
            name = item.product.name if item.product is not None else f"#{item.product_id}"
            if status.stock_status == "product_inactive":
                issues.append(f"Product {name} is no longer available")
            elif status.stock_status == "size_inactive":
                issues.append(f"Size {item.size.size if item.size else item.product_size_id} of {name} is no longer available")
            elif status.stock_status == "out_of_stock":
                issues.append(f"Product {name} (size {item.size.size}) is out of stock")
            else:
                issues.append(
                    f"Product {name} (size {item.size.size}) only has {item.size.stock} left, "
                    f"requested {item.quantity}"
                )
        return CartValidation(is_valid=not issues, issues=issues)

    def merge_guest_cart(self, session: Session, session_id: str, user_identity: RequestIdentity) -> Tuple[Cart, int, int]:
        """Move a guest cart's items into the user's cart; returns (cart, merged, dropped)."""
        user_cart = self.get_or_create_cart(session, user_identity)
        guest = self.find_cart(session, RequestIdentity(session_id=session_id))
        if guest is None:
            return user_cart, 0, 0

        merged = dropped = 0
        with transaction(session):
            for guest_item in list(guest.items):
                try:
                    self._add_item(
                        session, user_cart, guest_item.product_id, guest_item.product_size_id, guest_item.quantity
                    )
                    merged += 1
                except AppError as exc:
                    dropped += 1
                    logger.info(
                        "Dropped guest cart item %s while merging into cart %s: %s",
                        guest_item.id,
                        user_cart.id,
                        exc.message,
                    )
            session.delete(guest)
        logger.info("Merged guest cart into cart %s: %d merged, %d dropped", user_cart.id, merged, dropped)
        return self.reload(session, user_cart), merged, dropped

    def sweep_expired(self, session: Session) -> Tuple[int, int]:
        """Delete expired carts and their items; returns (carts, items) removed."""
        now = utc_now()
        expired = select(Cart.id).where(Cart.expires_at < now)
        with transaction(session):
            items = session.execute(
                delete(CartItem)
                .where(CartItem.cart_id.in_(expired))
                .execution_options(synchronize_session=False)
            ).rowcount
            carts = session.execute(
                delete(Cart).where(Cart.expires_at < now).execution_options(synchronize_session=False)
            ).rowcount
        if carts:
            logger.info("Cart sweep removed %d carts and %d items", carts, items)
        return carts or 0, items or 0

    def count(self, cart: Cart) -> dict:
        return {
            "item_count": len(cart.items),
            "total_quantity": sum(i.quantity for i in cart.items),
            "total": float(sum((Decimal(i.price) * i.quantity for i in cart.items), Decimal("0"))),
        }


def cart_response(cart: Cart, validation: Optional[CartValidation] = None) -> CartResponse:
    validation = validation or CartService().validate_cart(cart)
    items = []
    subtotal = Decimal("0")
    for item in cart.items:
        status = item_status(item)
        line = Decimal(item.price) * item.quantity
        subtotal += line
        items.append(
            CartItemResponse(
                id=item.id,
                product_id=item.product_id,
                product_size_id=item.product_size_id,
                product=product_response(item.product, include_inactive_sizes=True),
                product_size=size_response(item.size, item.product),
                quantity=item.quantity,
                price=float(item.price),
                current_price=float(effective_price(item.product, item.size)),
                subtotal=float(line),
                is_available=status.is_available,
                stock_status=status.stock_status,
                message=status.message,
                created_at=item.created_at,
                updated_at=item.updated_at,
            )
        )
    return CartResponse(
        id=cart.id,
        user_id=cart.user_id,
        session_id=cart.session_id,
        item_count=len(cart.items),
        total_quantity=sum(i.quantity for i in cart.items),
        subtotal=float(subtotal),
        discount=0.0,
        total=float(subtotal),
        is_valid=validation.is_valid,
        issues=validation.issues,
        expires_at=cart.expires_at,
        cart_items=items,
        created_at=cart.created_at,
        updated_at=cart.updated_at,
    )
