import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.orm import Session

from database import get_db
from errors import ForbiddenError
from schemas import (
    CancelOrderRequest,
    CreateOrderRequest,
    OrderSummaryRequest,
    PaymentWebhookRequest,
    ok,
    order_response,
)
from security import RequestIdentity, optional_identity, require_admin

router = APIRouter(prefix="/api/v1")


def _service(request: Request):
    return request.app.state.order_service


@router.get("/orders/payment-methods")
def payment_methods(request: Request):
    methods = _service(request).payment_methods()
    return ok("Payment methods retrieved successfully", [m.model_dump() for m in methods])


@router.post("/orders/summary")
def order_summary(
    payload: OrderSummaryRequest,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    summary = _service(request).summary_for(db, identity, payload.shipping_address.city)
    return ok("Order summary calculated successfully", summary.model_dump())


@router.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(
    payload: CreateOrderRequest,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    service = _service(request)
    order = service.create_order(db, identity, payload)
    return ok(
        "Order created successfully",
        {
            "order": order_response(order).model_dump(),
            "payment_instructions": service.payment_instructions(order),
        },
    )


@router.post("/orders/webhook/payment")
def payment_webhook(
    payload: PaymentWebhookRequest,
    request: Request,
    x_webhook_secret: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    expected = request.app.state.settings.payment_webhook_secret
    if expected and not secrets.compare_digest(x_webhook_secret or "", expected):
        raise ForbiddenError("Invalid webhook secret")
    order = _service(request).process_payment(db, payload.order_code, payload.transaction_id, payload.response_data)
    return ok("Payment processed successfully", order_response(order).model_dump())


@router.get("/orders/{order_code}")
def get_order(
    order_code: str,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    order = _service(request).get_order(db, identity, order_code)
    return ok("Order retrieved successfully", order_response(order).model_dump())


@router.get("/orders/{order_code}/bank-transfer")
def bank_transfer_info(
    order_code: str,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    info = _service(request).bank_transfer_for(db, identity, order_code)
    return ok("Bank transfer info retrieved successfully", info.model_dump())


@router.post("/orders/{order_code}/cancel")
def cancel_order(
    order_code: str,
    payload: CancelOrderRequest,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    order = _service(request).cancel_order(db, identity, order_code, payload.reason)
    return ok("Order cancelled successfully", order_response(order).model_dump())


@router.post("/admin/orders/{order_code}/confirm-cod")
def confirm_cod(
    order_code: str,
    request: Request,
    admin: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order = _service(request).confirm_cod(db, order_code)
    return ok("COD payment confirmed successfully", order_response(order).model_dump())


@router.post("/admin/maintenance/cart-sweep")
def run_cart_sweep(request: Request, admin: RequestIdentity = Depends(require_admin)):
    carts, items = request.app.state.cart_sweeper.run_once()
    return ok("Cart sweep completed", {"carts_removed": carts, "items_removed": items})


@router.post("/admin/maintenance/order-sweep")
def run_order_sweep(request: Request, admin: RequestIdentity = Depends(require_admin)):
    cancelled = request.app.state.order_sweeper.run_once()
    return ok("Order sweep completed", {"orders_cancelled": cancelled})
