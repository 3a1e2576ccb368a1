from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cart_service import cart_response
from database import get_db
from errors import ValidationError
from schemas import AddToCartRequest, UpdateCartItemRequest, ok
from security import SESSION_HEADER, RequestIdentity, optional_identity, require_user

router = APIRouter(prefix="/api/v1/cart")


def _service(request: Request):
    return request.app.state.cart_service


@router.get("")
def get_cart(request: Request, identity: RequestIdentity = Depends(optional_identity), db: Session = Depends(get_db)):
    cart = _service(request).get_or_create_cart(db, identity)
    return ok("Cart retrieved successfully", cart_response(cart).model_dump())


@router.post("/add")
def add_to_cart(
    payload: AddToCartRequest,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    service = _service(request)
    cart = service.get_or_create_cart(db, identity)
    cart = service.add_to_cart(db, cart, payload)
    return ok("Item added to cart successfully", cart_response(cart).model_dump())


@router.put("/items/{item_id}")
def update_cart_item(
    item_id: int,
    payload: UpdateCartItemRequest,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    service = _service(request)
    cart = service.get_or_create_cart(db, identity)
    cart = service.update_item(db, cart, item_id, payload.quantity)
    return ok("Cart item updated successfully", cart_response(cart).model_dump())


@router.delete("/items/{item_id}")
def remove_cart_item(
    item_id: int,
    request: Request,
    identity: RequestIdentity = Depends(optional_identity),
    db: Session = Depends(get_db),
):
    service = _service(request)
    cart = service.get_or_create_cart(db, identity)
    cart = service.remove_item(db, cart, item_id)
    return ok("Item removed from cart successfully", cart_response(cart).model_dump())


@router.delete("/clear")
def clear_cart(request: Request, identity: RequestIdentity = Depends(optional_identity), db: Session = Depends(get_db)):
    service = _service(request)
    cart = service.get_or_create_cart(db, identity)
    cart = service.clear_cart(db, cart)
    return ok("Cart cleared successfully", cart_response(cart).model_dump())


@router.get("/validate")
def validate_cart(request: Request, identity: RequestIdentity = Depends(optional_identity), db: Session = Depends(get_db)):
    service = _service(request)
    cart = service.get_or_create_cart(db, identity)
    validation = service.validate_cart(cart)
    data = {
        "is_valid": validation.is_valid,
        "issues": validation.issues,
        "cart": cart_response(cart, validation).model_dump(),
    }
    if validation.is_valid:
        return ok("Cart is valid", data)
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({"success": False, "message": "Cart validation failed", "data": data}),
    )


@router.get("/count")
def cart_count(request: Request, identity: RequestIdentity = Depends(optional_identity), db: Session = Depends(get_db)):
    service = _service(request)
    cart = service.get_or_create_cart(db, identity)
    return ok("Cart count retrieved successfully", service.count(cart))


@router.post("/merge")
def merge_cart(request: Request, identity: RequestIdentity = Depends(require_user), db: Session = Depends(get_db)):
    session_id = request.headers.get(SESSION_HEADER, "").strip()
    if not session_id:
        raise ValidationError("Session ID is required to merge a guest cart")
    cart, merged, dropped = _service(request).merge_guest_cart(db, session_id, identity)
    return ok(
        "Cart merged successfully",
        {"cart": cart_response(cart).model_dump(), "merged_items": merged, "dropped_items": dropped},
    )
