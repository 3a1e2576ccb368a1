from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from database import get_db
from schemas import ReviewRequest, ReviewUpdateRequest, ok, review_response
from security import RequestIdentity, optional_user, require_user

router = APIRouter(prefix="/api/v1/reviews")


def _service(request: Request):
    return request.app.state.review_service


@router.get("/product/{product_id}")
def product_reviews(
    product_id: int,
    request: Request,
    page: int = 1,
    limit: int = 10,
    sort: Optional[str] = None,
    rating: Optional[int] = None,
    is_active: Optional[bool] = None,
    identity: Optional[RequestIdentity] = Depends(optional_user),
    db: Session = Depends(get_db),
):
    reviews, pagination, stats = _service(request).list_product_reviews(
        db,
        product_id,
        page,
        limit,
        sort=sort,
        rating=rating,
        is_active=is_active,
        is_admin=identity is not None and identity.is_admin,
    )
    return ok(
        "Reviews retrieved successfully",
        {
            "reviews": [review_response(r).model_dump() for r in reviews],
            "pagination": pagination,
            "stats": stats.model_dump(),
        },
    )


@router.get("/my-reviews")
def my_reviews(
    request: Request,
    page: int = 1,
    limit: int = 10,
    sort: Optional[str] = None,
    product_id: Optional[int] = None,
    rating: Optional[int] = None,
    identity: RequestIdentity = Depends(require_user),
    db: Session = Depends(get_db),
):
    reviews, pagination = _service(request).my_reviews(
        db, identity, page, limit, sort=sort, product_id=product_id, rating=rating
    )
    return ok(
        "Your reviews retrieved successfully",
        {"reviews": [review_response(r, include_product=True).model_dump() for r in reviews], "pagination": pagination},
    )


@router.get("/{review_id}")
def get_review(review_id: int, request: Request, db: Session = Depends(get_db)):
    review = _service(request).get_review(db, review_id)
    return ok("Review retrieved successfully", review_response(review, include_product=True).model_dump())


@router.post("", status_code=status.HTTP_201_CREATED)
def create_review(
    payload: ReviewRequest,
    request: Request,
    identity: RequestIdentity = Depends(require_user),
    db: Session = Depends(get_db),
):
    review = _service(request).create_review(db, identity, payload)
    return ok("Review created successfully", review_response(review).model_dump())


@router.put("/{review_id}")
def update_review(
    review_id: int,
    payload: ReviewUpdateRequest,
    request: Request,
    identity: RequestIdentity = Depends(require_user),
    db: Session = Depends(get_db),
):
    review = _service(request).update_review(db, identity, review_id, payload)
    return ok("Review updated successfully", review_response(review).model_dump())


@router.delete("/{review_id}")
def delete_review(
    review_id: int,
    request: Request,
    identity: RequestIdentity = Depends(require_user),
    db: Session = Depends(get_db),
):
    _service(request).delete_review(db, identity, review_id)
    return ok("Review deleted successfully")
