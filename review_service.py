import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from database import page_window, paginate, transaction
from errors import ConflictError, ForbiddenError, NotFoundError
from models import Product, Review
from schemas import ReviewRequest, ReviewStats, ReviewUpdateRequest
from security import RequestIdentity
from text_utils import sanitize

logger = logging.getLogger(__name__)

REVIEW_SORTS = {
    "newest": (Review.created_at.desc(),),
    "oldest": (Review.created_at.asc(),),
    "rating_high": (Review.rating.desc(), Review.created_at.desc()),
    "rating_low": (Review.rating.asc(), Review.created_at.desc()),
}


def round_rating(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def refresh_rating(session: Session, product_id: int) -> None:
    """Recompute a product's review count and average from its active reviews.

    The product row is locked first so concurrent review writes for the same
    product apply their recomputation one after another.
    """
    session.execute(select(Product.id).where(Product.id == product_id).with_for_update())
    count, average = session.execute(
        select(func.count(Review.id), func.avg(Review.rating)).where(
            Review.product_id == product_id, Review.is_active.is_(True)
        )
    ).one()
    session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(review_count=count or 0, average_rating=round_rating(average))
        .execution_options(synchronize_session=False)
    )


class ReviewService:
    def _owned(self, session: Session, identity: RequestIdentity, review_id: int) -> Review:
        review = session.get(Review, review_id)
        if review is None:
            raise NotFoundError("Review not found")
        if review.user_id != identity.user_id and not identity.is_admin:
            raise ForbiddenError("You can only modify your own reviews")
        return review

    def _load(self, session: Session, review_id: int) -> Review:
        stmt = (
            select(Review)
            .options(joinedload(Review.user), joinedload(Review.product))
            .where(Review.id == review_id)
            .execution_options(populate_existing=True)
        )
        return session.scalars(stmt).one()

    def create_review(self, session: Session, identity: RequestIdentity, req: ReviewRequest) -> Review:
        product = session.get(Product, req.product_id)
        if product is None or product.deleted_at is not None or not product.is_active:
            raise NotFoundError("Product not found")
        existing = session.scalar(
            select(Review.id).where(Review.product_id == product.id, Review.user_id == identity.user_id)
        )
        if existing is not None:
            raise ConflictError("You have already reviewed this product")

        review = Review(
            product_id=product.id,
            user_id=identity.user_id,
            comment=sanitize(req.comment),
            rating=req.rating,
            is_active=True,
        )
        try:
            with transaction(session):
                session.add(review)
                session.flush()
                refresh_rating(session, product.id)
        except IntegrityError:
            raise ConflictError("You have already reviewed this product")
        logger.info("User %s reviewed product %s (%d)", identity.user_id, product.id, req.rating)
        return self._load(session, review.id)

    def update_review(self, session: Session, identity: RequestIdentity, review_id: int, req: ReviewUpdateRequest) -> Review:
        review = self._owned(session, identity, review_id)
        with transaction(session):
            rating_changed = review.rating != req.rating
            review.comment = sanitize(req.comment)
            review.rating = req.rating
            if rating_changed:
                session.flush()
                refresh_rating(session, review.product_id)
        return self._load(session, review.id)

    def delete_review(self, session: Session, identity: RequestIdentity, review_id: int) -> None:
        review = self._owned(session, identity, review_id)
        product_id = review.product_id
        with transaction(session):
            session.delete(review)
            session.flush()
            refresh_rating(session, product_id)
        logger.info("Review %s deleted by user %s", review_id, identity.user_id)

    def get_review(self, session: Session, review_id: int) -> Review:
        review = session.scalars(
            select(Review)
            .options(joinedload(Review.user), joinedload(Review.product))
            .where(Review.id == review_id, Review.is_active.is_(True))
        ).first()
        if review is None:
            raise NotFoundError("Review not found")
        return review

    def stats(self, session: Session, product_id: int) -> ReviewStats:
        active = (Review.product_id == product_id, Review.is_active.is_(True))
        total, average = session.execute(select(func.count(Review.id), func.avg(Review.rating)).where(*active)).one()
        breakdown: Dict[str, int] = {str(i): 0 for i in range(1, 6)}
        for rating, count in session.execute(
            select(Review.rating, func.count(Review.id)).where(*active).group_by(Review.rating)
        ):
            breakdown[str(rating)] = count
        return ReviewStats(
            total_reviews=total or 0,
            average_rating=float(round_rating(average)),
            rating_breakdown=breakdown,
        )

    def list_product_reviews(
        self,
        session: Session,
        product_id: int,
        page: int = 1,
        limit: int = 10,
        sort: Optional[str] = None,
        rating: Optional[int] = None,
        is_active: Optional[bool] = None,
        is_admin: bool = False,
    ):
        product = session.get(Product, product_id)
        if product is None or product.deleted_at is not None or (not is_admin and not product.is_active):
            raise NotFoundError("Product not found")

        page, limit = page_window(page, limit, default_limit=10)
        stmt = select(Review).options(joinedload(Review.user)).where(Review.product_id == product_id)
        if is_admin and is_active is not None:
            stmt = stmt.where(Review.is_active.is_(is_active))
        elif not is_admin:
            stmt = stmt.where(Review.is_active.is_(True))
        if rating is not None:
            stmt = stmt.where(Review.rating == rating)
        stmt = stmt.order_by(*REVIEW_SORTS.get(sort or "newest", REVIEW_SORTS["newest"]), Review.id.desc())
        reviews, pagination = paginate(session, stmt, page, limit)
        return reviews, pagination, self.stats(session, product_id)

    def my_reviews(
        self,
        session: Session,
        identity: RequestIdentity,
        page: int = 1,
        limit: int = 10,
        sort: Optional[str] = None,
        product_id: Optional[int] = None,
        rating: Optional[int] = None,
    ):
        page, limit = page_window(page, limit, default_limit=10)
        stmt = (
            select(Review)
            .options(joinedload(Review.product), joinedload(Review.user))
            .where(Review.user_id == identity.user_id)
        )
        if product_id is not None:
            stmt = stmt.where(Review.product_id == product_id)
        if rating is not None:
            stmt = stmt.where(Review.rating == rating)
        stmt = stmt.order_by(*REVIEW_SORTS.get(sort or "newest", REVIEW_SORTS["newest"]), Review.id.desc())
        return paginate(session, stmt, page, limit)
