"""
Categories and products.

Public reads only see active, non-deleted rows unless an admin asks otherwise.
Products own their sizes; ``total_stock`` is kept equal to the stock of the
product's active sizes.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload, selectinload, sessionmaker

from database import page_window, paginate, transaction, utc_now
from errors import ConflictError, NotFoundError, ValidationError
from models import CartItem, Category, OrderItem, Product, ProductSize, Review
from schemas import CategoryRequest, ProductRequest
from text_utils import LIKE_ESCAPE, like_pattern, sanitize, slugify

logger = logging.getLogger(__name__)

PRODUCT_SORTS = {
    "price_asc": (Product.price.asc(),),
    "price_desc": (Product.price.desc(),),
    "name_asc": (Product.name.asc(),),
    "name_desc": (Product.name.desc(),),
    "newest": (Product.created_at.desc(),),
    "oldest": (Product.created_at.asc(),),
    "rating": (Product.average_rating.desc(),),
    "popular": (Product.view_count.desc(),),
}


def _product_query():
    return (
        select(Product)
        .where(Product.deleted_at.is_(None))
        .options(joinedload(Product.category), selectinload(Product.sizes))
    )


class CatalogService:
    # -- categories --------------------------------------------------------

    def _category_slug(self, session: Session, name: str, exclude_id: Optional[int] = None) -> str:
        slug = slugify(name)
        if not slug:
            raise ValidationError("Category name must contain letters or digits")
        stmt = select(Category.id).where(Category.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError("Category with this name already exists")
        return slug

    def product_counts(self, session: Session, category_ids: List[int]) -> Dict[int, int]:
        if not category_ids:
            return {}
        rows = session.execute(
            select(Product.category_id, func.count(Product.id))
            .where(
                Product.category_id.in_(category_ids),
                Product.deleted_at.is_(None),
                Product.is_active.is_(True),
            )
            .group_by(Product.category_id)
        )
        return {category_id: count for category_id, count in rows}

    def list_categories(
        self,
        session: Session,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_admin: bool = False,
    ):
        page, limit = page_window(page, limit)
        stmt = select(Category).where(Category.deleted_at.is_(None))
        if is_admin and is_active is not None:
            stmt = stmt.where(Category.is_active.is_(is_active))
        elif not is_admin:
            stmt = stmt.where(Category.is_active.is_(True))
        if search:
            pattern = like_pattern(search.strip())
            stmt = stmt.where(
                or_(
                    Category.name.ilike(pattern, escape=LIKE_ESCAPE),
                    Category.description.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )
        stmt = stmt.order_by(Category.created_at.asc(), Category.id.asc())
        categories, pagination = paginate(session, stmt, page, limit)
        counts = self.product_counts(session, [c.id for c in categories])
        return categories, counts, pagination

    def get_category(self, session: Session, category_id: int, is_admin: bool = False) -> Category:
        category = session.get(Category, category_id)
        if category is None or category.deleted_at is not None or (not is_admin and not category.is_active):
            raise NotFoundError("Category not found")
        return category

    def get_category_by_slug(self, session: Session, slug: str) -> Category:
        category = session.scalar(
            select(Category).where(
                Category.slug == slug,
                Category.deleted_at.is_(None),
                Category.is_active.is_(True),
            )
        )
        if category is None:
            raise NotFoundError("Category not found")
        return category

    def create_category(self, session: Session, req: CategoryRequest) -> Category:
        name = sanitize(req.name)
        category = Category(
            name=name,
            slug=self._category_slug(session, name),
            description=sanitize(req.description),
            thumbnail=req.thumbnail.strip(),
            is_active=True if req.is_active is None else req.is_active,
        )
        with transaction(session):
            session.add(category)
        logger.info("Created category %s (%s)", category.id, category.slug)
        return category

    def update_category(self, session: Session, category_id: int, req: CategoryRequest) -> Category:
        category = self.get_category(session, category_id, is_admin=True)
        name = sanitize(req.name)
        slug = self._category_slug(session, name, exclude_id=category.id)
        with transaction(session):
            category.name = name
            category.slug = slug
            category.description = sanitize(req.description)
            category.thumbnail = req.thumbnail.strip()
            if req.is_active is not None:
                category.is_active = req.is_active
        return category

    def delete_category(self, session: Session, category_id: int) -> None:
        category = self.get_category(session, category_id, is_admin=True)
        in_use = session.scalar(
            select(func.count(Product.id)).where(
                Product.category_id == category.id, Product.deleted_at.is_(None)
            )
        )
        if in_use:
            raise ConflictError("Cannot delete category that has products", {"product_count": in_use})
        with transaction(session):
            category.deleted_at = utc_now()
        logger.info("Deleted category %s", category.id)

    # -- products ----------------------------------------------------------

    def _product_slug(self, session: Session, name: str, exclude_id: Optional[int] = None) -> str:
        slug = slugify(name)
        if not slug:
            raise ValidationError("Product name must contain letters or digits")
        stmt = select(Product.id).where(Product.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(Product.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError("Product with this name already exists")
        return slug

    def _check_product_request(self, session: Session, req: ProductRequest) -> None:
        if req.discount_price is not None and req.discount_price >= req.price:
            raise ValidationError("Discount price must be less than price")
        seen = set()
        for size in req.sizes:
            key = size.size.strip().lower()
            if not key:
                raise ValidationError("Size name cannot be empty")
            if key in seen:
                raise ValidationError(f"Duplicate size: {size.size}")
            seen.add(key)
        category = session.get(Category, req.category_id)
        if category is None or category.deleted_at is not None:
            raise NotFoundError("Category not found")

    def _size_in_use(self, session: Session, size_id: int) -> bool:
        in_carts = session.scalar(select(CartItem.id).where(CartItem.product_size_id == size_id).limit(1))
        in_orders = session.scalar(select(OrderItem.id).where(OrderItem.product_size_id == size_id).limit(1))
        return in_carts is not None or in_orders is not None

    def _apply_sizes(self, session: Session, product: Product, req: ProductRequest) -> None:
        existing = {s.size.strip().lower(): s for s in product.sizes}
        wanted = set()
        for item in req.sizes:
            key = item.size.strip().lower()
            wanted.add(key)
            size = existing.get(key)
            if size is None:
                size = ProductSize(size=item.size.strip())
                product.sizes.append(size)
            size.size = item.size.strip()
            size.stock = item.stock
            size.price = item.price
            size.is_active = True if item.is_active is None else item.is_active
        for key, size in existing.items():
            if key in wanted:
                continue
            # Sizes referenced by carts or orders are retired rather than deleted.
            if size.id is not None and self._size_in_use(session, size.id):
                size.is_active = False
            else:
                product.sizes.remove(size)
        product.total_stock = sum(s.stock for s in product.sizes if s.is_active)

    def create_product(self, session: Session, req: ProductRequest) -> Product:
        self._check_product_request(session, req)
        name = sanitize(req.name)
        product = Product(
            category_id=req.category_id,
            name=name,
            slug=self._product_slug(session, name),
            price=req.price,
            discount_price=req.discount_price,
            description=sanitize(req.description),
            thumbnail=req.thumbnail.strip(),
            images=[url.strip() for url in req.images if url.strip()],
            is_featured=bool(req.is_featured),
            is_active=True if req.is_active is None else req.is_active,
            view_count=0,
            average_rating=Decimal("0"),
            review_count=0,
        )
        with transaction(session):
            session.add(product)
            self._apply_sizes(session, product, req)
        logger.info("Created product %s (%s) with %d sizes", product.id, product.slug, len(product.sizes))
        return self.get_product(session, product.id, is_admin=True)

    def update_product(self, session: Session, product_id: int, req: ProductRequest) -> Product:
        product = self.get_product(session, product_id, is_admin=True)
        self._check_product_request(session, req)
        name = sanitize(req.name)
        slug = self._product_slug(session, name, exclude_id=product.id)
        with transaction(session):
            product.category_id = req.category_id
            product.name = name
            product.slug = slug
            product.price = req.price
            product.discount_price = req.discount_price
            product.description = sanitize(req.description)
            product.thumbnail = req.thumbnail.strip()
            product.images = [url.strip() for url in req.images if url.strip()]
            if req.is_featured is not None:
                product.is_featured = req.is_featured
            if req.is_active is not None:
                product.is_active = req.is_active
            self._apply_sizes(session, product, req)
        session.expire(product)
        return self.get_product(session, product.id, is_admin=True)

    def delete_product(self, session: Session, product_id: int) -> None:
        product = self.get_product(session, product_id, is_admin=True)
        reviews = session.scalar(select(func.count(Review.id)).where(Review.product_id == product.id))
        if reviews:
            raise ConflictError("Cannot delete product that has reviews", {"review_count": reviews})
        with transaction(session):
            product.deleted_at = utc_now()
            product.is_active = False
        logger.info("Deleted product %s", product.id)

    def get_product(self, session: Session, product_id: int, is_admin: bool = False) -> Product:
        stmt = _product_query().where(Product.id == product_id)
        if not is_admin:
            stmt = stmt.where(Product.is_active.is_(True))
        product = session.scalars(stmt).unique().first()
        if product is None:
            raise NotFoundError("Product not found")
        return product

    def get_product_by_slug(self, session: Session, slug: str, is_admin: bool = False) -> Product:
        stmt = _product_query().where(Product.slug == slug)
        if not is_admin:
            stmt = stmt.where(Product.is_active.is_(True))
        product = session.scalars(stmt).unique().first()
        if product is None:
            raise NotFoundError("Product not found")
        return product

    def list_products(
        self,
        session: Session,
        page: int = 1,
        limit: int = 20,
        category_id: Optional[int] = None,
        search: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        is_featured: Optional[bool] = None,
        is_active: Optional[bool] = None,
        in_stock: Optional[bool] = None,
        sort: Optional[str] = None,
        is_admin: bool = False,
    ):
        page, limit = page_window(page, limit)
        stmt = _product_query()
        if is_admin and is_active is not None:
            stmt = stmt.where(Product.is_active.is_(is_active))
        elif not is_admin:
            stmt = stmt.where(Product.is_active.is_(True))
        if category_id is not None:
            stmt = stmt.where(Product.category_id == category_id)
        if search:
            pattern = like_pattern(search.strip())
            stmt = stmt.where(
                or_(
                    Product.name.ilike(pattern, escape=LIKE_ESCAPE),
                    Product.description.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )
        if min_price is not None:
            stmt = stmt.where(Product.price >= min_price)
        if max_price is not None:
            stmt = stmt.where(Product.price <= max_price)
        if is_featured is not None:
            stmt = stmt.where(Product.is_featured.is_(is_featured))
        if in_stock:
            stmt = stmt.where(Product.total_stock > 0)
        order = PRODUCT_SORTS.get(sort or "newest", PRODUCT_SORTS["newest"])
        stmt = stmt.order_by(*order, Product.id.desc())
        return paginate(session, stmt, page, limit)

    def featured_products(self, session: Session, limit: int = 10) -> List[Product]:
        _, limit = page_window(1, limit, default_limit=10, max_limit=50)
        stmt = (
            _product_query()
            .where(Product.is_featured.is_(True), Product.is_active.is_(True))
            .order_by(Product.created_at.desc(), Product.id.desc())
            .limit(limit)
        )
        return list(session.scalars(stmt).unique())

    def search_products(self, session: Session, query: str, page: int = 1, limit: int = 20):
        tokens = (query or "").split()
        if not tokens:
            raise ValidationError("Search query is required")
        page, limit = page_window(page, limit)
        stmt = _product_query().where(Product.is_active.is_(True))
        for token in tokens:
            pattern = like_pattern(token)
            stmt = stmt.where(
                or_(
                    Product.name.ilike(pattern, escape=LIKE_ESCAPE),
                    Product.description.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )
        stmt = stmt.order_by(
            Product.view_count.desc(),
            Product.average_rating.desc(),
            Product.created_at.desc(),
            Product.id.desc(),
        )
        return paginate(session, stmt, page, limit)


def increment_view_count(session_factory: sessionmaker, product_id: int) -> None:
    """Bump a product's view counter on its own session; failures are only logged."""
    session = session_factory()
    try:
        with transaction(session):
            session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(view_count=Product.view_count + 1)
                .execution_options(synchronize_session=False)
            )
    except Exception:
        logger.exception("Failed to increment view count for product %s", product_id)
    finally:
        session.close()
