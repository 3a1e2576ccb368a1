from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.orm import Session

from catalog_service import increment_view_count
from database import get_db
from schemas import CategoryRequest, ProductRequest, category_response, ok, product_response
from security import RequestIdentity, optional_user, require_admin

router = APIRouter(prefix="/api/v1")


def _service(request: Request):
    return request.app.state.catalog_service


def _is_admin(identity: Optional[RequestIdentity]) -> bool:
    return identity is not None and identity.is_admin


# Categories

@router.get("/categories")
def list_categories(
    request: Request,
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    identity: Optional[RequestIdentity] = Depends(optional_user),
    db: Session = Depends(get_db),
):
    categories, counts, pagination = _service(request).list_categories(
        db, page, limit, search=search, is_active=is_active, is_admin=_is_admin(identity)
    )
    return ok(
        "Categories retrieved successfully",
        {
            "categories": [category_response(c, counts.get(c.id, 0)).model_dump() for c in categories],
            "pagination": pagination,
        },
    )


@router.get("/categories/slug/{slug}")
def get_category_by_slug(slug: str, request: Request, db: Session = Depends(get_db)):
    service = _service(request)
    category = service.get_category_by_slug(db, slug)
    count = service.product_counts(db, [category.id]).get(category.id, 0)
    return ok("Category retrieved successfully", category_response(category, count).model_dump())


@router.get("/categories/{category_id}")
def get_category(
    category_id: int,
    request: Request,
    identity: Optional[RequestIdentity] = Depends(optional_user),
    db: Session = Depends(get_db),
):
    service = _service(request)
    category = service.get_category(db, category_id, is_admin=_is_admin(identity))
    count = service.product_counts(db, [category.id]).get(category.id, 0)
    return ok("Category retrieved successfully", category_response(category, count).model_dump())


@router.post("/admin/categories", status_code=status.HTTP_201_CREATED)
def create_category(
    payload: CategoryRequest,
    request: Request,
    admin: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    category = _service(request).create_category(db, payload)
    return ok("Category created successfully", category_response(category).model_dump())


@router.put("/admin/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryRequest,
    request: Request,
    admin: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    service = _service(request)
    category = service.update_category(db, category_id, payload)
    count = service.product_counts(db, [category.id]).get(category.id, 0)
    return ok("Category updated successfully", category_response(category, count).model_dump())


@router.delete("/admin/categories/{category_id}")
def delete_category(
    category_id: int,
    request: Request,
    admin: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    _service(request).delete_category(db, category_id)
    return ok("Category deleted successfully")


# Products

@router.get("/products")
def list_products(
    request: Request,
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
    identity: Optional[RequestIdentity] = Depends(optional_user),
    db: Session = Depends(get_db),
):
    products, pagination = _service(request).list_products(
        db,
        page,
        limit,
        category_id=category_id,
        search=search,
        min_price=min_price,
        max_price=max_price,
        is_featured=is_featured,
        is_active=is_active,
        in_stock=in_stock,
        sort=sort,
        is_admin=_is_admin(identity),
    )
    return ok(
        "Products retrieved successfully",
        {"products": [product_response(p).model_dump() for p in products], "pagination": pagination},
    )


@router.get("/products/featured")
def featured_products(request: Request, limit: int = 10, db: Session = Depends(get_db)):
    products = _service(request).featured_products(db, limit)
    return ok("Featured products retrieved successfully", [product_response(p).model_dump() for p in products])


@router.get("/products/search")
def search_products(request: Request, q: str = "", page: int = 1, limit: int = 20, db: Session = Depends(get_db)):
    products, pagination = _service(request).search_products(db, q, page, limit)
    return ok(
        "Search completed successfully",
        {"products": [product_response(p).model_dump() for p in products], "pagination": pagination, "query": q},
    )


@router.get("/products/slug/{slug}")
def get_product_by_slug(
    slug: str,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Optional[RequestIdentity] = Depends(optional_user),
    db: Session = Depends(get_db),
):
    is_admin = _is_admin(identity)
    product = _service(request).get_product_by_slug(db, slug, is_admin=is_admin)
    background_tasks.add_task(increment_view_count, request.app.state.session_factory, product.id)
    return ok("Product retrieved successfully", product_response(product, include_inactive_sizes=is_admin).model_dump())


@router.get("/products/{product_id}")
def get_product(
    product_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    identity: Optional[RequestIdentity] = Depends(optional_user),
    db: Session = Depends(get_db),
):
    is_admin = _is_admin(identity)
    product = _service(request).get_product(db, product_id, is_admin=is_admin)
    background_tasks.add_task(increment_view_count, request.app.state.session_factory, product.id)
    return ok("Product retrieved successfully", product_response(product, include_inactive_sizes=is_admin).model_dump())


@router.post("/admin/products", status_code=status.HTTP_201_CREATED)
def create_product(
    payload: ProductRequest,
    request: Request,
    admin: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    product = _service(request).create_product(db, payload)
    return ok("Product created successfully", product_response(product, include_inactive_sizes=True).model_dump())


@router.put("/admin/products/{product_id}")
def update_product(
    product_id: int,
    payload: ProductRequest,
    request: Request,
    admin: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    product = _service(request).update_product(db, product_id, payload)
    return ok("Product updated successfully", product_response(product, include_inactive_sizes=True).model_dump())


@router.delete("/admin/products/{product_id}")
def delete_product(
    product_id: int,
    request: Request,
    admin: RequestIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    _service(request).delete_product(db, product_id)
    return ok("Product deleted successfully")
