# Overview: Service-layer operations for products, ratings and categories; owns stock mutation.

"""
Catalog Service

STOCK INVARIANTS (authoritative):
- products.stock is never read, adjusted in Python and written back.
  Every change is one conditional UPDATE evaluated by the database:
    reserve: SET stock = stock - qty ... WHERE id = ? AND stock >= qty
    release: SET stock = stock + qty
  so concurrent orders for the same product cannot oversell.
- sales_count moves with reservations (+qty) and with cancellations
  (-qty, floored at zero). Return restocks leave it unchanged.
- Neither primitive commits: they join the caller's transaction so an
  order and its stock movements commit or roll back together.

Category product counts are computed with one GROUP BY per listing.
"""

from __future__ import annotations

from sqlalchemy import case, func, update
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ErrorKind, StorefrontError
from ..extensions import db
from ..models import Category, Order, OrderItem, Product, ProductRating, User
from ..validation import ModelValidationPolicy, enforce_rules_product, require_positive_int, validate_payload
from .concurrency import run_with_retry


class CatalogError(StorefrontError):
    """Raised for product, category and stock problems."""
    default_kind = ErrorKind.VALIDATION


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "category", "image", "images", "colors", "unit",
        "price_paise", "mrp_paise", "discount", "stock", "is_available",
    },
    required_on_create={"name", "category", "image", "price_paise"},
)

CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields={"name", "image", "icon", "description"},
    required_on_create={"name", "image"},
)

SORT_OPTIONS = {
    "newest": (Product.created_at.desc(), Product.id.desc()),
    "price_asc": (Product.price_paise.asc(), Product.id.asc()),
    "price_desc": (Product.price_paise.desc(), Product.id.desc()),
    "popular": (Product.sales_count.desc(), Product.id.desc()),
    "rating": (Product.average_rating.desc(), Product.review_count.desc(), Product.id.desc()),
}

DEFAULT_LIMIT = 10


# =============================================================================
# PRODUCTS
# =============================================================================

def list_products(
    category: str | None = None,
    search: str | None = None,
    sort: str | None = None,
    available_only: bool = False,
    limit: int | None = None,
    offset: int = 0,
) -> list[Product]:
    query = db.session.query(Product)

    if category:
        query = query.filter(Product.category == category)
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(
            Product.name.ilike(term)
            | Product.description.ilike(term)
            | Product.category.ilike(term)
        )
    if available_only:
        query = query.filter(Product.is_available.is_(True), Product.stock > 0)

    sort_key = (sort or "newest").strip().lower()
    if sort_key not in SORT_OPTIONS:
        raise CatalogError(f"Invalid sort: {sort}. Use one of {', '.join(SORT_OPTIONS)}")
    query = query.order_by(*SORT_OPTIONS[sort_key])

    if offset:
        query = query.offset(offset)
    if limit:
        query = query.limit(limit)
    return query.all()


def _storefront_query():
    return db.session.query(Product).filter(Product.is_available.is_(True))


def trending_products(limit: int = DEFAULT_LIMIT) -> list[Product]:
    return (
        _storefront_query()
        .order_by(Product.sales_count.desc(), Product.id.desc())
        .limit(limit)
        .all()
    )


def featured_products(limit: int = DEFAULT_LIMIT) -> list[Product]:
    return (
        _storefront_query()
        .order_by(Product.average_rating.desc(), Product.sales_count.desc(), Product.id.desc())
        .limit(limit)
        .all()
    )


def top_rated_products(limit: int = DEFAULT_LIMIT) -> list[Product]:
    return (
        _storefront_query()
        .filter(Product.review_count > 0)
        .order_by(Product.average_rating.desc(), Product.review_count.desc(), Product.id.desc())
        .limit(limit)
        .all()
    )


def recommend_products(user_id: int | None, limit: int = DEFAULT_LIMIT) -> list[Product]:
    """
    Products from the categories the user has bought from, best sellers
    first, excluding what they already bought. Topped up with trending
    products when history is thin (or for anonymous visitors).
    """
    picks: list[Product] = []

    if user_id:
        purchased_ids = {
            row[0]
            for row in db.session.query(OrderItem.product_id)
            .join(Order, Order.id == OrderItem.order_id)
            .filter(Order.user_id == user_id)
            .distinct()
            .all()
        }
        if purchased_ids:
            categories = [
                row[0]
                for row in db.session.query(Product.category)
                .filter(Product.id.in_(purchased_ids))
                .distinct()
                .all()
            ]
            picks = (
                _storefront_query()
                .filter(Product.category.in_(categories), Product.id.notin_(purchased_ids))
                .order_by(Product.sales_count.desc(), Product.id.desc())
                .limit(limit)
                .all()
            )

    if len(picks) < limit:
        seen = {p.id for p in picks}
        for product in trending_products(limit + len(seen)):
            if product.id not in seen:
                picks.append(product)
                seen.add(product.id)
            if len(picks) >= limit:
                break

    return picks


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise CatalogError("Product not found", kind=ErrorKind.NOT_FOUND, details={"product_id": product_id})
    return product


def create_product(data: dict) -> Product:
    patch = validate_payload(model=Product, payload=data, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)

    product = Product(**patch)
    if not product.images:
        product.images = [product.image]
    db.session.add(product)
    db.session.commit()
    return product


def update_product(product_id: int, data: dict) -> Product:
    """
    Partial update. Optimistic locking: if the client sends version_id and
    it no longer matches, the edit is rejected instead of overwriting a
    newer change (stock reservations bump version_id too). Without a
    version_id a concurrent stock movement only causes a retry.
    """
    data = dict(data or {})
    expected_version = data.pop("version_id", None)
    if expected_version is not None:
        expected_version = require_positive_int("version_id", expected_version)

    patch = validate_payload(model=Product, payload=data, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)

    def _op():
        product = get_product(product_id)
        if expected_version is not None and expected_version != product.version_id:
            raise CatalogError(
                "Product was modified by another request; reload and retry",
                kind=ErrorKind.CONFLICT,
                details={"current_version_id": product.version_id},
            )

        for key, value in patch.items():
            setattr(product, key, value)

        db.session.commit()
        return product

    try:
        return run_with_retry(_op)
    except StaleDataError:
        raise CatalogError(
            "Product was modified by another request; reload and retry",
            kind=ErrorKind.CONFLICT,
        )


def delete_product(product_id: int) -> None:
    """Order items keep their snapshot; only the catalog row goes."""
    product = get_product(product_id)
    db.session.delete(product)
    db.session.commit()


def rate_product(product_id: int, user: User, rating, review: str | None = None) -> Product:
    """Upsert the user's rating, then recompute the aggregate from all ratings."""
    if isinstance(rating, bool):
        raise CatalogError("rating must be an integer between 1 and 5")
    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise CatalogError("rating must be an integer between 1 and 5")
    if not 1 <= rating <= 5:
        raise CatalogError("rating must be an integer between 1 and 5")

    product = get_product(product_id)

    existing = db.session.query(ProductRating).filter_by(product_id=product.id, user_id=user.id).first()
    if existing:
        existing.rating = rating
        existing.review = (review or "").strip() or None
        existing.name = user.display_name
    else:
        db.session.add(ProductRating(
            product_id=product.id,
            user_id=user.id,
            name=user.display_name,
            rating=rating,
            review=(review or "").strip() or None,
        ))
    db.session.flush()

    avg, count = db.session.query(
        func.avg(ProductRating.rating),
        func.count(ProductRating.id),
    ).filter(ProductRating.product_id == product.id).one()

    product.average_rating = round(float(avg or 0), 2)
    product.review_count = int(count or 0)
    db.session.commit()
    return product


def list_ratings(product_id: int) -> list[ProductRating]:
    get_product(product_id)
    return (
        db.session.query(ProductRating)
        .filter_by(product_id=product_id)
        .order_by(ProductRating.updated_at.desc(), ProductRating.id.desc())
        .all()
    )


# =============================================================================
# STOCK PRIMITIVES (no commit: caller owns the transaction)
# =============================================================================

def _expire_cached(product_id: int) -> None:
    """Drop the session's cached copy so the next read sees the UPDATE."""
    key = db.session.identity_key(Product, product_id)
    cached = db.session.identity_map.get(key)
    if cached is not None:
        db.session.expire(cached)


def reserve_stock(product_id: int, quantity: int, *, record_sale: bool = True) -> None:
    """
    Atomically take `quantity` units; raises OUT_OF_STOCK if fewer remain.

    Zero matched rows means the product is missing or short on stock; a
    fresh read tells the two apart for the error message.
    """
    values = {
        "stock": Product.stock - quantity,
        "version_id": Product.version_id + 1,
    }
    if record_sale:
        values["sales_count"] = Product.sales_count + quantity

    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    _expire_cached(product_id)

    if result.rowcount == 1:
        return

    product = db.session.get(Product, product_id)
    if product is None:
        raise CatalogError("Product not found", kind=ErrorKind.NOT_FOUND, details={"product_id": product_id})
    raise CatalogError(
        f"Insufficient stock for {product.name}",
        kind=ErrorKind.OUT_OF_STOCK,
        details={"product_id": product_id, "requested": quantity, "available": product.stock},
    )


def release_stock(product_id: int, quantity: int, *, reverse_sale: bool = True) -> bool:
    """
    Atomically put `quantity` units back.

    reverse_sale=True (cancellation) also takes the units off sales_count,
    floored at zero. Returns False when the product no longer exists.
    """
    values = {
        "stock": Product.stock + quantity,
        "version_id": Product.version_id + 1,
    }
    if reverse_sale:
        values["sales_count"] = case(
            (Product.sales_count > quantity, Product.sales_count - quantity),
            else_=0,
        )

    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    _expire_cached(product_id)
    return result.rowcount == 1


# =============================================================================
# CATEGORIES
# =============================================================================

def category_counts() -> dict[str, int]:
    rows = (
        db.session.query(Product.category, func.count(Product.id))
        .group_by(Product.category)
        .all()
    )
    return {name: int(count) for name, count in rows}


def list_categories() -> list[dict]:
    counts = category_counts()
    categories = db.session.query(Category).order_by(Category.name.asc()).all()
    return [c.to_dict(product_count=counts.get(c.name, 0)) for c in categories]


def get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if not category:
        raise CatalogError("Category not found", kind=ErrorKind.NOT_FOUND)
    return category


def _ensure_unique_name(name: str, exclude_id: int | None = None) -> None:
    query = db.session.query(Category).filter(func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise CatalogError(f"Category '{name}' already exists", kind=ErrorKind.CONFLICT)


def create_category(data: dict) -> Category:
    patch = validate_payload(model=Category, payload=data, policy=CATEGORY_POLICY, partial=False)
    _ensure_unique_name(patch["name"])
    category = Category(**patch)
    db.session.add(category)
    db.session.commit()
    return category


def update_category(category_id: int, data: dict) -> Category:
    category = get_category(category_id)
    patch = validate_payload(model=Category, payload=data, policy=CATEGORY_POLICY, partial=True)
    if "name" in patch:
        _ensure_unique_name(patch["name"], exclude_id=category.id)
    for key, value in patch.items():
        setattr(category, key, value)
    db.session.commit()
    return category


def delete_category(category_id: int) -> None:
    category = get_category(category_id)
    db.session.delete(category)
    db.session.commit()


def category_dict(category: Category) -> dict:
    return category.to_dict(product_count=category_counts().get(category.name, 0))
