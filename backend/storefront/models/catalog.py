from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Category(db.Model):
    """
    Product category shown on the storefront.

    product_count is NOT stored: it is derived from products at read time
    (see catalog_service.list_categories).
    """
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    image = db.Column(db.String(512), nullable=False)
    icon = db.Column(db.String(128), nullable=True)
    description = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self, product_count: int | None = None) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "icon": self.icon,
            "description": self.description,
            "product_count": product_count if product_count is not None else 0,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Product(db.Model):
    """
    Sellable product (a saree, blouse piece, etc.).

    STOCK INVARIANTS:
    - stock never goes below zero; it is only changed through the
      single-statement conditional updates in catalog_service
      (reserve_stock / release_stock), never by read-modify-write.
    - sales_count tracks cumulative units sold: +qty on order placement,
      -qty (floored at zero) on cancellation.

    Prices are authoritative integer paise. mrp_paise/discount are display
    only; the price charged is price_paise.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_category", "category"),
        db.Index("ix_products_sales_count", "sales_count"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Category is referenced by name (categories can be renamed independently)
    category = db.Column(db.String(128), nullable=False)

    image = db.Column(db.String(512), nullable=False)
    images = db.Column(db.JSON, nullable=False, default=list)
    colors = db.Column(db.JSON, nullable=False, default=list)
    unit = db.Column(db.String(32), nullable=False, default="piece")

    price_paise = db.Column(db.Integer, nullable=False)
    mrp_paise = db.Column(db.Integer, nullable=True)
    discount = db.Column(db.Integer, nullable=False, default=0)  # percent, display only

    stock = db.Column(db.Integer, nullable=False, default=0)
    sales_count = db.Column(db.Integer, nullable=False, default=0)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    average_rating = db.Column(db.Float, nullable=False, default=0.0)
    review_count = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "image": self.image,
            "images": list(self.images or []),
            "colors": list(self.colors or []),
            "unit": self.unit,
            "price_paise": self.price_paise,
            "mrp_paise": self.mrp_paise,
            "discount": self.discount,
            "stock": self.stock,
            "sales_count": self.sales_count,
            "is_available": self.is_available,
            "in_stock": self.stock > 0,
            "average_rating": round(self.average_rating or 0.0, 2),
            "review_count": self.review_count,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductRating(db.Model):
    """One rating/review per user per product; re-rating replaces it."""
    __tablename__ = "product_ratings"
    __table_args__ = (
        db.UniqueConstraint("product_id", "user_id", name="uq_product_ratings_product_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=True)
    rating = db.Column(db.Integer, nullable=False)
    review = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    product = db.relationship(
        "Product",
        backref=db.backref("ratings", lazy=True, cascade="all, delete-orphan"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "user_id": self.user_id,
            "name": self.name,
            "rating": self.rating,
            "review": self.review,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
