from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


PRODUCT_STATUS_DRAFT = "DRAFT"
PRODUCT_STATUS_ACTIVE = "ACTIVE"
PRODUCT_STATUS_ARCHIVED = "ARCHIVED"
VALID_PRODUCT_STATUSES = (PRODUCT_STATUS_DRAFT, PRODUCT_STATUS_ACTIVE, PRODUCT_STATUS_ARCHIVED)


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    slug = db.Column(db.String(160), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Catalog product.

    PRICING: price_cents is the default price. A variant may override it with
    its own price_cents; checkout always reads the live value.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category_status", "category_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(160), nullable=False, unique=True, index=True)
    sku = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    short_description = db.Column(db.String(255), nullable=True)
    brand = db.Column(db.String(128), nullable=True)

    price_cents = db.Column(db.Integer, nullable=False)
    compare_price_cents = db.Column(db.Integer, nullable=True)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=PRODUCT_STATUS_ACTIVE, index=True)
    featured = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    images = db.relationship(
        "ProductImage",
        backref="product",
        lazy=True,
        order_by="ProductImage.sort_order",
        cascade="all, delete-orphan",
    )
    variants = db.relationship(
        "ProductVariant",
        backref="product",
        lazy=True,
        order_by="ProductVariant.sort_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} slug={self.slug!r}>"

    def to_dict(self, *, include_children: bool = True) -> dict:
        data = {
            "id": self.id,
            "slug": self.slug,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "short_description": self.short_description,
            "brand": self.brand,
            "price_cents": self.price_cents,
            "compare_price_cents": self.compare_price_cents,
            "category_id": self.category_id,
            "category": self.category.to_dict() if self.category else None,
            "status": self.status,
            "featured": self.featured,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_children:
            data["images"] = [img.to_dict() for img in self.images]
            data["variants"] = [v.to_dict() for v in self.variants]
        return data


class ProductImage(db.Model):
    __tablename__ = "product_images"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    url = db.Column(db.String(1024), nullable=False)
    alt_text = db.Column(db.String(255), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "alt_text": self.alt_text,
            "sort_order": self.sort_order,
            "is_primary": self.is_primary,
        }


class ProductVariant(db.Model):
    """A purchasable configuration of a product (size/color/storage...)."""
    __tablename__ = "product_variants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True, unique=True)

    # e.g. {"storage": "256GB", "color": "black"}
    attributes = db.Column(db.JSON, nullable=False, default=dict)

    # NULL = inherit product price
    price_cents = db.Column(db.Integer, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    inventory = db.relationship(
        "Inventory",
        backref="variant",
        uselist=False,
        lazy=True,
        cascade="all, delete-orphan",
    )

    @property
    def effective_price_cents(self) -> int:
        if self.price_cents is not None:
            return self.price_cents
        return self.product.price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "attributes": self.attributes or {},
            "price_cents": self.price_cents,
            "effective_price_cents": self.effective_price_cents,
            "sort_order": self.sort_order,
            "inventory": self.inventory.to_dict() if self.inventory else None,
        }
