# backend/storefront/services/catalog_service.py
"""
Catalog Service

Categories, products, images and variants. Read-mostly: public listings only
ever show ACTIVE products; admin/seller writes go through the validated patch
dicts produced by validation.validate_payload.
"""
from __future__ import annotations

import re

from sqlalchemy import or_

from ..extensions import db
from ..models import Category, Product, ProductImage, ProductVariant, Inventory
from ..models.catalog import PRODUCT_STATUS_ACTIVE, PRODUCT_STATUS_ARCHIVED
from ..errors import NotFoundError
from ..validation import ValidationError, ConflictError, validate_price_cents, coerce_int

PRODUCT_MUTABLE_FIELDS = {
    "slug", "sku", "name", "description", "short_description", "brand",
    "price_cents", "compare_price_cents", "category_id", "status", "featured",
}


class CatalogError(Exception):
    """Raised for catalog operation errors."""
    pass


def slugify(value: str) -> str:
    s = value.strip().lower()
    s = re.sub(r"[^\w\s-]", "", s)
    s = re.sub(r"[\s_-]+", "-", s)
    return s.strip("-")


def _unique_slug(model, base: str, *, exclude_id: int | None = None) -> str:
    """
    Return base, or base-1, base-2, ... whichever is not taken yet.
    """
    if not base:
        raise ValidationError("slug cannot be blank")

    candidate = base
    counter = 1
    while True:
        query = db.session.query(model.id).filter(model.slug == candidate)
        if exclude_id is not None:
            query = query.filter(model.id != exclude_id)
        if query.first() is None:
            return candidate
        candidate = f"{base}-{counter}"
        counter += 1


# =============================================================================
# CATEGORIES
# =============================================================================

def list_categories(include_inactive: bool = False) -> list[Category]:
    query = db.session.query(Category)
    if not include_inactive:
        query = query.filter(Category.is_active.is_(True))
    return query.order_by(Category.sort_order.asc(), Category.id.asc()).all()


def create_category(*, name: str, slug: str | None = None, description: str | None = None,
                    sort_order: int = 0) -> Category:
    """
    Create a category. The slug defaults to slugify(name) and is made unique
    by appending -1, -2, ...
    """
    if not name or not name.strip():
        raise ValidationError("Category name is required")

    category = Category(
        name=name.strip(),
        slug=_unique_slug(Category, slugify(slug or name)),
        description=description,
        sort_order=sort_order,
        is_active=True,
    )
    db.session.add(category)
    db.session.commit()
    return category


def _resolve_category_id(category: str | int | None) -> int | None:
    if category is None or category == "":
        return None
    if isinstance(category, int) or str(category).isdigit():
        return int(category)
    found = db.session.query(Category).filter_by(slug=str(category)).first()
    return found.id if found else -1


# =============================================================================
# PRODUCTS
# =============================================================================

def list_products(
    *,
    page: int | None = 1,
    limit: int | None = 10,
    category: str | int | None = None,
    search: str | None = None,
    status: str | None = PRODUCT_STATUS_ACTIVE,
    featured: bool | None = None,
) -> dict:
    """
    Product listing with pagination, category (id or slug) and text search.

    status=None lists every status (admin console).
    """
    page = max(page or 1, 1)
    limit = min(max(limit or 10, 1), 100)

    query = db.session.query(Product)

    if status is not None:
        query = query.filter(Product.status == status)

    category_id = _resolve_category_id(category)
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)

    if featured is not None:
        query = query.filter(Product.featured.is_(featured))

    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))

    total = query.count()
    products = (
        query.order_by(Product.created_at.desc(), Product.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "products": [p.to_dict() for p in products],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit if total else 0,
        },
    }


def get_product(id_or_slug: str | int, *, public: bool = True) -> Product:
    if isinstance(id_or_slug, int) or str(id_or_slug).isdigit():
        product = db.session.get(Product, int(id_or_slug))
    else:
        product = db.session.query(Product).filter_by(slug=str(id_or_slug)).first()

    if product is None or (public and product.status != PRODUCT_STATUS_ACTIVE):
        raise NotFoundError("Product not found")
    return product


def _apply_product_patch(product: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(product, k, v)


def _check_category(category_id: int | None) -> None:
    if category_id is not None and db.session.get(Category, category_id) is None:
        raise ValidationError("Category not found")


def _check_sku_free(model, sku: str | None, *, exclude_id: int | None = None) -> None:
    if not sku:
        return
    query = db.session.query(model.id).filter(model.sku == sku)
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"SKU {sku} already exists")


def _build_images(raw_images, default_alt: str) -> list[ProductImage]:
    if raw_images is None:
        return []
    if not isinstance(raw_images, list):
        raise ValidationError("images must be a list")

    images = []
    for idx, raw in enumerate(raw_images):
        if not isinstance(raw, dict) or not raw.get("url"):
            raise ValidationError("each image requires a url")
        images.append(ProductImage(
            url=str(raw["url"]),
            alt_text=raw.get("alt_text") or raw.get("alt") or default_alt,
            sort_order=idx + 1,
            is_primary=bool(raw.get("is_primary", idx == 0)),
        ))
    return images


def _build_variants(raw_variants) -> list[tuple[ProductVariant, dict]]:
    """Returns (variant, inventory_spec) pairs; inventory_spec may be empty."""
    if raw_variants is None:
        return []
    if not isinstance(raw_variants, list):
        raise ValidationError("variants must be a list")

    built = []
    for idx, raw in enumerate(raw_variants):
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ValidationError("each variant requires a name")
        attributes = raw.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise ValidationError("variant attributes must be an object")

        sku = raw.get("sku")
        _check_sku_free(ProductVariant, sku)

        variant = ProductVariant(
            name=str(raw["name"]).strip(),
            sku=sku,
            attributes={str(k): str(v) for k, v in attributes.items()},
            price_cents=validate_price_cents("variant price_cents", raw.get("price_cents"), allow_none=True),
            sort_order=idx + 1,
        )

        inventory_spec = {}
        if raw.get("stock") is not None:
            stock = coerce_int("stock", raw["stock"])
            if stock < 0:
                raise ValidationError("stock must be >= 0")
            inventory_spec["quantity"] = stock
        if raw.get("low_stock_threshold") is not None:
            inventory_spec["low_stock_threshold"] = coerce_int("low_stock_threshold", raw["low_stock_threshold"])
        built.append((variant, inventory_spec))
    return built


def create_product(*, patch: dict, images=None, variants=None) -> Product:
    """
    Create a product with nested images and variants.

    A variant with a "stock" value gets an Inventory row so it is
    stock-tracked from the start.
    """
    _check_category(patch.get("category_id"))
    _check_sku_free(Product, patch.get("sku"))

    base_slug = slugify(patch.get("slug") or patch["name"])
    product = Product(status=PRODUCT_STATUS_ACTIVE)
    _apply_product_patch(product, patch)
    product.slug = _unique_slug(Product, base_slug)

    product.images = _build_images(images, product.name)

    for variant, inventory_spec in _build_variants(variants):
        if inventory_spec:
            variant.inventory = Inventory(
                quantity=inventory_spec.get("quantity", 0),
                low_stock_threshold=inventory_spec.get("low_stock_threshold", 5),
            )
        product.variants.append(variant)

    db.session.add(product)
    db.session.commit()
    return product


def update_product(*, product_id: int, patch: dict, images=None) -> Product:
    """
    Update product fields. When images is given it replaces the image list.
    Variants are managed through their own records and are not replaced here.
    """
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")

    if "category_id" in patch:
        _check_category(patch["category_id"])
    if "sku" in patch:
        _check_sku_free(Product, patch["sku"], exclude_id=product.id)
    if "slug" in patch:
        patch["slug"] = _unique_slug(Product, slugify(patch["slug"]), exclude_id=product.id)

    _apply_product_patch(product, patch)

    if images is not None:
        product.images = _build_images(images, product.name)

    db.session.commit()
    return product


def archive_product(product_id: int) -> Product:
    """
    Soft-delete: ARCHIVED products disappear from listings but keep their
    ids for cart lines and order history.
    """
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")

    product.status = PRODUCT_STATUS_ARCHIVED
    db.session.commit()
    return product


def find_variant_by_attributes(product: Product, selection: dict) -> ProductVariant | None:
    """Exact match of a selection map against variant attributes."""
    wanted = {str(k): str(v) for k, v in selection.items()}
    for variant in product.variants:
        if (variant.attributes or {}) == wanted:
            return variant
    return None
