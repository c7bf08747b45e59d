# backend/stockledger/services/catalog_service.py
"""
Products and variants.

Variants are what stock is counted in; products only group them. A variant
is sellable only while both it and its product are ACTIVE.
"""
from __future__ import annotations

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ConflictError, NotFound, ProductInactive, ValidationError
from ..models import LifecycleState, Product, ProductVariant
from ..validation import MAX_PRICE, optional_text, require_text
from .concurrency import lock_for_update, run_with_retry
from .lifecycle import transition


def create_product(*, name: str, category: str | None = None, description: str | None = None) -> Product:
    name = require_text(name, "name", max_length=255)

    def _op():
        product = Product(
            name=name,
            category=optional_text(category),
            description=description,
            lifecycle=LifecycleState.ACTIVE.value,
        )
        db.session.add(product)
        db.session.commit()
        return product

    return run_with_retry(_op)


def create_variant(
    *,
    product_id: int,
    sku: str,
    size: str | None = None,
    color: str | None = None,
    price: int = 0,
    min_qty: int = 0,
) -> ProductVariant:
    sku = require_text(sku, "sku", max_length=64)
    if price < 0 or price > MAX_PRICE:
        raise ValidationError(f"price must be between 0 and {MAX_PRICE}")
    if min_qty < 0:
        raise ValidationError("min_qty must be >= 0")

    def _op():
        product = db.session.get(Product, product_id)
        if product is None:
            raise NotFound("Product", product_id)
        if product.state is LifecycleState.DELETED:
            raise ConflictError(f"Product {product.id} is deleted")

        # SKU is unique across every product, deleted ones included
        existing = db.session.query(ProductVariant.id).filter_by(sku=sku).first()
        if existing is not None:
            raise ConflictError(f"SKU {sku} already exists")

        variant = ProductVariant(
            product_id=product.id,
            sku=sku,
            size=optional_text(size),
            color=optional_text(color),
            price=price,
            min_qty=min_qty,
            lifecycle=LifecycleState.ACTIVE.value,
        )
        db.session.add(variant)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(f"SKU {sku} already exists")
        return variant

    return run_with_retry(_op)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)
    return product


def list_products(*, include_inactive: bool = False, q: str | None = None) -> list[Product]:
    query = db.session.query(Product)
    if include_inactive:
        query = query.filter(Product.lifecycle != LifecycleState.DELETED.value)
    else:
        query = query.filter(Product.lifecycle == LifecycleState.ACTIVE.value)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Product.name.ilike(like), Product.category.ilike(like)))
    return query.order_by(Product.name.asc(), Product.id.asc()).all()


def list_variants(*, product_id: int | None = None, include_inactive: bool = False, q: str | None = None) -> list[ProductVariant]:
    query = db.session.query(ProductVariant).join(Product)
    if product_id is not None:
        query = query.filter(ProductVariant.product_id == product_id)
    if include_inactive:
        query = query.filter(ProductVariant.lifecycle != LifecycleState.DELETED.value)
    else:
        query = query.filter(
            ProductVariant.lifecycle == LifecycleState.ACTIVE.value,
            Product.lifecycle == LifecycleState.ACTIVE.value,
        )
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(ProductVariant.sku.ilike(like), Product.name.ilike(like)))
    return query.order_by(Product.name.asc(), ProductVariant.id.asc()).all()


def set_product_lifecycle(product_id: int, target: LifecycleState) -> Product:
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFound("Product", product_id)
        transition(product, target)
        db.session.commit()
        return product

    return run_with_retry(_op)


def set_variant_lifecycle(variant_id: int, target: LifecycleState) -> ProductVariant:
    def _op():
        variant = lock_for_update(db.session.query(ProductVariant).filter_by(id=variant_id)).first()
        if variant is None:
            raise NotFound("Variant", variant_id)
        transition(variant, target)
        db.session.commit()
        return variant

    return run_with_retry(_op)


def _load_variants(variant_ids) -> dict[int, ProductVariant]:
    ids = sorted(set(variant_ids))
    if not ids:
        return {}
    rows = db.session.query(ProductVariant).filter(ProductVariant.id.in_(ids)).all()
    found = {v.id: v for v in rows}
    for variant_id in ids:
        if variant_id not in found:
            raise NotFound("Variant", variant_id)
    return found


def require_variants(variant_ids) -> dict[int, ProductVariant]:
    """Variants that exist and are not DELETED (stock-in, transfer, adjustment, opname)."""
    found = _load_variants(variant_ids)
    for variant in found.values():
        if variant.state is LifecycleState.DELETED:
            raise ProductInactive(variant.id, variant.lifecycle)
    return found


def require_sellable_variants(variant_ids) -> dict[int, ProductVariant]:
    """Variants whose variant AND product are ACTIVE (orders)."""
    found = _load_variants(variant_ids)
    for variant in found.values():
        state = variant.sellable_state
        if state is not LifecycleState.ACTIVE:
            raise ProductInactive(variant.id, state.value)
    return found
