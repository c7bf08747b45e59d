from __future__ import annotations

from enum import Enum

from ..extensions import db
from ..time_utils import to_utc_z


class LifecycleState(str, Enum):
    """
    Explicit lifecycle for outlets, products and variants.

    Rows are never hard-deleted: movements and orders reference them forever.
    DELETED rows are hidden from pickers but still resolve by id.
    """
    ACTIVE = "ACTIVE"
    DEACTIVATED = "DEACTIVATED"
    DELETED = "DELETED"


OUTLET_TYPES = ("WAREHOUSE", "OFFLINE_STORE", "ONLINE")


class LifecycleMixin:
    lifecycle = db.Column(db.String(16), nullable=False, default=LifecycleState.ACTIVE.value, index=True)
    # Audit timestamp only; lifecycle is the source of truth.
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def state(self) -> LifecycleState:
        return LifecycleState(self.lifecycle or LifecycleState.ACTIVE.value)

    @property
    def is_active(self) -> bool:
        return self.state is LifecycleState.ACTIVE


class Outlet(LifecycleMixin, db.Model):
    """
    A stock location: warehouse, offline store or online storefront.

    The earliest ACTIVE warehouse is the default outlet for operations that
    omit outlet_id (see services/outlet_service.py).
    """
    __tablename__ = "outlets"
    __table_args__ = (
        db.Index("ix_outlets_type_lifecycle", "type", "lifecycle"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    type = db.Column(db.String(16), nullable=False, default="WAREHOUSE")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Outlet id={self.id} name={self.name!r} type={self.type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "lifecycle": self.lifecycle,
            "is_active": self.is_active,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Product(LifecycleMixin, db.Model):
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(120), nullable=True)
    description = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self, include_variants: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "lifecycle": self.lifecycle,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_variants:
            data["variants"] = [v.to_dict() for v in self.variants]
        return data


class ProductVariant(LifecycleMixin, db.Model):
    """
    A sellable unit of a product (one size/colour).

    SKU is unique across ALL products, including deleted ones, so an
    external mapping or CSV row can never silently point at a recycled code.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_product_variants_sku"),
        db.Index("ix_variants_product", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    sku = db.Column(db.String(64), nullable=False)
    size = db.Column(db.String(32), nullable=True)
    color = db.Column(db.String(64), nullable=True)

    # Whole rupiah; the brand never prices below 1 IDR
    price = db.Column(db.Integer, nullable=False, default=0)

    # Low-stock threshold used by the stock listing
    min_qty = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("variants", lazy=True, order_by="ProductVariant.id"))

    @property
    def sellable_state(self) -> LifecycleState:
        """Most restrictive of the variant's and its product's lifecycle."""
        own = self.state
        parent = self.product.state if self.product is not None else LifecycleState.DELETED
        order = [LifecycleState.ACTIVE, LifecycleState.DEACTIVATED, LifecycleState.DELETED]
        return max(own, parent, key=order.index)

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} sku={self.sku!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product is not None else None,
            "sku": self.sku,
            "size": self.size,
            "color": self.color,
            "price": self.price,
            "min_qty": self.min_qty,
            "lifecycle": self.lifecycle,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
