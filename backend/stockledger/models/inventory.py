from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


# Movement types
MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"

MOVEMENT_TYPES = (
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_ADJUSTMENT,
)

# Causes (ref_type) a movement may point at
REF_STOCK_IN = "STOCK_IN"
REF_STOCK_TRANSFER = "STOCK_TRANSFER"
REF_STOCK_ADJUSTMENT = "STOCK_ADJUSTMENT"
REF_STOCK_OPNAME = "STOCK_OPNAME"
REF_ORDER = "ORDER"
REF_ORDER_RETURN = "ORDER_RETURN"
REF_CSV_IMPORT = "CSV_IMPORT"


class Stock(db.Model):
    """
    Current on-hand quantity per (outlet, variant).

    This is a cache of the movement log: qty must always equal the signed sum
    of stock_movements for the same pair. Only ledger_service.apply_stock_delta
    writes to it.
    """
    __tablename__ = "stocks"
    __table_args__ = (
        db.UniqueConstraint("outlet_id", "variant_id", name="uq_stocks_outlet_variant"),
        db.CheckConstraint("qty >= 0", name="ck_stocks_qty_non_negative"),
        db.Index("ix_stocks_variant", "variant_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)
    qty = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    outlet = db.relationship("Outlet")
    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        variant = self.variant
        min_qty = variant.min_qty if variant is not None else 0
        return {
            "id": self.id,
            "outlet_id": self.outlet_id,
            "outlet_name": self.outlet.name if self.outlet is not None else None,
            "variant_id": self.variant_id,
            "sku": variant.sku if variant is not None else None,
            "product_name": variant.product.name if variant is not None else None,
            "size": variant.size if variant is not None else None,
            "qty": self.qty,
            "min_qty": min_qty,
            "is_low": self.qty <= min_qty,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only movement log.

    qty is the unsigned magnitude; quantity_delta carries the sign applied to
    Stock. (ref_type, ref_id, variant_id, outlet_id, type) is unique so the
    same cause can never be applied twice to the same pair, even by two
    concurrent writers that both passed the movement_exists check.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint(
            "ref_type", "ref_id", "variant_id", "outlet_id", "type",
            name="uq_stock_movements_cause",
        ),
        db.Index("ix_movements_outlet_variant", "outlet_id", "variant_id"),
        db.Index("ix_movements_ref", "ref_type", "ref_id"),
        db.Index("ix_movements_occurred", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    type = db.Column(db.String(16), nullable=False, index=True)

    outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)

    qty = db.Column(db.Integer, nullable=False)
    quantity_delta = db.Column(db.Integer, nullable=False)

    note = db.Column(db.String(255), nullable=True)

    ref_type = db.Column(db.String(32), nullable=False)
    ref_id = db.Column(db.String(64), nullable=False)

    actor_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "outlet_id": self.outlet_id,
            "variant_id": self.variant_id,
            "sku": self.variant.sku if self.variant is not None else None,
            "qty": self.qty,
            "quantity_delta": self.quantity_delta,
            "note": self.note,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }
