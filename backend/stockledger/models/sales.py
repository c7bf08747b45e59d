from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


CHANNELS = ("OFFLINE_STORE", "SHOPEE", "TIKTOK", "RESELLER", "WEBSITE")
MARKETPLACE_CHANNELS = ("SHOPEE", "TIKTOK")

ORDER_SOURCES = ("POS", "MANUAL", "API", "CSV")

ORDER_STATUS_NEW = "NEW"
ORDER_STATUS_PAID = "PAID"
ORDER_STATUS_CANCELLED = "CANCELLED"
ORDER_STATUS_RETURNED = "RETURNED"

TERMINAL_ORDER_STATUSES = (ORDER_STATUS_CANCELLED, ORDER_STATUS_RETURNED)


class Order(db.Model):
    """
    Sales order from any channel.

    Orders are never edited in place once stock has moved; corrections go
    through adjustments or opname. External orders are keyed by
    (channel, external_order_id), which is what makes webhook and CSV
    re-delivery update rather than duplicate.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_code", name="uq_orders_order_code"),
        db.UniqueConstraint("channel", "external_order_id", name="uq_orders_channel_external"),
        db.Index("ix_orders_channel_status", "channel", "status"),
        db.Index("ix_orders_ordered_at", "ordered_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_code = db.Column(db.String(64), nullable=False)

    channel = db.Column(db.String(32), nullable=False)
    source = db.Column(db.String(16), nullable=False, default="MANUAL")
    outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False, index=True)

    # NULL for internal orders; NULLs never collide in the unique constraint
    external_order_id = db.Column(db.String(128), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PAID, index=True)

    # Whole rupiah
    total_amount = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    note = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    ordered_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    outlet = db.relationship("Outlet")
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_code": self.order_code,
            "channel": self.channel,
            "source": self.source,
            "outlet_id": self.outlet_id,
            "external_order_id": self.external_order_id,
            "status": self.status,
            "total_amount": self.total_amount,
            "payment_method": self.payment_method,
            "customer_name": self.customer_name,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "ordered_at": to_utc_z(self.ordered_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    qty = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=False, default=0)
    subtotal = db.Column(db.Integer, nullable=False, default=0)

    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "sku": self.variant.sku if self.variant is not None else None,
            "qty": self.qty,
            "price": self.price,
            "subtotal": self.subtotal,
        }
